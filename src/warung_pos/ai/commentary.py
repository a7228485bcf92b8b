from __future__ import annotations

import json
import os
import random
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import requests
from openai import OpenAI, OpenAIError

from ..config import KolosalSettings, SpeechSettings
from ..errors import ExternalUnavailable
from ..logging import get_logger
from ..store.models import Commentary


LOG = get_logger("ai-commentary")

AUDIO_MAX_AGE_MINUTES = 30
AUDIO_URL_PREFIX = "/audio"

# Used when the model answers but not with usable JSON.
FALLBACK_KEPO: List[Dict[str, str]] = [
    {
        "sentence": "Belanja nih? Oke deh, semoga duitnya cukup ya!",
        "tts": "Belanja niiiih? (nada kepo) Oke deeeh, semoga duitnya cukuuup yaaaa! (nada nyindir)",
    },
    {
        "sentence": "Wah rajin belanja, dompetnya tebel nih kayaknya!",
        "tts": "Waaaah rajin belanjaaaa (kagum palsu), dompetnya tebel nih kayaknyaaaa! (nada iri)",
    },
    {
        "sentence": "Makasih udah belanja, jangan lupa balik lagi ya!",
        "tts": "Makasiiih udah belanjaaaa (nada males), jangan lupa balik lagi yaaaa! (nada maksa)",
    },
]

SYSTEM_PROMPT = """Kamu adalah penjaga warung Indonesia yang SUPER KEPO, NYINYIR, dan NGESELIN. Kamu suka banget nebak-nebak dan nyindir customer.

PERSONALITY:
- Kepo parah, selalu pengen tau mau ngapain
- Nyinyir, suka nyindir halus tapi lucu
- Gaul, pake bahasa anak muda Jakarta (lu/gue, dong, kali, mah, wkwk)
- Kadang salah nebak tapi pede aja

OUTPUT FORMAT (JSON):
{"sentence": "kalimat singkat yang akan ditampilkan", "tts": "kalimat dengan panduan prosodi untuk text-to-speech"}

PANDUAN TTS:
- Tambah huruf vokal untuk penekanan (misal: "tuuuh", "bangeeet")
- Tambah keterangan nada dalam kurung: (nada kepo), (nada nyindir), (nada kaget)

RULES:
- HANYA output JSON valid, tidak ada text lain
- Sentence maksimal 1-2 kalimat pendek
- JANGAN pakai emoji"""


def _extract_fenced_json(text: str) -> str:
    match = re.search(r"```(?:json)?\s*([\s\S]*?)```", text)
    return match.group(1).strip() if match else text.strip()


def parse_kepo_reply(text: Optional[str]) -> Optional[Dict[str, str]]:
    """Return {"sentence", "tts"} from a model reply, or None if it is not usable."""
    if not text:
        return None
    try:
        parsed = json.loads(_extract_fenced_json(text))
    except ValueError:
        LOG.debug("Kepo reply is not JSON (first 200 chars: %r)", text[:200])
        return None
    if not isinstance(parsed, dict):
        return None
    sentence = parsed.get("sentence")
    tts = parsed.get("tts")
    if isinstance(sentence, str) and sentence.strip() and isinstance(tts, str) and tts.strip():
        return {"sentence": sentence.strip(), "tts": tts.strip()}
    return None


@dataclass(frozen=True)
class CommentaryConfig:
    kolosal: KolosalSettings
    speech: SpeechSettings
    audio_dir: str
    temperature: float = 0.9
    max_tokens: int = 200
    timeout_seconds: int = 30


class KepoCommentator:
    """Generates the nosy shopkeeper line for a finished sale, plus an optional voice clip."""

    def __init__(self, config: CommentaryConfig, *, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.session = session or requests.Session()
        self._speech_client: Optional[OpenAI] = None
        if config.speech.api_key:
            self._speech_client = OpenAI(api_key=config.speech.api_key)

    # ---- chat completion ---------------------------------------------------------
    def chat(self, items: List[str]) -> Optional[str]:
        settings = self.config.kolosal
        if not settings.api_key:
            raise ExternalUnavailable("commentary", "KOLOSAL_API_KEY not set")
        payload = {
            "model": settings.chat_model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": f"Barang dibeli: {', '.join(items)}"},
            ],
            "max_tokens": self.config.max_tokens,
            "temperature": self.config.temperature,
        }
        headers = {
            "Authorization": f"Bearer {settings.api_key}",
            "Content-Type": "application/json",
        }
        try:
            resp = self.session.post(
                f"{settings.api_url}/v1/chat/completions",
                headers=headers,
                json=payload,
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            LOG.error("Kolosal chat request failed: %s", exc)
            raise ExternalUnavailable("commentary", str(exc)) from exc

        if resp.status_code >= 400:
            LOG.error("Kolosal chat HTTP %s: %s", resp.status_code, resp.text[:500])
            raise ExternalUnavailable("commentary", f"HTTP {resp.status_code}")

        try:
            body = resp.json()
        except ValueError as exc:
            raise ExternalUnavailable("commentary", "malformed response") from exc
        choices = body.get("choices") or []
        if not choices:
            LOG.error("Kolosal chat returned no choices: %s", body)
            return None
        message = choices[0].get("message") or {}
        content = message.get("content")
        return content.strip() if isinstance(content, str) else None

    # ---- speech --------------------------------------------------------------------
    def speak(self, text: str, transaction_id: Any) -> Optional[str]:
        """Render `text` to mp3 under audio_dir and return its public URL, or None."""
        if self._speech_client is None:
            LOG.info("OPENAI_API_KEY not set, skipping TTS")
            return None
        speech = self.config.speech
        try:
            response = self._speech_client.audio.speech.create(
                model=speech.model,
                voice=speech.voice,
                input=text,
                response_format="mp3",
                speed=0.9,
            )
            os.makedirs(self.config.audio_dir, exist_ok=True)
            filename = f"kepo-{transaction_id}.mp3"
            path = os.path.join(self.config.audio_dir, filename)
            with open(path, "wb") as fh:
                fh.write(response.content)
        except (OpenAIError, OSError) as exc:
            LOG.error("Error generating audio: %s", exc)
            return None
        LOG.info("Audio saved: %s", path)
        return f"{AUDIO_URL_PREFIX}/{filename}"

    # ---- public --------------------------------------------------------------------
    def generate(self, items: List[str], *, transaction_id: Any) -> Commentary:
        """Commentary for the purchased `items` ("Name (qty)" strings).

        Raises ExternalUnavailable when the chat service is unconfigured or
        unreachable. A reply that cannot be parsed falls back to a canned line.
        """
        reply = self.chat(items)
        LOG.debug("Kepo raw response: %r", reply)
        parsed = parse_kepo_reply(reply)
        if parsed is None:
            parsed = random.choice(FALLBACK_KEPO)
        audio_ref = self.speak(parsed["tts"], transaction_id)
        return Commentary(sentence=parsed["sentence"], tts=parsed["tts"], audio_ref=audio_ref)


def cleanup_audio(audio_dir: str, *, max_age_minutes: int = AUDIO_MAX_AGE_MINUTES, now: Optional[float] = None) -> int:
    """Delete clips older than `max_age_minutes`; return how many were removed."""
    if not os.path.isdir(audio_dir):
        return 0
    now = now if now is not None else time.time()
    deleted = 0
    for name in os.listdir(audio_dir):
        path = os.path.join(audio_dir, name)
        try:
            if not os.path.isfile(path):
                continue
            age_minutes = (now - os.path.getmtime(path)) / 60
            if age_minutes > max_age_minutes:
                os.remove(path)
                deleted += 1
        except OSError as exc:
            # File may be in use or already gone
            LOG.debug("Could not clean %s: %s", path, exc)
    if deleted:
        LOG.info("Cleaned up %d old audio file(s)", deleted)
    return deleted
