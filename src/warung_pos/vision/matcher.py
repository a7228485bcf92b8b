from __future__ import annotations

import re
import unicodedata
from difflib import SequenceMatcher
from typing import List, Optional, Tuple

from ..logging import get_logger
from ..store.db import WarungDatabase
from ..store.models import Product


LOG = get_logger("vision-matcher")

NAME_MATCH_THRESHOLD = 0.72


def normalize_label(value: str) -> str:
    text = unicodedata.normalize("NFKC", value or "").lower()
    text = re.sub(r"[^0-9a-z]+", " ", text)
    return " ".join(text.split())


def _candidates(product: Product) -> List[str]:
    names = []
    if product.vision_label:
        names.append(normalize_label(product.vision_label))
    names.append(normalize_label(product.name))
    return [n for n in names if n]


def match_label(label: str, products: List[Product], *, threshold: float = NAME_MATCH_THRESHOLD) -> Optional[Product]:
    """Resolve a detector label against the catalog.

    Order: exact vision label or name, then containment either way, then
    any shared word, then the best SequenceMatcher ratio at or above
    `threshold`.
    """
    wanted = normalize_label(label)
    if not wanted:
        return None

    for product in products:
        if wanted in _candidates(product):
            return product

    for product in products:
        for candidate in _candidates(product):
            if wanted in candidate or candidate in wanted:
                return product

    wanted_words = set(wanted.split())
    for product in products:
        for candidate in _candidates(product):
            if wanted_words & set(candidate.split()):
                return product

    best: Tuple[float, Optional[Product]] = (0.0, None)
    for product in products:
        for candidate in _candidates(product):
            ratio = SequenceMatcher(None, wanted, candidate).ratio()
            if ratio > best[0]:
                best = (ratio, product)
    if best[1] is not None and best[0] >= threshold:
        LOG.debug("Fuzzy match %r -> %r (ratio %.2f)", label, best[1].name, best[0])
        return best[1]
    return None


class LabelMatcher:
    """Catalog-backed label matcher; callable so it plugs straight into DetectionTracker."""

    def __init__(self, db: WarungDatabase, *, threshold: float = NAME_MATCH_THRESHOLD) -> None:
        self.db = db
        self.threshold = threshold

    def match(self, label: str) -> Optional[Product]:
        product = match_label(label, self.db.list_products(), threshold=self.threshold)
        if product is not None:
            LOG.debug("Label %r matched product %s (%s)", label, product.product_id, product.name)
        return product

    __call__ = match
