from __future__ import annotations

import argparse
import os
import sys
from typing import Sequence

from ..ai.commentary import AUDIO_MAX_AGE_MINUTES, cleanup_audio
from ..config import load_db_path
from ..logging import get_logger
from ..paths import audio_dir, expand_abs, find_project_root
from ..store import WarungDatabase
from ..store.seed import seed_catalog

LOG = get_logger("cli-main")


def _open_db(ns: argparse.Namespace) -> WarungDatabase:
    root = find_project_root(os.getcwd())
    db_path = ns.db_path or load_db_path(root)
    return WarungDatabase(root_dir=root, db_path=expand_abs(db_path) if db_path else None)


def main(argv: Sequence[str] | None = None) -> int:
    provided = list(argv) if argv is not None else sys.argv[1:]
    LOG.info(f"CLI invoked with arguments: {provided}")

    parser = argparse.ArgumentParser(
        prog="warung-pos",
        description="Warung point-of-sale backend: catalog, cart ledger and camera scanning.",
    )
    parser.add_argument("--db-path", help="SQLite file to use instead of var/warung/warung.sqlite3")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_cmd = subparsers.add_parser("init", help="Create/ensure the DB schema exists")

    def _init(ns: argparse.Namespace) -> int:
        db = _open_db(ns)
        LOG.info(f"Warung DB ready at: {db.db_path}")
        print(db.db_path)
        return 0

    init_cmd.set_defaults(handler=_init)

    seed_cmd = subparsers.add_parser("seed", help="Insert the demo catalog, skipping existing barcodes")

    def _seed(ns: argparse.Namespace) -> int:
        added = seed_catalog(_open_db(ns))
        print(added)
        return 0

    seed_cmd.set_defaults(handler=_seed)

    serve_cmd = subparsers.add_parser("serve", help="Run the HTTP/WebSocket API.")
    serve_cmd.add_argument("--host", default="127.0.0.1")
    serve_cmd.add_argument("--port", type=int, default=3001)
    serve_cmd.add_argument("--reload", action="store_true", help="Enable auto-reload (development only)")
    serve_cmd.add_argument("--log-level", default="info")
    serve_cmd.add_argument("--no-audio", action="store_true", help="Do not serve generated clips under /audio")
    serve_cmd.add_argument(
        "--allow-origin",
        action="append",
        dest="allow_origins",
        help="Allowed CORS origin (can be provided multiple times, use '*' for any).",
    )

    def _serve(ns: argparse.Namespace) -> int:
        from ..web import create_app
        import uvicorn

        allow_origins = ns.allow_origins
        if allow_origins and "*" in allow_origins:
            allow_origins = ["*"]

        app = create_app(
            root_dir=os.getcwd(),
            db_path=expand_abs(ns.db_path) if ns.db_path else None,
            allow_origins=allow_origins,
            serve_audio=not ns.no_audio,
        )
        uvicorn.run(app, host=ns.host, port=ns.port, reload=ns.reload, log_level=ns.log_level)
        return 0

    serve_cmd.set_defaults(handler=_serve)

    clean_cmd = subparsers.add_parser("cleanup-audio", help="Delete stale commentary clips")
    clean_cmd.add_argument("--max-age-minutes", type=int, default=AUDIO_MAX_AGE_MINUTES)

    def _cleanup(ns: argparse.Namespace) -> int:
        deleted = cleanup_audio(audio_dir(find_project_root(os.getcwd())), max_age_minutes=ns.max_age_minutes)
        print(deleted)
        return 0

    clean_cmd.set_defaults(handler=_cleanup)

    args = parser.parse_args(provided)
    code = args.handler(args)
    LOG.info(f"Subcommand '{args.command}' finished with exit code {code}.")
    return code


if __name__ == "__main__":
    sys.exit(main())
