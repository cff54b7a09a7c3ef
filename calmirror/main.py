from __future__ import annotations

import argparse
import json
import logging
import os
import sys

import uvicorn

from calmirror.web_admin import context_from_env


def configure_logging() -> None:
    logging.basicConfig(
        level=os.getenv("CALMIRROR_LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="calmirror", description="Mirror source calendars into one busy calendar.")
    parser.add_argument(
        "command",
        nargs="?",
        default="serve",
        choices=["serve", "batch", "sweep", "reset"],
        help="serve the trigger API (default), or run one batch window, a full sweep, or a progress reset",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()

    if args.command == "serve":
        host = os.getenv("CALMIRROR_HOST", "0.0.0.0")
        port = int(os.getenv("CALMIRROR_PORT", "8080"))
        uvicorn.run("calmirror.web_admin:create_app", factory=True, host=host, port=port, reload=False)
        return 0

    engine = context_from_env().sync_engine
    if args.command == "reset":
        engine.reset_progress()
        print(json.dumps({"message": "progress reset", "progress": engine.progress()}))
        return 0

    if args.command == "sweep":
        result = engine.run_full_sweep(trigger="cli")
    else:
        result = engine.run_batch(trigger="cli")
    print(json.dumps(result.to_dict(), ensure_ascii=False))
    return 0 if result.status != "error" else 1


if __name__ == "__main__":
    sys.exit(main())
