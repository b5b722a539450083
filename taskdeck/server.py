from __future__ import annotations

import argparse
import os

import uvicorn

APP_PATH = "taskdeck.app:app"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Serve the taskdeck API with uvicorn")
    parser.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    parser.add_argument("--port", type=int, default=int(os.getenv("PORT", "8000")))
    parser.add_argument(
        "--workers",
        type=int,
        default=1,
        help="worker processes; ignored with --reload",
    )
    parser.add_argument("--reload", action="store_true", help="restart on code changes")
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    uvicorn.run(
        APP_PATH,
        host=args.host,
        port=args.port,
        workers=None if args.reload else max(1, args.workers),
        reload=args.reload,
        log_level=os.getenv("LOG_LEVEL", "info").lower(),
    )


if __name__ == "__main__":
    main()
