"""
Module: __main__.py
Description: Run the delivery operations API with uvicorn.

Settings come from EVENTRELAY_* environment variables or a .env file in
the working directory.

Usage:
    python -m eventrelay
    python -m eventrelay --port 8000
    python -m eventrelay --reload  # Auto-reload on code changes
"""

import argparse
from typing import List, Optional

import uvicorn


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="eventrelay",
        description="Run the eventrelay operations API with uvicorn"
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8000,
        help="Port to run the server on (default: 8000)"
    )
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="Host to bind to (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload on code changes"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="info",
        choices=["critical", "error", "warning", "info", "debug", "trace"],
        help="Log level for uvicorn (default: info)"
    )
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)

    # The factory builds the coordinator inside the worker process
    uvicorn.run(
        "eventrelay.api.app:app_factory",
        factory=True,
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level
    )


if __name__ == "__main__":
    main()
