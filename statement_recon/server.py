"""
Standalone server entry point.
"""

import argparse
from typing import List, Optional

import structlog
import uvicorn

from .api import create_app
from .config import get_settings
from .logging_setup import setup_logging

logger = structlog.get_logger()


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Statement reconciliation API server")
    parser.add_argument("--host", default=settings.host, help="Interface to bind")
    parser.add_argument("--port", type=int, default=settings.port, help="Port to run the server on")
    parser.add_argument("--log-level", default=settings.app_log_level, help="Logging level")
    parser.add_argument("--log-file", default=None, help="Also write logs to this file")
    return parser


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level, args.log_file)

    logger.info("Starting backend", host=args.host, port=args.port)
    uvicorn.run(create_app(), host=args.host, port=args.port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
