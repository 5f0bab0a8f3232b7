"""Main entry point: runs one pipeline stage, or the bot, per process."""

import argparse
import asyncio
from typing import Optional

from skystream.config import settings
from skystream.logging_setup import configure_logging, get_logger
from skystream.service import STAGES, PipelineService


def _parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Bluesky firehose pipeline")
    parser.add_argument("stage", choices=STAGES, help="Stage to run in this process")
    parser.add_argument("--log-level", default=None, help="Override log level")
    parser.add_argument("--log-format", default=None, choices=("json", "console"), help="Override log format")
    return parser.parse_args(argv)


async def run_service(stage: str) -> None:
    """Construct and run the PipelineService for ``stage`` until termination."""
    svc = PipelineService(stage)
    await svc.run()


def main(argv: Optional[list] = None) -> int:
    """Run the async service and return an exit code."""
    args = _parse_args(argv)
    log_level = args.log_level or settings.LOG_LEVEL
    log_format = args.log_format or settings.LOG_FORMAT

    # Configure structured logging as early as possible
    configure_logging(log_level, log_format)
    log = get_logger(__name__)

    try:
        log.info("starting_service", service=settings.SERVICE_NAME, stage=args.stage)
        asyncio.run(run_service(args.stage))
        log.info("service_exited", service=settings.SERVICE_NAME, stage=args.stage)
        return 0
    except KeyboardInterrupt:
        # Allow Ctrl-C to exit cleanly without a stack trace
        log.info("service_interrupted", service=settings.SERVICE_NAME)
        return 0
    except Exception:
        log.exception("service_failed", service=settings.SERVICE_NAME, stage=args.stage)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
