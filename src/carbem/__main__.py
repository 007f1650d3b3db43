import asyncio
import signal
import sys

import structlog
from prometheus_client import CollectorRegistry, write_to_textfile

from carbem.cli import parse_args
from carbem.client import get_emissions_json
from carbem.errors import CarbemError
from carbem.logging import setup_logging
from carbem.metrics import MetricsUpdater

logger = structlog.get_logger()


def main(argv: "list[str] | None" = None) -> "int":
    args = parse_args(argv)
    setup_logging(args.log_level)

    registry = CollectorRegistry()
    metrics = MetricsUpdater(registry)
    cancel_event = asyncio.Event()

    async def _run() -> "str":
        loop = asyncio.get_running_loop()
        # for SIGINT and SIGTERM, stop polling and give up cleanly
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, cancel_event.set)

        return await get_emissions_json(
            args.provider,
            args.config_json,
            args.query_json,
            cancel_event=cancel_event,
            metrics=metrics,
        )

    try:
        output = asyncio.run(_run())
    except CarbemError as e:
        logger.error("query_failed", provider=args.provider, error=str(e))
        return 1
    finally:
        if args.metrics_textfile:
            write_to_textfile(args.metrics_textfile, registry)

    sys.stdout.write(output + "\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
