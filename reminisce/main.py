"""Reminisce entry point.

Builds the memory service, wires it into the tool layer and keeps the decay
scheduler running until the process is asked to stop.
"""

import asyncio
import logging
import signal

from reminisce.config import settings

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level),
)
logger = logging.getLogger(__name__)


def build_service():  # noqa: ANN201
    """Create the memory service and give the tools access to it."""
    from reminisce.memory.service import ReminisceService
    from reminisce.tools import registry
    from reminisce.tools.memory_tools import init_memory_tools

    service = ReminisceService()
    init_memory_tools(service)
    registry.attach_memory(service)
    return service


async def run() -> None:
    service = build_service()
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    await service.start()
    logger.info(
        "Reminisce running (memory %s, database %s)",
        "enabled" if settings.memory_enabled else "disabled",
        settings.turso_database_url or settings.database_path,
    )
    try:
        await stop.wait()
    finally:
        await service.stop()


def main() -> None:
    """Run until SIGINT/SIGTERM."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
