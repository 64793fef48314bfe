"""Cadence worker entry point."""

import asyncio
import contextlib
import logging
import signal

from cadence.config import settings

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=getattr(logging, settings.log_level),
)
logger = logging.getLogger(__name__)


def build_engine():  # noqa: ANN201
    """Wire stores, strategies, executor and controller into a SchedulerEngine."""
    from cadence.scheduler import (
        CheckRunner,
        OccurrenceController,
        SchedulerEngine,
        TemplateStore,
        VerificationExecutor,
        VerificationStore,
    )

    verification_store = VerificationStore.get()
    runner = CheckRunner(lookup=verification_store.get_integration)
    return SchedulerEngine(
        executor=VerificationExecutor(verification_store, runner),
        occurrences=OccurrenceController(TemplateStore.get()),
        verification_store=verification_store,
    )


async def run() -> None:
    """Run the worker until SIGINT/SIGTERM, then shut down gracefully."""
    engine = build_engine()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    await engine.start()
    try:
        await stop.wait()
    finally:
        await engine.stop()


def main() -> None:
    """Start the scheduler worker."""
    logger.info("Starting Cadence worker (tick every %ss)...", settings.tick_interval_seconds)
    asyncio.run(run())


if __name__ == "__main__":
    main()
