from __future__ import annotations

import asyncio
import logging
import signal

from estatejobs.core.errors import QueueUnavailableError
from estatejobs.core.logging import configure_logging
from estatejobs.services.queue.runtime import QueueRuntime, get_queue_runtime


logger = logging.getLogger(__name__)

_SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def _install_signal_handlers(stop: asyncio.Event) -> list[signal.Signals]:
    # Setting an already-set event is a no-op, so repeated signals during shutdown are ignored.
    loop = asyncio.get_running_loop()
    installed: list[signal.Signals] = []
    for sig in _SHUTDOWN_SIGNALS:
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            continue
        installed.append(sig)
    return installed


async def run(
    runtime: QueueRuntime | None = None,
    *,
    stop: asyncio.Event | None = None,
    install_signals: bool = True,
) -> int:
    """Run AI workers and the vocal recovery loop until SIGINT/SIGTERM.

    Returns the process exit code: 1 when the broker cannot be reached at
    start-up, 0 after a graceful shutdown.
    """
    runtime = runtime or get_queue_runtime()
    stop = stop or asyncio.Event()
    try:
        await runtime.ping()
    except QueueUnavailableError as exc:
        # A worker without a broker has nothing to do; let the supervisor restart us.
        logger.error("ai_worker.broker_unavailable error=%s", exc)
        await runtime.close()
        return 1

    installed = _install_signal_handlers(stop) if install_signals else []
    try:
        runtime.start_workers()
        runtime.start_recovery_loop()
        logger.info("ai_worker.ready")
        await stop.wait()
        logger.info("ai_worker.shutdown")
        await runtime.stop_recovery_loop()
        await runtime.stop_workers()
    finally:
        await runtime.close()
        loop = asyncio.get_running_loop()
        for sig in installed:
            loop.remove_signal_handler(sig)
    logger.info("ai_worker.stopped")
    return 0


def main() -> int:
    configure_logging()
    return asyncio.run(run())
