"""
Long-running expiry sweep worker.

Alternative to the scheduled Lambda for deployments that run a container:
sweeps every SWEEP_INTERVAL_SECONDS until SIGTERM or SIGINT.

    python -m worker.expiry_worker
"""

import logging
import signal
import threading

from shared.constants import SWEEP_INTERVAL_SECONDS
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.notifications import NotificationSender
from shared.role_expiry import run_expiry_sweep
from shared.scheduler import RecurringTask

logger = logging.getLogger(__name__)

SHUTDOWN_TIMEOUT_SECONDS = 60


def build_task(notifier: NotificationSender, interval_seconds: float = SWEEP_INTERVAL_SECONDS) -> RecurringTask:
    def sweep(stop_event: threading.Event):
        set_request_id()
        return run_expiry_sweep(notifier, should_stop=stop_event.is_set)

    return RecurringTask("role-expiry-sweep", interval_seconds, sweep)


def main() -> int:
    configure_structured_logging()

    notifier = NotificationSender.from_env()
    task = build_task(notifier)
    shutdown = threading.Event()

    def _handle_signal(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        shutdown.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    task.start()
    shutdown.wait()

    stopped = task.stop(wait=True, timeout=SHUTDOWN_TIMEOUT_SECONDS)
    notifier.close()
    if not stopped:
        logger.error("Expiry sweep did not stop within the shutdown timeout")
        return 1
    logger.info("Expiry worker stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
