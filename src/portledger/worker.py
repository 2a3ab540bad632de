import logging
import signal
import threading

from portledger.config import settings
from portledger.core.observability import configure_logging
from portledger.core.scheduler import PeriodicSweeper, Scheduler
from portledger.db.session import init_db

logger = logging.getLogger(__name__)


def run_sweeper(stop: threading.Event | None = None) -> None:
    """Run the periodic re-scan timer outside the API process."""
    configure_logging(settings.log_level)
    init_db()
    stop = stop or threading.Event()
    sweeper = PeriodicSweeper(Scheduler())
    logger.info(
        "scan_sweeper_started",
        extra={
            "component": "scan_sweeper",
            "event": "started",
            "tick_seconds": sweeper.tick_seconds,
        },
    )
    sweeper.run_blocking(stop)


def main() -> None:
    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    run_sweeper(stop)


if __name__ == "__main__":
    main()
