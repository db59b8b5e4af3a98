import logging
import threading
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import Settings
from database import Storage


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def backoff_delay(attempt: int, initial: float, maximum: float) -> float:
    return min(maximum, initial * (2 ** max(attempt - 1, 0)))


class ReconnectScheduler:
    """Keeps the storage handle connected.

    A failed connect schedules the next attempt with exponential backoff until
    ``reconnect_max_attempts`` consecutive failures; after that the periodic
    health check starts a fresh cycle the next time it finds the handle down.
    """

    def __init__(self, storage: Storage, settings: Settings) -> None:
        self.storage = storage
        self.settings = settings
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)
        self._lock = threading.Lock()
        self._attempt = 0
        self._reconnecting = False

    def _next_delay(self) -> float:
        return backoff_delay(
            self._attempt,
            self.settings.reconnect_initial_delay_secs,
            self.settings.reconnect_max_delay_secs,
        )

    def _connect(self, source: str = "manual") -> None:
        with self._lock:
            self._attempt += 1
            attempt = self._attempt
        ok = self.storage.ping()
        logger.info(f"storage_connect: source={source} attempt={attempt} ok={ok}")
        if ok:
            with self._lock:
                self._attempt = 0
                self._reconnecting = False
            return

        max_attempts = self.settings.reconnect_max_attempts
        if max_attempts and attempt >= max_attempts:
            logger.error(
                f"storage_connect: giving_up attempts={attempt} "
                f"url={self.storage.redacted_url()}"
            )
            with self._lock:
                self._attempt = 0
                self._reconnecting = False
            return

        delay = self._next_delay()
        logger.info(f"storage_connect: retry_in_secs={delay}")
        self.scheduler.add_job(
            self._connect,
            DateTrigger(run_date=datetime.now(timezone.utc) + timedelta(seconds=delay)),
            args=["backoff"],
            id="storage_reconnect",
            replace_existing=True,
        )

    def start_reconnect(self, source: str) -> None:
        with self._lock:
            if self._reconnecting:
                return
            self._reconnecting = True
            self._attempt = 0
        self._connect(source)

    def _health_check(self) -> None:
        if self._reconnecting:
            return
        if not self.storage.ping():
            logger.warning("health_check: storage disconnected, reconnecting")
            self.start_reconnect("health_check")

    def start(self) -> None:
        logger.info(f"storage_config: url={self.storage.redacted_url()}")
        self.start_reconnect("startup")

        trigger = IntervalTrigger(seconds=self.settings.health_interval_secs)
        self.scheduler.add_job(
            self._health_check,
            trigger,
            id="storage_health_check",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with storage health check every "
            f"{self.settings.health_interval_secs}s"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
