"""Poll scheduler module.

Runs each registered sensor's check_state() on its cron cadence. Every
sensor gets its own timer thread; firings are handed to a fixed-size worker
pool. A firing only runs the sensor after acquiring the sensor's lease, so
across all processes sharing the lease database a sensor is never polled
twice at the same time.

Cron expressions are standard 5-field ("min hour dom mon dow") or 6-field
with leading seconds ("sec min hour dom mon dow"). A 5-field expression that
restricts both day fields fires on days matching either of them, as in
classic cron. A 6-field expression fires only on days matching both.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone, tzinfo
from typing import Any, Dict, Optional, Set

from croniter import croniter

logger = logging.getLogger(__name__)


def to_croniter_expression(expression: str) -> str:
    """Rewrite a cron expression into the field order croniter expects.

    croniter takes seconds as the trailing sixth field, so a 6-field
    expression with leading seconds is rotated.

    Args:
        expression: 5-field or 6-field (leading seconds) cron expression

    Returns:
        Equivalent croniter expression

    Raises:
        ValueError: If the expression does not have 5 or 6 fields
    """
    fields = expression.split()
    if len(fields) == 5:
        return " ".join(fields)
    if len(fields) == 6:
        return " ".join(fields[1:] + fields[:1])
    raise ValueError(
        f"cron expression {expression!r} must have 5 or 6 fields, got {len(fields)}"
    )


def validate_cron_expression(expression: str) -> None:
    """Check that a cron expression can be scheduled.

    Raises:
        ValueError: If the expression is invalid
    """
    if not croniter.is_valid(to_croniter_expression(expression)):
        raise ValueError(f"invalid cron expression {expression!r}")


def next_fire_time(expression: str, after: datetime) -> datetime:
    """Get the first firing of a cron expression strictly after a time.

    Args:
        expression: 5-field or 6-field (leading seconds) cron expression
        after: Reference time, aware of the zone the expression is meant in

    Returns:
        Next firing time in the timezone of after
    """
    day_or = len(expression.split()) != 6
    return croniter(
        to_croniter_expression(expression), after, day_or=day_or
    ).get_next(datetime)


def lock_key(sensor: Any) -> str:
    """Lease key of a sensor: "{type}-{id}"."""
    return f"{sensor.type}-{sensor.id}"


class PollScheduler:
    """Schedules sensors on their cadence and runs them under a lease.

    Each sensor identity is registered at most once per process, however
    often register() is called.
    """

    def __init__(
        self,
        lease_provider: Any,
        pool_size: int = 3,
        lease_min_hold_seconds: float = 5,
        lease_max_hold_seconds: float = 60,
        tz: tzinfo = timezone.utc,
    ) -> None:
        """Initialize the scheduler.

        Args:
            lease_provider: LeaseProvider instance
            pool_size: Number of worker threads running polls
            lease_min_hold_seconds: Minimum time a lease stays held per firing
            lease_max_hold_seconds: Time after which a firing's lease expires
            tz: Time zone cron expressions are evaluated in
        """
        self._lease_provider = lease_provider
        self._pool_size = pool_size
        self._lease_min_hold_seconds = lease_min_hold_seconds
        self._lease_max_hold_seconds = lease_max_hold_seconds
        self._tz = tz

        # Guards _registered, _sensors, _timers and _executor
        self._lock = threading.Lock()
        self._registered: Set[str] = set()
        self._sensors: Dict[str, Any] = {}
        self._timers: Dict[str, threading.Thread] = {}
        self._executor: Optional[ThreadPoolExecutor] = None
        self._shutdown_event = threading.Event()

    def register(self, sensor: Any) -> bool:
        """Schedule a sensor unless its identity is already scheduled.

        Sensors registered before start() get their timer when the scheduler
        starts.

        Args:
            sensor: Object with id, type, cron_expression and check_state()

        Returns:
            True if the sensor was newly registered
        """
        key = lock_key(sensor)
        with self._lock:
            if key in self._registered:
                logger.debug(f"{key} is already scheduled")
                return False
            self._registered.add(key)
            self._sensors[key] = sensor
            if self._executor is not None:
                self._start_timer(key, sensor)

        logger.info(f"Scheduled {key} with cadence '{sensor.cron_expression}'")
        return True

    def is_registered(self, sensor: Any) -> bool:
        with self._lock:
            return lock_key(sensor) in self._registered

    def active_timers(self) -> Set[str]:
        """Keys of sensors with a live timer thread."""
        with self._lock:
            return {key for key, timer in self._timers.items() if timer.is_alive()}

    def start(self) -> None:
        """Start the worker pool and a timer for every registered sensor."""
        with self._lock:
            if self._executor is not None:
                return
            self._executor = ThreadPoolExecutor(
                max_workers=self._pool_size, thread_name_prefix="poll-worker"
            )
            for key, sensor in self._sensors.items():
                self._start_timer(key, sensor)
        logger.info(f"Poll scheduler started with {self._pool_size} workers")

    def shutdown(self, timeout: float = 10) -> None:
        """Stop all timers and wait for running polls to finish.

        Args:
            timeout: Seconds to wait for the timer threads
        """
        self._shutdown_event.set()
        with self._lock:
            timers = list(self._timers.values())
            executor = self._executor

        for timer in timers:
            timer.join(timeout=timeout)
            if timer.is_alive():
                logger.warning(f"Timer {timer.name} did not stop within timeout")

        if executor is not None:
            executor.shutdown(wait=True)
        logger.info("Poll scheduler stopped")

    def _start_timer(self, key: str, sensor: Any) -> None:
        # Caller holds self._lock
        timer = threading.Thread(
            target=self._run_timer,
            args=(key, sensor),
            name=f"timer-{key}",
            daemon=True,
        )
        self._timers[key] = timer
        timer.start()

    def _run_timer(self, key: str, sensor: Any) -> None:
        """Wait for each cadence firing and submit it to the worker pool."""
        while not self._shutdown_event.is_set():
            now = datetime.now(self._tz)
            try:
                fire_at = next_fire_time(sensor.cron_expression, now)
            except Exception as e:
                logger.error(f"Cannot schedule {key}: {e}")
                return

            delay = fire_at.timestamp() - now.timestamp()
            if self._shutdown_event.wait(timeout=max(0.0, delay)):
                break

            try:
                self._executor.submit(self.execute_with_lease, sensor)
            except RuntimeError:
                # Executor already shut down
                break

    def execute_with_lease(self, sensor: Any) -> bool:
        """Run one poll of a sensor if its lease can be acquired.

        Failures of the poll itself are logged and leave the state store as
        it was; the next firing tries again.

        Args:
            sensor: Registered sensor

        Returns:
            True if the lease was acquired and the poll ran
        """
        key = lock_key(sensor)
        try:
            lease = self._lease_provider.acquire(
                key, self._lease_min_hold_seconds, self._lease_max_hold_seconds
            )
        except Exception as e:
            logger.warning(f"Could not acquire lease {key}: {e}")
            return False

        if lease is None:
            logger.debug(f"Lease {key} is held elsewhere, skipping this firing")
            return False

        try:
            sensor.check_state()
        except Exception as e:
            logger.warning(f"Error during poll of {key}: {e}")
        finally:
            try:
                self._lease_provider.release(lease)
            except Exception as e:
                logger.warning(f"Could not release lease {key}: {e}")

        return True
