"""
Sync scheduler.

Runs the full sync once a day at a configured wall-clock time and serves
manual triggers. FULL and PARTIAL runs are guarded separately: a trigger
for a run type that is already running is rejected straight away, while
the other run type may proceed. Voucher, single-entity and relationship
runs share the PARTIAL guard.
"""
from __future__ import annotations
import threading
from collections import deque
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Callable, Optional
from zoneinfo import ZoneInfo
from loguru import logger

from .config import TallySyncConfig
from .models import STATUS_REJECTED, SyncResult, utcnow
from .sync import (
    SYNC_ENTITY,
    SYNC_FULL,
    SYNC_PARTIAL,
    SYNC_RELATIONSHIPS,
    SYNC_VOUCHERS,
    TallySync,
)


class RunType(str, Enum):
    FULL = "FULL"
    PARTIAL = "PARTIAL"


class RunState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass
class TriggerResult:
    """Acknowledgement of a fire-and-forget trigger."""

    accepted: bool
    sync_type: str
    message: str

    def to_dict(self) -> dict:
        return {"triggered": self.accepted, "syncType": self.sync_type, "message": self.message}


def next_run_time(now: datetime, at: time, tz: ZoneInfo) -> datetime:
    """Next occurrence of wall-clock `at` in `tz` strictly after `now`."""
    local = now.astimezone(tz)
    candidate = datetime.combine(local.date(), at, tzinfo=tz)
    if candidate <= local:
        candidate = datetime.combine(local.date() + timedelta(days=1), at, tzinfo=tz)
    return candidate


def previous_run_time(now: datetime, at: time, tz: ZoneInfo) -> datetime:
    """Most recent occurrence of wall-clock `at` in `tz` at or before `now`."""
    upcoming = next_run_time(now, at, tz)
    return datetime.combine(upcoming.date() - timedelta(days=1), at, tzinfo=tz)


class SyncScheduler:
    """
    Owns the run state, the run history and the daily timer.

    `run_*` methods execute in the calling thread and return the SyncResult.
    `trigger_*` methods claim the guard in the calling thread and run the
    work on a background thread.
    """

    def __init__(
        self,
        config: Optional[TallySyncConfig] = None,
        sync_factory: Optional[Callable[[], TallySync]] = None,
        clock=utcnow,
    ):
        self.config = config or TallySyncConfig.from_env()
        self._sync_factory = sync_factory or (lambda: TallySync(self.config))
        self.clock = clock
        self._lock = threading.Lock()
        self._states = {RunType.FULL: RunState.IDLE, RunType.PARTIAL: RunState.IDLE}
        self._history: deque[SyncResult] = deque(maxlen=self.config.history_size)
        self._last_result: Optional[SyncResult] = None
        self._stop_event = threading.Event()
        self._timer_thread: Optional[threading.Thread] = None
        self._workers: list[threading.Thread] = []

    # -- state -------------------------------------------------------------

    def state(self, run_type: RunType) -> RunState:
        with self._lock:
            return self._states[run_type]

    def is_running(self, run_type: RunType) -> bool:
        return self.state(run_type) is RunState.RUNNING

    def _acquire(self, run_type: RunType) -> bool:
        with self._lock:
            if self._states[run_type] is RunState.RUNNING:
                return False
            self._states[run_type] = RunState.RUNNING
            return True

    def _release(self, run_type: RunType):
        with self._lock:
            self._states[run_type] = RunState.IDLE

    def _busy_message(self, run_type: RunType) -> str:
        label = "Full" if run_type is RunType.FULL else "Partial"
        return f"{label} sync already in progress. Please wait for it to complete."

    # -- execution ---------------------------------------------------------

    def _execute(self, run_type: RunType, sync_type: str, job, trigger: str) -> SyncResult:
        """Run a job whose guard is already held, then release it."""
        try:
            try:
                with self._sync_factory() as sync:
                    result = job(sync)
            except Exception as e:
                logger.exception(f"{sync_type} sync crashed: {e}")
                result = SyncResult(sync_type, trigger=trigger)
                result.add_error(sync_type.lower(), e)
                result.finish()
            with self._lock:
                self._history.appendleft(result)
                self._last_result = result
            return result
        finally:
            self._release(run_type)

    def _run(self, run_type: RunType, sync_type: str, job, trigger: str) -> SyncResult:
        if not self._acquire(run_type):
            logger.warning(f"Rejected {sync_type} sync ({trigger}): {run_type.value} run in progress")
            return SyncResult.rejected(sync_type, self._busy_message(run_type), trigger)
        return self._execute(run_type, sync_type, job, trigger)

    def _trigger(self, run_type: RunType, sync_type: str, job, trigger: str) -> TriggerResult:
        if not self._acquire(run_type):
            logger.warning(f"Rejected {sync_type} sync ({trigger}): {run_type.value} run in progress")
            return TriggerResult(False, sync_type, self._busy_message(run_type))

        worker = threading.Thread(
            target=self._execute,
            args=(run_type, sync_type, job, trigger),
            name=f"tally-sync-{sync_type.lower()}",
            daemon=True,
        )
        with self._lock:
            self._workers = [w for w in self._workers if w.is_alive()]
            self._workers.append(worker)
        worker.start()
        logger.info(f"{sync_type} sync triggered ({trigger})")
        return TriggerResult(True, sync_type, f"{sync_type.capitalize()} sync started")

    def wait(self, timeout: Optional[float] = None):
        """Block until background runs started so far have finished."""
        with self._lock:
            workers = list(self._workers)
        for worker in workers:
            worker.join(timeout)

    # -- run types ---------------------------------------------------------

    @staticmethod
    def _validate_range(from_date: Optional[date], to_date: Optional[date]):
        if from_date and to_date and from_date > to_date:
            raise ValueError(f"from_date {from_date} is after to_date {to_date}")

    @staticmethod
    def _validate_entity(entity_name: str):
        if entity_name not in TallySync.ENTITIES:
            raise ValueError(
                f"Unknown entity: {entity_name}. Valid: {list(TallySync.ENTITIES.keys())}"
            )

    def run_full_sync(self, trigger: str = "manual") -> SyncResult:
        return self._run(RunType.FULL, SYNC_FULL, lambda s: s.run_full_sync(trigger), trigger)

    def trigger_full_sync(self, trigger: str = "manual") -> TriggerResult:
        return self._trigger(RunType.FULL, SYNC_FULL, lambda s: s.run_full_sync(trigger), trigger)

    def run_partial_sync(self, days: Optional[int] = None, trigger: str = "manual") -> SyncResult:
        return self._run(
            RunType.PARTIAL, SYNC_PARTIAL, lambda s: s.run_partial_sync(days, trigger), trigger
        )

    def trigger_partial_sync(self, days: Optional[int] = None, trigger: str = "manual") -> TriggerResult:
        return self._trigger(
            RunType.PARTIAL, SYNC_PARTIAL, lambda s: s.run_partial_sync(days, trigger), trigger
        )

    def run_voucher_sync(
        self,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        trigger: str = "manual",
        voucher_types: Optional[list[str]] = None,
    ) -> SyncResult:
        self._validate_range(from_date, to_date)
        return self._run(
            RunType.PARTIAL,
            SYNC_VOUCHERS,
            lambda s: s.sync_vouchers(from_date, to_date, trigger, voucher_types=voucher_types),
            trigger,
        )

    def trigger_voucher_sync(
        self,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        trigger: str = "manual",
        voucher_types: Optional[list[str]] = None,
    ) -> TriggerResult:
        self._validate_range(from_date, to_date)
        return self._trigger(
            RunType.PARTIAL,
            SYNC_VOUCHERS,
            lambda s: s.sync_vouchers(from_date, to_date, trigger, voucher_types=voucher_types),
            trigger,
        )

    def run_entity_sync(self, entity_name: str, trigger: str = "manual") -> SyncResult:
        self._validate_entity(entity_name)
        return self._run(
            RunType.PARTIAL, SYNC_ENTITY, lambda s: s.run_entity_sync(entity_name, trigger), trigger
        )

    def trigger_entity_sync(self, entity_name: str, trigger: str = "manual") -> TriggerResult:
        self._validate_entity(entity_name)
        return self._trigger(
            RunType.PARTIAL, SYNC_ENTITY, lambda s: s.run_entity_sync(entity_name, trigger), trigger
        )

    def trigger_relationship_build(self, trigger: str = "manual") -> TriggerResult:
        return self._trigger(
            RunType.PARTIAL, SYNC_RELATIONSHIPS, lambda s: s.build_relationships(trigger), trigger
        )

    # -- timer -------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self._timer_thread is not None and self._timer_thread.is_alive()

    def next_scheduled_sync(self) -> datetime:
        return next_run_time(self.clock(), self.config.schedule_time, self.config.timezone)

    def missed_run(self) -> bool:
        """True when no full sync has finished since the most recent slot."""
        try:
            with self._sync_factory() as sync:
                last = sync.last_full_sync_at()
        except Exception as e:
            logger.warning(f"Could not read last full sync time: {e}")
            return False
        slot = previous_run_time(self.clock(), self.config.schedule_time, self.config.timezone)
        return last is None or last < slot

    def catch_up(self) -> Optional[TriggerResult]:
        """Trigger a full sync if the last scheduled one was missed."""
        if not self.missed_run():
            return None
        logger.info("Last scheduled full sync was missed; running it now")
        return self.trigger_full_sync(trigger="catch-up")

    def _run_timer(self, stop_event: threading.Event):
        while not stop_event.is_set():
            next_run = self.next_scheduled_sync()
            delay = (next_run - self.clock()).total_seconds()
            logger.debug(f"Next scheduled full sync at {next_run.isoformat()}")
            if stop_event.wait(timeout=max(delay, 0)):
                break
            if self.clock() < next_run:
                continue
            result = self.run_full_sync(trigger="scheduled")
            if result.status == STATUS_REJECTED:
                logger.warning(f"Scheduled full sync skipped: {result.message}")

    def start(self) -> bool:
        """Start the daily timer. Returns False if it was already running."""
        if self.is_active:
            return False
        # A timer thread left over from an earlier stop() keeps its own, already set, event
        self._stop_event = threading.Event()
        self._timer_thread = threading.Thread(
            target=self._run_timer,
            args=(self._stop_event,),
            name="tally-sync-scheduler",
            daemon=True,
        )
        self._timer_thread.start()
        logger.info(
            f"Scheduler started; next full sync at {self.next_scheduled_sync().isoformat()} "
            f"({self.config.sync_timezone})"
        )
        if self.config.catch_up_missed_run:
            self.catch_up()
        return True

    def stop(self, timeout: Optional[float] = 5.0) -> bool:
        """
        Stop the daily timer. Runs already in progress finish on their own.
        Returns False if the timer was not running.
        """
        if not self.is_active:
            return False
        self._stop_event.set()
        self._timer_thread.join(timeout)
        if self._timer_thread.is_alive():
            logger.info("Scheduler stopped; the timer exits when its current run finishes")
        else:
            logger.info("Scheduler stopped")
        self._timer_thread = None
        return True

    # -- reporting ---------------------------------------------------------

    def history(self) -> list[dict]:
        """Finished runs, most recent first."""
        with self._lock:
            return [result.to_dict() for result in self._history]

    def status(self) -> dict:
        with self._lock:
            states = dict(self._states)
            last = self._last_result
            history = [result.to_dict() for result in self._history]
        active = self.is_active
        return {
            "fullSyncRunning": states[RunType.FULL] is RunState.RUNNING,
            "partialSyncRunning": states[RunType.PARTIAL] is RunState.RUNNING,
            "states": {run_type.value: state.value for run_type, state in states.items()},
            "lastSyncResult": last.to_dict() if last else None,
            "syncHistory": history,
            "schedulerActive": active,
            "nextScheduledSync": self.next_scheduled_sync().isoformat() if active else None,
        }
