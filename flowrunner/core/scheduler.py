"""
Trigger scheduler: cron-driven schedule triggers on top of APScheduler.

Schedule registrations are persisted as ScheduledTriggerJob rows so they
survive restarts; the APScheduler job set is rebuilt from them on start.
"""

import threading
from datetime import datetime, timezone as dt_timezone
from typing import Any, Callable, Dict, List, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.cron import CronTrigger

from ..models.core import ScheduledTriggerJob
from .exceptions import SchedulingError, WorkflowEngineError, WorkflowNotFoundError
from .logging import get_logger

logger = get_logger(__name__)

JOB_ID_PREFIX = "schedule-trigger:"
DEFAULT_TIMEZONE = "UTC"


CRONTAB_DAY_NAMES = ["sun", "mon", "tue", "wed", "thu", "fri", "sat"]


def _crontab_day(token: str) -> int:
    token = token.strip().lower()
    if token.isdigit():
        day = int(token)
        if not 0 <= day <= 7:
            raise ValueError(f"day of week {day} out of range 0-7")
        return day
    if token[:3] in CRONTAB_DAY_NAMES:
        return CRONTAB_DAY_NAMES.index(token[:3])
    raise ValueError(f"unrecognized day of week '{token}'")


def crontab_day_of_week(field: str) -> str:
    """
    Translate a crontab weekday field into APScheduler day names.

    Crontab counts 0 (and 7) as Sunday while APScheduler counts 0 as Monday,
    so numeric days, ranges and steps are expanded and re-emitted by name.
    """
    if field in ("*", "?"):
        return "*"

    days = set()
    for part in field.split(","):
        spec, has_step, step = part.partition("/")
        step = int(step) if has_step else 1
        if step < 1:
            raise ValueError(f"invalid step in day of week '{part}'")
        if spec in ("*", "?"):
            start, end = 0, 6
        elif "-" in spec:
            first, last = spec.split("-", 1)
            start, end = _crontab_day(first), _crontab_day(last)
        else:
            start = _crontab_day(spec)
            end = 6 if has_step else start
        if end < start:
            raise ValueError(f"invalid day of week range '{spec}'")
        days.update(day % 7 for day in range(start, end + 1, step))

    return ",".join(CRONTAB_DAY_NAMES[day] for day in sorted(days))


def build_cron_trigger(cron_expression: str, timezone: Optional[str] = None) -> CronTrigger:
    """
    Parse a cron expression into an APScheduler trigger.

    Accepts standard 5-field crontab syntax (minute hour day month weekday)
    and a 6-field form with a leading seconds field.

    Raises:
        SchedulingError: If the expression or timezone is invalid
    """
    tz = timezone or DEFAULT_TIMEZONE
    if not isinstance(cron_expression, str) or not cron_expression.strip():
        raise SchedulingError("Cron expression cannot be empty", cron_expression=cron_expression)

    parts = cron_expression.split()
    try:
        if len(parts) in (5, 6):
            if len(parts) == 5:
                parts = ["0"] + parts
            return CronTrigger(
                second=parts[0],
                minute=parts[1],
                hour=parts[2],
                day=parts[3],
                month=parts[4],
                day_of_week=crontab_day_of_week(parts[5]),
                timezone=tz
            )
    except (ValueError, KeyError, TypeError) as e:
        raise SchedulingError(
            f"Invalid cron expression '{cron_expression}' ({tz}): {e}",
            cron_expression=cron_expression
        )
    raise SchedulingError(
        f"Invalid cron expression '{cron_expression}': expected 5 or 6 fields, got {len(parts)}",
        cron_expression=cron_expression
    )


def validate_cron(cron_expression: str, timezone: Optional[str] = None) -> CronTrigger:
    """Validate a cron expression and timezone; returns the parsed trigger."""
    return build_cron_trigger(cron_expression, timezone)


def next_fire_time(cron_expression: str, timezone: Optional[str] = None,
                   now: Optional[datetime] = None) -> Optional[datetime]:
    """Next fire time as a naive UTC datetime, or None if the schedule never fires again."""
    return _next_fire(build_cron_trigger(cron_expression, timezone), now)


def _next_fire(trigger: CronTrigger, now: Optional[datetime] = None) -> Optional[datetime]:
    if now is None:
        now = datetime.now(dt_timezone.utc)
    elif now.tzinfo is None:
        now = now.replace(tzinfo=dt_timezone.utc)
    fire_at = trigger.get_next_fire_time(None, now)
    if fire_at is None:
        return None
    return fire_at.astimezone(dt_timezone.utc).replace(tzinfo=None)


def build_schedule_trigger_input(trigger_id: str, scheduled_at: Optional[datetime],
                                 fired_at: datetime) -> Dict[str, Any]:
    """Trigger payload handed to executions started by a cron fire."""
    return {
        "type": "schedule",
        "triggerId": trigger_id,
        "scheduledAt": scheduled_at.isoformat() if scheduled_at else None,
        "timestamp": fired_at.isoformat(),
    }


class TriggerScheduler:
    """
    Owns recurring-job bookkeeping for schedule triggers.

    Every mutation for a trigger id runs under that trigger's lock, so two
    concurrent edits can never leave ``next_fire_at`` inconsistent.
    """

    def __init__(
        self,
        store,
        start_execution: Callable[[str, Any], Any],
        default_timezone: str = DEFAULT_TIMEZONE,
        scheduler: Optional[BaseScheduler] = None
    ):
        """
        Args:
            store: ExecutionStore holding schedule registrations and workflows
            start_execution: Callable ``(workflow_id, trigger_input)`` starting a run
            default_timezone: Timezone applied when a schedule names none
            scheduler: APScheduler instance; a BackgroundScheduler by default
        """
        self._store = store
        self._start_execution = start_execution
        self.default_timezone = default_timezone
        self._scheduler = scheduler or BackgroundScheduler(timezone=default_timezone)
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        if not self._scheduler.running:
            self._scheduler.start()
            logger.info("Trigger scheduler started")

    def shutdown(self, wait: bool = False) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info("Trigger scheduler shut down")

    def _lock_for(self, trigger_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(trigger_id)
            if lock is None:
                lock = self._locks[trigger_id] = threading.Lock()
            return lock

    @staticmethod
    def job_id(trigger_id: str) -> str:
        return f"{JOB_ID_PREFIX}{trigger_id}"

    def _install(self, trigger_id: str, trigger: CronTrigger) -> None:
        self._scheduler.add_job(
            self._fire,
            trigger=trigger,
            id=self.job_id(trigger_id),
            args=[trigger_id],
            replace_existing=True,
            coalesce=True,
            max_instances=1
        )

    def _uninstall(self, trigger_id: str) -> None:
        try:
            self._scheduler.remove_job(self.job_id(trigger_id))
        except JobLookupError:
            pass

    def has_job(self, trigger_id: str) -> bool:
        """Whether APScheduler currently holds a job for this trigger."""
        return self._scheduler.get_job(self.job_id(trigger_id)) is not None

    def create_schedule(self, trigger_id: str, workflow_id: str, cron_expression: str,
                        timezone: Optional[str] = None) -> ScheduledTriggerJob:
        """
        Register (or replace) the recurring job for a schedule trigger.

        The expression is validated before anything is persisted; repeated
        calls for the same trigger id replace the previous registration.

        Raises:
            SchedulingError: If the cron expression or timezone is invalid
        """
        tz = timezone or self.default_timezone
        trigger = validate_cron(cron_expression, tz)

        with self._lock_for(trigger_id):
            existing = self._store.get_schedule_job(trigger_id)
            saved = self._replace_locked(trigger_id, workflow_id, cron_expression, tz, trigger, existing)

        logger.info(f"Registered schedule {trigger_id} for workflow {workflow_id}: '{cron_expression}' ({tz})")
        return saved

    def _replace_locked(self, trigger_id: str, workflow_id: str, cron_expression: str, tz: str,
                        trigger: CronTrigger, existing: Optional[ScheduledTriggerJob]) -> ScheduledTriggerJob:
        # Caller holds the trigger's lock.
        paused = existing.paused if existing else False
        job = ScheduledTriggerJob(
            trigger_id=trigger_id,
            workflow_id=workflow_id,
            cron_expression=cron_expression,
            timezone=tz,
            next_fire_at=None if paused else _next_fire(trigger),
            paused=paused,
        )
        if not paused:
            self._install(trigger_id, trigger)
        try:
            return self._store.save_schedule_job(job)
        except Exception:
            self._uninstall(trigger_id)
            raise

    def update_schedule(self, trigger_id: str, cron_expression: Optional[str] = None,
                        timezone: Optional[str] = None) -> ScheduledTriggerJob:
        """Change the expression and/or timezone of an existing schedule."""
        with self._lock_for(trigger_id):
            existing = self._store.get_schedule_job(trigger_id)
            if existing is None:
                raise SchedulingError(f"No schedule registered for trigger {trigger_id}", trigger_id=trigger_id)
            cron_expression = cron_expression or existing.cron_expression
            tz = timezone or existing.timezone
            trigger = validate_cron(cron_expression, tz)
            saved = self._replace_locked(trigger_id, existing.workflow_id, cron_expression, tz, trigger, existing)

        logger.info(f"Updated schedule {trigger_id}: '{cron_expression}' ({tz})")
        return saved

    def pause_schedule(self, trigger_id: str) -> Optional[ScheduledTriggerJob]:
        """Stop firing a schedule; returns None when no schedule exists."""
        with self._lock_for(trigger_id):
            job = self._store.get_schedule_job(trigger_id)
            if job is None:
                return None
            self._uninstall(trigger_id)
            if job.paused and job.next_fire_at is None:
                return job
            saved = self._store.save_schedule_job(job.model_copy(update={"paused": True, "next_fire_at": None}))
        logger.info(f"Paused schedule {trigger_id}")
        return saved

    def resume_schedule(self, trigger_id: str) -> Optional[ScheduledTriggerJob]:
        """Resume a paused schedule, recomputing its next fire time."""
        with self._lock_for(trigger_id):
            job = self._store.get_schedule_job(trigger_id)
            if job is None:
                return None
            trigger = build_cron_trigger(job.cron_expression, job.timezone)
            self._install(trigger_id, trigger)
            saved = self._store.save_schedule_job(
                job.model_copy(update={"paused": False, "next_fire_at": _next_fire(trigger)})
            )
        logger.info(f"Resumed schedule {trigger_id}")
        return saved

    def remove_schedule(self, trigger_id: str) -> bool:
        """Delete a schedule; a no-op returning False when it does not exist."""
        with self._lock_for(trigger_id):
            self._uninstall(trigger_id)
            removed = self._store.delete_schedule_job(trigger_id)
        if removed:
            logger.info(f"Removed schedule {trigger_id}")
        return removed

    def get_schedule(self, trigger_id: str) -> Optional[ScheduledTriggerJob]:
        return self._store.get_schedule_job(trigger_id)

    def list_schedules(self, workflow_id: Optional[str] = None) -> List[ScheduledTriggerJob]:
        return self._store.list_schedule_jobs(workflow_id)

    def set_workflow_schedules_paused(self, workflow_id: str, paused: bool) -> List[ScheduledTriggerJob]:
        """Pause or resume every schedule of a workflow, following its activation state."""
        updated = []
        for job in self._store.list_schedule_jobs(workflow_id):
            result = self.pause_schedule(job.trigger_id) if paused else self.resume_schedule(job.trigger_id)
            if result is not None:
                updated.append(result)
        return updated

    def restore_schedules(self) -> int:
        """Re-install persisted, unpaused schedules. Returns the number restored."""
        restored = 0
        for job in self._store.list_schedule_jobs():
            if job.paused:
                continue
            with self._lock_for(job.trigger_id):
                try:
                    trigger = build_cron_trigger(job.cron_expression, job.timezone)
                except SchedulingError as e:
                    logger.error(f"Cannot restore schedule {job.trigger_id}: {e.message}")
                    continue
                self._install(job.trigger_id, trigger)
                self._store.save_schedule_job(job.model_copy(update={"next_fire_at": _next_fire(trigger)}))
                restored += 1
        if restored:
            logger.info(f"Restored {restored} schedule(s)")
        return restored

    def _fire(self, trigger_id: str) -> None:
        """APScheduler job body: start one execution for the trigger's workflow."""
        job = self._store.get_schedule_job(trigger_id)
        if job is None or job.paused:
            logger.debug(f"Schedule {trigger_id} fired while removed or paused; ignoring")
            return

        try:
            workflow = self._store.get_workflow(job.workflow_id)
        except WorkflowNotFoundError:
            logger.warning(f"Schedule {trigger_id} points at missing workflow {job.workflow_id}")
            return

        if not workflow.is_active:
            logger.info(f"Skipping schedule {trigger_id}: workflow {workflow.id} is inactive")
        else:
            trigger_input = build_schedule_trigger_input(trigger_id, job.next_fire_at, datetime.utcnow())
            try:
                execution = self._start_execution(job.workflow_id, trigger_input)
                logger.info(f"Schedule {trigger_id} started execution {getattr(execution, 'id', None)}")
            except WorkflowEngineError as e:
                logger.error(f"Schedule {trigger_id} could not start workflow {job.workflow_id}: {e.message}")

        self.refresh_next_fire(trigger_id)

    def refresh_next_fire(self, trigger_id: str) -> Optional[ScheduledTriggerJob]:
        """Recompute and persist ``next_fire_at`` for an unpaused schedule."""
        with self._lock_for(trigger_id):
            job = self._store.get_schedule_job(trigger_id)
            if job is None or job.paused:
                return job
            trigger = build_cron_trigger(job.cron_expression, job.timezone)
            return self._store.save_schedule_job(job.model_copy(update={"next_fire_at": _next_fire(trigger)}))
