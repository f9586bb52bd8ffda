"""Periodic driver that materializes every schedule slot that has started.

All dates and times are read in ``settings.TIME_ZONE``. A missed tick is
harmless: the next one finds the same unmaterialized slots and creates them,
because materialization is idempotent.
"""
import logging
import threading
from datetime import timedelta

from django.conf import settings
from django.db import close_old_connections
from django.db.models import Exists, OuterRef
from django.utils import timezone

from .materializer import materialize
from .models import Occurrence, Schedule, day_of_week
from .results import TickReport

logger = logging.getLogger(__name__)


def due_schedules(target_date, now):
    """Active schedules for ``target_date`` that have started and have no occurrence yet."""
    materialized = Occurrence.objects.filter(
        course_id=OuterRef('course_id'),
        occurrence_date=target_date,
        start_time=OuterRef('start_time'),
    )
    schedules = (
        Schedule.objects.filter(is_active=True, day_of_week=day_of_week(target_date))
        .exclude(Exists(materialized))
        .select_related('course')
    )
    if target_date == now.date():
        schedules = schedules.filter(start_time__lte=now.time())
    return schedules.order_by('start_time', 'pk')


class SchedulerDriver:
    """Runs ticks one at a time; a tick that overlaps a running one is skipped.

    The lock only covers this process. Two scheduler processes may tick at
    the same moment; that is harmless because ``materialize`` is idempotent
    per (course, date, start time) and the Deduction unique constraint
    stops a second charge.
    """

    def __init__(self, lookback_days=None):
        if lookback_days is None:
            lookback_days = settings.BALANCES_SCHEDULER_LOOKBACK_DAYS
        self.lookback_days = max(0, lookback_days)
        self._lock = threading.Lock()

    def tick(self, now=None):
        if not self._lock.acquire(blocking=False):
            logger.warning("Previous scheduler tick is still running; skipping this one")
            return None
        try:
            return self._run(timezone.localtime(now))
        finally:
            self._lock.release()

    def _run(self, now):
        report = TickReport(ran_at=now)
        today = now.date()
        for offset in range(self.lookback_days, -1, -1):
            target_date = today - timedelta(days=offset)
            for schedule in due_schedules(target_date, now):
                report.examined += 1
                try:
                    result = materialize(schedule, target_date, now=now)
                except Exception:
                    # The next tick retries this slot.
                    logger.exception("Materializing schedule %s for %s failed", schedule.pk, target_date)
                    report.errors.append((schedule.pk, target_date))
                    continue
                if result.created:
                    report.created.append(result.occurrence.pk)
                else:
                    report.skipped.append((schedule.pk, result.reason))

        logger.info(
            "Scheduler tick at %s: %d examined, %d created, %d skipped, %d failed",
            now.strftime('%Y-%m-%d %H:%M'), report.examined, len(report.created),
            len(report.skipped), len(report.errors),
        )
        return report

    def run_forever(self, interval_seconds=None, stop_event=None, max_ticks=None):
        """Tick immediately to catch up, then once per interval until stopped."""
        interval = interval_seconds or settings.BALANCES_SCHEDULER_INTERVAL_SECONDS
        stop_event = stop_event or threading.Event()
        ticks = 0
        logger.info("Scheduler started (every %ss, timezone %s)", interval, settings.TIME_ZONE)
        while not stop_event.is_set():
            close_old_connections()
            try:
                self.tick()
            except Exception:
                logger.exception("Scheduler tick failed; retrying on the next interval")
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            stop_event.wait(interval)
        logger.info("Scheduler stopped after %d tick(s)", ticks)
        return ticks
