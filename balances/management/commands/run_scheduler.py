import logging
import signal
import threading

from django.conf import settings
from django.core.management.base import BaseCommand

from balances.scheduler import SchedulerDriver

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = 'Create class occurrences for schedules that have started and bill enrolled students'

    def add_arguments(self, parser):
        parser.add_argument(
            '--once', action='store_true',
            help='Run a single tick and exit',
        )
        parser.add_argument(
            '--interval', type=int, default=settings.BALANCES_SCHEDULER_INTERVAL_SECONDS,
            help='Seconds between ticks',
        )
        parser.add_argument(
            '--lookback-days', type=int, default=None,
            help='Also catch up on this many previous days',
        )

    def handle(self, *args, **options):
        driver = SchedulerDriver(lookback_days=options['lookback_days'])

        if options['once']:
            report = driver.tick()
            self.stdout.write(self.style.SUCCESS(
                f"Created {len(report.created)} occurrence(s), "
                f"skipped {len(report.skipped)}, failed {len(report.errors)}"
            ))
            return

        stop = threading.Event()

        def _stop(signum, frame):
            logger.info("Received signal %s; stopping after the current tick", signum)
            stop.set()

        signal.signal(signal.SIGINT, _stop)
        signal.signal(signal.SIGTERM, _stop)
        driver.run_forever(interval_seconds=options['interval'], stop_event=stop)
