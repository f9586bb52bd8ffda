from django.core.management.base import BaseCommand
from django.utils import timezone

from balances.reports import build_balance_workbook


class Command(BaseCommand):
    help = 'Write per-student class balances and unpaid overdue classes to an Excel workbook'

    def add_arguments(self, parser):
        parser.add_argument(
            '--output', default=None,
            help='Path of the .xlsx file (default: balances_<date>.xlsx)',
        )

    def handle(self, *args, **options):
        path = options['output'] or f"balances_{timezone.localdate():%Y-%m-%d}.xlsx"
        wb = build_balance_workbook()
        wb.save(path)
        self.stdout.write(self.style.SUCCESS(f'Wrote {path}'))
