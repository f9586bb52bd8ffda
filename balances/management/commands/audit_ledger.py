from django.core.management.base import BaseCommand
from django.db import transaction

from balances import ledger


class Command(BaseCommand):
    help = 'Check that payment balances and overdue flags agree with the deduction ledger'

    def add_arguments(self, parser):
        parser.add_argument(
            '--fix', action='store_true',
            help='Rebuild drifted balances and flags from the ledger',
        )

    def handle(self, *args, **options):
        fix = options['fix']
        problems = 0

        with transaction.atomic():
            for payment, expected in ledger.payment_discrepancies():
                problems += 1
                self.stdout.write(self.style.WARNING(
                    f"Payment {payment.pk}: classes_remaining={payment.classes_remaining}, ledger says {expected}"
                ))
                if fix:
                    value = ledger.rebuild_remaining(payment, expected)
                    self.stdout.write(f"  -> set to {value}")

            for charge in ledger.conflicting_charges().select_related('occurrence'):
                problems += 1
                self.stdout.write(self.style.WARNING(
                    f"Student {charge.student_id} is both billed and overdue for occurrence {charge.occurrence_id}"
                ))
                if fix:
                    charge.delete()
                    ledger.refresh_overdue_flag(charge.occurrence_id)

            for occurrence in ledger.stale_overdue_flags():
                problems += 1
                self.stdout.write(self.style.WARNING(
                    f"Occurrence {occurrence.pk}: is_overdue={occurrence.is_overdue} disagrees with overdue charges"
                ))
                if fix:
                    ledger.refresh_overdue_flag(occurrence.pk)

        if not problems:
            self.stdout.write(self.style.SUCCESS('Ledger is consistent.'))
        elif fix:
            self.stdout.write(self.style.SUCCESS(f'Repaired {problems} problem(s).'))
        else:
            self.stdout.write(self.style.ERROR(f'Found {problems} problem(s). Re-run with --fix to repair.'))
