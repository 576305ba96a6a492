# billing/management/commands/repair_billing.py
from django.core.management.base import BaseCommand, CommandError

from apps.billing.models import ReconciliationIssue
from apps.billing.reconciler import BillingReconciler
from apps.opd.models import Visit
from common.context import RequestContext


class Command(BaseCommand):
    help = 'Rebuild billing for encounters from their clinical records'

    def add_arguments(self, parser):
        parser.add_argument(
            '--encounter',
            action='append',
            type=int,
            default=[],
            help='Encounter (visit) id to repair; may be repeated',
        )
        parser.add_argument(
            '--open-issues',
            action='store_true',
            help='Repair every encounter with an open reconciliation issue',
        )
        parser.add_argument(
            '--branch',
            help='Branch id to act as (defaults to the branch of each visit)',
        )
        parser.add_argument(
            '--database',
            default='default',
            help='Database alias to repair',
        )

    def handle(self, *args, **options):
        database = options['database']
        encounters = list(options['encounter'])
        if options['open_issues']:
            encounters.extend(
                ReconciliationIssue.objects.using(database)
                .filter(resolved_at__isnull=True)
                .values_list('encounter_id', flat=True)
            )
        encounters = sorted(set(encounters))
        if not encounters:
            raise CommandError('Nothing to repair: pass --encounter or --open-issues')

        repaired = failed = 0
        for encounter_id in encounters:
            branch_id = options['branch']
            if not branch_id:
                branch_id = (
                    Visit.objects.using(database)
                    .filter(pk=encounter_id)
                    .values_list('branch_id', flat=True)
                    .first()
                )
            if not branch_id:
                self.stdout.write(self.style.WARNING(f'  ! encounter {encounter_id}: visit not found, skipped'))
                failed += 1
                continue

            reconciler = BillingReconciler(RequestContext.system(branch_id, database=database))
            try:
                result = reconciler.repair(encounter_id)
            except Exception as e:
                self.stdout.write(self.style.ERROR(f'  ✗ encounter {encounter_id}: {e}'))
                failed += 1
                continue

            repaired += 1
            balance = result.account.balance if result.account else '-'
            self.stdout.write(f'  ✓ encounter {encounter_id}: {result.outcomes} balance={balance}')

        self.stdout.write(self.style.SUCCESS(f'Repaired {repaired} encounter(s), {failed} failed'))
