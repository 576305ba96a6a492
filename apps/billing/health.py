"""
Billing consistency report backing ``GET /api/billing/accounts/health/``.

Everything here is read-only; fixing what it finds is ``repair``.
"""

from datetime import timedelta

from django.db.models import Count, DecimalField, Q, Sum, Value
from django.db.models.functions import Coalesce
from django.utils import timezone

from apps.opd.models import Visit
from .enums import ItemStatus, ReferenceType
from .models import BillingAccount, BillingItem, ReconciliationIssue, ZERO


def _live_accounts(database):
    return BillingAccount.objects.using(database).filter(deleted_at__isnull=True)


def duplicate_encounters(database='default'):
    return list(
        _live_accounts(database).order_by().values('encounter_id')
        .annotate(accounts=Count('id'))
        .filter(accounts__gt=1)
        .values_list('encounter_id', flat=True)
    )


def drifted_accounts(database='default'):
    """Accounts whose stored total differs from the sum of their live items."""
    item_total = Coalesce(
        Sum('items__amount', filter=~Q(items__status=ItemStatus.CANCELLED)),
        Value(ZERO),
        output_field=DecimalField(max_digits=12, decimal_places=2),
    )
    drifted = set()
    for account in _live_accounts(database).annotate(item_total=item_total):
        if account.total_amount != account.item_total:
            drifted.add(account.encounter_id)
        elif account.balance != account.net_amount - account.amount_paid:
            drifted.add(account.encounter_id)
    return sorted(drifted)


def unbilled_consultations(context, days=7):
    """Completed visits of the branch in the last ``days`` with no live consultation charge."""
    since = timezone.now() - timedelta(days=days)
    completed = list(Visit.objects.using(context.database).filter(
        branch_id=context.branch_id,
        status='completed',
        consultation_completed_at__gte=since,
    ).values_list('id', flat=True))
    if not completed:
        return []

    charged = set(
        BillingItem.objects.using(context.database).filter(
            reference_type=ReferenceType.CONSULTATION,
            reference_id__in=[str(visit_id) for visit_id in completed],
            account__deleted_at__isnull=True,
        ).exclude(status=ItemStatus.CANCELLED).values_list('reference_id', flat=True)
    )
    return [visit_id for visit_id in completed if str(visit_id) not in charged]


def billing_health(context, days=7):
    database = context.database
    open_issues = ReconciliationIssue.objects.using(database).filter(resolved_at__isnull=True)
    report = {
        'open_issues': open_issues.count(),
        'open_issue_encounters': sorted(set(open_issues.values_list('encounter_id', flat=True))),
        'duplicate_encounters': sorted(duplicate_encounters(database)),
        'drifted_encounters': drifted_accounts(database),
        'unbilled_consultations': unbilled_consultations(context, days=days),
        'checked_at': timezone.now().isoformat(),
    }
    report['healthy'] = not any([
        report['open_issues'],
        report['duplicate_encounters'],
        report['drifted_encounters'],
        report['unbilled_consultations'],
    ])
    return report
