"""
Billing reconciliation.

Keeps billing items in step with the clinical records that caused them and
keeps each account's totals equal to the sum of its items:

    total_amount = sum(item.amount for non-cancelled items)
    net_amount   = total_amount - discount_amount
    balance      = net_amount - amount_paid

Items are keyed by (encounter, reference_type, reference_id), so posting the
same clinical event twice leaves one item. Failures while charging are
logged and stored as ReconciliationIssue rows; they never undo the clinical
action, and ``repair`` rebuilds billing from the clinical records.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Optional, Tuple

from django.db import DatabaseError, transaction
from django.utils import timezone
from rest_framework.exceptions import ValidationError

from common.exceptions import ReconciliationFailure
from .enums import AccountStatus, ItemStatus, ReferenceType
from .models import BillingAccount, BillingItem, Invoice, Payment, ReconciliationIssue, ZERO
from .pricing import PriceResolver
from .repositories import BillingRepository
from .sources import CHARGE_SOURCES, source_for

logger = logging.getLogger(__name__)

CREATED = 'created'
UNCHANGED = 'unchanged'
CORRECTED = 'corrected'
REINSTATED = 'reinstated'
CANCELLED = 'cancelled'


MAX_QUANTITY = 10000


def normalize_quantity(value):
    """Positive integer quantity: numbers are truncated, junk becomes 1, capped at MAX_QUANTITY."""
    try:
        number = Decimal(str(value).strip())
        if not number.is_finite():
            return 1
        quantity = int(number)
    except (InvalidOperation, ValueError, TypeError, OverflowError):
        return 1
    return min(max(1, quantity), MAX_QUANTITY)


def to_money(value, field_name='amount'):
    try:
        amount = Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        raise ValidationError({field_name: 'A valid amount is required.'})
    if not amount.is_finite():
        raise ValidationError({field_name: 'A valid amount is required.'})
    return amount.quantize(Decimal('0.01'))


@dataclass(frozen=True)
class ChargeResult:
    item: BillingItem
    account: BillingAccount
    outcome: str

    @property
    def created(self):
        return self.outcome == CREATED


@dataclass(frozen=True)
class DeduplicationResult:
    survivor: Optional[BillingAccount]
    removed_account_ids: Tuple[int, ...] = ()
    moved_items: int = 0
    dropped_items: int = 0

    @property
    def changed(self):
        return bool(self.removed_account_ids)


@dataclass
class RepairResult:
    encounter_id: int
    account: Optional[BillingAccount] = None
    deduplication: Optional[DeduplicationResult] = None
    outcomes: dict = field(default_factory=dict)


class BillingReconciler:

    def __init__(self, context, repository=None, prices=None):
        self.context = context
        self.repository = repository or BillingRepository(context)
        self.prices = prices or PriceResolver(database=context.database)

    # ------------------------------------------------------------------
    # totals

    def recompute(self, account, invoice=None):
        """Recompute an already locked account from its items and re-project its invoice."""
        repo = self.repository
        total, discount = repo.item_totals(account)
        account.total_amount = total
        account.discount_amount = discount
        account.net_amount = total - discount
        account.balance = account.net_amount - account.amount_paid

        if account.net_amount > ZERO and account.balance <= ZERO:
            if account.status != AccountStatus.CLOSED:
                logger.info(f"Billing account {account.account_number} settled; closing")
            account.status = AccountStatus.CLOSED
            repo.settle_items(account)
        else:
            account.status = AccountStatus.OPEN

        account.save(using=repo.database, update_fields=[
            'total_amount', 'discount_amount', 'net_amount', 'amount_paid',
            'balance', 'status', 'updated_at',
        ])

        invoice = invoice or repo.invoice_for_encounter(account.encounter_id)
        if invoice is not None:
            invoice.project_from(account)
            invoice.save(using=repo.database)
        return account

    def reconcile_totals(self, encounter_id):
        """Recompute every live account of the encounter under row locks."""
        repo = self.repository
        with repo.atomic():
            account = repo.lock_account(encounter_id)
            for duplicate in repo.lock_accounts(encounter_id)[1:]:
                self.recompute(duplicate)
            self.recompute(account)
        return account

    # ------------------------------------------------------------------
    # charges

    def materialize_charge(self, encounter_id, reference_type, reference_id, description,
                           quantity, unit_price, item_type=None, patient_ref='',
                           discount=ZERO, service_code='', price_source=''):
        """
        Idempotent upsert of the item keyed by (encounter, reference_type, reference_id).

        An existing unpaid item only has its quantity corrected; its posted
        unit price is kept.
        """
        reference_type = ReferenceType(reference_type)
        reference_id = str(reference_id)
        quantity = normalize_quantity(quantity)
        unit_price = to_money(unit_price, 'unit_price')
        discount = to_money(discount or ZERO, 'discount')
        if unit_price < ZERO or discount < ZERO:
            raise ValidationError({'unit_price': 'Prices and discounts cannot be negative.'})

        repo = self.repository
        with repo.atomic():
            accounts = repo.open_account(encounter_id, patient_ref)
            item = repo.find_item(accounts, reference_type, reference_id)

            if item is None:
                item, created = repo.create_item(
                    accounts[0],
                    item_type=item_type or source_for(reference_type).item_type,
                    service_code=service_code or '',
                    description=(description or reference_type.label)[:255],
                    quantity=quantity,
                    unit_price=unit_price,
                    discount_amount=discount,
                    price_source=price_source or '',
                    reference_type=reference_type,
                    reference_id=reference_id,
                    posted_by=self.context.actor,
                )
                outcome = CREATED if created else UNCHANGED
            elif item.status == ItemStatus.CANCELLED:
                item.status = ItemStatus.UNPAID
                item.cancelled_at = None
                item.quantity = quantity
                item.save(using=repo.database)
                outcome = REINSTATED
            elif item.quantity != quantity and item.status == ItemStatus.UNPAID:
                logger.info(
                    f"Correcting {reference_type} {reference_id} on encounter {encounter_id}: "
                    f"quantity {item.quantity} -> {quantity}"
                )
                item.quantity = quantity
                item.description = (description or item.description)[:255]
                item.save(using=repo.database)
                outcome = CORRECTED
            else:
                if item.quantity != quantity:
                    logger.warning(
                        f"Not correcting paid item {item.pk} ({reference_type} {reference_id}); "
                        f"quantity {item.quantity} vs {quantity}"
                    )
                outcome = UNCHANGED

            account = next(acc for acc in accounts if acc.pk == item.account_id)
            self.recompute(account)

        logger.info(f"Charge {reference_type}:{reference_id} on encounter {encounter_id} {outcome}")
        return ChargeResult(item=item, account=account, outcome=outcome)

    def cancel_charge(self, encounter_id, reference_type, reference_id):
        """Cancel the unpaid item for a clinical record that was withdrawn."""
        reference_type = ReferenceType(reference_type)
        repo = self.repository
        with repo.atomic():
            accounts = repo.lock_accounts(encounter_id)
            if not accounts:
                return None
            item = repo.find_item(accounts, reference_type, reference_id)
            if item is None:
                return None

            account = next(acc for acc in accounts if acc.pk == item.account_id)
            if item.status == ItemStatus.UNPAID:
                item.status = ItemStatus.CANCELLED
                item.cancelled_at = timezone.now()
                item.save(using=repo.database)
                outcome = CANCELLED
                self.recompute(account)
            else:
                if item.status == ItemStatus.PAID:
                    logger.warning(f"Paid item {item.pk} for {reference_type}:{reference_id} left in place")
                outcome = UNCHANGED

        return ChargeResult(item=item, account=account, outcome=outcome)

    def charge(self, reference_type, record):
        """Price and materialize (or cancel) the charge for one clinical record."""
        source = source_for(reference_type)
        request = source.request_for(record)
        if not source.is_billable(record):
            return self.cancel_charge(request.encounter_id, request.reference_type, request.reference_id)

        price = self.prices.resolve(request.category, request.lookup_term, code=request.code)
        return self.materialize_charge(
            request.encounter_id,
            request.reference_type,
            request.reference_id,
            request.description,
            request.quantity,
            price.unit_price,
            item_type=request.item_type,
            patient_ref=request.patient_ref,
            service_code=price.service_code,
            price_source=price.source,
        )

    def charge_safely(self, reference_type, record, operation='charge'):
        """
        ``charge`` inside a savepoint. Any failure is logged and stored as a
        ReconciliationIssue and None is returned; the caller's clinical work
        is left intact.
        """
        encounter_id = getattr(record, 'encounter_id', None)
        reference_id = str(record.pk)
        try:
            with transaction.atomic(using=self.repository.database):
                result = self.charge(reference_type, record)
        except Exception as e:
            failure = ReconciliationFailure(str(e), encounter_id, str(reference_type), reference_id)
            logger.error(
                f"Billing failed for {reference_type}:{reference_id} on encounter {encounter_id}: {e}",
                exc_info=True,
            )
            self.record_issue(failure, operation)
            return None

        self.resolve_issues(encounter_id, reference_type, reference_id)
        return result

    # ------------------------------------------------------------------
    # repair

    def deduplicate_accounts(self, encounter_id):
        """
        Collapse duplicate live accounts into the most recently updated one.

        Does nothing (no writes) when the encounter has at most one account.
        """
        repo = self.repository
        with repo.atomic():
            accounts = repo.lock_accounts(encounter_id)
            if len(accounts) <= 1:
                return DeduplicationResult(survivor=accounts[0] if accounts else None)

            survivor, duplicates = accounts[0], accounts[1:]
            kept = {
                item.reference_key: item
                for item in BillingItem.objects.using(repo.database).filter(account=survivor)
            }
            moved = dropped = 0
            now = timezone.now()

            for duplicate in duplicates:
                for item in BillingItem.objects.using(repo.database).filter(account=duplicate):
                    if item.reference_key in kept:
                        item.delete()
                        dropped += 1
                        continue
                    item.account = survivor
                    item.save(using=repo.database, update_fields=['account', 'updated_at'])
                    kept[item.reference_key] = item
                    moved += 1

                Payment.objects.using(repo.database).filter(account=duplicate).update(account=survivor)
                Invoice.objects.using(repo.database).filter(account=duplicate).update(account=survivor)
                survivor.amount_paid += duplicate.amount_paid

                duplicate.deleted_at = now
                duplicate.save(using=repo.database, update_fields=['deleted_at', 'updated_at'])

            self.recompute(survivor)

        removed = tuple(duplicate.pk for duplicate in duplicates)
        logger.warning(
            f"Collapsed {len(removed)} duplicate billing account(s) for encounter {encounter_id} "
            f"into {survivor.account_number}: {moved} item(s) moved, {dropped} duplicate item(s) dropped"
        )
        return DeduplicationResult(
            survivor=survivor,
            removed_account_ids=removed,
            moved_items=moved,
            dropped_items=dropped,
        )

    def repair(self, encounter_id):
        """
        Rebuild billing for one encounter from its clinical records:
        deduplicate accounts, re-derive every charge, reconcile totals and
        close any open issues.
        """
        result = RepairResult(encounter_id=encounter_id)
        repo = self.repository

        with repo.atomic():
            result.deduplication = self.deduplicate_accounts(encounter_id)

            for reference_type, source in CHARGE_SOURCES.items():
                for record in source.records_for(encounter_id, repo.database):
                    charged = self.charge(reference_type, record)
                    outcome = charged.outcome if charged else UNCHANGED
                    result.outcomes[outcome] = result.outcomes.get(outcome, 0) + 1

            if repo.find_account(encounter_id) is not None:
                result.account = self.reconcile_totals(encounter_id)

        self.resolve_issues(encounter_id)
        logger.info(f"Repaired billing for encounter {encounter_id}: {result.outcomes}")
        return result

    # ------------------------------------------------------------------
    # issues

    def record_issue(self, failure, operation):
        """Persist (or bump) the open issue for a failed charge; never raises."""
        try:
            with transaction.atomic(using=self.repository.database):
                issue = ReconciliationIssue.objects.using(self.repository.database).filter(
                    encounter_id=failure.encounter_id,
                    reference_type=failure.reference_type or '',
                    reference_id=failure.reference_id or '',
                    operation=operation,
                    resolved_at__isnull=True,
                ).select_for_update().first()
                if issue:
                    issue.occurrences += 1
                    issue.error = str(failure)
                    issue.last_seen_at = timezone.now()
                    issue.save(using=self.repository.database, update_fields=['occurrences', 'error', 'last_seen_at'])
                else:
                    issue = ReconciliationIssue.objects.using(self.repository.database).create(
                        encounter_id=failure.encounter_id,
                        reference_type=failure.reference_type or '',
                        reference_id=failure.reference_id or '',
                        operation=operation,
                        error=str(failure),
                    )
            return issue
        except DatabaseError as e:
            logger.error(f"Could not record reconciliation issue for encounter {failure.encounter_id}: {e}")
            return None

    def resolve_issues(self, encounter_id, reference_type=None, reference_id=None):
        issues = ReconciliationIssue.objects.using(self.repository.database).filter(
            encounter_id=encounter_id,
            resolved_at__isnull=True,
        )
        if reference_type is not None:
            issues = issues.filter(reference_type=str(reference_type))
        if reference_id is not None:
            issues = issues.filter(reference_id=str(reference_id))
        return issues.update(resolved_at=timezone.now())
