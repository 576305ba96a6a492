"""
Billing persistence.

Methods take their database alias from the RequestContext; the ``lock_*``
methods must be called inside ``repository.atomic()`` so their row locks
last until the caller's transaction ends.
"""

import logging
from decimal import Decimal

from django.db import IntegrityError, transaction
from django.db.models import Q, Sum
from rest_framework.exceptions import NotFound

from .enums import ItemStatus
from .models import BillingAccount, BillingItem, Invoice, ZERO

logger = logging.getLogger(__name__)


class BillingRepository:

    def __init__(self, context):
        self.context = context
        self.database = context.database

    def atomic(self):
        return transaction.atomic(using=self.database)

    # ----------------------------------------------------------- accounts

    def live_accounts(self, encounter_id):
        return BillingAccount.objects.using(self.database).filter(
            encounter_id=encounter_id,
            deleted_at__isnull=True,
        ).order_by('-updated_at', '-id')

    def find_account(self, encounter_id):
        return self.live_accounts(encounter_id).first()

    def lock_accounts(self, encounter_id):
        """All live accounts of the encounter, most recently updated first, row-locked."""
        return list(self.live_accounts(encounter_id).select_for_update())

    def lock_account(self, encounter_id):
        accounts = self.lock_accounts(encounter_id)
        if not accounts:
            raise NotFound(f"No billing account for encounter {encounter_id}.")
        return accounts[0]

    def lock_account_by_id(self, account_id):
        try:
            return BillingAccount.objects.using(self.database).select_for_update().get(
                pk=account_id, deleted_at__isnull=True,
            )
        except BillingAccount.DoesNotExist:
            raise NotFound(f"Billing account {account_id} not found.")

    def open_account(self, encounter_id, patient_ref=''):
        """
        Locked live accounts of the encounter, creating the first one if none
        exists. The first element is the account new charges go to.
        """
        accounts = self.lock_accounts(encounter_id)
        if accounts:
            return accounts

        try:
            with transaction.atomic(using=self.database):
                account = BillingAccount.objects.using(self.database).create(
                    branch_id=self.context.branch_id,
                    encounter_id=encounter_id,
                    account_number=BillingAccount.number_for(encounter_id),
                    patient_ref=patient_ref or '',
                )
            logger.info(f"Opened billing account {account.account_number} for encounter {encounter_id}")
            return [account]
        except IntegrityError:
            # A concurrent first charge created it; use theirs
            accounts = self.lock_accounts(encounter_id)
            if not accounts:
                raise
            return accounts

    # -------------------------------------------------------------- items

    def find_item(self, accounts, reference_type, reference_id):
        return BillingItem.objects.using(self.database).filter(
            account__in=accounts,
            reference_type=reference_type,
            reference_id=str(reference_id),
        ).order_by('created_at', 'id').first()

    def create_item(self, account, **fields):
        """Insert an item; on a unique-key race return the row that won. -> (item, created)"""
        try:
            with transaction.atomic(using=self.database):
                item = BillingItem(account=account, encounter_id=account.encounter_id, **fields)
                item.save(using=self.database)
                return item, True
        except IntegrityError:
            item = self.find_item([account], fields['reference_type'], fields['reference_id'])
            if item is None:
                raise
            return item, False

    def item_totals(self, account):
        totals = BillingItem.objects.using(self.database).filter(account=account).exclude(
            status=ItemStatus.CANCELLED,
        ).aggregate(
            total=Sum('amount'),
            discount=Sum('discount_amount'),
        )
        return (
            Decimal(str(totals['total'] or ZERO)).quantize(Decimal('0.01')),
            Decimal(str(totals['discount'] or ZERO)).quantize(Decimal('0.01')),
        )

    def settle_items(self, account):
        return BillingItem.objects.using(self.database).filter(
            account=account, status=ItemStatus.UNPAID,
        ).update(status=ItemStatus.PAID)

    # ----------------------------------------------------------- invoices

    def invoice_for_encounter(self, encounter_id, lock=False):
        queryset = Invoice.objects.using(self.database).filter(encounter_id=encounter_id)
        if lock:
            queryset = queryset.select_for_update()
        return queryset.first()

    def get_invoice(self, invoice_id):
        try:
            return Invoice.objects.using(self.database).get(pk=invoice_id)
        except (Invoice.DoesNotExist, ValueError, TypeError):
            raise NotFound(f"Invoice {invoice_id} not found.")

    def lock_invoice(self, invoice_id):
        try:
            return Invoice.objects.using(self.database).select_for_update().get(pk=invoice_id)
        except (Invoice.DoesNotExist, ValueError, TypeError):
            raise NotFound(f"Invoice {invoice_id} not found.")

    def account_has_billable_items(self, account):
        return BillingItem.objects.using(self.database).filter(
            Q(account=account) & ~Q(status=ItemStatus.CANCELLED)
        ).exists()
