# billing/models.py
from django.db import models
from django.db.models import Q
from django.core.validators import MinValueValidator
from django.utils import timezone
from decimal import Decimal

from common.mixins import BranchScopedModel
from .enums import (
    AccountStatus, InvoiceStatus, ItemStatus, ItemType, PaymentMethod, ReferenceType,
)

ZERO = Decimal('0.00')
LIVE_ACCOUNT_CONSTRAINT = 'uq_billing_account_live_encounter'


def money_field(**kwargs):
    kwargs.setdefault('default', ZERO)
    return models.DecimalField(max_digits=12, decimal_places=2, **kwargs)


class BillingAccount(BranchScopedModel):
    """
    Financial aggregate for one encounter.

    Totals are derived from the account's non-cancelled items and are only
    written by ``apps.billing.reconciler.BillingReconciler``.
    """

    account_number = models.CharField(max_length=50, db_index=True)
    encounter_id = models.PositiveIntegerField(db_index=True)
    patient_ref = models.CharField(max_length=64, blank=True, default='')

    status = models.CharField(max_length=10, choices=AccountStatus.choices, default=AccountStatus.OPEN)
    total_amount = money_field()
    discount_amount = money_field()
    net_amount = money_field()
    amount_paid = money_field(validators=[MinValueValidator(ZERO)])
    balance = money_field()

    deleted_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'billing_accounts'
        ordering = ['-updated_at', '-id']
        constraints = [
            models.UniqueConstraint(
                fields=['encounter_id'],
                condition=Q(deleted_at__isnull=True),
                name=LIVE_ACCOUNT_CONSTRAINT,
            ),
        ]

    def __str__(self):
        return f"{self.account_number} ({self.status})"

    @property
    def is_deleted(self):
        return self.deleted_at is not None

    @staticmethod
    def number_for(encounter_id):
        return f"BA{int(encounter_id):08d}"


class BillingItem(models.Model):
    """One charge line tied to the clinical record that caused it."""

    account = models.ForeignKey(
        BillingAccount,
        on_delete=models.CASCADE,
        related_name='items'
    )
    encounter_id = models.PositiveIntegerField(db_index=True)

    item_type = models.CharField(max_length=20, choices=ItemType.choices)
    service_code = models.CharField(max_length=50, blank=True, default='')
    description = models.CharField(max_length=255)
    quantity = models.PositiveIntegerField(default=1, validators=[MinValueValidator(1)])
    unit_price = money_field(validators=[MinValueValidator(ZERO)])
    amount = money_field()
    discount_amount = money_field(validators=[MinValueValidator(ZERO)])
    net_amount = money_field()
    price_source = models.CharField(max_length=20, blank=True, default='')

    status = models.CharField(max_length=10, choices=ItemStatus.choices, default=ItemStatus.UNPAID)
    reference_type = models.CharField(max_length=20, choices=ReferenceType.choices)
    reference_id = models.CharField(max_length=64)

    posted_by = models.CharField(max_length=64, blank=True, default='')
    cancelled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'billing_items'
        ordering = ['created_at', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['account', 'reference_type', 'reference_id'],
                name='uq_billing_item_reference',
            ),
        ]
        indexes = [
            models.Index(fields=['encounter_id', 'reference_type', 'reference_id'], name='billing_item_ref_idx'),
        ]

    def __str__(self):
        return f"{self.description} x{self.quantity} = {self.amount}"

    def save(self, *args, **kwargs):
        """Amount and net always follow quantity, price and discount."""
        self.amount = Decimal(str(self.quantity)) * Decimal(str(self.unit_price))
        self.net_amount = self.amount - Decimal(str(self.discount_amount or ZERO))
        super().save(*args, **kwargs)

    @property
    def reference_key(self):
        return (self.reference_type, str(self.reference_id))


class Invoice(models.Model):
    """Payment-facing projection of a billing account."""

    account = models.ForeignKey(
        BillingAccount,
        on_delete=models.PROTECT,
        related_name='invoices'
    )
    encounter_id = models.PositiveIntegerField(unique=True)
    invoice_number = models.CharField(max_length=50, unique=True, null=True, blank=True)
    patient_ref = models.CharField(max_length=64, blank=True, default='')

    total_amount = money_field()
    discount_amount = money_field()
    net_amount = money_field()
    paid_amount = money_field(validators=[MinValueValidator(ZERO)])
    balance = money_field()
    status = models.CharField(max_length=10, choices=InvoiceStatus.choices, default=InvoiceStatus.UNPAID)

    issued_at = models.DateTimeField(default=timezone.now)
    paid_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'invoices'
        ordering = ['-issued_at', '-id']

    def __str__(self):
        return self.invoice_number or f"Invoice #{self.pk}"

    @staticmethod
    def status_for(balance, paid_amount):
        if balance <= ZERO:
            return InvoiceStatus.PAID
        if paid_amount > ZERO:
            return InvoiceStatus.PARTIAL
        return InvoiceStatus.UNPAID

    def project_from(self, account):
        """Copy account totals; paid_amount never goes down."""
        self.account = account
        self.patient_ref = self.patient_ref or account.patient_ref
        self.total_amount = account.total_amount
        self.discount_amount = account.discount_amount
        self.net_amount = account.net_amount
        self.paid_amount = max(self.paid_amount or ZERO, account.amount_paid)
        self.balance = self.net_amount - self.paid_amount
        self.status = self.status_for(self.balance, self.paid_amount)
        if self.status == InvoiceStatus.PAID:
            self.paid_at = self.paid_at or timezone.now()
        else:
            self.paid_at = None


class Payment(models.Model):
    invoice = models.ForeignKey(
        Invoice,
        on_delete=models.PROTECT,
        related_name='payments'
    )
    account = models.ForeignKey(
        BillingAccount,
        on_delete=models.PROTECT,
        related_name='payments'
    )
    amount = money_field(validators=[MinValueValidator(Decimal('0.01'))])
    method = models.CharField(max_length=20, choices=PaymentMethod.choices)
    reference = models.CharField(max_length=100, blank=True, default='', help_text="Client idempotency key / receipt number")
    received_by = models.CharField(max_length=64, blank=True, default='')
    received_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'billing_payments'
        ordering = ['received_at', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['invoice', 'reference'],
                condition=~Q(reference=''),
                name='uq_payment_invoice_reference',
            ),
        ]

    def __str__(self):
        return f"{self.amount} via {self.method} on {self.invoice}"


class ReconciliationIssue(models.Model):
    """Billing that failed after its clinical action succeeded; open until repaired."""

    encounter_id = models.PositiveIntegerField(db_index=True)
    reference_type = models.CharField(max_length=20, choices=ReferenceType.choices, blank=True, default='')
    reference_id = models.CharField(max_length=64, blank=True, default='')
    operation = models.CharField(max_length=50)
    error = models.TextField()
    occurrences = models.PositiveIntegerField(default=1)

    first_seen_at = models.DateTimeField(auto_now_add=True)
    last_seen_at = models.DateTimeField(default=timezone.now)
    resolved_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'billing_reconciliation_issues'
        ordering = ['-last_seen_at', '-id']
        indexes = [
            models.Index(fields=['resolved_at', 'encounter_id'], name='recon_issue_open_idx'),
        ]

    def __str__(self):
        return f"{self.operation} for encounter {self.encounter_id}: {self.error[:60]}"
