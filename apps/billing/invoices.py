"""
Invoices and payments.

An invoice is the payment-facing projection of an encounter's billing
account; its totals are always copied from the account by
``Invoice.project_from``. Payments lock the account before the invoice,
the same order the reconciler uses, so concurrent payments and charges
serialize instead of deadlocking.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal

from django.db import IntegrityError, transaction
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from common.exceptions import OverpaymentRejected, StateConflict
from .enums import PaymentMethod
from .models import Invoice, Payment, ZERO
from .reconciler import BillingReconciler, to_money
from .repositories import BillingRepository

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentResult:
    payment: Payment
    invoice: Invoice
    replayed: bool = False


class InvoiceProjector:

    def __init__(self, context, repository=None, reconciler=None):
        self.context = context
        self.repository = repository or BillingRepository(context)
        self.reconciler = reconciler or BillingReconciler(context, repository=self.repository)

    def ensure_invoice(self, encounter_id):
        """Return the encounter's invoice, creating it from the account the first time."""
        repo = self.repository
        with repo.atomic():
            account = repo.lock_account(encounter_id)
            invoice = repo.invoice_for_encounter(encounter_id, lock=True)
            if invoice is None:
                if not repo.account_has_billable_items(account):
                    raise StateConflict(
                        f"Encounter {encounter_id} has nothing to invoice.",
                        current_state={'account_status': account.status, 'net_amount': str(account.net_amount)},
                    )
                try:
                    with transaction.atomic(using=repo.database):
                        invoice = Invoice(encounter_id=encounter_id, account=account, patient_ref=account.patient_ref)
                        invoice.project_from(account)
                        invoice.save(using=repo.database)
                        invoice.invoice_number = f"INV/{timezone.localdate():%Y%m%d}/{invoice.pk:06d}"
                        invoice.save(using=repo.database, update_fields=['invoice_number'])
                    logger.info(f"Issued invoice {invoice.invoice_number} for encounter {encounter_id}")
                except IntegrityError:
                    invoice = repo.invoice_for_encounter(encounter_id, lock=True)
                    if invoice is None:
                        raise

            self.reconciler.recompute(account, invoice=invoice)
        return invoice

    def apply_payment(self, invoice_id, amount, method, reference=''):
        """
        Record a payment against an invoice.

        A repeated ``reference`` for the same invoice returns the original
        payment without applying it again. Amounts above the outstanding
        balance are rejected with the current balance in the error context.
        """
        amount = to_money(amount)
        if amount <= ZERO:
            raise ValidationError({'amount': 'Payment amount must be greater than zero.'})
        if method not in PaymentMethod.values:
            raise ValidationError({'method': f"Unsupported payment method '{method}'."})
        reference = (reference or '').strip()

        repo = self.repository
        # Resolve the account without a lock first so locks are taken account -> invoice
        encounter_id = repo.get_invoice(invoice_id).encounter_id

        with repo.atomic():
            account = repo.lock_account(encounter_id)
            invoice = repo.lock_invoice(invoice_id)

            if reference:
                existing = Payment.objects.using(repo.database).filter(invoice=invoice, reference=reference).first()
                if existing:
                    logger.info(f"Payment reference {reference} replayed on invoice {invoice.invoice_number}")
                    return PaymentResult(payment=existing, invoice=invoice, replayed=True)

            self.reconciler.recompute(account, invoice=invoice)
            if amount > invoice.balance:
                raise OverpaymentRejected(
                    f"Payment {amount} exceeds outstanding balance {invoice.balance}.",
                    current_state={
                        'invoice_status': invoice.status,
                        'balance': str(invoice.balance),
                        'paid_amount': str(invoice.paid_amount),
                    },
                )

            payment = Payment.objects.using(repo.database).create(
                invoice=invoice,
                account=account,
                amount=amount,
                method=method,
                reference=reference,
                received_by=self.context.actor,
            )
            account.amount_paid = Decimal(account.amount_paid) + amount
            self.reconciler.recompute(account, invoice=invoice)

        logger.info(
            f"Payment {amount} ({method}) applied to {invoice.invoice_number}; "
            f"balance {invoice.balance}, status {invoice.status}"
        )
        return PaymentResult(payment=payment, invoice=invoice)

    def get_for_encounter(self, encounter_id):
        invoice = self.repository.invoice_for_encounter(encounter_id)
        if invoice is None:
            raise NotFound(f"No invoice for encounter {encounter_id}.")
        return invoice
