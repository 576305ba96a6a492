"""
Tests for billing reconciliation, invoices and payments.
"""

import jwt
import uuid
from decimal import Decimal
from io import StringIO
from unittest.mock import MagicMock

from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import DatabaseError, IntegrityError, connection, transaction
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from apps.opd.models import Visit
from apps.services.models import ServiceCatalogue
from common.context import RequestContext
from common.exceptions import OverpaymentRejected, StateConflict
from .enums import ReferenceType
from .health import billing_health, unbilled_consultations
from .invoices import InvoiceProjector
from .models import LIVE_ACCOUNT_CONSTRAINT, BillingAccount, BillingItem, Invoice, Payment, ReconciliationIssue
from .pricing import PriceResolver
from .reconciler import MAX_QUANTITY, BillingReconciler, normalize_quantity
from .sources import source_for

TEST_SECRET = 'billing-test-secret'


def completed_visit(branch_id, patient_ref='P-1'):
    today = timezone.localdate()
    return Visit.objects.create(
        branch_id=branch_id,
        patient_ref=patient_ref,
        scheduled_date=today,
        visit_date=today,
        status='completed',
        physician_code='DR-1',
        physician_name='Dr. Rao',
        consultation_completed_at=timezone.now(),
    )


def allow_duplicate_accounts():
    """Drop the live-account unique index; the test transaction brings it back."""
    with connection.cursor() as cursor:
        cursor.execute(f"DROP INDEX {connection.ops.quote_name(LIVE_ACCOUNT_CONSTRAINT)}")


def add_item(account, reference_type, reference_id, unit_price, quantity=1):
    item = BillingItem(
        account=account,
        encounter_id=account.encounter_id,
        item_type='pharmacy' if reference_type == 'prescription' else 'lab',
        description=f"{reference_type} {reference_id}",
        quantity=quantity,
        unit_price=Decimal(unit_price),
        reference_type=reference_type,
        reference_id=str(reference_id),
    )
    item.save()
    return item


# ============================================================================
# RECONCILER
# ============================================================================

class BillingReconcilerTest(TestCase):

    def setUp(self):
        self.context = RequestContext(branch_id=str(uuid.uuid4()), user_id='cashier-1')
        self.reconciler = BillingReconciler(self.context)

    def test_materialize_is_idempotent(self):
        first = self.reconciler.materialize_charge(101, 'prescription', 7, 'Paracetamol', 15, '5.00')
        second = self.reconciler.materialize_charge(101, 'prescription', 7, 'Paracetamol', 15, '5.00')

        self.assertEqual(first.outcome, 'created')
        self.assertEqual(second.outcome, 'unchanged')
        self.assertEqual(first.item.pk, second.item.pk)
        self.assertEqual(BillingItem.objects.filter(encounter_id=101).count(), 1)

        account = BillingAccount.objects.get(encounter_id=101)
        self.assertEqual(account.total_amount, Decimal('75.00'))
        self.assertEqual(account.balance, Decimal('75.00'))
        self.assertEqual(account.account_number, 'BA00000101')

    def test_quantity_correction_keeps_posted_price(self):
        self.reconciler.materialize_charge(102, 'prescription', 1, 'Ibuprofen', 2, '10.00')
        result = self.reconciler.materialize_charge(102, 'prescription', 1, 'Ibuprofen', 3, '99.00')

        self.assertEqual(result.outcome, 'corrected')
        self.assertEqual(result.item.unit_price, Decimal('10.00'))
        self.assertEqual(result.item.amount, Decimal('30.00'))
        self.assertEqual(result.account.total_amount, Decimal('30.00'))

    def test_quantities_are_normalised(self):
        self.assertEqual(normalize_quantity('2.9'), 2)
        self.assertEqual(normalize_quantity('abc'), 1)
        self.assertEqual(normalize_quantity(None), 1)
        self.assertEqual(normalize_quantity(-4), 1)
        self.assertEqual(normalize_quantity(0), 1)
        self.assertEqual(normalize_quantity('inf'), 1)
        self.assertEqual(normalize_quantity('-Infinity'), 1)
        self.assertEqual(normalize_quantity('nan'), 1)
        self.assertEqual(normalize_quantity(Decimal('sNaN')), 1)
        self.assertEqual(normalize_quantity('1e12'), MAX_QUANTITY)
        self.assertEqual(normalize_quantity(float('inf')), 1)

    def test_negative_price_is_rejected(self):
        with self.assertRaises(ValidationError):
            self.reconciler.materialize_charge(103, 'lab_order', 1, 'CBC', 1, '-1')
        self.assertFalse(BillingAccount.objects.filter(encounter_id=103).exists())

    def test_unknown_reference_type(self):
        with self.assertRaises(ValueError):
            source_for('invoice')
        with self.assertRaises(ValueError):
            self.reconciler.materialize_charge(104, 'invoice', 1, 'Nope', 1, '1.00')

    def test_cancel_and_reinstate(self):
        self.reconciler.materialize_charge(105, 'lab_order', 3, 'CBC', 1, '350.00')
        self.reconciler.materialize_charge(105, 'prescription', 4, 'Aspirin', 2, '8.00')

        cancelled = self.reconciler.cancel_charge(105, 'lab_order', 3)
        self.assertEqual(cancelled.outcome, 'cancelled')
        self.assertEqual(cancelled.account.total_amount, Decimal('16.00'))

        reinstated = self.reconciler.materialize_charge(105, 'lab_order', 3, 'CBC', 1, '350.00')
        self.assertEqual(reinstated.outcome, 'reinstated')
        self.assertEqual(reinstated.account.total_amount, Decimal('366.00'))

    def test_cancel_without_account_is_a_no_op(self):
        self.assertIsNone(self.reconciler.cancel_charge(106, 'lab_order', 1))

    def test_reconcile_restores_drifted_totals(self):
        self.reconciler.materialize_charge(107, 'prescription', 1, 'Metformin', 3, '20.00')
        BillingAccount.objects.filter(encounter_id=107).update(total_amount=Decimal('1.00'), balance=Decimal('9.99'))

        first = self.reconciler.reconcile_totals(107)
        second = self.reconciler.reconcile_totals(107)

        for account in (first, second):
            self.assertEqual(account.total_amount, Decimal('60.00'))
            self.assertEqual(account.net_amount, Decimal('60.00'))
            self.assertEqual(account.balance, Decimal('60.00'))

    def test_reconcile_without_account(self):
        with self.assertRaises(NotFound):
            self.reconciler.reconcile_totals(108)

    def test_deduplicate_collapses_accounts(self):
        allow_duplicate_accounts()
        older = BillingAccount.objects.create(
            branch_id=uuid.uuid4(), encounter_id=200, account_number=BillingAccount.number_for(200),
        )
        newer = BillingAccount.objects.create(
            branch_id=uuid.uuid4(), encounter_id=200, account_number=BillingAccount.number_for(200),
        )
        add_item(older, 'prescription', 1, '10.00')
        add_item(older, 'prescription', 2, '20.00')
        add_item(newer, 'prescription', 2, '20.00')
        add_item(newer, 'lab_order', 5, '100.00')

        result = self.reconciler.deduplicate_accounts(200)

        self.assertTrue(result.changed)
        self.assertEqual(result.moved_items, 1)
        self.assertEqual(result.dropped_items, 1)
        live = BillingAccount.objects.filter(encounter_id=200, deleted_at__isnull=True)
        self.assertEqual(live.count(), 1)
        survivor = live.get()
        self.assertEqual(survivor.pk, result.survivor.pk)
        self.assertEqual(result.removed_account_ids, tuple(
            pk for pk in (older.pk, newer.pk) if pk != survivor.pk
        ))
        self.assertEqual(
            sorted(survivor.items.values_list('reference_type', 'reference_id')),
            [('lab_order', '5'), ('prescription', '1'), ('prescription', '2')],
        )
        self.assertEqual(survivor.total_amount, Decimal('130.00'))

    def test_one_live_account_per_encounter_across_branches(self):
        BillingAccount.objects.create(
            branch_id=uuid.uuid4(), encounter_id=202, account_number=BillingAccount.number_for(202),
        )
        with self.assertRaises(IntegrityError), transaction.atomic():
            BillingAccount.objects.create(
                branch_id=uuid.uuid4(), encounter_id=202, account_number=BillingAccount.number_for(202),
            )
        self.assertEqual(BillingAccount.objects.filter(encounter_id=202).count(), 1)

    def test_soft_deleted_account_frees_the_encounter(self):
        BillingAccount.objects.create(
            branch_id=uuid.uuid4(), encounter_id=203, account_number=BillingAccount.number_for(203),
            deleted_at=timezone.now(),
        )
        charged = self.reconciler.materialize_charge(203, 'prescription', 1, 'Aspirin', 1, '8.00')

        self.assertEqual(charged.outcome, 'created')
        self.assertEqual(BillingAccount.objects.filter(encounter_id=203, deleted_at__isnull=True).count(), 1)

    def test_deduplicate_single_account_changes_nothing(self):
        charged = self.reconciler.materialize_charge(201, 'prescription', 1, 'Aspirin', 1, '8.00')
        updated_at = BillingAccount.objects.get(pk=charged.account.pk).updated_at

        result = self.reconciler.deduplicate_accounts(201)

        self.assertFalse(result.changed)
        self.assertEqual(result.survivor.pk, charged.account.pk)
        self.assertEqual(BillingAccount.objects.get(pk=charged.account.pk).updated_at, updated_at)

    def test_charge_failure_is_recorded_then_resolved(self):
        visit = completed_visit(self.context.branch_id)
        prices = MagicMock()
        prices.resolve.side_effect = RuntimeError('price service down')
        broken = BillingReconciler(self.context, prices=prices)

        with self.assertLogs('apps.billing.reconciler', level='ERROR'):
            self.assertIsNone(broken.charge_safely(ReferenceType.CONSULTATION, visit, operation='consultation_completed'))
            broken.charge_safely(ReferenceType.CONSULTATION, visit, operation='consultation_completed')

        issue = ReconciliationIssue.objects.get(encounter_id=visit.pk)
        self.assertEqual(issue.occurrences, 2)
        self.assertEqual(issue.reference_type, 'consultation')
        self.assertFalse(BillingItem.objects.filter(encounter_id=visit.pk).exists())

        result = self.reconciler.charge_safely(ReferenceType.CONSULTATION, visit)

        self.assertEqual(result.item.unit_price, Decimal('500.00'))
        issue.refresh_from_db()
        self.assertIsNotNone(issue.resolved_at)

    def test_repair_rebuilds_from_clinical_records(self):
        visit = completed_visit(self.context.branch_id)

        result = self.reconciler.repair(visit.pk)

        self.assertEqual(result.outcomes, {'created': 1})
        self.assertEqual(result.account.total_amount, Decimal('500.00'))

        again = self.reconciler.repair(visit.pk)
        self.assertEqual(again.outcomes, {'unchanged': 1})


# ============================================================================
# PRICING
# ============================================================================

class PriceResolverTest(TestCase):

    def test_catalogue_match(self):
        ServiceCatalogue.objects.create(
            code='MED001', name='Paracetamol 500mg', category='medication', base_price=Decimal('4.00'),
        )
        price = PriceResolver().resolve('medication', 'Paracetamol 500mg tablets')

        self.assertEqual(price.unit_price, Decimal('4.00'))
        self.assertEqual(price.service_code, 'MED001')
        self.assertEqual(price.source, 'catalogue')

    def test_discounted_catalogue_price(self):
        ServiceCatalogue.objects.create(
            code='LAB003', name='Urinalysis', category='lab_test',
            base_price=Decimal('200.00'), discounted_price=Decimal('180.00'),
        )
        price = PriceResolver().resolve('lab_test', 'Urine test', code='LAB003')
        self.assertEqual(price.unit_price, Decimal('180.00'))

    def test_generic_entry(self):
        ServiceCatalogue.objects.create(
            code='MED999', name='General Prescription Medication', category='medication', base_price=Decimal('50.00'),
        )
        price = PriceResolver().resolve('medication', 'Zincovit')

        self.assertEqual(price.source, 'generic')
        self.assertEqual(price.service_code, 'MED999')

    def test_default_table(self):
        price = PriceResolver().resolve('lab_test', 'CBC panel')

        self.assertEqual(price.source, 'default_table')
        self.assertEqual(price.unit_price, Decimal('350.00'))

    def test_fallback(self):
        with self.assertLogs('apps.billing.pricing', level='WARNING'):
            price = PriceResolver().resolve('procedure', 'Suturing')

        self.assertEqual(price.source, 'fallback')
        self.assertEqual(price.unit_price, Decimal('50.00'))

    @override_settings(HMS_BILLING={'fallback_price': '75.00'})
    def test_fallback_from_settings(self):
        self.assertEqual(PriceResolver().resolve('procedure', 'Suturing').unit_price, Decimal('75.00'))

    def test_broken_catalogue_falls_through(self):
        catalog = MagicMock()
        catalog.price_for.side_effect = DatabaseError('relation "service_catalogue" does not exist')
        catalog.generic_entry.side_effect = DatabaseError('relation "service_catalogue" does not exist')

        with self.assertLogs('apps.billing.pricing', level='WARNING'):
            price = PriceResolver(catalog=catalog).resolve('medication', 'Amoxicillin 500mg')

        self.assertEqual(price.source, 'default_table')
        self.assertEqual(price.unit_price, Decimal('15.00'))

    def test_consultation_price_by_type(self):
        resolver = PriceResolver()
        self.assertEqual(resolver.consultation_price('Specialist').unit_price, Decimal('1000.00'))
        self.assertEqual(resolver.consultation_price('unknown').unit_price, Decimal('500.00'))


# ============================================================================
# INVOICES / PAYMENTS
# ============================================================================

class InvoiceProjectorTest(TestCase):

    def setUp(self):
        self.context = RequestContext(branch_id=str(uuid.uuid4()), user_id='cashier-1')
        self.reconciler = BillingReconciler(self.context)
        self.projector = InvoiceProjector(self.context, reconciler=self.reconciler)
        self.reconciler.materialize_charge(300, 'consultation', 300, 'General Physician Consultation', 1, '500.00')

    def test_invoice_is_created_once(self):
        invoice = self.projector.ensure_invoice(300)
        again = self.projector.ensure_invoice(300)

        self.assertEqual(invoice.pk, again.pk)
        self.assertTrue(invoice.invoice_number.startswith('INV/'))
        self.assertEqual(invoice.net_amount, Decimal('500.00'))
        self.assertEqual(invoice.status, 'unpaid')
        self.assertEqual(Invoice.objects.filter(encounter_id=300).count(), 1)

    def test_nothing_to_invoice(self):
        self.reconciler.cancel_charge(300, 'consultation', 300)
        with self.assertRaises(StateConflict):
            self.projector.ensure_invoice(300)

        with self.assertRaises(NotFound):
            self.projector.ensure_invoice(999)

    def test_invoice_follows_new_charges(self):
        invoice = self.projector.ensure_invoice(300)
        self.reconciler.materialize_charge(300, 'lab_order', 1, 'CBC', 1, '350.00')

        invoice.refresh_from_db()
        self.assertEqual(invoice.total_amount, Decimal('850.00'))

    def test_overpayment_is_rejected(self):
        invoice = self.projector.ensure_invoice(300)

        with self.assertRaises(OverpaymentRejected) as ctx:
            self.projector.apply_payment(invoice.pk, '600.00', 'cash')

        self.assertEqual(ctx.exception.current_state['balance'], '500.00')
        invoice.refresh_from_db()
        self.assertEqual(invoice.balance, Decimal('500.00'))
        self.assertEqual(invoice.paid_amount, Decimal('0.00'))
        self.assertFalse(Payment.objects.exists())

    def test_full_payment_settles_everything(self):
        invoice = self.projector.ensure_invoice(300)

        result = self.projector.apply_payment(invoice.pk, '500.00', 'card')

        self.assertFalse(result.replayed)
        self.assertEqual(result.invoice.status, 'paid')
        self.assertEqual(result.invoice.balance, Decimal('0.00'))
        self.assertIsNotNone(result.invoice.paid_at)

        account = BillingAccount.objects.get(encounter_id=300)
        self.assertEqual(account.status, 'closed')
        self.assertEqual(account.amount_paid, Decimal('500.00'))
        self.assertEqual(account.balance, Decimal('0.00'))
        self.assertEqual(set(account.items.values_list('status', flat=True)), {'paid'})

    def test_payment_reference_replay(self):
        invoice = self.projector.ensure_invoice(300)

        first = self.projector.apply_payment(invoice.pk, '200.00', 'upi', reference='UPI-123')
        replay = self.projector.apply_payment(invoice.pk, '200.00', 'upi', reference='UPI-123')

        self.assertTrue(replay.replayed)
        self.assertEqual(first.payment.pk, replay.payment.pk)
        self.assertEqual(Payment.objects.count(), 1)
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, 'partial')
        self.assertEqual(invoice.paid_amount, Decimal('200.00'))
        self.assertEqual(invoice.balance, Decimal('300.00'))

    def test_invalid_payments(self):
        invoice = self.projector.ensure_invoice(300)
        with self.assertRaises(ValidationError):
            self.projector.apply_payment(invoice.pk, '0', 'cash')
        with self.assertRaises(ValidationError):
            self.projector.apply_payment(invoice.pk, '10.00', 'cheque')
        with self.assertRaises(NotFound):
            self.projector.apply_payment(invoice.pk + 1, '10.00', 'cash')


# ============================================================================
# HEALTH / REPAIR COMMAND
# ============================================================================

class BillingHealthTest(TestCase):

    def setUp(self):
        self.context = RequestContext(branch_id=str(uuid.uuid4()), user_id='ops-1')
        self.reconciler = BillingReconciler(self.context)

    def test_healthy_when_empty(self):
        report = billing_health(self.context)
        self.assertTrue(report['healthy'])
        self.assertEqual(report['open_issues'], 0)

    def test_reports_problems(self):
        allow_duplicate_accounts()
        unbilled = completed_visit(self.context.branch_id)
        self.reconciler.materialize_charge(400, 'prescription', 1, 'Aspirin', 1, '8.00')
        BillingAccount.objects.filter(encounter_id=400).update(total_amount=Decimal('99.00'))
        for _ in range(2):
            BillingAccount.objects.create(
                branch_id=uuid.uuid4(), encounter_id=401, account_number=BillingAccount.number_for(401),
            )
        ReconciliationIssue.objects.create(encounter_id=402, operation='send_prescription', error='boom')

        report = billing_health(self.context)

        self.assertFalse(report['healthy'])
        self.assertEqual(report['unbilled_consultations'], [unbilled.pk])
        self.assertEqual(report['drifted_encounters'], [400])
        self.assertEqual(report['duplicate_encounters'], [401])
        self.assertEqual(report['open_issue_encounters'], [402])

    def test_unbilled_consultations_match_their_own_charge(self):
        billed = completed_visit(self.context.branch_id)
        unbilled = completed_visit(self.context.branch_id, patient_ref='P-2')
        self.reconciler.charge(ReferenceType.CONSULTATION, billed)
        self.reconciler.materialize_charge(9000, 'consultation', 9000, 'Consultation', 1, '500.00')

        self.assertEqual(unbilled_consultations(self.context), [unbilled.pk])
        self.assertEqual(unbilled_consultations(RequestContext(branch_id=str(uuid.uuid4()))), [])


class RepairBillingCommandTest(TestCase):

    def test_requires_a_target(self):
        with self.assertRaises(CommandError):
            call_command('repair_billing', stdout=StringIO())

    def test_repairs_encounter(self):
        visit = completed_visit(uuid.uuid4())
        out = StringIO()

        call_command('repair_billing', '--encounter', str(visit.pk), stdout=out)

        self.assertIn('✓', out.getvalue())
        item = BillingItem.objects.get(encounter_id=visit.pk)
        self.assertEqual(item.reference_type, 'consultation')
        self.assertEqual(item.posted_by, 'system')

    def test_repairs_open_issues(self):
        visit = completed_visit(uuid.uuid4())
        ReconciliationIssue.objects.create(
            encounter_id=visit.pk, reference_type='consultation', reference_id=str(visit.pk),
            operation='consultation_completed', error='timeout',
        )

        call_command('repair_billing', '--open-issues', stdout=StringIO())

        self.assertFalse(ReconciliationIssue.objects.filter(resolved_at__isnull=True).exists())
        self.assertTrue(BillingItem.objects.filter(encounter_id=visit.pk).exists())

    def test_unknown_visit_is_skipped(self):
        out = StringIO()
        call_command('repair_billing', '--encounter', '9999', stdout=out)
        self.assertIn('skipped', out.getvalue())


# ============================================================================
# API
# ============================================================================

@override_settings(JWT_SECRET_KEY=TEST_SECRET, JWT_ALGORITHM='HS256')
class BillingAPITest(TestCase):

    def setUp(self):
        self.branch_id = str(uuid.uuid4())
        context = RequestContext(branch_id=self.branch_id, user_id='cashier-1')
        BillingReconciler(context).materialize_charge(500, 'consultation', 500, 'Consultation', 1, '500.00')

    def auth(self, branch_id=None):
        token = jwt.encode(
            {'user_id': 'cashier-1', 'branch_id': branch_id or self.branch_id},
            TEST_SECRET,
            algorithm='HS256',
        )
        return {'HTTP_AUTHORIZATION': f'Bearer {token}'}

    def post(self, url, data=None):
        return self.client.post(url, data or {}, content_type='application/json', **self.auth())

    def test_account_by_encounter(self):
        response = self.client.get('/api/billing/accounts/500/', **self.auth())

        self.assertEqual(response.status_code, 200)
        self.assertEqual(Decimal(response.json()['balance']), Decimal('500.00'))

        response = self.client.get('/api/billing/accounts/500/', **self.auth(str(uuid.uuid4())))
        self.assertEqual(response.status_code, 404)

    def test_invoice_and_payments(self):
        response = self.client.get('/api/billing/invoices/encounters/500/', **self.auth())
        self.assertEqual(response.status_code, 404)

        response = self.post('/api/billing/invoices/encounters/500/')
        self.assertEqual(response.status_code, 200)
        invoice_id = response.json()['data']['id']

        response = self.post(f'/api/billing/invoices/{invoice_id}/payments/', {'amount': '600.00', 'method': 'cash'})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['error'], 'overpayment_rejected')
        self.assertEqual(response.json()['context']['balance'], '500.00')

        payment = {'amount': '500.00', 'method': 'cash', 'reference': 'RCPT-1'}
        response = self.post(f'/api/billing/invoices/{invoice_id}/payments/', payment)
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()['data']['invoice']['status'], 'paid')

        response = self.post(f'/api/billing/invoices/{invoice_id}/payments/', payment)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['message'], 'Payment already recorded')

    def test_payment_validation(self):
        invoice_id = self.post('/api/billing/invoices/encounters/500/').json()['data']['id']
        response = self.post(f'/api/billing/invoices/{invoice_id}/payments/', {'amount': '0', 'method': 'cash'})
        self.assertEqual(response.status_code, 400)

    def test_health_and_repair(self):
        response = self.client.get('/api/billing/accounts/health/?days=3', **self.auth())
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()['data']['healthy'])

        response = self.post('/api/billing/accounts/500/reconcile/')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(Decimal(response.json()['data']['total_amount']), Decimal('500.00'))

        response = self.post('/api/billing/accounts/500/deduplicate/')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['message'], 'No duplicate accounts')
