"""
Tests for the OPD visit lifecycle, triage scoring, plan parsing and
clinical orders.
"""

import jwt
import requests
import uuid
from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

from django.core.cache import cache
from django.test import TestCase, SimpleTestCase, override_settings
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from apps.billing.models import BillingAccount, BillingItem, ReconciliationIssue
from apps.billing.reconciler import MAX_QUANTITY, BillingReconciler
from common.context import RequestContext
from common.exceptions import (
    ConsultationLocked,
    DirectoryUnavailable,
    DuplicateActiveVisit,
    FeatureDisabled,
    InvalidStateTransition,
    StateConflict,
)
from . import medication_parser, triage
from .clinical import ClinicalOrders
from .directories import Physician, PatientDirectory, PhysicianDirectory
from .events import ConsultationEventDispatcher
from .models import LabOrder, Prescription, SoapNote, TriageAssessment, Visit
from .repositories import VisitRepository
from .state_machine import VisitStateMachine

TEST_SECRET = 'opd-test-secret'


class FakePatients:
    def __init__(self, *refs):
        self.refs = set(refs)

    def exists(self, patient_ref):
        return patient_ref in self.refs


class FakePhysicians:
    def __init__(self, **physicians):
        self.physicians = physicians

    def get(self, code):
        return self.physicians.get(code)


def fake_directories():
    patients = FakePatients('P-1', 'P-2', 'P-3')
    physicians = FakePhysicians(**{'DR-1': Physician('DR-1', 'Dr. Rao', 'General Medicine')})
    return patients, physicians


# ============================================================================
# TRIAGE
# ============================================================================

class TriageScorerTest(SimpleTestCase):

    def test_hypoxia_with_low_gcs_is_emergency(self):
        result = triage.score({'spo2': 85, 'gcs_total': 7})

        self.assertEqual(result.level, 'emergency')
        self.assertEqual(result.priority, 1)
        self.assertTrue(any('hypoxia' in flag for flag in result.red_flags))

    def test_normal_vitals_are_routine(self):
        result = triage.score({
            'temperature': '36.8', 'bp_systolic': 120, 'bp_diastolic': 80,
            'heart_rate': 78, 'respiratory_rate': 16, 'spo2': 98, 'gcs_total': 15,
        })
        self.assertEqual(result.level, 'routine')
        self.assertEqual(result.score, 0)

    def test_missing_and_unreadable_vitals_do_not_score(self):
        self.assertEqual(triage.score({}).level, 'routine')
        self.assertEqual(triage.score(None).level, 'routine')
        result = triage.score({'spo2': 'n/a', 'heart_rate': None, 'temperature': ''})
        self.assertEqual(result.level, 'routine')
        self.assertEqual(result.score, 0)

    def test_non_finite_vitals_do_not_score(self):
        result = triage.score({'spo2': 'nan', 'heart_rate': 80})
        self.assertEqual(result.level, 'routine')
        self.assertEqual(result.score, 0)

        result = triage.score({
            'spo2': 'Infinity', 'temperature': '-inf', 'gcs_total': Decimal('NaN'), 'respiratory_rate': float('nan'),
        })
        self.assertEqual(result.level, 'routine')
        self.assertEqual(result.red_flags, ())
        self.assertIsNone(triage.Vitals.from_dict({'spo2': 'sNaN'}).spo2)

    def test_single_severe_reading_escalates_to_urgent(self):
        result = triage.score({'spo2': 91})

        self.assertEqual(result.score, 3)
        self.assertEqual(result.level, 'urgent')

    def test_summed_score_reaches_emergency(self):
        result = triage.score({'heart_rate': 135, 'respiratory_rate': 26, 'temperature': '38.5'})

        self.assertEqual(result.score, 7)
        self.assertEqual(result.red_flags, ())
        self.assertEqual(result.level, 'emergency')

    def test_mild_abnormality_is_non_urgent(self):
        result = triage.score({'heart_rate': 100})
        self.assertEqual(result.level, 'non-urgent')

    def test_gcs_total_derived_from_components(self):
        result = triage.score({'gcs_eye': 2, 'gcs_verbal': 2, 'gcs_motor': 4})
        self.assertEqual(result.level, 'emergency')

    def test_critical_complaint_is_emergency(self):
        result = triage.score({'heart_rate': 80}, 'Crushing CHEST PAIN since morning')

        self.assertEqual(result.level, 'emergency')
        self.assertIn('Chest pain', result.red_flags)

    def test_blood_pressure_string(self):
        result = triage.score({'blood_pressure': '85/50'})
        self.assertEqual(result.components['bp_systolic'], 3)
        self.assertEqual(result.level, 'urgent')

    def test_policy_thresholds_are_configurable(self):
        self.assertEqual(triage.score({'heart_rate': 115}).level, 'non-urgent')

        strict = triage.TriagePolicy(urgent_score=2)
        self.assertEqual(triage.score({'heart_rate': 115}, policy=strict).level, 'urgent')

    @override_settings(HMS_TRIAGE={'urgent_score': 1})
    def test_policy_from_settings(self):
        self.assertEqual(triage.score({'heart_rate': 100}).level, 'urgent')


# ============================================================================
# PLAN PARSER
# ============================================================================

class MedicationParserTest(SimpleTestCase):

    def test_full_line(self):
        med = medication_parser.parse_line('Paracetamol 500mg TDS for 5 days')

        self.assertEqual(med.drug_name, 'Paracetamol')
        self.assertEqual(med.dosage, '500mg')
        self.assertEqual(med.doses_per_day, 3)
        self.assertEqual(med.duration_days, 5)
        self.assertEqual(med.quantity, 15)
        self.assertTrue(med.parsed)

    def test_weeks_count_as_seven_days(self):
        med = medication_parser.parse_line('Amoxicillin 500mg BD x 2 weeks')
        self.assertEqual(med.duration_days, 14)
        self.assertEqual(med.quantity, 28)

    def test_unparsed_line_defaults_to_one(self):
        med = medication_parser.parse_line('Ibuprofen 400mg as needed')

        self.assertEqual(med.drug_name, 'Ibuprofen')
        self.assertFalse(med.parsed)
        self.assertEqual(med.quantity, medication_parser.DEFAULT_QUANTITY)

    def test_implausible_duration_is_not_parsed(self):
        med = medication_parser.parse_line('Metformin 500mg BD for 99999 days')

        self.assertIsNone(med.duration_days)
        self.assertFalse(med.parsed)
        self.assertEqual(med.quantity, medication_parser.DEFAULT_QUANTITY)

    def test_plan_skips_instructions(self):
        plan = "1. Paracetamol 500mg TDS for 5 days\n- Review in 1 week\nAdvice: plenty of fluids\n"
        meds = medication_parser.parse_plan(plan)

        self.assertEqual([med.drug_name for med in meds], ['Paracetamol'])

    def test_frequency_phrases(self):
        self.assertEqual(medication_parser.doses_per_day('twice daily'), 2)
        self.assertEqual(medication_parser.doses_per_day('3 times a day'), 3)
        self.assertEqual(medication_parser.doses_per_day('every 8 hours'), 3)
        self.assertEqual(medication_parser.doses_per_day('OD'), 1)
        self.assertIsNone(medication_parser.doses_per_day('when required'))

    def test_estimate_quantity(self):
        self.assertEqual(medication_parser.estimate_quantity('twice daily', '1 month'), 60)
        self.assertEqual(medication_parser.estimate_quantity('', 5), 1)


# ============================================================================
# DIRECTORIES
# ============================================================================

@override_settings(MASTER_DATA_URL='http://master-data.local/api', MASTER_DATA_TOKEN='svc-token')
class DirectoryClientTest(SimpleTestCase):

    def setUp(self):
        cache.clear()

    def response(self, status_code, payload):
        response = MagicMock(status_code=status_code)
        response.json.return_value = payload
        return response

    @patch('apps.opd.directories.requests.get')
    def test_patient_exists_is_cached(self, mock_get):
        mock_get.return_value = self.response(200, {'id': 'P-1'})
        directory = PatientDirectory()

        self.assertTrue(directory.exists('P-1'))
        self.assertTrue(directory.exists('P-1'))

        self.assertEqual(mock_get.call_count, 1)
        url = mock_get.call_args[0][0]
        self.assertEqual(url, 'http://master-data.local/api/patients/P-1/')
        self.assertEqual(mock_get.call_args[1]['headers']['Authorization'], 'Bearer svc-token')

    @patch('apps.opd.directories.requests.get')
    def test_missing_patient(self, mock_get):
        mock_get.return_value = self.response(404, {'detail': 'Not found.'})
        self.assertFalse(PatientDirectory().exists('P-9'))

    @patch('apps.opd.directories.requests.get')
    def test_physician_lookup(self, mock_get):
        mock_get.return_value = self.response(200, {'data': {'code': 'DR-1', 'full_name': 'Dr. Rao'}})

        physician = PhysicianDirectory().get('DR-1')

        self.assertEqual(physician, Physician('DR-1', 'Dr. Rao', ''))
        self.assertEqual(PhysicianDirectory().get('DR-1'), physician)
        self.assertEqual(mock_get.call_count, 1)

    @patch('apps.opd.directories.requests.get')
    def test_service_errors_become_unavailable(self, mock_get):
        mock_get.return_value = self.response(500, {'error': 'database down'})
        with self.assertRaises(DirectoryUnavailable):
            PatientDirectory().exists('P-1')

        mock_get.side_effect = requests.exceptions.ConnectionError('refused')
        with self.assertRaises(DirectoryUnavailable):
            PhysicianDirectory().get('DR-2')

    @override_settings(MASTER_DATA_URL='')
    def test_unconfigured_directory(self):
        with self.assertRaises(DirectoryUnavailable):
            PatientDirectory().exists('P-1')


# ============================================================================
# STATE MACHINE
# ============================================================================

class VisitStateMachineTest(TestCase):

    def setUp(self):
        self.context = RequestContext(branch_id=str(uuid.uuid4()), user_id='nurse-1')
        self.patients, self.physicians = fake_directories()

    def machine(self, **kwargs):
        kwargs.setdefault('patients', self.patients)
        kwargs.setdefault('physicians', self.physicians)
        return VisitStateMachine(self.context, **kwargs)

    def test_walk_in_gets_first_queue_number(self):
        visit = self.machine().register('P-1')

        self.assertEqual(visit.status, 'waiting')
        self.assertEqual(visit.queue_number, 1)
        self.assertEqual(visit.triage_status, 'pending')
        self.assertTrue(visit.visit_number.startswith('OPD/'))
        self.assertIsNotNone(visit.checked_in_at)

        second = self.machine().register('P-2')
        self.assertEqual(second.queue_number, 2)

    def test_queue_numbers_are_per_branch(self):
        self.machine().register('P-1')
        other = VisitStateMachine(
            RequestContext(branch_id=str(uuid.uuid4())), patients=self.patients, physicians=self.physicians,
        )
        self.assertEqual(other.register('P-2').queue_number, 1)

    def test_duplicate_active_visit_is_rejected(self):
        self.machine().register('P-1')

        with self.assertRaises(DuplicateActiveVisit) as ctx:
            self.machine().register('P-1')

        self.assertIsInstance(ctx.exception, StateConflict)
        self.assertEqual(ctx.exception.current_state['status'], 'waiting')
        self.assertEqual(Visit.objects.filter(patient_ref='P-1').count(), 1)

    def test_cancelled_visit_does_not_block_registration(self):
        visit = self.machine().register('P-1')
        self.machine().cancel(visit.pk, 'Registered by mistake')

        again = self.machine().register('P-1')
        self.assertEqual(again.status, 'waiting')

    def test_unknown_patient(self):
        with self.assertRaises(NotFound):
            self.machine().register('P-404')

    def test_past_date_is_rejected(self):
        yesterday = timezone.localdate() - timedelta(days=1)
        with self.assertRaises(ValidationError):
            self.machine().register('P-1', {'scheduled_date': yesterday})

    def test_scheduled_visit_and_check_in(self):
        tomorrow = timezone.localdate() + timedelta(days=1)
        visit = self.machine().register('P-2', {'scheduled_date': tomorrow})

        self.assertEqual(visit.status, 'scheduled')
        self.assertIsNone(visit.queue_number)

        visit = self.machine().check_in(visit.pk)
        self.assertEqual(visit.status, 'waiting')
        self.assertEqual(visit.visit_date, timezone.localdate())
        self.assertEqual(visit.queue_number, 1)

    def test_check_in_on_waiting_visit_is_a_conflict(self):
        visit = self.machine().register('P-1')

        with self.assertRaises(InvalidStateTransition):
            self.machine().check_in(visit.pk)

    def test_complete_before_start_is_a_conflict(self):
        visit = self.machine().register('P-1')

        with self.assertRaises(StateConflict):
            self.machine().complete_consultation(visit.pk)

        visit.refresh_from_db()
        self.assertEqual(visit.status, 'waiting')

    def test_start_requires_known_physician(self):
        visit = self.machine().register('P-1')
        with self.assertRaises(NotFound):
            self.machine().start_consultation(visit.pk, 'DR-404')

    def test_visits_of_other_branches_are_invisible(self):
        visit = self.machine().register('P-1')
        other = VisitStateMachine(
            RequestContext(branch_id=str(uuid.uuid4())), patients=self.patients, physicians=self.physicians,
        )
        with self.assertRaises(NotFound):
            other.start_consultation(visit.pk, 'DR-1')

    def test_completion_posts_one_consultation_charge(self):
        visit = self.machine().register('P-1')
        visit = self.machine().start_consultation(visit.pk, 'DR-1')
        self.assertEqual(visit.status, 'in_progress')
        self.assertEqual(visit.physician_name, 'Dr. Rao')

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            result = self.machine().complete_consultation(visit.pk)

        self.assertEqual(len(callbacks), 1)
        self.assertFalse(result.replayed)
        self.assertEqual(result.visit.status, 'completed')
        self.assertIsNotNone(result.visit.consultation_completed_at)

        items = BillingItem.objects.filter(encounter_id=visit.pk, reference_type='consultation')
        self.assertEqual(items.count(), 1)
        self.assertEqual(items.get().item_type, 'consultation')
        self.assertEqual(items.get().unit_price, Decimal('500.00'))

    def test_completion_retry_does_not_publish_again(self):
        dispatcher = MagicMock()
        visit = self.machine(dispatcher=dispatcher).register('P-1')
        self.machine(dispatcher=dispatcher).start_consultation(visit.pk, 'DR-1')

        first = self.machine(dispatcher=dispatcher).complete_consultation(visit.pk)
        retry = self.machine(dispatcher=dispatcher).complete_consultation(visit.pk)

        self.assertFalse(first.replayed)
        self.assertTrue(retry.replayed)
        self.assertEqual(dispatcher.publish_on_commit.call_count, 1)
        event = dispatcher.publish_on_commit.call_args[0][0]
        self.assertEqual(event.encounter_id, visit.pk)
        self.assertEqual(event.physician_code, 'DR-1')
        self.assertEqual(event.consultation_type, 'OPD')

    def test_failing_subscriber_does_not_break_completion(self):
        def broken_subscriber(sender, event, **kwargs):
            raise RuntimeError('notification service down')

        dispatcher = ConsultationEventDispatcher()
        dispatcher.subscribe(broken_subscriber, dispatch_uid='tests.broken_subscriber')
        self.addCleanup(dispatcher.unsubscribe, dispatch_uid='tests.broken_subscriber')

        visit = self.machine().register('P-1')
        self.machine().start_consultation(visit.pk, 'DR-1')
        with self.assertLogs('apps.opd.events', level='ERROR'):
            with self.captureOnCommitCallbacks(execute=True):
                self.machine(dispatcher=dispatcher).complete_consultation(visit.pk)

        self.assertTrue(
            BillingItem.objects.filter(encounter_id=visit.pk, reference_type='consultation').exists()
        )

    def test_cancel(self):
        visit = self.machine().register('P-1')

        with self.assertRaises(ValidationError):
            self.machine().cancel(visit.pk, '   ')

        visit = self.machine().cancel(visit.pk, 'Patient left')
        self.assertEqual(visit.status, 'cancelled')
        self.assertEqual(visit.cancellation_reason, 'Patient left')

        with self.assertRaises(InvalidStateTransition):
            self.machine().cancel(visit.pk, 'again')

    def test_completed_visit_cannot_be_cancelled(self):
        visit = self.machine().register('P-1')
        self.machine().start_consultation(visit.pk, 'DR-1')
        self.machine().complete_consultation(visit.pk)

        with self.assertRaises(InvalidStateTransition):
            self.machine().cancel(visit.pk, 'Changed mind')

    def test_record_triage(self):
        visit = self.machine().register('P-1', {'chief_complaint': 'Breathless'})

        assessment = self.machine().record_triage(visit.pk, {'spo2': 85, 'gcs_total': 7, 'temperature': '37.25'})

        self.assertEqual(assessment.triage_level, 'emergency')
        self.assertEqual(assessment.temperature, Decimal('37.2'))
        self.assertEqual(assessment.assessed_by, 'nurse-1')
        visit.refresh_from_db()
        self.assertEqual(visit.triage_status, 'completed')
        self.assertEqual(visit.triage_level, 'emergency')

    def test_record_triage_with_unreadable_numbers(self):
        visit = self.machine().register('P-1')

        assessment = self.machine().record_triage(visit.pk, {'spo2': 'nan', 'heart_rate': 'inf', 'temperature': '38.5'})

        self.assertIsNone(assessment.spo2)
        self.assertIsNone(assessment.heart_rate)
        self.assertEqual(assessment.triage_level, 'non-urgent')

    def test_visit_writes_use_the_context_database(self):
        databases = []
        original_save = Visit.save

        def recording_save(instance, *args, **kwargs):
            databases.append(kwargs.get('using'))
            return original_save(instance, *args, **kwargs)

        with patch.object(Visit, 'save', recording_save):
            visit = self.machine().register('P-1')
            self.machine().skip_triage(visit.pk)
            self.machine().start_consultation(visit.pk, 'DR-1')
            self.machine().complete_consultation(visit.pk)
            other = self.machine().register('P-2')
            self.machine().record_triage(other.pk, {'heart_rate': 80})
            self.machine().cancel(other.pk, 'Left')

        self.assertGreaterEqual(len(databases), 7)
        self.assertEqual(set(databases), {self.context.database})

    def test_reassessment_adds_a_row(self):
        visit = self.machine().register('P-1')
        first = self.machine().record_triage(visit.pk, {'heart_rate': 100})
        self.machine().record_triage(visit.pk, {'heart_rate': 80})

        self.assertEqual(TriageAssessment.objects.filter(visit=visit).count(), 2)
        first.refresh_from_db()
        self.assertEqual(first.triage_level, 'non-urgent')

    def test_assessments_are_immutable(self):
        visit = self.machine().register('P-1')
        assessment = self.machine().record_triage(visit.pk, {'heart_rate': 100})

        assessment.triage_level = 'routine'
        with self.assertRaises(Exception):
            assessment.save()

    def test_out_of_range_vitals(self):
        visit = self.machine().register('P-1')
        with self.assertRaises(ValidationError):
            self.machine().record_triage(visit.pk, {'spo2': 150})
        self.assertFalse(TriageAssessment.objects.filter(visit=visit).exists())

    def test_triage_only_while_waiting(self):
        visit = self.machine().register('P-1')
        self.machine().start_consultation(visit.pk, 'DR-1')

        with self.assertRaises(InvalidStateTransition):
            self.machine().record_triage(visit.pk, {'heart_rate': 80})

    def test_skip_triage(self):
        visit = self.machine().register('P-1')
        visit = self.machine().skip_triage(visit.pk)
        self.assertEqual(visit.triage_status, 'skipped')

        with self.assertRaises(InvalidStateTransition):
            self.machine().skip_triage(visit.pk)

    def test_queue_orders_by_triage_priority(self):
        first = self.machine().register('P-1')
        second = self.machine().register('P-2')
        third = self.machine().register('P-3')
        self.machine().record_triage(third.pk, {'spo2': 85})
        self.machine().record_triage(second.pk, {'heart_rate': 100})

        queue = VisitRepository(self.context).queue_for(timezone.localdate())

        self.assertEqual([visit.pk for visit in queue], [third.pk, second.pk, first.pk])


# ============================================================================
# CLINICAL ORDERS
# ============================================================================

class ClinicalOrdersTest(TestCase):

    def setUp(self):
        self.context = RequestContext(branch_id=str(uuid.uuid4()), user_id='dr-1')
        patients, physicians = fake_directories()
        self.machine = VisitStateMachine(self.context, patients=patients, physicians=physicians)
        self.visit = self.machine.register('P-1')
        self.machine.start_consultation(self.visit.pk, 'DR-1')
        self.orders = ClinicalOrders(self.context)

    def items(self, reference_type):
        return BillingItem.objects.filter(encounter_id=self.visit.pk, reference_type=reference_type)

    def account(self):
        return BillingAccount.objects.get(encounter_id=self.visit.pk, deleted_at__isnull=True)

    def complete(self):
        self.machine.complete_consultation(self.visit.pk)

    def test_same_prescription_twice_is_one_row_and_one_charge(self):
        payload = {'drug_name': 'Paracetamol', 'dosage': '500mg', 'frequency': 'TDS', 'duration_days': '5'}

        first = self.orders.send_prescription(self.visit.pk, payload)
        second = self.orders.send_prescription(self.visit.pk, dict(payload))

        self.assertTrue(first.created)
        self.assertEqual(second.outcome, 'unchanged')
        self.assertEqual(first.prescription.quantity, 15)
        self.assertEqual(Prescription.objects.filter(visit=self.visit).count(), 1)

        item = self.items('prescription').get()
        self.assertEqual(item.item_type, 'pharmacy')
        self.assertEqual(item.quantity, 15)
        self.assertEqual(item.unit_price, Decimal('5.00'))
        self.assertEqual(self.account().total_amount, Decimal('75.00'))

    def test_drug_names_are_matched_case_insensitively(self):
        self.orders.send_prescription(self.visit.pk, {'drug_name': 'Amoxicillin', 'quantity': 10})
        self.orders.send_prescription(self.visit.pk, {'drug_name': '  amoxicillin ', 'quantity': 10})

        self.assertEqual(Prescription.objects.filter(visit=self.visit).count(), 1)

    def test_quantity_normalisation(self):
        result = self.orders.send_prescription(self.visit.pk, {'drug_name': 'Aspirin', 'quantity': '2.9'})
        self.assertEqual(result.prescription.quantity, 2)

        result = self.orders.send_prescription(self.visit.pk, {'drug_name': 'Metformin', 'quantity': 'lots'})
        self.assertEqual(result.prescription.quantity, 1)

        result = self.orders.send_prescription(self.visit.pk, {'drug_name': 'Ibuprofen', 'quantity': -4})
        self.assertEqual(result.prescription.quantity, 1)

    def test_non_finite_and_huge_quantities(self):
        result = self.orders.send_prescription(self.visit.pk, {'drug_name': 'Paracetamol', 'quantity': 'Infinity'})
        self.assertEqual(result.prescription.quantity, 1)

        result = self.orders.send_prescription(self.visit.pk, {'drug_name': 'Amoxicillin', 'quantity': 'NaN'})
        self.assertEqual(result.prescription.quantity, 1)

        result = self.orders.send_prescription(self.visit.pk, {'drug_name': 'Ibuprofen', 'quantity': '1e12'})
        self.assertEqual(result.prescription.quantity, MAX_QUANTITY)
        self.assertEqual(self.items('prescription').get(reference_id=str(result.prescription.pk)).quantity, 10000)

    def test_duration_is_bounded(self):
        with self.assertRaises(ValidationError):
            self.orders.send_prescription(self.visit.pk, {'drug_name': 'Aspirin', 'frequency': 'OD', 'duration_days': '99999'})
        self.assertFalse(Prescription.objects.filter(visit=self.visit).exists())

    def test_corrected_quantity_updates_the_charge(self):
        self.orders.send_prescription(self.visit.pk, {'drug_name': 'Ibuprofen', 'quantity': 10})
        result = self.orders.send_prescription(self.visit.pk, {'drug_name': 'Ibuprofen', 'quantity': 20})

        self.assertEqual(result.outcome, 'updated')
        item = self.items('prescription').get()
        self.assertEqual(item.quantity, 20)
        self.assertEqual(item.amount, Decimal('200.00'))
        self.assertEqual(self.account().total_amount, Decimal('200.00'))

    def test_invalid_prescriptions(self):
        with self.assertRaises(ValidationError):
            self.orders.send_prescription(self.visit.pk, {'drug_name': '  '})
        with self.assertRaises(ValidationError):
            self.orders.send_prescription(self.visit.pk, {'drug_name': 'Aspirin', 'duration_days': 0})
        self.assertFalse(Prescription.objects.exists())

    def test_replay_after_completion_returns_existing(self):
        payload = {'drug_name': 'Aspirin', 'quantity': 10}
        self.orders.send_prescription(self.visit.pk, payload)
        self.complete()

        replay = self.orders.send_prescription(self.visit.pk, payload)
        self.assertEqual(replay.outcome, 'unchanged')

        with self.assertRaises(ConsultationLocked):
            self.orders.send_prescription(self.visit.pk, {'drug_name': 'Aspirin', 'quantity': 30})

    def test_billing_failure_keeps_the_prescription(self):
        with patch.object(BillingReconciler, 'charge', side_effect=RuntimeError('catalogue down')):
            with self.assertLogs('apps.billing.reconciler', level='ERROR'):
                result = self.orders.send_prescription(self.visit.pk, {'drug_name': 'Aspirin', 'quantity': 3})

        self.assertFalse(result.billed)
        self.assertTrue(Prescription.objects.filter(pk=result.prescription.pk).exists())
        self.assertFalse(self.items('prescription').exists())
        issue = ReconciliationIssue.objects.get(encounter_id=self.visit.pk)
        self.assertIsNone(issue.resolved_at)
        self.assertIn('catalogue down', issue.error)

        BillingReconciler(self.context).repair(self.visit.pk)

        self.assertEqual(self.items('prescription').get().quantity, 3)
        issue.refresh_from_db()
        self.assertIsNotNone(issue.resolved_at)

    def test_soap_medications_create_and_cancel_prescriptions(self):
        result = self.orders.save_soap(self.visit.pk, {
            'assessment': 'Upper respiratory infection',
            'medications': [{'drug_name': 'Amoxicillin', 'frequency': 'BD', 'duration_days': 5}],
        })

        self.assertEqual(result.note.assessment, 'Upper respiratory infection')
        self.assertTrue(result.note.is_draft)
        prescription = Prescription.objects.get(visit=self.visit)
        self.assertEqual(prescription.source, 'soap')
        self.assertEqual(prescription.quantity, 10)
        self.assertEqual(self.account().total_amount, Decimal('150.00'))

        result = self.orders.save_soap(self.visit.pk, {'medications': []})

        self.assertEqual([p.pk for p in result.cancelled], [prescription.pk])
        self.assertEqual(self.items('prescription').get().status, 'cancelled')
        self.assertEqual(self.account().total_amount, Decimal('0.00'))

    def test_soap_leaves_pharmacy_prescriptions_alone(self):
        self.orders.send_prescription(self.visit.pk, {'drug_name': 'Aspirin', 'quantity': 10})
        self.orders.save_soap(self.visit.pk, {'medications': []})

        self.assertEqual(Prescription.objects.get(visit=self.visit).status, 'active')

    def test_plan_is_parsed_into_prescriptions(self):
        result = self.orders.save_soap(self.visit.pk, {
            'plan': 'Paracetamol 500mg TDS for 3 days\nReview in 1 week',
        })

        self.assertTrue(result.parsed_from_plan)
        prescription = Prescription.objects.get(visit=self.visit)
        self.assertEqual(prescription.source, 'plan')
        self.assertEqual(prescription.quantity, 9)

    @override_settings(HMS_FEATURES={'parse_plan_medications': False})
    def test_plan_parsing_can_be_disabled(self):
        result = self.orders.save_soap(self.visit.pk, {'plan': 'Paracetamol 500mg TDS for 3 days'})

        self.assertFalse(result.parsed_from_plan)
        self.assertFalse(Prescription.objects.exists())

    def test_completion_finalises_soap_and_locks_it(self):
        self.orders.save_soap(self.visit.pk, {'subjective': 'Cough for 3 days'})
        self.complete()

        note = SoapNote.objects.get(visit=self.visit)
        self.assertFalse(note.is_draft)
        self.assertIsNotNone(note.finalized_at)

        with self.assertRaises(ConsultationLocked):
            self.orders.save_soap(self.visit.pk, {'subjective': 'edited'})

    def test_lab_orders(self):
        payload = {'test_name': 'Complete Blood Count', 'test_code': 'LAB001'}
        first = self.orders.order_lab(self.visit.pk, payload)
        second = self.orders.order_lab(self.visit.pk, payload)

        self.assertTrue(first.created)
        self.assertFalse(second.created)
        self.assertEqual(first.order.pk, second.order.pk)
        item = self.items('lab_order').get()
        self.assertEqual(item.item_type, 'lab')
        self.assertEqual(item.unit_price, Decimal('350.00'))

        self.orders.cancel_lab_order(self.visit.pk, first.order.pk)

        self.assertEqual(self.items('lab_order').get().status, 'cancelled')
        self.assertEqual(self.account().total_amount, Decimal('0.00'))

    def test_completion_submits_ordered_labs(self):
        order = self.orders.order_lab(self.visit.pk, {'test_name': 'Urinalysis'}).order
        self.complete()

        order.refresh_from_db()
        self.assertEqual(order.status, 'submitted')

        with self.assertRaises(ConsultationLocked):
            self.orders.order_lab(self.visit.pk, {'test_name': 'Blood Sugar Fasting'})
        with self.assertRaises(ConsultationLocked):
            self.orders.cancel_lab_order(self.visit.pk, order.pk)

    @override_settings(HMS_FEATURES={'lab_orders': False})
    def test_lab_orders_can_be_disabled(self):
        with self.assertRaises(FeatureDisabled):
            self.orders.order_lab(self.visit.pk, {'test_name': 'Urinalysis'})
        self.assertFalse(LabOrder.objects.exists())


# ============================================================================
# API
# ============================================================================

@override_settings(JWT_SECRET_KEY=TEST_SECRET, JWT_ALGORITHM='HS256')
class VisitAPITest(TestCase):

    def setUp(self):
        self.branch_id = str(uuid.uuid4())
        patients, physicians = fake_directories()
        for target, value in [
            ('apps.opd.state_machine.get_patient_directory', patients),
            ('apps.opd.state_machine.get_physician_directory', physicians),
        ]:
            patcher = patch(target, return_value=value)
            patcher.start()
            self.addCleanup(patcher.stop)

    def auth(self, branch_id=None):
        token = jwt.encode(
            {'user_id': 'reception-1', 'branch_id': branch_id or self.branch_id},
            TEST_SECRET,
            algorithm='HS256',
        )
        return {'HTTP_AUTHORIZATION': f'Bearer {token}'}

    def post(self, url, data=None, **extra):
        return self.client.post(url, data or {}, content_type='application/json', **(extra or self.auth()))

    def test_requires_token(self):
        response = self.client.get('/api/opd/visits/')
        self.assertEqual(response.status_code, 401)
        self.assertFalse(response.json()['success'])

    def test_register_and_duplicate(self):
        response = self.post('/api/opd/visits/', {'patient_ref': 'P-1'})

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertTrue(body['success'])
        self.assertEqual(body['data']['status'], 'waiting')
        self.assertEqual(body['data']['queue_number'], 1)

        response = self.post('/api/opd/visits/', {'patient_ref': 'P-1'})

        self.assertEqual(response.status_code, 409)
        body = response.json()
        self.assertEqual(body['error'], 'duplicate_active_visit')
        self.assertEqual(body['context']['status'], 'waiting')

    def test_register_requires_patient(self):
        response = self.post('/api/opd/visits/', {})
        self.assertEqual(response.status_code, 400)

    def test_infinite_prescription_quantity_becomes_one(self):
        visit_id = self.post('/api/opd/visits/', {'patient_ref': 'P-1'}).json()['data']['id']
        self.post(f'/api/opd/visits/{visit_id}/start/', {'physician_code': 'DR-1'})

        response = self.post(f'/api/opd/visits/{visit_id}/prescriptions/', {
            'drug_name': 'Paracetamol', 'quantity': 'Infinity',
        })

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()['data']['quantity'], 1)

    def test_consultation_flow(self):
        visit_id = self.post('/api/opd/visits/', {'patient_ref': 'P-1'}).json()['data']['id']

        response = self.post(f'/api/opd/visits/{visit_id}/complete/')
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['error'], 'invalid_state_transition')

        response = self.post(f'/api/opd/visits/{visit_id}/triage/', {'spo2': 150})
        self.assertEqual(response.status_code, 400)

        response = self.post(f'/api/opd/visits/{visit_id}/triage/', {'spo2': 85, 'gcs_total': 7})
        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()['data']['triage_level'], 'emergency')

        response = self.post(f'/api/opd/visits/{visit_id}/start/', {'physician_code': 'DR-1'})
        self.assertEqual(response.status_code, 200)

        response = self.post(f'/api/opd/visits/{visit_id}/prescriptions/', {
            'drug_name': 'Paracetamol', 'frequency': 'TDS', 'duration_days': 5,
        })
        self.assertEqual(response.status_code, 201)
        self.assertTrue(response.json()['billed'])

        response = self.post(f'/api/opd/visits/{visit_id}/prescriptions/', {
            'drug_name': 'Paracetamol', 'frequency': 'TDS', 'duration_days': 5,
        })
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['message'], 'Prescription already recorded')

        with self.captureOnCommitCallbacks(execute=True):
            response = self.post(f'/api/opd/visits/{visit_id}/complete/')
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['data']['status'], 'completed')

        response = self.client.get(f'/api/opd/visits/{visit_id}/billing/', **self.auth())
        self.assertEqual(response.status_code, 200)
        data = response.json()['data']
        self.assertEqual(Decimal(data['total_amount']), Decimal('575.00'))
        self.assertEqual(
            sorted(item['reference_type'] for item in data['items']),
            ['consultation', 'prescription'],
        )

    def test_queue(self):
        self.post('/api/opd/visits/', {'patient_ref': 'P-1'})
        self.post('/api/opd/visits/', {'patient_ref': 'P-2'})

        response = self.client.get('/api/opd/visits/queue/', **self.auth())

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['count'], 2)

    def test_other_branch_cannot_see_visit(self):
        visit_id = self.post('/api/opd/visits/', {'patient_ref': 'P-1'}).json()['data']['id']

        response = self.client.get(f'/api/opd/visits/{visit_id}/', **self.auth(str(uuid.uuid4())))
        self.assertEqual(response.status_code, 404)

        response = self.client.get(f'/api/opd/visits/{visit_id}/', **self.auth())
        self.assertEqual(response.status_code, 200)

    def test_lab_order_endpoints(self):
        visit_id = self.post('/api/opd/visits/', {'patient_ref': 'P-1'}).json()['data']['id']
        self.post(f'/api/opd/visits/{visit_id}/start/', {'physician_code': 'DR-1'})

        response = self.post(f'/api/opd/visits/{visit_id}/lab-orders/', {'test_name': 'Urinalysis'})
        self.assertEqual(response.status_code, 201)
        order_id = response.json()['data']['id']

        response = self.client.delete(f'/api/opd/visits/{visit_id}/lab-orders/{order_id}/', **self.auth())
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()['data']['status'], 'cancelled')
