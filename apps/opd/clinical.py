"""
Clinical orders written during a consultation: SOAP notes, prescriptions
and lab orders.

Each order is committed first and billed afterwards through
``BillingReconciler.charge_safely``, so a billing failure is recorded for
repair but never loses the clinical record.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from django.db import IntegrityError, transaction
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from apps.billing.enums import ReferenceType
from apps.billing.invoices import InvoiceProjector
from apps.billing.reconciler import BillingReconciler, normalize_quantity
from common.exceptions import FeatureDisabled, StateConflict
from common.features import feature_enabled
from . import medication_parser
from .models import LabOrder, Prescription, SoapNote
from .repositories import VisitRepository
from .state_machine import assert_modifiable

logger = logging.getLogger(__name__)

SOAP_FIELDS = ('subjective', 'objective', 'assessment', 'plan')
PRESCRIPTION_FIELDS = ('dosage', 'frequency', 'duration_days', 'quantity', 'instructions')

CREATED = 'created'
UPDATED = 'updated'
UNCHANGED = 'unchanged'


@dataclass
class PrescriptionResult:
    prescription: Prescription
    outcome: str
    billed: bool = False

    @property
    def created(self):
        return self.outcome == CREATED


@dataclass
class SoapResult:
    note: SoapNote
    prescriptions: List[Prescription] = field(default_factory=list)
    cancelled: List[Prescription] = field(default_factory=list)
    parsed_from_plan: bool = False


@dataclass
class LabOrderResult:
    order: LabOrder
    created: bool
    billed: bool = False


def prescription_fields(payload):
    """
    Validate and normalise one prescription payload.

    Quantity is truncated to a positive integer (junk becomes 1); when it is
    missing it is estimated from frequency and duration.
    """
    drug_name = ' '.join(str(payload.get('drug_name') or '').split())
    if not drug_name:
        raise ValidationError({'drug_name': 'This field is required.'})

    duration_days = None
    raw_duration = payload.get('duration_days', payload.get('duration'))
    if raw_duration not in (None, ''):
        duration_days = medication_parser.duration_in_days(raw_duration)
        if not duration_days or duration_days < 1:
            raise ValidationError({'duration_days': 'Duration must be at least 1 day.'})
        if duration_days > medication_parser.MAX_DURATION_DAYS:
            raise ValidationError({'duration_days': f'Duration cannot exceed {medication_parser.MAX_DURATION_DAYS} days.'})

    frequency = str(payload.get('frequency') or '').strip()
    raw_quantity = payload.get('quantity')
    if raw_quantity in (None, ''):
        quantity = normalize_quantity(medication_parser.estimate_quantity(frequency, duration_days))
    else:
        quantity = normalize_quantity(raw_quantity)

    return {
        'drug_name': drug_name[:200],
        'dosage': str(payload.get('dosage') or '').strip()[:100],
        'frequency': frequency[:100],
        'duration_days': duration_days,
        'quantity': quantity,
        'instructions': str(payload.get('instructions') or '').strip(),
    }


class ClinicalOrders:

    def __init__(self, context, reconciler=None, repository=None):
        self.context = context
        self.repository = repository or VisitRepository(context)
        self.reconciler = reconciler or BillingReconciler(context)

    # ------------------------------------------------------------------
    # prescriptions

    def _apply_prescription(self, visit, fields, source):
        """Create or update the visit's prescription for this drug; call inside atomic()."""
        database = self.repository.database
        key = Prescription.normalize_drug_name(fields['drug_name'])
        existing = Prescription.objects.using(database).filter(visit=visit, drug_key=key).first()

        if existing is None:
            try:
                with transaction.atomic(using=database):
                    prescription = Prescription.objects.using(database).create(
                        visit=visit,
                        patient_ref=visit.patient_ref,
                        physician_code=visit.physician_code,
                        drug_key=key,
                        source=source,
                        created_by=self.context.actor,
                        **fields
                    )
                return prescription, CREATED
            except IntegrityError:
                existing = Prescription.objects.using(database).filter(visit=visit, drug_key=key).first()
                if existing is None:
                    raise

        changed = [
            name for name in PRESCRIPTION_FIELDS if getattr(existing, name) != fields[name]
        ]
        if not changed and existing.status in ('active', 'dispensed'):
            return existing, UNCHANGED

        if existing.status == 'dispensed':
            raise StateConflict(
                f"{existing.drug_name} has already been dispensed and cannot be changed.",
                current_state={'prescription_id': existing.pk, 'status': existing.status},
            )
        for name in changed:
            setattr(existing, name, fields[name])
        existing.status = 'active'
        existing.save(using=database)
        logger.info(f"Prescription {existing.pk} ({existing.drug_name}) updated: {', '.join(changed) or 'reinstated'}")
        return existing, UPDATED

    def _bill(self, reference_type, record, operation):
        return self.reconciler.charge_safely(reference_type, record, operation=operation) is not None

    def send_prescription(self, visit_id, payload):
        """
        Send one prescription to pharmacy.

        Sending the same payload again returns the existing row, even after
        the consultation is completed; a changed payload updates the row and
        its charge.
        """
        fields = prescription_fields(payload)
        repo = self.repository

        with repo.atomic():
            visit = repo.lock(visit_id)
            key = Prescription.normalize_drug_name(fields['drug_name'])
            existing = Prescription.objects.using(repo.database).filter(visit=visit, drug_key=key).first()
            is_replay = existing is not None and existing.status == 'active' and all(
                getattr(existing, name) == fields[name] for name in PRESCRIPTION_FIELDS
            )
            if is_replay:
                prescription, outcome = existing, UNCHANGED
            else:
                assert_modifiable(visit)
                prescription, outcome = self._apply_prescription(visit, fields, source='manual')

        result = PrescriptionResult(prescription=prescription, outcome=outcome)
        result.billed = self._bill(ReferenceType.PRESCRIPTION, prescription, 'send_prescription')

        if result.billed and feature_enabled('auto_invoice_on_prescription'):
            self._refresh_invoice(visit.pk)
        return result

    def _refresh_invoice(self, encounter_id):
        try:
            InvoiceProjector(self.context, reconciler=self.reconciler).ensure_invoice(encounter_id)
        except (StateConflict, NotFound) as e:
            logger.warning(f"Invoice not refreshed for encounter {encounter_id}: {e}")

    # ------------------------------------------------------------------
    # SOAP

    def save_soap(self, visit_id, data):
        """
        Create or update the visit's SOAP note.

        ``medications`` (a list of prescription payloads) replaces the
        SOAP-derived prescriptions of the visit. Without it, and when plan
        parsing is enabled, medications are read from the plan text.
        Prescriptions sent to pharmacy directly are never touched here.
        """
        repo = self.repository
        medications = data.get('medications')
        parsed_from_plan = False

        if medications is None and data.get('plan') and feature_enabled('parse_plan_medications'):
            medications = [
                {
                    'drug_name': parsed.drug_name,
                    'dosage': parsed.dosage,
                    'frequency': parsed.frequency,
                    'duration_days': parsed.duration_days,
                    'quantity': parsed.quantity,
                }
                for parsed in medication_parser.parse_plan(data['plan'])
            ]
            parsed_from_plan = True
        source = 'plan' if parsed_from_plan else 'soap'
        stale_sources = ['plan'] if parsed_from_plan else ['soap', 'plan']
        normalized = None if medications is None else [prescription_fields(item) for item in medications]

        touched, cancelled = [], []
        with repo.atomic():
            visit = repo.lock(visit_id)
            assert_modifiable(visit)

            note, _created = SoapNote.objects.using(repo.database).get_or_create(
                visit=visit, defaults={'created_by': self.context.actor},
            )
            for name in SOAP_FIELDS:
                if name in data and data[name] is not None:
                    setattr(note, name, data[name])
            note.save(using=repo.database)

            if normalized is not None:
                kept_keys = set()
                for fields in normalized:
                    key = Prescription.normalize_drug_name(fields['drug_name'])
                    if key in kept_keys:
                        continue
                    kept_keys.add(key)
                    existing = Prescription.objects.using(repo.database).filter(visit=visit, drug_key=key).first()
                    if existing is not None and existing.source == 'manual':
                        continue
                    prescription, outcome = self._apply_prescription(visit, fields, source=source)
                    if outcome != UNCHANGED:
                        touched.append(prescription)

                stale = Prescription.objects.using(repo.database).filter(
                    visit=visit, source__in=stale_sources, status='active',
                ).exclude(drug_key__in=kept_keys)
                for prescription in stale:
                    prescription.status = 'cancelled'
                    prescription.save(using=repo.database, update_fields=['status', 'updated_at'])
                    cancelled.append(prescription)

        for prescription in touched + cancelled:
            self._bill(ReferenceType.PRESCRIPTION, prescription, 'save_soap')

        if touched or cancelled:
            logger.info(
                f"SOAP for visit {visit.visit_number}: {len(touched)} prescription(s) written, "
                f"{len(cancelled)} cancelled"
            )
        return SoapResult(note=note, prescriptions=touched, cancelled=cancelled, parsed_from_plan=parsed_from_plan)

    # ------------------------------------------------------------------
    # lab orders

    def _require_labs(self):
        if not feature_enabled('lab_orders'):
            raise FeatureDisabled('Lab ordering is not enabled.')

    def order_lab(self, visit_id, payload):
        self._require_labs()
        test_name = ' '.join(str(payload.get('test_name') or '').split())
        test_code = str(payload.get('test_code') or '').strip()
        if not test_name:
            raise ValidationError({'test_name': 'This field is required.'})
        priority = payload.get('priority') or 'routine'
        if priority not in dict(LabOrder.PRIORITY_CHOICES):
            raise ValidationError({'priority': f"Unknown priority '{priority}'."})

        test_key = (test_code or test_name).lower()
        repo = self.repository
        with repo.atomic():
            visit = repo.lock(visit_id)
            assert_modifiable(visit)

            active = LabOrder.objects.using(repo.database).filter(visit=visit, test_key=test_key).exclude(status='cancelled')
            order = active.first()
            created = False
            if order is None:
                try:
                    with transaction.atomic(using=repo.database):
                        order = LabOrder.objects.using(repo.database).create(
                            visit=visit,
                            test_code=test_code,
                            test_name=test_name[:200],
                            test_key=test_key[:200],
                            priority=priority,
                            clinical_notes=str(payload.get('clinical_notes') or ''),
                            ordered_by=self.context.actor,
                        )
                    created = True
                except IntegrityError:
                    order = active.first()
                    if order is None:
                        raise

        result = LabOrderResult(order=order, created=created)
        result.billed = self._bill(ReferenceType.LAB_ORDER, order, 'order_lab')
        if created:
            logger.info(f"Lab order {order.pk} ({order.test_name}) for visit {visit.visit_number}")
        return result

    def cancel_lab_order(self, visit_id, order_id):
        self._require_labs()
        repo = self.repository
        with repo.atomic():
            visit = repo.lock(visit_id)
            assert_modifiable(visit)
            order = LabOrder.objects.using(repo.database).filter(visit=visit, pk=order_id).first()
            if order is None:
                raise NotFound(f"Lab order {order_id} not found for this visit.")
            if order.status == 'completed':
                raise StateConflict(
                    f"Lab order {order.pk} already has results and cannot be cancelled.",
                    current_state={'lab_order_id': order.pk, 'status': order.status},
                )
            if order.status != 'cancelled':
                order.status = 'cancelled'
                order.cancelled_at = timezone.now()
                order.save(using=repo.database, update_fields=['status', 'cancelled_at', 'updated_at'])

        self._bill(ReferenceType.LAB_ORDER, order, 'cancel_lab_order')
        return order

    def soap_for(self, visit_id) -> Optional[SoapNote]:
        visit = self.repository.get(visit_id)
        return SoapNote.objects.using(self.repository.database).filter(visit=visit).first()
