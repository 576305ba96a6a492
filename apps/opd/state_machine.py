"""
OPD visit lifecycle.

    SCHEDULED -> WAITING -> IN_PROGRESS -> COMPLETED
         \__________\___________\-------> CANCELLED

Triage (pending -> completed | skipped) runs only while the visit is
WAITING. Every mutation locks the visit row inside a transaction on the
context's database.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError, transaction
from django.utils import timezone
from rest_framework.exceptions import NotFound, ValidationError

from common.exceptions import (
    ConsultationLocked,
    DuplicateActiveVisit,
    InvalidStateTransition,
)
from . import triage
from .directories import get_patient_directory, get_physician_directory
from .events import ConsultationCompleted, ConsultationEventDispatcher
from .models import LabOrder, SoapNote, TriageAssessment, Visit
from .repositories import VisitRepository

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    'scheduled': ('waiting', 'cancelled'),
    'waiting': ('in_progress', 'cancelled'),
    'in_progress': ('completed', 'cancelled'),
    'completed': (),
    'cancelled': (),
}


def visit_state(visit):
    return {
        'visit_id': visit.pk,
        'visit_number': visit.visit_number,
        'status': visit.status,
        'triage_status': visit.triage_status,
    }


def assert_modifiable(visit):
    """Clinical orders may change only while the visit is open."""
    if visit.status == 'completed':
        raise ConsultationLocked(
            f"Visit {visit.visit_number} is completed; clinical orders are locked.",
            current_state=visit_state(visit),
        )
    if visit.status == 'cancelled':
        raise InvalidStateTransition(
            f"Visit {visit.visit_number} is cancelled.",
            current_state=visit_state(visit),
        )


@dataclass(frozen=True)
class CompletionResult:
    visit: Visit
    replayed: bool = False


class VisitStateMachine:

    def __init__(self, context, patients=None, physicians=None, dispatcher=None, repository=None):
        self.context = context
        self.patients = patients or get_patient_directory()
        self.physicians = physicians or get_physician_directory()
        self.dispatcher = dispatcher or ConsultationEventDispatcher()
        self.repository = repository or VisitRepository(context)

    # ------------------------------------------------------------------
    # helpers

    def _transition(self, visit, target):
        if target not in ALLOWED_TRANSITIONS.get(visit.status, ()):
            raise InvalidStateTransition(
                f"Cannot move visit {visit.visit_number} from {visit.status} to {target}.",
                current_state=visit_state(visit),
            )
        logger.info(f"Visit {visit.visit_number}: {visit.status} -> {target} by {self.context.actor}")
        visit.status = target

    def _duplicate_error(self, existing, day):
        return DuplicateActiveVisit(
            f"Patient {existing.patient_ref} already has visit {existing.visit_number} "
            f"({existing.status}) on {day.isoformat()}.",
            current_state=visit_state(existing),
        )

    # ------------------------------------------------------------------
    # registration / queue

    def register(self, patient_ref, details=None):
        """Create a visit: WAITING with a queue number for today, SCHEDULED otherwise."""
        details = details or {}
        today = timezone.localdate()
        scheduled_date = details.get('scheduled_date') or today
        if scheduled_date < today:
            raise ValidationError({'scheduled_date': 'Scheduled date cannot be in the past.'})

        visit_type = details.get('visit_type') or ('scheduled' if scheduled_date > today else 'walk_in')
        walk_in = scheduled_date == today and visit_type != 'scheduled'

        if not self.patients.exists(patient_ref):
            raise NotFound(f"Patient {patient_ref} not found.")

        repo = self.repository
        with repo.atomic():
            existing = repo.active_visit_for(patient_ref, scheduled_date)
            if existing:
                raise self._duplicate_error(existing, scheduled_date)

            now = timezone.now()
            try:
                with transaction.atomic(using=repo.database):
                    visit = Visit.objects.using(repo.database).create(
                        branch_id=self.context.branch_id,
                        patient_ref=patient_ref,
                        visit_type=visit_type,
                        scheduled_date=scheduled_date,
                        scheduled_time=details.get('scheduled_time'),
                        visit_date=scheduled_date,
                        chief_complaint=details.get('chief_complaint') or '',
                        notes=details.get('notes') or '',
                        status='waiting' if walk_in else 'scheduled',
                        queue_number=repo.next_queue_number(today) if walk_in else None,
                        checked_in_at=now if walk_in else None,
                        created_by=self.context.actor,
                    )
            except IntegrityError:
                existing = repo.active_visit_for(patient_ref, scheduled_date)
                if existing:
                    raise self._duplicate_error(existing, scheduled_date)
                raise

            visit.visit_number = f"OPD/{scheduled_date.strftime('%Y%m%d')}/{visit.pk:06d}"
            visit.save(using=repo.database, update_fields=['visit_number'])

        logger.info(
            f"Registered visit {visit.visit_number} for patient {patient_ref} "
            f"({visit.status}, queue {visit.queue_number})"
        )
        return visit

    def check_in(self, visit_id):
        """SCHEDULED -> WAITING with the next queue number of the day."""
        repo = self.repository
        with repo.atomic():
            visit = repo.lock(visit_id)
            if visit.status != 'scheduled':
                raise InvalidStateTransition(
                    f"Only scheduled visits can be checked in; visit {visit.visit_number} is {visit.status}.",
                    current_state=visit_state(visit),
                )

            today = timezone.localdate()
            existing = repo.active_visit_for(visit.patient_ref, today, exclude_id=visit.pk)
            if existing:
                raise self._duplicate_error(existing, today)

            self._transition(visit, 'waiting')
            visit.visit_date = today
            visit.queue_number = repo.next_queue_number(today)
            visit.checked_in_at = timezone.now()
            try:
                with transaction.atomic(using=repo.database):
                    visit.save(using=repo.database, update_fields=[
                        'status', 'visit_date', 'queue_number', 'checked_in_at', 'updated_at',
                    ])
            except IntegrityError:
                existing = repo.active_visit_for(visit.patient_ref, today, exclude_id=visit.pk)
                if existing:
                    raise self._duplicate_error(existing, today)
                raise
        return visit

    # ------------------------------------------------------------------
    # triage

    def record_triage(self, visit_id, vitals, chief_complaint=None, policy=None):
        """Score vitals and store a new immutable assessment (reassessments add rows)."""
        repo = self.repository
        with repo.atomic():
            visit = repo.lock(visit_id)
            if visit.status != 'waiting':
                raise InvalidStateTransition(
                    f"Triage can only be recorded while the patient is waiting; visit is {visit.status}.",
                    current_state=visit_state(visit),
                )

            complaint = chief_complaint if chief_complaint is not None else visit.chief_complaint
            readings = triage.Vitals.from_dict(vitals)
            result = triage.score(readings, complaint, policy=policy)

            assessment = TriageAssessment(
                visit=visit,
                temperature=(
                    readings.temperature.quantize(Decimal('0.1'))
                    if readings.temperature is not None else None
                ),
                bp_systolic=readings.bp_systolic,
                bp_diastolic=readings.bp_diastolic,
                heart_rate=readings.heart_rate,
                respiratory_rate=readings.respiratory_rate,
                spo2=readings.spo2,
                gcs_eye=readings.gcs_eye,
                gcs_verbal=readings.gcs_verbal,
                gcs_motor=readings.gcs_motor,
                gcs_total=readings.gcs,
                pain_level=readings.pain_level,
                chief_complaint=complaint or '',
                triage_level=result.level,
                triage_score=result.score,
                red_flags=list(result.red_flags),
                assessed_by=self.context.actor,
            )
            try:
                assessment.full_clean(exclude=['visit'])
            except DjangoValidationError as e:
                raise ValidationError(e.message_dict)
            assessment.save(using=repo.database)

            visit.triage_status = 'completed'
            visit.triage_level = result.level
            visit.triage_score = result.score
            if chief_complaint:
                visit.chief_complaint = chief_complaint
            visit.save(using=repo.database, update_fields=[
                'triage_status', 'triage_level', 'triage_score', 'chief_complaint', 'updated_at',
            ])

        logger.info(f"Triage for visit {visit.visit_number}: {result.level} (score {result.score})")
        return assessment

    def skip_triage(self, visit_id):
        repo = self.repository
        with repo.atomic():
            visit = repo.lock(visit_id)
            if visit.status != 'waiting' or visit.triage_status != 'pending':
                raise InvalidStateTransition(
                    "Triage can only be skipped for a waiting visit with triage pending.",
                    current_state=visit_state(visit),
                )
            visit.triage_status = 'skipped'
            visit.save(using=repo.database, update_fields=['triage_status', 'updated_at'])
        return visit

    # ------------------------------------------------------------------
    # consultation

    def start_consultation(self, visit_id, physician_code):
        physician = self.physicians.get(physician_code)
        if physician is None:
            raise NotFound(f"Physician {physician_code} not found.")

        repo = self.repository
        with repo.atomic():
            visit = repo.lock(visit_id)
            self._transition(visit, 'in_progress')
            visit.physician_code = physician.code
            visit.physician_name = physician.name
            visit.consultation_started_at = timezone.now()
            visit.save(using=repo.database, update_fields=[
                'status', 'physician_code', 'physician_name', 'consultation_started_at', 'updated_at',
            ])
        return visit

    def complete_consultation(self, visit_id):
        """
        IN_PROGRESS -> COMPLETED and publish ConsultationCompleted after commit.

        A retry on an already completed visit returns it unchanged and does
        not publish again.
        """
        repo = self.repository
        with repo.atomic():
            visit = repo.lock(visit_id)
            if visit.status == 'completed':
                logger.info(f"Visit {visit.visit_number} already completed; returning existing result")
                return CompletionResult(visit=visit, replayed=True)

            self._transition(visit, 'completed')
            now = timezone.now()
            visit.consultation_completed_at = now
            visit.save(using=repo.database, update_fields=['status', 'consultation_completed_at', 'updated_at'])

            SoapNote.objects.using(repo.database).filter(visit=visit, is_draft=True).update(
                is_draft=False, finalized_at=now, updated_at=now,
            )
            LabOrder.objects.using(repo.database).filter(visit=visit, status='ordered').update(
                status='submitted', updated_at=now,
            )

            self.dispatcher.publish_on_commit(ConsultationCompleted(
                visit_id=visit.pk,
                patient_ref=visit.patient_ref,
                physician_code=visit.physician_code,
                consultation_type=visit.consultation_type,
                completed_at=now,
                context=self.context,
            ))
        return CompletionResult(visit=visit, replayed=False)

    def cancel(self, visit_id, reason):
        if not (reason or '').strip():
            raise ValidationError({'reason': 'A cancellation reason is required.'})

        repo = self.repository
        with repo.atomic():
            visit = repo.lock(visit_id)
            if visit.status == 'completed':
                raise InvalidStateTransition(
                    f"Visit {visit.visit_number} is completed and cannot be cancelled.",
                    current_state=visit_state(visit),
                )
            self._transition(visit, 'cancelled')
            visit.cancellation_reason = reason.strip()
            visit.cancelled_at = timezone.now()
            visit.save(using=repo.database, update_fields=['status', 'cancellation_reason', 'cancelled_at', 'updated_at'])
        return visit
