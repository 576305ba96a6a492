# opd/models.py
from django.db import models
from django.db.models import Q
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator, MaxValueValidator
from django.utils import timezone
from decimal import Decimal

from common.mixins import BranchScopedModel


ACTIVE_VISIT_STATUSES = ('scheduled', 'waiting', 'in_progress')
TERMINAL_VISIT_STATUSES = ('completed', 'cancelled')

TRIAGE_LEVEL_CHOICES = [
    ('emergency', 'Emergency'),
    ('urgent', 'Urgent'),
    ('non-urgent', 'Non-urgent'),
    ('routine', 'Routine'),
]

TRIAGE_PRIORITY = {
    'emergency': 1,
    'urgent': 2,
    'non-urgent': 3,
    'routine': 4,
}


class Visit(BranchScopedModel):
    """
    Visit Model - one OPD encounter.

    Status and triage sub-status change only through
    ``apps.opd.state_machine.VisitStateMachine``. The visit id doubles as the
    encounter id used by billing.
    """

    VISIT_TYPE_CHOICES = [
        ('walk_in', 'Walk-in'),
        ('scheduled', 'Scheduled'),
        ('specialist', 'Specialist'),
        ('follow_up', 'Follow-up'),
        ('emergency', 'Emergency'),
    ]

    STATUS_CHOICES = [
        ('scheduled', 'Scheduled'),
        ('waiting', 'Waiting'),
        ('in_progress', 'In Progress'),
        ('completed', 'Completed'),
        ('cancelled', 'Cancelled'),
    ]

    TRIAGE_STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('completed', 'Completed'),
        ('skipped', 'Skipped'),
    ]

    # Primary Fields
    id = models.AutoField(primary_key=True)
    visit_number = models.CharField(
        max_length=50,
        unique=True,
        null=True,
        blank=True,
        help_text="Unique visit identifier (e.g., OPD/20231223/000042)"
    )

    # External references (patient / physician directories)
    patient_ref = models.CharField(max_length=64, db_index=True)
    physician_code = models.CharField(max_length=64, blank=True, default='')
    physician_name = models.CharField(max_length=200, blank=True, default='')

    # Visit Information
    visit_type = models.CharField(
        max_length=20,
        choices=VISIT_TYPE_CHOICES,
        default='walk_in'
    )
    scheduled_date = models.DateField()
    scheduled_time = models.TimeField(null=True, blank=True)
    visit_date = models.DateField(help_text="Day whose queue this visit belongs to")
    chief_complaint = models.TextField(blank=True, default='')
    notes = models.TextField(blank=True, default='')

    # Queue Management
    status = models.CharField(
        max_length=20,
        choices=STATUS_CHOICES,
        default='waiting'
    )
    queue_number = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Sequential per branch and day, assigned at check-in"
    )

    # Triage (latest assessment, denormalised)
    triage_status = models.CharField(
        max_length=20,
        choices=TRIAGE_STATUS_CHOICES,
        default='pending'
    )
    triage_level = models.CharField(
        max_length=20,
        choices=TRIAGE_LEVEL_CHOICES,
        blank=True,
        default=''
    )
    triage_score = models.IntegerField(null=True, blank=True)

    # Timing
    checked_in_at = models.DateTimeField(null=True, blank=True)
    consultation_started_at = models.DateTimeField(null=True, blank=True)
    consultation_completed_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.TextField(blank=True, default='')

    created_by = models.CharField(max_length=64, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'visits'
        ordering = ['-visit_date', 'queue_number']
        verbose_name = 'OPD Visit'
        verbose_name_plural = 'OPD Visits'
        constraints = [
            models.UniqueConstraint(
                fields=['branch_id', 'visit_date', 'queue_number'],
                name='uq_visit_queue_number_per_day',
            ),
            models.UniqueConstraint(
                fields=['patient_ref', 'visit_date'],
                condition=Q(status__in=ACTIVE_VISIT_STATUSES),
                name='uq_visit_active_patient_per_day',
            ),
        ]
        indexes = [
            models.Index(fields=['status', 'visit_date'], name='visit_status_date_idx'),
            models.Index(fields=['patient_ref', 'visit_date'], name='visit_patient_date_idx'),
        ]

    def __str__(self):
        return self.visit_number or f"Visit #{self.pk}"

    @property
    def encounter_id(self):
        return self.pk

    @property
    def is_terminal(self):
        return self.status in TERMINAL_VISIT_STATUSES

    @property
    def consultation_type(self):
        """Consultation kind used to pick the consultation charge."""
        return {
            'emergency': 'Emergency',
            'specialist': 'Specialist',
            'follow_up': 'FollowUp',
        }.get(self.visit_type, 'OPD')

    @property
    def triage_priority(self):
        return TRIAGE_PRIORITY.get(self.triage_level, 5)

    def calculate_waiting_time(self):
        """Minutes between check-in and consultation start."""
        if self.checked_in_at and self.consultation_started_at:
            delta = self.consultation_started_at - self.checked_in_at
            return int(delta.total_seconds() / 60)
        return None


class QueueCounter(BranchScopedModel):
    """Last queue number handed out per branch and day; locked when incremented."""

    day = models.DateField()
    last_number = models.PositiveIntegerField(default=0)

    class Meta:
        db_table = 'visit_queue_counters'
        constraints = [
            models.UniqueConstraint(fields=['branch_id', 'day'], name='uq_queue_counter_branch_day'),
        ]

    def __str__(self):
        return f"{self.branch_id} {self.day}: {self.last_number}"


class TriageAssessment(models.Model):
    """
    Vitals snapshot plus computed triage classification.

    Rows are immutable; a reassessment adds a new row.
    """

    visit = models.ForeignKey(
        Visit,
        on_delete=models.CASCADE,
        related_name='triage_assessments'
    )

    # Vitals (temperature in Celsius)
    temperature = models.DecimalField(
        max_digits=4,
        decimal_places=1,
        null=True,
        blank=True,
        validators=[MinValueValidator(Decimal('30.0')), MaxValueValidator(Decimal('45.0'))]
    )
    bp_systolic = models.IntegerField(
        null=True,
        blank=True,
        validators=[MinValueValidator(40), MaxValueValidator(300)]
    )
    bp_diastolic = models.IntegerField(
        null=True,
        blank=True,
        validators=[MinValueValidator(20), MaxValueValidator(200)]
    )
    heart_rate = models.IntegerField(
        null=True,
        blank=True,
        validators=[MinValueValidator(20), MaxValueValidator(300)]
    )
    respiratory_rate = models.IntegerField(
        null=True,
        blank=True,
        validators=[MinValueValidator(0), MaxValueValidator(80)]
    )
    spo2 = models.IntegerField(
        null=True,
        blank=True,
        validators=[MinValueValidator(0), MaxValueValidator(100)]
    )
    gcs_eye = models.PositiveSmallIntegerField(
        null=True,
        blank=True,
        validators=[MinValueValidator(1), MaxValueValidator(4)]
    )
    gcs_verbal = models.PositiveSmallIntegerField(
        null=True,
        blank=True,
        validators=[MinValueValidator(1), MaxValueValidator(5)]
    )
    gcs_motor = models.PositiveSmallIntegerField(
        null=True,
        blank=True,
        validators=[MinValueValidator(1), MaxValueValidator(6)]
    )
    gcs_total = models.PositiveSmallIntegerField(
        null=True,
        blank=True,
        validators=[MinValueValidator(3), MaxValueValidator(15)]
    )
    pain_level = models.PositiveSmallIntegerField(
        null=True,
        blank=True,
        validators=[MaxValueValidator(10)]
    )
    chief_complaint = models.TextField(blank=True, default='')

    # Result
    triage_level = models.CharField(max_length=20, choices=TRIAGE_LEVEL_CHOICES)
    triage_score = models.IntegerField()
    red_flags = models.JSONField(default=list, blank=True)

    assessed_by = models.CharField(max_length=64, blank=True, default='')
    assessed_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'triage_assessments'
        ordering = ['-assessed_at', '-id']
        verbose_name = 'Triage Assessment'

    def __str__(self):
        return f"{self.visit} - {self.triage_level} ({self.triage_score})"

    def save(self, *args, **kwargs):
        if self.pk is not None:
            raise ValidationError('Triage assessments are immutable; record a reassessment instead.')
        super().save(*args, **kwargs)


class SoapNote(models.Model):
    """Consultation note; draft until the consultation completes."""

    visit = models.OneToOneField(
        Visit,
        on_delete=models.CASCADE,
        related_name='soap_note'
    )
    subjective = models.TextField(blank=True, default='')
    objective = models.TextField(blank=True, default='')
    assessment = models.TextField(blank=True, default='')
    plan = models.TextField(blank=True, default='')

    is_draft = models.BooleanField(default=True)
    finalized_at = models.DateTimeField(null=True, blank=True)

    created_by = models.CharField(max_length=64, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'soap_notes'
        verbose_name = 'SOAP Note'

    def __str__(self):
        return f"SOAP - {self.visit}"


class Prescription(models.Model):
    """Medication ordered during a consultation; source of pharmacy charges."""

    STATUS_CHOICES = [
        ('active', 'Active'),
        ('dispensed', 'Dispensed'),
        ('cancelled', 'Cancelled'),
    ]

    SOURCE_CHOICES = [
        ('manual', 'Sent to pharmacy'),
        ('soap', 'From SOAP note'),
        ('plan', 'Parsed from plan'),
    ]

    visit = models.ForeignKey(
        Visit,
        on_delete=models.CASCADE,
        related_name='prescriptions'
    )
    patient_ref = models.CharField(max_length=64)
    physician_code = models.CharField(max_length=64, blank=True, default='')

    drug_name = models.CharField(max_length=200)
    drug_key = models.CharField(max_length=200, help_text="Normalised drug name used for de-duplication")
    dosage = models.CharField(max_length=100, blank=True, default='')
    frequency = models.CharField(max_length=100, blank=True, default='')
    duration_days = models.PositiveIntegerField(null=True, blank=True)
    quantity = models.PositiveIntegerField(default=1, validators=[MinValueValidator(1)])
    instructions = models.TextField(blank=True, default='')

    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='active')
    source = models.CharField(max_length=10, choices=SOURCE_CHOICES, default='manual')

    created_by = models.CharField(max_length=64, blank=True, default='')
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'prescriptions'
        ordering = ['created_at', 'id']
        constraints = [
            models.UniqueConstraint(fields=['visit', 'drug_key'], name='uq_prescription_visit_drug'),
        ]

    def __str__(self):
        return f"{self.drug_name} x{self.quantity} ({self.visit})"

    @property
    def encounter_id(self):
        return self.visit_id

    @staticmethod
    def normalize_drug_name(name):
        return ' '.join((name or '').lower().split())


class LabOrder(models.Model):
    """Lab investigation ordered during a consultation."""

    PRIORITY_CHOICES = [
        ('routine', 'Routine'),
        ('urgent', 'Urgent'),
        ('stat', 'STAT'),
    ]

    STATUS_CHOICES = [
        ('ordered', 'Ordered'),
        ('submitted', 'Submitted to lab'),
        ('completed', 'Completed'),
        ('cancelled', 'Cancelled'),
    ]

    visit = models.ForeignKey(
        Visit,
        on_delete=models.CASCADE,
        related_name='lab_orders'
    )
    test_code = models.CharField(max_length=50, blank=True, default='')
    test_name = models.CharField(max_length=200)
    test_key = models.CharField(max_length=200)
    priority = models.CharField(max_length=10, choices=PRIORITY_CHOICES, default='routine')
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='ordered')
    clinical_notes = models.TextField(blank=True, default='')

    ordered_by = models.CharField(max_length=64, blank=True, default='')
    cancelled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'lab_orders'
        ordering = ['created_at', 'id']
        constraints = [
            models.UniqueConstraint(
                fields=['visit', 'test_key'],
                condition=~Q(status='cancelled'),
                name='uq_lab_order_visit_test_active',
            ),
        ]

    def __str__(self):
        return f"{self.test_name} ({self.visit})"

    @property
    def encounter_id(self):
        return self.visit_id
