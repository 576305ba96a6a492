# opd/serializers.py
from rest_framework import serializers
from django.utils import timezone
from decimal import Decimal

from .models import Visit, TriageAssessment, SoapNote, Prescription, LabOrder


# ============================================================================
# VISIT SERIALIZERS
# ============================================================================

class VisitListSerializer(serializers.ModelSerializer):
    """Serializer for listing visits (lightweight)"""

    waiting_time = serializers.SerializerMethodField()

    class Meta:
        model = Visit
        fields = [
            'id', 'visit_number', 'patient_ref', 'physician_code', 'physician_name',
            'visit_date', 'visit_type', 'status', 'queue_number',
            'triage_status', 'triage_level', 'triage_score',
            'waiting_time', 'checked_in_at'
        ]
        read_only_fields = fields

    def get_waiting_time(self, obj):
        """Get waiting time in minutes"""
        return obj.calculate_waiting_time()


class TriageAssessmentSerializer(serializers.ModelSerializer):

    class Meta:
        model = TriageAssessment
        exclude = ['visit']
        read_only_fields = [f.name for f in TriageAssessment._meta.fields if f.name != 'visit']


class VisitDetailSerializer(serializers.ModelSerializer):
    """Detailed visit serializer with the latest triage and the clinical orders"""

    encounter_id = serializers.IntegerField(read_only=True)
    consultation_type = serializers.CharField(read_only=True)
    waiting_time = serializers.SerializerMethodField()
    latest_triage = serializers.SerializerMethodField()
    has_soap_note = serializers.SerializerMethodField()
    prescription_count = serializers.SerializerMethodField()
    lab_order_count = serializers.SerializerMethodField()

    class Meta:
        model = Visit
        fields = '__all__'
        read_only_fields = [
            'visit_number', 'visit_date', 'status', 'queue_number',
            'created_at', 'updated_at'
        ]

    def get_waiting_time(self, obj):
        return obj.calculate_waiting_time()

    def get_latest_triage(self, obj):
        assessment = obj.triage_assessments.order_by('-assessed_at', '-id').first()
        if assessment is None:
            return None
        return TriageAssessmentSerializer(assessment).data

    def get_has_soap_note(self, obj):
        return SoapNote.objects.using(obj._state.db).filter(visit=obj).exists()

    def get_prescription_count(self, obj):
        return obj.prescriptions.exclude(status='cancelled').count()

    def get_lab_order_count(self, obj):
        return obj.lab_orders.exclude(status='cancelled').count()


class VisitRegisterSerializer(serializers.Serializer):
    """Input for registering a walk-in or scheduled visit"""

    patient_ref = serializers.CharField(max_length=64)
    visit_type = serializers.ChoiceField(choices=Visit.VISIT_TYPE_CHOICES, required=False)
    scheduled_date = serializers.DateField(required=False)
    scheduled_time = serializers.TimeField(required=False, allow_null=True)
    chief_complaint = serializers.CharField(required=False, allow_blank=True)
    notes = serializers.CharField(required=False, allow_blank=True)

    def validate_scheduled_date(self, value):
        if value < timezone.localdate():
            raise serializers.ValidationError("Scheduled date cannot be in the past.")
        return value


class StartConsultationSerializer(serializers.Serializer):
    physician_code = serializers.CharField(max_length=64)


class CancelVisitSerializer(serializers.Serializer):
    reason = serializers.CharField()


# ============================================================================
# TRIAGE SERIALIZERS
# ============================================================================

class TriageInputSerializer(serializers.Serializer):
    """Vitals for a triage assessment; every reading is optional."""

    temperature = serializers.DecimalField(
        max_digits=4, decimal_places=1, required=False, allow_null=True,
        min_value=Decimal('30.0'), max_value=Decimal('45.0')
    )
    bp_systolic = serializers.IntegerField(required=False, allow_null=True, min_value=40, max_value=300)
    bp_diastolic = serializers.IntegerField(required=False, allow_null=True, min_value=20, max_value=200)
    heart_rate = serializers.IntegerField(required=False, allow_null=True, min_value=20, max_value=300)
    respiratory_rate = serializers.IntegerField(required=False, allow_null=True, min_value=0, max_value=80)
    spo2 = serializers.IntegerField(required=False, allow_null=True, min_value=0, max_value=100)
    gcs_eye = serializers.IntegerField(required=False, allow_null=True, min_value=1, max_value=4)
    gcs_verbal = serializers.IntegerField(required=False, allow_null=True, min_value=1, max_value=5)
    gcs_motor = serializers.IntegerField(required=False, allow_null=True, min_value=1, max_value=6)
    gcs_total = serializers.IntegerField(required=False, allow_null=True, min_value=3, max_value=15)
    pain_level = serializers.IntegerField(required=False, allow_null=True, min_value=0, max_value=10)
    chief_complaint = serializers.CharField(required=False, allow_blank=True)

    def validate(self, data):
        if data.get('bp_systolic') and data.get('bp_diastolic') and data['bp_diastolic'] >= data['bp_systolic']:
            raise serializers.ValidationError({'bp_diastolic': 'Diastolic pressure must be below systolic.'})
        return data


# ============================================================================
# CLINICAL ORDER SERIALIZERS
# ============================================================================

class SoapNoteSerializer(serializers.ModelSerializer):

    class Meta:
        model = SoapNote
        fields = [
            'id', 'visit', 'subjective', 'objective', 'assessment', 'plan',
            'is_draft', 'finalized_at', 'created_by', 'created_at', 'updated_at'
        ]
        read_only_fields = fields


class PrescriptionSerializer(serializers.ModelSerializer):

    class Meta:
        model = Prescription
        fields = [
            'id', 'visit', 'patient_ref', 'physician_code', 'drug_name', 'dosage',
            'frequency', 'duration_days', 'quantity', 'instructions', 'status',
            'source', 'created_at', 'updated_at'
        ]
        read_only_fields = fields


class PrescriptionInputSerializer(serializers.Serializer):
    """
    Loose prescription input; quantity and duration are normalised by the
    clinical service, so they are accepted as text here.
    """

    drug_name = serializers.CharField(max_length=200)
    dosage = serializers.CharField(max_length=100, required=False, allow_blank=True)
    frequency = serializers.CharField(max_length=100, required=False, allow_blank=True)
    duration_days = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    quantity = serializers.CharField(required=False, allow_blank=True, allow_null=True)
    instructions = serializers.CharField(required=False, allow_blank=True)


class SoapInputSerializer(serializers.Serializer):
    subjective = serializers.CharField(required=False, allow_blank=True)
    objective = serializers.CharField(required=False, allow_blank=True)
    assessment = serializers.CharField(required=False, allow_blank=True)
    plan = serializers.CharField(required=False, allow_blank=True)
    medications = PrescriptionInputSerializer(many=True, required=False)


class LabOrderSerializer(serializers.ModelSerializer):

    class Meta:
        model = LabOrder
        fields = [
            'id', 'visit', 'test_code', 'test_name', 'priority', 'status',
            'clinical_notes', 'ordered_by', 'cancelled_at', 'created_at'
        ]
        read_only_fields = fields


class LabOrderInputSerializer(serializers.Serializer):
    test_name = serializers.CharField(max_length=200)
    test_code = serializers.CharField(max_length=50, required=False, allow_blank=True)
    priority = serializers.ChoiceField(choices=LabOrder.PRIORITY_CHOICES, required=False)
    clinical_notes = serializers.CharField(required=False, allow_blank=True)
