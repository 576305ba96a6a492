# opd/admin.py
from django.contrib import admin
from django.utils.html import format_html

from .models import Visit, TriageAssessment, SoapNote, Prescription, LabOrder

TRIAGE_COLORS = {
    'emergency': 'red',
    'urgent': 'orange',
    'non-urgent': 'goldenrod',
    'routine': 'green',
}


class TriageAssessmentInline(admin.TabularInline):
    model = TriageAssessment
    extra = 0
    can_delete = False
    fields = ['assessed_at', 'triage_level', 'triage_score', 'spo2', 'gcs_total', 'heart_rate', 'assessed_by']
    readonly_fields = fields


class PrescriptionInline(admin.TabularInline):
    model = Prescription
    extra = 0
    fields = ['drug_name', 'dosage', 'frequency', 'duration_days', 'quantity', 'status', 'source']
    readonly_fields = ['source']


@admin.register(Visit)
class VisitAdmin(admin.ModelAdmin):
    """Admin interface for Visit model; status changes belong to the API."""

    list_display = [
        'visit_number',
        'patient_ref',
        'physician_name',
        'visit_date',
        'queue_number',
        'status',
        'triage_badge',
    ]
    list_filter = ['status', 'triage_status', 'triage_level', 'visit_type', 'visit_date']
    search_fields = ['visit_number', 'patient_ref', 'physician_code', 'physician_name']
    readonly_fields = [
        'visit_number', 'branch_id', 'status', 'queue_number', 'triage_status',
        'triage_level', 'triage_score', 'checked_in_at', 'consultation_started_at',
        'consultation_completed_at', 'cancelled_at', 'created_by', 'created_at', 'updated_at',
    ]
    inlines = [TriageAssessmentInline, PrescriptionInline]

    fieldsets = (
        ('Visit Information', {
            'fields': ('visit_number', 'branch_id', 'visit_type', 'scheduled_date', 'scheduled_time', 'visit_date')
        }),
        ('Patient & Physician', {
            'fields': ('patient_ref', 'physician_code', 'physician_name', 'chief_complaint', 'notes')
        }),
        ('Queue & Triage', {
            'fields': ('status', 'queue_number', 'triage_status', 'triage_level', 'triage_score')
        }),
        ('Timing', {
            'fields': (
                'checked_in_at', 'consultation_started_at', 'consultation_completed_at',
                'cancelled_at', 'cancellation_reason',
            )
        }),
        ('Audit', {
            'fields': ('created_by', 'created_at', 'updated_at')
        }),
    )

    def triage_badge(self, obj):
        """Display triage level with color badge."""
        if not obj.triage_level:
            return '-'
        return format_html(
            '<span style="background-color: {}; color: white; padding: 3px 10px; border-radius: 3px;">{}</span>',
            TRIAGE_COLORS.get(obj.triage_level, 'gray'),
            obj.get_triage_level_display()
        )
    triage_badge.short_description = 'Triage'


@admin.register(SoapNote)
class SoapNoteAdmin(admin.ModelAdmin):
    list_display = ['visit', 'is_draft', 'finalized_at', 'updated_at']
    list_filter = ['is_draft']
    search_fields = ['visit__visit_number', 'assessment', 'plan']


@admin.register(LabOrder)
class LabOrderAdmin(admin.ModelAdmin):
    list_display = ['test_name', 'test_code', 'visit', 'priority', 'status', 'created_at']
    list_filter = ['status', 'priority']
    search_fields = ['test_name', 'test_code', 'visit__visit_number']
