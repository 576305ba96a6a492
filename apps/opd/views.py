# opd/views.py
from django.utils import timezone

from rest_framework import viewsets, status, filters
from rest_framework.decorators import action
from rest_framework.exceptions import NotFound
from rest_framework.response import Response
from django_filters.rest_framework import DjangoFilterBackend

from drf_spectacular.utils import (
    extend_schema,
    extend_schema_view,
    OpenApiParameter,
)

from apps.billing.repositories import BillingRepository
from apps.billing.serializers import BillingAccountDetailSerializer
from common.mixins import BranchViewSetMixin
from .clinical import ClinicalOrders
from .models import Visit
from .repositories import VisitRepository
from .serializers import (
    VisitListSerializer, VisitDetailSerializer, VisitRegisterSerializer,
    StartConsultationSerializer, CancelVisitSerializer, TriageInputSerializer,
    TriageAssessmentSerializer, SoapNoteSerializer, SoapInputSerializer,
    PrescriptionSerializer, PrescriptionInputSerializer,
    LabOrderSerializer, LabOrderInputSerializer,
)
from .state_machine import VisitStateMachine

PRESCRIPTION_MESSAGES = {
    'created': 'Prescription sent',
    'updated': 'Prescription updated',
    'unchanged': 'Prescription already recorded',
}


# ============================================================================
# VISIT VIEWSET
# ============================================================================

@extend_schema_view(
    list=extend_schema(
        summary="List OPD Visits",
        description="Get paginated list of OPD visits of the current branch",
        parameters=[
            OpenApiParameter(name='status', type=str, description='Filter by status'),
            OpenApiParameter(name='visit_date', type=str, description='Filter by visit date (YYYY-MM-DD)'),
            OpenApiParameter(name='search', type=str, description='Search by visit number or patient reference'),
        ],
        tags=['OPD - Visits']
    ),
    retrieve=extend_schema(
        summary="Get Visit Details",
        description="Retrieve detailed information about a specific visit",
        tags=['OPD - Visits']
    ),
    create=extend_schema(
        summary="Register Visit",
        description="Register a walk-in (joins today's queue) or a scheduled visit",
        request=VisitRegisterSerializer,
        tags=['OPD - Visits']
    ),
)
class VisitViewSet(BranchViewSetMixin, viewsets.ReadOnlyModelViewSet):
    """
    OPD Visit Management

    Reads go through the queryset; every change goes through the visit
    state machine or the clinical order service with the request context.
    """
    queryset = Visit.objects.all()

    filter_backends = [DjangoFilterBackend, filters.SearchFilter, filters.OrderingFilter]
    filterset_fields = ['status', 'visit_type', 'visit_date', 'triage_status', 'triage_level', 'physician_code']
    search_fields = ['visit_number', 'patient_ref', 'physician_name']
    ordering_fields = ['visit_date', 'queue_number', 'created_at']
    ordering = ['-visit_date', 'queue_number']

    def get_serializer_class(self):
        """Return appropriate serializer based on action"""
        if self.action == 'list':
            return VisitListSerializer
        if self.action == 'create':
            return VisitRegisterSerializer
        return VisitDetailSerializer

    def get_state_machine(self):
        return VisitStateMachine(self.request_context)

    def get_clinical_orders(self):
        return ClinicalOrders(self.request_context)

    def _visit_response(self, visit, message, status_code=status.HTTP_200_OK):
        return Response({
            'success': True,
            'message': message,
            'data': VisitDetailSerializer(visit).data
        }, status=status_code)

    @staticmethod
    def _validated(serializer_class, data):
        serializer = serializer_class(data=data)
        serializer.is_valid(raise_exception=True)
        return serializer.validated_data

    def create(self, request, *args, **kwargs):
        details = dict(self._validated(VisitRegisterSerializer, request.data))
        patient_ref = details.pop('patient_ref')
        visit = self.get_state_machine().register(patient_ref, details)
        return self._visit_response(visit, 'Visit registered', status.HTTP_201_CREATED)

    # ------------------------------------------------------------------
    # lifecycle

    @extend_schema(summary="Check In", request=None, tags=['OPD - Visits'])
    @action(detail=True, methods=['post'], url_path='check-in')
    def check_in(self, request, pk=None):
        visit = self.get_state_machine().check_in(pk)
        return self._visit_response(visit, f'Checked in, queue number {visit.queue_number}')

    @extend_schema(summary="Start Consultation", request=StartConsultationSerializer, tags=['OPD - Visits'])
    @action(detail=True, methods=['post'])
    def start(self, request, pk=None):
        data = self._validated(StartConsultationSerializer, request.data)
        visit = self.get_state_machine().start_consultation(pk, data['physician_code'])
        return self._visit_response(visit, 'Consultation started')

    @extend_schema(
        summary="Complete Consultation",
        description="Complete the consultation; retrying on a completed visit returns it unchanged",
        request=None,
        tags=['OPD - Visits']
    )
    @action(detail=True, methods=['post'])
    def complete(self, request, pk=None):
        result = self.get_state_machine().complete_consultation(pk)
        message = 'Visit already completed' if result.replayed else 'Visit completed'
        return self._visit_response(result.visit, message)

    @extend_schema(summary="Cancel Visit", request=CancelVisitSerializer, tags=['OPD - Visits'])
    @action(detail=True, methods=['post'])
    def cancel(self, request, pk=None):
        data = self._validated(CancelVisitSerializer, request.data)
        visit = self.get_state_machine().cancel(pk, data['reason'])
        return self._visit_response(visit, 'Visit cancelled')

    # ------------------------------------------------------------------
    # triage

    @extend_schema(summary="Record Triage", request=TriageInputSerializer, tags=['OPD - Triage'])
    @action(detail=True, methods=['post'])
    def triage(self, request, pk=None):
        vitals = dict(self._validated(TriageInputSerializer, request.data))
        complaint = vitals.pop('chief_complaint', None)
        assessment = self.get_state_machine().record_triage(pk, vitals, chief_complaint=complaint)
        return Response({
            'success': True,
            'message': f'Triage recorded: {assessment.get_triage_level_display()}',
            'data': TriageAssessmentSerializer(assessment).data
        }, status=status.HTTP_201_CREATED)

    @extend_schema(summary="Skip Triage", request=None, tags=['OPD - Triage'])
    @action(detail=True, methods=['post'], url_path='skip-triage')
    def skip_triage(self, request, pk=None):
        visit = self.get_state_machine().skip_triage(pk)
        return self._visit_response(visit, 'Triage skipped')

    @extend_schema(
        summary="Today's Queue",
        description="Non-terminal visits of today ordered by triage priority, status and queue number",
        tags=['OPD - Visits']
    )
    @action(detail=False, methods=['get'])
    def queue(self, request):
        repository = VisitRepository(self.request_context)
        today = timezone.localdate()
        visits = repository.queue_for(today)
        return Response({
            'success': True,
            'count': len(visits),
            'data': {
                'date': today.isoformat(),
                'average_wait_minutes': repository.average_wait_minutes(today),
                'visits': VisitListSerializer(visits, many=True).data,
            }
        })

    # ------------------------------------------------------------------
    # clinical orders

    @extend_schema(summary="Save SOAP Note", request=SoapInputSerializer, tags=['OPD - Clinical'])
    @action(detail=True, methods=['get', 'post'])
    def soap(self, request, pk=None):
        orders = self.get_clinical_orders()
        if request.method == 'GET':
            note = orders.soap_for(pk)
            if note is None:
                raise NotFound('No SOAP note for this visit.')
            return Response({'success': True, 'data': SoapNoteSerializer(note).data})

        result = orders.save_soap(pk, self._validated(SoapInputSerializer, request.data))
        return Response({
            'success': True,
            'message': 'SOAP note saved',
            'data': {
                'note': SoapNoteSerializer(result.note).data,
                'prescriptions': PrescriptionSerializer(result.prescriptions, many=True).data,
                'cancelled_prescriptions': PrescriptionSerializer(result.cancelled, many=True).data,
                'parsed_from_plan': result.parsed_from_plan,
            }
        })

    @extend_schema(summary="Send Prescription", request=PrescriptionInputSerializer, tags=['OPD - Clinical'])
    @action(detail=True, methods=['get', 'post'])
    def prescriptions(self, request, pk=None):
        if request.method == 'GET':
            visit = VisitRepository(self.request_context).get(pk)
            return Response({
                'success': True,
                'data': PrescriptionSerializer(visit.prescriptions.all(), many=True).data
            })

        result = self.get_clinical_orders().send_prescription(
            pk, self._validated(PrescriptionInputSerializer, request.data)
        )
        return Response({
            'success': True,
            'message': PRESCRIPTION_MESSAGES[result.outcome],
            'data': PrescriptionSerializer(result.prescription).data,
            'billed': result.billed,
        }, status=status.HTTP_201_CREATED if result.created else status.HTTP_200_OK)

    @extend_schema(summary="Order Lab Test", request=LabOrderInputSerializer, tags=['OPD - Clinical'])
    @action(detail=True, methods=['post'], url_path='lab-orders')
    def lab_orders(self, request, pk=None):
        result = self.get_clinical_orders().order_lab(pk, self._validated(LabOrderInputSerializer, request.data))
        return Response({
            'success': True,
            'message': 'Lab test ordered' if result.created else 'Lab test already ordered',
            'data': LabOrderSerializer(result.order).data,
            'billed': result.billed,
        }, status=status.HTTP_201_CREATED if result.created else status.HTTP_200_OK)

    @extend_schema(summary="Cancel Lab Order", request=None, tags=['OPD - Clinical'])
    @action(detail=True, methods=['delete'], url_path=r'lab-orders/(?P<order_id>\d+)')
    def cancel_lab_order(self, request, pk=None, order_id=None):
        order = self.get_clinical_orders().cancel_lab_order(pk, int(order_id))
        return Response({
            'success': True,
            'message': 'Lab order cancelled',
            'data': LabOrderSerializer(order).data
        })

    @extend_schema(summary="Visit Billing Summary", tags=['OPD - Clinical'])
    @action(detail=True, methods=['get'])
    def billing(self, request, pk=None):
        visit = VisitRepository(self.request_context).get(pk)
        account = BillingRepository(self.request_context).find_account(visit.encounter_id)
        if account is None:
            raise NotFound('No charges have been posted for this visit yet.')
        return Response({
            'success': True,
            'data': BillingAccountDetailSerializer(account).data
        })
