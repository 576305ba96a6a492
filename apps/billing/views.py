# billing/views.py
import logging

from rest_framework import viewsets, status, filters
from rest_framework.decorators import action
from rest_framework.response import Response
from django_filters.rest_framework import DjangoFilterBackend

from drf_spectacular.utils import extend_schema, extend_schema_view, OpenApiParameter

from common.mixins import BranchViewSetMixin
from .health import billing_health
from .invoices import InvoiceProjector
from .models import BillingAccount, Invoice, ReconciliationIssue
from .reconciler import BillingReconciler
from .serializers import (
    BillingAccountListSerializer, BillingAccountDetailSerializer,
    InvoiceSerializer, PaymentCreateSerializer, PaymentSerializer,
    ReconciliationIssueSerializer, RepairResultSerializer,
)

logger = logging.getLogger(__name__)


# ============================================================================
# BILLING ACCOUNT VIEWSET
# ============================================================================

@extend_schema_view(
    list=extend_schema(
        summary="List Billing Accounts",
        description="Live billing accounts of the current branch",
        tags=['Billing - Accounts']
    ),
    retrieve=extend_schema(
        summary="Get Billing Account",
        description="Billing account of an encounter (visit id) with its items",
        tags=['Billing - Accounts']
    ),
)
class BillingAccountViewSet(BranchViewSetMixin, viewsets.ReadOnlyModelViewSet):
    """
    Billing accounts, looked up by encounter id.

    Accounts are written only by the reconciler; these endpoints read them
    and trigger reconciliation, deduplication and repair.
    """
    queryset = BillingAccount.objects.filter(deleted_at__isnull=True).prefetch_related('items')
    lookup_field = 'encounter_id'
    lookup_value_regex = r'\d+'

    filter_backends = [DjangoFilterBackend, filters.SearchFilter, filters.OrderingFilter]
    filterset_fields = ['status', 'patient_ref']
    search_fields = ['account_number', 'patient_ref']
    ordering_fields = ['updated_at', 'net_amount', 'balance']
    ordering = ['-updated_at']

    def get_serializer_class(self):
        if self.action == 'list':
            return BillingAccountListSerializer
        return BillingAccountDetailSerializer

    def get_reconciler(self):
        return BillingReconciler(self.request_context)

    def _encounter_id(self):
        return int(self.kwargs['encounter_id'])

    @extend_schema(
        summary="Billing Health",
        description="Open reconciliation issues, duplicate accounts, totals drift and unbilled consultations",
        parameters=[OpenApiParameter(name='days', type=int, description='Look-back window for unbilled consultations')],
        tags=['Billing - Accounts']
    )
    @action(detail=False, methods=['get'])
    def health(self, request):
        try:
            days = max(1, int(request.query_params.get('days', 7)))
        except (TypeError, ValueError):
            days = 7
        return Response({
            'success': True,
            'data': billing_health(self.request_context, days=days)
        })

    @extend_schema(
        summary="Open Reconciliation Issues",
        tags=['Billing - Accounts']
    )
    @action(detail=False, methods=['get'])
    def issues(self, request):
        issues = ReconciliationIssue.objects.using(self.request_context.database).filter(
            resolved_at__isnull=True
        )
        return Response({
            'success': True,
            'count': issues.count(),
            'data': ReconciliationIssueSerializer(issues, many=True).data
        })

    @extend_schema(
        summary="Reconcile Totals",
        description="Recompute account totals from items and re-project the invoice",
        request=None,
        tags=['Billing - Accounts']
    )
    @action(detail=True, methods=['post'])
    def reconcile(self, request, encounter_id=None):
        account = self.get_reconciler().reconcile_totals(self._encounter_id())
        return Response({
            'success': True,
            'message': 'Billing totals reconciled',
            'data': BillingAccountDetailSerializer(account).data
        })

    @extend_schema(
        summary="Deduplicate Accounts",
        description="Collapse duplicate live accounts of the encounter into one",
        request=None,
        tags=['Billing - Accounts']
    )
    @action(detail=True, methods=['post'])
    def deduplicate(self, request, encounter_id=None):
        result = self.get_reconciler().deduplicate_accounts(self._encounter_id())
        return Response({
            'success': True,
            'message': 'Duplicate accounts merged' if result.changed else 'No duplicate accounts',
            'data': {
                'account': BillingAccountDetailSerializer(result.survivor).data if result.survivor else None,
                'removed_accounts': list(result.removed_account_ids),
                'moved_items': result.moved_items,
                'dropped_items': result.dropped_items,
            }
        })

    @extend_schema(
        summary="Repair Billing",
        description="Re-derive all charges of the encounter from its clinical records",
        request=None,
        tags=['Billing - Accounts']
    )
    @action(detail=True, methods=['post'])
    def repair(self, request, encounter_id=None):
        result = self.get_reconciler().repair(self._encounter_id())
        return Response({
            'success': True,
            'message': 'Billing repaired',
            'data': RepairResultSerializer(result).data
        })


# ============================================================================
# INVOICE VIEWSET
# ============================================================================

@extend_schema_view(
    list=extend_schema(summary="List Invoices", tags=['Billing - Invoices']),
    retrieve=extend_schema(summary="Get Invoice", tags=['Billing - Invoices']),
)
class InvoiceViewSet(BranchViewSetMixin, viewsets.ReadOnlyModelViewSet):
    """Invoices and payments"""
    queryset = Invoice.objects.select_related('account').prefetch_related('payments')
    serializer_class = InvoiceSerializer

    filter_backends = [DjangoFilterBackend, filters.SearchFilter, filters.OrderingFilter]
    filterset_fields = ['status', 'encounter_id', 'patient_ref']
    search_fields = ['invoice_number', 'patient_ref']
    ordering_fields = ['issued_at', 'balance']
    ordering = ['-issued_at']

    def get_queryset(self):
        queryset = super().get_queryset()
        context = self.request_context
        if context is None:
            return queryset
        return queryset.filter(account__branch_id=context.branch_id)

    def get_projector(self):
        return InvoiceProjector(self.request_context)

    @extend_schema(
        summary="Issue Invoice For Encounter",
        description="Return the encounter's invoice, creating it on first call",
        request=None,
        tags=['Billing - Invoices']
    )
    @action(detail=False, methods=['post', 'get'], url_path=r'encounters/(?P<encounter_id>\d+)')
    def encounter(self, request, encounter_id=None):
        projector = self.get_projector()
        if request.method == 'GET':
            invoice = projector.get_for_encounter(int(encounter_id))
        else:
            invoice = projector.ensure_invoice(int(encounter_id))
        return Response({
            'success': True,
            'data': InvoiceSerializer(invoice).data
        })

    @extend_schema(
        summary="Record Payment",
        description="Apply a payment; a repeated reference returns the original payment",
        request=PaymentCreateSerializer,
        tags=['Billing - Invoices']
    )
    @action(detail=True, methods=['post'])
    def payments(self, request, pk=None):
        invoice = self.get_object()
        serializer = PaymentCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = self.get_projector().apply_payment(invoice.pk, **serializer.validated_data)
        return Response({
            'success': True,
            'message': 'Payment already recorded' if result.replayed else 'Payment recorded',
            'data': {
                'payment': PaymentSerializer(result.payment).data,
                'invoice': InvoiceSerializer(result.invoice).data,
            }
        }, status=status.HTTP_200_OK if result.replayed else status.HTTP_201_CREATED)
