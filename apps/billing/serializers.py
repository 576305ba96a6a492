# billing/serializers.py
from decimal import Decimal

from rest_framework import serializers

from .enums import PaymentMethod
from .models import BillingAccount, BillingItem, Invoice, Payment, ReconciliationIssue


# ============================================================================
# ACCOUNT SERIALIZERS
# ============================================================================

class BillingItemSerializer(serializers.ModelSerializer):
    """Read-only view of a charge line"""

    class Meta:
        model = BillingItem
        fields = [
            'id', 'item_type', 'service_code', 'description', 'quantity',
            'unit_price', 'amount', 'discount_amount', 'net_amount', 'price_source',
            'status', 'reference_type', 'reference_id', 'posted_by',
            'created_at', 'cancelled_at'
        ]
        read_only_fields = fields


class BillingAccountListSerializer(serializers.ModelSerializer):
    """Lightweight account listing"""

    item_count = serializers.SerializerMethodField()

    class Meta:
        model = BillingAccount
        fields = [
            'id', 'account_number', 'encounter_id', 'patient_ref', 'status',
            'total_amount', 'net_amount', 'amount_paid', 'balance',
            'item_count', 'updated_at'
        ]
        read_only_fields = fields

    def get_item_count(self, obj):
        return obj.items.exclude(status='cancelled').count()


class BillingAccountDetailSerializer(serializers.ModelSerializer):
    """Account with its items"""

    items = BillingItemSerializer(many=True, read_only=True)

    class Meta:
        model = BillingAccount
        fields = [
            'id', 'account_number', 'branch_id', 'encounter_id', 'patient_ref', 'status',
            'total_amount', 'discount_amount', 'net_amount', 'amount_paid', 'balance',
            'items', 'created_at', 'updated_at'
        ]
        read_only_fields = fields


# ============================================================================
# INVOICE / PAYMENT SERIALIZERS
# ============================================================================

class PaymentSerializer(serializers.ModelSerializer):

    class Meta:
        model = Payment
        fields = ['id', 'invoice', 'amount', 'method', 'reference', 'received_by', 'received_at']
        read_only_fields = fields


class InvoiceSerializer(serializers.ModelSerializer):
    payments = PaymentSerializer(many=True, read_only=True)
    account_number = serializers.CharField(source='account.account_number', read_only=True)

    class Meta:
        model = Invoice
        fields = [
            'id', 'invoice_number', 'encounter_id', 'account', 'account_number', 'patient_ref',
            'total_amount', 'discount_amount', 'net_amount', 'paid_amount', 'balance',
            'status', 'issued_at', 'paid_at', 'payments'
        ]
        read_only_fields = fields


class PaymentCreateSerializer(serializers.Serializer):
    """Input for recording a payment"""

    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal('0.01'))
    method = serializers.ChoiceField(choices=PaymentMethod.choices)
    reference = serializers.CharField(max_length=100, required=False, allow_blank=True, default='')


class ReconciliationIssueSerializer(serializers.ModelSerializer):

    class Meta:
        model = ReconciliationIssue
        fields = [
            'id', 'encounter_id', 'reference_type', 'reference_id', 'operation',
            'error', 'occurrences', 'first_seen_at', 'last_seen_at', 'resolved_at'
        ]
        read_only_fields = fields


class RepairResultSerializer(serializers.Serializer):
    encounter_id = serializers.IntegerField()
    outcomes = serializers.DictField(child=serializers.IntegerField())
    removed_accounts = serializers.SerializerMethodField()
    account = serializers.SerializerMethodField()

    def get_removed_accounts(self, obj):
        if obj.deduplication is None:
            return []
        return list(obj.deduplication.removed_account_ids)

    def get_account(self, obj):
        if obj.account is None:
            return None
        return BillingAccountDetailSerializer(obj.account).data
