# billing/admin.py
from django.contrib import admin
from django.utils.html import format_html

from .models import BillingAccount, BillingItem, Invoice, Payment, ReconciliationIssue

STATUS_COLORS = {
    'paid': 'green',
    'closed': 'green',
    'partial': 'orange',
    'open': 'orange',
    'unpaid': 'red',
    'cancelled': 'gray',
}


def status_badge(obj):
    return format_html(
        '<span style="background-color: {}; color: white; padding: 3px 10px; border-radius: 3px;">{}</span>',
        STATUS_COLORS.get(obj.status, 'gray'),
        obj.get_status_display()
    )


class BillingItemInline(admin.TabularInline):
    model = BillingItem
    extra = 0
    can_delete = False
    fields = [
        'description', 'reference_type', 'reference_id', 'quantity',
        'unit_price', 'amount', 'status', 'price_source',
    ]
    readonly_fields = fields


@admin.register(BillingAccount)
class BillingAccountAdmin(admin.ModelAdmin):
    """Accounts are maintained by the reconciler; the admin is read-mostly."""

    list_display = [
        'account_number',
        'encounter_id',
        'patient_ref',
        'net_amount',
        'amount_paid',
        'balance',
        'account_status',
        'deleted_at',
    ]
    list_filter = ['status', 'deleted_at']
    search_fields = ['account_number', 'patient_ref', 'encounter_id']
    readonly_fields = [
        'account_number', 'encounter_id', 'branch_id',
        'total_amount', 'discount_amount', 'net_amount', 'amount_paid', 'balance',
        'created_at', 'updated_at',
    ]
    inlines = [BillingItemInline]

    def account_status(self, obj):
        return status_badge(obj)
    account_status.short_description = 'Status'


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = ['invoice_number', 'encounter_id', 'net_amount', 'paid_amount', 'balance', 'invoice_status']
    list_filter = ['status', 'issued_at']
    search_fields = ['invoice_number', 'patient_ref']
    readonly_fields = [
        'invoice_number', 'encounter_id', 'account',
        'total_amount', 'discount_amount', 'net_amount', 'paid_amount', 'balance',
        'paid_at', 'created_at', 'updated_at',
    ]

    def invoice_status(self, obj):
        return status_badge(obj)
    invoice_status.short_description = 'Status'


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = ['invoice', 'amount', 'method', 'reference', 'received_by', 'received_at']
    list_filter = ['method', 'received_at']
    search_fields = ['reference', 'invoice__invoice_number']


@admin.register(ReconciliationIssue)
class ReconciliationIssueAdmin(admin.ModelAdmin):
    list_display = ['encounter_id', 'operation', 'reference_type', 'reference_id', 'occurrences', 'last_seen_at', 'resolved_at']
    list_filter = ['operation', 'reference_type', 'resolved_at']
    search_fields = ['encounter_id', 'error']
