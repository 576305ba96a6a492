from django.db import models


class ReferenceType(models.TextChoices):
    """Clinical record kinds that can produce a billing item."""
    CONSULTATION = "consultation", "Consultation"
    PRESCRIPTION = "prescription", "Prescription"
    LAB_ORDER = "lab_order", "Lab order"


class ItemType(models.TextChoices):
    CONSULTATION = "consultation", "Consultation"
    PHARMACY = "pharmacy", "Pharmacy"
    LAB = "lab", "Laboratory"
    PROCEDURE = "procedure", "Procedure"
    OTHER = "other", "Other"


class ItemStatus(models.TextChoices):
    UNPAID = "unpaid", "Unpaid"
    PAID = "paid", "Paid"
    CANCELLED = "cancelled", "Cancelled"


class AccountStatus(models.TextChoices):
    OPEN = "open", "Open"
    CLOSED = "closed", "Closed"


class InvoiceStatus(models.TextChoices):
    UNPAID = "unpaid", "Unpaid"
    PARTIAL = "partial", "Partially paid"
    PAID = "paid", "Paid"


class PaymentMethod(models.TextChoices):
    CASH = "cash", "Cash"
    CARD = "card", "Card"
    UPI = "upi", "UPI"
    BANK_TRANSFER = "bank_transfer", "Bank transfer"
    INSURANCE = "insurance", "Insurance"
