from django.db import models
from django.core.validators import MinValueValidator
from decimal import Decimal


class ServiceCatalogue(models.Model):
    """Billable service / drug / test entry consumed as a read-only price lookup"""
    CATEGORY_CHOICES = [
        ('consultation', 'Consultation'),
        ('medication', 'Medication'),
        ('lab_test', 'Lab Test'),
        ('procedure', 'Procedure'),
        ('other', 'Other'),
    ]

    code = models.CharField(max_length=50, unique=True)
    name = models.CharField(max_length=200)
    description = models.TextField(blank=True, default='')
    category = models.CharField(max_length=20, choices=CATEGORY_CHOICES, db_index=True)
    base_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.00'))]
    )
    discounted_price = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        null=True,
        blank=True,
        validators=[MinValueValidator(Decimal('0.00'))]
    )
    unit_of_measure = models.CharField(max_length=30, blank=True, default='unit')
    is_active = models.BooleanField(default=True)
    is_billable = models.BooleanField(default=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = 'service_catalogue'
        verbose_name = 'Service Catalogue Entry'
        verbose_name_plural = 'Service Catalogue'
        ordering = ['category', 'name']
        indexes = [
            models.Index(fields=['category', 'is_active'], name='idx_catalogue_category'),
        ]

    def __str__(self):
        return f"{self.name} ({self.code})"

    def calculate_final_price(self):
        """Calculate final price considering discounts"""
        if self.discounted_price is not None:
            return self.discounted_price
        return self.base_price
