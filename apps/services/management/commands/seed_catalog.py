# services/management/commands/seed_catalog.py
from django.core.management.base import BaseCommand
from django.db import transaction
from decimal import Decimal

from apps.services.models import ServiceCatalogue


CATALOGUE = [
    # Generic fallback entries, one per category
    ('CON999', 'General Consultation', 'consultation', '500.00', 'Generic consultation charge'),
    ('MED999', 'General Prescription Medication', 'medication', '50.00', 'Generic charge for prescribed medication'),
    ('LAB999', 'General Laboratory Test', 'lab_test', '300.00', 'Generic laboratory investigation'),
    ('PRC999', 'General Procedure', 'procedure', '1000.00', 'Generic minor procedure'),

    # Consultations
    ('CON001', 'General Physician Consultation', 'consultation', '500.00', 'OPD consultation with a general physician'),
    ('CON002', 'Specialist Consultation', 'consultation', '1000.00', 'OPD consultation with a specialist'),
    ('CON003', 'Follow-up Consultation', 'consultation', '300.00', 'Review visit within the follow-up window'),
    ('CON004', 'Emergency Consultation', 'consultation', '1500.00', 'Emergency department consultation'),

    # Common medications
    ('MED001', 'Paracetamol 500mg', 'medication', '5.00', 'Paracetamol tablet'),
    ('MED002', 'Amoxicillin 500mg', 'medication', '15.00', 'Amoxicillin capsule'),
    ('MED003', 'Ibuprofen 400mg', 'medication', '10.00', 'Ibuprofen tablet'),

    # Common lab tests
    ('LAB001', 'Complete Blood Count', 'lab_test', '350.00', 'CBC with differential'),
    ('LAB002', 'Blood Sugar Fasting', 'lab_test', '150.00', 'Fasting blood glucose'),
    ('LAB003', 'Urinalysis', 'lab_test', '200.00', 'Urine routine and microscopy'),
]


class Command(BaseCommand):
    help = 'Seed the service catalogue with generic and common billable entries'

    def add_arguments(self, parser):
        parser.add_argument(
            '--update-prices',
            action='store_true',
            help='Overwrite prices of entries that already exist',
        )

    @transaction.atomic
    def handle(self, *args, **options):
        self.stdout.write('Seeding service catalogue...')
        created_count = 0
        updated_count = 0

        for code, name, category, price, description in CATALOGUE:
            entry, created = ServiceCatalogue.objects.get_or_create(
                code=code,
                defaults={
                    'name': name,
                    'category': category,
                    'base_price': Decimal(price),
                    'description': description,
                }
            )
            if created:
                created_count += 1
            elif options['update_prices'] and entry.base_price != Decimal(price):
                entry.base_price = Decimal(price)
                entry.save(update_fields=['base_price', 'updated_at'])
                updated_count += 1

        self.stdout.write(self.style.SUCCESS(
            f'Catalogue seeded: {created_count} created, {updated_count} updated'
        ))
