import jwt
import uuid
from decimal import Decimal
from io import StringIO

from django.core.management import call_command
from django.test import TestCase, override_settings

from apps.billing.pricing import PriceResolver
from .models import ServiceCatalogue

TEST_SECRET = 'services-test-secret'


class SeedCatalogTest(TestCase):

    def test_seed_is_repeatable(self):
        call_command('seed_catalog', stdout=StringIO())
        count = ServiceCatalogue.objects.count()
        call_command('seed_catalog', stdout=StringIO())

        self.assertEqual(ServiceCatalogue.objects.count(), count)
        self.assertTrue(ServiceCatalogue.objects.filter(code='MED999').exists())

    def test_update_prices(self):
        call_command('seed_catalog', stdout=StringIO())
        ServiceCatalogue.objects.filter(code='LAB001').update(base_price=Decimal('1.00'))

        call_command('seed_catalog', '--update-prices', stdout=StringIO())

        self.assertEqual(ServiceCatalogue.objects.get(code='LAB001').base_price, Decimal('350.00'))

    def test_seeded_prices_are_used_for_billing(self):
        call_command('seed_catalog', stdout=StringIO())
        price = PriceResolver().resolve('medication', 'Amoxicillin 500mg capsules')

        self.assertEqual(price.source, 'catalogue')
        self.assertEqual(price.service_code, 'MED002')


@override_settings(JWT_SECRET_KEY=TEST_SECRET, JWT_ALGORITHM='HS256')
class CatalogueAPITest(TestCase):

    def setUp(self):
        ServiceCatalogue.objects.create(code='LAB003', name='Urinalysis', category='lab_test', base_price=Decimal('200.00'))
        ServiceCatalogue.objects.create(
            code='LAB004', name='Lipid Profile', category='lab_test', base_price=Decimal('600.00'), is_active=False,
        )
        token = jwt.encode({'user_id': 'u-1', 'branch_id': str(uuid.uuid4())}, TEST_SECRET, algorithm='HS256')
        self.auth = {'HTTP_AUTHORIZATION': f'Bearer {token}'}

    def test_lists_active_entries(self):
        response = self.client.get('/api/services/catalogue/', **self.auth)

        self.assertEqual(response.status_code, 200)
        codes = [entry['code'] for entry in response.json()['results']]
        self.assertEqual(codes, ['LAB003'])

    def test_requires_token(self):
        self.assertEqual(self.client.get('/api/services/catalogue/').status_code, 401)
