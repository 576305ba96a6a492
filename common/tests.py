"""
Tests for the request context middleware, error rendering and feature flags.
"""

import jwt
import uuid
from datetime import datetime, timedelta, timezone as dt_timezone

from django.core.exceptions import ImproperlyConfigured, ValidationError as DjangoValidationError
from django.http import JsonResponse
from django.test import TestCase, SimpleTestCase, RequestFactory, override_settings
from rest_framework.exceptions import NotFound

from common.context import RequestContext
from common.exceptions import (
    DuplicateActiveVisit,
    OverpaymentRejected,
    hms_exception_handler,
)
from common.features import feature_enabled, load_features, reset_features
from common.middleware import RequestContextMiddleware, get_request_context

TEST_SECRET = 'test-jwt-secret-key'


def make_token(payload=None, secret=TEST_SECRET):
    default_payload = {
        'user_id': str(uuid.uuid4()),
        'email': 'nurse@hospital.com',
        'branch_id': str(uuid.uuid4()),
    }
    if payload:
        default_payload.update(payload)
    return jwt.encode(default_payload, secret, algorithm='HS256')


@override_settings(JWT_SECRET_KEY=TEST_SECRET, JWT_ALGORITHM='HS256')
class RequestContextMiddlewareTest(SimpleTestCase):
    """Test JWT validation and RequestContext construction."""

    def setUp(self):
        self.factory = RequestFactory()
        self.middleware = RequestContextMiddleware(lambda request: None)

    def test_valid_jwt_builds_context(self):
        branch_id = str(uuid.uuid4())
        token = make_token({'branch_id': branch_id, 'user_id': 'u-1'})
        request = self.factory.get('/api/opd/visits/', HTTP_AUTHORIZATION=f'Bearer {token}')

        response = self.middleware.process_request(request)

        self.assertIsNone(response)
        context = get_request_context(request)
        self.assertIsInstance(context, RequestContext)
        self.assertEqual(context.branch_id, branch_id)
        self.assertEqual(context.user_id, 'u-1')
        self.assertEqual(context.email, 'nurse@hospital.com')
        self.assertEqual(context.database, 'default')
        self.assertEqual(context.actor, 'u-1')

    def test_missing_authorization_header(self):
        request = self.factory.get('/api/opd/visits/')
        response = self.middleware.process_request(request)

        self.assertIsInstance(response, JsonResponse)
        self.assertEqual(response.status_code, 401)
        self.assertIsNone(request.context)

    def test_invalid_jwt(self):
        request = self.factory.get('/api/opd/visits/', HTTP_AUTHORIZATION='Bearer invalid-token')
        response = self.middleware.process_request(request)
        self.assertEqual(response.status_code, 401)

    def test_wrong_secret(self):
        token = make_token(secret='someone-else')
        request = self.factory.get('/api/opd/visits/', HTTP_AUTHORIZATION=f'Bearer {token}')
        response = self.middleware.process_request(request)
        self.assertEqual(response.status_code, 401)

    def test_expired_jwt(self):
        expired = datetime.now(dt_timezone.utc) - timedelta(minutes=5)
        token = make_token({'exp': expired})
        request = self.factory.get('/api/opd/visits/', HTTP_AUTHORIZATION=f'Bearer {token}')

        response = self.middleware.process_request(request)

        self.assertEqual(response.status_code, 401)
        self.assertIn(b'Token expired', response.content)

    def test_missing_branch(self):
        token = make_token({'branch_id': None})
        request = self.factory.get('/api/opd/visits/', HTTP_AUTHORIZATION=f'Bearer {token}')
        response = self.middleware.process_request(request)

        self.assertEqual(response.status_code, 401)
        self.assertIn(b'branch_id', response.content)

    def test_branch_must_be_uuid(self):
        token = make_token({'branch_id': 'main-branch'})
        request = self.factory.get('/api/opd/visits/', HTTP_AUTHORIZATION=f'Bearer {token}')
        response = self.middleware.process_request(request)
        self.assertEqual(response.status_code, 401)

    def test_unknown_database_alias(self):
        token = make_token({'database': 'branch_db_42'})
        request = self.factory.get('/api/opd/visits/', HTTP_AUTHORIZATION=f'Bearer {token}')
        response = self.middleware.process_request(request)
        self.assertEqual(response.status_code, 403)

    def test_skip_paths(self):
        for path in ['/admin/', '/health/', '/api/docs/', '/']:
            request = self.factory.get(path)
            self.assertIsNone(self.middleware.process_request(request), path)
            self.assertIsNone(request.context)


class RequestContextTest(SimpleTestCase):

    def test_system_context(self):
        branch_id = uuid.uuid4()
        context = RequestContext.system(branch_id)

        self.assertEqual(context.branch_id, str(branch_id))
        self.assertEqual(context.actor, 'system')
        self.assertEqual(context.database, 'default')

    def test_context_is_immutable(self):
        context = RequestContext(branch_id='b')
        with self.assertRaises(Exception):
            context.branch_id = 'other'


class ExceptionHandlerTest(TestCase):

    def test_state_conflict_carries_current_state(self):
        exc = DuplicateActiveVisit('Patient already waiting', current_state={'status': 'waiting'})
        response = hms_exception_handler(exc, {'view': None})

        self.assertEqual(response.status_code, 409)
        self.assertFalse(response.data['success'])
        self.assertEqual(response.data['error'], 'duplicate_active_visit')
        self.assertEqual(response.data['context'], {'status': 'waiting'})

    def test_overpayment_code(self):
        exc = OverpaymentRejected(current_state={'balance': '10.00'})
        response = hms_exception_handler(exc, {'view': None})

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.data['error'], 'overpayment_rejected')
        self.assertEqual(response.data['context']['balance'], '10.00')

    def test_not_found(self):
        response = hms_exception_handler(NotFound('Visit 9 not found.'), {'view': None})

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.data['detail'], 'Visit 9 not found.')
        self.assertNotIn('context', response.data)

    def test_django_validation_error_becomes_400(self):
        exc = DjangoValidationError({'spo2': ['Ensure this value is less than or equal to 100.']})
        response = hms_exception_handler(exc, {'view': None})

        self.assertEqual(response.status_code, 400)
        self.assertFalse(response.data['success'])
        self.assertIn('spo2', response.data['detail'])

    def test_unhandled_exception_is_left_to_django(self):
        self.assertIsNone(hms_exception_handler(RuntimeError('boom'), {'view': None}))


class FeatureFlagTest(SimpleTestCase):

    def tearDown(self):
        reset_features()

    def test_defaults(self):
        with override_settings(HMS_FEATURES={}):
            self.assertTrue(feature_enabled('lab_orders'))
            self.assertTrue(feature_enabled('parse_plan_medications'))
            self.assertFalse(feature_enabled('auto_invoice_on_prescription'))

    def test_settings_override(self):
        with override_settings(HMS_FEATURES={'lab_orders': False}):
            self.assertFalse(feature_enabled('lab_orders'))
        self.assertTrue(feature_enabled('lab_orders'))

    def test_unknown_feature_key_is_rejected(self):
        with override_settings(HMS_FEATURES={'telepathy': True}):
            with self.assertRaises(ImproperlyConfigured):
                load_features()

    def test_unknown_feature_lookup(self):
        with self.assertRaises(KeyError):
            feature_enabled('telepathy')


class HealthViewTest(TestCase):

    def test_health_is_public(self):
        response = self.client.get('/health/')

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body['status'], 'healthy')
        self.assertEqual(body['database'], 'ok')
        self.assertIn('lab_orders', body['features'])
