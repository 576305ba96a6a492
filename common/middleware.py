import uuid

import jwt
from django.conf import settings
from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin
import logging

from common.context import RequestContext

logger = logging.getLogger(__name__)


class RequestContextMiddleware(MiddlewareMixin):
    """
    JWT middleware for HMS.

    Validates the bearer JWT issued by the auth service and attaches an
    explicit RequestContext (branch, user, database alias) to the request
    as ``request.context``.
    """

    skip_paths = [
        '/admin/',
        '/static/',
        '/media/',
        '/health/',
        '/api/schema/',
        '/api/docs/',
        '/api/redoc/',
    ]

    required_fields = ['user_id', 'branch_id']

    def process_request(self, request):
        """Process incoming request and validate JWT."""
        request.context = None

        if request.path == '/' or any(request.path.startswith(path) for path in self.skip_paths):
            return None

        # Get JWT token from Authorization header
        auth_header = request.META.get('HTTP_AUTHORIZATION', '')

        if not auth_header.startswith('Bearer '):
            return JsonResponse({
                'success': False,
                'error': 'Missing or invalid Authorization header',
                'detail': 'Expected format: Bearer <token>'
            }, status=401)

        token = auth_header.split(' ', 1)[1].strip()

        try:
            payload = jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM]
            )
        except jwt.ExpiredSignatureError:
            return JsonResponse({
                'success': False,
                'error': 'Token expired',
                'detail': 'JWT token has expired'
            }, status=401)
        except jwt.InvalidTokenError as e:
            return JsonResponse({
                'success': False,
                'error': 'Invalid token',
                'detail': str(e)
            }, status=401)

        for field in self.required_fields:
            if not payload.get(field):
                return JsonResponse({
                    'success': False,
                    'error': 'Invalid JWT token',
                    'detail': f'Missing required field: {field}'
                }, status=401)

        try:
            branch_id = str(uuid.UUID(str(payload['branch_id'])))
        except ValueError:
            return JsonResponse({
                'success': False,
                'error': 'Invalid JWT token',
                'detail': 'branch_id must be a UUID'
            }, status=401)

        database = payload.get('database', 'default')
        if database not in settings.DATABASES:
            return JsonResponse({
                'success': False,
                'error': 'Access denied',
                'detail': f'Unknown database alias: {database}'
            }, status=403)

        request.context = RequestContext(
            branch_id=branch_id,
            user_id=str(payload['user_id']),
            email=payload.get('email'),
            database=database,
            claims=payload,
        )

        logger.debug(f"JWT validated for user {payload['user_id']} on branch {payload['branch_id']}")
        return None


def get_request_context(request):
    """Return the RequestContext attached by the middleware, or None."""
    return getattr(request, 'context', None)
