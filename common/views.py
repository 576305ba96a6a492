"""
Process-level views that sit outside the JWT-protected API.
"""

import logging

from django.db import DatabaseError, connection
from django.http import JsonResponse
from django.views import View

from .features import load_features

logger = logging.getLogger(__name__)


class HealthView(View):
    """
    Liveness/readiness probe.

    Reports database reachability and the enabled feature set; billing
    consistency lives under ``/api/billing/accounts/health/``.
    """

    def get(self, request):
        try:
            with connection.cursor() as cursor:
                cursor.execute('SELECT 1')
            database = 'ok'
        except DatabaseError as e:
            logger.error(f"Health check could not reach the database: {e}")
            database = 'unavailable'

        healthy = database == 'ok'
        return JsonResponse({
            'status': 'healthy' if healthy else 'degraded',
            'service': 'HMS OPD',
            'database': database,
            'features': load_features(),
        }, status=200 if healthy else 503)
