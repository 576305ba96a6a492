"""
Master-data directory clients for HMS OPD

Patients and physicians are owned by the master-data service; the OPD core
only asks whether a patient exists and who a physician is. Lookups go over
HTTP and are cached with Django's cache framework.
"""

import requests
import logging
from dataclasses import dataclass
from typing import Dict, Optional, Any
from django.conf import settings
from django.core.cache import cache

from common.exceptions import DirectoryUnavailable

logger = logging.getLogger(__name__)


class MasterDataAPIError(Exception):
    """Custom exception for master-data API errors"""
    def __init__(self, message: str, status_code: int = None, response_data: dict = None):
        self.message = message
        self.status_code = status_code
        self.response_data = response_data or {}
        super().__init__(self.message)


@dataclass(frozen=True)
class Physician:
    code: str
    name: str
    specialization: str = ''


class MasterDataClient:
    """
    Thin HTTP client for the master-data service

    Handles authentication headers, timeouts and error mapping.
    """

    def __init__(self, base_url: str = None, token: str = None, timeout: int = None):
        self.base_url = (base_url or getattr(settings, 'MASTER_DATA_URL', '')).rstrip('/')
        self.token = token if token is not None else getattr(settings, 'MASTER_DATA_TOKEN', '')
        self.timeout = timeout or getattr(settings, 'MASTER_DATA_TIMEOUT', 10)

    def _get_headers(self) -> Dict[str, str]:
        headers = {
            'Content-Type': 'application/json',
            'Accept': 'application/json',
        }
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        return headers

    def _handle_response(self, response: requests.Response) -> Dict[str, Any]:
        try:
            data = response.json()
        except ValueError:
            data = {'error': 'Invalid JSON response'}

        if response.status_code >= 400:
            error_message = data.get('error') or data.get('detail') or f'API error: {response.status_code}'
            raise MasterDataAPIError(
                message=error_message,
                status_code=response.status_code,
                response_data=data
            )

        return data

    def get(self, path: str) -> Optional[Dict[str, Any]]:
        """GET a resource; returns None on 404."""
        if not self.base_url:
            raise DirectoryUnavailable('MASTER_DATA_URL is not configured.')

        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = requests.get(url, headers=self._get_headers(), timeout=self.timeout)
            return self._handle_response(response)
        except MasterDataAPIError as e:
            if e.status_code == 404:
                return None
            logger.error(f"Master data error for {url}: {e.message}")
            raise DirectoryUnavailable(f"Master data service error: {e.message}")
        except requests.exceptions.RequestException as e:
            logger.error(f"Master data request failed for {url}: {str(e)}")
            raise DirectoryUnavailable('Unable to reach the master data service.')


class PatientDirectory:
    """``exists(patient_ref) -> bool``"""

    cache_prefix = 'hms:patient-exists:'

    def __init__(self, client: MasterDataClient = None):
        self.client = client or MasterDataClient()

    def exists(self, patient_ref) -> bool:
        key = f"{self.cache_prefix}{patient_ref}"
        cached = cache.get(key)
        if cached is not None:
            return cached

        found = self.client.get(f"patients/{patient_ref}/") is not None
        # Only positive answers are cached; a new registration must be visible at once
        if found:
            cache.set(key, True, getattr(settings, 'MASTER_DATA_CACHE_SECONDS', 300))
        return found


class PhysicianDirectory:
    """``get(code) -> Physician | None``"""

    cache_prefix = 'hms:physician:'

    def __init__(self, client: MasterDataClient = None):
        self.client = client or MasterDataClient()

    def get(self, code) -> Optional[Physician]:
        key = f"{self.cache_prefix}{code}"
        cached = cache.get(key)
        if cached is not None:
            return Physician(**cached)

        data = self.client.get(f"physicians/{code}/")
        if data is None:
            return None

        payload = data.get('data', data)
        physician = Physician(
            code=str(payload.get('code') or code),
            name=payload.get('name') or payload.get('full_name') or str(code),
            specialization=payload.get('specialization') or '',
        )
        cache.set(
            key,
            {'code': physician.code, 'name': physician.name, 'specialization': physician.specialization},
            getattr(settings, 'MASTER_DATA_CACHE_SECONDS', 300),
        )
        return physician


def get_patient_directory():
    return PatientDirectory()


def get_physician_directory():
    return PhysicianDirectory()
