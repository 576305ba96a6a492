"""
Error taxonomy shared by the OPD and billing apps.

Validation and missing-record errors use DRF's own ``ValidationError`` and
``NotFound``. Everything that is valid input but wrong for the current
state of a visit or account is a ``StateConflict`` carrying that state.
"""

import logging

from django.core.exceptions import ValidationError as DjangoValidationError
from rest_framework import status
from rest_framework.exceptions import APIException, ValidationError
from rest_framework.views import exception_handler

logger = logging.getLogger(__name__)


class StateConflict(APIException):
    """Operation is not valid for the current visit/account state."""

    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Operation conflicts with the current state.'
    default_code = 'state_conflict'

    def __init__(self, detail=None, code=None, current_state=None):
        super().__init__(detail=detail, code=code)
        self.current_state = current_state or {}


class InvalidStateTransition(StateConflict):
    default_detail = 'Transition not allowed from the current status.'
    default_code = 'invalid_state_transition'


class DuplicateActiveVisit(StateConflict):
    default_detail = 'Patient already has an active visit for this day.'
    default_code = 'duplicate_active_visit'


class ConsultationLocked(StateConflict):
    default_detail = 'Consultation is completed; clinical orders can no longer change.'
    default_code = 'consultation_locked'


class OverpaymentRejected(StateConflict):
    default_detail = 'Payment amount exceeds the outstanding balance.'
    default_code = 'overpayment_rejected'


class DirectoryUnavailable(APIException):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = 'Master data service is unavailable.'
    default_code = 'directory_unavailable'


class FeatureDisabled(APIException):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = 'This feature is not enabled.'
    default_code = 'feature_disabled'


class ReconciliationFailure(Exception):
    """
    Billing could not be materialized after a clinical action succeeded.

    Never rendered to API callers. Raised inside the reconciler, logged and
    recorded as a ReconciliationIssue for later repair.
    """

    def __init__(self, message, encounter_id=None, reference_type=None, reference_id=None):
        super().__init__(message)
        self.encounter_id = encounter_id
        self.reference_type = reference_type
        self.reference_id = reference_id


def hms_exception_handler(exc, context):
    """
    DRF exception handler producing
    ``{'success': False, 'error': code, 'detail': ..., 'context': {...}}``.
    """
    if isinstance(exc, DjangoValidationError):
        exc = ValidationError(detail=exc.message_dict if hasattr(exc, 'error_dict') else exc.messages)

    response = exception_handler(exc, context)
    if response is None:
        return None

    if isinstance(exc, APIException):
        codes = exc.get_codes()
        error_code = codes if isinstance(codes, str) else exc.default_code
    else:
        error_code = 'error'

    body = {
        'success': False,
        'error': error_code,
        'detail': response.data.get('detail', response.data) if isinstance(response.data, dict) else response.data,
    }
    if isinstance(exc, StateConflict):
        body['context'] = exc.current_state

    view = context.get('view')
    if response.status_code >= 500:
        logger.error(f"{view.__class__.__name__ if view else 'view'} failed: {exc}")
    elif isinstance(exc, StateConflict):
        logger.info(f"State conflict in {view.__class__.__name__ if view else 'view'}: {exc.detail}")

    response.data = body
    return response
