from rest_framework.permissions import BasePermission
import logging

logger = logging.getLogger(__name__)


class HasRequestContext(BasePermission):
    """
    Allow the request only when the JWT middleware attached a RequestContext.

    Fine-grained authorization is owned by the auth service; HMS only needs
    to know who is acting and for which branch.
    """

    message = 'A valid branch context is required for this endpoint.'

    def has_permission(self, request, view):
        context = getattr(request, 'context', None)
        if context is None:
            logger.warning(f"Request to {request.path} rejected: no request context")
            return False
        return True
