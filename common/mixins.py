"""
Mixins for HMS branch-scoped data.

Provides common functionality for:
- Branch-based filtering
- Passing the request context into services
"""

from django.db import models
import logging

logger = logging.getLogger(__name__)


class BranchScopedModel(models.Model):
    """
    Mixin to add branch_id field to models.

    All models that belong to a hospital branch should inherit from this.
    """
    branch_id = models.UUIDField(
        db_index=True,
        help_text="Branch identifier taken from the request context"
    )

    class Meta:
        abstract = True


class BranchViewSetMixin:
    """
    ViewSet mixin for automatic branch filtering.

    Filters querysets by the branch in ``request.context`` and routes reads
    to the context's database alias.
    """

    branch_scoped = True

    @property
    def request_context(self):
        return getattr(self.request, 'context', None)

    def get_queryset(self):
        """Filter queryset by branch_id from the request context."""
        queryset = super().get_queryset()
        context = self.request_context
        if context is None:
            return queryset.none()

        queryset = queryset.using(context.database)
        if self.branch_scoped and hasattr(queryset.model, 'branch_id'):
            queryset = queryset.filter(branch_id=context.branch_id)
            logger.debug(f"Filtered queryset by branch_id: {context.branch_id}")

        return queryset
