"""
Explicit per-request context.

Built once per request from JWT claims and handed to every service call
(state machine, reconciler, invoice projector) instead of living in
thread-local or session storage.
"""

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class RequestContext:
    """Who is acting, for which branch, against which database alias."""

    branch_id: str
    user_id: Optional[str] = None
    email: Optional[str] = None
    database: str = 'default'
    claims: dict = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def system(cls, branch_id, database='default'):
        """Context for management commands and other non-HTTP callers."""
        return cls(branch_id=str(branch_id), user_id='system', database=database)

    @property
    def actor(self):
        return self.user_id or 'system'
