"""
Visit persistence.

Every method runs against the database alias carried by the RequestContext,
and callers open the transaction explicitly with ``repository.atomic()``.
"""

import logging

from django.db import transaction
from rest_framework.exceptions import NotFound

from .models import Visit, QueueCounter, ACTIVE_VISIT_STATUSES, TRIAGE_PRIORITY

logger = logging.getLogger(__name__)

STATUS_QUEUE_ORDER = {
    'in_progress': 0,
    'waiting': 1,
    'scheduled': 2,
}


class VisitRepository:

    def __init__(self, context):
        self.context = context
        self.database = context.database

    def atomic(self):
        return transaction.atomic(using=self.database)

    def visits(self):
        return Visit.objects.using(self.database).filter(branch_id=self.context.branch_id)

    def get(self, visit_id):
        try:
            return self.visits().get(pk=visit_id)
        except (Visit.DoesNotExist, ValueError, TypeError):
            raise NotFound(f"Visit {visit_id} not found.")

    def lock(self, visit_id):
        """Re-read the visit under a row lock; call inside ``atomic()``."""
        try:
            return self.visits().select_for_update().get(pk=visit_id)
        except (Visit.DoesNotExist, ValueError, TypeError):
            raise NotFound(f"Visit {visit_id} not found.")

    def active_visit_for(self, patient_ref, day, exclude_id=None):
        queryset = Visit.objects.using(self.database).filter(
            patient_ref=patient_ref,
            visit_date=day,
            status__in=ACTIVE_VISIT_STATUSES,
        )
        if exclude_id is not None:
            queryset = queryset.exclude(pk=exclude_id)
        return queryset.order_by('created_at').first()

    def next_queue_number(self, day):
        """Increment the branch/day counter under a row lock and return the new number."""
        counter, _created = QueueCounter.objects.using(self.database).select_for_update().get_or_create(
            branch_id=self.context.branch_id,
            day=day,
            defaults={'last_number': 0},
        )
        counter.last_number += 1
        counter.save(using=self.database, update_fields=['last_number'])
        return counter.last_number

    def queue_for(self, day):
        """Non-terminal visits of the day ordered by triage priority, status, queue number."""
        visits = list(self.visits().filter(visit_date=day, status__in=ACTIVE_VISIT_STATUSES))
        visits.sort(key=lambda visit: (
            TRIAGE_PRIORITY.get(visit.triage_level, 5),
            STATUS_QUEUE_ORDER.get(visit.status, 9),
            visit.queue_number or 0,
        ))
        return visits

    def average_wait_minutes(self, day):
        """Mean minutes between check-in and consultation start for the day."""
        waits = [
            visit.calculate_waiting_time()
            for visit in self.visits().filter(
                visit_date=day,
                checked_in_at__isnull=False,
                consultation_started_at__isnull=False,
            )
        ]
        waits = [wait for wait in waits if wait is not None]
        if not waits:
            return None
        return round(sum(waits) / len(waits), 1)
