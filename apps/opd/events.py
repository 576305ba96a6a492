"""
Consultation domain events.

``complete_consultation`` publishes one ``ConsultationCompleted`` after the
visit transition commits. Subscribers connect to ``consultation_completed``
(billing posts the consultation charge, the audit logger records it) and
the state machine does not know who they are.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from django.db import transaction
from django.dispatch import Signal

from common.context import RequestContext

logger = logging.getLogger(__name__)

# Receivers get ``event=ConsultationCompleted``
consultation_completed = Signal()


@dataclass(frozen=True)
class ConsultationCompleted:
    visit_id: int
    patient_ref: str
    physician_code: str
    consultation_type: str
    completed_at: datetime
    context: RequestContext

    @property
    def encounter_id(self):
        return self.visit_id


class ConsultationEventDispatcher:
    """Publish/subscribe over a Django signal; receivers never break the publisher."""

    def __init__(self, signal=consultation_completed):
        self.signal = signal

    def subscribe(self, receiver, dispatch_uid=None):
        self.signal.connect(receiver, weak=False, dispatch_uid=dispatch_uid)

    def unsubscribe(self, receiver=None, dispatch_uid=None):
        return self.signal.disconnect(receiver, dispatch_uid=dispatch_uid)

    def publish(self, event):
        responses = self.signal.send_robust(sender=self.__class__, event=event)
        for receiver, result in responses:
            if isinstance(result, Exception):
                logger.error(
                    f"Subscriber {getattr(receiver, '__name__', receiver)} failed for visit "
                    f"{event.visit_id}: {result}",
                    exc_info=(type(result), result, result.__traceback__),
                )
        return responses

    def publish_on_commit(self, event):
        """Publish once the surrounding transaction commits (immediately if none)."""
        transaction.on_commit(lambda: self.publish(event), using=event.context.database)
