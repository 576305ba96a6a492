from django.dispatch import receiver
import logging

from .events import consultation_completed

logger = logging.getLogger(__name__)


@receiver(consultation_completed, dispatch_uid='opd.audit_consultation_completed')
def audit_consultation_completed(sender, event, **kwargs):
    """Audit trail entry for every completed consultation."""
    logger.info(
        f"Consultation completed: visit={event.visit_id} patient={event.patient_ref} "
        f"physician={event.physician_code} type={event.consultation_type} "
        f"by={event.context.actor} branch={event.context.branch_id}"
    )
