from django.dispatch import receiver
import logging

from apps.opd.events import consultation_completed
from apps.opd.models import Visit
from .enums import ReferenceType
from .reconciler import BillingReconciler

logger = logging.getLogger(__name__)


@receiver(consultation_completed, dispatch_uid='billing.consultation_charge')
def post_consultation_charge(sender, event, **kwargs):
    """Post the consultation charge for a completed visit."""
    visit = Visit.objects.using(event.context.database).filter(pk=event.visit_id).first()
    if visit is None:
        logger.error(f"Completed visit {event.visit_id} not found; consultation not billed")
        return None
    return BillingReconciler(event.context).charge_safely(
        ReferenceType.CONSULTATION, visit, operation='consultation_completed',
    )
