"""
Charge sources: one strategy per ``ReferenceType``.

Each strategy turns a clinical record into a ``ChargeRequest`` and can reload
the records of an encounter for repair. The registry is keyed by the enum
only, so an unknown reference type fails loudly instead of being resolved
from a string at runtime.
"""

from dataclasses import dataclass

from apps.opd.models import LabOrder, Prescription, Visit
from .enums import ItemType, ReferenceType
from .pricing import CONSULTATION_SERVICES


@dataclass(frozen=True)
class ChargeRequest:
    encounter_id: int
    patient_ref: str
    reference_type: str
    reference_id: str
    item_type: str
    category: str
    lookup_term: str
    description: str
    quantity: int
    code: str = ''


class ChargeSource:
    reference_type = None
    item_type = None
    category = None

    def request_for(self, record):
        raise NotImplementedError

    def is_billable(self, record):
        return True

    def records_for(self, encounter_id, database='default'):
        """Every record of this kind for the encounter, billable or not."""
        raise NotImplementedError


class ConsultationSource(ChargeSource):
    reference_type = ReferenceType.CONSULTATION
    item_type = ItemType.CONSULTATION
    category = 'consultation'

    def request_for(self, visit):
        service = CONSULTATION_SERVICES.get(visit.consultation_type, CONSULTATION_SERVICES['OPD'])
        description = service
        if visit.physician_name:
            description = f"{service} - {visit.physician_name}"
        return ChargeRequest(
            encounter_id=visit.pk,
            patient_ref=visit.patient_ref,
            reference_type=self.reference_type,
            reference_id=str(visit.pk),
            item_type=self.item_type,
            category=self.category,
            lookup_term=service,
            description=description,
            quantity=1,
        )

    def is_billable(self, visit):
        return visit.status == 'completed'

    def records_for(self, encounter_id, database='default'):
        return list(Visit.objects.using(database).filter(pk=encounter_id))


class PrescriptionSource(ChargeSource):
    reference_type = ReferenceType.PRESCRIPTION
    item_type = ItemType.PHARMACY
    category = 'medication'

    def request_for(self, prescription):
        description = prescription.drug_name
        if prescription.dosage or prescription.frequency:
            description = f"{description} - {prescription.dosage} {prescription.frequency}".strip()
        if prescription.duration_days:
            description = f"{description} for {prescription.duration_days} days"
        return ChargeRequest(
            encounter_id=prescription.visit_id,
            patient_ref=prescription.patient_ref,
            reference_type=self.reference_type,
            reference_id=str(prescription.pk),
            item_type=self.item_type,
            category=self.category,
            lookup_term=prescription.drug_name,
            description=description[:255],
            quantity=max(1, int(prescription.quantity or 1)),
        )

    def is_billable(self, prescription):
        return prescription.status != 'cancelled'

    def records_for(self, encounter_id, database='default'):
        return list(Prescription.objects.using(database).filter(visit_id=encounter_id))


class LabOrderSource(ChargeSource):
    reference_type = ReferenceType.LAB_ORDER
    item_type = ItemType.LAB
    category = 'lab_test'

    def request_for(self, lab_order):
        return ChargeRequest(
            encounter_id=lab_order.visit_id,
            patient_ref=lab_order.visit.patient_ref,
            reference_type=self.reference_type,
            reference_id=str(lab_order.pk),
            item_type=self.item_type,
            category=self.category,
            lookup_term=lab_order.test_name,
            description=f"Lab: {lab_order.test_name}"[:255],
            quantity=1,
            code=lab_order.test_code,
        )

    def is_billable(self, lab_order):
        return lab_order.status != 'cancelled'

    def records_for(self, encounter_id, database='default'):
        return list(LabOrder.objects.using(database).select_related('visit').filter(visit_id=encounter_id))


CHARGE_SOURCES = {
    ReferenceType.CONSULTATION: ConsultationSource(),
    ReferenceType.PRESCRIPTION: PrescriptionSource(),
    ReferenceType.LAB_ORDER: LabOrderSource(),
}


def source_for(reference_type):
    """Strategy for a reference type; raises ValueError for anything outside the enum."""
    return CHARGE_SOURCES[ReferenceType(reference_type)]
