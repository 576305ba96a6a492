"""
Unit price resolution for billing items.

Resolution order, first hit wins:

1. catalogue match for the category (code, then name, then description)
2. the category's generic catalogue entry (MED999, LAB999, ...)
3. the static default price table
4. the fallback constant (``HMS_BILLING['fallback_price']``, 50.00)

``PriceResolver.resolve`` therefore always returns a price.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from django.conf import settings
from django.db import DatabaseError, transaction
from django.db.models import Q

from apps.services.models import ServiceCatalogue

logger = logging.getLogger(__name__)

GENERIC_CODES = {
    'consultation': 'CON999',
    'medication': 'MED999',
    'lab_test': 'LAB999',
    'procedure': 'PRC999',
}

CONSULTATION_SERVICES = {
    'OPD': 'General Physician Consultation',
    'Specialist': 'Specialist Consultation',
    'FollowUp': 'Follow-up Consultation',
    'Emergency': 'Emergency Consultation',
}

DEFAULT_PRICE_TABLE = {
    'medication': {
        'paracetamol': '5.00',
        'ibuprofen': '10.00',
        'amoxicillin': '15.00',
        'metformin': '20.00',
        'aspirin': '8.00',
    },
    'lab_test': {
        'complete blood count': '350.00',
        'cbc': '350.00',
        'blood sugar': '150.00',
        'urinalysis': '200.00',
        'malaria': '250.00',
    },
    'consultation': {
        'emergency': '1500.00',
        'specialist': '1000.00',
        'follow-up': '300.00',
        'general physician': '500.00',
    },
}

DEFAULT_FALLBACK_PRICE = Decimal('50.00')


@dataclass(frozen=True)
class CatalogPrice:
    code: str
    name: str
    unit_price: Decimal


@dataclass(frozen=True)
class ResolvedPrice:
    unit_price: Decimal
    service_code: str
    source: str  # catalogue | generic | default_table | fallback


class CatalogLookup:
    """Read-only price lookup over the service catalogue."""

    def __init__(self, database='default'):
        self.database = database

    def _entries(self, category):
        return ServiceCatalogue.objects.using(self.database).filter(
            category=category, is_active=True, is_billable=True,
        )

    @staticmethod
    def _price(entry):
        return CatalogPrice(code=entry.code, name=entry.name, unit_price=entry.calculate_final_price())

    def price_for(self, category, code_or_name) -> Optional[CatalogPrice]:
        term = (code_or_name or '').strip()
        if not term:
            return None
        entries = self._entries(category)
        entry = (
            entries.filter(code__iexact=term).first()
            or entries.filter(name__iexact=term).first()
            or entries.filter(name__icontains=term).order_by('name').first()
            or entries.filter(description__icontains=term).order_by('name').first()
        )
        if entry is None:
            # "Paracetamol 500mg tablets" should still find "Paracetamol 500mg"
            first_word = term.split()[0]
            if len(first_word) >= 4 and first_word.lower() != term.lower():
                entry = entries.filter(
                    Q(name__icontains=first_word) & ~Q(code__in=GENERIC_CODES.values())
                ).order_by('name').first()
        return self._price(entry) if entry else None

    def generic_entry(self, category) -> Optional[CatalogPrice]:
        code = GENERIC_CODES.get(category)
        if not code:
            return None
        entry = self._entries(category).filter(code=code).first()
        return self._price(entry) if entry else None


class PriceResolver:

    def __init__(self, catalog=None, database='default', default_table=None, fallback_price=None):
        config = getattr(settings, 'HMS_BILLING', {}) or {}
        self.catalog = catalog or CatalogLookup(database)
        self.database = database

        table = {category: dict(prices) for category, prices in DEFAULT_PRICE_TABLE.items()}
        for category, prices in (default_table or config.get('default_prices') or {}).items():
            table.setdefault(category, {}).update({name.lower(): price for name, price in prices.items()})
        self.default_table = table

        self.fallback_price = Decimal(str(fallback_price or config.get('fallback_price') or DEFAULT_FALLBACK_PRICE))

    def _from_catalog(self, lookup, *args):
        """Catalogue lookups run in a savepoint; a broken catalogue must not break billing."""
        try:
            with transaction.atomic(using=self.database):
                return lookup(*args)
        except DatabaseError as e:
            logger.warning(f"Catalogue lookup failed, falling back: {e}")
            return None

    def _from_table(self, category, term):
        prices = self.default_table.get(category, {})
        term = (term or '').lower()
        for name in sorted(prices, key=len, reverse=True):
            if name in term:
                return Decimal(str(prices[name]))
        return None

    def resolve(self, category, term, code=None) -> ResolvedPrice:
        for candidate in (code, term):
            if candidate:
                match = self._from_catalog(self.catalog.price_for, category, candidate)
                if match:
                    return ResolvedPrice(match.unit_price, match.code, 'catalogue')

        generic = self._from_catalog(self.catalog.generic_entry, category)
        if generic:
            return ResolvedPrice(generic.unit_price, generic.code, 'generic')

        table_price = self._from_table(category, term)
        if table_price is not None:
            return ResolvedPrice(table_price, GENERIC_CODES.get(category, ''), 'default_table')

        logger.warning(f"No price for {category} '{term}'; using fallback {self.fallback_price}")
        return ResolvedPrice(self.fallback_price, GENERIC_CODES.get(category, ''), 'fallback')

    def consultation_price(self, consultation_type) -> ResolvedPrice:
        name = CONSULTATION_SERVICES.get(consultation_type, CONSULTATION_SERVICES['OPD'])
        return self.resolve('consultation', name)
