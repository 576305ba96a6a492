"""
Best-effort medication extraction from a SOAP plan.

Grammar (one medication per line, case-insensitive; bullets and numbering
are stripped first):

    line      := drug [dose] [frequency] [duration]
    dose      := NUMBER UNIT              e.g. 500mg, 5 ml, 1 tab
    frequency := OD | BD | BID | TDS | TID | QID | QDS
               | once|twice|thrice daily | N times a day | every N hours
    duration  := [for|x] N (day|days|week|weeks|month|months)

Weeks count as 7 days and months as 30. When both frequency and duration are
understood, quantity = doses per day * days. Anything less is returned as
unparsed with the default quantity of 1; nothing here raises.
"""

import re
from dataclasses import dataclass
from typing import Optional

DEFAULT_QUANTITY = 1
MAX_DURATION_DAYS = 3650

_BULLET = re.compile(r'^\s*(?:[-*•]|\d+[.)])\s*')
_DOSE = re.compile(r'\b(\d+(?:\.\d+)?)\s*(mg|mcg|g|ml|iu|units?|tabs?|tablets?|caps?|capsules?|puffs?|drops?)\b', re.I)
_DURATION = re.compile(r'\b(?:for|x)?\s*(\d+)\s*(days?|weeks?|wks?|months?)\b', re.I)
_TIMES_A_DAY = re.compile(r'\b(\d+)\s*times?\s*(?:a|per)\s*day\b', re.I)
_EVERY_HOURS = re.compile(r'\bevery\s*(\d+)\s*(?:hours?|hrs?|h)\b', re.I)

_FREQUENCY_WORDS = [
    (re.compile(r'\b(?:qid|qds|four times (?:a )?daily)\b', re.I), 4),
    (re.compile(r'\b(?:tds|tid|thrice daily|three times (?:a )?daily)\b', re.I), 3),
    (re.compile(r'\b(?:bd|bid|twice daily|twice a day)\b', re.I), 2),
    (re.compile(r'\b(?:od|once daily|once a day|daily|nocte|hs)\b', re.I), 1),
]

_UNIT_DAYS = {'day': 1, 'week': 7, 'wk': 7, 'month': 30}

# Lines starting with these are plan instructions, not drugs
_NON_DRUG_PREFIXES = (
    'advice', 'advise', 'review', 'follow', 'investigation', 'refer', 'rest',
    'diet', 'plan', 'return', 'continue monitoring',
)


@dataclass(frozen=True)
class ParsedMedication:
    drug_name: str
    dosage: str = ''
    frequency: str = ''
    doses_per_day: Optional[int] = None
    duration_days: Optional[int] = None
    quantity: int = DEFAULT_QUANTITY
    parsed: bool = False


def doses_per_day(text):
    """Doses per day from a frequency phrase, or None if not understood."""
    if not text:
        return None
    match = _TIMES_A_DAY.search(text)
    if match:
        return max(1, int(match.group(1)))
    match = _EVERY_HOURS.search(text)
    if match and int(match.group(1)) > 0:
        return max(1, 24 // int(match.group(1)))
    for pattern, count in _FREQUENCY_WORDS:
        if pattern.search(text):
            return count
    return None


def duration_in_days(text):
    """Days from '5 days', '2 weeks', 'for 1 month'; None if not understood."""
    if text is None:
        return None
    if isinstance(text, int):
        return text if text > 0 else None
    match = _DURATION.search(str(text))
    if not match:
        stripped = str(text).strip()
        return int(stripped) if stripped.isdigit() and int(stripped) > 0 else None
    unit = match.group(2).lower().rstrip('s')
    return int(match.group(1)) * _UNIT_DAYS.get(unit, 1)


def estimate_quantity(frequency, duration):
    """frequency x days when both are known, else the default quantity."""
    per_day = doses_per_day(frequency)
    days = duration_in_days(duration)
    if per_day and days:
        return per_day * days
    return DEFAULT_QUANTITY


def parse_line(line):
    text = _BULLET.sub('', line or '').strip().rstrip('.;,')
    if not text or text.lower().startswith(_NON_DRUG_PREFIXES):
        return None

    # The drug name is everything before the first dose/frequency/duration token
    cut = len(text)
    dose_match = _DOSE.search(text)
    per_day = doses_per_day(text)
    duration_match = _DURATION.search(text)
    for match in (dose_match, duration_match, _TIMES_A_DAY.search(text), _EVERY_HOURS.search(text)):
        if match:
            cut = min(cut, match.start())
    for pattern, _count in _FREQUENCY_WORDS:
        match = pattern.search(text)
        if match:
            cut = min(cut, match.start())

    drug_name = text[:cut].strip(' -:,') or text
    dosage = dose_match.group(0) if dose_match else ''
    days = duration_in_days(duration_match.group(0)) if duration_match else None
    if days and days > MAX_DURATION_DAYS:
        days = None

    frequency = ''
    if per_day:
        frequency = f"{per_day} times a day" if per_day > 1 else 'once daily'

    if per_day and days:
        return ParsedMedication(
            drug_name=drug_name,
            dosage=dosage,
            frequency=frequency,
            doses_per_day=per_day,
            duration_days=days,
            quantity=per_day * days,
            parsed=True,
        )
    return ParsedMedication(
        drug_name=drug_name,
        dosage=dosage,
        frequency=frequency,
        doses_per_day=per_day,
        duration_days=days,
        quantity=DEFAULT_QUANTITY,
        parsed=False,
    )


def parse_plan(plan):
    """Parse every medication line of a plan; non-medication lines are skipped."""
    medications = []
    for line in (plan or '').splitlines():
        medication = parse_line(line)
        if medication is not None:
            medications.append(medication)
    return medications
