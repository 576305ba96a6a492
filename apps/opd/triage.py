"""
Triage scoring.

``score(vitals, chief_complaint)`` is a pure, total function: missing or
unreadable vitals simply do not score. The rule table below is the whole
policy; thresholds that map the summed score to a level can be overridden
through ``settings.HMS_TRIAGE``.

Vital bands (early-warning style, lower bound inclusive, upper exclusive):

    metric              band            points
    respiratory_rate    < 9             3
                        9 - 11          1
                        21 - 24         2
                        >= 25           3
    spo2 (%)            < 92            3
                        92 - 93         2
                        94 - 95         1
    bp_systolic         < 91            3
                        91 - 100        2
                        101 - 110       1
                        >= 220          3
    bp_diastolic        >= 120          2
    heart_rate          < 41            3
                        41 - 50         1
                        91 - 110        1
                        111 - 130       2
                        >= 131          3
    temperature (C)     < 35.1          3
                        35.1 - 36.0     1
                        38.1 - 39.0     1
                        >= 39.1         2
    gcs                 < 15            3
    pain_level (0-10)   5 - 7           1
                        >= 8            2

Red flags (force emergency regardless of score):
    spo2 < 90, gcs <= 8, bp_systolic < 80, heart_rate >= 150,
    respiratory_rate >= 35, temperature >= 41.0, plus complaint keywords
    marked critical below.

Levels:
    emergency   any red flag, or score >= emergency_score (7)
    urgent      score >= urgent_score (5), or any single vital scoring 3
    non-urgent  score >= non_urgent_score (1)
    routine     otherwise
"""

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Optional, Tuple

from django.conf import settings


EMERGENCY = 'emergency'
URGENT = 'urgent'
NON_URGENT = 'non-urgent'
ROUTINE = 'routine'

LEVELS = (EMERGENCY, URGENT, NON_URGENT, ROUTINE)


def _number(value):
    if value is None or value == '' or isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    return number if number.is_finite() else None


@dataclass(frozen=True)
class Vitals:
    temperature: Optional[Decimal] = None
    bp_systolic: Optional[Decimal] = None
    bp_diastolic: Optional[Decimal] = None
    heart_rate: Optional[Decimal] = None
    respiratory_rate: Optional[Decimal] = None
    spo2: Optional[Decimal] = None
    gcs_eye: Optional[Decimal] = None
    gcs_verbal: Optional[Decimal] = None
    gcs_motor: Optional[Decimal] = None
    gcs_total: Optional[Decimal] = None
    pain_level: Optional[Decimal] = None

    @classmethod
    def from_dict(cls, data):
        """Build from loose input; unknown keys are ignored, unreadable values dropped."""
        data = dict(data or {})
        if 'blood_pressure' in data and ('bp_systolic' not in data or 'bp_diastolic' not in data):
            parts = str(data.get('blood_pressure') or '').split('/')
            if len(parts) == 2:
                data.setdefault('bp_systolic', parts[0])
                data.setdefault('bp_diastolic', parts[1])
        if 'pulse' in data:
            data.setdefault('heart_rate', data['pulse'])
        return cls(**{name: _number(data.get(name)) for name in cls.__dataclass_fields__})

    @property
    def gcs(self):
        if self.gcs_total is not None:
            return self.gcs_total
        components = (self.gcs_eye, self.gcs_verbal, self.gcs_motor)
        if all(value is not None for value in components):
            return sum(components)
        return None

    def value(self, metric):
        if metric == 'gcs':
            return self.gcs
        return _number(getattr(self, metric, None))


@dataclass(frozen=True)
class Band:
    metric: str
    points: int
    low: Optional[Decimal] = None
    high: Optional[Decimal] = None

    def matches(self, value):
        if value is None:
            return False
        if self.low is not None and value < self.low:
            return False
        if self.high is not None and value >= self.high:
            return False
        return True


@dataclass(frozen=True)
class RedFlag:
    metric: str
    label: str
    low: Optional[Decimal] = None
    high: Optional[Decimal] = None

    def matches(self, value):
        return Band(self.metric, 0, self.low, self.high).matches(value)


@dataclass(frozen=True)
class KeywordRule:
    phrases: Tuple[str, ...]
    points: int
    label: str
    critical: bool = False


def _d(value):
    return Decimal(str(value))


DEFAULT_BANDS = (
    Band('respiratory_rate', 3, high=_d(9)),
    Band('respiratory_rate', 1, low=_d(9), high=_d(12)),
    Band('respiratory_rate', 2, low=_d(21), high=_d(25)),
    Band('respiratory_rate', 3, low=_d(25)),
    Band('spo2', 3, high=_d(92)),
    Band('spo2', 2, low=_d(92), high=_d(94)),
    Band('spo2', 1, low=_d(94), high=_d(96)),
    Band('bp_systolic', 3, high=_d(91)),
    Band('bp_systolic', 2, low=_d(91), high=_d(101)),
    Band('bp_systolic', 1, low=_d(101), high=_d(111)),
    Band('bp_systolic', 3, low=_d(220)),
    Band('bp_diastolic', 2, low=_d(120)),
    Band('heart_rate', 3, high=_d(41)),
    Band('heart_rate', 1, low=_d(41), high=_d(51)),
    Band('heart_rate', 1, low=_d(91), high=_d(111)),
    Band('heart_rate', 2, low=_d(111), high=_d(131)),
    Band('heart_rate', 3, low=_d(131)),
    Band('temperature', 3, high=_d('35.1')),
    Band('temperature', 1, low=_d('35.1'), high=_d('36.1')),
    Band('temperature', 1, low=_d('38.1'), high=_d('39.1')),
    Band('temperature', 2, low=_d('39.1')),
    Band('gcs', 3, high=_d(15)),
    Band('pain_level', 1, low=_d(5), high=_d(8)),
    Band('pain_level', 2, low=_d(8)),
)

DEFAULT_RED_FLAGS = (
    RedFlag('spo2', 'Critical hypoxia (SpO2 < 90%)', high=_d(90)),
    RedFlag('gcs', 'Depressed consciousness (GCS <= 8)', high=_d(9)),
    RedFlag('bp_systolic', 'Profound hypotension (systolic < 80)', high=_d(80)),
    RedFlag('heart_rate', 'Extreme tachycardia (HR >= 150)', low=_d(150)),
    RedFlag('respiratory_rate', 'Severe tachypnoea (RR >= 35)', low=_d(35)),
    RedFlag('temperature', 'Hyperpyrexia (>= 41.0 C)', low=_d('41.0')),
)

DEFAULT_KEYWORDS = (
    KeywordRule(('chest pain',), 4, 'Chest pain', critical=True),
    KeywordRule(('difficulty breathing', 'shortness of breath', "can't breathe"), 4,
                'Breathing difficulty', critical=True),
    KeywordRule(('seizure', 'convulsion'), 4, 'Seizure', critical=True),
    KeywordRule(('unconscious', 'unresponsive'), 4, 'Unresponsive', critical=True),
    KeywordRule(('severe bleeding', 'haemorrhage', 'hemorrhage'), 4, 'Severe bleeding', critical=True),
    KeywordRule(('stroke', 'slurred speech', 'facial droop'), 4, 'Possible stroke', critical=True),
    KeywordRule(('vomiting blood',), 4, 'Haematemesis', critical=True),
    KeywordRule(('head injury',), 3, 'Head injury'),
    KeywordRule(('confusion', 'confused'), 3, 'Confusion'),
    KeywordRule(('abdominal pain',), 2, 'Abdominal pain'),
)


@dataclass(frozen=True)
class TriagePolicy:
    bands: Tuple[Band, ...] = DEFAULT_BANDS
    red_flags: Tuple[RedFlag, ...] = DEFAULT_RED_FLAGS
    keywords: Tuple[KeywordRule, ...] = DEFAULT_KEYWORDS
    emergency_score: int = 7
    urgent_score: int = 5
    non_urgent_score: int = 1
    single_parameter_escalation: int = 3

    @classmethod
    def from_settings(cls):
        overrides = getattr(settings, 'HMS_TRIAGE', {}) or {}
        allowed = ('emergency_score', 'urgent_score', 'non_urgent_score', 'single_parameter_escalation')
        return cls(**{key: int(value) for key, value in overrides.items() if key in allowed})


@dataclass(frozen=True)
class TriageResult:
    level: str
    score: int
    red_flags: Tuple[str, ...] = ()
    components: dict = field(default_factory=dict)

    @property
    def priority(self):
        return LEVELS.index(self.level) + 1


def score(vitals, chief_complaint=None, policy=None):
    """Classify vitals + complaint into (level, score)."""
    policy = policy or TriagePolicy.from_settings()
    if not isinstance(vitals, Vitals):
        vitals = Vitals.from_dict(vitals)

    total = 0
    components = {}
    max_single = 0
    for band in policy.bands:
        if band.matches(vitals.value(band.metric)):
            total += band.points
            components[band.metric] = components.get(band.metric, 0) + band.points
            max_single = max(max_single, band.points)

    flags = [flag.label for flag in policy.red_flags if flag.matches(vitals.value(flag.metric))]

    complaint = (chief_complaint or '').lower()
    critical = bool(flags)
    for rule in policy.keywords:
        if any(phrase in complaint for phrase in rule.phrases):
            total += rule.points
            components['complaint'] = components.get('complaint', 0) + rule.points
            if rule.critical:
                critical = True
                flags.append(rule.label)

    if critical or total >= policy.emergency_score:
        level = EMERGENCY
    elif total >= policy.urgent_score or max_single >= policy.single_parameter_escalation:
        level = URGENT
    elif total >= policy.non_urgent_score:
        level = NON_URGENT
    else:
        level = ROUTINE

    return TriageResult(level=level, score=total, red_flags=tuple(flags), components=components)
