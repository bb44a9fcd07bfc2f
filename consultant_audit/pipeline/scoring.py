"""
Pipeline Stage 4: SCORING — signals → composite score + tier.

Pure: takes the parsed profile, the booking and AI stage outcomes and a
ScoringConfig snapshot, returns a ScoreResult. No I/O beyond the SCORE log line.

    1. Gates     enabled gate fails (or its signal is unavailable) → tier Incomplete
    2. Composite Σ(w·v) / Σ(w) over criteria whose signal is available (0–100)
    3. Tier      >= gold → Gold, >= silver → Silver, >= bronze → Bronze, else Incomplete
    4. Flags     reviewer-facing quality flags (fail / warn / info); they never change the tier

The tier is chosen on the exact composite; only the stored value is rounded.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from consultant_audit.logging_config import log_stage
from consultant_audit.pipeline.scoring_config import CRITERION_KEYS, ScoringConfig
from consultant_audit.services.booking_api import BOOKABLE_WITH_SLOTS, BOOKABLE_NO_SLOTS, NOT_BOOKABLE

logger = logging.getLogger('consultant_audit.pipeline.scoring')

GOLD = 'Gold'
SILVER = 'Silver'
BRONZE = 'Bronze'
INCOMPLETE = 'Incomplete'
TIERS = (GOLD, SILVER, BRONZE, INCOMPLETE)

FAIL = 'fail'
WARN = 'warn'
INFO = 'info'
FLAG_SEVERITIES = (FAIL, WARN, INFO)

# AI bio_depth below this counts as a thin bio
THIN_BIO_SCORE = 40


@dataclass
class ScoreResult:
    composite: float
    tier: str
    signals: Dict[str, Optional[float]] = field(default_factory=dict)
    gate_failures: List[str] = field(default_factory=list)
    flags: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'composite': self.composite,
            'tier': self.tier,
            'signals': dict(self.signals),
            'gate_failures': list(self.gate_failures),
            'flags': [dict(f) for f in self.flags],
        }


def _flag(value) -> float:
    return 100.0 if value else 0.0


def booking_signal(booking_outcome) -> Optional[float]:
    """100 with slots, 50 bookable without slots, 0 not bookable / not found, None otherwise."""
    if booking_outcome is None:
        return None
    if not booking_outcome.ok:
        return 0.0 if booking_outcome.failure.code == 'not_found' else None
    state = booking_outcome.payload.booking_state
    if state == BOOKABLE_WITH_SLOTS:
        return 100.0
    if state == BOOKABLE_NO_SLOTS:
        return 50.0
    return 0.0


def build_signals(parsed, booking_outcome=None, ai_outcome=None) -> Dict[str, Optional[float]]:
    """Per-criterion signal (0–100), or None where the upstream stage failed."""
    ai_scores = ai_outcome.payload.scores if ai_outcome is not None and ai_outcome.ok else None
    return {
        'has_photo': _flag(parsed.has_photo),
        'bio_depth': float(ai_scores['bio_depth']) if ai_scores else None,
        'treatments': _flag(parsed.treatments),
        'qualifications': _flag(parsed.qualifications),
        'specialty': _flag(parsed.specialties),
        'insurers': _flag(parsed.insurers),
        'consultation_times': _flag(parsed.consultation_times),
        'plain_english': float(ai_scores['plain_english']) if ai_scores else None,
        'booking': booking_signal(booking_outcome),
        'practising_since': _flag(parsed.practising_since is not None),
        'memberships': _flag(parsed.memberships),
    }


def evaluate_gates(parsed, signals: Dict[str, Optional[float]], ai_outcome, config: ScoringConfig) -> List[str]:
    """Names of the enabled gates that fail."""
    rules = config.gate_rules
    failures = []
    if rules.require_photo and not signals.get('has_photo'):
        failures.append('require_photo')
    if rules.require_bio and not (parsed.bio and parsed.bio.strip()):
        failures.append('require_bio')
    if rules.require_specialty and not signals.get('specialty'):
        failures.append('require_specialty')
    if rules.require_qualifications and not signals.get('qualifications'):
        failures.append('require_qualifications')
    if rules.require_ai_assessment and (ai_outcome is None or not ai_outcome.ok):
        failures.append('require_ai_assessment')
    if rules.min_bio_depth_score > 0:
        bio_depth = signals.get('bio_depth')
        if bio_depth is None or bio_depth < rules.min_bio_depth_score:
            failures.append('min_bio_depth_score')
    return failures


def weighted_mean(signals: Dict[str, Optional[float]], weights) -> float:
    """Exact weighted mean over available signals; 0 when no weight is available."""
    total_weight = 0.0
    total = 0.0
    for key in CRITERION_KEYS:
        value = signals.get(key)
        weight = weights.get(key, 0)
        if value is None:
            continue
        total_weight += weight
        total += weight * value
    if total_weight <= 0:
        return 0.0
    return total / total_weight


def compute_composite(signals: Dict[str, Optional[float]], weights) -> float:
    """Weighted mean rounded to 2 decimals, as stored on the record."""
    return round(weighted_mean(signals, weights), 2)


def select_tier(composite: float, thresholds) -> str:
    if composite >= thresholds.gold:
        return GOLD
    if composite >= thresholds.silver:
        return SILVER
    if composite >= thresholds.bronze:
        return BRONZE
    return INCOMPLETE


def quality_flags(parsed, signals: Dict[str, Optional[float]], booking_outcome=None,
                  ai_outcome=None) -> List[Dict[str, str]]:
    """[{code, severity, message}] describing what a reviewer should look at."""
    flags = []

    def add(code, severity, message):
        flags.append({'code': code, 'severity': severity, 'message': message})

    if not parsed.has_photo:
        add('PROFILE_NO_PHOTO', FAIL, "Profile has no photo")
    if not (parsed.bio and parsed.bio.strip()):
        add('CONTENT_MISSING_BIO', FAIL, "Profile has no bio/about section")
    elif signals.get('bio_depth') is not None and signals['bio_depth'] < THIN_BIO_SCORE:
        add('CONTENT_THIN_BIO', WARN, "Profile bio is thin/sparse")
    if not parsed.specialties:
        add('CONTENT_NO_SPECIALTY', FAIL, "No specialty listed")
    if not parsed.treatments:
        add('CONTENT_NO_TREATMENTS', WARN, "No treatments listed")
    if not parsed.qualifications:
        add('CONTENT_NO_QUALIFICATIONS', FAIL, "No qualifications listed")
    if not parsed.insurers:
        add('CONTENT_NO_INSURERS', WARN, "No insurers listed")

    if booking_outcome is not None and booking_outcome.ok:
        state = booking_outcome.payload.booking_state
        if state == BOOKABLE_NO_SLOTS:
            add('BOOKING_NO_SLOTS', WARN, "Bookable online but no available slots in next 28 days")
        elif state == NOT_BOOKABLE:
            add('BOOKING_NOT_BOOKABLE', INFO, "Not bookable online")
    elif booking_outcome is not None and booking_outcome.failure.code == 'not_found':
        add('BOOKING_NOT_FOUND', WARN, "Consultant not found in the booking system")
    elif booking_outcome is not None:
        add('BOOKING_UNAVAILABLE', WARN, f"Booking check failed: {booking_outcome.failure.message}")

    if ai_outcome is not None and not ai_outcome.ok and ai_outcome.failure.code != 'skipped':
        add('AI_ASSESSMENT_UNAVAILABLE', WARN, f"AI assessment failed: {ai_outcome.failure.message}")
    return flags


def score_consultant(parsed, booking_outcome, ai_outcome, config: ScoringConfig,
                     progress: Optional[Tuple[int, int]] = None) -> ScoreResult:
    signals = build_signals(parsed, booking_outcome, ai_outcome)
    gate_failures = evaluate_gates(parsed, signals, ai_outcome, config)
    exact = weighted_mean(signals, config.weights)
    composite = round(exact, 2)
    tier = INCOMPLETE if gate_failures else select_tier(exact, config.tier_thresholds)
    flags = quality_flags(parsed, signals, booking_outcome, ai_outcome)

    detail = f"{composite:g} → {tier}"
    if gate_failures:
        detail += f" (gates failed: {', '.join(gate_failures)})"
    log_stage(logger, logging.INFO, 'score', parsed.slug, 'success', detail, progress)

    return ScoreResult(composite=composite, tier=tier, signals=signals,
                       gate_failures=gate_failures, flags=flags)
