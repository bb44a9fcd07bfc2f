"""
Scoring configuration — weights, tier thresholds and gate rules.

Stored as a YAML file with an in-memory cache keyed on the file's mtime, and
created with defaults on first use. Runs take one snapshot at start
(ScoringConfigStore.read()) and pass it explicitly; nothing mutates a snapshot.

Saves take a partial payload:

    {'updated_by': 'ops', 'weights': {...}, 'tier_thresholds': {...}, 'gate_rules': {...}}

which is merged onto the current config (invalid individual values keep the
current value), validated as a whole, and only then written. A rejected save
raises ConfigValidationError and leaves the file untouched.
"""
import logging
import math
import os
import tempfile
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

import yaml

from consultant_audit.config import SCORING_CONFIG_PATH
from consultant_audit.errors import ConfigValidationError

logger = logging.getLogger('consultant_audit.pipeline.scoring_config')

CRITERION_KEYS = (
    'has_photo',
    'bio_depth',
    'treatments',
    'qualifications',
    'specialty',
    'insurers',
    'consultation_times',
    'plain_english',
    'booking',
    'practising_since',
    'memberships',
)

DEFAULT_WEIGHTS = {
    'has_photo': 10,
    'bio_depth': 15,
    'treatments': 10,
    'qualifications': 10,
    'specialty': 10,
    'insurers': 8,
    'consultation_times': 7,
    'plain_english': 10,
    'booking': 10,
    'practising_since': 5,
    'memberships': 5,
}

DEFAULT_THRESHOLDS = {'gold': 80, 'silver': 60, 'bronze': 40}

BOOLEAN_GATES = (
    'require_photo',
    'require_bio',
    'require_specialty',
    'require_qualifications',
    'require_ai_assessment',
)


@dataclass(frozen=True)
class TierThresholds:
    gold: float = DEFAULT_THRESHOLDS['gold']
    silver: float = DEFAULT_THRESHOLDS['silver']
    bronze: float = DEFAULT_THRESHOLDS['bronze']

    def is_ordered(self) -> bool:
        return self.gold > self.silver > self.bronze >= 0


@dataclass(frozen=True)
class GateRules:
    require_photo: bool = True
    require_bio: bool = True
    require_specialty: bool = True
    require_qualifications: bool = False
    require_ai_assessment: bool = False
    # 0 disables the gate
    min_bio_depth_score: float = 0


@dataclass(frozen=True)
class ScoringConfig:
    weights: Mapping[str, float] = field(default_factory=lambda: MappingProxyType(dict(DEFAULT_WEIGHTS)))
    tier_thresholds: TierThresholds = field(default_factory=TierThresholds)
    gate_rules: GateRules = field(default_factory=GateRules)
    version: int = 1
    updated_by: str = 'system'
    updated_at: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.weights, MappingProxyType):
            object.__setattr__(self, 'weights', MappingProxyType(dict(self.weights)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'updated_by': self.updated_by,
            'updated_at': self.updated_at,
            'weights': {k: self.weights[k] for k in CRITERION_KEYS},
            'tier_thresholds': {
                'gold': self.tier_thresholds.gold,
                'silver': self.tier_thresholds.silver,
                'bronze': self.tier_thresholds.bronze,
            },
            'gate_rules': {
                **{g: getattr(self.gate_rules, g) for g in BOOLEAN_GATES},
                'min_bio_depth_score': self.gate_rules.min_bio_depth_score,
            },
        }

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> 'ScoringConfig':
        """Build from stored data; anything missing or invalid falls back to defaults."""
        data = data or {}
        merged = merge_config(default_config(), data)
        version = data.get('version')
        return replace(
            merged,
            version=version if isinstance(version, int) and not isinstance(version, bool) and version > 0 else 1,
            updated_by=str(data.get('updated_by') or 'system'),
            updated_at=data.get('updated_at') if isinstance(data.get('updated_at'), str) else None,
        )


def default_config(updated_by: str = 'system', version: int = 1) -> ScoringConfig:
    return ScoringConfig(version=version, updated_by=updated_by, updated_at=_now())


# ── Pure merge / validation ──────────────────────────────────────────────────

def _finite_non_negative(value, fallback):
    if isinstance(value, bool) or value is None:
        return fallback
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    if not math.isfinite(number) or number < 0:
        return fallback
    return int(number) if number.is_integer() else number


def _boolean(value, fallback):
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.lower() in ('true', 'false'):
        return value.lower() == 'true'
    return fallback


def merge_config(current: ScoringConfig, partial: Optional[Mapping[str, Any]]) -> ScoringConfig:
    """
    Overlay a partial payload onto `current`. Each provided value that is not
    valid on its own (negative, non-finite, wrong type) keeps the current value.
    Unknown keys are ignored. Audit fields are left to the caller.
    """
    partial = partial or {}

    weights = dict(current.weights)
    raw_weights = partial.get('weights')
    if isinstance(raw_weights, Mapping):
        for key in CRITERION_KEYS:
            if key in raw_weights:
                weights[key] = _finite_non_negative(raw_weights[key], weights[key])

    thresholds = current.tier_thresholds
    raw_thresholds = partial.get('tier_thresholds')
    if isinstance(raw_thresholds, Mapping):
        thresholds = TierThresholds(
            gold=_finite_non_negative(raw_thresholds.get('gold'), thresholds.gold),
            silver=_finite_non_negative(raw_thresholds.get('silver'), thresholds.silver),
            bronze=_finite_non_negative(raw_thresholds.get('bronze'), thresholds.bronze),
        )

    gates = current.gate_rules
    raw_gates = partial.get('gate_rules')
    if isinstance(raw_gates, Mapping):
        changes = {g: _boolean(raw_gates.get(g), getattr(gates, g)) for g in BOOLEAN_GATES}
        min_bio = _finite_non_negative(raw_gates.get('min_bio_depth_score'), gates.min_bio_depth_score)
        changes['min_bio_depth_score'] = min_bio if min_bio <= 100 else gates.min_bio_depth_score
        gates = replace(gates, **changes)

    return replace(current, weights=MappingProxyType(weights), tier_thresholds=thresholds, gate_rules=gates)


def validate_config(config: ScoringConfig) -> List[str]:
    """Return a list of problems; empty means valid."""
    errors = []
    t = config.tier_thresholds
    if not t.is_ordered():
        errors.append(f"Thresholds must satisfy gold > silver > bronze >= 0 "
                      f"(got gold={t.gold}, silver={t.silver}, bronze={t.bronze})")

    missing = [k for k in CRITERION_KEYS if k not in config.weights]
    if missing:
        errors.append(f"Missing weights: {', '.join(missing)}")
    bad = [k for k, v in config.weights.items()
           if isinstance(v, bool) or not isinstance(v, (int, float)) or not math.isfinite(v) or v < 0]
    if bad:
        errors.append(f"Weights must be non-negative numbers: {', '.join(sorted(bad))}")
    elif sum(config.weights.values()) <= 0:
        errors.append("At least one weight must be greater than zero")

    if not 0 <= config.gate_rules.min_bio_depth_score <= 100:
        errors.append("min_bio_depth_score must be between 0 and 100")
    return errors


def validate_weights_payload(raw_weights) -> List[str]:
    """A save must carry at least one valid weight greater than zero."""
    if not isinstance(raw_weights, Mapping):
        return ["At least one weight must be greater than zero"]
    total = sum(_finite_non_negative(raw_weights.get(k), 0) for k in CRITERION_KEYS)
    if total <= 0:
        return ["At least one weight must be greater than zero"]
    return []


# ── File-backed store ────────────────────────────────────────────────────────

class ScoringConfigStore:
    """YAML-backed store. Safe to share between threads in one process."""

    def __init__(self, path: str = SCORING_CONFIG_PATH):
        self.path = path
        self._lock = threading.RLock()
        self._cached = None
        self._cached_mtime = None

    def read(self) -> ScoringConfig:
        """Current config; writes defaults if no file exists yet, falls back to defaults if the file is invalid."""
        with self._lock:
            if not os.path.exists(self.path):
                logger.info("No scoring config at %s, writing defaults", self.path)
                config = default_config(updated_by='system-default')
                self._write(config)
                return config

            try:
                mtime = os.stat(self.path).st_mtime_ns
                if self._cached is not None and self._cached_mtime == mtime:
                    return self._cached
                with open(self.path, 'r', encoding='utf-8') as f:
                    data = yaml.safe_load(f)
                if data is not None and not isinstance(data, dict):
                    raise ValueError("top-level YAML is not a mapping")
                config = ScoringConfig.from_dict(data)
            except (OSError, ValueError, yaml.YAMLError) as e:
                logger.warning("Scoring config at %s unreadable (%s), using defaults", self.path, e)
                return default_config(updated_by='system-default')

            errors = validate_config(config)
            if errors:
                logger.warning("Scoring config at %s is invalid (%s), using defaults",
                               self.path, '; '.join(errors))
                return default_config(updated_by='system-default')

            self._cached = config
            self._cached_mtime = mtime
            logger.debug("Scoring config loaded (version=%s)", config.version)
            return config

    def save(self, payload: Mapping[str, Any]) -> ScoringConfig:
        """Merge, validate and persist. Raises ConfigValidationError without writing."""
        with self._lock:
            current = self.read()
            errors = validate_weights_payload((payload or {}).get('weights'))
            merged = merge_config(current, payload)
            errors.extend(e for e in validate_config(merged) if e not in errors)
            if errors:
                logger.warning("Scoring config save rejected: %s", '; '.join(errors))
                raise ConfigValidationError(errors)

            saved = replace(
                merged,
                version=current.version + 1,
                updated_by=_updated_by(payload, 'user'),
                updated_at=_now(),
            )
            self._write(saved)
            logger.info("Scoring config saved (version=%d, by %s)", saved.version, saved.updated_by)
            return saved

    def reset(self, updated_by: str = 'user') -> ScoringConfig:
        """Restore defaults, keeping the version sequence."""
        with self._lock:
            current = self.read()
            config = default_config(updated_by=(updated_by or 'user').strip() or 'user',
                                    version=current.version + 1)
            self._write(config)
            logger.info("Scoring config reset to defaults (version=%d, by %s)", config.version, config.updated_by)
            return config

    def _write(self, config: ScoringConfig):
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix='.scoring_config.', suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                yaml.safe_dump(config.to_dict(), f, sort_keys=False)
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        self._cached = config
        self._cached_mtime = os.stat(self.path).st_mtime_ns


def _updated_by(payload, fallback):
    value = (payload or {}).get('updated_by')
    if isinstance(value, str) and value.strip():
        return value.strip()
    return fallback


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
