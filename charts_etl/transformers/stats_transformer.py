import logging
import math
import time
from dataclasses import dataclass, field

import numpy as np

logger = logging.getLogger(__name__)

# ranks run 1..50; 51 anchors the position terms at zero
POSITION_ANCHOR = 51

MULTIPLIER_KEYS = {
    'daysTop10Multiplier': 'days_top10',
    'daysTop20Multiplier': 'days_top20',
    'avgPositionMultiplier': 'avg_position',
    'bestPositionMultiplier': 'best_position',
}


def round_half_up(value: float, digits: int = 1) -> float:
    """Rounds .x5 away from -inf, matching the dashboard's rounding"""
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


@dataclass(frozen=True)
class LeadScoreMultipliers:
    days_top10: float = 15
    days_top20: float = 8
    avg_position: float = 10
    best_position: float = 5

    @classmethod
    def from_settings(cls, settings: dict) -> "LeadScoreMultipliers":
        """Builds multipliers from lead_score settings, ignoring unknown or non-numeric values"""
        values = {}
        for key, attribute in MULTIPLIER_KEYS.items():
            value = settings.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                values[attribute] = value
            elif value is not None:
                logger.warning(f"Ignoring non-numeric lead score setting {key}={value!r}")
        return cls(**values)


DEFAULT_MULTIPLIERS = LeadScoreMultipliers()


@dataclass(frozen=True)
class LeadScoreBreakdown:
    days_in_top10: int = 0
    days_in_top20: int = 0
    average_position: float = 0
    best_position: int = 0
    total_days: int = 0


@dataclass(frozen=True)
class LeadScore:
    score: float = 0
    breakdown: LeadScoreBreakdown = field(default_factory=LeadScoreBreakdown)


def lead_score(positions: list, multipliers: LeadScoreMultipliers = DEFAULT_MULTIPLIERS) -> LeadScore:
    """Weighted summary of a track's chart run

    score = top10 * M10 + (top20 - top10) * M20 + (51 - avg) * Mavg + (51 - best) * Mbest

    Positions above 50 make the position terms negative; callers clamp if needed.

    Args:
        positions (list): chart positions in date order
        multipliers (LeadScoreMultipliers): weights, defaults 15/8/10/5

    Returns:
        LeadScore: the score rounded to one decimal and its breakdown
    """
    if not positions:
        return LeadScore()

    days_in_top10 = sum(1 for p in positions if p <= 10)
    days_in_top20 = sum(1 for p in positions if p <= 20)
    average_position = sum(positions) / len(positions)
    best_position = min(positions)

    score = (
        days_in_top10 * multipliers.days_top10
        + (days_in_top20 - days_in_top10) * multipliers.days_top20
        + (POSITION_ANCHOR - average_position) * multipliers.avg_position
        + (POSITION_ANCHOR - best_position) * multipliers.best_position
    )

    return LeadScore(
        score=round_half_up(score),
        breakdown=LeadScoreBreakdown(
            days_in_top10=days_in_top10,
            days_in_top20=days_in_top20,
            average_position=round_half_up(average_position),
            best_position=best_position,
            total_days=len(positions),
        ),
    )


def artist_lead_score(track_scores) -> float:
    """Sum of an artist's track scores, rounded to one decimal

    Accepts LeadScore objects or plain numbers.
    """
    return round_half_up(sum(getattr(track_score, 'score', track_score) for track_score in track_scores))


def has_upward_trend(positions: list) -> bool:
    """True on 3 consecutive improving days, or 5+ improvements in the last 7

    Lower position is better, so an improvement is a strict decrease.
    """
    if len(positions) < 3:
        return False

    consecutive = 0
    for previous, current in zip(positions, positions[1:]):
        if current < previous:
            consecutive += 1
            if consecutive >= 2:
                return True
        else:
            consecutive = 0

    if len(positions) >= 7:
        last7 = positions[-7:]
        improvements = sum(1 for previous, current in zip(last7, last7[1:]) if current < previous)
        if improvements >= 5:
            return True

    return False


def consistency_score(positions: list) -> float:
    """Population standard deviation of positions; lower is more consistent"""
    if len(positions) < 2:
        return 0
    return round_half_up(float(np.std(positions)))


class MultiplierCache:
    """Caches lead score multipliers for `ttl` seconds

    Args:
        loader: callable returning a dict of lead_score settings
        ttl (float): seconds a loaded value stays valid
        clock: time source, time.monotonic by default
    """

    def __init__(self, loader, ttl: float = 60, clock=time.monotonic):
        self.loader = loader
        self.ttl = ttl
        self.clock = clock
        self._value = None
        self._loaded_at = 0.0

    def get(self) -> LeadScoreMultipliers:
        if self._value is not None and self.clock() - self._loaded_at < self.ttl:
            return self._value

        try:
            self._value = LeadScoreMultipliers.from_settings(self.loader() or {})
        except Exception as e:
            logger.warning(f"Failed to load lead score settings, using defaults: {e}")
            self._value = DEFAULT_MULTIPLIERS
        self._loaded_at = self.clock()
        return self._value

    def invalidate(self, category: str = None):
        """Drops the cached value; accepts a settings category so it can be a SettingsStore listener"""
        if category is None or category == 'lead_score':
            self._value = None
            self._loaded_at = 0.0
