"""Range, consistency and anti-cheat checks for submitted game results."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .config import GameLimits
from .errors import ValidationError


logger = logging.getLogger("arshooter.validation")

OUT_OF_RANGE = "out_of_range"
HITS_EXCEED_SHOTS = "hits_exceed_shots"
RATE_IMPLAUSIBLE = "rate_implausible"


@dataclass(frozen=True)
class ResultCandidate:
    score: int
    targets_hit: int
    shots_fired: int
    max_combo: int
    duration_ms: int
    game_mode: Optional[str] = None

    @property
    def accuracy(self) -> float:
        if self.shots_fired <= 0:
            return 0.0
        return self.targets_hit / self.shots_fired


@dataclass(frozen=True)
class ValidationOutcome:
    ok: bool
    reason: Optional[str] = None
    rule: Optional[str] = None
    message: Optional[str] = None

    def raise_for_reason(self) -> None:
        if not self.ok:
            raise ValidationError(self.message or "Invalid result", reason=self.reason, rule=self.rule)


ACCEPTED = ValidationOutcome(ok=True)


def _reject(reason: str, rule: str, message: str) -> ValidationOutcome:
    return ValidationOutcome(ok=False, reason=reason, rule=rule, message=message)


class ResultValidator:
    def __init__(self, limits: GameLimits) -> None:
        self.limits = limits

    def validate(self, candidate: ResultCandidate) -> ValidationOutcome:
        """Run the checks in order and stop at the first failure."""
        for check in (self._check_ranges, self._check_consistency, self._check_rates):
            outcome = check(candidate)
            if not outcome.ok:
                return outcome
        return ACCEPTED

    def _check_ranges(self, c: ResultCandidate) -> ValidationOutcome:
        lim = self.limits
        bounds = (
            ("score", c.score, 0, lim.max_score, "Score is out of range"),
            ("targetsHit", c.targets_hit, 0, lim.max_targets_hit, "Invalid number of hits"),
            ("shotsFired", c.shots_fired, 0, lim.max_shots_fired, "Invalid number of shots"),
            ("maxCombo", c.max_combo, 1, lim.max_combo, "Combo is out of range"),
            (
                "durationMs",
                c.duration_ms,
                lim.min_duration_ms,
                lim.max_duration_ms,
                "Game duration is out of range",
            ),
        )
        for rule, value, low, high, message in bounds:
            if value < low or value > high:
                return _reject(OUT_OF_RANGE, rule, message)

        if c.game_mode is not None and c.game_mode not in lim.game_modes:
            return _reject(OUT_OF_RANGE, "gameMode", "Unknown game mode")
        return ACCEPTED

    def _check_consistency(self, c: ResultCandidate) -> ValidationOutcome:
        if c.shots_fired > 0 and c.targets_hit > c.shots_fired:
            return _reject(HITS_EXCEED_SHOTS, "hitsVsShots", "More hits than shots fired")
        return ACCEPTED

    def _check_rates(self, c: ResultCandidate) -> ValidationOutcome:
        lim = self.limits
        # Short games burst legitimately; only judge rates on longer ones.
        if c.duration_ms < lim.anticheat_min_duration_ms or c.duration_ms <= 0:
            return ACCEPTED

        minutes = c.duration_ms / 60000
        score_per_minute = c.score / minutes
        if score_per_minute > lim.max_score_per_minute:
            logger.warning(
                "anti-cheat: score_per_minute=%.1f limit=%s duration_ms=%s",
                score_per_minute,
                lim.max_score_per_minute,
                c.duration_ms,
            )
            return _reject(RATE_IMPLAUSIBLE, "scorePerMinute", "Suspicious activity: score rate too high")

        hits_per_minute = c.targets_hit / minutes
        if hits_per_minute > lim.max_hits_per_minute:
            logger.warning(
                "anti-cheat: hits_per_minute=%.1f limit=%s duration_ms=%s",
                hits_per_minute,
                lim.max_hits_per_minute,
                c.duration_ms,
            )
            return _reject(RATE_IMPLAUSIBLE, "hitsPerMinute", "Suspicious activity: too many hits")
        return ACCEPTED
