"""Model tier routing for agent tasks.

A workflow mode may forbid a model tier (``eco`` and ``turbo`` keep ``high``
tier models out). ``TierRouter`` refuses such requests, but only three times
in a row per session, mode and tier: the fourth request goes through so a
supervisor that insists is never deadlocked.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from gateflow.gates import get_preferred_tier, is_tier_forbidden
from gateflow.models import ModelTier

logger = logging.getLogger(__name__)

UNKNOWN_PROVIDER = "unknown"
MAX_DENIALS = 3

KNOWN_MODEL_TIERS: dict[str, ModelTier] = {
    "glm-5": "high",
    "minimax-m2.5": "high",
    "gemini-3-pro": "high",
    "gemini-3-flash": "mid",
    "gpt-4.1": "high",
    "gpt-4.1-mini": "mid",
    "gpt-4.1-nano": "low",
}

# Checked in order; the first keyword found in the model id wins.
TIER_KEYWORDS: tuple[tuple[str, ModelTier], ...] = (
    ("nano", "low"),
    ("mini", "low"),
    ("flash", "mid"),
    ("pro", "high"),
    ("opus", "high"),
    ("sonnet", "mid"),
    ("haiku", "low"),
)


def extract_provider(model: str | None) -> str:
    if not model or "/" not in model:
        return UNKNOWN_PROVIDER
    provider = model.split("/", 1)[0]
    return provider or UNKNOWN_PROVIDER


def infer_tier(model: str | None) -> ModelTier | None:
    if not model:
        return None
    model_id = model.split("/", 1)[-1].lower()
    known = KNOWN_MODEL_TIERS.get(model_id)
    if known is not None:
        return known
    for keyword, tier in TIER_KEYWORDS:
        if keyword in model_id:
            return tier
    return None


@dataclass(frozen=True, slots=True)
class RouteDecision:
    allowed: bool
    reason: str = ""
    tier: ModelTier | None = None


@dataclass(slots=True)
class TierRouter:
    _denials: dict[tuple[str, str, str], int] = field(default_factory=dict)

    def check(self, session_id: str, mode: str | None, model: str | None) -> RouteDecision:
        tier = infer_tier(model)
        if not mode or tier is None:
            return RouteDecision(allowed=True, tier=tier)
        if not is_tier_forbidden(mode, tier):
            return RouteDecision(allowed=True, tier=tier)

        key = (session_id, mode, tier)
        count = self._denials.get(key, 0) + 1
        if count > MAX_DENIALS:
            self._denials[key] = 0
            logger.info(
                "Override: allowing %s (%s) in %s mode after %d denials", model, tier, mode, count
            )
            return RouteDecision(
                allowed=True,
                reason=f"Allowed after {MAX_DENIALS} denials.",
                tier=tier,
            )

        self._denials[key] = count
        preferred = get_preferred_tier(mode)
        logger.info("Denied %s in %s mode (%d/%d)", model, mode, count, MAX_DENIALS)
        return RouteDecision(
            allowed=False,
            reason=(
                f'Mode "{mode}" forbids tier "{tier}" (model: {model}). '
                f'Use a "{preferred}" tier model instead. '
                f"(Denial {count}/{MAX_DENIALS}, override at {MAX_DENIALS + 1})"
            ),
            tier=tier,
        )

    def reset(self, session_id: str | None = None) -> None:
        if session_id is None:
            self._denials.clear()
            return
        for key in [key for key in self._denials if key[0] == session_id]:
            del self._denials[key]
