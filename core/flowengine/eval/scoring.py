"""
L2 evaluation: per-criterion 0-1 scores, averaged.

Built-in heuristics cover the common tone criteria. When an LLM provider
is supplied, each criterion is scored by the model instead, falling back
to the heuristic if the model reply cannot be parsed.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from flowengine.llm.provider import LLMProvider

logger = logging.getLogger(__name__)

NEUTRAL_SCORE = 0.7

CriterionFn = Callable[[str], float]


@dataclass
class L2Result:
    score: float
    breakdown: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"score": self.score, "breakdown": dict(self.breakdown)}


def _clamp(score: float) -> float:
    return max(0.0, min(1.0, score))


def score_professional(content: str) -> float:
    score = 0.7
    if re.search(r"\b(thank|appreciate|pleased|happy to)\b", content, re.I):
        score += 0.1
    if re.search(r"\b(best regards|sincerely|regards)\b", content, re.I):
        score += 0.1
    if re.search(r"!!+", content):
        score -= 0.1
    if re.search(r"\b(lol|omg|btw)\b", content, re.I):
        score -= 0.2
    return _clamp(score)


def score_empathy(content: str) -> float:
    score = 0.5
    if re.search(r"\b(understand|sorry|apologize|appreciate)\b", content, re.I):
        score += 0.2
    if re.search(r"\b(frustrating|difficult|challenging)\b", content, re.I):
        score += 0.1
    if re.search(r"\b(help|assist|support)\b", content, re.I):
        score += 0.1
    return _clamp(score)


def score_concise(content: str) -> float:
    # Sweet spot is 50-200 words
    words = len(content.split())
    if words < 50:
        return 0.6
    if words <= 200:
        return 1.0
    if words <= 300:
        return 0.8
    if words <= 500:
        return 0.6
    return 0.4


def score_clarity(content: str) -> float:
    score = 0.7
    if "\n\n" in content:
        score += 0.1
    if re.search(r"^(\d+\.|-|\*)", content, re.M):
        score += 0.1
    words = content.split()
    if words and len(content) / len(words) > 7:
        score -= 0.1
    return _clamp(score)


def heuristic_score(content: str, criterion: str) -> float:
    """Score one criterion with the built-in heuristics (0.7 when unknown)."""
    name = criterion.lower()
    if "professional" in name:
        return score_professional(content)
    if "empath" in name:
        return score_empathy(content)
    if "concise" in name:
        return score_concise(content)
    if "clear" in name or "clarity" in name:
        return score_clarity(content)
    return NEUTRAL_SCORE


_SCORE_PATTERN = re.compile(r"(?:score\s*[:=]\s*)?([01](?:\.\d+)?)", re.I)


class CriterionScorer:
    """Scores content against criteria; optionally asks an LLM."""

    def __init__(self, llm: LLMProvider | None = None):
        self.llm = llm
        self._custom: dict[str, CriterionFn] = {}

    def register(self, name: str, fn: CriterionFn) -> None:
        self._custom[name.lower()] = fn

    async def score(self, content: str, criterion: str) -> float:
        custom = self._custom.get(criterion.lower())
        if custom is not None:
            return _clamp(custom(content))
        if self.llm is None:
            return heuristic_score(content, criterion)
        return await self._llm_score(content, criterion)

    async def _llm_score(self, content: str, criterion: str) -> float:
        prompt = f"""Rate how well the following message satisfies the criterion "{criterion}".

MESSAGE:
{content[:4000]}

Respond in exactly this format:
SCORE: a number between 0.0 and 1.0"""
        try:
            reply = await self.llm.complete_text(
                prompt,
                system="You are a strict writing-quality grader. Reply with the score only.",
                max_tokens=16,
            )
        except Exception as e:
            logger.warning(f"L2 LLM scoring failed for '{criterion}', using heuristic: {e}")
            return heuristic_score(content, criterion)

        match = _SCORE_PATTERN.search(reply or "")
        if not match:
            logger.debug(f"Unparseable L2 score reply for '{criterion}': {reply!r}")
            return heuristic_score(content, criterion)
        return _clamp(float(match.group(1)))

    async def run(self, content: str, criteria: list[str]) -> L2Result:
        if not criteria:
            return L2Result(score=1.0)
        breakdown = {c: await self.score(content, c) for c in criteria}
        return L2Result(score=sum(breakdown.values()) / len(breakdown), breakdown=breakdown)


async def run_l2(content: str, criteria: list[str], llm: LLMProvider | None = None) -> L2Result:
    return await CriterionScorer(llm).run(content, criteria)
