"""
L1 evaluation: deterministic assertions over generated content.

Each check is a plain function ``(content, params) -> (passed, message)``.
L1 passes iff every assertion with severity ``block`` passes; failing
``warn`` assertions are reported but never block.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class AssertionSeverity(StrEnum):
    BLOCK = "block"
    WARN = "warn"


class Assertion(BaseModel):
    check: str
    severity: AssertionSeverity = AssertionSeverity.BLOCK
    params: dict[str, Any] = Field(default_factory=dict)


@dataclass
class AssertionResult:
    check: str
    passed: bool
    severity: AssertionSeverity
    message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "check": self.check,
            "passed": self.passed,
            "severity": str(self.severity),
            "message": self.message,
        }


@dataclass
class L1Result:
    passed: bool
    assertions: list[AssertionResult] = field(default_factory=list)

    @property
    def failed(self) -> list[AssertionResult]:
        return [a for a in self.assertions if not a.passed and a.severity == "block"]

    @property
    def warnings(self) -> list[AssertionResult]:
        return [a for a in self.assertions if not a.passed and a.severity == "warn"]

    def to_dict(self) -> dict[str, Any]:
        return {"passed": self.passed, "assertions": [a.to_dict() for a in self.assertions]}


CheckFn = Callable[[str, dict[str, Any]], tuple[bool, str | None]]

# ---------------------------------------------------------------------------
# Built-in checks
# ---------------------------------------------------------------------------

PLACEHOLDER_PATTERN = re.compile(r"\{\{[^}]+\}\}|\[[A-Z][^\]]*\]|\{[a-z_]+\}")

SUSPICIOUS_STATISTICS = [
    re.compile(r"\d{1,3}% (increase|decrease|growth|reduction)", re.IGNORECASE),
    re.compile(r"\$\d+[,\d]* (saved|earned|revenue)", re.IGNORECASE),
    re.compile(r"\d+ (customers|users|clients) (using|love|trust)", re.IGNORECASE),
]

LANGUAGE_PATTERNS = {
    "en": re.compile(r"\b(the|and|is|are|was|were|have|has|will|would|can|could)\b", re.I),
    "fr": re.compile(r"\b(le|la|les|de|et|est|sont|avoir|être|je|tu|il|elle|nous|vous)\b", re.I),
    "es": re.compile(r"\b(el|la|los|las|de|y|es|son|tener|ser|yo|tú|él|ella|nosotros)\b", re.I),
    "de": re.compile(r"\b(der|die|das|den|dem|und|ist|sind|haben|sein|ich|du|er|sie|wir)\b", re.I),
}
MIN_LANGUAGE_MATCHES = 3

PROFANITY_PATTERN = re.compile(r"\b(fuck\w*|shit\w*|damn|bitch\w*|crap|ass|asshole)\b", re.I)

CTA_PATTERNS = [
    re.compile(
        r"\b(click|call|contact|reply|schedule|book|sign up|register|learn more|get started)\b",
        re.I,
    ),
    re.compile(r"\?\s*$", re.M),
    re.compile(r"let me know", re.I),
    re.compile(r"would you like", re.I),
]

PRIOR_EXCHANGE_PATTERNS = [
    re.compile(r"as (you|we) (mentioned|discussed)", re.I),
    re.compile(r"following up on", re.I),
    re.compile(r"regarding (your|our)", re.I),
    re.compile(r"as per (your|our)", re.I),
]

GENERIC_GREETINGS = [
    re.compile(r"dear sir/madam", re.I),
    re.compile(r"to whom it may concern", re.I),
    re.compile(r"dear hiring manager", re.I),
    re.compile(r"hello there", re.I),
]

GREETING_PATTERN = re.compile(r"^(hi|hello|dear|greetings)[^.!?\n]*", re.I | re.M)
CLOSING_PATTERN = re.compile(r"(best regards|sincerely|cheers|thanks)[^.!?\n]*$", re.I | re.M)
EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")


def check_contains_recipient_name(content: str, params: dict[str, Any]):
    name = (params.get("name") or "").strip()
    if not name:
        return True, "No name provided to check"
    lowered = content.lower()
    first_name = name.split()[0].lower()
    passed = name.lower() in lowered or first_name in lowered
    return passed, None if passed else f"Content does not mention recipient name: {name}"


def check_no_placeholders(content: str, params: dict[str, Any]):
    matches = PLACEHOLDER_PATTERN.findall(content)
    return not matches, f"Found placeholder(s): {', '.join(matches)}" if matches else None


def check_no_hallucination(content: str, params: dict[str, Any]):
    if params.get("knownFacts") or params.get("known_facts"):
        return True, None
    for pattern in SUSPICIOUS_STATISTICS:
        if pattern.search(content):
            return False, "Content may contain unverified statistics"
    return True, None


def check_correct_language(content: str, params: dict[str, Any]):
    language = params.get("language", "en")
    pattern = LANGUAGE_PATTERNS.get(language)
    if pattern is None:
        return True, f"Unknown language: {language}"
    passed = len(pattern.findall(content)) >= MIN_LANGUAGE_MATCHES
    return passed, None if passed else f"Content may not be in {language}"


def check_min_length(content: str, params: dict[str, Any]):
    minimum = int(params.get("min", 50))
    passed = len(content) >= minimum
    return passed, None if passed else f"Content is {len(content)} chars, minimum is {minimum}"


def check_max_length(content: str, params: dict[str, Any]):
    maximum = int(params.get("max", 5000))
    passed = len(content) <= maximum
    return passed, None if passed else f"Content is {len(content)} chars, maximum is {maximum}"


def check_no_profanity(content: str, params: dict[str, Any]):
    if PROFANITY_PATTERN.search(content):
        return False, "Content may contain inappropriate language"
    return True, None


def check_contains_cta(content: str, params: dict[str, Any]):
    if any(p.search(content) for p in CTA_PATTERNS):
        return True, None
    return False, "Content does not contain a clear call-to-action"


def check_no_competitor_mentions(content: str, params: dict[str, Any]):
    lowered = content.lower()
    for competitor in params.get("competitors", []):
        if competitor and competitor.lower() in lowered:
            return False, f"Content mentions competitor: {competitor}"
    return True, None


def check_references_real_exchange(content: str, params: dict[str, Any]):
    if not params.get("history"):
        return True, None
    if any(p.search(content) for p in PRIOR_EXCHANGE_PATTERNS):
        return True, None
    return False, "Content does not reference previous conversation"


def check_no_generic_greeting(content: str, params: dict[str, Any]):
    if any(p.search(content) for p in GENERIC_GREETINGS):
        return False, "Generic greeting detected"
    return True, None


def check_has_real_content(content: str, params: dict[str, Any]):
    stripped = CLOSING_PATTERN.sub("", GREETING_PATTERN.sub("", content)).strip()
    passed = len(stripped) > 50
    return passed, None if passed else f"Too little content: {len(stripped)} chars"


def check_has_valid_email(content: str, params: dict[str, Any]):
    if not params.get("requireEmail", params.get("require_email", False)):
        return True, None
    if EMAIL_PATTERN.search(content):
        return True, None
    return False, "No valid email found"


BUILTIN_CHECKS: dict[str, CheckFn] = {
    "contains_recipient_name": check_contains_recipient_name,
    "no_placeholders": check_no_placeholders,
    "no_hallucination": check_no_hallucination,
    "correct_language": check_correct_language,
    "min_length": check_min_length,
    "max_length": check_max_length,
    "no_profanity": check_no_profanity,
    "contains_cta": check_contains_cta,
    "no_competitor_mentions": check_no_competitor_mentions,
    "references_real_exchange": check_references_real_exchange,
    "no_generic_greeting": check_no_generic_greeting,
    "has_real_content": check_has_real_content,
    "has_valid_email": check_has_valid_email,
}

# Alternate names used by older rule sets
CHECK_ALIASES = {
    "no_hallucinated_statistics": "no_hallucination",
    "contains_call_to_action": "contains_cta",
    "no_competitor_mention": "no_competitor_mentions",
    "references_prior_exchange": "references_real_exchange",
    "respects_min_length": "min_length",
    "respects_max_length": "max_length",
}


class AssertionCatalog:
    """The set of checks available to L1. Custom checks can be registered per engine."""

    def __init__(self) -> None:
        self._checks: dict[str, CheckFn] = dict(BUILTIN_CHECKS)

    def register(self, name: str, fn: CheckFn) -> None:
        self._checks[name] = fn

    def names(self) -> list[str]:
        return sorted(self._checks)

    def run_one(self, content: str, assertion: Assertion) -> AssertionResult:
        name = CHECK_ALIASES.get(assertion.check, assertion.check)
        fn = self._checks.get(name)
        if fn is None:
            return AssertionResult(
                assertion.check, True, assertion.severity, f"Unknown assertion: {assertion.check}"
            )
        passed, message = fn(content, assertion.params)
        return AssertionResult(assertion.check, passed, assertion.severity, message)

    def run(self, content: str, assertions: list[Assertion | dict[str, Any]]) -> L1Result:
        results = [self.run_one(content, Assertion.model_validate(a)) for a in assertions]
        passed = all(r.passed for r in results if r.severity == AssertionSeverity.BLOCK)
        return L1Result(passed=passed, assertions=results)


def run_l1(content: str, assertions: list[Assertion | dict[str, Any]]) -> L1Result:
    """Run L1 with the built-in checks only."""
    return AssertionCatalog().run(content, assertions)
