"""
Decision Parser - Normalizes Classifier Responses

The classifier is asked for JSON but does not always comply. Parsing is
two-tiered and never raises:
1. Structured - JSON object (optionally inside a fenced code block) with a
   'decision' field
2. Heuristic - first INCLUDE/EXCLUDE/MAYBE keyword found in the raw text

Malformed input degrades to MAYBE with the raw text kept as rationale.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Union
import json
import logging
import re

from .screening_state import ScreeningStatus

logger = logging.getLogger(__name__)

DEFAULT_CONFIDENCE = 0.5

_FENCE_PATTERN = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)\s*```")
_KEYWORD_PATTERN = re.compile(r"include|exclude|maybe", re.IGNORECASE)


class Decision(str, Enum):
    """Classifier decision"""
    INCLUDE = "INCLUDE"
    EXCLUDE = "EXCLUDE"
    MAYBE = "MAYBE"


@dataclass(frozen=True)
class StructuredDecision:
    """Decision read from a well-formed JSON object"""
    decision: Decision
    confidence: float
    rationale: str


@dataclass(frozen=True)
class HeuristicDecision:
    """Decision recovered by keyword scan of free text"""
    decision: Decision
    rationale: str


ParseOutcome = Union[StructuredDecision, HeuristicDecision]


@dataclass(frozen=True)
class ParsedDecision:
    """Normalized decision handed to the orchestrator"""
    decision: Decision
    confidence: float
    rationale: str
    structured: bool = False


def decision_to_status(decision: Decision) -> ScreeningStatus:
    """INCLUDE -> included, EXCLUDE -> excluded, anything else -> maybe"""
    if decision == Decision.INCLUDE:
        return ScreeningStatus.INCLUDED
    if decision == Decision.EXCLUDE:
        return ScreeningStatus.EXCLUDED
    return ScreeningStatus.MAYBE


def unwrap_code_fence(text: str) -> str:
    """Return the body of the first fenced code block, or the stripped text"""
    text = (text or '').strip()
    match = _FENCE_PATTERN.search(text)
    if match:
        return match.group(1).strip()
    return text


def interpret_decision(value: Any) -> Decision:
    """
    Map a free-form decision value onto a Decision

    Case-insensitive substring match; anything ambiguous (no label, or more
    than one label present) becomes MAYBE.
    """
    text = str(value or '').lower()
    found = {label for label in ('include', 'exclude', 'maybe') if label in text}

    if found == {'include'}:
        return Decision.INCLUDE
    if found == {'exclude'}:
        return Decision.EXCLUDE
    return Decision.MAYBE


def _coerce_confidence(value: Any, default: float) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return default

    if confidence != confidence:  # NaN
        return default
    return min(1.0, max(0.0, confidence))


def parse_object(
    obj: Any,
    raw_text: str,
    default_confidence: float = DEFAULT_CONFIDENCE
) -> Optional[StructuredDecision]:
    """
    Interpret an already-decoded JSON value

    Returns None unless obj is a dict carrying a 'decision' field.
    """
    if not isinstance(obj, dict) or obj.get('decision') in (None, ''):
        return None

    rationale = obj.get('reasoning') or obj.get('explanation') or raw_text
    return StructuredDecision(
        decision=interpret_decision(obj['decision']),
        confidence=_coerce_confidence(obj.get('confidence'), default_confidence),
        rationale=str(rationale),
    )


def heuristic_decision(raw_text: str) -> HeuristicDecision:
    """Scan for the first INCLUDE/EXCLUDE/MAYBE keyword in the text"""
    raw_text = raw_text or ''
    match = _KEYWORD_PATTERN.search(raw_text)
    decision = Decision(match.group(0).upper()) if match else Decision.MAYBE
    return HeuristicDecision(decision=decision, rationale=raw_text)


def normalize(outcome: ParseOutcome, default_confidence: float = DEFAULT_CONFIDENCE) -> ParsedDecision:
    if isinstance(outcome, StructuredDecision):
        return ParsedDecision(
            decision=outcome.decision,
            confidence=outcome.confidence,
            rationale=outcome.rationale,
            structured=True,
        )
    return ParsedDecision(
        decision=outcome.decision,
        confidence=default_confidence,
        rationale=outcome.rationale,
        structured=False,
    )


def parse(raw_text: str, default_confidence: float = DEFAULT_CONFIDENCE) -> ParsedDecision:
    """
    Parse one classifier response into a decision

    Args:
        raw_text: Raw response text
        default_confidence: Confidence used when none can be read

    Returns:
        ParsedDecision (always; malformed input degrades to MAYBE)
    """
    raw_text = raw_text if isinstance(raw_text, str) else str(raw_text or '')

    outcome: Optional[ParseOutcome] = None
    try:
        outcome = parse_object(json.loads(unwrap_code_fence(raw_text)), raw_text, default_confidence)
    except (ValueError, RecursionError):
        logger.debug("Response is not valid JSON, falling back to keyword scan")

    if outcome is None:
        outcome = heuristic_decision(raw_text)

    return normalize(outcome, default_confidence)


def split_batch_response(raw_text: str) -> Optional[List[Dict]]:
    """
    Extract per-entry items from a batch response

    Accepts a JSON array (optionally fenced) or an object holding the array
    under 'results'. Returns None when no item list can be found.
    """
    try:
        data = json.loads(unwrap_code_fence(raw_text))
    except (TypeError, ValueError, RecursionError):
        return None

    if isinstance(data, dict) and isinstance(data.get('results'), list):
        data = data['results']

    if not isinstance(data, list):
        return None

    return [item for item in data if isinstance(item, dict)]
