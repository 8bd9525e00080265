"""
Credential Rotation - Multi-Key Classification Client

Several interchangeable API keys can be configured. Each classification call
starts at the rotation cursor and walks the keys in order:
- quota failure (HTTP 429, "quota", "rate limit", "too many requests"):
  try the next key
- any other failure: stop, move the cursor past the failed key, report it
- success: move the cursor to the key after the one used

The rotation state is a plain value passed in and returned by every call;
callers persist it between runs.
"""

from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple, Union
import json
import logging

from .gemini_client import GeminiAPIError, GeminiClient

logger = logging.getLogger(__name__)

QUOTA_MARKERS = ("quota", "rate limit", "too many requests")

AttemptCallback = Callable[[int, int], None]
SendFunction = Callable[[str, str], str]


@dataclass(frozen=True)
class RotationState:
    """Which credential to try first, and for how large a credential set"""
    cursor: int = 0
    size: int = 0

    def normalized(self, size: int) -> 'RotationState':
        """Fresh state when the credential set changed size, else a bounded cursor"""
        if size <= 0:
            return RotationState(0, 0)
        if size != self.size:
            return RotationState(0, size)
        return RotationState(self.cursor % size, size)

    def advanced_past(self, index: int) -> 'RotationState':
        return RotationState((index + 1) % self.size, self.size)

    def to_json(self) -> str:
        return json.dumps({'cursor': self.cursor, 'size': self.size})

    @classmethod
    def from_json(cls, raw: Optional[str]) -> 'RotationState':
        if not raw:
            return cls()
        try:
            data = json.loads(raw)
            return cls(int(data.get('cursor', 0)), int(data.get('size', 0)))
        except (ValueError, TypeError, AttributeError):
            logger.warning("Stored rotation state is unreadable, starting from the first key")
            return cls()


# ===== Per-attempt outcomes =====

@dataclass(frozen=True)
class AttemptSuccess:
    index: int
    response: str


@dataclass(frozen=True)
class AttemptQuotaFailure:
    index: int
    message: str


@dataclass(frozen=True)
class AttemptHardFailure:
    index: int
    error: Exception


AttemptOutcome = Union[AttemptSuccess, AttemptQuotaFailure, AttemptHardFailure]


# ===== Per-call outcomes =====

@dataclass(frozen=True)
class Success:
    response: str
    credential_index: int


@dataclass(frozen=True)
class QuotaExhausted:
    attempts: int
    last_message: str


@dataclass(frozen=True)
class HardFailure:
    error: Exception
    credential_index: int


RotationOutcome = Union[Success, QuotaExhausted, HardFailure]


# ===== Errors surfaced by ClassificationClient =====

class ClassificationError(Exception):
    """Classification call failed; carries the rotation state to persist"""

    def __init__(self, message: str, rotation_state: RotationState):
        super().__init__(message)
        self.rotation_state = rotation_state


class QuotaExceededError(ClassificationError):
    """Every credential hit a quota or rate limit"""


class RequestFailedError(ClassificationError):
    """Non-quota failure of the external call"""


def is_quota_error(status_code: Optional[int], message: str) -> bool:
    """HTTP 429, or error text mentioning quota / rate limit / too many requests"""
    if status_code == 429:
        return True
    text = (message or '').lower()
    return any(marker in text for marker in QUOTA_MARKERS)


def load_credentials(raw: Optional[str]) -> List[str]:
    """
    Decode the stored credential set

    Stored as a JSON array of strings; a bare non-JSON string is treated as a
    single legacy key. Blank entries are dropped.
    """
    if not raw or not raw.strip():
        return []

    try:
        keys = json.loads(raw)
    except ValueError:
        logger.warning("Stored API key is not a JSON array, treating it as a single key")
        return [raw.strip()]

    if isinstance(keys, list) and all(isinstance(k, str) for k in keys):
        return [k.strip() for k in keys if k.strip()]

    if isinstance(keys, str) and keys.strip():
        return [keys.strip()]

    logger.warning("Stored API keys have an unexpected shape, ignoring them")
    return []


def dump_credentials(keys: Sequence[str]) -> str:
    return json.dumps([k.strip() for k in keys if k and k.strip()])


def attempt(send: SendFunction, prompt: str, credential: str, index: int) -> AttemptOutcome:
    """Run one request with one credential and classify the result"""
    try:
        return AttemptSuccess(index=index, response=send(prompt, credential))
    except GeminiAPIError as e:
        if is_quota_error(e.status_code, e.message):
            return AttemptQuotaFailure(index=index, message=str(e))
        return AttemptHardFailure(index=index, error=e)
    except Exception as e:
        if is_quota_error(None, str(e)):
            return AttemptQuotaFailure(index=index, message=str(e))
        return AttemptHardFailure(index=index, error=e)


def rotate(
    prompt: str,
    credentials: Sequence[str],
    state: RotationState,
    send: SendFunction,
    on_attempt: Optional[AttemptCallback] = None
) -> Tuple[RotationOutcome, RotationState]:
    """
    Try the credential set once around, starting at the cursor

    Args:
        prompt: Prompt to send
        credentials: Ordered API keys (must not be empty)
        state: Rotation state from the previous call
        send: Function performing one request: send(prompt, key) -> text
        on_attempt: Called as on_attempt(k, n) before each attempt, k being
            the 1-based position of the key being tried

    Returns:
        (outcome, new rotation state)
    """
    total = len(credentials)
    if total == 0:
        raise ValueError("At least one credential is required")

    state = state.normalized(total)
    last_message = ''

    for step in range(total):
        index = (state.cursor + step) % total

        if on_attempt:
            on_attempt(index + 1, total)

        result = attempt(send, prompt, credentials[index], index)

        if isinstance(result, AttemptSuccess):
            return Success(result.response, index), state.advanced_past(index)

        if isinstance(result, AttemptHardFailure):
            logger.error(f"❌ Key {index + 1}/{total} failed: {result.error}")
            return HardFailure(result.error, index), state.advanced_past(index)

        last_message = result.message
        logger.warning(f"⚠️ Key {index + 1}/{total} hit a quota limit: {result.message[:200]}")

    return QuotaExhausted(total, last_message), state


class ClassificationClient:
    """
    Text classification over the Gemini API with key rotation

    classify() sends one prompt and returns the raw response text together
    with the rotation state to use for the next call.
    """

    def __init__(self, transport: Optional[GeminiClient] = None):
        self.transport = transport or GeminiClient()

    def _send(self, prompt: str, api_key: str) -> str:
        return self.transport.generate(prompt, api_key).content

    def classify(
        self,
        prompt: str,
        credentials: Sequence[str],
        state: RotationState,
        on_attempt: Optional[AttemptCallback] = None
    ) -> Tuple[str, RotationState]:
        """
        Classify one prompt

        Raises:
            QuotaExceededError: every credential reported a quota failure
            RequestFailedError: non-quota failure, or no credentials configured
        """
        if not credentials:
            raise RequestFailedError(
                "No Gemini API keys configured. Please set them in the settings.",
                state
            )

        outcome, new_state = rotate(prompt, credentials, state, self._send, on_attempt)

        if isinstance(outcome, Success):
            return outcome.response, new_state

        if isinstance(outcome, HardFailure):
            raise RequestFailedError(
                f"Request failed with key {outcome.credential_index + 1}/{len(credentials)}: {outcome.error}",
                new_state
            )

        raise QuotaExceededError(
            f"All {outcome.attempts} API keys exceeded their quota. Last error: {outcome.last_message}",
            new_state
        )
