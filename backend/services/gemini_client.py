"""
Gemini API Client - Google Generative Language API Integration

Sends one screening prompt per request with an explicitly supplied API key.
Retrying and key rotation are decided by the caller (see
credential_rotation.py), so every failure is raised straight away as a
GeminiAPIError carrying the HTTP status and the service's error text.
"""

import requests
import time
import logging
from typing import Dict, Optional
from dataclasses import dataclass, field

from shared.config import get_settings

logger = logging.getLogger(__name__)


class GeminiAPIError(Exception):
    """Failed Gemini request (HTTP error, network error or unusable response)"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self):
        if self.status_code is not None:
            return f"HTTP {self.status_code}: {self.message}"
        return self.message


@dataclass
class GeminiResponse:
    """Gemini API response"""
    content: str
    model: str = ""
    provider: str = "google"
    usage: Dict = field(default_factory=dict)


class GeminiClient:
    """
    Client for the Gemini generateContent endpoint

    Supports:
    - gemini-2.0-flash (default, fast and cheap for screening)
    - any other generateContent-capable model name
    """

    def __init__(
        self,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        temperature: Optional[float] = None,
        max_output_tokens: Optional[int] = None,
        timeout: Optional[int] = None,
        min_request_interval: Optional[float] = None,
        session: Optional[requests.Session] = None
    ):
        """
        Initialize Gemini client

        Args:
            model: Model name (default from settings)
            base_url: API base URL (default from settings)
            temperature: Temperature for generation
            max_output_tokens: Maximum tokens to generate
            timeout: Request timeout in seconds
            min_request_interval: Minimum seconds between two requests
            session: Optional requests session (connection reuse, testing)
        """
        settings = get_settings()

        self.model = model or settings.gemini_model
        self.base_url = (base_url or settings.gemini_api_base_url).rstrip('/')
        self.temperature = settings.gemini_temperature if temperature is None else temperature
        self.max_output_tokens = max_output_tokens or settings.gemini_max_output_tokens
        self.timeout = timeout or settings.request_timeout
        self.session = session or requests.Session()

        self._last_request_time = 0.0
        self._min_request_interval = (
            settings.min_request_interval if min_request_interval is None else min_request_interval
        )

        logger.info(f"Initialized Gemini client with model: {self.model}")

    def generate(self, prompt: str, api_key: str) -> GeminiResponse:
        """
        Send a single generateContent request

        Args:
            prompt: Full prompt text
            api_key: API key to authenticate this request with

        Returns:
            GeminiResponse with content and metadata

        Raises:
            GeminiAPIError: on any HTTP, network or response-format failure
        """
        self._rate_limit()

        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": api_key
        }

        payload = {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": self.temperature,
                "maxOutputTokens": self.max_output_tokens,
                "responseMimeType": "application/json"
            }
        }

        try:
            response = self.session.post(
                f"{self.base_url}/models/{self.model}:generateContent",
                headers=headers,
                json=payload,
                timeout=self.timeout
            )
        except requests.exceptions.Timeout as e:
            logger.warning(f"⚠️ Request timeout after {self.timeout}s")
            raise GeminiAPIError(f"Request timed out after {self.timeout}s") from e
        except requests.exceptions.RequestException as e:
            logger.warning(f"⚠️ Request failed: {type(e).__name__}: {str(e)[:150]}")
            raise GeminiAPIError(f"{type(e).__name__}: {e}") from e

        if response.status_code >= 400:
            message = self._error_message(response)
            logger.warning(f"⚠️ Gemini returned HTTP {response.status_code}: {message[:200]}")
            raise GeminiAPIError(message, status_code=response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise GeminiAPIError("Response body is not valid JSON", status_code=response.status_code) from e

        return self._parse_response(data)

    def _parse_response(self, data: Dict) -> GeminiResponse:
        """
        Parse Gemini API response

        Args:
            data: Raw JSON response from API

        Returns:
            GeminiResponse object
        """
        candidates = data.get('candidates') or []
        if not candidates:
            block_reason = (data.get('promptFeedback') or {}).get('blockReason', 'empty response')
            raise GeminiAPIError(f"Response blocked or empty ({block_reason})")

        try:
            parts = candidates[0]['content']['parts']
            content = ''.join(part.get('text', '') for part in parts)
        except (KeyError, IndexError, TypeError) as e:
            logger.debug(f"Response data: {data}")
            raise GeminiAPIError(f"Invalid response format: {e}") from e

        return GeminiResponse(
            content=content,
            model=data.get('modelVersion', self.model),
            provider='google',
            usage=data.get('usageMetadata', {})
        )

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        """Pull the error text out of a failed response"""
        try:
            error = response.json().get('error', {})
            if isinstance(error, dict):
                message = error.get('message') or error.get('status')
                if message:
                    return str(message)
            elif error:
                return str(error)
        except (ValueError, AttributeError):
            pass
        return response.text or response.reason or f"HTTP {response.status_code}"

    def _rate_limit(self):
        """Simple rate limiting using minimum request interval"""
        current_time = time.time()
        time_since_last = current_time - self._last_request_time

        if time_since_last < self._min_request_interval:
            time.sleep(self._min_request_interval - time_since_last)

        self._last_request_time = time.time()
