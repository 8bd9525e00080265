"""
Shared Configuration Module

Central configuration management for the screening backend
"""

from pathlib import Path
from typing import Optional
from pydantic_settings import BaseSettings, SettingsConfigDict
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===== Gemini API Configuration =====
    gemini_model: str = "gemini-2.0-flash"
    gemini_api_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_temperature: float = 0.0
    gemini_max_output_tokens: int = 8192
    request_timeout: int = 60  # seconds
    min_request_interval: float = 0.5  # seconds between outbound requests

    # ===== Screening Configuration =====
    batch_size: int = 50
    heuristic_confidence: float = 0.5

    # ===== Deduplication Settings =====
    use_title_similarity: bool = False
    title_similarity_threshold: float = 0.95

    # ===== Ingest Settings =====
    max_id_collision_retries: int = 5

    # ===== Database =====
    database_url: Optional[str] = None

    # ===== Backend Settings =====
    backend_host: str = "0.0.0.0"
    backend_port: int = 8000

    # ===== Paths =====
    project_root: Path = Path(__file__).parent.parent
    data_dir: Path = project_root / "data"


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance

    Returns:
        Settings instance
    """
    return Settings()


# ===== Constants =====

# Settings table keys
PROMPT_KEY_TEMPLATE = "ai_prompt_{stage}"
API_KEYS_KEY = "api_key_gemini"
ROTATION_STATE_KEY = "api_key_gemini_rotation"

# Placeholder replaced by the formatted entry list in batch prompts
ENTRIES_PLACEHOLDER = "{entries}"

_RESPONSE_FORMAT = (
    "Respond with a JSON array containing one object per entry, in this structure:\n"
    "[\n"
    '  {"id": "<entry id>", "decision": "INCLUDE" | "EXCLUDE" | "MAYBE", '
    '"confidence": <number between 0 and 1>, "reasoning": "<short reasoning>"}\n'
    "]\n\n"
    "Return one object for every entry id. Ensure the response is valid JSON that can be parsed directly.\n\n"
    "List of entries:\n\n"
    "{entries}"
)

# Default batch prompts per screening stage
DEFAULT_PROMPTS = {
    'title': (
        "Based on the titles below, determine whether each paper should be included "
        "in a literature review. Consider the relevance to the research topic.\n\n"
        + _RESPONSE_FORMAT
    ),
    'abstract': (
        "Based on the abstracts below, determine whether each paper should be included "
        "in a literature review. Consider methodology, findings, and relevance to the "
        "research topic.\n\n"
        + _RESPONSE_FORMAT
    ),
}
