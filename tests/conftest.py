import json
import re
from typing import Callable, List, Optional

import pytest

from backend.db.config import create_db_engine, create_session_factory
from backend.db.record_store import SQLRecordStore
from backend.models.database import Base
from backend.services.gemini_client import GeminiAPIError, GeminiResponse

_ENTRY_LINE = re.compile(r"^id: (?P<id>[^;]+); (?P<stage>\w+): (?P<text>.*)$", re.MULTILINE)


@pytest.fixture
def session_factory():
    engine = create_db_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield create_session_factory(engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    return SQLRecordStore(session_factory)


def entry_ids(prompt: str) -> List[str]:
    """Record ids listed in a batch prompt"""
    return [m.group('id').strip() for m in _ENTRY_LINE.finditer(prompt)]


def keyword_decisions(prompt: str) -> str:
    """JSON array answer: INCLUDE when the entry text mentions 'screening', else EXCLUDE"""
    items = []
    for match in _ENTRY_LINE.finditer(prompt):
        decision = "INCLUDE" if "screening" in match.group('text').lower() else "EXCLUDE"
        items.append({
            "id": match.group('id').strip(),
            "decision": decision,
            "confidence": 0.9,
            "reasoning": f"{decision.lower()} by keyword"
        })
    return json.dumps(items)


class FakeTransport:
    """
    Stands in for GeminiClient.generate

    Each key maps to either a callable building the answer from the prompt
    or a GeminiAPIError to raise.
    """

    def __init__(self, behaviour: Optional[dict] = None, default: Optional[Callable[[str], str]] = None):
        self.behaviour = behaviour or {}
        self.default = default or keyword_decisions
        self.calls = []

    def generate(self, prompt: str, api_key: str) -> GeminiResponse:
        self.calls.append((api_key, prompt))
        action = self.behaviour.get(api_key, self.default)
        if isinstance(action, GeminiAPIError):
            raise action
        return GeminiResponse(content=action(prompt), model="gemini-test")


@pytest.fixture
def sample_entries():
    return [
        {"ID": "smith2020", "ENTRYTYPE": "article", "title": "Automated screening for reviews",
         "author": "Smith, J.", "year": "2020", "doi": "10.1000/abc", "abstract": "Short."},
        {"ID": "doe2021", "ENTRYTYPE": "article", "title": "Deep learning for protein folding",
         "author": "Doe, A.", "year": "2021", "doi": "10.1000/xyz"},
        {"ID": "smith2020b", "ENTRYTYPE": "inproceedings", "title": "Automated screening for reviews",
         "author": "Smith, J.", "year": "2020", "doi": "10.1000/abc",
         "abstract": "A much longer abstract describing automated screening."},
        {"ID": "lee2019", "ENTRYTYPE": "article", "title": "Citation screening with language models",
         "author": "Lee, K.", "year": "2019", "publisher": "ACM"},
    ]
