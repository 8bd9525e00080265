"""
Shared FastAPI dependencies

Tests override these through app.dependency_overrides.
"""

from ..db import get_session_factory
from ..db.record_store import RecordStore, SQLRecordStore
from ..services.credential_rotation import ClassificationClient


def get_record_store() -> RecordStore:
    return SQLRecordStore(get_session_factory())


def get_classification_client() -> ClassificationClient:
    return ClassificationClient()


def record_to_dict(record) -> dict:
    """JSON-safe view of a Record"""
    data = {
        'id': record.id,
        'entry_type': record.entry_type,
        'title': record.title,
        'author': record.author,
        'year': record.year,
        'journal': record.journal,
        'abstract': record.abstract,
        'doi': record.doi,
        'url': record.url,
        'keywords': record.keywords,
        'source': record.source,
        'dedup_status': record.dedup_status.value,
        'title_status': record.title_status.value,
        'abstract_status': record.abstract_status.value,
        'title_notes': record.title_notes,
        'abstract_notes': record.abstract_notes,
        'is_duplicate': record.is_duplicate,
        'duplicate_group_id': record.duplicate_group_id,
        'is_primary': record.is_primary,
    }
    data.update({k: v for k, v in record.extra.items() if k not in data})
    return data
