"""
Database Models - SQLAlchemy ORM Models

Defines database schema for:
- Entries (bibliographic records with per-stage screening status)
- Settings (AI prompts, API keys, key rotation state)
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Text, JSON, Enum
from sqlalchemy.orm import declarative_base
from datetime import datetime

from backend.core.screening_state import Record, ScreeningStatus

Base = declarative_base()


def _status_column():
    return Column(
        Enum(
            ScreeningStatus,
            name="screening_status",
            native_enum=False,
            values_callable=lambda enum_cls: [member.value for member in enum_cls]
        ),
        nullable=False,
        default=ScreeningStatus.PENDING
    )


# ===== Models =====

class Entry(Base):
    """
    Entry model - one bibliographic record under review

    Lifecycle:
    1. Imported - all statuses pending
    2. Deduplication - grouped by DOI, reviewed keep/remove
    3. Title screening - everything not removed as a duplicate
    4. Abstract screening - records included at title screening
    """
    __tablename__ = "entries"

    id = Column(String(255), primary_key=True)
    import_order = Column(Integer, nullable=True, index=True)  # Position in import sequence
    entry_type = Column(String(50), nullable=True)

    # Bibliographic fields
    title = Column(Text, nullable=True)
    author = Column(Text, nullable=True)
    year = Column(String(20), nullable=True)
    journal = Column(String(255), nullable=True)
    abstract = Column(Text, nullable=True)
    doi = Column(String(255), nullable=True, index=True)
    url = Column(Text, nullable=True)
    keywords = Column(Text, nullable=True)
    source = Column(String(255), nullable=True)

    # Screening statuses
    dedup_status = _status_column()
    title_status = _status_column()
    abstract_status = _status_column()
    title_notes = Column(Text, nullable=True)
    abstract_notes = Column(Text, nullable=True)

    # Duplicate bookkeeping
    is_duplicate = Column(Boolean, default=False, nullable=False)
    duplicate_group_id = Column(String(36), nullable=True, index=True)
    is_primary = Column(Boolean, default=False, nullable=False)

    # Any other fields from the import, passed through untouched
    extra_data = Column(JSON, nullable=True)

    # Metadata
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_record(self) -> Record:
        return Record(
            id=self.id,
            title=self.title,
            abstract=self.abstract,
            doi=self.doi,
            entry_type=self.entry_type,
            author=self.author,
            year=self.year,
            journal=self.journal,
            url=self.url,
            keywords=self.keywords,
            source=self.source,
            dedup_status=self.dedup_status or ScreeningStatus.PENDING,
            title_status=self.title_status or ScreeningStatus.PENDING,
            abstract_status=self.abstract_status or ScreeningStatus.PENDING,
            title_notes=self.title_notes,
            abstract_notes=self.abstract_notes,
            is_duplicate=bool(self.is_duplicate),
            duplicate_group_id=self.duplicate_group_id,
            is_primary=bool(self.is_primary),
            extra=dict(self.extra_data or {})
        )

    def __repr__(self):
        return f"<Entry(id={self.id}, title_status={self.title_status}, abstract_status={self.abstract_status})>"


class Setting(Base):
    """
    Key-value settings - AI prompts per stage, API keys, rotation cursor

    Cleared records never touch this table.
    """
    __tablename__ = "settings"

    key = Column(String(100), primary_key=True)
    value = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def __repr__(self):
        return f"<Setting(key={self.key})>"
