"""
Record Store - Persistence Contract for the Screening Core

The core reads and writes records only through RecordStore. SQLRecordStore
implements it on top of the SQLAlchemy models.

Multi-record status updates run in a single transaction. Updates that fail
validation (unknown record, disallowed transition) are reported per record
while the rest still apply; if the commit itself fails every update is
reported as failed.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence
import logging
import uuid

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from backend.core.screening_state import (
    Actor,
    InvalidTransitionError,
    NOTES_FIELDS,
    Record,
    STATUS_FIELDS,
    ScreeningStatus,
    Stage,
    StatusUpdate,
    apply_update,
    plan_reset,
    stage_statistics,
)
from backend.models.database import Entry, Setting
from shared.config import get_settings

logger = logging.getLogger(__name__)

# Entry columns filled straight from imported fields; everything else goes to extra_data
_ENTRY_FIELDS = ('title', 'author', 'year', 'journal', 'abstract', 'doi', 'url', 'keywords')
_SKIPPED_IMPORT_FIELDS = {'ID', 'id', 'ENTRYTYPE', 'entry_type', 'source'} | set(STATUS_FIELDS.values())


class RecordNotFoundError(KeyError):
    """No record with the given identifier"""

    def __init__(self, record_id: str):
        super().__init__(record_id)
        self.record_id = record_id

    def __str__(self):
        return f"Entry with ID {self.record_id} not found"


class IdentifierCollisionError(ValueError):
    """No free identifier found within the retry bound"""


@dataclass
class UpdateReport:
    """Outcome of a multi-record update"""
    applied: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)  # record id -> reason

    @property
    def success_count(self) -> int:
        return len(self.applied)

    @property
    def error_count(self) -> int:
        return len(self.failed)


def resolve_collision(
    record_id: str,
    exists: Callable[[str], bool],
    max_attempts: int = 5
) -> str:
    """
    Find a free identifier for an imported record

    Tries the id itself, then <id>_2, <id>_3, ... for at most max_attempts
    suffixed candidates.

    Raises:
        IdentifierCollisionError: when every candidate is taken
    """
    if not exists(record_id):
        return record_id

    for n in range(2, max_attempts + 2):
        candidate = f"{record_id}_{n}"
        if not exists(candidate):
            logger.warning(f"Duplicate ID detected: {record_id}, using {candidate}")
            return candidate

    raise IdentifierCollisionError(
        f"Could not find a free identifier for {record_id} after {max_attempts} attempts"
    )


class RecordStore(ABC):
    """Key-addressable record table plus key-value settings"""

    @abstractmethod
    def get_all(self) -> List[Record]:
        ...

    @abstractmethod
    def get(self, record_id: str) -> Optional[Record]:
        ...

    @abstractmethod
    def save_entries(self, entries: Sequence[Dict], source: str) -> List[str]:
        ...

    @abstractmethod
    def update_statuses(self, updates: Sequence[StatusUpdate]) -> UpdateReport:
        ...

    @abstractmethod
    def update_screening(self, record_id: str, stage: Stage, status: ScreeningStatus,
                         notes: Optional[str] = None) -> Record:
        ...

    @abstractmethod
    def apply_duplicate_marks(self, records: Sequence[Record]) -> int:
        ...

    @abstractmethod
    def update_dedup_status(self, updates: Sequence[Dict]) -> UpdateReport:
        ...

    @abstractmethod
    def reset_stage(self, stage: Stage) -> int:
        ...

    @abstractmethod
    def update_abstract(self, record_id: str, abstract: str) -> Record:
        ...

    @abstractmethod
    def get_setting(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set_setting(self, key: str, value: Optional[str]) -> None:
        ...

    @abstractmethod
    def clear_records(self) -> int:
        ...

    def stats(self) -> Dict:
        """Status counts per stage"""
        records = self.get_all()
        return {
            'total': len(records),
            'duplicate_groups': len({r.duplicate_group_id for r in records if r.is_duplicate}),
            'deduplication': stage_statistics(records, Stage.DEDUPLICATION),
            'title': stage_statistics(records, Stage.TITLE),
            'abstract': stage_statistics(records, Stage.ABSTRACT),
        }

    def get_duplicate_groups(self, page: int = 1, page_size: int = 50) -> Dict:
        """Duplicate groups for review, paginated by group"""
        groups: Dict[str, List[Record]] = {}
        for record in self.get_all():
            if record.is_duplicate and record.duplicate_group_id:
                groups.setdefault(record.duplicate_group_id, []).append(record)

        group_ids = sorted(groups)
        start = max(page - 1, 0) * page_size
        return {
            'groups': {gid: groups[gid] for gid in group_ids[start:start + page_size]},
            'total_groups': len(group_ids),
        }


class SQLRecordStore(RecordStore):
    """RecordStore backed by the entries and settings tables"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _session(self) -> Session:
        return self.session_factory()

    # ===== Reads =====

    def get_all(self) -> List[Record]:
        with self._session() as session:
            entries = session.query(Entry).order_by(Entry.import_order, Entry.id).all()
            return [e.to_record() for e in entries]

    def get(self, record_id: str) -> Optional[Record]:
        with self._session() as session:
            entry = session.get(Entry, record_id)
            return entry.to_record() if entry else None

    # ===== Ingest =====

    def save_entries(self, entries: Sequence[Dict], source: str) -> List[str]:
        """
        Insert already-parsed entries in one transaction

        Identifier clashes (with stored records or within the batch) are
        resolved with resolve_collision.

        Returns:
            Stored identifiers, in input order
        """
        max_attempts = get_settings().max_id_collision_retries
        saved_ids: List[str] = []
        taken = set()

        with self._session() as session:
            try:
                def exists(candidate: str) -> bool:
                    return candidate in taken or session.get(Entry, candidate) is not None

                next_position = (session.query(func.max(Entry.import_order)).scalar() or 0) + 1

                for data in entries:
                    raw_id = str(data.get('ID') or data.get('id') or f"entry_{uuid.uuid4().hex[:8]}")
                    record_id = resolve_collision(raw_id, exists, max_attempts)
                    taken.add(record_id)

                    extra = {
                        k: v for k, v in data.items()
                        if k not in _ENTRY_FIELDS and k not in _SKIPPED_IMPORT_FIELDS
                    }
                    entry = Entry(
                        id=record_id,
                        import_order=next_position + len(saved_ids),
                        entry_type=data.get('ENTRYTYPE') or data.get('entry_type'),
                        source=source,
                        dedup_status=ScreeningStatus.PENDING,
                        title_status=ScreeningStatus.PENDING,
                        abstract_status=ScreeningStatus.PENDING,
                        is_duplicate=False,
                        is_primary=False,
                        extra_data=extra or None,
                        **{k: self._as_text(data.get(k)) for k in _ENTRY_FIELDS}
                    )
                    session.add(entry)
                    saved_ids.append(record_id)

                session.commit()
            except Exception:
                session.rollback()
                logger.error(f"Error saving entries from {source}, transaction rolled back")
                raise

        logger.info(f"Saved {len(saved_ids)} entries from source: {source}")
        return saved_ids

    @staticmethod
    def _as_text(value) -> Optional[str]:
        if value is None:
            return None
        return str(value)

    # ===== Screening updates =====

    def update_statuses(self, updates: Sequence[StatusUpdate]) -> UpdateReport:
        """
        Apply many status updates atomically

        Invalid updates are skipped and reported; the remaining ones commit
        together.
        """
        report = UpdateReport()
        if not updates:
            return report

        with self._session() as session:
            try:
                for update in updates:
                    try:
                        self._apply(session, update)
                        report.applied.append(update.record_id)
                    except (RecordNotFoundError, InvalidTransitionError) as e:
                        report.failed[update.record_id] = str(e)

                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"❌ Batch status update failed, nothing applied: {e}")
                return UpdateReport(
                    applied=[],
                    failed={u.record_id: f"Transaction failed: {e}" for u in updates}
                )

        logger.info(
            f"Status update: {report.success_count} applied, {report.error_count} failed"
        )
        return report

    def update_screening(self, record_id: str, stage: Stage, status: ScreeningStatus,
                         notes: Optional[str] = None) -> Record:
        update = StatusUpdate(
            record_id=record_id,
            stage=Stage(stage),
            status=ScreeningStatus(status),
            notes=notes,
            actor=Actor.MANUAL
        )
        with self._session() as session:
            entry = self._apply(session, update)
            session.commit()
            return entry.to_record()

    def _apply(self, session: Session, update: StatusUpdate) -> Entry:
        entry = session.get(Entry, update.record_id)
        if entry is None:
            raise RecordNotFoundError(update.record_id)

        record = apply_update(entry.to_record(), update)

        stage = Stage(update.stage)
        setattr(entry, STATUS_FIELDS[stage], record.status_for(stage))
        if stage in NOTES_FIELDS:
            setattr(entry, NOTES_FIELDS[stage], getattr(record, NOTES_FIELDS[stage]))

        return entry

    def reset_stage(self, stage: Stage) -> int:
        """
        Set the stage status back to pending for every current stage candidate

        Irreversible. Notes and other stages are left as they are.
        """
        stage = Stage(stage)
        with self._session() as session:
            entries = session.query(Entry).all()
            updates = plan_reset([e.to_record() for e in entries], stage)
            reset_ids = {u.record_id for u in updates}

            status_field = STATUS_FIELDS[stage]
            for entry in entries:
                if entry.id in reset_ids:
                    setattr(entry, status_field, ScreeningStatus.PENDING)

            session.commit()

        logger.warning(f"🔄 Reset {stage.value} status of {len(reset_ids)} records to pending")
        return len(reset_ids)

    def update_abstract(self, record_id: str, abstract: str) -> Record:
        with self._session() as session:
            entry = session.get(Entry, record_id)
            if entry is None:
                raise RecordNotFoundError(record_id)
            entry.abstract = abstract
            session.commit()
            return entry.to_record()

    # ===== Deduplication =====

    def apply_duplicate_marks(self, records: Sequence[Record]) -> int:
        """
        Persist duplicate group markings in one transaction

        Review statuses are not touched, so earlier manual decisions survive
        a re-run.
        """
        marked = [r for r in records if r.is_duplicate and r.duplicate_group_id]
        if not marked:
            return 0

        with self._session() as session:
            try:
                for record in marked:
                    entry = session.get(Entry, record.id)
                    if entry is None:
                        raise RecordNotFoundError(record.id)
                    entry.duplicate_group_id = record.duplicate_group_id
                    entry.is_duplicate = True
                    entry.is_primary = bool(record.is_primary)
                session.commit()
            except Exception:
                session.rollback()
                raise

        logger.info(f"Marked {len(marked)} entries for deduplication review")
        return len(marked)

    def update_dedup_status(self, updates: Sequence[Dict]) -> UpdateReport:
        """
        Apply reviewer keep/remove decisions

        Each update: {'id', 'status', optional 'is_duplicate', optional 'is_primary'}.
        Any number of records per group may be kept.
        """
        report = UpdateReport()

        with self._session() as session:
            try:
                for data in updates:
                    record_id = str(data.get('id'))
                    try:
                        entry = session.get(Entry, record_id)
                        if entry is None:
                            raise RecordNotFoundError(record_id)
                        status = ScreeningStatus(data['status'])
                        entry.dedup_status = status
                        if data.get('is_duplicate') is not None:
                            entry.is_duplicate = bool(data['is_duplicate'])
                        if data.get('is_primary') is not None:
                            entry.is_primary = bool(data['is_primary'])
                        report.applied.append(record_id)
                    except (RecordNotFoundError, KeyError, ValueError) as e:
                        report.failed[record_id] = str(e)

                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"❌ Deduplication status update failed: {e}")
                return UpdateReport(
                    applied=[],
                    failed={str(d.get('id')): f"Transaction failed: {e}" for d in updates}
                )

        return report

    # ===== Settings =====

    def get_setting(self, key: str) -> Optional[str]:
        with self._session() as session:
            setting = session.get(Setting, key)
            return setting.value if setting else None

    def set_setting(self, key: str, value: Optional[str]) -> None:
        with self._session() as session:
            setting = session.get(Setting, key)
            if setting is None:
                session.add(Setting(key=key, value=value))
            else:
                setting.value = value
            session.commit()

    # ===== Maintenance =====

    def clear_records(self) -> int:
        """Delete every entry; settings (prompts, API keys) are kept"""
        with self._session() as session:
            count = session.query(Entry).delete()
            session.commit()
        logger.info(f"Entries table cleared ({count} rows)")
        return count
