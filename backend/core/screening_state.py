"""
Screening State Machine - Per-Stage Status Tracking

Every record carries three independent status tracks:
1. Deduplication - keep/remove decision for members of duplicate groups
2. Title screening - all records not removed during deduplication
3. Abstract screening - records included at title screening

Each track moves pending -> {included, excluded, maybe}. 'maybe' can be
revisited by a reviewer or by the AI classifier; 'in_progress' is treated
as pending when deciding who sees a record.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional
import logging

logger = logging.getLogger(__name__)


class ScreeningStatus(str, Enum):
    """Status of a record within one stage"""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    INCLUDED = "included"
    EXCLUDED = "excluded"
    MAYBE = "maybe"


class Stage(str, Enum):
    """Screening stage"""
    DEDUPLICATION = "deduplication"
    TITLE = "title"
    ABSTRACT = "abstract"


class Actor(str, Enum):
    """Who is changing a status"""
    MANUAL = "manual"
    CLASSIFIER = "classifier"
    RESET = "reset"


# Statuses the classifier is allowed to pick up
UNDECIDED_STATUSES = frozenset({
    ScreeningStatus.PENDING,
    ScreeningStatus.IN_PROGRESS,
    ScreeningStatus.MAYBE,
})

DECIDED_STATUSES = frozenset({
    ScreeningStatus.INCLUDED,
    ScreeningStatus.EXCLUDED,
    ScreeningStatus.MAYBE,
})

# Stages the batch classifier can run on
CLASSIFIABLE_STAGES = (Stage.TITLE, Stage.ABSTRACT)

STATUS_FIELDS = {
    Stage.DEDUPLICATION: 'dedup_status',
    Stage.TITLE: 'title_status',
    Stage.ABSTRACT: 'abstract_status',
}

NOTES_FIELDS = {
    Stage.TITLE: 'title_notes',
    Stage.ABSTRACT: 'abstract_notes',
}


class InvalidTransitionError(ValueError):
    """Raised when a status change is not allowed for the acting party"""


@dataclass
class Record:
    """Bibliographic record as seen by the screening core"""
    id: str
    title: Optional[str] = None
    abstract: Optional[str] = None
    doi: Optional[str] = None
    entry_type: Optional[str] = None
    author: Optional[str] = None
    year: Optional[str] = None
    journal: Optional[str] = None
    url: Optional[str] = None
    keywords: Optional[str] = None
    source: Optional[str] = None
    # Stage statuses
    dedup_status: ScreeningStatus = ScreeningStatus.PENDING
    title_status: ScreeningStatus = ScreeningStatus.PENDING
    abstract_status: ScreeningStatus = ScreeningStatus.PENDING
    title_notes: Optional[str] = None
    abstract_notes: Optional[str] = None
    # Duplicate bookkeeping
    is_duplicate: bool = False
    duplicate_group_id: Optional[str] = None
    is_primary: bool = False
    # Opaque pass-through fields
    extra: Dict = field(default_factory=dict)

    def status_for(self, stage: Stage) -> ScreeningStatus:
        return ScreeningStatus(getattr(self, STATUS_FIELDS[Stage(stage)]))

    def text_for(self, stage: Stage) -> str:
        """Text sent to the classifier: title, or abstract falling back to title"""
        if Stage(stage) == Stage.ABSTRACT:
            return self.abstract or self.title or ''
        return self.title or ''


@dataclass(frozen=True)
class StatusUpdate:
    """One pending status change for a record"""
    record_id: str
    stage: Stage
    status: ScreeningStatus
    notes: Optional[str] = None
    actor: Actor = Actor.MANUAL


# ===== Eligibility =====

def is_stage_candidate(record: Record, stage: Stage) -> bool:
    """
    Whether a record is visible at a stage

    Title stage: everything not removed during deduplication.
    Abstract stage: exactly the records included at title stage.
    Deduplication stage: members of a duplicate group.
    """
    stage = Stage(stage)
    if stage == Stage.TITLE:
        return record.dedup_status != ScreeningStatus.EXCLUDED
    if stage == Stage.ABSTRACT:
        return record.title_status == ScreeningStatus.INCLUDED
    return bool(record.is_duplicate)


def stage_candidates(records: Iterable[Record], stage: Stage) -> List[Record]:
    return [r for r in records if is_stage_candidate(r, stage)]


def batch_candidates(records: Iterable[Record], stage: Stage) -> List[Record]:
    """
    Records the classifier may pick up at a stage

    Stage candidates still pending (or in progress) or marked maybe. Included
    and excluded records are never reclassified automatically.
    """
    stage = Stage(stage)
    if stage not in CLASSIFIABLE_STAGES:
        raise ValueError(f"Stage '{stage.value}' cannot be batch classified")

    return [
        r for r in records
        if is_stage_candidate(r, stage) and r.status_for(stage) in UNDECIDED_STATUSES
    ]


def included_records(records: Iterable[Record]) -> List[Record]:
    """Records included at both title and abstract screening"""
    return [
        r for r in records
        if r.title_status == ScreeningStatus.INCLUDED
        and r.abstract_status == ScreeningStatus.INCLUDED
    ]


# ===== Transitions =====

def can_transition(current: ScreeningStatus, target: ScreeningStatus, actor: Actor) -> bool:
    """
    Check whether an actor may move a stage status from current to target

    - reset: anything back to pending
    - classifier: pending/in_progress/maybe to included/excluded/maybe
    - manual: any status to a decided status (or in_progress)
    """
    current = ScreeningStatus(current)
    target = ScreeningStatus(target)
    actor = Actor(actor)

    if actor == Actor.RESET:
        return target == ScreeningStatus.PENDING
    if actor == Actor.CLASSIFIER:
        return current in UNDECIDED_STATUSES and target in DECIDED_STATUSES
    return target in DECIDED_STATUSES or target == ScreeningStatus.IN_PROGRESS


def apply_update(record: Record, update: StatusUpdate) -> Record:
    """
    Apply a status update to a record in place

    Raises:
        InvalidTransitionError: if the actor may not make this change
    """
    stage = Stage(update.stage)
    current = record.status_for(stage)

    if not can_transition(current, update.status, update.actor):
        raise InvalidTransitionError(
            f"{update.actor.value} cannot move {stage.value} status of {record.id} "
            f"from {current.value} to {ScreeningStatus(update.status).value}"
        )

    setattr(record, STATUS_FIELDS[stage], ScreeningStatus(update.status))
    if update.notes is not None and stage in NOTES_FIELDS:
        setattr(record, NOTES_FIELDS[stage], update.notes)

    return record


def plan_reset(records: Iterable[Record], stage: Stage) -> List[StatusUpdate]:
    """
    Build the updates that reset a stage

    Only records eligible for the stage right now are touched; notes are kept.
    """
    stage = Stage(stage)
    updates = [
        StatusUpdate(record_id=r.id, stage=stage, status=ScreeningStatus.PENDING, actor=Actor.RESET)
        for r in stage_candidates(records, stage)
    ]
    logger.info(f"Planned reset of {len(updates)} records at {stage.value} stage")
    return updates


def stage_statistics(records: Iterable[Record], stage: Stage) -> Dict[str, int]:
    """Status counts over the current candidates of a stage"""
    stage = Stage(stage)
    counts = {status.value: 0 for status in ScreeningStatus}
    candidates = stage_candidates(records, stage)
    for record in candidates:
        counts[record.status_for(stage).value] += 1
    counts['total'] = len(candidates)
    return counts
