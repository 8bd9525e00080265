"""
Records API Endpoints

Handles import of parsed entries, screening queues, manual screening
decisions, stage resets and duplicate review
"""

from fastapi import APIRouter, HTTPException, Depends
from typing import List, Dict, Optional
from pydantic import BaseModel, Field
import logging

from ..core.deduplicator import Deduplicator
from ..core.screening_state import (
    InvalidTransitionError,
    ScreeningStatus,
    Stage,
    included_records,
    stage_candidates,
)
from ..db.record_store import (
    IdentifierCollisionError,
    RecordNotFoundError,
    RecordStore,
)
from .dependencies import get_record_store, record_to_dict
from shared.config import get_settings

logger = logging.getLogger(__name__)

router = APIRouter()


# ===== Request/Response Models =====

class ImportRequest(BaseModel):
    """Already-parsed entries (e.g. BibTeX fields as a dict per entry)"""
    entries: List[Dict]
    source: str = "import"


class ImportResponse(BaseModel):
    imported: int
    ids: List[str]
    message: str


class ScreeningUpdateRequest(BaseModel):
    stage: Stage
    status: ScreeningStatus
    notes: Optional[str] = None


class AbstractUpdateRequest(BaseModel):
    abstract: str


class DedupStatusUpdate(BaseModel):
    id: str
    status: ScreeningStatus
    is_duplicate: Optional[bool] = None
    is_primary: Optional[bool] = None


class DedupUpdateRequest(BaseModel):
    updates: List[DedupStatusUpdate] = Field(default_factory=list)


class DeduplicationResponse(BaseModel):
    total_records: int
    duplicate_groups: int
    duplicates_marked: int
    doi_matches: int
    title_matches: int
    report: str


# ===== Records =====

@router.post("/import", response_model=ImportResponse)
async def import_entries(request: ImportRequest, store: RecordStore = Depends(get_record_store)):
    """
    Store already-parsed entries

    Conflicting identifiers get <id>_2, <id>_3, ... suffixes.
    """
    logger.info(f"📤 Importing {len(request.entries)} entries from {request.source}")

    try:
        ids = store.save_entries(request.entries, request.source)
    except IdentifierCollisionError as e:
        raise HTTPException(status_code=409, detail=str(e))

    logger.info(f"✅ Imported {len(ids)} entries")
    return ImportResponse(
        imported=len(ids),
        ids=ids,
        message=f"Successfully imported {len(ids)} entries"
    )


@router.get("", response_model=List[Dict])
async def list_records(store: RecordStore = Depends(get_record_store)):
    return [record_to_dict(r) for r in store.get_all()]


@router.get("/stats")
async def get_stats(store: RecordStore = Depends(get_record_store)):
    """Status counts per stage"""
    return store.stats()


@router.get("/included", response_model=List[Dict])
async def get_included(store: RecordStore = Depends(get_record_store)):
    """Included literature: records included at abstract screening"""
    return [record_to_dict(r) for r in included_records(store.get_all())]


@router.get("/stage/{stage}", response_model=List[Dict])
async def get_stage_queue(stage: Stage, store: RecordStore = Depends(get_record_store)):
    """
    Records belonging to a stage's screening queue

    - deduplication: records marked as duplicates
    - title: everything not removed as a duplicate
    - abstract: records included at title screening
    """
    return [record_to_dict(r) for r in stage_candidates(store.get_all(), stage)]


@router.put("/{record_id}/screening", response_model=Dict)
async def update_screening(
    record_id: str,
    request: ScreeningUpdateRequest,
    store: RecordStore = Depends(get_record_store)
):
    """Manual screening decision for one record"""
    try:
        record = store.update_screening(record_id, request.stage, request.status, request.notes)
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidTransitionError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(f"✏️  {record_id}: {request.stage.value} -> {request.status.value}")
    return record_to_dict(record)


@router.put("/{record_id}/abstract", response_model=Dict)
async def update_abstract(
    record_id: str,
    request: AbstractUpdateRequest,
    store: RecordStore = Depends(get_record_store)
):
    try:
        record = store.update_abstract(record_id, request.abstract)
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return record_to_dict(record)


@router.post("/reset/{stage}")
async def reset_stage(stage: Stage, store: RecordStore = Depends(get_record_store)):
    """
    Set a stage back to pending for all of its candidates

    WARNING: earlier decisions for the stage are lost.
    """
    count = store.reset_stage(stage)
    return {
        "message": f"Reset {count} records to pending for {stage.value} screening",
        "reset_count": count
    }


@router.delete("/all")
async def clear_records(store: RecordStore = Depends(get_record_store)):
    """
    Delete ALL records

    Prompts and API keys are kept.
    """
    count = store.clear_records()
    logger.info(f"🗑️  Deleted {count} records")
    return {"message": f"Deleted {count} records successfully", "deleted": count}


# ===== Deduplication =====

@router.post("/deduplication/run", response_model=DeduplicationResponse)
async def run_deduplication(store: RecordStore = Depends(get_record_store)):
    """
    Group records sharing a DOI and mark them for review

    Earlier keep/remove decisions are left as they are.
    """
    settings = get_settings()
    records = store.get_all()

    deduplicator = Deduplicator(
        use_title_similarity=settings.use_title_similarity,
        title_threshold=settings.title_similarity_threshold
    )
    result = deduplicator.find_duplicates(records)
    marked = store.apply_duplicate_marks(result.grouped_records)
    report = deduplicator.generate_report(result)
    logger.info(report)

    logger.info(f"✅ Deduplication complete: {result.group_count} groups, {marked} records marked")
    return DeduplicationResponse(
        total_records=len(records),
        duplicate_groups=result.group_count,
        duplicates_marked=marked,
        doi_matches=result.doi_matches,
        title_matches=result.title_matches,
        report=report
    )


@router.get("/deduplication/review")
async def get_duplicate_groups(
    page: int = 1,
    page_size: int = 50,
    store: RecordStore = Depends(get_record_store)
):
    """Duplicate groups for manual review, paginated by group"""
    if page < 1 or page_size < 1:
        raise HTTPException(status_code=400, detail="page and page_size must be positive")

    data = store.get_duplicate_groups(page=page, page_size=page_size)
    return {
        'groups': {
            gid: [record_to_dict(r) for r in members]
            for gid, members in data['groups'].items()
        },
        'total_groups': data['total_groups'],
        'page': page,
        'page_size': page_size
    }


@router.put("/deduplication/review")
async def update_duplicate_review(
    request: DedupUpdateRequest,
    store: RecordStore = Depends(get_record_store)
):
    """Apply keep (included) / remove (excluded) decisions for duplicates"""
    report = store.update_dedup_status([u.model_dump() for u in request.updates])
    return {
        'updated': report.success_count,
        'failed': report.failed
    }
