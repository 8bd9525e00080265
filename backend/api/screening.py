"""
AI Screening API Endpoints

Handles screening prompts, Gemini API keys, and background batch runs with
progress tracking
"""

from fastapi import APIRouter, HTTPException, BackgroundTasks, Depends
from typing import List, Dict, Optional
from pydantic import BaseModel
import logging

from ..core.screener import BatchScreener
from ..core.screening_state import CLASSIFIABLE_STAGES, Stage, batch_candidates
from ..db.record_store import RecordStore
from ..services.credential_rotation import (
    ClassificationClient,
    RotationState,
    dump_credentials,
    load_credentials,
)
from ..tasks.task_manager import task_manager
from .dependencies import get_classification_client, get_record_store
from shared.config import (
    API_KEYS_KEY,
    DEFAULT_PROMPTS,
    PROMPT_KEY_TEMPLATE,
    ROTATION_STATE_KEY,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ===== Request/Response Models =====

class PromptRequest(BaseModel):
    prompt: str


class PromptResponse(BaseModel):
    stage: Stage
    prompt: str
    is_default: bool


class ApiKeysRequest(BaseModel):
    keys: List[str]


class ApiKeysResponse(BaseModel):
    count: int
    keys: List[str]  # masked


class StartBatchRequest(BaseModel):
    stage: Stage
    batch_size: Optional[int] = None


class BatchProgress(BaseModel):
    """Progress information for a batch run"""
    task_id: str
    status: str
    stage: str
    total_items: int
    processed_items: int
    progress_percent: float
    attempt_message: Optional[str] = None
    result: Optional[Dict] = None
    error: Optional[str] = None


def _require_classifiable(stage: Stage):
    if stage not in CLASSIFIABLE_STAGES:
        raise HTTPException(
            status_code=400,
            detail=f"Stage '{stage.value}' is not screened by AI"
        )


def mask_key(key: str) -> str:
    if len(key) <= 8:
        return '*' * len(key)
    return f"{key[:4]}...{key[-4:]}"


# ===== Prompts =====

@router.get("/prompts/{stage}", response_model=PromptResponse)
async def get_prompt(stage: Stage, store: RecordStore = Depends(get_record_store)):
    _require_classifiable(stage)
    stored = store.get_setting(PROMPT_KEY_TEMPLATE.format(stage=stage.value))
    return PromptResponse(
        stage=stage,
        prompt=stored or DEFAULT_PROMPTS[stage.value],
        is_default=not stored
    )


@router.put("/prompts/{stage}", response_model=PromptResponse)
async def save_prompt(stage: Stage, request: PromptRequest, store: RecordStore = Depends(get_record_store)):
    _require_classifiable(stage)
    if not request.prompt.strip():
        raise HTTPException(status_code=400, detail="Prompt must not be empty")

    store.set_setting(PROMPT_KEY_TEMPLATE.format(stage=stage.value), request.prompt)
    logger.info(f"💾 Saved {stage.value} screening prompt")
    return PromptResponse(stage=stage, prompt=request.prompt, is_default=False)


# ===== API keys =====

@router.get("/api-keys", response_model=ApiKeysResponse)
async def get_api_keys(store: RecordStore = Depends(get_record_store)):
    keys = load_credentials(store.get_setting(API_KEYS_KEY))
    return ApiKeysResponse(count=len(keys), keys=[mask_key(k) for k in keys])


@router.put("/api-keys", response_model=ApiKeysResponse)
async def save_api_keys(request: ApiKeysRequest, store: RecordStore = Depends(get_record_store)):
    """
    Replace the Gemini key set

    The rotation cursor starts again from the first key.
    """
    if task_manager.has_active_task():
        raise HTTPException(status_code=409, detail="A batch screening run is in progress")

    stored = dump_credentials(request.keys)
    keys = load_credentials(stored)

    store.set_setting(API_KEYS_KEY, stored)
    store.set_setting(ROTATION_STATE_KEY, RotationState(cursor=0, size=len(keys)).to_json())

    logger.info(f"🔑 Saved {len(keys)} Gemini API keys")
    return ApiKeysResponse(count=len(keys), keys=[mask_key(k) for k in keys])


# ===== Batch runs =====

@router.post("/run", response_model=Dict)
async def start_batch(
    request: StartBatchRequest,
    background_tasks: BackgroundTasks,
    store: RecordStore = Depends(get_record_store),
    client: ClassificationClient = Depends(get_classification_client)
):
    """
    Start AI batch screening of a stage queue (async)

    Returns task_id for polling progress
    """
    _require_classifiable(request.stage)

    if task_manager.has_active_task():
        raise HTTPException(status_code=409, detail="A batch screening run is already in progress")

    if request.batch_size is not None and request.batch_size < 1:
        raise HTTPException(status_code=400, detail="batch_size must be at least 1")

    candidates = batch_candidates(store.get_all(), request.stage)
    task_id = task_manager.create_task(total_items=len(candidates), stage=request.stage.value)

    background_tasks.add_task(
        _run_batch_task,
        task_id=task_id,
        stage=request.stage,
        batch_size=request.batch_size,
        store=store,
        client=client
    )

    logger.info(f"🚀 Created {request.stage.value} batch task {task_id} for {len(candidates)} entries")

    return {
        'task_id': task_id,
        'status': 'pending',
        'total_entries': len(candidates),
        'message': f'Batch screening started for {len(candidates)} entries'
    }


@router.get("/tasks", response_model=List[BatchProgress])
async def list_tasks():
    """All batch runs of this server process (most recent first)"""
    tasks = sorted(task_manager.list_tasks().values(), key=lambda t: t.created_at, reverse=True)
    return [BatchProgress(**t.to_dict()) for t in tasks]


@router.get("/tasks/{task_id}", response_model=BatchProgress)
async def get_batch_status(task_id: str):
    """Poll batch run progress"""
    task = task_manager.get_task(task_id)
    if not task:
        raise HTTPException(status_code=404, detail=f"Task {task_id} not found")
    return BatchProgress(**task.to_dict())


def _run_batch_task(
    task_id: str,
    stage: Stage,
    batch_size: Optional[int],
    store: RecordStore,
    client: ClassificationClient
):
    """
    Background task to run batch screening

    Args:
        task_id: Task ID
        stage: Stage to screen
        batch_size: Records per request
        store: Record store
        client: Classification client
    """
    try:
        task_manager.start_task(task_id)

        screener = BatchScreener(client=client, store=store, batch_size=batch_size)
        records = store.get_all()

        def on_progress(processed: int, total: int):
            task_manager.update_progress(task_id, processed, total)

        def on_attempt(position: int, count: int):
            task_manager.set_attempt_message(task_id, position, count)

        result = screener.run_batch(
            records,
            stage,
            progress_callback=on_progress,
            attempt_callback=on_attempt
        )

        logger.info(screener.generate_summary_report(result))

        task_manager.complete_task(task_id, {
            'total_candidates': result.total_candidates,
            'processed': result.processed,
            'succeeded': result.succeeded,
            'errored': result.errored,
            'chunk_errors': result.chunk_errors,
            'persistence_failures': result.persistence_failures,
            'decisions': screener.export_to_dataframe(result).to_dict(orient='records'),
        })

    except Exception as e:
        logger.error(f"❌ Batch task {task_id} failed: {e}")
        task_manager.fail_task(task_id, str(e))
