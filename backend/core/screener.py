"""
Batch Screener - AI Batch Classification of Screening Queues

Runs the title or abstract queue through the classifier in fixed-size
chunks, one request per chunk, strictly one after another so the service's
rate limits and the shared key-rotation cursor are respected.

Failure handling:
- A failed chunk (quota exhausted on every key, or any other request error)
  produces error decisions for its records; later chunks still run
- Records the response does not cover get error decisions
- Error decisions are never persisted; records stay pending/maybe
- All other decisions are written in one multi-record update at the end;
  per-record persistence failures are reported alongside the decision
"""

import pandas as pd
from typing import Callable, Dict, List, Optional, Sequence
from dataclasses import dataclass, field
import json
import logging
import time

from .decision_parser import (
    Decision,
    decision_to_status,
    parse,
    split_batch_response,
)
from .screening_state import (
    Actor,
    Record,
    Stage,
    StatusUpdate,
    batch_candidates,
)
from backend.db.record_store import RecordStore, UpdateReport
from backend.services.credential_rotation import (
    ClassificationClient,
    ClassificationError,
    RotationState,
    load_credentials,
)
from shared.config import (
    API_KEYS_KEY,
    DEFAULT_PROMPTS,
    ENTRIES_PLACEHOLDER,
    PROMPT_KEY_TEMPLATE,
    ROTATION_STATE_KEY,
    get_settings,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]
AttemptCallback = Callable[[int, int], None]


@dataclass(frozen=True)
class BatchDecision:
    """Classification outcome for one record"""
    record_id: str
    decision: Decision
    confidence: float
    rationale: str
    error: Optional[str] = None


@dataclass
class BatchRunResult:
    """Complete batch run result"""
    stage: Stage
    total_candidates: int = 0
    processed: int = 0
    decisions: List[BatchDecision] = field(default_factory=list)
    chunk_errors: List[str] = field(default_factory=list)
    persistence_failures: Dict[str, str] = field(default_factory=dict)  # record id -> reason
    chunks_sent: int = 0
    succeeded: int = 0
    errored: int = 0
    total_time: float = 0.0
    rotation_state: RotationState = field(default_factory=RotationState)


def error_decision(record_id: str, message: str) -> BatchDecision:
    return BatchDecision(
        record_id=record_id,
        decision=Decision.MAYBE,
        confidence=0.0,
        rationale='',
        error=message
    )


def _guarded(callback: Optional[Callable[[int, int], None]]) -> Callable[[int, int], None]:
    """Wrap a progress callback so its failures are logged instead of aborting the run"""
    def call(done: int, total: int):
        if callback is None:
            return
        try:
            callback(done, total)
        except Exception as e:
            logger.warning(f"⚠️ Progress callback failed: {e}")
    return call


def format_entry_line(record: Record, stage: Stage) -> str:
    """One prompt line per record: 'id: <id>; <stage>: <text>'"""
    text = ' '.join(record.text_for(stage).split())
    return f"id: {record.id}; {Stage(stage).value}: {text}"


def build_prompt(template: str, records: Sequence[Record], stage: Stage) -> str:
    """
    Inject the chunk's entry lines into the stage template

    The lines replace the {entries} placeholder, or are appended after a
    'List of entries:' header when the template has none.
    """
    entry_list = '\n'.join(format_entry_line(r, stage) for r in records)
    if ENTRIES_PLACEHOLDER in template:
        return template.replace(ENTRIES_PLACEHOLDER, entry_list)
    return f"{template}\n\nList of entries:\n\n{entry_list}"


class BatchScreener:
    """
    Sequential batch screener

    Features:
    - Fixed-size chunking, one classifier request per chunk
    - Chunk-level failure isolation
    - Single atomic status write per run
    - Chunk-granular progress callbacks
    """

    def __init__(
        self,
        client: ClassificationClient,
        store: RecordStore,
        batch_size: Optional[int] = None,
        default_confidence: Optional[float] = None
    ):
        """
        Initialize screener

        Args:
            client: Classification client (rotates API keys)
            store: Record store for prompts, keys, rotation state and results
            batch_size: Records per request (default from settings)
            default_confidence: Confidence used for heuristic parses
        """
        settings = get_settings()
        self.client = client
        self.store = store
        self.batch_size = batch_size or settings.batch_size
        self.default_confidence = (
            settings.heuristic_confidence if default_confidence is None else default_confidence
        )

    def get_prompt_template(self, stage: Stage) -> str:
        stage = Stage(stage)
        stored = self.store.get_setting(PROMPT_KEY_TEMPLATE.format(stage=stage.value))
        return stored or DEFAULT_PROMPTS[stage.value]

    def run_batch(
        self,
        records: Sequence[Record],
        stage: Stage,
        batch_size: Optional[int] = None,
        progress_callback: Optional[ProgressCallback] = None,
        attempt_callback: Optional[AttemptCallback] = None
    ) -> BatchRunResult:
        """
        Classify every pending/maybe candidate of a stage and persist results

        Args:
            records: Candidate records (filtered again for eligibility)
            stage: Stage.TITLE or Stage.ABSTRACT
            batch_size: Records per request (default: screener batch size)
            progress_callback: Called as (processed, total) after each chunk
            attempt_callback: Called as (key position, key count) before each request

        Returns:
            BatchRunResult with decisions and succeeded/errored counts
        """
        start_time = time.time()
        stage = Stage(stage)
        batch_size = max(1, batch_size or self.batch_size)

        candidates = batch_candidates(records, stage)
        result = BatchRunResult(stage=stage, total_candidates=len(candidates))

        if not candidates:
            logger.info(f"No pending {stage.value} screening entries to process")
            return result

        try:
            template = self.get_prompt_template(stage)
            credentials = load_credentials(self.store.get_setting(API_KEYS_KEY))
            state = RotationState.from_json(self.store.get_setting(ROTATION_STATE_KEY))
        except Exception as e:
            logger.error(f"❌ Could not load screening settings: {e}")
            result.chunk_errors.append(f"Could not load screening settings: {e}")
            result.decisions = [error_decision(r.id, str(e)) for r in candidates]
            result.errored = len(candidates)
            return result

        start_state = state

        logger.info(
            f"Starting {stage.value} batch screening of {len(candidates)} entries "
            f"in chunks of {batch_size} with {len(credentials)} API keys"
        )

        for offset in range(0, len(candidates), batch_size):
            chunk = candidates[offset:offset + batch_size]
            chunk_number = offset // batch_size + 1

            prompt = build_prompt(template, chunk, stage)
            try:
                result.chunks_sent += 1
                raw_text, state = self.client.classify(prompt, credentials, state, _guarded(attempt_callback))
                result.decisions.extend(self._decisions_for_chunk(chunk, raw_text))
            except ClassificationError as e:
                state = e.rotation_state
                message = str(e)
                logger.error(f"❌ Chunk {chunk_number} failed: {message}")
                result.chunk_errors.append(f"Chunk {chunk_number}: {message}")
                result.decisions.extend(error_decision(r.id, message) for r in chunk)
            except Exception as e:
                logger.error(f"❌ Chunk {chunk_number} failed unexpectedly: {e}")
                result.chunk_errors.append(f"Chunk {chunk_number}: {e}")
                result.decisions.extend(error_decision(r.id, str(e)) for r in chunk)

            result.processed += len(chunk)
            _guarded(progress_callback)(result.processed, result.total_candidates)

        result.rotation_state = state
        self._persist(result, state if state != start_state else None)

        result.total_time = time.time() - start_time
        logger.info(
            f"Batch screening complete: {result.succeeded} succeeded, {result.errored} errored "
            f"({result.chunks_sent} chunks in {result.total_time:.1f}s)"
        )

        return result

    def _decisions_for_chunk(self, chunk: Sequence[Record], raw_text: str) -> List[BatchDecision]:
        """
        Match response items to the chunk's records

        A single-record chunk may be answered with one bare object or even
        free text; larger chunks need a JSON array of items keyed by id.
        """
        items = split_batch_response(raw_text)

        if items is None:
            if len(chunk) == 1:
                parsed = parse(raw_text, self.default_confidence)
                return [BatchDecision(chunk[0].id, parsed.decision, parsed.confidence, parsed.rationale)]

            logger.warning("Batch response is not a JSON array of decisions")
            return [error_decision(r.id, "Response could not be split into per-entry decisions") for r in chunk]

        by_id: Dict[str, Dict] = {}
        for item in items:
            if item.get('id') is not None:
                by_id.setdefault(str(item['id']).strip(), item)

        if not by_id and len(items) == 1 and len(chunk) == 1:
            by_id[chunk[0].id] = items[0]

        decisions = []
        for record in chunk:
            item = by_id.get(record.id)
            if item is None:
                decisions.append(error_decision(record.id, "No decision returned for this entry"))
                continue

            parsed = parse(json.dumps(item, ensure_ascii=False), self.default_confidence)

            decisions.append(BatchDecision(record.id, parsed.decision, parsed.confidence, parsed.rationale))

        return decisions

    def _persist(self, result: BatchRunResult, rotation_state: Optional[RotationState] = None):
        """Save the rotation cursor and write all non-error decisions in one multi-record update"""
        if rotation_state is not None:
            try:
                self.store.set_setting(ROTATION_STATE_KEY, rotation_state.to_json())
            except Exception as e:
                logger.warning(f"⚠️ Could not save API key rotation state: {e}")

        valid = [d for d in result.decisions if d.error is None]
        errors = len(result.decisions) - len(valid)

        report = UpdateReport()
        if valid:
            updates = [
                StatusUpdate(
                    record_id=d.record_id,
                    stage=result.stage,
                    status=decision_to_status(d.decision),
                    notes=d.rationale,
                    actor=Actor.CLASSIFIER
                )
                for d in valid
            ]
            try:
                report = self.store.update_statuses(updates)
            except Exception as e:
                logger.error(f"❌ Saving batch decisions failed: {e}")
                report = UpdateReport(failed={u.record_id: f"Save failed: {e}" for u in updates})

        result.persistence_failures = dict(report.failed)
        result.succeeded = report.success_count
        result.errored = errors + report.error_count

    def export_to_dataframe(self, result: BatchRunResult) -> pd.DataFrame:
        """
        Export batch decisions to pandas DataFrame

        Args:
            result: BatchRunResult

        Returns:
            DataFrame with one row per decision
        """
        data = []
        for decision in result.decisions:
            data.append({
                'id': decision.record_id,
                'stage': result.stage.value,
                'ai_decision': decision.decision.value,
                'ai_confidence': decision.confidence,
                'ai_reasoning': decision.rationale,
                'error': decision.error or result.persistence_failures.get(decision.record_id),
                'persisted': decision.error is None and decision.record_id not in result.persistence_failures
            })

        return pd.DataFrame(
            data,
            columns=['id', 'stage', 'ai_decision', 'ai_confidence', 'ai_reasoning', 'error', 'persisted']
        )

    def generate_summary_report(self, result: BatchRunResult) -> str:
        """
        Generate human-readable summary report

        Args:
            result: BatchRunResult

        Returns:
            Formatted report string
        """
        counts = {d: 0 for d in Decision}
        for decision in result.decisions:
            if decision.error is None:
                counts[decision.decision] += 1

        report = f"""
=== AI Batch Screening Summary ({result.stage.value}) ===

Candidates: {result.total_candidates}
Processed: {result.processed}
Chunks sent: {result.chunks_sent}

Decisions:
   - Include: {counts[Decision.INCLUDE]}
   - Exclude: {counts[Decision.EXCLUDE]}
   - Maybe: {counts[Decision.MAYBE]}

Saved: {result.succeeded}
Errors: {result.errored}
Total time: {result.total_time:.1f}s
"""
        if result.chunk_errors:
            report += "\nFailed chunks:\n"
            report += '\n'.join(f"   - {e}" for e in result.chunk_errors)
            report += '\n'

        return report
