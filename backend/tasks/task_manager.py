"""
Task Manager - Batch Screening Run Tracking

Keeps the state of background screening runs in memory:
- Status tracking
- Chunk-granular progress updates
- Current key attempt message ("Attempting with Key k/N")
- Result summary or error

Only one run may be active at a time; the key-rotation cursor is shared
and runs must not interleave.
"""

import uuid
from typing import Dict, Optional, Any
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
import threading
import logging

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    """Task status enumeration"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TaskInfo:
    """Information about a batch run"""
    task_id: str
    status: TaskStatus
    created_at: str
    stage: str = ""
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    # Progress
    total_items: int = 0
    processed_items: int = 0
    progress_percent: float = 0.0
    attempt_message: Optional[str] = None
    # Results
    result: Optional[Any] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'task_id': self.task_id,
            'status': self.status.value,
            'stage': self.stage,
            'created_at': self.created_at,
            'started_at': self.started_at,
            'completed_at': self.completed_at,
            'total_items': self.total_items,
            'processed_items': self.processed_items,
            'progress_percent': round(self.progress_percent, 1),
            'attempt_message': self.attempt_message,
            'result': self.result,
            'error': self.error,
        }


class TaskManager:
    """
    Thread-safe registry of batch screening runs

    Background runs update their entry from a worker thread while API
    requests read it.
    """

    def __init__(self, completed_task_retention_days: int = 7, failed_task_retention_hours: int = 24):
        """
        Args:
            completed_task_retention_days: Forget completed runs older than this (days)
            failed_task_retention_hours: Forget failed runs older than this (hours)
        """
        self._tasks: Dict[str, TaskInfo] = {}
        self._lock = threading.Lock()
        self.completed_task_retention_days = completed_task_retention_days
        self.failed_task_retention_hours = failed_task_retention_hours

    def create_task(self, total_items: int, stage: str) -> str:
        """
        Create a new task

        Args:
            total_items: Number of candidate records
            stage: Screening stage of the run

        Returns:
            task_id
        """
        task_id = str(uuid.uuid4())
        task_info = TaskInfo(
            task_id=task_id,
            status=TaskStatus.PENDING,
            created_at=datetime.now().isoformat(),
            stage=stage,
            total_items=total_items
        )

        with self._lock:
            self._cleanup_locked(datetime.now())
            self._tasks[task_id] = task_info

        logger.info(f"Created task {task_id}: {stage} screening of {total_items} items")
        return task_id

    def start_task(self, task_id: str):
        with self._lock:
            task = self._require(task_id)
            task.status = TaskStatus.RUNNING
            task.started_at = datetime.now().isoformat()

        logger.info(f"Started task {task_id}")

    def update_progress(self, task_id: str, processed_items: int, total_items: Optional[int] = None):
        """
        Update task progress

        Args:
            task_id: Task ID
            processed_items: Records processed so far
            total_items: Candidate count, when it changed since creation
        """
        with self._lock:
            task = self._require(task_id)
            if total_items is not None:
                task.total_items = total_items
            task.processed_items = processed_items
            task.progress_percent = (processed_items / task.total_items * 100) if task.total_items > 0 else 0

    def set_attempt_message(self, task_id: str, key_position: int, key_count: int):
        with self._lock:
            task = self._require(task_id)
            task.attempt_message = f"Attempting with Key {key_position}/{key_count}"

    def complete_task(self, task_id: str, result: Any):
        """
        Mark task as completed

        Args:
            task_id: Task ID
            result: Final result summary
        """
        with self._lock:
            task = self._require(task_id)
            task.status = TaskStatus.COMPLETED
            task.completed_at = datetime.now().isoformat()
            task.result = result
            task.progress_percent = 100.0

        logger.info(f"Completed task {task_id}")

    def fail_task(self, task_id: str, error: str):
        with self._lock:
            task = self._require(task_id)
            task.status = TaskStatus.FAILED
            task.completed_at = datetime.now().isoformat()
            task.error = error

        logger.error(f"Failed task {task_id}: {error}")

    def get_task(self, task_id: str) -> Optional[TaskInfo]:
        with self._lock:
            return self._tasks.get(task_id)

    def list_tasks(self) -> Dict[str, TaskInfo]:
        with self._lock:
            return dict(self._tasks)

    def has_active_task(self) -> bool:
        """True while any run is pending or running"""
        with self._lock:
            return any(
                t.status in (TaskStatus.PENDING, TaskStatus.RUNNING)
                for t in self._tasks.values()
            )

    def cleanup_old_tasks(self, now: Optional[datetime] = None) -> int:
        """
        Forget finished runs past their retention period

        Pending and running tasks are never removed.

        Returns:
            Number of tasks removed
        """
        with self._lock:
            removed = self._cleanup_locked(now or datetime.now())

        if removed:
            logger.info(f"🧹 Removed {removed} old batch tasks")
        return removed

    def _cleanup_locked(self, now: datetime) -> int:
        cutoffs = {
            TaskStatus.COMPLETED: now - timedelta(days=self.completed_task_retention_days),
            TaskStatus.FAILED: now - timedelta(hours=self.failed_task_retention_hours),
        }

        expired = [
            task_id for task_id, task in self._tasks.items()
            if task.status in cutoffs
            and task.completed_at is not None
            and datetime.fromisoformat(task.completed_at) < cutoffs[task.status]
        ]
        for task_id in expired:
            del self._tasks[task_id]
        return len(expired)

    def _require(self, task_id: str) -> TaskInfo:
        if task_id not in self._tasks:
            raise ValueError(f"Task {task_id} not found")
        return self._tasks[task_id]


# Global task manager instance
task_manager = TaskManager()
