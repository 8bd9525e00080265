from datetime import datetime, timedelta

import pytest

from backend.tasks.task_manager import TaskManager, TaskStatus


def test_task_lifecycle() -> None:
    manager = TaskManager()
    task_id = manager.create_task(total_items=10, stage="title")

    assert manager.has_active_task()

    manager.start_task(task_id)
    manager.set_attempt_message(task_id, 2, 3)
    manager.update_progress(task_id, 5)

    task = manager.get_task(task_id)
    assert task.status == TaskStatus.RUNNING
    assert task.progress_percent == 50.0
    assert task.attempt_message == "Attempting with Key 2/3"

    manager.complete_task(task_id, {"succeeded": 10})

    assert not manager.has_active_task()
    assert manager.get_task(task_id).to_dict()["result"] == {"succeeded": 10}


def test_failed_task_records_error() -> None:
    manager = TaskManager()
    task_id = manager.create_task(total_items=0, stage="abstract")
    manager.fail_task(task_id, "boom")

    task = manager.get_task(task_id)
    assert task.status == TaskStatus.FAILED
    assert task.error == "boom"
    assert not manager.has_active_task()


def test_progress_with_zero_items() -> None:
    manager = TaskManager()
    task_id = manager.create_task(total_items=0, stage="title")
    manager.update_progress(task_id, 0)

    assert manager.get_task(task_id).progress_percent == 0


def test_unknown_task() -> None:
    manager = TaskManager()

    assert manager.get_task("nope") is None
    with pytest.raises(ValueError):
        manager.start_task("nope")


def test_cleanup_forgets_old_finished_runs_only() -> None:
    manager = TaskManager(completed_task_retention_days=7, failed_task_retention_hours=24)

    completed = manager.create_task(total_items=1, stage="title")
    manager.complete_task(completed, {})
    failed = manager.create_task(total_items=1, stage="title")
    manager.fail_task(failed, "boom")
    running = manager.create_task(total_items=1, stage="abstract")
    manager.start_task(running)

    now = datetime.now()
    assert manager.cleanup_old_tasks(now + timedelta(hours=25)) == 1
    assert manager.get_task(failed) is None
    assert manager.get_task(completed) is not None

    assert manager.cleanup_old_tasks(now + timedelta(days=8)) == 1
    assert set(manager.list_tasks()) == {running}
