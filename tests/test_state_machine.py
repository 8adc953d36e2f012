"""Tests for task status transitions."""

from datetime import datetime

import pytest

from conftest import make_task
from flashpanel.core.errors import InvalidTransitionError, TaskNotFoundError
from flashpanel.models.task import TaskStatus
from flashpanel.services.state_machine import (
    ALLOWED_TRANSITIONS,
    apply_transition,
    can_transition,
)

S = TaskStatus


class TestTransitionTable:
    @pytest.mark.parametrize("current,target", [
        (S.PENDING, S.RUNNING),
        (S.PENDING, S.CANCELLED),
        (S.PENDING, S.FAILED),
        (S.RUNNING, S.PAUSED),
        (S.RUNNING, S.SUCCESS),
        (S.RUNNING, S.FAILED),
        (S.RUNNING, S.CANCELLED),
        (S.PAUSED, S.RUNNING),
        (S.PAUSED, S.CANCELLED),
    ])
    def test_allowed(self, current, target):
        assert can_transition(current, target)

    @pytest.mark.parametrize("current,target", [
        (S.PENDING, S.PAUSED),
        (S.PENDING, S.SUCCESS),
        (S.PAUSED, S.SUCCESS),
        (S.PAUSED, S.PAUSED),
        (S.RUNNING, S.RUNNING),
        (S.RUNNING, S.PENDING),
    ])
    def test_rejected(self, current, target):
        assert not can_transition(current, target)

    @pytest.mark.parametrize("terminal", [S.SUCCESS, S.FAILED, S.CANCELLED])
    def test_terminal_statuses_have_no_exits(self, terminal):
        assert ALLOWED_TRANSITIONS[terminal] == frozenset()
        assert terminal.is_terminal


class TestApplyTransition:
    def test_does_not_mutate_input(self):
        task = make_task(status=S.RUNNING, logs=["[2024-01-15 10:00:00] 任务已创建"])

        updated = apply_transition(task, S.PAUSED)

        assert task.status == S.RUNNING
        assert len(task.logs) == 1
        assert updated.status == S.PAUSED
        assert len(updated.logs) == 2

    def test_appends_exactly_one_log_line(self):
        now = datetime(2024, 1, 15, 10, 30, 0)
        task = make_task(status=S.RUNNING)

        updated = apply_transition(task, S.PAUSED, now=now)

        assert updated.logs == ["[2024-01-15 10:30:00] 任务已暂停"]

    def test_pause_and_resume_flags(self):
        paused = apply_transition(make_task(status=S.RUNNING), S.PAUSED)
        assert paused.can_resume is True
        assert paused.can_cancel is False
        assert paused.end_time is None

        resumed = apply_transition(paused, S.RUNNING)
        assert resumed.can_resume is False
        assert resumed.can_cancel is True
        assert resumed.logs[-1].endswith("任务已恢复")

    def test_first_start_logs_started(self):
        started = apply_transition(make_task(status=S.PENDING), S.RUNNING)
        assert started.logs[-1].endswith("任务已开始")

    @pytest.mark.parametrize("terminal,text", [
        (S.SUCCESS, "任务成功完成"),
        (S.FAILED, "任务执行失败"),
        (S.CANCELLED, "任务已取消"),
    ])
    def test_terminal_sets_end_time_and_clears_actions(self, terminal, text):
        now = datetime(2024, 1, 15, 11, 0, 0)
        task = make_task(status=S.RUNNING, progress=40)

        updated = apply_transition(task, terminal, now=now)

        assert updated.end_time == now
        assert updated.can_cancel is False
        assert updated.can_resume is False
        assert updated.logs[-1].startswith(f"[2024-01-15 11:00:00] {text}")

    def test_success_forces_full_progress(self):
        updated = apply_transition(make_task(status=S.RUNNING, progress=80), S.SUCCESS)
        assert updated.progress == 100
        assert updated.current_step == "任务完成"

    def test_failure_records_message_and_allows_retry(self):
        updated = apply_transition(make_task(status=S.RUNNING), S.FAILED, message="连接超时")

        assert updated.error_message == "连接超时"
        assert updated.can_retry is True
        assert updated.logs[-1].endswith("任务执行失败: 连接超时")

    def test_cancelled_task_cannot_retry(self):
        updated = apply_transition(make_task(status=S.RUNNING), S.CANCELLED)
        assert updated.can_retry is False

    def test_illegal_transition_raises(self):
        task = make_task(status=S.SUCCESS)

        with pytest.raises(InvalidTransitionError) as exc_info:
            apply_transition(task, S.RUNNING)

        assert exc_info.value.status_code == 409
        assert exc_info.value.code == "INVALID_TRANSITION"


class TestTaskStateMachine:
    def test_full_lifecycle(self, store, machine):
        store.upsert(make_task("t1"))

        machine.transition("t1", S.RUNNING)
        machine.transition("t1", S.PAUSED)
        machine.transition("t1", S.RUNNING)
        machine.transition("t1", S.SUCCESS)

        task = store.get_by_id("t1")
        assert task.status == S.SUCCESS
        assert task.progress == 100
        assert task.end_time is not None
        assert task.can_cancel is False
        assert len(task.logs) == 4

    def test_full_lifecycle_with_creation_log(self, store, machine):
        store.upsert(make_task("t1", logs=["[2024-01-15 10:00:00] 任务已创建"]))
        for target in (S.RUNNING, S.PAUSED, S.RUNNING, S.SUCCESS):
            machine.transition("t1", target)
        assert len(store.get_by_id("t1").logs) >= 5

    def test_illegal_transition_leaves_store_untouched(self, store, machine):
        original = make_task("t1", status=S.CANCELLED)
        store.upsert(original)

        with pytest.raises(InvalidTransitionError):
            machine.transition("t1", S.RUNNING)

        assert store.get_by_id("t1") == original

    def test_unknown_task(self, machine):
        with pytest.raises(TaskNotFoundError) as exc_info:
            machine.transition("missing", S.RUNNING)
        assert exc_info.value.status_code == 404
