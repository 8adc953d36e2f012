"""
任务状态机

pending → running | cancelled | failed
running → paused | success | failed | cancelled
paused  → running | cancelled
success / failed / cancelled 为终态，不允许再切换。

每次切换在一份拷贝上同时更新 currentStep / canCancel / canResume /
canRetry / endTime，并追加恰好一条日志。
"""

from datetime import datetime
from typing import Optional

from flashpanel.core.errors import InvalidTransitionError, TaskNotFoundError
from flashpanel.core.logger import get_logger
from flashpanel.models.task import FlashTask, TaskStatus, format_log_line

_logger = get_logger("services.state_machine")


ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED, TaskStatus.FAILED}),
    TaskStatus.RUNNING: frozenset({
        TaskStatus.PAUSED, TaskStatus.SUCCESS, TaskStatus.FAILED, TaskStatus.CANCELLED,
    }),
    TaskStatus.PAUSED: frozenset({TaskStatus.RUNNING, TaskStatus.CANCELLED}),
    TaskStatus.SUCCESS: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

# 目标状态 → (currentStep, canCancel, canResume, 是否写 endTime, 日志)
_EFFECTS: dict[TaskStatus, tuple[str, bool, bool, bool, str]] = {
    TaskStatus.RUNNING:   ("执行中...", True, False, False, "任务已恢复"),
    TaskStatus.PAUSED:    ("已暂停", False, True, False, "任务已暂停"),
    TaskStatus.SUCCESS:   ("任务完成", False, False, True, "任务成功完成"),
    TaskStatus.FAILED:    ("任务失败", False, False, True, "任务执行失败"),
    TaskStatus.CANCELLED: ("已取消", False, False, True, "任务已取消"),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return TaskStatus(target) in ALLOWED_TRANSITIONS[TaskStatus(current)]


def apply_transition(
    task: FlashTask,
    target: TaskStatus,
    message: Optional[str] = None,
    now: Optional[datetime] = None,
) -> FlashTask:
    """
    计算切换后的新记录，不修改传入的 task。

    Args:
        task: 当前记录
        target: 目标状态
        message: 失败原因（写入 errorMessage 与日志）
        now: 切换时间，默认当前时间

    Raises:
        InvalidTransitionError: 当前状态不允许切换到 target
    """
    target = TaskStatus(target)
    if not can_transition(task.status, target):
        raise InvalidTransitionError(task.id, task.status.value, target.value)

    now = now or datetime.now()
    step, can_cancel, can_resume, terminal, log_text = _EFFECTS[target]

    if target == TaskStatus.RUNNING and task.status == TaskStatus.PENDING:
        log_text = "任务已开始"
    if target == TaskStatus.FAILED and message:
        log_text = f"{log_text}: {message}"

    changes = {
        "status": target,
        "current_step": step,
        "can_cancel": can_cancel,
        "can_resume": can_resume,
        "can_retry": target == TaskStatus.FAILED,
        "logs": [*task.logs, format_log_line(log_text, now)],
    }
    if terminal:
        changes["end_time"] = now
    if target == TaskStatus.SUCCESS:
        changes["progress"] = 100
    if target == TaskStatus.FAILED:
        changes["error_message"] = message or task.error_message or "任务执行失败"

    return task.copy_with(**changes)


class TaskStateMachine:
    """把状态切换落到 TaskStore 上"""

    def __init__(self, store):
        self._store = store

    def transition(
        self,
        task_id: str,
        target: TaskStatus,
        message: Optional[str] = None,
    ) -> FlashTask:
        """
        Raises:
            TaskNotFoundError: 任务不存在
            InvalidTransitionError: 非法切换，存储保持不变
        """
        task = self._store.get_by_id(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)

        updated = apply_transition(task, target, message=message)
        self._store.upsert(updated)
        _logger.info(f"任务状态切换: {task_id} {task.status.value} → {updated.status.value}")
        return updated
