"""
任务存储

进程内的任务集合，是任务记录的唯一权威副本：
- tasks_by_id + task_ids 两个结构始终一致（task_ids 保持插入顺序）
- 过滤 / 排序 / 统计
- 观察者订阅：每次变更后按 selector 通知，值未变化时不通知

所有变更都在事件循环线程内同步完成，无需加锁。
"""

import time
from typing import Any, Callable, Optional

from flashpanel.core.logger import get_logger
from flashpanel.models.task import FlashMode, FlashTask, TaskStats, TaskStatus

_logger = get_logger("services.task_store")

SORT_FIELDS = ("createdAt", "progress", "status")
SORT_ORDERS = ("asc", "desc")

Selector = Callable[["TaskStore"], Any]
Listener = Callable[[Any], None]


def _all_tasks(store: "TaskStore") -> list[FlashTask]:
    return store.all()


class TaskStore:
    """可观察的任务存储"""

    def __init__(self):
        self._tasks_by_id: dict[str, FlashTask] = {}
        self._task_ids: list[str] = []
        self._focused_task_id: Optional[str] = None

        self._filters: dict[str, Any] = {}
        self._sort_by = "createdAt"
        self._sort_order = "desc"

        self._last_update_time = time.time()

        # [(listener, selector, last_value)]
        self._subscribers: list[list] = []

    # ──────────────────────────────────────────
    # 变更
    # ──────────────────────────────────────────

    def upsert(self, task: FlashTask):
        """新 id 追加到末尾，已有 id 原位替换"""
        if task.id not in self._tasks_by_id:
            self._task_ids.append(task.id)
        self._tasks_by_id[task.id] = task
        self._touch()

    def remove(self, task_id: str):
        """删除任务；未知 id 忽略"""
        if task_id not in self._tasks_by_id:
            return
        del self._tasks_by_id[task_id]
        self._task_ids.remove(task_id)
        if self._focused_task_id == task_id:
            self._focused_task_id = None
        self._touch()

    def set_tasks(self, tasks: list[FlashTask]):
        """整体替换；同一 id 重复出现时以最后一条为准"""
        self._tasks_by_id = {}
        self._task_ids = []
        for task in tasks:
            if task.id not in self._tasks_by_id:
                self._task_ids.append(task.id)
            self._tasks_by_id[task.id] = task
        self._touch()

    def clear(self):
        self._tasks_by_id = {}
        self._task_ids = []
        self._focused_task_id = None
        self._touch()

    def set_focused_task_id(self, task_id: Optional[str]):
        self._focused_task_id = task_id
        self._touch()

    def set_filters(self, status: Any = ..., mode: Any = ..., search: Any = ...):
        """
        合并过滤条件。未传的参数保持不变，传 None 表示清除该条件。
        """
        for key, value in (("status", status), ("mode", mode), ("search", search)):
            if value is ...:
                continue
            if value is None or value == "":
                self._filters.pop(key, None)
            elif key == "status":
                self._filters[key] = TaskStatus(value)
            elif key == "mode":
                self._filters[key] = FlashMode(value)
            else:
                self._filters[key] = str(value)
        self._touch()

    def set_sorting(self, sort_by: str, sort_order: str = "desc"):
        if sort_by not in SORT_FIELDS:
            raise ValueError(f"不支持的排序字段: {sort_by}")
        if sort_order not in SORT_ORDERS:
            raise ValueError(f"不支持的排序方向: {sort_order}")
        self._sort_by = sort_by
        self._sort_order = sort_order
        self._touch()

    # ──────────────────────────────────────────
    # 查询
    # ──────────────────────────────────────────

    def get_by_id(self, task_id: str) -> Optional[FlashTask]:
        return self._tasks_by_id.get(task_id)

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._tasks_by_id

    def __len__(self) -> int:
        return len(self._task_ids)

    def all(self) -> list[FlashTask]:
        """按插入顺序返回全部任务"""
        return [self._tasks_by_id[task_id] for task_id in self._task_ids]

    @property
    def task_ids(self) -> list[str]:
        return list(self._task_ids)

    @property
    def focused_task_id(self) -> Optional[str]:
        return self._focused_task_id

    @property
    def filters(self) -> dict[str, Any]:
        return dict(self._filters)

    @property
    def sorting(self) -> tuple[str, str]:
        return self._sort_by, self._sort_order

    @property
    def last_update_time(self) -> float:
        return self._last_update_time

    def get_focused_task(self) -> Optional[FlashTask]:
        if self._focused_task_id is None:
            return None
        return self._tasks_by_id.get(self._focused_task_id)

    def get_by_status(self, status: TaskStatus) -> list[FlashTask]:
        status = TaskStatus(status)
        return [task for task in self.all() if task.status == status]

    def get_filtered(
        self,
        filters: Optional[dict[str, Any]] = None,
        sort_by: Optional[str] = None,
        sort_order: Optional[str] = None,
    ) -> list[FlashTask]:
        """
        先过滤再排序。

        Args:
            filters: 覆盖当前过滤条件（status / mode / search），不修改存储状态
            sort_by: createdAt | progress | status
            sort_order: asc | desc
        """
        active = dict(self._filters)
        if filters:
            active.update({k: v for k, v in filters.items() if v not in (None, "")})

        tasks = self.all()

        status = active.get("status")
        if status:
            status = TaskStatus(status)
            tasks = [t for t in tasks if t.status == status]

        mode = active.get("mode")
        if mode:
            mode = FlashMode(mode)
            tasks = [t for t in tasks if t.mode == mode]

        search = active.get("search")
        if search:
            needle = str(search).lower()
            tasks = [
                t for t in tasks
                if needle in t.device_ip.lower()
                or needle in t.device_username.lower()
                or needle in t.current_step.lower()
            ]

        sort_by = sort_by or self._sort_by
        sort_order = sort_order or self._sort_order
        if sort_by not in SORT_FIELDS:
            raise ValueError(f"不支持的排序字段: {sort_by}")
        if sort_order not in SORT_ORDERS:
            raise ValueError(f"不支持的排序方向: {sort_order}")

        if sort_by == "createdAt":
            key = lambda t: t.start_time  # noqa: E731
        elif sort_by == "progress":
            key = lambda t: t.progress  # noqa: E731
        else:
            key = lambda t: t.status.value  # noqa: E731

        return sorted(tasks, key=key, reverse=(sort_order == "desc"))

    def get_stats(self) -> TaskStats:
        """全量扫描统计各状态数量"""
        counts = {status.value: 0 for status in TaskStatus}
        for task in self._tasks_by_id.values():
            counts[task.status.value] += 1
        return TaskStats(total=len(self._task_ids), **counts)

    # ──────────────────────────────────────────
    # 订阅
    # ──────────────────────────────────────────

    def subscribe(self, listener: Listener, selector: Optional[Selector] = None) -> Callable[[], None]:
        """
        订阅存储变更。

        Args:
            listener: 回调，参数为 selector 的结果
            selector: 从存储中取值的函数，默认取全部任务列表

        Returns:
            取消订阅的函数
        """
        selector = selector or _all_tasks
        entry = [listener, selector, selector(self)]
        self._subscribers.append(entry)

        def unsubscribe():
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return unsubscribe

    def _touch(self):
        self._last_update_time = time.time()
        for entry in list(self._subscribers):
            listener, selector, last_value = entry
            try:
                value = selector(self)
                if value == last_value:
                    continue
                entry[2] = value
                listener(value)
            except Exception as e:
                _logger.error(f"任务订阅回调异常: {e}", exc_info=True)
