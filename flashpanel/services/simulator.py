"""
刷机模拟器

每个任务一个后台 asyncio 任务，按固定间隔推进：
- 首个 tick 前把 pending 切换为 running
- 每个 tick 进度 +step，阶段 = floor(progress / 100 * 阶段数)（截到最后一个）
- 每个 tick 追加一条日志、写回 TaskStore、推送到事件总线
- 达到 100 时通过状态机切换为 success 并结束

每个 tick 都先从 TaskStore 重新读取任务，读取与写回之间没有 await，
因此暂停/取消一定在下一个 tick 生效前被看到。
"""

import asyncio
import math
import random
from typing import Callable, Optional

from flashpanel.core.logger import get_logger
from flashpanel.models.task import FlashMode, FlashTask, TaskStatus, format_log_line
from flashpanel.services.state_machine import apply_transition

_logger = get_logger("services.simulator")

DEFAULT_ROBOT_STEPS = ["连接设备", "验证身份", "准备固件", "写入固件", "验证完整性", "重启设备"]
DEFAULT_SERVER_STEPS = ["连接服务器", "检查环境", "下载软件包", "安装软件", "配置服务", "启动服务"]


def phase_index(progress: int, phase_count: int) -> int:
    return min(math.floor(progress / 100 * phase_count), phase_count - 1)


class FlashSimulator:
    """模拟刷机进度的后台调度器"""

    def __init__(
        self,
        store,
        channel,
        tick_interval: float = 1.5,
        progress_step: int = 16,
        start_delay: float = 0.5,
        failure_rate: float = 0.0,
        robot_steps: Optional[list[str]] = None,
        server_steps: Optional[list[str]] = None,
        on_finished: Optional[Callable[[FlashTask], None]] = None,
        rng: Optional[random.Random] = None,
    ):
        if progress_step <= 0:
            raise ValueError("progress_step 必须为正数")

        self._store = store
        self._channel = channel
        self._tick_interval = tick_interval
        self._progress_step = progress_step
        self._start_delay = start_delay
        self._failure_rate = failure_rate
        self._steps = {
            FlashMode.ROBOT: list(robot_steps or DEFAULT_ROBOT_STEPS),
            FlashMode.SERVER: list(server_steps or DEFAULT_SERVER_STEPS),
        }
        self._on_finished = on_finished
        self._rng = rng or random.Random()

        self._workers: dict[str, asyncio.Task] = {}

    @classmethod
    def from_config(cls, config, store, channel, on_finished=None) -> "FlashSimulator":
        return cls(
            store,
            channel,
            tick_interval=config.get("simulation.tick_interval", 1.5),
            progress_step=config.get("simulation.progress_step", 16),
            start_delay=config.get("simulation.start_delay", 0.5),
            failure_rate=config.get("simulation.failure_rate", 0.0),
            robot_steps=config.get("simulation.robot_steps"),
            server_steps=config.get("simulation.server_steps"),
            on_finished=on_finished,
        )

    def steps_for(self, mode: FlashMode) -> list[str]:
        return self._steps[FlashMode(mode)]

    # ──────────────────────────────────────────
    # 单步推进（纯函数，不触碰存储）
    # ──────────────────────────────────────────

    def advance(self, task: FlashTask) -> FlashTask:
        """
        对一个 running 任务推进一个 tick，返回新记录。
        非 running 任务原样返回。
        """
        if task.status != TaskStatus.RUNNING:
            return task

        steps = self.steps_for(task.mode)
        progress = min(task.progress + self._progress_step, 100)
        step = steps[phase_index(progress, len(steps))]

        if self._failure_rate and self._rng.random() < self._failure_rate:
            return apply_transition(task, TaskStatus.FAILED, message=f"{step}失败")

        if progress >= 100:
            ticked = task.copy_with(
                current_step=step,
                logs=[*task.logs, format_log_line(f"{step}... 100%")],
            )
            return apply_transition(ticked, TaskStatus.SUCCESS)

        return task.copy_with(
            progress=progress,
            current_step=step,
            logs=[*task.logs, format_log_line(f"{step}... {progress}%")],
        )

    # ──────────────────────────────────────────
    # 后台调度
    # ──────────────────────────────────────────

    def start(self, task_id: str) -> bool:
        """为任务启动后台推进；已在运行时返回 False"""
        worker = self._workers.get(task_id)
        if worker is not None and not worker.done():
            return False
        self._workers[task_id] = asyncio.create_task(self._run(task_id), name=f"flash-{task_id}")
        _logger.debug(f"模拟器已启动: {task_id}")
        return True

    def stop(self, task_id: str) -> bool:
        worker = self._workers.pop(task_id, None)
        if worker is None or worker.done():
            return False
        worker.cancel()
        _logger.debug(f"模拟器已停止: {task_id}")
        return True

    async def stop_all(self):
        workers = list(self._workers.values())
        self._workers.clear()
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

    def is_active(self, task_id: str) -> bool:
        worker = self._workers.get(task_id)
        return worker is not None and not worker.done()

    @property
    def active_count(self) -> int:
        return sum(1 for worker in self._workers.values() if not worker.done())

    async def wait(self, task_id: str):
        """等待某个任务的后台推进结束"""
        worker = self._workers.get(task_id)
        if worker is not None:
            await asyncio.gather(worker, return_exceptions=True)

    async def _run(self, task_id: str):
        try:
            await asyncio.sleep(self._start_delay)

            task = self._store.get_by_id(task_id)
            if task is None:
                return
            if task.status == TaskStatus.PENDING:
                self._commit(apply_transition(task, TaskStatus.RUNNING))

            while True:
                await asyncio.sleep(self._tick_interval)

                task = self._store.get_by_id(task_id)
                if task is None:
                    _logger.info(f"任务已删除，停止模拟: {task_id}")
                    return
                if task.status.is_terminal:
                    self._finish(task)
                    return
                if task.status != TaskStatus.RUNNING:
                    continue

                updated = self.advance(task)
                self._commit(updated)
                if updated.status.is_terminal:
                    self._finish(updated)
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            _logger.error(f"模拟任务异常 [{task_id}]: {e}", exc_info=True)
        finally:
            if self._workers.get(task_id) is asyncio.current_task():
                del self._workers[task_id]

    def _commit(self, task: FlashTask):
        self._store.upsert(task)
        self._channel.publish_task(task)

    def _finish(self, task: FlashTask):
        _logger.info(f"任务结束: {task.id} status={task.status.value}")
        if self._on_finished is not None:
            try:
                self._on_finished(task)
            except Exception as e:
                _logger.error(f"任务结束回调异常 [{task.id}]: {e}", exc_info=True)
