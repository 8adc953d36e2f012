"""
任务管理服务

负责：
- 任务创建（机器人单台 / 服务器批量）
- 启动模拟刷机
- 状态切换（暂停 / 恢复 / 取消 / 失败 / 重试）
- 列表查询、统计
- 连接校验（模拟）
"""

import asyncio
import ipaddress
from datetime import datetime, timedelta
from typing import Any, Optional

from flashpanel.core.errors import TaskNotFoundError, ValidationError
from flashpanel.core.logger import get_logger
from flashpanel.models.catalog import Page
from flashpanel.models.task import (
    ConnectionResult,
    FlashMode,
    FlashTask,
    FlashTaskCreate,
    ServerTarget,
    TaskStats,
    TaskStatus,
    format_log_line,
    generate_serial_number,
)

_logger = get_logger("services.task")

# 通过 PUT/PATCH 可直接修改的字段；状态与进度只能走状态机
EDITABLE_FIELDS = {"operator", "priority", "tags", "estimated_duration"}

# 模拟环境下固定无法连通的地址
UNREACHABLE_IP = "192.168.1.999"


class TaskService:
    """任务管理服务"""

    def __init__(self, store, state_machine, channel, simulator, catalog, config=None):
        """
        Args:
            store: TaskStore 实例
            state_machine: TaskStateMachine 实例
            channel: TaskChannel 实例
            simulator: FlashSimulator 实例
            catalog: CatalogService 实例
            config: ConfigManager 实例（可选）
        """
        self._store = store
        self._machine = state_machine
        self._channel = channel
        self._simulator = simulator
        self._catalog = catalog
        self._mock_delay = config.get("simulation.mock_delay", 0.0) if config else 0.0

    async def _delay(self, factor: float = 1.0):
        if self._mock_delay:
            await asyncio.sleep(self._mock_delay * factor)

    # ──────────────────────────────────────────
    # 创建
    # ──────────────────────────────────────────

    def _build_task(self, payload: FlashTaskCreate, target: ServerTarget) -> FlashTask:
        logs = [format_log_line("任务已创建")]
        fields: dict[str, Any] = {
            "mode": payload.mode,
            "device_ip": target.ip,
            "device_port": target.port,
            "device_username": target.username,
            "operator": payload.operator,
            "priority": payload.priority,
            "tags": list(payload.tags),
        }

        if payload.mode == FlashMode.ROBOT:
            fields["device_type_id"] = payload.device_type_id
            fields["version_id"] = payload.version_id
            fields["device_serial_number"] = payload.device_serial_number or generate_serial_number()
        else:
            fields["software_ids"] = list(payload.software_ids or [])
            logs.append(format_log_line(f"目标服务器: {target.ip}:{target.port}"))

        return FlashTask(logs=logs, **fields)

    async def create_task(self, payload: FlashTaskCreate) -> list[FlashTask]:
        """
        创建 pending 任务（不启动模拟）。server 模式按 servers 每台一个任务。
        """
        await self._delay()
        tasks = []
        for target in payload.targets():
            task = self._build_task(payload, target)
            self._store.upsert(task)
            self._channel.publish_task(task)
            tasks.append(task)
            _logger.info(
                f"任务创建: {task.id} [{task.mode.value}] → {task.device_ip}:{task.device_port}"
            )
        return tasks

    async def start_flash(self, payload: FlashTaskCreate) -> list[FlashTask]:
        """创建任务并交给模拟器推进"""
        tasks = await self.create_task(payload)
        for task in tasks:
            self._simulator.start(task.id)
        return tasks

    # ──────────────────────────────────────────
    # 状态切换
    # ──────────────────────────────────────────

    async def update_status(
        self,
        task_id: str,
        status: TaskStatus,
        message: Optional[str] = None,
    ) -> FlashTask:
        """
        Raises:
            TaskNotFoundError: 任务不存在
            InvalidTransitionError: 当前状态不允许切换
        """
        await self._delay(0.5)
        task = self._machine.transition(task_id, TaskStatus(status), message=message)

        if task.status == TaskStatus.RUNNING:
            self._simulator.start(task_id)
        elif task.status.is_terminal:
            self._simulator.stop(task_id)
            self._catalog.record_task_result(task)

        self._channel.publish_task(task)
        return task

    async def pause(self, task_id: str) -> FlashTask:
        task = await self.update_status(task_id, TaskStatus.PAUSED)
        await self._channel.pause_task(task_id)
        return task

    async def resume(self, task_id: str) -> FlashTask:
        task = await self.update_status(task_id, TaskStatus.RUNNING)
        await self._channel.resume_task(task_id)
        return task

    async def cancel(self, task_id: str) -> FlashTask:
        task = await self.update_status(task_id, TaskStatus.CANCELLED)
        await self._channel.cancel_task(task_id)
        return task

    async def fail(self, task_id: str, message: str) -> FlashTask:
        return await self.update_status(task_id, TaskStatus.FAILED, message=message)

    async def retry(self, task_id: str) -> FlashTask:
        """以失败任务的参数新建一个任务并启动"""
        await self._delay()
        original = self.get_task(task_id)
        if not original.can_retry:
            raise ValidationError(f"只有失败的任务可以重试: {task_id}")

        task = FlashTask(
            mode=original.mode,
            device_type_id=original.device_type_id,
            version_id=original.version_id,
            device_serial_number=original.device_serial_number,
            software_ids=list(original.software_ids) if original.software_ids else None,
            device_ip=original.device_ip,
            device_port=original.device_port,
            device_username=original.device_username,
            operator=original.operator,
            priority=original.priority,
            tags=list(original.tags),
            logs=[
                format_log_line("任务已创建"),
                format_log_line(f"重试任务 {original.id}"),
            ],
        )
        self._store.upsert(task)
        self._channel.publish_task(task)
        self._simulator.start(task.id)
        _logger.info(f"任务重试: {original.id} → {task.id}")
        return task

    # ──────────────────────────────────────────
    # 查询 / 修改 / 删除
    # ──────────────────────────────────────────

    def get_task(self, task_id: str) -> FlashTask:
        task = self._store.get_by_id(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def list_tasks(
        self,
        page: int = 1,
        page_size: int = 10,
        status: Optional[TaskStatus] = None,
        mode: Optional[FlashMode] = None,
        search: Optional[str] = None,
        sort_by: Optional[str] = None,
        sort_order: Optional[str] = None,
    ) -> Page[FlashTask]:
        await self._delay()
        try:
            tasks = self._store.get_filtered(
                {"status": status, "mode": mode, "search": search},
                sort_by=sort_by,
                sort_order=sort_order,
            )
        except ValueError as e:
            raise ValidationError(str(e))
        return Page[FlashTask].build(tasks, page, page_size)

    async def update_task(self, task_id: str, patch: dict) -> FlashTask:
        await self._delay()
        task = self.get_task(task_id)

        changes = {}
        rejected = {}
        for key, value in patch.items():
            name = _snake(key)
            if name in EDITABLE_FIELDS:
                changes[name] = value
            else:
                rejected[key] = "该字段不可直接修改"
        if rejected:
            raise ValidationError("任务字段不可修改", fields=rejected)

        try:
            updated = FlashTask.model_validate({**task.model_dump(), **changes})
        except ValueError as e:
            raise ValidationError(f"任务数据验证失败: {e}")
        self._store.upsert(updated)
        self._channel.publish_task(updated)
        return updated

    async def delete_task(self, task_id: str):
        await self._delay()
        self.get_task(task_id)
        self._simulator.stop(task_id)
        self._store.remove(task_id)
        _logger.info(f"任务已删除: {task_id}")

    def get_stats(self) -> TaskStats:
        return self._store.get_stats()

    def resume_running(self) -> int:
        """为存储中处于 running 但没有后台推进的任务启动模拟器"""
        started = 0
        for task in self._store.get_by_status(TaskStatus.RUNNING):
            if self._simulator.start(task.id):
                started += 1
        if started:
            _logger.info(f"已接管运行中的任务: {started} 个")
        return started

    def seed(self):
        """写入几条不同状态的示例任务（不启动模拟）"""
        now = datetime.now()

        def at(minutes_ago: float, text: str) -> str:
            return format_log_line(text, now - timedelta(minutes=minutes_ago))

        samples = [
            FlashTask(
                id="task-1", mode=FlashMode.ROBOT,
                device_type_id="1", version_id="1", device_serial_number="SN001",
                device_ip="192.168.1.100", device_username="admin",
                status=TaskStatus.RUNNING, progress=75, current_step="写入固件",
                start_time=now - timedelta(minutes=30),
                logs=[
                    at(30, "任务已创建"),
                    at(29, "连接设备..."),
                    at(27, "准备固件..."),
                    at(20, "写入固件... 75%"),
                ],
            ),
            FlashTask(
                id="task-2", mode=FlashMode.SERVER, software_ids=["1", "2"],
                device_ip="192.168.1.101", device_username="root",
                status=TaskStatus.SUCCESS, progress=100, current_step="任务完成",
                can_cancel=False,
                start_time=now - timedelta(minutes=60), end_time=now - timedelta(minutes=45),
                logs=[at(60, "任务已创建"), at(55, "安装软件... 50%"), at(45, "任务成功完成")],
            ),
            FlashTask(
                id="task-3", mode=FlashMode.ROBOT,
                device_type_id="2", version_id="2", device_serial_number="SN002",
                device_ip="192.168.1.102", device_username="admin",
                status=TaskStatus.FAILED, progress=45, current_step="任务失败",
                can_cancel=False, can_retry=True, error_message="连接失败",
                start_time=now - timedelta(minutes=90), end_time=now - timedelta(minutes=85),
                logs=[at(90, "任务已创建"), at(89, "设备连接失败"), at(85, "任务执行失败: 连接失败")],
            ),
            FlashTask(
                id="task-4", mode=FlashMode.SERVER, software_ids=["3"],
                device_ip="192.168.1.103", device_username="root",
                start_time=now, logs=[at(0, "任务已创建")],
            ),
        ]
        self._store.set_tasks(samples)
        _logger.info(f"示例任务已加载: {len(samples)} 条")

    # ──────────────────────────────────────────
    # 连接校验
    # ──────────────────────────────────────────

    async def validate_connection(
        self,
        device_ip: str,
        device_port: str,
        device_username: str,
        device_password: Optional[str] = None,
    ) -> ConnectionResult:
        """模拟 SSH 连接校验，不发起真实连接"""
        await self._delay(2)

        if device_ip == UNREACHABLE_IP:
            return ConnectionResult(success=False, message="无法连接到设备")
        try:
            ipaddress.IPv4Address(device_ip)
        except ValueError:
            return ConnectionResult(success=False, message=f"IP 地址格式错误: {device_ip}")
        if not str(device_port).isdigit() or not 0 < int(device_port) < 65536:
            return ConnectionResult(success=False, message=f"端口无效: {device_port}")
        if not device_username:
            return ConnectionResult(success=False, message="用户名不能为空")

        return ConnectionResult(success=True, message="连接验证成功")


def _snake(name: str) -> str:
    out = []
    for ch in name:
        if ch.isupper():
            out.append("_")
            out.append(ch.lower())
        else:
            out.append(ch)
    return "".join(out)
