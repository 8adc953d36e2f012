"""
刷机任务数据模型

JSON 字段使用 camelCase（deviceIp、currentStep …），
Python 侧使用 snake_case，两者均可用于构造。
"""

import time
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


LOG_TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class FlashMode(str, Enum):
    """刷机模式：单台机器人 / 批量服务器"""
    ROBOT = "robot"
    SERVER = "server"


class TaskStatus(str, Enum):
    """任务状态"""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.SUCCESS, TaskStatus.FAILED, TaskStatus.CANCELLED})


class TaskPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class CamelModel(BaseModel):
    """camelCase 序列化基类"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )


def new_task_id() -> str:
    return f"task-{uuid.uuid4().hex[:8]}"


def format_log_line(message: str, at: Optional[datetime] = None) -> str:
    """生成带时间戳的日志行：[2024-01-15 10:30:00] message"""
    at = at or datetime.now()
    return f"[{at.strftime(LOG_TIME_FORMAT)}] {message}"


def generate_serial_number() -> str:
    """机器人模式未指定序列号时使用毫秒时间戳末 6 位"""
    return f"SN{str(int(time.time() * 1000))[-6:]}"


class FlashTask(CamelModel):
    """
    一次刷机操作的完整记录。

    devicePassword 不属于记录本身，只在创建请求中短暂出现。
    """
    id: str = Field(default_factory=new_task_id, description="任务唯一标识")
    mode: FlashMode

    # 机器人模式
    device_type_id: Optional[str] = None
    version_id: Optional[str] = None
    device_serial_number: Optional[str] = None

    # 服务器模式
    software_ids: Optional[list[str]] = None

    # 连接信息
    device_ip: str
    device_port: str = "22"
    device_username: str

    # 状态
    status: TaskStatus = TaskStatus.PENDING
    progress: int = Field(0, ge=0, le=100)
    current_step: str = "等待开始"

    start_time: datetime = Field(default_factory=datetime.now)
    end_time: Optional[datetime] = None
    estimated_duration: Optional[int] = Field(None, description="预估耗时（毫秒）")

    logs: list[str] = Field(default_factory=list)
    can_cancel: bool = True
    can_resume: bool = False
    can_retry: bool = False

    error_message: Optional[str] = None
    error_code: Optional[str] = None

    operator: Optional[str] = None
    priority: TaskPriority = TaskPriority.NORMAL
    tags: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)

    def copy_with(self, **changes) -> "FlashTask":
        """深拷贝并修改字段，logs 不与原记录共享"""
        return self.model_copy(update=changes, deep=True)


class ServerTarget(CamelModel):
    """服务器批量部署时的单台目标"""
    ip: str
    port: str = "22"
    username: str
    password: Optional[str] = Field(None, exclude=True)


class FlashTaskCreate(CamelModel):
    """
    创建任务 / 启动刷机的请求体。

    robot 模式需要 deviceTypeId + versionId；
    server 模式需要 softwareIds，可选 servers 批量创建。
    """
    mode: FlashMode
    device_type_id: Optional[str] = None
    version_id: Optional[str] = None
    device_serial_number: Optional[str] = None
    software_ids: Optional[list[str]] = None

    device_ip: str = ""
    device_port: str = "22"
    device_username: str = ""
    device_password: Optional[str] = Field(None, exclude=True)

    servers: list[ServerTarget] = Field(default_factory=list)

    operator: Optional[str] = None
    priority: TaskPriority = TaskPriority.NORMAL
    tags: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_mode_fields(self) -> "FlashTaskCreate":
        if self.mode == FlashMode.ROBOT:
            if not self.device_type_id or not self.version_id:
                raise ValueError("机器人模式需要 deviceTypeId 和 versionId")
            if not self.device_ip or not self.device_username:
                raise ValueError("机器人模式需要 deviceIp 和 deviceUsername")
        else:
            if not self.software_ids:
                raise ValueError("服务器模式需要至少一个 softwareIds")
            if not self.servers and (not self.device_ip or not self.device_username):
                raise ValueError("服务器模式需要 servers 或 deviceIp/deviceUsername")
        return self

    def targets(self) -> list[ServerTarget]:
        """展开为连接目标列表；robot 模式恒为一台"""
        if self.mode == FlashMode.SERVER and self.servers:
            return list(self.servers)
        return [ServerTarget(
            ip=self.device_ip,
            port=self.device_port,
            username=self.device_username,
            password=self.device_password,
        )]


class TaskStatusUpdate(CamelModel):
    status: TaskStatus
    message: Optional[str] = None


class TaskStats(CamelModel):
    total: int = 0
    pending: int = 0
    running: int = 0
    paused: int = 0
    success: int = 0
    failed: int = 0
    cancelled: int = 0


class ConnectionCheck(CamelModel):
    device_ip: str
    device_port: str = "22"
    device_username: str
    device_password: Optional[str] = Field(None, exclude=True)


class ConnectionResult(CamelModel):
    success: bool
    message: str
