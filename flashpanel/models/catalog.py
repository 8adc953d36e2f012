"""
基础资料模型：设备类型、资源类型、固件版本、刷机记录、用户，以及分页响应
"""

import math
from datetime import datetime
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic import Field

from flashpanel.models.task import CamelModel


T = TypeVar("T")


class DeviceType(CamelModel):
    id: str
    name: str
    model: str
    manufacturer: str
    description: Optional[str] = None
    specifications: Optional[dict[str, Any]] = None
    image_url: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: Optional[datetime] = None


class ResourceCategory(str, Enum):
    DEVICE = "device"
    SOFTWARE = "software"
    SYSTEM = "system"
    CONFIG = "config"


class ResourceType(CamelModel):
    id: str
    name: str
    category: ResourceCategory
    description: Optional[str] = None

    # 终端设备
    model: Optional[str] = None
    manufacturer: Optional[str] = None

    # 软件
    version: Optional[str] = None
    type: Optional[str] = None
    supported_os: Optional[list[str]] = None

    # 系统
    os_type: Optional[str] = None
    architecture: Optional[str] = None

    file_size: Optional[str] = None
    file_path: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: Optional[datetime] = None


class Version(CamelModel):
    id: str
    version_number: str
    release_date: str
    description: str = ""
    changelog: Optional[str] = None

    file_name: Optional[str] = None
    file_path: Optional[str] = None
    file_size: Optional[str] = None
    file_md5: Optional[str] = None

    supported_devices: Optional[list[str]] = None
    is_beta: bool = False
    is_stable: bool = True
    tags: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: Optional[datetime] = None


class FlashRecordStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    PROCESSING = "processing"
    CANCELLED = "cancelled"
    PENDING = "pending"


class FlashRecord(CamelModel):
    id: str
    device_type_id: str
    version_id: str
    device_serial_number: str
    device_ip: str
    device_port: str = "22"
    device_username: str

    status: FlashRecordStatus
    progress: int = 0
    current_step: str = ""

    start_time: datetime
    end_time: Optional[datetime] = None
    duration: Optional[int] = Field(None, description="耗时（毫秒）")

    error_message: Optional[str] = None
    logs: list[str] = Field(default_factory=list)
    operator: Optional[str] = None
    notes: Optional[str] = None
    task_id: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: Optional[datetime] = None


class UserRole(str, Enum):
    ADMIN = "admin"
    OPERATOR = "operator"
    VIEWER = "viewer"


class User(CamelModel):
    id: str
    username: str
    email: str
    role: UserRole = UserRole.VIEWER
    full_name: Optional[str] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.now)


class Page(CamelModel, Generic[T]):
    """分页响应：{data, total, page, pageSize, totalPages}"""
    data: list[T]
    total: int
    page: int
    page_size: int
    total_pages: int

    @classmethod
    def build(cls, items: list, page: int, page_size: int) -> "Page":
        """对完整列表切片，page 从 1 开始"""
        page = max(page, 1)
        page_size = max(page_size, 1)
        start = (page - 1) * page_size
        return cls(
            data=items[start:start + page_size],
            total=len(items),
            page=page,
            page_size=page_size,
            total_pages=math.ceil(len(items) / page_size),
        )
