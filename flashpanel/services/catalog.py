"""
基础资料服务

设备类型 / 资源类型 / 固件版本 / 刷机记录的内存 CRUD。
数据仅保存在进程内，启动时写入一批示例数据。
"""

import asyncio
import hashlib
import time
from datetime import date, datetime, timedelta
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from flashpanel.core.errors import NotFoundError, ValidationError
from flashpanel.core.logger import get_logger
from flashpanel.models.catalog import (
    DeviceType,
    FlashRecord,
    FlashRecordStatus,
    Page,
    ResourceType,
    Version,
)
from flashpanel.models.task import FlashMode, FlashTask, TaskStatus

_logger = get_logger("services.catalog")

M = TypeVar("M", bound=BaseModel)

# 只读字段，update 时忽略
_IMMUTABLE_FIELDS = {"id", "created_at", "createdAt"}


class Collection(Generic[M]):
    """单个实体的内存集合，保持插入顺序"""

    def __init__(self, name: str, model: type[M], id_prefix: str, label: str, mock_delay: float = 0.0):
        self.name = name
        self._model = model
        self._id_prefix = id_prefix
        self._label = label
        self._mock_delay = mock_delay
        self._items: dict[str, M] = {}

    async def _delay(self):
        if self._mock_delay:
            await asyncio.sleep(self._mock_delay)

    def _new_id(self) -> str:
        base = f"{self._id_prefix}-{int(time.time() * 1000)}"
        candidate, n = base, 1
        while candidate in self._items:
            candidate = f"{base}-{n}"
            n += 1
        return candidate

    def _build(self, data: dict) -> M:
        try:
            return self._model.model_validate(data)
        except PydanticValidationError as e:
            fields = {".".join(str(p) for p in err["loc"]): err["msg"] for err in e.errors()}
            raise ValidationError(f"{self._label}数据验证失败", fields=fields)

    def add(self, item: M) -> M:
        self._items[item.id] = item
        return item

    def find(self, item_id: str) -> Optional[M]:
        return self._items.get(item_id)

    def all(self) -> list[M]:
        return list(self._items.values())

    def __len__(self) -> int:
        return len(self._items)

    async def list(self, page: int = 1, page_size: int = 10, **filters: Any) -> Page:
        await self._delay()
        items = self.all()
        for field, value in filters.items():
            if value in (None, ""):
                continue
            items = [item for item in items if _plain(getattr(item, field, None)) == _plain(value)]
        return Page[self._model].build(items, page, page_size)

    async def get(self, item_id: str) -> M:
        await self._delay()
        item = self._items.get(item_id)
        if item is None:
            raise NotFoundError(f"{self._label}不存在: {item_id}")
        return item

    async def create(self, payload: dict) -> M:
        await self._delay()
        data = {k: v for k, v in payload.items() if k not in _IMMUTABLE_FIELDS}
        data["id"] = self._new_id()
        item = self._build(data)
        self._items[item.id] = item
        _logger.info(f"{self._label}已创建: {item.id}")
        return item

    async def update(self, item_id: str, patch: dict) -> M:
        await self._delay()
        existing = self._items.get(item_id)
        if existing is None:
            raise NotFoundError(f"{self._label}不存在: {item_id}")

        merged = existing.model_dump()
        for key, value in patch.items():
            if key in _IMMUTABLE_FIELDS:
                continue
            merged[_field_name(self._model, key)] = value
        merged["updated_at"] = datetime.now()

        item = self._build(merged)
        self._items[item_id] = item
        _logger.info(f"{self._label}已更新: {item_id}")
        return item

    async def delete(self, item_id: str):
        await self._delay()
        if self._items.pop(item_id, None) is None:
            raise NotFoundError(f"{self._label}不存在: {item_id}")
        _logger.info(f"{self._label}已删除: {item_id}")


def _plain(value: Any) -> Any:
    return getattr(value, "value", value)


def _field_name(model: type[BaseModel], key: str) -> str:
    """camelCase 别名 → 字段名"""
    if key in model.model_fields:
        return key
    for name, field in model.model_fields.items():
        if field.alias == key:
            return name
    return key


class CatalogService:
    """基础资料的集合容器"""

    def __init__(self, mock_delay: float = 0.0):
        self.device_types: Collection[DeviceType] = Collection(
            "deviceTypes", DeviceType, "device", "设备类型", mock_delay)
        self.resource_types: Collection[ResourceType] = Collection(
            "resourceTypes", ResourceType, "resource", "资源类型", mock_delay)
        self.versions: Collection[Version] = Collection(
            "versions", Version, "version", "版本", mock_delay)
        self.flash_records: Collection[FlashRecord] = Collection(
            "flashRecords", FlashRecord, "record", "刷机记录", mock_delay)

    def collection(self, name: str) -> Collection:
        for coll in (self.device_types, self.resource_types, self.versions, self.flash_records):
            if coll.name == name:
                return coll
        raise NotFoundError(f"未知的资源集合: {name}")

    async def upload_version(
        self,
        file_name: str,
        content: bytes,
        version_number: Optional[str] = None,
        release_date: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Version:
        """
        登记一个上传的固件文件为新版本（只记录元数据，不落盘）。

        未提供的版本号 / 发布日期 / 描述分别取 v1.0.0、当天日期、空串。
        """
        if not file_name:
            raise ValidationError("缺少上传文件", fields={"file": "文件名不能为空"})

        version = await self.versions.create({
            "version_number": version_number or "v1.0.0",
            "release_date": release_date or date.today().isoformat(),
            "description": description or "",
            "file_name": file_name,
            "file_path": f"/uploads/{file_name}",
            "file_size": f"{len(content) / 1024 / 1024:.2f}MB",
            "file_md5": hashlib.md5(content).hexdigest(),
        })
        _logger.info(f"固件已上传: {file_name} → {version.id} ({version.file_size})")
        return version

    def record_task_result(self, task: FlashTask) -> Optional[FlashRecord]:
        """
        机器人模式任务结束后生成一条刷机记录；同一任务只记录一次。
        """
        if task.mode != FlashMode.ROBOT or not task.status.is_terminal:
            return None
        for record in self.flash_records.all():
            if record.task_id == task.id:
                return record

        status = {
            TaskStatus.SUCCESS: FlashRecordStatus.SUCCESS,
            TaskStatus.FAILED: FlashRecordStatus.FAILED,
            TaskStatus.CANCELLED: FlashRecordStatus.CANCELLED,
        }[task.status]
        duration = None
        if task.end_time is not None:
            duration = int((task.end_time - task.start_time).total_seconds() * 1000)

        record = FlashRecord(
            id=self.flash_records._new_id(),
            task_id=task.id,
            device_type_id=task.device_type_id or "",
            version_id=task.version_id or "",
            device_serial_number=task.device_serial_number or "",
            device_ip=task.device_ip,
            device_port=task.device_port,
            device_username=task.device_username,
            status=status,
            progress=task.progress,
            current_step=task.current_step,
            start_time=task.start_time,
            end_time=task.end_time,
            duration=duration,
            error_message=task.error_message,
            logs=list(task.logs),
            operator=task.operator,
        )
        self.flash_records.add(record)
        _logger.info(f"刷机记录已生成: {record.id} ← {task.id} ({status.value})")
        return record

    def seed(self):
        """写入示例数据"""
        now = datetime.now()

        for item in [
            DeviceType(id="1", name="工业机器人A", model="RB-A1000", manufacturer="RobotCorp"),
            DeviceType(id="2", name="工业机器人B", model="RB-B2000", manufacturer="RobotCorp"),
            DeviceType(id="3", name="服务机器人C", model="SV-C3000", manufacturer="ServiceTech"),
            DeviceType(id="4", name="协作机器人D", model="CO-D4000", manufacturer="CoRobot"),
            DeviceType(id="5", name="特种机器人E", model="SP-E5000", manufacturer="SpecialTech"),
        ]:
            self.device_types.add(item)

        for item in [
            ResourceType(id="1", name="控制软件", category="software", type="control",
                         description="机器人控制软件"),
            ResourceType(id="2", name="监控工具", category="software", type="monitoring",
                         description="设备监控工具"),
            ResourceType(id="3", name="配置文件", category="system", os_type="Linux",
                         architecture="x86_64", description="系统配置文件"),
            ResourceType(id="4", name="固件包", category="device", model="RB-A1000",
                         manufacturer="RobotCorp", description="设备固件"),
            ResourceType(id="5", name="驱动程序", category="software", type="driver",
                         description="硬件驱动程序"),
        ]:
            self.resource_types.add(item)

        for item in [
            Version(id="1", version_number="v1.0.0", release_date="2024-01-15",
                    description="初始稳定版本", file_size="125MB",
                    file_name="firmware-v1.0.0.bin", file_path="/uploads/firmware-v1.0.0.bin"),
            Version(id="2", version_number="v1.1.0", release_date="2024-02-20",
                    description="性能优化版本，修复了若干bug", file_size="128MB",
                    file_name="firmware-v1.1.0.bin", file_path="/uploads/firmware-v1.1.0.bin"),
            Version(id="3", version_number="v2.0.0", release_date="2024-03-10",
                    description="重大功能更新，新增AI模块", file_size="135MB",
                    file_name="firmware-v2.0.0.bin", file_path="/uploads/firmware-v2.0.0.bin"),
            Version(id="4", version_number="v2.1.0", release_date="2024-04-05",
                    description="安全更新和性能改进", file_size="137MB",
                    file_name="firmware-v2.1.0.bin", file_path="/uploads/firmware-v2.1.0.bin"),
        ]:
            self.versions.add(item)

        # (设备类型, 版本, 状态, 开始于几小时前, 耗时小时)
        for n, (dt, ver, status, started, took) in enumerate([
            ("1", "1", "success", 2, 0.5),
            ("2", "2", "failed", 4, 0.5),
            ("1", "3", "processing", 1, None),
            ("3", "1", "success", 6, 0.5),
            ("2", "2", "success", 8, 0.5),
        ], start=1):
            start_time = now - timedelta(hours=started)
            end_time = start_time + timedelta(hours=took) if took else None
            self.flash_records.add(FlashRecord(
                id=f"record-{n}",
                device_type_id=dt,
                version_id=ver,
                device_serial_number=f"SN{n:03d}",
                device_ip=f"192.168.1.{99 + n}",
                device_username="admin",
                status=status,
                progress=100 if status == "success" else 50,
                start_time=start_time,
                end_time=end_time,
                duration=int(took * 3600 * 1000) if took else None,
            ))

        _logger.info(
            f"示例数据已加载: 设备类型 {len(self.device_types)}，资源类型 {len(self.resource_types)}，"
            f"版本 {len(self.versions)}，刷机记录 {len(self.flash_records)}"
        )
