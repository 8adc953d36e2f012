"""
刷机操作 API

- POST /flash/start     创建任务并启动模拟刷机（server 模式按 servers 批量）
- POST /flash/validate  校验设备连接（模拟）
"""

from fastapi import APIRouter, Request

from flashpanel.core.logger import get_logger
from flashpanel.models.task import ConnectionCheck, FlashTaskCreate

router = APIRouter(prefix="/flash", tags=["flash"])
_logger = get_logger("api.flash")


@router.post("/start", status_code=201)
async def start_flash(body: FlashTaskCreate, request: Request):
    tasks = await request.app.state.task_service.start_flash(body)
    _logger.info(f"启动刷机: mode={body.mode.value} 任务数={len(tasks)}")
    return tasks


@router.post("/validate")
async def validate_connection(body: ConnectionCheck, request: Request):
    return await request.app.state.task_service.validate_connection(
        device_ip=body.device_ip,
        device_port=body.device_port,
        device_username=body.device_username,
        device_password=body.device_password,
    )
