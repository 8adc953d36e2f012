"""
任务 API

提供：
- 任务列表（分页 + 状态/模式/关键字过滤 + 排序）与统计
- 任务创建、详情、修改、删除
- 状态切换：PATCH /tasks/{id}/status，以及 pause / resume / cancel / retry 快捷接口
"""

from typing import Any, Optional

from fastapi import APIRouter, Body, Query, Request, Response

from flashpanel.core.errors import ValidationError
from flashpanel.models.task import FlashMode, FlashTaskCreate, TaskStatus, TaskStatusUpdate

router = APIRouter(prefix="/tasks", tags=["tasks"])


@router.get("")
async def list_tasks(
    request: Request,
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100, alias="pageSize"),
    status: Optional[TaskStatus] = None,
    mode: Optional[FlashMode] = None,
    search: Optional[str] = None,
    sort_by: Optional[str] = Query(None, alias="sortBy"),
    sort_order: Optional[str] = Query(None, alias="sortOrder"),
):
    task_service = request.app.state.task_service
    return await task_service.list_tasks(
        page=page,
        page_size=page_size,
        status=status,
        mode=mode,
        search=search,
        sort_by=sort_by,
        sort_order=sort_order,
    )


@router.get("/stats")
async def task_stats(request: Request):
    return request.app.state.task_service.get_stats()


@router.post("", status_code=201)
async def create_task(body: FlashTaskCreate, request: Request):
    """创建单个 pending 任务（不启动刷机）；批量请走 /flash/start"""
    if len(body.servers) > 1:
        raise ValidationError("批量创建请使用 /flash/start")
    tasks = await request.app.state.task_service.create_task(body)
    return tasks[0]


@router.get("/{task_id}")
async def get_task(task_id: str, request: Request):
    return request.app.state.task_service.get_task(task_id)


@router.api_route("/{task_id}", methods=["PUT", "PATCH"])
async def update_task(task_id: str, request: Request, payload: dict[str, Any] = Body(...)):
    return await request.app.state.task_service.update_task(task_id, payload)


@router.delete("/{task_id}", status_code=204)
async def delete_task(task_id: str, request: Request):
    await request.app.state.task_service.delete_task(task_id)
    return Response(status_code=204)


@router.patch("/{task_id}/status")
async def update_task_status(task_id: str, body: TaskStatusUpdate, request: Request):
    task_service = request.app.state.task_service
    return await task_service.update_status(task_id, body.status, message=body.message)


@router.post("/{task_id}/pause")
async def pause_task(task_id: str, request: Request):
    return await request.app.state.task_service.pause(task_id)


@router.post("/{task_id}/resume")
async def resume_task(task_id: str, request: Request):
    return await request.app.state.task_service.resume(task_id)


@router.post("/{task_id}/cancel")
async def cancel_task(task_id: str, request: Request):
    return await request.app.state.task_service.cancel(task_id)


@router.post("/{task_id}/retry", status_code=201)
async def retry_task(task_id: str, request: Request):
    return await request.app.state.task_service.retry(task_id)
