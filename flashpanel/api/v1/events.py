"""
任务推送 WebSocket

连接后先收到一次快照，之后实时收到：
- {"event": "tasks:update", "payload": [task, ...]}
- {"event": "task:<id>:update", "payload": task}   （带 ?taskId= 时）

客户端可发送 task:pause / task:resume / task:cancel 控制消息：
{"event": "task:pause", "payload": {"taskId": "task-xxxx"}}
"""

import asyncio
import json
from typing import Any

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from flashpanel.api.deps import extract_token
from flashpanel.core.errors import ApiError
from flashpanel.core.logger import get_logger
from flashpanel.services.event_bus import TASKS_UPDATE, task_update_event

router = APIRouter(prefix="/events", tags=["events"])
_logger = get_logger("api.events")

_COMMANDS = {
    "task:pause": "pause",
    "task:resume": "resume",
    "task:cancel": "cancel",
}


def _encode(value: Any) -> Any:
    if isinstance(value, list):
        return [_encode(item) for item in value]
    if hasattr(value, "model_dump"):
        return value.model_dump(mode="json", by_alias=True)
    return value


@router.websocket("/ws")
async def task_events(websocket: WebSocket, task_id: str = Query("", alias="taskId")):
    await websocket.accept()

    app = websocket.app
    if not app.state.auth_service.validate_token(extract_token(websocket)):
        await websocket.send_json({"event": "error", "payload": {"message": "未登录或会话已过期"}})
        await websocket.close(code=4001, reason="Unauthorized")
        return

    store = app.state.task_store
    channel = app.state.task_channel
    task_service = app.state.task_service

    queue: asyncio.Queue = asyncio.Queue()

    def on_all(tasks):
        queue.put_nowait((TASKS_UPDATE, tasks))

    def on_task(task):
        queue.put_nowait((task_update_event(task_id), task))

    channel.subscribe_to_all(on_all)
    if task_id:
        channel.subscribe_to_task(task_id, on_task)
    _logger.info(f"推送连接已建立 taskId={task_id or '*'}")

    async def pump():
        """总线 → 客户端"""
        while True:
            event, payload = await queue.get()
            await websocket.send_json({"event": event, "payload": _encode(payload)})

    async def listen():
        """客户端 → 任务服务"""
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
                action = _COMMANDS.get(message.get("event"))
                target = (message.get("payload") or {}).get("taskId", "")
            except (ValueError, AttributeError):
                await websocket.send_json({"event": "error", "payload": {"message": "消息格式错误"}})
                continue
            if action is None:
                await websocket.send_json({"event": "error", "payload": {"message": "不支持的事件"}})
                continue
            try:
                await getattr(task_service, action)(target)
            except ApiError as e:
                await websocket.send_json({"event": "error", "payload": e.to_dict()["error"]})

    try:
        if task_id:
            snapshot = store.get_by_id(task_id)
            await websocket.send_json({"event": task_update_event(task_id), "payload": _encode(snapshot)})
        else:
            await websocket.send_json({"event": TASKS_UPDATE, "payload": _encode(store.all())})

        done, pending = await asyncio.wait(
            [asyncio.create_task(pump()), asyncio.create_task(listen())],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, WebSocketDisconnect):
                _logger.warning(f"推送连接异常: {exc}")
    except WebSocketDisconnect:
        pass
    finally:
        channel.unsubscribe_from_all(on_all)
        if task_id:
            channel.unsubscribe_from_task(task_id, on_task)
        _logger.info(f"推送连接已断开 taskId={task_id or '*'}")
