"""
事件总线

- EventBus: 进程内发布/订阅，handler 以集合语义注册（重复注册幂等）
- PushClient: 可选的外部推送通道（websockets），断线后按指数退避重连，
  超过最大次数后放弃；收到的 {"event", "payload"} 消息转发到本地总线
- TaskChannel: 任务相关频道 task:<id>:update / tasks:update 的便捷封装
"""

import asyncio
import inspect
import json
from typing import Any, Callable, Optional

import websockets

from flashpanel.core.logger import get_logger

_logger = get_logger("services.event_bus")

Handler = Callable[[Any], Any]

TASKS_UPDATE = "tasks:update"


def task_update_event(task_id: str) -> str:
    return f"task:{task_id}:update"


class EventBus:
    """同步发布/订阅；单个 handler 抛异常不影响其余 handler"""

    def __init__(self):
        # 用 dict 充当有序集合
        self._listeners: dict[str, dict[Handler, None]] = {}

    def on(self, event: str, handler: Handler):
        self._listeners.setdefault(event, {})[handler] = None

    def off(self, event: str, handler: Handler):
        listeners = self._listeners.get(event)
        if listeners is None:
            return
        listeners.pop(handler, None)
        if not listeners:
            del self._listeners[event]

    def listener_count(self, event: str) -> int:
        return len(self._listeners.get(event, {}))

    def emit(self, event: str, payload: Any = None) -> int:
        """
        依次调用该事件当前注册的全部 handler。
        异步 handler 会被调度到当前事件循环上执行。

        Returns:
            被调用的 handler 数量
        """
        handlers = list(self._listeners.get(event, {}))
        for handler in handlers:
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    self._schedule(result, event)
            except Exception as e:
                _logger.error(f"事件处理异常 [{event}]: {e}", exc_info=True)
        return len(handlers)

    def _schedule(self, awaitable, event: str):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            _logger.warning(f"事件 {event} 的异步 handler 无运行中的事件循环，已丢弃")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        future = asyncio.ensure_future(awaitable, loop=loop)

        def _done(fut: asyncio.Future):
            if not fut.cancelled() and fut.exception() is not None:
                _logger.error(f"异步事件处理异常 [{event}]: {fut.exception()}")

        future.add_done_callback(_done)


class PushClient:
    """
    外部推送通道客户端。

    连接断开或失败后按 min(base * 2**attempt, cap) 延迟重连，
    连续失败 max_attempts 次后停止；连接成功会清零计数。
    """

    def __init__(
        self,
        bus: EventBus,
        url: str,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        max_attempts: int = 5,
        connect: Optional[Callable] = None,
    ):
        self._bus = bus
        self._url = url
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._max_attempts = max_attempts
        self._connect = connect or websockets.connect

        self._ws = None
        self._runner: Optional[asyncio.Task] = None
        self._reconnect_attempts = 0
        self._closing = False

    @property
    def connected(self) -> bool:
        return self._ws is not None

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def gave_up(self) -> bool:
        return self._reconnect_attempts >= self._max_attempts and self._runner is None

    def backoff_delay(self, attempt: int) -> float:
        return min(self._base_delay * (2 ** attempt), self._max_delay)

    def connect(self):
        """启动后台连接循环；已在运行时忽略"""
        if self._runner is not None and not self._runner.done():
            return
        self._closing = False
        self._runner = asyncio.create_task(self._run())

    async def disconnect(self):
        self._closing = True
        if self._ws is not None:
            try:
                await self._ws.close()
            except Exception as e:
                _logger.debug(f"关闭推送连接异常: {e}")
        if self._runner is not None:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
        self._runner = None
        self._ws = None

    async def send(self, event: str, payload: Any) -> bool:
        """已连接时发送，否则触发重连并返回 False"""
        if self._ws is None:
            if self._runner is None or self._runner.done():
                self.connect()
            return False
        try:
            await self._ws.send(json.dumps({"event": event, "payload": payload}, default=str))
            return True
        except Exception as e:
            _logger.warning(f"推送消息发送失败 [{event}]: {e}")
            return False

    async def _run(self):
        while not self._closing:
            try:
                async with self._connect(self._url) as ws:
                    self._ws = ws
                    self._reconnect_attempts = 0
                    _logger.info(f"推送通道已连接: {self._url}")
                    async for raw in ws:
                        self._dispatch(raw)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                _logger.warning(f"推送通道连接失败: {e}")
            finally:
                self._ws = None

            if self._closing:
                break
            if self._reconnect_attempts >= self._max_attempts:
                _logger.warning(f"推送通道重连 {self._max_attempts} 次失败，已放弃")
                break

            self._reconnect_attempts += 1
            delay = self.backoff_delay(self._reconnect_attempts)
            _logger.info(f"{delay:.1f}s 后第 {self._reconnect_attempts} 次重连")
            await asyncio.sleep(delay)

        self._runner = None

    def _dispatch(self, raw):
        try:
            message = json.loads(raw)
            self._bus.emit(message["event"], message.get("payload"))
        except (ValueError, KeyError, TypeError) as e:
            _logger.warning(f"无法解析推送消息: {e}")


class TaskChannel:
    """任务频道封装"""

    def __init__(self, bus: EventBus, push_client: Optional[PushClient] = None):
        self._bus = bus
        self._push = push_client

    @property
    def bus(self) -> EventBus:
        return self._bus

    def subscribe_to_task(self, task_id: str, handler: Handler):
        self._bus.on(task_update_event(task_id), handler)

    def unsubscribe_from_task(self, task_id: str, handler: Handler):
        self._bus.off(task_update_event(task_id), handler)

    def subscribe_to_all(self, handler: Handler):
        self._bus.on(TASKS_UPDATE, handler)

    def unsubscribe_from_all(self, handler: Handler):
        self._bus.off(TASKS_UPDATE, handler)

    def simulate_task_progress(self, task_id: str, task):
        """模拟服务器推送单个任务更新"""
        self._bus.emit(task_update_event(task_id), task)

    def publish_task(self, task):
        """任务变更后同时推送单任务频道和全量频道"""
        self.simulate_task_progress(task.id, task)
        self._bus.emit(TASKS_UPDATE, [task])

    async def pause_task(self, task_id: str) -> bool:
        return await self._send("task:pause", {"taskId": task_id})

    async def resume_task(self, task_id: str) -> bool:
        return await self._send("task:resume", {"taskId": task_id})

    async def cancel_task(self, task_id: str) -> bool:
        return await self._send("task:cancel", {"taskId": task_id})

    async def _send(self, event: str, payload: dict) -> bool:
        if self._push is None:
            return False
        return await self._push.send(event, payload)
