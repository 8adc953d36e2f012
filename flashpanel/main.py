"""
FlashPanel 设备刷机管理控制台入口

使用 bootstrap 初始化 Config + Logger，组装任务存储、事件总线、
模拟器和各项服务，然后启动 FastAPI 服务。
"""

import socket
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from flashpanel.api.deps import extract_token
from flashpanel.api.v1.router import API_PREFIX, router as v1_router
from flashpanel.core import bootstrap
from flashpanel.core.errors import ApiError, AuthenticationError, ValidationError
from flashpanel.core.logger import get_logger
from flashpanel.services.auth import AuthService
from flashpanel.services.catalog import CatalogService
from flashpanel.services.event_bus import EventBus, PushClient, TaskChannel
from flashpanel.services.simulator import FlashSimulator
from flashpanel.services.state_machine import TaskStateMachine
from flashpanel.services.task_service import TaskService
from flashpanel.services.task_store import TaskStore


def create_app(config_path: Optional[str] = None) -> FastAPI:
    """创建并配置 FastAPI 应用"""

    # ── Phase 1: 引导加载 ──
    config, _ = bootstrap.init(config_path)
    app_logger = get_logger("main")

    # ── Phase 2: 任务存储 + 事件总线 ──
    task_store = TaskStore()
    event_bus = EventBus()

    push_client = None
    push_url = config.get("event_bus.url", "")
    if push_url:
        push_client = PushClient(
            event_bus,
            push_url,
            base_delay=config.get("event_bus.reconnect_base_delay", 1.0),
            max_delay=config.get("event_bus.reconnect_max_delay", 10.0),
            max_attempts=config.get("event_bus.max_reconnect_attempts", 5),
        )
    task_channel = TaskChannel(event_bus, push_client)

    # ── Phase 3: 业务服务 ──
    catalog_service = CatalogService(mock_delay=config.get("simulation.mock_delay", 0.0))
    catalog_service.seed()

    state_machine = TaskStateMachine(task_store)
    simulator = FlashSimulator.from_config(
        config, task_store, task_channel, on_finished=catalog_service.record_task_result
    )
    task_service = TaskService(
        task_store, state_machine, task_channel, simulator, catalog_service, config
    )
    if config.get("app.seed_tasks", True):
        task_service.seed()

    auth_service = AuthService(config)

    # ── 生命周期管理 ──
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app_logger.info("正在启动后台服务...")
        if push_client is not None:
            push_client.connect()
        task_service.resume_running()

        _print_ready_banner(config)
        yield

        app_logger.info("正在停止后台服务...")
        await simulator.stop_all()
        if push_client is not None:
            await push_client.disconnect()

    app = FastAPI(
        title=config.get("app.name"),
        version=config.get("app.version"),
        docs_url="/api/docs" if config.get("app.debug") else None,
        redoc_url=None,
        lifespan=lifespan,
    )

    # 全局状态挂载
    app.state.config = config
    app.state.task_store = task_store
    app.state.event_bus = event_bus
    app.state.task_channel = task_channel
    app.state.push_client = push_client
    app.state.state_machine = state_machine
    app.state.simulator = simulator
    app.state.catalog_service = catalog_service
    app.state.task_service = task_service
    app.state.auth_service = auth_service

    # ── 错误处理 ──
    @app.exception_handler(ApiError)
    async def handle_api_error(request: Request, exc: ApiError):
        if exc.status_code >= 500:
            app_logger.error(f"{request.method} {request.url.path} → {exc.code}: {exc.message}")
        else:
            app_logger.debug(f"{request.method} {request.url.path} → {exc.code}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        fields = {
            ".".join(str(p) for p in err["loc"] if p != "body"): err["msg"]
            for err in exc.errors()
        }
        app_logger.debug(f"{request.method} {request.url.path} → 请求参数错误: {fields}")
        error = ValidationError("请求参数错误", fields=fields, status_code=422)
        return JSONResponse(status_code=error.status_code, content=error.to_dict())

    # ── 认证中间件 ──
    class AuthMiddleware(BaseHTTPMiddleware):
        # 不需要认证的 API 路径前缀
        EXEMPT_PREFIXES = (
            f"{API_PREFIX}/auth/login",
            f"{API_PREFIX}/auth/status",
            f"{API_PREFIX}/system/",
        )

        async def dispatch(self, request, call_next):
            path = request.url.path

            if not path.startswith("/api/"):
                return await call_next(request)
            if path.startswith(self.EXEMPT_PREFIXES):
                return await call_next(request)

            if not auth_service.validate_token(extract_token(request)):
                error = AuthenticationError("未登录或会话已过期")
                return JSONResponse(status_code=error.status_code, content=error.to_dict())

            return await call_next(request)

    app.add_middleware(AuthMiddleware)

    app.include_router(v1_router)

    app_logger.info(f"FastAPI 应用创建完成: {config.get('app.name')} v{config.get('app.version')}")
    return app


def _print_ready_banner(config):
    """在所有启动日志之后打印就绪信息"""
    host = config.get("server.host", "0.0.0.0")
    port = config.get("server.port", 8310)

    if host in ("0.0.0.0", ""):
        try:
            local_ip = socket.gethostbyname(socket.gethostname())
        except OSError:
            local_ip = "127.0.0.1"
    else:
        local_ip = host

    cyan, green, bold, reset = "\033[96m", "\033[92m", "\033[1m", "\033[0m"
    lines = [
        f"{cyan}{'═' * 52}{reset}",
        f"{cyan}  {bold}{config.get('app.name')} v{config.get('app.version')}{reset}{cyan}  已就绪{reset}",
        f"{cyan}{'─' * 52}{reset}",
        f"  {green}访问地址{reset}  http://{local_ip}:{port}",
        f"  {green}接口文档{reset}  http://{local_ip}:{port}/api/docs",
        f"  {green}推送通道{reset}  ws://{local_ip}:{port}{API_PREFIX}/events/ws",
        f"{cyan}{'═' * 52}{reset}",
    ]
    print("\n" + "\n".join(lines) + "\n", flush=True)


def main():
    app = create_app()
    config = app.state.config
    uvicorn.run(
        app,
        host=config.get("server.host"),
        port=config.get("server.port"),
        log_level="info",
    )


if __name__ == "__main__":
    main()
