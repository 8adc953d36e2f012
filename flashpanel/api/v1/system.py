"""
系统信息 API（免认证）
"""

from fastapi import APIRouter, Request

router = APIRouter(prefix="/system", tags=["system"])


@router.get("/branding")
async def get_branding(request: Request):
    """面板名称与版本，供登录页使用"""
    config = request.app.state.config
    return {
        "name": config.get("app.name", "FlashPanel"),
        "version": config.get("app.version", "0.1.0"),
    }


@router.get("/health")
async def health(request: Request):
    return {
        "status": "ok",
        "tasks": len(request.app.state.task_store),
        "activeSimulations": request.app.state.simulator.active_count,
    }
