"""
认证 API

登录 / 注销 / 当前用户 / 状态检查
"""

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel

from flashpanel.api.deps import TOKEN_COOKIE, extract_token, require_session
from flashpanel.core.errors import AuthenticationError, ValidationError
from flashpanel.core.logger import get_logger

router = APIRouter(prefix="/auth", tags=["auth"])
_logger = get_logger("api.auth")


class LoginRequest(BaseModel):
    username: str = ""
    password: str = ""


@router.post("/login")
async def login(body: LoginRequest, request: Request, response: Response):
    """用户登录，Token 同时写入 Cookie 和响应体"""
    if not body.username or not body.password:
        raise ValidationError("请输入用户名和密码")

    auth_service = request.app.state.auth_service
    token, user = auth_service.login(body.username, body.password)

    response.set_cookie(
        key=TOKEN_COOKIE,
        value=token,
        httponly=True,
        max_age=request.app.state.config.get("security.token_expiry", 86400),
        samesite="lax",
    )
    return {"success": True, "token": token, "user": user}


@router.post("/logout")
async def logout(request: Request, response: Response):
    request.app.state.auth_service.logout(extract_token(request))
    response.delete_cookie(TOKEN_COOKIE)
    return {"success": True}


@router.get("/me")
async def current_user(request: Request, session: dict = Depends(require_session)):
    user = request.app.state.auth_service.current_user(extract_token(request))
    if user is None:
        raise AuthenticationError("未登录或会话已过期")
    return user


@router.get("/status")
async def auth_status(request: Request):
    session = request.app.state.auth_service.validate_token(extract_token(request))
    if session:
        return {"authenticated": True, "user": session["user"]}
    return {"authenticated": False}
