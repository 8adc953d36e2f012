"""
API 依赖

路由通过 request.app.state 取服务实例；这里集中处理 Token 提取与登录校验。
"""

from fastapi import Request
from starlette.requests import HTTPConnection

from flashpanel.core.errors import AuthenticationError

TOKEN_COOKIE = "token"


def extract_token(conn: HTTPConnection) -> str:
    """依次从 Authorization: Bearer、Cookie、?token= 中取 Token"""
    auth_header = conn.headers.get("authorization", "")
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip()
    token = conn.cookies.get(TOKEN_COOKIE, "")
    if token:
        return token
    return conn.query_params.get("token", "")


def require_session(request: Request) -> dict:
    """FastAPI 依赖：返回当前会话，未登录抛 AuthenticationError"""
    session = request.app.state.auth_service.validate_token(extract_token(request))
    if not session:
        raise AuthenticationError("未登录或会话已过期")
    return session
