"""
错误类型

所有业务失败都以 ApiError 子类抛出，由 API 层统一渲染为
{"success": false, "error": {"code", "message", "details"}}。
"""

from typing import Any, Optional


class ApiError(Exception):
    """通用接口错误"""

    code = "UNKNOWN_ERROR"
    status_code = 500
    default_message = "未知错误"

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        details: Any = None,
        status_code: Optional[int] = None,
    ):
        self.message = message or self.default_message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": {
                "code": self.code,
                "message": self.message,
                "details": self.details,
            },
        }


class NetworkError(ApiError):
    code = "NETWORK_ERROR"
    status_code = 503
    default_message = "网络连接失败"


class AuthenticationError(ApiError):
    code = "AUTHENTICATION_ERROR"
    status_code = 401
    default_message = "认证失败"


class PermissionError(ApiError):  # noqa: A001
    code = "PERMISSION_ERROR"
    status_code = 403
    default_message = "权限不足"


class ValidationError(ApiError):
    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "数据验证失败"

    def __init__(self, message: Optional[str] = None, fields: Optional[dict[str, str]] = None, **kwargs):
        super().__init__(message, details=fields, **kwargs)
        self.fields = fields or {}


class ServerError(ApiError):
    code = "SERVER_ERROR"
    status_code = 500
    default_message = "服务器内部错误"


class NotFoundError(ApiError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "资源不存在"


class TaskNotFoundError(NotFoundError):
    default_message = "任务不存在"

    def __init__(self, task_id: str):
        super().__init__(f"任务不存在: {task_id}", details={"task_id": task_id})
        self.task_id = task_id


class InvalidTransitionError(ValidationError):
    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(self, task_id: str, current: str, target: str):
        super().__init__(f"任务 {task_id} 不允许从 {current} 切换到 {target}")
        self.details = {"task_id": task_id, "from": current, "to": target}
        self.task_id = task_id
        self.current = current
        self.target = target


def error_from_status(status: int, message: str = "") -> ApiError:
    """按 HTTP 状态码构造对应的错误类型"""
    if status in (400, 422):
        return ValidationError(message or None, status_code=status)
    if status == 401:
        return AuthenticationError(message or None)
    if status == 403:
        return PermissionError(message or None)
    if status == 404:
        return NotFoundError(message or None)
    if status >= 500:
        return ServerError(message or None, status_code=status)
    return ApiError(message or None, status_code=status)
