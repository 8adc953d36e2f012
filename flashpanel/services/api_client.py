"""
FlashPanel REST 客户端

基于 httpx.AsyncClient：
- Bearer Token 认证
- HTTP 状态码 → 错误类型（400/422 验证、401 认证、403 权限、404、5xx 服务器）
- 网络错误 / 5xx 按固定间隔重试，其余错误直接抛出
"""

import asyncio
from typing import Any, Optional

import httpx

from flashpanel.core.errors import NetworkError, ServerError, error_from_status
from flashpanel.core.logger import get_logger

_logger = get_logger("services.api_client")


class FlashPanelClient:
    """
    使用方式：
        async with FlashPanelClient("http://127.0.0.1:8310/api/v1") as client:
            await client.login("admin", "admin")
            page = await client.list_items("tasks", status="running")
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10,
        retries: int = 3,
        retry_delay: float = 1.0,
        token: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._retries = retries
        self._retry_delay = retry_delay
        self._token = token
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_config(cls, config, **kwargs) -> "FlashPanelClient":
        return cls(
            base_url=config.get("client.base_url"),
            timeout=config.get("client.timeout", 10),
            retries=config.get("client.retries", 3),
            retry_delay=config.get("client.retry_delay", 1.0),
            **kwargs,
        )

    async def __aenter__(self) -> "FlashPanelClient":
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def close(self):
        await self._http.aclose()

    @property
    def token(self) -> Optional[str]:
        return self._token

    # ──────────────────────────────────────────
    # 请求
    # ──────────────────────────────────────────

    async def request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: Optional[dict] = None,
    ) -> Any:
        """
        发送请求并返回解析后的 JSON（204 返回 None）。

        Raises:
            ApiError 子类
        """
        attempt = 0
        while True:
            try:
                return await self._send(method, path, json=json, params=params)
            except (NetworkError, ServerError) as e:
                if attempt >= self._retries:
                    raise
                attempt += 1
                _logger.warning(f"{method} {path} 失败 ({e.code})，第 {attempt} 次重试")
                await asyncio.sleep(self._retry_delay)

    async def _send(self, method: str, path: str, json: Any = None, params: Optional[dict] = None) -> Any:
        headers = {}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        if params:
            params = {k: v for k, v in params.items() if v is not None}

        try:
            resp = await self._http.request(method, path, json=json, params=params, headers=headers)
        except httpx.TransportError as e:
            raise NetworkError(f"网络连接失败: {e}") from e

        if resp.status_code == 204:
            return None
        if resp.is_success:
            if "application/json" in resp.headers.get("content-type", ""):
                return resp.json()
            return resp.text

        raise error_from_status(resp.status_code, self._error_message(resp))

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return resp.reason_phrase
        if isinstance(body, dict):
            error = body.get("error")
            if isinstance(error, dict) and error.get("message"):
                return error["message"]
            if body.get("message"):
                return body["message"]
            if isinstance(body.get("detail"), str):
                return body["detail"]
        return resp.reason_phrase

    # ──────────────────────────────────────────
    # 便捷方法
    # ──────────────────────────────────────────

    async def login(self, username: str, password: str) -> dict:
        data = await self.request("POST", "/auth/login", json={"username": username, "password": password})
        self._token = data["token"]
        return data

    async def logout(self):
        await self.request("POST", "/auth/logout")
        self._token = None

    async def list_items(self, collection: str, page: int = 1, page_size: int = 10, **params) -> dict:
        return await self.request(
            "GET", f"/{collection}", params={"page": page, "pageSize": page_size, **params}
        )

    async def get(self, collection: str, item_id: str) -> dict:
        return await self.request("GET", f"/{collection}/{item_id}")

    async def create(self, collection: str, payload: dict) -> dict:
        return await self.request("POST", f"/{collection}", json=payload)

    async def update(self, collection: str, item_id: str, payload: dict) -> dict:
        return await self.request("PATCH", f"/{collection}/{item_id}", json=payload)

    async def delete(self, collection: str, item_id: str):
        await self.request("DELETE", f"/{collection}/{item_id}")

    async def update_task_status(self, task_id: str, status: str) -> dict:
        return await self.request("PATCH", f"/tasks/{task_id}/status", json={"status": status})

    async def task_stats(self) -> dict:
        return await self.request("GET", "/tasks/stats")

    async def start_flash(self, payload: dict) -> list[dict]:
        return await self.request("POST", "/flash/start", json=payload)

    async def validate_connection(self, payload: dict) -> dict:
        return await self.request("POST", "/flash/validate", json=payload)
