"""
认证与会话管理

- 单管理员账号，来自配置 security.admin_user / security.admin_password
- 密码以 SHA-256 + salt 形式保存在内存
- Token 会话（默认 24 小时过期）
"""

import hashlib
import secrets
import time
from datetime import datetime
from typing import Optional

from flashpanel.core.errors import AuthenticationError
from flashpanel.core.logger import get_logger
from flashpanel.models.catalog import User, UserRole

_logger = get_logger("services.auth")

DEFAULT_TOKEN_EXPIRY = 86400


class AuthService:
    """认证与会话管理服务"""

    def __init__(self, config):
        self._admin_user = config.get("security.admin_user", "admin")
        self._password_hash = self._hash_password(config.get("security.admin_password", "admin"))
        self._token_expiry = config.get("security.token_expiry", DEFAULT_TOKEN_EXPIRY)

        # {token: {user, created_at, expires_at}}
        self._sessions: dict[str, dict] = {}

    def _hash_password(self, password: str) -> str:
        salt = secrets.token_hex(16)
        hashed = hashlib.sha256(f"{salt}:{password}".encode()).hexdigest()
        return f"{salt}:{hashed}"

    def _verify_password(self, password: str, stored_hash: str) -> bool:
        salt, hashed = stored_hash.split(":", 1)
        candidate = hashlib.sha256(f"{salt}:{password}".encode()).hexdigest()
        return secrets.compare_digest(candidate, hashed)

    def _user(self, last_login_at: Optional[datetime] = None) -> User:
        return User(
            id="1",
            username=self._admin_user,
            email=f"{self._admin_user}@example.com",
            role=UserRole.ADMIN,
            last_login_at=last_login_at,
        )

    def login(self, username: str, password: str) -> tuple[str, User]:
        """
        Returns:
            (token, user)

        Raises:
            AuthenticationError: 用户名或密码错误
        """
        if username != self._admin_user or not self._verify_password(password, self._password_hash):
            _logger.warning(f"登录失败: {username}")
            raise AuthenticationError("用户名或密码错误")

        self.cleanup_expired()
        token = secrets.token_urlsafe(32)
        now = time.time()
        self._sessions[token] = {
            "user": username,
            "created_at": now,
            "expires_at": now + self._token_expiry,
        }
        _logger.info(f"登录成功: {username}")
        return token, self._user(last_login_at=datetime.fromtimestamp(now))

    def logout(self, token: str) -> bool:
        session = self._sessions.pop(token, None)
        if session:
            _logger.info(f"用户注销: {session['user']}")
            return True
        return False

    def validate_token(self, token: str) -> Optional[dict]:
        """有效返回会话信息，无效或过期返回 None"""
        session = self._sessions.get(token)
        if not session:
            return None
        if time.time() > session["expires_at"]:
            del self._sessions[token]
            return None
        return session

    def current_user(self, token: str) -> Optional[User]:
        session = self.validate_token(token)
        if session is None:
            return None
        return self._user(last_login_at=datetime.fromtimestamp(session["created_at"]))

    def cleanup_expired(self) -> int:
        now = time.time()
        expired = [t for t, s in self._sessions.items() if now > s["expires_at"]]
        for token in expired:
            del self._sessions[token]
        return len(expired)
