"""
配置管理器模块

加载优先级（从低到高）：
1. 内置默认值
2. YAML 配置文件（默认 <项目根>/config.yaml，或 --config 指定）
3. 环境变量（APP_ 前缀，双下划线表示层级，如 APP_SIMULATION__TICK_INTERVAL=0.2）

支持点号路径访问（config.get("simulation.progress_step")）和冻结。
"""

import argparse
import copy
import logging
import os
from typing import Any, Optional

import yaml


_ENV_PREFIX = "APP_"
_ENV_SEPARATOR = "__"

# 数值配置项的合法区间（闭区间）
_NUMERIC_RANGES: dict[str, tuple[float, float]] = {
    "server.port": (1, 65535),
    "simulation.tick_interval": (0, 60),
    "simulation.progress_step": (1, 100),
    "simulation.start_delay": (0, 60),
    "simulation.failure_rate": (0, 1),
    "simulation.mock_delay": (0, 30),
    "event_bus.reconnect_base_delay": (0, 300),
    "event_bus.reconnect_max_delay": (0, 3600),
    "event_bus.max_reconnect_attempts": (0, 100),
    "client.retries": (0, 10),
}


# ──────────────────────────────────────────────
# 内置默认配置
# ──────────────────────────────────────────────

_BUILTIN_DEFAULTS: dict[str, Any] = {
    "app": {
        "name": "FlashPanel",
        "version": "0.1.0",
        "env": "development",
        "debug": True,
        # 启动时写入示例任务
        "seed_tasks": True,
    },
    "server": {
        "host": "0.0.0.0",
        "port": 8310,
    },
    "security": {
        "admin_user": "admin",
        "admin_password": "admin",
        "token_expiry": 86400,
    },
    "simulation": {
        # 每个 tick 的间隔秒数与进度步长
        "tick_interval": 1.5,
        "progress_step": 16,
        "start_delay": 0.5,
        # 每个 tick 随机失败的概率，0 表示永不失败
        "failure_rate": 0.0,
        # 模拟接口延迟（秒）
        "mock_delay": 0.0,
        "robot_steps": ["连接设备", "验证身份", "准备固件", "写入固件", "验证完整性", "重启设备"],
        "server_steps": ["连接服务器", "检查环境", "下载软件包", "安装软件", "配置服务", "启动服务"],
    },
    "event_bus": {
        # 为空时不建立外部推送连接
        "url": "",
        "reconnect_base_delay": 1.0,
        "reconnect_max_delay": 10.0,
        "max_reconnect_attempts": 5,
    },
    "client": {
        "base_url": "http://127.0.0.1:8310/api/v1",
        "timeout": 10,
        "retries": 3,
        "retry_delay": 1.0,
    },
    "logging": {
        "level": "DEBUG",
        "console": {
            "enabled": True,
            "colorize": True,
        },
        "file": {
            "enabled": True,
            "directory": "logs",
            "max_size_mb": 10,
            "backup_count": 5,
            "app_log": "app.log",
            "error_log": "error.log",
        },
        "format": "%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(message)s",
    },
}


# ──────────────────────────────────────────────
# 工具函数
# ──────────────────────────────────────────────

def _deep_merge(base: dict, override: dict) -> dict:
    """递归合并，override 覆盖 base"""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def _parse_env_value(value: str) -> Any:
    """把环境变量字符串解析为 bool / None / int / float / str"""
    lowered = value.lower()
    if lowered in ("true", "yes", "on"):
        return True
    if lowered in ("false", "no", "off"):
        return False
    if lowered in ("null", "none", ""):
        return None
    for cast in (int, float):
        try:
            return cast(value)
        except ValueError:
            pass
    return value


def _set_nested(data: dict, keys: list[str], value: Any):
    for key in keys[:-1]:
        if key not in data or not isinstance(data[key], dict):
            data[key] = {}
        data = data[key]
    data[keys[-1]] = value


def _get_nested(data: dict, keys: list[str], default: Any = None) -> Any:
    current = data
    for key in keys:
        if not isinstance(current, dict) or key not in current:
            return default
        current = current[key]
    return current


# ──────────────────────────────────────────────
# 配置管理器
# ──────────────────────────────────────────────

class ConfigManager:
    """
    配置管理器。

    使用方式：
        config = ConfigManager(logger=temp_logger)
        config.load()
        interval = config.get("simulation.tick_interval")
        config.freeze()
    """

    def __init__(self, logger: Optional[logging.Logger] = None):
        self._data: dict[str, Any] = {}
        self._frozen = False
        self._logger = logger or logging.getLogger(__name__)
        self._config_file_path: Optional[str] = None
        self._project_root = os.path.dirname(
            os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
        )

    def load(self, config_path: Optional[str] = None) -> "ConfigManager":
        """
        按优先级加载配置。

        Args:
            config_path: 配置文件路径；不传时读取 --config，
                         再回退到 <项目根>/config.yaml

        Returns:
            self（支持链式调用）
        """
        self._logger.info("开始加载配置系统")
        self._data = copy.deepcopy(_BUILTIN_DEFAULTS)

        path = config_path or self._parse_cli_args() or os.path.join(self._project_root, "config.yaml")
        self._config_file_path = os.path.abspath(path)

        if os.path.isfile(self._config_file_path):
            overrides = self._read_yaml(self._config_file_path)
            if overrides:
                self._data = _deep_merge(self._data, overrides)
                self._logger.info(f"已合并 YAML 配置（{len(overrides)} 个顶级键）")
        else:
            self._write_defaults(self._config_file_path)

        self._load_env_overrides()
        self._sanitize()
        self._log_effective_config()

        self._logger.info("配置系统加载完成")
        return self

    def _parse_cli_args(self) -> Optional[str]:
        parser = argparse.ArgumentParser(add_help=False)
        parser.add_argument("--config", type=str, default=None,
                            help="自定义配置文件路径")
        args, _ = parser.parse_known_args()

        if args.config:
            self._logger.info(f"命令行指定配置文件: {args.config}")
        return args.config

    def _read_yaml(self, path: str) -> Optional[dict]:
        """读取 YAML；解析失败或格式不对时记录日志并返回 None"""
        self._logger.info(f"正在加载配置文件: {path}")
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (yaml.YAMLError, OSError) as e:
            self._logger.error(f"读取配置文件失败: {e}，将使用内置默认配置")
            return None

        if data is None:
            self._logger.warning("配置文件为空，使用内置默认配置")
            return None
        if not isinstance(data, dict):
            self._logger.error(f"配置文件格式错误（期望字典，得到 {type(data).__name__}）")
            return None
        return data

    def _write_defaults(self, path: str):
        """首次运行时生成一份默认 config.yaml，便于修改"""
        self._logger.info(f"配置文件不存在，正在创建默认配置: {path}")
        try:
            os.makedirs(os.path.dirname(path), exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                yaml.safe_dump(_BUILTIN_DEFAULTS, f, allow_unicode=True, sort_keys=False)
        except OSError as e:
            self._logger.warning(f"生成默认配置文件失败: {e}，将使用内置默认配置")

    def _load_env_overrides(self):
        applied = 0
        for key, value in sorted(os.environ.items()):
            if not key.startswith(_ENV_PREFIX):
                continue
            parts = key[len(_ENV_PREFIX):].lower().split(_ENV_SEPARATOR)
            parsed = _parse_env_value(value)
            _set_nested(self._data, parts, parsed)
            self._logger.debug(f"环境变量覆盖: {'.'.join(parts)} = {parsed!r}")
            applied += 1

        if applied:
            self._logger.info(f"已应用 {applied} 个环境变量覆盖")

    def _sanitize(self):
        """模拟与推送参数越界时回退到默认值"""
        for key, (low, high) in _NUMERIC_RANGES.items():
            value = self.get(key)
            in_range = (
                isinstance(value, (int, float)) and not isinstance(value, bool)
                and low <= value <= high
            )
            if not in_range:
                fallback = _get_nested(_BUILTIN_DEFAULTS, key.split("."))
                self._logger.warning(f"配置项 {key}={value!r} 超出范围 [{low}, {high}]，使用默认值 {fallback}")
                _set_nested(self._data, key.split("."), fallback)

        for key in ("simulation.robot_steps", "simulation.server_steps"):
            steps = self.get(key)
            if not isinstance(steps, list) or not steps:
                self._logger.warning(f"配置项 {key} 必须是非空列表，使用默认值")
                _set_nested(self._data, key.split("."), list(_get_nested(_BUILTIN_DEFAULTS, key.split("."))))

    def _log_effective_config(self):
        self._logger.info("当前生效配置:")
        self._logger.info(f"  应用:       {self.get('app.name')} v{self.get('app.version')}")
        self._logger.info(f"  服务地址:   {self.get('server.host')}:{self.get('server.port')}")
        self._logger.info(
            f"  模拟刷机:   tick={self.get('simulation.tick_interval')}s "
            f"step={self.get('simulation.progress_step')}% "
            f"failure={self.get('simulation.failure_rate')}"
        )
        self._logger.info(f"  推送通道:   {self.get('event_bus.url') or '(本地)'}")
        self._logger.info(f"  配置文件:   {self._config_file_path}")

    # ──────────────────────────────────────────
    # 公共 API
    # ──────────────────────────────────────────

    def get(self, key: str, default: Any = None) -> Any:
        """
        按点号路径获取配置值，例如 config.get("server.port") -> 8310
        """
        return _get_nested(self._data, key.split("."), default)

    def set(self, key: str, value: Any):
        """
        Raises:
            RuntimeError: 配置已冻结时
        """
        if self._frozen:
            raise RuntimeError(f"配置已冻结，无法修改: {key}")
        _set_nested(self._data, key.split("."), value)

    def freeze(self):
        self._frozen = True
        self._logger.debug("配置已冻结，不再允许修改")

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)

    @property
    def config_file_path(self) -> Optional[str]:
        return self._config_file_path

    @property
    def project_root(self) -> str:
        return self._project_root

    def __repr__(self) -> str:
        status = "frozen" if self._frozen else "mutable"
        return f"<ConfigManager({status}, keys={list(self._data.keys())})>"
