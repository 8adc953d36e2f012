"""
日志工具模块

基于标准 logging，提供：
- 控制台彩色输出（仅级别名与消息着色）
- app.log / error.log 两路轮转文件
- 引导阶段的临时 Logger，配置加载后重新接管
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional


_RESET = "\033[0m"

# 级别 → ANSI 颜色
_LEVEL_COLORS: dict[int, str] = {
    logging.DEBUG:    "\033[96m",
    logging.INFO:     "\033[92m",
    logging.WARNING:  "\033[93m",
    logging.ERROR:    "\033[91m",
    logging.CRITICAL: "\033[41m\033[97m\033[1m",
}

_DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s:%(funcName)s:%(lineno)d | %(message)s"
_DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# 所有子 Logger 都挂在这个根名下
_ROOT_LOGGER_NAME = "flashpanel"

_manager: Optional["LogManager"] = None


class ColoredFormatter(logging.Formatter):
    """控制台 Formatter，着色后恢复 record，避免污染文件 Handler"""

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None,
                 colorize: bool = True):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self._colorize = colorize

    def format(self, record: logging.LogRecord) -> str:
        if not self._colorize:
            return super().format(record)

        orig_levelname = record.levelname
        orig_msg = record.msg
        color = _LEVEL_COLORS.get(record.levelno, "")

        record.levelname = f"{color}{record.levelname:<8}{_RESET}"
        record.msg = f"{color}{record.msg}{_RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = orig_levelname
            record.msg = orig_msg


class LogManager:
    """
    管理根 Logger 上 Handler 的生命周期。

    1. setup_temporary(): 引导阶段，仅 stderr
    2. reconfigure(cfg):  按 logging 配置段安装 Console/File Handler
    """

    def __init__(self):
        self._root_logger = logging.getLogger(_ROOT_LOGGER_NAME)
        self._handlers: list[logging.Handler] = []
        self._configured = False

    @property
    def logger(self) -> logging.Logger:
        return self._root_logger

    @property
    def is_configured(self) -> bool:
        return self._configured

    def _install(self, handler: logging.Handler):
        self._root_logger.addHandler(handler)
        self._handlers.append(handler)

    def _clear_handlers(self):
        for handler in self._handlers:
            self._root_logger.removeHandler(handler)
            handler.close()
        self._handlers.clear()

    def setup_temporary(self) -> logging.Logger:
        self._clear_handlers()
        self._root_logger.setLevel(logging.DEBUG)

        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(ColoredFormatter(
            fmt="%(asctime)s | %(levelname)-8s | [BOOT] %(message)s",
            datefmt=_DEFAULT_DATE_FORMAT,
        ))
        self._install(handler)
        return self._root_logger

    def reconfigure(self, config: dict, base_dir: Optional[str] = None) -> logging.Logger:
        """
        Args:
            config: logging 配置段
            base_dir: 相对日志目录的基准路径，默认是项目根目录
        """
        self._clear_handlers()

        level = getattr(logging, str(config.get("level", "INFO")).upper(), logging.INFO)
        self._root_logger.setLevel(level)
        log_format = config.get("format", _DEFAULT_FORMAT)

        console_cfg = config.get("console", {})
        if console_cfg.get("enabled", True):
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(level)
            console_handler.setFormatter(ColoredFormatter(
                fmt=log_format,
                datefmt=_DEFAULT_DATE_FORMAT,
                colorize=console_cfg.get("colorize", True),
            ))
            self._install(console_handler)

        file_cfg = config.get("file", {})
        if file_cfg.get("enabled", True):
            log_dir = file_cfg.get("directory", "logs")
            if not os.path.isabs(log_dir):
                if base_dir is None:
                    base_dir = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
                log_dir = os.path.join(base_dir, log_dir)
            os.makedirs(log_dir, exist_ok=True)

            max_bytes = file_cfg.get("max_size_mb", 10) * 1024 * 1024
            backup_count = file_cfg.get("backup_count", 5)
            file_formatter = logging.Formatter(fmt=log_format, datefmt=_DEFAULT_DATE_FORMAT)

            # app.log 记录所有级别，error.log 仅 ERROR+
            for filename, handler_level in (
                (file_cfg.get("app_log", "app.log"), level),
                (file_cfg.get("error_log", "error.log"), logging.ERROR),
            ):
                handler = RotatingFileHandler(
                    os.path.join(log_dir, filename),
                    maxBytes=max_bytes,
                    backupCount=backup_count,
                    encoding="utf-8",
                )
                handler.setLevel(handler_level)
                handler.setFormatter(file_formatter)
                self._install(handler)

        self._configured = True
        return self._root_logger


def _get_manager() -> LogManager:
    global _manager
    if _manager is None:
        _manager = LogManager()
    return _manager


def create_temporary_logger() -> logging.Logger:
    """引导阶段使用的临时 Logger（stderr，DEBUG，带 [BOOT] 前缀）"""
    return _get_manager().setup_temporary()


def reconfigure_logger(config: dict, base_dir: Optional[str] = None) -> logging.Logger:
    """清除临时 Handler，按配置安装正式 Handler"""
    return _get_manager().reconfigure(config, base_dir=base_dir)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    获取子 Logger，例如 get_logger("services.task") → flashpanel.services.task
    """
    if name is None:
        return logging.getLogger(_ROOT_LOGGER_NAME)
    return logging.getLogger(f"{_ROOT_LOGGER_NAME}.{name}")
