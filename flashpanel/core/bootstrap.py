"""
引导加载器模块

Config 与 Logger 互相依赖：
1. 创建临时 Logger（仅 stderr）
2. 用临时 Logger 加载 Config
3. 用 Config 的 logging 段重新配置正式 Logger
"""

import logging
import os
from typing import Optional

from flashpanel.core.config import ConfigManager
from flashpanel.core.logger import create_temporary_logger, reconfigure_logger


def init(config_path: Optional[str] = None) -> tuple[ConfigManager, logging.Logger]:
    """
    初始化配置和日志。

    Args:
        config_path: 可选的配置文件路径

    Returns:
        (config, logger) 元组
    """
    temp_logger = create_temporary_logger()
    temp_logger.debug("引导加载器启动")

    config = ConfigManager(logger=temp_logger)
    config.load(config_path=config_path)

    # 日志目录相对于配置文件所在目录
    base_dir = os.path.dirname(config.config_file_path or config.project_root)
    logging_config = config.get("logging", {})
    logger = reconfigure_logger(logging_config, base_dir=base_dir)

    file_enabled = logging_config.get("file", {}).get("enabled", True)
    logger.info(
        f"日志系统已切换到正式模式 level={logging_config.get('level', 'INFO')} "
        f"file={'on' if file_enabled else 'off'}"
    )

    config.freeze()
    return config, logger
