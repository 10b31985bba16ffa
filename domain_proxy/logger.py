# -*- coding: utf-8 -*-
"""
@FileName    : logger.py
@Author      : jiaxin
@Date        : 2026/10/12
@Time        : 10:20
@Description :
"""
import logging

LOGGER_NAME = "registry-domain-proxy"


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """根据配置初始化全局日志"""
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        force=True  # 覆盖可能已存在的 root logger 配置
    )
    logger = logging.getLogger(LOGGER_NAME)
    logger.info(f"Logging initialized at level: {logging.getLevelName(level)}")
    return logger


def get_logger() -> logging.Logger:
    """获取统一命名的日志实例"""
    return logging.getLogger(LOGGER_NAME)
