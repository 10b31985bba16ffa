# -*- coding: utf-8 -*-
"""
@FileName    : cli.py
@Author      : jiaxin
@Date        : 2026/10/14
@Time        : 18:20
@Description :
启动入口：
1. 加载配置（环境变量 / config.yaml）
2. 探测上游 token endpoint
3. 初始化上游认证
4. 启动 uvicorn（可选 HTTPS）

以上任何一步失败都直接退出，不对外提供服务。
"""
import logging
import sys

import uvicorn
from fastapi import FastAPI
from pydantic import ValidationError

from .app import create_app
from .auth import MetadataTokenError, build_authenticator
from .discovery import TokenEndpointDiscoveryError, discover_token_endpoint
from .logger import get_logger, setup_logging
from .settings import Settings


def build_app(settings: Settings) -> FastAPI:
    token_endpoint = discover_token_endpoint(settings.registry_host, timeout=settings.upstream_timeout)
    authenticator = build_authenticator(settings)
    return create_app(
        registry=settings.registry,
        token_endpoint=token_endpoint,
        authenticator=authenticator,
        browser_redirects=settings.browser_redirects,
        timeout=settings.upstream_timeout,
    )


def main() -> None:
    try:
        settings = Settings()
    except ValidationError as e:
        setup_logging()
        get_logger().critical(f"❌ 配置无效 → {e}")
        sys.exit(1)

    logger = setup_logging(settings.log_level)
    logger.info(f"📚 上游注册表: {settings.registry_host} | 命名空间前缀: {settings.repo_prefix}")

    try:
        app = build_app(settings)
    except TokenEndpointDiscoveryError as e:
        logger.critical(f"❌ 无法发现上游 token endpoint → {e}")
        sys.exit(1)
    except MetadataTokenError as e:
        logger.critical(f"❌ 无法从元数据服务获取 token → {e}")
        sys.exit(1)
    except (OSError, ValueError) as e:
        logger.critical(f"❌ 无法加载认证信息 → {e}")
        sys.exit(1)

    ssl_args = {}
    if settings.tls_enabled:
        ssl_args = {
            "ssl_certfile": settings.tls_cert,
            "ssl_keyfile": settings.tls_key
        }
        logger.info(f"🔒 启动 HTTPS 代理服务 → https://{settings.listen_host}:{settings.port}")
    else:
        logger.info(f"🔌 启动 HTTP 代理服务 → http://{settings.listen_host}:{settings.port}")

    uvicorn.run(
        app,
        host=settings.listen_host,
        port=settings.port,
        reload=False,
        log_level=logging.getLevelName(logger.getEffectiveLevel()).lower(),
        **ssl_args
    )
    logger.info("server shutdown successfully")

