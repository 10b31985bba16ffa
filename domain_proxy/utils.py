# -*- coding: utf-8 -*-
"""
@FileName    : utils.py
@Author      : jiaxin
@Date        : 2026/10/13
@Time        : 14:30
@Description :
工具函数模块，包含：
- 请求头处理（转发给上游前）
- 响应头处理（返回给客户端前）
- 请求体流式转发
"""
from typing import AsyncIterator, Iterable, Optional

import httpx
from fastapi import Request
from starlette.datastructures import Headers

from .logger import get_logger

logger = get_logger()

# 逐跳头，不能跨代理转发
HOP_BY_HOP_HEADERS = frozenset({
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "transfer-encoding",
    "upgrade",
})


# ======================
# 请求头处理：合并重复头 + 去掉 Host / 逐跳头
# ======================
def handle_headers(request_headers: Headers) -> dict[str, str]:
    """
    将 Starlette 的 Headers 转换为标准 dict，并：
    - 合并重复的 header → 用逗号连接（符合 RFC）
    - 移除 'host'（由 httpx 按目标 URL 自动设置）和逐跳头
    - 所有 header key 转为小写（HTTP 规范不区分大小写）
    """
    header_dict: dict[str, str] = {}

    for key, value in request_headers.raw:
        key_str = key.decode("latin-1").lower()
        val_str = value.decode("latin-1")

        if key_str == "host" or key_str in HOP_BY_HOP_HEADERS:
            continue

        if key_str in header_dict:
            header_dict[key_str] = f"{header_dict[key_str]},{val_str}"
        else:
            header_dict[key_str] = val_str

    logger.debug(f"🔧 [Headers] 已处理请求头 → 共 {len(header_dict)} 项")
    return header_dict


# ======================
# 响应头处理：保留重复头（Set-Cookie / 多个 WWW-Authenticate）
# ======================
def response_raw_headers(headers: Iterable[tuple[str, str]]) -> list[tuple[bytes, bytes]]:
    """上游响应头 → ASGI raw headers。响应体按原始字节透传，所以 content-encoding 保留。"""
    raw: list[tuple[bytes, bytes]] = []
    for key, value in headers:
        if key.lower() in HOP_BY_HOP_HEADERS:
            continue
        raw.append((key.lower().encode("latin-1"), value.encode("latin-1")))
    return raw


# ======================
# 请求体：有 body 时流式转发，避免把 blob 整个读进内存
# ======================
def request_body(request: Request) -> Optional[AsyncIterator[bytes]]:
    content_length = request.headers.get("content-length")
    chunked = "chunked" in request.headers.get("transfer-encoding", "").lower()
    if not chunked and (not content_length or content_length == "0"):
        return None

    async def _body_stream():
        """生成器：逐块读取客户端上传内容"""
        async for chunk in request.stream():
            yield chunk

    return _body_stream()


def describe_error(e: httpx.HTTPError) -> str:
    return f"{type(e).__name__}: {e}"
