# -*- coding: utf-8 -*-
"""
@FileName    : rewrite.py
@Author      : jiaxin
@Date        : 2026/10/12
@Time        : 11:02
@Description :
纯函数：请求/响应重写
- /v2/* → https://<host>/v2/<prefix>/*（/v2/ 原样保留）
- WWW-Authenticate 中的 realm → https://<原始域名>/_token
- token 请求 scope 中的 repository: → repository:<prefix>/
"""
import re
from urllib.parse import parse_qsl, urlencode

import httpx

from .settings import RegistryConfig

API_VERSION_PATH = "/v2/"
TOKEN_PATH = "/_token"

V2_PREFIX_RE = re.compile(r"^/v2/")
REALM_RE = re.compile(r'realm="(.*?)"')


def rewrite_registry_path(path: str, repo_prefix: str) -> str:
    """/v2/<rest> → /v2/<prefix>/<rest>；/v2/ 本身是 API 探测，不改写"""
    if path == API_VERSION_PATH:
        return path
    return V2_PREFIX_RE.sub(f"/v2/{repo_prefix}/", path, count=1)


def rewrite_registry_url(url: httpx.URL, registry: RegistryConfig) -> httpx.URL:
    """
    把入站请求 URL 映射为上游 URL：
    - scheme 固定为 https
    - host 换成上游注册表
    - 路径注入命名空间前缀，query 原样保留
    """
    return url.copy_with(
        scheme="https",
        host=registry.host,
        port=None,
        path=rewrite_registry_path(url.path, registry.repo_prefix),
    )


def extract_realm(www_authenticate: str) -> str | None:
    match = REALM_RE.search(www_authenticate)
    if not match:
        return None
    return match.group(1)


def local_token_realm(original_host: str) -> str:
    return f"https://{original_host}{TOKEN_PATH}"


def rewrite_realm(www_authenticate: str, original_host: str) -> str:
    """
    Bearer realm="https://auth.docker.io/token",service="registry.docker.io"
    → Bearer realm="https://<original_host>/_token",service="registry.docker.io"

    未找到 realm 时原样返回。
    """
    new_realm = local_token_realm(original_host)
    return REALM_RE.sub(lambda _: f'realm="{new_realm}"', www_authenticate)


def rewrite_scope(scope: str, repo_prefix: str) -> str:
    """repository:foo/bar:pull → repository:<prefix>/foo/bar:pull（只替换第一次出现）"""
    return scope.replace("repository:", f"repository:{repo_prefix}/", 1)


def rewrite_token_query(query: str, repo_prefix: str) -> str:
    """
    重写 token 请求的 query。没有 scope 参数时原样返回；
    有多个 scope 参数时逐个改写，其余参数保持顺序。
    """
    params = parse_qsl(query, keep_blank_values=True)
    if not any(key == "scope" for key, _ in params):
        return query
    rewritten = [
        (key, rewrite_scope(value, repo_prefix) if key == "scope" else value)
        for key, value in params
    ]
    return urlencode(rewritten)


def token_endpoint_url(token_endpoint: str, query: str) -> httpx.URL:
    """把（已重写的）query 拼到 token endpoint 上，endpoint 自带的 query 保留在前"""
    endpoint = httpx.URL(token_endpoint)
    if not query:
        return endpoint
    existing = endpoint.query.decode("ascii")
    merged = f"{existing}&{query}" if existing else query
    return endpoint.copy_with(query=merged.encode("ascii"))
