# -*- coding: utf-8 -*-
"""
@FileName    : app.py
@Author      : jiaxin
@Date        : 2026/10/14
@Time        : 16:48
@Description :
自定义域名 → 容器镜像注册表 反向代理：
- /v2/*      重写为 https://<host>/v2/<prefix>/* 并注入上游认证
- 响应中的 WWW-Authenticate realm 重写为本地 /_token
- /_token    代理 token 请求，scope 中注入命名空间前缀
- /healthz   健康检查
- 其他路径   307 跳转到上游的网页界面（可关闭）
"""
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.responses import RedirectResponse, StreamingResponse
from starlette.background import BackgroundTask
from starlette.datastructures import Headers

from . import __version__
from .auth import Authenticator
from .logger import get_logger
from .rewrite import (
    TOKEN_PATH,
    extract_realm,
    rewrite_realm,
    rewrite_registry_url,
    rewrite_token_query,
    token_endpoint_url,
)
from .schemas import HealthCheckResponse
from .settings import RegistryConfig
from .utils import describe_error, handle_headers, request_body, response_raw_headers

logger = get_logger()

USER_AGENT = "registry-domain-proxy/0.1"
PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


@dataclass(frozen=True)
class RequestContext:
    """单个入站请求的上下文，显式传给代理函数"""
    original_host: str


@dataclass
class ProxyState:
    registry: RegistryConfig
    token_endpoint: str
    authenticator: Optional[Authenticator] = None
    timeout: float = 60.0
    transport: Optional[httpx.AsyncBaseTransport] = None
    client: Optional[httpx.AsyncClient] = None


# ======================
# 中间件：记录入站请求的原始 Host
# ======================
async def capture_host_header(request: Request, call_next):
    request.state.original_host = request.headers.get("host", "")
    return await call_next(request)


def get_request_context(request: Request) -> RequestContext:
    return RequestContext(original_host=request.state.original_host)


def get_proxy_state(request: Request) -> ProxyState:
    return request.app.state.proxy


# ======================
# 出站请求头：认证 / User-Agent / Accept
# ======================
def registry_request_headers(
        request_headers: Headers,
        ctx: RequestContext,
        authenticator: Optional[Authenticator]
) -> dict[str, str]:
    headers = handle_headers(request_headers)
    if authenticator is not None:
        headers["authorization"] = authenticator.auth_header()

    user_agent = headers.get("user-agent")
    if user_agent:
        headers["user-agent"] = f"{USER_AGENT} customDomain/{ctx.original_host} {user_agent}"

    # 上游内容协商有问题，统一接受任意类型
    headers["accept"] = "*/*"
    return headers


# ======================
# 响应头：重写 WWW-Authenticate realm
# ======================
def rewrite_challenge_headers(upstream_headers: httpx.Headers, original_host: str) -> list[tuple[str, str]]:
    items = []
    for key, value in upstream_headers.multi_items():
        if key.lower() == "www-authenticate":
            if extract_realm(value) is None:
                logger.warning(f"⚠️ [认证] WWW-Authenticate 头中未找到 realm 字段 → 跳过重写: {value}")
            else:
                value = rewrite_realm(value, original_host)
                logger.debug(f"🔄 [认证] 重写 realm → {value}")
        items.append((key, value))
    return items


def stream_upstream_response(
        upstream_resp: httpx.Response,
        headers: list[tuple[str, str]]
) -> Response:
    """按原始字节透传上游响应体，结束后关闭上游连接"""
    if upstream_resp.is_stream_consumed:
        # 响应体已被读取（已解码），不能再按原始字节透传
        content = upstream_resp.content
        response = Response(content=content, status_code=upstream_resp.status_code)
        response.raw_headers = [
            (key, value) for key, value in response_raw_headers(headers)
            if key not in (b"content-length", b"content-encoding")
        ]
        response.raw_headers.append((b"content-length", str(len(content)).encode("latin-1")))
        return response

    response = StreamingResponse(
        upstream_resp.aiter_raw(),
        status_code=upstream_resp.status_code,
        background=BackgroundTask(upstream_resp.aclose),
    )
    response.raw_headers = response_raw_headers(headers)
    return response


router = APIRouter()


# ======================
# 健康检查端点
# ======================
@router.get("/healthz", response_model=HealthCheckResponse, summary="健康检查")
async def health_check():
    """返回服务运行状态，用于 K8s/Liveness Probe"""
    logger.debug("🩺 [健康检查] 收到探测请求")
    return HealthCheckResponse(status="ok", message="registry-domain-proxy is running", version=__version__)


# ======================
# token 代理端点：/_token
# ======================
@router.api_route(TOKEN_PATH, methods=PROXY_METHODS, summary="代理 token 请求到上游")
async def token_proxy(request: Request, proxy: ProxyState = Depends(get_proxy_state)):
    """
    客户端按重写后的 realm 来这里换 token。
    scope=repository:foo/bar:pull → scope=repository:<prefix>/foo/bar:pull，
    然后转发到启动时发现的上游 token endpoint。
    """
    query = request.url.query
    new_query = rewrite_token_query(query, proxy.registry.repo_prefix)
    target_url = token_endpoint_url(proxy.token_endpoint, new_query)
    if new_query != query:
        logger.info(f"🔐 [认证] 重写 token 请求 → {request.url} => {target_url}")
    else:
        logger.info(f"🔐 [认证] 转发 token 请求 → {target_url}")

    upstream_req = proxy.client.build_request(
        request.method,
        target_url,
        headers=handle_headers(request.headers),
        content=request_body(request),
    )
    try:
        upstream_resp = await proxy.client.send(upstream_req, stream=True)
    except httpx.HTTPError as e:
        logger.exception(f"🚨 [认证] 代理 token 请求失败 → {target_url} | {describe_error(e)}")
        return Response(status_code=502, content="认证服务不可达")

    logger.info(f"✅ [认证] 上游返回状态码: {upstream_resp.status_code}")
    return stream_upstream_response(upstream_resp, upstream_resp.headers.multi_items())


# ======================
# /v2 → /v2/（不能落到浏览器跳转的兜底路由上）
# ======================
@router.api_route("/v2", methods=PROXY_METHODS, include_in_schema=False)
async def registry_api_slash_redirect(request: Request):
    target = "/v2/"
    if request.url.query:
        target += "?" + request.url.query
    return RedirectResponse(target, status_code=301)


# ======================
# 主代理路由：/v2/{path}
# ======================
@router.api_route("/v2/{path:path}", methods=PROXY_METHODS, summary="注册表 API 代理入口")
async def registry_api_proxy(
        request: Request,
        ctx: RequestContext = Depends(get_request_context),
        proxy: ProxyState = Depends(get_proxy_state),
):
    """
    核心代理逻辑：
    1. 重写 URL（注入命名空间前缀）
    2. 设置 Authorization / User-Agent / Accept
    3. 转发给上游，不重试、不跟随重定向
    4. 重写响应中的 WWW-Authenticate realm
    """
    upstream_url = rewrite_registry_url(httpx.URL(str(request.url)), proxy.registry)
    logger.info(f"➡️ [代理] {request.method} {request.url} → {upstream_url}")

    upstream_req = proxy.client.build_request(
        request.method,
        upstream_url,
        headers=registry_request_headers(request.headers, ctx, proxy.authenticator),
        content=request_body(request),
    )
    try:
        upstream_resp = await proxy.client.send(upstream_req, stream=True)
    except httpx.HTTPError as e:
        logger.exception(f"🔥 [代理] 请求上游失败 → Target: {upstream_url} | {describe_error(e)}")
        return Response(status_code=502, content="网关错误（Bad Gateway）")

    logger.info(f"📡 [代理] 请求完成 → Status: {upstream_resp.status_code} | URL: {upstream_url}")
    headers = rewrite_challenge_headers(upstream_resp.headers, ctx.original_host)
    return stream_upstream_response(upstream_resp, headers)


# ======================
# 浏览器跳转：example.com/my-image → https://<host>/<prefix>/my-image
# ======================
async def browser_redirect(request: Request, proxy: ProxyState = Depends(get_proxy_state)):
    request_uri = request.url.path
    if request.url.query:
        request_uri += "?" + request.url.query
    target = f"https://{proxy.registry.host}/{proxy.registry.repo_prefix}{request_uri}"
    logger.debug(f"↪️ [跳转] {request_uri} → {target}")
    return RedirectResponse(target, status_code=307)


@asynccontextmanager
async def lifespan(app: FastAPI):
    proxy: ProxyState = app.state.proxy
    proxy.client = httpx.AsyncClient(
        transport=proxy.transport,
        timeout=httpx.Timeout(proxy.timeout),
        follow_redirects=False,
    )
    if proxy.authenticator is not None:
        await proxy.authenticator.start()
    try:
        yield
    finally:
        if proxy.authenticator is not None:
            await proxy.authenticator.stop()
        await proxy.client.aclose()


def create_app(
        registry: RegistryConfig,
        token_endpoint: str,
        authenticator: Optional[Authenticator] = None,
        browser_redirects: bool = True,
        timeout: float = 60.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
) -> FastAPI:
    app = FastAPI(
        title="Registry Domain Proxy",
        description="把容器镜像注册表挂到自定义域名下的反向代理，支持路径 / 认证 / token scope 重写",
        version=__version__,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )
    app.state.proxy = ProxyState(
        registry=registry,
        token_endpoint=token_endpoint,
        authenticator=authenticator,
        timeout=timeout,
        transport=transport,
    )
    app.middleware("http")(capture_host_header)
    app.include_router(router)
    if browser_redirects:
        # 必须最后注册，兜底匹配其余所有路径
        app.add_api_route("/{path:path}", browser_redirect, methods=PROXY_METHODS, include_in_schema=False)
    return app
