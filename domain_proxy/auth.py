# -*- coding: utf-8 -*-
"""
@FileName    : auth.py
@Author      : jiaxin
@Date        : 2026/10/13
@Time        : 09:12
@Description :
上游认证：为每个代理出去的请求生成 Authorization 头。
- StaticHeaderAuthenticator：固定值（AUTH_HEADER 或服务账号 JSON 密钥）
- MetadataServerAuthenticator：从元数据服务获取 token，过期前 5 分钟后台自动刷新
"""
import asyncio
import base64
import json
import os
import threading
import time
from abc import ABC, abstractmethod
from contextlib import suppress
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import httpx
from pydantic import ValidationError

from .logger import get_logger
from .schemas import MetadataTokenPayload
from .settings import AuthMode, Settings

logger = get_logger()

REFRESH_MARGIN = 5 * 60  # 秒，提前刷新的余量
METADATA_TOKEN_PATH = "/computeMetadata/v1/instance/service-accounts/default/token"


class MetadataTokenError(RuntimeError):
    pass


class Authenticator(ABC):
    """生成 Authorization 头的能力；start/stop 由应用 lifespan 调用"""

    @abstractmethod
    def auth_header(self) -> str:
        ...

    async def start(self) -> None:
        return None

    async def stop(self) -> None:
        return None


class StaticHeaderAuthenticator(Authenticator):
    def __init__(self, header: str):
        self._header = header

    def auth_header(self) -> str:
        return self._header


def service_account_key_header(key_file: str) -> str:
    """服务账号 JSON 密钥 → Basic base64("_json_key:<json>")"""
    raw = Path(key_file).read_text(encoding="utf-8")
    try:
        json.loads(raw)
    except ValueError as e:
        raise ValueError(f"service account key file {key_file} is not valid JSON: {e}") from e
    encoded = base64.b64encode(f"_json_key:{raw}".encode("utf-8")).decode("ascii")
    return f"Basic {encoded}"


# ======================
# 元数据服务 token
# ======================
def refresh_delay(expires_in: float) -> float:
    """token 签发后多久刷新：过期前 REFRESH_MARGIN 秒，最少 0"""
    return max(expires_in - REFRESH_MARGIN, 0.0)


@dataclass(frozen=True)
class MetadataToken:
    """不可变快照；刷新时整体替换，读者永远拿到完整的一份"""
    header: str
    expires_in: int
    issued_at: float = field(default_factory=time.monotonic)

    @property
    def refresh_in(self) -> float:
        return refresh_delay(self.expires_in)

    @property
    def refresh_at(self) -> float:
        return self.issued_at + self.refresh_in

    def seconds_until_refresh(self, now: Optional[float] = None) -> float:
        """距离刷新时间点还剩多少秒（按签发时间计算），已过期返回 0"""
        if now is None:
            now = time.monotonic()
        return max(self.refresh_at - now, 0.0)


def metadata_token_url(metadata_host: str) -> str:
    return f"http://{metadata_host}{METADATA_TOKEN_PATH}"


def _parse_token_response(resp: httpx.Response) -> MetadataToken:
    if resp.status_code != 200:
        raise MetadataTokenError(
            f"metadata server returned status {resp.status_code}: {resp.text[:500]}"
        )
    try:
        payload = MetadataTokenPayload.model_validate_json(resp.content)
    except ValidationError as e:
        raise MetadataTokenError(f"unexpected token payload from metadata server: {resp.text[:500]}") from e
    return MetadataToken(header=payload.header, expires_in=payload.expires_in)


def _exit_process() -> None:
    os._exit(1)


class MetadataServerAuthenticator(Authenticator):
    """
    Uninitialized → Valid(token, deadline) → Valid(token', deadline') → ...

    initialize() 同步拉取第一个 token（失败直接抛出，启动中止）；
    start() 之后由唯一的后台任务负责定时刷新。刷新失败被视为致命错误，
    调用 on_fatal（默认直接退出进程），不会带着过期 token 继续服务。
    """

    def __init__(
            self,
            metadata_host: str = "metadata",
            transport: Optional[httpx.BaseTransport] = None,
            timeout: float = 30.0,
            on_fatal: Callable[[], None] = _exit_process,
    ):
        self.url = metadata_token_url(metadata_host)
        self._transport = transport
        self._timeout = timeout
        self._on_fatal = on_fatal
        self._lock = threading.Lock()
        self._token: Optional[MetadataToken] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def token(self) -> MetadataToken:
        with self._lock:
            token = self._token
        if token is None:
            raise MetadataTokenError("metadata authenticator used before initialize()")
        return token

    def auth_header(self) -> str:
        return self.token.header

    def _store(self, token: MetadataToken) -> None:
        with self._lock:
            self._token = token
        logger.info(
            f"🔑 [认证] 已更新元数据 token → expires_in={token.expires_in}s | "
            f"{token.refresh_in:.0f}s 后刷新"
        )

    def initialize(self) -> None:
        """同步拉取第一个 token"""
        logger.info(f"🔐 [认证] 从元数据服务获取 token → {self.url}")
        with httpx.Client(transport=self._transport, timeout=self._timeout) as client:
            try:
                resp = client.get(self.url, headers={"Metadata-Flavor": "Google"})
            except httpx.HTTPError as e:
                raise MetadataTokenError(f"could not get token from metadata server: {e!r}") from e
        self._store(_parse_token_response(resp))

    async def refresh(self) -> None:
        async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
            try:
                resp = await client.get(self.url, headers={"Metadata-Flavor": "Google"})
            except httpx.HTTPError as e:
                raise MetadataTokenError(f"could not get token from metadata server: {e!r}") from e
        self._store(_parse_token_response(resp))

    async def _refresh_loop(self) -> None:
        while True:
            await asyncio.sleep(self.token.seconds_until_refresh())
            logger.info("🔄 [认证] 元数据 token 即将过期 → 开始刷新")
            try:
                await self.refresh()
            except Exception:
                logger.critical("💥 [认证] 刷新元数据 token 失败 → 进程退出", exc_info=True)
                self._on_fatal()
                return

    async def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._refresh_loop())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None


def build_authenticator(
        settings: Settings,
        transport: Optional[httpx.BaseTransport] = None
) -> Optional[Authenticator]:
    """把 settings.auth_mode 解析为具体的认证器，启动时调用一次"""
    mode = settings.auth_mode
    if mode is AuthMode.METADATA_SERVER:
        auth = MetadataServerAuthenticator(
            metadata_host=settings.metadata_host,
            transport=transport,
            timeout=settings.upstream_timeout,
        )
        auth.initialize()
        logger.info("🔐 [认证] 使用元数据服务 token 认证上游请求")
        return auth
    if mode is AuthMode.STATIC_HEADER:
        logger.info("🔐 [认证] 使用 AUTH_HEADER 认证上游请求")
        return StaticHeaderAuthenticator(settings.auth_header)
    if mode is AuthMode.SERVICE_ACCOUNT_KEY:
        logger.info("🔐 [认证] 使用服务账号 JSON 密钥认证上游请求")
        return StaticHeaderAuthenticator(service_account_key_header(settings.google_application_credentials))
    logger.info("🔓 [认证] 未配置认证，上游请求不带 Authorization")
    return None
