# -*- coding: utf-8 -*-
"""
@FileName    : discovery.py
@Author      : jiaxin
@Date        : 2026/10/12
@Time        : 11:40
@Description :
启动时探测上游 /v2/，从 401 的 WWW-Authenticate 中取出 realm 作为 token endpoint。
探测失败时服务不应启动。
"""
import httpx

from .logger import get_logger
from .rewrite import API_VERSION_PATH, extract_realm

logger = get_logger()


class TokenEndpointDiscoveryError(RuntimeError):
    pass


def discover_token_endpoint(
        registry_host: str,
        client: httpx.Client | None = None,
        timeout: float = 30.0
) -> str:
    url = f"https://{registry_host}{API_VERSION_PATH}"
    logger.info(f"🔍 [发现] 探测上游 token endpoint → {url}")

    own_client = client is None
    if own_client:
        client = httpx.Client(timeout=timeout)
    try:
        resp = client.get(url)
    except httpx.HTTPError as e:
        raise TokenEndpointDiscoveryError(f"failed to query the registry host {registry_host}: {e!r}") from e
    finally:
        if own_client:
            client.close()

    www_auth = resp.headers.get("www-authenticate", "")
    if not www_auth:
        raise TokenEndpointDiscoveryError(
            f"www-authenticate header not returned from {url}, cannot locate token endpoint"
        )

    realm = extract_realm(www_auth)
    if not realm:
        raise TokenEndpointDiscoveryError(
            f"cannot locate 'realm' in {url} response header www-authenticate: {www_auth}"
        )

    logger.info(f"🔑 [发现] 上游 token endpoint: {realm}")
    return realm
