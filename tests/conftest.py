import json
from typing import Callable, Optional

import httpx
import pytest
from fastapi.testclient import TestClient

from domain_proxy.app import create_app
from domain_proxy.auth import Authenticator
from domain_proxy.settings import RegistryConfig

REGISTRY = RegistryConfig(host="gcr.io", repo_prefix="myorg")
TOKEN_ENDPOINT = "https://auth.example.com/token"
PROXY_BASE_URL = "https://myproxy.example.org"


class FakeUpstream:
    """Stands in for the registry and its token service; records every request it receives."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.responder: Callable[[httpx.Request], httpx.Response] = lambda request: httpx.Response(
            200, content=b"ok"
        )
        # real transports hand back unread bodies; set False to return the responder's (already read) response
        self.stream_bodies = True

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responder(request)
        if not self.stream_bodies:
            return response
        return httpx.Response(
            response.status_code,
            headers=response.headers,
            stream=httpx.ByteStream(response.content),
        )

    @property
    def last(self) -> httpx.Request:
        return self.requests[-1]


def metadata_response(access_token: str, expires_in: int = 3600) -> httpx.Response:
    return httpx.Response(
        200,
        content=json.dumps(
            {"access_token": access_token, "expires_in": expires_in, "token_type": "Bearer"}
        ).encode(),
        headers={"content-type": "application/json"},
    )


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def make_client(upstream):
    def _make(
            authenticator: Optional[Authenticator] = None,
            browser_redirects: bool = True,
    ) -> TestClient:
        app = create_app(
            registry=REGISTRY,
            token_endpoint=TOKEN_ENDPOINT,
            authenticator=authenticator,
            browser_redirects=browser_redirects,
            transport=httpx.MockTransport(upstream),
        )
        return TestClient(app, base_url=PROXY_BASE_URL)

    return _make


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Isolate Settings() from the host environment and any config.yaml in the cwd."""
    for name in (
            "PORT", "LISTEN_HOST", "REGISTRY_HOST", "REPO_PREFIX", "DISABLE_BROWSER_REDIRECTS",
            "TLS_CERT", "TLS_KEY", "AUTH_HEADER", "GOOGLE_APPLICATION_CREDENTIALS",
            "USE_METADATA_SERVER", "METADATA_HOST", "UPSTREAM_TIMEOUT", "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CONFIG_FILE", str(tmp_path / "missing.yaml"))
    return monkeypatch
