import asyncio
import base64
import itertools
import json
import threading
import time

import httpx
import pytest

from domain_proxy import auth as auth_module
from domain_proxy.auth import (
    MetadataServerAuthenticator,
    MetadataToken,
    MetadataTokenError,
    StaticHeaderAuthenticator,
    build_authenticator,
    refresh_delay,
    service_account_key_header,
)
from domain_proxy.settings import Settings
from tests.conftest import metadata_response

_real_sleep = asyncio.sleep


def make_metadata_auth(handler, **kwargs) -> MetadataServerAuthenticator:
    return MetadataServerAuthenticator(transport=httpx.MockTransport(handler), **kwargs)


# ── static header ─────────────────────────────────────────────────────


def test_static_header_is_returned_verbatim():
    assert StaticHeaderAuthenticator("Basic abc").auth_header() == "Basic abc"


def test_service_account_key_becomes_basic_header(tmp_path):
    key = {"type": "service_account", "client_email": "proxy@example.iam.gserviceaccount.com"}
    key_file = tmp_path / "key.json"
    key_file.write_text(json.dumps(key))

    header = service_account_key_header(str(key_file))

    scheme, encoded = header.split(" ", 1)
    assert scheme == "Basic"
    assert base64.b64decode(encoded).decode() == f"_json_key:{json.dumps(key)}"


def test_malformed_service_account_key_is_rejected(tmp_path):
    key_file = tmp_path / "key.json"
    key_file.write_text("not json")

    with pytest.raises(ValueError):
        service_account_key_header(str(key_file))


def test_missing_service_account_key_is_rejected(tmp_path):
    with pytest.raises(OSError):
        service_account_key_header(str(tmp_path / "nope.json"))


# ── metadata server ───────────────────────────────────────────────────


def test_refresh_is_scheduled_five_minutes_before_expiry():
    assert refresh_delay(3600) == 3300
    assert refresh_delay(120) == 0


def test_initialize_fetches_token_from_metadata_server():
    seen = []

    def handler(request):
        seen.append(request)
        return metadata_response("abc", expires_in=3600)

    auth = make_metadata_auth(handler, metadata_host="metadata.internal")
    auth.initialize()

    assert auth.auth_header() == "Bearer abc"
    assert auth.token.expires_in == 3600
    assert auth.token.refresh_in == 3300
    assert auth.token.refresh_at - auth.token.issued_at == 3300
    assert str(seen[0].url) == \
        "http://metadata.internal/computeMetadata/v1/instance/service-accounts/default/token"
    assert seen[0].headers["metadata-flavor"] == "Google"


def test_header_before_initialize_is_an_error():
    auth = make_metadata_auth(lambda request: metadata_response("abc"))
    with pytest.raises(MetadataTokenError):
        auth.auth_header()


def test_initialize_fails_on_error_status():
    auth = make_metadata_auth(lambda request: httpx.Response(404, content=b"not found"))
    with pytest.raises(MetadataTokenError):
        auth.initialize()


def test_initialize_fails_on_bad_payload():
    auth = make_metadata_auth(lambda request: httpx.Response(200, content=b"{\"oops\": 1}"))
    with pytest.raises(MetadataTokenError):
        auth.initialize()


def test_initialize_fails_when_metadata_server_unreachable():
    def handler(request):
        raise httpx.ConnectError("no route to host", request=request)

    auth = make_metadata_auth(handler)
    with pytest.raises(MetadataTokenError):
        auth.initialize()


async def test_refresh_replaces_token():
    tokens = iter(["first", "second"])
    auth = make_metadata_auth(lambda request: metadata_response(next(tokens), expires_in=3600))
    auth.initialize()

    await auth.refresh()

    assert auth.auth_header() == "Bearer second"


def install_recording_sleep(monkeypatch) -> list:
    """Replace asyncio.sleep so the refresh loop records its delay and stops instead of waiting."""
    delays = []

    async def fake_sleep(delay, *args, **kwargs):
        if delay == 0:
            return await _real_sleep(0)
        delays.append(delay)
        raise asyncio.CancelledError

    monkeypatch.setattr(auth_module.asyncio, "sleep", fake_sleep)
    return delays


async def run_loop_once(auth: MetadataServerAuthenticator) -> None:
    await auth.start()
    for _ in range(3):
        await _real_sleep(0)
    await auth.stop()


async def test_refresh_loop_sleeps_until_five_minutes_before_expiry(monkeypatch):
    auth = make_metadata_auth(lambda request: metadata_response("abc", expires_in=3600))
    auth.initialize()
    delays = install_recording_sleep(monkeypatch)

    await run_loop_once(auth)

    assert len(delays) == 1
    assert 3299 < delays[0] <= 3300


async def test_refresh_is_timed_from_issuance_not_from_start(monkeypatch):
    auth = make_metadata_auth(lambda request: metadata_response("abc", expires_in=3600))
    auth._store(MetadataToken(header="Bearer abc", expires_in=3600, issued_at=time.monotonic() - 1000))
    delays = install_recording_sleep(monkeypatch)

    await run_loop_once(auth)

    assert len(delays) == 1
    assert 2299 < delays[0] <= 2300


def test_seconds_until_refresh():
    token = MetadataToken(header="Bearer abc", expires_in=3600, issued_at=100.0)

    assert token.refresh_at == 3400.0
    assert token.seconds_until_refresh(now=1100.0) == 2300.0
    assert token.seconds_until_refresh(now=5000.0) == 0.0


async def test_background_refresh_rearms_with_new_expiry():
    # first token expires within the refresh margin, so the loop refreshes right away
    responses = iter([
        metadata_response("short", expires_in=60),
        metadata_response("long", expires_in=3600),
    ])
    auth = make_metadata_auth(lambda request: next(responses))
    auth.initialize()

    await auth.start()
    for _ in range(50):
        if auth.auth_header() == "Bearer long":
            break
        await asyncio.sleep(0.01)
    await auth.stop()

    assert auth.auth_header() == "Bearer long"
    assert auth.token.refresh_in == 3300


async def test_refresh_failure_is_fatal():
    fatal = asyncio.Event()
    responses = iter([
        metadata_response("short", expires_in=60),
        httpx.Response(500, content=b"boom"),
    ])
    auth = make_metadata_auth(lambda request: next(responses), on_fatal=fatal.set)
    auth.initialize()

    await auth.start()
    await asyncio.wait_for(fatal.wait(), timeout=1)
    await auth.stop()

    # the last good token is still what readers see
    assert auth.auth_header() == "Bearer short"


async def test_concurrent_readers_never_see_torn_token():
    counter = itertools.count()
    issued = set()

    def handler(request):
        value = f"token-{next(counter):04d}-" + "x" * 512
        issued.add(f"Bearer {value}")
        return metadata_response(value, expires_in=3600)

    auth = make_metadata_auth(handler)
    auth.initialize()

    observed = set()
    stop = threading.Event()

    def reader():
        while not stop.is_set():
            observed.add(auth.auth_header())

    threads = [threading.Thread(target=reader) for _ in range(4)]
    for t in threads:
        t.start()
    try:
        for _ in range(20):
            await auth.refresh()
    finally:
        stop.set()
        for t in threads:
            t.join()

    assert observed
    assert observed <= issued


# ── selection ─────────────────────────────────────────────────────────


def test_no_authenticator_when_nothing_configured(clean_env):
    settings = Settings(port=8080, registry_host="gcr.io", repo_prefix="myorg")
    assert build_authenticator(settings) is None


def test_static_header_from_settings(clean_env):
    settings = Settings(port=8080, registry_host="gcr.io", repo_prefix="myorg", auth_header="Basic xyz")

    auth = build_authenticator(settings)

    assert isinstance(auth, StaticHeaderAuthenticator)
    assert auth.auth_header() == "Basic xyz"


def test_key_file_from_settings(clean_env, tmp_path):
    key_file = tmp_path / "key.json"
    key_file.write_text("{}")
    settings = Settings(
        port=8080, registry_host="gcr.io", repo_prefix="myorg",
        google_application_credentials=str(key_file),
    )

    auth = build_authenticator(settings)

    assert auth.auth_header().startswith("Basic ")


def test_metadata_server_from_settings_is_initialized(clean_env):
    settings = Settings(
        port=8080, registry_host="gcr.io", repo_prefix="myorg",
        use_metadata_server=True, auth_header="Basic ignored",
    )

    auth = build_authenticator(settings, transport=httpx.MockTransport(lambda request: metadata_response("m")))

    assert isinstance(auth, MetadataServerAuthenticator)
    assert auth.auth_header() == "Bearer m"
