from __future__ import annotations

import json

import httpx
import pytest

from auth.credentials import (
    Credentials,
    FileCredentialStore,
    LocalTokenProvider,
    MemoryCredentialStore,
    RemoteTokenProvider,
    build_credentials,
)
from session.errors import CredentialError


def identity_service(requests: list[httpx.Request], *, issue_status: int = 200, body: dict | None = None):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path == RemoteTokenProvider.ISSUE_PATH:
            return httpx.Response(issue_status, json=body if body is not None else {"uuid": "dev-123"})
        if request.url.path == RemoteTokenProvider.ACTIVITY_PATH:
            return httpx.Response(200, json={"ok": True})
        return httpx.Response(404)

    return httpx.MockTransport(handler)


@pytest.mark.asyncio
async def test_remote_token_issued_then_cached() -> None:
    requests: list[httpx.Request] = []
    store = MemoryCredentialStore()
    provider = RemoteTokenProvider("http://identity.test/", transport=identity_service(requests))
    credentials = Credentials(store, provider)

    assert await credentials.get_token() == "dev-123"
    assert await credentials.get_token() == "dev-123"

    assert store.get() == "dev-123"
    assert [r.url.path for r in requests] == [RemoteTokenProvider.ISSUE_PATH]


@pytest.mark.asyncio
async def test_stored_token_reused_and_activity_reported_once() -> None:
    requests: list[httpx.Request] = []
    provider = RemoteTokenProvider("http://identity.test", transport=identity_service(requests))
    credentials = Credentials(MemoryCredentialStore("saved-token"), provider)

    assert await credentials.get_token() == "saved-token"
    assert await credentials.get_token() == "saved-token"

    assert [r.url.path for r in requests] == [RemoteTokenProvider.ACTIVITY_PATH]
    assert json.loads(requests[0].content) == {"uuid": "saved-token"}


@pytest.mark.asyncio
async def test_issue_failure_clears_store_and_raises() -> None:
    requests: list[httpx.Request] = []
    store = MemoryCredentialStore()
    provider = RemoteTokenProvider("http://identity.test", transport=identity_service(requests, issue_status=503))
    credentials = Credentials(store, provider)

    with pytest.raises(CredentialError):
        await credentials.get_token()
    assert store.get() is None


@pytest.mark.asyncio
async def test_response_without_uuid_is_a_credential_error() -> None:
    provider = RemoteTokenProvider("http://identity.test", transport=identity_service([], body={"id": 1}))

    with pytest.raises(CredentialError):
        await provider.issue()


@pytest.mark.asyncio
async def test_activity_failure_does_not_block_reuse() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500)

    provider = RemoteTokenProvider("http://identity.test", transport=httpx.MockTransport(handler))
    credentials = Credentials(MemoryCredentialStore("saved-token"), provider)

    assert await credentials.get_token() == "saved-token"


@pytest.mark.asyncio
async def test_local_provider_and_logout() -> None:
    store = MemoryCredentialStore()
    credentials = Credentials(store, LocalTokenProvider())

    first = await credentials.get_token()
    assert await credentials.get_token() == first

    credentials.logout()
    assert store.get() is None
    assert await credentials.get_token() != first


def test_file_store_roundtrip(tmp_path) -> None:
    path = tmp_path / "state" / "token.json"
    store = FileCredentialStore(path)

    assert store.get() is None
    store.set("tok-7")
    assert FileCredentialStore(path).get() == "tok-7"

    store.clear()
    assert store.get() is None
    store.clear()


def test_file_store_ignores_corrupt_file(tmp_path) -> None:
    path = tmp_path / "token.json"
    path.write_text("{not json", encoding="utf-8")

    assert FileCredentialStore(path).get() is None


def test_build_credentials_follows_settings(settings, tmp_path) -> None:
    local = build_credentials(settings)
    assert isinstance(local._provider, LocalTokenProvider)
    assert isinstance(local._store, MemoryCredentialStore)

    remote_settings = settings.model_copy(
        update={"credential_strategy": "remote", "credential_file": tmp_path / "token.json"}
    )
    remote = build_credentials(remote_settings)
    assert isinstance(remote._provider, RemoteTokenProvider)
    assert isinstance(remote._store, FileCredentialStore)
