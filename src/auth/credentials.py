"""Bearer token storage and provisioning.

The token is an opaque credential: fetched (or generated) once, cached in a
store, reused across transport reconnects and cleared on logout.
"""

from __future__ import annotations

import json
import logging
import uuid
from abc import ABC, abstractmethod
from pathlib import Path

import httpx

from config.settings import Settings, get_settings
from session.errors import CredentialError

LOGGER = logging.getLogger(__name__)


class CredentialStore(ABC):
    @abstractmethod
    def get(self) -> str | None: ...

    @abstractmethod
    def set(self, token: str) -> None: ...

    @abstractmethod
    def clear(self) -> None: ...


class MemoryCredentialStore(CredentialStore):
    def __init__(self, token: str | None = None) -> None:
        self._token = token

    def get(self) -> str | None:
        return self._token

    def set(self, token: str) -> None:
        self._token = token

    def clear(self) -> None:
        self._token = None


class FileCredentialStore(CredentialStore):
    """Persists the token as a small JSON document."""

    def __init__(self, path: Path) -> None:
        self._path = path

    def get(self) -> str | None:
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Ignoring unreadable credential file %s: %s", self._path, exc)
            return None
        token = data.get("token") if isinstance(data, dict) else None
        return token if isinstance(token, str) and token else None

    def set(self, token: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps({"token": token}), encoding="utf-8")

    def clear(self) -> None:
        self._path.unlink(missing_ok=True)


class TokenProvider(ABC):
    """Strategy that issues new tokens."""

    @abstractmethod
    async def issue(self) -> str:
        """Return a fresh token or raise CredentialError."""

    async def touch(self, token: str) -> None:
        """Report that an existing token is being reused."""


class LocalTokenProvider(TokenProvider):
    async def issue(self) -> str:
        return str(uuid.uuid4())


class RemoteTokenProvider(TokenProvider):
    """Token issued by the identity service."""

    ISSUE_PATH = "/api/auth/get-device-uuid/"
    ACTIVITY_PATH = "/api/auth/update-activity/"

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout, transport=self._transport)

    async def issue(self) -> str:
        try:
            async with self._client() as client:
                response = await client.post(self.ISSUE_PATH, json={})
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            LOGGER.error("Identity service did not issue a token: %s", exc)
            raise CredentialError(f"Identity service error: {exc}") from exc

        token = data.get("uuid") if isinstance(data, dict) else None
        if not isinstance(token, str) or not token:
            raise CredentialError("Identity service response has no 'uuid'.")
        return token

    async def touch(self, token: str) -> None:
        try:
            async with self._client() as client:
                response = await client.post(self.ACTIVITY_PATH, json={"uuid": token})
            response.raise_for_status()
        except httpx.HTTPError as exc:
            LOGGER.warning("Device activity update failed: %s", exc)


class Credentials:
    """Store plus provisioning strategy, injected into the session."""

    def __init__(self, store: CredentialStore, provider: TokenProvider) -> None:
        self._store = store
        self._provider = provider
        self._touched = False

    async def get_token(self) -> str:
        token = self._store.get()
        if token:
            if not self._touched:
                self._touched = True
                await self._provider.touch(token)
            return token
        return await self.refresh()

    async def refresh(self) -> str:
        try:
            token = await self._provider.issue()
        except CredentialError:
            self._store.clear()
            raise
        self._store.set(token)
        self._touched = True
        return token

    def logout(self) -> None:
        self._store.clear()
        self._touched = False


def build_credentials(settings: Settings | None = None) -> Credentials:
    """Instantiate the configured credential strategy."""

    settings = settings or get_settings()
    store: CredentialStore
    if settings.credential_file is not None:
        store = FileCredentialStore(settings.credential_file)
    else:
        store = MemoryCredentialStore()

    if settings.credential_strategy == "remote":
        provider: TokenProvider = RemoteTokenProvider(
            settings.identity_base_url,
            timeout=settings.identity_timeout_seconds,
        )
    elif settings.credential_strategy == "local":
        provider = LocalTokenProvider()
    else:
        raise ValueError(f"Unsupported credential_strategy: {settings.credential_strategy}")
    return Credentials(store, provider)
