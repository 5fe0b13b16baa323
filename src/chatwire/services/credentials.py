"""Request credentials and the auth-expiry hook handed to the engine."""

from __future__ import annotations

import logging
import shlex
import subprocess
from typing import Callable, Protocol

logger = logging.getLogger(__name__)

_COMMAND_TIMEOUT = 30


class CredentialError(Exception):
    """Raised when the api_key_command cannot produce a token."""


class AuthExpiryHandler(Protocol):
    def on_auth_expired(self) -> None: ...


class CommandTokenSource:
    """Obtains a bearer token from an external command and caches it until invalidated."""

    def __init__(self, command: str) -> None:
        self._command = command
        self._cached: str | None = None

    @property
    def command(self) -> str:
        return self._command

    @property
    def has_token(self) -> bool:
        return self._cached is not None

    def token(self) -> str:
        if self._cached:
            return self._cached
        return self.refresh()

    def refresh(self) -> str:
        logger.info("Running api_key_command to obtain a token")
        try:
            result = subprocess.run(
                shlex.split(self._command),
                capture_output=True,
                text=True,
                timeout=_COMMAND_TIMEOUT,
            )
        except FileNotFoundError as e:
            raise CredentialError(f"api_key_command not found: {e}") from e
        except subprocess.TimeoutExpired as e:
            raise CredentialError(f"api_key_command timed out after {_COMMAND_TIMEOUT}s") from e

        if result.returncode != 0:
            stderr = result.stderr.strip()
            raise CredentialError(
                f"api_key_command exited with code {result.returncode}" + (f": {stderr}" if stderr else "")
            )

        token = result.stdout.strip()
        if not token:
            raise CredentialError("api_key_command returned empty output")
        self._cached = token
        return token

    def invalidate(self) -> None:
        self._cached = None


class Credentials:
    """Builds auth headers from a static key or a :class:`CommandTokenSource`.

    With neither configured, requests go out without an ``Authorization``
    header (cookie- or network-authenticated deployments).
    """

    def __init__(self, api_key: str = "", source: CommandTokenSource | None = None) -> None:
        self._api_key = api_key
        self._source = source

    @classmethod
    def from_config(cls, api_key: str, api_key_command: str) -> "Credentials":
        source = CommandTokenSource(api_key_command) if api_key_command else None
        return cls(api_key=api_key, source=source)

    def headers(self) -> dict[str, str]:
        token = self._source.token() if self._source else self._api_key
        if not token:
            return {}
        return {"Authorization": f"Bearer {token}"}

    def invalidate(self) -> None:
        if self._source:
            self._source.invalidate()


class CredentialExpiryHandler:
    """Auth-expiry hook that drops cached credentials, then tells the host."""

    def __init__(self, credentials: Credentials, on_expired: Callable[[], None] | None = None) -> None:
        self._credentials = credentials
        self._on_expired = on_expired
        self.expired_count = 0

    def on_auth_expired(self) -> None:
        self.expired_count += 1
        logger.warning("Streaming request was rejected as unauthenticated")
        self._credentials.invalidate()
        if self._on_expired:
            self._on_expired()
