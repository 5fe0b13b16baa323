"""Streaming POST transport with cooperative cancellation."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable

import httpx

from ..config import ServerConfig
from .credentials import CredentialError, Credentials

logger = logging.getLogger(__name__)

AUTH_STATUS_CODES = (401, 403)


class StreamTransportError(Exception):
    """Network failure, bad status, or stalled stream."""


class StreamStatusError(StreamTransportError):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"Server responded with status: {status_code}")
        self.status_code = status_code


class AuthExpiredError(StreamTransportError):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"Authentication rejected (HTTP {status_code})")
        self.status_code = status_code


class StreamTimeoutError(StreamTransportError):
    """Raised when the stream stalls or exceeds its total deadline."""


class StreamCancelled(Exception):
    """Raised when the abort signal fires while waiting on the network."""


def create_http_client(config: ServerConfig) -> httpx.AsyncClient:
    timeout = httpx.Timeout(
        connect=float(config.connect_timeout),
        read=float(config.chunk_stall_timeout),
        write=float(config.connect_timeout),
        pool=float(config.connect_timeout),
    )
    # SECURITY-REVIEW: verify=False only when verify_ssl: false is set explicitly in config
    return httpx.AsyncClient(verify=config.verify_ssl, timeout=timeout)


def _discard_result(task: asyncio.Future[Any]) -> None:
    if not task.cancelled():
        task.exception()


async def race_cancel(
    awaitable: Awaitable[Any],
    cancel_event: asyncio.Event | None,
    timeout: float | None = None,
) -> Any:
    """Await ``awaitable`` unless ``cancel_event`` fires or ``timeout`` elapses first.

    Raises :class:`StreamCancelled` on cancel and :class:`StreamTimeoutError`
    on timeout; the pending operation is cancelled in both cases.  Exceptions
    from the awaitable itself propagate unchanged.
    """
    task = asyncio.ensure_future(awaitable)
    wait_tasks: set[asyncio.Future[Any]] = {task}
    cancel_wait: asyncio.Future[Any] | None = None
    if cancel_event is not None:
        cancel_wait = asyncio.ensure_future(cancel_event.wait())
        wait_tasks.add(cancel_wait)

    try:
        done, _pending = await asyncio.wait(wait_tasks, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    except BaseException:
        task.cancel()
        if cancel_wait:
            cancel_wait.cancel()
        raise

    if cancel_wait and cancel_wait not in done:
        cancel_wait.cancel()

    if task in done:
        return task.result()

    task.cancel()
    task.add_done_callback(_discard_result)
    # Let the cancelled read unwind before the caller closes the response under it
    await asyncio.wait({task}, timeout=2.0)
    if cancel_wait and cancel_wait in done:
        raise StreamCancelled()
    raise StreamTimeoutError(f"No data received within {timeout:.0f}s" if timeout else "Stream timed out")


class StreamResponse:
    """An open streaming response. Read with :meth:`read`; close with :meth:`aclose`."""

    def __init__(self, response: httpx.Response, stall_timeout: float, deadline: float) -> None:
        self._response = response
        self._chunks = response.aiter_bytes()
        self._stall_timeout = stall_timeout
        self._deadline = deadline
        self._closed = False

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def encoding(self) -> str:
        return self._response.charset_encoding or "utf-8"

    @property
    def closed(self) -> bool:
        return self._closed

    async def read(self, cancel_event: asyncio.Event | None = None) -> bytes | None:
        """Return the next chunk, or None once the body is exhausted."""
        remaining = self._deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            raise StreamTimeoutError("Stream exceeded its total deadline")
        try:
            return await race_cancel(self._chunks.__anext__(), cancel_event, min(remaining, self._stall_timeout))
        except StopAsyncIteration:
            return None
        except httpx.HTTPError as e:
            raise StreamTransportError(f"Stream interrupted: {type(e).__name__}") from e

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await asyncio.wait_for(self._response.aclose(), timeout=2.0)
        except (asyncio.TimeoutError, httpx.HTTPError, RuntimeError):
            logger.debug("Stream close did not complete cleanly", exc_info=True)


class StreamTransport:
    """Opens the chat streaming endpoint for one run at a time."""

    def __init__(
        self,
        config: ServerConfig,
        credentials: Credentials | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self._credentials = credentials or Credentials()
        self._owns_client = client is None
        self._client = client or create_http_client(config)

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def open(self, payload: dict[str, Any], cancel_event: asyncio.Event | None = None) -> StreamResponse:
        try:
            headers = {"Accept": "text/event-stream", **self._credentials.headers()}
        except CredentialError as e:
            raise StreamTransportError(str(e)) from e

        url = self.config.stream_url
        request = self._client.build_request("POST", url, json=payload, headers=headers)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + float(self.config.request_timeout)

        try:
            response: httpx.Response = await race_cancel(
                self._client.send(request, stream=True), cancel_event, float(self.config.request_timeout)
            )
        except httpx.HTTPError as e:
            logger.warning("Cannot reach %s: %s", url, type(e).__name__)
            raise StreamTransportError(f"Cannot connect to {url}: {type(e).__name__}") from e

        stream = StreamResponse(response, float(self.config.chunk_stall_timeout), deadline)
        if cancel_event is not None and cancel_event.is_set():
            await stream.aclose()
            raise StreamCancelled()
        if response.status_code in AUTH_STATUS_CODES:
            await stream.aclose()
            raise AuthExpiredError(response.status_code)
        if not response.is_success:
            await stream.aclose()
            logger.warning("Stream request rejected with HTTP %d", response.status_code)
            raise StreamStatusError(response.status_code)
        return stream

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
