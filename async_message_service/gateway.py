"""HTTP driver for a messaging session gateway.

The gateway hosts the paired messaging session and exposes it under
``{base_url}/sessions/{name}/``:

``POST start``             start (or resume) the session, optionally with stored credentials
``GET status``             ``{"status": ..., "qr": ..., "reason": ..., "credentials": ...}``
``GET contacts/{chat_id}`` ``{"registered": bool}``
``POST messages``          ``{"chat_id": ..., "text": ...}`` -> ``{"id": ...}``
``POST stop``              close the session

Status changes are discovered by polling and forwarded to the channel
manager through its event sink.
"""

from __future__ import annotations

import asyncio
import json
import os
from typing import Any, Dict, Optional

import aiohttp

from .channel import HEALTHY_STATE, ChannelEventSink
from .errors import MessageServiceError, TransientChannelError
from .logger import get_logger

JsonDict = Dict[str, Any]

STATUS_STARTING = "STARTING"
STATUS_SCAN_QR = "SCAN_QR_CODE"
STATUS_AUTHENTICATED = "AUTHENTICATED"
STATUS_WORKING = "WORKING"
STATUS_FAILED = "FAILED"
STATUS_STOPPED = "STOPPED"

# Consecutive polling errors tolerated before the session is reported broken.
MAX_POLL_ERRORS = 3


class GatewayRequestError(MessageServiceError):
    """The gateway rejected a request with a 4xx status."""

    code = "gateway_request_error"

    def __init__(self, message: str, status: int):
        super().__init__(message)
        self.status = status


async def purge_session_file(path: Optional[str]) -> None:
    """Delete persisted session credentials; a missing file is not an error."""
    if not path:
        return
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


class GatewaySession:
    """One session on the gateway, driven by :class:`~.channel.ChannelManager`."""

    supports_concurrent_sends = False

    def __init__(
        self,
        base_url: str,
        session_name: str = "default",
        *,
        api_key: Optional[str] = None,
        credentials_path: Optional[str] = None,
        poll_interval: float = 2.0,
        request_timeout: float = 30.0,
        logger=None,
    ):
        self.base_url = base_url.rstrip("/")
        self.session_name = session_name
        self.api_key = api_key
        self.credentials_path = credentials_path
        self.poll_interval = float(poll_interval)
        self.request_timeout = float(request_timeout)
        self.logger = logger or get_logger("AsyncMessageService.gateway")

        self._sink: Optional[ChannelEventSink] = None
        self._last_status: Optional[str] = None
        self._saved_credentials: Optional[JsonDict] = None
        self._task_watch: Optional[asyncio.Task] = None
        self._closed = False

    def _endpoint(self, suffix: str) -> str:
        return f"{self.base_url}/sessions/{self.session_name}/{suffix.lstrip('/')}"

    async def _request(self, method: str, suffix: str, payload: Optional[JsonDict] = None) -> JsonDict:
        headers = {"X-Api-Key": self.api_key} if self.api_key else None
        timeout = aiohttp.ClientTimeout(total=self.request_timeout)
        async with aiohttp.ClientSession(timeout=timeout, headers=headers) as session:
            async with session.request(method, self._endpoint(suffix), json=payload) as resp:
                try:
                    data = await resp.json(content_type=None)
                except (ValueError, aiohttp.ContentTypeError):
                    data = None
                if not isinstance(data, dict):
                    data = {}
                if resp.status >= 500:
                    raise TransientChannelError(
                        f"Gateway error {resp.status}: {data.get('error') or resp.reason}"
                    )
                if resp.status >= 400:
                    raise GatewayRequestError(str(data.get("error") or resp.reason), resp.status)
                return data

    # ------------------------------------------------------------ credentials
    def load_credentials(self) -> Optional[JsonDict]:
        if not self.credentials_path or not os.path.exists(self.credentials_path):
            return None
        try:
            with open(self.credentials_path, "r", encoding="utf-8") as handle:
                data = json.load(handle)
        except (OSError, ValueError) as exc:
            self.logger.warning("Ignoring unreadable session file %s: %s", self.credentials_path, exc)
            return None
        return data if isinstance(data, dict) else None

    def save_credentials(self, credentials: JsonDict) -> None:
        if not self.credentials_path:
            return
        directory = os.path.dirname(self.credentials_path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.credentials_path, "w", encoding="utf-8") as handle:
            json.dump(credentials, handle)
        self._saved_credentials = dict(credentials)

    async def clear_credentials(self) -> None:
        self._saved_credentials = None
        await purge_session_file(self.credentials_path)

    # ------------------------------------------------------------- lifecycle
    async def initialize(self, sink: ChannelEventSink) -> None:
        """Start the remote session, report its current status and begin watching it."""
        self._sink = sink
        self._closed = False
        credentials = self.load_credentials()
        self._saved_credentials = credentials
        payload: JsonDict = {"credentials": credentials} if credentials else {}
        self.logger.info(
            "Starting gateway session %s (%s stored credentials)",
            self.session_name,
            "with" if credentials else "without",
        )
        data = await self._request("POST", "start", payload)
        await self._apply_status(data)
        if not self._closed:
            self._task_watch = asyncio.create_task(self._watch_loop(), name=f"gateway-watch-{self.session_name}")

    async def destroy(self) -> None:
        """Stop watching and close the remote session, best-effort."""
        self._closed = True
        task, self._task_watch = self._task_watch, None
        # The watch loop itself may be reporting the failure being handled.
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        try:
            await self._request("POST", "stop")
        except (aiohttp.ClientError, asyncio.TimeoutError, MessageServiceError) as exc:
            self.logger.debug("Gateway stop for %s failed: %s", self.session_name, exc)

    async def get_state(self) -> str:
        data = await self._request("GET", "status")
        status = str(data.get("status") or "").upper()
        return HEALTHY_STATE if status == STATUS_WORKING else status or "UNKNOWN"

    async def is_registered(self, chat_id: str) -> bool:
        data = await self._request("GET", f"contacts/{chat_id}")
        return bool(data.get("registered"))

    async def send_message(self, chat_id: str, text: str) -> str:
        data = await self._request("POST", "messages", {"chat_id": chat_id, "text": text})
        receipt = data.get("id")
        if not receipt:
            raise TransientChannelError("Gateway accepted the message without a receipt id")
        return str(receipt)

    # --------------------------------------------------------------- watching
    async def _watch_loop(self) -> None:
        errors = 0
        while not self._closed:
            await asyncio.sleep(self.poll_interval)
            if self._closed:
                return
            try:
                data = await self._request("GET", "status")
            except (aiohttp.ClientError, asyncio.TimeoutError, MessageServiceError) as exc:
                errors += 1
                self.logger.warning("Gateway status poll failed (%d/%d): %s", errors, MAX_POLL_ERRORS, exc)
                if errors >= MAX_POLL_ERRORS:
                    self._closed = True
                    if self._sink is not None:
                        await self._sink.on_low_level_error(exc)
                    return
                continue
            errors = 0
            await self._apply_status(data)

    async def _apply_status(self, data: JsonDict) -> None:
        """Translate a gateway status document into sink events (on change only)."""
        status = str(data.get("status") or STATUS_STARTING).upper()
        credentials = data.get("credentials")
        if isinstance(credentials, dict) and credentials and credentials != self._saved_credentials:
            self.save_credentials(credentials)
        if status == self._last_status:
            return
        self._last_status = status
        sink = self._sink
        if sink is None:
            return
        reason = str(data.get("reason") or "")
        if status == STATUS_SCAN_QR:
            await sink.on_qr(str(data.get("qr") or ""))
        elif status == STATUS_AUTHENTICATED:
            await sink.on_authenticated()
        elif status == STATUS_WORKING:
            await sink.on_ready()
        elif status == STATUS_FAILED:
            self._closed = True
            await sink.on_auth_failure(reason or "AUTH_FAILURE")
        elif status == STATUS_STOPPED:
            self._closed = True
            await sink.on_disconnected(reason or "SESSION_CLOSED")
