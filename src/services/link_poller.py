"""Client-side link status poller.

Tracks one verification per channel through ``idle -> pending -> done|error``.
While pending, a background task polls ``GET /api/link/status/{nonce}`` on a
fixed interval. The first ``done`` observation records the resolved account
and fires the completion callback; the per-channel ``notified`` flag keeps
that callback from firing twice, however often the nonce is polled.

Poll tasks are cancelled on retry, when a new verification supersedes an old
one for the same channel, and when the poller is closed.
"""

import asyncio
import inspect
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, Union

import httpx

from core.audit import redact_nonce

logger = logging.getLogger(__name__)

WHATSAPP_PHONE_PATTERN = re.compile(r"^\+[1-9]\d{1,14}$")

VerifiedCallback = Callable[[str, str], Union[None, Awaitable[None]]]


def is_valid_whatsapp_phone(phone: str) -> bool:
    """E.164 phone number as typed by the user."""
    return bool(WHATSAPP_PHONE_PATTERN.match(phone.replace(" ", "")))


class LinkApiError(Exception):
    """A link API call failed (transport error or non-2xx response)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class VerificationStatus(str, Enum):
    IDLE = "idle"
    PENDING = "pending"
    DONE = "done"
    ERROR = "error"


@dataclass
class ChannelSpec:
    id: str
    mandatory: bool = False


@dataclass
class ChannelVerificationState:
    status: VerificationStatus = VerificationStatus.IDLE
    nonce: Optional[str] = None
    deep_link: Optional[str] = None
    command: Optional[str] = None
    link: Optional[str] = None
    error: Optional[str] = None
    notified: bool = False


class LinkApiClient:
    """Thin async wrapper over the link endpoints."""

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(base_url=base_url, headers=headers, timeout=timeout)

    async def _request(self, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        try:
            response = await self.client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise LinkApiError(f"Network error: {e}") from e

        try:
            body = response.json()
        except ValueError:
            body = {}
        if response.status_code >= 400:
            message = body.get("error") or body.get("detail") or f"HTTP {response.status_code}"
            raise LinkApiError(str(message), response.status_code)
        return body

    async def start_link(self, channel_id: str) -> Dict[str, Any]:
        return await self._request("POST", "/api/link/start", json={"channel_id": channel_id})

    async def get_status(self, nonce: str) -> Dict[str, Any]:
        return await self._request("GET", f"/api/link/status/{nonce}")

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()


class LinkStatusPoller:
    """Per-channel verification state machine with background polling."""

    def __init__(
        self,
        client: LinkApiClient,
        channels: Iterable[ChannelSpec],
        on_verified: Optional[VerifiedCallback] = None,
        poll_interval: float = 3.0,
    ):
        self.client = client
        self.channels = {channel.id: channel for channel in channels}
        self.on_verified = on_verified
        self.poll_interval = poll_interval
        self._states: Dict[str, ChannelVerificationState] = {
            channel_id: ChannelVerificationState() for channel_id in self.channels
        }
        self._tasks: Dict[str, asyncio.Task] = {}

    async def __aenter__(self) -> "LinkStatusPoller":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    def state(self, channel_id: str) -> ChannelVerificationState:
        if channel_id not in self._states:
            raise KeyError(f"Unknown channel: {channel_id}")
        return self._states[channel_id]

    async def start_verification(self, channel_id: str) -> ChannelVerificationState:
        """idle -> pending: ask for a nonce and start polling it."""
        self.state(channel_id)
        await self._cancel(channel_id)

        state = self._states[channel_id] = ChannelVerificationState(status=VerificationStatus.PENDING)
        try:
            data = await self.client.start_link(channel_id)
        except LinkApiError as e:
            state.status = VerificationStatus.ERROR
            state.error = e.message
            return state

        state.nonce = data.get("nonce")
        state.deep_link = data.get("deepLink")
        state.command = data.get("command")
        self._tasks[channel_id] = asyncio.create_task(self._poll(channel_id, state))
        return state

    async def retry(self, channel_id: str) -> ChannelVerificationState:
        """Back to idle; any outstanding poll is cancelled."""
        await self._cancel(channel_id)
        state = self._states[channel_id] = ChannelVerificationState()
        return state

    async def aclose(self) -> None:
        for channel_id in list(self._tasks):
            await self._cancel(channel_id)

    def ready_to_submit(self, strict: bool = False) -> bool:
        """Lenient: any channel done. Strict: every mandatory channel done."""
        done = {cid for cid, s in self._states.items() if s.status == VerificationStatus.DONE}
        if not strict:
            return bool(done)
        mandatory = {cid for cid, spec in self.channels.items() if spec.mandatory}
        if not mandatory:
            return bool(done)
        return mandatory <= done

    async def wait(self, channel_id: str) -> ChannelVerificationState:
        """Wait for the channel's current poll task to finish."""
        task = self._tasks.get(channel_id)
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass
        return self.state(channel_id)

    async def _cancel(self, channel_id: str) -> None:
        task = self._tasks.pop(channel_id, None)
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _poll(self, channel_id: str, state: ChannelVerificationState) -> None:
        while state.status == VerificationStatus.PENDING:
            await asyncio.sleep(self.poll_interval)
            try:
                data = await self.client.get_status(state.nonce)
            except LinkApiError as e:
                logger.info(f"Polling {channel_id} nonce {redact_nonce(state.nonce)} failed: {e.message}")
                state.status = VerificationStatus.ERROR
                state.error = e.message
                return

            if data.get("status") == "done":
                state.status = VerificationStatus.DONE
                state.link = data.get("link")
                await self._notify(channel_id, state)
                return

    async def _notify(self, channel_id: str, state: ChannelVerificationState) -> None:
        if state.notified:
            return
        state.notified = True
        if self.on_verified is None:
            return
        try:
            result = self.on_verified(channel_id, state.link)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            # Runs inside the poll task; nothing upstream would see the error
            logger.error(f"Verification callback for {channel_id} failed: {e}", exc_info=True)
