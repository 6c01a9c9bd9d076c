"""Matrix transport: a matrix-nio client behind a rate-limited outbox."""

from __future__ import annotations

import itertools
import json
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import (
    Any,
    Awaitable,
    Callable,
    Hashable,
    Protocol,
    TYPE_CHECKING,
    cast,
)

import anyio
import nio

from .errors import MetadataRegistrationError
from .logging import get_logger
from .types import MatrixIncomingMessage

if TYPE_CHECKING:
    from anyio.abc import TaskGroup

    from .bridge.commands.grammar import CommandMetadata
else:
    TaskGroup = object

logger = get_logger(__name__)

# Replies go out before state updates.
SEND_PRIORITY = 0
STATE_PRIORITY = 1

COMMANDS_STATE_EVENT = "org.royalnet.bot.commands"

DEFAULT_RETRY_AFTER_MS = 5000


class MatrixRetryAfter(Exception):
    """The homeserver rate limited us for ``retry_after`` seconds."""

    def __init__(self, retry_after: float) -> None:
        super().__init__(f"retry after {retry_after}")
        self.retry_after = float(retry_after)


def _raise_for_rate_limit(response: Any) -> None:
    retry_after_ms = getattr(response, "retry_after_ms", None)
    if retry_after_ms:
        raise MatrixRetryAfter(retry_after_ms / 1000.0)


class NioClientProtocol(Protocol):
    """The part of matrix-nio's AsyncClient the bot uses."""

    user_id: str
    access_token: str
    device_id: str

    async def close(self) -> None: ...

    async def login(
        self, password: str | None = None, device_name: str | None = None
    ) -> Any: ...

    async def sync(
        self,
        timeout: int = 30000,
        sync_filter: dict[str, Any] | None = None,
        since: str | None = None,
        full_state: bool = False,
    ) -> Any: ...

    async def room_send(
        self,
        room_id: str,
        message_type: str,
        content: dict[str, Any],
        tx_id: str | None = None,
        ignore_unverified_devices: bool = True,
    ) -> Any: ...

    async def room_put_state(
        self,
        room_id: str,
        event_type: str,
        content: dict[str, Any],
        state_key: str = "",
    ) -> Any: ...

    async def get_displayname(self, user_id: str | None = None) -> Any: ...


@dataclass(slots=True)
class OutboxRequest:
    """One queued homeserver call, finished with its result."""

    execute: Callable[[], Awaitable[Any]]
    priority: int
    label: str
    room_id: str
    queued_at: float = 0.0
    done: anyio.Event = field(default_factory=anyio.Event)
    result: Any = None

    def finish(self, result: Any = None) -> None:
        if self.done.is_set():
            return
        self.result = result
        self.done.set()


class MatrixOutbox:
    """Runs homeserver calls one at a time, at most one per ``interval``.

    Requests go out by priority, then by age. A request that raises
    ``MatrixRetryAfter`` is queued again and the outbox pauses for the
    requested delay.

    The worker runs in a task group entered by ``start()``, so ``start()``
    and ``close()`` must be awaited by the same task. ``MatrixClient.start``
    does this from the runtime's main task; ``submit`` starts the worker
    itself when nobody did.
    """

    def __init__(
        self,
        *,
        interval: float = 0.1,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
    ) -> None:
        self._interval = interval
        self._clock = clock
        self._sleep = sleep
        self._pending: dict[Hashable, OutboxRequest] = {}
        self._order = itertools.count()
        self._cond = anyio.Condition()
        self._start_lock = anyio.Lock()
        self._closed = False
        self._tg: TaskGroup | None = None
        self._ready_at = 0.0

    async def start(self) -> None:
        async with self._start_lock:
            if self._tg is not None or self._closed:
                return
            self._tg = await anyio.create_task_group().__aenter__()
            self._tg.start_soon(self._run)

    async def submit(
        self, request: OutboxRequest, *, replaces: Hashable | None = None
    ) -> Any:
        """Queue ``request`` and wait for its result.

        A request submitted with the ``replaces`` key of a request that is
        still pending takes its place in line, and the older one finishes
        with None. Returns None once the outbox is closed.
        """
        await self.start()
        async with self._cond:
            if self._closed:
                request.finish(None)
                return None
            key = replaces if replaces is not None else next(self._order)
            previous = self._pending.get(key)
            if previous is not None:
                request.queued_at = previous.queued_at
                previous.finish(None)
            else:
                request.queued_at = self._clock()
            self._pending[key] = request
            self._cond.notify()
        await request.done.wait()
        return request.result

    async def close(self) -> None:
        async with self._cond:
            self._closed = True
            self._fail_pending()
            self._cond.notify_all()
        if self._tg is not None:
            await self._tg.__aexit__(None, None, None)
            self._tg = None

    def _fail_pending(self) -> None:
        for pending in self._pending.values():
            pending.finish(None)
        self._pending.clear()

    def _next_locked(self) -> tuple[Hashable, OutboxRequest] | None:
        if not self._pending:
            return None
        return min(
            self._pending.items(),
            key=lambda item: (item[1].priority, item[1].queued_at),
        )

    async def _execute(self, request: OutboxRequest) -> Any:
        try:
            return await request.execute()
        except MatrixRetryAfter:
            raise
        except Exception as exc:
            logger.error(
                "matrix.outbox.request_failed",
                method=request.label,
                room_id=request.room_id,
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None

    async def _requeue(self, key: Hashable, request: OutboxRequest) -> None:
        async with self._cond:
            if self._closed or key in self._pending:
                request.finish(None)
                return
            self._pending[key] = request
            self._cond.notify()

    async def _run(self) -> None:
        try:
            while True:
                async with self._cond:
                    while not self._pending and not self._closed:
                        await self._cond.wait()
                    if not self._pending:
                        return
                delay = self._ready_at - self._clock()
                if delay > 0:
                    await self._sleep(delay)
                    continue
                async with self._cond:
                    picked = self._next_locked()
                    if picked is None:
                        continue
                    key, request = picked
                    del self._pending[key]
                started_at = self._clock()
                try:
                    result = await self._execute(request)
                except MatrixRetryAfter as exc:
                    logger.warning(
                        "matrix.outbox.rate_limited",
                        method=request.label,
                        room_id=request.room_id,
                        retry_after=exc.retry_after,
                    )
                    self._ready_at = self._clock() + exc.retry_after
                    await self._requeue(key, request)
                    continue
                self._ready_at = started_at + self._interval
                request.finish(result)
        except anyio.get_cancelled_exc_class():
            self._fail_pending()
            raise


def _extract_reply_to(content: dict[str, Any]) -> str | None:
    """Extract the event ID being replied to from m.relates_to."""
    relates_to = content.get("m.relates_to")
    if not isinstance(relates_to, dict):
        return None
    in_reply_to = relates_to.get("m.in_reply_to")
    if not isinstance(in_reply_to, dict):
        return None
    event_id = in_reply_to.get("event_id")
    return event_id if isinstance(event_id, str) else None


def _build_message_content(
    body: str,
    reply_to_event_id: str | None,
) -> dict[str, Any]:
    """Build m.text content, threaded with m.relates_to when replying."""
    content: dict[str, Any] = {
        "msgtype": "m.text",
        "body": body,
    }
    if reply_to_event_id:
        content["m.relates_to"] = {
            "m.in_reply_to": {"event_id": reply_to_event_id},
        }
    return content


def _build_commands_content(metadata: Sequence[CommandMetadata]) -> dict[str, Any]:
    return {
        "commands": [
            {"command": item.name, "description": item.description}
            for item in metadata
        ]
    }


class MatrixClient:
    """The bot's Matrix session.

    Room messages and state events go through a ``MatrixOutbox``; login,
    sync and profile lookups are made directly.
    """

    def __init__(
        self,
        homeserver: str,
        user_id: str,
        *,
        access_token: str | None = None,
        password: str | None = None,
        device_id: str | None = None,
        device_name: str = "royalnet",
        sync_store_path: Path | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = anyio.sleep,
        interval: float = 0.1,
        nio_client: NioClientProtocol | None = None,
    ) -> None:
        self.homeserver = homeserver.rstrip("/")
        self.user_id = user_id
        self._access_token = access_token
        self._password = password
        self._device_id = device_id
        self._device_name = device_name
        self._sync_store_path = sync_store_path
        self._nio_client: NioClientProtocol | None = nio_client
        self._logged_in = False
        self._sync_token: str | None = self._load_sync_token()
        self._outbox = MatrixOutbox(interval=interval, clock=clock, sleep=sleep)

    def _load_sync_token(self) -> str | None:
        """The stored sync token, if it belongs to this user."""
        path = self._sync_store_path
        if path is None or not path.exists():
            return None
        try:
            data = json.loads(path.read_text())
        except (OSError, ValueError) as exc:
            logger.warning(
                "matrix.sync.token_load_failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None
        if not isinstance(data, dict) or data.get("user_id") != self.user_id:
            return None
        token = data.get("next_batch")
        if not isinstance(token, str) or not token:
            return None
        logger.debug("matrix.sync.token_loaded", user_id=self.user_id)
        return token

    def _save_sync_token(self, token: str) -> None:
        path = self._sync_store_path
        if path is None:
            return
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps({"next_batch": token, "user_id": self.user_id}))
        except OSError as exc:
            logger.warning(
                "matrix.sync.token_save_failed",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )

    def _ensure_nio_client(self) -> NioClientProtocol:
        if self._nio_client is None:
            self._nio_client = cast(
                NioClientProtocol,
                nio.AsyncClient(
                    self.homeserver,
                    self.user_id,
                    device_id=self._device_id,
                ),
            )
        return self._nio_client

    async def _session(self) -> NioClientProtocol | None:
        """The nio client, logged in; None when login fails."""
        client = self._ensure_nio_client()
        if not self._logged_in and not await self.login():
            return None
        return client

    async def start(self) -> None:
        """Start the outbox worker.

        Call it from the task that will later call ``close()``.
        """
        await self._outbox.start()

    async def login(self) -> bool:
        """Login with the access token, or with the password if there is none."""
        client = self._ensure_nio_client()

        if self._access_token:
            client.access_token = self._access_token
            client.user_id = self.user_id
            if self._device_id:
                client.device_id = self._device_id
            self._logged_in = True
            logger.info("matrix.login.token", user_id=self.user_id)
            return True

        if not self._password:
            logger.error("matrix.login.no_credentials")
            return False

        response = await client.login(
            password=self._password,
            device_name=self._device_name,
        )
        if not isinstance(response, nio.LoginResponse):
            logger.error(
                "matrix.login.failed",
                error=getattr(response, "message", str(response)),
            )
            return False
        self._access_token = response.access_token
        self._device_id = response.device_id
        self._logged_in = True
        logger.info(
            "matrix.login.password",
            user_id=self.user_id,
            device_id=response.device_id,
        )
        return True

    async def sync(
        self,
        timeout_ms: int = 30000,
        full_state: bool = False,
    ) -> Any:
        """One sync request; None when it failed.

        Raises:
            MatrixRetryAfter: the homeserver rate limited the request.
        """
        client = await self._session()
        if client is None:
            return None

        try:
            response = await client.sync(
                timeout=timeout_ms,
                since=self._sync_token,
                full_state=full_state,
            )
        except Exception as exc:
            logger.error(
                "matrix.sync.error",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None
        if isinstance(response, nio.SyncResponse):
            self._sync_token = response.next_batch
            self._save_sync_token(response.next_batch)
            return response
        if hasattr(response, "retry_after_ms"):
            retry_ms = response.retry_after_ms or DEFAULT_RETRY_AFTER_MS
            raise MatrixRetryAfter(retry_ms / 1000.0)
        logger.error(
            "matrix.sync.failed",
            error=getattr(response, "message", str(response)),
        )
        return None

    async def send_message(
        self,
        room_id: str,
        body: str,
        *,
        reply_to_event_id: str | None = None,
    ) -> dict[str, Any] | None:
        """Send a text message to a room.

        Returns ``{"event_id", "room_id"}`` on success and None when the
        homeserver rejected the message or the request failed.
        """
        content = _build_message_content(body, reply_to_event_id)

        async def execute() -> dict[str, Any] | None:
            client = await self._session()
            if client is None:
                return None
            response = await client.room_send(
                room_id=room_id,
                message_type="m.room.message",
                content=content,
                ignore_unverified_devices=True,
            )
            if isinstance(response, nio.RoomSendResponse):
                return {"event_id": response.event_id, "room_id": room_id}
            _raise_for_rate_limit(response)
            logger.error(
                "matrix.send.failed",
                room_id=room_id,
                error=getattr(response, "message", str(response)),
            )
            return None

        return await self._outbox.submit(
            OutboxRequest(
                execute=execute,
                priority=SEND_PRIORITY,
                label="send_message",
                room_id=room_id,
            )
        )

    async def publish_commands(
        self, room_id: str, metadata: Sequence[CommandMetadata]
    ) -> None:
        """Advertise the command list in a room as a state event.

        A newer list for the same room replaces one still waiting to go out.

        Raises:
            MetadataRegistrationError: the homeserver refused the state event.
        """
        content = _build_commands_content(metadata)

        async def execute() -> bool:
            client = await self._session()
            if client is None:
                return False
            response = await client.room_put_state(
                room_id=room_id,
                event_type=COMMANDS_STATE_EVENT,
                content=content,
            )
            if isinstance(response, nio.RoomPutStateResponse):
                return True
            _raise_for_rate_limit(response)
            logger.error(
                "matrix.commands.publish_failed",
                room_id=room_id,
                error=getattr(response, "message", str(response)),
            )
            return False

        published = await self._outbox.submit(
            OutboxRequest(
                execute=execute,
                priority=STATE_PRIORITY,
                label="publish_commands",
                room_id=room_id,
            ),
            replaces=(COMMANDS_STATE_EVENT, room_id),
        )
        if not published:
            raise MetadataRegistrationError(
                f"Impossibile aggiornare l'elenco comandi in {room_id}."
            )
        logger.debug(
            "matrix.commands.published", room_id=room_id, count=len(metadata)
        )

    async def get_display_name(self) -> str | None:
        """The bot's own display name, None when unavailable."""
        client = await self._session()
        if client is None:
            return None
        try:
            response = await client.get_displayname(self.user_id)
        except Exception as exc:
            logger.warning(
                "matrix.display_name.error",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            return None
        displayname = getattr(response, "displayname", None)
        return displayname if isinstance(displayname, str) and displayname else None

    async def close(self) -> None:
        await self._outbox.close()
        if self._nio_client is not None:
            await self._nio_client.close()
            self._nio_client = None


def parse_room_message(
    event: Any,
    room_id: str,
    *,
    allowed_room_ids: set[str],
    own_user_id: str,
) -> MatrixIncomingMessage | None:
    """Parse a nio RoomMessageText event into MatrixIncomingMessage.

    Returns None for other rooms, the bot's own messages and events missing
    sender or event id.
    """
    if room_id not in allowed_room_ids:
        return None

    sender = getattr(event, "sender", None)
    event_id = getattr(event, "event_id", None)
    if sender is None or event_id is None:
        return None
    if sender == own_user_id:
        return None

    source = getattr(event, "source", {})
    content = source.get("content", {}) if isinstance(source, dict) else {}

    return MatrixIncomingMessage(
        room_id=room_id,
        event_id=event_id,
        sender=sender,
        text=getattr(event, "body", "") or "",
        reply_to_event_id=_extract_reply_to(content),
        formatted_body=getattr(event, "formatted_body", None),
        raw=source if isinstance(source, dict) else None,
    )
