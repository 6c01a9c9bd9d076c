"""Main runtime loop and startup sequence."""

from __future__ import annotations

from functools import partial
from pathlib import Path

import anyio
from anyio.abc import ObjectSendStream

from ..accounts import AccountStore, resolve_accounts_path
from ..client import MatrixClient, MatrixRetryAfter, parse_room_message
from ..logging import get_logger
from ..reminders import ReminderStore, resolve_reminders_path, run_reminder_loop
from ..settings import RoyalnetSettings
from ..trigger_mode import bot_names, should_dispatch
from ..types import MatrixIncomingMessage
from .commands import (
    DEFAULT_GRAMMAR,
    CommandDispatcher,
    MatrixReplySink,
    ReplyTexts,
    build_default_registry,
)
from .config import MatrixBridgeConfig

logger = get_logger(__name__)

# Max buffered messages before backpressure
MESSAGE_QUEUE_SIZE = 100

SYNC_STATE_FILENAME = "matrix_sync.json"


class ExponentialBackoff:
    """Exponential backoff for reconnection."""

    def __init__(
        self,
        initial: float = 1.0,
        maximum: float = 60.0,
        multiplier: float = 2.0,
    ) -> None:
        self.initial = initial
        self.maximum = maximum
        self.multiplier = multiplier
        self.current = initial

    def next(self) -> float:
        delay = self.current
        self.current = min(self.current * self.multiplier, self.maximum)
        return delay

    def reset(self) -> None:
        self.current = self.initial


def build_bridge_config(
    settings: RoyalnetSettings, config_path: Path
) -> MatrixBridgeConfig:
    """Assemble client, stores and handlers from loaded settings."""
    state_dir = settings.state_dir(config_path)
    matrix = settings.matrix
    client = MatrixClient(
        matrix.homeserver,
        matrix.user_id,
        access_token=matrix.access_token,
        password=matrix.password,
        device_id=matrix.device_id,
        device_name=matrix.device_name,
        sync_store_path=state_dir / SYNC_STATE_FILENAME,
    )
    reminders = ReminderStore(resolve_reminders_path(state_dir))
    registry = build_default_registry(
        accounts=AccountStore(resolve_accounts_path(state_dir)),
        reminders=reminders,
        start_text=settings.messages.start,
        grammar=DEFAULT_GRAMMAR,
    )
    return MatrixBridgeConfig(
        client=client,
        registry=registry,
        grammar=DEFAULT_GRAMMAR,
        texts=ReplyTexts(
            unknown_command=settings.messages.unknown_command,
            error_prefix=settings.messages.error_prefix,
        ),
        room_ids=list(matrix.room_ids),
        user_allowlist=(
            set(matrix.user_allowlist) if matrix.user_allowlist is not None else None
        ),
        reminders=reminders,
        reminder_poll_interval=settings.reminders.poll_interval,
    )


def build_dispatcher(
    cfg: MatrixBridgeConfig, names: tuple[str, ...]
) -> CommandDispatcher:
    client = cfg.client

    def sink_factory(msg: MatrixIncomingMessage) -> MatrixReplySink:
        return MatrixReplySink(client, room_id=msg.room_id, event_id=msg.event_id)

    return CommandDispatcher(
        cfg.registry,
        sink_factory=sink_factory,
        grammar=cfg.grammar,
        bot_names=names,
        texts=cfg.texts,
    )


async def _process_sync_response(
    cfg: MatrixBridgeConfig,
    response: object,
    *,
    allowed_room_ids: set[str],
    own_user_id: str,
    names: tuple[str, ...],
    message_queue: ObjectSendStream[MatrixIncomingMessage],
) -> None:
    """Queue the command messages of every joined room in a sync response."""
    rooms = getattr(response, "rooms", None)
    if rooms is None:
        return

    join = getattr(rooms, "join", {})
    for room_id, room_info in join.items():
        timeline = getattr(room_info, "timeline", None)
        if timeline is None:
            continue
        for event in getattr(timeline, "events", []):
            if type(event).__name__ != "RoomMessageText":
                continue
            sender = getattr(event, "sender", None)
            if cfg.user_allowlist is not None and sender not in cfg.user_allowlist:
                logger.debug(
                    "matrix.sync.sender_not_allowed",
                    room_id=room_id,
                    sender=sender,
                )
                continue
            msg = parse_room_message(
                event,
                room_id,
                allowed_room_ids=allowed_room_ids,
                own_user_id=own_user_id,
            )
            if msg is None:
                continue
            if not should_dispatch(msg.text, bot_names=names):
                logger.debug(
                    "matrix.sync.not_a_command",
                    room_id=room_id,
                    event_id=msg.event_id,
                )
                continue
            logger.debug(
                "matrix.sync.command_received",
                room_id=room_id,
                event_id=msg.event_id,
                sender=msg.sender,
            )
            await message_queue.send(msg)


async def _sync_loop(
    cfg: MatrixBridgeConfig,
    message_queue: ObjectSendStream[MatrixIncomingMessage],
    *,
    names: tuple[str, ...],
) -> None:
    """Continuous sync loop with reconnection."""
    backoff = ExponentialBackoff()
    allowed_room_ids = set(cfg.room_ids)
    own_user_id = cfg.client.user_id

    logger.debug(
        "matrix.sync.start",
        allowed_room_ids=sorted(allowed_room_ids),
        own_user_id=own_user_id,
    )

    while True:
        try:
            response = await cfg.client.sync(timeout_ms=30000)
            if response is None:
                await anyio.sleep(backoff.next())
                continue

            backoff.reset()

            await _process_sync_response(
                cfg,
                response,
                allowed_room_ids=allowed_room_ids,
                own_user_id=own_user_id,
                names=names,
                message_queue=message_queue,
            )

        except MatrixRetryAfter as exc:
            logger.warning("matrix.sync.rate_limited", retry_after=exc.retry_after)
            await anyio.sleep(exc.retry_after)
        except Exception as exc:
            logger.error(
                "matrix.sync.error",
                error=str(exc),
                error_type=exc.__class__.__name__,
            )
            await anyio.sleep(backoff.next())


async def publish_command_metadata(cfg: MatrixBridgeConfig) -> None:
    """Advertise the command list in every configured room.

    Raises:
        MetadataRegistrationError: a room refused the command list.
    """
    metadata = cfg.grammar.metadata()
    logger.debug("startup.commands", commands=[item.name for item in metadata])
    for room_id in cfg.room_ids:
        await cfg.client.publish_commands(room_id, metadata)
    logger.info("startup.commands.published", rooms=len(cfg.room_ids))


async def _startup_sequence(cfg: MatrixBridgeConfig) -> tuple[str, ...] | None:
    """Login, skip the backlog, resolve our names and publish the commands.

    Returns:
        The names the bot answers to, or None if login failed.
    """
    if not await cfg.client.login():
        logger.error("matrix.startup.login_failed")
        return None

    # Messages sent while the bot was offline are not dispatched.
    logger.debug("matrix.startup.initial_sync")
    await cfg.client.sync(timeout_ms=10000)

    display_name = await cfg.client.get_display_name()
    if display_name:
        logger.debug("matrix.display_name.resolved", display_name=display_name)
    else:
        logger.warning("matrix.display_name.not_available")
    names = bot_names(cfg.client.user_id, display_name)

    await publish_command_metadata(cfg)
    return names


async def run_main_loop(cfg: MatrixBridgeConfig) -> bool:
    """Main event loop: one task per inbound command message.

    Returns:
        False if login failed, True once the loop stops.
    """
    try:
        await cfg.client.start()
        names = await _startup_sequence(cfg)
        if names is None:
            return False
        dispatcher = build_dispatcher(cfg, names)

        message_send, message_recv = anyio.create_memory_object_stream[
            MatrixIncomingMessage
        ](max_buffer_size=MESSAGE_QUEUE_SIZE)

        async with anyio.create_task_group() as tg:
            tg.start_soon(partial(_sync_loop, cfg, message_send, names=names))
            if cfg.reminders is not None:
                tg.start_soon(
                    partial(
                        run_reminder_loop,
                        cfg.reminders,
                        cfg.client,
                        poll_interval=cfg.reminder_poll_interval,
                    )
                )

            async with message_recv:
                async for msg in message_recv:
                    tg.start_soon(dispatcher.dispatch, msg)
        return True
    finally:
        await cfg.client.close()
