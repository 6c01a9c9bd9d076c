"""Reply sink bound to the conversation a command came from."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from ...errors import ReplyError

if TYPE_CHECKING:
    from ...client import MatrixClient


class ReplySink(Protocol):
    """Sends replies into one room, threaded to the originating message."""

    room_id: str
    event_id: str

    async def send(self, text: str, *, reply_to: str | None = None) -> str:
        """Send ``text`` and return the id of the sent event.

        ``reply_to`` defaults to the originating message.

        Raises:
            ReplyError: the message could not be delivered.
        """
        ...


class MatrixReplySink:
    """Reply sink backed by ``MatrixClient.send_message``."""

    def __init__(self, client: MatrixClient, *, room_id: str, event_id: str) -> None:
        self._client = client
        self.room_id = room_id
        self.event_id = event_id

    async def send(self, text: str, *, reply_to: str | None = None) -> str:
        reply_to_event_id = self.event_id if reply_to is None else reply_to
        sent = await self._client.send_message(
            self.room_id,
            text,
            reply_to_event_id=reply_to_event_id,
        )
        if sent is None:
            raise ReplyError(
                self.room_id, "Non è stato possibile inviare la risposta."
            )
        return sent["event_id"]
