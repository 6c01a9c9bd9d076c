"""Shared constants and fakes for the test suite."""

from __future__ import annotations

from royalnet_matrix.errors import ReplyError
from royalnet_matrix.types import MatrixIncomingMessage

MATRIX_USER_ID = "@royalbot:example.org"
MATRIX_ROOM_ID = "!room:example.org"
MATRIX_OTHER_ROOM_ID = "!other:example.org"
MATRIX_EVENT_ID = "$event1:example.org"
MATRIX_SENDER = "@steffo:example.org"


def make_message(
    text: str,
    *,
    room_id: str = MATRIX_ROOM_ID,
    event_id: str = MATRIX_EVENT_ID,
    sender: str = MATRIX_SENDER,
) -> MatrixIncomingMessage:
    return MatrixIncomingMessage(
        room_id=room_id,
        event_id=event_id,
        sender=sender,
        text=text,
    )


class FakeReplySink:
    """Reply sink recording sends; optionally failing every send."""

    def __init__(
        self,
        *,
        room_id: str = MATRIX_ROOM_ID,
        event_id: str = MATRIX_EVENT_ID,
        fail: bool = False,
    ) -> None:
        self.room_id = room_id
        self.event_id = event_id
        self.fail = fail
        self.attempts: list[tuple[str, str | None]] = []
        self.sent: list[tuple[str, str]] = []

    async def send(self, text: str, *, reply_to: str | None = None) -> str:
        target = self.event_id if reply_to is None else reply_to
        self.attempts.append((text, target))
        if self.fail:
            raise ReplyError(self.room_id, "homeserver unreachable")
        self.sent.append((text, target))
        return f"$sent{len(self.sent)}"
