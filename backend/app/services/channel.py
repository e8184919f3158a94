"""Out-of-band channel used to deliver challenges and collect replies.

The chat transport itself lives outside BioLock. Anything that can send a
private message to a user and wait for that user's next reply can back a
challenge; ``MemoryChannel`` is the in-process implementation a chat
bridge feeds replies into (and what the test suite drives).
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from app.services.errors import ChallengeTimeoutError, ChannelError

logger = logging.getLogger(__name__)

ReplyPredicate = Callable[[str], bool]


@dataclass(frozen=True, slots=True)
class ChannelHandle:
    """Identifies the private conversation a prompt was sent on."""

    user_id: str
    conversation_id: str
    # Replies delivered up to this point predate the conversation
    opened_after: int = 0


class Channel(Protocol):
    async def send_private(self, user_id: str, text: str) -> ChannelHandle:
        """Send a private message. Raises ChannelError if undeliverable."""
        ...

    async def await_one_reply(
        self, handle: ChannelHandle, predicate: ReplyPredicate, timeout: float
    ) -> str:
        """Wait for the next reply matching *predicate*.

        Only replies sent after *handle* was opened are considered.
        Raises ChallengeTimeoutError when *timeout* seconds elapse first.
        """
        ...


def any_reply(text: str) -> bool:
    return True


class MemoryChannel:
    """Queue-backed channel: one inbox per user, one shared outbox."""

    def __init__(self) -> None:
        self._inboxes: defaultdict[str, asyncio.Queue[tuple[int, str]]] = defaultdict(
            asyncio.Queue
        )
        self._received: defaultdict[str, int] = defaultdict(int)
        self._opened = 0
        self._blocked: set[str] = set()
        self.outbox: list[tuple[str, str]] = []

    async def send_private(self, user_id: str, text: str) -> ChannelHandle:
        if user_id in self._blocked:
            raise ChannelError(f"Cannot open a private conversation with {user_id}")
        self.outbox.append((user_id, text))
        self._opened += 1
        return ChannelHandle(
            user_id=user_id,
            conversation_id=f"dm:{user_id}:{self._opened}",
            opened_after=self._received[user_id],
        )

    async def await_one_reply(
        self, handle: ChannelHandle, predicate: ReplyPredicate, timeout: float
    ) -> str:
        inbox = self._inboxes[handle.user_id]
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ChallengeTimeoutError(
                    f"No reply from {handle.user_id} within {timeout:g}s"
                )
            try:
                seq, text = await asyncio.wait_for(inbox.get(), remaining)
            except asyncio.TimeoutError:
                raise ChallengeTimeoutError(
                    f"No reply from {handle.user_id} within {timeout:g}s"
                ) from None
            if seq <= handle.opened_after:
                logger.debug("Dropped reply sent before %s was opened", handle.conversation_id)
                continue
            if predicate(text):
                return text
            logger.debug("Discarded non-matching reply on %s", handle.conversation_id)

    # ------------------------------------------------------------------
    # Bridge-facing helpers
    # ------------------------------------------------------------------

    def deliver(self, user_id: str, text: str) -> None:
        """Push a private reply from *user_id* into the channel."""
        self._received[user_id] += 1
        self._inboxes[user_id].put_nowait((self._received[user_id], text))

    def block(self, user_id: str) -> None:
        """Mark a user as unreachable (e.g. DMs closed)."""
        self._blocked.add(user_id)

    def unblock(self, user_id: str) -> None:
        self._blocked.discard(user_id)

    def messages_for(self, user_id: str) -> list[str]:
        return [text for uid, text in self.outbox if uid == user_id]
