"""
"Thinking" placeholder

A delayed message shown while the agent is working. The timer sends it only
when the exchange is still running after the threshold; the completion token
is checked right before sending so a finished exchange never gets a stale
placeholder.
"""

import asyncio
from typing import Optional

from logger import get_logger

from core.bridge.platform import ChatPlatform

logger = get_logger("bridge.placeholder")

THINKING_TEXT = "Thinking…"
SETTLE_TIMEOUT_SECONDS = 5.0


class CompletionToken:
    """Set once when the exchange it belongs to has finished."""

    def __init__(self) -> None:
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def complete(self) -> None:
        self._done = True


class PlaceholderTimer:
    """
    Args:
        platform: used to send the placeholder
        chat_id: target conversation
        threshold_ms: delay before sending; 0 or less disables the placeholder
        text: placeholder text
        settle_timeout: longest wait for an in-flight placeholder send
    """

    def __init__(
        self,
        platform: ChatPlatform,
        chat_id: str,
        threshold_ms: int,
        text: str = THINKING_TEXT,
        settle_timeout: float = SETTLE_TIMEOUT_SECONDS,
    ) -> None:
        self._platform = platform
        self._chat_id = chat_id
        self._threshold_ms = threshold_ms
        self._text = text
        self._settle_timeout = settle_timeout
        self.token = CompletionToken()
        self._task: Optional[asyncio.Task] = None
        self._fired = False

    @property
    def enabled(self) -> bool:
        return self._threshold_ms > 0

    @property
    def fired(self) -> bool:
        """The threshold elapsed and a send was attempted."""
        return self._fired

    def start(self) -> None:
        if not self.enabled or self._task is not None:
            return
        self._task = asyncio.create_task(self._fire())

    async def _fire(self) -> Optional[str]:
        await asyncio.sleep(self._threshold_ms / 1000)
        if self.token.done:
            return None

        self._fired = True
        try:
            message_id = await self._platform.send_text(self._chat_id, self._text)
        except Exception as e:
            logger.warning("Failed to send placeholder", extra={"chat_id": self._chat_id, "error": str(e)})
            return None
        logger.debug("Placeholder sent", extra={"chat_id": self._chat_id, "message_id": message_id})
        return message_id

    async def settle(self) -> Optional[str]:
        """
        Mark the exchange finished and stop the timer.

        Returns:
            id of the placeholder message if one was sent, else None
        """
        self.token.complete()
        task = self._task
        if task is None:
            return None

        if not self._fired:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            return None

        # Send already in flight: wait for it so the id can be edited or deleted
        try:
            return await asyncio.wait_for(task, timeout=self._settle_timeout)
        except asyncio.TimeoutError:
            logger.warning(
                "Placeholder send timed out, replying without it",
                extra={"chat_id": self._chat_id, "timeout_s": self._settle_timeout},
            )
            return None
