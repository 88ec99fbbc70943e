"""
Chat platform protocol

The vendor API surface the bridge consumes. The production implementation is
LarkPlatform (lark-oapi); tests provide in-memory fakes.
"""

from typing import Optional, Protocol, runtime_checkable


class PlatformError(Exception):
    """A vendor API call returned a failure response."""

    def __init__(self, operation: str, code: Optional[int] = None, msg: str = "") -> None:
        self.operation = operation
        self.code = code
        self.msg = msg
        super().__init__(f"{operation} failed: code={code}, msg={msg}")


@runtime_checkable
class ChatPlatform(Protocol):
    """
    Messaging platform operations.

    Every method raises PlatformError (or a transport exception) on failure.
    """

    async def send_text(self, chat_id: str, text: str) -> Optional[str]:
        """
        Send a text message to a conversation.

        Returns:
            the new message id, when the platform reports one
        """
        ...

    async def edit_text(self, message_id: str, text: str) -> None:
        """Replace the text of a message sent earlier."""
        ...

    async def delete_message(self, message_id: str) -> None:
        """Recall a message sent earlier."""
        ...

    async def fetch_resource(self, message_id: str, file_key: str, resource_type: str = "image") -> bytes:
        """Download a file attached to a received message."""
        ...

    async def upload_image(self, data: bytes) -> str:
        """Upload image bytes, returning the platform image key."""
        ...

    async def send_image(self, chat_id: str, image_key: str) -> Optional[str]:
        """Send an uploaded image to a conversation."""
        ...
