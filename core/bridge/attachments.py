"""
Attachment pipeline

Two independent directions:

- inbound: platform image → local file under the media directory, named after
  the image key; zero-byte downloads are deleted and reported as failures.
- outbound: media URL produced by the agent → temp file → platform upload →
  image message. The temp file is always removed.

Neither direction retries. A failed item is logged and skipped; callers keep
delivering the rest of the reply.
"""

import base64
import mimetypes
import os
import re
import uuid
from pathlib import Path
from typing import Optional
from urllib.parse import unquote, urlparse

import aiofiles
import aiofiles.os
import httpx

from logger import get_logger

from core.bridge.platform import ChatPlatform
from core.bridge.types import AttachmentPayload

logger = get_logger("bridge.attachments")

DOWNLOAD_TIMEOUT_SECONDS = 30.0
_CHUNK_SIZE = 64 * 1024
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


def safe_filename(key: str, suffix: str = ".png") -> str:
    """Filesystem-safe name derived from a platform key."""
    return f"{_UNSAFE_FILENAME_CHARS.sub('_', key)}{suffix}"


class AttachmentPipeline:
    """
    Moves media between the platform, local storage and the agent.

    Args:
        platform: vendor API used for fetch / upload / send
        media_dir: local storage directory (created on demand)
        http_client_factory: builds the httpx client used for remote URLs
    """

    def __init__(
        self,
        platform: ChatPlatform,
        media_dir: Path,
        http_client_factory=None,
    ) -> None:
        self._platform = platform
        self._media_dir = media_dir
        self._http_client_factory = http_client_factory or (
            lambda: httpx.AsyncClient(timeout=DOWNLOAD_TIMEOUT_SECONDS, follow_redirects=True)
        )

    @property
    def media_dir(self) -> Path:
        return self._media_dir

    # ==================== inbound ====================

    async def fetch_inbound(self, message_id: str, image_key: str) -> Optional[Path]:
        """
        Download an image attached to a received message.

        Args:
            message_id: platform message id
            image_key: platform image key

        Returns:
            local path, or None when the download failed or was empty
        """
        path = self._media_dir / safe_filename(image_key)
        try:
            data = await self._platform.fetch_resource(message_id, image_key, "image")
            await aiofiles.os.makedirs(self._media_dir, exist_ok=True)
            async with aiofiles.open(path, "wb") as f:
                await f.write(data)

            size = (await aiofiles.os.stat(path)).st_size
            if size == 0:
                logger.error("Downloaded image is empty", extra={"path": str(path)})
                await aiofiles.os.remove(path)
                return None

            logger.info("Image downloaded", extra={"path": str(path), "bytes": size})
            return path
        except Exception as e:
            logger.error(
                "Failed to download image",
                extra={"message_id": message_id, "image_key": image_key, "error": str(e)},
                exc_info=True,
            )
            return None

    async def encode_for_submission(self, path: Path) -> Optional[AttachmentPayload]:
        """
        Inline a local file as a base64 attachment.

        Returns:
            AttachmentPayload, or None when the file cannot be read
        """
        try:
            async with aiofiles.open(path, "rb") as f:
                data = await f.read()
        except OSError as e:
            logger.error("Failed to read attachment", extra={"path": str(path), "error": str(e)})
            return None

        if not data:
            return None

        mime_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        return AttachmentPayload(
            type="image" if mime_type.startswith("image/") else "file",
            mime_type=mime_type,
            file_name=path.name,
            content=base64.b64encode(data).decode("ascii"),
        )

    # ==================== outbound ====================

    async def download_url(self, url: str, dest: Path) -> None:
        """
        Copy a media reference to *dest*.

        http(s) URLs are streamed with httpx; file:// URLs and bare paths are
        copied from disk.
        """
        parsed = urlparse(url)
        if parsed.scheme in ("http", "https"):
            async with self._http_client_factory() as client:
                async with client.stream("GET", url) as response:
                    response.raise_for_status()
                    async with aiofiles.open(dest, "wb") as f:
                        async for chunk in response.aiter_bytes(_CHUNK_SIZE):
                            await f.write(chunk)
            return

        if parsed.scheme == "file":
            source = Path(unquote(parsed.path))
        elif parsed.scheme == "" or (len(parsed.scheme) == 1 and os.name == "nt"):
            source = Path(os.path.expanduser(url))
        else:
            raise ValueError(f"Unsupported media URL scheme: {parsed.scheme}")

        async with aiofiles.open(source, "rb") as src, aiofiles.open(dest, "wb") as dst:
            while True:
                chunk = await src.read(_CHUNK_SIZE)
                if not chunk:
                    break
                await dst.write(chunk)

    async def relay_outbound(self, chat_id: str, url: str) -> bool:
        """
        Send one agent-produced media item to a conversation.

        Args:
            chat_id: target conversation
            url: http(s) URL, file:// URL or local path

        Returns:
            True when the image message was sent
        """
        temp_path = self._media_dir / f"temp_{uuid.uuid4()}.png"
        try:
            await aiofiles.os.makedirs(self._media_dir, exist_ok=True)
            await self.download_url(url, temp_path)

            async with aiofiles.open(temp_path, "rb") as f:
                data = await f.read()
            if not data:
                logger.error("Outbound media is empty", extra={"url": url})
                return False

            image_key = await self._platform.upload_image(data)
            await self._platform.send_image(chat_id, image_key)
            logger.info("Outbound media relayed", extra={"chat_id": chat_id, "url": url})
            return True
        except Exception as e:
            logger.error(
                "Failed to relay outbound media",
                extra={"chat_id": chat_id, "url": url, "error": str(e)},
                exc_info=True,
            )
            return False
        finally:
            try:
                await aiofiles.os.remove(temp_path)
            except FileNotFoundError:
                pass
