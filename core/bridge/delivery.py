"""
Reply delivery

Pushes the final text of an exchange to the conversation: into the placeholder
when one was shown, otherwise as fresh messages, chunking text that exceeds the
platform limit. Silent replies remove the placeholder and send nothing.
"""

from typing import List, Optional

from logger import get_logger

from core.bridge.platform import ChatPlatform

logger = get_logger("bridge.delivery")

# Lark / Feishu text message limit (characters)
MAX_MESSAGE_LENGTH = 30000

NO_REPLY_SENTINEL = "NO_REPLY"


def is_silent_reply(text: Optional[str]) -> bool:
    """Empty text, or text that is (or ends with) the no-reply sentinel."""
    trimmed = (text or "").strip()
    return not trimmed or trimmed == NO_REPLY_SENTINEL or trimmed.endswith(NO_REPLY_SENTINEL)


def split_message(text: str, max_length: int = MAX_MESSAGE_LENGTH) -> List[str]:
    """
    Split a long message into chunks that fit within the platform limit.

    Prefers splitting at paragraph or sentence boundaries.

    Args:
        text: full message text
        max_length: maximum characters per chunk

    Returns:
        list of text chunks
    """
    if not text:
        return []
    if len(text) <= max_length:
        return [text]

    chunks: List[str] = []
    remaining = text

    while remaining:
        if len(remaining) <= max_length:
            chunks.append(remaining)
            break

        # Paragraph, then line boundary
        split_idx = -1
        for sep in ("\n\n", "\n"):
            split_idx = remaining.rfind(sep, 0, max_length)
            if split_idx > max_length // 4:
                break
        if split_idx > max_length // 4:
            chunks.append(remaining[:split_idx])
            remaining = remaining[split_idx:].lstrip("\n")
            continue

        for sep in ("。", ". ", "！", "! ", "？", "? "):
            split_idx = remaining.rfind(sep, 0, max_length)
            if split_idx > max_length // 4:
                split_idx += len(sep)
                chunks.append(remaining[:split_idx])
                remaining = remaining[split_idx:].lstrip()
                break
        else:
            chunks.append(remaining[:max_length])
            remaining = remaining[max_length:]

    return chunks


async def send_chunks(platform: ChatPlatform, chat_id: str, chunks: List[str]) -> None:
    for i, chunk in enumerate(chunks):
        try:
            await platform.send_text(chat_id, chunk)
        except Exception as e:
            logger.error(
                "Failed to deliver chunk",
                extra={"chat_id": chat_id, "chunk_index": i, "total_chunks": len(chunks), "error": str(e)},
                exc_info=True,
            )
            raise


async def discard_placeholder(platform: ChatPlatform, placeholder_id: Optional[str]) -> None:
    if not placeholder_id:
        return
    try:
        await platform.delete_message(placeholder_id)
    except Exception as e:
        logger.warning("Failed to delete placeholder", extra={"placeholder_id": placeholder_id, "error": str(e)})


async def deliver_reply(
    platform: ChatPlatform,
    chat_id: str,
    text: str,
    placeholder_id: Optional[str] = None,
    max_length: int = MAX_MESSAGE_LENGTH,
) -> bool:
    """
    Deliver the final reply text.

    Args:
        platform: vendor API
        chat_id: target conversation
        text: reply text
        placeholder_id: id of the "thinking" message, if one was sent
        max_length: per-message limit

    Returns:
        False when the reply was silent and nothing was sent
    """
    if is_silent_reply(text):
        await discard_placeholder(platform, placeholder_id)
        logger.info("Silent reply, nothing delivered", extra={"chat_id": chat_id})
        return False

    chunks = split_message(text.strip(), max_length)

    edited = False
    if placeholder_id:
        try:
            await platform.edit_text(placeholder_id, chunks[0])
        except Exception as e:
            logger.warning(
                "Placeholder edit failed, sending fresh",
                extra={"placeholder_id": placeholder_id, "error": str(e)},
            )
        else:
            edited = True
            chunks = chunks[1:]

    logger.info(
        "Delivering reply",
        extra={
            "chat_id": chat_id,
            "total_length": len(text),
            "chunks": len(chunks),
            "edited_placeholder": edited,
        },
    )
    await send_chunks(platform, chat_id, chunks)
    return True
