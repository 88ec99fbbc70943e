"""
Inbound event router

Per message-receive event:

1. normalize the raw event and drop duplicates
2. extract text / media according to the message kind
3. gate group chatter through the relevance filter
4. answer the /reset and /status control commands locally
5. run one gateway exchange under a delayed "thinking" placeholder
6. deliver the reply text, then relay any media the agent produced

Every failure is caught and logged here; one event can never take down the
webhook task or another event in flight.
"""

import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional

from logger import clear_event_context, get_logger, log_execution_time, set_event_context

from core.bridge.attachments import AttachmentPipeline
from core.bridge.content import parse_content, strip_mention_tokens
from core.bridge.dedup import Deduplicator
from core.bridge.delivery import deliver_reply
from core.bridge.exchange import GatewayExchange
from core.bridge.group_filter import GroupRelevanceFilter
from core.bridge.placeholder import PlaceholderTimer
from core.bridge.platform import ChatPlatform
from core.bridge.session import SessionResolver
from core.bridge.types import (
    AttachmentPayload,
    ExchangeReply,
    ExchangeRequest,
    ExtractedContent,
    InboundEvent,
    Mention,
    MessageKind,
)

logger = get_logger("bridge.router")

RESET_COMMAND = "/reset"
STATUS_COMMAND = "/status"
RESET_CONFIRMATION = "✅ Session reset, starting a new conversation."
IMAGE_ONLY_MESSAGE = "(image)"
SYSTEM_ERROR_PREFIX = "(System error)"


def normalize_event(raw: Dict[str, Any]) -> Optional[InboundEvent]:
    """
    Build an InboundEvent from the `event` object of an im.message.receive_v1 push.

    Returns:
        None when the event carries no conversation id
    """
    message = raw.get("message") if isinstance(raw, dict) else None
    if not isinstance(message, dict):
        return None

    chat_id = message.get("chat_id")
    if not chat_id:
        return None

    mentions: List[Mention] = []
    for item in message.get("mentions") or []:
        if not isinstance(item, dict):
            continue
        ids = item.get("id") if isinstance(item.get("id"), dict) else {}
        mentions.append(Mention(
            key=item.get("key") or "",
            name=item.get("name"),
            open_id=ids.get("open_id"),
        ))

    message_type = message.get("message_type") or ""
    return InboundEvent(
        conversation_id=chat_id,
        event_id=message.get("message_id") or "",
        kind=MessageKind.from_platform(message_type),
        message_type=message_type,
        content=message.get("content") or "",
        chat_type=message.get("chat_type") or "",
        mentions=mentions,
    )


def format_status(session_key: str, event: InboundEvent) -> str:
    return f"📊 Session: {session_key}\nChat: {event.conversation_id}\nType: {event.chat_type or 'unknown'}"


class InboundEventRouter:
    """
    Args:
        platform: vendor API
        exchange: gateway exchange runner
        attachments: media pipeline
        deduplicator: recently seen message ids
        sessions: session key resolver
        group_filter: relevance filter for text-only group messages
        thinking_threshold_ms: placeholder delay; 0 disables the placeholder
    """

    def __init__(
        self,
        platform: ChatPlatform,
        exchange: GatewayExchange,
        attachments: AttachmentPipeline,
        deduplicator: Optional[Deduplicator] = None,
        sessions: Optional[SessionResolver] = None,
        group_filter: Optional[GroupRelevanceFilter] = None,
        thinking_threshold_ms: int = 2500,
    ) -> None:
        self._platform = platform
        self._exchange = exchange
        self._attachments = attachments
        self._dedup = deduplicator or Deduplicator()
        self._sessions = sessions or SessionResolver()
        self._group_filter = group_filter or GroupRelevanceFilter()
        self._thinking_threshold_ms = thinking_threshold_ms

    @property
    def sessions(self) -> SessionResolver:
        return self._sessions

    async def handle_event(self, raw: Dict[str, Any]) -> None:
        """Route one raw message-receive event. Never raises."""
        try:
            event = normalize_event(raw)
            if event is None:
                logger.debug("Event without chat id ignored")
                return

            set_event_context(chat_id=event.conversation_id, message_id=event.event_id)
            await self._route(event)
        except Exception as e:
            logger.error("Message handler failed", extra={"error": str(e)}, exc_info=True)
        finally:
            clear_event_context()

    async def _route(self, event: InboundEvent) -> None:
        if self._dedup.is_duplicate(event.event_id):
            return

        logger.debug(
            "Event received",
            extra={"kind": event.kind.value, "message_type": event.message_type, "chat_type": event.chat_type},
        )

        if event.kind is MessageKind.OTHER:
            logger.info("Unsupported message type skipped", extra={"message_type": event.message_type})
            return

        content = await self.extract_content(event)
        if content.is_empty:
            return

        if event.is_group and not content.media_path:
            if not self._group_filter.should_respond(content.text, event.mentions):
                return

        command = content.text.strip().lower()
        if command == RESET_COMMAND:
            self._sessions.apply_reset(event.conversation_id)
            await self._platform.send_text(event.conversation_id, RESET_CONFIRMATION)
            return
        if command == STATUS_COMMAND:
            session_key = self._sessions.current_key(event.conversation_id)
            await self._platform.send_text(event.conversation_id, format_status(session_key, event))
            return

        session_key = self._sessions.resolve_key(event.conversation_id)
        logger.info(
            "Message accepted",
            extra={
                "session_key": session_key,
                "text_preview": content.text[:50],
                "has_media": bool(content.media_path),
            },
        )

        reply = await self._ask_agent(event, content, session_key)
        if reply is None:
            return

        for url in reply.media_refs:
            await self._attachments.relay_outbound(event.conversation_id, url)

        logger.info("Reply sent", extra={"media_count": len(reply.media_refs)})

    async def extract_content(self, event: InboundEvent) -> ExtractedContent:
        """
        Decode the message body and fetch its image, if any.

        A failed image fetch keeps the text; the event still proceeds.
        """
        parsed = parse_content(event.kind, event.content)

        media_path: Optional[str] = None
        if parsed.image_key:
            path = await self._attachments.fetch_inbound(event.event_id, parsed.image_key)
            media_path = str(path) if path else None
        if parsed.ignored_image_keys:
            logger.debug("Extra post images ignored", extra={"count": len(parsed.ignored_image_keys)})

        return ExtractedContent(text=strip_mention_tokens(parsed.text), media_path=media_path)

    async def _build_request(self, content: ExtractedContent, session_key: str) -> ExchangeRequest:
        attachments: List[AttachmentPayload] = []
        if content.media_path:
            payload = await self._attachments.encode_for_submission(Path(content.media_path))
            if payload is not None:
                attachments.append(payload)

        message = content.text or (IMAGE_ONLY_MESSAGE if attachments else "")
        return ExchangeRequest(
            session_key=session_key,
            message=message,
            idempotency_key=str(uuid.uuid4()),
            attachments=attachments,
        )

    async def _ask_agent(
        self,
        event: InboundEvent,
        content: ExtractedContent,
        session_key: str,
    ) -> Optional[ExchangeReply]:
        """
        Run the exchange under a placeholder and deliver its text.

        Returns:
            the reply, or None when it was silent
        """
        request = await self._build_request(content, session_key)

        placeholder = PlaceholderTimer(self._platform, event.conversation_id, self._thinking_threshold_ms)
        placeholder.start()
        try:
            with log_execution_time("gateway exchange", logger):
                reply = await self._exchange.run(request)
        except Exception as e:
            logger.error("Gateway exchange failed", extra={"session_key": session_key, "error": str(e)})
            reply = ExchangeReply(text=f"{SYSTEM_ERROR_PREFIX} {str(e) or type(e).__name__}")
        finally:
            placeholder_id = await placeholder.settle()

        delivered = await deliver_reply(self._platform, event.conversation_id, reply.text, placeholder_id)
        return reply if delivered else None
