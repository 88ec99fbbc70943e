"""
Message bridging core

Webhook events in, gateway exchanges out:

- InboundEventRouter: per-event orchestration
- GatewayExchange: one challenge / auth / submit / stream cycle
- AttachmentPipeline: media in both directions
- Deduplicator, SessionResolver, GroupRelevanceFilter: routing state and gates
"""

from core.bridge.attachments import AttachmentPipeline
from core.bridge.dedup import Deduplicator
from core.bridge.exchange import GatewayExchange, GatewayExchangeError
from core.bridge.group_filter import GroupRelevanceFilter, should_respond
from core.bridge.router import InboundEventRouter, normalize_event
from core.bridge.session import SessionResolver
from core.bridge.types import ExchangeReply, ExchangeRequest, InboundEvent, MessageKind

__all__ = [
    "AttachmentPipeline",
    "Deduplicator",
    "ExchangeReply",
    "ExchangeRequest",
    "GatewayExchange",
    "GatewayExchangeError",
    "GroupRelevanceFilter",
    "InboundEvent",
    "InboundEventRouter",
    "MessageKind",
    "SessionResolver",
    "normalize_event",
    "should_respond",
]
