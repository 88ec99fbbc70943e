"""
Bridge wiring

Builds the router and its collaborators from validated settings.
"""

from typing import Optional

from logger import get_logger

from config.settings import BridgeSettings
from core.bridge.attachments import AttachmentPipeline
from core.bridge.exchange import GatewayExchange
from core.bridge.lark_client import LarkPlatform
from core.bridge.platform import ChatPlatform
from core.bridge.router import InboundEventRouter
from utils.app_paths import ensure_dir

logger = get_logger("bridge.factory")


def build_router(
    settings: BridgeSettings,
    platform: Optional[ChatPlatform] = None,
    exchange: Optional[GatewayExchange] = None,
) -> InboundEventRouter:
    """
    Create the inbound event router.

    Args:
        settings: validated bridge settings
        platform: vendor API override (defaults to LarkPlatform)
        exchange: gateway exchange override

    Returns:
        InboundEventRouter
    """
    ensure_dir(settings.media_dir)

    if platform is None:
        platform = LarkPlatform(
            settings.app_id,
            settings.app_secret.get_secret_value(),
            settings.domain,
        )
    if exchange is None:
        exchange = GatewayExchange(
            settings.gateway_url,
            settings.gateway_token.get_secret_value(),
            timeout_seconds=settings.exchange_timeout_seconds,
        )

    logger.debug(
        "Bridge router built",
        extra={"gateway_url": settings.gateway_url, "media_dir": str(settings.media_dir)},
    )
    return InboundEventRouter(
        platform=platform,
        exchange=exchange,
        attachments=AttachmentPipeline(platform, settings.media_dir),
        thinking_threshold_ms=settings.thinking_threshold_ms,
    )
