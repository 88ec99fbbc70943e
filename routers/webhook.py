"""
Webhook ingress

- POST /        event push from the Lark open platform (optionally encrypted)
- GET  /health  liveness probe
"""

import asyncio
import json
from typing import Any, Dict, Optional, Set

from fastapi import APIRouter, HTTPException, Request, status

from logger import get_logger

from config.settings import BridgeSettings
from core.bridge.crypto import DecryptionError, decrypt_payload
from core.bridge.router import InboundEventRouter

logger = get_logger("routers.webhook")

router = APIRouter(tags=["webhook"])

MESSAGE_RECEIVE_EVENT = "im.message.receive_v1"

# Module-level references (set during startup)
_event_router: Optional[InboundEventRouter] = None
_settings: Optional[BridgeSettings] = None

# Strong references to in-flight event tasks
_background_tasks: Set[asyncio.Task] = set()


def set_event_router(event_router: Optional[InboundEventRouter]) -> None:
    """Set the InboundEventRouter (called from main.py lifespan)."""
    global _event_router
    _event_router = event_router


def set_settings(settings: Optional[BridgeSettings]) -> None:
    """Set the bridge settings (called from main.py lifespan)."""
    global _settings
    _settings = settings


def _secret(name: str) -> str:
    if _settings is None:
        return ""
    return getattr(_settings, name).get_secret_value()


def _dispatch(event: Dict[str, Any]) -> None:
    if _event_router is None:
        logger.warning("Event router not ready, event dropped")
        return
    task = asyncio.create_task(_event_router.handle_event(event))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


async def drain_pending_events(timeout: float) -> None:
    """Give in-flight events *timeout* seconds to finish, then cancel the rest."""
    pending = [t for t in _background_tasks if not t.done()]
    if not pending:
        return

    logger.info("Waiting for in-flight events", extra={"count": len(pending)})
    _, still_pending = await asyncio.wait(pending, timeout=timeout)
    for task in still_pending:
        task.cancel()
    if still_pending:
        await asyncio.gather(*still_pending, return_exceptions=True)


@router.get("/health")
async def health() -> Dict[str, Any]:
    return {"ok": True, "appId": _settings.app_id if _settings else ""}


@router.post("/")
async def receive_event(request: Request) -> Dict[str, Any]:
    """
    Handle one event push.

    Order: parse → decrypt → url_verification → token check → dispatch.
    Message events are processed in the background; the push is acknowledged
    as soon as it is parsed.
    """
    raw = await request.body()
    try:
        body = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON")

    encrypt_key = _secret("encrypt_key")
    if body.get("encrypt") and encrypt_key:
        try:
            body = decrypt_payload(encrypt_key, body["encrypt"])
        except DecryptionError as e:
            logger.error("Failed to decrypt push", extra={"error": str(e)})
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Decryption failed")
        logger.debug("Push decrypted")

    if body.get("type") == "url_verification":
        logger.info("URL verification challenge received")
        return {"challenge": body.get("challenge")}

    header = body.get("header") if isinstance(body.get("header"), dict) else {}
    expected_token = _secret("verification_token")
    token = body.get("token") or header.get("token")
    if expected_token and token and token != expected_token:
        logger.warning("Verification token mismatch")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    event = body.get("event")
    if isinstance(event, dict):
        event_type = header.get("event_type") or event.get("type")
        logger.info("Event received", extra={"event_type": event_type})
        if event_type == MESSAGE_RECEIVE_EVENT:
            _dispatch(event)

    return {"ok": True}
