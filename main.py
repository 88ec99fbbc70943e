"""
Larksuite bridge - FastAPI service

Receives Lark / Feishu event pushes and relays messages to the local agent
gateway.
"""

# ==================== 标准库 ====================
import json
import sys
from contextlib import asynccontextmanager
from typing import Any, Optional

# ==================== 第三方库 ====================
from fastapi import FastAPI
from fastapi.responses import JSONResponse

# ==================== 本地模块 ====================
from logger import get_logger

from config.settings import BridgeSettings, ConfigError, load_settings
from core.bridge.factory import build_router
from core.bridge.router import InboundEventRouter
from routers import webhook_router
from routers.webhook import drain_pending_events, set_event_router, set_settings

logger = get_logger("main")

# ==================== 常量定义 ====================

APP_NAME = "Larksuite Bridge"
APP_DESCRIPTION = "Lark / Feishu webhook to agent gateway bridge"
APP_VERSION = "0.1.0"

SHUTDOWN_GRACE_SECONDS = 5.0


class UnicodeJSONResponse(JSONResponse):
    """JSONResponse that outputs non-ASCII characters directly (no \\uXXXX escapes)."""

    def render(self, content: Any) -> bytes:
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            indent=None,
            separators=(",", ":"),
        ).encode("utf-8")


# ==================== 启动 / 关闭辅助函数 ====================

def _log_banner(settings: BridgeSettings) -> None:
    logger.info(
        "Larksuite bridge started",
        extra={
            "app_id": settings.app_id,
            "webhook": f"http://localhost:{settings.webhook_port}",
            "gateway": settings.gateway_url,
            "agent_id": settings.agent_id,
            "media_dir": str(settings.media_dir),
            "encrypt_key": "SET" if settings.encrypt_key.get_secret_value() else "NOT SET",
            "verification_token": "SET" if settings.verification_token.get_secret_value() else "NOT SET",
        },
    )
    logger.info("Waiting for messages from Larksuite...")


# ==================== FastAPI 应用 ====================

def create_app(
    settings: BridgeSettings,
    event_router: Optional[InboundEventRouter] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: validated bridge settings
        event_router: router override; built from settings at startup when None
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # ===== 启动阶段 =====
        router = event_router or build_router(settings)
        set_settings(settings)
        set_event_router(router)
        _log_banner(settings)

        yield

        # ===== 关闭阶段 =====
        logger.info("Shutting down")
        await drain_pending_events(SHUTDOWN_GRACE_SECONDS)
        set_event_router(None)
        set_settings(None)

    app = FastAPI(
        title=APP_NAME,
        description=APP_DESCRIPTION,
        version=APP_VERSION,
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        default_response_class=UnicodeJSONResponse,
    )
    app.include_router(webhook_router)
    return app


# ==================== 启动入口 ====================

def run() -> None:
    """Load settings and serve the webhook. Exits with status 1 on bad configuration."""
    import uvicorn

    try:
        settings = load_settings()
    except ConfigError as e:
        logger.critical(f"Configuration error: {e}")
        sys.exit(1)

    uvicorn.run(
        create_app(settings),
        host="0.0.0.0",
        port=settings.webhook_port,
        log_level="info",
    )


if __name__ == "__main__":
    run()
