"""
Gateway exchange

One request/stream cycle against the agent gateway over a websocket:

    connect → challenge → auth request → auth result → chat.send
            → submission ack (runId) → assistant / lifecycle stream → end

The protocol itself is a pure transition function over immutable snapshots
(`transition`). `GatewayExchange` only moves frames between a transport and
that function, and owns the transport for exactly one cycle: it is closed once
on every exit path.
"""

import asyncio
import json
import sys
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple

import websockets
from websockets.exceptions import ConnectionClosed

from logger import get_logger

from core.bridge.types import ExchangeReply, ExchangeRequest

logger = get_logger("bridge.exchange")

PROTOCOL_VERSION = 3
CLIENT_ID = "gateway-client"
CLIENT_VERSION = "0.2.0"
CLIENT_MODE = "backend"
CLIENT_ROLE = "operator"
CLIENT_SCOPES = ("operator.read", "operator.write")
CLIENT_LOCALE = "en-US"
USER_AGENT = "larksuite-moltbot-bridge"

CHALLENGE_EVENT = "connect.challenge"
CONNECT_REQUEST_ID = "connect"
SUBMIT_REQUEST_ID = "chat-send"
SUBMIT_METHOD = "chat.send"
RUN_STREAM_EVENTS = frozenset({"agent", "chat"})


class GatewayExchangeError(Exception):
    """The exchange ended without a successful reply."""


class ExchangeState(str, Enum):
    CONNECTING = "connecting"
    AWAITING_CHALLENGE = "awaiting_challenge"
    AWAITING_AUTH_RESULT = "awaiting_auth_result"
    AWAITING_SUBMIT_ACK = "awaiting_submit_ack"
    STREAMING = "streaming"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TERMINAL_STATES = frozenset({ExchangeState.SUCCEEDED, ExchangeState.FAILED})


class Effect(str, Enum):
    """Outbound action requested by a transition."""
    SEND_AUTH = "send_auth"
    SEND_SUBMISSION = "send_submission"


@dataclass(frozen=True)
class ExchangeSnapshot:
    """Protocol state plus the reply accumulated so far."""
    state: ExchangeState = ExchangeState.CONNECTING
    run_id: Optional[str] = None
    text: str = ""
    media_refs: Tuple[str, ...] = ()
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def fail(self, message: str) -> "ExchangeSnapshot":
        return replace(self, state=ExchangeState.FAILED, error=message)

    def reply(self) -> ExchangeReply:
        return ExchangeReply(text=self.text.strip(), media_refs=list(self.media_refs))


def _error_message(frame: Dict[str, Any], default: str) -> str:
    error = frame.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return default


def _apply_stream(snapshot: ExchangeSnapshot, frame: Dict[str, Any]) -> ExchangeSnapshot:
    payload = frame.get("payload")
    if not isinstance(payload, dict):
        return snapshot
    # Once the run is known, anything else on the bus belongs to someone else
    if snapshot.run_id and payload.get("runId") != snapshot.run_id:
        return snapshot

    data = payload.get("data")
    if not isinstance(data, dict):
        data = {}

    stream = payload.get("stream")
    if stream == "assistant":
        text = snapshot.text
        if isinstance(data.get("text"), str):
            text = data["text"]
        elif isinstance(data.get("delta"), str):
            text = text + data["delta"]

        media_refs = snapshot.media_refs
        if isinstance(data.get("mediaUrls"), list):
            media_refs = tuple(str(u) for u in data["mediaUrls"] if u)
        return replace(snapshot, text=text, media_refs=media_refs)

    if stream == "lifecycle":
        phase = data.get("phase")
        if phase == "end":
            return replace(snapshot, state=ExchangeState.SUCCEEDED)
        if phase == "error":
            return snapshot.fail(str(data.get("message") or "agent error"))

    return snapshot


def transition(
    snapshot: ExchangeSnapshot,
    frame: Dict[str, Any],
) -> Tuple[ExchangeSnapshot, Optional[Effect]]:
    """
    Advance the protocol by one inbound frame.

    Frames that are not valid in the current state are ignored (the snapshot
    is returned unchanged). Terminal snapshots never change.

    Args:
        snapshot: current state
        frame: decoded gateway frame

    Returns:
        (next snapshot, outbound effect or None)
    """
    if snapshot.is_terminal:
        return snapshot, None

    frame_type = frame.get("type")
    state = snapshot.state

    if state is ExchangeState.AWAITING_CHALLENGE:
        if frame_type == "event" and frame.get("event") == CHALLENGE_EVENT:
            return replace(snapshot, state=ExchangeState.AWAITING_AUTH_RESULT), Effect.SEND_AUTH
        return snapshot, None

    if state is ExchangeState.AWAITING_AUTH_RESULT:
        if frame_type == "res" and frame.get("id") == CONNECT_REQUEST_ID:
            if not frame.get("ok"):
                return snapshot.fail(_error_message(frame, "connect failed")), None
            return replace(snapshot, state=ExchangeState.AWAITING_SUBMIT_ACK), Effect.SEND_SUBMISSION
        return snapshot, None

    if state in (ExchangeState.AWAITING_SUBMIT_ACK, ExchangeState.STREAMING):
        if frame_type == "res" and frame.get("id") == SUBMIT_REQUEST_ID:
            if state is ExchangeState.STREAMING:
                return snapshot, None
            if not frame.get("ok"):
                return snapshot.fail(_error_message(frame, "chat.send failed")), None
            payload = frame.get("payload") if isinstance(frame.get("payload"), dict) else {}
            run_id = payload.get("runId") or snapshot.run_id
            return replace(snapshot, state=ExchangeState.STREAMING, run_id=run_id), None

        if frame_type == "event" and frame.get("event") in RUN_STREAM_EVENTS:
            return _apply_stream(snapshot, frame), None

    return snapshot, None


def decode_frame(raw: Any) -> Optional[Dict[str, Any]]:
    """Parse one websocket message; anything that is not a JSON object is None."""
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8", errors="replace")
    try:
        frame = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None
    return frame if isinstance(frame, dict) else None


def build_auth_frame(token: str, client_platform: str = sys.platform) -> Dict[str, Any]:
    return {
        "type": "req",
        "id": CONNECT_REQUEST_ID,
        "method": "connect",
        "params": {
            "minProtocol": PROTOCOL_VERSION,
            "maxProtocol": PROTOCOL_VERSION,
            "client": {
                "id": CLIENT_ID,
                "version": CLIENT_VERSION,
                "platform": client_platform,
                "mode": CLIENT_MODE,
            },
            "role": CLIENT_ROLE,
            "scopes": list(CLIENT_SCOPES),
            "auth": {"token": token},
            "locale": CLIENT_LOCALE,
            "userAgent": USER_AGENT,
        },
    }


def build_submission_frame(request: ExchangeRequest) -> Dict[str, Any]:
    params: Dict[str, Any] = {
        "message": request.message,
        "sessionKey": request.session_key,
        "deliver": False,
        "idempotencyKey": request.idempotency_key,
    }
    if request.attachments:
        params["attachments"] = [a.model_dump(by_alias=True) for a in request.attachments]
    return {
        "type": "req",
        "id": SUBMIT_REQUEST_ID,
        "method": SUBMIT_METHOD,
        "params": params,
    }


class Transport(Protocol):
    """Bidirectional text-frame channel (a websockets client connection fits)."""

    async def send(self, message: str) -> None: ...

    async def recv(self) -> Any: ...

    async def close(self) -> None: ...


Connector = Callable[[str], Awaitable[Transport]]


async def connect_websocket(url: str) -> Transport:
    return await websockets.connect(url, max_size=None)


class _CloseOnce:
    """Transport wrapper whose close() reaches the underlying transport once."""

    def __init__(self, transport: Transport) -> None:
        self._transport = transport
        self.closed = False

    async def send(self, message: str) -> None:
        await self._transport.send(message)

    async def recv(self) -> Any:
        return await self._transport.recv()

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            await self._transport.close()
        except Exception as e:
            logger.warning("Error closing gateway transport", extra={"error": str(e)})


class GatewayExchange:
    """
    Runs one exchange per `run()` call; instances hold no per-run state.

    Args:
        url: gateway websocket URL
        token: gateway auth token
        connector: opens a transport (defaults to a websockets client)
        timeout_seconds: overall limit, None for no limit
        client_platform: reported in the auth request
    """

    def __init__(
        self,
        url: str,
        token: str,
        connector: Optional[Connector] = None,
        timeout_seconds: Optional[float] = None,
        client_platform: str = sys.platform,
    ) -> None:
        self._url = url
        self._token = token
        self._connector = connector or connect_websocket
        self._timeout_seconds = timeout_seconds
        self._client_platform = client_platform

    async def run(self, request: ExchangeRequest) -> ExchangeReply:
        """
        Submit one message and wait for the finished run.

        Raises:
            GatewayExchangeError: on any failure, the transport already closed
        """
        if self._timeout_seconds is None:
            return await self._run(request)
        try:
            return await asyncio.wait_for(self._run(request), timeout=self._timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning(
                "Gateway exchange timed out",
                extra={"session_key": request.session_key, "timeout_seconds": self._timeout_seconds},
            )
            raise GatewayExchangeError(f"gateway exchange timed out after {self._timeout_seconds}s")

    async def _run(self, request: ExchangeRequest) -> ExchangeReply:
        snapshot = ExchangeSnapshot()
        try:
            transport = _CloseOnce(await self._connector(self._url))
        except Exception as e:
            logger.error("Gateway connect failed", extra={"url": self._url, "error": str(e)})
            raise GatewayExchangeError(str(e) or type(e).__name__) from e

        snapshot = replace(snapshot, state=ExchangeState.AWAITING_CHALLENGE)
        try:
            while not snapshot.is_terminal:
                try:
                    raw = await transport.recv()
                except ConnectionClosed as e:
                    raise GatewayExchangeError(
                        f"gateway closed the connection while {snapshot.state.value}"
                    ) from e

                frame = decode_frame(raw)
                if frame is None:
                    continue

                previous = snapshot.state
                snapshot, effect = transition(snapshot, frame)
                if snapshot.state is not previous:
                    logger.debug(
                        "Gateway exchange state changed",
                        extra={"from": previous.value, "to": snapshot.state.value, "run_id": snapshot.run_id},
                    )

                if effect is Effect.SEND_AUTH:
                    await transport.send(json.dumps(build_auth_frame(self._token, self._client_platform)))
                elif effect is Effect.SEND_SUBMISSION:
                    await transport.send(json.dumps(build_submission_frame(request), ensure_ascii=False))
        except GatewayExchangeError:
            raise
        except Exception as e:
            logger.error(
                "Gateway transport error",
                extra={"state": snapshot.state.value, "error": str(e)},
                exc_info=True,
            )
            raise GatewayExchangeError(str(e) or type(e).__name__) from e
        finally:
            await transport.close()

        if snapshot.state is ExchangeState.FAILED:
            raise GatewayExchangeError(snapshot.error or "gateway exchange failed")

        reply = snapshot.reply()
        logger.info(
            "Gateway exchange finished",
            extra={
                "run_id": snapshot.run_id,
                "reply_length": len(reply.text),
                "media_count": len(reply.media_refs),
            },
        )
        return reply
