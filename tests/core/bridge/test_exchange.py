"""
Gateway exchange: pure transitions and the websocket driver

The driver tests run against FakeTransport, no gateway needed.

运行命令：
    python -m pytest tests/core/bridge/test_exchange.py -v
"""

import pytest
from websockets.exceptions import ConnectionClosedOK

from core.bridge.exchange import (
    Effect,
    ExchangeSnapshot,
    ExchangeState,
    GatewayExchange,
    GatewayExchangeError,
    build_auth_frame,
    build_submission_frame,
    decode_frame,
    transition,
)
from core.bridge.types import AttachmentPayload, ExchangeRequest
from fakes import FakeTransport, challenge, connector_for, res, stream


def _request(**overrides) -> ExchangeRequest:
    fields = {"session_key": "larksuite:oc_1", "message": "hi", "idempotency_key": "idem-1"}
    fields.update(overrides)
    return ExchangeRequest(**fields)


def _streaming(run_id="run-1", text="") -> ExchangeSnapshot:
    return ExchangeSnapshot(state=ExchangeState.STREAMING, run_id=run_id, text=text)


def _successful_transport(*stream_frames) -> FakeTransport:
    return FakeTransport(
        opening=[challenge()],
        replies={
            "connect": [res("connect")],
            "chat-send": [res("chat-send", payload={"runId": "run-1"}), *stream_frames],
        },
    )


# ===========================================================================
# Handshake transitions
# ===========================================================================


class TestHandshake:
    """challenge → auth → submission"""

    def test_frames_before_challenge_are_ignored(self):
        snap = ExchangeSnapshot(state=ExchangeState.AWAITING_CHALLENGE)
        for frame in (res("connect"), stream("run-1", "assistant", {"text": "x"}), {"type": "noise"}):
            nxt, effect = transition(snap, frame)
            assert nxt == snap
            assert effect is None

    def test_challenge_requests_auth(self):
        snap = ExchangeSnapshot(state=ExchangeState.AWAITING_CHALLENGE)
        nxt, effect = transition(snap, challenge())
        assert nxt.state is ExchangeState.AWAITING_AUTH_RESULT
        assert effect is Effect.SEND_AUTH

    def test_auth_success_requests_submission(self):
        snap = ExchangeSnapshot(state=ExchangeState.AWAITING_AUTH_RESULT)
        nxt, effect = transition(snap, res("connect"))
        assert nxt.state is ExchangeState.AWAITING_SUBMIT_ACK
        assert effect is Effect.SEND_SUBMISSION

    def test_auth_failure_carries_error_message(self):
        snap = ExchangeSnapshot(state=ExchangeState.AWAITING_AUTH_RESULT)
        nxt, effect = transition(snap, res("connect", ok=False, message="bad token"))
        assert nxt.state is ExchangeState.FAILED
        assert nxt.error == "bad token"
        assert effect is None

    def test_auth_failure_without_message_uses_default(self):
        snap = ExchangeSnapshot(state=ExchangeState.AWAITING_AUTH_RESULT)
        nxt, _ = transition(snap, {"type": "res", "id": "connect", "ok": False})
        assert nxt.error == "connect failed"

    def test_submission_ack_records_run_id(self):
        snap = ExchangeSnapshot(state=ExchangeState.AWAITING_SUBMIT_ACK)
        nxt, effect = transition(snap, res("chat-send", payload={"runId": "run-9"}))
        assert nxt.state is ExchangeState.STREAMING
        assert nxt.run_id == "run-9"
        assert effect is None
        assert not nxt.is_terminal

    def test_submission_rejected(self):
        snap = ExchangeSnapshot(state=ExchangeState.AWAITING_SUBMIT_ACK)
        nxt, _ = transition(snap, {"type": "res", "id": "chat-send", "ok": False})
        assert nxt.state is ExchangeState.FAILED
        assert nxt.error == "chat.send failed"


# ===========================================================================
# Stream transitions
# ===========================================================================


class TestStream:
    """assistant / lifecycle frames and run-id filtering"""

    def test_full_text_replaces_buffer(self):
        nxt, _ = transition(_streaming(text="old"), stream("run-1", "assistant", {"text": "new"}))
        assert nxt.text == "new"

    def test_delta_appends(self):
        snap = _streaming()
        for delta in ("Hel", "lo"):
            snap, _ = transition(snap, stream("run-1", "assistant", {"delta": delta}))
        assert snap.text == "Hello"

    def test_full_text_after_deltas_wins(self):
        snap = _streaming()
        snap, _ = transition(snap, stream("run-1", "assistant", {"delta": "draft"}))
        snap, _ = transition(snap, stream("run-1", "assistant", {"text": "final"}))
        assert snap.text == "final"

    def test_media_list_is_replaced(self):
        snap = _streaming()
        snap, _ = transition(snap, stream("run-1", "assistant", {"mediaUrls": ["a.png", "b.png"]}))
        snap, _ = transition(snap, stream("run-1", "assistant", {"mediaUrls": ["c.png"]}))
        assert snap.media_refs == ("c.png",)

    def test_foreign_run_is_discarded(self):
        snap = _streaming(text="mine")
        nxt, _ = transition(snap, stream("run-other", "assistant", {"text": "theirs"}))
        assert nxt == snap
        nxt, _ = transition(snap, stream("run-other", "lifecycle", {"phase": "end"}))
        assert nxt.state is ExchangeState.STREAMING

    def test_frames_before_ack_are_accepted(self):
        snap = ExchangeSnapshot(state=ExchangeState.AWAITING_SUBMIT_ACK)
        nxt, _ = transition(snap, stream("run-1", "assistant", {"text": "early"}))
        assert nxt.text == "early"

    def test_chat_event_name_carries_stream(self):
        nxt, _ = transition(_streaming(), stream("run-1", "assistant", {"text": "x"}, event="chat"))
        assert nxt.text == "x"

    def test_other_event_names_are_ignored(self):
        snap = _streaming()
        nxt, _ = transition(snap, stream("run-1", "assistant", {"text": "x"}, event="presence"))
        assert nxt == snap

    def test_lifecycle_end_succeeds_with_trimmed_text(self):
        snap, _ = transition(_streaming(text="  Hello \n"), stream("run-1", "lifecycle", {"phase": "end"}))
        assert snap.state is ExchangeState.SUCCEEDED
        assert snap.reply().text == "Hello"

    def test_lifecycle_error(self):
        snap, _ = transition(_streaming(), stream("run-1", "lifecycle", {"phase": "error", "message": "oops"}))
        assert snap.state is ExchangeState.FAILED
        assert snap.error == "oops"

    def test_lifecycle_error_default_message(self):
        snap, _ = transition(_streaming(), stream("run-1", "lifecycle", {"phase": "error"}))
        assert snap.error == "agent error"

    def test_other_phases_keep_streaming(self):
        snap, _ = transition(_streaming(), stream("run-1", "lifecycle", {"phase": "start"}))
        assert snap.state is ExchangeState.STREAMING

    def test_terminal_snapshot_never_changes(self):
        done = ExchangeSnapshot(state=ExchangeState.SUCCEEDED, text="x")
        nxt, effect = transition(done, stream("run-1", "assistant", {"text": "y"}))
        assert nxt == done
        assert effect is None


# ===========================================================================
# Frame builders
# ===========================================================================


class TestFrames:

    def test_auth_frame(self):
        frame = build_auth_frame("tok", client_platform="linux")
        params = frame["params"]
        assert frame["type"] == "req"
        assert frame["id"] == "connect"
        assert frame["method"] == "connect"
        assert params["minProtocol"] == params["maxProtocol"] == 3
        assert params["client"] == {"id": "gateway-client", "version": "0.2.0", "platform": "linux", "mode": "backend"}
        assert params["role"] == "operator"
        assert params["scopes"] == ["operator.read", "operator.write"]
        assert params["auth"] == {"token": "tok"}
        assert params["userAgent"] == "larksuite-moltbot-bridge"

    def test_submission_frame(self):
        frame = build_submission_frame(_request())
        assert frame["id"] == "chat-send"
        assert frame["method"] == "chat.send"
        assert frame["params"] == {
            "message": "hi",
            "sessionKey": "larksuite:oc_1",
            "deliver": False,
            "idempotencyKey": "idem-1",
        }

    def test_submission_frame_inlines_attachments(self):
        attachment = AttachmentPayload(mime_type="image/png", file_name="a.png", content="AAAA")
        frame = build_submission_frame(_request(attachments=[attachment]))
        assert frame["params"]["attachments"] == [
            {"type": "image", "mimeType": "image/png", "fileName": "a.png", "content": "AAAA"}
        ]

    @pytest.mark.parametrize("raw", ["not json", "[1, 2]", "", None])
    def test_decode_rejects_non_objects(self, raw):
        assert decode_frame(raw) is None

    def test_decode_accepts_bytes(self):
        assert decode_frame(b'{"type": "event"}') == {"type": "event"}


# ===========================================================================
# GatewayExchange driver
# ===========================================================================


class TestGatewayExchange:
    """End-to-end cycles over the fake transport"""

    @pytest.mark.asyncio
    async def test_success(self):
        transport = _successful_transport(
            stream("run-1", "assistant", {"text": "Hello"}),
            stream("run-1", "lifecycle", {"phase": "end"}),
        )
        exchange = GatewayExchange("ws://gw", "tok", connector=connector_for(transport))

        reply = await exchange.run(_request())

        assert reply.text == "Hello"
        assert reply.media_refs == []
        assert [f["id"] for f in transport.outbox] == ["connect", "chat-send"]
        assert transport.outbox[0]["params"]["auth"] == {"token": "tok"}
        assert transport.close_calls == 1

    @pytest.mark.asyncio
    async def test_success_with_deltas_and_media(self):
        transport = _successful_transport(
            stream("run-1", "assistant", {"delta": "Here "}),
            stream("run-2", "assistant", {"delta": "noise"}),
            stream("run-1", "assistant", {"delta": "you go", "mediaUrls": ["https://x/a.png"]}),
            stream("run-1", "lifecycle", {"phase": "end"}),
        )
        exchange = GatewayExchange("ws://gw", "tok", connector=connector_for(transport))

        reply = await exchange.run(_request())

        assert reply.text == "Here you go"
        assert reply.media_refs == ["https://x/a.png"]

    @pytest.mark.asyncio
    async def test_auth_failure_closes_once(self):
        transport = FakeTransport(
            opening=[challenge()],
            replies={"connect": [res("connect", ok=False, message="unauthorized")]},
        )
        exchange = GatewayExchange("ws://gw", "bad", connector=connector_for(transport))

        with pytest.raises(GatewayExchangeError, match="unauthorized"):
            await exchange.run(_request())

        assert [f["id"] for f in transport.outbox] == ["connect"]
        assert transport.close_calls == 1

    @pytest.mark.asyncio
    async def test_lifecycle_error(self):
        transport = _successful_transport(stream("run-1", "lifecycle", {"phase": "error", "message": "model down"}))
        exchange = GatewayExchange("ws://gw", "tok", connector=connector_for(transport))

        with pytest.raises(GatewayExchangeError, match="model down"):
            await exchange.run(_request())
        assert transport.close_calls == 1

    @pytest.mark.asyncio
    async def test_transport_error(self):
        transport = FakeTransport(opening=[challenge()], recv_error=OSError("connection reset"))
        exchange = GatewayExchange("ws://gw", "tok", connector=connector_for(transport))

        with pytest.raises(GatewayExchangeError, match="connection reset"):
            await exchange.run(_request())
        assert transport.close_calls == 1

    @pytest.mark.asyncio
    async def test_connection_closed_before_end(self):
        transport = _successful_transport(stream("run-1", "assistant", {"text": "partial"}))
        transport.recv_error = ConnectionClosedOK(None, None)
        exchange = GatewayExchange("ws://gw", "tok", connector=connector_for(transport))

        with pytest.raises(GatewayExchangeError, match="closed the connection"):
            await exchange.run(_request())
        assert transport.close_calls == 1

    @pytest.mark.asyncio
    async def test_connect_failure(self):
        async def refuse(url):
            raise ConnectionRefusedError("refused")

        exchange = GatewayExchange("ws://gw", "tok", connector=refuse)

        with pytest.raises(GatewayExchangeError, match="refused"):
            await exchange.run(_request())

    @pytest.mark.asyncio
    async def test_garbage_frames_are_skipped(self):
        transport = FakeTransport(
            opening=["{{not json", challenge()],
            replies={
                "connect": [res("connect")],
                "chat-send": [
                    res("chat-send", payload={"runId": "run-1"}),
                    "[]",
                    stream("run-1", "assistant", {"text": "ok"}),
                    stream("run-1", "lifecycle", {"phase": "end"}),
                ],
            },
        )
        exchange = GatewayExchange("ws://gw", "tok", connector=connector_for(transport))

        reply = await exchange.run(_request())
        assert reply.text == "ok"

    @pytest.mark.asyncio
    async def test_timeout_fails_and_closes(self):
        transport = _successful_transport(stream("run-1", "assistant", {"text": "still thinking"}))
        exchange = GatewayExchange("ws://gw", "tok", connector=connector_for(transport), timeout_seconds=0.05)

        with pytest.raises(GatewayExchangeError, match="timed out"):
            await exchange.run(_request())
        assert transport.close_calls == 1

    @pytest.mark.asyncio
    async def test_submission_carries_request_fields(self):
        transport = _successful_transport(stream("run-1", "lifecycle", {"phase": "end"}))
        exchange = GatewayExchange("ws://gw", "tok", connector=connector_for(transport))

        reply = await exchange.run(_request(message="你好", idempotency_key="idem-42"))

        params = transport.outbox[1]["params"]
        assert params["message"] == "你好"
        assert params["idempotencyKey"] == "idem-42"
        assert params["deliver"] is False
        assert reply.text == ""
