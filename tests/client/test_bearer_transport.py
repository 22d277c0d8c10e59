"""Tests for BearerSSETransport against in-process HTTP handlers."""

import json
import math
from typing import Any

import anyio
import httpx
import pytest

from mcp_bearer.client.transport import BearerSSETransport, TransportClosed, TransportState
from mcp_bearer.shared.exceptions import (
    AlreadyStartedError,
    ConnectFailedError,
    ConnectionClosedError,
    NotStartedError,
    OriginMismatchError,
    SendFailedError,
    StreamEndedBeforeEndpointError,
    UnexpectedContentTypeError,
)
from mcp_bearer.types import JSONRPCNotification, JSONRPCRequest, JSONRPCResultResponse

URL = "http://weather.test/weather/sse"


def _drain(receive: Any) -> list[Any]:
    events: list[Any] = []
    while True:
        try:
            events.append(receive.receive_nowait())
        except (anyio.WouldBlock, anyio.EndOfStream):
            return events


def _make_transport(factory: Any, **kwargs: Any):
    send, receive = anyio.create_memory_object_stream[Any](math.inf)
    transport = BearerSSETransport(URL, "secret-token", send, httpx_client_factory=factory, **kwargs)
    return transport, receive


@pytest.mark.anyio
async def test_start_learns_absolute_endpoint_from_relative_path(fake_server):
    transport, _ = _make_transport(fake_server.http_client)

    await transport.start()

    assert transport.state is TransportState.STARTED
    assert transport.endpoint_url == "http://weather.test/weather/messages/?session_id=abc123"
    await transport.close()


@pytest.mark.anyio
async def test_stream_request_carries_bearer_and_protocol_headers(fake_server):
    transport, _ = _make_transport(fake_server.http_client, headers={"x-tenant": "north"}, protocol_version="2025-03-26")

    await transport.start()
    await transport.close()

    request = fake_server.requests[0]
    assert request.method == "GET"
    assert request.headers["authorization"] == "Bearer secret-token"
    assert request.headers["accept"] == "text/event-stream"
    assert request.headers["cache-control"] == "no-cache"
    assert request.headers["mcp-protocol-version"] == "2025-03-26"
    assert request.headers["x-tenant"] == "north"


@pytest.mark.anyio
async def test_start_twice_raises(fake_server):
    transport, _ = _make_transport(fake_server.http_client)
    await transport.start()

    with pytest.raises(AlreadyStartedError):
        await transport.start()
    await transport.close()


@pytest.mark.anyio
async def test_start_after_close_raises(fake_server):
    transport, _ = _make_transport(fake_server.http_client)
    await transport.close()

    with pytest.raises(AlreadyStartedError):
        await transport.start()


@pytest.mark.anyio
async def test_non_success_status_fails_start(stream_client):
    transport, receive = _make_transport(stream_client([], status_code=401))

    with pytest.raises(ConnectFailedError) as exc_info:
        await transport.start()

    assert exc_info.value.status_code == 401
    events = _drain(receive)
    assert isinstance(events[0], ConnectFailedError)
    assert events[-1] == TransportClosed(events[0])
    assert transport.close_error is events[0]
    assert transport.state is TransportState.CLOSED


@pytest.mark.anyio
async def test_wrong_content_type_fails_start(stream_client):
    transport, _ = _make_transport(stream_client([b'{"ok": true}'], content_type="application/json"))

    with pytest.raises(UnexpectedContentTypeError) as exc_info:
        await transport.start()

    assert exc_info.value.content_type == "application/json"


@pytest.mark.anyio
async def test_content_type_parameters_are_accepted(stream_client):
    factory = stream_client([b"data: /messages\n\n"], content_type="text/event-stream; charset=utf-8")
    transport, _ = _make_transport(factory)

    await transport.start()

    assert transport.endpoint_url == "http://weather.test/messages"
    await transport.close()


@pytest.mark.anyio
async def test_stream_ending_before_endpoint_fails_start(stream_client):
    frame = json.dumps({"jsonrpc": "2.0", "method": "notifications/message", "params": {"level": "info"}})
    transport, receive = _make_transport(stream_client([f"data: {frame}\n\n".encode()]))

    with pytest.raises(StreamEndedBeforeEndpointError):
        await transport.start()

    events = _drain(receive)
    assert isinstance(events[0], JSONRPCNotification)
    assert isinstance(events[1], StreamEndedBeforeEndpointError)
    assert events[2] == TransportClosed(events[1])


@pytest.mark.anyio
async def test_endpoint_on_another_origin_is_rejected(stream_client):
    frame = json.dumps({"jsonrpc": "2.0", "method": "notifications/message"})
    chunks = [b"event: endpoint\ndata: https://evil.test/messages\n\n", f"data: {frame}\n\n".encode()]
    transport, receive = _make_transport(stream_client(chunks))

    with pytest.raises(OriginMismatchError) as exc_info:
        await transport.start()

    assert exc_info.value.endpoint_url == "https://evil.test/messages"
    assert transport.endpoint_url is None
    # Nothing after the rejected endpoint is delivered.
    events = _drain(receive)
    assert [type(event) for event in events] == [OriginMismatchError, TransportClosed]


@pytest.mark.anyio
async def test_absolute_endpoint_on_same_origin_is_accepted(stream_client):
    transport, _ = _make_transport(stream_client([b"data: http://WEATHER.test/rpc\n\n"]))

    await transport.start()

    assert transport.endpoint_url == "http://WEATHER.test/rpc"
    await transport.close()


@pytest.mark.anyio
@pytest.mark.parametrize(
    "announced",
    ["http://weather.test:80/rpc", "http://reader@weather.test/rpc"],
)
async def test_endpoint_origin_ignores_default_port_and_userinfo(stream_client, announced):
    transport, _ = _make_transport(stream_client([f"data: {announced}\n\n".encode()]))

    await transport.start()

    assert transport.endpoint_url == announced
    await transport.close()


@pytest.mark.anyio
async def test_endpoint_on_another_port_is_rejected(stream_client):
    transport, _ = _make_transport(stream_client([b"data: http://weather.test:8080/rpc\n\n"]))

    with pytest.raises(OriginMismatchError):
        await transport.start()


@pytest.mark.anyio
async def test_close_while_waiting_for_endpoint_fails_start():
    async def silent_stream():
        await anyio.sleep_forever()
        yield b""

    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=silent_stream())

    def factory(**kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler), **kwargs)

    transport, receive = _make_transport(factory)
    outcome: list[Exception] = []

    async def start() -> None:
        try:
            await transport.start()
        except Exception as exc:
            outcome.append(exc)

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            tg.start_soon(start)
            await anyio.sleep(0.05)
            assert transport.state is TransportState.STARTING
            await transport.close()

    assert len(outcome) == 1
    assert isinstance(outcome[0], ConnectionClosedError)
    assert transport.state is TransportState.CLOSED
    assert _drain(receive) == [TransportClosed()]


@pytest.mark.anyio
async def test_close_during_in_flight_send_raises_connection_closed(fake_server):
    hang_up = anyio.Event()
    fake_server.held_posts["notifications/initialized"] = hang_up
    transport, _ = _make_transport(fake_server.http_client)
    await transport.start()
    outcome: list[Exception] = []

    async def send() -> None:
        try:
            await transport.send(JSONRPCNotification(method="notifications/initialized"))
        except Exception as exc:
            outcome.append(exc)

    with anyio.fail_after(5):
        async with anyio.create_task_group() as tg:
            tg.start_soon(send)
            await fake_server.wait_for_posts("notifications/initialized")
            await transport.close()
            hang_up.set()

    assert len(outcome) == 1
    assert isinstance(outcome[0], ConnectionClosedError)


@pytest.mark.anyio
async def test_send_failure_while_open_is_send_failed(fake_server):
    hang_up = anyio.Event()
    hang_up.set()
    fake_server.held_posts["ping"] = hang_up
    transport, _ = _make_transport(fake_server.http_client)
    await transport.start()

    with pytest.raises(SendFailedError) as exc_info:
        await transport.send(JSONRPCRequest(id=1, method="ping"))

    assert exc_info.value.status_code is None
    await transport.close()


@pytest.mark.anyio
async def test_messages_are_delivered_and_malformed_frames_dropped(fake_server):
    transport, receive = _make_transport(fake_server.http_client)
    await transport.start()

    fake_server.push_raw(b"data: not json\n\n")
    fake_server.push_raw(b'data: {"jsonrpc": "2.0"}\n\n')
    fake_server.push({"jsonrpc": "2.0", "id": 5, "result": {"ok": True}})

    with anyio.fail_after(5):
        event = await receive.receive()
    assert event == JSONRPCResultResponse(id=5, result={"ok": True})
    await transport.close()


@pytest.mark.anyio
async def test_clean_end_of_stream_emits_single_close(fake_server):
    transport, receive = _make_transport(fake_server.http_client)
    await transport.start()

    fake_server.end_stream()
    with anyio.fail_after(5):
        event = await receive.receive()
    assert event == TransportClosed()

    await transport.close()
    await transport.close()
    assert _drain(receive) == []
    assert transport.state is TransportState.CLOSED


@pytest.mark.anyio
async def test_close_emits_single_close_event(fake_server):
    transport, receive = _make_transport(fake_server.http_client)
    await transport.start()

    await transport.close()
    await transport.close()

    assert _drain(receive) == [TransportClosed()]


@pytest.mark.anyio
async def test_close_before_start_emits_close_event():
    send, receive = anyio.create_memory_object_stream[Any](math.inf)
    transport = BearerSSETransport(URL, "secret-token", send)

    await transport.close()

    assert _drain(receive) == [TransportClosed()]


@pytest.mark.anyio
async def test_send_before_start_raises_without_network_call(fake_server):
    transport, _ = _make_transport(fake_server.http_client)

    with pytest.raises(NotStartedError):
        await transport.send(JSONRPCRequest(id=0, method="ping"))

    assert fake_server.requests == []


@pytest.mark.anyio
async def test_send_after_close_raises(fake_server):
    transport, _ = _make_transport(fake_server.http_client)
    await transport.start()
    await transport.close()

    with pytest.raises(ConnectionClosedError):
        await transport.send(JSONRPCRequest(id=0, method="ping"))


@pytest.mark.anyio
async def test_send_posts_json_with_headers_and_adopts_session_id(fake_server):
    fake_server.auto_respond = False
    transport, _ = _make_transport(fake_server.http_client)
    await transport.start()

    await transport.send(JSONRPCRequest(id=0, method="tools/list"))
    assert transport.session_id == "session-1"
    await transport.send(JSONRPCNotification(method="notifications/initialized"))

    first, second = fake_server.post_requests
    assert str(first.url) == "http://weather.test/weather/messages/?session_id=abc123"
    assert first.headers["content-type"] == "application/json"
    assert first.headers["authorization"] == "Bearer secret-token"
    assert "mcp-session-id" not in first.headers
    assert second.headers["mcp-session-id"] == "session-1"
    assert json.loads(first.content) == {"jsonrpc": "2.0", "id": 0, "method": "tools/list"}
    await transport.close()


@pytest.mark.anyio
async def test_held_session_id_is_not_replaced(fake_server):
    fake_server.auto_respond = False
    transport, _ = _make_transport(fake_server.http_client)
    await transport.start()

    await transport.send(JSONRPCNotification(method="a"))
    fake_server.session_id = "session-2"
    await transport.send(JSONRPCNotification(method="b"))

    assert transport.session_id == "session-1"
    await transport.close()


@pytest.mark.anyio
async def test_404_with_session_clears_session_id(fake_server):
    fake_server.auto_respond = False
    transport, _ = _make_transport(fake_server.http_client)
    await transport.start()
    await transport.send(JSONRPCNotification(method="a"))

    fake_server.expire_session = True
    with pytest.raises(SendFailedError) as exc_info:
        await transport.send(JSONRPCNotification(method="b"))

    assert exc_info.value.status_code == 404
    assert str(exc_info.value) == "HTTP 404: Session not found"
    assert transport.session_id is None
    # The transport stays usable, and the next request goes out without the header.
    assert transport.state is TransportState.STARTED
    fake_server.expire_session = False
    await transport.send(JSONRPCNotification(method="c"))
    assert "mcp-session-id" not in fake_server.post_requests[-1].headers
    await transport.close()


@pytest.mark.anyio
async def test_send_failure_reports_status_and_body():
    stream_done = anyio.Event()

    async def stream():
        yield b"data: /messages\n\n"
        await stream_done.wait()

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.method == "GET":
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=stream())
        return httpx.Response(500, text="boom")

    def factory(**kwargs: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler), **kwargs)

    transport, _ = _make_transport(factory)
    await transport.start()

    with pytest.raises(SendFailedError, match="HTTP 500: boom"):
        await transport.send(JSONRPCRequest(id=1, method="ping"))
    stream_done.set()
    await transport.close()
