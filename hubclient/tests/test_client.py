import asyncio

import pytest

from hubclient.cancellation import CancellationToken
from hubclient.client import DeviceClient
from hubclient.config import ClientSettings
from hubclient.errors import ClientClosedError, ClientError, ErrorKind, OperationCancelledError
from hubclient.network.pool import ConnectionPool
from hubclient.network.transport.loopback import default_responder
from hubclient.retry import IncrementalDelayRetryPolicy
from hubclient.status import ChangeReason, ConnectionStatus
from shared.models.frame import Link
from shared.models.message import MessageAcknowledgement
from shared.models.method import DirectMethodResponse
from shared.protocol import build_frame, build_response


def _fast_retry():
    return IncrementalDelayRetryPolicy(delay_increment=0.0, use_jitter=False)


def _client(settings, transports, identity, **kwargs):
    kwargs.setdefault("retry_policy", _fast_retry())
    return DeviceClient(identity, settings, transport_factory=transports, **kwargs)


def _sent(transport, link, op):
    return [frame for frame in transport.sent if frame["link"] == link and frame["op"] == op]


@pytest.mark.asyncio
async def test_open_send_close_reports_status(settings, transports, make_identity):
    client = _client(settings, transports, make_identity())
    seen = []
    client.set_connection_status_callback(lambda status, reason: seen.append((status, reason)))

    await client.open()
    await client.send_telemetry({"temperature": 21.5})
    await client.close()

    telemetry = _sent(transports.last, "telemetry", "send")
    assert telemetry[0]["body"]["payload"] == {"temperature": 21.5}
    assert seen == [
        (ConnectionStatus.CONNECTED, ChangeReason.CONNECTION_OK),
        (ConnectionStatus.CLOSED, ChangeReason.CLIENT_CLOSED),
    ]
    assert client.pool.connection_count == 0
    assert transports.last.is_open is False


@pytest.mark.asyncio
async def test_context_manager_opens_and_closes(settings, transports, make_identity):
    async with _client(settings, transports, make_identity()) as client:
        assert client.connection_status.status is ConnectionStatus.CONNECTED
    assert client.connection_status.status is ConnectionStatus.CLOSED

    with pytest.raises(ClientClosedError):
        await client.send_telemetry("late")


@pytest.mark.asyncio
async def test_cancelled_token_sends_nothing(settings, transports, make_identity):
    client = _client(settings, transports, make_identity())

    with pytest.raises(OperationCancelledError):
        await client.send_telemetry("x", CancellationToken.cancelled_token())

    assert transports.created == []
    await client.close()


@pytest.mark.asyncio
async def test_device_not_found_disconnects_with_device_disabled(settings, transport_factory_cls, make_identity):
    def _responder(request):
        if request.link == "session" and request.op == "attach":
            return build_response(request, 404)
        return default_responder(request)

    client = _client(settings, transport_factory_cls(_responder), make_identity())

    with pytest.raises(ClientError) as excinfo:
        await client.open()

    assert excinfo.value.kind is ErrorKind.DEVICE_NOT_FOUND
    assert client.connection_status.status is ConnectionStatus.DISCONNECTED
    assert client.connection_status.reason is ChangeReason.DEVICE_DISABLED
    await client.close()


@pytest.mark.asyncio
async def test_throttled_send_is_retried(settings, transport_factory_cls, make_identity):
    attempts = []

    def _responder(request):
        if request.link == "telemetry":
            attempts.append(request.rid)
            if len(attempts) == 1:
                return build_response(request, 429)
        return default_responder(request)

    client = _client(settings, transport_factory_cls(_responder), make_identity())

    await client.send_telemetry("reading")

    assert len(attempts) == 2
    await client.close()


@pytest.mark.asyncio
async def test_incoming_messages_are_acknowledged(settings, transports, make_identity, wait_until):
    client = _client(settings, transports, make_identity())
    received = []

    async def _on_message(message):
        received.append(message.message_id)
        if message.message_id == "bad":
            return MessageAcknowledgement.REJECT
        return None

    await client.set_incoming_message_callback(_on_message)
    key = client.identity.key
    transports.last.inject(build_frame(key, Link.messages, "deliver", {"messageId": "good", "lockToken": "l1"}))
    transports.last.inject(build_frame(key, Link.messages, "deliver", {"messageId": "bad", "lockToken": "l2"}))
    await wait_until(lambda: len(_sent(transports.last, "messages", "dispose")) == 2)

    dispositions = [frame["body"] for frame in _sent(transports.last, "messages", "dispose")]
    assert received == ["good", "bad"]
    assert dispositions == [
        {"lockToken": "l1", "disposition": "complete"},
        {"lockToken": "l2", "disposition": "reject"},
    ]

    await client.set_incoming_message_callback(None)
    assert _sent(transports.last, "messages", "unsubscribe")
    await client.close()


@pytest.mark.asyncio
async def test_failing_message_callback_abandons(settings, transports, make_identity, wait_until):
    client = _client(settings, transports, make_identity())

    def _on_message(message):
        raise RuntimeError("cannot handle")

    await client.set_incoming_message_callback(_on_message)
    transports.last.inject(build_frame(client.identity.key, Link.messages, "deliver", {"messageId": "m", "lockToken": "l"}))
    await wait_until(lambda: bool(_sent(transports.last, "messages", "dispose")))

    assert _sent(transports.last, "messages", "dispose")[0]["body"]["disposition"] == "abandon"
    await client.close()


@pytest.mark.asyncio
async def test_method_handler_results_are_sent_back(settings, transports, make_identity, wait_until):
    client = _client(settings, transports, make_identity())

    async def _handler(request):
        if request.method_name == "explode":
            raise ValueError("boom")
        if request.method_name == "custom":
            return DirectMethodResponse(request_id="ignored", status=202, payload="queued")
        return {"echo": request.payload}

    await client.set_method_handler(_handler)
    key = client.identity.key
    for rid, name in (("1", "echo"), ("2", "explode"), ("3", "custom")):
        transports.last.inject(
            build_frame(key, Link.methods, "invoke", {"requestId": rid, "methodName": name, "payload": rid})
        )
    await wait_until(lambda: len(_sent(transports.last, "methods", "respond")) == 3)

    responses = {frame["body"]["requestId"]: frame["body"] for frame in _sent(transports.last, "methods", "respond")}
    assert responses["1"]["status"] == 200
    assert responses["1"]["payload"] == {"echo": "1"}
    assert responses["2"]["status"] == 500
    assert responses["3"]["status"] == 202
    await client.close()


@pytest.mark.asyncio
async def test_twin_round_trip_and_desired_updates(settings, transports, make_identity, wait_until):
    client = _client(settings, transports, make_identity())
    patches = []

    await client.set_desired_property_update_callback(lambda patch: patches.append(patch))
    twin = await client.get_twin()
    version = await client.update_reported_properties({"battery": 80})
    transports.last.inject(build_frame(client.identity.key, Link.twin, "desired", {"$version": 2, "rate": 5}))
    await wait_until(lambda: len(patches) == 1)

    assert twin.desired.version == 1
    assert version == 2
    assert patches[0].version == 2
    assert patches[0]["rate"] == 5
    await client.close()


@pytest.mark.asyncio
async def test_reconnects_after_connection_loss(settings, transports, make_identity, wait_until):
    client = _client(settings, transports, make_identity())
    seen = []
    client.set_connection_status_callback(lambda status, reason: seen.append((status, reason)))
    await client.set_method_handler(lambda request: None)

    transports.last.fail()
    await wait_until(lambda: len(transports.created) == 2 and client.connection_status.status is ConnectionStatus.CONNECTED)

    assert _sent(transports.last, "methods", "subscribe")
    assert seen == [
        (ConnectionStatus.CONNECTED, ChangeReason.CONNECTION_OK),
        (ConnectionStatus.DISCONNECTED, ChangeReason.COMMUNICATION_ERROR),
        (ConnectionStatus.CONNECTED, ChangeReason.CONNECTION_OK),
    ]
    await client.send_telemetry("after reconnect")
    assert _sent(transports.last, "telemetry", "send")
    await client.close()


@pytest.mark.asyncio
async def test_connection_loss_without_auto_reconnect_disables(transports, make_identity, wait_until):
    settings = ClientSettings(transport="loopback", auto_reconnect=False, operation_timeout_seconds=5.0)
    client = _client(settings, transports, make_identity())
    await client.open()

    transports.last.fail()
    await wait_until(lambda: client.connection_status.status is ConnectionStatus.DISABLED)

    assert client.connection_status.reason is ChangeReason.COMMUNICATION_ERROR
    assert len(transports.created) == 1
    await client.close()


@pytest.mark.asyncio
async def test_message_pump_survives_reconnect(settings, transports, make_identity, wait_until):
    client = _client(settings, transports, make_identity())
    received = []
    await client.set_incoming_message_callback(lambda message: received.append(message.message_id))

    transports.last.fail()
    await wait_until(lambda: len(transports.created) == 2 and bool(_sent(transports.last, "messages", "subscribe")))
    await asyncio.sleep(0.05)
    transports.last.inject(build_frame(client.identity.key, Link.messages, "deliver", {"messageId": "after", "lockToken": "l"}))
    await wait_until(lambda: received == ["after"])

    await client.close()


@pytest.mark.asyncio
async def test_pooled_clients_share_one_connection(pooled_settings, transports, make_identity):
    settings = pooled_settings.model_copy(update={"pool_size": 1})
    pool = ConnectionPool(settings, transports)
    first = DeviceClient(make_identity("a"), settings, pool=pool, retry_policy=_fast_retry())
    second = DeviceClient(make_identity("b"), settings, pool=pool, retry_policy=_fast_retry())

    await first.open()
    await second.open()
    assert pool.connection_count == 1
    assert len(transports.created) == 1

    await first.close()
    assert pool.connection_count == 1
    assert transports.last.is_open
    await second.send_telemetry("still here")

    await second.close()
    assert pool.connection_count == 0
    assert transports.last.is_open is False


@pytest.mark.asyncio
async def test_unsubscribed_callback_receives_nothing(settings, transports, make_identity):
    client = _client(settings, transports, make_identity())
    received = []
    await client.set_incoming_message_callback(lambda message: received.append(message.message_id))
    await client.set_incoming_message_callback(None)

    transports.last.inject(build_frame(client.identity.key, Link.messages, "deliver", {"messageId": "late", "lockToken": "l"}))
    await asyncio.sleep(0.05)

    assert received == []
    assert not _sent(transports.last, "messages", "dispose")
    await client.close()


@pytest.mark.asyncio
async def test_close_interrupts_send_backing_off(settings, transport_factory_cls, make_identity, wait_until):
    attempts = []

    def _responder(request):
        if request.link == "telemetry":
            attempts.append(request.rid)
            return build_response(request, 503)
        return default_responder(request)

    client = _client(
        settings,
        transport_factory_cls(_responder),
        make_identity(),
        retry_policy=IncrementalDelayRetryPolicy(delay_increment=5.0, use_jitter=False),
    )
    send = asyncio.create_task(client.send_telemetry("reading", CancellationToken()))
    await wait_until(lambda: len(attempts) == 1)

    await client.close()

    with pytest.raises(ClientClosedError):
        await asyncio.wait_for(send, 1.0)
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_rejected_device_frees_its_pool_slot(transport_factory_cls, make_identity):
    def _responder(request):
        if request.link == "session" and request.op == "attach" and request.device == "ghost":
            return build_response(request, 404)
        return default_responder(request)

    settings = ClientSettings(
        transport="loopback",
        pooling_enabled=True,
        pool_size=1,
        max_devices_per_connection=1,
        operation_timeout_seconds=5.0,
    )
    transports = transport_factory_cls(_responder)
    pool = ConnectionPool(settings, transports)
    ghost = DeviceClient(make_identity("ghost"), settings, pool=pool, retry_policy=_fast_retry())
    good = DeviceClient(make_identity("good"), settings, pool=pool, retry_policy=_fast_retry())

    with pytest.raises(ClientError) as excinfo:
        await ghost.open()
    assert excinfo.value.kind is ErrorKind.DEVICE_NOT_FOUND
    assert pool.unit_count == 0
    assert pool.connection_count == 0
    assert transports.last.is_open is False

    await good.open()
    assert good.connection_status.status is ConnectionStatus.CONNECTED
    assert pool.connection_count == 1

    await ghost.close()
    await good.close()
