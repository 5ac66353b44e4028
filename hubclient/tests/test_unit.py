import asyncio

import pytest

from hubclient.cancellation import CancellationToken
from hubclient.errors import ClientError, ErrorKind, OperationCancelledError
from hubclient.network.pool import ConnectionPool
from hubclient.network.transport.loopback import default_responder
from hubclient.network.unit import UnitHandlers
from shared.models.frame import Link
from shared.models.message import MessageAcknowledgement, TelemetryMessage
from shared.models.method import DirectMethodResponse
from shared.protocol import build_frame, build_response


async def _open_unit(settings, transports, identity, handlers=None):
    pool = ConnectionPool(settings, transports)
    unit = await pool.acquire(identity, handlers)
    await unit.open(CancellationToken.none())
    return pool, unit


def _deliver(key, message_id, lock_token="lock-1"):
    return build_frame(key, Link.messages, "deliver", {"messageId": message_id, "lockToken": lock_token, "payload": "hi"})


@pytest.mark.asyncio
async def test_open_attaches_session_with_token(settings, transports, make_identity):
    pool, unit = await _open_unit(settings, transports, make_identity())

    attach = transports.last.sent[0]
    assert attach["link"] == "session"
    assert attach["op"] == "attach"
    assert attach["body"]["token"].startswith("SharedAccessSignature ")
    await unit.open(CancellationToken.none())
    assert len(transports.last.sent) == 1
    await pool.close()


@pytest.mark.asyncio
async def test_operations_require_open_unit(settings, transports, make_identity):
    pool = ConnectionPool(settings, transports)
    unit = await pool.acquire(make_identity())

    with pytest.raises(ClientError) as excinfo:
        await unit.send_telemetry(TelemetryMessage(payload=1), CancellationToken.none())
    assert excinfo.value.kind is ErrorKind.NETWORK_ERROR


@pytest.mark.asyncio
async def test_inbound_message_is_received(settings, transports, make_identity):
    pool, unit = await _open_unit(settings, transports, make_identity())
    await unit.enable_receive_message(CancellationToken.none())

    transports.last.inject(_deliver(unit.key, "m-1"))
    message = await unit.receive_message(CancellationToken.with_timeout(1.0))

    assert message.message_id == "m-1"
    assert message.lock_token == "lock-1"
    await pool.close()


@pytest.mark.asyncio
async def test_unsubscribe_cancels_pending_receive(settings, transports, make_identity):
    pool, unit = await _open_unit(settings, transports, make_identity())
    await unit.enable_receive_message(CancellationToken.none())

    waiter = asyncio.create_task(unit.receive_message(CancellationToken.none()))
    await asyncio.sleep(0)
    await unit.disable_receive_message(CancellationToken.none())

    with pytest.raises(OperationCancelledError):
        await asyncio.wait_for(waiter, 1.0)
    assert transports.last.sent[-1]["op"] == "unsubscribe"
    await pool.close()


@pytest.mark.asyncio
async def test_message_arriving_after_unsubscribe_is_dropped(settings, transports, make_identity):
    pool, unit = await _open_unit(settings, transports, make_identity())
    await unit.enable_receive_message(CancellationToken.none())
    await unit.disable_receive_message(CancellationToken.none())

    transports.last.inject(_deliver(unit.key, "late"))
    await asyncio.sleep(0.05)
    await unit.enable_receive_message(CancellationToken.none())

    with pytest.raises(OperationCancelledError):
        await unit.receive_message(CancellationToken.with_timeout(0.05))
    await pool.close()


@pytest.mark.asyncio
async def test_receive_while_disabled_is_cancelled(settings, transports, make_identity):
    pool, unit = await _open_unit(settings, transports, make_identity())

    with pytest.raises(OperationCancelledError):
        await unit.receive_message(CancellationToken.none())
    await pool.close()


@pytest.mark.asyncio
async def test_dispose_message_sends_disposition(settings, transports, make_identity):
    pool, unit = await _open_unit(settings, transports, make_identity())

    await unit.dispose_message("lock-9", MessageAcknowledgement.REJECT, CancellationToken.none())

    frame = transports.last.sent[-1]
    assert (frame["link"], frame["op"]) == ("messages", "dispose")
    assert frame["body"] == {"lockToken": "lock-9", "disposition": "reject"}
    await pool.close()


@pytest.mark.asyncio
async def test_telemetry_batch_is_one_frame(settings, transports, make_identity):
    pool, unit = await _open_unit(settings, transports, make_identity())

    batch = [TelemetryMessage(payload={"n": n}) for n in range(3)]
    await unit.send_telemetry_batch(batch, CancellationToken.none())

    frame = transports.last.sent[-1]
    assert frame["op"] == "send_batch"
    assert [item["payload"] for item in frame["body"]] == [{"n": 0}, {"n": 1}, {"n": 2}]
    await pool.close()


@pytest.mark.asyncio
async def test_twin_get_and_reported_patch(settings, transports, make_identity):
    pool, unit = await _open_unit(settings, transports, make_identity())

    twin = await unit.get_twin(CancellationToken.none())
    version = await unit.update_reported_properties({"firmware": "1.2"}, CancellationToken.none())

    assert twin.desired.version == 1
    assert twin.reported.version == 1
    assert version == 2
    assert transports.last.sent[-1]["body"] == {"firmware": "1.2"}
    await pool.close()


@pytest.mark.asyncio
async def test_error_status_maps_to_error_kind(settings, transport_factory_cls, make_identity):
    def _responder(request):
        if request.link == "telemetry":
            return build_response(request, 404)
        return default_responder(request)

    transports = transport_factory_cls(_responder)
    pool, unit = await _open_unit(settings, transports, make_identity())

    with pytest.raises(ClientError) as excinfo:
        await unit.send_telemetry(TelemetryMessage(payload=1), CancellationToken.none())

    assert excinfo.value.kind is ErrorKind.DEVICE_NOT_FOUND
    await pool.close()


@pytest.mark.asyncio
async def test_method_requests_routed_only_when_enabled(settings, transports, make_identity, wait_until):
    requests = []

    async def _on_method(request):
        requests.append(request)
        await unit.send_method_response(
            DirectMethodResponse(request_id=request.request_id, status=200, payload={"ok": True}),
            CancellationToken.none(),
        )

    pool, unit = await _open_unit(settings, transports, make_identity(), UnitHandlers(on_method_request=_on_method))
    invoke = build_frame(unit.key, Link.methods, "invoke", {"requestId": "r1", "methodName": "reboot"})

    transports.last.inject(invoke)
    await asyncio.sleep(0.05)
    assert requests == []

    await unit.enable_methods(CancellationToken.none())
    transports.last.inject(invoke)
    await wait_until(lambda: transports.last.sent[-1]["op"] == "respond")

    assert requests[0].method_name == "reboot"
    assert transports.last.sent[-1]["body"] == {"requestId": "r1", "status": 200, "payload": {"ok": True}}
    await pool.close()


@pytest.mark.asyncio
async def test_desired_patch_routed_when_enabled(settings, transports, make_identity, wait_until):
    patches = []

    async def _on_desired(patch):
        patches.append(patch)

    pool, unit = await _open_unit(settings, transports, make_identity(), UnitHandlers(on_desired_update=_on_desired))
    await unit.enable_twin_patch(CancellationToken.none())

    transports.last.inject(build_frame(unit.key, Link.twin, "desired", {"$version": 5, "interval": 30}))
    await wait_until(lambda: len(patches) == 1)

    assert patches[0].version == 5
    assert patches[0]["interval"] == 30
    await pool.close()


@pytest.mark.asyncio
async def test_close_is_idempotent_and_fails_pending(settings, transports, make_identity):
    pool, unit = await _open_unit(settings, transports, make_identity())

    await unit.close(CancellationToken.none())
    await unit.close(CancellationToken.none())

    assert unit.is_open is False
    assert [frame["op"] for frame in transports.last.sent].count("detach") == 1
    await pool.close()
