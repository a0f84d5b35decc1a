"""Command routing, legacy spacing, the FTMS control gate and the KS handshake."""

import asyncio

import pytest
from conftest import FakeTransport, ftms_service, kingsmith_service, legacy_service
from pyftms import ResultCode

from padctrl import ftms, kingsmith, legacy
from padctrl.core import FTMS_CONTROL_POINT_UUID, FTMS_TREADMILL_DATA_UUID, KS_WRITE_UUID
from padctrl.dispatcher import CommandDispatcher
from padctrl.models import MachineEvent, MachineEventKind, Protocol
from padctrl.negotiator import FtmsRoute, LegacyRoute
from padctrl.transport import GattCharacteristic


def legacy_setup(spacing: float = 0.0):  # type: ignore[no-untyped-def]
    service, (notify, write) = legacy_service(0)
    transport = FakeTransport([(service, [notify, write])])
    errors = []
    dispatcher = CommandDispatcher(
        transport, command_spacing=spacing, on_error=errors.append
    )
    dispatcher.attach(Protocol.LEGACY, LegacyRoute(notify=notify, write=write))
    return transport, dispatcher, write, errors


def ftms_setup(handshake_delay: float = 0.0, with_vendor: bool = True):  # type: ignore[no-untyped-def]
    transport = FakeTransport([ftms_service(), kingsmith_service()])
    dispatcher = CommandDispatcher(transport, handshake_delay=handshake_delay)
    control_point = transport.characteristic(FTMS_CONTROL_POINT_UUID)
    data = transport.characteristic(FTMS_TREADMILL_DATA_UUID)
    vendor: GattCharacteristic = transport.characteristic(KS_WRITE_UUID)
    dispatcher.attach(
        Protocol.FTMS,
        FtmsRoute(control_point=control_point, treadmill_data=data),
        vendor if with_vendor else None,
    )
    return transport, dispatcher


@pytest.mark.asyncio
async def test_legacy_writes_without_response() -> None:
    transport, dispatcher, write, errors = legacy_setup()

    result = await dispatcher.send(Protocol.LEGACY, legacy.change_speed(30))

    assert result == ResultCode.SUCCESS
    char, data, response, _ = transport.writes[0]
    assert char == write
    assert data == legacy.change_speed(30)
    assert response is False


@pytest.mark.asyncio
async def test_legacy_commands_are_spaced() -> None:
    transport, dispatcher, write, errors = legacy_setup(spacing=0.1)

    for speed in (10, 20, 30):
        await dispatcher.send(Protocol.LEGACY, legacy.change_speed(speed))

    times = [when for _, _, _, when in transport.writes]
    assert len(times) == 3
    for earlier, later in zip(times, times[1:]):
        assert later - earlier >= 0.1 - 0.01


@pytest.mark.asyncio
async def test_wrong_protocol_is_not_sent() -> None:
    transport, dispatcher, write, errors = legacy_setup()

    result = await dispatcher.send(Protocol.FTMS, ftms.start_or_resume())

    assert result == ResultCode.NOT_SUPPORTED
    assert transport.writes == []


@pytest.mark.asyncio
async def test_send_without_route_fails() -> None:
    dispatcher = CommandDispatcher(FakeTransport())
    assert await dispatcher.send(Protocol.LEGACY, legacy.ask_stats()) == ResultCode.FAILED


@pytest.mark.asyncio
async def test_write_error_is_reported() -> None:
    transport, dispatcher, write, errors = legacy_setup()
    transport.failing_writes.add(write.uuid)

    result = await dispatcher.send(Protocol.LEGACY, legacy.ask_stats())

    assert result == ResultCode.FAILED
    assert len(errors) == 1


@pytest.mark.asyncio
async def test_ftms_writes_with_response() -> None:
    transport, dispatcher = ftms_setup()

    await dispatcher.send(Protocol.FTMS, ftms.stop())

    _, data, response, _ = transport.writes[0]
    assert data == ftms.stop()
    assert response is True


@pytest.mark.asyncio
async def test_control_is_requested_once() -> None:
    transport, dispatcher = ftms_setup()

    assert await dispatcher.acquire_control() == ResultCode.SUCCESS
    assert await dispatcher.acquire_control() == ResultCode.SUCCESS

    assert transport.written(FTMS_CONTROL_POINT_UUID) == [
        ftms.request_control(),
        ftms.start_or_resume(),
    ]
    assert dispatcher.control_acquired


@pytest.mark.asyncio
async def test_user_stop_reopens_the_gate() -> None:
    transport, dispatcher = ftms_setup()
    await dispatcher.acquire_control()

    dispatcher.handle_machine_event(MachineEvent(MachineEventKind.PAUSED_BY_USER))
    assert dispatcher.control_acquired

    dispatcher.handle_machine_event(MachineEvent(MachineEventKind.STOPPED_BY_USER))
    assert not dispatcher.control_acquired

    await dispatcher.acquire_control()
    assert len(transport.written(FTMS_CONTROL_POINT_UUID)) == 4


@pytest.mark.asyncio
async def test_lost_permission_reopens_the_gate() -> None:
    transport, dispatcher = ftms_setup()
    await dispatcher.acquire_control()

    dispatcher.handle_machine_event(
        MachineEvent(MachineEventKind.CONTROL_PERMISSION_LOST)
    )

    assert not dispatcher.control_acquired


@pytest.mark.asyncio
async def test_acquire_control_needs_ftms() -> None:
    transport, dispatcher, write, errors = legacy_setup()
    assert await dispatcher.acquire_control() == ResultCode.NOT_SUPPORTED
    assert transport.writes == []


@pytest.mark.asyncio
async def test_detach_resets_the_gate() -> None:
    transport, dispatcher = ftms_setup()
    await dispatcher.acquire_control()

    dispatcher.detach()

    assert not dispatcher.control_acquired
    assert not dispatcher.has_vendor_channel
    assert await dispatcher.send(Protocol.FTMS, ftms.stop()) == ResultCode.FAILED


@pytest.mark.asyncio
async def test_vendor_handshake_order_and_spacing() -> None:
    transport, dispatcher = ftms_setup(handshake_delay=0.05)

    task = dispatcher.start_vendor_handshake()
    assert task is not None
    await task

    frames = transport.written(KS_WRITE_UUID)
    assert len(frames) == 4
    assert frames[0] == kingsmith.init_device()
    assert frames[1][:2] == bytes([0x71, 0x01])
    assert frames[2] == kingsmith.query_status()
    assert frames[3] == kingsmith.query_config()

    times = [when for _, _, response, when in transport.writes]
    assert all(response is False for _, _, response, _ in transport.writes)
    for earlier, later in zip(times, times[1:]):
        assert later - earlier >= 0.05 - 0.01


@pytest.mark.asyncio
async def test_handshake_continues_past_failed_steps() -> None:
    transport, dispatcher = ftms_setup()
    transport.failing_writes.add(KS_WRITE_UUID)

    await dispatcher.start_vendor_handshake()

    assert transport.writes == []
    assert len(transport.write_attempts) == 4
    assert transport.write_attempts[3] == kingsmith.query_config()


@pytest.mark.asyncio
async def test_no_handshake_without_vendor_channel() -> None:
    transport, dispatcher = ftms_setup(with_vendor=False)

    assert dispatcher.start_vendor_handshake() is None
    assert await dispatcher.send_vendor(kingsmith.sleep()) == ResultCode.NOT_SUPPORTED


@pytest.mark.asyncio
async def test_vendor_writes_bypass_protocol_route() -> None:
    transport, dispatcher = ftms_setup()

    assert await dispatcher.send_vendor(kingsmith.sleep()) == ResultCode.SUCCESS
    assert transport.written(KS_WRITE_UUID) == [kingsmith.sleep()]
    assert transport.written(FTMS_CONTROL_POINT_UUID) == []


@pytest.mark.asyncio
async def test_queued_legacy_write_is_dropped_after_detach() -> None:
    transport, dispatcher, write, errors = legacy_setup(spacing=0.2)
    await dispatcher.send(Protocol.LEGACY, legacy.change_speed(10))

    pending = asyncio.ensure_future(
        dispatcher.send(Protocol.LEGACY, legacy.change_speed(20))
    )
    await asyncio.sleep(0.05)
    dispatcher.detach()

    assert await pending == ResultCode.FAILED
    assert transport.written() == [legacy.change_speed(10)]


@pytest.mark.asyncio
async def test_queued_legacy_write_is_dropped_after_switch_to_ftms() -> None:
    transport, dispatcher, write, errors = legacy_setup(spacing=0.2)
    await dispatcher.send(Protocol.LEGACY, legacy.change_speed(10))

    pending = asyncio.ensure_future(
        dispatcher.send(Protocol.LEGACY, legacy.change_speed(20))
    )
    await asyncio.sleep(0.05)
    _, (data, _, _, _, control_point) = ftms_service()
    dispatcher.attach(
        Protocol.FTMS, FtmsRoute(control_point=control_point, treadmill_data=data)
    )

    assert await pending == ResultCode.FAILED
    assert transport.written() == [legacy.change_speed(10)]
    assert dispatcher.protocol == Protocol.FTMS


@pytest.mark.asyncio
async def test_reattached_legacy_route_drops_queued_write() -> None:
    transport, dispatcher, write, errors = legacy_setup(spacing=0.2)
    notify = transport.characteristic(legacy_service(0)[1][0].uuid)
    await dispatcher.send(Protocol.LEGACY, legacy.change_speed(10))

    pending = asyncio.ensure_future(
        dispatcher.send(Protocol.LEGACY, legacy.change_speed(20))
    )
    await asyncio.sleep(0.05)
    dispatcher.attach(Protocol.LEGACY, LegacyRoute(notify=notify, write=write))

    assert await pending == ResultCode.FAILED
    assert transport.written() == [legacy.change_speed(10)]
