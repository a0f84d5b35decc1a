"""Connection state machine, watchdog retry and stale-attempt isolation."""

import asyncio

import pytest
from conftest import FakeTransport, battery_service, legacy_service, wait_until

from padctrl.exceptions import (
    ConnectionTimeoutError,
    ProtocolNegotiationError,
    TransportError,
)
from padctrl.models import ConnectionState, Device, Protocol
from padctrl.supervisor import ConnectionSupervisor

S = ConnectionState
DEVICE = Device(identity="AA:01", name="WalkingPad A1")
OTHER = Device(identity="BB:02", name="KS-HD-Z1D")


def make_supervisor(transport: FakeTransport, timeout: float = 1.0, **callbacks):  # type: ignore[no-untyped-def]
    states = []
    errors = []
    supervisor = ConnectionSupervisor(
        transport,
        connect_timeout=timeout,
        on_state=states.append,
        on_error=errors.append,
        **callbacks,
    )
    return supervisor, states, errors


@pytest.mark.asyncio
async def test_connected_precedes_ready(legacy_transport: FakeTransport) -> None:
    ready = []
    supervisor, states, errors = make_supervisor(legacy_transport, on_ready=ready.append)

    supervisor.connect(DEVICE)
    await wait_until(lambda: supervisor.state == S.READY)

    assert states == [S.CONNECTING, S.CONNECTED, S.READY]
    assert supervisor.protocol == Protocol.LEGACY
    assert len(ready) == 1
    assert errors == []


@pytest.mark.asyncio
async def test_negotiation_failure_disconnects() -> None:
    transport = FakeTransport([battery_service()])
    supervisor, states, errors = make_supervisor(transport)

    supervisor.connect(DEVICE)
    await wait_until(lambda: errors)

    assert states == [S.CONNECTING, S.CONNECTED, S.DISCONNECTED]
    assert isinstance(errors[0], ProtocolNegotiationError)
    assert transport.disconnects == [DEVICE.identity]
    assert supervisor.protocol is None


@pytest.mark.asyncio
async def test_link_failure_reports_and_disconnects(legacy_transport: FakeTransport) -> None:
    legacy_transport.connect_error = TransportError("out of range")
    supervisor, states, errors = make_supervisor(legacy_transport)

    supervisor.connect(DEVICE)
    await wait_until(lambda: errors)

    assert states == [S.CONNECTING, S.DISCONNECTED]
    assert isinstance(errors[0], TransportError)


@pytest.mark.asyncio
async def test_watchdog_retries_once_then_succeeds(legacy_transport: FakeTransport) -> None:
    legacy_transport.hang_connects = 1
    supervisor, states, errors = make_supervisor(legacy_transport, timeout=0.05)

    supervisor.connect(DEVICE)
    await wait_until(lambda: supervisor.state == S.READY)

    assert len(legacy_transport.connections) == 2
    assert legacy_transport.disconnects == [DEVICE.identity]
    assert errors == []
    assert states[-1] == S.READY


@pytest.mark.asyncio
async def test_watchdog_gives_up_after_retry(legacy_transport: FakeTransport) -> None:
    legacy_transport.hang_connects = 2
    supervisor, states, errors = make_supervisor(legacy_transport, timeout=0.05)

    supervisor.connect(DEVICE)
    await wait_until(lambda: errors)

    assert len(legacy_transport.connections) == 2
    assert isinstance(errors[0], ConnectionTimeoutError)
    assert states == [S.CONNECTING, S.DISCONNECTED]
    assert supervisor.state == S.DISCONNECTED


@pytest.mark.asyncio
async def test_superseded_attempt_callbacks_are_ignored(
    legacy_transport: FakeTransport,
) -> None:
    notifications = []
    legacy_transport.hang_connects = 1
    supervisor, states, errors = make_supervisor(
        legacy_transport,
        on_notification=lambda char, data: notifications.append(data),
    )

    supervisor.connect(DEVICE)
    await wait_until(lambda: len(legacy_transport.connections) == 1)
    supervisor.connect(OTHER)
    await wait_until(lambda: supervisor.state == S.READY)

    stale_identity, stale_notify, stale_disconnect = legacy_transport.connections[0]
    stale_notify(legacy_transport.characteristic(legacy_service(0)[1][0].uuid), b"\x01")
    stale_disconnect(stale_identity)

    assert supervisor.state == S.READY
    assert supervisor.device == OTHER
    assert notifications == []

    legacy_transport.push(legacy_service(0)[1][0].uuid, b"\x02")
    assert notifications == [b"\x02"]


@pytest.mark.asyncio
async def test_link_loss_returns_to_disconnected(legacy_transport: FakeTransport) -> None:
    supervisor, states, errors = make_supervisor(legacy_transport)
    supervisor.connect(DEVICE)
    await wait_until(lambda: supervisor.state == S.READY)

    legacy_transport.drop_link()

    assert supervisor.state == S.DISCONNECTED
    assert supervisor.protocol is None
    assert supervisor.route is None


@pytest.mark.asyncio
async def test_disconnect_unsubscribes_then_releases(legacy_transport: FakeTransport) -> None:
    supervisor, states, errors = make_supervisor(legacy_transport)
    supervisor.connect(DEVICE)
    await wait_until(lambda: supervisor.state == S.READY)

    await supervisor.disconnect()

    disabled = [char.uuid for char, on in legacy_transport.notify_calls if not on]
    assert len(disabled) == 2
    assert legacy_transport.disconnects == [DEVICE.identity]
    assert states[-1] == S.DISCONNECTED


@pytest.mark.asyncio
async def test_disconnect_cancels_pending_watchdog(legacy_transport: FakeTransport) -> None:
    legacy_transport.hang_connects = 1
    supervisor, states, errors = make_supervisor(legacy_transport, timeout=0.05)

    supervisor.connect(DEVICE)
    await wait_until(lambda: legacy_transport.connections)
    await supervisor.disconnect()
    await asyncio.sleep(0.15)

    assert supervisor.state == S.DISCONNECTED
    assert len(legacy_transport.connections) == 1
    assert errors == []


@pytest.mark.asyncio
async def test_scanning_only_from_disconnected(legacy_transport: FakeTransport) -> None:
    supervisor, states, errors = make_supervisor(legacy_transport)
    supervisor.begin_scanning()
    assert supervisor.state == S.SCANNING
    supervisor.end_scanning()
    assert supervisor.state == S.DISCONNECTED

    supervisor.connect(DEVICE)
    await wait_until(lambda: supervisor.state == S.READY)
    supervisor.begin_scanning()
    assert supervisor.state == S.READY


@pytest.mark.asyncio
async def test_attempt_without_device_is_a_no_op(legacy_transport: FakeTransport) -> None:
    supervisor, states, errors = make_supervisor(legacy_transport)

    await supervisor._run_attempt(supervisor.generation)

    assert legacy_transport.connections == []
    assert states == []
    assert supervisor.state == S.DISCONNECTED
