"""Shared fixtures: an in-memory GATT transport with scriptable devices."""

import asyncio
from typing import Dict, Iterable, List, Optional, Set, Tuple

import pytest

from padctrl.core import (
    FTMS_CONTROL_POINT_UUID,
    FTMS_MACHINE_FEATURE_UUID,
    FTMS_MACHINE_STATUS_UUID,
    FTMS_SERVICE_UUID,
    FTMS_SUPPORTED_SPEED_RANGE_UUID,
    FTMS_TREADMILL_DATA_UUID,
    KS_NOTIFY_UUID,
    KS_SERVICE_UUID,
    KS_WRITE_UUID,
    LEGACY_CHARACTERISTIC_SETS,
)
from padctrl.exceptions import TransportError
from padctrl.transport import (
    PROP_INDICATE,
    PROP_NOTIFY,
    PROP_READ,
    PROP_WRITE,
    PROP_WRITE_NO_RESPONSE,
    GattCharacteristic,
    GattService,
    Transport,
)

BATTERY_SERVICE_UUID = "0000180f-0000-1000-8000-00805f9b34fb"
BATTERY_LEVEL_UUID = "00002a19-0000-1000-8000-00805f9b34fb"


def make_char(uuid: str, service_uuid: str, *properties: str) -> GattCharacteristic:
    return GattCharacteristic(
        uuid=uuid, service_uuid=service_uuid, properties=frozenset(properties)
    )


def legacy_service(index: int = 0) -> Tuple[GattService, List[GattCharacteristic]]:
    service_uuid, notify_uuid, write_uuid = LEGACY_CHARACTERISTIC_SETS[index]
    return GattService(service_uuid), [
        make_char(notify_uuid, service_uuid, PROP_NOTIFY),
        make_char(write_uuid, service_uuid, PROP_WRITE_NO_RESPONSE),
    ]


def ftms_service(
    with_control_point: bool = True,
) -> Tuple[GattService, List[GattCharacteristic]]:
    chars = [
        make_char(FTMS_TREADMILL_DATA_UUID, FTMS_SERVICE_UUID, PROP_NOTIFY),
        make_char(FTMS_MACHINE_STATUS_UUID, FTMS_SERVICE_UUID, PROP_NOTIFY),
        make_char(FTMS_MACHINE_FEATURE_UUID, FTMS_SERVICE_UUID, PROP_READ),
        make_char(FTMS_SUPPORTED_SPEED_RANGE_UUID, FTMS_SERVICE_UUID, PROP_READ),
    ]
    if with_control_point:
        chars.append(
            make_char(
                FTMS_CONTROL_POINT_UUID, FTMS_SERVICE_UUID, PROP_WRITE, PROP_INDICATE
            )
        )
    return GattService(FTMS_SERVICE_UUID), chars


def kingsmith_service() -> Tuple[GattService, List[GattCharacteristic]]:
    return GattService(KS_SERVICE_UUID), [
        make_char(KS_NOTIFY_UUID, KS_SERVICE_UUID, PROP_NOTIFY),
        make_char(KS_WRITE_UUID, KS_SERVICE_UUID, PROP_WRITE_NO_RESPONSE),
    ]


def battery_service() -> Tuple[GattService, List[GattCharacteristic]]:
    return GattService(BATTERY_SERVICE_UUID), [
        make_char(BATTERY_LEVEL_UUID, BATTERY_SERVICE_UUID, PROP_READ, PROP_NOTIFY)
    ]


class FakeTransport(Transport):
    """Scriptable stand-in for a BLE stack.

    Records every write with the loop time it happened at. Failures are
    injected by characteristic/service UUID; ``hang_connects`` makes that
    many ``connect`` calls block until cancelled.
    """

    def __init__(
        self,
        services: Iterable[Tuple[GattService, List[GattCharacteristic]]] = (),
    ) -> None:
        self.services: Dict[GattService, List[GattCharacteristic]] = dict(services)
        self.reads: Dict[str, bytes] = {}

        self.hang_connects = 0
        self.connect_error: Optional[Exception] = None
        self.discover_services_error: Optional[Exception] = None
        self.failing_services: Set[str] = set()
        self.failing_subscriptions: Set[str] = set()
        self.failing_writes: Set[str] = set()

        self.scan_callback = None
        self.scan_starts = 0
        self.connections: List[Tuple[str, object, object]] = []
        self.disconnects: List[str] = []
        self.writes: List[Tuple[GattCharacteristic, bytes, bool, float]] = []
        self.write_attempts: List[bytes] = []
        self.notify_calls: List[Tuple[GattCharacteristic, bool]] = []

    # Test drivers

    def advertise(self, identity: str, name: Optional[str]) -> None:
        if self.scan_callback is not None:
            self.scan_callback(identity, name)

    def characteristic(self, uuid: str) -> GattCharacteristic:
        for chars in self.services.values():
            for char in chars:
                if char.uuid == uuid:
                    return char
        raise KeyError(uuid)

    def push(self, uuid: str, data: bytes) -> None:
        """Deliver a notification through the latest connection's callback."""
        _, on_notification, _ = self.connections[-1]
        on_notification(self.characteristic(uuid), bytes(data))  # type: ignore[operator]

    def drop_link(self) -> None:
        identity, _, on_disconnect = self.connections[-1]
        on_disconnect(identity)  # type: ignore[operator]

    def written(self, uuid: Optional[str] = None) -> List[bytes]:
        return [data for char, data, _, _ in self.writes if uuid is None or char.uuid == uuid]

    # Transport

    async def start_scan(self, callback) -> None:  # type: ignore[no-untyped-def]
        self.scan_starts += 1
        self.scan_callback = callback

    async def stop_scan(self) -> None:
        self.scan_callback = None

    async def connect(self, identity, on_notification, on_disconnect) -> None:  # type: ignore[no-untyped-def]
        self.connections.append((identity, on_notification, on_disconnect))
        if self.hang_connects > 0:
            self.hang_connects -= 1
            await asyncio.Event().wait()
        if self.connect_error is not None:
            raise self.connect_error

    async def disconnect(self, identity: str) -> None:
        self.disconnects.append(identity)

    async def discover_services(self, identity: str) -> List[GattService]:
        if self.discover_services_error is not None:
            raise self.discover_services_error
        return list(self.services)

    async def discover_characteristics(
        self, service: GattService
    ) -> List[GattCharacteristic]:
        await asyncio.sleep(0)
        if service.uuid in self.failing_services:
            raise TransportError(f"discovery failed for {service.uuid}")
        return list(self.services[service])

    async def write(
        self, characteristic: GattCharacteristic, data: bytes, response: bool
    ) -> None:
        self.write_attempts.append(bytes(data))
        if characteristic.uuid in self.failing_writes:
            raise TransportError(f"write to {characteristic.uuid} failed")
        loop_time = asyncio.get_running_loop().time()
        self.writes.append((characteristic, bytes(data), response, loop_time))

    async def set_notify(
        self, characteristic: GattCharacteristic, enabled: bool
    ) -> None:
        await asyncio.sleep(0)
        if enabled and characteristic.uuid in self.failing_subscriptions:
            raise TransportError(f"subscribe to {characteristic.uuid} failed")
        self.notify_calls.append((characteristic, enabled))

    async def read(self, characteristic: GattCharacteristic) -> bytes:
        if characteristic.uuid not in self.reads:
            raise TransportError(f"{characteristic.uuid} not readable")
        return self.reads[characteristic.uuid]


async def wait_until(predicate, timeout: float = 1.0) -> None:  # type: ignore[no-untyped-def]
    """Poll ``predicate`` on the running loop until it holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.005)


@pytest.fixture(autouse=True)
def isolated_cache(tmp_path, monkeypatch):
    """Keep the device address cache out of the real home directory."""
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "cache"))
    return tmp_path / "cache" / "padctrl" / "device_address.json"


@pytest.fixture
def legacy_transport() -> FakeTransport:
    return FakeTransport([legacy_service(0), battery_service()])


@pytest.fixture
def ftms_transport() -> FakeTransport:
    transport = FakeTransport([ftms_service(), kingsmith_service(), battery_service()])
    transport.reads[FTMS_SUPPORTED_SPEED_RANGE_UUID] = bytes(
        [0x32, 0x00, 0x58, 0x02, 0x0A, 0x00]
    )
    transport.reads[FTMS_MACHINE_FEATURE_UUID] = bytes(8)
    return transport
