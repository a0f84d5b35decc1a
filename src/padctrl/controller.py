"""
High-level treadmill controller.

Composes the scanner, connection supervisor and command dispatcher behind
one object, routes incoming notifications to the right codec, and
republishes connection, status and error events to any number of listeners.
"""

import asyncio
import json
import logging
import os
import platform
from pathlib import Path
from typing import Any, List, Optional

from pyftms import ResultCode

from . import ftms, kingsmith, legacy
from .core import (
    COMMAND_SPACING,
    CONNECT_TIMEOUT,
    FTMS_CONTROL_POINT_UUID,
    FTMS_MACHINE_FEATURE_UUID,
    FTMS_MACHINE_STATUS_UUID,
    FTMS_SUPPORTED_SPEED_RANGE_UUID,
    FTMS_TREADMILL_DATA_UUID,
    HANDSHAKE_DELAY,
    KS_NOTIFY_UUID,
    POLL_INTERVAL,
    SPEED_MAX,
    SPEED_MIN,
)
from .dispatcher import CommandDispatcher
from .events import EventChannel
from .models import (
    ConnectionState,
    Device,
    LastRecord,
    MachineEvent,
    Protocol,
    SensitivityLevel,
    SpeedRange,
    TargetType,
    TreadmillMode,
    TreadmillStatus,
)
from .negotiator import ProtocolNegotiator
from .scanner import DeviceScanner
from .supervisor import ConnectionSupervisor
from .transport import GattCharacteristic, Transport

logger = logging.getLogger(__name__)


class TreadmillController:
    """Manages discovery, connection and control of one treadmill."""

    # Speed constraints, tenths of km/h
    SPEED_MIN = SPEED_MIN
    SPEED_MAX = SPEED_MAX

    @classmethod
    def _get_cache_file(cls) -> Path:
        """Get the standard cache file location for device address."""
        # Check XDG_CACHE_HOME first (Linux/Unix standard)
        cache_dir = os.environ.get("XDG_CACHE_HOME")
        if cache_dir:
            cache_path = Path(cache_dir) / "padctrl"
        else:
            system = platform.system()
            if system == "Darwin":
                cache_path = Path.home() / "Library" / "Caches" / "padctrl"
            elif system == "Windows":
                local_appdata = os.environ.get("LOCALAPPDATA")
                if local_appdata:
                    cache_path = Path(local_appdata) / "padctrl"
                else:
                    appdata = os.environ.get(
                        "APPDATA", str(Path.home() / "AppData" / "Roaming")
                    )
                    cache_path = Path(appdata) / "padctrl"
            else:
                cache_path = Path.home() / ".cache" / "padctrl"

        cache_path.mkdir(parents=True, exist_ok=True)
        return cache_path / "device_address.json"

    def __init__(
        self,
        transport: Optional[Transport] = None,
        *,
        connect_timeout: float = CONNECT_TIMEOUT,
        command_spacing: float = COMMAND_SPACING,
        handshake_delay: float = HANDSHAKE_DELAY,
    ) -> None:
        """Initialize controller with no device connection.

        Args:
            transport: GATT transport; defaults to the bleak-backed one
            connect_timeout: Seconds before a stuck attempt is retried
            command_spacing: Minimum seconds between legacy writes
            handshake_delay: Seconds between KingSmith handshake steps
        """
        if transport is None:
            from .bleak_transport import BleakTransport

            transport = BleakTransport()
        self._transport = transport

        # Observable outputs
        self.on_state: EventChannel[ConnectionState] = EventChannel("state")
        self.on_status: EventChannel[TreadmillStatus] = EventChannel("status")
        self.on_last_record: EventChannel[LastRecord] = EventChannel("last record")
        self.on_device: EventChannel[Device] = EventChannel("device")
        self.on_error: EventChannel[Exception] = EventChannel("error")
        self.on_machine_event: EventChannel[MachineEvent] = EventChannel(
            "machine event"
        )

        self.discovered_devices: List[Device] = []
        self.current_status: Optional[TreadmillStatus] = None
        self.last_record: Optional[LastRecord] = None
        self.device_name: Optional[str] = None
        self.speed_range: Optional[SpeedRange] = None

        self._scanner = DeviceScanner(transport, self._on_device_found)
        self._supervisor = ConnectionSupervisor(
            transport,
            connect_timeout=connect_timeout,
            on_state=self._on_state_change,
            on_ready=self._on_ready,
            on_error=self.on_error.emit,
            on_notification=self._on_notification,
            on_diagnostic=self._on_diagnostic,
        )
        self._dispatcher = CommandDispatcher(
            transport,
            command_spacing=command_spacing,
            handshake_delay=handshake_delay,
            on_error=self.on_error.emit,
        )
        self._settled = asyncio.Event()
        self._settled.set()
        self._polling_task: Optional[asyncio.Task] = None

    @property
    def connection_state(self) -> ConnectionState:
        return self._supervisor.state

    @property
    def active_protocol(self) -> Optional[Protocol]:
        return self._supervisor.protocol

    @property
    def is_connected(self) -> bool:
        return self.connection_state.is_connected

    @property
    def is_ready(self) -> bool:
        return self.connection_state == ConnectionState.READY

    @property
    def has_vendor_channel(self) -> bool:
        return self._dispatcher.has_vendor_channel

    @property
    def connect_timeout(self) -> float:
        return self._supervisor.connect_timeout

    @property
    def is_polling(self) -> bool:
        return self._polling_task is not None and not self._polling_task.done()

    # ========== Device address cache ==========

    def _load_cached_address(self) -> Optional[dict]:
        try:
            cache_file = self._get_cache_file()
            if cache_file.exists():
                with open(cache_file, "r") as f:
                    return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load cached address: {e}")
        return None

    def _save_cached_address(self, device: Device) -> None:
        try:
            cache_file = self._get_cache_file()
            data = {"address": device.identity, "name": device.name}
            with open(cache_file, "w") as f:
                json.dump(data, f, indent=2)
            logger.info(f"Cached device address: {device.identity}")
        except OSError as e:
            logger.warning(f"Failed to save cached address: {e}")

    def cached_device(self) -> Optional[Device]:
        """Return the last device that reached READY, if one was cached."""
        data = self._load_cached_address()
        if not data or not data.get("address"):
            return None
        if data.get("name"):
            return Device(identity=data["address"], name=data["name"])
        return Device(identity=data["address"])

    def clear_address_cache(self) -> None:
        """Clear the cached device address.

        This will force rediscovery on next connection attempt.
        """
        try:
            cache_file = self._get_cache_file()
            if cache_file.exists():
                cache_file.unlink()
                logger.info("Cleared cached device address")
        except OSError as e:
            logger.warning(f"Failed to clear cached address: {e}")

    # ========== Scanning ==========

    async def start_scanning(self) -> None:
        logger.info("Controller: startScanning")
        self.discovered_devices = []
        self._supervisor.begin_scanning()
        try:
            await self._scanner.start()
        except Exception:
            self._supervisor.end_scanning()
            raise

    async def stop_scanning(self) -> None:
        logger.info("Controller: stopScanning")
        await self._scanner.stop()
        self._supervisor.end_scanning()

    async def discover(self, timeout: float) -> List[Device]:
        """Scan for ``timeout`` seconds and return what was found."""
        await self.start_scanning()
        try:
            await asyncio.sleep(timeout)
        finally:
            await self.stop_scanning()
        return list(self.discovered_devices)

    def _on_device_found(self, device: Device) -> None:
        if any(d.identity == device.identity for d in self.discovered_devices):
            return
        logger.info(f"Controller: discovered device '{device.name}' ({device.identity})")
        self.discovered_devices.append(device)
        self.on_device.emit(device)

    # ========== Connection ==========

    async def connect(self, device: Device) -> None:
        """Begin connecting; use :meth:`wait_until_ready` to await the outcome."""
        logger.info(f"Controller: connecting to {device.name}")
        await self._scanner.stop()
        self.stop_polling()
        self._dispatcher.detach()
        self.device_name = device.name
        self.current_status = None
        self.speed_range = None
        self._settled.clear()
        self._supervisor.connect(device)

    async def wait_until_ready(self, timeout: Optional[float] = None) -> bool:
        """Wait for the current attempt to settle; True if it reached READY."""
        try:
            await asyncio.wait_for(self._settled.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return self.is_ready

    async def disconnect(self) -> None:
        logger.info("Controller: disconnecting")
        await self._scanner.stop()
        self.stop_polling()
        self._dispatcher.detach()
        await self._supervisor.disconnect()
        self.device_name = None
        self.current_status = None

    def _on_state_change(self, state: ConnectionState) -> None:
        logger.info(f"Controller: connection state -> {state.name}")
        if state in (ConnectionState.READY, ConnectionState.DISCONNECTED):
            self._settled.set()
        if state == ConnectionState.DISCONNECTED:
            self.stop_polling()
            self._dispatcher.detach()
        self.on_state.emit(state)

    def _on_ready(self, negotiator: ProtocolNegotiator) -> None:
        protocol = negotiator.protocol
        if protocol is None:
            logger.warning("Controller: ready without a protocol, ignoring")
            return
        logger.info(f"Controller: device protocol = {protocol.value}")
        self._dispatcher.attach(protocol, negotiator.route, negotiator.vendor_write)
        device = self._supervisor.device
        if device is not None:
            self._save_cached_address(device)
        self._dispatcher.start_vendor_handshake()

    # ========== Controls ==========

    async def start_belt(self) -> ResultCode:
        logger.info("Controller: startBelt")
        if self.active_protocol == Protocol.FTMS:
            if not self._dispatcher.control_acquired:
                return await self._dispatcher.acquire_control()
            return await self._send(Protocol.FTMS, ftms.start_or_resume())
        return await self._send(Protocol.LEGACY, legacy.start_belt())

    async def stop_belt(self) -> ResultCode:
        logger.info("Controller: stopBelt")
        if self.active_protocol == Protocol.FTMS:
            return await self._send(Protocol.FTMS, ftms.stop())
        return await self._send(Protocol.LEGACY, legacy.stop_belt())

    async def pause_belt(self) -> ResultCode:
        logger.info("Controller: pauseBelt")
        if self.active_protocol == Protocol.FTMS:
            return await self._send(Protocol.FTMS, ftms.pause())
        return await self._send(Protocol.LEGACY, legacy.change_speed(0))

    async def set_speed(self, tenths: int) -> ResultCode:
        """Set belt speed in tenths of km/h (30 = 3.0 km/h), clamped to 0..60."""
        clamped = max(self.SPEED_MIN, min(self.SPEED_MAX, int(tenths)))
        logger.info(f"Controller: setSpeed {clamped} tenths")
        if self.active_protocol == Protocol.FTMS:
            result = await self._dispatcher.acquire_control()
            if result != ResultCode.SUCCESS:
                return result
            return await self._send(Protocol.FTMS, ftms.set_target_speed(clamped * 10))
        return await self._send(Protocol.LEGACY, legacy.change_speed(clamped))

    async def sleep_device(self) -> ResultCode:
        logger.info("Controller: sleepDevice")
        return await self._dispatcher.send_vendor(kingsmith.sleep())

    async def wake_device(self) -> ResultCode:
        logger.info("Controller: wakeDevice")
        return await self._dispatcher.send_vendor(kingsmith.wake())

    async def switch_mode(self, mode: TreadmillMode) -> ResultCode:
        logger.info(f"Controller: switchMode {mode.name}")
        return await self._send(Protocol.LEGACY, legacy.switch_mode(mode))

    async def ask_stats(self) -> ResultCode:
        return await self._send(Protocol.LEGACY, legacy.ask_stats())

    async def ask_history(self) -> ResultCode:
        return await self._send(Protocol.LEGACY, legacy.ask_history())

    # ========== Preferences (legacy only) ==========

    async def set_max_speed(self, tenths: int) -> ResultCode:
        return await self._send(Protocol.LEGACY, legacy.set_max_speed(tenths))

    async def set_start_speed(self, tenths: int) -> ResultCode:
        return await self._send(Protocol.LEGACY, legacy.set_start_speed(tenths))

    async def set_intelligent_start(self, enabled: bool) -> ResultCode:
        return await self._send(Protocol.LEGACY, legacy.set_intelligent_start(enabled))

    async def set_sensitivity(self, level: SensitivityLevel) -> ResultCode:
        return await self._send(Protocol.LEGACY, legacy.set_sensitivity(level))

    async def set_display(self, bit_mask: int) -> ResultCode:
        return await self._send(Protocol.LEGACY, legacy.set_display(bit_mask))

    async def set_child_lock(self, enabled: bool) -> ResultCode:
        return await self._send(Protocol.LEGACY, legacy.set_child_lock(enabled))

    async def set_units_miles(self, enabled: bool) -> ResultCode:
        return await self._send(Protocol.LEGACY, legacy.set_units_miles(enabled))

    async def set_target(self, target_type: TargetType, value: int = 0) -> ResultCode:
        return await self._send(Protocol.LEGACY, legacy.set_target(target_type, value))

    async def _send(self, protocol: Protocol, frame: bytes) -> ResultCode:
        if not self.is_ready:
            logger.warning(f"Not ready ({self.connection_state.name}), command dropped")
            return ResultCode.FAILED
        return await self._dispatcher.send(protocol, frame)

    # ========== Status polling ==========

    def start_polling(self, interval: float = POLL_INTERVAL) -> None:
        self.stop_polling()
        if self.active_protocol == Protocol.FTMS:
            logger.info("Controller: FTMS data arrives via notifications, no polling")
            return
        logger.info(f"Controller: starting polling every {interval}s")
        self._polling_task = asyncio.ensure_future(self._poll(interval))

    def stop_polling(self) -> None:
        if self._polling_task is not None:
            self._polling_task.cancel()
            self._polling_task = None

    async def _poll(self, interval: float) -> None:
        while True:
            await self.ask_stats()
            await asyncio.sleep(interval)

    # ========== Inbound data ==========

    def _on_notification(self, char: GattCharacteristic, data: bytes) -> None:
        if char.uuid == FTMS_TREADMILL_DATA_UUID:
            self._handle_data(data)
        elif char.uuid == FTMS_MACHINE_STATUS_UUID:
            self._handle_machine_status(data)
        elif char.uuid == FTMS_CONTROL_POINT_UUID:
            response = ftms.parse_control_point_response(data)
            if response is not None:
                logger.info(
                    f"FTMS Control Point response: op=0x{response.request_opcode:02X} "
                    f"result={response.result.name}"
                )
        elif char.uuid in (FTMS_MACHINE_FEATURE_UUID, FTMS_SUPPORTED_SPEED_RANGE_UUID):
            self._on_diagnostic(char, data)
        elif char.uuid == KS_NOTIFY_UUID or kingsmith.is_kingsmith_frame(data):
            logger.info(f"KS frame: {kingsmith.describe_frame(data)}")
            status = kingsmith.parse_status(data)
            if status is not None:
                self._publish_status(status)
        elif self.active_protocol != Protocol.FTMS:
            self._handle_data(data)
        else:
            logger.debug(f"Ignoring non-FTMS data from {char.uuid}")

    def _handle_data(self, data: bytes) -> None:
        if self.active_protocol == Protocol.FTMS:
            status = ftms.parse_treadmill_data(data)
            if status is not None:
                self._publish_status(status)
            return

        status = legacy.parse_status(data)
        if status is not None:
            self._publish_status(status)
            return
        record = legacy.parse_last_record(data)
        if record is not None:
            logger.debug("Controller: parsed last record")
            self.last_record = record
            self.on_last_record.emit(record)

    def _handle_machine_status(self, data: bytes) -> None:
        event = ftms.parse_machine_status(data)
        if event is None:
            return
        logger.info(f"Controller: FTMS event = {event.kind.value}")
        self._dispatcher.handle_machine_event(event)
        self.on_machine_event.emit(event)

    def _publish_status(self, status: TreadmillStatus) -> None:
        logger.debug(
            f"Controller: speed={status.speed}, belt={status.belt_state.name}"
        )
        self.current_status = status
        self.on_status.emit(status)

    def _on_diagnostic(self, char: GattCharacteristic, data: bytes) -> None:
        if char.uuid == FTMS_SUPPORTED_SPEED_RANGE_UUID:
            speed_range = ftms.parse_supported_speed_range(data)
            if speed_range is not None:
                logger.info(
                    f"FTMS speed range: {speed_range.minimum}-{speed_range.maximum} km/h "
                    f"(step {speed_range.increment})"
                )
                self.speed_range = speed_range
        elif char.uuid == FTMS_MACHINE_FEATURE_UUID:
            logger.info(f"FTMS Feature (2ACC): {data.hex(' ').upper()}")

    def get_status(self) -> dict[str, Any]:
        """Get the latest values as a plain dict for display.

        Returns:
            Dictionary with status, speed (km/h), distance (km), time (s),
            calories and protocol
        """
        status = self.current_status
        if status is None:
            return {
                "status": self.connection_state.label,
                "speed": 0.0,
                "distance": 0.0,
                "time": 0,
                "calories": 0,
                "protocol": self.active_protocol.value if self.active_protocol else "-",
            }
        # FTMS reports meters, the F7 and KingSmith frames hundredths of a km
        if self.active_protocol == Protocol.FTMS and not kingsmith.is_kingsmith_frame(
            status.raw
        ):
            distance_km = status.distance / 1000.0
        else:
            distance_km = status.distance_km
        return {
            "status": status.belt_state.label,
            "speed": status.speed_kmh,
            "distance": distance_km,
            "time": status.time,
            "calories": status.calories,
            "protocol": self.active_protocol.value if self.active_protocol else "-",
        }
