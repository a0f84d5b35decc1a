"""
Protocol negotiation for a freshly connected treadmill.

Negotiation turns "link established" into "protocol known and live":

1. Discover characteristics for every service concurrently, recording FTMS,
   KingSmith and legacy candidates as each service reports back.
2. Once every service has answered (success or error), pick the protocol:
   FTMS when both control point and treadmill data exist, else the
   highest-priority legacy set, else fail.
3. Issue one-shot diagnostic reads (FTMS feature, supported speed range).
4. Subscribe to *every* notify/indicate characteristic on the device, not
   only the protocol route. Some models keep their standard characteristics
   silent until vendor characteristics are enabled.
5. Declare ready once all subscription acknowledgements are in.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Set, Union

from .core import (
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
from .exceptions import ProtocolNegotiationError, TransportError
from .models import Protocol
from .transport import GattCharacteristic, GattService, Transport

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LegacyRoute:
    notify: GattCharacteristic
    write: GattCharacteristic
    priority: int = 0


@dataclass(frozen=True)
class FtmsRoute:
    control_point: GattCharacteristic
    treadmill_data: GattCharacteristic


Route = Union[LegacyRoute, FtmsRoute, None]


class CompletionBarrier:
    """Counts down ``expected`` arrivals and releases waiters exactly once."""

    def __init__(self, expected: int) -> None:
        self.remaining = expected
        self._event = asyncio.Event()
        if expected <= 0:
            self._event.set()

    @property
    def done(self) -> bool:
        return self._event.is_set()

    def arrive(self) -> None:
        if self._event.is_set():
            return
        self.remaining -= 1
        if self.remaining <= 0:
            self._event.set()

    async def wait(self) -> None:
        await self._event.wait()


class ProtocolNegotiator:
    """Discovers, selects and subscribes for one connection attempt."""

    def __init__(
        self,
        transport: Transport,
        identity: str,
        on_diagnostic: Optional[Callable[[GattCharacteristic, bytes], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> None:
        self._transport = transport
        self._identity = identity
        self._on_diagnostic = on_diagnostic
        self._on_error = on_error
        self._tasks: Set[asyncio.Task] = set()

        self.protocol: Optional[Protocol] = None
        self.route: Route = None

        self.ftms_treadmill_data: Optional[GattCharacteristic] = None
        self.ftms_control_point: Optional[GattCharacteristic] = None
        self.ftms_machine_status: Optional[GattCharacteristic] = None
        self.ftms_feature: Optional[GattCharacteristic] = None
        self.ftms_speed_range: Optional[GattCharacteristic] = None
        self.vendor_write: Optional[GattCharacteristic] = None
        self.vendor_notify: Optional[GattCharacteristic] = None
        self.legacy_route: Optional[LegacyRoute] = None

        # Promiscuous sets, independent of the selected route
        self.notify_characteristics: List[GattCharacteristic] = []
        self.write_characteristics: List[GattCharacteristic] = []
        self.subscribed: List[GattCharacteristic] = []

        self.service_count = 0
        self.is_ready = False

    async def negotiate(self) -> Protocol:
        """Run the full sequence and return the selected protocol.

        Raises:
            TransportError: service discovery as a whole failed
            ProtocolNegotiationError: no known protocol on the device
        """
        try:
            await self._discover_all()
            protocol = self._select_protocol()
            self._read_diagnostics()
            await self._subscribe_all()
        except BaseException:
            self.cancel()
            raise
        self._declare_ready()
        return protocol

    def cancel(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    def _spawn(self, coro) -> asyncio.Task:  # type: ignore[no-untyped-def]
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _report(self, error: Exception) -> None:
        if self._on_error is not None:
            self._on_error(error)

    async def _discover_all(self) -> None:
        logger.info(f"Discovering ALL services for {self._identity}...")
        services = await self._transport.discover_services(self._identity)
        self.service_count = len(services)
        logger.info(f"Discovered {len(services)} service(s):")
        for service in services:
            logger.info(f"  Service: {service.uuid}")

        barrier = CompletionBarrier(len(services))
        for service in services:
            self._spawn(self._discover_service(service, barrier))
        await barrier.wait()

        logger.info(f"All {self.service_count} services fully discovered.")
        logger.info(
            f"Total notify characteristics: {len(self.notify_characteristics)}, "
            f"write characteristics: {len(self.write_characteristics)}"
        )

    async def _discover_service(
        self, service: GattService, barrier: CompletionBarrier
    ) -> None:
        try:
            characteristics = await self._transport.discover_characteristics(service)
        except TransportError as e:
            logger.error(f"Characteristic discovery failed for {service.uuid}: {e}")
            self._report(e)
            barrier.arrive()
            return

        logger.info(
            f"Service {service.uuid} has {len(characteristics)} characteristic(s):"
        )
        for char in characteristics:
            logger.info(f"  Char: {char.uuid} [{char.describe()}]")

        # Recording must land before the arrival that may trigger selection
        try:
            self.record_service(service, characteristics)
        finally:
            barrier.arrive()

    def record_service(
        self, service: GattService, characteristics: List[GattCharacteristic]
    ) -> None:
        """Record candidacy for every protocol from one service's characteristics."""
        for char in characteristics:
            if char.can_notify:
                self.notify_characteristics.append(char)
            if char.can_write:
                self.write_characteristics.append(char)

        if service.uuid == FTMS_SERVICE_UUID:
            self._record_ftms(characteristics)

        if service.uuid == KS_SERVICE_UUID:
            for char in characteristics:
                if char.uuid == KS_WRITE_UUID:
                    self.vendor_write = char
                    logger.info("KS: Found write characteristic for sleep command")
                elif char.uuid == KS_NOTIFY_UUID:
                    self.vendor_notify = char

        self._record_legacy(service, characteristics)

    def _record_ftms(self, characteristics: List[GattCharacteristic]) -> None:
        for char in characteristics:
            if char.uuid == FTMS_TREADMILL_DATA_UUID:
                self.ftms_treadmill_data = char
                logger.info(f"FTMS: Found Treadmill Data (2ACD) [{char.describe()}]")
            elif char.uuid == FTMS_CONTROL_POINT_UUID:
                self.ftms_control_point = char
                logger.info(f"FTMS: Found Control Point (2AD9) [{char.describe()}]")
            elif char.uuid == FTMS_MACHINE_STATUS_UUID:
                self.ftms_machine_status = char
                logger.info(f"FTMS: Found Machine Status (2ADA) [{char.describe()}]")
            elif char.uuid == FTMS_MACHINE_FEATURE_UUID:
                self.ftms_feature = char
                logger.info(f"FTMS: Found Machine Feature (2ACC) [{char.describe()}]")
            elif char.uuid == FTMS_SUPPORTED_SPEED_RANGE_UUID:
                self.ftms_speed_range = char
                logger.info(
                    f"FTMS: Found Supported Speed Range (2AD4) [{char.describe()}]"
                )

    def _record_legacy(
        self, service: GattService, characteristics: List[GattCharacteristic]
    ) -> None:
        for index, (service_uuid, notify_uuid, write_uuid) in enumerate(
            LEGACY_CHARACTERISTIC_SETS
        ):
            if service_uuid != service.uuid:
                continue
            # A match of equal or higher priority is already recorded
            if self.legacy_route is not None and self.legacy_route.priority <= index:
                continue

            notify = next((c for c in characteristics if c.uuid == notify_uuid), None)
            write = next((c for c in characteristics if c.uuid == write_uuid), None)
            if notify is None or write is None:
                continue

            self.legacy_route = LegacyRoute(notify=notify, write=write, priority=index)
            logger.info(
                f"Matched legacy service {service.uuid}: notify={notify.uuid}, "
                f"write={write.uuid} (priority {index})"
            )

    def _select_protocol(self) -> Protocol:
        if self.ftms_control_point is not None and self.ftms_treadmill_data is not None:
            self.protocol = Protocol.FTMS
            self.route = FtmsRoute(
                control_point=self.ftms_control_point,
                treadmill_data=self.ftms_treadmill_data,
            )
            logger.info("Primary protocol: FTMS (control=2AD9, data=2ACD)")
        elif self.legacy_route is not None:
            self.protocol = Protocol.LEGACY
            self.route = self.legacy_route
            logger.info(
                f"Primary protocol: Legacy F7 (notify={self.legacy_route.notify.uuid}, "
                f"write={self.legacy_route.write.uuid})"
            )
        else:
            logger.error("No known protocol detected!")
            raise ProtocolNegotiationError(
                f"No known protocol on {self._identity} "
                f"after discovering {self.service_count} service(s)"
            )
        return self.protocol

    def _read_diagnostics(self) -> None:
        for char in (self.ftms_feature, self.ftms_speed_range):
            if char is not None:
                logger.info(f"Reading {char.uuid}...")
                self._spawn(self._read_once(char))

    async def _read_once(self, char: GattCharacteristic) -> None:
        try:
            value = await self._transport.read(char)
        except TransportError as e:
            logger.warning(f"Diagnostic read of {char.uuid} failed: {e}")
            return
        logger.info(f"Read {char.uuid}: {value.hex(' ').upper()}")
        if self._on_diagnostic is not None:
            self._on_diagnostic(char, value)

    async def _subscribe_all(self) -> None:
        barrier = CompletionBarrier(len(self.notify_characteristics))
        logger.info(
            f"Subscribing to ALL {len(self.notify_characteristics)} "
            "notify/indicate characteristics..."
        )
        for char in self.notify_characteristics:
            self._spawn(self._subscribe(char, barrier))
        await barrier.wait()
        logger.info("All subscriptions confirmed.")

    async def _subscribe(
        self, char: GattCharacteristic, barrier: CompletionBarrier
    ) -> None:
        logger.info(f"  Subscribing: {char.uuid} on service {char.service_uuid}")
        try:
            await self._transport.set_notify(char, True)
        except TransportError as e:
            logger.error(f"Subscribe to {char.uuid} FAILED: {e}")
        else:
            self.subscribed.append(char)
            logger.info(f"Subscribe to {char.uuid} OK")
        finally:
            barrier.arrive()

    def _declare_ready(self) -> None:
        if self.is_ready or self.protocol is None:
            return
        self.is_ready = True
        logger.info(f"Peripheral READY, protocol: {self.protocol.value}")
