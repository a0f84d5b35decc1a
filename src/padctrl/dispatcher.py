"""
Outgoing command dispatch for the active route.

Legacy controllers have a tiny input buffer: writes closer together than
``command_spacing`` are silently dropped, so every legacy write waits out the
remainder of the floor. FTMS control point writes are acknowledged and
serialised. KingSmith side-channel writes bypass both.
"""

import asyncio
import logging
from typing import Callable, Optional

from pyftms import ResultCode

from . import ftms, kingsmith
from .core import COMMAND_SPACING, HANDSHAKE_DELAY
from .exceptions import TransportError
from .models import MachineEvent, Protocol
from .negotiator import FtmsRoute, LegacyRoute, Route
from .transport import GattCharacteristic, Transport

logger = logging.getLogger(__name__)


class CommandDispatcher:
    """Writes encoded frames to the route chosen by negotiation."""

    def __init__(
        self,
        transport: Transport,
        *,
        command_spacing: float = COMMAND_SPACING,
        handshake_delay: float = HANDSHAKE_DELAY,
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> None:
        self._transport = transport
        self.command_spacing = command_spacing
        self.handshake_delay = handshake_delay
        self._on_error = on_error

        self.protocol: Optional[Protocol] = None
        self.route: Route = None
        self.vendor_write: Optional[GattCharacteristic] = None

        self._lock = asyncio.Lock()
        # Bumped on every attach/detach so queued writes notice a new session
        self._session = 0
        self._last_command_time: Optional[float] = None
        self._control_acquired = False
        self._handshake_task: Optional[asyncio.Task] = None

    @property
    def control_acquired(self) -> bool:
        return self._control_acquired

    @property
    def has_vendor_channel(self) -> bool:
        return self.vendor_write is not None

    def attach(
        self,
        protocol: Protocol,
        route: Route,
        vendor_write: Optional[GattCharacteristic] = None,
    ) -> None:
        """Bind to a freshly negotiated connection."""
        self.detach()
        self.protocol = protocol
        self.route = route
        self.vendor_write = vendor_write

    def detach(self) -> None:
        """Forget the route and per-connection state."""
        self._session += 1
        if self._handshake_task is not None:
            self._handshake_task.cancel()
            self._handshake_task = None
        self.protocol = None
        self.route = None
        self.vendor_write = None
        self._control_acquired = False
        self._last_command_time = None

    def _target(self) -> Optional[GattCharacteristic]:
        if isinstance(self.route, FtmsRoute):
            return self.route.control_point
        if isinstance(self.route, LegacyRoute):
            return self.route.write
        return None

    async def send(self, protocol: Protocol, frame: bytes) -> ResultCode:
        """Write ``frame`` if it was encoded for the active protocol.

        Frames for another protocol are ignored and reported as NOT_SUPPORTED.
        """
        target = self._target()
        if target is None or self.protocol is None:
            logger.warning("send() called but no route is active")
            return ResultCode.FAILED
        if protocol != self.protocol:
            logger.debug(
                f"Ignoring {protocol.value} command while speaking {self.protocol.value}"
            )
            return ResultCode.NOT_SUPPORTED

        session = self._session
        async with self._lock:
            if protocol == Protocol.LEGACY:
                await self._enforce_spacing()
            # The route may have been dropped or replaced while we waited
            if (
                self._session != session
                or self.protocol != protocol
                or self._target() is not target
            ):
                logger.warning("Connection changed before write, dropping command")
                return ResultCode.FAILED
            ack = protocol == Protocol.FTMS
            logger.debug(f"Sending command: {frame.hex(' ').upper()}")
            try:
                await self._transport.write(target, frame, response=ack)
            except TransportError as e:
                logger.error(f"Command write failed: {e}")
                self._report(e)
                return ResultCode.FAILED
            finally:
                if self._session == session:
                    self._last_command_time = asyncio.get_running_loop().time()
        return ResultCode.SUCCESS

    async def _enforce_spacing(self) -> None:
        if self._last_command_time is None:
            return
        elapsed = asyncio.get_running_loop().time() - self._last_command_time
        remaining = self.command_spacing - elapsed
        if remaining > 0:
            await asyncio.sleep(remaining)

    async def send_vendor(self, frame: bytes) -> ResultCode:
        if self.vendor_write is None:
            logger.warning("KingSmith write characteristic not available")
            return ResultCode.NOT_SUPPORTED
        logger.debug(f"KS Write: {frame.hex(' ').upper()}")
        try:
            await self._transport.write(self.vendor_write, frame, response=False)
        except TransportError as e:
            logger.error(f"KS write failed: {e}")
            self._report(e)
            return ResultCode.FAILED
        return ResultCode.SUCCESS

    async def acquire_control(self) -> ResultCode:
        """Request FTMS control and start/resume, once per connection.

        The gate stays closed until the machine reports a user stop or the
        loss of control permission.
        """
        if self.protocol != Protocol.FTMS:
            return ResultCode.NOT_SUPPORTED
        if self._control_acquired:
            logger.debug("FTMS control already requested, skipping")
            return ResultCode.SUCCESS

        logger.info("Sending FTMS Request Control + Start/Resume")
        result = await self.send(Protocol.FTMS, ftms.request_control())
        if result != ResultCode.SUCCESS:
            return result
        result = await self.send(Protocol.FTMS, ftms.start_or_resume())
        if result == ResultCode.SUCCESS:
            self._control_acquired = True
        return result

    def handle_machine_event(self, event: MachineEvent) -> None:
        if event.releases_control and self._control_acquired:
            logger.info(f"FTMS control released ({event.kind.value})")
            self._control_acquired = False

    def start_vendor_handshake(self) -> Optional[asyncio.Task]:
        """Kick off the KingSmith init sequence if the side channel exists."""
        if self.vendor_write is None:
            logger.info("No KingSmith service found, skipping handshake")
            return None
        logger.info("Sending KS init handshake")
        self._handshake_task = asyncio.ensure_future(self._run_handshake())
        return self._handshake_task

    async def _run_handshake(self) -> None:
        steps = (
            kingsmith.init_device,
            kingsmith.init_timestamp,
            kingsmith.query_status,
            kingsmith.query_config,
        )
        for index, build in enumerate(steps):
            if index:
                await asyncio.sleep(self.handshake_delay)
            await self.send_vendor(build())
        logger.info("KS handshake complete")

    def _report(self, error: Exception) -> None:
        if self._on_error is not None:
            self._on_error(error)
