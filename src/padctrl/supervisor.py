"""
Connection state machine with timeout supervision.

Every call to :meth:`ConnectionSupervisor.connect` starts a new attempt
generation. Transport callbacks, the negotiation task and the timeout
watchdog all carry the generation they were started with and do nothing once
a newer attempt (or a disconnect) has superseded them.
"""

import asyncio
import logging
from typing import Callable, Dict, FrozenSet, Optional

from .core import CONNECT_TIMEOUT
from .exceptions import (
    ConnectionTimeoutError,
    ProtocolNegotiationError,
    TransportError,
)
from .models import ConnectionState, Device, Protocol
from .negotiator import ProtocolNegotiator, Route
from .transport import GattCharacteristic, Transport

logger = logging.getLogger(__name__)

_S = ConnectionState

_TRANSITIONS: Dict[ConnectionState, FrozenSet[ConnectionState]] = {
    _S.DISCONNECTED: frozenset({_S.SCANNING, _S.CONNECTING}),
    _S.SCANNING: frozenset({_S.DISCONNECTED, _S.CONNECTING}),
    _S.CONNECTING: frozenset({_S.CONNECTED, _S.DISCONNECTED}),
    _S.CONNECTED: frozenset({_S.READY, _S.CONNECTING, _S.DISCONNECTED}),
    _S.READY: frozenset({_S.CONNECTING, _S.DISCONNECTED}),
}


class ConnectionSupervisor:
    """Owns the connection state and the negotiator of the current attempt."""

    def __init__(
        self,
        transport: Transport,
        *,
        connect_timeout: float = CONNECT_TIMEOUT,
        on_state: Optional[Callable[[ConnectionState], None]] = None,
        on_ready: Optional[Callable[[ProtocolNegotiator], None]] = None,
        on_error: Optional[Callable[[Exception], None]] = None,
        on_notification: Optional[Callable[[GattCharacteristic, bytes], None]] = None,
        on_diagnostic: Optional[Callable[[GattCharacteristic, bytes], None]] = None,
    ) -> None:
        self._transport = transport
        self.connect_timeout = connect_timeout
        self._on_state = on_state
        self._on_ready = on_ready
        self._on_error = on_error
        self._on_notification = on_notification
        self._on_diagnostic = on_diagnostic

        self._state = ConnectionState.DISCONNECTED
        self._generation = 0
        self._retried = False
        self._device: Optional[Device] = None
        self._negotiator: Optional[ProtocolNegotiator] = None
        self._attempt_task: Optional[asyncio.Task] = None
        self._watchdog_task: Optional[asyncio.Task] = None
        self._stale_link: Optional[str] = None
        self.protocol: Optional[Protocol] = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def device(self) -> Optional[Device]:
        return self._device

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def negotiator(self) -> Optional[ProtocolNegotiator]:
        return self._negotiator

    @property
    def route(self) -> Route:
        if self._negotiator is None or self.protocol is None:
            return None
        return self._negotiator.route

    def _set_state(self, new_state: ConnectionState) -> None:
        old_state = self._state
        if new_state == old_state:
            return
        if new_state not in _TRANSITIONS[old_state]:
            raise RuntimeError(
                f"Illegal connection transition {old_state.name} -> {new_state.name}"
            )
        self._state = new_state
        logger.info(f"Connection state: {old_state.name} -> {new_state.name}")
        if self._on_state is not None:
            self._on_state(new_state)

    def _report(self, error: Exception) -> None:
        if self._on_error is not None:
            self._on_error(error)

    def begin_scanning(self) -> None:
        if self._state == ConnectionState.DISCONNECTED:
            self._set_state(ConnectionState.SCANNING)

    def end_scanning(self) -> None:
        if self._state == ConnectionState.SCANNING:
            self._set_state(ConnectionState.DISCONNECTED)

    def connect(self, device: Device) -> None:
        """Start a new connection attempt, superseding any previous one.

        Must be called from the event loop. Progress is observable through
        ``on_state``; terminal failures are reported through ``on_error``.
        """
        logger.info(f"Connecting to device: {device.name} ({device.identity})")
        self._cancel_attempt()
        if self._device is not None and self._state not in (
            ConnectionState.DISCONNECTED,
            ConnectionState.SCANNING,
        ):
            self._stale_link = self._device.identity
        self._device = device
        self._retried = False
        self._start_attempt()

    def _start_attempt(self) -> None:
        self._generation += 1
        generation = self._generation
        self._clear_protocol()
        self._set_state(ConnectionState.CONNECTING)
        self._attempt_task = asyncio.ensure_future(self._run_attempt(generation))
        self._watchdog_task = asyncio.ensure_future(self._watchdog(generation))

    def _is_current(self, generation: int) -> bool:
        return generation == self._generation

    async def _run_attempt(self, generation: int) -> None:
        device = self._device
        if device is None:
            logger.warning("Connection attempt started without a device")
            return

        # Release the superseded session's link first
        stale, self._stale_link = self._stale_link, None
        if stale is not None:
            await self._release_link(stale)
            if not self._is_current(generation):
                return

        try:
            await self._transport.connect(
                device.identity,
                on_notification=lambda char, data: self._handle_notification(
                    generation, char, data
                ),
                on_disconnect=lambda identity: self._handle_link_lost(generation),
            )
        except TransportError as e:
            if not self._is_current(generation):
                return
            logger.error(f"Peripheral failed to connect: {e}")
            self._fail(e)
            return

        if not self._is_current(generation):
            return
        logger.info("Peripheral connected, discovering services...")
        self._set_state(ConnectionState.CONNECTED)

        negotiator = ProtocolNegotiator(
            self._transport,
            device.identity,
            on_diagnostic=self._on_diagnostic,
            on_error=self._report,
        )
        self._negotiator = negotiator
        try:
            protocol = await negotiator.negotiate()
        except (TransportError, ProtocolNegotiationError) as e:
            if not self._is_current(generation):
                return
            logger.error(f"Negotiation failed: {e}")
            await self._release_link(device.identity)
            self._fail(e)
            return

        if not self._is_current(generation):
            return
        self._cancel_watchdog()
        self.protocol = protocol
        logger.info(f"Connection READY, protocol: {protocol.value}")
        self._set_state(ConnectionState.READY)
        if self._on_ready is not None:
            self._on_ready(negotiator)

    async def _watchdog(self, generation: int) -> None:
        await asyncio.sleep(self.connect_timeout)
        if not self._is_current(generation):
            return
        if self._state not in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return

        device = self._device
        if device is None:
            return
        if self._attempt_task is not None:
            self._attempt_task.cancel()
        self._cancel_negotiator()
        await self._release_link(device.identity)
        if not self._is_current(generation):
            return

        if not self._retried:
            logger.warning(
                f"Connection timeout: stuck at {self._state.name} after "
                f"{self.connect_timeout}s, retrying..."
            )
            self._retried = True
            self._start_attempt()
            return

        logger.error("Connection timeout on retry, giving up")
        self._generation += 1
        self._attempt_task = None
        self._watchdog_task = None
        self._clear_protocol()
        self._set_state(ConnectionState.DISCONNECTED)
        self._report(
            ConnectionTimeoutError(
                f"{device.name} not ready after {self.connect_timeout}s (retried once)"
            )
        )

    def _fail(self, error: Exception) -> None:
        self._generation += 1
        self._cancel_watchdog()
        self._clear_protocol()
        self._set_state(ConnectionState.DISCONNECTED)
        self._report(error)

    def _handle_link_lost(self, generation: int) -> None:
        if not self._is_current(generation):
            logger.debug("Link loss for a superseded attempt, ignoring")
            return
        logger.info("Peripheral disconnected")
        self._generation += 1
        self._cancel_attempt()
        self._clear_protocol()
        self._set_state(ConnectionState.DISCONNECTED)

    def _handle_notification(
        self, generation: int, char: GattCharacteristic, data: bytes
    ) -> None:
        if not self._is_current(generation):
            return
        logger.debug(f"BLE data from {char.uuid}: {data.hex(' ').upper()} ({len(data)} bytes)")
        if self._on_notification is not None:
            self._on_notification(char, data)

    async def disconnect(self) -> None:
        """Unsubscribe (best effort), release the link and go DISCONNECTED."""
        device = self._device
        negotiator = self._negotiator
        self._generation += 1
        self._cancel_attempt()

        if device is None:
            logger.warning("disconnect() called but no device")
        else:
            if negotiator is not None:
                await self._unsubscribe_all(negotiator)
            logger.info("Disconnecting from device")
            await self._release_link(device.identity)

        self._negotiator = None
        self._clear_protocol()
        self._set_state(ConnectionState.DISCONNECTED)

    async def _unsubscribe_all(self, negotiator: ProtocolNegotiator) -> None:
        logger.info(
            f"Unsubscribing from all {len(negotiator.subscribed)} notify characteristics"
        )
        for char in list(negotiator.subscribed):
            try:
                await self._transport.set_notify(char, False)
            except TransportError as e:
                logger.warning(f"Unsubscribe from {char.uuid} failed: {e}")
        negotiator.subscribed.clear()

    async def _release_link(self, identity: str) -> None:
        try:
            await self._transport.disconnect(identity)
        except TransportError as e:
            logger.warning(f"Releasing link to {identity} failed: {e}")

    def _clear_protocol(self) -> None:
        self._cancel_negotiator()
        self._negotiator = None
        self.protocol = None

    def _cancel_watchdog(self) -> None:
        task, self._watchdog_task = self._watchdog_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _cancel_negotiator(self) -> None:
        if self._negotiator is not None:
            self._negotiator.cancel()

    def _cancel_attempt(self) -> None:
        self._cancel_watchdog()
        task, self._attempt_task = self._attempt_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        self._cancel_negotiator()
