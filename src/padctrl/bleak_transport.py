"""
Bleak-backed implementation of :class:`padctrl.transport.Transport`.

Bleak resolves services while connecting, so discovery here only maps the
cached GATT tree onto the driver's value types.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from bleak import BleakClient, BleakScanner
from bleak.backends.characteristic import BleakGATTCharacteristic
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.backends.service import BleakGATTService
from bleak.exc import BleakError

from .exceptions import TransportError
from .transport import (
    AdvertisementCallback,
    DisconnectCallback,
    GattCharacteristic,
    GattService,
    NotificationCallback,
    Transport,
)

logger = logging.getLogger(__name__)


class BleakTransport(Transport):
    """One BLE link at a time, driven by bleak."""

    def __init__(self, connect_timeout: float = 10.0) -> None:
        self._connect_timeout = connect_timeout
        self._scanner: Optional[BleakScanner] = None
        self._client: Optional[BleakClient] = None
        self._on_notification: Optional[NotificationCallback] = None
        self._on_disconnect: Optional[DisconnectCallback] = None
        self._services: Dict[int, BleakGATTService] = {}
        self._characteristics: Dict[int, BleakGATTCharacteristic] = {}
        self._wrapped: Dict[int, GattCharacteristic] = {}

    async def start_scan(self, callback: AdvertisementCallback) -> None:
        def detection(device: BLEDevice, advertisement: AdvertisementData) -> None:
            callback(device.address, device.name or advertisement.local_name)

        await self.stop_scan()
        self._scanner = BleakScanner(detection_callback=detection)
        try:
            await self._scanner.start()
        except (BleakError, OSError) as e:
            self._scanner = None
            raise TransportError(f"Scan failed: {e}") from e

    async def stop_scan(self) -> None:
        if self._scanner is None:
            return
        scanner, self._scanner = self._scanner, None
        try:
            await scanner.stop()
        except (BleakError, OSError) as e:
            logger.warning(f"Stopping scan failed: {e}")

    async def connect(
        self,
        identity: str,
        on_notification: NotificationCallback,
        on_disconnect: DisconnectCallback,
    ) -> None:
        self._on_notification = on_notification
        self._on_disconnect = on_disconnect
        self._services.clear()
        self._characteristics.clear()
        self._wrapped.clear()

        self._client = BleakClient(
            identity,
            disconnected_callback=self._handle_disconnect,
            timeout=self._connect_timeout,
        )
        try:
            await self._client.connect()
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            self._client = None
            raise TransportError(f"Connect to {identity} failed: {e}") from e

    async def disconnect(self, identity: str) -> None:
        client, self._client = self._client, None
        # Our own teardown is not a link loss
        self._on_disconnect = None
        if client is None:
            return
        try:
            await client.disconnect()
        except (BleakError, OSError) as e:
            logger.warning(f"Disconnect from {identity} failed: {e}")

    async def discover_services(self, identity: str) -> List[GattService]:
        client = self._require_client()
        services = []
        for service in client.services:
            self._services[service.handle] = service
            services.append(GattService(uuid=service.uuid.lower(), handle=service.handle))
        return services

    async def discover_characteristics(
        self, service: GattService
    ) -> List[GattCharacteristic]:
        bleak_service = self._services.get(service.handle)
        if bleak_service is None:
            raise TransportError(f"Unknown service {service.uuid}")

        characteristics = []
        for char in bleak_service.characteristics:
            wrapped = GattCharacteristic(
                uuid=char.uuid.lower(),
                service_uuid=service.uuid,
                properties=frozenset(char.properties),
                handle=char.handle,
            )
            self._characteristics[char.handle] = char
            self._wrapped[char.handle] = wrapped
            characteristics.append(wrapped)
        return characteristics

    async def write(
        self, characteristic: GattCharacteristic, data: bytes, response: bool
    ) -> None:
        client = self._require_client()
        try:
            await client.write_gatt_char(
                self._resolve(characteristic), data, response=response
            )
        except (BleakError, OSError) as e:
            raise TransportError(f"Write to {characteristic.uuid} failed: {e}") from e

    async def set_notify(self, characteristic: GattCharacteristic, enabled: bool) -> None:
        client = self._require_client()
        char = self._resolve(characteristic)
        try:
            if enabled:
                await client.start_notify(char, self._handle_notification)
            else:
                await client.stop_notify(char)
        except (BleakError, OSError) as e:
            action = "Subscribe to" if enabled else "Unsubscribe from"
            raise TransportError(f"{action} {characteristic.uuid} failed: {e}") from e

    async def read(self, characteristic: GattCharacteristic) -> bytes:
        client = self._require_client()
        try:
            return bytes(await client.read_gatt_char(self._resolve(characteristic)))
        except (BleakError, OSError) as e:
            raise TransportError(f"Read of {characteristic.uuid} failed: {e}") from e

    def _require_client(self) -> BleakClient:
        if self._client is None or not self._client.is_connected:
            raise TransportError("Not connected")
        return self._client

    def _resolve(self, characteristic: GattCharacteristic) -> BleakGATTCharacteristic:
        char = self._characteristics.get(characteristic.handle)
        if char is None:
            raise TransportError(f"Unknown characteristic {characteristic.uuid}")
        return char

    def _handle_notification(
        self, sender: BleakGATTCharacteristic, data: bytearray
    ) -> None:
        wrapped = self._wrapped.get(sender.handle)
        if wrapped is None or self._on_notification is None:
            logger.debug(f"Dropping notification from unknown handle {sender.handle}")
            return
        self._on_notification(wrapped, bytes(data))

    def _handle_disconnect(self, client: BleakClient) -> None:
        if client is not self._client:
            logger.debug(f"Ignoring disconnect of superseded client {client.address}")
            return
        callback = self._on_disconnect
        self._on_disconnect = None
        self._client = None
        if callback is not None:
            callback(client.address)
