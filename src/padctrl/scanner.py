"""Name-prefix filtering and de-duplication of BLE advertisements."""

import logging
from typing import Callable, Optional, Sequence, Set

from .core import DEVICE_NAME_PREFIXES, UNKNOWN_DEVICE_NAME
from .models import Device
from .transport import Transport

logger = logging.getLogger(__name__)


class DeviceScanner:
    """Reports each matching treadmill once per scanning session."""

    def __init__(
        self,
        transport: Transport,
        on_device: Callable[[Device], None],
        prefixes: Sequence[str] = DEVICE_NAME_PREFIXES,
    ) -> None:
        self._transport = transport
        self._on_device = on_device
        self._prefixes = tuple(p.lower() for p in prefixes)
        self._seen: Set[str] = set()
        self._scanning = False

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    def matches(self, name: Optional[str]) -> bool:
        return bool(name) and name.lower().startswith(self._prefixes)  # type: ignore[union-attr]

    async def start(self) -> None:
        self._seen.clear()
        self._scanning = True
        logger.info("Starting BLE scan (filtering by name)...")
        try:
            await self._transport.start_scan(self.handle_advertisement)
        except Exception:
            self._scanning = False
            raise

    async def stop(self) -> None:
        if not self._scanning:
            return
        logger.info("Stopping BLE scan")
        self._scanning = False
        await self._transport.stop_scan()

    def handle_advertisement(self, identity: str, name: Optional[str]) -> None:
        if not self._scanning or not self.matches(name):
            return
        if identity in self._seen:
            return
        self._seen.add(identity)

        logger.info(f"Found WalkingPad device: '{name}' ({identity})")
        self._on_device(Device(identity=identity, name=name or UNKNOWN_DEVICE_NAME))
