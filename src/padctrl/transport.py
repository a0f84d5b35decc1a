"""
Transport surface consumed by the connection layer.

The driver never talks to a radio directly. Anything that can scan, connect,
enumerate GATT services and move bytes implements :class:`Transport`;
:mod:`padctrl.bleak_transport` provides the bleak-backed one.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, FrozenSet, List, Optional

# bleak property names
PROP_READ = "read"
PROP_WRITE = "write"
PROP_WRITE_NO_RESPONSE = "write-without-response"
PROP_NOTIFY = "notify"
PROP_INDICATE = "indicate"


@dataclass(frozen=True)
class GattService:
    uuid: str
    handle: int = 0


@dataclass(frozen=True)
class GattCharacteristic:
    uuid: str
    service_uuid: str
    properties: FrozenSet[str] = frozenset()
    handle: int = 0

    @property
    def can_notify(self) -> bool:
        return PROP_NOTIFY in self.properties or PROP_INDICATE in self.properties

    @property
    def can_write(self) -> bool:
        return (
            PROP_WRITE in self.properties or PROP_WRITE_NO_RESPONSE in self.properties
        )

    def describe(self) -> str:
        return ", ".join(sorted(self.properties)) or "-"


AdvertisementCallback = Callable[[str, Optional[str]], None]
NotificationCallback = Callable[[GattCharacteristic, bytes], None]
DisconnectCallback = Callable[[str], None]


class Transport(ABC):
    """Asynchronous GATT client operations.

    Every coroutine raises :class:`padctrl.exceptions.TransportError` on
    failure. Notifications and link loss are delivered through the callbacks
    handed to :meth:`connect`.
    """

    @abstractmethod
    async def start_scan(self, callback: AdvertisementCallback) -> None:
        """Report ``(identity, advertised name)`` for every advertisement."""

    @abstractmethod
    async def stop_scan(self) -> None: ...

    @abstractmethod
    async def connect(
        self,
        identity: str,
        on_notification: NotificationCallback,
        on_disconnect: DisconnectCallback,
    ) -> None: ...

    @abstractmethod
    async def disconnect(self, identity: str) -> None: ...

    @abstractmethod
    async def discover_services(self, identity: str) -> List[GattService]: ...

    @abstractmethod
    async def discover_characteristics(
        self, service: GattService
    ) -> List[GattCharacteristic]: ...

    @abstractmethod
    async def write(
        self, characteristic: GattCharacteristic, data: bytes, response: bool
    ) -> None: ...

    @abstractmethod
    async def set_notify(
        self, characteristic: GattCharacteristic, enabled: bool
    ) -> None: ...

    @abstractmethod
    async def read(self, characteristic: GattCharacteristic) -> bytes: ...
