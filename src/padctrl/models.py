"""
Value types shared by the codecs, the connection layer and the controller.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, IntEnum
from typing import Optional

from .core import UNKNOWN_DEVICE_NAME


@dataclass(frozen=True)
class Device:
    """A treadmill found while scanning."""

    identity: str
    name: str = UNKNOWN_DEVICE_NAME


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    SCANNING = "scanning"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    READY = "ready"

    @property
    def label(self) -> str:
        return {
            ConnectionState.DISCONNECTED: "Disconnected",
            ConnectionState.SCANNING: "Scanning...",
            ConnectionState.CONNECTING: "Connecting...",
            ConnectionState.CONNECTED: "Connected",
            ConnectionState.READY: "Ready",
        }[self]

    @property
    def is_connected(self) -> bool:
        return self in (ConnectionState.CONNECTED, ConnectionState.READY)


class Protocol(Enum):
    """Primary protocol spoken on the data/control route."""

    LEGACY = "legacy"  # F7 frames over FE00/FFF0/FFC0
    FTMS = "ftms"  # Bluetooth Fitness Machine Service


class BeltState(IntEnum):
    IDLE = 0
    RUNNING = 1
    STARTING = 5

    @classmethod
    def from_byte(cls, raw: int) -> "BeltState":
        try:
            return cls(raw)
        except ValueError:
            return cls.IDLE

    @property
    def label(self) -> str:
        return self.name.capitalize()

    @property
    def is_active(self) -> bool:
        return self in (BeltState.RUNNING, BeltState.STARTING)


class TreadmillMode(IntEnum):
    AUTOMATIC = 0
    MANUAL = 1
    STANDBY = 2

    @classmethod
    def from_byte(cls, raw: int) -> "TreadmillMode":
        try:
            return cls(raw)
        except ValueError:
            return cls.STANDBY

    @property
    def label(self) -> str:
        return {
            TreadmillMode.AUTOMATIC: "Auto",
            TreadmillMode.MANUAL: "Manual",
            TreadmillMode.STANDBY: "Standby",
        }[self]


class PreferenceKey(IntEnum):
    TARGET = 1
    MAX_SPEED = 3
    START_SPEED = 4
    START_INTEL = 5
    SENSITIVITY = 6
    DISPLAY = 7
    UNITS = 8
    CHILD_LOCK = 9


class SensitivityLevel(IntEnum):
    HIGH = 1
    MEDIUM = 2
    LOW = 3

    @property
    def label(self) -> str:
        return self.name.capitalize()


class TargetType(IntEnum):
    NONE = 0
    DISTANCE = 1
    CALORIES = 2
    TIME = 3


def format_duration(seconds: int) -> str:
    """Format seconds as MM:SS, or H:MM:SS once past the hour."""
    hours, rem = divmod(seconds, 3600)
    minutes, secs = divmod(rem, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


@dataclass(frozen=True)
class TreadmillStatus:
    """One decoded telemetry frame.

    Speed is always in tenths of km/h. Distance keeps the source protocol's
    scale: hundredths of km for legacy frames, meters for FTMS.
    """

    raw: bytes
    belt_state: BeltState
    speed: int
    mode: TreadmillMode
    time: int
    distance: int
    calories: int = 0
    app_speed: int = 0
    controller_button: int = 0
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def speed_kmh(self) -> float:
        return self.speed / 10.0

    @property
    def distance_km(self) -> float:
        return self.distance / 100.0

    @property
    def formatted_time(self) -> str:
        return format_duration(self.time)


@dataclass(frozen=True)
class LastRecord:
    """Summary of the previous session reported by a legacy device."""

    raw: bytes
    time: int
    distance: int
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def distance_km(self) -> float:
        return self.distance / 100.0

    @property
    def formatted_time(self) -> str:
        return format_duration(self.time)


class MachineEventKind(Enum):
    STOPPED_BY_USER = "stopped_by_user"
    PAUSED_BY_USER = "paused_by_user"
    STARTED_BY_USER = "started_by_user"
    TARGET_SPEED_CHANGED = "target_speed_changed"
    CONTROL_PERMISSION_LOST = "control_permission_lost"


@dataclass(frozen=True)
class MachineEvent:
    """FTMS machine status notification.

    ``value`` carries the new target speed (0.01 km/h) for
    TARGET_SPEED_CHANGED and is None otherwise.
    """

    kind: MachineEventKind
    value: Optional[int] = None

    @property
    def releases_control(self) -> bool:
        return self.kind in (
            MachineEventKind.STOPPED_BY_USER,
            MachineEventKind.CONTROL_PERMISSION_LOST,
        )


@dataclass(frozen=True)
class SpeedRange:
    """FTMS supported speed range, in km/h."""

    minimum: float
    maximum: float
    increment: float
