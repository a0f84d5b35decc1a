"""
PadCtrl - WalkingPad Treadmill Control Library

A Python library for controlling WalkingPad/KingSmith treadmills via
Bluetooth, speaking the legacy F7 protocol or FTMS.
"""

from .core import __description__, __version__
from .controller import TreadmillController
from .display import DisplayManager
from .models import ConnectionState, Device, Protocol, TreadmillStatus

__author__ = "OpenCode"

__all__ = [
    "TreadmillController",
    "DisplayManager",
    "ConnectionState",
    "Device",
    "Protocol",
    "TreadmillStatus",
    "__version__",
    "__description__",
]
