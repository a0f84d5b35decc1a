"""
Core constants for WalkingPad treadmill control.
"""

# FTMS (Fitness Machine Service) UUIDs
FTMS_SERVICE_UUID = "00001826-0000-1000-8000-00805f9b34fb"
FTMS_TREADMILL_DATA_UUID = "00002acd-0000-1000-8000-00805f9b34fb"
FTMS_CONTROL_POINT_UUID = "00002ad9-0000-1000-8000-00805f9b34fb"
FTMS_MACHINE_STATUS_UUID = "00002ada-0000-1000-8000-00805f9b34fb"
FTMS_MACHINE_FEATURE_UUID = "00002acc-0000-1000-8000-00805f9b34fb"
FTMS_SUPPORTED_SPEED_RANGE_UUID = "00002ad4-0000-1000-8000-00805f9b34fb"

# KingSmith proprietary side channel (KS-HD-Z1D and similar)
KS_SERVICE_UUID = "24e2521c-f63b-48ed-85be-c5330a00fdf7"
KS_NOTIFY_UUID = "24e2521c-f63b-48ed-85be-c5330b00fdf7"
KS_WRITE_UUID = "24e2521c-f63b-48ed-85be-c5330d00fdf7"

# Legacy F7 (service, notify, write) sets, highest priority first.
# Older WalkingPads use FE00, newer KS-HD models FFF0 or FFC0.
LEGACY_CHARACTERISTIC_SETS = (
    (
        "0000fe00-0000-1000-8000-00805f9b34fb",
        "0000fe01-0000-1000-8000-00805f9b34fb",
        "0000fe02-0000-1000-8000-00805f9b34fb",
    ),
    (
        "0000fff0-0000-1000-8000-00805f9b34fb",
        "0000fff1-0000-1000-8000-00805f9b34fb",
        "0000fff2-0000-1000-8000-00805f9b34fb",
    ),
    (
        "0000ffc0-0000-1000-8000-00805f9b34fb",
        "0000ffc1-0000-1000-8000-00805f9b34fb",
        "0000ffc2-0000-1000-8000-00805f9b34fb",
    ),
)

# Advertised names are matched lower-cased against these prefixes
DEVICE_NAME_PREFIXES = ("walkingpad", "ks-")
UNKNOWN_DEVICE_NAME = "Unknown WalkingPad"

# Timing (seconds)
CONNECT_TIMEOUT = 15.0
COMMAND_SPACING = 0.69  # legacy controller drops commands sent faster than this
HANDSHAKE_DELAY = 0.3
POLL_INTERVAL = 1.0
SCAN_TIMEOUT = 10.0

# Speed constraints in tenths of km/h
SPEED_MIN = 0
SPEED_MAX = 60

# Application metadata
__version__ = "0.2.0"
__description__ = "Driver and REPL for WalkingPad and FTMS treadmills over Bluetooth LE"
