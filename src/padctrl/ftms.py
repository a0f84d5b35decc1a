"""
Fitness Machine Service (FTMS) codec for treadmills.

Control point commands are written with response; treadmill data and machine
status arrive as notifications. Multi-byte fields are little-endian.
"""

import logging
import struct
from dataclasses import dataclass
from typing import Optional

from pyftms import ResultCode

from .models import (
    BeltState,
    MachineEvent,
    MachineEventKind,
    SpeedRange,
    TreadmillMode,
    TreadmillStatus,
)

logger = logging.getLogger(__name__)

# Fitness Machine Control Point opcodes
OP_REQUEST_CONTROL = 0x00
OP_RESET = 0x01
OP_SET_TARGET_SPEED = 0x02
OP_START_RESUME = 0x07
OP_STOP_PAUSE = 0x08
OP_RESPONSE = 0x80

STOP_PARAM = 0x01
PAUSE_PARAM = 0x02

# Treadmill Data flags
FLAG_MORE_DATA = 1 << 0
FLAG_AVERAGE_SPEED = 1 << 1
FLAG_TOTAL_DISTANCE = 1 << 2
FLAG_INCLINATION = 1 << 3
FLAG_ELEVATION_GAIN = 1 << 4
FLAG_INSTANT_PACE = 1 << 5
FLAG_AVERAGE_PACE = 1 << 6
FLAG_EXPENDED_ENERGY = 1 << 7
FLAG_HEART_RATE = 1 << 8
FLAG_METABOLIC_EQUIVALENT = 1 << 9
FLAG_ELAPSED_TIME = 1 << 10

# Fields that are skipped, in wire order, with their byte sizes
_SKIPPED_FIELDS = {
    FLAG_AVERAGE_SPEED: 2,
    FLAG_INCLINATION: 4,  # inclination + ramp angle
    FLAG_ELEVATION_GAIN: 4,  # positive + negative
    FLAG_INSTANT_PACE: 1,
    FLAG_AVERAGE_PACE: 1,
    FLAG_HEART_RATE: 1,
    FLAG_METABOLIC_EQUIVALENT: 1,
}

# Machine Status opcodes
STATUS_STOPPED_OR_PAUSED = 0x02
STATUS_STARTED = 0x04
STATUS_TARGET_SPEED_CHANGED = 0x05
STATUS_CONTROL_LOST = 0x08


def request_control() -> bytes:
    return bytes([OP_REQUEST_CONTROL])


def reset() -> bytes:
    return bytes([OP_RESET])


def set_target_speed(speed_hundredths: int) -> bytes:
    """Set target speed in 0.01 km/h units (300 = 3.0 km/h)."""
    return struct.pack("<BH", OP_SET_TARGET_SPEED, speed_hundredths & 0xFFFF)


def start_or_resume() -> bytes:
    return bytes([OP_START_RESUME])


def stop() -> bytes:
    return bytes([OP_STOP_PAUSE, STOP_PARAM])


def pause() -> bytes:
    return bytes([OP_STOP_PAUSE, PAUSE_PARAM])


class _Reader:
    """Cursor over a payload that refuses to read past the end."""

    def __init__(self, data: bytes, offset: int = 0) -> None:
        self.data = data
        self.offset = offset

    def has(self, size: int) -> bool:
        return self.offset + size <= len(self.data)

    def uint(self, size: int) -> int:
        value = int.from_bytes(self.data[self.offset : self.offset + size], "little")
        self.offset += size
        return value

    def skip(self, size: int) -> None:
        self.offset += size


def parse_treadmill_data(data: bytes) -> Optional[TreadmillStatus]:
    """Parse Treadmill Data (0x2ACD) into a status.

    Returns None when the payload is shorter than four bytes or when any
    field announced by the flags would run past the end of the payload.
    """
    if len(data) < 4:
        logger.warning(f"Treadmill data too short: {len(data)} bytes")
        return None

    flags = struct.unpack_from("<H", data, 0)[0]
    reader = _Reader(bytes(data), 2)

    speed = 0
    distance = 0
    calories = 0
    elapsed = 0

    # Bit 0 is "more data": clear means instantaneous speed IS present
    if not flags & FLAG_MORE_DATA:
        if not reader.has(2):
            return None
        speed = reader.uint(2) // 10

    for flag in (
        FLAG_AVERAGE_SPEED,
        FLAG_TOTAL_DISTANCE,
        FLAG_INCLINATION,
        FLAG_ELEVATION_GAIN,
        FLAG_INSTANT_PACE,
        FLAG_AVERAGE_PACE,
        FLAG_EXPENDED_ENERGY,
        FLAG_HEART_RATE,
        FLAG_METABOLIC_EQUIVALENT,
        FLAG_ELAPSED_TIME,
    ):
        if not flags & flag:
            continue
        if flag == FLAG_TOTAL_DISTANCE:
            if not reader.has(3):
                return None
            distance = reader.uint(3)
        elif flag == FLAG_EXPENDED_ENERGY:
            # total uint16 + per hour uint16 + per minute uint8
            if not reader.has(5):
                return None
            calories = reader.uint(2)
            reader.skip(3)
        elif flag == FLAG_ELAPSED_TIME:
            if not reader.has(2):
                return None
            elapsed = reader.uint(2)
        else:
            size = _SKIPPED_FIELDS[flag]
            if not reader.has(size):
                return None
            reader.skip(size)

    belt_state = BeltState.RUNNING if speed > 0 else BeltState.IDLE
    logger.debug(
        f"FTMS parsed: speed={speed} dist={distance}m time={elapsed}s cal={calories}"
    )

    return TreadmillStatus(
        raw=bytes(data),
        belt_state=belt_state,
        speed=speed,
        mode=TreadmillMode.MANUAL,
        time=elapsed,
        distance=distance,
        calories=calories,
        app_speed=speed,
        controller_button=0,
    )


def parse_machine_status(data: bytes) -> Optional[MachineEvent]:
    """Parse Fitness Machine Status (0x2ADA). Unknown opcodes yield None."""
    if not data:
        return None

    opcode = data[0]
    if opcode == STATUS_STOPPED_OR_PAUSED:
        reason = data[1] if len(data) > 1 else 0
        logger.info(f"FTMS: Machine stopped/paused (reason={reason})")
        if reason == STOP_PARAM:
            return MachineEvent(MachineEventKind.STOPPED_BY_USER)
        return MachineEvent(MachineEventKind.PAUSED_BY_USER)
    if opcode == STATUS_STARTED:
        logger.info("FTMS: Machine started/resumed")
        return MachineEvent(MachineEventKind.STARTED_BY_USER)
    if opcode == STATUS_TARGET_SPEED_CHANGED:
        if len(data) < 3:
            return None
        new_speed = struct.unpack_from("<H", data, 1)[0]
        logger.info(f"FTMS: Target speed changed to {new_speed}")
        return MachineEvent(MachineEventKind.TARGET_SPEED_CHANGED, new_speed)
    if opcode == STATUS_CONTROL_LOST:
        logger.info("FTMS: Control permission lost")
        return MachineEvent(MachineEventKind.CONTROL_PERMISSION_LOST)

    logger.debug(f"FTMS: Unknown machine status op=0x{opcode:02X}")
    return None


@dataclass(frozen=True)
class ControlPointResponse:
    request_opcode: int
    result: ResultCode


def parse_control_point_response(data: bytes) -> Optional[ControlPointResponse]:
    """Parse a control point indication ``0x80, request opcode, result``."""
    if len(data) < 3 or data[0] != OP_RESPONSE:
        return None
    try:
        result = ResultCode(data[2])
    except ValueError:
        logger.debug(f"FTMS: Unknown control point result 0x{data[2]:02X}")
        return None
    return ControlPointResponse(request_opcode=data[1], result=result)


def parse_supported_speed_range(data: bytes) -> Optional[SpeedRange]:
    """Parse Supported Speed Range (0x2AD4): min, max, step in 0.01 km/h."""
    if len(data) < 6:
        return None
    minimum, maximum, increment = struct.unpack_from("<HHH", data, 0)
    return SpeedRange(minimum / 100.0, maximum / 100.0, increment / 100.0)
