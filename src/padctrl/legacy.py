"""
Legacy WalkingPad "F7" protocol codec.

Frames sent to the treadmill start with 0xF7 and end with 0xFD. The byte
before the end marker is a checksum: the sum of every byte between the start
marker and the checksum itself, modulo 256. Responses start with 0xF8 followed
by a frame type (0xA2 status, 0xA7 history).
"""

import logging
from typing import Iterable, Optional

from .models import (
    BeltState,
    LastRecord,
    PreferenceKey,
    SensitivityLevel,
    TargetType,
    TreadmillMode,
    TreadmillStatus,
)

logger = logging.getLogger(__name__)

FRAME_START = 0xF7
FRAME_END = 0xFD

STATUS_PREFIX = bytes([0xF8, 0xA2])
HISTORY_PREFIX = bytes([0xF8, 0xA7])
STATUS_MIN_LENGTH = 18
HISTORY_MIN_LENGTH = 17

CMD_STATS = 0xA2
CMD_PREFERENCE = 0xA6
CMD_HISTORY = 0xA7

OP_ASK_STATS = 0x00
OP_CHANGE_SPEED = 0x01
OP_SWITCH_MODE = 0x02
OP_START_BELT = 0x04


def int_to_bytes(value: int, width: int = 3) -> bytes:
    """Encode ``value`` big-endian in ``width`` bytes, dropping overflow."""
    return bytes((value >> (8 * (width - 1 - i))) & 0xFF for i in range(width))


def bytes_to_int(data: Iterable[int], width: int = 3) -> int:
    """Decode the first ``width`` bytes of ``data`` as a big-endian integer."""
    result = 0
    for i, byte in enumerate(bytes(data)[:width]):
        result += byte << (8 * (width - 1 - i))
    return result


def fix_checksum(frame: bytearray) -> bytearray:
    """Write the checksum into ``frame[-2]`` in place and return the frame.

    Frames shorter than three bytes have no room for a checksum and are left
    untouched.
    """
    if len(frame) >= 3:
        frame[-2] = sum(frame[1:-2]) % 256
    return frame


def build_frame(*body: int) -> bytes:
    """Wrap ``body`` with start marker, checksum slot and end marker."""
    frame = bytearray([FRAME_START, *body, 0x00, FRAME_END])
    return bytes(fix_checksum(frame))


def ask_stats() -> bytes:
    return build_frame(CMD_STATS, OP_ASK_STATS, 0x00)


def change_speed(speed: int) -> bytes:
    """Change belt speed, in tenths of km/h."""
    return build_frame(CMD_STATS, OP_CHANGE_SPEED, speed & 0xFF)


def switch_mode(mode: TreadmillMode) -> bytes:
    return build_frame(CMD_STATS, OP_SWITCH_MODE, int(mode) & 0xFF)


def start_belt() -> bytes:
    return build_frame(CMD_STATS, OP_START_BELT, 0x01)


def stop_belt() -> bytes:
    # The F7 protocol has no dedicated stop; speed zero halts the belt.
    return change_speed(0)


def ask_history(mode: int = 0) -> bytes:
    return build_frame(CMD_HISTORY, 0xAA, 0xFF if mode == 0 else 0x00)


def set_preference(
    key: PreferenceKey, value: int, subtype: int = 0, width: int = 3
) -> bytes:
    return build_frame(
        CMD_PREFERENCE, int(key), subtype & 0xFF, *int_to_bytes(value, width)
    )


def set_max_speed(speed: int) -> bytes:
    return set_preference(PreferenceKey.MAX_SPEED, speed)


def set_start_speed(speed: int) -> bytes:
    return set_preference(PreferenceKey.START_SPEED, speed)


def set_intelligent_start(enabled: bool) -> bytes:
    return set_preference(PreferenceKey.START_INTEL, 1 if enabled else 0)


def set_sensitivity(level: SensitivityLevel) -> bytes:
    return set_preference(PreferenceKey.SENSITIVITY, int(level))


def set_display(bit_mask: int) -> bytes:
    return set_preference(PreferenceKey.DISPLAY, bit_mask)


def set_child_lock(enabled: bool) -> bytes:
    return set_preference(PreferenceKey.CHILD_LOCK, 1 if enabled else 0)


def set_units_miles(enabled: bool) -> bytes:
    return set_preference(PreferenceKey.UNITS, 1 if enabled else 0)


def set_target(target_type: TargetType, value: int = 0) -> bytes:
    return set_preference(PreferenceKey.TARGET, value, subtype=int(target_type))


def is_status_frame(data: bytes) -> bool:
    return bytes(data[:2]) == STATUS_PREFIX


def is_history_frame(data: bytes) -> bool:
    return bytes(data[:2]) == HISTORY_PREFIX


def parse_status(data: bytes) -> Optional[TreadmillStatus]:
    """Decode an F8 A2 status frame, or return None if it is not one."""
    if not is_status_frame(data) or len(data) < STATUS_MIN_LENGTH:
        return None

    status = TreadmillStatus(
        raw=bytes(data),
        belt_state=BeltState.from_byte(data[2]),
        speed=data[3],
        mode=TreadmillMode.from_byte(data[4]),
        time=bytes_to_int(data[5:8]),
        distance=bytes_to_int(data[8:11]),
        calories=0,
        app_speed=data[14],
        controller_button=data[16],
    )
    logger.debug(
        f"F7 status: belt={status.belt_state.name} speed={status.speed} "
        f"time={status.time}s dist={status.distance}"
    )
    return status


def parse_last_record(data: bytes) -> Optional[LastRecord]:
    """Decode an F8 A7 history frame, or return None if it is not one."""
    if not is_history_frame(data) or len(data) < HISTORY_MIN_LENGTH:
        return None

    return LastRecord(
        raw=bytes(data),
        time=bytes_to_int(data[8:11]),
        distance=bytes_to_int(data[11:14]),
    )
