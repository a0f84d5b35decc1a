"""
KingSmith proprietary side-channel codec (KS-HD-Z1D and similar models).

Outgoing frames are ``[type][sub][payload length][payload...][checksum]``
where the checksum is the sum of all preceding bytes modulo 256.

Incoming frames start with "WL" and a type byte, and end with a two byte
footer that depends on the type:

    WLR (26 bytes)  status report  footer "AT"
    WLV (11 bytes)  command ack    footer "ST"
    WLU (9 bytes)   init/version   footer "VT"
    WLQ (8 bytes)   query          footer "QT"
"""

import logging
import struct
import time
from typing import Optional

from .models import BeltState, TreadmillMode, TreadmillStatus

logger = logging.getLogger(__name__)

HEADER_PREFIX = b"WL"

TYPE_REPORT = ord("R")
TYPE_ACK = ord("V")
TYPE_INIT = ord("U")
TYPE_QUERY = ord("Q")

FOOTERS = {
    TYPE_REPORT: b"AT",
    TYPE_ACK: b"ST",
    TYPE_INIT: b"VT",
    TYPE_QUERY: b"QT",
}

FRAME_NAMES = {
    TYPE_REPORT: "status",
    TYPE_ACK: "ack",
    TYPE_INIT: "init",
    TYPE_QUERY: "query",
}

REPORT_FRAME_LENGTH = 26

# Two model-derived bytes followed by the model suffix "Z1D"
MODEL_ID = bytes([0x64, 0x91]) + b"Z1D"
TIMESTAMP_TRAILER = bytes([0x32, 0xF6, 0x59, 0x00])

POWER_AWAKE = 0x00
POWER_SLEEP = 0x40


def build_frame(frame_type: int, sub_command: int, payload: bytes = b"") -> bytes:
    frame = bytearray([frame_type, sub_command, len(payload)])
    frame.extend(payload)
    frame.append(sum(frame) & 0xFF)
    return bytes(frame)


def init_device() -> bytes:
    """Handshake step 1: identify the device model to the controller."""
    return build_frame(0x71, 0x00, MODEL_ID)


def init_timestamp(now: Optional[float] = None) -> bytes:
    """Handshake step 2: sync the device clock."""
    ts = int(time.time() if now is None else now) & 0xFFFFFFFF
    return build_frame(0x71, 0x01, struct.pack("<I", ts) + TIMESTAMP_TRAILER)


def query_status() -> bytes:
    return build_frame(0x72, 0x00)


def query_config() -> bytes:
    return build_frame(0x75, 0x00)


def _power(state: int) -> bytes:
    return build_frame(0x72, 0x01, bytes([0x0A, state, 0x00]))


def sleep() -> bytes:
    return _power(POWER_SLEEP)


def wake() -> bytes:
    return _power(POWER_AWAKE)


def is_kingsmith_frame(data: bytes) -> bool:
    return len(data) >= 3 and bytes(data[:2]) == HEADER_PREFIX


def parse_status(data: bytes) -> Optional[TreadmillStatus]:
    """Decode a WLR status report. Anything else returns None."""
    if len(data) != REPORT_FRAME_LENGTH or not is_kingsmith_frame(data):
        return None
    if data[2] != TYPE_REPORT or bytes(data[24:26]) != FOOTERS[TYPE_REPORT]:
        return None

    belt_state = BeltState.IDLE if data[3] == 0 else BeltState.RUNNING
    speed = data[5]
    elapsed = int.from_bytes(data[7:9], "little")
    distance = int.from_bytes(data[9:12], "little")
    logger.debug(
        f"KS parsed: belt={data[3]} speed={speed} time={elapsed} "
        f"dist={distance} byte4={data[4]}"
    )

    return TreadmillStatus(
        raw=bytes(data),
        belt_state=belt_state,
        speed=speed,
        mode=TreadmillMode.MANUAL,
        time=elapsed,
        distance=distance,
        calories=0,
        app_speed=speed,
        controller_button=0,
    )


def describe_frame(data: bytes) -> str:
    """Human readable one-liner for logging any KingSmith frame."""
    if not is_kingsmith_frame(data):
        return "unknown"
    frame_type = data[2]
    name = FRAME_NAMES.get(frame_type, "unknown")
    return f"WL{chr(frame_type)} ({name}, {len(data)}B): {bytes(data).hex(' ').upper()}"
