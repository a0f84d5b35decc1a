"""FTMS control point encoding and treadmill data / machine status parsing."""

import struct

import pytest
from pyftms import ResultCode

from padctrl import ftms
from padctrl.models import BeltState, MachineEventKind


def test_control_point_commands() -> None:
    assert ftms.request_control() == bytes([0x00])
    assert ftms.reset() == bytes([0x01])
    assert ftms.start_or_resume() == bytes([0x07])
    assert ftms.stop() == bytes([0x08, 0x01])
    assert ftms.pause() == bytes([0x08, 0x02])


def test_set_target_speed_is_little_endian_hundredths() -> None:
    assert ftms.set_target_speed(300) == bytes([0x02, 0x2C, 0x01])


def test_parse_speed_only_running() -> None:
    status = ftms.parse_treadmill_data(bytes([0x00, 0x00, 0x0A, 0x00]))
    assert status is not None
    assert status.speed == 1
    assert status.belt_state == BeltState.RUNNING


def test_parse_speed_in_tenths() -> None:
    # 100 hundredths of km/h is 10 tenths
    status = ftms.parse_treadmill_data(bytes([0x00, 0x00, 0x64, 0x00]))
    assert status is not None
    assert status.speed == 10
    assert status.belt_state == BeltState.RUNNING


def test_parse_zero_speed_is_idle() -> None:
    status = ftms.parse_treadmill_data(bytes([0x00, 0x00, 0x00, 0x00]))
    assert status is not None
    assert status.speed == 0
    assert status.belt_state == BeltState.IDLE


def test_parse_distance_energy_and_time() -> None:
    payload = bytes(
        [0x84, 0x24]
        + [0x2C, 0x01]  # speed 3.00 km/h
        + [0x96, 0x00, 0x00]  # 150 m
        + [0x0C, 0x00, 0x00, 0x00, 0x00]  # 12 kcal, per hour, per minute
        + [0x78, 0x00]  # 120 s
    )
    status = ftms.parse_treadmill_data(payload)
    assert status is not None
    assert status.speed == 30
    assert status.distance == 150
    assert status.calories == 12
    assert status.time == 120


def test_parse_skips_unexposed_fields_in_order() -> None:
    flags = (
        ftms.FLAG_AVERAGE_SPEED
        | ftms.FLAG_INCLINATION
        | ftms.FLAG_ELEVATION_GAIN
        | ftms.FLAG_INSTANT_PACE
        | ftms.FLAG_AVERAGE_PACE
        | ftms.FLAG_HEART_RATE
        | ftms.FLAG_METABOLIC_EQUIVALENT
        | ftms.FLAG_ELAPSED_TIME
    )
    payload = (
        struct.pack("<H", flags)
        + struct.pack("<H", 250)
        + bytes(2 + 4 + 4 + 1 + 1 + 1 + 1)
        + struct.pack("<H", 600)
    )
    status = ftms.parse_treadmill_data(payload)
    assert status is not None
    assert status.speed == 25
    assert status.time == 600


def test_more_data_flag_means_no_speed_field() -> None:
    payload = struct.pack("<H", ftms.FLAG_MORE_DATA | ftms.FLAG_ELAPSED_TIME) + struct.pack(
        "<H", 42
    )
    status = ftms.parse_treadmill_data(payload)
    assert status is not None
    assert status.speed == 0
    assert status.time == 42


@pytest.mark.parametrize(
    "payload",
    [
        b"",
        bytes([0x00, 0x00, 0x0A]),
        # distance announced, only two of three bytes present
        bytes([0x04, 0x00, 0x0A, 0x00, 0x96, 0x00]),
        # energy announced, per-minute byte missing
        bytes([0x80, 0x00, 0x0A, 0x00, 0x0C, 0x00, 0x00, 0x00]),
        # elapsed time announced with nothing after the speed
        bytes([0x00, 0x04, 0x0A, 0x00]),
    ],
)
def test_truncated_payloads_are_rejected(payload: bytes) -> None:
    assert ftms.parse_treadmill_data(payload) is None


@pytest.mark.parametrize(
    "payload, kind, value",
    [
        (bytes([0x02, 0x01]), MachineEventKind.STOPPED_BY_USER, None),
        (bytes([0x02, 0x02]), MachineEventKind.PAUSED_BY_USER, None),
        (bytes([0x04]), MachineEventKind.STARTED_BY_USER, None),
        (bytes([0x05, 0x2C, 0x01]), MachineEventKind.TARGET_SPEED_CHANGED, 300),
        (bytes([0x08]), MachineEventKind.CONTROL_PERMISSION_LOST, None),
    ],
)
def test_parse_machine_status(payload: bytes, kind: MachineEventKind, value) -> None:  # type: ignore[no-untyped-def]
    event = ftms.parse_machine_status(payload)
    assert event is not None
    assert event.kind == kind
    assert event.value == value


def test_unknown_or_empty_machine_status_yields_nothing() -> None:
    assert ftms.parse_machine_status(b"") is None
    assert ftms.parse_machine_status(bytes([0xFF])) is None
    assert ftms.parse_machine_status(bytes([0x05, 0x2C])) is None


def test_only_stop_and_lost_control_release_the_gate() -> None:
    assert ftms.parse_machine_status(bytes([0x02, 0x01])).releases_control
    assert ftms.parse_machine_status(bytes([0x08])).releases_control
    assert not ftms.parse_machine_status(bytes([0x02, 0x02])).releases_control
    assert not ftms.parse_machine_status(bytes([0x04])).releases_control


def test_parse_control_point_response() -> None:
    response = ftms.parse_control_point_response(bytes([0x80, 0x07, 0x01]))
    assert response is not None
    assert response.request_opcode == 0x07
    assert response.result == ResultCode.SUCCESS

    assert ftms.parse_control_point_response(bytes([0x07, 0x01])) is None
    assert ftms.parse_control_point_response(bytes([0x00, 0x07, 0x01])) is None


def test_parse_supported_speed_range() -> None:
    speed_range = ftms.parse_supported_speed_range(
        bytes([0x32, 0x00, 0x58, 0x02, 0x0A, 0x00])
    )
    assert speed_range is not None
    assert speed_range.minimum == pytest.approx(0.5)
    assert speed_range.maximum == pytest.approx(6.0)
    assert speed_range.increment == pytest.approx(0.1)
    assert ftms.parse_supported_speed_range(bytes(5)) is None
