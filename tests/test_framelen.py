import sys

import pytest

from cankit.framelen import (
    CAN_EFF_FLAG,
    CAN_MTU,
    CAN_RTR_FLAG,
    CANFD_BRS,
    CANFD_ESI,
    CANFD_MTU,
    CanFrame,
    CflMode,
    dbitrate_length,
    frame_length,
    unpack_frame,
)

SAMPLE_FRAMES = [
    CanFrame(0x000, b""),
    CanFrame(0x7FF, b""),
    CanFrame(0x123, bytes([0x11, 0x22, 0x33, 0x44, 0x55, 0x66, 0x77, 0x88])),
    CanFrame(0x555, bytes([0xCC] * 8)),
    CanFrame(0x000, bytes(8)),
    CanFrame(0x100, bytes([0xFF] * 8)),
    CanFrame(0x12345678 | CAN_EFF_FLAG, bytes([0xDE, 0xAD, 0xBE, 0xEF])),
    CanFrame(CAN_EFF_FLAG, bytes(8)),
    CanFrame(0x1FFFFFFF | CAN_EFF_FLAG, bytes([0xFF] * 8)),
    CanFrame(0x42 | CAN_RTR_FLAG, b""),
]


def test_pack_classic_layout():
    raw = CanFrame(0x123, b"\x11\x22").pack(CAN_MTU)
    assert len(raw) == CAN_MTU
    assert int.from_bytes(raw[:4], sys.byteorder) == 0x123
    assert raw[4] == 2
    assert raw[8:10] == b"\x11\x22"
    assert raw[10:] == bytes(6)


def test_pack_fd_layout_carries_flags():
    raw = CanFrame(0x321, bytes(range(12)), flags=CANFD_BRS).pack(CANFD_MTU)
    assert len(raw) == CANFD_MTU
    assert raw[4] == 12
    assert raw[5] == CANFD_BRS
    assert raw[8:20] == bytes(range(12))


@pytest.mark.parametrize("frame", SAMPLE_FRAMES)
def test_classic_round_trip(frame):
    assert unpack_frame(frame.pack(CAN_MTU)) == frame


def test_fd_round_trip():
    frame = CanFrame(0x7AB | CAN_EFF_FLAG, bytes(range(64)), CANFD_BRS | CANFD_ESI)
    assert unpack_frame(frame.pack(CANFD_MTU)) == frame


def test_len8_dlc_round_trip():
    frame = CanFrame(0x10, bytes(8), len8_dlc=12)
    assert unpack_frame(frame.pack(CAN_MTU)).len8_dlc == 12


def test_pack_classic_too_long_raises():
    with pytest.raises(ValueError):
        CanFrame(0x1, bytes(12)).pack(CAN_MTU)


def test_pack_unknown_mtu_raises():
    with pytest.raises(ValueError):
        CanFrame(0x1, b"").pack(20)


def test_payload_over_64_raises():
    with pytest.raises(ValueError):
        CanFrame(0x1, bytes(65))


def test_unpack_wrong_size_raises():
    with pytest.raises(ValueError):
        unpack_frame(bytes(10))


def test_unpack_invalid_classic_length_raises():
    raw = bytearray(CanFrame(0x1, b"").pack(CAN_MTU))
    raw[4] = 9
    with pytest.raises(ValueError):
        unpack_frame(bytes(raw))


def test_classic_constants_from_formula():
    assert frame_length(CanFrame(0x1, b""), CflMode.NO_BITSTUFFING, CAN_MTU) == 47
    assert frame_length(CanFrame(CAN_EFF_FLAG | 1, b""), CflMode.NO_BITSTUFFING, CAN_MTU) == 67
    assert frame_length(CanFrame(0x1, b""), CflMode.WORSTCASE, CAN_MTU) == 55
    assert frame_length(CanFrame(CAN_EFF_FLAG | 1, b""), CflMode.WORSTCASE, CAN_MTU) == 80


def test_classic_length_grows_per_byte():
    short = CanFrame(0x1, b"")
    full = CanFrame(0x1, bytes(8))
    diff_plain = frame_length(full, CflMode.NO_BITSTUFFING, CAN_MTU) - frame_length(
        short, CflMode.NO_BITSTUFFING, CAN_MTU
    )
    diff_worst = frame_length(full, CflMode.WORSTCASE, CAN_MTU) - frame_length(
        short, CflMode.WORSTCASE, CAN_MTU
    )
    assert diff_plain == 8 * 8
    assert diff_worst == 8 * 10


@pytest.mark.parametrize("frame", SAMPLE_FRAMES)
def test_exact_lies_between_plain_and_worst_case(frame):
    plain = frame_length(frame, CflMode.NO_BITSTUFFING, CAN_MTU)
    exact = frame_length(frame, CflMode.EXACT, CAN_MTU)
    worst = frame_length(frame, CflMode.WORSTCASE, CAN_MTU)
    assert plain <= exact <= worst


def test_exact_counts_stuff_bits_for_zero_frame():
    frame = CanFrame(0x000, bytes(8))
    assert frame_length(frame, CflMode.EXACT, CAN_MTU) > frame_length(
        frame, CflMode.NO_BITSTUFFING, CAN_MTU
    )


def test_exact_is_deterministic_and_content_dependent():
    a = frame_length(CanFrame(0x000, bytes(8)), CflMode.EXACT, CAN_MTU)
    b = frame_length(CanFrame(0x000, bytes(8)), CflMode.EXACT, CAN_MTU)
    c = frame_length(CanFrame(0x555, bytes([0x55] * 8)), CflMode.EXACT, CAN_MTU)
    assert a == b
    assert a > c


def test_exact_rejects_oversized_classic_frame():
    with pytest.raises(ValueError):
        frame_length(CanFrame(0x1, bytes(16)), CflMode.EXACT, CAN_MTU)


def test_fd_exact_not_supported():
    assert frame_length(CanFrame(0x1, bytes(16)), CflMode.EXACT, CANFD_MTU) == 0


def test_unknown_mtu_gives_zero():
    frame = CanFrame(0x1, bytes(4))
    assert frame_length(frame, CflMode.WORSTCASE, 32) == 0
    assert frame_length(frame, CflMode.NO_BITSTUFFING, 0) == 0


@pytest.mark.parametrize("length", [0, 8, 12, 16, 64])
def test_fd_worst_case_is_five_quarters(length):
    frame = CanFrame(0x10, bytes(length))
    plain = frame_length(frame, CflMode.NO_BITSTUFFING, CANFD_MTU)
    assert frame_length(frame, CflMode.WORSTCASE, CANFD_MTU) == plain * 5 // 4


def test_fd_extended_adds_eighteen_id_bits():
    sff = CanFrame(0x10, bytes(8))
    eff = CanFrame(0x10 | CAN_EFF_FLAG, bytes(8))
    assert (
        frame_length(eff, CflMode.NO_BITSTUFFING, CANFD_MTU)
        - frame_length(sff, CflMode.NO_BITSTUFFING, CANFD_MTU)
        == 29 - 11
    )


def test_fd_crc_grows_at_sixteen_bytes():
    twelve = CanFrame(0x10, bytes(12))
    sixteen = CanFrame(0x10, bytes(16))
    diff = frame_length(sixteen, CflMode.NO_BITSTUFFING, CANFD_MTU) - frame_length(
        twelve, CflMode.NO_BITSTUFFING, CANFD_MTU
    )
    assert diff == 4 * 8 + (21 - 17)


def test_dbitrate_zero_without_brs():
    frame = CanFrame(0x10, bytes(64))
    assert dbitrate_length(frame, CflMode.NO_BITSTUFFING, CANFD_MTU) == 0


def test_dbitrate_zero_for_classic_mtu():
    frame = CanFrame(0x10, bytes(8), flags=CANFD_BRS)
    assert dbitrate_length(frame, CflMode.WORSTCASE, CAN_MTU) == 0


def test_dbitrate_exact_is_zero():
    frame = CanFrame(0x10, bytes(8), flags=CANFD_BRS)
    assert dbitrate_length(frame, CflMode.EXACT, CANFD_MTU) == 0


@pytest.mark.parametrize("length", [0, 8, 20, 64])
def test_dbitrate_part_of_total(length):
    frame = CanFrame(0x10, bytes(length), flags=CANFD_BRS)
    plain = dbitrate_length(frame, CflMode.NO_BITSTUFFING, CANFD_MTU)
    assert 0 < plain < frame_length(frame, CflMode.NO_BITSTUFFING, CANFD_MTU)
    assert dbitrate_length(frame, CflMode.WORSTCASE, CANFD_MTU) == plain * 5 // 4


def test_dbitrate_grows_per_byte():
    a = CanFrame(0x10, bytes(20), flags=CANFD_BRS)
    b = CanFrame(0x10, bytes(24), flags=CANFD_BRS)
    assert (
        dbitrate_length(b, CflMode.NO_BITSTUFFING, CANFD_MTU)
        - dbitrate_length(a, CflMode.NO_BITSTUFFING, CANFD_MTU)
        == 4 * 8
    )


def test_mode_accepts_plain_int():
    frame = CanFrame(0x1, bytes(2))
    assert frame_length(frame, 1, CAN_MTU) == frame_length(
        frame, CflMode.WORSTCASE, CAN_MTU
    )