"""Bit-length estimation of CAN and CAN FD frames on the wire.

The functions here compute how many bits a frame occupies on the bus,
including the inter frame space, with a selectable treatment of stuff
bits. The worst case estimation follows

    (34 + 8n - 1)/4 + 34 + 8n + 13 for SFF frames => 55 + 10n
    (54 + 8n - 1)/4 + 54 + 8n + 13 for EFF frames => 80 + 10n

where ``n`` is the number of payload bytes.
"""

from __future__ import annotations

import enum
import struct
from dataclasses import dataclass

CAN_EFF_FLAG = 0x80000000
CAN_RTR_FLAG = 0x40000000
CAN_ERR_FLAG = 0x20000000
CAN_SFF_MASK = 0x000007FF
CAN_EFF_MASK = 0x1FFFFFFF

CAN_MAX_DLEN = 8
CANFD_MAX_DLEN = 64

CAN_MTU = 16
CANFD_MTU = 72

CANFD_BRS = 0x01
CANFD_ESI = 0x02

_CAN_FORMAT = struct.Struct("=IBBBB8s")
_CANFD_FORMAT = struct.Struct("=IBBBB64s")

_CRC15_POLY = 0x4599


class CflMode(enum.IntEnum):
    """How stuff bits are accounted for in a frame length."""

    NO_BITSTUFFING = 0
    WORSTCASE = 1
    EXACT = 2


@dataclass
class CanFrame:
    """A classic CAN or CAN FD frame as seen on a raw CAN socket."""

    can_id: int = 0
    data: bytes = b""
    flags: int = 0
    len8_dlc: int = 0

    def __post_init__(self) -> None:
        self.data = bytes(self.data)
        if len(self.data) > CANFD_MAX_DLEN:
            raise ValueError(
                f"payload of {len(self.data)} bytes exceeds {CANFD_MAX_DLEN}"
            )

    @property
    def length(self) -> int:
        """Number of payload bytes."""
        return len(self.data)

    @property
    def is_extended(self) -> bool:
        return bool(self.can_id & CAN_EFF_FLAG)

    @property
    def is_remote(self) -> bool:
        return bool(self.can_id & CAN_RTR_FLAG)

    def pack(self, mtu: int) -> bytes:
        """Encode the frame in the kernel's struct layout for the given MTU."""
        can_id = self.can_id & 0xFFFFFFFF
        if mtu == CAN_MTU:
            if self.length > CAN_MAX_DLEN:
                raise ValueError(
                    f"classic CAN frame cannot carry {self.length} bytes"
                )
            return _CAN_FORMAT.pack(
                can_id, self.length, 0, 0, self.len8_dlc & 0xFF, self.data
            )
        if mtu == CANFD_MTU:
            return _CANFD_FORMAT.pack(
                can_id, self.length, self.flags & 0xFF, 0, 0, self.data
            )
        raise ValueError(f"unsupported MTU {mtu}")


def unpack_frame(data: bytes) -> CanFrame:
    """Decode a frame from its raw socket representation (16 or 72 bytes)."""
    if len(data) == CAN_MTU:
        can_id, length, _pad, _res, len8_dlc, payload = _CAN_FORMAT.unpack(data)
        if length > CAN_MAX_DLEN:
            raise ValueError(f"invalid classic CAN length {length}")
        return CanFrame(can_id, payload[:length], 0, len8_dlc)
    if len(data) == CANFD_MTU:
        can_id, length, flags, _res0, _res1, payload = _CANFD_FORMAT.unpack(data)
        if length > CANFD_MAX_DLEN:
            raise ValueError(f"invalid CAN FD length {length}")
        return CanFrame(can_id, payload[:length], flags)
    raise ValueError(f"raw frame of {len(data)} bytes is neither CAN nor CAN FD")


def _bits(value: int, width: int) -> list[int]:
    return [(value >> shift) & 1 for shift in range(width - 1, -1, -1)]


def _crc15(bits: list[int]) -> int:
    crc = 0
    for bit in bits:
        feedback = ((crc >> 14) & 1) ^ bit
        crc = (crc << 1) & 0x7FFF
        if feedback:
            crc ^= _CRC15_POLY
    return crc & 0x7FFF


def _frame_bits(frame: CanFrame) -> list[int]:
    """Bits from SOF up to the end of the data field of a classic frame."""
    can_id = frame.can_id
    rtr = 1 if can_id & CAN_RTR_FLAG else 0
    dlc = frame.length & 0xF
    tail = [rtr, 0, 0] + _bits(dlc, 4)
    if can_id & CAN_EFF_FLAG:
        ident = can_id & CAN_EFF_MASK
        head = [0] + _bits(ident >> 18, 11) + [1, 1] + _bits(ident & 0x3FFFF, 18)
    else:
        head = [0] + _bits(can_id & CAN_SFF_MASK, 11)
    payload = [bit for byte in frame.data for bit in _bits(byte, 8)]
    return head + tail + payload


def _count_stuff_bits(bits: list[int]) -> int:
    end = len(bits)
    padded = bits + [0] * 8
    mask = 0x1F
    lookfor = 0
    pos = 0
    stuffed = 0
    while pos < end:
        window = 0
        for bit in padded[pos:pos + 5]:
            window = (window << 1) | bit
        # alternate between looking for a run of zeros and a run of ones
        lookfor = 0 if lookfor else mask
        change = (window & mask) ^ lookfor
        if change:
            pos += 5 - change.bit_length()
            mask = 0x1F
        else:
            pos += 5 if mask == 0x1F else 4
            if pos <= end:
                stuffed += 1
                # the stuff bit counts as the first of the next run
                mask = 0x1E
    return stuffed


def _exact_length(frame: CanFrame) -> int:
    if frame.length > CAN_MAX_DLEN:
        raise ValueError(f"classic CAN frame cannot carry {frame.length} bytes")
    bits = _frame_bits(frame)
    bits += _bits(_crc15(bits), 15)
    stuffed = _count_stuff_bits(bits)
    # CRC delimiter, ACK, ACK delimiter; EOF; IFS
    return len(bits) + stuffed + 3 + 7 + 3


def frame_length(frame: CanFrame, mode: CflMode, mtu: int) -> int:
    """Number of bits the frame needs on the wire, inter frame space included.

    Returns 0 for an MTU that is neither classic CAN nor CAN FD, and for
    exact calculation of CAN FD frames, which is not supported.
    """
    mode = CflMode(mode)
    eff = frame.is_extended
    if mtu == CANFD_MTU:
        if mode is CflMode.NO_BITSTUFFING:
            return (
                1
                + (29 if eff else 11)
                + (21 if frame.length >= 16 else 17)
                + 5  # r1, ide, edl, r0, brs/crcdel
                + 12  # trail
                + frame.length * 8
            )
        if mode is CflMode.WORSTCASE:
            return frame_length(frame, CflMode.NO_BITSTUFFING, mtu) * 5 // 4
        return 0
    if mtu != CAN_MTU:
        return 0
    if mode is CflMode.NO_BITSTUFFING:
        return (67 if eff else 47) + frame.length * 8
    if mode is CflMode.WORSTCASE:
        return (80 if eff else 55) + frame.length * 10
    return _exact_length(frame)


def dbitrate_length(frame: CanFrame, mode: CflMode, mtu: int) -> int:
    """Number of bits of a CAN FD frame sent at the data bitrate.

    Only CAN FD frames with the bitrate switch set have such bits.
    """
    mode = CflMode(mode)
    if mtu != CANFD_MTU or not frame.flags & CANFD_BRS:
        return 0
    if mode is CflMode.NO_BITSTUFFING:
        return (
            1  # brs/crcdel
            + 1  # esi
            + 4  # dlc
            + (21 if frame.length >= 16 else 17)
            + frame.length * 8
        )
    if mode is CflMode.WORSTCASE:
        return dbitrate_length(frame, CflMode.NO_BITSTUFFING, mtu) * 5 // 4
    return 0