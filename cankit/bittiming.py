"""CAN bit timing calculation for a set of known CAN controllers.

Given a reference clock and a nominal bitrate, :func:`calc_bittiming`
searches for the prescaler and time segments that reach the bitrate and
sample point most closely. :func:`fixup_bittiming` goes the other way and
derives bitrate and sample point from low level segment values.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Callable, NamedTuple, Optional

CAN_CALC_MAX_ERROR = 50  # in one-tenth of a percent
CAN_CALC_SYNC_SEG = 1

_UINT_MAX = 0xFFFFFFFF


def _u32(value: int) -> int:
    return value & _UINT_MAX


def _abs32(value: int) -> int:
    """Absolute value of a 32-bit unsigned difference read as signed."""
    value = _u32(value)
    if value >= 1 << 31:
        value -= 1 << 32
    return _u32(abs(value))


class BitTimingError(ValueError):
    """The requested bit timing cannot be realised by the controller."""


@dataclass(frozen=True)
class BitTimingConst:
    """Limits of a controller's bit timing registers."""

    name: str
    tseg1_min: int
    tseg1_max: int
    tseg2_min: int
    tseg2_max: int
    sjw_max: int
    brp_min: int
    brp_max: int
    brp_inc: int


@dataclass(frozen=True)
class RefClock:
    """A CAN system clock frequency in Hz, optionally named."""

    clk: int
    name: Optional[str] = None


@dataclass
class BitTiming:
    """Bit timing parameters; segment lengths are in time quanta."""

    bitrate: int = 0
    sample_point: int = 0  # in one-tenth of a percent
    tq: int = 0  # in nanoseconds
    prop_seg: int = 0
    phase_seg1: int = 0
    phase_seg2: int = 0
    sjw: int = 0
    brp: int = 0


class SamplePoint(NamedTuple):
    """Result of a sample point search for a given total segment length."""

    sample_point: int
    tseg1: Optional[int]
    tseg2: Optional[int]
    error: int


@dataclass(frozen=True)
class Controller:
    """A CAN controller: its limits, reference clocks and register layout."""

    const: BitTimingConst
    ref_clocks: tuple[RefClock, ...]
    header: Optional[str] = None
    encode: Optional[Callable[[BitTiming], str]] = field(default=None, repr=False)

    @property
    def name(self) -> str:
        return self.const.name

    @property
    def has_registers(self) -> bool:
        return self.encode is not None

    def register_header(self) -> str:
        """Column header for the register values, empty if there are none."""
        return self.header if self.header is not None else ""

    def register_values(self, bt: BitTiming) -> str:
        """The controller's register values for ``bt``, empty if unknown."""
        return self.encode(bt) if self.encode is not None else ""


def _sja1000(bt: BitTiming) -> str:
    btr0 = (((bt.brp - 1) & 0x3F) | (((bt.sjw - 1) & 0x3) << 6)) & 0xFF
    btr1 = (
        ((bt.prop_seg + bt.phase_seg1 - 1) & 0xF)
        | (((bt.phase_seg2 - 1) & 0x7) << 4)
    ) & 0xFF
    return f"0x{btr0:02x} 0x{btr1:02x}"


def _at91(bt: BitTiming) -> str:
    br = (
        (bt.phase_seg2 - 1)
        | ((bt.phase_seg1 - 1) << 4)
        | ((bt.prop_seg - 1) << 8)
        | ((bt.sjw - 1) << 12)
        | ((bt.brp - 1) << 16)
    )
    return f"0x{_u32(br):08x}"


def _flexcan(bt: BitTiming) -> str:
    ctrl = (
        ((bt.brp - 1) << 24)
        | ((bt.sjw - 1) << 22)
        | ((bt.phase_seg1 - 1) << 19)
        | ((bt.phase_seg2 - 1) << 16)
        | (bt.prop_seg - 1)
    )
    return f"0x{_u32(ctrl):08x}"


def _mcp251x(bt: BitTiming) -> str:
    cnf1 = (((bt.sjw - 1) << 6) | (bt.brp - 1)) & 0xFF
    cnf2 = (0x80 | ((bt.phase_seg1 - 1) << 3) | (bt.prop_seg - 1)) & 0xFF
    cnf3 = (bt.phase_seg2 - 1) & 0xFF
    return f"0x{cnf1:02x} 0x{cnf2:02x} 0x{cnf3:02x}"


def _mcp251xfd(bt: BitTiming) -> str:
    nbtcfg = (
        ((bt.brp - 1) << 24)
        | ((bt.prop_seg + bt.phase_seg1 - 1) << 16)
        | ((bt.phase_seg2 - 1) << 8)
        | (bt.sjw - 1)
    )
    return f"0x{_u32(nbtcfg):08x}"


def _ti_hecc(bt: BitTiming) -> str:
    can_btc = (bt.phase_seg2 - 1) & 0x7
    can_btc |= ((bt.phase_seg1 + bt.prop_seg - 1) & 0xF) << 3
    can_btc |= ((bt.sjw - 1) & 0x3) << 8
    can_btc |= ((bt.brp - 1) & 0xFF) << 16
    return f"0x{_u32(can_btc):08x}"


def _rcar_can(bt: BitTiming) -> str:
    bcr = (
        (((bt.phase_seg1 + bt.prop_seg - 1) & 0x0F) << 20)
        | (((bt.brp - 1) & 0x3FF) << 8)
        | (((bt.sjw - 1) & 0x3) << 4)
        | ((bt.phase_seg2 - 1) & 0x07)
    )
    return f"0x{_u32(bcr << 8):08x}"


def _bxcan(bt: BitTiming) -> str:
    btr = (
        ((bt.brp - 1) & 0x3FF)
        | (((bt.prop_seg + bt.phase_seg1 - 1) & 0xF) << 16)
        | (((bt.phase_seg2 - 1) & 0x7) << 20)
        | (((bt.sjw - 1) & 0x3) << 24)
    )
    return f"0x{_u32(btr):08x}"


def _c_can(bt: BitTiming) -> str:
    btr = (
        ((bt.brp - 1) & 0x3F)
        | (((bt.sjw - 1) & 0x3) << 6)
        | (((bt.prop_seg + bt.phase_seg1 - 1) & 0xF) << 8)
        | (((bt.phase_seg2 - 1) & 0x7) << 12)
    )
    brpext = ((bt.brp - 1) >> 6) & 0xF
    return f"0x{_u32(btr):04x} 0x{brpext:04x}"


def _mcan(bt: BitTiming) -> str:
    nbtp = (
        (((bt.brp - 1) & 0x1FF) << 16)
        | (((bt.sjw - 1) & 0x7F) << 25)
        | (((bt.prop_seg + bt.phase_seg1 - 1) & 0xFF) << 8)
        | ((bt.phase_seg2 - 1) & 0x7F)
    )
    return f"0x{_u32(nbtp):08x}"


def _const(name, tseg1, tseg2, sjw_max, brp, brp_inc=1) -> BitTimingConst:
    return BitTimingConst(
        name=name,
        tseg1_min=tseg1[0],
        tseg1_max=tseg1[1],
        tseg2_min=tseg2[0],
        tseg2_max=tseg2[1],
        sjw_max=sjw_max,
        brp_min=brp[0],
        brp_max=brp[1],
        brp_inc=brp_inc,
    )


CONTROLLERS: tuple[Controller, ...] = (
    Controller(
        _const("sja1000", (1, 16), (1, 8), 4, (1, 64)),
        (RefClock(8000000),),
        "BTR0 BTR1",
        _sja1000,
    ),
    Controller(
        _const("mscan", (4, 16), (2, 8), 4, (1, 64)),
        (
            RefClock(32000000),
            RefClock(33000000),
            RefClock(33300000),
            RefClock(33333333),
            RefClock(66660000, "mpc5121"),
            RefClock(66666666, "mpc5121"),
        ),
    ),
    Controller(
        _const("at91", (4, 16), (2, 8), 4, (2, 128)),
        (RefClock(99532800, "ronetix PM9263"), RefClock(100000000)),
        f"{'CAN_BR':>10}",
        _at91,
    ),
    Controller(
        _const("flexcan", (4, 16), (2, 8), 4, (1, 256)),
        (
            RefClock(24000000, "mx28"),
            RefClock(30000000, "mx6"),
            RefClock(49875000),
            RefClock(66000000),
            RefClock(66500000),
            RefClock(66666666),
            RefClock(83368421, "vybrid"),
        ),
        f"{'CAN_CTRL':>10}",
        _flexcan,
    ),
    Controller(
        _const("mcp251x", (3, 16), (2, 8), 4, (1, 64)),
        # the mcp251x runs on half of the external oscillator clock
        (
            RefClock(8000000 // 2, "8 MHz OSC"),
            RefClock(16000000 // 2, "16 MHz OSC"),
            RefClock(20000000 // 2, "20 MHz OSC"),
        ),
        "CNF1 CNF2 CNF3",
        _mcp251x,
    ),
    Controller(
        _const("mcp251xfd", (2, 256), (1, 128), 128, (1, 256)),
        (RefClock(20000000), RefClock(40000000)),
        "NBTCFG",
        _mcp251xfd,
    ),
    Controller(
        _const("ti_hecc", (1, 16), (1, 8), 4, (1, 256)),
        (RefClock(13000000),),
        f"{'CANBTC':>10}",
        _ti_hecc,
    ),
    Controller(
        _const("rcar_can", (4, 16), (2, 8), 4, (1, 1024)),
        (RefClock(65000000),),
        f"{'CiBCR':>10}",
        _rcar_can,
    ),
    Controller(
        _const("bxcan", (1, 16), (1, 8), 4, (1, 1024)),
        (RefClock(48000000),),
        f"{'CAN_BTR':>10}",
        _bxcan,
    ),
    Controller(
        _const("c_can", (2, 16), (1, 8), 4, (1, 1024)),
        (RefClock(24000000),),
        "  BTR  BRPEXT",
        _c_can,
    ),
    Controller(
        _const("mcan-v3.1+", (2, 256), (2, 128), 128, (1, 512)),
        (RefClock(40000000),),
        f"{'NBTP':>10}",
        _mcan,
    ),
)

COMMON_BITRATES: tuple[int, ...] = (
    1000000,
    800000,
    500000,
    250000,
    125000,
    100000,
    50000,
    20000,
    10000,
)


def cia_sample_point(bitrate: int) -> int:
    """The CiA recommended sample point for a bitrate, in 0.1 %."""
    if bitrate > 800000:
        return 750
    if bitrate > 500000:
        return 800
    return 875


def update_sample_point(
    btc: BitTimingConst, spt_nominal: int, tseg: int
) -> SamplePoint:
    """Split ``tseg`` into tseg1/tseg2 with the best sample point not above nominal.

    ``tseg1`` and ``tseg2`` are None when no split qualifies.
    """
    best_error = _UINT_MAX
    best_spt = 0
    best_tseg1: Optional[int] = None
    best_tseg2: Optional[int] = None
    total = tseg + CAN_CALC_SYNC_SEG

    for i in (0, 1):
        tseg2 = _u32(total - _u32(spt_nominal * total) // 1000 - i)
        tseg2 = min(max(tseg2, btc.tseg2_min), btc.tseg2_max)
        tseg1 = _u32(tseg - tseg2)
        if tseg1 > btc.tseg1_max:
            tseg1 = btc.tseg1_max
            tseg2 = _u32(tseg - tseg1)

        spt = _u32(1000 * _u32(total - tseg2)) // total
        error = _abs32(spt_nominal - spt)

        if spt <= spt_nominal and error < best_error:
            best_spt = spt
            best_error = error
            best_tseg1 = tseg1
            best_tseg2 = tseg2

    return SamplePoint(best_spt, best_tseg1, best_tseg2, best_error)


def calc_bittiming(
    clock_freq: int,
    bitrate: int,
    sample_point: int,
    sjw: int,
    btc: BitTimingConst,
) -> BitTiming:
    """Find bit timing parameters for ``bitrate`` on a ``clock_freq`` Hz clock.

    A ``sample_point`` of 0 selects the CiA recommended value. Raises
    :class:`BitTimingError` when the bitrate error exceeds 5 %.
    """
    if bitrate <= 0:
        raise ValueError("bitrate must be positive")
    if clock_freq <= 0:
        raise ValueError("clock frequency must be positive")

    spt_nominal = sample_point if sample_point else cia_sample_point(bitrate)

    best_rate_error = _UINT_MAX
    best_spt_error = _UINT_MAX
    best_tseg = 0
    best_brp = 0
    tseg1 = tseg2 = 0

    # tseg even = round down, odd = round up
    start = (btc.tseg1_max + btc.tseg2_max) * 2 + 1
    stop = (btc.tseg1_min + btc.tseg2_min) * 2
    for tseg in range(start, stop - 1, -1):
        tsegall = CAN_CALC_SYNC_SEG + tseg // 2

        divisor = _u32(tsegall * bitrate)
        if divisor == 0:
            continue
        brp = _u32(clock_freq // divisor + tseg % 2)
        brp = (brp // btc.brp_inc) * btc.brp_inc
        if brp < btc.brp_min or brp > btc.brp_max:
            continue

        rate = clock_freq // _u32(brp * tsegall)
        rate_error = _abs32(bitrate - rate)

        if rate_error > best_rate_error:
            continue

        # reset sample point error if we have a better bitrate
        if rate_error < best_rate_error:
            best_spt_error = _UINT_MAX

        found = update_sample_point(btc, spt_nominal, tseg // 2)
        if found.tseg1 is not None:
            tseg1, tseg2 = found.tseg1, found.tseg2
        if found.error > best_spt_error:
            continue

        best_spt_error = found.error
        best_rate_error = rate_error
        best_tseg = tseg // 2
        best_brp = brp

        if rate_error == 0 and found.error == 0:
            break

    if best_rate_error:
        # error in one-tenth of a percent
        error = _u32(best_rate_error * 1000) // bitrate
        if error > CAN_CALC_MAX_ERROR:
            raise BitTimingError(
                f"bitrate error {error // 10}.{error % 10}% too high"
            )
    if best_brp == 0:
        raise BitTimingError("no prescaler value fits the controller")

    found = update_sample_point(btc, spt_nominal, best_tseg)
    if found.tseg1 is not None:
        tseg1, tseg2 = found.tseg1, found.tseg2

    prop_seg = tseg1 // 2
    if not sjw or not btc.sjw_max:
        sjw = 1
    else:
        sjw = min(sjw, btc.sjw_max)
        if tseg2 < sjw:
            sjw = tseg2

    return BitTiming(
        bitrate=clock_freq // (best_brp * (CAN_CALC_SYNC_SEG + tseg1 + tseg2)),
        sample_point=found.sample_point,
        tq=_u32(best_brp * 1000 * 1000 * 1000 // clock_freq),
        prop_seg=prop_seg,
        phase_seg1=tseg1 - prop_seg,
        phase_seg2=tseg2,
        sjw=sjw,
        brp=best_brp,
    )


def fixup_bittiming(
    clock_freq: int, bt: BitTiming, btc: BitTimingConst
) -> BitTiming:
    """Complete low level parameters ``bt`` with bitrate, sample point and tq.

    When ``bt.brp`` is 0 it is derived from ``bt.tq``. Raises
    :class:`BitTimingError` for values outside the controller's range.
    """
    if clock_freq <= 0:
        raise ValueError("clock frequency must be positive")

    tseg1 = bt.prop_seg + bt.phase_seg1
    sjw = bt.sjw or 1
    if (
        sjw > btc.sjw_max
        or tseg1 < btc.tseg1_min
        or tseg1 > btc.tseg1_max
        or bt.phase_seg2 < btc.tseg2_min
        or bt.phase_seg2 > btc.tseg2_max
    ):
        raise BitTimingError("parameters exceed the controller's range")

    brp = bt.brp
    if not brp:
        brp64 = clock_freq * bt.tq
        if btc.brp_inc > 1:
            brp64 //= btc.brp_inc
        brp64 = (brp64 + 500000000 - 1) // 1000000000  # the practicable BRP
        if btc.brp_inc > 1:
            brp64 *= btc.brp_inc
        brp = _u32(brp64)

    # the product is formed in 32 bits before the division
    tq = _u32(brp * 1000 * 1000 * 1000) // clock_freq

    if brp < btc.brp_min or brp > btc.brp_max:
        raise BitTimingError(f"prescaler {brp} outside the controller's range")

    alltseg = CAN_CALC_SYNC_SEG + bt.prop_seg + bt.phase_seg1 + bt.phase_seg2
    return replace(
        bt,
        sjw=sjw,
        brp=brp,
        tq=_u32(tq),
        bitrate=clock_freq // (brp * alltseg),
        sample_point=((CAN_CALC_SYNC_SEG + tseg1) * 1000) // alltseg,
    )


def find_controller(name: str) -> Controller:
    """Look up a controller by name; raises KeyError if it is unknown."""
    for controller in CONTROLLERS:
        if controller.name == name:
            return controller
    raise KeyError(name)