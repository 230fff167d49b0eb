"""Report CAN bit timing parameters for the known CAN controllers."""

from __future__ import annotations

import getopt
import os
import re
import sys
from typing import Optional, Sequence

from cankit.bittiming import (
    COMMON_BITRATES,
    CONTROLLERS,
    BitTiming,
    BitTimingError,
    Controller,
    RefClock,
    calc_bittiming,
    cia_sample_point,
    fixup_bittiming,
)

_LONG_OPTIONS = [
    "tq=",
    "prop-seg=",
    "phase-seg1=",
    "phase-seg2=",
    "sjw=",
    "brp=",
    "tseg1=",
    "tseg2=",
]

_NUMBER = re.compile(r"\s*([+-]?[0-9]+)")


def _usage(prog: str) -> str:
    return (
        f"{prog} - calculate CAN bit timing parameters.\n"
        f"Usage: {prog} [options] [<CAN-contoller-name>]\n"
        "Options:\n"
        "\t-q             don't print header line\n"
        "\t-l             list all support CAN controller names\n"
        "\t-b <bitrate>   bit-rate in bits/sec\n"
        "\t-s <samp_pt>   sample-point in one-tenth of a percent\n"
        "\t               or 0 for CIA recommended sample points\n"
        "\t-c <clock>     real CAN system clock in Hz\n"
        "\n"
        "Or supply low level bit timing parameters to decode them:\n"
        "\n"
        "\t--prop-seg     Propagation segment in TQs\n"
        "\t--phase-seg1   Phase buffer segment 1 in TQs\n"
        "\t--phase-seg2   Phase buffer segment 2 in TQs\n"
        "\t--sjw          Synchronisation jump width in TQs\n"
        "\t--brp          Bit-rate prescaler\n"
        "\t--tseg1        Time segment 1 = prop-seg + phase-seg1\n"
        "\t--tseg2        Time segment 2 = phase_seg2\n"
    )


def _to_int(text: str) -> int:
    """Leading decimal number of ``text`` as an unsigned 32-bit value, 0 if none."""
    match = _NUMBER.match(text)
    return int(match.group(1)) & 0xFFFFFFFF if match else 0


def _percent(value: float) -> str:
    return "≥100% " if value > 99.9 else f"{value:4.1f}% "


def list_controllers() -> list[str]:
    """Names of all known CAN controllers, in table order."""
    return [controller.name for controller in CONTROLLERS]


def format_bit_timing(
    controller: Controller,
    ref_clock: RefClock,
    bitrate_nominal: int,
    spt_nominal: int = 0,
    ref_bt: Optional[BitTiming] = None,
    quiet: bool = False,
) -> str:
    """One report line for ``bitrate_nominal``, preceded by a header unless quiet.

    With ``ref_bt`` the given low level parameters are decoded; otherwise
    the best parameters for the bitrate are searched for.
    """
    if bitrate_nominal <= 0:
        raise ValueError("nominal bitrate must be positive")

    parts = []
    if not quiet:
        label = controller.name
        if ref_clock.name is not None:
            label += f" ({ref_clock.name})"
        parts.append(
            f"Bit timing parameters for {label} with "
            f"{ref_clock.clk / 1000000.0:.6f} MHz ref clock\n"
            "nominal                                 real Bitrt   nom  real SampP\n"
            "Bitrate TQ[ns] PrS PhS1 PhS2 SJW BRP Bitrate Error SampP SampP Error "
            f"{controller.register_header()}\n"
        )

    if ref_bt is not None:
        try:
            bt = fixup_bittiming(ref_clock.clk, ref_bt, controller.const)
        except BitTimingError:
            parts.append(
                f"{bitrate_nominal:7d} ***parameters exceed controller's range***\n"
            )
            return "".join(parts)
    else:
        try:
            bt = calc_bittiming(
                ref_clock.clk, bitrate_nominal, spt_nominal, 0, controller.const
            )
        except BitTimingError:
            parts.append(f"{bitrate_nominal:7d} ***bitrate not possible***\n")
            return "".join(parts)

    spt = spt_nominal or cia_sample_point(bitrate_nominal)
    rate_error = abs(bitrate_nominal - bt.bitrate)
    spt_error = abs(spt - bt.sample_point)

    parts.append(
        f"{bitrate_nominal:7d} "
        f"{bt.tq:6d} {bt.prop_seg:3d} {bt.phase_seg1:4d} {bt.phase_seg2:4d} "
        f"{bt.sjw:3d} {bt.brp:3d} "
        f"{bt.bitrate:7d} "
    )
    parts.append(_percent(100.0 * rate_error / bitrate_nominal))
    parts.append(f"{spt / 10.0:4.1f}% {bt.sample_point / 10.0:4.1f}% ")
    parts.append(_percent(100.0 * spt_error / spt))
    parts.append(controller.register_values(bt))
    parts.append("\n")
    return "".join(parts)


def calc_report(
    name: Optional[str] = None,
    ref_bt: Optional[BitTiming] = None,
    bitrate_nominal: int = 0,
    spt_nominal: int = 0,
    ref_clock: Optional[RefClock] = None,
    quiet: bool = False,
) -> str:
    """The full report for one controller, or for all when ``name`` is None.

    A ``bitrate_nominal`` of 0 reports the common bitrates. Raises KeyError
    for an unknown controller name.
    """
    controllers = [c for c in CONTROLLERS if name is None or c.name == name]
    if not controllers:
        raise KeyError(name)

    parts = []
    for controller in controllers:
        clocks = (ref_clock,) if ref_clock is not None else controller.ref_clocks
        for clock in clocks:
            if not clock.clk:
                break
            if bitrate_nominal:
                parts.append(
                    format_bit_timing(
                        controller, clock, bitrate_nominal, spt_nominal, ref_bt, quiet
                    )
                )
            else:
                for index, bitrate in enumerate(COMMON_BITRATES):
                    parts.append(
                        format_bit_timing(
                            controller,
                            clock,
                            bitrate,
                            spt_nominal,
                            ref_bt,
                            bool(index),
                        )
                    )
            parts.append("\n")
    return "".join(parts)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Command line entry point; returns the exit status."""
    args = list(sys.argv[1:] if argv is None else argv)
    prog = os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else "bitcalc"

    try:
        opts, rest = getopt.gnu_getopt(args, "b:c:lqs:?", _LONG_OPTIONS)
    except getopt.GetoptError:
        sys.stdout.write(_usage(prog))
        return 0

    bitrate_nominal = 0
    spt_nominal = 0
    clock = 0
    quiet = False
    show_list = False
    bt = BitTiming()

    for opt, value in opts:
        if opt == "-b":
            bitrate_nominal = _to_int(value)
        elif opt == "-c":
            clock = _to_int(value)
        elif opt == "-l":
            show_list = True
        elif opt == "-q":
            quiet = True
        elif opt == "-s":
            spt_nominal = _to_int(value)
        elif opt == "-?":
            sys.stdout.write(_usage(prog))
            return 0
        elif opt == "--tq":
            bt.tq = _to_int(value)
        elif opt == "--prop-seg":
            bt.prop_seg = _to_int(value)
        elif opt == "--phase-seg1":
            bt.phase_seg1 = _to_int(value)
        elif opt in ("--phase-seg2", "--tseg2"):
            bt.phase_seg2 = _to_int(value)
        elif opt == "--sjw":
            bt.sjw = _to_int(value)
        elif opt == "--brp":
            bt.brp = _to_int(value)
        elif opt == "--tseg1":
            tseg1 = _to_int(value)
            bt.prop_seg = tseg1 // 2
            bt.phase_seg1 = tseg1 - bt.prop_seg

    if len(rest) > 1:
        sys.stdout.write(_usage(prog))
        return 1
    name = rest[0] if rest else None

    if show_list:
        for controller_name in list_controllers():
            print(controller_name)
        return 0

    if spt_nominal and (spt_nominal >= 1000 or spt_nominal < 100):
        sys.stdout.write(_usage(prog))
        return 1

    try:
        report = calc_report(
            name,
            bt if bt.prop_seg else None,
            bitrate_nominal,
            spt_nominal,
            RefClock(clock, "cmd-line") if clock else None,
            quiet,
        )
    except KeyError:
        print(f"error: unknown CAN controller '{name}', try one of these:\n")
        for controller_name in list_controllers():
            print(controller_name)
        return 1

    sys.stdout.write(report)
    return 0


if __name__ == "__main__":
    sys.exit(main())