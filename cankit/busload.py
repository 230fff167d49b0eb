"""Monitor the load of one or more CAN buses.

Each interface is given as ``<ifname>@<bitrate>[,<dbitrate>]``. Once a
second a line per interface reports the received frames, the bits they
used on the wire, their payload bits, the bits sent at the data bitrate
and the resulting bus load. Because stuff bits are estimated, the load
may exceed 100 %.
"""

from __future__ import annotations

import getopt
import re
import select
import signal
import socket
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from cankit.framelen import (
    CAN_MTU,
    CANFD_MTU,
    CanFrame,
    CflMode,
    dbitrate_length,
    frame_length,
    unpack_frame,
)

PROG = "busload"

MAXSOCK = 16  # max. number of CAN interfaces given on the command line
PERCENTRES = 5  # resolution in percent of the bargraph
NUMBAR = 100 // PERCENTRES  # number of bargraph elements
IFNAMSIZ = 16
MAX_BITRATE = 1000000
# longest accepted "<ifname>@<bitrate>" argument, exclusive
_MAX_SPEC_LEN = IFNAMSIZ + len("@1000000") + 2

CSR_HOME = "\x1b[H"
CLR_SCREEN = "\x1b[2J"
FGRED = "\x1b[31m"
FGBLUE = "\x1b[34m"
ATTRESET = "\x1b[0m"

_MODE_TEXT = {
    CflMode.NO_BITSTUFFING: "(ignore bitstuffing)",
    CflMode.WORSTCASE: "(worst case bitstuffing)",
    CflMode.EXACT: "(exact bitstuffing)",
}

_NUMBER = re.compile(r"\s*([+-]?)(0[xX][0-9a-fA-F]+|0[0-7]*|[1-9][0-9]*)")


@dataclass
class BusStats:
    """Counters of one monitored CAN interface for the current interval."""

    devname: str
    bitrate: int
    dbitrate: int = 0
    bitrate_text: str = ""
    recv_frames: int = 0
    recv_bits_total: int = 0
    recv_bits_payload: int = 0
    recv_bits_dbitrate: int = 0

    def __post_init__(self) -> None:
        if not self.dbitrate:
            self.dbitrate = self.bitrate
        if not self.bitrate_text:
            self.bitrate_text = str(self.bitrate)

    def add_frame(self, frame: CanFrame, mode: CflMode, mtu: int) -> None:
        """Account for one received frame read with ``mtu`` bytes."""
        self.recv_frames += 1
        self.recv_bits_payload += frame.length * 8
        # frames are read into a CAN FD sized buffer
        self.recv_bits_dbitrate += dbitrate_length(frame, mode, CANFD_MTU)
        self.recv_bits_total += frame_length(frame, mode, mtu)

    def load_percent(self) -> int:
        """Bus load of the interval in percent (may exceed 100)."""
        if not self.bitrate:
            return 0
        arbitration = self.recv_bits_total - self.recv_bits_dbitrate
        percent = (arbitration * 100) // self.bitrate
        if self.dbitrate:
            percent += (self.recv_bits_dbitrate * 100) // self.dbitrate
        return percent

    def reset(self) -> None:
        """Clear the counters for the next interval."""
        self.recv_frames = 0
        self.recv_bits_total = 0
        self.recv_bits_payload = 0
        self.recv_bits_dbitrate = 0


def _strtol(text: str) -> tuple[int, str]:
    """Leading integer of ``text`` with C base detection, and the rest."""
    match = _NUMBER.match(text)
    if not match:
        return 0, text
    sign, digits = match.groups()
    if digits[:2].lower() == "0x":
        value = int(digits[2:], 16)
    elif digits.startswith("0"):
        value = int(digits, 8)
    else:
        value = int(digits)
    return (-value if sign == "-" else value), text[match.end():]


def parse_interface_spec(spec: str) -> BusStats:
    """Parse ``<ifname>@<bitrate>[,<dbitrate>]``; raises ValueError if invalid."""
    if len(spec) >= _MAX_SPEC_LEN:
        raise ValueError(f"name of CAN device '{spec}' is too long!")
    name, sep, rates = spec.partition("@")
    if not sep:
        raise ValueError(f"missing '@<bitrate>' in '{spec}'")
    if len(name) >= IFNAMSIZ:
        raise ValueError(f"name of CAN device '{spec}' is too long!")

    bitrate, rest = _strtol(rates)
    if rest.startswith(","):
        dbitrate, _ = _strtol(rest[1:])
    else:
        dbitrate = bitrate

    if bitrate <= 0 or bitrate > MAX_BITRATE:
        raise ValueError(f"invalid bitrate for CAN device '{spec}'!")
    if dbitrate <= 0:
        raise ValueError(f"invalid data bitrate for CAN device '{spec}'!")

    return BusStats(name, bitrate, dbitrate, rates)


def render_report(
    stats: Sequence[BusStats],
    mode: CflMode = CflMode.WORSTCASE,
    timestamp: bool = False,
    color: bool = False,
    bargraph: bool = False,
    now: Optional[datetime] = None,
) -> str:
    """The report of one interval for all interfaces; counters are untouched."""
    lines = []
    if timestamp:
        moment = now if now is not None else datetime.now()
        text = _MODE_TEXT.get(CflMode(mode), "(unknown bitstuffing)")
        lines.append(f"{PROG} {moment:%Y-%m-%d %H:%M:%S} {text}\n")

    name_width = max((len(s.devname) for s in stats), default=0)
    rate_width = max((len(s.bitrate_text) for s in stats), default=0)

    for index, entry in enumerate(stats):
        parts = []
        if color:
            parts.append(FGRED if index % 2 else FGBLUE)

        percent = entry.load_percent()
        parts.append(
            f" {entry.devname.rjust(name_width)}@{str(entry.bitrate).ljust(rate_width)}"
            f" {entry.recv_frames:5d} {entry.recv_bits_total:7d}"
            f" {entry.recv_bits_payload:6d} {entry.recv_bits_dbitrate:6d}"
            f" {percent:3d}%"
        )

        if bargraph:
            filled = min(percent, 100) // PERCENTRES
            parts.append(" |" + "X" * filled + "." * (NUMBAR - filled) + "|")

        if color:
            parts.append(ATTRESET)
        parts.append("\n")
        lines.append("".join(parts))

    lines.append("\n")
    return "".join(lines)


def _usage() -> str:
    return (
        f"{PROG} - monitor CAN bus load.\n"
        f"\nUsage: {PROG} [options] <CAN interface>+\n"
        f"  (use CTRL-C to terminate {PROG})\n\n"
        "Options:\n"
        "         -t  (show current time on the first line)\n"
        "         -c  (colorize lines)\n"
        f"         -b  (show bargraph in {PERCENTRES}% resolution)\n"
        "         -r  (redraw the terminal - similar to top)\n"
        "         -i  (ignore bitstuffing in bandwidth calculation)\n"
        "         -e  (exact calculation of stuffed bits)\n"
        "\n"
        f"Up to {MAXSOCK} CAN interfaces with mandatory bitrate can be specified on the \n"
        "commandline in the form: <ifname>@<bitrate>[,<dbitrate>]\n\n"
        "The bitrate is mandatory as it is needed to know the CAN bus bitrate to\n"
        "calculate the bus load percentage based on the received CAN frames.\n"
        "Due to the bitstuffing estimation the calculated busload may exceed 100%.\n"
        "For each given interface the data is presented in one line which contains:\n\n"
        "(interface) (received CAN frames) (used bits total) (used bits for payload)\n"
        "\nExamples:\n"
        f"\nuser$> {PROG} can0@100000 can1@500000 can2@500000 can3@500000 -r -t -b -c\n\n"
    )


def _open_socket(ifname: str) -> socket.socket:
    sock = socket.socket(socket.AF_CAN, socket.SOCK_RAW, socket.CAN_RAW)
    try:
        sock.setsockopt(socket.SOL_CAN_RAW, socket.CAN_RAW_FD_FRAMES, 1)
    except OSError:
        pass  # classic CAN only
    sock.bind((ifname,))
    return sock


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Command line entry point; returns the exit status."""
    args = list(sys.argv[1:] if argv is None else argv)
    try:
        opts, specs = getopt.getopt(args, "rtbcieh?")
    except getopt.GetoptError:
        sys.stderr.write(_usage())
        return 1

    redraw = timestamp = color = bargraph = False
    mode = CflMode.WORSTCASE
    for opt, _ in opts:
        if opt == "-r":
            redraw = True
        elif opt == "-t":
            timestamp = True
        elif opt == "-b":
            bargraph = True
        elif opt == "-c":
            color = True
        elif opt == "-i":
            mode = CflMode.NO_BITSTUFFING
        elif opt == "-e":
            mode = CflMode.EXACT
        else:
            sys.stderr.write(_usage())
            return 1

    if not specs:
        sys.stderr.write(_usage())
        return 0
    if len(specs) > MAXSOCK:
        print(f"More than {MAXSOCK} CAN devices given on commandline!")
        return 1

    stats = []
    for spec in specs:
        try:
            stats.append(parse_interface_spec(spec))
        except ValueError as exc:
            if "@" not in spec:
                sys.stderr.write(_usage())
            else:
                print(exc)
            return 1

    # SIGTERM and SIGHUP end the program like CTRL-C does
    for signum in (signal.SIGTERM, signal.SIGHUP):
        signal.signal(signum, signal.default_int_handler)

    sockets = []
    try:
        for entry in stats:
            try:
                sockets.append(_open_socket(entry.devname))
            except OSError as exc:
                print(f"{entry.devname}: {exc}", file=sys.stderr)
                return 1

        if redraw:
            sys.stdout.write(CLR_SCREEN)
        deadline = time.monotonic() + 1.0
        by_socket = dict(zip(sockets, stats))

        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                if redraw:
                    sys.stdout.write(CSR_HOME)
                sys.stdout.write(
                    render_report(stats, mode, timestamp, color, bargraph)
                )
                sys.stdout.flush()
                for entry in stats:
                    entry.reset()
                deadline += 1.0
                continue

            readable, _, _ = select.select(sockets, [], [], remaining)
            for sock in readable:
                raw = sock.recv(CANFD_MTU)
                if len(raw) < CAN_MTU:
                    print("read: incomplete CAN frame", file=sys.stderr)
                    return 1
                try:
                    frame = unpack_frame(raw)
                except ValueError:
                    print("read: incomplete CAN frame", file=sys.stderr)
                    return 1
                by_socket[sock].add_frame(frame, mode, len(raw))
    except KeyboardInterrupt:
        return 0
    finally:
        for sock in sockets:
            sock.close()


if __name__ == "__main__":
    sys.exit(main())