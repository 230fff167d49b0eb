"""Full-duplex CAN test: a device under test (DUT) part and a host part.

The host (generator) sends "ping" frames with an incrementing payload and
checks both its own looped-back frames and the "pong" frames that the DUT
sends back. The DUT echoes every received frame with the CAN id and all
data bytes incremented.
"""

from __future__ import annotations

import errno
import getopt
import os
import re
import signal
import socket
import struct
import sys
import time
from dataclasses import dataclass
from typing import Optional, Sequence

from cankit.framelen import (
    CAN_EFF_FLAG,
    CAN_MTU,
    CAN_RTR_FLAG,
    CAN_SFF_MASK,
    CanFrame,
    unpack_frame,
)

CAN_MSG_ID_PING = 0x77
CAN_MSG_ID_PONG = 0x78
CAN_MSG_LEN = 8
CAN_MSG_COUNT = 50
CAN_MSG_WAIT = 27

PF_CAN = 29
SOCK_RAW = 3
CAN_RAW = 1

_SOL_CAN_RAW = 101
_CAN_RAW_FILTER = 1
_CAN_RAW_RECV_OWN_MSGS = 4
_FILTER = struct.Struct("=II")

_HEX = re.compile(r"\s*(?:0[xX])?([0-9a-fA-F]+)")
_DEC = re.compile(r"\s*([+-]?[0-9]+)")


class EchoError(RuntimeError):
    """A frame could not be sent or received completely."""


@dataclass
class EchoConfig:
    """Settings shared by the DUT and the generator part."""

    ping_id: int = CAN_MSG_ID_PING
    pong_id: Optional[int] = None
    inflight_count: int = CAN_MSG_COUNT
    test_loops: int = 0
    verbose: int = 0

    def __post_init__(self) -> None:
        if self.inflight_count < 1:
            raise ValueError("at least one frame must be in flight")

    @property
    def has_pong_id(self) -> bool:
        return self.pong_id is not None

    @property
    def expected_pong_id(self) -> int:
        """The id of frames sent back by the DUT."""
        return self.pong_id if self.pong_id is not None else self.ping_id + 1


def format_frame(can_id: int, data: bytes, inc: int = 0) -> str:
    """One frame as text, with ``inc`` added to every data byte."""
    text = f"{can_id:04x}: "
    if can_id & CAN_RTR_FLAG:
        return text + "remote request"
    text += f"[{len(data)}]"
    return text + "".join(f" {(byte + inc) & 0xFF:02x}" for byte in data)


def _compare_lines(
    expected_id: int, expected: CanFrame, received: CanFrame, inc: int
) -> list[str]:
    return [
        "expected: " + format_frame(expected_id, expected.data, inc),
        "received: " + format_frame(received.can_id, received.data, 0),
    ]


def check_frame(frame: CanFrame, config: EchoConfig) -> list[str]:
    """Problems of a frame received by the DUT; empty if it is as expected."""
    problems = []
    if frame.can_id != config.ping_id:
        problems.append(f"Unexpected Message ID 0x{frame.can_id:04x}!")
    if frame.length != CAN_MSG_LEN:
        problems.append(f"Unexpected Message length {frame.length}!")
    data = frame.data
    for previous, current in zip(data, data[1:]):
        if current != (previous + 1) & 0xFF:
            problems.append("Frame inconsistent!")
            problems.append(format_frame(frame.can_id, data, 0))
            break
    return problems


def increment_frame(frame: CanFrame, config: EchoConfig) -> CanFrame:
    """The DUT's answer: id moved to the pong id and all data bytes plus one."""
    can_id = config.pong_id if config.has_pong_id else frame.can_id + 1
    data = bytes((byte + 1) & 0xFF for byte in frame.data)
    return CanFrame(can_id, data, frame.flags, frame.len8_dlc)


def compare_frame(
    expected: CanFrame, received: CanFrame, inc: int, config: EchoConfig
) -> list[str]:
    """Differences between a sent frame and what came back; empty if none.

    With ``inc`` set the received frame is the DUT's answer, otherwise the
    host's own looped-back frame.
    """
    expected_id = config.expected_pong_id if inc else config.ping_id
    if received.can_id != expected_id:
        return ["Message ID mismatch!"] + _compare_lines(
            expected_id, expected, received, inc
        )
    if received.length != expected.length:
        return ["Message length mismatch!"] + _compare_lines(
            expected_id, expected, received, inc
        )
    lines = []
    for index, (sent, got) in enumerate(zip(expected.data, received.data)):
        if got != (sent + inc) & 0xFF:
            lines.append(f"Databyte {index:x} mismatch!")
            lines.extend(_compare_lines(expected_id, expected, received, inc))
    return lines


def _echo_progress(value: int) -> None:
    if value == 0xFF:
        print(".", end="", flush=True)


def _recv_frame(sock) -> Optional[CanFrame]:
    """The next frame, or None once the socket has no more to deliver."""
    raw = sock.recv(CAN_MTU)
    if not raw:
        return None
    if len(raw) != CAN_MTU:
        raise EchoError(f"recv returned {len(raw)}")
    return unpack_frame(raw)


def _send_frame(sock, frame: CanFrame, config: EchoConfig) -> None:
    raw = frame.pack(CAN_MTU)
    while True:
        try:
            sent = sock.send(raw)
        except OSError as exc:
            if exc.errno != errno.ENOBUFS:
                raise
            if config.verbose:
                print("N", end="", flush=True)
            continue
        if sent != len(raw):
            raise EchoError(f"send returned {sent}")
        return


def run_dut(sock, config: EchoConfig) -> int:
    """Echo every received frame incremented; returns the number echoed.

    Runs until the socket delivers no more data.
    """
    echoed = 0
    since_pause = 0
    while True:
        frame = _recv_frame(sock)
        if frame is None:
            return echoed
        since_pause += 1
        if config.verbose == 1:
            if frame.data:
                _echo_progress(frame.data[0])
        elif config.verbose > 1:
            print(format_frame(frame.can_id, frame.data, 0))

        for line in check_frame(frame, config):
            print(line)
        _send_frame(sock, increment_frame(frame, config), config)
        echoed += 1

        # force interlacing of the frames sent by DUT and host
        if since_pause == CAN_MSG_WAIT:
            since_pause = 0
            time.sleep(0.003)


def run_generator(sock, config: EchoConfig) -> int:
    """Send ping frames and check the echoes; returns the completed loops.

    Stops on the first mismatch, after ``config.test_loops`` loops when
    that is set, or when the socket delivers no more data.
    """
    count = config.inflight_count
    tx_frames: list[Optional[CanFrame]] = [None] * count
    recv_tx = [False] * count
    counter = 0
    send_pos = recv_rx_pos = recv_tx_pos = 0
    unprocessed = loops = 0
    running = True

    while running:
        if unprocessed < count:
            frame = CanFrame(
                config.ping_id,
                bytes((counter + i) & 0xFF for i in range(CAN_MSG_LEN)),
            )
            tx_frames[send_pos] = frame
            recv_tx[send_pos] = False
            _send_frame(sock, frame, config)

            send_pos = (send_pos + 1) % count
            unprocessed += 1
            if config.verbose == 1:
                _echo_progress(counter)
            counter = (counter + 1) & 0xFF
            time.sleep(0.003 if counter % 33 == 0 else 0.001)
            continue

        received = _recv_frame(sock)
        if received is None:
            break
        if config.verbose > 1:
            print(format_frame(received.can_id, received.data, 0))

        if received.can_id == config.ping_id:
            # our own frame looped back
            problems = compare_frame(tx_frames[recv_tx_pos], received, 0, config)
            for line in problems:
                print(line)
            if problems:
                running = False
            recv_tx[recv_tx_pos] = True
            recv_tx_pos = (recv_tx_pos + 1) % count
            continue

        if not recv_tx[recv_rx_pos]:
            print("RX before TX!")
            print(format_frame(received.can_id, received.data, 0))
            running = False
        problems = compare_frame(tx_frames[recv_rx_pos], received, 1, config)
        for line in problems:
            print(line)
        if problems:
            running = False
        recv_rx_pos = (recv_rx_pos + 1) % count

        loops += 1
        if config.test_loops and loops >= config.test_loops:
            break
        unprocessed -= 1

    print(f"\nTest messages sent and received: {loops}")
    return loops


def _usage(prog: str) -> str:
    return (
        f"{prog} - Full-duplex test program (DUT and host part).\n"
        f"Usage: {prog} [options] <can-interface>\n"
        "\n"
        "Options:\n"
        f"         -f COUNT (number of frames in flight, default: {CAN_MSG_COUNT})\n"
        "         -g       (generate messages)\n"
        "         -i ID    (CAN ID to use for frames to DUT (ping), "
        f"default {CAN_MSG_ID_PING:x})\n"
        "         -l COUNT (test loop count)\n"
        "         -o ID    (CAN ID to use for frames to host (pong), "
        f"default {CAN_MSG_ID_PONG:x})\n"
        "         -v       (low verbosity)\n"
        "         -vv      (high verbosity)\n"
        "         -x       (ignore other frames on bus)\n"
        "\n"
        "With the option '-g' CAN messages are generated and checked\n"
        "on <can-interface>, otherwise all messages received on the\n"
        "<can-interface> are sent back incrementing the CAN id and\n"
        "all data bytes. The program can be aborted with ^C.\n"
        "\n"
        "Examples:\n"
        "\ton DUT:\n"
        f"{prog} -v can0\n"
        "\ton Host:\n"
        f"{prog} -g -v can2\n"
    )


def _hex(text: str) -> int:
    match = _HEX.match(text)
    return int(match.group(1), 16) if match else 0


def _dec(text: str) -> int:
    match = _DEC.match(text)
    return int(match.group(1)) if match else 0


def _open_socket(ifname: str, generate: bool, config: EchoConfig, filtered: bool):
    sock = socket.socket(socket.AF_CAN, socket.SOCK_RAW, socket.CAN_RAW)
    try:
        if generate:
            sock.setsockopt(_SOL_CAN_RAW, _CAN_RAW_RECV_OWN_MSGS, 1)
        sock.bind((ifname,))
        if filtered:
            mask = CAN_EFF_FLAG | CAN_RTR_FLAG | CAN_SFF_MASK
            ids = [config.ping_id, config.expected_pong_id][: 1 + int(generate)]
            sock.setsockopt(
                _SOL_CAN_RAW,
                _CAN_RAW_FILTER,
                b"".join(_FILTER.pack(can_id, mask) for can_id in ids),
            )
    except OSError:
        sock.close()
        raise
    return sock


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Command line entry point; returns the exit status."""
    args = list(sys.argv[1:] if argv is None else argv)
    prog = os.path.basename(sys.argv[0]) if sys.argv and sys.argv[0] else "fdtest"

    try:
        opts, rest = getopt.getopt(args, "f:gi:l:o:vx?")
    except getopt.GetoptError:
        sys.stderr.write(_usage(prog))
        return 1

    generate = filtered = False
    inflight = CAN_MSG_COUNT
    ping_id = CAN_MSG_ID_PING
    pong_id: Optional[int] = None
    loops = 0
    verbose = 0
    for opt, value in opts:
        if opt == "-f":
            inflight = _dec(value)
        elif opt == "-g":
            generate = True
        elif opt == "-i":
            ping_id = _hex(value) & CAN_SFF_MASK
        elif opt == "-l":
            loops = _dec(value)
        elif opt == "-o":
            pong_id = _hex(value) & CAN_SFF_MASK
        elif opt == "-v":
            verbose += 1
        elif opt == "-x":
            filtered = True
        else:
            sys.stderr.write(_usage(prog))
            return 1

    if len(rest) != 1:
        sys.stderr.write(_usage(prog))
        return 1
    try:
        config = EchoConfig(ping_id, pong_id, inflight, loops, verbose)
    except ValueError:
        sys.stderr.write(_usage(prog))
        return 1
    ifname = rest[0]

    print(
        f"interface = {ifname}, family = {PF_CAN}, "
        f"type = {SOCK_RAW}, proto = {CAN_RAW}"
    )

    # SIGTERM and SIGHUP end the test like CTRL-C does
    for signum in (signal.SIGTERM, signal.SIGHUP):
        signal.signal(signum, signal.default_int_handler)

    try:
        sock = _open_socket(ifname, generate, config, filtered)
    except OSError as exc:
        print(f"{ifname}: {exc}", file=sys.stderr)
        return 1

    status = 0
    with sock:
        try:
            if generate:
                run_generator(sock, config)
            else:
                run_dut(sock, config)
        except KeyboardInterrupt:
            pass
        except (EchoError, OSError) as exc:
            print(exc, file=sys.stderr)
            status = 1

    if verbose:
        print("Exiting...")
    return status


if __name__ == "__main__":
    sys.exit(main())