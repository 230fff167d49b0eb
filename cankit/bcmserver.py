"""TCP server translating ASCII commands into CAN broadcast manager jobs.

Clients send messages of the form::

    < interface command ival_s ival_us can_id can_dlc [data]* >

where ``can_id`` and the data bytes are hexadecimal. The commands 'A'dd,
'U'pdate, 'D'elete and 'S'end drive transmissions; 'R'eceive setup,
'F'ilter setup and 'X' (delete) drive reception. Received frames are sent
back as ``< interface can_id can_dlc [data]* >`` followed by a NUL byte.
Closing the connection ends all of its cyclic transmissions.
"""

from __future__ import annotations

import argparse
import re
import select
import socket
import struct
import sys
import threading
import time
from dataclasses import dataclass
from typing import Optional, Sequence

from cankit.framelen import CAN_MAX_DLEN, CAN_MTU, CanFrame

PORT = 28600
MAXLEN = 100
IFNAMSIZ = 16

TX_SETUP = 1
TX_DELETE = 2
TX_READ = 3
TX_SEND = 4
RX_SETUP = 5
RX_DELETE = 6
RX_READ = 7

SETTIMER = 0x0001
STARTTIMER = 0x0002
RX_FILTER_ID = 0x0020

# opcode, flags, count, ival1 (sec, usec), ival2 (sec, usec), can_id, nframes
BCM_HEAD = struct.Struct("@3I4l2I")
FRAME_OFFSET = (BCM_HEAD.size + 7) // 8 * 8
BCM_MSG_SIZE = FRAME_OFFSET + CAN_MTU

_COMMANDS = {
    "S": (TX_SEND, 0),
    "A": (TX_SETUP, SETTIMER | STARTTIMER),
    "U": (TX_SETUP, 0),
    "D": (TX_DELETE, 0),
    "R": (RX_SETUP, SETTIMER),
    "F": (RX_SETUP, RX_FILTER_ID | SETTIMER),
    "X": (RX_DELETE, 0),
}

_DECIMAL = re.compile(r"[0-9]+")
_HEX = re.compile(r"(?:0[xX])?[0-9a-fA-F]+")


class CommandError(ValueError):
    """A client message that does not form a valid command."""


class UnknownCommandError(CommandError):
    """A well formed message with an unknown command letter."""


@dataclass(frozen=True)
class BcmCommand:
    """One parsed client command."""

    ifname: str
    command: str
    ival_sec: int
    ival_usec: int
    can_id: int
    data: bytes

    @property
    def opcode(self) -> int:
        return self._entry()[0]

    @property
    def flags(self) -> int:
        return self._entry()[1]

    def _entry(self) -> tuple[int, int]:
        try:
            return _COMMANDS[self.command]
        except KeyError:
            raise UnknownCommandError(
                f"unknown command '{self.command}'."
            ) from None

    def to_bcm_msg(self) -> bytes:
        """The broadcast manager message: header with a single frame."""
        opcode, flags = self._entry()
        can_id = self.can_id & 0xFFFFFFFF
        head = BCM_HEAD.pack(
            opcode, flags, 0, 0, 0, self.ival_sec, self.ival_usec, can_id, 1
        )
        frame = CanFrame(can_id, self.data).pack(CAN_MTU)
        return head + bytes(FRAME_OFFSET - len(head)) + frame


class MessageAssembler:
    """Collects bytes from the client into ``<...>`` delimited messages."""

    def __init__(self) -> None:
        self._buf = bytearray()

    def feed(self, byte) -> Optional[str]:
        """Take one byte; return the complete message once '>' arrives."""
        if isinstance(byte, (bytes, bytearray)):
            if len(byte) != 1:
                raise ValueError("feed takes exactly one byte")
            byte = byte[0]
        if not self._buf:
            if byte == ord("<"):
                self._buf.append(byte)
            return None
        if len(self._buf) > MAXLEN - 2:
            self._buf.clear()
            return None
        self._buf.append(byte)
        if byte != ord(">"):
            return None
        message = self._buf.decode("latin-1")
        self._buf.clear()
        return message


def _as_name(token: str) -> Optional[str]:
    return token if len(token) <= IFNAMSIZ - 1 else None


def _as_char(token: str) -> Optional[str]:
    return token if len(token) == 1 else None


def _as_decimal(token: str) -> Optional[int]:
    return int(token) if _DECIMAL.fullmatch(token) else None


def _as_u8_decimal(token: str) -> Optional[int]:
    value = _as_decimal(token)
    return None if value is None else value & 0xFF


def _as_hex32(token: str) -> Optional[int]:
    return int(token, 16) & 0xFFFFFFFF if _HEX.fullmatch(token) else None


def _as_hex8(token: str) -> Optional[int]:
    return int(token, 16) & 0xFF if _HEX.fullmatch(token) else None


_CONVERTERS = (
    [_as_name, _as_char, _as_decimal, _as_decimal, _as_hex32, _as_u8_decimal]
    + [_as_hex8] * CAN_MAX_DLEN
)


def parse_command(text: str) -> BcmCommand:
    """Parse a ``< ... >`` client message.

    Raises :class:`CommandError` for malformed messages and
    :class:`UnknownCommandError` for an unknown command letter.
    """
    body = text.strip()
    if not body.startswith("<"):
        raise CommandError("message does not start with '<'")
    tokens = body[1:].replace(">", " > ").split()

    values = []
    for convert, token in zip(_CONVERTERS, tokens):
        if token == ">":
            break
        value = convert(token)
        if value is None:
            break
        values.append(value)

    if len(values) < 6:
        raise CommandError("incomplete command")
    dlc = values[5]
    if dlc > CAN_MAX_DLEN:
        raise CommandError(f"data length {dlc} exceeds {CAN_MAX_DLEN}")
    if len(values) != 6 + dlc:
        raise CommandError("number of data bytes does not match the length")

    command = BcmCommand(
        ifname=values[0],
        command=values[1],
        ival_sec=values[2],
        ival_usec=values[3],
        can_id=values[4],
        data=bytes(values[6:]),
    )
    if command.command not in _COMMANDS:
        raise UnknownCommandError(f"unknown command '{command.command}'.")
    return command


def format_rx_message(ifname: str, can_id: int, data: bytes) -> bytes:
    """A received frame in the client format, NUL terminated."""
    text = f"< {ifname} {can_id:03X} {len(data)} "
    text += "".join(f"{byte:02X} " for byte in data)
    text += ">"
    return text.encode("latin-1") + b"\0"


def _decode_rx(raw: bytes) -> Optional[tuple[int, bytes]]:
    if len(raw) < FRAME_OFFSET + CAN_MTU:
        return None
    can_id = BCM_HEAD.unpack_from(raw)[7]
    frame = raw[FRAME_OFFSET:FRAME_OFFSET + CAN_MTU]
    dlc = min(frame[4], CAN_MAX_DLEN)
    return can_id, bytes(frame[8:8 + dlc])


def _handle_client(conn: socket.socket) -> None:
    with conn, socket.socket(socket.AF_CAN, socket.SOCK_DGRAM, socket.CAN_BCM) as bcm:
        # no interface: every job names its own when it is sent
        bcm.connect(("",))
        assembler = MessageAssembler()
        while True:
            readable, _, _ = select.select([bcm, conn], [], [])
            if bcm in readable:
                raw, address = bcm.recvfrom(BCM_MSG_SIZE)
                decoded = _decode_rx(raw)
                if decoded is not None:
                    ifname = address[0] if isinstance(address, tuple) else ""
                    conn.sendall(format_rx_message(ifname, *decoded))
            if conn in readable:
                chunk = conn.recv(MAXLEN)
                if not chunk:
                    return
                for byte in chunk:
                    text = assembler.feed(byte)
                    if text is None:
                        continue
                    try:
                        command = parse_command(text)
                    except UnknownCommandError as exc:
                        print(exc)
                        return
                    except CommandError:
                        return
                    try:
                        bcm.sendto(command.to_bcm_msg(), (command.ifname,))
                    except OSError:
                        pass


def serve(port: int = PORT) -> None:
    """Accept clients on ``port`` forever, one handler thread per client."""
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    with listener:
        while True:
            try:
                listener.bind(("", port))
                break
            except OSError:
                print(".", end="", flush=True)
                time.sleep(0.1)
        listener.listen(3)
        while True:
            conn, _ = listener.accept()
            threading.Thread(target=_handle_client, args=(conn,), daemon=True).start()


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Command line entry point; returns the exit status."""
    parser = argparse.ArgumentParser(
        description="Serve ASCII broadcast manager commands over TCP."
    )
    parser.parse_args(argv)
    try:
        serve(PORT)
    except KeyboardInterrupt:
        return 0
    return 0


if __name__ == "__main__":
    sys.exit(main())