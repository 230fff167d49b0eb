import sys

import pytest

from cankit.bcmserver import (
    BCM_HEAD,
    BCM_MSG_SIZE,
    FRAME_OFFSET,
    RX_DELETE,
    RX_FILTER_ID,
    RX_SETUP,
    SETTIMER,
    STARTTIMER,
    TX_DELETE,
    TX_SEND,
    TX_SETUP,
    BcmCommand,
    CommandError,
    MessageAssembler,
    UnknownCommandError,
    format_rx_message,
    parse_command,
)
from cankit.framelen import CAN_MTU, unpack_frame

ADD = "< vcan1 A 1 0 123 8 11 22 33 44 55 66 77 88 >"


def test_assembler_skips_leading_garbage():
    assembler = MessageAssembler()
    results = [assembler.feed(b) for b in ("junk" + ADD).encode()]
    assert results[:-1] == [None] * (len(results) - 1)
    assert results[-1] == ADD


def test_assembler_accepts_single_byte_bytes():
    assembler = MessageAssembler()
    out = None
    for b in b"< can0 S 0 0 123 0 >":
        out = assembler.feed(bytes([b]))
    assert out == "< can0 S 0 0 123 0 >"


def test_assembler_discards_overlong_message():
    assembler = MessageAssembler()
    overlong = b"<" + b"a" * 120 + b">"
    assert all(assembler.feed(b) is None for b in overlong)
    out = None
    for b in ADD.encode():
        out = assembler.feed(b)
    assert out == ADD


def test_parse_add_command():
    cmd = parse_command(ADD)
    assert cmd.ifname == "vcan1"
    assert cmd.command == "A"
    assert (cmd.ival_sec, cmd.ival_usec) == (1, 0)
    assert cmd.can_id == 0x123
    assert cmd.data == bytes.fromhex("1122334455667788")
    assert cmd.opcode == TX_SETUP
    assert cmd.flags == SETTIMER | STARTTIMER


@pytest.mark.parametrize(
    "text, opcode, flags",
    [
        ("< vcan1 U 0 0 123 3 11 22 33 >", TX_SETUP, 0),
        ("< vcan1 D 0 0 123 0 >", TX_DELETE, 0),
        ("< can0 S 0 0 123 0 >", TX_SEND, 0),
        ("< vcan1 R 0 0 123 1 FF >", RX_SETUP, SETTIMER),
        ("< vcan1 F 0 0 123 0 >", RX_SETUP, RX_FILTER_ID | SETTIMER),
        ("< vcan1 X 0 0 123 0 >", RX_DELETE, 0),
    ],
)
def test_parse_documented_commands(text, opcode, flags):
    cmd = parse_command(text)
    assert cmd.opcode == opcode
    assert cmd.flags == flags


def test_parse_throttled_receive():
    cmd = parse_command("< vcan1 R 1 500000 123 8 FF 00 F8 00 00 00 00 00 >")
    assert cmd.ival_usec == 500000
    assert cmd.data == bytes([0xFF, 0, 0xF8, 0, 0, 0, 0, 0])


@pytest.mark.parametrize(
    "text",
    [
        "< vcan1 S 0 >",
        "< vcan1 S 0 0 123 9 1 2 3 4 5 6 7 8 9 >",
        "< vcan1 S 0 0 123 2 11 >",
        "< vcan1 S 0 0 123 1 11 22 >",
        "vcan1 S 0 0 123 0 >",
    ],
)
def test_parse_malformed(text):
    with pytest.raises(CommandError):
        parse_command(text)


def test_parse_unknown_command():
    with pytest.raises(UnknownCommandError):
        parse_command("< vcan1 Q 0 0 123 0 >")


def test_bcm_msg_layout_round_trip():
    cmd = parse_command(ADD)
    msg = cmd.to_bcm_msg()
    assert len(msg) == BCM_MSG_SIZE
    head = BCM_HEAD.unpack_from(msg)
    assert head[0] == TX_SETUP
    assert head[1] == SETTIMER | STARTTIMER
    assert head[5:7] == (1, 0)
    assert head[7] == 0x123
    assert head[8] == 1
    frame = unpack_frame(msg[FRAME_OFFSET:FRAME_OFFSET + CAN_MTU])
    assert frame.can_id == 0x123
    assert frame.data == cmd.data


def test_bcm_msg_opcode_native_order():
    msg = parse_command("< vcan1 D 0 0 123 0 >").to_bcm_msg()
    assert int.from_bytes(msg[0:4], sys.byteorder) == TX_DELETE


def test_bcm_msg_unknown_command_object():
    cmd = BcmCommand("vcan1", "Z", 0, 0, 0x123, b"")
    with pytest.raises(UnknownCommandError):
        cmd.to_bcm_msg()


def test_format_rx_message_documented_example():
    assert (
        format_rx_message("vcan1", 0x123, bytes([0x11, 0x22, 0x33, 0x44]))
        == b"< vcan1 123 4 11 22 33 44 >\0"
    )


def test_format_rx_message_parses_back_as_fields():
    out = format_rx_message("can0", 0x7FF, b"\x01\xab")
    fields = out.rstrip(b"\0").decode().split()
    assert fields[0] == "<" and fields[-1] == ">"
    assert int(fields[2], 16) == 0x7FF
    assert int(fields[3]) == 2
    assert bytes(int(f, 16) for f in fields[4:-1]) == b"\x01\xab"