# cankit

Tools for Controller Area Network (CAN) buses, usable from the command
line and as a Python library. It has no third-party dependencies. The
calculations run anywhere; the commands that open CAN sockets
(`busload`, `bcmserver`, `fdtest`) need Linux SocketCAN.

## Library

### `cankit.framelen`

How many bits a Classical CAN or CAN FD frame occupies on the wire,
inter frame space included.

- `CanFrame(can_id, data, flags, len8_dlc)`: a frame. `pack(mtu)` encodes
  it in the raw socket layout for `CAN_MTU` (16 bytes) or `CANFD_MTU`
  (72 bytes); `unpack_frame(data)` decodes either size.
- `CflMode`: `NO_BITSTUFFING`, `WORSTCASE` or `EXACT` treatment of stuff
  bits.
- `frame_length(frame, mode, mtu)`: bits on the wire. `EXACT` counts the
  stuff bits from the frame content and its CRC-15 for Classical CAN; for
  CAN FD, and for an MTU that is neither size, it returns 0.
- `dbitrate_length(frame, mode, mtu)`: bits of a CAN FD frame with the
  bitrate switch (`CANFD_BRS`) set that are sent at the data bitrate;
  0 for all other frames and for `EXACT`.

```python
from cankit.framelen import CanFrame, CflMode, CAN_MTU, frame_length

frame = CanFrame(0x123, b"\x11\x22\x33\x44")
frame_length(frame, CflMode.WORSTCASE, CAN_MTU)   # 95
```

### `cankit.bittiming`

Bit timing calculation for the controllers sja1000, mscan, at91, flexcan,
mcp251x, mcp251xfd, ti_hecc, rcar_can, bxcan, c_can and mcan-v3.1+.

- `calc_bittiming(clock_freq, bitrate, sample_point, sjw, btc)` searches
  for the prescaler and segments that best reach the bitrate and sample
  point (a sample point of 0 selects `cia_sample_point(bitrate)`). It
  raises `BitTimingError` when the bitrate error exceeds 5 %.
- `fixup_bittiming(clock_freq, bt, btc)` completes given low level
  segments with bitrate, sample point and time quantum; a `brp` of 0 is
  derived from `tq`. Out of range values raise `BitTimingError`.
- `update_sample_point(btc, spt_nominal, tseg)` splits a segment total
  into tseg1/tseg2.
- `find_controller(name)` returns a `Controller` (its `BitTimingConst`
  limits, `RefClock` tuple, `register_header()` and
  `register_values(bt)`); unknown names raise `KeyError`.
- `BitTiming` holds bitrate, sample point (in 0.1 %), tq (ns), prop_seg,
  phase_seg1, phase_seg2, sjw and brp.

### `cankit.bitcalc`

Text reports built on `cankit.bittiming`: `list_controllers()`,
`format_bit_timing(...)` for one bitrate on one clock, and
`calc_report(...)` for one or all controllers, over the common bitrates
from 1 Mbit/s down to 10 kbit/s when no bitrate is given.

### `cankit.busload`

`parse_interface_spec("can0@500000,2000000")` returns a `BusStats`, whose
`add_frame(frame, mode, mtu)` accumulates received frames,
`load_percent()` gives the load of the interval (it can exceed 100 %
because stuff bits are estimated) and `reset()` clears the counters.
`render_report(stats, mode, timestamp, color, bargraph, now)` formats one
interval.

### `cankit.bcmserver`

`MessageAssembler.feed(byte)` collects `<...>` messages from a byte
stream, `parse_command(text)` turns one into a `BcmCommand`
(`to_bcm_msg()` gives the broadcast manager message), and
`format_rx_message(ifname, can_id, data)` formats a received frame for
the client. `serve(port)` runs the server.

### `cankit.fdtest`

`EchoConfig` holds ping and pong ids, frames in flight, loop count and
verbosity. `check_frame`, `increment_frame`, `compare_frame` and
`format_frame` implement the frame checks; `run_dut(sock, config)` and
`run_generator(sock, config)` run the two sides over any socket-like
object with `send` and `recv`.

## Installation

```
pip install .
```

For the tests:

```
pip install ".[test]"
pytest
```

## Commands

### bitcalc

```
bitcalc -l                          # list controller names
bitcalc flexcan                     # common bitrates on every reference clock
bitcalc -b 500000 -s 875 -c 24000000 sja1000
bitcalc --prop-seg 6 --phase-seg1 7 --phase-seg2 2 --brp 1 -c 8000000 sja1000
```

Options: `-b` bitrate, `-s` sample point in tenths of a percent (100 to
999, or 0 for the CiA value), `-c` clock in Hz, `-q` no header line,
`-l` list controllers. The low level options `--tq`, `--prop-seg`,
`--phase-seg1`, `--phase-seg2`, `--sjw`, `--brp`, `--tseg1` and
`--tseg2` decode given parameters instead of calculating them; they take
effect once a propagation segment is set. Without a controller name every
controller is reported.

### busload

```
busload can0@500000 can1@500000,2000000 -r -t -b -c
```

Up to 16 interfaces, each as `<ifname>@<bitrate>[,<dbitrate>]`. Once a
second it prints frames, total bits, payload bits, data-bitrate bits and
load per interface. Options: `-t` timestamp line, `-c` colours, `-b` bar
graph, `-r` redraw the terminal, `-i` ignore bit stuffing, `-e` exact bit
stuffing (CAN FD frames then count as 0 bits).

### bcmserver

```
bcmserver
```

Listens on TCP port 28600 and serves each client in its own thread.
Commands are framed as
`< interface command ival_s ival_us can_id can_dlc [data]* >` with the
CAN id and data in hex, for example `< vcan1 A 0 20000 123 4 42 42 42 42 >`.
The commands are `A`dd, `U`pdate, `D`elete and `S`end for transmission
and `R`eceive, `F`ilter and `X` (delete) for reception. Received frames
come back as `< interface can_id can_dlc [data]* >` followed by a NUL
byte. A malformed or unknown command closes the client's connection.

### fdtest

```
fdtest -v can0          # on the device under test
fdtest -g -v can2       # on the host
```

Options: `-g` generate and check (host side), `-f` frames in flight
(default 50), `-i`/`-o` ping and pong CAN ids in hex, `-l` loop count,
`-v` verbosity (repeat for more), `-x` ignore other frames on the bus.

## What it does not do

cankit does not dump, log, replay or send arbitrary CAN traffic, does not
convert log file formats, and has no ISO-TP, J1939 or serial-line CAN
support. Exact stuff-bit counting covers Classical CAN frames only.