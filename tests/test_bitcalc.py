import pytest

from cankit.bitcalc import calc_report, format_bit_timing, list_controllers, main
from cankit.bittiming import (
    COMMON_BITRATES,
    CONTROLLERS,
    BitTiming,
    RefClock,
    calc_bittiming,
    find_controller,
)


def test_list_controllers_follows_table_order():
    names = list_controllers()
    assert names == [c.name for c in CONTROLLERS]
    assert names[0] == "sja1000"
    assert names[-1] == "mcan-v3.1+"


def test_format_line_matches_calculation():
    controller = find_controller("sja1000")
    clock = controller.ref_clocks[0]
    text = format_bit_timing(controller, clock, 500000, 0, None, True)
    bt = calc_bittiming(clock.clk, 500000, 0, 0, controller.const)
    fields = text.split()
    assert fields[0] == "500000"
    assert int(fields[1]) == bt.tq
    assert int(fields[2]) == bt.prop_seg
    assert int(fields[3]) == bt.phase_seg1
    assert int(fields[4]) == bt.phase_seg2
    assert int(fields[5]) == bt.sjw
    assert int(fields[6]) == bt.brp
    assert int(fields[7]) == bt.bitrate
    assert text.endswith(controller.register_values(bt) + "\n")


def test_header_present_unless_quiet():
    controller = find_controller("sja1000")
    clock = controller.ref_clocks[0]
    loud = format_bit_timing(controller, clock, 500000, 0, None, False)
    quiet = format_bit_timing(controller, clock, 500000, 0, None, True)
    assert loud.startswith("Bit timing parameters for sja1000 with 8.000000 MHz")
    assert "BTR0 BTR1\n" in loud
    assert loud.endswith(quiet)
    assert "Bit timing" not in quiet


def test_impossible_bitrate():
    controller = find_controller("sja1000")
    text = format_bit_timing(controller, controller.ref_clocks[0], 1000, 0, None, True)
    assert text == f"{1000:7d} ***bitrate not possible***\n"


def test_ref_bittiming_decoded():
    controller = find_controller("sja1000")
    ref = BitTiming(prop_seg=6, phase_seg1=7, phase_seg2=2, brp=1)
    text = format_bit_timing(controller, controller.ref_clocks[0], 500000, 0, ref, True)
    fields = text.split()
    assert fields[7] == "500000"
    assert fields[8] == "0.0%"


def test_ref_bittiming_out_of_range():
    controller = find_controller("sja1000")
    ref = BitTiming(prop_seg=6, phase_seg1=7, phase_seg2=20, brp=1)
    text = format_bit_timing(controller, controller.ref_clocks[0], 500000, 0, ref, True)
    assert "***parameters exceed controller's range***" in text


def test_large_error_capped():
    controller = find_controller("sja1000")
    ref = BitTiming(prop_seg=6, phase_seg1=7, phase_seg2=2, brp=1)
    text = format_bit_timing(controller, controller.ref_clocks[0], 10000, 0, ref, True)
    assert "≥100% " in text


def test_nonpositive_bitrate_rejected():
    controller = find_controller("sja1000")
    with pytest.raises(ValueError):
        format_bit_timing(controller, controller.ref_clocks[0], 0, 0, None, True)


def test_report_common_bitrates_header_once_per_clock():
    report = calc_report("mscan")
    controller = find_controller("mscan")
    assert report.count("Bit timing parameters") == len(controller.ref_clocks)
    assert "SampP Error \n" in report
    lines = [line for line in report.splitlines() if line and line[0] == " " or line[:1].isdigit()]
    numbers = [int(line.split()[0]) for line in lines]
    assert numbers == list(COMMON_BITRATES) * len(controller.ref_clocks)


def test_report_ref_clock_override():
    report = calc_report("sja1000", None, 500000, 0, RefClock(16000000, "custom"), False)
    assert report.count("Bit timing parameters") == 1
    assert "sja1000 (custom) with 16.000000 MHz" in report
    assert report.endswith("\n\n")


def test_report_all_controllers():
    report = calc_report(None, None, 500000, 0, None, True)
    expected_blocks = sum(len(c.ref_clocks) for c in CONTROLLERS)
    assert report.count("\n\n") == expected_blocks


def test_report_unknown_controller():
    with pytest.raises(KeyError):
        calc_report("no-such-controller")


def test_main_list(capsys):
    assert main(["-l"]) == 0
    assert capsys.readouterr().out.splitlines() == list_controllers()


def test_main_quiet_single_bitrate(capsys):
    assert main(["-q", "-b", "500000", "sja1000"]) == 0
    out = capsys.readouterr().out
    assert "Bit timing parameters" not in out
    assert out.split()[0] == "500000"


def test_main_unknown_controller(capsys):
    assert main(["nope"]) == 1
    out = capsys.readouterr().out
    assert "unknown CAN controller 'nope'" in out
    assert "sja1000" in out


def test_main_bad_sample_point():
    assert main(["-s", "50", "sja1000"]) == 1


def test_main_too_many_names():
    assert main(["sja1000", "mscan"]) == 1


def test_main_tseg1_and_clock(capsys):
    assert main(["-b", "500000", "-c", "8000000", "--tseg1", "13",
                 "--tseg2", "2", "--brp", "1", "sja1000"]) == 0
    out = capsys.readouterr().out
    assert "(cmd-line)" in out
    line = [l for l in out.splitlines() if l.strip().startswith("500000")][0]
    assert line.split()[7] == "500000"