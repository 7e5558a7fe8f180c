from collections import deque

import pytest

from fpgaprog.dirty_jtag import (
    MAX_FREQUENCY,
    Command,
    DirtyJtag,
    DirtyJtagError,
    Signal,
)


class FakeProbe:
    """Loopback probe: TDO echoes TDI."""

    def __init__(self, banner=b"DJTAG2\n", version=2, short=False, fail=False):
        self.banner = banner
        self.version = version
        self.short = short
        self.fail = False
        self.fail_after_init = fail
        self.writes = []
        self.reads = 0
        self.pending = deque()

    def write(self, endpoint, data, timeout_ms):
        if self.fail:
            raise OSError("broken pipe")
        data = bytes(data)
        self.writes.append(data)
        cmd = data[0]
        if cmd == Command.INFO:
            self.pending.append(self.banner)
        elif cmd & 0x3F == Command.XFER:
            header = 3 if self.version == 3 else 2
            self.pending.append(data[header:])
            if self.short:
                return len(data) - 1
        elif cmd == Command.SETSIG and len(data) > 6 and data[6] == Command.GETSIG:
            tdo = Signal.TDO if data[2] & Signal.TDI else 0
            self.pending.append(bytes([tdo]))
        return len(data)

    def read(self, endpoint, length, timeout_ms):
        self.reads += 1
        if not self.pending:
            raise OSError("timeout")
        return self.pending.popleft()


def make(banner=b"DJTAG2\n", version=2, clk=1_000_000, **kw):
    probe = FakeProbe(banner, version, **kw)
    jtag = DirtyJtag(probe, clk, 0)
    probe.writes.clear()
    probe.reads = 0
    return probe, jtag


@pytest.mark.parametrize(
    "banner,expected",
    [(b"DJTAG1\n", 1), (b"DJTAG2\n", 2), (b"DJTAG3\n", 3), (b"OTHER\n", 0)],
)
def test_version_detection(banner, expected):
    probe = FakeProbe(banner)
    jtag = DirtyJtag(probe, 1_000_000)
    assert jtag.version == expected
    assert probe.writes[0] == bytes([Command.INFO, Command.STOP])


def test_frequency_command_bytes():
    probe = FakeProbe()
    jtag = DirtyJtag(probe, 256_000)
    assert jtag.clk_hz == 256_000
    assert probe.writes[-1] == bytes([Command.FREQ, 1, 0, Command.STOP])


def test_frequency_is_limited():
    probe, jtag = make()
    assert jtag.set_clk_freq(20_000_000) == MAX_FREQUENCY
    assert jtag.clk_hz == 16_000_000


def test_frequency_write_failure():
    probe, jtag = make()
    probe.fail = True
    with pytest.raises(DirtyJtagError):
        jtag.set_clk_freq(1_000_000)


def test_write_tms_empty():
    probe, jtag = make()
    assert jtag.write_tms(b"", 0) == 0
    assert probe.writes == []


def _decode_tms(packets):
    bits = []
    for packet in packets:
        assert packet[-1] == Command.STOP
        assert len(packet) <= 64
        body = packet[:-1]
        for k in range(0, len(body), 3):
            assert body[k] == Command.SETSIG
            val = body[k + 2]
            if val & Signal.TCK:
                bits.append(bool(val & Signal.TMS))
    return bits


@pytest.mark.parametrize("length", [1, 5, 9, 23])
def test_write_tms_round_trip(length):
    probe, jtag = make()
    tms = bytes([0xB5, 0x3C, 0xE1])
    assert jtag.write_tms(tms, length) == length
    expected = [bool(tms[i >> 3] & (1 << (i & 7))) for i in range(length)]
    assert _decode_tms(probe.writes) == expected


def test_write_tms_ends_with_falling_edge():
    probe, jtag = make()
    jtag.write_tms(b"\x01", 1)
    last = probe.writes[-1]
    assert last[-4] == Command.SETSIG
    assert not last[-2] & Signal.TCK


def test_toggle_clk_chunks():
    probe, jtag = make()
    assert jtag.toggle_clk(1, 0, 130) == 130
    assert [p[2] for p in probe.writes] == [64, 64, 2]
    assert all(p[0] == Command.CLK and p[1] == Signal.TMS for p in probe.writes)


def test_toggle_clk_zero():
    probe, jtag = make()
    assert jtag.toggle_clk(0, 1, 0) == 0
    assert probe.writes == []


def test_write_tdi_no_read_v2():
    probe, jtag = make()
    assert jtag.write_tdi(b"\xff", 8) is None
    packet = probe.writes[0]
    assert packet[0] == 0x83
    assert packet[1] == 8
    assert packet[2:] == b"\xff"
    assert probe.reads == 0


def test_write_tdi_v1_always_reads():
    probe, jtag = make(banner=b"DJTAG1\n", version=1)
    assert jtag.write_tdi(b"\x0f", 8) is None
    assert probe.writes[0][0] == Command.XFER
    assert probe.reads == 1


def test_write_tdi_bit_order_is_msb_first_on_wire():
    probe, jtag = make()
    jtag.write_tdi(b"\x01", 8)
    assert probe.writes[0][2] == 0x80


@pytest.mark.parametrize(
    "banner,version", [(b"DJTAG1\n", 1), (b"DJTAG2\n", 2), (b"DJTAG3\n", 3)]
)
def test_capture_loopback(banner, version):
    probe, jtag = make(banner=banner, version=version)
    tx = bytes(range(1, 101))
    rx = jtag.write_tdi(tx, len(tx) * 8, capture=True)
    assert rx == tx


def test_extended_length_header_v2():
    probe, jtag = make()
    tx = bytes(40)
    jtag.write_tdi(tx, 320)
    packet = probe.writes[0]
    assert packet[0] & 0x40
    assert packet[1] + 256 == 320


def test_v3_header_and_chunking():
    probe, jtag = make(banner=b"DJTAG3\n", version=3)
    tx = bytes(1000)
    jtag.write_tdi(tx, 8000)
    sizes = [(p[1] << 8) | p[2] for p in probe.writes]
    assert sizes == [4000, 4000]


def test_capture_with_end_round_trip():
    probe, jtag = make()
    rx = jtag.write_tdi(b"\xa5\x3c", 16, end=True, capture=True)
    assert rx == b"\xa5\x3c"
    assert probe.writes[-1][3] == Command.STOP
    assert len(probe.writes[-1]) == 4


def test_end_without_capture_uses_clock():
    probe, jtag = make()
    jtag.write_tdi(b"\x80", 8, end=True)
    last = probe.writes[-1]
    assert last[0] == Command.CLK
    assert last[1] == Signal.TMS | Signal.TDI
    assert last[2] == 1
    assert probe.writes[0][1] == 7


def test_short_write_raises():
    probe, jtag = make(short=True)
    with pytest.raises(DirtyJtagError):
        jtag.write_tdi(b"\x00", 8)


def test_read_failure_raises():
    probe, jtag = make()
    probe.pending.clear()
    probe.write = lambda ep, data, t: len(data)
    with pytest.raises(DirtyJtagError):
        jtag.write_tdi(b"\x00", 8, capture=True)


def test_flush_and_buffer():
    probe, jtag = make()
    assert jtag.flush() == 0
    assert jtag.get_buffer_size() == 0
    assert jtag.is_full() is False