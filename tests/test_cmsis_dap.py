import pytest

from fpgaprog.cmsis_dap import CmsisDAP, DapError


class FakeProbe:
    """A CMSIS-DAP probe whose JTAG port loops TDI back on TDO."""

    vendor_id = 0x1234
    product_id = 0x5678
    serial_number = "TEST0001"

    def __init__(self, hwcap=0x02, connect_reply=None):
        self.writes = []
        self.info = {0xF0: bytes([hwcap]), 0xFF: bytes([0x40, 0x00])}
        self.connect_reply = connect_reply
        self.overrides = {}
        self.timeout = False
        self.fail_write = False
        self._pending = b""

    def write(self, data):
        if self.fail_write:
            raise OSError("broken pipe")
        data = bytes(data)
        self.writes.append(data)
        self._pending = self._answer(data)
        return len(data)

    def read(self, length, timeout_ms):
        if self.timeout:
            return b""
        return self._pending.ljust(length, b"\x00")

    def _answer(self, packet):
        cmd = packet[1]
        if cmd in self.overrides:
            return self.overrides[cmd]
        if cmd == 0x00:
            data = self.info.get(packet[2], b"")
            return bytes([0x00, len(data)]) + data
        if cmd == 0x02:
            return self.connect_reply or bytes([0x02, packet[2]])
        if cmd == 0x14:
            return self._loopback(packet[1:])
        return bytes([cmd, 0x00])

    @staticmethod
    def _loopback(payload):
        count = payload[1]
        pos = 2
        out = bytearray()
        for _ in range(count):
            info = payload[pos]
            pos += 1
            nbits = (info & 0x3F) or 64
            nbytes = (nbits + 7) // 8
            data = bytearray(payload[pos:pos + nbytes])
            pos += nbytes
            if nbits % 8:
                data[-1] &= (1 << (nbits % 8)) - 1
            if info & 0x80:
                out += data
        return bytes([0x14, 0x00]) + bytes(out)

    def packets(self, cmd):
        return [w for w in self.writes if w[1] == cmd]


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def dap(probe):
    dap = CmsisDAP(probe, 0)
    probe.writes.clear()
    return dap


def test_init_reads_caps_and_connects():
    probe = FakeProbe()
    dap = CmsisDAP(probe, 0)
    assert probe.writes[0][:3] == b"\x00\x00\xf0"
    assert probe.writes[1][:3] == b"\x00\x02\x02"
    assert all(len(w) == 65 for w in probe.writes)
    assert dap.connected is True


def test_probe_without_jtag_is_rejected():
    with pytest.raises(DapError, match="JTAG is not supported"):
        CmsisDAP(FakeProbe(hwcap=0x01), 0)


def test_connect_refused():
    with pytest.raises(DapError, match="connection in JTAG mode failed"):
        CmsisDAP(FakeProbe(connect_reply=b"\x02\x01"), 0)


def test_timeout_raises():
    probe = FakeProbe()
    probe.timeout = True
    with pytest.raises(DapError, match="timeout"):
        CmsisDAP(probe, 0)


def test_write_failure_raises(dap, probe):
    probe.fail_write = True
    with pytest.raises(DapError):
        dap.reset_target()


def test_set_clk_freq_sends_little_endian(dap, probe):
    assert dap.set_clk_freq(1_500_000) == 1_500_000
    packet = probe.packets(0x11)[0]
    assert int.from_bytes(packet[2:6], "little") == 1_500_000
    assert dap.clk_hz == 1_500_000


def test_set_clk_freq_command_error(dap, probe):
    probe.overrides[0x11] = b"\x00\xff"
    with pytest.raises(DapError):
        dap.set_clk_freq(1_000_000)


def test_tms_is_buffered_until_flush(dap, probe):
    assert dap.write_tms(b"\x1f", 5, False) == 5
    assert probe.writes == []
    assert dap.flush() == 5
    assert probe.writes[0][:4] == b"\x00\x12\x05\x1f"
    assert dap.flush() == 0
    assert len(probe.writes) == 1


def test_tms_full_buffer_is_sent(dap, probe):
    dap.write_tms(b"\xff" * 32, 256, False)
    assert dap.flush() == 0
    packets = probe.packets(0x12)
    assert len(packets) == 1
    assert packets[0][2] == 0
    assert packets[0][3:35] == b"\xff" * 32


def test_tms_overflow_splits(dap, probe):
    dap.write_tms(b"\x00" * 38, 300, True)
    assert dap.flush() == 0
    packets = probe.packets(0x12)
    assert [p[2] for p in packets] == [0, 300 - 256]


def test_write_tdi_end_wire_bytes(dap, probe):
    assert dap.write_tdi(b"\x05", 3, end=True) is None
    packet = probe.packets(0x14)[0]
    assert packet[:7] == bytes([0x00, 0x14, 0x02, 0x02, 0x05, 0x41, 0x01])


def test_toggle_clk_wire_bytes(dap, probe):
    assert dap.toggle_clk(1, 1, 10) == 10
    packet = probe.packets(0x14)[0]
    assert packet[:6] == bytes([0x00, 0x14, 0x01, 0x4A, 0xFF, 0xFF])


def test_pending_tms_sent_before_tdi(dap, probe):
    assert dap.write_tms(b"\x03", 2, False) == 2
    assert dap.write_tdi(b"\xaa", 8) is None
    assert dap.flush() == 0
    assert [w[1] for w in probe.writes] == [0x12, 0x14]


def test_capture_partial_last_bit(dap):
    assert dap.write_tdi(b"\x05", 3, end=True, capture=True) == b"\x05"


def test_disconnect_and_reset(dap, probe):
    assert dap.disconnect() is True
    assert probe.writes[-1][:2] == b"\x00\x03"
    assert dap.connected is False
    dap.disconnect()
    assert len(probe.writes) == 1
    assert dap.reset_target() is True
    assert probe.writes[-1][:2] == b"\x00\x0a"


def test_read_info_payload(dap):
    assert dap.read_info(0xFF) == b"\x40\x00"
    assert dap.read_info(0x04) == b""


def test_context_manager_disconnects(probe):
    with CmsisDAP(probe, 0) as dap:
        assert dap.connected is True
    assert dap.connected is False


def test_verbose_displays_infos(capsys):
    CmsisDAP(FakeProbe(), 1)
    out = capsys.readouterr().out
    assert "max packet size" in out
    assert "64" in out
    assert "1234" in out
    assert "TEST0001" in out