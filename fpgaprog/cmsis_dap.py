"""JTAG over a CMSIS-DAP probe reached through HID reports."""

from __future__ import annotations

from enum import Enum, IntEnum
from typing import Optional, Protocol

from .display import print_error, print_info, print_success

_REPORT_SIZE = 65
_TIMEOUT_MS = 1000
_MAX_TMS_BITS = 256
_SEQ_BUFFER_END = 63
_MAX_SEQUENCES = 7

_SEQ_TDO_CAPTURE = 1 << 7
_STATUS_OK = 0x00
_CONNECT_JTAG = 0x02
_CAP_JTAG = 1 << 1


class Command(IntEnum):
    """CMSIS-DAP command identifiers."""

    INFO = 0x00
    HOST_STATUS = 0x01
    CONNECT = 0x02
    DISCONNECT = 0x03
    RESET_TARGET = 0x0A
    SWJ_CLK = 0x11
    SWJ_SEQUENCE = 0x12
    JTAG_SEQUENCE = 0x14


class InfoId(IntEnum):
    """Identifiers accepted by the INFO command."""

    VID = 0x01
    PID = 0x02
    SERNUM = 0x03
    FWVERS = 0x04
    TARGET_DEV_VENDOR = 0x05
    TARGET_DEV_NAME = 0x06
    HWCAP = 0xF0
    SWO_TEST_TIM_PARAM = 0xF1
    SWO_TRACE_BUF_SIZE = 0xFD
    MAX_PKT_CNT = 0xFE
    MAX_PKT_SZ = 0xFF


class InfoType(Enum):
    """How an INFO answer is encoded."""

    STRING = 0
    BYTE = 1
    SHORT = 2
    WORD = 4


_INFO_NAMES = {
    InfoId.VID: "VID",
    InfoId.PID: "PID",
    InfoId.SERNUM: "serial number",
    InfoId.FWVERS: "firmware version",
    InfoId.TARGET_DEV_VENDOR: "target device vendor",
    InfoId.TARGET_DEV_NAME: "target device name",
    InfoId.HWCAP: "hardware capabilities",
    InfoId.SWO_TEST_TIM_PARAM: "test domain timer parameter",
    InfoId.SWO_TRACE_BUF_SIZE: "SWO trace buffer size",
    InfoId.MAX_PKT_CNT: "max packet cnt",
    InfoId.MAX_PKT_SZ: "max packet size",
}

_VERBOSE_INFOS = (
    (InfoId.VID, InfoType.STRING),
    (InfoId.PID, InfoType.STRING),
    (InfoId.SERNUM, InfoType.STRING),
    (InfoId.FWVERS, InfoType.STRING),
    (InfoId.TARGET_DEV_VENDOR, InfoType.STRING),
    (InfoId.TARGET_DEV_NAME, InfoType.STRING),
    (InfoId.HWCAP, InfoType.BYTE),
    (InfoId.SWO_TRACE_BUF_SIZE, InfoType.WORD),
    (InfoId.MAX_PKT_CNT, InfoType.BYTE),
    (InfoId.MAX_PKT_SZ, InfoType.SHORT),
)


class DapError(RuntimeError):
    """Raised when the probe cannot be used or a transfer fails."""


class HidDevice(Protocol):
    """An opened HID device.

    ``write`` and ``read`` raise OSError on failure; ``read`` returns an
    empty result on timeout.
    """

    vendor_id: int
    product_id: int
    serial_number: str

    def write(self, data: bytes) -> int:
        ...

    def read(self, length: int, timeout_ms: int) -> bytes:
        ...


def _bit(data: bytes, index: int) -> bool:
    pos = index >> 3
    return pos < len(data) and bool(data[pos] & (1 << (index & 0x07)))


def _chunk(data: Optional[bytes], offset: int, length: int) -> bytes:
    if data is None:
        return bytes(length)
    return bytes(data[offset:offset + length]).ljust(length, b"\x00")


def _store(rx: bytearray, offset: int, data: bytes) -> None:
    count = max(0, min(len(data), len(rx) - offset))
    rx[offset:offset + count] = data[:count]


class CmsisDAP:
    """Drive a CMSIS-DAP probe in JTAG mode."""

    def __init__(self, device: HidDevice, verbose: int = 0) -> None:
        self.device = device
        self.verbose = verbose
        self.clk_hz = 0
        self.connected = False
        self._tms_bits: list[bool] = []

        if verbose:
            for info, kind in _VERBOSE_INFOS:
                self._display_info(info, kind)

        caps = self.read_info(InfoId.HWCAP)
        if verbose:
            print("Hardware cap " + " ".join(f"{b:02x}" for b in caps))
        if not caps or not caps[0] & _CAP_JTAG:
            raise DapError("JTAG is not supported by the probe")

        if not self.connect():
            raise DapError("DAP connection in JTAG mode failed")

    def __enter__(self) -> "CmsisDAP":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.disconnect()

    def _exchange(self, payload: bytes) -> bytes:
        """Send one HID report and return the padded answer."""
        packet = (b"\x00" + bytes(payload)).ljust(_REPORT_SIZE, b"\x00")
        try:
            self.device.write(packet)
        except OSError as exc:
            raise DapError(f"Error: hid write failed {exc}") from exc
        try:
            reply = self.device.read(_REPORT_SIZE, _TIMEOUT_MS)
        except OSError as exc:
            raise DapError(f"Error comm {exc}") from exc
        if not reply:
            raise DapError("Error timeout")
        return bytes(reply).ljust(_REPORT_SIZE, b"\x00")

    def _command(self, instruction: int, args: bytes = b"") -> bytes:
        """Send a command, check its status and return the answer data."""
        reply = self._exchange(bytes([instruction]) + bytes(args))
        if reply[0] != instruction and reply[1] != _STATUS_OK:
            raise DapError("Error: command error")
        return reply[2:]

    def connect(self) -> bool:
        """Switch the probe to JTAG mode; False when the probe refuses."""
        if self.connected:
            return True
        reply = self._exchange(bytes([Command.CONNECT, _CONNECT_JTAG]))
        if reply[0] != Command.CONNECT or reply[1] != _CONNECT_JTAG:
            return False
        self.connected = True
        return True

    def disconnect(self) -> bool:
        """Release the probe from JTAG mode."""
        if not self.connected:
            return True
        self._exchange(bytes([Command.DISCONNECT]))
        self.connected = False
        return True

    def reset_target(self) -> bool:
        """Ask the probe to reset the target."""
        self._exchange(bytes([Command.RESET_TARGET]))
        return True

    def read_info(self, info: int) -> bytes:
        """Return the data of an INFO request (empty when not available)."""
        reply = self._exchange(bytes([Command.INFO, info]))
        return reply[2:2 + reply[1]]

    def _display_info(self, info: InfoId, kind: InfoType) -> None:
        try:
            data = self.read_info(info)
        except DapError as exc:
            print(f"received error {exc} for command {int(info)}")
            return
        name = _INFO_NAMES[info]

        if not data:
            if info == InfoId.VID:
                print_info(f"\t{name}: {self.device.vendor_id:04x}")
            elif info == InfoId.PID:
                print_info(f"\t{name}: {self.device.product_id:04x}")
            elif info == InfoId.SERNUM:
                if self.device.serial_number:
                    print_info(f"\t{name}: {self.device.serial_number}")
                else:
                    print_error(f"\t{name} : NA")
            elif info in (InfoId.TARGET_DEV_NAME, InfoId.TARGET_DEV_VENDOR):
                return
            else:
                print_error(f"\t{name} : NA")
            return

        if kind is not InfoType.STRING and len(data) != kind.value:
            print(f"Error: Waiting for {kind.value}Byte received {len(data)}")
            print(" ".join(f"{b:02x}" for b in data))
            return

        print_info(f"\t{name} : ", eol=False)
        if kind is InfoType.BYTE:
            print(f"{data[0]:02x}")
        elif kind is InfoType.STRING:
            print(data.decode("latin-1").rstrip("\x00"))
        else:
            print(int.from_bytes(data, "little"))

    def set_clk_freq(self, clk_hz: int) -> int:
        """Configure the maximum JTAG clock and return it."""
        self.clk_hz = clk_hz
        try:
            self._command(Command.SWJ_CLK, (clk_hz & 0xFFFFFFFF).to_bytes(4, "little"))
        except DapError as exc:
            print_error("Failed to configure clk frequency")
            raise DapError(f"Failed to configure clk frequency: {exc}") from exc
        if self.verbose:
            print_success("clk frequency conf done")
        return clk_hz

    def write_tms(self, tms: bytes, length: int, flush_buffer: bool = False) -> int:
        """Queue ``length`` TMS bits (LSB first); sent when full or flushed."""
        if length == 0:
            if flush_buffer:
                self.flush()
            return 0
        for i in range(length):
            if len(self._tms_bits) == _MAX_TMS_BITS:
                self.flush()
            self._tms_bits.append(_bit(tms, i))
        if flush_buffer or len(self._tms_bits) == _MAX_TMS_BITS:
            self.flush()
        return length

    def flush(self) -> int:
        """Send the queued TMS bits; return how many were sent."""
        bits = self._tms_bits
        if not bits:
            return 0
        self._tms_bits = []
        packed = bytearray((len(bits) + 7) // 8)
        for i, value in enumerate(bits):
            if value:
                packed[i >> 3] |= 1 << (i & 0x07)
        self._command(Command.SWJ_SEQUENCE, bytes([len(bits) & 0xFF]) + packed)
        return len(bits)

    def _jtag_sequence(
        self,
        tms: int,
        tx: Optional[bytes],
        length: int,
        end: bool,
        capture: bool,
    ) -> Optional[bytes]:
        real_len = length - (1 if end else 0)
        rx = bytearray((length + 7) // 8) if capture else None
        capture_flag = _SEQ_TDO_CAPTURE if capture else 0
        base = capture_flag | ((tms & 0x01) << 6)

        self.flush()

        body = bytearray()
        seq_num = 0
        byte_to_read = 0
        tx_offset = 0
        rx_offset = 0
        rest = real_len

        while rest > 0:
            if rest >= 64:
                nbytes, nbits = 8, 64
            else:
                nbytes, nbits = (rest + 7) // 8, rest
            pos = len(body) + 1
            if nbytes + 1 + pos > _SEQ_BUFFER_END:
                nbytes = _SEQ_BUFFER_END - pos - 1
                nbits = nbytes * 8

            body.append(base | (nbits & 0x3F))
            body += _chunk(tx, tx_offset, nbytes)
            tx_offset += nbytes
            rest -= nbits
            seq_num += 1
            byte_to_read += nbytes

            if (not end and rest == 0) or seq_num == _MAX_SEQUENCES:
                data = self._command(
                    Command.JTAG_SEQUENCE, bytes([seq_num]) + body
                )
                if rx is not None:
                    _store(rx, rx_offset, data[:byte_to_read])
                    rx_offset += byte_to_read
                body.clear()
                seq_num = 0
                byte_to_read = 0

        if end:
            # the last bit goes alone, with TMS toggled
            body.append(capture_flag | ((0 if tms else 1) << 6) | 1)
            body.append(1 if tx is not None and _bit(tx, real_len) else 0)
            data = self._command(
                Command.JTAG_SEQUENCE, bytes([seq_num + 1]) + body
            )
            if rx is not None:
                _store(rx, rx_offset, data[:byte_to_read])
                mask = 1 << (real_len & 0x07)
                if data[byte_to_read] & 0x01:
                    rx[real_len >> 3] |= mask
                else:
                    rx[real_len >> 3] &= ~mask & 0xFF

        return bytes(rx) if rx is not None else None

    def write_tdi(
        self,
        tx: Optional[bytes],
        length: int,
        end: bool = False,
        capture: bool = False,
    ) -> Optional[bytes]:
        """Shift ``length`` TDI bits (LSB first).

        With ``end`` TMS goes high with the last bit. With ``capture``
        the TDO bits are returned.
        """
        return self._jtag_sequence(0, tx, length, end, capture)

    def toggle_clk(self, tms: int, tdi: int, clk_len: int) -> int:
        """Generate ``clk_len`` clock cycles with constant TMS and TDI."""
        tx = bytes([0xFF if tdi else 0x00]) * ((clk_len + 7) // 8)
        self._jtag_sequence(tms, tx, clk_len, False, False)
        return clk_len

    def get_buffer_size(self) -> int:
        """The probe buffer size is not used."""
        return 0

    def is_full(self) -> bool:
        """The probe never reports a full buffer."""
        return False