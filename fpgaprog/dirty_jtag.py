"""JTAG over a DirtyJTAG USB probe."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum, IntFlag
from typing import Optional

from .anlogic_cable import UsbTransport
from .display import print_error, print_info, print_warn

VID = 0x1209
PID = 0xC0CA

INTERFACE = 0
WRITE_EP = 0x01
READ_EP = 0x82

MAX_FREQUENCY = 16_000_000

_TIMEOUT_MS = 1000
_TMS_PACKET_SIZE = 64
_INFO_READ_SIZE = 64


class Command(IntEnum):
    """Probe command opcodes."""

    STOP = 0x00
    INFO = 0x01
    FREQ = 0x02
    XFER = 0x03
    SETSIG = 0x04
    GETSIG = 0x05
    CLK = 0x06


class Modifier(IntFlag):
    """Command modifiers understood from protocol version 2 on."""

    EXTEND_LENGTH = 0x40
    NO_READ = 0x80


class Signal(IntFlag):
    """Pin bits used by SETSIG, GETSIG and CLK."""

    TCK = 1 << 1
    TDI = 1 << 2
    TDO = 1 << 3
    TMS = 1 << 4


@dataclass(frozen=True)
class _VersionOptions:
    no_read: int
    max_bits: int


# indexed by protocol version (0 stands for an unknown firmware)
_VERSION_OPTIONS = (
    _VersionOptions(0, 240),
    _VersionOptions(0, 240),
    _VersionOptions(Modifier.NO_READ, 496),
    _VersionOptions(Modifier.NO_READ, 4000),
)

_BANNERS = {b"DJTAG1\n": 1, b"DJTAG2\n": 2, b"DJTAG3\n": 3}


class DirtyJtagError(RuntimeError):
    """Raised when a USB exchange with the probe fails."""


def _bit(data: bytes, index: int) -> bool:
    return bool(data[index >> 3] & (1 << (index & 0x07)))


class DirtyJtag:
    """Drive a DirtyJTAG probe through an opened USB transport."""

    def __init__(
        self, transport: UsbTransport, clk_hz: int, verbose: int = 0
    ) -> None:
        self.transport = transport
        self.verbose = verbose
        self.version = 0
        self.clk_hz = 0
        self.get_version()
        self.set_clk_freq(clk_hz)

    def _write(self, data: bytes, context: str) -> int:
        try:
            return self.transport.write(WRITE_EP, bytes(data), _TIMEOUT_MS)
        except OSError as exc:
            raise DirtyJtagError(f"{context}: usb bulk write failed {exc}") from exc

    def _read(self, length: int, context: str) -> bytes:
        """Read until the probe returns a non-empty answer."""
        while True:
            try:
                data = self.transport.read(READ_EP, length, _TIMEOUT_MS)
            except OSError as exc:
                raise DirtyJtagError(
                    f"{context}: usb bulk read failed {exc}"
                ) from exc
            if data:
                return data

    def get_version(self) -> int:
        """Ask the firmware for its protocol version (0 when unknown)."""
        try:
            self._write(bytes([Command.INFO, Command.STOP]), "getVersion")
            answer = self._read(_INFO_READ_SIZE, "getVersion: read")
        except DirtyJtagError as exc:
            print_error(str(exc))
            return self.version
        self.version = _BANNERS.get(bytes(answer[:7]), 0)
        if self.version == 0:
            print_error("dirtyJtag version unknown")
        return self.version

    def set_clk_freq(self, clk_hz: int) -> int:
        """Configure TCK, limited to 16 MHz, and return the frequency used."""
        requested = clk_hz
        if clk_hz > MAX_FREQUENCY:
            print_warn("DirtyJTAG probe limited to 16000kHz")
            clk_hz = MAX_FREQUENCY
        self.clk_hz = clk_hz
        print_info(
            f"Jtag frequency : requested {requested}Hz -> real {clk_hz}Hz"
        )
        khz = clk_hz // 1000
        self._write(
            bytes([Command.FREQ, (khz >> 8) & 0xFF, khz & 0xFF, Command.STOP]),
            "setClkFreq",
        )
        return clk_hz

    def write_tms(self, tms: bytes, length: int, flush_buffer: bool = False) -> int:
        """Clock ``length`` TMS bits (LSB first) and return ``length``."""
        if length == 0:
            return 0
        mask = Signal.TCK | Signal.TMS
        buf = bytearray()
        for i in range(length):
            val = Signal.TMS if _bit(tms, i) else 0
            buf += bytes([Command.SETSIG, mask, val,
                          Command.SETSIG, mask, val | Signal.TCK])
            last = i == length - 1
            if len(buf) + 9 >= _TMS_PACKET_SIZE or last:
                if last:
                    # falling edge of TCK
                    buf += bytes([Command.SETSIG, mask, val])
                buf.append(Command.STOP)
                self._write(buf, "writeTMS")
                buf = bytearray()
        return length

    def toggle_clk(self, tms: int, tdi: int, clk_len: int) -> int:
        """Generate ``clk_len`` clock cycles with constant TMS and TDI."""
        signals = (Signal.TMS if tms else 0) | (Signal.TDI if tdi else 0)
        remaining = clk_len
        while remaining > 0:
            count = min(64, remaining)
            self._write(
                bytes([Command.CLK, signals, count, Command.STOP]), "toggleClk"
            )
            remaining -= count
        return clk_len

    def write_tdi(
        self,
        tx: Optional[bytes],
        length: int,
        end: bool = False,
        capture: bool = False,
    ) -> Optional[bytes]:
        """Shift ``length`` TDI bits (LSB first).

        With ``end`` the last bit is sent with TMS high. With ``capture``
        the TDO bits are returned.
        """
        real_bit_len = length - (1 if end else 0)
        byte_len = (length + 7) // 8
        if tx is None:
            tx_copy = bytes(byte_len)
        else:
            tx_copy = bytes(tx[:byte_len]).ljust(byte_len, b"\x00")
        rx = bytearray(byte_len) if capture else None

        options = _VERSION_OPTIONS[self.version]
        cmd = Command.XFER | (0 if capture else options.no_read)
        tx_offset = 0

        while real_bit_len > 0:
            bits = min(real_bit_len, options.max_bits)
            byte_count = (bits + 7) // 8
            if self.version == 3:
                header = bytes([cmd, (bits >> 8) & 0xFF, bits & 0xFF])
            elif bits > 255:
                cmd |= Modifier.EXTEND_LENGTH
                header = bytes([cmd, bits - 256])
            else:
                cmd &= ~Modifier.EXTEND_LENGTH & 0xFF
                header = bytes([cmd, bits])

            chunk = tx_copy[tx_offset:]
            payload = bytearray(byte_count)
            for i in range(bits):
                if _bit(chunk, i):
                    payload[i >> 3] |= 0x80 >> (i & 0x07)

            packet = header + bytes(payload)
            written = self._write(packet, "writeTDI: fill")
            if written != len(packet):
                raise DirtyJtagError(
                    "writeTDI: fill: usb bulk write failed "
                    f"actual length: {written}"
                )

            if capture or self.version <= 1:
                answer = self._read(
                    byte_count if bits > 255 else 32, "writeTDI: read"
                )
                if len(answer) < byte_count:
                    raise DirtyJtagError("writeTDI: read: short answer")
                if rx is not None:
                    for i in range(bits):
                        pos = tx_offset + (i >> 3)
                        rx[pos] = (rx[pos] >> 1) | (
                            (answer[i >> 3] << (i & 0x07)) & 0x80
                        )

            real_bit_len -= bits
            tx_offset += byte_count

        if end:
            self._send_last_bit(tx_copy, length - 1, rx)
        return bytes(rx) if rx is not None else None

    def _send_last_bit(
        self, tx: bytes, pos: int, rx: Optional[bytearray]
    ) -> None:
        last_bit = Signal.TDI if _bit(tx, pos) else 0
        if rx is None:
            self.toggle_clk(Signal.TMS, last_bit, 1)
            return

        mask = Signal.TMS | Signal.TDI | Signal.TCK
        val = Signal.TMS | last_bit
        buf = bytearray([Command.SETSIG, mask, val,
                         Command.SETSIG, mask, val | Signal.TCK,
                         Command.GETSIG, Command.STOP])
        self._write(buf, "writeTDI: last bit error")
        sig = self._read(1, "writeTDI: last bit error")[0]
        rx[pos >> 3] >>= 1
        if sig & Signal.TDO:
            rx[pos >> 3] |= 1 << (pos & 0x07)
        buf[2] &= ~Signal.TCK & 0xFF
        buf[3] = Command.STOP
        self._write(buf[:4], "writeTDI: last bit error")

    def flush(self) -> int:
        """Nothing is buffered: every call is sent immediately."""
        return 0

    def get_buffer_size(self) -> int:
        """The probe has no host-side buffer."""
        return 0

    def is_full(self) -> bool:
        """The probe never reports a full buffer."""
        return False