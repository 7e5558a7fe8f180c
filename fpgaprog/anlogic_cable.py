"""JTAG over the Anlogic USB download cable."""

from __future__ import annotations

from typing import Optional, Protocol

from .display import print_warn

VID = 0x0547
PID = 0x1002

CONF_EP = 0x08
WRITE_EP = 0x06
READ_EP = 0x82

FREQ_CMD = 0x01

TCK_PIN = 1 << 2
TDI_PIN = 1 << 1
TMS_PIN = 1 << 0

_PACKET_SIZE = 512
_TIMEOUT_MS = 1000

# (minimum frequency, register code) from fastest to slowest
_FREQUENCIES = (
    (6_000_000, 0x00),
    (3_000_000, 0x04),
    (1_000_000, 0x14),
    (600_000, 0x24),
    (400_000, 0x38),
    (200_000, 0x70),
    (100_000, 0xE8),
    (90_000, 0xFF),
)


class CableError(RuntimeError):
    """Raised when a USB transfer with the cable fails."""


class UsbTransport(Protocol):
    """Bulk transfers to an opened and claimed USB device.

    Both methods raise OSError when the transfer fails.
    """

    def write(self, endpoint: int, data: bytes, timeout_ms: int) -> int:
        ...

    def read(self, endpoint: int, length: int, timeout_ms: int) -> bytes:
        ...


def select_frequency(clk_hz: int) -> tuple[int, int]:
    """Return the register code and the real frequency for ``clk_hz``.

    Requests above 6 MHz are limited to 6 MHz. Below the slowest step the
    code stays at its default and the requested frequency is reported.
    """
    clk_hz = min(clk_hz, 6_000_000)
    for minimum, code in _FREQUENCIES:
        if clk_hz >= minimum:
            return code, minimum
    return 0x00, clk_hz


class AnlogicCable:
    """Bit-banged JTAG: every TCK cycle is one byte of a 512-byte packet."""

    def __init__(self, transport: UsbTransport, clk_hz: int) -> None:
        self.transport = transport
        self.clk_hz = 0
        self.set_clk_freq(clk_hz)

    def set_clk_freq(self, clk_hz: int) -> int:
        """Configure the cable clock and return the frequency really used."""
        if clk_hz > 6_000_000:
            print_warn("Anlogic JTAG probe limited to 6MHz")
        code, real_hz = select_frequency(clk_hz)
        try:
            self.transport.write(CONF_EP, bytes([FREQ_CMD, code]), _TIMEOUT_MS)
        except OSError as exc:
            raise CableError(f"setClkFreq: usb bulk write failed {exc}") from exc
        print_warn(
            f"Jtag frequency : requested {clk_hz}Hz -> real {real_hz}Hz"
        )
        self.clk_hz = real_hz
        return real_hz

    def _exchange(self, packet: bytes) -> bytes:
        """Send one packet; every write is followed by a read of the same size."""
        try:
            self.transport.write(WRITE_EP, packet, _TIMEOUT_MS)
        except OSError as exc:
            raise CableError(f"write: usb bulk write failed {exc}") from exc
        try:
            return self.transport.read(READ_EP, len(packet), _TIMEOUT_MS)
        except OSError as exc:
            raise CableError(f"write: usb bulk read failed {exc}") from exc

    @staticmethod
    def _pad(buf: bytearray) -> bytes:
        if len(buf) < _PACKET_SIZE:
            fill = buf[-1] | TCK_PIN
            buf.extend([fill] * (_PACKET_SIZE - len(buf)))
        return bytes(buf)

    @staticmethod
    def _bit(data: bytes, index: int) -> bool:
        return bool(data[index >> 3] & (1 << (index & 0x07)))

    def write_tms(self, tms: bytes, length: int, flush_buffer: bool = False) -> int:
        """Shift ``length`` TMS bits (LSB first) and return ``length``."""
        base = TCK_PIN << 4
        for start in range(0, length, _PACKET_SIZE):
            count = min(_PACKET_SIZE, length - start)
            buf = bytearray(
                base | (TMS_PIN | (TMS_PIN << 4) if self._bit(tms, start + i) else 0)
                for i in range(count)
            )
            self._exchange(self._pad(buf))
        return length

    def toggle_clk(self, tms: int, tdi: int, clk_len: int) -> int:
        """Generate ``clk_len`` clock cycles with constant TMS and TDI."""
        mask = (TMS_PIN if tms else 0) | (TDI_PIN if tdi else 0)
        mask |= ((mask & 0x0F) << 4) | (TCK_PIN << 4)
        last = mask | TCK_PIN
        remaining = clk_len
        while remaining > 0:
            count = min(_PACKET_SIZE, remaining)
            packet = bytes([mask] * count + [last] * (_PACKET_SIZE - count))
            self._exchange(packet)
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

        With ``end`` TMS is raised on the last bit of a short final packet.
        With ``capture`` the TDO bits are returned, LSB first.
        """
        base = TCK_PIN << 4
        rx = bytearray((length + 7) // 8) if capture else None

        for start in range(0, length, _PACKET_SIZE):
            count = min(_PACKET_SIZE, length - start)
            if tx is None:
                buf = bytearray([base] * count)
            else:
                buf = bytearray(
                    base | (TDI_PIN | (TDI_PIN << 4)
                            if self._bit(tx, start + i) else 0)
                    for i in range(count)
                )
            if count < _PACKET_SIZE and end:
                buf[-1] |= (TMS_PIN << 4) | TMS_PIN
            reply = self._exchange(self._pad(buf))

            if rx is not None:
                offset = start >> 3
                for i in range(count):
                    pos = offset + (i >> 3)
                    rx[pos] >>= 1
                    if i < len(reply) and (reply[i] >> 4) & 0x01:
                        rx[pos] |= 0x80
        return bytes(rx) if rx is not None else None

    def flush(self) -> int:
        """Nothing is buffered: every call is sent immediately."""
        return 0

    def get_buffer_size(self) -> int:
        """The cable has no host-side buffer."""
        return 0

    def is_full(self) -> bool:
        """The cable never reports a full buffer."""
        return False