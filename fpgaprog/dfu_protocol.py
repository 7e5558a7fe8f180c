"""Data structures of the USB Device Firmware Upgrade (DFU) protocol."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Optional

DFU_FUNCTIONAL_DESCRIPTOR_TYPE = 0x21

_DESCRIPTOR = struct.Struct("<BBBHHH")
_STATUS_SIZE = 6


class DFUState(IntEnum):
    """Device states (DFU 1.1, section 6.1.2)."""

    APP_IDLE = 0
    APP_DETACH = 1
    DFU_IDLE = 2
    DFU_DNLOAD_SYNC = 3
    DFU_DNBUSY = 4
    DFU_DNLOAD_IDLE = 5
    DFU_MANIFEST_SYNC = 6
    DFU_MANIFEST = 7
    DFU_MANIFEST_WAIT_RESET = 8
    DFU_UPLOAD_IDLE = 9
    DFU_ERROR = 10

    @property
    def label(self) -> str:
        """The state name as shown to the user."""
        return _STATE_LABELS[self]


_STATE_LABELS = {
    DFUState.APP_IDLE: "STATE_appIDLE",
    DFUState.APP_DETACH: "STATE_appDETACH",
    DFUState.DFU_IDLE: "STATE_dfuIDLE",
    DFUState.DFU_DNLOAD_SYNC: "STATE_dfuDNLOAD-SYNC",
    DFUState.DFU_DNBUSY: "STATE_dfuDNBUSY",
    DFUState.DFU_DNLOAD_IDLE: "STATE_dfuDNLOAD-IDLE",
    DFUState.DFU_MANIFEST_SYNC: "STATE_dfuMANIFEST-SYNC",
    DFUState.DFU_MANIFEST: "STATE_dfuMANIFEST",
    DFUState.DFU_MANIFEST_WAIT_RESET: "STATE_dfuMANIFEST-WAIT-RESET",
    DFUState.DFU_UPLOAD_IDLE: "STATE_dfuUPLOAD-IDLE",
    DFUState.DFU_ERROR: "STATE_dfuERROR",
}


class DFUStatusCode(IntEnum):
    """Status codes returned by GETSTATUS (DFU 1.1, section 6.1.2)."""

    OK = 0x00
    ERR_TARGET = 0x01
    ERR_FILE = 0x02
    ERR_WRITE = 0x03
    ERR_ERASE = 0x04
    ERR_CHECK_ERASED = 0x05
    ERR_PROG = 0x06
    ERR_VERIFY = 0x07
    ERR_ADDRESS = 0x08
    ERR_NOTDONE = 0x09
    ERR_FIRMWARE = 0x0A
    ERR_VENDOR = 0x0B
    ERR_USBR = 0x0C
    ERR_POR = 0x0D
    ERR_UNKNOWN = 0x0E
    ERR_STALLEDPKT = 0x0F

    @property
    def label(self) -> str:
        """The status name as shown to the user."""
        return _STATUS_LABELS[self]


_STATUS_LABELS = {
    DFUStatusCode.OK: "STATUS_OK",
    DFUStatusCode.ERR_TARGET: "STATUS_errTARGET",
    DFUStatusCode.ERR_FILE: "STATUS_errFILE",
    DFUStatusCode.ERR_WRITE: "STATUS_errWRITE",
    DFUStatusCode.ERR_ERASE: "STATUS_errERASE",
    DFUStatusCode.ERR_CHECK_ERASED: "STATUS_errCHECK_ERASED",
    DFUStatusCode.ERR_PROG: "STATUS_errPROG",
    DFUStatusCode.ERR_VERIFY: "STATUS_errVERIFY",
    DFUStatusCode.ERR_ADDRESS: "STATUS_errADDRESS",
    DFUStatusCode.ERR_NOTDONE: "STATUS_errNOTDONE",
    DFUStatusCode.ERR_FIRMWARE: "STATUS_errFIRMWARE",
    DFUStatusCode.ERR_VENDOR: "STATUS_errVENDOR",
    DFUStatusCode.ERR_USBR: "STATUS_errUSBR",
    DFUStatusCode.ERR_POR: "STATUS_errPOR",
    DFUStatusCode.ERR_UNKNOWN: "STATUS_errUNKNOWN",
    DFUStatusCode.ERR_STALLEDPKT: "STATUS_errSTALLEDPKT",
}


def state_label(value: int) -> str:
    """Return the name of a state value, or a placeholder for unknown ones."""
    try:
        return DFUState(value).label
    except ValueError:
        return f"unknown state {value}"


def status_label(value: int) -> str:
    """Return the name of a status value, or a placeholder for unknown ones."""
    try:
        return DFUStatusCode(value).label
    except ValueError:
        return f"unknown status {value}"


@dataclass(frozen=True)
class DFUStatus:
    """Payload of a GETSTATUS answer."""

    status: int
    poll_timeout: int
    state: int
    string_index: int

    @classmethod
    def from_bytes(cls, data: bytes) -> "DFUStatus":
        """Decode the 6-byte GETSTATUS payload."""
        if len(data) < _STATUS_SIZE:
            raise ValueError(
                f"DFU status needs {_STATUS_SIZE} bytes, got {len(data)}"
            )
        return cls(
            status=data[0],
            poll_timeout=int.from_bytes(bytes(data[1:4]), "little"),
            state=data[4],
            string_index=data[5],
        )


@dataclass(frozen=True)
class DFUDescriptor:
    """DFU functional descriptor (9 bytes, little endian)."""

    length: int
    descriptor_type: int
    attributes: int
    detach_timeout: int
    transfer_size: int
    dfu_version: int

    SIZE = _DESCRIPTOR.size

    @classmethod
    def from_bytes(cls, data: bytes) -> "DFUDescriptor":
        """Decode a functional descriptor; short data is padded with zeros."""
        raw = bytes(data[:_DESCRIPTOR.size]).ljust(_DESCRIPTOR.size, b"\x00")
        return cls(*_DESCRIPTOR.unpack(raw))

    @property
    def can_download(self) -> bool:
        return bool(self.attributes & (1 << 0))

    @property
    def can_upload(self) -> bool:
        return bool(self.attributes & (1 << 1))

    @property
    def manifestation_tolerant(self) -> bool:
        return bool(self.attributes & (1 << 2))

    @property
    def will_detach(self) -> bool:
        return bool(self.attributes & (1 << 3))


def parse_dfu_descriptor(extra: bytes) -> Optional[DFUDescriptor]:
    """Find the DFU functional descriptor in an interface's extra bytes.

    Return None when the area is too small or holds no such descriptor.
    """
    if len(extra) < _DESCRIPTOR.size:
        return None
    for start in range(len(extra) - 1):
        if extra[start + 1] == DFU_FUNCTIONAL_DESCRIPTOR_TYPE:
            return DFUDescriptor.from_bytes(extra[start:])
    return None


@dataclass
class DFUInterface:
    """A DFU capable interface found on a USB device."""

    vid: int
    pid: int
    bus: int
    interface: int
    altsetting: int
    device: int
    descriptor: DFUDescriptor
    max_packet_size0: int = 0
    path: tuple[int, ...] = field(default_factory=tuple)
    product: str = ""
    interface_name: str = ""

    @property
    def path_string(self) -> str:
        """Port numbers joined with dots."""
        return ".".join(str(port) for port in self.path)