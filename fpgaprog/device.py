"""Base class for programmable devices."""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import IntEnum
from typing import Any

from .display import print_error


class ProgMode(IntEnum):
    """How a device is going to be accessed."""

    NONE = 0
    SPI = 1
    FLASH = 1
    MEM = 2
    READ = 3


class ProgType(IntEnum):
    """What the user asked to do."""

    WR_SRAM = 0
    WR_FLASH = 1
    RD_FLASH = 2
    PRG_NONE = 3


def file_extension_for(filename: str, file_type: str = "") -> str:
    """Return the bitstream type for ``filename``.

    ``file_type`` overrides the extension. A name without extension is
    ``raw``; for a compressed file the extension before ``.gz`` is used.
    """
    offset = filename.rfind(".")
    extension = filename[offset + 1:]
    if file_type:
        return file_type
    if not filename:
        return extension
    if offset == -1:
        return "raw"
    if extension[:2] == "gz":
        offset2 = filename.rfind(".", 0, offset)
        if offset2 == -1:
            raise ValueError(
                f"file {filename} is compressed\n"
                "but can't determine real type\n"
                "please add correct extension or use --file-type"
            )
        return filename[offset2 + 1:offset]
    return extension


class Device(ABC):
    """A target that can be programmed through a JTAG chain or another link."""

    def __init__(
        self,
        jtag: Any,
        filename: str,
        file_type: str = "",
        verify: bool = False,
        verbose: int = 0,
    ) -> None:
        self.jtag = jtag
        self.filename = filename
        self.file_extension = file_extension_for(filename, file_type)
        self.mode = ProgMode.NONE
        self.verify = verify
        self.verbose = verbose > 0
        self.quiet = verbose < 0
        if verbose > 0:
            print("File type : " + self.file_extension)

    @abstractmethod
    def program(self, offset: int, unprotect_flash: bool) -> None:
        """Load the bitstream into the device or its flash."""

    def dump_flash(self, base_addr: int, length: int) -> bool:
        """Read flash content; unsupported unless a subclass provides it."""
        print_error("dump flash not supported")
        return False

    @abstractmethod
    def protect_flash(self, length: int) -> bool:
        """Protect the first ``length`` bytes of the flash."""

    @abstractmethod
    def unprotect_flash(self) -> bool:
        """Remove flash write protection."""

    @abstractmethod
    def id_code(self) -> int:
        """Return the device IDCODE."""

    def reset(self) -> None:
        """Reset the device; unsupported unless a subclass provides it."""
        raise RuntimeError("reset is not supported by this device")