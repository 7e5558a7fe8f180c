"""JTAG probe drivers, DFU protocol structures, a device base class and console helpers."""

__version__ = "0.1.0"