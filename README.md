# fpgaprog

Building blocks for programming FPGAs over JTAG and USB DFU:

- `fpgaprog.anlogic_cable.AnlogicCable`, `fpgaprog.dirty_jtag.DirtyJtag` and
  `fpgaprog.cmsis_dap.CmsisDAP` drive three JTAG probes. Each one works over
  a transport object that you supply.
- `fpgaprog.dfu_protocol` holds the data structures of the USB Device
  Firmware Upgrade protocol.
- `fpgaprog.device` provides the `Device` base class, the `ProgMode` and
  `ProgType` enums, and file-type detection.
- `fpgaprog.display` prints coloured status messages.

The package has no dependencies beyond the standard library.

## Installation

```
pip install .
```

## Transports

The probe drivers do not open USB devices themselves. You pass them an
object that is already opened and claimed.

`AnlogicCable` and `DirtyJtag` take an object that follows the
`fpgaprog.anlogic_cable.UsbTransport` protocol:

- `write(endpoint, data, timeout_ms)` returns the number of bytes written.
- `read(endpoint, length, timeout_ms)` returns the bytes read.

Both methods raise `OSError` when a transfer fails. The drivers turn that into
`CableError` or `DirtyJtagError`.

`CmsisDAP` takes an object that follows `fpgaprog.cmsis_dap.HidDevice`:

- the attributes `vendor_id`, `product_id` and `serial_number`;
- `write(data)`;
- `read(length, timeout_ms)`, which returns empty bytes on timeout.

Failures raise `DapError`.

## JTAG drivers

Each driver has the same set of methods:

- `set_clk_freq(clk_hz)`
- `write_tms(tms, length, flush_buffer)`
- `write_tdi(tx, length, end, capture)`
- `toggle_clk(tms, tdi, clk_len)`
- `flush()`

Bits are given LSB first. With `end=True`, TMS goes high together with the
last TDI bit. With `capture=True`, `write_tdi` returns the TDO bits as
`bytes`; otherwise it returns `None`.

```python
from fpgaprog.anlogic_cable import AnlogicCable, select_frequency

class LoopbackTransport:
    def write(self, endpoint, data, timeout_ms):
        return len(data)

    def read(self, endpoint, length, timeout_ms):
        return bytes(length)

cable = AnlogicCable(LoopbackTransport(), 2_500_000)
cable.clk_hz                         # 1000000
cable.write_tdi(b"\xa5", 8, end=True, capture=True)

select_frequency(10_000_000)         # (0x00, 6000000)
```

Details of each driver:

- **Anlogic cable.** Frequencies are limited to 6 MHz and rounded down to the
  steps the cable supports.
- **DirtyJTAG.** The driver reads the firmware's protocol version (1 to 3)
  when it is created. It adapts its transfer sizes to that version and
  limits TCK to 16 MHz.
- **CMSIS-DAP.** The driver checks that the probe supports JTAG and connects
  in JTAG mode. It queues TMS bits until 256 are pending or `flush` is
  called. It can be used as a context manager, which disconnects on exit.

## DFU protocol structures

`fpgaprog.dfu_protocol` provides:

- `DFUState` and `DFUStatusCode`, with their display names via `.label`, and
  `state_label` / `status_label` for raw values;
- `DFUStatus.from_bytes` for the 6-byte GETSTATUS payload;
- `DFUDescriptor.from_bytes` and `parse_dfu_descriptor`, which find the
  functional descriptor in an interface's extra bytes;
- `DFUInterface`, which describes a DFU capable interface.

```python
from fpgaprog.dfu_protocol import DFUStatus, DFUState

status = DFUStatus.from_bytes(bytes([0, 0x10, 0, 0, 2, 0]))
status.poll_timeout                  # 16
DFUState(status.state).label         # "STATE_dfuIDLE"
```

## File type detection

```python
from fpgaprog.device import file_extension_for

file_extension_for("design.rbf.gz", "")   # "rbf"
file_extension_for("image", "")           # "raw"
file_extension_for("top.bit", "svf")      # "svf"
```

An explicit file type always wins. A compressed name without an inner
extension raises `ValueError`.

## What the package does not do

- It has no command-line program.
- It does not parse bitstream files.
- It does not open USB or HID devices. You provide the transports.
- It offers no ready-made DFU downloader. Only the protocol structures are
  included.
- `Device` is an abstract base class. No concrete FPGA family is included.

## Running the tests

```
pip install .[test]
pytest
```