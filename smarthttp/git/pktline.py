"""Git pkt-line framing.

A pkt-line is a 4-byte lowercase hex length prefix followed by the payload.
The length includes the 4-byte prefix itself; `0000` is the flush-pkt.

Protocol Reference:
- https://git-scm.com/docs/protocol-common#_pkt_line_format
- https://git-scm.com/docs/protocol-capabilities#_side_band_side_band_64k
"""

from typing import Optional, Union

FLUSH_PKT = b"0000"

# Max payload is 65520 - 4; not enforced here, callers keep payloads small
MAX_PKT_PAYLOAD = 65516

SIDEBAND_DATA = 1
SIDEBAND_PROGRESS = 2
SIDEBAND_ERROR = 3


def encode(payload: Union[str, bytes]) -> bytes:
    """Format a payload as a pkt-line."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    length = len(payload) + 4
    return f"{length:04x}".encode() + payload


def flush() -> bytes:
    """Return a flush packet (0000)."""
    return FLUSH_PKT


def is_flush(chunk: bytes) -> bool:
    """Check whether a discrete chunk is exactly the flush packet."""
    return len(chunk) == 4 and bytes(chunk) == FLUSH_PKT


def sideband(channel: int, payload: Union[str, bytes]) -> bytes:
    """Wrap a payload into a single pkt-line on a sideband channel."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return encode(bytes([channel]) + payload)


def decode(line: bytes) -> Optional[bytes]:
    """Return the payload of the pkt-line at the start of `line`.

    Returns None for a flush packet.
    """
    length = int(line[:4], 16)
    if length == 0:
        return None
    if length < 4 or length > len(line):
        raise ValueError(f"Invalid pkt-line length: {line[:4]!r}")
    return line[4:length]
