"""Recover ref/commit data from the negotiation lines of a request body.

receive-pack bodies start with ref-update commands:
    <pkt-len><old-id> <new-id> refs/heads/<name>\\0<capabilities>
upload-pack bodies start with want lines:
    <pkt-len>want <id> <capabilities>
"""

import logging
import re
from typing import Callable, Dict, List, Optional

from smarthttp.core import NegotiationRecord, ServiceKind

logger = logging.getLogger(__name__)

PKT_LENGTH_RE = re.compile(r"[0-9a-f]{4}", re.IGNORECASE)

# One command line, matched inside a single pkt-line payload. The ref name ends
# at a space, "00", the NUL before the capabilities, or the end of the line.
# Names containing "00" are cut short there.
COMMAND_RE = re.compile(
    r"([0-9a-f]{40,}) ([0-9a-f]{40,}) (refs/(heads|tags)/(.*?))(?: |00|\x00|\n|$)",
    re.IGNORECASE,
)
# Same command, searched over a whole body that is not pkt-line framed
RECEIVE_PACK_RE = re.compile(
    r"[0-9a-f]{4}([0-9a-f]{40,}) ([0-9a-f]{40,}) (refs/(heads|tags)/(.*?))(?: |00|\x00)",
    re.IGNORECASE,
)
UPLOAD_PACK_RE = re.compile(r"^\S+ ([0-9a-f]{40,})", re.IGNORECASE)


def _pkt_payloads(text: str) -> Optional[List[str]]:
    """Split the command section of a body into pkt-line payloads.

    Stops at the first flush-pkt, the pack data follows it. Returns None when
    the body is not pkt-line framed.
    """
    payloads = []
    offset = 0
    while offset < len(text):
        header = text[offset : offset + 4]
        if not PKT_LENGTH_RE.fullmatch(header):
            return None
        length = int(header, 16)
        if length == 0:
            break
        if length < 4 or offset + length > len(text):
            return None
        payloads.append(text[offset + 4 : offset + length])
        offset += length
    return payloads


def _command_record(last, commit, ref, kind, name) -> NegotiationRecord:
    if kind.lower() == "heads":
        return NegotiationRecord(last=last, commit=commit, ref=ref, branch=name)
    return NegotiationRecord(last=last, commit=commit, ref=ref, tag=name)


def _parse_receive_pack(text: str) -> List[NegotiationRecord]:
    records = []
    # matching line by line keeps a capability list ending in a hex digit
    # from running into the length prefix of the next command
    for payload in _pkt_payloads(text) or []:
        match = COMMAND_RE.match(payload)
        if match:
            records.append(_command_record(*match.groups()))
    if records:
        return records
    return [_command_record(*match.groups()) for match in RECEIVE_PACK_RE.finditer(text)]


def _parse_upload_pack(text: str) -> List[NegotiationRecord]:
    match = UPLOAD_PACK_RE.match(text)
    if not match:
        return []
    return [NegotiationRecord(commit=match.group(1))]


_PARSERS: Dict[ServiceKind, Callable[[str], List[NegotiationRecord]]] = {
    ServiceKind.RECEIVE_PACK: _parse_receive_pack,
    ServiceKind.UPLOAD_PACK: _parse_upload_pack,
}


def parse_negotiation(service: ServiceKind, data: bytes) -> List[NegotiationRecord]:
    """Parse the negotiation lines of a decoded request body.

    Returns one record per matched line, in body order. An empty list means
    the body carried no recognizable negotiation line.
    """
    # latin-1 maps every byte, pack data after the commands cannot fail decoding
    text = data.decode("latin-1")
    service = ServiceKind(service)
    records = _PARSERS[service](text)
    if not records:
        logger.debug("No %s negotiation line found in %d bytes", service.value, len(data))
    return records
