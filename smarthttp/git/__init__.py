"""Git smart HTTP transport.

Key components:
- pktline: pkt-line and sideband framing
- negotiation: ref/commit data parsed from request bodies
- GitResponseStream: relays service output to the HTTP response
- GitService: one upload-pack/receive-pack request, from buffering to exit
- create_git_router: FastAPI endpoints for the Smart HTTP protocol
"""

from smarthttp.git.negotiation import parse_negotiation
from smarthttp.git.response import GitResponseStream, ResponseFinalizedError
from smarthttp.git.service import GitService, ServiceSpawnError
from smarthttp.git.http import create_git_router

__all__ = [
    "parse_negotiation",
    "GitResponseStream",
    "ResponseFinalizedError",
    "GitService",
    "ServiceSpawnError",
    "create_git_router",
]
