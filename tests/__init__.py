"""Test the smarthttp module."""

import shutil

import pytest

GIT_BINARY = shutil.which("git")

requires_git = pytest.mark.skipif(GIT_BINARY is None, reason="git is not installed")

ZERO_ID = "0" * 40
OLD_ID = "a" * 40
NEW_ID = "b" * 40


async def body_stream(*chunks):
    """Yield request body chunks like an ASGI request stream."""
    for chunk in chunks:
        yield chunk
    yield b""


def receive_pack_body(*updates, pack=b"PACK\x00\x00\x00\x02\x00\x00\x00\x00"):
    """Build a receive-pack request body from (old, new, ref) updates."""
    from smarthttp.git.pktline import encode, flush

    lines = []
    for index, (old, new, ref) in enumerate(updates):
        line = f"{old} {new} {ref}"
        if index == 0:
            line += "\0report-status side-band-64k"
        # git sends commands without a trailing LF
        lines.append(encode(line))
    return b"".join(lines) + flush() + pack


# Stand-in services, run instead of git-<service> --stateless-rpc <cwd>
ECHO_SERVICE = """
import sys

data = sys.stdin.buffer.read()
line = b"received %d bytes\\n" % len(data)
sys.stdout.buffer.write(b"%04x" % (len(line) + 4) + line)
sys.stdout.buffer.flush()
"""

SILENT_SERVICE = """
import sys

sys.stdin.buffer.read()
sys.exit(3)
"""

SLEEPING_SERVICE = """
import sys
import time

sys.stdin.buffer.read()
time.sleep(30)
"""
