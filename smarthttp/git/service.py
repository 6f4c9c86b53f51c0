"""Git pack-protocol service session.

A `GitService` handles one smart HTTP request for `git-upload-pack` or
`git-receive-pack`:

1. The request body is buffered (and decompressed) until `content-length`
   bytes have arrived, then `buffer` and `header` events are emitted.
2. The embedder inspects the session (`username`, `ref`, `commit`, ...) and
   calls `accept()` or `reject(message)`.
3. On accept, `git-<service> --stateless-rpc <cwd>` is spawned, fed the
   buffered body and its output is relayed to `response`. On reject, a
   report-status error is written to `response` instead.

Events: `buffer`, `header`, `accept`, `reject`, `service`, `exit`, `error`.

Protocol Reference:
- https://git-scm.com/docs/http-protocol
- https://git-scm.com/docs/pack-protocol#_report_status
"""

import asyncio
import base64
import binascii
import logging
import re
import sys
import zlib
from typing import AsyncIterable, List, Mapping, Optional

from smarthttp.core import NegotiationRecord, ServiceKind, SessionStatus
from smarthttp.core.metrics import (
    GIT_ACTIVE_SERVICES,
    GIT_REQUEST_BYTES,
    GIT_SPAWN_FAILURES_TOTAL,
    record_decision,
)
from smarthttp.git.negotiation import parse_negotiation
from smarthttp.git.pktline import SIDEBAND_DATA, SIDEBAND_PROGRESS, encode, flush, sideband
from smarthttp.git.response import (
    DEFAULT_HIGH_WATER_MARK,
    GitResponseStream,
    ResponseFinalizedError,
)
from smarthttp.utils import EventBus

logger = logging.getLogger(__name__)

STDIN_CHUNK_SIZE = 64 * 1024
STDOUT_READ_SIZE = 64 * 1024

_DECODERS = {
    "gzip": lambda: zlib.decompressobj(16 + zlib.MAX_WBITS),
    "deflate": lambda: zlib.decompressobj(zlib.MAX_WBITS),
}


class ServiceSpawnError(RuntimeError):
    """Raised when the pack-protocol subprocess cannot be started."""

    def __init__(self, message: str, command: List[str]):
        """Initialize the error with the attempted command line."""
        super().__init__(message)
        self.command = command


def extract_username_from_basic_auth(authorization: Optional[str]) -> Optional[str]:
    """Extract the username from an HTTP Basic Auth header.

    The password is discarded, validating it is up to the embedder.

    Format: Authorization: Basic base64(username:password)
    """
    if not authorization:
        return None
    scheme, _, encoded = authorization.strip().partition(" ")
    if scheme.lower() != "basic":
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        logger.debug(f"Ignoring undecodable basic auth credentials: {e}")
        return None
    username = decoded.split(":", 1)[0]
    return username if username else None


def build_service_command(
    service: ServiceKind,
    cwd: str,
    git_path: Optional[str] = None,
    platform: str = sys.platform,
    advertise_refs: bool = False,
) -> List[str]:
    """Return the command line running a service in stateless-rpc mode."""
    service = ServiceKind(service)
    options = ["--stateless-rpc"]
    if advertise_refs:
        options.append("--advertise-refs")
    if git_path:
        return [git_path, service.value, *options, cwd]
    if platform == "win32":
        return ["git", service.value, *options, cwd]
    return [service.command_name, *options, cwd]


# printf-style conversion specifiers, "%%" included
FORMAT_SPEC_RE = re.compile(
    r"%(?:\([^)]*\))?[#0 +-]*(?:\*|\d+)?(?:\.(?:\*|\d+))?[diouxXeEfFgGcrsa%]"
)


def format_log_message(*args) -> str:
    """Format progress log arguments into one line.

    A first argument with placeholders consumes as many arguments as it has
    placeholders, the remaining ones are appended separated by spaces.
    """
    if len(args) > 1 and isinstance(args[0], str):
        count = sum(1 for spec in FORMAT_SPEC_RE.findall(args[0]) if spec != "%%")
        if count:
            try:
                message = args[0] % args[1 : count + 1]
            except (TypeError, ValueError):
                # not a format string after all, fall through to joining
                pass
            else:
                return " ".join([message] + [str(arg) for arg in args[count + 1 :]])
    return " ".join(str(arg) for arg in args)


class BodyAccumulator:
    """Collect request body chunks until the declared length is reached."""

    def __init__(self, expected_length: Optional[int]):
        """Initialize the accumulator for `expected_length` bytes."""
        self.expected_length = expected_length
        self.length = 0
        self._chunks = []

    @property
    def complete(self) -> bool:
        """Return True once the declared length has arrived."""
        return self.expected_length is not None and self.length >= self.expected_length

    def append(self, chunk: bytes) -> bool:
        """Add a chunk, return whether the body is complete."""
        self._chunks.append(chunk)
        self.length += len(chunk)
        return self.complete

    def getvalue(self) -> bytes:
        """Return the collected body."""
        return b"".join(self._chunks)


def _parse_content_length(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        length = int(value)
    except ValueError:
        logger.warning(f"Ignoring invalid content-length header: {value!r}")
        return None
    return length if length >= 0 else None


class GitService(EventBus):
    """Handle one git-upload-pack or git-receive-pack request."""

    def __init__(
        self,
        repo: str,
        service,
        cwd: str,
        headers: Mapping[str, str],
        body: AsyncIterable[bytes],
        git_path: Optional[str] = None,
        high_water_mark: int = DEFAULT_HIGH_WATER_MARK,
    ):
        """Initialize the service session.

        Args:
            repo: Repository name as requested by the client
            service: `upload-pack` or `receive-pack` (the `git-` prefix is accepted)
            cwd: Path of the repository the service runs in
            headers: Request headers, matched case-insensitively
            body: The raw request body
            git_path: Run `<git_path> <service>` instead of `git-<service>`
            high_water_mark: Response backlog that suspends the subprocess relay
        """
        super().__init__(logger)
        self.repo = repo
        self.service = ServiceKind.from_name(service)
        self.cwd = cwd
        self.status = SessionStatus.pending

        self._headers = {key.lower(): value for key, value in headers.items()}
        self.content_encoding = (self._headers.get("content-encoding") or "").strip().lower() or None
        self.username = extract_username_from_basic_auth(
            self._headers.get("authorization")
        )

        self.last: Optional[str] = None
        self.commit: Optional[str] = None
        self.ref: Optional[str] = None
        self.branch: Optional[str] = None
        self.tag: Optional[str] = None
        self.action: Optional[str] = None
        self.updates: List[NegotiationRecord] = []
        self.data: Optional[bytes] = None

        self.response = GitResponseStream(high_water_mark)
        self.process: Optional[asyncio.subprocess.Process] = None

        self._body = body
        self._git_path = git_path
        self._accumulator = BodyAccumulator(
            _parse_content_length(self._headers.get("content-length"))
        )
        self._buffered = asyncio.Event()
        self._ingest_task: Optional[asyncio.Task] = None
        self._service_task: Optional[asyncio.Task] = None

    def __repr__(self):
        return f"<GitService {self.service.value} {self.repo} {self.status.value}>"

    def start(self) -> "GitService":
        """Start buffering the request body."""
        if self._ingest_task is None:
            self._ingest_task = asyncio.get_running_loop().create_task(self._ingest())
        return self

    async def wait_buffered(self, timeout: Optional[float] = None) -> bytes:
        """Wait until the whole request body is buffered and return it."""
        await asyncio.wait_for(self._buffered.wait(), timeout)
        return self.data

    @property
    def buffered(self) -> bool:
        """Return True once the request body is buffered."""
        return self._buffered.is_set()

    async def _ingest(self):
        if self._accumulator.complete:
            # content-length: 0
            self._on_buffered(b"")
            return
        factory = _DECODERS.get(self.content_encoding)
        decoder = factory() if factory is not None else None
        raw_length = 0
        try:
            async for chunk in self._body:
                if not chunk:
                    continue
                if decoder is None:
                    if self._accumulator.append(chunk):
                        break
                    continue
                raw_length += len(chunk)
                self._accumulator.append(decoder.decompress(chunk))
                if self._compressed_complete(decoder, raw_length):
                    break
            else:
                logger.warning(
                    "Request body for %s ended after %d of %s bytes",
                    self,
                    self._accumulator.length,
                    self._accumulator.expected_length,
                )
                return
        except zlib.error as e:
            logger.error(f"Failed to decode {self.content_encoding} body for {self}: {e}")
            return
        self._on_buffered(self._accumulator.getvalue())

    def _compressed_complete(self, decoder, raw_length: int) -> bool:
        """Check whether a compressed body is complete.

        The stream must have ended. Clients declare either the decoded size or,
        like git, the size of the compressed entity in `content-length`.
        """
        expected = self._accumulator.expected_length
        if not decoder.eof or expected is None:
            return False
        return self._accumulator.complete or raw_length >= expected

    def _on_buffered(self, data: bytes):
        self.data = data
        GIT_REQUEST_BYTES.labels(service=self.service.value).inc(len(data))
        logger.info(f"Buffered {len(data)} bytes for {self}")
        self.emit("buffer", data)

        for record in parse_negotiation(self.service, data):
            self._apply(record)
            self.emit("header", record.to_header())
        self._buffered.set()

    def _apply(self, record: NegotiationRecord):
        self.updates.append(record)
        self.last = record.last
        self.commit = record.commit
        self.ref = record.ref
        self.branch = record.branch
        self.tag = record.tag
        if self.service == ServiceKind.UPLOAD_PACK:
            self.action = "fetch"
        elif record.branch is not None:
            self.action = "push"
        else:
            self.action = "tag"
        logger.debug(f"Parsed negotiation for {self}: {record.to_header()}")

    def accept(self) -> None:
        """Accept the request and run the service.

        The subprocess is started on a later turn of the event loop, code
        following this call runs first.
        """
        if self.status != SessionStatus.pending:
            return
        self.status = SessionStatus.accepted
        record_decision(self.service.value, self.status.value)
        logger.info(f"Accepted {self.service.value} for {self.repo} (user={self.username})")
        self.emit("accept")
        self._service_task = asyncio.get_running_loop().create_task(self._run_service())

    def reject(self, message: str) -> None:
        """Reject the request with a report-status error shown by the client."""
        if self.status != SessionStatus.pending:
            return
        self.status = SessionStatus.rejected
        record_decision(self.service.value, self.status.value)
        logger.info(f"Rejected {self.service.value} for {self.repo}: {message}")
        self.emit("reject", message)

        ref = self.ref or ""
        report_status = (
            encode(f"unpack {message}\n")
            + encode(f"ng {ref} {message}\n")
            + flush()
        )
        self.response.write_nowait(sideband(SIDEBAND_DATA, report_status))
        # the terminator written by finalize() closes the sideband stream
        self.response.finalize()

    def log(self, *args) -> None:
        """Send a progress line to the client, unless the response is complete."""
        if self.response.closed:
            return
        message = format_log_message(*args)
        self.response.write_nowait(sideband(SIDEBAND_PROGRESS, f"{message}\n"))

    async def _run_service(self):
        command = build_service_command(self.service, self.cwd, git_path=self._git_path)
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            GIT_SPAWN_FAILURES_TOTAL.labels(service=self.service.value).inc()
            error = ServiceSpawnError(f"{e} running command {' '.join(command)}", command)
            error.__cause__ = e
            logger.error(f"Failed to start service for {self}: {error}")
            self.emit("error", error)
            return

        self.process = process
        logger.info(f"Started {' '.join(command)} (pid={process.pid})")
        self.emit("service", process)

        GIT_ACTIVE_SERVICES.labels(service=self.service.value).inc()
        feeder = asyncio.ensure_future(self._feed_stdin(process))
        try:
            try:
                await self._relay_stdout(process)
            except ResponseFinalizedError:
                logger.warning(f"Response for {self} closed early, stopping service")
                _kill(process)
            returncode = await process.wait()
        finally:
            if not feeder.done():
                feeder.cancel()
            await asyncio.gather(feeder, return_exceptions=True)
            GIT_ACTIVE_SERVICES.labels(service=self.service.value).dec()

        logger.info(f"Service for {self} exited with code {returncode}")
        if not self.response.closed:
            self.response.finalize()
        self.emit("exit", returncode)

    async def _feed_stdin(self, process: asyncio.subprocess.Process):
        await self._buffered.wait()
        data = self.data
        try:
            for offset in range(0, len(data), STDIN_CHUNK_SIZE):
                process.stdin.write(data[offset : offset + STDIN_CHUNK_SIZE])
                await process.stdin.drain()
            process.stdin.close()
            await process.stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.warning(f"Service for {self} stopped reading its input: {e}")

    async def _relay_stdout(self, process: asyncio.subprocess.Process):
        while True:
            chunk = await process.stdout.read(STDOUT_READ_SIZE)
            if not chunk:
                break
            await self.response.write(chunk)

    async def close(self) -> None:
        """Release the session when the HTTP exchange ends."""
        tasks = [
            task
            for task in (self._ingest_task, self._service_task)
            if task is not None and not task.done()
        ]
        if self.process is not None and self.process.returncode is None:
            _kill(self.process)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self.response.abort()


def _kill(process: asyncio.subprocess.Process):
    try:
        process.kill()
    except ProcessLookupError:
        pass
