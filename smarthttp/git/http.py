"""Git Smart HTTP Protocol endpoints for FastAPI.

This module wires `GitService` sessions to HTTP requests, allowing standard
Git clients to clone, fetch, and push to repositories on disk.

Protocol Reference:
- https://git-scm.com/docs/http-protocol
"""

import asyncio
import inspect
import logging
from typing import Callable, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import Response, StreamingResponse

from smarthttp.core import ServiceKind, SessionStatus
from smarthttp.git.pktline import encode, flush
from smarthttp.git.service import GitService, build_service_command

logger = logging.getLogger(__name__)

NO_CACHE_HEADERS = {
    "Expires": "Fri, 01 Jan 1980 00:00:00 GMT",
    "Pragma": "no-cache",
    "Cache-Control": "no-cache, max-age=0, must-revalidate",
}

DEFAULT_BUFFER_TIMEOUT = 60.0


async def advertise_refs(
    service: ServiceKind, cwd: str, git_path: Optional[str] = None
) -> bytes:
    """Return the smart HTTP ref advertisement for a repository.

    The service output is prefixed with the `# service=` announcement and a
    flush packet, as required for the info/refs response.
    """
    command = build_service_command(service, cwd, git_path=git_path, advertise_refs=True)
    process = await asyncio.create_subprocess_exec(
        *command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await process.communicate()
    if process.returncode != 0:
        raise RuntimeError(
            f"{' '.join(command)} exited with code {process.returncode}: "
            f"{stderr.decode('utf-8', errors='replace').strip()}"
        )
    return encode(f"# service={service.command_name}\n") + flush() + stdout


def create_git_router(
    get_repo_path: Callable[[str], str],
    authorize: Optional[Callable] = None,
    git_path: Optional[str] = None,
    buffer_timeout: Optional[float] = DEFAULT_BUFFER_TIMEOUT,
) -> APIRouter:
    """Create a FastAPI router for Git HTTP protocol.

    Args:
        get_repo_path: Function (repo) -> repository directory, raises KeyError
            for unknown repositories
        authorize: Function (session) -> None, sync or async, that calls
            `session.accept()` or `session.reject(message)`. Requests are
            accepted when not given.
        git_path: Path of the git binary, `git-<service>` is used when not given
        buffer_timeout: Seconds to wait for the request body

    Returns:
        FastAPI router with Git endpoints
    """
    router = APIRouter()

    def _resolve(repo: str) -> str:
        try:
            return get_repo_path(repo)
        except KeyError:
            raise HTTPException(status_code=404, detail="Repository not found")
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))

    def _on_error(session: GitService, error: Exception):
        logger.error(f"Git service failed for {session.repo}: {error}")
        # the client gets a terminated, empty response instead of a hanging one
        if not session.response.closed:
            session.response.finalize()

    async def _handle_service(repo: str, service: ServiceKind, request: Request):
        cwd = _resolve(repo)
        session = GitService(
            repo,
            service,
            cwd,
            request.headers,
            request.stream(),
            git_path=git_path,
        )
        session.on("error", lambda error: _on_error(session, error))
        session.start()

        try:
            await session.wait_buffered(buffer_timeout)
        except asyncio.TimeoutError:
            await session.close()
            logger.warning(f"Timed out reading the {service.value} request for {repo}")
            raise HTTPException(status_code=408, detail="Request body incomplete")

        try:
            if authorize is None:
                session.accept()
            else:
                result = authorize(session)
                if inspect.isawaitable(result):
                    await result
        except Exception:
            await session.close()
            raise

        if session.status == SessionStatus.pending:
            session.reject("request not accepted")

        async def generate():
            try:
                async for chunk in session.response:
                    yield chunk
            finally:
                await session.close()

        return StreamingResponse(
            generate(),
            media_type=f"application/x-{service.command_name}-result",
            headers=NO_CACHE_HEADERS,
        )

    @router.get("/{repo:path}/info/refs")
    async def git_info_refs(repo: str, service: str = Query(None)):
        """Git reference discovery endpoint.

        This is the first endpoint called by git clone/fetch/push.
        """
        try:
            kind = ServiceKind.from_name(service)
        except ValueError:
            # Dumb protocol fallback
            raise HTTPException(status_code=400, detail="Smart HTTP protocol required")

        cwd = _resolve(repo)
        try:
            body = await advertise_refs(kind, cwd, git_path=git_path)
        except (OSError, RuntimeError) as e:
            logger.error(f"Ref advertisement failed for {repo}: {e}")
            raise HTTPException(status_code=500, detail="Ref advertisement failed")

        return Response(
            content=body,
            media_type=f"application/x-{kind.command_name}-advertisement",
            headers=NO_CACHE_HEADERS,
        )

    @router.post("/{repo:path}/git-upload-pack")
    async def git_upload_pack(repo: str, request: Request):
        """Handle git fetch/clone requests."""
        return await _handle_service(repo, ServiceKind.UPLOAD_PACK, request)

    @router.post("/{repo:path}/git-receive-pack")
    async def git_receive_pack(repo: str, request: Request):
        """Handle git push requests."""
        return await _handle_service(repo, ServiceKind.RECEIVE_PACK, request)

    return router
