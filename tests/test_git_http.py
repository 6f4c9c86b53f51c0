"""Test the Git smart HTTP endpoints."""

import base64
import socket
import subprocess
import threading
import time

import httpx
import pytest
import uvicorn
from fastapi import FastAPI
from fastapi.testclient import TestClient

from smarthttp.core import ServiceKind, SessionStatus
from smarthttp.git.http import create_git_router
from smarthttp.git.pktline import encode, flush, sideband
from smarthttp.server import create_application, get_argparser, make_repo_resolver

from . import GIT_BINARY, NEW_ID, OLD_ID, SLEEPING_SERVICE, receive_pack_body, requires_git


def make_client(repos_dir, **kwargs):
    """Create a test client serving the repositories in `repos_dir`."""
    app = FastAPI()
    app.include_router(create_git_router(make_repo_resolver(str(repos_dir)), **kwargs))
    return TestClient(app)


def upload_pack_body():
    """Build a minimal upload-pack request body."""
    return encode(f"want {NEW_ID} side-band-64k\n") + flush() + encode("done\n")


@pytest.fixture
def project(repos_dir):
    """Create an (empty) repository directory named `project.git`."""
    path = repos_dir / "project.git"
    path.mkdir()
    return path


class TestGitEndpoints:
    """Test the router with stand-in services."""

    def test_info_refs_requires_smart_protocol(self, repos_dir, project):
        """Test that dumb protocol requests are refused."""
        client = make_client(repos_dir)

        response = client.get("/project/info/refs")
        assert response.status_code == 400
        assert response.json()["detail"] == "Smart HTTP protocol required"

        response = client.get("/project/info/refs?service=git-annex")
        assert response.status_code == 400

    def test_unknown_repository(self, repos_dir):
        """Test that unknown repositories are not found."""
        client = make_client(repos_dir)

        assert client.get("/missing/info/refs?service=git-upload-pack").status_code == 404
        response = client.post("/missing/git-upload-pack", content=upload_pack_body())
        assert response.status_code == 404

    def test_upload_pack_accepted(self, repos_dir, project, fake_service):
        """Test that an accepted request streams the service output."""
        commands = fake_service()
        client = make_client(repos_dir)
        body = upload_pack_body()

        response = client.post(
            "/project/git-upload-pack",
            content=body,
            headers={"Content-Type": "application/x-git-upload-pack-request"},
        )

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/x-git-upload-pack-result"
        assert response.headers["cache-control"] == "no-cache, max-age=0, must-revalidate"
        assert response.content == encode(f"received {len(body)} bytes\n") + b"0000"
        assert commands == [(ServiceKind.UPLOAD_PACK, str(project))]

    def test_receive_pack_rejected(self, repos_dir, project, fake_service):
        """Test that a rejection is delivered as a report-status message."""
        commands = fake_service()
        sessions = []

        def authorize(session):
            sessions.append(session)
            if session.branch == "main":
                session.reject("main is protected")
            else:
                session.accept()

        client = make_client(repos_dir, authorize=authorize)
        credentials = base64.b64encode(b"alice:secret").decode()

        response = client.post(
            "/project.git/git-receive-pack",
            content=receive_pack_body((OLD_ID, NEW_ID, "refs/heads/main")),
            headers={"Authorization": f"Basic {credentials}"},
        )

        report_status = (
            encode("unpack main is protected\n")
            + encode("ng refs/heads/main main is protected\n")
            + flush()
        )
        assert response.status_code == 200
        assert response.headers["content-type"] == "application/x-git-receive-pack-result"
        assert response.content == sideband(1, report_status) + b"0000"
        assert commands == []

        (session,) = sessions
        assert session.username == "alice"
        assert session.status == SessionStatus.rejected
        assert session.action == "push"

    def test_async_authorize(self, repos_dir, project, fake_service):
        """Test that coroutine hooks are awaited."""
        fake_service()

        async def authorize(session):
            session.accept()

        client = make_client(repos_dir, authorize=authorize)
        body = receive_pack_body((OLD_ID, NEW_ID, "refs/heads/main"))
        response = client.post("/project/git-receive-pack", content=body)

        assert response.status_code == 200
        assert response.content == encode(f"received {len(body)} bytes\n") + b"0000"

    def test_undecided_request_is_rejected(self, repos_dir, project, fake_service):
        """Test that requests the hook leaves pending are rejected."""
        commands = fake_service()
        client = make_client(repos_dir, authorize=lambda session: None)

        response = client.post("/project/git-upload-pack", content=upload_pack_body())

        report_status = (
            encode("unpack request not accepted\n")
            + encode("ng  request not accepted\n")
            + flush()
        )
        assert response.content == sideband(1, report_status) + b"0000"
        assert commands == []

    def test_failing_authorize_propagates(self, repos_dir, project, fake_service):
        """Test that errors raised by the hook are not swallowed."""
        fake_service(SLEEPING_SERVICE)

        def authorize(session):
            raise PermissionError("denied")

        client = make_client(repos_dir, authorize=authorize)
        with pytest.raises(PermissionError):
            client.post("/project/git-upload-pack", content=upload_pack_body())

    def test_spawn_failure_terminates_response(self, repos_dir, project):
        """Test that the client gets a terminated response if git is missing."""
        client = make_client(repos_dir, git_path="/nonexistent/bin/git")

        response = client.post("/project/git-upload-pack", content=upload_pack_body())

        assert response.status_code == 200
        assert response.content == b"0000"

    def test_body_without_content_length_times_out(self, repos_dir, project, fake_service):
        """Test that a body that is never complete is answered with 408."""
        commands = fake_service()
        client = make_client(repos_dir, buffer_timeout=0.2)

        # a streamed body is sent without content-length
        response = client.post("/project/git-upload-pack", content=iter([upload_pack_body()]))

        assert response.status_code == 408
        assert commands == []


class TestApplication:
    """Test the application factory and its configuration."""

    def test_health_and_metrics(self, repos_dir, project, fake_service):
        """Test the service endpoints next to the git routes."""
        fake_service()
        args = get_argparser().parse_args(["--repos-dir", str(repos_dir)])
        client = TestClient(create_application(args))

        assert client.get("/health").json() == {"status": "ok"}

        client.post("/project/git-upload-pack", content=upload_pack_body())
        metrics = client.get("/metrics")
        assert metrics.status_code == 200
        assert "smarthttp_git_sessions_total" in metrics.text
        assert "smarthttp_git_active_services" in metrics.text

    def test_base_path(self, repos_dir, project):
        """Test that git routes are mounted under the base path."""
        args = get_argparser().parse_args(
            ["--repos-dir", str(repos_dir), "--base-path", "/git/"]
        )
        client = TestClient(create_application(args))

        assert client.get("/git/project/info/refs").status_code == 400
        assert client.get("/project/info/refs").status_code == 404

    def test_missing_repos_dir(self, tmp_path):
        """Test that the repository directory must exist."""
        args = get_argparser().parse_args(["--repos-dir", str(tmp_path / "missing")])
        with pytest.raises(ValueError):
            create_application(args)

    def test_args_from_env(self, monkeypatch, repos_dir):
        """Test reading the arguments from environment variables."""
        monkeypatch.setenv("SMARTHTTP_PORT", "9000")
        monkeypatch.setenv("SMARTHTTP_REPOS_DIR", str(repos_dir))
        monkeypatch.setenv("SMARTHTTP_BUFFER_TIMEOUT", "not-a-number")

        args = get_argparser().parse_args(["--from-env"])
        create_application(args)

        assert args.port == 9000
        assert args.repos_dir == str(repos_dir)
        assert args.buffer_timeout == 60.0
        assert args.from_env is False

    def test_repo_resolver(self, repos_dir, project):
        """Test resolving repository names under the repository root."""
        resolve = make_repo_resolver(str(repos_dir))

        assert resolve("project") == str(project)
        assert resolve("project.git") == str(project)
        assert resolve("/project/") == str(project)
        with pytest.raises(KeyError):
            resolve("other")
        with pytest.raises(ValueError):
            resolve("../outside")


@requires_git
class TestGitClient:
    """Test the server with the git command line client."""

    @pytest.fixture
    def git_http_server(self, repos_dir, bare_repo):
        """Start an actual HTTP server for Git protocol testing."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]
        sock.close()

        decisions = []

        def authorize(session):
            decisions.append((session.service, session.action, session.branch))
            if session.branch == "protected":
                session.reject("protected branch")
            else:
                session.accept()

        app = FastAPI()
        app.include_router(
            create_git_router(
                make_repo_resolver(str(repos_dir)),
                authorize=authorize,
                git_path=GIT_BINARY,
            )
        )

        config = uvicorn.Config(app, host="127.0.0.1", port=port, log_level="warning")
        server = uvicorn.Server(config)
        thread = threading.Thread(target=server.run, daemon=True)
        thread.start()

        for _ in range(50):
            try:
                httpx.get(f"http://127.0.0.1:{port}/")
                break
            except httpx.ConnectError:
                time.sleep(0.1)

        yield {"url": f"http://127.0.0.1:{port}/project.git", "decisions": decisions}

        server.should_exit = True
        thread.join(timeout=5)

    def test_ref_advertisement(self, repos_dir, bare_repo):
        """Test the info/refs response of a real repository."""
        client = make_client(repos_dir, git_path=GIT_BINARY)

        response = client.get("/project/info/refs?service=git-upload-pack")

        assert response.status_code == 200
        assert (
            response.headers["content-type"]
            == "application/x-git-upload-pack-advertisement"
        )
        assert response.content.startswith(b"001e# service=git-upload-pack\n0000")

    def test_push_and_clone(self, git_http_server, work_repo, tmp_path, git, git_env):
        """Test pushing a commit and cloning it back."""
        url = git_http_server["url"]

        result = subprocess.run(
            [GIT_BINARY, "push", url, "main"],
            cwd=work_repo,
            env=git_env,
            capture_output=True,
            text=True,
            timeout=60,
        )
        assert result.returncode == 0, result.stderr

        clone_dir = tmp_path / "clone"
        result = subprocess.run(
            [GIT_BINARY, "clone", url, str(clone_dir)],
            env=git_env,
            capture_output=True,
            text=True,
            timeout=60,
        )
        assert result.returncode == 0, result.stderr
        assert (clone_dir / "README.md").read_text(encoding="utf-8") == "hello\n"

        head = git("rev-parse", "HEAD", cwd=work_repo).stdout.strip()
        assert git("rev-parse", "HEAD", cwd=clone_dir).stdout.strip() == head
        assert (ServiceKind.RECEIVE_PACK, "push", "main") in git_http_server["decisions"]
        assert any(
            service == ServiceKind.UPLOAD_PACK and action == "fetch"
            for service, action, _ in git_http_server["decisions"]
        )

    def test_push_rejected(self, git_http_server, work_repo, bare_repo, git, git_env):
        """Test that git reports a rejected push to the user."""
        result = subprocess.run(
            [GIT_BINARY, "push", git_http_server["url"], "main:protected"],
            cwd=work_repo,
            env=git_env,
            capture_output=True,
            text=True,
            timeout=60,
        )

        assert result.returncode != 0
        assert "protected branch" in result.stderr
        refs = git("for-each-ref", cwd=bare_repo).stdout
        assert "refs/heads/protected" not in refs
