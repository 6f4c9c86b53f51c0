"""Provide common pytest fixtures."""

import os
import subprocess
import sys
import textwrap

import pytest

from smarthttp.git import service as service_module

from . import ECHO_SERVICE, GIT_BINARY


@pytest.fixture
def fake_service(monkeypatch, tmp_path):
    """Replace the git service binary with a Python script.

    Returns a function installing a script source, the commands that would
    have been run are collected in the returned list.
    """
    commands = []

    def install(source=ECHO_SERVICE):
        script = tmp_path / "fake_service.py"
        script.write_text(textwrap.dedent(source), encoding="utf-8")

        def build_service_command(service, cwd, git_path=None, **kwargs):
            commands.append((service, cwd))
            return [sys.executable, str(script)]

        monkeypatch.setattr(service_module, "build_service_command", build_service_command)
        return commands

    return install


def _git(*args, cwd=None):
    return subprocess.run(
        [GIT_BINARY, *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
        timeout=30,
    )


@pytest.fixture
def git():
    """Run git commands in tests."""
    return _git


@pytest.fixture
def repos_dir(tmp_path):
    """Create an empty directory of served repositories."""
    path = tmp_path / "repos"
    path.mkdir()
    return path


@pytest.fixture
def bare_repo(repos_dir):
    """Create a bare repository named `project.git`."""
    if GIT_BINARY is None:
        pytest.skip("git is not installed")
    path = repos_dir / "project.git"
    _git("init", "--bare", "--initial-branch=main", str(path))
    return path


@pytest.fixture
def work_repo(tmp_path):
    """Create a working repository with one commit on `main`."""
    if GIT_BINARY is None:
        pytest.skip("git is not installed")
    path = tmp_path / "work"
    _git("init", "--initial-branch=main", str(path))
    (path / "README.md").write_text("hello\n", encoding="utf-8")
    _git("add", "README.md", cwd=path)
    _git(
        "-c",
        "user.name=Test User",
        "-c",
        "user.email=test@example.com",
        "commit",
        "-m",
        "initial commit",
        cwd=path,
    )
    return path


@pytest.fixture
def git_env():
    """Return an environment for git clients that never prompts."""
    env = os.environ.copy()
    env["GIT_TERMINAL_PROMPT"] = "0"
    env["GIT_CONFIG_NOSYSTEM"] = "1"
    return env
