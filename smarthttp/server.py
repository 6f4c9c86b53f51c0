"""Main module for the smarthttp server."""
import argparse
import logging
import os
import sys
from os import environ as env

from dotenv import find_dotenv, load_dotenv
from fastapi import FastAPI
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from smarthttp import __version__
from smarthttp.git.http import DEFAULT_BUFFER_TIMEOUT, create_git_router
from smarthttp.utils import safe_join

LOGLEVEL = os.environ.get("SMARTHTTP_LOGLEVEL", "WARNING").upper()
logging.basicConfig(level=LOGLEVEL, stream=sys.stdout)
logger = logging.getLogger("server")
logger.setLevel(LOGLEVEL)

ENV_FILE = find_dotenv()
if ENV_FILE:
    load_dotenv(ENV_FILE)


def make_repo_resolver(repos_dir: str):
    """Return a function mapping repository names to directories under `repos_dir`.

    Both `name` and `name.git` are looked up, so clients may use either form.
    """
    root = os.path.abspath(repos_dir)

    def get_repo_path(repo: str) -> str:
        repo = repo.strip("/")
        candidates = [repo] if repo.endswith(".git") else [repo, repo + ".git"]
        for candidate in candidates:
            path = safe_join(root, candidate)
            if os.path.isdir(path):
                return path
        raise KeyError(repo)

    return get_repo_path


def create_application(args) -> FastAPI:
    """Create a smarthttp application."""
    if args.from_env:
        logger.info("Loading arguments from environment variables")
        _args = get_args_from_env()
        for key, value in _args.__dict__.items():
            setattr(args, key, value)

    if not os.path.isdir(args.repos_dir):
        raise ValueError(f"Repository directory does not exist: {args.repos_dir}")

    application = FastAPI(
        title="smarthttp",
        description="Git smart HTTP server",
        version=__version__,
    )

    @application.get("/health")
    async def health():
        """Report that the server is up."""
        return {"status": "ok"}

    @application.get("/metrics")
    async def metrics():
        """Expose Prometheus metrics."""
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    git_router = create_git_router(
        make_repo_resolver(args.repos_dir),
        git_path=args.git_path,
        buffer_timeout=args.buffer_timeout,
    )
    application.include_router(git_router, prefix=args.base_path.rstrip("/"))

    logger.info(f"Serving git repositories from {os.path.abspath(args.repos_dir)}")
    return application


def get_args_from_env():
    """Read the server arguments from environment variables."""
    parser = get_argparser(add_help=False)
    args = parser.parse_args([])

    arg_types = {
        action.dest: action.type
        for action in parser._actions
        if action.type is not None
    }
    arg_bools = {
        action.dest
        for action in parser._actions
        if isinstance(action, argparse._StoreTrueAction)
    }

    for arg_name in vars(args):
        env_var = "SMARTHTTP_" + arg_name.upper().replace("-", "_")
        if env_var in env:
            value = env[env_var]

            if arg_name in arg_bools:
                value = value.lower() in ("true", "1", "yes", "y", "on")
            elif arg_name in arg_types:
                try:
                    value = arg_types[arg_name](value)
                except (ValueError, TypeError) as e:
                    logger.warning(
                        f"Failed to convert environment variable {env_var}={value} "
                        f"to type {arg_types[arg_name]}: {str(e)}"
                    )
                    continue

            setattr(args, arg_name, value)

    # the flag itself is not an option to carry over
    args.from_env = False
    return args


def get_argparser(add_help=True):
    """Return the argument parser."""
    parser = argparse.ArgumentParser(add_help=add_help)
    parser.add_argument(
        "--from-env",
        action="store_true",
        help="load arguments from environment variables, the environment variables should be in the format of SMARTHTTP_<ARG_NAME_UPPER>",
    )
    parser.add_argument(
        "--host",
        type=str,
        default="127.0.0.1",
        help="host for the smarthttp server",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=8174,
        help="port for the smarthttp server",
    )
    parser.add_argument(
        "--repos-dir",
        type=str,
        default=".",
        help="directory containing the served repositories",
    )
    parser.add_argument(
        "--git-path",
        type=str,
        default=None,
        help="path of the git binary, `git-upload-pack`/`git-receive-pack` are run from PATH when not set",
    )
    parser.add_argument(
        "--buffer-timeout",
        type=float,
        default=DEFAULT_BUFFER_TIMEOUT,
        help="seconds to wait for a complete request body",
    )
    parser.add_argument(
        "--base-path",
        type=str,
        default="/",
        help="the base path for the server",
    )
    return parser
