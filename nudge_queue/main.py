from __future__ import annotations

import argparse
import logging
import os
import sys
import uuid

import uvicorn

from nudge_queue.api.http_app import build_app
from nudge_queue.logging_setup import configure_logging
from nudge_queue.repositories.postgres import PostgresNudgeStore
from nudge_queue.roles import SUPPORTED_ROLES, RuntimeRole, validate_role
from nudge_queue.services.bootstrap import RuntimeContainer, build_runtime_container

ROLE_PORTS = {"api": 8000, "worker-dispatch": 8100}


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve the nudge queue API or dispatch worker")
    parser.add_argument("--role", default=os.getenv("APP_ROLE", "api"), help=f"One of: {', '.join(SUPPORTED_ROLES)}")
    parser.add_argument("--host", default=os.getenv("APP_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=None, help="Defaults to 8000 for api, 8100 for the worker")
    parser.add_argument(
        "--dry-run-startup",
        action="store_true",
        help="Wire the store, sender and dispatch loop, then exit without serving",
    )
    return parser.parse_args(argv)


def _describe(role: RuntimeRole, container: RuntimeContainer) -> dict[str, str]:
    backend = "postgres" if isinstance(container.store, PostgresNudgeStore) else "memory"
    return {
        "role": role.name,
        "service": role.name,
        "detail": (
            f"store={backend} nudges_enabled={str(container.settings.enabled).lower()} "
            f"worker_loop={'on' if container.worker_loop is not None else 'off'}"
        ),
    }


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        role = validate_role(args.role)
    except ValueError as exc:
        sys.stderr.write(f"ERROR: {exc}\n")
        sys.stderr.write(f"Try one of: {', '.join(SUPPORTED_ROLES)}\n")
        return 2

    configure_logging()
    run_id = str(uuid.uuid4())
    logger = logging.getLogger("runtime")

    container = build_runtime_container(role)
    log_extra = {**_describe(role, container), "run_id": run_id}
    logger.info("runtime initialized", extra=log_extra)

    if args.dry_run_startup:
        logger.info("dry-run startup complete", extra=log_extra)
        return 0

    app = build_app(
        role=role.name,
        run_id=run_id,
        worker_loop=container.worker_loop,
        api_deps=container.api_deps,
        on_startup=container.on_startup,
        on_shutdown=container.on_shutdown,
    )
    port = args.port if args.port is not None else ROLE_PORTS[role.name]
    uvicorn.run(app, host=args.host, port=port, log_level="warning")
    return 0


if __name__ == "__main__":
    raise SystemExit(run())
