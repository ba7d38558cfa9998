from __future__ import annotations

import importlib

ulid_module = importlib.import_module("ulid")


def new_queue_item_id() -> str:
    return f"nq_{ulid_module.new().str}"


def new_log_entry_id() -> str:
    return f"nl_{ulid_module.new().str}"


def new_worker_id(role: str) -> str:
    return f"{role}:{ulid_module.new().str.lower()}"
