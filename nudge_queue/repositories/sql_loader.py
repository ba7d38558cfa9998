from __future__ import annotations

from functools import cache
from pathlib import Path


SQL_DIR = Path(__file__).with_name("sql")


@cache
def load_sql(name: str) -> str:
    path = SQL_DIR / name
    if path.suffix != ".sql":
        raise ValueError(f"sql query file must end with .sql: {name}")
    return path.read_text(encoding="utf-8").strip()
