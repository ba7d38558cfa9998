from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
import importlib
import json
from typing import Any

from nudge_queue.domain.dto import AdmitNudgeCommand
from nudge_queue.domain.error_taxonomy import RetryClassification, resolve_error_code, resolve_retry_classification
from nudge_queue.domain.errors import DomainInvariantError, StaleClaimError, StoreUnavailableError
from nudge_queue.domain.ids import new_log_entry_id, new_queue_item_id
from nudge_queue.domain.lifecycle import COOLDOWN_STATUSES, plan_failure
from nudge_queue.domain.models import (
    EnqueueRejection,
    EnqueueResult,
    LogEntry,
    LogQuery,
    NudgePayload,
    NudgeStatus,
    OutcomeKind,
    QueueItem,
)
from nudge_queue.repositories.sql_loader import load_sql

try:
    asyncpg_module = importlib.import_module("asyncpg")
except ModuleNotFoundError:  # pragma: no cover
    asyncpg_module = None  # type: ignore[assignment]


SQL_LOCK_RECIPIENT = load_sql("lock_recipient.sql")
SQL_FIND_DUPLICATE_TODAY = load_sql("find_duplicate_today.sql")
SQL_FIND_COOLDOWN_ACTIVITY = load_sql("find_cooldown_activity.sql")
SQL_INSERT_LOG = load_sql("insert_log.sql")
SQL_INSERT_QUEUE_ITEM = load_sql("insert_queue_item.sql")
SQL_CLAIM_BATCH = load_sql("claim_batch.sql")
SQL_HEARTBEAT_CLAIMS = load_sql("heartbeat_claims.sql")
SQL_RELEASE_CLAIMS = load_sql("release_claims.sql")
SQL_SELECT_OWNED_ITEM = load_sql("select_owned_item.sql")
SQL_SELECT_EXPIRED_CLAIMS = load_sql("select_expired_claims.sql")
SQL_DELETE_QUEUE_ITEM = load_sql("delete_queue_item.sql")
SQL_RESCHEDULE_QUEUE_ITEM = load_sql("reschedule_queue_item.sql")
SQL_MARK_LOG_SENT = load_sql("mark_log_sent.sql")
SQL_MARK_LOG_FAILED = load_sql("mark_log_failed.sql")
SQL_MARK_LOG_RETRY = load_sql("mark_log_retry.sql")
SQL_FIND_QUEUED_LOG_FALLBACK = load_sql("find_queued_log_fallback.sql")
SQL_GET_QUEUE_ITEM = load_sql("get_queue_item.sql")
SQL_GET_LOG = load_sql("get_log.sql")

DEDUPE_CONSTRAINT = "nudge_logs_dedupe_day_uq"


def _is_unique_violation(exc: Exception) -> bool:
    return getattr(exc, "sqlstate", None) == "23505"


def _is_store_unavailable(exc: Exception) -> bool:
    if isinstance(exc, (OSError, TimeoutError)):
        return True
    if asyncpg_module is None:  # pragma: no cover
        return False
    connection_errors = tuple(
        getattr(asyncpg_module, name)
        for name in ("PostgresConnectionError", "InterfaceError", "CannotConnectNowError", "TooManyConnectionsError")
        if hasattr(asyncpg_module, name)
    )
    return isinstance(exc, connection_errors)


@dataclass
class AsyncpgPoolManager:
    dsn: str
    pool: Any | None = None
    min_size: int = 1
    max_size: int = 5

    async def startup(self) -> None:
        if asyncpg_module is None:  # pragma: no cover
            raise RuntimeError("asyncpg is required for postgres store mode")

        async def _init_connection(conn: Any) -> None:
            await conn.set_type_codec(
                "json",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )
            await conn.set_type_codec(
                "jsonb",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )

        self.pool = await asyncpg_module.create_pool(
            dsn=self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            init=_init_connection,
        )

    async def shutdown(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None


@dataclass
class PostgresNudgeStore:
    pool_manager: AsyncpgPoolManager

    def _pool(self) -> Any:
        if self.pool_manager.pool is None:
            raise RuntimeError("postgres pool is not initialized")
        return self.pool_manager.pool

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[Any]:
        pool = self._pool()
        try:
            async with pool.acquire() as conn:
                yield conn
        except Exception as exc:
            if _is_store_unavailable(exc):
                raise StoreUnavailableError(f"nudge store is unavailable: {exc}") from exc
            raise

    async def admit(self, command: AdmitNudgeCommand) -> EnqueueResult:
        log_id = new_log_entry_id()
        queue_id = new_queue_item_id()
        try:
            async with self._connection() as conn:
                async with conn.transaction():
                    # Serializes admission per recipient so the checks below
                    # cannot interleave with a concurrent insert.
                    await conn.execute(SQL_LOCK_RECIPIENT, command.hub_id, command.member_id)
                    duplicate = await conn.fetchval(
                        SQL_FIND_DUPLICATE_TODAY,
                        command.hub_id,
                        command.member_id,
                        command.recipe_name,
                        command.message_hash,
                    )
                    if duplicate is not None:
                        return EnqueueResult(enqueued=False, reason=EnqueueRejection.DUPLICATE)

                    recent = await conn.fetchval(
                        SQL_FIND_COOLDOWN_ACTIVITY,
                        command.hub_id,
                        command.member_id,
                        list(COOLDOWN_STATUSES),
                        command.cooldown_window_hours,
                    )
                    if recent is not None:
                        return EnqueueResult(enqueued=False, reason=EnqueueRejection.RATE_LIMITED)

                    inserted_log = await conn.fetchval(
                        SQL_INSERT_LOG,
                        log_id,
                        command.hub_id,
                        command.member_id,
                        command.recipe_name,
                        command.payload.channel,
                        command.payload.message,
                        command.message_hash,
                    )
                    inserted_item = await conn.fetchval(
                        SQL_INSERT_QUEUE_ITEM,
                        queue_id,
                        log_id,
                        command.hub_id,
                        command.member_id,
                        command.recipe_name,
                        command.payload.as_json(),
                    )
                    if inserted_log is None or inserted_item is None:
                        raise DomainInvariantError("failed to admit nudge")
        except Exception as exc:
            if _is_unique_violation(exc) and getattr(exc, "constraint_name", None) == DEDUPE_CONSTRAINT:
                return EnqueueResult(enqueued=False, reason=EnqueueRejection.DUPLICATE)
            raise
        return EnqueueResult(enqueued=True, queue_id=queue_id, log_id=log_id)

    async def claim_batch(self, *, worker_id: str, batch_size: int, lease_seconds: int) -> list[QueueItem]:
        async with self._connection() as conn:
            async with conn.transaction():
                rows = await conn.fetch(SQL_CLAIM_BATCH, worker_id, batch_size, lease_seconds)
        items = [_queue_item_from_row(row) for row in rows]
        # UPDATE ... RETURNING does not preserve the picked order.
        items.sort(key=lambda item: (item.available_at, item.id))
        return items

    async def heartbeat_claims(
        self,
        *,
        queue_ids: list[str],
        worker_id: str,
        lease_seconds: int,
    ) -> set[str]:
        if not queue_ids:
            return set()
        async with self._connection() as conn:
            rows = await conn.fetch(SQL_HEARTBEAT_CLAIMS, list(queue_ids), worker_id, lease_seconds)
        return {row["id"] for row in rows}

    async def reclaim_expired_claims(self, *, max_retries: int) -> int:
        async with self._connection() as conn:
            async with conn.transaction():
                rows = await conn.fetch(SQL_SELECT_EXPIRED_CLAIMS)
                for row in rows:
                    await self._apply_failure(
                        conn,
                        row,
                        error="claim lease expired and was reclaimed",
                        error_code="lease_expired",
                        max_retries=max_retries,
                    )
        return len(rows)

    async def release_claims(self, *, queue_ids: list[str], worker_id: str) -> set[str]:
        if not queue_ids:
            return set()
        async with self._connection() as conn:
            rows = await conn.fetch(SQL_RELEASE_CLAIMS, list(queue_ids), worker_id)
        return {row["id"] for row in rows}

    async def complete_success(self, *, queue_id: str, worker_id: str) -> None:
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(SQL_SELECT_OWNED_ITEM, queue_id, worker_id)
                if row is None:
                    raise StaleClaimError("claim ownership is stale")
                await conn.execute(SQL_DELETE_QUEUE_ITEM, queue_id)
                log_id = await self._log_id_for(conn, row)
                if log_id is not None:
                    await conn.fetchval(SQL_MARK_LOG_SENT, log_id)

    async def complete_failure(
        self,
        *,
        queue_id: str,
        worker_id: str,
        error: str,
        error_code: str,
        max_retries: int,
        retry_classification: RetryClassification | None = None,
    ) -> OutcomeKind:
        async with self._connection() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(SQL_SELECT_OWNED_ITEM, queue_id, worker_id)
                if row is None:
                    raise StaleClaimError("claim ownership is stale")
                return await self._apply_failure(
                    conn,
                    row,
                    error=error,
                    error_code=error_code,
                    max_retries=max_retries,
                    retry_classification=retry_classification,
                )

    async def get_queue_item(self, *, queue_id: str) -> QueueItem | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_GET_QUEUE_ITEM, queue_id)
        if row is None:
            return None
        return _queue_item_from_row(row)

    async def get_log(self, *, log_id: str) -> LogEntry | None:
        async with self._connection() as conn:
            row = await conn.fetchrow(SQL_GET_LOG, log_id)
        if row is None:
            return None
        return _log_entry_from_row(row)

    async def find_log_for_queue_item(self, *, queue_id: str) -> LogEntry | None:
        async with self._connection() as conn:
            item_row = await conn.fetchrow(SQL_GET_QUEUE_ITEM, queue_id)
            if item_row is None:
                return None
            log_id = await self._log_id_for(conn, item_row)
            if log_id is None:
                return None
            row = await conn.fetchrow(SQL_GET_LOG, log_id)
        if row is None:
            return None
        return _log_entry_from_row(row)

    async def list_logs(self, *, query: LogQuery) -> list[LogEntry]:
        where_parts: list[str] = []
        args: list[object] = []

        if query.hub_id is not None:
            args.append(query.hub_id)
            where_parts.append(f"hub_id = ${len(args)}")
        if query.member_id is not None:
            args.append(query.member_id)
            where_parts.append(f"member_id = ${len(args)}")
        if query.recipe_name is not None:
            args.append(query.recipe_name)
            where_parts.append(f"recipe_name = ${len(args)}")
        if query.channel is not None:
            args.append(query.channel)
            where_parts.append(f"channel = ${len(args)}")
        if query.statuses:
            args.append([status.value for status in query.statuses])
            where_parts.append(f"status = ANY(${len(args)}::text[])")
        if query.scheduled_from is not None:
            args.append(query.scheduled_from)
            where_parts.append(f"scheduled_at >= ${len(args)}")

        where_sql = f"WHERE {' AND '.join(where_parts)}" if where_parts else ""
        args.extend([query.limit, query.offset])
        sql = (
            f"SELECT * FROM nudge_logs {where_sql} "
            "ORDER BY scheduled_at DESC, id DESC "
            f"LIMIT ${len(args) - 1} OFFSET ${len(args)}"
        )

        async with self._connection() as conn:
            rows = await conn.fetch(sql, *args)
        return [_log_entry_from_row(row) for row in rows]

    async def _log_id_for(self, conn: Any, row: Any) -> str | None:
        log_id = _as_str(_record_get(row, "log_id"))
        if log_id is not None:
            return log_id
        # Rows written before log_id existed are matched to the newest queued
        # log for the same hub/member/recipe.
        fallback = await conn.fetchrow(
            SQL_FIND_QUEUED_LOG_FALLBACK,
            row["hub_id"],
            row["member_id"],
            row["recipe_name"],
        )
        if fallback is None:
            return None
        return _as_str(fallback["id"])

    async def _apply_failure(
        self,
        conn: Any,
        row: Any,
        *,
        error: str,
        error_code: str,
        max_retries: int,
        retry_classification: RetryClassification | None = None,
    ) -> OutcomeKind:
        resolved_error_code = resolve_error_code(error_code)
        plan = plan_failure(
            attempt=row["attempt"],
            max_retries=max_retries,
            classification=resolve_retry_classification(resolved_error_code, retry_classification),
        )
        log_id = await self._log_id_for(conn, row)

        if plan.terminal:
            await conn.execute(SQL_DELETE_QUEUE_ITEM, row["id"])
            if log_id is not None:
                await conn.fetchval(SQL_MARK_LOG_FAILED, log_id, plan.next_attempt, error, resolved_error_code)
            return OutcomeKind.FAILED

        await conn.execute(
            SQL_RESCHEDULE_QUEUE_ITEM,
            row["id"],
            int(plan.backoff.total_seconds()),
            plan.next_attempt,
        )
        if log_id is not None:
            await conn.fetchval(SQL_MARK_LOG_RETRY, log_id, plan.next_attempt, error, resolved_error_code)
        return OutcomeKind.REQUEUED


def _queue_item_from_row(row: Any) -> QueueItem:
    return QueueItem(
        id=row["id"],
        log_id=_as_str(_record_get(row, "log_id")),
        hub_id=row["hub_id"],
        member_id=row["member_id"],
        recipe_name=row["recipe_name"],
        payload=NudgePayload.from_json(_json_object(row["payload"])),
        available_at=row["available_at"],
        attempt=row["attempt"],
        locked_at=row["locked_at"],
        locked_by=row["locked_by"],
        lease_expires_at=row["lease_expires_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _log_entry_from_row(row: Any) -> LogEntry:
    return LogEntry(
        id=row["id"],
        hub_id=row["hub_id"],
        member_id=row["member_id"],
        recipe_name=row["recipe_name"],
        channel=row["channel"],
        message=row["message"],
        message_hash=row["message_hash"],
        status=NudgeStatus(row["status"]),
        scheduled_at=row["scheduled_at"],
        attempt=row["attempt"],
        error=row["error"],
        error_code=row["error_code"],
        sent_at=row["sent_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _json_object(value: object) -> dict[str, object]:
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, str):
        parsed = json.loads(value)
        if isinstance(parsed, dict):
            return parsed
    return {}


def _record_get(row: object, key: str) -> object | None:
    if isinstance(row, dict):
        return row.get(key)
    try:
        return row[key]  # type: ignore[index]
    except KeyError:
        return None


def _as_str(value: object | None) -> str | None:
    if isinstance(value, str):
        return value
    return None
