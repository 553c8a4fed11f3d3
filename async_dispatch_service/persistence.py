"""SQLite backed persistence used by the queue processor and the CRM sync layer."""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import aiosqlite

JOB_STATUSES = ("pending", "sending", "sent", "failed", "skipped")
SYNC_MODES = ("webhook", "polling")

EVENT_CLAIMED = "claimed"
EVENT_DUPLICATE = "duplicate"
EVENT_IN_PROGRESS = "in_progress"

_JSON_COLUMNS = ("payload", "working_windows", "credentials", "settings", "event_data")


class Persistence:
    """Helper class responsible for reading and writing service state.

    Every method opens its own connection so that two overlapping scheduler
    runs (two processes, or two tasks in one process) only ever meet inside
    SQLite, where the write lock serialises the claim step.
    """

    def __init__(self, db_path: str = "/data/dispatch_service.db"):
        """Persist data to the given database path."""
        self.db_path = db_path or ":memory:"

    async def init_db(self) -> None:
        """Create (or migrate) the database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("PRAGMA journal_mode=WAL")
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS accounts (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    instance_name TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'disconnected',
                    timezone TEXT,
                    daily_limit INTEGER,
                    messages_sent_today INTEGER NOT NULL DEFAULT 0,
                    quota_day TEXT,
                    lease_owner TEXT,
                    lease_expires_ts INTEGER,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await self._add_missing_columns(
                db, "accounts", {"lease_owner": "TEXT", "lease_expires_ts": "INTEGER"}
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS agents (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    name TEXT,
                    timezone TEXT NOT NULL DEFAULT 'Europe/Berlin',
                    working_windows TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT,
                    status TEXT NOT NULL DEFAULT 'active',
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS queue_jobs (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    agent_id TEXT,
                    account_id TEXT NOT NULL,
                    conversation_id TEXT,
                    recipient TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    priority INTEGER NOT NULL DEFAULT 2,
                    source TEXT NOT NULL DEFAULT 'agent',
                    status TEXT NOT NULL DEFAULT 'pending',
                    not_before_ts INTEGER NOT NULL DEFAULT 0,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    provider_message_id TEXT,
                    lease_owner TEXT,
                    lease_expires_ts INTEGER,
                    created_ts INTEGER NOT NULL,
                    updated_ts INTEGER NOT NULL,
                    sent_ts INTEGER
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_due ON queue_jobs(status, not_before_ts)"
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_account ON queue_jobs(account_id)"
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS integrations (
                    id TEXT PRIMARY KEY,
                    tenant_id TEXT NOT NULL,
                    provider TEXT NOT NULL,
                    credentials TEXT NOT NULL DEFAULT '{}',
                    settings TEXT NOT NULL DEFAULT '{}',
                    sync_mode TEXT NOT NULL DEFAULT 'polling',
                    sync_mode_reason TEXT,
                    webhook_id TEXT,
                    webhook_url TEXT,
                    webhook_secret TEXT,
                    cursor TEXT,
                    last_polled_ts INTEGER,
                    lease_owner TEXT,
                    lease_expires_ts INTEGER,
                    active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS processed_events (
                    provider TEXT NOT NULL,
                    provider_event_id TEXT NOT NULL,
                    integration_id TEXT,
                    entity_type TEXT,
                    entity_id TEXT,
                    change_kind TEXT,
                    status TEXT NOT NULL DEFAULT 'processing',
                    jobs_created INTEGER NOT NULL DEFAULT 0,
                    is_test INTEGER NOT NULL DEFAULT 0,
                    event_data TEXT,
                    created_ts INTEGER NOT NULL,
                    processed_ts INTEGER,
                    PRIMARY KEY (provider, provider_event_id)
                )
                """
            )
            await self._add_missing_columns(
                db, "processed_events", {"is_test": "INTEGER NOT NULL DEFAULT 0", "event_data": "TEXT"}
            )
            await db.commit()

    @staticmethod
    async def _add_missing_columns(db: aiosqlite.Connection, table: str, columns: Dict[str, str]) -> None:
        async with db.execute(f"PRAGMA table_info({table})") as cur:
            existing = {row[1] for row in await cur.fetchall()}
        for name, decl in columns.items():
            if name not in existing:
                await db.execute(f"ALTER TABLE {table} ADD COLUMN {name} {decl}")

    @staticmethod
    def _decode_row(row: Tuple[Any, ...], columns: Sequence[str]) -> Dict[str, Any]:
        data = dict(zip(columns, row))
        for key in _JSON_COLUMNS:
            if key in data and isinstance(data[key], str):
                try:
                    data[key] = json.loads(data[key])
                except json.JSONDecodeError:
                    data[key] = {"raw": data[key]}
        for key in ("active", "is_test"):
            if key in data and data[key] is not None:
                data[key] = bool(data[key])
        return data

    async def _fetch_all(self, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_row(row, cols) for row in rows]

    async def _fetch_one(self, query: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        rows = await self._fetch_all(query, params)
        return rows[0] if rows else None

    # Accounts -----------------------------------------------------------------
    async def add_account(self, acc: Dict[str, Any]) -> None:
        """Insert or update a messaging account, keeping its quota counters."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO accounts (id, tenant_id, instance_name, status, timezone, daily_limit)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    tenant_id = excluded.tenant_id,
                    instance_name = excluded.instance_name,
                    status = excluded.status,
                    timezone = excluded.timezone,
                    daily_limit = excluded.daily_limit
                """,
                (
                    acc["id"],
                    acc["tenant_id"],
                    acc.get("instance_name") or acc["id"],
                    acc.get("status", "disconnected"),
                    acc.get("timezone"),
                    acc.get("daily_limit"),
                ),
            )
            await db.commit()

    async def get_account(self, account_id: str) -> Dict[str, Any]:
        """Fetch a single account or raise if it does not exist."""
        account = await self._fetch_one("SELECT * FROM accounts WHERE id=?", (account_id,))
        if account is None:
            raise ValueError(f"Account '{account_id}' not found")
        return account

    async def has_account(self, account_id: str) -> bool:
        return await self._fetch_one("SELECT id FROM accounts WHERE id=?", (account_id,)) is not None

    async def list_accounts(self) -> List[Dict[str, Any]]:
        """Return all known messaging accounts."""
        return await self._fetch_all("SELECT * FROM accounts ORDER BY id")

    async def set_account_status(self, account_id: str, status: str) -> None:
        """Record the connection state reported by the messaging provider."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("UPDATE accounts SET status=? WHERE id=?", (status, account_id))
            await db.commit()

    async def increment_quota(self, account_id: str, day: str) -> int:
        """Atomically count one successful send for ``day`` and return the new value.

        A counter that belongs to an earlier day restarts at 1.
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE accounts
                SET messages_sent_today = CASE WHEN quota_day = ? THEN messages_sent_today + 1 ELSE 1 END,
                    quota_day = ?
                WHERE id = ?
                """,
                (day, day, account_id),
            )
            async with db.execute(
                "SELECT messages_sent_today FROM accounts WHERE id=?", (account_id,)
            ) as cur:
                row = await cur.fetchone()
            await db.commit()
        return int(row[0]) if row else 0

    async def acquire_account_lease(self, account_id: str, owner: str, now_ts: int, ttl: int) -> bool:
        """Reserve ``account_id`` for one run so its quota is checked and counted serially.

        ``owner`` may re-acquire a lease it already holds.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE accounts SET lease_owner = ?, lease_expires_ts = ?
                WHERE id = ? AND (
                    lease_owner IS NULL OR lease_owner = ? OR lease_expires_ts IS NULL OR lease_expires_ts < ?
                )
                """,
                (owner, now_ts + ttl, account_id, owner, now_ts),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def release_account_lease(self, account_id: str, owner: str) -> None:
        """Drop the account reservation if ``owner`` still holds it."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "UPDATE accounts SET lease_owner = NULL, lease_expires_ts = NULL WHERE id = ? AND lease_owner = ?",
                (account_id, owner),
            )
            await db.commit()

    # Agents and conversations ---------------------------------------------------
    async def add_agent(self, agent: Dict[str, Any]) -> None:
        """Insert or replace an agent and its working windows."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO agents (id, tenant_id, name, timezone, working_windows)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    agent["id"],
                    agent["tenant_id"],
                    agent.get("name"),
                    agent.get("timezone") or "Europe/Berlin",
                    json.dumps(agent.get("working_windows") or []),
                ),
            )
            await db.commit()

    async def get_agent(self, agent_id: Optional[str]) -> Optional[Dict[str, Any]]:
        """Return the agent or ``None`` when the job is not bound to one."""
        if not agent_id:
            return None
        return await self._fetch_one("SELECT * FROM agents WHERE id=?", (agent_id,))

    async def set_conversation_status(self, conversation_id: str, status: str, tenant_id: Optional[str] = None) -> None:
        """Record the conversation status the dashboard reported."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO conversations (id, tenant_id, status) VALUES (?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET status = excluded.status, updated_at = CURRENT_TIMESTAMP
                """,
                (conversation_id, tenant_id, status),
            )
            await db.commit()

    async def get_conversation_status(self, conversation_id: Optional[str]) -> Optional[str]:
        """Return the stored conversation status, if any."""
        if not conversation_id:
            return None
        row = await self._fetch_one("SELECT status FROM conversations WHERE id=?", (conversation_id,))
        return row["status"] if row else None

    # Queue jobs -----------------------------------------------------------------
    async def insert_jobs(self, entries: Sequence[Dict[str, Any]], now_ts: int) -> List[str]:
        """Persist a batch of jobs, returning the ids that were stored.

        A job with the same id is replaced only while it is still ``pending``:
        jobs that were claimed, sent or closed are never rewritten.
        """
        if not entries:
            return []
        inserted: List[str] = []
        async with aiosqlite.connect(self.db_path) as db:
            for entry in entries:
                cursor = await db.execute(
                    """
                    INSERT INTO queue_jobs (
                        id, tenant_id, agent_id, account_id, conversation_id, recipient,
                        payload, priority, source, not_before_ts, created_ts, updated_ts
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        agent_id = excluded.agent_id,
                        account_id = excluded.account_id,
                        conversation_id = excluded.conversation_id,
                        recipient = excluded.recipient,
                        payload = excluded.payload,
                        priority = excluded.priority,
                        not_before_ts = excluded.not_before_ts,
                        updated_ts = excluded.updated_ts
                    WHERE queue_jobs.status = 'pending'
                    """,
                    (
                        entry["id"],
                        entry["tenant_id"],
                        entry.get("agent_id"),
                        entry["account_id"],
                        entry.get("conversation_id"),
                        entry["recipient"],
                        json.dumps(entry["payload"]),
                        int(entry.get("priority", 2)),
                        entry.get("source", "agent"),
                        int(entry.get("not_before_ts") or now_ts),
                        now_ts,
                        now_ts,
                    ),
                )
                if cursor.rowcount:
                    inserted.append(entry["id"])
            await db.commit()
        return inserted

    async def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Return a single job."""
        return await self._fetch_one("SELECT * FROM queue_jobs WHERE id=?", (job_id,))

    async def list_jobs(self, *, status: Optional[str] = None, limit: int = 500) -> List[Dict[str, Any]]:
        """Return jobs for inspection purposes."""
        query = "SELECT * FROM queue_jobs"
        params: List[Any] = []
        if status:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY created_ts ASC, id ASC LIMIT ?"
        params.append(limit)
        return await self._fetch_all(query, params)

    async def release_expired_leases(self, now_ts: int) -> int:
        """Return jobs left in ``sending`` by a run that died back to ``pending``."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE queue_jobs
                SET status = 'pending', lease_owner = NULL, lease_expires_ts = NULL, updated_ts = ?
                WHERE status = 'sending' AND lease_expires_ts IS NOT NULL AND lease_expires_ts < ?
                """,
                (now_ts, now_ts),
            )
            await db.commit()
            return cursor.rowcount

    async def claim_jobs(
        self,
        *,
        owner: str,
        limit: int,
        now_ts: int,
        lease_seconds: int,
        exclude_accounts: Iterable[str] = (),
    ) -> List[Dict[str, Any]]:
        """Atomically move up to ``limit`` due jobs from ``pending`` to ``sending``.

        Selection and transition happen inside one ``BEGIN IMMEDIATE``
        transaction and every update re-checks ``status = 'pending'``, so two
        concurrent runs can never both obtain the same job. Jobs of the
        accounts in ``exclude_accounts`` are left alone.
        """
        excluded = sorted(set(exclude_accounts))
        account_filter = ""
        if excluded:
            account_filter = f" AND account_id NOT IN ({','.join('?' for _ in excluded)})"
        async with aiosqlite.connect(self.db_path, timeout=30.0) as db:
            await db.execute("BEGIN IMMEDIATE")
            try:
                async with db.execute(
                    f"""
                    SELECT id FROM queue_jobs
                    WHERE status = 'pending' AND not_before_ts <= ?{account_filter}
                    ORDER BY priority ASC, not_before_ts ASC, created_ts ASC, id ASC
                    LIMIT ?
                    """,
                    (now_ts, *excluded, limit),
                ) as cur:
                    candidate_ids = [row[0] for row in await cur.fetchall()]
                claimed_ids: List[str] = []
                for job_id in candidate_ids:
                    cursor = await db.execute(
                        """
                        UPDATE queue_jobs
                        SET status = 'sending', lease_owner = ?, lease_expires_ts = ?, updated_ts = ?
                        WHERE id = ? AND status = 'pending'
                        """,
                        (owner, now_ts + lease_seconds, now_ts, job_id),
                    )
                    if cursor.rowcount:
                        claimed_ids.append(job_id)
                await db.commit()
            except BaseException:
                await db.rollback()
                raise
        if not claimed_ids:
            return []
        placeholders = ",".join("?" for _ in claimed_ids)
        rows = await self._fetch_all(
            f"SELECT * FROM queue_jobs WHERE id IN ({placeholders}) AND lease_owner = ?",
            (*claimed_ids, owner),
        )
        order = {job_id: idx for idx, job_id in enumerate(claimed_ids)}
        return sorted(rows, key=lambda job: order[job["id"]])

    async def _finish_claim(self, job_id: str, owner: str, assignments: str, params: Sequence[Any]) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"""
                UPDATE queue_jobs SET {assignments}, lease_owner = NULL, lease_expires_ts = NULL
                WHERE id = ? AND status = 'sending' AND lease_owner = ?
                """,
                (*params, job_id, owner),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def renew_leases(
        self,
        owner: str,
        job_ids: Iterable[str],
        now_ts: int,
        lease_seconds: int,
        account_ids: Iterable[str] = (),
    ) -> int:
        """Push the expiry of every job and account lease ``owner`` still holds.

        Returns the number of jobs whose lease was extended.
        """
        ids = [jid for jid in job_ids if jid]
        accounts = [aid for aid in account_ids if aid]
        renewed = 0
        async with aiosqlite.connect(self.db_path) as db:
            if ids:
                placeholders = ",".join("?" for _ in ids)
                cursor = await db.execute(
                    f"""
                    UPDATE queue_jobs SET lease_expires_ts = ?
                    WHERE status = 'sending' AND lease_owner = ? AND id IN ({placeholders})
                    """,
                    (now_ts + lease_seconds, owner, *ids),
                )
                renewed = cursor.rowcount
            if accounts:
                placeholders = ",".join("?" for _ in accounts)
                await db.execute(
                    f"UPDATE accounts SET lease_expires_ts = ? WHERE lease_owner = ? AND id IN ({placeholders})",
                    (now_ts + lease_seconds, owner, *accounts),
                )
            await db.commit()
        return renewed

    async def renew_lease(self, job_id: str, owner: str, now_ts: int, lease_seconds: int) -> bool:
        """Extend one claim; ``False`` means ``owner`` no longer holds it."""
        return await self.renew_leases(owner, [job_id], now_ts, lease_seconds) > 0

    async def mark_sent(self, job_id: str, owner: str, sent_ts: int, provider_message_id: Optional[str]) -> bool:
        """Close a claimed job as delivered."""
        return await self._finish_claim(
            job_id,
            owner,
            "status = 'sent', sent_ts = ?, provider_message_id = ?, last_error = NULL, updated_ts = ?",
            (sent_ts, provider_message_id, sent_ts),
        )

    async def mark_failed(self, job_id: str, owner: str, error_ts: int, error: str, attempts: Optional[int] = None) -> bool:
        """Close a claimed job as failed, keeping the reason for the dashboard."""
        return await self._finish_claim(
            job_id,
            owner,
            "status = 'failed', last_error = ?, attempts = COALESCE(?, attempts), updated_ts = ?",
            (error, attempts, error_ts),
        )

    async def mark_skipped(self, job_id: str, owner: str, ts: int, reason: str) -> bool:
        """Close a claimed job that must not be sent any more."""
        return await self._finish_claim(
            job_id,
            owner,
            "status = 'skipped', last_error = ?, updated_ts = ?",
            (reason, ts),
        )

    async def requeue(
        self,
        job_id: str,
        owner: str,
        *,
        not_before_ts: int,
        now_ts: int,
        error: Optional[str] = None,
        attempts: Optional[int] = None,
    ) -> bool:
        """Hand a claimed job back to ``pending`` with a new not-before time."""
        return await self._finish_claim(
            job_id,
            owner,
            "status = 'pending', not_before_ts = ?, last_error = ?, attempts = COALESCE(?, attempts), updated_ts = ?",
            (not_before_ts, error, attempts, now_ts),
        )

    async def release_claims(self, owner: str, job_ids: Iterable[str], now_ts: int) -> int:
        """Return claimed-but-unprocessed jobs to ``pending`` untouched."""
        ids = [jid for jid in job_ids if jid]
        if not ids:
            return 0
        placeholders = ",".join("?" for _ in ids)
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                f"""
                UPDATE queue_jobs
                SET status = 'pending', lease_owner = NULL, lease_expires_ts = NULL, updated_ts = ?
                WHERE status = 'sending' AND lease_owner = ? AND id IN ({placeholders})
                """,
                (now_ts, owner, *ids),
            )
            await db.commit()
            return cursor.rowcount

    async def dismiss_job(self, job_id: str, now_ts: int, reason: str = "dismissed") -> bool:
        """Mark a pending job as skipped on request of the dashboard."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE queue_jobs SET status = 'skipped', last_error = ?, updated_ts = ?
                WHERE id = ? AND status = 'pending'
                """,
                (reason, now_ts, job_id),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def queue_stats(self, *, now_ts: int, day_start_ts: int) -> Dict[str, int]:
        """Return counters used by monitoring."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                """
                SELECT
                    SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END),
                    SUM(CASE WHEN status = 'sending' THEN 1 ELSE 0 END),
                    SUM(CASE WHEN status = 'sent' AND sent_ts >= ? THEN 1 ELSE 0 END),
                    SUM(CASE WHEN status = 'failed' AND updated_ts >= ? THEN 1 ELSE 0 END)
                FROM queue_jobs
                """,
                (day_start_ts, now_ts - 86400),
            ) as cur:
                row = await cur.fetchone()
        pending, sending, sent_today, failed_last_24h = (int(v or 0) for v in (row or (0, 0, 0, 0)))
        return {
            "pending": pending,
            "sending": sending,
            "sent_today": sent_today,
            "failed_last_24h": failed_last_24h,
        }

    async def count_active_jobs(self) -> int:
        """Return the number of jobs still awaiting delivery."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT COUNT(*) FROM queue_jobs WHERE status IN ('pending', 'sending')"
            ) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    # Integrations -----------------------------------------------------------------
    async def add_integration(self, integration: Dict[str, Any]) -> None:
        """Insert or update an integration, preserving its cursor and webhook state."""
        sync_mode = integration.get("sync_mode") or "polling"
        if sync_mode not in SYNC_MODES:
            raise ValueError(f"Unknown sync mode '{sync_mode}'")
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO integrations (
                    id, tenant_id, provider, credentials, settings, sync_mode, webhook_secret, cursor, active
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    tenant_id = excluded.tenant_id,
                    provider = excluded.provider,
                    credentials = excluded.credentials,
                    settings = excluded.settings,
                    sync_mode = excluded.sync_mode,
                    webhook_secret = COALESCE(excluded.webhook_secret, integrations.webhook_secret),
                    active = excluded.active
                """,
                (
                    integration["id"],
                    integration["tenant_id"],
                    integration["provider"],
                    json.dumps(integration.get("credentials") or {}),
                    json.dumps(integration.get("settings") or {}),
                    sync_mode,
                    integration.get("webhook_secret"),
                    integration.get("cursor"),
                    1 if integration.get("active", True) else 0,
                ),
            )
            await db.commit()

    async def get_integration(self, integration_id: str) -> Optional[Dict[str, Any]]:
        """Return a single integration or ``None``."""
        return await self._fetch_one("SELECT * FROM integrations WHERE id=?", (integration_id,))

    async def list_integrations(self, *, active_only: bool = True) -> List[Dict[str, Any]]:
        """Return integrations ordered by id."""
        query = "SELECT * FROM integrations"
        if active_only:
            query += " WHERE active = 1"
        query += " ORDER BY id"
        return await self._fetch_all(query)

    async def set_sync_mode(self, integration_id: str, sync_mode: str, reason: Optional[str]) -> None:
        """Switch an integration between webhook and polling mode."""
        if sync_mode not in SYNC_MODES:
            raise ValueError(f"Unknown sync mode '{sync_mode}'")
        async with aiosqlite.connect(self.db_path) as db:
            if sync_mode == "polling":
                await db.execute(
                    """
                    UPDATE integrations
                    SET sync_mode = 'polling', sync_mode_reason = ?, webhook_id = NULL, webhook_url = NULL
                    WHERE id = ?
                    """,
                    (reason, integration_id),
                )
            else:
                await db.execute(
                    "UPDATE integrations SET sync_mode = ?, sync_mode_reason = ? WHERE id = ?",
                    (sync_mode, reason, integration_id),
                )
            await db.commit()

    async def store_webhook(self, integration_id: str, webhook_id: str, webhook_url: str) -> None:
        """Remember a successful webhook registration."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE integrations
                SET webhook_id = ?, webhook_url = ?, sync_mode = 'webhook', sync_mode_reason = NULL
                WHERE id = ?
                """,
                (webhook_id, webhook_url, integration_id),
            )
            await db.commit()

    async def set_webhook_secret(self, integration_id: str, secret: str) -> None:
        """Store the shared secret the provider must present on inbound calls."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("UPDATE integrations SET webhook_secret = ? WHERE id = ?", (secret, integration_id))
            await db.commit()

    async def advance_cursor(self, integration_id: str, cursor: Optional[str], polled_ts: int) -> bool:
        """Persist a new cursor; a value lower than the stored one is ignored.

        ``last_polled_ts`` is refreshed on every call.
        """
        async with aiosqlite.connect(self.db_path) as db:
            updated = 0
            if cursor is not None:
                result = await db.execute(
                    """
                    UPDATE integrations SET cursor = ?
                    WHERE id = ? AND (cursor IS NULL OR cursor < ?)
                    """,
                    (cursor, integration_id, cursor),
                )
                updated = result.rowcount
            await db.execute(
                "UPDATE integrations SET last_polled_ts = ? WHERE id = ?",
                (polled_ts, integration_id),
            )
            await db.commit()
        return updated > 0

    async def acquire_integration_lease(self, integration_id: str, owner: str, now_ts: int, ttl: int) -> bool:
        """Take the per-integration poll lock unless another live owner holds it."""
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE integrations SET lease_owner = ?, lease_expires_ts = ?
                WHERE id = ? AND (lease_owner IS NULL OR lease_expires_ts IS NULL OR lease_expires_ts < ?)
                """,
                (owner, now_ts + ttl, integration_id, now_ts),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def release_integration_lease(self, integration_id: str, owner: str) -> None:
        """Drop the poll lock if ``owner`` still holds it."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE integrations SET lease_owner = NULL, lease_expires_ts = NULL
                WHERE id = ? AND lease_owner = ?
                """,
                (integration_id, owner),
            )
            await db.commit()

    # Processed event ledger ---------------------------------------------------------
    async def claim_event(self, event: Dict[str, Any], now_ts: int, stale_after: int = 600) -> str:
        """Record ``(provider, provider_event_id)`` before its jobs are created.

        Returns ``EVENT_CLAIMED`` for the caller that must handle the event,
        ``EVENT_DUPLICATE`` when it was already handled and ``EVENT_IN_PROGRESS``
        while another worker holds a claim younger than ``stale_after`` seconds.
        An older ``processing`` row belongs to a worker that died between claim
        and completion and is taken over.
        """
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                INSERT INTO processed_events (
                    provider, provider_event_id, integration_id, entity_type, entity_id, change_kind, created_ts
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(provider, provider_event_id) DO UPDATE SET created_ts = excluded.created_ts
                WHERE processed_events.status = 'processing' AND processed_events.created_ts < ?
                """,
                (
                    event["provider"],
                    event["provider_event_id"],
                    event.get("integration_id"),
                    event.get("entity_type"),
                    event.get("entity_id"),
                    event.get("change_kind"),
                    now_ts,
                    now_ts - stale_after,
                ),
            )
            claimed = cursor.rowcount > 0
            status = None
            if not claimed:
                async with db.execute(
                    "SELECT status FROM processed_events WHERE provider = ? AND provider_event_id = ?",
                    (event["provider"], event["provider_event_id"]),
                ) as cur:
                    row = await cur.fetchone()
                status = row[0] if row else None
            await db.commit()
        if claimed:
            return EVENT_CLAIMED
        return EVENT_IN_PROGRESS if status == "processing" else EVENT_DUPLICATE

    async def complete_event(
        self,
        provider: str,
        provider_event_id: str,
        now_ts: int,
        jobs_created: int,
        *,
        is_test: bool = False,
        event_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Mark a claimed event as fully handled.

        Events captured while an integration is in test mode keep a snapshot
        of what was extracted in ``event_data``.
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                UPDATE processed_events
                SET status = 'done', processed_ts = ?, jobs_created = ?, is_test = ?, event_data = ?
                WHERE provider = ? AND provider_event_id = ?
                """,
                (
                    now_ts,
                    jobs_created,
                    1 if is_test else 0,
                    json.dumps(event_data) if event_data is not None else None,
                    provider,
                    provider_event_id,
                ),
            )
            await db.commit()

    async def release_event(self, provider: str, provider_event_id: str) -> None:
        """Forget a claim whose handling failed so a later delivery can retry it."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "DELETE FROM processed_events WHERE provider = ? AND provider_event_id = ? AND status = 'processing'",
                (provider, provider_event_id),
            )
            await db.commit()

    async def list_processed_events(
        self,
        *,
        integration_id: Optional[str] = None,
        provider: Optional[str] = None,
        test_only: bool = False,
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """Return the most recent ledger rows, newest first."""
        clauses: List[str] = []
        params: List[Any] = []
        if integration_id:
            clauses.append("integration_id = ?")
            params.append(integration_id)
        if provider:
            clauses.append("provider = ?")
            params.append(provider)
        if test_only:
            clauses.append("is_test = 1")
        query = "SELECT * FROM processed_events"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_ts DESC, provider_event_id DESC LIMIT ?"
        params.append(limit)
        return await self._fetch_all(query, params)
