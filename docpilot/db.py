import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import aiosqlite


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS documents(
                    id TEXT PRIMARY KEY,
                    user_id TEXT,
                    title TEXT,
                    content TEXT,
                    context TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                CREATE TABLE IF NOT EXISTS users(
                    id TEXT PRIMARY KEY,
                    subscription_status TEXT,
                    period_end TEXT,
                    weekly_uses INTEGER DEFAULT 0,
                    weekly_reset_at TEXT,
                    monthly_uses INTEGER DEFAULT 0,
                    monthly_reset_at TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS runs(
                    run_id TEXT PRIMARY KEY,
                    document_id TEXT,
                    user_id TEXT,
                    action_mode TEXT,
                    model_tier TEXT,
                    resolved_model TEXT,
                    status TEXT,
                    narration TEXT,
                    changes_json TEXT,
                    search_used INTEGER DEFAULT 0,
                    error_text TEXT,
                    created_at TEXT,
                    updated_at TEXT
                );
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Single write transaction; the write lock is taken up front."""
        async with aiosqlite.connect(self.path, isolation_level=None) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("BEGIN IMMEDIATE")
            try:
                yield db
            except BaseException:
                await db.execute("ROLLBACK")
                raise
            await db.execute("COMMIT")

    # Documents

    async def create_document(
        self,
        document_id: Optional[str] = None,
        user_id: Optional[str] = None,
        title: str = "",
        content: str = "",
        context: Optional[str] = None,
    ) -> Dict[str, Any]:
        doc_id = document_id or uuid.uuid4().hex
        now = utc_now()
        await self.execute(
            "INSERT INTO documents(id, user_id, title, content, context, created_at, updated_at) VALUES (?,?,?,?,?,?,?)",
            (doc_id, user_id, title, content, context, now, now),
        )
        return await self.get_document(doc_id)  # type: ignore[return-value]

    async def get_document(self, document_id: str) -> Optional[Dict[str, Any]]:
        row = await self.fetchone("SELECT * FROM documents WHERE id=?", (document_id,))
        return dict(row) if row else None

    async def fetch_document_context(self, document_id: str) -> Optional[str]:
        row = await self.fetchone("SELECT context FROM documents WHERE id=?", (document_id,))
        if not row:
            return None
        return row["context"]

    async def update_document_context(self, document_id: str, context: str) -> bool:
        existing = await self.get_document(document_id)
        if not existing:
            return False
        await self.execute(
            "UPDATE documents SET context=?, updated_at=? WHERE id=?",
            (context, utc_now(), document_id),
        )
        return True

    # Users

    async def upsert_user(
        self,
        user_id: str,
        subscription_status: Optional[str] = None,
        period_end: Optional[str] = None,
    ) -> Dict[str, Any]:
        await self.execute(
            "INSERT INTO users(id, subscription_status, period_end, weekly_uses, monthly_uses, created_at) "
            "VALUES (?,?,?,0,0,?) "
            "ON CONFLICT(id) DO UPDATE SET subscription_status=excluded.subscription_status, period_end=excluded.period_end",
            (user_id, subscription_status, period_end, utc_now()),
        )
        return await self.get_user(user_id)  # type: ignore[return-value]

    async def get_user(self, user_id: str) -> Optional[Dict[str, Any]]:
        row = await self.fetchone("SELECT * FROM users WHERE id=?", (user_id,))
        return dict(row) if row else None

    # Runs

    async def insert_run(
        self,
        run_id: str,
        document_id: str,
        user_id: Optional[str],
        action_mode: str,
        model_tier: str,
        status: str = "running",
    ) -> None:
        now = utc_now()
        await self.execute(
            "INSERT INTO runs(run_id, document_id, user_id, action_mode, model_tier, status, created_at, updated_at) "
            "VALUES (?,?,?,?,?,?,?,?)",
            (run_id, document_id, user_id, action_mode, model_tier, status, now, now),
        )

    async def update_run_model(self, run_id: str, resolved_model: str) -> None:
        await self.execute(
            "UPDATE runs SET resolved_model=?, updated_at=? WHERE run_id=?",
            (resolved_model, utc_now(), run_id),
        )

    async def finalize_run(
        self,
        run_id: str,
        status: str,
        narration: Optional[str] = None,
        changes: Optional[Dict[str, str]] = None,
        search_used: bool = False,
        error_text: Optional[str] = None,
    ) -> None:
        await self.execute(
            "UPDATE runs SET status=?, narration=?, changes_json=?, search_used=?, error_text=?, updated_at=? WHERE run_id=?",
            (
                status,
                narration,
                json.dumps(changes) if changes is not None else None,
                1 if search_used else 0,
                error_text,
                utc_now(),
                run_id,
            ),
        )

    async def get_run_summary(self, run_id: str) -> Optional[Dict[str, Any]]:
        row = await self.fetchone("SELECT * FROM runs WHERE run_id=?", (run_id,))
        if not row:
            return None
        data = dict(row)
        raw = data.pop("changes_json", None)
        data["changes"] = json.loads(raw) if raw else None
        data["search_used"] = bool(data.get("search_used"))
        return data
