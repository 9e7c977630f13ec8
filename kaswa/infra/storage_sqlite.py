import asyncio
import time
from typing import Any

import aiosqlite


class DeliveryLog:
    """
    Async SQLite record of outbound WhatsApp deliveries, written by the
    HTTP layer after a send succeeds.
    """
    def __init__(self, db_path: str = "kaswa_deliveries.db"):
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def connect(self):
        if not self._db:
            self._db = await aiosqlite.connect(self.db_path)
            await self._init_db()

    async def close(self):
        if self._db:
            await self._db.close()
            self._db = None

    async def _init_db(self):
        await self._db.execute('''
            CREATE TABLE IF NOT EXISTS deliveries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                destination TEXT NOT NULL,
                text TEXT NOT NULL,
                status TEXT NOT NULL,
                source TEXT,
                created_at INTEGER NOT NULL
            )
        ''')
        await self._db.commit()

    async def record(self, destination: str, text: str, status: str = "sent", source: str | None = None) -> int:
        await self.connect()
        async with self._lock:
            cursor = await self._db.execute(
                "INSERT INTO deliveries (destination, text, status, source, created_at) VALUES (?, ?, ?, ?, ?)",
                (destination, text, status, source, int(time.time() * 1000)),
            )
            await self._db.commit()
            return int(cursor.lastrowid)

    async def recent(self, limit: int = 50, status: str | None = None) -> list[dict[str, Any]]:
        """Newest deliveries first, optionally only those with ``status``."""
        await self.connect()
        query = "SELECT id, destination, text, status, source, created_at FROM deliveries"
        params: tuple[Any, ...] = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status,)
        async with self._db.execute(f"{query} ORDER BY id DESC LIMIT ?", (*params, max(1, int(limit)))) as cursor:
            rows = await cursor.fetchall()
        return [
            {
                "id": row[0],
                "destination": row[1],
                "text": row[2],
                "status": row[3],
                "source": row[4],
                "created_at": row[5],
            }
            for row in rows
        ]
