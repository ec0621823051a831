"""
Async Storage Backend Module

Awaitable storage used by the ledger core. The in-memory and SQLite backends
run the synchronous implementations on worker threads; PostgreSQL goes
through asyncpg and gives every serving instance the same conditional-write
guarantees.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any
import asyncio
import json

from .storage import StorageInterface, InMemoryStorage, SQLiteStorage


class AsyncStorageInterface(ABC):
    """Abstract interface for async storage backends"""

    @abstractmethod
    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record unconditionally"""
        pass

    @abstractmethod
    async def conditional_save(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: Optional[int]
    ) -> bool:
        """Save only if the stored version still equals ``expected_version``"""
        pass

    @abstractmethod
    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    async def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    async def count(self, table: str) -> int:
        """Count records in table"""
        pass

    async def close(self) -> None:
        """Close storage connection (default no-op)"""
        pass


class AsyncStorageAdapter(AsyncStorageInterface):
    """Runs a synchronous StorageInterface on worker threads"""

    def __init__(self, sync_storage: StorageInterface):
        self._sync_storage = sync_storage

    @property
    def sync_storage(self) -> StorageInterface:
        return self._sync_storage

    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        await asyncio.to_thread(self._sync_storage.save, table, record_id, data)

    async def conditional_save(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: Optional[int]
    ) -> bool:
        return await asyncio.to_thread(
            self._sync_storage.conditional_save, table, record_id, data, expected_version
        )

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._sync_storage.load, table, record_id)

    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._sync_storage.load_all, table)

    async def delete(self, table: str, record_id: str) -> bool:
        return await asyncio.to_thread(self._sync_storage.delete, table, record_id)

    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._sync_storage.find, table, filters)

    async def count(self, table: str) -> int:
        return await asyncio.to_thread(self._sync_storage.count, table)

    async def close(self) -> None:
        await asyncio.to_thread(self._sync_storage.close)


class AsyncInMemoryStorage(AsyncStorageAdapter):
    """Async in-memory storage for tests and single-process runs"""

    def __init__(self):
        super().__init__(InMemoryStorage())


class AsyncSQLiteStorage(AsyncStorageAdapter):
    """Async facade over a SQLite file"""

    def __init__(self, db_path: str = ":memory:"):
        super().__init__(SQLiteStorage(db_path))


class AsyncPostgreSQLStorage(AsyncStorageInterface):
    """True async PostgreSQL using asyncpg"""

    def __init__(self, connection_string: str, pool_size: int = 10):
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.pool = None
        self._tables: set = set()

    async def initialize(self):
        """Create connection pool (call on app startup)"""
        import asyncpg
        self.pool = await asyncpg.create_pool(
            self.connection_string,
            min_size=2,
            max_size=self.pool_size,
            command_timeout=60
        )

    async def close(self):
        """Close pool (call on app shutdown)"""
        if self.pool:
            await self.pool.close()
            self.pool = None

    async def _ensure_table(self, table: str) -> None:
        if not self.pool:
            raise RuntimeError("Pool not initialized. Call initialize() first.")
        if table in self._tables:
            return
        async with self.pool.acquire() as conn:
            await conn.execute(f'''
                CREATE TABLE IF NOT EXISTS "{table}" (
                    id TEXT PRIMARY KEY,
                    data JSONB NOT NULL,
                    created_at TIMESTAMP WITH TIME ZONE DEFAULT NOW(),
                    updated_at TIMESTAMP WITH TIME ZONE DEFAULT NOW()
                )
            ''')
        self._tables.add(table)

    @staticmethod
    def _decode(value: Any) -> Dict[str, Any]:
        return json.loads(value) if isinstance(value, str) else dict(value)

    async def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        await self._ensure_table(table)
        async with self.pool.acquire() as conn:
            await conn.execute(f'''
                INSERT INTO "{table}" (id, data, updated_at)
                VALUES ($1, $2, NOW())
                ON CONFLICT (id)
                DO UPDATE SET data = $2, updated_at = NOW()
            ''', record_id, json.dumps(data, default=str))

    async def conditional_save(
        self,
        table: str,
        record_id: str,
        data: Dict[str, Any],
        expected_version: Optional[int]
    ) -> bool:
        await self._ensure_table(table)
        payload = json.dumps(data, default=str)
        async with self.pool.acquire() as conn:
            if expected_version is None:
                result = await conn.execute(f'''
                    INSERT INTO "{table}" (id, data, updated_at)
                    VALUES ($1, $2, NOW())
                    ON CONFLICT (id) DO NOTHING
                ''', record_id, payload)
                return result == 'INSERT 0 1'
            result = await conn.execute(f'''
                UPDATE "{table}" SET data = $2, updated_at = NOW()
                WHERE id = $1 AND (data->>'version')::bigint = $3
            ''', record_id, payload, expected_version)
            return result == 'UPDATE 1'

    async def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        await self._ensure_table(table)
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f'SELECT data FROM "{table}" WHERE id = $1', record_id)
            return self._decode(row['data']) if row else None

    async def load_all(self, table: str) -> List[Dict[str, Any]]:
        await self._ensure_table(table)
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(f'SELECT data FROM "{table}" ORDER BY created_at')
            return [self._decode(row['data']) for row in rows]

    async def delete(self, table: str, record_id: str) -> bool:
        await self._ensure_table(table)
        async with self.pool.acquire() as conn:
            result = await conn.execute(f'DELETE FROM "{table}" WHERE id = $1', record_id)
            return result != 'DELETE 0'

    async def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        await self._ensure_table(table)
        if not filters:
            return await self.load_all(table)
        # JSONB containment keeps non-string values (numbers, booleans) exact
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                f'SELECT data FROM "{table}" WHERE data @> $1::jsonb ORDER BY created_at',
                json.dumps(filters, default=str)
            )
            return [self._decode(row['data']) for row in rows]

    async def count(self, table: str) -> int:
        await self._ensure_table(table)
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(f'SELECT COUNT(*) FROM "{table}"')
            return row[0]


def create_async_storage(
    storage_type: str = "memory",
    database_url: Optional[str] = None,
    pool_size: int = 10
) -> AsyncStorageInterface:
    """Factory function to create async storage instances"""
    storage_type = storage_type.lower()
    if storage_type == "postgresql":
        if not database_url:
            raise ValueError("database_url is required for PostgreSQL storage")
        return AsyncPostgreSQLStorage(database_url, pool_size)
    if storage_type == "sqlite":
        return AsyncSQLiteStorage(database_url or "garden_ledger.db")
    if storage_type == "memory":
        return AsyncInMemoryStorage()
    raise ValueError(f"Unknown storage type: {storage_type}")
