"""
Supabase-backed relational store with simple filtered CRUD
"""
import asyncio
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger
from supabase import create_client, Client

from supportbot.core.errors import StoreError


class SupabaseStore:
    """Filtered CRUD over Supabase tables. Failures raise StoreError."""

    def __init__(self, supabase_url: str, supabase_key: str):
        if not supabase_url or not supabase_key:
            raise StoreError("Supabase URL and key are required")
        try:
            self.client: Client = create_client(supabase_url, supabase_key)
        except Exception as e:
            logger.error(f"Failed to initialize Supabase client: {e}")
            raise StoreError(f"Supabase initialization failed: {e}") from e
        logger.info("Supabase store initialized")

    async def select(
        self,
        table: str,
        filters: Optional[Dict[str, Any]] = None,
        in_filters: Optional[Dict[str, Sequence[Any]]] = None,
        gte: Optional[Dict[str, Any]] = None,
        lte: Optional[Dict[str, Any]] = None,
        order_by: Optional[str] = None,
        desc: bool = False,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """Select rows matching equality, membership and range filters"""

        def run():
            query = self.client.table(table).select("*")
            for column, value in (filters or {}).items():
                query = query.eq(column, value)
            for column, values in (in_filters or {}).items():
                query = query.in_(column, list(values))
            for column, value in (gte or {}).items():
                query = query.gte(column, value)
            for column, value in (lte or {}).items():
                query = query.lte(column, value)
            if order_by:
                query = query.order(order_by, desc=desc)
            if limit:
                query = query.limit(limit)
            return query.execute()

        try:
            response = await asyncio.to_thread(run)
            return list(response.data or [])
        except Exception as e:
            logger.error(f"Failed to select from {table}: {e}")
            raise StoreError(f"select {table} failed: {e}") from e

    async def insert(self, table: str, row: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a row and return it with generated columns (id, timestamps)"""
        try:
            response = await asyncio.to_thread(
                lambda: self.client.table(table).insert(row).execute()
            )
        except Exception as e:
            logger.error(f"Failed to insert into {table}: {e}")
            raise StoreError(f"insert {table} failed: {e}") from e

        if not response.data:
            raise StoreError(f"insert {table} returned no row")
        return response.data[0]

    async def update(self, table: str, row_id: Any, changes: Dict[str, Any]) -> Dict[str, Any]:
        """Update one row by primary key"""
        try:
            response = await asyncio.to_thread(
                lambda: self.client.table(table).update(changes).eq("id", row_id).execute()
            )
        except Exception as e:
            logger.error(f"Failed to update {table} row {row_id}: {e}")
            raise StoreError(f"update {table} failed: {e}") from e
        return response.data[0] if response.data else {}

    async def ping(self) -> bool:
        """Cheap connectivity check used by health checks"""
        try:
            await self.select("trading_configs", limit=1)
            return True
        except StoreError:
            return False
