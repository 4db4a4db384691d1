import json
import logging
from datetime import datetime
from typing import Literal

import psycopg
from psycopg.rows import namedtuple_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool
from pydantic import BaseModel, Field

from .collaborators import CollaboratorError

logger = logging.getLogger(__name__)


class StorageError(CollaboratorError):
    "Raised when the canvas store cannot complete a request."


class CanvasUser(BaseModel):
    """The plan and canvas count of an owner.

    Example:
    {
        "id": "user-1",
        "plan": "free",
        "canvas_count": 2,
        "trial_expires_at": null
    }
    """

    id: str = Field(description="The owner id.", min_length=1)
    plan: Literal["free", "premium"] = Field(default="free", description="The owner's plan.")
    canvas_count: int = Field(default=0, description="How many canvases the owner has.", ge=0)
    trial_expires_at: datetime | None = Field(
        default=None, description="End of the owner's trial. Owners on trial are unlimited."
    )


def get_pool_connection(pool: AsyncConnectionPool):
    """Context manager for getting a connection from the pool."""
    return pool.connection()


CREATE_CANVASES_TABLE = """
    CREATE TABLE IF NOT EXISTS canvases (
        owner_key TEXT NOT NULL,
        canvas_id TEXT NOT NULL,
        data JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        PRIMARY KEY (owner_key, canvas_id)
    )
"""

CREATE_USERS_TABLE = """
    CREATE TABLE IF NOT EXISTS canvas_users (
        id TEXT PRIMARY KEY,
        plan TEXT NOT NULL DEFAULT 'free',
        canvas_count INTEGER NOT NULL DEFAULT 0,
        trial_expires_at TIMESTAMPTZ
    )
"""


class CanvasStore:
    """
    PostgreSQL implementation of the persistence and quota collaborators.

    Canvas documents are stored as JSONB keyed by (owner_key, canvas_id). Owner
    plans and canvas counts live in `canvas_users`. Every psycopg failure is
    raised as `StorageError`.
    """

    def __init__(self, connection_pool: AsyncConnectionPool):
        self.pool = connection_pool

    async def ensure_schema(self) -> None:
        "Create the tables of the store if they do not exist."
        try:
            async with get_pool_connection(self.pool) as conn:
                async with conn.cursor() as cursor:
                    await cursor.execute(CREATE_CANVASES_TABLE)
                    await cursor.execute(CREATE_USERS_TABLE)
                await conn.commit()
        except psycopg.Error as e:
            logger.error(f"Error creating canvas tables: {e}")
            raise StorageError(f"Error creating canvas tables: {e}")
        logger.info("Ensured canvas tables exist")

    async def get(self, owner_key: str, canvas_id: str) -> str | None:
        "Return the serialized canvas document, or None if it does not exist."
        query = "SELECT data FROM canvases WHERE owner_key = %(owner_key)s AND canvas_id = %(canvas_id)s"
        try:
            async with get_pool_connection(self.pool) as conn:
                async with conn.cursor(row_factory=namedtuple_row) as cursor:
                    await cursor.execute(query, {"owner_key": owner_key, "canvas_id": canvas_id})
                    row = await cursor.fetchone()
        except psycopg.Error as e:
            raise StorageError(f"Error reading canvas {canvas_id}: {e}")
        if row is None:
            return None
        return json.dumps(row.data, ensure_ascii=False)

    async def put(self, owner_key: str, canvas_id: str, serialized_graph: str) -> None:
        "Store a new canvas document. Fails if the canvas already exists."
        query = """
            INSERT INTO canvases (owner_key, canvas_id, data)
            VALUES (%(owner_key)s, %(canvas_id)s, %(data)s)
        """
        params = {
            "owner_key": owner_key,
            "canvas_id": canvas_id,
            "data": Jsonb(json.loads(serialized_graph)),
        }
        try:
            async with get_pool_connection(self.pool) as conn:
                async with conn.cursor() as cursor:
                    await cursor.execute(query, params)
                await conn.commit()
        except psycopg.errors.UniqueViolation:
            raise StorageError(f"Canvas {canvas_id} already exists for {owner_key}")
        except psycopg.Error as e:
            raise StorageError(f"Error storing canvas {canvas_id}: {e}")
        logger.debug(f"Stored canvas {canvas_id} for {owner_key}")

    async def delete(self, owner_key: str, canvas_id: str) -> None:
        query = "DELETE FROM canvases WHERE owner_key = %(owner_key)s AND canvas_id = %(canvas_id)s"
        try:
            async with get_pool_connection(self.pool) as conn:
                async with conn.cursor() as cursor:
                    await cursor.execute(query, {"owner_key": owner_key, "canvas_id": canvas_id})
                await conn.commit()
        except psycopg.Error as e:
            raise StorageError(f"Error deleting canvas {canvas_id}: {e}")
        logger.debug(f"Deleted canvas {canvas_id} for {owner_key}")

    async def get_user(self, owner_id: str) -> CanvasUser | None:
        query = """
            SELECT id, plan, canvas_count, trial_expires_at
            FROM canvas_users WHERE id = %(id)s
        """
        try:
            async with get_pool_connection(self.pool) as conn:
                async with conn.cursor(row_factory=namedtuple_row) as cursor:
                    await cursor.execute(query, {"id": owner_id})
                    row = await cursor.fetchone()
        except psycopg.Error as e:
            raise StorageError(f"Error reading owner {owner_id}: {e}")
        if row is None:
            return None
        return CanvasUser(
            id=row.id,
            plan=row.plan,
            canvas_count=row.canvas_count,
            trial_expires_at=row.trial_expires_at,
        )

    async def upsert_user(self, user: CanvasUser) -> None:
        "Create or replace the plan record of an owner."
        query = """
            INSERT INTO canvas_users (id, plan, canvas_count, trial_expires_at)
            VALUES (%(id)s, %(plan)s, %(canvas_count)s, %(trial_expires_at)s)
            ON CONFLICT (id) DO UPDATE SET
                plan = EXCLUDED.plan,
                canvas_count = EXCLUDED.canvas_count,
                trial_expires_at = EXCLUDED.trial_expires_at
        """
        try:
            async with get_pool_connection(self.pool) as conn:
                async with conn.cursor() as cursor:
                    await cursor.execute(query, user.model_dump())
                await conn.commit()
        except psycopg.Error as e:
            raise StorageError(f"Error storing owner {user.id}: {e}")

    async def get_owner_canvas_count(self, owner_id: str) -> int:
        user = await self.get_user(owner_id)
        return user.canvas_count if user else 0

    async def is_unlimited(self, owner_id: str) -> bool:
        "An owner is unlimited on the premium plan or while their trial is running."
        query = """
            SELECT plan = 'premium' OR COALESCE(trial_expires_at > now(), false) AS unlimited
            FROM canvas_users WHERE id = %(id)s
        """
        try:
            async with get_pool_connection(self.pool) as conn:
                async with conn.cursor(row_factory=namedtuple_row) as cursor:
                    await cursor.execute(query, {"id": owner_id})
                    row = await cursor.fetchone()
        except psycopg.Error as e:
            raise StorageError(f"Error reading plan of owner {owner_id}: {e}")
        return bool(row and row.unlimited)

    async def increment_owner_canvas_count(self, owner_id: str) -> None:
        query = """
            INSERT INTO canvas_users (id, canvas_count) VALUES (%(id)s, 1)
            ON CONFLICT (id) DO UPDATE SET canvas_count = canvas_users.canvas_count + 1
        """
        try:
            async with get_pool_connection(self.pool) as conn:
                async with conn.cursor() as cursor:
                    await cursor.execute(query, {"id": owner_id})
                await conn.commit()
        except psycopg.Error as e:
            raise StorageError(f"Error updating canvas count of owner {owner_id}: {e}")
        logger.debug(f"Incremented canvas count of owner {owner_id}")
