import os

import pytest
import pytest_asyncio
from psycopg_pool import AsyncConnectionPool

from mcp_notion_canvas.data_model import SchemaGraph
from mcp_notion_canvas.server import create_mcp_server
from mcp_notion_canvas.storage import CanvasStore, get_pool_connection


@pytest_asyncio.fixture(scope="function")
async def db_pool():
    """Connection pool for the test database. Skips when no database is configured."""
    db_name = os.getenv("CANVAS_DB_NAME")
    db_user = os.getenv("CANVAS_DB_USERNAME")
    db_password = os.getenv("CANVAS_DB_PASSWORD")
    db_host = os.getenv("CANVAS_DB_HOST", "localhost")
    db_port = os.getenv("CANVAS_DB_PORT", "5432")

    if not db_name or not db_user or not db_password:
        pytest.skip(
            "Database integration tests skipped: CANVAS_DB_NAME, CANVAS_DB_USERNAME, "
            "and CANVAS_DB_PASSWORD environment variables must be set."
        )

    db_url = f"postgresql://{db_user}:{db_password}@{db_host}:{db_port}/{db_name}"
    pool = AsyncConnectionPool(db_url, open=False)
    await pool.open()

    yield pool

    await pool.close()


@pytest_asyncio.fixture(scope="function")
async def store(db_pool):
    """A canvas store with empty tables."""
    canvas_store = CanvasStore(db_pool)
    await canvas_store.ensure_schema()

    async with get_pool_connection(db_pool) as conn:
        async with conn.cursor() as cursor:
            await cursor.execute("TRUNCATE canvases, canvas_users")
        await conn.commit()

    return canvas_store


@pytest_asyncio.fixture(scope="function")
async def mcp_server(store):
    return create_mcp_server(store)


@pytest.fixture
def sample_graph() -> SchemaGraph:
    """Two databases linked by a dual relation."""
    return SchemaGraph.from_document(
        {
            "databases": [
                {
                    "id": "db-projects",
                    "name": "Projects",
                    "properties": [
                        {"id": "p-name", "name": "Name", "type": "title"},
                        {
                            "id": "p-tasks",
                            "name": "Tasks",
                            "type": "relation",
                            "relationConfig": {
                                "targetDatabaseId": "db-tasks",
                                "isDualProperty": True,
                                "isParent": True,
                                "linkedPropertyId": "t-project",
                            },
                        },
                    ],
                },
                {
                    "id": "db-tasks",
                    "name": "Tasks",
                    "properties": [
                        {"id": "t-name", "name": "Name", "type": "title"},
                        {
                            "id": "t-project",
                            "name": "Project",
                            "type": "relation",
                            "relationConfig": {
                                "targetDatabaseId": "db-projects",
                                "isDualProperty": True,
                                "isParent": False,
                                "linkedPropertyId": "p-tasks",
                            },
                        },
                    ],
                },
            ],
            "relations": [
                {
                    "id": "rel-1",
                    "fromDatabaseId": "db-projects",
                    "toDatabaseId": "db-tasks",
                    "type": "dual",
                    "fromPropertyName": "Tasks",
                    "toPropertyName": "Project",
                    "fromPropertyId": "p-tasks",
                    "toPropertyId": "t-project",
                }
            ],
            "canvasInfo": {"id": "canvas-1", "name": "Planning"},
        }
    )
