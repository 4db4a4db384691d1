import argparse
import os
from typing import Any
from unittest.mock import AsyncMock, Mock, patch

import pytest
from fastmcp.server import FastMCP

from mcp_notion_canvas.collaborators import (
    ExternalContainer,
    ExternalPropertyRef,
    OwnerContext,
)
from mcp_notion_canvas.data_model import SchemaGraph
from mcp_notion_canvas.server import create_mcp_server


@pytest.fixture
def clean_env():
    """Fixture to clean environment variables before each test."""
    env_vars = [
        "CANVAS_TRANSPORT",
        "CANVAS_MCP_SERVER_HOST",
        "CANVAS_MCP_SERVER_PORT",
        "CANVAS_MCP_SERVER_PATH",
        "CANVAS_MCP_SERVER_ALLOW_ORIGINS",
        "CANVAS_MCP_SERVER_ALLOWED_HOSTS",
        "CANVAS_NAMESPACE",
        "CANVAS_DB_URL",
        "CANVAS_DB_USERNAME",
        "CANVAS_DB_PASSWORD",
        "CANVAS_DB_NAME",
        "CANVAS_FREE_PLAN_LIMIT",
        "CANVAS_EXPORT_CONCURRENCY",
        "NOTION_API_KEY",
    ]
    # Store original values
    original_values = {}
    for var in env_vars:
        if var in os.environ:
            original_values[var] = os.environ[var]
            del os.environ[var]

    yield

    # Restore original values
    for var in env_vars:
        os.environ.pop(var, None)
    for var, value in original_values.items():
        os.environ[var] = value


@pytest.fixture
def args_factory():
    """Factory fixture to create argparse.Namespace objects with default None values."""

    def _create_args(**kwargs):
        defaults = {
            "db_url": None,
            "username": None,
            "password": None,
            "database": None,
            "notion_token": None,
            "canvas_limit": None,
            "export_concurrency": None,
            "transport": None,
            "server_host": None,
            "server_port": None,
            "server_path": None,
            "allow_origins": None,
            "allowed_hosts": None,
            "namespace": None,
        }
        defaults.update(kwargs)
        return argparse.Namespace(**defaults)

    return _create_args


@pytest.fixture
def mock_logger():
    """Fixture to provide a mocked logger."""
    with patch("mcp_notion_canvas.utils.logger") as mock:
        yield mock


@pytest.fixture(scope="function")
def dual_graph_dict() -> dict[str, Any]:
    """Two databases whose relation properties are paired into a dual relation, as a canvas document."""
    return {
        "databases": [
            {
                "id": "db-a",
                "name": "A",
                "x": 100,
                "y": 80,
                "color": "#4a8bb2",
                "properties": [
                    {"id": "a-name", "name": "Name", "type": "title", "required": True, "order": 0},
                    {
                        "id": "a-links",
                        "name": "LinksToB",
                        "type": "relation",
                        "order": 1,
                        "relationConfig": {
                            "targetDatabaseId": "db-b",
                            "isDualProperty": True,
                            "isParent": True,
                            "linkedPropertyId": "b-links",
                        },
                    },
                ],
            },
            {
                "id": "db-b",
                "name": "B",
                "x": 420,
                "y": 80,
                "color": "#598e71",
                "properties": [
                    {"id": "b-name", "name": "Name", "type": "title", "required": True, "order": 0},
                    {
                        "id": "b-links",
                        "name": "LinksToA",
                        "type": "relation",
                        "order": 1,
                        "relationConfig": {
                            "targetDatabaseId": "db-a",
                            "isDualProperty": True,
                            "isParent": False,
                            "linkedPropertyId": "a-links",
                        },
                    },
                ],
            },
        ],
        "relations": [
            {
                "id": "rel-ab",
                "fromDatabaseId": "db-a",
                "toDatabaseId": "db-b",
                "type": "dual",
                "fromPropertyName": "LinksToB",
                "toPropertyName": "LinksToA",
                "fromPropertyId": "a-links",
                "toPropertyId": "b-links",
            }
        ],
        "canvas": {"zoom": 1.0, "panX": 0, "panY": 0, "selectedIds": ["db-a"]},
        "memo": "two linked tables",
        "canvasInfo": {"id": "canvas-1", "name": "Projects"},
    }


@pytest.fixture(scope="function")
def dual_graph(dual_graph_dict: dict[str, Any]) -> SchemaGraph:
    return SchemaGraph.from_document(dual_graph_dict)


@pytest.fixture(scope="function")
def rich_graph_dict(dual_graph_dict: dict[str, Any]) -> dict[str, Any]:
    """The dual graph with extra property types on database A."""
    a_props = dual_graph_dict["databases"][0]["properties"]
    b_props = dual_graph_dict["databases"][1]["properties"]
    b_props.append(
        {"id": "b-due", "name": "Due", "type": "date", "order": 2, "dateConfig": {"format": "date"}}
    )
    a_props.extend(
        [
            {
                "id": "a-status",
                "name": "Status",
                "type": "status",
                "order": 2,
                "options": [{"id": "o1", "name": "Todo", "color": "#afaba3"}],
            },
            {
                "id": "a-tags",
                "name": "Tags",
                "type": "multi-select",
                "order": 3,
                "options": [
                    {"id": "o2", "name": "Urgent", "color": "#d95f59"},
                    {"id": "o3", "name": "Later", "color": "#123456"},
                ],
            },
            {"id": "a-cost", "name": "Cost", "type": "number", "order": 4},
            {
                "id": "a-double",
                "name": "Double",
                "type": "formula",
                "order": 5,
                "formulaConfig": {
                    "expression": "prop('Cost') * 2",
                    "referencedProperties": ["Cost"],
                },
            },
            {
                "id": "a-latest",
                "name": "Latest Due",
                "type": "rollup",
                "order": 6,
                "rollupConfig": {
                    "relationPropertyId": "a-links",
                    "targetPropertyId": "b-due",
                    "aggregation": "latest",
                },
            },
            {"id": "a-button", "name": "Run", "type": "button", "order": 7},
        ]
    )
    return dual_graph_dict


@pytest.fixture(scope="function")
def rich_graph(rich_graph_dict: dict[str, Any]) -> SchemaGraph:
    return SchemaGraph.from_document(rich_graph_dict)


@pytest.fixture
def owner_context() -> OwnerContext:
    return OwnerContext(owner_id="user-1", source_canvas_id="canvas-1")


@pytest.fixture
def mock_persistence():
    persistence = Mock()
    persistence.get = AsyncMock(return_value=None)
    persistence.put = AsyncMock(return_value=None)
    persistence.delete = AsyncMock(return_value=None)
    return persistence


@pytest.fixture
def mock_quota():
    quota = Mock()
    quota.get_owner_canvas_count = AsyncMock(return_value=0)
    quota.is_unlimited = AsyncMock(return_value=False)
    quota.increment_owner_canvas_count = AsyncMock(return_value=None)
    return quota


@pytest.fixture
def mock_creation_client():
    """An external creation client that succeeds and hands out sequential ids."""
    client = Mock()
    counter = {"n": 0}

    async def create_container(parent_ref: str, name: str) -> ExternalContainer:
        counter["n"] += 1
        return ExternalContainer(
            external_id=f"ext-db-{name}", url=f"https://notion.so/ext-db-{name}"
        )

    async def create_property(container_id: str, definition: dict) -> ExternalPropertyRef:
        counter["n"] += 1
        return ExternalPropertyRef(
            container_id=container_id,
            external_id=f"ext-prop-{counter['n']}",
            name=definition["name"],
        )

    client.create_container = AsyncMock(side_effect=create_container)
    client.create_property = AsyncMock(side_effect=create_property)
    client.link_properties = AsyncMock(return_value=None)
    return client


@pytest.fixture
def mock_store(mock_persistence, mock_quota):
    """A canvas store mock combining persistence and quota."""
    store = Mock()
    for name in ("get", "put", "delete"):
        setattr(store, name, getattr(mock_persistence, name))
    for name in ("get_owner_canvas_count", "is_unlimited", "increment_owner_canvas_count"):
        setattr(store, name, getattr(mock_quota, name))
    return store


@pytest.fixture
def test_mcp_server(mock_store, mock_creation_client) -> FastMCP:
    """Create an MCP server instance for testing."""
    return create_mcp_server(mock_store, mock_creation_client)
