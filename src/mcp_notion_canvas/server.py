import logging
from typing import Any, Literal

from fastmcp.exceptions import ToolError
from fastmcp.server import FastMCP
from fastmcp.tools.tool import ToolResult
from mcp.types import TextContent, ToolAnnotations
from psycopg_pool import AsyncConnectionPool
from pydantic import BaseModel, Field, TypeAdapter
from starlette.middleware import Middleware
from starlette.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from .collaborators import ExternalCreation, OwnerContext
from .data_model import Database, Property, SchemaGraph
from .duplication import DEFAULT_CANVAS_LIMIT, duplicate
from .export_translator import DEFAULT_EXPORT_CONCURRENCY, ExportTranslator
from .models import ExportSupportResponse, GraphEditResponse, ValidationResponse
from .notion_client import NotionClient
from .notion_schema import analyze_export_support, conversion_message
from .relation_linker import GraphLinkError, pair, remove_property, unpair
from .storage import CanvasStore
from .utils import build_connection_url, format_namespace
from .validation import validate

logger = logging.getLogger("mcp_notion_canvas")
logger.setLevel(logging.INFO)


def _tool_result(model: BaseModel) -> ToolResult:
    return ToolResult(
        content=[TextContent(type="text", text=model.model_dump_json(by_alias=True))],
        structured_content=model.model_dump(mode="json", by_alias=True),
    )


def create_mcp_server(
    store: CanvasStore,
    creation_client: ExternalCreation | None = None,
    namespace: str = "",
    canvas_limit: int = DEFAULT_CANVAS_LIMIT,
    export_concurrency: int = DEFAULT_EXPORT_CONCURRENCY,
) -> FastMCP:
    """Create an MCP server instance for canvas schema graphs."""

    mcp: FastMCP = FastMCP("mcp-notion-canvas")

    namespace_prefix = format_namespace(namespace)

    @mcp.resource("resource://schema/schema_graph")
    def schema_graph_schema() -> dict[str, Any]:
        """Get the schema for a canvas schema graph."""
        logger.info("Getting the schema for a schema graph.")
        return SchemaGraph.model_json_schema(by_alias=True)

    @mcp.resource("resource://schema/database")
    def database_schema() -> dict[str, Any]:
        """Get the schema for a database."""
        logger.info("Getting the schema for a database.")
        return Database.model_json_schema(by_alias=True)

    @mcp.resource("resource://schema/property")
    def property_schema() -> dict[str, Any]:
        """Get the schema for a property."""
        logger.info("Getting the schema for a property.")
        return TypeAdapter(Property).json_schema(by_alias=True)

    @mcp.tool(
        name=namespace_prefix + "validate_graph",
        annotations=ToolAnnotations(
            title="Validate Graph",
            readOnlyHint=True,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=False,
        ),
    )
    def validate_graph(
        graph: SchemaGraph = Field(..., description="The canvas schema graph to validate."),
    ) -> ValidationResponse:
        "Check the structural invariants of a schema graph. Returns every violation found; an empty list means the graph is consistent."
        logger.info("MCP tool: validate_graph")
        violations = validate(graph)
        return ValidationResponse(valid=not violations, violations=violations)

    @mcp.tool(
        name=namespace_prefix + "analyze_export_support",
        annotations=ToolAnnotations(
            title="Analyze Export Support",
            readOnlyHint=True,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=False,
        ),
    )
    def analyze_export(
        graph: SchemaGraph = Field(..., description="The canvas schema graph to analyze."),
    ) -> ExportSupportResponse:
        "Preview how each property of the graph will be exported to Notion: supported, converted to another type, or skipped. Does not call Notion."
        logger.info("MCP tool: analyze_export_support")
        analysis = analyze_export_support(graph)
        return ExportSupportResponse(analysis=analysis, message=conversion_message(analysis))

    @mcp.tool(
        name=namespace_prefix + "pair_relation_properties",
        annotations=ToolAnnotations(
            title="Pair Relation Properties",
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=False,
        ),
    )
    def pair_relation_properties(
        graph: SchemaGraph = Field(..., description="The canvas schema graph holding both properties."),
        parent_property_id: str = Field(..., description="The id of the relation property on the owning side."),
        child_property_id: str = Field(..., description="The id of the relation property on the other side."),
    ) -> GraphEditResponse:
        """Pair two relation properties into a dual (two-way) relation.

        Both properties must be of type `relation`. Each is pointed at the other's database and linked
        to the other's id. Returns the edited graph and the dual relation record.
        """
        logger.info(f"MCP tool: pair_relation_properties ({parent_property_id}, {child_property_id})")
        try:
            relation = pair(graph, parent_property_id, child_property_id)
        except GraphLinkError as e:
            logger.error(f"Error pairing relation properties: {e}")
            raise ToolError(f"Error pairing relation properties: {e}")
        return GraphEditResponse(
            graph=graph,
            relation=relation,
            affected_property_ids=[parent_property_id, child_property_id],
        )

    @mcp.tool(
        name=namespace_prefix + "unpair_relation_property",
        annotations=ToolAnnotations(
            title="Unpair Relation Property",
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=True,
            openWorldHint=False,
        ),
    )
    def unpair_relation_property(
        graph: SchemaGraph = Field(..., description="The canvas schema graph holding the property."),
        property_id: str = Field(..., description="The id of the relation property to unpair."),
    ) -> GraphEditResponse:
        "Break the dual pairing of a relation property. The counterpart is cleared as well. Unpairing a property that is not paired changes nothing."
        logger.info(f"MCP tool: unpair_relation_property ({property_id})")
        partner_id = unpair(graph, property_id)
        affected = [property_id] if partner_id is None else [property_id, partner_id]
        return GraphEditResponse(graph=graph, affected_property_ids=affected)

    @mcp.tool(
        name=namespace_prefix + "remove_property",
        annotations=ToolAnnotations(
            title="Remove Property",
            readOnlyHint=False,
            destructiveHint=True,
            idempotentHint=False,
            openWorldHint=False,
        ),
    )
    def remove_graph_property(
        graph: SchemaGraph = Field(..., description="The canvas schema graph holding the property."),
        property_id: str = Field(..., description="The id of the property to remove."),
    ) -> GraphEditResponse:
        "Remove a property from its database. A paired relation property is unpaired first and relation records referencing the property are dropped."
        logger.info(f"MCP tool: remove_property ({property_id})")
        try:
            removed = remove_property(graph, property_id)
        except GraphLinkError as e:
            logger.error(f"Error removing property: {e}")
            raise ToolError(f"Error removing property: {e}")
        return GraphEditResponse(graph=graph, affected_property_ids=[removed.id])

    @mcp.tool(
        name=namespace_prefix + "duplicate_canvas",
        annotations=ToolAnnotations(
            title="Duplicate Canvas",
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=False,
            openWorldHint=True,
        ),
    )
    async def duplicate_canvas(
        owner_id: str = Field(..., description="The id of the owner the copy is made for."),
        canvas_id: str = Field(..., description="The id of the stored canvas to duplicate."),
        owner_key: str | None = Field(
            None, description="The key the owner's canvases are stored under. Defaults to the owner id."
        ),
        new_canvas_name: str | None = Field(
            None, description="The name of the copy. Defaults to the original name followed by `(copy)`."
        ),
    ) -> ToolResult:
        """Duplicate a stored canvas for an owner.

        Every database, property and relation of the copy gets a fresh id. Fails with `limit-reached`
        when the owner's plan allows no more canvases, without writing anything.

        Example response:
        {"newGraph": {...}, "newCanvasId": "0b6c..."} or {"error": "limit-reached", "message": "..."}
        """
        logger.info(f"MCP tool: duplicate_canvas ({canvas_id})")
        context = OwnerContext(owner_id=owner_id, owner_key=owner_key, source_canvas_id=canvas_id)
        try:
            document = await store.get(context.storage_key, canvas_id)
            if document is None:
                raise ValueError(f"Canvas {canvas_id} does not exist")
            graph = SchemaGraph.from_document(document)
            outcome = await duplicate(
                graph,
                context,
                persistence=store,
                quota=store,
                canvas_limit=canvas_limit,
                new_canvas_name=new_canvas_name,
            )
        except Exception as e:
            logger.error(f"Error duplicating canvas {canvas_id}: {e}")
            raise ToolError(f"Error duplicating canvas {canvas_id}: {e}")
        return _tool_result(outcome)

    @mcp.tool(
        name=namespace_prefix + "export_graph",
        annotations=ToolAnnotations(
            title="Export Graph to Notion",
            readOnlyHint=False,
            destructiveHint=False,
            idempotentHint=False,
            openWorldHint=True,
        ),
    )
    async def export_graph(
        graph: SchemaGraph = Field(..., description="The canvas schema graph to export."),
        parent_page_id: str = Field(..., description="The id of the Notion page the databases are created under."),
    ) -> ToolResult:
        """Create the databases, properties and relations of a graph in Notion.

        Failures of single databases or properties do not stop the export; they are reported in
        `errors` and `warnings`. Already created Notion objects are not removed on failure.
        Returns the Notion id and url of everything created, keyed by canvas id.
        """
        logger.info(f"MCP tool: export_graph ({len(graph.databases)} databases)")
        if creation_client is None:
            logger.error("Error exporting graph: no Notion API key configured")
            raise ToolError("Error exporting graph: no Notion API key configured")
        try:
            translator = ExportTranslator(creation_client, concurrency=export_concurrency)
            result = await translator.export_graph(graph, parent_page_id)
        except Exception as e:
            logger.error(f"Error exporting graph: {e}")
            raise ToolError(f"Error exporting graph: {e}")
        return _tool_result(result)

    return mcp


async def main(
    db_url: str,
    db_user: str,
    db_password: str,
    db_name: str,
    notion_token: str | None = None,
    canvas_limit: int = DEFAULT_CANVAS_LIMIT,
    export_concurrency: int = DEFAULT_EXPORT_CONCURRENCY,
    transport: Literal["stdio", "sse", "http"] = "stdio",
    namespace: str = "",
    host: str = "127.0.0.1",
    port: int = 8000,
    path: str = "/mcp/",
    allow_origins: list[str] = [],
    allowed_hosts: list[str] = [],
) -> None:
    logger.info("Starting MCP Notion Canvas Server")
    logger.info(f"Connecting to PostgreSQL with URL: {db_url}")

    connection_pool = AsyncConnectionPool(
        build_connection_url(db_url, db_user, db_password, db_name), open=False
    )

    try:
        await connection_pool.open()
        logger.info("Connected to PostgreSQL successfully")
    except Exception as e:
        logger.error(f"Failed to connect to PostgreSQL: {e}")
        exit(1)

    store = CanvasStore(connection_pool)
    try:
        await store.ensure_schema()
    except Exception as e:
        logger.error(f"Failed to create canvas tables: {e}")
        exit(1)

    notion = NotionClient(notion_token) if notion_token else None

    custom_middleware = [
        Middleware(
            CORSMiddleware,
            allow_origins=allow_origins,
            allow_methods=["GET", "POST"],
            allow_headers=["*"],
        ),
        Middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts),
    ]

    mcp = create_mcp_server(
        store,
        notion,
        namespace=namespace,
        canvas_limit=canvas_limit,
        export_concurrency=export_concurrency,
    )
    logger.info("MCP server created")

    try:
        match transport:
            case "http":
                logger.info(f"HTTP server starting on {host}:{port}{path}")
                await mcp.run_http_async(
                    host=host, port=port, path=path, middleware=custom_middleware, stateless_http=True
                )
            case "stdio":
                logger.info("STDIO server starting")
                await mcp.run_stdio_async()
            case "sse":
                logger.info(f"SSE server starting on {host}:{port}{path}")
                await mcp.run_http_async(
                    host=host, port=port, path=path, middleware=custom_middleware, transport="sse"
                )
            case _:
                raise ValueError(f"Unsupported transport: {transport}")
    finally:
        if notion is not None:
            await notion.close()
        await connection_pool.close()
