from pydantic import BaseModel, Field

from .data_model import Relation, SchemaGraph
from .notion_schema import ExportAnalysis
from .validation import Violation


class ValidationResponse(BaseModel):
    """Response model for the `validate_graph` tool."""

    valid: bool = Field(description="True when the graph has no violations.")
    violations: list[Violation] = Field(
        default_factory=list, description="The broken graph invariants."
    )


class ExportSupportResponse(BaseModel):
    """Response model for the `analyze_export_support` tool."""

    analysis: ExportAnalysis = Field(description="How every property will be exported.")
    message: str = Field(description="A readable summary of the conversions the export will make.")


class GraphEditResponse(BaseModel):
    """Response model for the tools that edit the relations of a graph."""

    graph: SchemaGraph = Field(description="The edited graph.")
    relation: Relation | None = Field(
        default=None, description="The dual relation record created or updated by the edit, if any."
    )
    affected_property_ids: list[str] = Field(
        default_factory=list, description="Ids of the properties changed or removed by the edit."
    )
