"""
Mapping of canvas property types onto the Notion database schema.
"""

import logging
from typing import Any, Literal

from pydantic import BaseModel, Field

from .data_model import (
    Database,
    FormulaProperty,
    NumberProperty,
    Property,
    RelationProperty,
    RollupProperty,
    SchemaGraph,
    SelectProperty,
)
from .formula import (
    formula_references,
    normalize_expression,
    unresolved_references,
)

logger = logging.getLogger(__name__)

MAX_PROPERTY_NAME_LENGTH = 100
MAX_FORMULA_LENGTH = 500

PROPERTY_TYPE_MAPPING: dict[str, str | None] = {
    "title": "title",
    "text": "rich_text",
    "number": "number",
    "select": "select",
    "multi-select": "multi_select",
    "status": "select",
    "date": "date",
    "expiry": "date",
    "person": "people",
    "files": "files",
    "checkbox": "checkbox",
    "url": "url",
    "email": "email",
    "phone": "phone_number",
    "created_time": "created_time",
    "created_by": "created_by",
    "last_edited_time": "last_edited_time",
    "last_edited_by": "last_edited_by",
    "id": "rich_text",
    "relation": "relation",
    "formula": "formula",
    "rollup": "rollup",
    "button": None,
}

# canvas types created as a different Notion type
CONVERTED_TYPES = {"status", "expiry", "id"}

NOTION_COLORS = {
    "#666460": "gray",
    "#afaba3": "gray",
    "#a87964": "brown",
    "#d09b46": "orange",
    "#de8031": "orange",
    "#598e71": "green",
    "#4a8bb2": "blue",
    "#9b74b7": "purple",
    "#c75f96": "pink",
    "#d95f59": "red",
}

STATUS_OPTIONS = [
    {"name": "Not started", "color": "gray"},
    {"name": "In progress", "color": "blue"},
    {"name": "Complete", "color": "green"},
]

CURRENCY_FORMATS = {
    "USD": "dollar",
    "JPY": "yen",
    "EUR": "euro",
    "GBP": "pound",
    "KRW": "won",
    "CNY": "yuan",
}

ROLLUP_FUNCTIONS = {
    "count": "count",
    "sum": "sum",
    "average": "average",
    "min": "min",
    "max": "max",
    "earliest": "earliest_date",
    "latest": "latest_date",
}


def to_notion_color(color: str | None) -> str:
    "Map a canvas hex color onto the Notion palette."
    return NOTION_COLORS.get((color or "").lower(), "gray")


class PropertySupport(BaseModel):
    "How a single property will be exported."

    database_id: str
    database_name: str
    property_id: str
    property_name: str
    type: str = Field(description="The canvas property type.")
    status: Literal["supported", "converted", "skipped"]
    notion_type: str | None = Field(
        default=None, description="The Notion type the property is created as."
    )
    note: str | None = None

    @property
    def scope(self) -> str:
        return f"{self.database_name}.{self.property_name}"


class ExportAnalysis(BaseModel):
    "Counts of the properties that can and cannot be exported."

    total: int = 0
    supported: int = 0
    skipped: int = 0
    conversions: list[str] = Field(
        default_factory=list, description="Human readable notes on converted and skipped properties."
    )
    properties: list[PropertySupport] = Field(default_factory=list)


def check_property_names(database: Database) -> list[str]:
    "Return the problems with the property names of a database that Notion would reject."
    problems = []
    seen: set[str] = set()
    for prop in database.properties:
        if not prop.name.strip():
            problems.append(f"Empty property name found in database {database.name}")
        elif len(prop.name) > MAX_PROPERTY_NAME_LENGTH:
            problems.append(
                f"Property name {prop.name} exceeds {MAX_PROPERTY_NAME_LENGTH} character limit"
            )
        if prop.name in seen:
            problems.append(
                f"Duplicate property name {prop.name} in database {database.name}"
            )
        seen.add(prop.name)
    return problems


def _skip_reason(graph: SchemaGraph, database: Database, prop: Property) -> str | None:
    if prop.type == "button":
        return "button properties have no Notion equivalent"

    if isinstance(prop, FormulaProperty):
        expression = prop.formula_config.expression.strip()
        if not expression:
            return "formula has an empty expression"
        if len(expression) > MAX_FORMULA_LENGTH:
            return f"formula expression exceeds {MAX_FORMULA_LENGTH} characters"
        missing = unresolved_references(graph, database, formula_references(prop))
        if missing:
            return f"formula references properties that do not exist: {', '.join(missing)}"

    elif isinstance(prop, RelationProperty):
        target_id = prop.relation_config.target_database_id
        if not target_id:
            return "relation has no target database"
        if graph.find_database(target_id) is None:
            return f"relation target database {target_id} does not exist"

    elif isinstance(prop, RollupProperty):
        if prop.rollup_config is None:
            return "rollup is not configured"
        if rollup_sources(graph, database, prop) is None:
            return "rollup relation or target property does not exist"

    return None


def rollup_sources(
    graph: SchemaGraph, database: Database, prop: RollupProperty
) -> tuple[RelationProperty, Property] | None:
    "Return the relation property a rollup follows and the property it aggregates."
    if prop.rollup_config is None:
        return None
    relation = database.properties_dict.get(prop.rollup_config.relation_property_id)
    if not isinstance(relation, RelationProperty):
        return None
    target_db = graph.find_database(relation.relation_config.target_database_id)
    if target_db is None:
        return None
    target = target_db.properties_dict.get(prop.rollup_config.target_property_id)
    if target is None:
        return None
    return relation, target


def classify_property(
    graph: SchemaGraph, database: Database, prop: Property
) -> PropertySupport:
    "Decide whether a property is exported as is, converted to another type or skipped."
    support = PropertySupport(
        database_id=database.id,
        database_name=database.name,
        property_id=prop.id,
        property_name=prop.name,
        type=prop.type,
        status="supported",
        notion_type=PROPERTY_TYPE_MAPPING.get(prop.type),
    )

    reason = _skip_reason(graph, database, prop)
    if reason is not None:
        support.status = "skipped"
        support.notion_type = None
        support.note = reason
    elif prop.type in CONVERTED_TYPES:
        support.status = "converted"
        support.note = f"{prop.type} is created as {support.notion_type}"
        if prop.type == "status":
            support.note += ", change it back to status in Notion after export"
    return support


def summarize_support(properties: list[PropertySupport]) -> ExportAnalysis:
    "Count classified properties. Converted properties count as supported."
    analysis = ExportAnalysis(properties=properties)
    for support in properties:
        analysis.total += 1
        if support.status == "skipped":
            analysis.skipped += 1
            analysis.conversions.append(
                f"{support.scope}: {support.type} skipped ({support.note})"
            )
        else:
            analysis.supported += 1
            if support.status == "converted":
                analysis.conversions.append(
                    f"{support.scope}: {support.type} → {support.notion_type}"
                )
    return analysis


def analyze_export_support(graph: SchemaGraph) -> ExportAnalysis:
    """
    Classify every property of the graph without calling Notion.

    Returns
    -------
    analysis : ExportAnalysis
        `total` is always `supported + skipped`.
    """
    return summarize_support(
        [classify_property(graph, db, prop) for db, prop in graph.iter_properties()]
    )


def conversion_message(analysis: ExportAnalysis) -> str:
    "Return a readable summary of the conversions an export will make."
    if not analysis.conversions:
        return "All properties are supported by the Notion API."

    converted = [p for p in analysis.properties if p.status == "converted"]
    skipped = [p for p in analysis.properties if p.status == "skipped"]

    lines = ["Some properties are changed by the limits of the Notion API:", ""]
    if converted:
        lines.append("Converted:")
        lines.extend(f"- {p.scope} ({p.type}): created as {p.notion_type}" for p in converted)
        lines.append("")
    if skipped:
        lines.append("Skipped:")
        lines.extend(f"- {p.scope} ({p.type}): {p.note}" for p in skipped)
        lines.append("")

    lines.append(
        f"Total: {analysis.total}, supported: {analysis.supported}, skipped: {analysis.skipped}"
    )
    if any(p.type == "status" for p in converted):
        lines.append("Status properties are created as select and must be changed to status manually.")
    return "\n".join(lines)


def _number_format(prop: NumberProperty) -> str:
    config = prop.number_config
    if config is None or config.format == "number":
        return "number"
    if config.format == "percent":
        return "percent"
    return CURRENCY_FORMATS.get((config.currency or "USD").upper(), "number_with_commas")


def build_property_definition(
    prop: Property,
    target_container_id: str | None = None,
    rollup_relation_name: str | None = None,
    rollup_target_name: str | None = None,
) -> dict[str, Any]:
    """
    Build the Notion definition of a property.

    Parameters
    ----------
    prop : Property
        The property to build the definition for.
    target_container_id : str | None, optional
        The Notion id of the target database. Required for relation properties.
    rollup_relation_name : str | None, optional
        The name of the relation property a rollup follows. Required for rollup properties.
    rollup_target_name : str | None, optional
        The name of the property a rollup aggregates. Required for rollup properties.

    Returns
    -------
    definition : dict[str, Any]
        `{"name": ..., "type": <notion type>, <notion type>: {...}}`

    Raises
    ------
    ValueError
        If the property type has no Notion equivalent or a required argument is missing.
    """
    notion_type = PROPERTY_TYPE_MAPPING.get(prop.type)
    if notion_type is None:
        raise ValueError(f"Property type {prop.type} has no Notion equivalent")

    config: dict[str, Any] = {}
    match prop.type:
        case "number":
            config = {"format": _number_format(prop)}
        case "select" | "multi-select" if isinstance(prop, SelectProperty):
            config = {
                "options": [
                    {"name": o.name, "color": to_notion_color(o.color)}
                    for o in prop.options
                ]
            }
        case "status":
            config = {"options": [dict(o) for o in STATUS_OPTIONS]}
        case "relation":
            if not target_container_id:
                raise ValueError(f"Relation property {prop.name} needs a target database id")
            config = {
                "database_id": target_container_id,
                "type": "single_property",
                "single_property": {},
            }
        case "formula":
            config = {"expression": normalize_expression(prop.formula_config.expression)}
        case "rollup":
            if not rollup_relation_name or not rollup_target_name:
                raise ValueError(f"Rollup property {prop.name} needs its relation and target property names")
            config = {
                "relation_property_name": rollup_relation_name,
                "rollup_property_name": rollup_target_name,
                "function": ROLLUP_FUNCTIONS[prop.rollup_config.aggregation],
            }

    return {"name": prop.name, "type": notion_type, notion_type: config}
