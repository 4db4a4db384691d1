import json
from datetime import datetime
from typing import Annotated, Any, Iterator, Literal, Union, get_args

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

PlainPropertyType = Literal[
    "title",
    "text",
    "checkbox",
    "url",
    "email",
    "phone",
    "person",
    "files",
    "created_time",
    "created_by",
    "last_edited_time",
    "last_edited_by",
    "button",
    "id",
]
SelectPropertyType = Literal["select", "multi-select", "status"]
DatePropertyType = Literal["date", "expiry"]
AggregationFunction = Literal[
    "count", "sum", "average", "min", "max", "earliest", "latest"
]
RelationType = Literal["single", "dual", "formula"]

PROPERTY_TYPES: tuple[str, ...] = (
    *get_args(PlainPropertyType),
    *get_args(SelectPropertyType),
    *get_args(DatePropertyType),
    "number",
    "formula",
    "relation",
    "rollup",
)


class CamelModel(BaseModel):
    "Base model that reads and writes the camelCase keys of the canvas document."

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, extra="ignore"
    )


class SelectOption(CamelModel):
    "An option of a select, multi-select or status property."

    id: str = Field(description="The option id.")
    name: str = Field(description="The option label.")
    color: str = Field(default="#afaba3", description="The option color as a hex string.")


class NumberConfig(CamelModel):
    "Display format of a number property."

    format: Literal["number", "currency", "percent"] = "number"
    currency: str | None = Field(
        default=None, description="Currency code, only meaningful for the currency format."
    )


class DateConfig(CamelModel):
    "Display format of a date property."

    format: Literal["date", "datetime"] = "date"
    include_time: bool = False


class RelationConfig(CamelModel):
    "Configuration of a relation property."

    target_database_id: str = Field(
        default="",
        description="The id of the database this relation points at. Empty while the relation is unconfigured.",
    )
    relation_name: str | None = None
    is_dual_property: bool = Field(
        default=False,
        description="True when this property is one half of a dual (two-way) relation.",
    )
    is_parent: bool | None = Field(
        default=None,
        description="True on the side that created the relation, False on the side created for it.",
    )
    linked_property_id: str | None = Field(
        default=None,
        description="The id of the paired property on the other side of a dual relation.",
    )


class RollupConfig(CamelModel):
    "Configuration of a rollup property."

    relation_property_id: str = Field(
        description="The id of a sibling relation property the rollup follows."
    )
    target_property_id: str = Field(
        description="The id of the property in the relation's target database that is aggregated."
    )
    aggregation: AggregationFunction = "count"


class FormulaConfig(CamelModel):
    "Configuration of a formula property."

    expression: str = ""
    referenced_properties: list[str] = Field(
        default_factory=list,
        description="Names (not ids) of the properties referenced by the expression.",
    )

    @field_validator("referenced_properties")
    def validate_referenced_properties(cls, v: list[str]) -> list[str]:
        "Drop duplicate names while keeping their first-seen order."
        return list(dict.fromkeys(v))


class _PropertyBase(CamelModel):
    # configs left over from an earlier type are dropped on load
    id: str = Field(description="The property id, unique across the whole graph.", min_length=1)
    name: str = Field(description="The property name, shown as the column header.")
    required: bool = False
    order: int = Field(default=0, description="Position of the property among its siblings.")
    memo: str | None = None


class PlainProperty(_PropertyBase):
    "A property whose type carries no extra configuration."

    type: PlainPropertyType


class SelectProperty(_PropertyBase):
    "A select, multi-select or status property."

    type: SelectPropertyType
    options: list[SelectOption] = Field(default_factory=list)
    selected_values: list[str] | None = None


class NumberProperty(_PropertyBase):
    type: Literal["number"]
    number_config: NumberConfig | None = None


class DateProperty(_PropertyBase):
    type: DatePropertyType
    date_config: DateConfig | None = None


class FormulaProperty(_PropertyBase):
    type: Literal["formula"]
    formula_config: FormulaConfig = Field(default_factory=FormulaConfig)


class RelationProperty(_PropertyBase):
    type: Literal["relation"]
    relation_config: RelationConfig = Field(default_factory=RelationConfig)


class RollupProperty(_PropertyBase):
    type: Literal["rollup"]
    rollup_config: RollupConfig | None = None


Property = Annotated[
    Union[
        PlainProperty,
        SelectProperty,
        NumberProperty,
        DateProperty,
        FormulaProperty,
        RelationProperty,
        RollupProperty,
    ],
    Field(discriminator="type"),
]


class Position(BaseModel):
    x: float = 0.0
    y: float = 0.0


class Database(CamelModel):
    "A table on the canvas."

    id: str = Field(description="The database id, unique within the graph.", min_length=1)
    name: str = Field(description="The database name.")
    x: float = Field(default=0.0, description="Horizontal canvas position.")
    y: float = Field(default=0.0, description="Vertical canvas position.")
    color: str = Field(default="#afaba3", description="The header color as a hex string.")
    memo: str | None = None
    is_collapsed: bool | None = None
    properties: list[Property] = Field(
        default_factory=list, description="The properties of the database."
    )
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def position(self) -> Position:
        return Position(x=self.x, y=self.y)

    @property
    def properties_dict(self) -> dict[str, Property]:
        "Return a dictionary of the properties of the database. {property_id: property}"
        return {p.id: p for p in self.properties}

    @property
    def property_names(self) -> set[str]:
        return {p.name for p in self.properties}

    @property
    def sorted_properties(self) -> list[Property]:
        "Return the properties in display order."
        return sorted(self.properties, key=lambda p: p.order)

    def add_property(self, prop: Property) -> None:
        "Add a new property to the database."
        if prop.id in self.properties_dict:
            raise ValueError(
                f"Property with id {prop.id} already exists in database {self.name}"
            )
        self.properties.append(prop)


class Relation(CamelModel):
    "An edge between two databases. For dual relations it is the record of the pairing."

    id: str = Field(description="The relation id.")
    from_database_id: str
    to_database_id: str
    type: RelationType = "single"
    label: str | None = None
    from_property_name: str = ""
    to_property_name: str = ""
    from_property_id: str | None = None
    to_property_id: str | None = None


class CanvasState(CamelModel):
    "The view state of the canvas."

    zoom: float = 1.0
    pan_x: float = 0.0
    pan_y: float = 0.0
    selected_ids: list[str] = Field(default_factory=list)


class CanvasInfo(CamelModel):
    "Metadata about the canvas the graph is stored as."

    id: str | None = None
    name: str | None = None
    owner_id: str | None = None
    duplicated_from: str | None = None
    duplicated_at: datetime | None = None


class SchemaGraph(CamelModel):
    "A canvas document: the databases, the relations between them and the view state."

    databases: list[Database] = Field(
        default_factory=list, description="The databases on the canvas."
    )
    relations: list[Relation] = Field(
        default_factory=list, description="The relations between the databases."
    )
    canvas: CanvasState = Field(default_factory=CanvasState)
    memo: str = ""
    canvas_info: CanvasInfo | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def databases_dict(self) -> dict[str, Database]:
        "Return a dictionary of the databases of the graph. {database_id: database}"
        return {d.id: d for d in self.databases}

    @property
    def name(self) -> str | None:
        return self.canvas_info.name if self.canvas_info else None

    def iter_properties(self) -> Iterator[tuple[Database, Property]]:
        "Yield every (database, property) pair of the graph."
        for database in self.databases:
            for prop in database.properties:
                yield database, prop

    def find_database(self, database_id: str) -> Database | None:
        for database in self.databases:
            if database.id == database_id:
                return database
        return None

    def find_property(self, property_id: str) -> Property | None:
        for _, prop in self.iter_properties():
            if prop.id == property_id:
                return prop
        return None

    def find_owner(self, property_id: str) -> Database | None:
        "Return the database owning the property, if any."
        for database, prop in self.iter_properties():
            if prop.id == property_id:
                return database
        return None

    def find_property_by_name(self, database_id: str, name: str) -> Property | None:
        database = self.find_database(database_id)
        if database is None:
            return None
        for prop in database.properties:
            if prop.name == name:
                return prop
        return None

    def identifiers(self) -> set[str]:
        "Return every database and property id of the graph."
        ids = {d.id for d in self.databases}
        ids.update(p.id for _, p in self.iter_properties())
        return ids

    def to_document(self) -> dict[str, Any]:
        "Convert the graph to its JSON-compatible canvas document."
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_document_json(self) -> str:
        "Convert the graph to its serialized canvas document."
        return json.dumps(self.to_document(), indent=2, ensure_ascii=False)

    @classmethod
    def from_document(cls, document: str | bytes | dict[str, Any]) -> "SchemaGraph":
        "Load a graph from a serialized or already parsed canvas document."
        if isinstance(document, (str, bytes)):
            return cls.model_validate_json(document)
        return cls.model_validate(document)
