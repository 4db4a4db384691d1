import asyncio
import logging
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

from .collaborators import ExternalCreation, ExternalPropertyRef
from .data_model import (
    Database,
    FormulaProperty,
    Property,
    RelationProperty,
    RollupProperty,
    SchemaGraph,
)
from .notion_schema import (
    ExportAnalysis,
    PropertySupport,
    build_property_definition,
    check_property_names,
    classify_property,
    rollup_sources,
    summarize_support,
)
from .formula import formula_dependencies
from .relation_linker import dual_pairs
from .validation import ViolationCode, validate

logger = logging.getLogger(__name__)

DEFAULT_EXPORT_CONCURRENCY = 3


class ExportStage(str, Enum):
    CREATING_DATABASES = "CREATING_DATABASES"
    CREATING_PROPERTIES = "CREATING_PROPERTIES"
    CREATING_ROLLUPS = "CREATING_ROLLUPS"
    LINKING_RELATIONS = "LINKING_RELATIONS"
    DONE = "DONE"
    PARTIAL_FAILURE = "PARTIAL_FAILURE"


class ExternalResult(BaseModel):
    external_id: str
    url: str | None = None


class ExportMessage(BaseModel):
    scope: str = Field(description="Human readable location, e.g. `Tasks` or `Tasks.Owner`.")
    message: str
    entity_id: str | None = Field(
        default=None, description="The id of the database or property the message is about."
    )


class ExportResult(BaseModel):
    success: bool = Field(description="True when no error was recorded. Warnings do not count.")
    stage: ExportStage
    results: dict[str, ExternalResult] = Field(
        default_factory=dict,
        description="External ids of everything created. {internal_id: {external_id, url}}",
    )
    errors: list[ExportMessage] = Field(default_factory=list)
    warnings: list[ExportMessage] = Field(default_factory=list)
    analysis: ExportAnalysis


class UnitOutcome(BaseModel):
    "The outcome of one unit of export work."

    kind: Literal["success", "error", "warning"]
    scope: str
    entity_id: str | None = None
    message: str = ""
    external_id: str | None = None
    url: str | None = None


class ExportAccumulator:
    "Collects the outcomes of the units of an export in the order they are recorded."

    def __init__(self):
        self.outcomes: list[UnitOutcome] = []

    def success(self, scope: str, entity_id: str, external_id: str, url: str | None = None) -> None:
        self.outcomes.append(
            UnitOutcome(
                kind="success",
                scope=scope,
                entity_id=entity_id,
                external_id=external_id,
                url=url,
            )
        )

    def error(self, scope: str, message: str, entity_id: str | None = None) -> None:
        logger.error(f"{scope}: {message}")
        self.outcomes.append(
            UnitOutcome(kind="error", scope=scope, entity_id=entity_id, message=message)
        )

    def warning(self, scope: str, message: str, entity_id: str | None = None) -> None:
        logger.warning(f"{scope}: {message}")
        self.outcomes.append(
            UnitOutcome(kind="warning", scope=scope, entity_id=entity_id, message=message)
        )

    @property
    def results(self) -> dict[str, ExternalResult]:
        return {
            o.entity_id: ExternalResult(external_id=o.external_id, url=o.url)
            for o in self.outcomes
            if o.kind == "success"
        }

    @property
    def has_errors(self) -> bool:
        return any(o.kind == "error" for o in self.outcomes)

    def _messages(self, kind: str) -> list[ExportMessage]:
        return [
            ExportMessage(scope=o.scope, message=o.message, entity_id=o.entity_id)
            for o in self.outcomes
            if o.kind == kind
        ]

    def build(self, analysis: ExportAnalysis) -> ExportResult:
        return ExportResult(
            success=not self.has_errors,
            stage=ExportStage.PARTIAL_FAILURE if self.has_errors else ExportStage.DONE,
            results=self.results,
            errors=self._messages("error"),
            warnings=self._messages("warning"),
            analysis=analysis,
        )


class DatabasePlan(BaseModel):
    "What will be created for one database, in creation order."

    database: Database
    name_problems: list[str] = Field(default_factory=list)
    properties: list[Property] = Field(
        default_factory=list,
        description="Properties created in CREATING_PROPERTIES: plain, then relation, then formula.",
    )
    rollups: list[RollupProperty] = Field(default_factory=list)
    support: dict[str, PropertySupport] = Field(
        default_factory=dict, description="Export classification of every property. {property_id: support}"
    )


def _creation_rank(prop: Property) -> int:
    if isinstance(prop, RelationProperty):
        return 1
    if isinstance(prop, FormulaProperty):
        return 2
    return 0


def plan(graph: SchemaGraph) -> list[DatabasePlan]:
    "Classify the properties of every database and put the exportable ones in creation order."
    plans = []
    for database in graph.databases:
        db_plan = DatabasePlan(
            database=database, name_problems=check_property_names(database)
        )
        for prop in database.sorted_properties:
            support = classify_property(graph, database, prop)
            db_plan.support[prop.id] = support
            if support.status == "skipped":
                continue
            if isinstance(prop, RollupProperty):
                db_plan.rollups.append(prop)
            else:
                db_plan.properties.append(prop)
        # stable, so `order` is kept within each rank
        db_plan.properties.sort(key=_creation_rank)
        plans.append(db_plan)
    return plans


class ExportTranslator:
    """
    Translates a graph into containers and properties of an external system.

    Work is done in barrier stages: databases, then their properties, then
    rollups, then the links between dual relation properties. Within a stage
    at most `concurrency` external calls are in flight. A failed call is
    recorded and the export carries on with the remaining independent work.
    Nothing already created is rolled back.
    """

    def __init__(self, client: ExternalCreation, concurrency: int = DEFAULT_EXPORT_CONCURRENCY):
        if concurrency < 1:
            raise ValueError(f"Export concurrency must be positive, got {concurrency}")
        self.client = client
        self.concurrency = concurrency

    async def export_graph(self, graph: SchemaGraph, parent_ref: str) -> ExportResult:
        """
        Export a graph under the external parent.

        Parameters
        ----------
        graph : SchemaGraph
            The graph to export. It is not modified.
        parent_ref : str
            The external id of the parent the databases are created under.

        Returns
        -------
        result : ExportResult
            The aggregated outcome. External failures never raise.
        """
        accumulator = ExportAccumulator()
        semaphore = asyncio.Semaphore(self.concurrency)
        plans = plan(graph)
        support = {pid: s for p in plans for pid, s in p.support.items()}

        self._report_violations(graph, accumulator)
        for s in support.values():
            if s.status == "skipped":
                accumulator.warning(s.scope, f"Skipped: {s.note}", s.property_id)
            elif s.status == "converted":
                accumulator.warning(s.scope, f"Converted: {s.note}", s.property_id)

        async def call(coro_factory):
            async with semaphore:
                return await coro_factory()

        # databases
        logger.info(f"{ExportStage.CREATING_DATABASES.value}: {len(plans)} databases")
        containers: dict[str, str] = {}

        async def create_database(db_plan: DatabasePlan) -> None:
            database = db_plan.database
            if db_plan.name_problems:
                accumulator.error(database.name, "; ".join(db_plan.name_problems), database.id)
                return
            try:
                container = await call(
                    lambda: self.client.create_container(parent_ref, database.name or "Untitled")
                )
            except Exception as e:
                accumulator.error(database.name, f"Error creating database: {e}", database.id)
                return
            containers[database.id] = container.external_id
            accumulator.success(database.name, database.id, container.external_id, container.url)

        await asyncio.gather(*(create_database(p) for p in plans))

        for db_plan in plans:
            if db_plan.database.id in containers:
                continue
            for prop in [*db_plan.properties, *db_plan.rollups]:
                self._skip(
                    accumulator,
                    support[prop.id],
                    f"Skipped: database {db_plan.database.name} was not created",
                )

        # properties
        logger.info(f"{ExportStage.CREATING_PROPERTIES.value}: {len(containers)} databases")
        refs: dict[str, ExternalPropertyRef] = {}
        failed: set[str] = set()

        async def create_property(container_id: str, prop: Property, definition: dict) -> None:
            scope = support[prop.id].scope
            try:
                ref = await call(lambda: self.client.create_property(container_id, definition))
            except Exception as e:
                failed.add(prop.id)
                accumulator.error(scope, f"Error creating property: {e}", prop.id)
                return
            refs[prop.id] = ref
            accumulator.success(scope, prop.id, ref.external_id)

        def unavailable(prop: Property) -> bool:
            return prop.id in failed or support[prop.id].status == "skipped"

        async def create_database_properties(db_plan: DatabasePlan, formulas: bool) -> None:
            container_id = containers[db_plan.database.id]
            for prop in db_plan.properties:
                if isinstance(prop, FormulaProperty) != formulas:
                    continue
                target_container_id = None
                if isinstance(prop, RelationProperty):
                    target_container_id = containers.get(prop.relation_config.target_database_id)
                    if target_container_id is None:
                        self._skip(
                            accumulator,
                            support[prop.id],
                            "Skipped: relation target database was not created",
                        )
                        continue
                elif isinstance(prop, FormulaProperty):
                    missing = [
                        support[d.id].scope
                        for d in formula_dependencies(graph, db_plan.database, prop)
                        if unavailable(d)
                    ]
                    if missing:
                        self._skip(
                            accumulator,
                            support[prop.id],
                            f"Skipped: formula references properties that were not created: {', '.join(missing)}",
                        )
                        continue
                definition = build_property_definition(prop, target_container_id=target_container_id)
                await create_property(container_id, prop, definition)

        # formulas last, once everything they read has been attempted
        for formulas in (False, True):
            await asyncio.gather(
                *(
                    create_database_properties(p, formulas)
                    for p in plans
                    if p.database.id in containers
                )
            )

        # rollups
        rollup_jobs = []
        for db_plan in plans:
            if db_plan.database.id not in containers:
                continue
            for prop in db_plan.rollups:
                relation, target = rollup_sources(graph, db_plan.database, prop)
                if relation.id not in refs or target.id not in refs:
                    self._skip(
                        accumulator,
                        support[prop.id],
                        "Skipped: rollup relation or target property was not created",
                    )
                    continue
                definition = build_property_definition(
                    prop,
                    rollup_relation_name=relation.name,
                    rollup_target_name=target.name,
                )
                rollup_jobs.append(
                    create_property(containers[db_plan.database.id], prop, definition)
                )
        logger.info(f"{ExportStage.CREATING_ROLLUPS.value}: {len(rollup_jobs)} rollups")
        await asyncio.gather(*rollup_jobs)

        # links
        pairs = dual_pairs(graph)
        logger.info(f"{ExportStage.LINKING_RELATIONS.value}: {len(pairs)} dual relations")

        async def link(parent: RelationProperty, child: RelationProperty) -> None:
            scope = f"{support[parent.id].scope} <-> {support[child.id].scope}"
            if parent.id not in refs or child.id not in refs:
                accumulator.warning(
                    scope, "Dual relation not linked: one side was not created", parent.id
                )
                return
            try:
                await call(lambda: self.client.link_properties(refs[parent.id], refs[child.id]))
            except Exception as e:
                accumulator.warning(scope, f"Error linking dual relation: {e}", parent.id)

        await asyncio.gather(*(link(parent, child) for parent, child in pairs))

        result = accumulator.build(summarize_support(list(support.values())))
        logger.info(
            f"{result.stage.value}: {len(result.results)} created, {len(result.errors)} errors, {len(result.warnings)} warnings"
        )
        return result

    @staticmethod
    def _skip(accumulator: ExportAccumulator, support: PropertySupport, message: str) -> None:
        support.status = "skipped"
        support.note = message
        accumulator.warning(support.scope, message, support.property_id)

    @staticmethod
    def _report_violations(graph: SchemaGraph, accumulator: ExportAccumulator) -> None:
        for violation in validate(graph):
            if not violation.is_referential:
                accumulator.error(violation.scope, violation.message, violation.entity_id)
            elif violation.code in (
                ViolationCode.DUAL_PAIR_MISMATCH,
                ViolationCode.DANGLING_RELATION_DATABASE,
                ViolationCode.DANGLING_RELATION_PROPERTY,
            ):
                accumulator.warning(violation.scope, violation.message, violation.entity_id)
            else:
                # reported through the skipped property instead
                logger.debug(f"Referential violation: {violation.message}")


async def export_graph(
    graph: SchemaGraph,
    parent_ref: str,
    client: ExternalCreation,
    concurrency: int = DEFAULT_EXPORT_CONCURRENCY,
) -> ExportResult:
    "Export a graph under the external parent. See `ExportTranslator.export_graph`."
    return await ExportTranslator(client, concurrency).export_graph(graph, parent_ref)
