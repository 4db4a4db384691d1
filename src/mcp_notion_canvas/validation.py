import logging
from collections import Counter
from enum import Enum

from pydantic import BaseModel, Field

from .data_model import (
    FormulaProperty,
    RelationProperty,
    RollupProperty,
    SchemaGraph,
)
from .formula import unresolved_references

logger = logging.getLogger(__name__)


class ViolationCode(str, Enum):
    DUPLICATE_DATABASE_ID = "duplicate-database-id"
    DUPLICATE_PROPERTY_ID = "duplicate-property-id"
    DANGLING_RELATION_DATABASE = "dangling-relation-database"
    DANGLING_RELATION_PROPERTY = "dangling-relation-property"
    RELATION_TARGET_UNRESOLVED = "relation-target-unresolved"
    DUAL_PAIR_MISMATCH = "dual-pair-mismatch"
    ROLLUP_RELATION_UNRESOLVED = "rollup-relation-unresolved"
    ROLLUP_TARGET_UNRESOLVED = "rollup-target-unresolved"
    FORMULA_REFERENCE_UNRESOLVED = "formula-reference-unresolved"


class Violation(BaseModel):
    "A broken graph invariant."

    code: ViolationCode = Field(description="What kind of invariant is broken.")
    scope: str = Field(description="Human readable location, e.g. `Tasks.Owner`.")
    entity_id: str = Field(description="The id of the offending entity.")
    message: str

    @property
    def is_referential(self) -> bool:
        return self.code not in (
            ViolationCode.DUPLICATE_DATABASE_ID,
            ViolationCode.DUPLICATE_PROPERTY_ID,
        )


def _duplicate_ids(graph: SchemaGraph) -> list[Violation]:
    violations = []

    for db_id, count in Counter(d.id for d in graph.databases).items():
        if count > 1:
            violations.append(
                Violation(
                    code=ViolationCode.DUPLICATE_DATABASE_ID,
                    scope=db_id,
                    entity_id=db_id,
                    message=f"Database id {db_id} appears {count} times in graph",
                )
            )

    for prop_id, count in Counter(p.id for _, p in graph.iter_properties()).items():
        if count > 1:
            violations.append(
                Violation(
                    code=ViolationCode.DUPLICATE_PROPERTY_ID,
                    scope=prop_id,
                    entity_id=prop_id,
                    message=f"Property id {prop_id} appears {count} times in graph",
                )
            )
    return violations


def _relation_endpoints(graph: SchemaGraph) -> list[Violation]:
    violations = []
    databases = graph.databases_dict

    for relation in graph.relations:
        scope = f"relation {relation.id}"
        for side, db_id, prop_id in (
            ("from", relation.from_database_id, relation.from_property_id),
            ("to", relation.to_database_id, relation.to_property_id),
        ):
            database = databases.get(db_id)
            if database is None:
                violations.append(
                    Violation(
                        code=ViolationCode.DANGLING_RELATION_DATABASE,
                        scope=scope,
                        entity_id=relation.id,
                        message=f"Relation {relation.id} has a {side} database {db_id} that does not exist in graph",
                    )
                )
                continue
            if prop_id is not None and prop_id not in database.properties_dict:
                violations.append(
                    Violation(
                        code=ViolationCode.DANGLING_RELATION_PROPERTY,
                        scope=scope,
                        entity_id=relation.id,
                        message=f"Relation {relation.id} has a {side} property {prop_id} that does not exist in database {database.name}",
                    )
                )
    return violations


def _dual_pairing(graph: SchemaGraph) -> list[Violation]:
    violations = []

    def mismatch(entity_id: str, scope: str, message: str) -> None:
        violations.append(
            Violation(
                code=ViolationCode.DUAL_PAIR_MISMATCH,
                scope=scope,
                entity_id=entity_id,
                message=message,
            )
        )

    def check_side(prop_id: str, partner_id: str, scope: str) -> None:
        prop = graph.find_property(prop_id)
        partner_owner = graph.find_owner(partner_id)
        if not isinstance(prop, RelationProperty):
            mismatch(prop_id, scope, f"Property {prop_id} is not a relation property")
            return
        config = prop.relation_config
        if not config.is_dual_property:
            mismatch(prop_id, scope, f"Property {prop.name} is not marked as a dual property")
        if config.linked_property_id != partner_id:
            mismatch(
                prop_id,
                scope,
                f"Property {prop.name} is linked to {config.linked_property_id} instead of {partner_id}",
            )
        if partner_owner is not None and config.target_database_id != partner_owner.id:
            mismatch(
                prop_id,
                scope,
                f"Property {prop.name} targets {config.target_database_id} instead of {partner_owner.id}",
            )

    # the relation record is authoritative for dual pairs
    for relation in graph.relations:
        if relation.type != "dual":
            continue
        scope = f"relation {relation.id}"
        if relation.from_property_id is None or relation.to_property_id is None:
            mismatch(relation.id, scope, f"Dual relation {relation.id} does not name both properties")
            continue
        if graph.find_property(relation.from_property_id) is None or graph.find_property(
            relation.to_property_id
        ) is None:
            # reported as a dangling relation property
            continue
        check_side(relation.from_property_id, relation.to_property_id, scope)
        check_side(relation.to_property_id, relation.from_property_id, scope)

    # one-sided links that no relation record covers
    for database, prop in graph.iter_properties():
        if not isinstance(prop, RelationProperty):
            continue
        config = prop.relation_config
        if not config.is_dual_property or config.linked_property_id is None:
            continue
        scope = f"{database.name}.{prop.name}"
        partner = graph.find_property(config.linked_property_id)
        if not isinstance(partner, RelationProperty):
            mismatch(
                prop.id,
                scope,
                f"Property {prop.name} is linked to {config.linked_property_id}, which is not a relation property in graph",
            )
        elif partner.relation_config.linked_property_id != prop.id:
            mismatch(
                prop.id,
                scope,
                f"Property {prop.name} is linked to {partner.name}, which does not link back",
            )
    return violations


def _property_references(graph: SchemaGraph) -> list[Violation]:
    violations = []
    databases = graph.databases_dict

    for database, prop in graph.iter_properties():
        scope = f"{database.name}.{prop.name}"

        if isinstance(prop, RelationProperty):
            target_id = prop.relation_config.target_database_id
            # an empty target is an unconfigured relation, not a dangling one
            if target_id and target_id not in databases:
                violations.append(
                    Violation(
                        code=ViolationCode.RELATION_TARGET_UNRESOLVED,
                        scope=scope,
                        entity_id=prop.id,
                        message=f"Relation property {prop.name} targets database {target_id} that does not exist in graph",
                    )
                )

        elif isinstance(prop, RollupProperty):
            config = prop.rollup_config
            relation_prop = (
                database.properties_dict.get(config.relation_property_id)
                if config
                else None
            )
            if not isinstance(relation_prop, RelationProperty):
                violations.append(
                    Violation(
                        code=ViolationCode.ROLLUP_RELATION_UNRESOLVED,
                        scope=scope,
                        entity_id=prop.id,
                        message=f"Rollup property {prop.name} does not follow a sibling relation property",
                    )
                )
                continue
            target = databases.get(relation_prop.relation_config.target_database_id)
            if target is None or config.target_property_id not in target.properties_dict:
                violations.append(
                    Violation(
                        code=ViolationCode.ROLLUP_TARGET_UNRESOLVED,
                        scope=scope,
                        entity_id=prop.id,
                        message=f"Rollup property {prop.name} aggregates property {config.target_property_id}, which is not in the target database of {relation_prop.name}",
                    )
                )

        elif isinstance(prop, FormulaProperty):
            missing = unresolved_references(
                graph, database, prop.formula_config.referenced_properties
            )
            if missing:
                violations.append(
                    Violation(
                        code=ViolationCode.FORMULA_REFERENCE_UNRESOLVED,
                        scope=scope,
                        entity_id=prop.id,
                        message=f"Formula property {prop.name} references properties that do not exist in database {database.name}: {', '.join(missing)}",
                    )
                )
    return violations


def validate(graph: SchemaGraph) -> list[Violation]:
    """
    Check the structural invariants of a graph.

    Checks, in order: id uniqueness, relation endpoints, dual pairings,
    rollup references and formula references. Never raises for problems in
    the graph content; every problem is returned as a `Violation`.
    """
    violations = [
        *_duplicate_ids(graph),
        *_relation_endpoints(graph),
        *_dual_pairing(graph),
        *_property_references(graph),
    ]
    logger.debug(f"Validated graph with {len(violations)} violations")
    return violations
