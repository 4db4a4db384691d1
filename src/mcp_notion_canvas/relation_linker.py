"""
Dual relation pairing and the cascades that keep it consistent.

`pair` and `unpair` are the only operations that establish or break a dual
pairing. Both mutate the graph in place.
"""

import logging
import uuid

from .data_model import (
    Database,
    FormulaProperty,
    Property,
    Relation,
    RelationProperty,
    SchemaGraph,
)
from .formula import resolve_formula_reference

logger = logging.getLogger(__name__)


class GraphLinkError(ValueError):
    "Raised when a linking operation cannot be applied to the graph."


class PropertyNotFoundError(GraphLinkError):
    pass


class TypeMismatchError(GraphLinkError):
    "Raised when a property taking part in a pairing is not of type `relation`."


def _get_relation_property(graph: SchemaGraph, property_id: str) -> RelationProperty:
    prop = graph.find_property(property_id)
    if prop is None:
        raise PropertyNotFoundError(f"Property {property_id} does not exist in graph")
    if not isinstance(prop, RelationProperty):
        raise TypeMismatchError(
            f"Property {prop.name} has type {prop.type}, expected relation"
        )
    return prop


def _find_dual_record(graph: SchemaGraph, property_id: str) -> Relation | None:
    for relation in graph.relations:
        if relation.type == "dual" and property_id in (
            relation.from_property_id,
            relation.to_property_id,
        ):
            return relation
    return None


def pair(graph: SchemaGraph, parent_property_id: str, child_property_id: str) -> Relation:
    """
    Pair two relation properties into a dual relation.

    The first property becomes the parent side and the second the child side.
    Each property is pointed at the other's database and linked to the other's id,
    and the `dual` Relation record for the pair is created or updated.
    A property already paired with a different partner is unpaired from it first.

    Parameters
    ----------
    graph : SchemaGraph
        The graph holding both properties. It is modified in place.
    parent_property_id : str
        The id of the property on the side that owns the relation.
    child_property_id : str
        The id of the property on the other side.

    Returns
    -------
    relation : Relation
        The `dual` Relation record of the pair.

    Raises
    ------
    PropertyNotFoundError
        If either property does not exist.
    TypeMismatchError
        If either property is not of type `relation`.
    GraphLinkError
        If both ids name the same property.
    """
    if parent_property_id == child_property_id:
        raise GraphLinkError(f"Property {parent_property_id} cannot be paired with itself")

    parent = _get_relation_property(graph, parent_property_id)
    child = _get_relation_property(graph, child_property_id)
    parent_db = graph.find_owner(parent.id)
    child_db = graph.find_owner(child.id)

    for prop, partner in ((parent, child), (child, parent)):
        linked = prop.relation_config.linked_property_id
        if linked is not None and linked != partner.id:
            logger.info(f"Unpairing {prop.name} from {linked} before pairing with {partner.name}")
            unpair(graph, prop.id)

    parent.relation_config.target_database_id = child_db.id
    parent.relation_config.is_dual_property = True
    parent.relation_config.is_parent = True
    parent.relation_config.linked_property_id = child.id

    child.relation_config.target_database_id = parent_db.id
    child.relation_config.is_dual_property = True
    child.relation_config.is_parent = False
    child.relation_config.linked_property_id = parent.id

    relation = _find_dual_record(graph, parent.id) or _find_dual_record(graph, child.id)
    if relation is None:
        relation = Relation(
            id=str(uuid.uuid4()),
            from_database_id=parent_db.id,
            to_database_id=child_db.id,
            type="dual",
        )
        graph.relations.append(relation)

    relation.from_database_id = parent_db.id
    relation.to_database_id = child_db.id
    relation.from_property_id = parent.id
    relation.to_property_id = child.id
    relation.from_property_name = parent.name
    relation.to_property_name = child.name

    logger.debug(f"Paired {parent_db.name}.{parent.name} with {child_db.name}.{child.name}")
    return relation


def _clear_pairing(prop: RelationProperty) -> None:
    prop.relation_config.is_dual_property = False
    prop.relation_config.is_parent = None
    prop.relation_config.linked_property_id = None


def unpair(graph: SchemaGraph, property_id: str) -> str | None:
    """
    Break the dual pairing of a property.

    The counterpart is cleared as well, if it still exists and still links back,
    and the `dual` Relation record of the pair is removed. Unpairing a property
    that is not paired, or that no longer exists, does nothing.

    Returns the id of the former counterpart, if the property was paired.
    """
    prop = graph.find_property(property_id)
    if not isinstance(prop, RelationProperty):
        return None

    partner_id = prop.relation_config.linked_property_id
    was_paired = prop.relation_config.is_dual_property or partner_id is not None
    _clear_pairing(prop)

    if partner_id is not None:
        partner = graph.find_property(partner_id)
        if (
            isinstance(partner, RelationProperty)
            and partner.relation_config.linked_property_id == prop.id
        ):
            _clear_pairing(partner)

    graph.relations = [
        r
        for r in graph.relations
        if not (r.type == "dual" and property_id in (r.from_property_id, r.to_property_id))
    ]

    if was_paired:
        logger.debug(f"Unpaired property {prop.name} from {partner_id}")
    return partner_id


def remove_property(graph: SchemaGraph, property_id: str) -> Property:
    "Remove a property from its database, unpairing it and dropping the relations that reference it."
    database = graph.find_owner(property_id)
    if database is None:
        raise PropertyNotFoundError(f"Property {property_id} does not exist in graph")

    unpair(graph, property_id)

    removed = database.properties_dict[property_id]
    database.properties = [p for p in database.properties if p.id != property_id]
    graph.relations = [
        r
        for r in graph.relations
        if property_id not in (r.from_property_id, r.to_property_id)
    ]
    logger.info(f"Removed property {removed.name} from database {database.name}")
    return removed


def remove_database(graph: SchemaGraph, database_id: str) -> Database:
    "Remove a database, unpairing every relation into or out of it and dropping its relations."
    database = graph.find_database(database_id)
    if database is None:
        raise GraphLinkError(f"Database {database_id} does not exist in graph")

    for owner, prop in list(graph.iter_properties()):
        if not isinstance(prop, RelationProperty):
            continue
        if owner.id == database_id or prop.relation_config.target_database_id == database_id:
            unpair(graph, prop.id)

    graph.databases = [d for d in graph.databases if d.id != database_id]
    graph.relations = [
        r
        for r in graph.relations
        if database_id not in (r.from_database_id, r.to_database_id)
    ]
    logger.info(f"Removed database {database.name}")
    return database


def dual_pairs(graph: SchemaGraph) -> list[tuple[RelationProperty, RelationProperty]]:
    """
    Return the mutually linked relation property pairs of the graph as (parent, child).

    A pair is reported once. The parent is the side marked `isParent`, or the
    `from` side of the pair's Relation record, or the side seen first.
    """
    pairs = []
    seen: set[frozenset[str]] = set()

    for _, prop in graph.iter_properties():
        if not isinstance(prop, RelationProperty):
            continue
        config = prop.relation_config
        if not config.is_dual_property or config.linked_property_id is None:
            continue
        partner = graph.find_property(config.linked_property_id)
        if not isinstance(partner, RelationProperty):
            continue
        if partner.relation_config.linked_property_id != prop.id:
            continue
        key = frozenset((prop.id, partner.id))
        if key in seen:
            continue
        seen.add(key)

        parent, child = prop, partner
        if partner.relation_config.is_parent and not prop.relation_config.is_parent:
            parent, child = partner, prop
        elif prop.relation_config.is_parent is None and partner.relation_config.is_parent is None:
            record = _find_dual_record(graph, prop.id)
            if record is not None and record.from_property_id == partner.id:
                parent, child = partner, prop
        pairs.append((parent, child))
    return pairs


def derive_relations(graph: SchemaGraph) -> list[Relation]:
    """
    Rebuild the relation edges of the graph from its properties.

    Every relation property marked as the parent side yields a `dual` or `single`
    edge to its target database. Every formula reference of the form
    `"Relation.Property"` that resolves yields a `formula` edge to the
    database holding the referenced property.
    """
    relations = []

    for database, prop in graph.iter_properties():
        if isinstance(prop, RelationProperty):
            config = prop.relation_config
            if not config.target_database_id or not config.is_parent:
                continue
            child = graph.find_property(config.linked_property_id) if config.linked_property_id else None
            relations.append(
                Relation(
                    id=f"relation-{database.id}-{prop.id}-{config.target_database_id}-{child.id if child else 'unknown'}",
                    from_database_id=database.id,
                    to_database_id=config.target_database_id,
                    type="dual" if config.is_dual_property else "single",
                    from_property_name=prop.name,
                    to_property_name=child.name if child else "Related",
                    from_property_id=prop.id,
                    to_property_id=child.id if child else None,
                )
            )

        elif isinstance(prop, FormulaProperty):
            for reference in prop.formula_config.referenced_properties:
                if "." not in reference:
                    continue
                if graph.find_property_by_name(database.id, reference) is not None:
                    continue
                target = resolve_formula_reference(graph, database, reference)
                target_db = graph.find_owner(target.id) if target else None
                if target_db is None or target_db.id == database.id:
                    continue
                relations.append(
                    Relation(
                        id=f"formula-{database.id}-{prop.id}-{target_db.id}-{target.id}",
                        from_database_id=database.id,
                        to_database_id=target_db.id,
                        type="formula",
                        from_property_name=prop.name,
                        to_property_name=target.name,
                        from_property_id=prop.id,
                        to_property_id=target.id,
                    )
                )

    logger.debug(f"Derived {len(relations)} relations")
    return relations
