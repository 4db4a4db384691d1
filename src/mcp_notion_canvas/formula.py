"""
Name-based resolution of formula references.

Formula properties reference their inputs by property *name*. Every lookup of
such a reference goes through `resolve_formula_reference` so that the
resolution rule lives in one place.
"""

import re

from .data_model import (
    Database,
    FormulaProperty,
    Property,
    RelationProperty,
    SchemaGraph,
)

PROP_CALL_REGEX = re.compile(r"""prop\s*\(\s*["']([^"']+)["']\s*\)""")


def extract_expression_references(expression: str) -> list[str]:
    """
    Extract the property names referenced by `prop("...")` calls in a formula expression.

    Parameters
    ----------
    expression : str
        The formula expression.

    Returns
    -------
    references : list[str]
        The referenced names, without duplicates, in order of first appearance.
    """
    return list(dict.fromkeys(PROP_CALL_REGEX.findall(expression)))


def normalize_expression(expression: str) -> str:
    "Rewrite every `prop('X')` call to the double-quoted `prop(\"X\")` form."
    return PROP_CALL_REGEX.sub(lambda m: f'prop("{m.group(1)}")', expression.strip())


def _sibling_relation(database: Database, name: str) -> RelationProperty | None:
    for prop in database.properties:
        if isinstance(prop, RelationProperty) and prop.name == name:
            return prop
    return None


def resolve_formula_reference(
    graph: SchemaGraph, database: Database, reference: str
) -> Property | None:
    """
    Resolve a formula reference to the property it names.

    A plain name resolves to the sibling property with that name. A dotted name
    `"Relation.Property"` resolves through the sibling relation property named
    `Relation` to the property named `Property` in the relation's target database.

    Returns None when the reference does not resolve.
    """
    for prop in database.properties:
        if prop.name == reference:
            return prop

    if "." not in reference:
        return None

    relation_name, target_name = reference.split(".", 1)
    relation = _sibling_relation(database, relation_name)
    if relation is None or not relation.relation_config.target_database_id:
        return None
    return graph.find_property_by_name(
        relation.relation_config.target_database_id, target_name
    )


def formula_references(prop: FormulaProperty) -> list[str]:
    "Return the names referenced by the expression and the declared references, without duplicates."
    return list(
        dict.fromkeys(
            [
                *extract_expression_references(prop.formula_config.expression),
                *prop.formula_config.referenced_properties,
            ]
        )
    )


def formula_dependencies(
    graph: SchemaGraph, database: Database, prop: FormulaProperty
) -> list[Property]:
    """
    Return the properties a formula reads, in reference order.

    A dotted reference depends on the sibling relation it goes through as well
    as on the property it names. References that do not resolve are left out.
    """
    dependencies: dict[str, Property] = {}
    for reference in formula_references(prop):
        resolved = resolve_formula_reference(graph, database, reference)
        if resolved is None:
            continue
        if resolved.name != reference:
            relation = _sibling_relation(database, reference.split(".", 1)[0])
            dependencies.setdefault(relation.id, relation)
        dependencies.setdefault(resolved.id, resolved)
    return list(dependencies.values())


def unresolved_references(
    graph: SchemaGraph, database: Database, references: list[str]
) -> list[str]:
    "Return the references that do not resolve within the database."
    return [
        ref
        for ref in references
        if resolve_formula_reference(graph, database, ref) is None
    ]
