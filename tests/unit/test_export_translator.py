import asyncio

import pytest

from mcp_notion_canvas.collaborators import CollaboratorError, ExternalContainer
from mcp_notion_canvas.data_model import (
    FormulaConfig,
    FormulaProperty,
    PlainProperty,
    SchemaGraph,
)
from mcp_notion_canvas.export_translator import (
    ExportStage,
    ExportTranslator,
    export_graph,
    plan,
)


def _failing_container(failing_name: str):
    async def create_container(parent_ref: str, name: str) -> ExternalContainer:
        if name == failing_name:
            raise CollaboratorError(f"Could not create {name}")
        return ExternalContainer(external_id=f"ext-db-{name}", url=f"https://notion.so/ext-db-{name}")

    return create_container


def test_plan_orders_properties_for_creation(rich_graph: SchemaGraph):
    plans = plan(rich_graph)
    a_plan = plans[0]

    assert [p.id for p in a_plan.properties] == [
        "a-name",
        "a-status",
        "a-tags",
        "a-cost",
        "a-links",
        "a-double",
    ]
    assert [p.id for p in a_plan.rollups] == ["a-latest"]
    assert a_plan.support["a-button"].status == "skipped"
    assert a_plan.name_problems == []


def test_concurrency_must_be_positive(mock_creation_client):
    with pytest.raises(ValueError):
        ExportTranslator(mock_creation_client, concurrency=0)


class TestExport:
    @pytest.mark.asyncio
    async def test_full_export(self, rich_graph: SchemaGraph, mock_creation_client):
        result = await export_graph(rich_graph, "page-1", mock_creation_client)

        assert result.success is True
        assert result.stage == ExportStage.DONE
        assert result.errors == []
        assert result.results["db-a"].external_id == "ext-db-A"
        assert result.results["db-a"].url == "https://notion.so/ext-db-A"
        assert "a-button" not in result.results
        assert len(result.results) == 12
        assert result.analysis.total == 11
        assert result.analysis.skipped == 1

        warned = {w.entity_id for w in result.warnings}
        assert {"a-button", "a-status"} <= warned

        mock_creation_client.create_container.assert_any_await("page-1", "A")
        mock_creation_client.create_container.assert_any_await("page-1", "B")
        mock_creation_client.link_properties.assert_awaited_once()
        parent_ref, child_ref = mock_creation_client.link_properties.call_args.args
        assert parent_ref.external_id == result.results["a-links"].external_id
        assert child_ref.external_id == result.results["b-links"].external_id

    @pytest.mark.asyncio
    async def test_definitions_sent_to_client(self, rich_graph: SchemaGraph, mock_creation_client):
        await export_graph(rich_graph, "page-1", mock_creation_client)

        definitions = {
            call.args[1]["name"]: (call.args[0], call.args[1])
            for call in mock_creation_client.create_property.call_args_list
        }
        container_id, relation = definitions["LinksToB"]
        assert container_id == "ext-db-A"
        assert relation["relation"]["database_id"] == "ext-db-B"
        assert definitions["Latest Due"][1]["rollup"]["rollup_property_name"] == "Due"
        assert definitions["Double"][1]["formula"]["expression"] == 'prop("Cost") * 2'
        assert "Run" not in definitions

    @pytest.mark.asyncio
    async def test_rollups_created_after_properties(self, rich_graph: SchemaGraph, mock_creation_client):
        await export_graph(rich_graph, "page-1", mock_creation_client, concurrency=1)

        names = [call.args[1]["name"] for call in mock_creation_client.create_property.call_args_list]
        assert names.index("Latest Due") > names.index("Due")
        assert names.index("Latest Due") > names.index("LinksToB")

    @pytest.mark.asyncio
    async def test_failed_database_is_isolated(self, dual_graph: SchemaGraph, mock_creation_client):
        mock_creation_client.create_container.side_effect = _failing_container("A")

        result = await export_graph(dual_graph, "page-1", mock_creation_client)

        assert result.success is False
        assert result.stage == ExportStage.PARTIAL_FAILURE
        assert len(result.errors) == 1
        assert result.errors[0].entity_id == "db-a"
        assert "Could not create A" in result.errors[0].message

        assert "db-a" not in result.results
        assert "a-name" not in result.results
        assert "db-b" in result.results
        assert "b-name" in result.results
        # B's relation points at A, so it cannot be created either
        assert "b-links" not in result.results

        warned = {w.entity_id for w in result.warnings}
        assert {"a-name", "a-links", "b-links"} <= warned
        mock_creation_client.link_properties.assert_not_called()

    @pytest.mark.asyncio
    async def test_formula_through_skipped_relation_is_skipped(
        self, dual_graph: SchemaGraph, mock_creation_client
    ):
        dual_graph.databases[0].add_property(
            FormulaProperty(
                id="a-f",
                name="Linked Name",
                type="formula",
                order=2,
                formula_config=FormulaConfig(expression='prop("LinksToB.Name")'),
            )
        )
        mock_creation_client.create_container.side_effect = _failing_container("B")

        result = await export_graph(dual_graph, "page-1", mock_creation_client)

        assert [e.entity_id for e in result.errors] == ["db-b"]
        assert "a-f" not in result.results
        assert any(
            w.entity_id == "a-f" and "A.LinksToB" in w.message for w in result.warnings
        )
        names = [call.args[1]["name"] for call in mock_creation_client.create_property.call_args_list]
        assert "Linked Name" not in names
        assert result.analysis.total == result.analysis.supported + result.analysis.skipped

    @pytest.mark.asyncio
    async def test_formula_on_failed_property_is_skipped(
        self, rich_graph: SchemaGraph, mock_creation_client
    ):
        create_property = mock_creation_client.create_property.side_effect

        async def flaky_create_property(container_id: str, definition: dict):
            if definition["name"] == "Cost":
                raise CollaboratorError("validation_error")
            return await create_property(container_id, definition)

        mock_creation_client.create_property.side_effect = flaky_create_property

        result = await export_graph(rich_graph, "page-1", mock_creation_client)

        assert [e.entity_id for e in result.errors] == ["a-cost"]
        assert "a-double" not in result.results
        assert any(
            w.entity_id == "a-double" and "not created" in w.message for w in result.warnings
        )

    @pytest.mark.asyncio
    async def test_formulas_created_after_other_properties(
        self, rich_graph: SchemaGraph, mock_creation_client
    ):
        await export_graph(rich_graph, "page-1", mock_creation_client, concurrency=3)

        names = [call.args[1]["name"] for call in mock_creation_client.create_property.call_args_list]
        assert names.index("Double") > names.index("Due")
        assert names.index("Double") > names.index("LinksToA")

    @pytest.mark.asyncio
    async def test_accounting(self, dual_graph: SchemaGraph, mock_creation_client):
        mock_creation_client.create_container.side_effect = _failing_container("A")

        result = await export_graph(dual_graph, "page-1", mock_creation_client)

        assert result.analysis.total == 4
        assert result.analysis.total == result.analysis.supported + result.analysis.skipped
        assert result.analysis.skipped == 3

    @pytest.mark.asyncio
    async def test_failed_property_does_not_stop_siblings(
        self, dual_graph: SchemaGraph, mock_creation_client
    ):
        create_property = mock_creation_client.create_property.side_effect

        async def flaky_create_property(container_id: str, definition: dict):
            if definition["name"] == "LinksToA":
                raise CollaboratorError("validation_error")
            return await create_property(container_id, definition)

        mock_creation_client.create_property.side_effect = flaky_create_property

        result = await export_graph(dual_graph, "page-1", mock_creation_client)

        assert [e.entity_id for e in result.errors] == ["b-links"]
        assert "a-links" in result.results
        assert any(
            w.entity_id == "a-links" and "not linked" in w.message for w in result.warnings
        )

    @pytest.mark.asyncio
    async def test_link_failure_is_a_warning(self, dual_graph: SchemaGraph, mock_creation_client):
        mock_creation_client.link_properties.side_effect = CollaboratorError("conflict")

        result = await export_graph(dual_graph, "page-1", mock_creation_client)

        assert result.success is True
        assert any("conflict" in w.message for w in result.warnings)

    @pytest.mark.asyncio
    async def test_invalid_names_fail_database(self, dual_graph: SchemaGraph, mock_creation_client):
        dual_graph.databases[0].add_property(PlainProperty(id="a-dup", name="Name", type="text"))

        result = await export_graph(dual_graph, "page-1", mock_creation_client)

        assert [e.entity_id for e in result.errors] == ["db-a"]
        assert "Duplicate property name" in result.errors[0].message
        mock_creation_client.create_container.assert_awaited_once_with("page-1", "B")

    @pytest.mark.asyncio
    async def test_duplicate_ids_are_errors(self, dual_graph: SchemaGraph, mock_creation_client):
        dual_graph.databases[1].properties[0].id = "a-name"

        result = await export_graph(dual_graph, "page-1", mock_creation_client)

        assert result.success is False
        assert any(e.entity_id == "a-name" for e in result.errors)

    @pytest.mark.asyncio
    async def test_concurrency_limit(self, rich_graph: SchemaGraph, mock_creation_client):
        create_property = mock_creation_client.create_property.side_effect
        in_flight = {"now": 0, "max": 0}

        async def slow_create_property(container_id: str, definition: dict):
            in_flight["now"] += 1
            in_flight["max"] = max(in_flight["max"], in_flight["now"])
            await asyncio.sleep(0.01)
            in_flight["now"] -= 1
            return await create_property(container_id, definition)

        mock_creation_client.create_property.side_effect = slow_create_property

        result = await export_graph(rich_graph, "page-1", mock_creation_client, concurrency=2)

        assert result.success is True
        assert in_flight["max"] <= 2

    @pytest.mark.asyncio
    async def test_source_graph_unchanged(self, rich_graph: SchemaGraph, mock_creation_client):
        before = rich_graph.model_copy(deep=True)
        await export_graph(rich_graph, "page-1", mock_creation_client)
        assert rich_graph == before
