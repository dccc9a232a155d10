"""
Tests for GraphQL query building and client-side agent filters.
"""

import pytest

from agent_discovery.core.models import SearchParams
from agent_discovery.core.subgraph_query import (
    SCHEMA_LEGACY,
    FieldResolver,
    agent_where,
    agents_query,
    feedback_query,
    feedback_where,
    filter_agent_rows,
    is_renamed_field,
    needs_post_filter,
    parse_unknown_field,
    render_value,
)


class TestRendering:

    def test_list_arguments(self):
        text = agents_query({"owner": "0xabc"}, first=10, skip=20, order_by="updatedAt", order_direction="asc").render()

        assert 'agents(where: {owner: "0xabc"}, first: 10, skip: 20, orderBy: updatedAt, orderDirection: asc)' in text
        assert "registrationFile {" in text
        assert text.startswith("query {")

    def test_empty_where_is_omitted(self):
        text = agents_query().render()

        assert "where:" not in text
        assert "first: 100" in text
        assert "orderBy: createdAt" in text

    def test_values(self):
        resolver = FieldResolver()

        assert render_value(None, resolver) == "null"
        assert render_value(False, resolver) == "false"
        assert render_value(["a", 1], resolver) == '["a", 1]'
        assert render_value({"a_in": ["x"], "b_": {"c": True}}, resolver) == '{a_in: ["x"], b_: {c: true}}'

    def test_unsupported_value_type(self):
        with pytest.raises(TypeError):
            render_value(object(), FieldResolver())


class TestSchemaVersions:

    def test_current_schema_keeps_names(self):
        text = agents_query({"registrationFile_": {"x402Support": True}}).render()

        assert "x402Support: true" in text
        assert "x402Support\n" in text

    def test_legacy_schema_renames_everywhere(self):
        legacy = FieldResolver(SCHEMA_LEGACY)
        text = agents_query(
            {"registrationFile_": {"x402Support_not": None}},
            order_by="x402Support",
        ).render(legacy)

        assert "x402Support" not in text
        assert "x402support_not: null" in text
        assert "orderBy: x402support" in text

    def test_legacy_schema_drops_missing_fields(self):
        text = feedback_query("1:2:0xabc:1").render(FieldResolver(SCHEMA_LEGACY))

        assert "endpoint" not in text
        assert "feedbackURI" in text

    def test_unknown_version(self):
        with pytest.raises(ValueError):
            FieldResolver("v0")

    @pytest.mark.parametrize("message,field", [
        ('Type `Agent` has no field `x402Support`', "x402Support"),
        ('Cannot query field "endpoint" on type "Feedback".', "endpoint"),
        ("Field 'foo' is not defined by type 'Agent_filter'", "foo"),
        ("store error: timeout", None),
    ])
    def test_parse_unknown_field(self, message, field):
        assert parse_unknown_field(message) == field

    def test_renamed_fields(self):
        assert is_renamed_field("x402Support_not")
        assert is_renamed_field("endpoint")
        assert not is_renamed_field("owner")
        assert not is_renamed_field(None)


class TestAgentWhere:

    def test_backend_filters(self):
        params = SearchParams(
            owners=["0xABC"],
            walletAddress="0xDEF",
            active=True,
            mcp=True,
            a2a=False,
            ens="Alpha.ETH",
        )

        where = agent_where(params, agent_ids=["1:5"])

        assert where == {
            "id_in": ["1:5"],
            "owner": "0xabc",
            "agentWallet": "0xdef",
            "registrationFile_": {
                "active": True,
                "mcpEndpoint_not": None,
                "a2aEndpoint": None,
                "ens": "alpha.eth",
            },
        }

    def test_multiple_owners_use_in(self):
        assert agent_where(SearchParams(owners=["0xA", "0xB"])) == {"owner_in": ["0xa", "0xb"]}

    def test_operators_are_any_of(self):
        where = agent_where(SearchParams(owners=["0xA"], operators=["0xB", "0xC"]))

        assert where == {"and": [
            {"owner": "0xa"},
            {"or": [{"operators_contains": ["0xb"]}, {"operators_contains": ["0xc"]}]},
        ]}

    def test_no_constraints(self):
        assert agent_where(SearchParams()) == {}


class TestFeedbackWhere:

    def test_defaults_exclude_revoked(self):
        assert feedback_where() == {"isRevoked": False}
        assert feedback_where(include_revoked=True) == {}

    def test_scalar_constraints(self):
        where = feedback_where(
            agents=["1:5"], reviewers=["0xAA"], min_score=10, max_score=90, skills=["python"],
        )

        assert where == {
            "agent_in": ["1:5"],
            "clientAddress_in": ["0xaa"],
            "isRevoked": False,
            "score_gte": 10,
            "score_lte": 90,
            "feedbackFile_": {"skill_in": ["python"]},
        }

    def test_tags_expand_into_qualified_clauses(self):
        where = feedback_where(agents=["1:5"], tags=["fast", "cheap"])

        base = {"agent_in": ["1:5"], "isRevoked": False}
        assert where == {"or": [
            {**base, "tag1": "fast"},
            {**base, "tag2": "fast"},
            {**base, "tag1": "cheap"},
            {**base, "tag2": "cheap"},
        ]}


class TestPostFilter:

    @pytest.fixture
    def rows(self):
        return [
            {"id": "1:1", "registrationFile": {
                "name": "Weather Bot", "description": "Forecasts",
                "mcpTools": ["forecast", "alerts"], "supportedTrusts": ["reputation"],
            }},
            {"id": "1:2", "registrationFile": {
                "name": "Translator", "description": "Weather-free translation",
                "mcpTools": ["forecast"], "a2aSkills": ["translation"],
            }},
            {"id": "1:3", "registrationFile": None},
        ]

    def test_name_substring_is_case_insensitive(self, rows):
        assert [r["id"] for r in filter_agent_rows(rows, SearchParams(name="weather"))] == ["1:1"]

    def test_description_substring(self, rows):
        assert [r["id"] for r in filter_agent_rows(rows, SearchParams(description="WEATHER"))] == ["1:2"]

    def test_contains_all(self, rows):
        params = SearchParams(mcpTools=["forecast", "alerts"])
        assert [r["id"] for r in filter_agent_rows(rows, params)] == ["1:1"]

        params = SearchParams(mcpTools=["forecast"])
        assert [r["id"] for r in filter_agent_rows(rows, params)] == ["1:1", "1:2"]

    def test_needs_post_filter(self):
        assert needs_post_filter(SearchParams(a2aSkills=["x"]))
        assert not needs_post_filter(SearchParams(owners=["0xa"], active=True))
