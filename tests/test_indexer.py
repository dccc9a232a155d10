"""
Tests for AgentIndexer single-agent lookups, feedback search and reputation search.
"""

import base64
import json

import pytest
from unittest.mock import AsyncMock, Mock

from agent_discovery.core.backends import SubgraphBackend
from agent_discovery.core.exceptions import PreconditionError
from agent_discovery.core.indexer import AgentIndexer
from agent_discovery.core.models import SearchFeedbackParams
from agent_discovery.core.router import MultiSourceRouter, RouterConfig

CHAIN = 11155111
CLIENT = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"


def subgraph_backend(chain_id, **client_methods):
    client = Mock()
    for name, value in client_methods.items():
        setattr(client, name, value)
    return SubgraphBackend(chain_id, client)


def make_indexer(*backends, ipfs_client=None):
    router = MultiSourceRouter(RouterConfig(
        default_chain_id=CHAIN,
        backends={backend.chain_id: backend for backend in backends},
    ))
    return AgentIndexer(router, ipfs_client or Mock())


class TestGetAgent:

    @pytest.mark.asyncio
    async def test_indexed_agent(self):
        row = {"id": f"{CHAIN}:3", "owner": CLIENT, "registrationFile": {"name": "Indexed"}}
        indexer = make_indexer(subgraph_backend(CHAIN, get_agent_by_id=AsyncMock(return_value=row)))

        agent = await indexer.get_agent("3")

        assert agent.agentId == f"{CHAIN}:3"
        assert agent.name == "Indexed"

    @pytest.mark.asyncio
    async def test_not_found(self):
        indexer = make_indexer(subgraph_backend(CHAIN, get_agent_by_id=AsyncMock(return_value=None)))

        with pytest.raises(PreconditionError, match="not found"):
            await indexer.get_agent(f"{CHAIN}:404")

    @pytest.mark.asyncio
    async def test_chain_row_is_completed_from_data_uri(self):
        registration = {
            "name": "On-chain only",
            "endpoints": [{"name": "MCP", "endpoint": "https://x.example.com/mcp", "mcpTools": ["run"]}],
        }
        payload = base64.b64encode(json.dumps(registration).encode()).decode()
        chain_row = {
            "id": "84532:8",
            "owner": CLIENT,
            "agentURI": f"data:application/json;base64,{payload}",
            "agentWallet": None,
            "registrationFile": None,
        }
        backend = Mock()
        backend.chain_id = 84532
        backend.query_one = AsyncMock(return_value=chain_row)
        indexer = make_indexer(backend)

        agent = await indexer.get_agent("84532:8")

        assert agent.name == "On-chain only"
        assert agent.mcp is True
        assert agent.mcpTools == ["run"]

    @pytest.mark.asyncio
    async def test_unreadable_document_keeps_bare_row(self):
        ipfs = Mock()
        ipfs.get_json = AsyncMock(side_effect=RuntimeError("all gateways down"))
        backend = Mock()
        backend.chain_id = 84532
        backend.query_one = AsyncMock(return_value={
            "id": "84532:8", "owner": CLIENT, "agentURI": "ipfs://bafygone", "registrationFile": None,
        })
        indexer = make_indexer(backend, ipfs_client=ipfs)

        agent = await indexer.get_agent("84532:8")

        assert agent.name == "84532:8"
        assert agent.extras["agentURI"] == "ipfs://bafygone"


class TestSearchFeedback:

    @pytest.mark.asyncio
    async def test_routes_to_agent_chain(self):
        rows = [{
            "id": f"84532:2:{CLIENT}:1",
            "agent": {"id": "84532:2"},
            "clientAddress": CLIENT,
            "score": 88,
            "tag1": "fast",
            "isRevoked": False,
            "createdAt": "1700000000",
        }]
        query_feedbacks = AsyncMock(return_value=rows)
        indexer = make_indexer(
            subgraph_backend(CHAIN, query_feedbacks=AsyncMock(return_value=[])),
            subgraph_backend(84532, query_feedbacks=query_feedbacks),
        )

        results = await indexer.search_feedback(
            SearchFeedbackParams(agents=["84532:2"], reviewers=[CLIENT.upper().replace("0X", "0x")], minScore=50),
            first=10,
        )

        assert [fb.id_string for fb in results] == [f"84532:2:{CLIENT}:1"]
        assert results[0].createdAt == 1700000000
        where = query_feedbacks.await_args.args[0]
        assert where == {
            "agent_in": ["84532:2"],
            "clientAddress_in": [CLIENT],
            "isRevoked": False,
            "score_gte": 50,
        }


class TestReputationSearch:

    @pytest.mark.asyncio
    async def test_merges_chains_by_average(self):
        indexer = make_indexer(
            subgraph_backend(CHAIN, search_agents_by_reputation=AsyncMock(return_value=[
                {"id": f"{CHAIN}:1", "averageScore": 70, "feedbackCount": 4, "registrationFile": {"name": "A"}},
            ])),
            subgraph_backend(84532, search_agents_by_reputation=AsyncMock(return_value=[
                {"id": "84532:1", "averageScore": 95, "feedbackCount": 2, "registrationFile": {"name": "B"}},
                {"id": "84532:2", "averageScore": 40, "feedbackCount": 1, "registrationFile": {"name": "C"}},
            ])),
        )

        page1 = await indexer.search_agents_by_reputation(chains="all", page_size=2)
        page2 = await indexer.search_agents_by_reputation(chains="all", page_size=2, cursor=page1["nextCursor"])

        assert [a.name for a in page1["items"]] == ["B", "A"]
        assert page1["items"][0].extras["averageScore"] == 95
        assert [a.name for a in page2["items"]] == ["C"]
        assert page2["nextCursor"] is None

    @pytest.mark.asyncio
    async def test_chain_backends_are_skipped(self):
        chain_backend = Mock()
        chain_backend.chain_id = CHAIN
        indexer = make_indexer(chain_backend)

        result = await indexer.search_agents_by_reputation(minAverageScore=50)

        assert result["items"] == []
        assert result["meta"]["successfulChains"] == [CHAIN]
