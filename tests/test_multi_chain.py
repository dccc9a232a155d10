"""
Tests for multi-chain agent search functionality.
"""

import json

import pytest
from unittest.mock import AsyncMock, Mock

from agent_discovery.core.indexer import AgentIndexer
from agent_discovery.core.models import AgentSummary, FeedbackFilters, SearchParams
from agent_discovery.core.router import MultiSourceRouter, RouterConfig


def make_backend(chain_id, rows=None, error=None, feedback_rows=None):
    backend = Mock()
    backend.chain_id = chain_id
    backend.kind = "subgraph"
    if error is not None:
        backend.query = AsyncMock(side_effect=error)
    else:
        backend.query = AsyncMock(return_value=rows or [])
    backend.query_feedback = AsyncMock(return_value=feedback_rows or [])
    return backend


def make_indexer(backends, default_chain_id=11155111):
    router = MultiSourceRouter(RouterConfig(
        default_chain_id=default_chain_id,
        backends={b.chain_id: b for b in backends},
        timeout=5,
    ))
    return AgentIndexer(router)


class TestMultiChainSearch:
    """Test multi-chain agent search functionality."""

    @pytest.fixture
    def mock_subgraph_responses(self):
        """Create mock subgraph responses for different chains."""
        return {
            11155111: [  # Ethereum Sepolia
                {
                    'id': '11155111:1',
                    'chainId': '11155111',
                    'agentId': '1',
                    'owner': '0xabc123',
                    'operators': [],
                    'totalFeedback': 5,
                    'createdAt': 1700000000,
                    'updatedAt': 1700000100,
                    'registrationFile': {
                        'name': 'Agent Alpha',
                        'description': 'Test agent on Ethereum',
                        'image': 'ipfs://...',
                        'active': True,
                        'x402Support': False,
                        'supportedTrusts': ['reputation'],
                        'mcpEndpoint': 'https://agent-alpha.example.com/mcp',
                        'a2aEndpoint': None,
                        'mcpTools': ['code_generation', 'analysis'],
                        'a2aSkills': [],
                        'mcpPrompts': [],
                        'mcpResources': [],
                    }
                },
                {
                    'id': '11155111:2',
                    'chainId': '11155111',
                    'agentId': '2',
                    'owner': '0xdef456',
                    'operators': [],
                    'totalFeedback': 3,
                    'createdAt': 1700000200,
                    'updatedAt': 1700000300,
                    'registrationFile': {
                        'name': 'Agent Beta',
                        'description': 'Another test agent',
                        'active': True,
                        'x402Support': True,
                        'supportedTrusts': ['reputation', 'crypto-economic'],
                        'mcpEndpoint': None,
                        'a2aEndpoint': 'https://agent-beta.example.com/a2a',
                        'mcpTools': [],
                        'a2aSkills': ['translation', 'summarization'],
                        'mcpPrompts': [],
                        'mcpResources': [],
                    }
                }
            ],
            84532: [  # Base Sepolia
                {
                    'id': '84532:1',
                    'chainId': '84532',
                    'agentId': '1',
                    'owner': '0xghi789',
                    'operators': [],
                    'totalFeedback': 10,
                    'createdAt': 1700000400,
                    'updatedAt': 1700000500,
                    'registrationFile': {
                        'name': 'Agent Gamma',
                        'description': 'Base network agent',
                        'active': True,
                        'x402support': False,
                        'supportedTrusts': ['reputation'],
                        'mcpEndpoint': 'https://agent-gamma.example.com/mcp',
                        'a2aEndpoint': 'https://agent-gamma.example.com/a2a',
                        'mcpTools': ['data_analysis'],
                        'a2aSkills': ['research'],
                        'mcpPrompts': [],
                        'mcpResources': [],
                    }
                }
            ],
        }

    @pytest.fixture
    def two_chains(self, mock_subgraph_responses):
        return [
            make_backend(11155111, mock_subgraph_responses[11155111]),
            make_backend(84532, mock_subgraph_responses[84532]),
        ]

    @pytest.mark.asyncio
    async def test_single_chain_uses_one_backend(self, two_chains):
        indexer = make_indexer(two_chains)

        result = await indexer.search_agents(SearchParams(chains=[11155111]), [], page_size=10)

        assert len(result['items']) == 2
        assert result['nextCursor'] is None
        two_chains[0].query.assert_awaited_once()
        two_chains[1].query.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_search_across_multiple_chains(self, two_chains):
        """Test searching agents across multiple chains."""
        indexer = make_indexer(two_chains)

        result = await indexer.search_agents(SearchParams(chains=[11155111, 84532]), [], page_size=10)

        assert len(result['items']) == 3  # 2 from Ethereum + 1 from Base
        assert all(isinstance(item, AgentSummary) for item in result['items'])
        assert sorted(result['meta']['successfulChains']) == [84532, 11155111]
        assert result['meta']['failedChains'] == []
        assert result['meta']['totalResults'] == 3

        chain_ids = {agent.chainId for agent in result['items']}
        assert chain_ids == {11155111, 84532}

    @pytest.mark.asyncio
    async def test_all_expands_to_configured_chains(self, two_chains):
        indexer = make_indexer(two_chains)

        result = await indexer.search_agents(SearchParams(chains="all"), [], page_size=10)

        assert result['meta']['chains'] == [84532, 11155111]
        assert len(result['items']) == 3

    @pytest.mark.asyncio
    async def test_graceful_degradation_on_chain_failure(self, mock_subgraph_responses):
        """Test that failure on one chain doesn't break entire request."""
        indexer = make_indexer([
            make_backend(11155111, mock_subgraph_responses[11155111]),
            make_backend(84532, error=ConnectionError("Subgraph down")),
        ])

        result = await indexer.search_agents(SearchParams(chains=[11155111, 84532]), [], page_size=10)

        assert len(result['items']) == 2  # Only Ethereum results
        assert result['meta']['successfulChains'] == [11155111]
        assert result['meta']['failedChains'] == [84532]

    @pytest.mark.asyncio
    async def test_unconfigured_chain_reported_as_failed(self, two_chains):
        indexer = make_indexer(two_chains)

        result = await indexer.search_agents(SearchParams(chains=[11155111, 59141]), [], page_size=10)

        assert len(result['items']) == 2
        assert 59141 in result['meta']['failedChains']

    @pytest.mark.asyncio
    async def test_all_chains_failing_raises(self):
        indexer = make_indexer([
            make_backend(11155111, error=ConnectionError("down")),
            make_backend(84532, error=ConnectionError("down")),
        ])

        with pytest.raises(ConnectionError, match="All chains failed"):
            await indexer.search_agents(SearchParams(chains=[11155111, 84532]), [], page_size=10)

    @pytest.mark.asyncio
    async def test_deduplication_across_chains(self):
        """Test deduplication of same agent across chains."""
        def duplicate(chain_id, created_at):
            return {
                'id': f'{chain_id}:1',
                'chainId': str(chain_id),
                'agentId': '1',
                'owner': '0xSAME',
                'operators': [],
                'totalFeedback': 5,
                'createdAt': created_at,
                'registrationFile': {
                    'name': 'Duplicate Agent',
                    'description': 'Same agent on multiple chains',
                    'mcpEndpoint': 'https://agent.example.com/mcp',
                }
            }

        indexer = make_indexer([
            make_backend(11155111, [duplicate(11155111, 1700000000)]),
            make_backend(84532, [duplicate(84532, 1700000200)]),
        ])

        result = await indexer.search_agents(
            SearchParams(chains=[11155111, 84532], deduplicate_cross_chain=False), [], page_size=10
        )
        assert len(result['items']) == 2

        result_dedup = await indexer.search_agents(
            SearchParams(chains=[11155111, 84532], deduplicate_cross_chain=True), [], page_size=10
        )
        assert len(result_dedup['items']) == 1
        deployed_on = result_dedup['items'][0].extras['deployedOn']
        assert len(deployed_on) == 2
        assert {int(c) for c in deployed_on} == {11155111, 84532}

    @pytest.mark.asyncio
    async def test_sorting_across_chains(self, two_chains):
        """Test sorting agents from multiple chains."""
        indexer = make_indexer(two_chains)

        result = await indexer.search_agents(
            SearchParams(chains=[11155111, 84532]), ['totalFeedback:desc'], page_size=10
        )

        totals = [agent.extras['totalFeedback'] for agent in result['items']]
        assert totals == [10, 5, 3]

    @pytest.mark.asyncio
    async def test_sorting_by_name_ascending(self, two_chains):
        indexer = make_indexer(two_chains)

        result = await indexer.search_agents(SearchParams(chains=[11155111, 84532]), ['name:asc'], page_size=10)

        assert [agent.name for agent in result['items']] == ['Agent Alpha', 'Agent Beta', 'Agent Gamma']

    @pytest.mark.asyncio
    async def test_pagination_across_chains(self, two_chains):
        """Test pagination across multiple chains."""
        indexer = make_indexer(two_chains)
        params = SearchParams(chains=[11155111, 84532])

        page1 = await indexer.search_agents(params, [], page_size=2)
        assert len(page1['items']) == 2
        assert json.loads(page1['nextCursor']) == {"_global_offset": 2}

        page2 = await indexer.search_agents(params, [], page_size=2, cursor=page1['nextCursor'])
        assert len(page2['items']) == 1
        assert page2['nextCursor'] is None

        seen = {a.agentId for a in page1['items']} | {a.agentId for a in page2['items']}
        assert seen == {'11155111:1', '11155111:2', '84532:1'}

    @pytest.mark.asyncio
    async def test_feedback_prefilter_restricts_agents(self, mock_subgraph_responses):
        feedback_rows = [
            {'id': '11155111:1:0xaa:1', 'agent': {'id': '11155111:1'}, 'score': 90, 'isRevoked': False},
            {'id': '11155111:1:0xbb:1', 'agent': {'id': '11155111:1'}, 'score': 70, 'isRevoked': False},
            {'id': '11155111:2:0xaa:1', 'agent': {'id': '11155111:2'}, 'score': 20, 'isRevoked': False},
        ]
        backend = make_backend(11155111, mock_subgraph_responses[11155111][:1], feedback_rows=feedback_rows)
        indexer = make_indexer([backend])

        params = SearchParams(feedback=FeedbackFilters(minAverageScore=50))
        result = await indexer.search_agents(params, [], page_size=10)

        args = backend.query.await_args.args
        assert args[1] == ['11155111:1']
        assert result['items'][0].extras['averageScore'] == 80
        assert result['items'][0].extras['feedbackCount'] == 2

    @pytest.mark.asyncio
    async def test_feedback_prefilter_with_no_matches_short_circuits(self, two_chains):
        indexer = make_indexer(two_chains)

        params = SearchParams(chains=[11155111, 84532], feedback=FeedbackFilters(minCount=1))
        result = await indexer.search_agents(params, [], page_size=10)

        assert result['items'] == []
        two_chains[0].query.assert_not_awaited()


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
