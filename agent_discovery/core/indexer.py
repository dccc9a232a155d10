"""
Agent indexer for discovery and search.

The indexer is the entry point for agent and feedback discovery. It sits on
top of the multi-source router: single-chain searches go to one backend,
multi-chain searches fan out to every requested chain and are merged,
deduplicated, sorted and paged here. Searches that filter on feedback first
aggregate matching feedback per agent and then restrict the agent query to
the agents that qualify.
"""

from __future__ import annotations

import base64
import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from .agent_transform import registration_to_row, transform_agent
from .backends import Backend, SubgraphBackend
from .config import DEFAULTS, TIMEOUTS
from .exceptions import PreconditionError
from .identifiers import format_agent_id, normalize_address, parse_agent_id
from .ipfs_client import IPFSClient
from .models import AgentId, AgentSummary, Feedback, FeedbackFilters, SearchFeedbackParams, SearchParams
from .reputation import aggregate_by_agent, feedback_from_row
from .router import MultiSourceRouter
from .subgraph_query import feedback_where

logger = logging.getLogger(__name__)

FEEDBACK_PAGE_SIZE = 1000
MAX_FEEDBACK_ROWS = 5000
MAX_FANOUT_ROWS = 1000


def _as_number(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0


class AgentIndexer:
    """Indexer for agent discovery and search."""

    def __init__(self, router: MultiSourceRouter, ipfs_client: Optional[IPFSClient] = None):
        self.router = router
        self.ipfs_client = ipfs_client or IPFSClient()

    # Registration documents

    async def _fetch_http_content(self, url: str) -> Optional[Dict[str, Any]]:
        timeout = aiohttp.ClientTimeout(total=TIMEOUTS["ipfsGateway"])
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(url) as response:
                response.raise_for_status()
                return await response.json(content_type=None)

    async def _load_registration(self, uri: str) -> Optional[Dict[str, Any]]:
        """Fetch a registration document from ipfs://, http(s):// or a data: URI."""
        try:
            if uri.startswith("data:"):
                header, _, payload = uri.partition(",")
                raw = base64.b64decode(payload) if header.endswith(";base64") else payload.encode("utf-8")
                return json.loads(raw)
            if uri.startswith(("http://", "https://")) and "/ipfs/" not in uri:
                return await self._fetch_http_content(uri)
            return await self.ipfs_client.get_json(uri)
        except Exception as e:
            logger.debug(f"Could not load registration document {uri}: {e}")
            return None

    async def _complete_row(self, row: Dict[str, Any], chain_id: int) -> Dict[str, Any]:
        # chain reads only carry the token URI; the document has the rest
        if row.get("registrationFile") or not row.get("agentURI"):
            return row
        registration = await self._load_registration(row["agentURI"])
        if registration is None:
            return row
        _, token_id = parse_agent_id(row["id"], default_chain_id=chain_id)
        return registration_to_row(
            chain_id, token_id, row.get("owner"), registration,
            agent_uri=row["agentURI"], wallet=row.get("agentWallet"),
        )

    # Agents

    async def get_agent(self, agent_id: AgentId) -> AgentSummary:
        """Get one agent summary."""
        chain_id, (qualified,) = self.router.resolve_chain([agent_id])
        row = await self.router.query_agent(qualified)
        if row is None:
            raise PreconditionError(f"Agent {qualified} not found")
        row = await self._complete_row(row, chain_id)
        return transform_agent(row, chain_id)

    def _requested_chains(self, params: SearchParams) -> List[int]:
        if params.chains == "all":
            chains = self.router.chains
            logger.info(f"Expanding 'all' to configured chains: {chains}")
            return chains
        if params.chains:
            return [int(chain_id) for chain_id in params.chains]
        if params.agentIds:
            chain_id, _ = self.router.resolve_chain(params.agentIds)
            return [chain_id]
        return [self.router.default_chain_id]

    def _agent_ids_by_chain(self, agent_ids: Optional[List[str]]) -> Dict[int, List[str]]:
        if not agent_ids:
            return {}
        grouped: Dict[int, List[str]] = {}
        default_chain, _ = self.router.resolve_chain(agent_ids)
        for agent_id in agent_ids:
            chain_id, token_id = parse_agent_id(agent_id, default_chain_id=default_chain)
            grouped.setdefault(chain_id, []).append(format_agent_id(chain_id, token_id))
        return grouped

    async def search_agents(
        self,
        params: SearchParams,
        sort: Optional[List[str]] = None,
        page_size: int = DEFAULTS["searchPageSize"],
        cursor: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Search agents on one or more chains.

        Returns {"items": [AgentSummary, ...], "nextCursor": str or None, "meta": {...}}.
        """
        sort = sort or []
        chains = self._requested_chains(params)
        ids_by_chain = self._agent_ids_by_chain(params.agentIds)

        stats: Dict[str, Dict[str, Any]] = {}
        if params.feedback is not None and not params.feedback.is_empty():
            stats = await self._feedback_prefilter(params.feedback, chains, ids_by_chain)
            if not stats:
                return {"items": [], "nextCursor": None, "meta": self._empty_meta(chains)}
            ids_by_chain = {}
            for agent_id in stats:
                chain_id, _ = parse_agent_id(agent_id)
                ids_by_chain.setdefault(chain_id, []).append(agent_id)

        if len(chains) == 1:
            return await self._search_single_chain(chains[0], params, ids_by_chain, stats, sort, page_size, cursor)
        return await self._search_agents_across_chains(chains, params, ids_by_chain, stats, sort, page_size, cursor)

    def _empty_meta(self, chains: List[int]) -> Dict[str, Any]:
        return {"chains": chains, "successfulChains": [], "failedChains": [], "totalResults": 0}

    def _attach_stats(self, row: Dict[str, Any], stats: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
        stat = stats.get(row.get("id"))
        if stat is None:
            return row
        return dict(row, averageScore=stat["averageScore"], feedbackCount=stat["count"])

    async def _search_single_chain(
        self,
        chain_id: int,
        params: SearchParams,
        ids_by_chain: Dict[int, List[str]],
        stats: Dict[str, Dict[str, Any]],
        sort: List[str],
        page_size: int,
        cursor: Optional[str],
    ) -> Dict[str, Any]:
        skip = 0
        if cursor:
            try:
                skip = int(cursor)
            except ValueError:
                skip = 0

        agent_ids = ids_by_chain.get(chain_id)
        if ids_by_chain and not agent_ids:
            return {"items": [], "nextCursor": None, "meta": self._empty_meta([chain_id])}

        rows = await self.router.query_agents(
            params,
            agent_ids=agent_ids,
            chain_id=chain_id,
            first=page_size,
            skip=skip,
            order_by=self._extract_order_by(sort),
            order_direction=self._extract_order_direction(sort),
        )
        items = [transform_agent(self._attach_stats(row, stats), chain_id) for row in rows]
        next_cursor = str(skip + len(items)) if len(items) == page_size else None
        configured = self.router.backend_for(chain_id) is not None
        return {
            "items": items,
            "nextCursor": next_cursor,
            "meta": {
                "chains": [chain_id],
                "successfulChains": [chain_id] if configured else [],
                "failedChains": [] if configured else [chain_id],
                "totalResults": len(items),
            },
        }

    async def _search_agents_across_chains(
        self,
        chains: List[int],
        params: SearchParams,
        ids_by_chain: Dict[int, List[str]],
        stats: Dict[str, Dict[str, Any]],
        sort: List[str],
        page_size: int,
        cursor: Optional[str],
    ) -> Dict[str, Any]:
        """
        Search agents across multiple chains in parallel.

        Each chain returns enough rows to fill the requested page after the
        global offset; the merged list is then deduplicated (if requested),
        sorted and sliced.
        """
        available = set(self.router.chains)
        invalid = [chain_id for chain_id in chains if chain_id not in available]
        valid = [chain_id for chain_id in chains if chain_id in available]
        if invalid:
            logger.warning(f"Requested chains not configured: {invalid}. Available chains: {sorted(available)}")
        if not valid:
            return {
                "items": [],
                "nextCursor": None,
                "meta": {
                    "chains": chains,
                    "successfulChains": [],
                    "failedChains": chains,
                    "error": f"No valid chains configured. Available: {sorted(available)}",
                },
            }

        chain_cursors = self._parse_multi_chain_cursor(cursor)
        global_offset = int(chain_cursors.get("_global_offset", 0))
        fetch = min(global_offset + page_size, MAX_FANOUT_ROWS)
        order_by = self._extract_order_by(sort)
        order_direction = self._extract_order_direction(sort)

        async def query_single_chain(backend: Backend) -> List[Dict[str, Any]]:
            agent_ids = ids_by_chain.get(backend.chain_id)
            if ids_by_chain and not agent_ids:
                return []
            rows = await backend.query(params, agent_ids, fetch, 0, order_by, order_direction)
            logger.info(f"Chain {backend.chain_id}: fetched {len(rows)} agents")
            return [dict(row, chainId=row.get("chainId") or backend.chain_id) for row in rows]

        outcome = await self.router.query_chains(valid, query_single_chain)
        if not outcome.successfulChains:
            raise ConnectionError(f"All chains failed: {', '.join(str(c) for c in outcome.failedChains)}")

        all_rows: List[Dict[str, Any]] = []
        for chain_id in outcome.successfulChains:
            all_rows.extend(self._attach_stats(row, stats) for row in outcome.results[chain_id])

        deduplicated = self._deduplicate_agents_cross_chain(all_rows, params)
        ordered = self._sort_agents_cross_chain(deduplicated, sort)
        page = ordered[global_offset:global_offset + page_size]

        next_cursor = None
        if len(ordered) > global_offset + page_size:
            next_cursor = self._create_multi_chain_cursor(global_offset + page_size)

        return {
            "items": [transform_agent(row) for row in page],
            "nextCursor": next_cursor,
            "meta": {
                "chains": chains,
                "successfulChains": outcome.successfulChains,
                "failedChains": invalid + outcome.failedChains,
                "totalResults": len(ordered),
                "pageResults": len(page),
                "timing": {
                    "totalMs": outcome.timeMs,
                    "averagePerChainMs": int(outcome.timeMs / len(valid)),
                },
            },
        }

    # Feedback prefilter

    async def _scan_feedback(self, backend: Backend, where: Dict[str, Any]) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        offset = 0
        while offset < MAX_FEEDBACK_ROWS:
            page = await backend.query_feedback(where, FEEDBACK_PAGE_SIZE, offset, full=False)
            rows.extend(page)
            if len(page) < FEEDBACK_PAGE_SIZE:
                break
            offset += FEEDBACK_PAGE_SIZE
        return rows

    @staticmethod
    def _meets(stat: Dict[str, Any], filters: FeedbackFilters) -> bool:
        if filters.minCount is not None and stat["count"] < filters.minCount:
            return False
        if filters.maxCount is not None and stat["count"] > filters.maxCount:
            return False
        if filters.minAverageScore is not None and stat["averageScore"] < filters.minAverageScore:
            return False
        return True

    async def _feedback_prefilter(
        self,
        filters: FeedbackFilters,
        chains: List[int],
        ids_by_chain: Dict[int, List[str]],
    ) -> Dict[str, Dict[str, Any]]:
        """Per-agent feedback stats for the agents whose feedback meets the filters."""
        async def scan(backend: Backend) -> List[Dict[str, Any]]:
            agent_ids = ids_by_chain.get(backend.chain_id)
            if ids_by_chain and not agent_ids:
                return []
            where = feedback_where(
                agents=agent_ids,
                reviewers=filters.reviewers,
                tags=filters.tags,
                min_score=filters.minScore,
                max_score=filters.maxScore,
                include_revoked=filters.includeRevoked,
            )
            return await self._scan_feedback(backend, where)

        outcome = await self.router.query_chains(chains, scan)
        qualified: Dict[str, Dict[str, Any]] = {}
        for rows in outcome.results.values():
            if filters.includeRevoked:
                rows = [dict(row, isRevoked=False) for row in rows]
            for agent_id, stat in aggregate_by_agent(rows).items():
                if stat["count"] and self._meets(stat, filters):
                    qualified[agent_id] = stat
        logger.info(f"Feedback prefilter: {len(qualified)} agents qualify")
        return qualified

    # Reputation search

    async def search_agents_by_reputation(
        self,
        agents: Optional[List[AgentId]] = None,
        tags: Optional[List[str]] = None,
        reviewers: Optional[List[str]] = None,
        capabilities: Optional[List[str]] = None,
        skills: Optional[List[str]] = None,
        tasks: Optional[List[str]] = None,
        names: Optional[List[str]] = None,
        minAverageScore: Optional[float] = None,
        includeRevoked: bool = False,
        page_size: int = DEFAULTS["searchPageSize"],
        cursor: Optional[str] = None,
        chains: Optional[Any] = None,
    ) -> Dict[str, Any]:
        """Agents ranked by average feedback score, across one or more chains."""
        if chains == "all":
            chain_ids = self.router.chains
        elif chains:
            chain_ids = [int(chain_id) for chain_id in chains]
        elif agents:
            chain_ids = [self.router.resolve_chain(agents)[0]]
        else:
            chain_ids = [self.router.default_chain_id]
        ids_by_chain = self._agent_ids_by_chain(agents)

        global_offset = int(self._parse_multi_chain_cursor(cursor).get("_global_offset", 0))
        fetch = min(global_offset + page_size, MAX_FANOUT_ROWS)

        async def query_chain(backend: Backend) -> List[Dict[str, Any]]:
            if not isinstance(backend, SubgraphBackend):
                logger.warning(f"Reputation search needs an indexed backend; skipping chain {backend.chain_id}")
                return []
            agent_ids = ids_by_chain.get(backend.chain_id)
            if ids_by_chain and not agent_ids:
                return []
            return await backend.client.search_agents_by_reputation(
                agents=agent_ids,
                tags=tags,
                reviewers=reviewers,
                capabilities=capabilities,
                skills=skills,
                tasks=tasks,
                names=names,
                min_average_score=minAverageScore,
                include_revoked=includeRevoked,
                first=fetch,
                skip=0,
            )

        outcome = await self.router.query_chains(chain_ids, query_chain)
        rows: List[Dict[str, Any]] = []
        for chain_id in outcome.successfulChains:
            rows.extend(dict(row, chainId=row.get("chainId") or chain_id) for row in outcome.results[chain_id])

        rows.sort(key=lambda row: _as_number(row.get("averageScore")), reverse=True)
        page = rows[global_offset:global_offset + page_size]
        next_cursor = None
        if len(rows) > global_offset + page_size:
            next_cursor = self._create_multi_chain_cursor(global_offset + page_size)

        return {
            "items": [transform_agent(row) for row in page],
            "nextCursor": next_cursor,
            "meta": {
                "chains": chain_ids,
                "successfulChains": outcome.successfulChains,
                "failedChains": outcome.failedChains,
                "totalResults": len(rows),
            },
        }

    # Feedback

    async def search_feedback(
        self,
        params: SearchFeedbackParams,
        first: int = DEFAULTS["searchPageSize"],
        skip: int = 0,
    ) -> List[Feedback]:
        """Search feedback on the chain of the given agents (default chain otherwise)."""
        chain_id = self.router.default_chain_id
        agents = None
        if params.agents:
            chain_id, agents = self.router.resolve_chain(params.agents)

        where = feedback_where(
            agents=agents,
            reviewers=params.reviewers,
            tags=params.tags,
            min_score=params.minScore,
            max_score=params.maxScore,
            include_revoked=params.includeRevoked,
            capabilities=params.capabilities,
            skills=params.skills,
            tasks=params.tasks,
            names=params.names,
        )
        rows = await self.router.query_feedback(where, chain_id=chain_id, first=first, skip=skip)
        return [feedback_from_row(row) for row in rows]

    # Cross-chain helpers

    def _deduplicate_agents_cross_chain(
        self,
        agents: List[Dict[str, Any]],
        params: SearchParams
    ) -> List[Dict[str, Any]]:
        """
        Deduplicate agents across chains (if requested).

        Agents on different chains are different entities unless
        params.deduplicate_cross_chain is set. Then the same (owner, name,
        description) counts as one agent: the first instance is kept and
        gains a 'deployedOn' list of every chain it appears on.
        """
        if not params.deduplicate_cross_chain:
            return agents

        seen: Dict[tuple, Dict[str, Any]] = {}
        deduplicated = []
        for agent in agents:
            reg_file = agent.get("registrationFile") or {}
            owner = normalize_address(agent["owner"]) if agent.get("owner") else ""
            identity_key = (owner, reg_file.get("name", ""), reg_file.get("description", ""))

            if identity_key not in seen:
                agent = dict(agent, deployedOn=[agent.get("chainId")])
                seen[identity_key] = agent
                deduplicated.append(agent)
            else:
                seen[identity_key]["deployedOn"].append(agent.get("chainId"))

        logger.info(f"Deduplication: {len(agents)} agents -> {len(deduplicated)} unique agents")
        return deduplicated

    def _sort_agents_cross_chain(
        self,
        agents: List[Dict[str, Any]],
        sort: List[str]
    ) -> List[Dict[str, Any]]:
        """
        Sort agents from multiple chains.

        Supports createdAt, updatedAt, totalFeedback, name and averageScore.
        """
        field = self._extract_order_by(sort)
        reverse = self._extract_order_direction(sort).lower() == "desc"

        if field not in ("createdAt", "updatedAt", "totalFeedback", "name", "averageScore"):
            logger.warning(f"Unknown sort field: {field}, defaulting to createdAt")
            field = "createdAt"

        def get_sort_key(agent: Dict[str, Any]):
            if field == "name":
                return ((agent.get("registrationFile") or {}).get("name") or "").lower()
            return _as_number(agent.get(field))

        return sorted(agents, key=get_sort_key, reverse=reverse)

    def _parse_multi_chain_cursor(self, cursor: Optional[str]) -> Dict[str, Any]:
        """Parse a JSON cursor such as {"_global_offset": 100}."""
        if not cursor:
            return {}
        try:
            cursor_data = json.loads(cursor)
        except json.JSONDecodeError as e:
            logger.warning(f"Failed to parse cursor: {e}, using empty")
            return {}
        if not isinstance(cursor_data, dict):
            logger.warning(f"Invalid cursor format: {cursor}, using empty")
            return {}
        return cursor_data

    def _create_multi_chain_cursor(self, global_offset: int) -> str:
        return json.dumps({"_global_offset": global_offset})

    def _extract_order_by(self, sort: List[str]) -> str:
        """Extract order_by field from sort key."""
        if not sort:
            return "createdAt"
        return sort[0].split(":", 1)[0]

    def _extract_order_direction(self, sort: List[str]) -> str:
        """Extract order direction from sort key."""
        if not sort or ":" not in sort[0]:
            return "desc"
        return sort[0].split(":", 1)[1]
