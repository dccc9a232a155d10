"""
Async client for the ERC-8004 subgraph (GraphQL over HTTP).

Queries are built structurally (see subgraph_query) and rendered for the
schema version this client has negotiated. The version starts as the
current schema; the first unknown-field error that names a renamed field
switches the client to the legacy names for good and the query is retried
once.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from .config import TIMEOUTS
from .exceptions import SubgraphQueryError, UnknownFieldError
from .models import SearchFeedbackParams, SearchParams
from .reputation import aggregate_by_agent
from .subgraph_query import (
    DEFAULT_FIRST, DEFAULT_ORDER_BY, DEFAULT_ORDER_DIRECTION, DEFAULT_SKIP,
    FEEDBACK_FIELDS, FEEDBACK_SCORE_FIELDS, SCHEMA_CURRENT, SCHEMA_LEGACY,
    FieldResolver, Query, agent_query, agent_where, agents_query, feedback_query,
    feedback_where, feedbacks_query, filter_agent_rows, is_renamed_field,
    needs_post_filter, parse_unknown_field,
)

logger = logging.getLogger(__name__)

# The Graph caps `first` at 1000 and `skip` at 5000
MAX_PAGE_SIZE = 1000
MAX_SCAN_ROWS = 5000


class SubgraphClient:
    """Client for querying one subgraph deployment."""

    def __init__(
        self,
        subgraph_url: str,
        timeout: float = TIMEOUTS["subgraph"],
        session: Optional[aiohttp.ClientSession] = None,
        schema_version: str = SCHEMA_CURRENT,
    ):
        self.subgraph_url = subgraph_url
        self.timeout = timeout
        self._session = session
        self.schema_version = schema_version

    def __repr__(self) -> str:
        return f"SubgraphClient(url={self.subgraph_url}, schema={self.schema_version})"

    async def _post(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """POST a GraphQL payload and return the decoded response body."""
        timeout = aiohttp.ClientTimeout(total=self.timeout)
        try:
            if self._session is not None:
                return await self._send(self._session, payload, timeout)
            async with aiohttp.ClientSession() as session:
                return await self._send(session, payload, timeout)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise SubgraphQueryError(f"Subgraph request to {self.subgraph_url} failed: {e}") from e

    async def _send(self, session, payload, timeout) -> Dict[str, Any]:
        async with session.post(self.subgraph_url, json=payload, timeout=timeout) as response:
            response.raise_for_status()
            return await response.json(content_type=None)

    def _raise_for_errors(self, errors: List[Dict[str, Any]]) -> None:
        messages = "; ".join(str(err.get("message", err)) if isinstance(err, dict) else str(err) for err in errors)
        field = parse_unknown_field(messages)
        if field is not None:
            raise UnknownFieldError(field, f"Subgraph query failed: {messages}", errors)
        raise SubgraphQueryError(f"Subgraph query failed: {messages}", errors)

    async def query(self, query_text: str, variables: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Run raw GraphQL text and return its data object."""
        payload: Dict[str, Any] = {"query": query_text}
        if variables:
            payload["variables"] = variables
        body = await self._post(payload)
        if not isinstance(body, dict):
            raise SubgraphQueryError(f"Unexpected subgraph response: {body!r}")
        if body.get("errors"):
            self._raise_for_errors(body["errors"])
        return body.get("data") or {}

    async def execute(self, query: Query) -> Dict[str, Any]:
        """Render and run a structured query, falling back to legacy field names once."""
        version = self.schema_version
        try:
            return await self.query(query.render(FieldResolver(version)))
        except UnknownFieldError as e:
            # A concurrent query may already have switched the client.
            if version == SCHEMA_LEGACY or not is_renamed_field(e.field):
                raise
            if self.schema_version != SCHEMA_LEGACY:
                logger.warning(
                    f"Subgraph {self.subgraph_url} does not know field '{e.field}', "
                    f"retrying with legacy schema names"
                )
                self.schema_version = SCHEMA_LEGACY
        return await self.query(query.render(FieldResolver(SCHEMA_LEGACY)))

    async def get_agents(
        self,
        where: Optional[Dict[str, Any]] = None,
        first: int = DEFAULT_FIRST,
        skip: int = DEFAULT_SKIP,
        order_by: str = DEFAULT_ORDER_BY,
        order_direction: str = DEFAULT_ORDER_DIRECTION,
    ) -> List[Dict[str, Any]]:
        """Fetch agent rows matching a where clause."""
        data = await self.execute(agents_query(where, first, skip, order_by, order_direction))
        return data.get("agents") or []

    async def get_agent_by_id(self, agent_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one agent row by composite ID."""
        data = await self.execute(agent_query(agent_id))
        return data.get("agent")

    async def search_agents(
        self,
        params: SearchParams,
        first: int = DEFAULT_FIRST,
        skip: int = DEFAULT_SKIP,
        order_by: str = DEFAULT_ORDER_BY,
        order_direction: str = DEFAULT_ORDER_DIRECTION,
        agent_ids: Optional[List[str]] = None,
    ) -> List[Dict[str, Any]]:
        """
        Search agents.

        The subgraph evaluates what it can; the remaining filters run over a
        superset fetched page by page until `skip + first` rows survive or the
        scan limit is reached.
        """
        where = agent_where(params, agent_ids)
        if not needs_post_filter(params):
            return await self.get_agents(where, first, skip, order_by, order_direction)

        wanted = skip + first
        page_size = min(max(wanted, DEFAULT_FIRST), MAX_PAGE_SIZE)
        matched: List[Dict[str, Any]] = []
        offset = 0
        while len(matched) < wanted and offset <= MAX_SCAN_ROWS:
            rows = await self.get_agents(where, page_size, offset, order_by, order_direction)
            matched.extend(filter_agent_rows(rows, params))
            if len(rows) < page_size:
                break
            offset += page_size

        return matched[skip:skip + first]

    async def query_feedbacks(
        self,
        where: Optional[Dict[str, Any]] = None,
        first: int = DEFAULT_FIRST,
        skip: int = DEFAULT_SKIP,
        order_by: str = DEFAULT_ORDER_BY,
        order_direction: str = DEFAULT_ORDER_DIRECTION,
        full: bool = True,
    ) -> List[Dict[str, Any]]:
        """Fetch feedback rows. full=False selects only what aggregation needs."""
        selection = FEEDBACK_FIELDS if full else FEEDBACK_SCORE_FIELDS
        data = await self.execute(feedbacks_query(where, first, skip, order_by, order_direction, selection))
        return data.get("feedbacks") or []

    async def search_feedback(
        self,
        params: SearchFeedbackParams,
        first: int = DEFAULT_FIRST,
        skip: int = DEFAULT_SKIP,
        order_by: str = DEFAULT_ORDER_BY,
        order_direction: str = DEFAULT_ORDER_DIRECTION,
    ) -> List[Dict[str, Any]]:
        """Search feedback with named filters."""
        where = feedback_where(
            agents=params.agents,
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
        return await self.query_feedbacks(where, first, skip, order_by, order_direction)

    async def get_feedback_by_id(self, feedback_id: str) -> Optional[Dict[str, Any]]:
        """Fetch one feedback row by "chainId:tokenId:client:index"."""
        data = await self.execute(feedback_query(feedback_id))
        return data.get("feedback")

    async def search_agents_by_reputation(
        self,
        agents: Optional[List[str]] = None,
        tags: Optional[List[str]] = None,
        reviewers: Optional[List[str]] = None,
        capabilities: Optional[List[str]] = None,
        skills: Optional[List[str]] = None,
        tasks: Optional[List[str]] = None,
        names: Optional[List[str]] = None,
        min_average_score: Optional[float] = None,
        include_revoked: bool = False,
        first: int = DEFAULT_FIRST,
        skip: int = DEFAULT_SKIP,
    ) -> List[Dict[str, Any]]:
        """
        Agents ranked by the mean of their positive feedback scores.

        Matching feedback is paged in, grouped per agent and averaged; agents
        below min_average_score are dropped. Each returned row is an agent row
        with an added "averageScore" and "feedbackCount".
        """
        where = feedback_where(
            agents=agents,
            reviewers=reviewers,
            tags=tags,
            include_revoked=include_revoked,
            capabilities=capabilities,
            skills=skills,
            tasks=tasks,
            names=names,
        )
        rows: List[Dict[str, Any]] = []
        offset = 0
        while offset < MAX_SCAN_ROWS:
            page = await self.query_feedbacks(where, MAX_PAGE_SIZE, offset, full=False)
            rows.extend(page)
            if len(page) < MAX_PAGE_SIZE:
                break
            offset += MAX_PAGE_SIZE

        # revoked rows were only fetched when the caller asked for them
        if include_revoked:
            rows = [dict(row, isRevoked=False) for row in rows]
        stats = {
            agent_id: stat
            for agent_id, stat in aggregate_by_agent(rows).items()
            if stat["count"] and (min_average_score is None or stat["averageScore"] >= min_average_score)
        }
        if not stats:
            return []

        ranked = sorted(stats, key=lambda agent_id: stats[agent_id]["averageScore"], reverse=True)
        selected = ranked[skip:skip + first]
        if not selected:
            return []

        agent_rows = await self.get_agents({"id_in": selected}, first=len(selected))
        by_id = {row["id"]: row for row in agent_rows}
        results = []
        for agent_id in selected:
            row = by_id.get(agent_id)
            if row is None:
                continue
            results.append(dict(
                row,
                averageScore=stats[agent_id]["averageScore"],
                feedbackCount=stats[agent_id]["count"],
            ))
        return results
