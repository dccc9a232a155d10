"""
Data-source variants behind the router.

SubgraphBackend answers everything through the indexed GraphQL API.
ChainBackend reads the registries directly: single agents through contract
calls and feedback through NewFeedback/FeedbackRevoked event scans. Both
return raw rows in the subgraph's shape, so the transform and reconcile
layers never care which one produced them.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from web3.exceptions import ContractLogicError

from .agent_transform import registration_to_row
from .config import DEFAULTS
from .identifiers import ZERO_ADDRESS, format_feedback_id, normalize_address, parse_agent_id
from .models import SearchParams
from .reputation import decode_tag
from .subgraph_client import SubgraphClient
from .subgraph_query import DEFAULT_FIRST, DEFAULT_ORDER_BY, DEFAULT_ORDER_DIRECTION, DEFAULT_SKIP

logger = logging.getLogger(__name__)


class Backend(ABC):
    """One chain's data source."""

    kind = "backend"

    def __init__(self, chain_id: int):
        self.chain_id = int(chain_id)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(chain_id={self.chain_id})"

    @abstractmethod
    async def query(
        self,
        params: SearchParams,
        agent_ids: Optional[List[str]] = None,
        first: int = DEFAULT_FIRST,
        skip: int = DEFAULT_SKIP,
        order_by: str = DEFAULT_ORDER_BY,
        order_direction: str = DEFAULT_ORDER_DIRECTION,
    ) -> List[Dict[str, Any]]:
        """Agent rows matching the search parameters."""

    @abstractmethod
    async def query_one(self, agent_id: str) -> Optional[Dict[str, Any]]:
        """One agent row by composite ID, or None."""

    @abstractmethod
    async def query_feedback(
        self,
        where: Optional[Dict[str, Any]] = None,
        first: int = DEFAULT_FIRST,
        skip: int = DEFAULT_SKIP,
        order_by: str = DEFAULT_ORDER_BY,
        order_direction: str = DEFAULT_ORDER_DIRECTION,
        full: bool = True,
    ) -> List[Dict[str, Any]]:
        """Feedback rows matching a subgraph-style where clause."""


class SubgraphBackend(Backend):
    kind = "subgraph"

    def __init__(self, chain_id: int, client: SubgraphClient):
        super().__init__(chain_id)
        self.client = client

    async def query(self, params, agent_ids=None, first=DEFAULT_FIRST, skip=DEFAULT_SKIP,
                    order_by=DEFAULT_ORDER_BY, order_direction=DEFAULT_ORDER_DIRECTION):
        return await self.client.search_agents(params, first, skip, order_by, order_direction, agent_ids=agent_ids)

    async def query_one(self, agent_id):
        return await self.client.get_agent_by_id(agent_id)

    async def query_feedback(self, where=None, first=DEFAULT_FIRST, skip=DEFAULT_SKIP,
                             order_by=DEFAULT_ORDER_BY, order_direction=DEFAULT_ORDER_DIRECTION, full=True):
        return await self.client.query_feedbacks(where, first, skip, order_by, order_direction, full=full)


# Local evaluation of subgraph where clauses over decoded event rows

def _row_value(row: Dict[str, Any], field_name: str) -> Any:
    if field_name == "agent":
        agent = row.get("agent")
        return agent.get("id") if isinstance(agent, dict) else agent
    return row.get(field_name)


def _same(left: Any, right: Any) -> bool:
    if isinstance(left, str) and isinstance(right, str) and left.startswith("0x") and right.startswith("0x"):
        return normalize_address(left) == normalize_address(right)
    return left == right


def matches_feedback_where(row: Dict[str, Any], where: Optional[Dict[str, Any]]) -> bool:
    """True if a feedback row satisfies a where clause built by feedback_where."""
    if not where:
        return True
    for key, expected in where.items():
        if key == "or":
            if not any(matches_feedback_where(row, clause) for clause in expected):
                return False
        elif key == "and":
            if not all(matches_feedback_where(row, clause) for clause in expected):
                return False
        elif key.endswith("_"):
            # nested entity filters (feedbackFile_) need the off-chain document
            nested = row.get(key[:-1])
            if not isinstance(nested, dict) or not matches_feedback_where(nested, expected):
                return False
        elif key.endswith("_in"):
            value = _row_value(row, key[:-3])
            if not any(_same(value, candidate) for candidate in expected):
                return False
        elif key.endswith("_gte"):
            value = _row_value(row, key[:-4])
            if value is None or value < expected:
                return False
        elif key.endswith("_lte"):
            value = _row_value(row, key[:-4])
            if value is None or value > expected:
                return False
        elif not _same(_row_value(row, key), expected):
            return False
    return True


def _where_values(where: Optional[Dict[str, Any]], key: str) -> Set[Any]:
    """Every value a where clause (including its or/and branches) pins `key` to."""
    found: Set[Any] = set()
    if not where:
        return found
    for clause_key, value in where.items():
        if clause_key in ("or", "and"):
            for clause in value:
                found |= _where_values(clause, key)
        elif clause_key == key:
            found.add(value)
        elif clause_key == f"{key}_in":
            found.update(value)
    return found


class ChainBackend(Backend):
    """Direct registry reads. Rich agent search is not possible here."""

    kind = "chain"

    def __init__(
        self,
        chain_id: int,
        web3_client,
        reputation_registry,
        identity_registry=None,
        max_block_range: int = DEFAULTS["maxBlockRange"],
        from_block: int = 0,
    ):
        super().__init__(chain_id)
        self.web3_client = web3_client
        self.reputation_registry = reputation_registry
        self.identity_registry = identity_registry
        self.max_block_range = max_block_range
        self.from_block = from_block

    async def query(self, params, agent_ids=None, first=DEFAULT_FIRST, skip=DEFAULT_SKIP,
                    order_by=DEFAULT_ORDER_BY, order_direction=DEFAULT_ORDER_DIRECTION):
        logger.warning(f"Agent search is not supported by the chain backend for chain {self.chain_id}")
        return []

    async def query_one(self, agent_id):
        if self.identity_registry is None:
            logger.warning(f"No identity registry configured for chain {self.chain_id}")
            return None
        _, token_id = parse_agent_id(agent_id, default_chain_id=self.chain_id)
        try:
            owner = await self.web3_client.call_contract(self.identity_registry, "ownerOf", token_id)
        except ContractLogicError:
            return None
        agent_uri = await self.web3_client.call_contract(self.identity_registry, "tokenURI", token_id)
        try:
            wallet = await self.web3_client.call_contract(self.identity_registry, "getAgentWallet", token_id)
        except ContractLogicError as e:
            logger.debug(f"getAgentWallet unavailable for {agent_id}: {e}")
            wallet = None
        if wallet and normalize_address(wallet) == ZERO_ADDRESS:
            wallet = None
        return registration_to_row(
            self.chain_id, token_id, normalize_address(owner), None,
            agent_uri=agent_uri or None, wallet=wallet,
        )

    def _block_ranges(self, latest: int) -> Iterable[Tuple[int, int]]:
        start = self.from_block
        while start <= latest:
            end = min(start + self.max_block_range - 1, latest)
            yield start, end
            start = end + 1

    async def _scan(self, event_name: str, argument_filters: Optional[Dict[str, Any]]) -> List[Any]:
        latest = await self.web3_client.get_block_number()
        logs: List[Any] = []
        for start, end in self._block_ranges(latest):
            logs.extend(await self.web3_client.get_events(
                self.reputation_registry, event_name, start, end, argument_filters=argument_filters,
            ))
        return logs

    def _argument_filters(self, where: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        # only a single agent can be pushed down to the indexed topic
        agents = _where_values(where, "agent")
        if len(agents) != 1:
            return None
        _, token_id = parse_agent_id(next(iter(agents)), default_chain_id=self.chain_id)
        return {"agentId": token_id}

    def _decode_log(self, log: Any, revoked: Set[Tuple[int, str, int]]) -> Dict[str, Any]:
        args = log["args"]
        token_id = int(args["agentId"])
        client = normalize_address(args["clientAddress"])
        index = int(args["feedbackIndex"])
        agent_id = f"{self.chain_id}:{token_id}"
        feedback_hash = args.get("feedbackHash")
        if isinstance(feedback_hash, (bytes, bytearray)):
            feedback_hash = "0x" + bytes(feedback_hash).hex()
        return {
            "id": format_feedback_id(agent_id, client, index),
            "agent": {"id": agent_id},
            "clientAddress": client,
            "feedbackIndex": index,
            "score": int(args["score"]),
            "tag1": decode_tag(args.get("tag1")),
            "tag2": decode_tag(args.get("tag2")),
            "endpoint": args.get("endpoint") or None,
            "feedbackURI": args.get("feedbackURI") or None,
            "feedbackHash": feedback_hash,
            "isRevoked": (token_id, client, index) in revoked,
            # block number stands in for a timestamp
            "createdAt": int(log["blockNumber"]),
            "responses": [],
        }

    async def query_feedback(self, where=None, first=DEFAULT_FIRST, skip=DEFAULT_SKIP,
                             order_by=DEFAULT_ORDER_BY, order_direction=DEFAULT_ORDER_DIRECTION, full=True):
        argument_filters = self._argument_filters(where)
        feedback_logs = await self._scan("NewFeedback", argument_filters)
        revoked_logs = await self._scan("FeedbackRevoked", argument_filters)

        revoked = {
            (int(log["args"]["agentId"]), normalize_address(log["args"]["clientAddress"]), int(log["args"]["feedbackIndex"]))
            for log in revoked_logs
        }
        rows = [self._decode_log(log, revoked) for log in feedback_logs]
        rows = [row for row in rows if matches_feedback_where(row, where)]

        sort_key = order_by if order_by in ("createdAt", "score", "feedbackIndex") else "createdAt"
        rows.sort(key=lambda row: row.get(sort_key) or 0, reverse=(order_direction == "desc"))
        return rows[skip:skip + first]
