"""
Multi-source router: picks the backend for each chain a request touches.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

from .backends import Backend
from .config import TIMEOUTS
from .exceptions import PreconditionError
from .identifiers import has_chain_prefix, parse_agent_id, qualify_agent_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouterConfig:
    """Immutable routing snapshot."""

    default_chain_id: int
    backends: Mapping[int, Backend] = field(default_factory=dict)
    timeout: float = TIMEOUTS["multiChain"]

    def __post_init__(self):
        object.__setattr__(self, "backends", MappingProxyType(dict(self.backends)))


@dataclass
class ChainResults:
    """Outcome of a per-chain fan-out."""

    results: Dict[int, Any] = field(default_factory=dict)
    successfulChains: List[int] = field(default_factory=list)
    failedChains: List[int] = field(default_factory=list)
    timeMs: int = 0


class MultiSourceRouter:
    """Routes agent and feedback queries to per-chain backends."""

    def __init__(self, config: RouterConfig):
        self._config = config
        self._lock = asyncio.Lock()

    @property
    def config(self) -> RouterConfig:
        return self._config

    @property
    def default_chain_id(self) -> int:
        return self._config.default_chain_id

    @property
    def chains(self) -> List[int]:
        return sorted(self._config.backends)

    def resolve_chain(self, agent_ids: List[str]) -> Tuple[int, List[str]]:
        """
        Pick the chain for a batch of agent IDs and qualify every ID with it.

        The first ID decides: its chain prefix, if it has one, applies to the
        whole batch; otherwise the default chain does.
        """
        if not agent_ids:
            return self._config.default_chain_id, []
        first = str(agent_ids[0])
        if has_chain_prefix(first):
            chain_id, _ = parse_agent_id(first)
        else:
            chain_id = self._config.default_chain_id

        normalized = []
        for agent_id in agent_ids:
            normalized.append(qualify_agent_id(agent_id, chain_id))
        return chain_id, normalized

    def backend_for(self, chain_id: Optional[int]) -> Optional[Backend]:
        config = self._config
        chain = config.default_chain_id if chain_id is None else int(chain_id)
        return config.backends.get(chain)

    async def query_agents(
        self,
        params,
        agent_ids: Optional[List[str]] = None,
        chain_id: Optional[int] = None,
        first: int = 100,
        skip: int = 0,
        order_by: str = "createdAt",
        order_direction: str = "desc",
    ) -> List[Dict[str, Any]]:
        if agent_ids:
            chain_id, agent_ids = self.resolve_chain(agent_ids)
        backend = self.backend_for(chain_id)
        if backend is None:
            logger.warning(f"No backend configured for chain {chain_id}")
            return []
        return await backend.query(params, agent_ids, first, skip, order_by, order_direction)

    async def query_agent(self, agent_id: str) -> Optional[Dict[str, Any]]:
        chain_id, (qualified,) = self.resolve_chain([agent_id])
        backend = self.backend_for(chain_id)
        if backend is None:
            logger.warning(f"No backend configured for chain {chain_id}")
            return None
        return await backend.query_one(qualified)

    async def query_feedback(
        self,
        where: Optional[Dict[str, Any]] = None,
        chain_id: Optional[int] = None,
        first: int = 100,
        skip: int = 0,
        order_by: str = "createdAt",
        order_direction: str = "desc",
        full: bool = True,
    ) -> List[Dict[str, Any]]:
        backend = self.backend_for(chain_id)
        if backend is None:
            logger.warning(f"No backend configured for chain {chain_id}")
            return []
        return await backend.query_feedback(where, first, skip, order_by, order_direction, full=full)

    async def query_chains(
        self,
        chain_ids: List[int],
        fn: Callable[[Backend], Awaitable[Any]],
        timeout: Optional[float] = None,
    ) -> ChainResults:
        """
        Run fn against each chain's backend concurrently.

        All calls settle: a failing or unconfigured chain lands in
        failedChains while the others still return. Calls still pending at the
        timeout are cancelled and counted as failed.
        """
        started = time.time()
        config = self._config
        outcome = ChainResults()

        runnable: List[Tuple[int, Backend]] = []
        for chain_id in chain_ids:
            backend = config.backends.get(int(chain_id))
            if backend is None:
                logger.warning(f"Skipping chain {chain_id}: no backend configured")
                outcome.failedChains.append(int(chain_id))
            else:
                runnable.append((int(chain_id), backend))

        tasks = [asyncio.ensure_future(fn(backend)) for _, backend in runnable]
        if tasks:
            done, pending = await asyncio.wait(tasks, timeout=timeout or config.timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

            for (chain_id, _), task in zip(runnable, tasks):
                if task in pending:
                    logger.warning(f"Chain {chain_id} timed out")
                    outcome.failedChains.append(chain_id)
                elif task.exception() is not None:
                    logger.error(f"Error querying chain {chain_id}: {task.exception()}", exc_info=task.exception())
                    outcome.failedChains.append(chain_id)
                else:
                    outcome.results[chain_id] = task.result()
                    outcome.successfulChains.append(chain_id)

        outcome.timeMs = int((time.time() - started) * 1000)
        logger.info(
            f"Queried {len(chain_ids)} chains: {len(outcome.successfulChains)} succeeded, "
            f"{len(outcome.failedChains)} failed in {outcome.timeMs}ms"
        )
        return outcome

    async def register_backend(self, backend: Backend) -> None:
        """Add a backend. Running queries keep the snapshot they started with."""
        async with self._lock:
            current = self._config
            if backend.chain_id in current.backends:
                raise PreconditionError(f"Chain {backend.chain_id} already has a backend")
            backends = dict(current.backends)
            backends[backend.chain_id] = backend
            self._config = replace(current, backends=backends)
        logger.info(f"Registered {backend.kind} backend for chain {backend.chain_id}")
