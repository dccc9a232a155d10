"""
Exception types raised by the Agent Discovery SDK.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class AgentDiscoveryError(Exception):
    """Base class for all SDK errors."""


class PreconditionError(AgentDiscoveryError, ValueError):
    """Invalid input or missing configuration (signer, registry, backend)."""


class InvalidAgentIdError(PreconditionError):
    """Malformed composite agent or feedback identifier."""


class ChainMismatchError(PreconditionError):
    """Operation targets a chain the SDK is not connected to."""

    def __init__(self, target_chain_id: int, configured_chain_id: int, message: Optional[str] = None):
        self.target_chain_id = target_chain_id
        self.configured_chain_id = configured_chain_id
        super().__init__(
            message
            or f"Chain {target_chain_id} does not match configured chain {configured_chain_id}"
        )


class AuthoritativeOperationError(AgentDiscoveryError, RuntimeError):
    """A blockchain read or write failed. The cause is chained."""


class SubgraphQueryError(AgentDiscoveryError, RuntimeError):
    """The subgraph rejected a query or could not be reached."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.errors = errors or []


class UnknownFieldError(SubgraphQueryError):
    """The subgraph schema does not know a field used in the query."""

    def __init__(self, field: str, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message, errors)
        self.field = field
