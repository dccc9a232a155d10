"""
Composite identifiers and address canonicalization.

Agent IDs are "chainId:tokenId" (e.g. "8453:1234"). Feedback IDs append the
reviewer address and the per-(agent, reviewer) feedback index:
"chainId:tokenId:reviewer:index".
"""

from __future__ import annotations

from typing import Optional, Tuple

from .exceptions import InvalidAgentIdError

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def normalize_address(address: str) -> str:
    """Canonical form of an address: lower-case hex.

    Every address stored in a model or compared against another address goes
    through this function. Applying it twice is the same as applying it once.
    """
    if not isinstance(address, str):
        raise InvalidAgentIdError(f"Address must be a string, got: {address!r}")
    return address.strip().lower()


def format_agent_id(chain_id: int, token_id: int) -> str:
    """Build a composite agent ID."""
    return f"{int(chain_id)}:{int(token_id)}"


def _parse_int(value: str, what: str, source: str) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise InvalidAgentIdError(f"Invalid {what} in agent ID: {source}")
    if parsed < 0:
        raise InvalidAgentIdError(f"Invalid {what} in agent ID: {source}")
    return parsed


def parse_agent_id(agent_id: str, default_chain_id: Optional[int] = None) -> Tuple[Optional[int], int]:
    """Split an agent ID into (chainId, tokenId).

    A bare token ID ("1234") takes ``default_chain_id``, which may be None.
    """
    if isinstance(agent_id, int):
        return default_chain_id, agent_id
    if not isinstance(agent_id, str) or not agent_id.strip():
        raise InvalidAgentIdError(f"Invalid agent ID: {agent_id!r}")

    agent_id = agent_id.strip()
    if ":" not in agent_id:
        return default_chain_id, _parse_int(agent_id, "token ID", agent_id)

    parts = agent_id.split(":")
    if len(parts) != 2:
        raise InvalidAgentIdError(f"Agent ID must be 'chainId:tokenId', got: {agent_id}")
    return _parse_int(parts[0], "chain ID", agent_id), _parse_int(parts[1], "token ID", agent_id)


def has_chain_prefix(agent_id: str) -> bool:
    return isinstance(agent_id, str) and ":" in agent_id


def qualify_agent_id(agent_id: str, chain_id: int) -> str:
    """Return the composite form of ``agent_id``, prefixing ``chain_id`` if absent."""
    parsed_chain, token_id = parse_agent_id(agent_id, default_chain_id=chain_id)
    return format_agent_id(parsed_chain, token_id)


def format_feedback_id(agent_id: str, client_address: str, feedback_index: int) -> str:
    """Build the indexed feedback ID for a composite agent ID."""
    return f"{agent_id}:{normalize_address(client_address)}:{int(feedback_index)}"


def parse_feedback_id(feedback_id: str) -> Tuple[str, str, int]:
    """Parse "agentId:clientAddress:feedbackIndex".

    agentId itself contains a colon, so the string is split from the right.
    """
    parts = feedback_id.rsplit(":", 2) if isinstance(feedback_id, str) else []
    if len(parts) != 3 or not parts[0]:
        raise InvalidAgentIdError(f"Invalid feedback ID format: {feedback_id}")
    try:
        feedback_index = int(parts[2])
    except ValueError:
        raise InvalidAgentIdError(f"Invalid feedback index: {parts[2]}")
    return parts[0], normalize_address(parts[1]), feedback_index
