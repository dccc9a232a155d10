"""
Normalization of raw agent rows into AgentSummary.

A raw row is the subgraph's Agent entity: registry fields (id, owner,
operators, agentWallet, ...) with the parsed registration document nested
under "registrationFile". Rows built from a chain read plus a fetched
registration document use the same shape (see registration_to_row).
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from .exceptions import InvalidAgentIdError
from .identifiers import ZERO_ADDRESS, format_agent_id, normalize_address, parse_agent_id
from .models import AgentSummary, EndpointType

EXTRA_ROW_FIELDS = (
    "agentURI", "createdAt", "updatedAt", "totalFeedback", "lastActivity",
    "averageScore", "feedbackCount", "deployedOn",
)


def _as_list(value: Any) -> List[Any]:
    return list(value) if isinstance(value, (list, tuple)) else []


def _as_bool(value: Any) -> bool:
    return bool(value) if value is not None else False


def _wallet(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    wallet = normalize_address(value)
    return None if wallet == ZERO_ADDRESS else wallet


def _composite_id(raw: Dict[str, Any], chain_id: Optional[int]) -> tuple:
    raw_id = raw.get("id") or raw.get("agentId")
    if raw.get("chainId") is not None:
        chain_id = int(raw["chainId"])
    parsed_chain, token_id = parse_agent_id(str(raw_id), default_chain_id=chain_id)
    if parsed_chain is None:
        raise InvalidAgentIdError(f"Agent row {raw_id} has no chain ID")
    return parsed_chain, format_agent_id(parsed_chain, token_id)


def transform_agent(raw: Dict[str, Any], chain_id: Optional[int] = None) -> AgentSummary:
    """Build an AgentSummary from a raw row, filling safe defaults."""
    chain, agent_id = _composite_id(raw, chain_id)

    reg_file = raw.get("registrationFile")
    if not isinstance(reg_file, dict):
        reg_file = {}

    if raw.get("owners") is not None:
        owners = [normalize_address(o) for o in _as_list(raw.get("owners")) if o]
    else:
        owners = [normalize_address(raw["owner"])] if raw.get("owner") else []
    operators = [normalize_address(op) for op in _as_list(raw.get("operators")) if op]

    x402 = reg_file.get("x402Support")
    if x402 is None:
        x402 = reg_file.get("x402support")

    extras = {key: raw[key] for key in EXTRA_ROW_FIELDS if raw.get(key) is not None}
    for key in ("mcpEndpoint", "a2aEndpoint"):
        if reg_file.get(key):
            extras[key] = reg_file[key]
    if isinstance(raw.get("extras"), dict):
        extras.update(raw["extras"])

    return AgentSummary(
        chainId=chain,
        agentId=agent_id,
        name=reg_file.get("name") or agent_id,
        image=reg_file.get("image"),
        description=reg_file.get("description") or "",
        owners=owners,
        operators=operators,
        mcp=bool(reg_file.get("mcpEndpoint")),
        a2a=bool(reg_file.get("a2aEndpoint")),
        ens=reg_file.get("ens"),
        did=reg_file.get("did"),
        walletAddress=_wallet(raw.get("agentWallet") or reg_file.get("agentWallet")),
        supportedTrusts=_as_list(reg_file.get("supportedTrusts")),
        a2aSkills=_as_list(reg_file.get("a2aSkills")),
        mcpTools=_as_list(reg_file.get("mcpTools")),
        mcpPrompts=_as_list(reg_file.get("mcpPrompts")),
        mcpResources=_as_list(reg_file.get("mcpResources")),
        active=_as_bool(reg_file.get("active")),
        x402support=_as_bool(x402),
        extras=extras,
    )


def _wallet_from_endpoint(value: str) -> Optional[str]:
    # "eip155:<chainId>:<address>" or a bare address
    return value.rsplit(":", 1)[-1] if value else None


def registration_to_row(
    chain_id: int,
    token_id: int,
    owner: Optional[str],
    registration: Optional[Dict[str, Any]],
    agent_uri: Optional[str] = None,
    wallet: Optional[str] = None,
) -> Dict[str, Any]:
    """Turn a registration document into a raw row accepted by transform_agent."""
    row: Dict[str, Any] = {
        "id": format_agent_id(chain_id, token_id),
        "chainId": chain_id,
        "agentId": str(token_id),
        "owner": owner,
        "operators": [],
        "agentURI": agent_uri,
        "agentWallet": wallet,
        "registrationFile": None,
    }
    if not isinstance(registration, dict):
        return row

    reg_file: Dict[str, Any] = {
        "name": registration.get("name"),
        "description": registration.get("description"),
        "image": registration.get("image"),
        "active": registration.get("active"),
        "x402Support": registration.get("x402Support", registration.get("x402support")),
        "supportedTrusts": _as_list(registration.get("supportedTrust") or registration.get("supportedTrusts")),
    }

    entries = _as_list(registration.get("endpoints")) or _as_list(registration.get("services"))
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        kind = entry.get("name") or entry.get("type")
        value = entry.get("endpoint") or entry.get("url")
        if kind == EndpointType.MCP.value:
            reg_file["mcpEndpoint"] = value
            reg_file["mcpVersion"] = entry.get("version")
            reg_file["mcpTools"] = _as_list(entry.get("mcpTools"))
            reg_file["mcpPrompts"] = _as_list(entry.get("mcpPrompts"))
            reg_file["mcpResources"] = _as_list(entry.get("mcpResources"))
        elif kind == EndpointType.A2A.value:
            reg_file["a2aEndpoint"] = value
            reg_file["a2aVersion"] = entry.get("version")
            reg_file["a2aSkills"] = _as_list(entry.get("a2aSkills"))
        elif kind == EndpointType.ENS.value:
            reg_file["ens"] = value
        elif kind == EndpointType.DID.value:
            reg_file["did"] = value
        elif kind == EndpointType.WALLET.value and not row["agentWallet"]:
            row["agentWallet"] = _wallet_from_endpoint(value)

    row["registrationFile"] = reg_file
    return row
