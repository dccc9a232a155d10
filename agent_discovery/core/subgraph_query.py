"""
Structural GraphQL query building for the ERC-8004 subgraph.

Queries are built as small trees of Field nodes and rendered to text only at
send time, through a FieldResolver for the schema version the target
subgraph speaks. Older deployments renamed or lacked some fields; the
resolver maps every occurrence (selection sets, where-clause keys, orderBy
values) in one place instead of patching query text.

Filter rendering per predicate kind:

    scalar equality      {field: value}
    one of a set         {field_in: [...]}
    array contains all   {field_contains: [...]}
    presence / absence   {field_not: null} / {field: null}
    substring            {field_contains_nocase: "..."}
    nested entity        {entity_: {...}}
    disjunction          {or: [{...}, {...}]}

Agent filters that the subgraph cannot evaluate are applied client side by
filter_agent_rows():

    name                 backend name_contains_nocase, re-checked client side
    description          client side (case-insensitive substring)
    supportedTrust       client side (contains all)
    a2aSkills            client side (contains all)
    mcpTools             client side (contains all)
    mcpPrompts           client side (contains all)
    mcpResources         client side (contains all)

owners, operators, walletAddress, agentIds, active, x402support, mcp, a2a,
ens and did are evaluated by the subgraph.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .identifiers import normalize_address
from .models import SearchParams

SCHEMA_CURRENT = "current"
SCHEMA_LEGACY = "legacy"

# Per schema version: current field name -> name on that version (None = field absent)
FIELD_RESOLUTION: Dict[str, Dict[str, Optional[str]]] = {
    SCHEMA_CURRENT: {},
    SCHEMA_LEGACY: {
        "x402Support": "x402support",
        "endpoint": None,
    },
}

RENAMED_FIELDS = frozenset(FIELD_RESOLUTION[SCHEMA_LEGACY].keys())

# Filter operators that may follow a field name in a where key
FILTER_SUFFIXES = (
    "_not_contains_nocase", "_contains_nocase", "_not_contains", "_contains",
    "_not_in", "_in", "_not", "_gte", "_lte", "_gt", "_lt", "_",
)

DEFAULT_FIRST = 100
DEFAULT_SKIP = 0
DEFAULT_ORDER_BY = "createdAt"
DEFAULT_ORDER_DIRECTION = "desc"

_UNKNOWN_FIELD_PATTERNS = (
    re.compile(r"Cannot query field [`\"'](\w+)[`\"']"),
    re.compile(r"has no field [`\"'](\w+)[`\"']"),
    re.compile(r"[Ff]ield [`\"'](\w+)[`\"'] is not defined"),
)


class FieldResolver:
    """Maps current field names to the names used by one schema version."""

    def __init__(self, version: str = SCHEMA_CURRENT):
        if version not in FIELD_RESOLUTION:
            raise ValueError(f"Unknown subgraph schema version: {version}")
        self.version = version
        self._table = FIELD_RESOLUTION[version]

    def field(self, name: str) -> Optional[str]:
        return self._table.get(name, name)

    def filter_key(self, key: str) -> Optional[str]:
        """Resolve a where key such as 'x402Support' or 'x402Support_not'."""
        if key in ("and", "or"):
            return key
        base, suffix = split_filter_key(key)
        resolved = self.field(base)
        if resolved is None:
            return None
        return resolved + suffix


def split_filter_key(key: str) -> Tuple[str, str]:
    for suffix in FILTER_SUFFIXES:
        if key.endswith(suffix) and len(key) > len(suffix):
            return key[: -len(suffix)], suffix
    return key, ""


def base_field_name(name: str) -> str:
    return split_filter_key(name)[0]


def is_renamed_field(name: Optional[str]) -> bool:
    return name is not None and base_field_name(name) in RENAMED_FIELDS


def parse_unknown_field(message: str) -> Optional[str]:
    """Return the field named by an unknown-field error message, if any."""
    for pattern in _UNKNOWN_FIELD_PATTERNS:
        match = pattern.search(message or "")
        if match:
            return match.group(1)
    return None


class GraphQLEnum(str):
    """A bare enum value (rendered without quotes)."""


class OrderField(GraphQLEnum):
    """An orderBy value; it names a field, so it goes through resolution."""


def render_value(value: Any, resolver: FieldResolver) -> str:
    """Render a Python value as a GraphQL input literal."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, OrderField):
        return resolver.field(str(value)) or DEFAULT_ORDER_BY
    if isinstance(value, GraphQLEnum):
        return str(value)
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return json.dumps(value)
    if isinstance(value, Mapping):
        parts = []
        for key, item in value.items():
            resolved_key = resolver.filter_key(key)
            if resolved_key is None:
                continue
            parts.append(f"{resolved_key}: {render_value(item, resolver)}")
        return "{" + ", ".join(parts) + "}"
    if isinstance(value, (list, tuple, set, frozenset)):
        return "[" + ", ".join(render_value(item, resolver) for item in value) + "]"
    raise TypeError(f"Cannot render {type(value).__name__} as a GraphQL value")


@dataclass(frozen=True)
class Field:
    """One node of a selection set."""
    name: str
    children: Tuple["Field", ...] = ()
    args: Optional[Mapping[str, Any]] = None

    def render(self, resolver: FieldResolver, indent: int = 1) -> Optional[str]:
        name = resolver.field(self.name)
        if name is None:
            return None

        pad = "  " * indent
        text = pad + name
        if self.args:
            rendered_args = ", ".join(
                f"{key}: {render_value(value, resolver)}"
                for key, value in self.args.items()
                if value is not None
            )
            if rendered_args:
                text += f"({rendered_args})"

        if self.children:
            lines = [child.render(resolver, indent + 1) for child in self.children]
            lines = [line for line in lines if line is not None]
            text += " {\n" + "\n".join(lines) + "\n" + pad + "}"
        return text


def fields(*names: str) -> Tuple[Field, ...]:
    return tuple(Field(name) for name in names)


@dataclass(frozen=True)
class Query:
    """A query document with one or more root fields."""
    roots: Tuple[Field, ...]

    def render(self, resolver: Optional[FieldResolver] = None) -> str:
        resolver = resolver or FieldResolver()
        lines = [root.render(resolver, 1) for root in self.roots]
        return "query {\n" + "\n".join(line for line in lines if line is not None) + "\n}"


REGISTRATION_FILE_FIELDS = fields(
    "id", "agentId", "name", "description", "image", "active", "x402Support",
    "supportedTrusts", "mcpEndpoint", "mcpVersion", "a2aEndpoint", "a2aVersion",
    "ens", "did", "agentWallet", "mcpTools", "mcpPrompts", "mcpResources", "a2aSkills",
    "createdAt",
)

AGENT_FIELDS = fields(
    "id", "chainId", "agentId", "owner", "operators", "agentURI", "agentWallet",
    "createdAt", "updatedAt", "totalFeedback", "lastActivity",
) + (Field("registrationFile", REGISTRATION_FILE_FIELDS),)

FEEDBACK_FILE_FIELDS = fields(
    "id", "feedbackId", "text", "capability", "name", "skill", "task", "context",
    "proofOfPaymentFromAddress", "proofOfPaymentToAddress", "proofOfPaymentChainId",
    "proofOfPaymentTxHash", "tag1", "tag2", "createdAt",
)

FEEDBACK_RESPONSE_FIELDS = fields("id", "responder", "responseUri", "responseHash", "createdAt")

FEEDBACK_FIELDS = fields("id") + (
    Field("agent", fields("id", "agentId", "chainId")),
) + fields(
    "clientAddress", "score", "tag1", "tag2", "endpoint", "feedbackURI", "feedbackURIType",
    "feedbackHash", "isRevoked", "createdAt", "revokedAt",
) + (
    Field("feedbackFile", FEEDBACK_FILE_FIELDS),
    Field("responses", FEEDBACK_RESPONSE_FIELDS),
)

# Minimal rows for reputation aggregation
FEEDBACK_SCORE_FIELDS = fields("id") + (Field("agent", fields("id")),) + fields(
    "clientAddress", "score", "tag1", "tag2", "isRevoked", "createdAt",
)


def _list_args(where, first, skip, order_by, order_direction) -> Dict[str, Any]:
    return {
        "where": where or None,
        "first": DEFAULT_FIRST if first is None else int(first),
        "skip": DEFAULT_SKIP if skip is None else int(skip),
        "orderBy": OrderField(order_by or DEFAULT_ORDER_BY),
        "orderDirection": GraphQLEnum(order_direction or DEFAULT_ORDER_DIRECTION),
    }


def agents_query(
    where: Optional[Dict[str, Any]] = None,
    first: int = DEFAULT_FIRST,
    skip: int = DEFAULT_SKIP,
    order_by: str = DEFAULT_ORDER_BY,
    order_direction: str = DEFAULT_ORDER_DIRECTION,
) -> Query:
    return Query((Field("agents", AGENT_FIELDS, _list_args(where, first, skip, order_by, order_direction)),))


def agent_query(agent_id: str) -> Query:
    return Query((Field("agent", AGENT_FIELDS, {"id": agent_id}),))


def feedbacks_query(
    where: Optional[Dict[str, Any]] = None,
    first: int = DEFAULT_FIRST,
    skip: int = DEFAULT_SKIP,
    order_by: str = DEFAULT_ORDER_BY,
    order_direction: str = DEFAULT_ORDER_DIRECTION,
    selection: Tuple[Field, ...] = FEEDBACK_FIELDS,
) -> Query:
    return Query((Field("feedbacks", selection, _list_args(where, first, skip, order_by, order_direction)),))


def feedback_query(feedback_id: str) -> Query:
    return Query((Field("feedback", FEEDBACK_FIELDS, {"id": feedback_id}),))


# Where-clause builders

def presence(field_name: str, present: bool) -> Dict[str, Any]:
    return {f"{field_name}_not": None} if present else {field_name: None}


def any_of(clauses: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
    return {"or": list(clauses)}


def combine(base: Dict[str, Any], groups: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Conjoin plain constraints with disjunction groups.

    A disjunction cannot sit next to other keys of the same filter object, so
    once one is present everything is wrapped in an `and` list.
    """
    if not groups:
        return base
    clauses = ([base] if base else []) + groups
    return clauses[0] if len(clauses) == 1 else {"and": clauses}


def agent_where(params: SearchParams, agent_ids: Optional[List[str]] = None) -> Dict[str, Any]:
    """Backend-evaluable part of an agent search."""
    where: Dict[str, Any] = {}
    groups: List[Dict[str, Any]] = []
    reg_file_where: Dict[str, Any] = {}

    if agent_ids:
        where["id_in"] = list(agent_ids)

    if params.owners:
        owners = [normalize_address(owner) for owner in params.owners]
        if len(owners) == 1:
            where["owner"] = owners[0]
        else:
            where["owner_in"] = owners

    if params.operators:
        # Any listed operator may match
        groups.append(any_of({"operators_contains": [normalize_address(op)]} for op in params.operators))

    if params.walletAddress is not None:
        where["agentWallet"] = normalize_address(params.walletAddress)

    if params.name:
        reg_file_where["name_contains_nocase"] = params.name
    if params.active is not None:
        reg_file_where["active"] = params.active
    if params.x402support is not None:
        reg_file_where["x402Support"] = params.x402support
    if params.mcp is not None:
        reg_file_where.update(presence("mcpEndpoint", params.mcp))
    if params.a2a is not None:
        reg_file_where.update(presence("a2aEndpoint", params.a2a))
    if params.ens is not None:
        reg_file_where["ens"] = params.ens.lower()
    if params.did is not None:
        reg_file_where["did"] = params.did

    if reg_file_where:
        where["registrationFile_"] = reg_file_where

    return combine(where, groups)


def feedback_where(
    agents: Optional[List[str]] = None,
    reviewers: Optional[List[str]] = None,
    tags: Optional[List[str]] = None,
    min_score: Optional[int] = None,
    max_score: Optional[int] = None,
    include_revoked: bool = False,
    capabilities: Optional[List[str]] = None,
    skills: Optional[List[str]] = None,
    tasks: Optional[List[str]] = None,
    names: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """
    Where clause for a feedback search.

    Candidate tags mean "tag1 or tag2 equals any candidate". That is rendered
    as one fully-qualified clause per (tag slot, tag) pair, each repeating all
    other constraints, so the disjunction conjoins correctly with them.
    """
    base: Dict[str, Any] = {}

    if agents:
        base["agent_in"] = list(agents)
    if reviewers:
        base["clientAddress_in"] = [normalize_address(r) for r in reviewers]
    if not include_revoked:
        base["isRevoked"] = False
    if min_score is not None:
        base["score_gte"] = min_score
    if max_score is not None:
        base["score_lte"] = max_score

    file_where: Dict[str, Any] = {}
    if capabilities:
        file_where["capability_in"] = list(capabilities)
    if skills:
        file_where["skill_in"] = list(skills)
    if tasks:
        file_where["task_in"] = list(tasks)
    if names:
        file_where["name_in"] = list(names)
    if file_where:
        base["feedbackFile_"] = file_where

    if tags:
        clauses = []
        for tag in tags:
            clauses.append({**base, "tag1": tag})
            clauses.append({**base, "tag2": tag})
        return any_of(clauses)

    return base


# Client-side post-filters

def _registration(row: Dict[str, Any]) -> Dict[str, Any]:
    reg_file = row.get("registrationFile")
    return reg_file if isinstance(reg_file, dict) else {}


def _contains_all(values: Optional[List[str]], required: Optional[List[str]]) -> bool:
    if not required:
        return True
    have = set(values or [])
    return all(item in have for item in required)


def filter_agent_rows(rows: List[Dict[str, Any]], params: SearchParams) -> List[Dict[str, Any]]:
    """Apply the filters the subgraph cannot evaluate."""
    filtered = []
    name = params.name.lower() if params.name else None
    description = params.description.lower() if params.description else None

    for row in rows:
        reg_file = _registration(row)
        if name is not None and name not in (reg_file.get("name") or "").lower():
            continue
        if description is not None and description not in (reg_file.get("description") or "").lower():
            continue
        if not _contains_all(reg_file.get("supportedTrusts"), params.supportedTrust):
            continue
        if not _contains_all(reg_file.get("a2aSkills"), params.a2aSkills):
            continue
        if not _contains_all(reg_file.get("mcpTools"), params.mcpTools):
            continue
        if not _contains_all(reg_file.get("mcpPrompts"), params.mcpPrompts):
            continue
        if not _contains_all(reg_file.get("mcpResources"), params.mcpResources):
            continue
        filtered.append(row)

    return filtered


def needs_post_filter(params: SearchParams) -> bool:
    return any(
        getattr(params, name)
        for name in ("name", "description", "supportedTrust", "a2aSkills", "mcpTools", "mcpPrompts", "mcpResources")
    )
