"""
Core data models for the Agent Discovery SDK.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union, Literal
from datetime import datetime

from .identifiers import normalize_address, parse_feedback_id


# Type aliases
AgentId = str  # "chainId:tokenId" (e.g., "8453:1234") or just tokenId when chain is implicit
ChainId = int
Address = str  # 0x-hex
URI = str  # https://... or ipfs://...
Timestamp = int  # unix seconds


class EndpointType(Enum):
    """Types of endpoints that agents can advertise."""
    MCP = "MCP"
    A2A = "A2A"
    ENS = "ENS"
    DID = "DID"
    WALLET = "agentWallet"


@dataclass
class AgentSummary:
    """Summary information for agent discovery and search."""
    chainId: ChainId
    agentId: AgentId
    name: str
    image: Optional[URI] = None
    description: str = ""
    owners: List[Address] = field(default_factory=list)
    operators: List[Address] = field(default_factory=list)
    mcp: bool = False
    a2a: bool = False
    ens: Optional[str] = None
    did: Optional[str] = None
    walletAddress: Optional[Address] = None
    supportedTrusts: List[str] = field(default_factory=list)  # normalized string keys
    a2aSkills: List[str] = field(default_factory=list)
    mcpTools: List[str] = field(default_factory=list)
    mcpPrompts: List[str] = field(default_factory=list)
    mcpResources: List[str] = field(default_factory=list)
    active: bool = False
    x402support: bool = False
    extras: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Feedback:
    """Feedback data structure."""
    id: tuple  # (agentId, clientAddress, feedbackIndex)
    agentId: AgentId
    reviewer: Address
    score: Optional[int]  # 0-100
    tags: List[str] = field(default_factory=list)
    endpoint: Optional[str] = None
    text: Optional[str] = None
    context: Optional[Dict[str, Any]] = None
    proofOfPayment: Optional[Dict[str, Any]] = None
    fileURI: Optional[URI] = None
    fileHash: Optional[str] = None
    createdAt: Timestamp = field(default_factory=lambda: int(datetime.now().timestamp()))
    answers: List[Dict[str, Any]] = field(default_factory=list)
    isRevoked: bool = False

    # Off-chain only fields (not stored on blockchain)
    capability: Optional[str] = None  # MCP capability: "prompts", "resources", "tools", "completions"
    name: Optional[str] = None  # MCP tool/resource name
    skill: Optional[str] = None  # A2A skill
    task: Optional[str] = None  # A2A task

    def __post_init__(self):
        """Validate the ID and canonicalize addresses."""
        if isinstance(self.id, str):
            self.id = self.from_id_string(self.id)
        elif not isinstance(self.id, tuple) or len(self.id) != 3:
            raise ValueError(f"Feedback ID must be tuple of (agentId, clientAddress, feedbackIndex), got: {self.id}")
        if isinstance(self.reviewer, str) and self.reviewer:
            self.reviewer = normalize_address(self.reviewer)

    @property
    def feedbackIndex(self) -> int:
        return self.id[2]

    @property
    def id_string(self) -> str:
        """Get string representation of ID for external APIs."""
        return f"{self.id[0]}:{self.id[1]}:{self.id[2]}"

    @classmethod
    def create_id(cls, agentId: AgentId, clientAddress: Address, feedbackIndex: int) -> tuple:
        """Create feedback ID tuple with normalized address."""
        return (agentId, normalize_address(clientAddress), int(feedbackIndex))

    @classmethod
    def from_id_string(cls, id_string: str) -> tuple:
        """Parse feedback ID from "agentId:clientAddress:feedbackIndex"."""
        return parse_feedback_id(id_string)


@dataclass
class FeedbackFilters:
    """Reputation constraints applied while searching agents."""
    tags: Optional[List[str]] = None
    reviewers: Optional[List[Address]] = None
    minScore: Optional[int] = None  # per-record score bounds
    maxScore: Optional[int] = None
    minCount: Optional[int] = None
    maxCount: Optional[int] = None
    minAverageScore: Optional[float] = None
    includeRevoked: bool = False

    def is_empty(self) -> bool:
        return all(
            getattr(self, name) is None
            for name in ("tags", "reviewers", "minScore", "maxScore", "minCount", "maxCount", "minAverageScore")
        )


@dataclass
class SearchParams:
    """Parameters for agent search. Every field is optional; None means no constraint."""
    chains: Optional[Union[List[ChainId], Literal["all"]]] = None
    agentIds: Optional[List[AgentId]] = None
    name: Optional[str] = None  # case-insensitive substring
    description: Optional[str] = None  # case-insensitive substring, evaluated client side
    owners: Optional[List[Address]] = None
    operators: Optional[List[Address]] = None
    mcp: Optional[bool] = None
    a2a: Optional[bool] = None
    ens: Optional[str] = None  # exact, case-insensitive
    did: Optional[str] = None  # exact
    walletAddress: Optional[Address] = None
    supportedTrust: Optional[List[str]] = None
    a2aSkills: Optional[List[str]] = None
    mcpTools: Optional[List[str]] = None
    mcpPrompts: Optional[List[str]] = None
    mcpResources: Optional[List[str]] = None
    active: Optional[bool] = None
    x402support: Optional[bool] = None
    feedback: Optional[FeedbackFilters] = None
    deduplicate_cross_chain: bool = False  # Deduplicate same agent across chains

    def __post_init__(self):
        if isinstance(self.feedback, dict):
            self.feedback = FeedbackFilters(**self.feedback)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, filtering out None values."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class SearchFeedbackParams:
    """Parameters for feedback search."""
    agents: Optional[List[AgentId]] = None
    tags: Optional[List[str]] = None
    reviewers: Optional[List[Address]] = None
    capabilities: Optional[List[str]] = None
    skills: Optional[List[str]] = None
    tasks: Optional[List[str]] = None
    names: Optional[List[str]] = None  # MCP tool/resource/prompt names
    minScore: Optional[int] = None  # 0-100
    maxScore: Optional[int] = None  # 0-100
    includeRevoked: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary, filtering out None values."""
        return {k: v for k, v in self.__dict__.items() if v is not None}


@dataclass
class McpCapabilities:
    """Names advertised by an MCP server. A category nobody reported is None."""
    tools: Optional[List[str]] = None
    prompts: Optional[List[str]] = None
    resources: Optional[List[str]] = None

    def __post_init__(self):
        # Empty lists collapse to None so an absent category never looks like an empty one
        self.tools = self.tools or None
        self.prompts = self.prompts or None
        self.resources = self.resources or None

    def is_empty(self) -> bool:
        return not (self.tools or self.prompts or self.resources)

    def to_dict(self) -> Dict[str, List[str]]:
        """Keys use the AgentSummary field names; empty categories are omitted."""
        result = {}
        if self.tools:
            result["mcpTools"] = list(self.tools)
        if self.prompts:
            result["mcpPrompts"] = list(self.prompts)
        if self.resources:
            result["mcpResources"] = list(self.resources)
        return result


@dataclass
class A2aCapabilities:
    """Skill tags advertised by an A2A agent card."""
    skills: List[str] = field(default_factory=list)
    source: Optional[URI] = None  # agent card URL that produced the skills

    def to_dict(self) -> Dict[str, List[str]]:
        return {"a2aSkills": list(self.skills)} if self.skills else {}


@dataclass
class ReputationSummary:
    """Aggregate reputation for one agent."""
    agentId: AgentId
    count: int = 0
    averageScore: float = 0
    filters: Dict[str, Any] = field(default_factory=dict)
    groupedData: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "agentId": self.agentId,
            "count": self.count,
            "averageScore": self.averageScore,
            "filters": self.filters,
        }
        if self.groupedData is not None:
            result["groupedData"] = self.groupedData
        return result
