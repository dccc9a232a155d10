"""
Main SDK class for the Agent Discovery SDK.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Union

from .backends import Backend, ChainBackend, SubgraphBackend
from .config import DEFAULTS, TIMEOUTS, SDKConfig, configured_subgraph_chains, resolve_subgraph_url
from .contracts import DEFAULT_REGISTRIES, IDENTITY_REGISTRY_ABI, REPUTATION_REGISTRY_ABI
from .endpoint_crawler import EndpointCrawler
from .exceptions import PreconditionError
from .feedback_manager import FeedbackManager
from .indexer import AgentIndexer
from .ipfs_client import IPFSClient
from .models import Address, AgentId, AgentSummary, ChainId, Feedback, ReputationSummary, SearchParams
from .router import MultiSourceRouter, RouterConfig
from .subgraph_client import SubgraphClient
from .web3_client import Web3Client

logger = logging.getLogger(__name__)


class SDK:
    """Main SDK class for agent discovery and reputation."""

    def __init__(
        self,
        chainId: ChainId,
        rpcUrl: str,
        signer: Optional[Any] = None,  # Optional for read-only operations
        registryOverrides: Optional[Dict[ChainId, Dict[str, Address]]] = None,
        # IPFS configuration
        ipfs: Optional[str] = None,  # "node" or "pinata"
        ipfsNodeUrl: Optional[str] = None,
        pinataJwt: Optional[str] = None,
        # Subgraph configuration
        subgraphOverrides: Optional[Dict[ChainId, str]] = None,  # Override subgraph URLs per chain
        crawlerTimeoutMs: int = TIMEOUTS["endpointCrawlerMs"],
        feedbackScanBlocks: int = DEFAULTS["feedbackScanBlocks"],
        multiChainTimeout: float = TIMEOUTS["multiChain"],
        fromBlock: int = 0,  # First block scanned for registry events, usually the deployment block
    ):
        """Initialize the SDK."""
        self.chainId = int(chainId)
        self.rpcUrl = rpcUrl
        self.signer = signer

        # Web3 client, with or without a signer
        if isinstance(signer, str):
            self.web3_client = Web3Client(rpcUrl, self.chainId, private_key=signer)
        else:
            self.web3_client = Web3Client(rpcUrl, self.chainId, account=signer)

        self.registry_overrides = registryOverrides or {}
        self._registries = self._resolve_registries()
        self._identity_registry = None
        self._reputation_registry = None

        self._subgraph_urls = dict(subgraphOverrides or {})
        self.fromBlock = int(fromBlock)
        self.router = MultiSourceRouter(RouterConfig(
            default_chain_id=self.chainId,
            backends=self._build_backends(),
            timeout=multiChainTimeout,
        ))

        self.ipfs_client = self._initialize_ipfs_client(ipfs, ipfsNodeUrl, pinataJwt)
        self.indexer = AgentIndexer(self.router, self.ipfs_client)
        self.crawler = EndpointCrawler(timeout_ms=crawlerTimeoutMs)
        self.feedback_manager = FeedbackManager(
            web3_client=self.web3_client,
            reputation_registry=self._optional_registry("REPUTATION"),
            identity_registry=self._optional_registry("IDENTITY"),
            ipfs_client=self.ipfs_client,
            router=self.router,
            indexer=self.indexer,
            feedback_scan_blocks=feedbackScanBlocks,
        )

    @classmethod
    def from_config(cls, config: SDKConfig) -> "SDK":
        """Build an SDK from an SDKConfig snapshot."""
        return cls(
            chainId=config.chainId,
            rpcUrl=config.rpcUrl,
            signer=config.signer,
            registryOverrides={k: dict(v) for k, v in config.registryOverrides.items()},
            ipfs=config.ipfs,
            ipfsNodeUrl=config.ipfsNodeUrl,
            pinataJwt=config.pinataJwt,
            subgraphOverrides=dict(config.subgraphOverrides),
            crawlerTimeoutMs=config.crawlerTimeoutMs,
            feedbackScanBlocks=config.feedbackScanBlocks,
            multiChainTimeout=config.multiChainTimeout,
            fromBlock=config.fromBlock,
        )

    async def __aenter__(self) -> "SDK":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def _resolve_registries(self) -> Dict[str, Address]:
        """Resolve registry addresses for current chain."""
        registries = DEFAULT_REGISTRIES.get(self.chainId, {}).copy()
        if self.chainId in self.registry_overrides:
            registries.update(self.registry_overrides[self.chainId])
        return registries

    def _build_backends(self) -> Dict[int, Backend]:
        """One subgraph backend per chain with a subgraph; the chain itself for the local chain otherwise."""
        backends: Dict[int, Backend] = {}
        for chain_id in configured_subgraph_chains(self._subgraph_urls):
            url = resolve_subgraph_url(chain_id, self._subgraph_urls)
            if url:
                backends[chain_id] = SubgraphBackend(chain_id, SubgraphClient(url))
        if self.chainId in backends:
            return backends
        if not self._registries.get("REPUTATION"):
            logger.warning(f"Chain {self.chainId} has neither a subgraph nor a reputation registry")
            return backends
        logger.info(f"No subgraph for chain {self.chainId}, reading the registries directly")
        backends[self.chainId] = ChainBackend(
            self.chainId,
            self.web3_client,
            self.reputation_registry,
            self._optional_registry("IDENTITY"),
            from_block=self.fromBlock,
        )
        return backends

    def _optional_registry(self, kind: str):
        if not self._registries.get(kind):
            return None
        return self.identity_registry if kind == "IDENTITY" else self.reputation_registry

    def _initialize_ipfs_client(
        self,
        ipfs: Optional[str],
        ipfsNodeUrl: Optional[str],
        pinataJwt: Optional[str]
    ) -> Optional[IPFSClient]:
        """Initialize IPFS client based on configuration."""
        if not ipfs:
            return None

        if ipfs == "node":
            if not ipfsNodeUrl:
                raise PreconditionError("ipfsNodeUrl is required when ipfs='node'")
            return IPFSClient(url=ipfsNodeUrl)

        if ipfs == "pinata":
            if not pinataJwt:
                raise PreconditionError("pinataJwt is required when ipfs='pinata'")
            return IPFSClient(pinata_enabled=True, pinata_jwt=pinataJwt)

        raise PreconditionError(f"Invalid ipfs value: {ipfs}. Must be 'node' or 'pinata'")

    @property
    def isReadOnly(self) -> bool:
        """Check if SDK is in read-only mode (no signer)."""
        return self.signer is None

    @property
    def identity_registry(self):
        """Get identity registry contract."""
        if self._identity_registry is None:
            address = self._registries.get("IDENTITY")
            if not address:
                raise PreconditionError(f"No identity registry address for chain {self.chainId}")
            self._identity_registry = self.web3_client.get_contract(address, IDENTITY_REGISTRY_ABI)
        return self._identity_registry

    @property
    def reputation_registry(self):
        """Get reputation registry contract."""
        if self._reputation_registry is None:
            address = self._registries.get("REPUTATION")
            if not address:
                raise PreconditionError(f"No reputation registry address for chain {self.chainId}")
            self._reputation_registry = self.web3_client.get_contract(address, REPUTATION_REGISTRY_ABI)
        return self._reputation_registry

    def registries(self) -> Dict[str, Address]:
        """Get resolved addresses for current chain."""
        return self._registries.copy()

    async def registerBackend(self, backend: Backend) -> None:
        """Add a data source for a chain that has none yet."""
        await self.router.register_backend(backend)

    # Discovery

    async def getAgent(self, agentId: AgentId) -> AgentSummary:
        """Get agent summary."""
        return await self.indexer.get_agent(agentId)

    async def searchAgents(
        self,
        params: Union[SearchParams, Dict[str, Any], None] = None,
        sort: Union[str, List[str], None] = None,
        page_size: int = 50,
        cursor: Optional[str] = None,
        **kwargs
    ) -> Dict[str, Any]:
        """Search for agents.

        Examples:
            await sdk.searchAgents(name="Test")
            await sdk.searchAgents(mcpTools=["code_generation"], active=True)
            await sdk.searchAgents(SearchParams(chains=[1, 8453], feedback={"minAverageScore": 80}))
        """
        if kwargs and params is None:
            params = SearchParams(**kwargs)
        elif params is None:
            params = SearchParams()
        elif isinstance(params, dict):
            params = SearchParams(**params)

        if sort is None:
            sort = ["createdAt:desc"]
        elif isinstance(sort, str):
            sort = [sort]

        return await self.indexer.search_agents(params, sort, page_size, cursor)

    async def searchAgentsByReputation(
        self,
        agents: Optional[List[AgentId]] = None,
        tags: Optional[List[str]] = None,
        reviewers: Optional[List[Address]] = None,
        capabilities: Optional[List[str]] = None,
        skills: Optional[List[str]] = None,
        tasks: Optional[List[str]] = None,
        names: Optional[List[str]] = None,
        minAverageScore: Optional[float] = None,  # 0-100
        includeRevoked: bool = False,
        page_size: int = 50,
        cursor: Optional[str] = None,
        chains: Optional[Union[List[ChainId], str]] = None,
    ) -> Dict[str, Any]:
        """Search agents ranked by reputation."""
        return await self.indexer.search_agents_by_reputation(
            agents=agents,
            tags=tags,
            reviewers=reviewers,
            capabilities=capabilities,
            skills=skills,
            tasks=tasks,
            names=names,
            minAverageScore=minAverageScore,
            includeRevoked=includeRevoked,
            page_size=page_size,
            cursor=cursor,
            chains=chains,
        )

    async def fetchCapabilities(self, agentId: AgentId) -> Dict[str, List[str]]:
        """Probe an agent's advertised MCP and A2A endpoints.

        Returns the discovered lists keyed like AgentSummary fields
        (mcpTools, mcpPrompts, mcpResources, a2aSkills). Unreachable
        endpoints contribute nothing.
        """
        agent = await self.getAgent(agentId)
        mcp_endpoint = agent.extras.get("mcpEndpoint")
        a2a_endpoint = agent.extras.get("a2aEndpoint")
        if not mcp_endpoint and not a2a_endpoint:
            logger.info(f"Agent {agent.agentId} advertises no MCP or A2A endpoint")
            return {}
        return await self.crawler.fetch_all(mcp_endpoint, a2a_endpoint)

    # Feedback

    def prepareFeedback(
        self,
        agentId: AgentId,
        score: Optional[int] = None,  # 0-100
        tags: Optional[List[str]] = None,
        text: Optional[str] = None,
        endpoint: Optional[str] = None,
        capability: Optional[str] = None,
        name: Optional[str] = None,
        skill: Optional[str] = None,
        task: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        proofOfPayment: Optional[Dict[str, Any]] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Prepare feedback file (local file/object)."""
        return self.feedback_manager.prepareFeedback(
            agentId=agentId,
            score=score,
            tags=tags,
            text=text,
            endpoint=endpoint,
            capability=capability,
            name=name,
            skill=skill,
            task=task,
            context=context,
            proofOfPayment=proofOfPayment,
            extra=extra,
        )

    async def giveFeedback(self, agentId: AgentId, feedbackFile: Dict[str, Any]) -> Feedback:
        """Give feedback."""
        return await self.feedback_manager.giveFeedback(agentId, feedbackFile)

    async def getFeedback(self, feedbackId: str) -> Feedback:
        """Get single feedback by ID string "agentId:clientAddress:feedbackIndex"."""
        agentId, clientAddress, feedbackIndex = Feedback.from_id_string(feedbackId)
        return await self.feedback_manager.getFeedback(agentId, clientAddress, feedbackIndex)

    async def searchFeedback(
        self,
        agentId: Optional[AgentId] = None,
        reviewers: Optional[List[Address]] = None,
        tags: Optional[List[str]] = None,
        capabilities: Optional[List[str]] = None,
        skills: Optional[List[str]] = None,
        tasks: Optional[List[str]] = None,
        names: Optional[List[str]] = None,
        minScore: Optional[int] = None,
        maxScore: Optional[int] = None,
        include_revoked: bool = False,
        first: int = 100,
        skip: int = 0,
    ) -> List[Feedback]:
        """Search feedback."""
        return await self.feedback_manager.searchFeedback(
            agentId=agentId,
            clientAddresses=reviewers,
            tags=tags,
            capabilities=capabilities,
            skills=skills,
            tasks=tasks,
            names=names,
            minScore=minScore,
            maxScore=maxScore,
            include_revoked=include_revoked,
            first=first,
            skip=skip,
        )

    async def revokeFeedback(self, feedbackId: str) -> Dict[str, Any]:
        """Revoke feedback."""
        agentId, _, feedbackIndex = Feedback.from_id_string(feedbackId)
        return await self.feedback_manager.revokeFeedback(agentId, feedbackIndex)

    async def appendResponse(self, feedbackId: str, response: Dict[str, Any]) -> Dict[str, Any]:
        """Append a response/follow-up to existing feedback."""
        agentId, clientAddress, feedbackIndex = Feedback.from_id_string(feedbackId)
        return await self.feedback_manager.appendResponse(agentId, clientAddress, feedbackIndex, response)

    async def getReputationSummary(
        self,
        agentId: AgentId,
        clientAddresses: Optional[List[Address]] = None,
        tag1: Optional[str] = None,
        tag2: Optional[str] = None,
        groupBy: Optional[List[str]] = None,
    ) -> ReputationSummary:
        """Get reputation summary for an agent."""
        return await self.feedback_manager.getReputationSummary(agentId, clientAddresses, tag1, tag2, groupBy)

    async def close(self) -> None:
        """Release network resources."""
        await self.web3_client.close()
