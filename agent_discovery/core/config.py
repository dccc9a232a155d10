"""
Configuration for the Agent Discovery SDK.

Configuration values are resolved once when a component is built and are not
changed afterwards.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from .contracts import DEFAULT_SUBGRAPH_URLS
from .exceptions import PreconditionError

logger = logging.getLogger(__name__)

# Timeouts. Seconds unless the key says otherwise.
TIMEOUTS = {
    "ipfsGateway": 10.0,
    "pinataUpload": 80.0,
    "transactionWait": 45.0,
    "endpointCrawlerMs": 5000,
    "subgraph": 30.0,
    "multiChain": 30.0,
}

DEFAULTS = {
    # Block window scanned for NewFeedback events when enriching a chain read
    "feedbackScanBlocks": 10000,
    "searchPageSize": 100,
    "maxBlockRange": 2000,
}

SUBGRAPH_ENV_PREFIX = "SUBGRAPH_URL_"


def resolve_subgraph_url(chain_id: int, overrides: Optional[Mapping[int, str]] = None) -> Optional[str]:
    """
    Get subgraph URL for a specific chain.

    Priority order:
    1. Caller-provided overrides
    2. DEFAULT_SUBGRAPH_URLS from contracts.py
    3. Environment variable SUBGRAPH_URL_<chainId>
    4. None (not configured)
    """
    if overrides and chain_id in overrides:
        return overrides[chain_id]

    if chain_id in DEFAULT_SUBGRAPH_URLS:
        return DEFAULT_SUBGRAPH_URLS[chain_id]

    env_key = f"{SUBGRAPH_ENV_PREFIX}{chain_id}"
    env_url = os.environ.get(env_key)
    if env_url:
        logger.info(f"Using subgraph URL from environment: {env_key}={env_url}")
        return env_url

    return None


def configured_subgraph_chains(overrides: Optional[Mapping[int, str]] = None) -> List[int]:
    """List every chain that has a subgraph URL from any source."""
    chains = set(DEFAULT_SUBGRAPH_URLS.keys())
    if overrides:
        chains.update(overrides.keys())

    for key, value in os.environ.items():
        if key.startswith(SUBGRAPH_ENV_PREFIX) and value:
            try:
                chains.add(int(key[len(SUBGRAPH_ENV_PREFIX):]))
            except ValueError:
                logger.debug(f"Ignoring malformed subgraph variable {key}")

    return sorted(chains)


@dataclass(frozen=True)
class SDKConfig:
    """Immutable SDK configuration."""
    chainId: int
    rpcUrl: str
    signer: Optional[Any] = field(default=None, repr=False)  # private key or eth_account account
    registryOverrides: Mapping[int, Mapping[str, str]] = field(default_factory=dict)
    subgraphOverrides: Mapping[int, str] = field(default_factory=dict)
    ipfs: Optional[str] = None  # "pinata" or "node"
    ipfsNodeUrl: Optional[str] = None
    pinataJwt: Optional[str] = field(default=None, repr=False)
    crawlerTimeoutMs: int = TIMEOUTS["endpointCrawlerMs"]
    feedbackScanBlocks: int = DEFAULTS["feedbackScanBlocks"]
    multiChainTimeout: float = TIMEOUTS["multiChain"]
    fromBlock: int = 0

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None, **overrides: Any) -> "SDKConfig":
        """
        Build a configuration from environment variables.

        Reads CHAIN_ID, RPC_URL, PRIVATE_KEY, PINATA_JWT, IPFS_NODE_URL, FROM_BLOCK and every
        SUBGRAPH_URL_<chainId>. Keyword arguments win over the environment.
        """
        env = os.environ if environ is None else environ

        values: Dict[str, Any] = {}
        if env.get("CHAIN_ID"):
            values["chainId"] = int(env["CHAIN_ID"])
        if env.get("RPC_URL"):
            values["rpcUrl"] = env["RPC_URL"]
        if env.get("PRIVATE_KEY"):
            values["signer"] = env["PRIVATE_KEY"]
        if env.get("FROM_BLOCK"):
            values["fromBlock"] = int(env["FROM_BLOCK"])
        if env.get("PINATA_JWT"):
            values["pinataJwt"] = env["PINATA_JWT"]
            values["ipfs"] = "pinata"
        elif env.get("IPFS_NODE_URL"):
            values["ipfsNodeUrl"] = env["IPFS_NODE_URL"]
            values["ipfs"] = "node"

        subgraphs = {}
        for key, value in env.items():
            if key.startswith(SUBGRAPH_ENV_PREFIX) and value:
                try:
                    subgraphs[int(key[len(SUBGRAPH_ENV_PREFIX):])] = value
                except ValueError:
                    continue
        if subgraphs:
            values["subgraphOverrides"] = subgraphs

        values.update(overrides)
        if "chainId" not in values or "rpcUrl" not in values:
            raise PreconditionError("CHAIN_ID and RPC_URL must be configured")
        return cls(**values)
