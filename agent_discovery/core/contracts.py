"""
Contract ABIs, default registry deployments and default subgraph endpoints.
"""

from typing import Any, Dict, List


def _fn(name: str, inputs: List[tuple], outputs: List[tuple], mutability: str = "view") -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t, "internalType": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t, "internalType": t} for n, t in outputs],
        "stateMutability": mutability,
    }


def _event(name: str, inputs: List[tuple]) -> Dict[str, Any]:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [
            {"name": n, "type": t, "internalType": t, "indexed": indexed}
            for n, t, indexed in inputs
        ],
    }


IDENTITY_REGISTRY_ABI: List[Dict[str, Any]] = [
    _fn("ownerOf", [("tokenId", "uint256")], [("", "address")]),
    _fn("tokenURI", [("tokenId", "uint256")], [("", "string")]),
    _fn("getMetadata", [("agentId", "uint256"), ("key", "string")], [("", "bytes")]),
    _fn("getAgentWallet", [("agentId", "uint256")], [("", "address")]),
    _event("Registered", [
        ("agentId", "uint256", True),
        ("agentURI", "string", False),
        ("owner", "address", True),
    ]),
    _event("Transfer", [
        ("from", "address", True),
        ("to", "address", True),
        ("tokenId", "uint256", True),
    ]),
]

REPUTATION_REGISTRY_ABI: List[Dict[str, Any]] = [
    _fn("getIdentityRegistry", [], [("", "address")]),
    _fn(
        "giveFeedback",
        [
            ("agentId", "uint256"),
            ("score", "uint8"),
            ("tag1", "string"),
            ("tag2", "string"),
            ("endpoint", "string"),
            ("feedbackURI", "string"),
            ("feedbackHash", "bytes32"),
        ],
        [],
        "nonpayable",
    ),
    _fn("revokeFeedback", [("agentId", "uint256"), ("feedbackIndex", "uint64")], [], "nonpayable"),
    _fn(
        "appendResponse",
        [
            ("agentId", "uint256"),
            ("clientAddress", "address"),
            ("feedbackIndex", "uint64"),
            ("responseURI", "string"),
            ("responseHash", "bytes32"),
        ],
        [],
        "nonpayable",
    ),
    _fn("getLastIndex", [("agentId", "uint256"), ("clientAddress", "address")], [("", "uint64")]),
    _fn(
        "readFeedback",
        [("agentId", "uint256"), ("clientAddress", "address"), ("feedbackIndex", "uint64")],
        [("score", "uint8"), ("tag1", "string"), ("tag2", "string"), ("isRevoked", "bool")],
    ),
    _fn(
        "getSummary",
        [
            ("agentId", "uint256"),
            ("clientAddresses", "address[]"),
            ("tag1", "string"),
            ("tag2", "string"),
        ],
        [("count", "uint64"), ("averageScore", "uint8")],
    ),
    _fn(
        "readAllFeedback",
        [
            ("agentId", "uint256"),
            ("clientAddresses", "address[]"),
            ("tag1", "string"),
            ("tag2", "string"),
            ("includeRevoked", "bool"),
        ],
        [
            ("clients", "address[]"),
            ("feedbackIndexes", "uint64[]"),
            ("scores", "uint8[]"),
            ("tag1s", "string[]"),
            ("tag2s", "string[]"),
            ("revokedStatuses", "bool[]"),
        ],
    ),
    _fn("getClients", [("agentId", "uint256")], [("", "address[]")]),
    _event("NewFeedback", [
        ("agentId", "uint256", True),
        ("clientAddress", "address", True),
        ("feedbackIndex", "uint64", False),
        ("score", "uint8", False),
        ("tag1", "string", False),
        ("tag2", "string", False),
        ("endpoint", "string", False),
        ("feedbackURI", "string", False),
        ("feedbackHash", "bytes32", False),
    ]),
    _event("FeedbackRevoked", [
        ("agentId", "uint256", True),
        ("clientAddress", "address", True),
        ("feedbackIndex", "uint64", True),
    ]),
    _event("ResponseAppended", [
        ("agentId", "uint256", True),
        ("clientAddress", "address", True),
        ("feedbackIndex", "uint64", False),
        ("responder", "address", True),
        ("responseURI", "string", False),
        ("responseHash", "bytes32", False),
    ]),
]

# Registry deployments per chain
DEFAULT_REGISTRIES: Dict[int, Dict[str, str]] = {
    1: {  # Ethereum Mainnet
        "IDENTITY": "0x8004A169FB4a3325136EB29fA0ceB6D2e539a432",
        "REPUTATION": "0x8004BAa17C55a88189AE136b182e5fdA19dE9b63",
    },
    8453: {  # Base Mainnet
        "IDENTITY": "0x8004A169FB4a3325136EB29fA0ceB6D2e539a432",
        "REPUTATION": "0x8004BAa17C55a88189AE136b182e5fdA19dE9b63",
    },
    137: {  # Polygon Mainnet
        "IDENTITY": "0x8004A169FB4a3325136EB29fA0ceB6D2e539a432",
        "REPUTATION": "0x8004BAa17C55a88189AE136b182e5fdA19dE9b63",
    },
    42161: {  # Arbitrum One
        "IDENTITY": "0x8004A169FB4a3325136EB29fA0ceB6D2e539a432",
        "REPUTATION": "0x8004BAa17C55a88189AE136b182e5fdA19dE9b63",
    },
    11155111: {  # Ethereum Sepolia
        "IDENTITY": "0x8004A818BFB912233c491871b3d84c89A494BD9e",
        "REPUTATION": "0x8004B663056A597Dffe9eCcC1965A193B7388713",
    },
    84532: {  # Base Sepolia
        "IDENTITY": "0x8004A818BFB912233c491871b3d84c89A494BD9e",
        "REPUTATION": "0x8004B663056A597Dffe9eCcC1965A193B7388713",
    },
}

DEFAULT_SUBGRAPH_URLS: Dict[int, str] = {
    1: "https://gateway.thegraph.com/api/7fd2e7d89ce3ef24cd0d4590298f0b2c/subgraphs/id/FV6RR6y13rsnCxBAicKuQEwDp8ioEGiNaWaZUmvr1F8k",
    8453: "https://gateway.thegraph.com/api/536c6d8572876cabea4a4ad0fa49aa57/subgraphs/id/43s9hQRurMGjuYnC1r2ZwS6xSQktbFyXMPMqGKUFJojb",
    11155111: "https://gateway.thegraph.com/api/00a452ad3cd1900273ea62c1bf283f93/subgraphs/id/6wQRC7geo9XYAhckfmfo8kbMRLeWU8KQd3XsJqFKmZLT",
    84532: "https://gateway.thegraph.com/api/536c6d8572876cabea4a4ad0fa49aa57/subgraphs/id/4yYAvQLFjBhBtdRCY7eUWo181VNoTSLLFd5M7FXQAi6u",
    137: "https://gateway.thegraph.com/api/782d61ed390e625b8867995389699b4c/subgraphs/id/9q16PZv1JudvtnCAf44cBoxg82yK9SSsFvrjCY9xnneF",
}
