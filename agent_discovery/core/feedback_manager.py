"""
Feedback reconciliation for the Agent Discovery SDK.

Reads merge three layers of authority. The reputation registry owns score,
tags and revocation; the NewFeedback event log adds the endpoint and the
off-chain document reference; the document itself (IPFS or HTTP) adds the
rich fields. Only the first layer is required; a record carrying just the
registry fields is complete.
"""

from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from .backends import SubgraphBackend
from .config import DEFAULTS, TIMEOUTS
from .exceptions import AuthoritativeOperationError, ChainMismatchError, PreconditionError, SubgraphQueryError
from .identifiers import format_agent_id, format_feedback_id, normalize_address, parse_agent_id
from .indexer import AgentIndexer
from .ipfs_client import IPFSClient
from .models import AgentId, Address, Feedback, ReputationSummary, SearchFeedbackParams
from .reputation import compute_reputation, decode_tag, feedback_from_row, tags_match
from .router import MultiSourceRouter
from .subgraph_query import feedback_where
from .web3_client import Web3Client

logger = logging.getLogger(__name__)

RICH_FIELDS = ("text", "context", "capability", "name", "skill", "task", "proofOfPayment")
ZERO_HASH = b"\x00" * 32
SUMMARY_PAGE_SIZE = 1000
MAX_SUMMARY_ROWS = 5000


class FeedbackManager:
    """Reads, aggregates and writes feedback."""

    def __init__(
        self,
        web3_client: Web3Client,
        reputation_registry: Any,
        identity_registry: Any = None,
        ipfs_client: Optional[IPFSClient] = None,
        router: Optional[MultiSourceRouter] = None,
        indexer: Optional[AgentIndexer] = None,
        feedback_scan_blocks: int = DEFAULTS["feedbackScanBlocks"],
    ):
        self.web3_client = web3_client
        self.reputation_registry = reputation_registry
        self.identity_registry = identity_registry
        self.ipfs_client = ipfs_client
        self.router = router
        if indexer is None and router is not None:
            indexer = AgentIndexer(router, ipfs_client)
        self.indexer = indexer
        self.feedback_scan_blocks = feedback_scan_blocks

    # Helpers

    def _qualify(self, agentId: AgentId) -> Tuple[int, int, str]:
        chain_id, token_id = parse_agent_id(agentId, default_chain_id=self.web3_client.chain_id)
        return chain_id, token_id, format_agent_id(chain_id, token_id)

    def _require_local_chain(self, chain_id: int) -> None:
        if chain_id != self.web3_client.chain_id:
            raise ChainMismatchError(chain_id, self.web3_client.chain_id)
        if self.reputation_registry is None:
            raise PreconditionError(f"No reputation registry configured for chain {chain_id}")

    def _indexed_backend(self, chain_id: int) -> Optional[SubgraphBackend]:
        if self.router is None:
            return None
        backend = self.router.backend_for(chain_id)
        return backend if isinstance(backend, SubgraphBackend) else None

    async def _fetch_document(self, uri: str) -> Optional[Dict[str, Any]]:
        """Fetch an off-chain feedback document; any failure gives None."""
        try:
            if uri.startswith(("http://", "https://")) and "/ipfs/" not in uri:
                timeout = aiohttp.ClientTimeout(total=TIMEOUTS["ipfsGateway"])
                async with aiohttp.ClientSession(timeout=timeout) as session:
                    async with session.get(uri) as response:
                        response.raise_for_status()
                        return await response.json(content_type=None)
            reader = self.ipfs_client or IPFSClient()
            return await reader.getFeedbackFile(uri)
        except Exception as e:
            logger.debug(f"Could not fetch feedback document {uri}: {e}")
            return None

    # Preparing and writing

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
        """Build the off-chain feedback document."""
        tags = tags or []
        chain_id, token_id, _ = self._qualify(agentId)

        registry = self.identity_registry.address if self.identity_registry is not None else None
        client = self.web3_client.address

        feedbackData = {
            "agentRegistry": f"eip155:{chain_id}:{registry}" if registry else None,
            "agentId": token_id,
            "clientAddress": f"eip155:{chain_id}:{client}" if client else None,
            "createdAt": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "score": int(score) if score else 0,
            "tag1": tags[0] if tags else None,
            "tag2": tags[1] if len(tags) > 1 else None,
            "endpoint": endpoint,
            "text": text,
            "skill": skill,
            "context": context,
            "task": task,
            "capability": capability,
            "name": name,
            "proofOfPayment": proofOfPayment,
        }
        feedbackData = {k: v for k, v in feedbackData.items() if v is not None}

        if extra:
            feedbackData.update(extra)
        return feedbackData

    async def giveFeedback(self, agentId: AgentId, feedbackFile: Dict[str, Any]) -> Feedback:
        """
        Submit feedback for an agent on the configured chain.

        The new record's index is read as getLastIndex + 1 before submitting.
        Two concurrent submissions from the same reviewer can read the same
        value; the registry assigns the real index.
        """
        account = self.web3_client.require_account()
        chain_id, token_id, agent_id = self._qualify(agentId)
        self._require_local_chain(chain_id)

        has_rich_data = any(feedbackFile.get(key) for key in RICH_FIELDS)
        if has_rich_data and (self.ipfs_client is None or not self.ipfs_client.can_write):
            raise PreconditionError("Rich feedback data requires an IPFS client for storage")

        try:
            lastIndex = await self.web3_client.call_contract(
                self.reputation_registry, "getLastIndex", token_id, account.address
            )
        except Exception as e:
            raise AuthoritativeOperationError(f"Failed to get feedback index: {e}") from e
        feedbackIndex = int(lastIndex) + 1

        score = int(feedbackFile.get("score", 0))
        tag1 = feedbackFile.get("tag1") or ""
        tag2 = feedbackFile.get("tag2") or ""
        endpoint = feedbackFile.get("endpoint") or ""

        feedbackUri = ""
        feedbackHash = ZERO_HASH
        if has_rich_data:
            try:
                cid = await self.ipfs_client.addFeedbackFile(feedbackFile)
                feedbackUri = f"ipfs://{cid}"
                feedbackHash = self.web3_client.keccak256(json.dumps(feedbackFile, sort_keys=True).encode())
                logger.debug(f"Feedback file stored on IPFS: {cid}")
            except Exception as e:
                logger.warning(f"Failed to store feedback on IPFS: {e}")

        try:
            handle = await self.web3_client.transact_contract(
                self.reputation_registry,
                "giveFeedback",
                token_id,
                score,
                tag1,
                tag2,
                endpoint,
                feedbackUri,
                feedbackHash,
            )
            await handle.wait()
        except Exception as e:
            raise AuthoritativeOperationError(f"Failed to submit feedback to blockchain: {e}") from e

        logger.info(f"Submitted feedback {feedbackIndex} for agent {agent_id}")
        return Feedback(
            id=Feedback.create_id(agent_id, account.address, feedbackIndex),
            agentId=agent_id,
            reviewer=account.address,
            score=score,
            tags=[tag for tag in (tag1, tag2) if tag],
            endpoint=endpoint or None,
            text=feedbackFile.get("text"),
            context=feedbackFile.get("context"),
            proofOfPayment=feedbackFile.get("proofOfPayment"),
            fileURI=feedbackUri or None,
            fileHash=("0x" + feedbackHash.hex()) if feedbackUri else None,
            createdAt=int(time.time()),
            isRevoked=False,
            capability=feedbackFile.get("capability"),
            name=feedbackFile.get("name"),
            skill=feedbackFile.get("skill"),
            task=feedbackFile.get("task"),
        )

    async def revokeFeedback(self, agentId: AgentId, feedbackIndex: int) -> Dict[str, Any]:
        """Revoke one of the signer's own feedback records."""
        account = self.web3_client.require_account()
        chain_id, token_id, agent_id = self._qualify(agentId)
        self._require_local_chain(chain_id)

        try:
            handle = await self.web3_client.transact_contract(
                self.reputation_registry, "revokeFeedback", token_id, int(feedbackIndex)
            )
            await handle.wait()
        except Exception as e:
            raise AuthoritativeOperationError(f"Failed to revoke feedback: {e}") from e

        return {
            "txHash": handle.tx_hash,
            "agentId": agent_id,
            "clientAddress": normalize_address(account.address),
            "feedbackIndex": int(feedbackIndex),
            "status": "revoked",
        }

    async def appendResponse(
        self,
        agentId: AgentId,
        clientAddress: Address,
        feedbackIndex: int,
        response: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Append a response to existing feedback."""
        self.web3_client.require_account()
        chain_id, token_id, agent_id = self._qualify(agentId)
        self._require_local_chain(chain_id)

        responseUri = ""
        responseHash = ZERO_HASH
        if self.ipfs_client is not None and self.ipfs_client.can_write and (response.get("text") or response.get("attachments")):
            try:
                cid = await self.ipfs_client.add_json(response, "response.json")
                responseUri = f"ipfs://{cid}"
                responseHash = self.web3_client.keccak256(json.dumps(response, sort_keys=True).encode())
            except Exception as e:
                logger.warning(f"Failed to store response on IPFS: {e}")

        try:
            handle = await self.web3_client.transact_contract(
                self.reputation_registry,
                "appendResponse",
                token_id,
                self.web3_client.checksum(clientAddress),
                int(feedbackIndex),
                responseUri,
                responseHash,
            )
            await handle.wait()
        except Exception as e:
            raise AuthoritativeOperationError(f"Failed to append response: {e}") from e

        return {
            "txHash": handle.tx_hash,
            "agentId": agent_id,
            "clientAddress": normalize_address(clientAddress),
            "feedbackIndex": int(feedbackIndex),
            "responseUri": responseUri or None,
            "status": "responded",
        }

    # Reading

    async def getFeedback(self, agentId: AgentId, clientAddress: Address, feedbackIndex: int) -> Feedback:
        """Get one feedback record, indexed backend first, registry otherwise."""
        chain_id, token_id, agent_id = self._qualify(agentId)
        client = normalize_address(clientAddress)

        backend = self._indexed_backend(chain_id)
        if backend is not None:
            feedback_id = format_feedback_id(agent_id, client, feedbackIndex)
            try:
                rows = await backend.query_feedback({"id": feedback_id}, first=1)
                if rows:
                    return feedback_from_row(rows[0])
                logger.debug(f"Feedback {feedback_id} not indexed yet, reading registry")
            except SubgraphQueryError as e:
                logger.warning(f"Indexed feedback lookup failed, reading registry: {e}")

        self._require_local_chain(chain_id)
        return await self._get_feedback_from_blockchain(agent_id, token_id, client, int(feedbackIndex))

    async def _get_feedback_from_blockchain(
        self,
        agent_id: str,
        token_id: int,
        client: str,
        feedbackIndex: int,
    ) -> Feedback:
        try:
            score, tag1, tag2, is_revoked = await self.web3_client.call_contract(
                self.reputation_registry,
                "readFeedback",
                token_id,
                self.web3_client.checksum(client),
                feedbackIndex,
            )
        except Exception as e:
            raise AuthoritativeOperationError(f"Failed to read feedback from blockchain: {e}") from e

        feedback = Feedback(
            id=(agent_id, client, feedbackIndex),
            agentId=agent_id,
            reviewer=client,
            score=int(score),
            tags=[tag for tag in (decode_tag(tag1), decode_tag(tag2)) if tag],
            isRevoked=bool(is_revoked),
        )

        details = await self._find_feedback_event(token_id, client, feedbackIndex)
        if details:
            feedback.endpoint = details.get("endpoint") or None
            feedback.fileURI = details.get("feedbackURI") or None
            feedback.fileHash = details.get("feedbackHash")

        if feedback.fileURI and not feedback.endpoint:
            document = await self._fetch_document(feedback.fileURI)
            if document:
                self._apply_document(feedback, document)
        return feedback

    async def _find_feedback_event(self, token_id: int, client: str, feedbackIndex: int) -> Optional[Dict[str, Any]]:
        """Look for the NewFeedback event in the recent block window."""
        try:
            latest = await self.web3_client.get_block_number()
            logs = await self.web3_client.get_events(
                self.reputation_registry,
                "NewFeedback",
                max(0, latest - self.feedback_scan_blocks),
                latest,
                argument_filters={"agentId": token_id, "clientAddress": self.web3_client.checksum(client)},
            )
        except Exception as e:
            logger.debug(f"NewFeedback scan failed for {token_id}/{client}: {e}")
            return None

        for log in logs:
            args = log["args"]
            if int(args["feedbackIndex"]) != feedbackIndex:
                continue
            feedback_hash = args.get("feedbackHash")
            if isinstance(feedback_hash, (bytes, bytearray)):
                feedback_hash = "0x" + bytes(feedback_hash).hex() if any(feedback_hash) else None
            return {
                "endpoint": args.get("endpoint"),
                "feedbackURI": args.get("feedbackURI"),
                "feedbackHash": feedback_hash,
            }
        return None

    @staticmethod
    def _apply_document(feedback: Feedback, document: Dict[str, Any]) -> None:
        feedback.endpoint = document.get("endpoint") or feedback.endpoint
        for key in RICH_FIELDS:
            if document.get(key) is not None and getattr(feedback, key) is None:
                setattr(feedback, key, document[key])

    async def searchFeedback(
        self,
        agentId: Optional[AgentId] = None,
        clientAddresses: Optional[List[Address]] = None,
        tags: Optional[List[str]] = None,
        capabilities: Optional[List[str]] = None,
        skills: Optional[List[str]] = None,
        tasks: Optional[List[str]] = None,
        names: Optional[List[str]] = None,
        minScore: Optional[int] = None,
        maxScore: Optional[int] = None,
        include_revoked: bool = False,
        first: int = DEFAULTS["searchPageSize"],
        skip: int = 0,
    ) -> List[Feedback]:
        """Search feedback through the indexed backends."""
        if self.indexer is None:
            raise PreconditionError("Feedback search requires a configured router")
        params = SearchFeedbackParams(
            agents=[agentId] if agentId else None,
            tags=tags,
            reviewers=clientAddresses,
            capabilities=capabilities,
            skills=skills,
            tasks=tasks,
            names=names,
            minScore=minScore,
            maxScore=maxScore,
            includeRevoked=include_revoked,
        )
        return await self.indexer.search_feedback(params, first=first, skip=skip)

    # Reputation

    @staticmethod
    def compute_reputation(records, tag1: Optional[str] = None, tag2: Optional[str] = None) -> Dict[str, Any]:
        return compute_reputation(records, tag1, tag2)

    async def getReputationSummary(
        self,
        agentId: AgentId,
        clientAddresses: Optional[List[Address]] = None,
        tag1: Optional[str] = None,
        tag2: Optional[str] = None,
        groupBy: Optional[List[str]] = None,
    ) -> ReputationSummary:
        """
        Reputation summary for an agent with optional grouping.

        The indexed backend is asked first. The registry is the fallback, and
        it can only answer for the chain the SDK is connected to.
        """
        chain_id, token_id, agent_id = self._qualify(agentId)
        configured = self.web3_client.chain_id
        backend = self._indexed_backend(chain_id)
        if backend is None and chain_id != configured:
            raise ChainMismatchError(chain_id, configured)

        records: Optional[List[Feedback]] = None
        if backend is not None:
            try:
                records = await self._indexed_records(backend, agent_id, clientAddresses, tag1, tag2)
            except SubgraphQueryError as e:
                if chain_id != configured:
                    raise ChainMismatchError(
                        chain_id, configured,
                        f"Indexed reputation summary failed for chain {chain_id} and the registry "
                        f"fallback is only available on chain {configured}: {e}",
                    ) from e
                logger.warning(f"Indexed reputation summary failed for {agent_id}, reading registry: {e}")

        if records is None:
            records = await self._registry_records(token_id, agent_id, clientAddresses)

        aggregate = compute_reputation(records, tag1, tag2)
        summary = ReputationSummary(
            agentId=agent_id,
            count=aggregate["count"],
            averageScore=aggregate["averageScore"],
            filters={"clientAddresses": clientAddresses, "tag1": tag1, "tag2": tag2},
        )
        if groupBy:
            qualifying = [
                fb for fb in records
                if not fb.isRevoked and tags_match(tuple((list(fb.tags) + [None, None])[:2]), tag1, tag2)
            ]
            summary.groupedData = self._groupFeedback(qualifying, groupBy)
        return summary

    async def _indexed_records(
        self,
        backend: SubgraphBackend,
        agent_id: str,
        clientAddresses: Optional[List[Address]],
        tag1: Optional[str],
        tag2: Optional[str],
    ) -> List[Feedback]:
        # the tag clause is a superset; exact pair matching happens in compute_reputation
        where = feedback_where(
            agents=[agent_id],
            reviewers=clientAddresses,
            tags=[tag for tag in (tag1, tag2) if tag] or None,
        )
        rows: List[Dict[str, Any]] = []
        offset = 0
        while offset < MAX_SUMMARY_ROWS:
            page = await backend.query_feedback(where, SUMMARY_PAGE_SIZE, offset)
            rows.extend(page)
            if len(page) < SUMMARY_PAGE_SIZE:
                break
            offset += SUMMARY_PAGE_SIZE
        return [feedback_from_row(row) for row in rows]

    async def _registry_records(
        self,
        token_id: int,
        agent_id: str,
        clientAddresses: Optional[List[Address]],
    ) -> List[Feedback]:
        self._require_local_chain(self.web3_client.chain_id)
        try:
            if clientAddresses:
                clients = [self.web3_client.checksum(c) for c in clientAddresses]
            else:
                clients = await self.web3_client.call_contract(self.reputation_registry, "getClients", token_id)
            if not clients:
                return []
            result = await self.web3_client.call_contract(
                self.reputation_registry, "readAllFeedback", token_id, list(clients), "", "", False
            )
        except Exception as e:
            raise AuthoritativeOperationError(f"Failed to read reputation from blockchain: {e}") from e

        records = []
        for client, index, score, t1, t2, revoked in zip(*result):
            records.append(Feedback(
                id=(agent_id, normalize_address(client), int(index)),
                agentId=agent_id,
                reviewer=client,
                score=int(score),
                tags=[tag for tag in (decode_tag(t1), decode_tag(t2)) if tag],
                isRevoked=bool(revoked),
            ))
        return records

    def _groupFeedback(self, feedbackList: List[Feedback], groupBy: List[str]) -> Dict[str, Any]:
        """Group feedback by the requested dimensions and aggregate each group."""
        grouped: Dict[str, List[Feedback]] = {}
        for feedback in feedbackList:
            grouped.setdefault(self._createGroupKey(feedback, groupBy), []).append(feedback)

        result = {}
        for group_key, group in grouped.items():
            aggregate = compute_reputation(group)
            result[group_key] = {
                "count": aggregate["count"],
                "averageScore": aggregate["averageScore"],
                "scores": [fb.score for fb in group if fb.score is not None],
            }
        return result

    def _createGroupKey(self, feedback: Feedback, groupBy: List[str]) -> str:
        """Create a group key for feedback based on grouping dimensions."""
        key_parts = []
        for dimension in groupBy:
            if dimension == "tag":
                key_parts.append(f"tags:{','.join(feedback.tags)}" if feedback.tags else "tags:none")
            elif dimension in ("capability", "skill", "task"):
                value = getattr(feedback, dimension)
                key_parts.append(f"{dimension}:{value}" if value else f"{dimension}:none")
            elif dimension == "endpoint":
                endpoint = feedback.endpoint
                if not endpoint and feedback.context and "endpoint" in feedback.context:
                    endpoint = feedback.context["endpoint"]
                key_parts.append(f"endpoint:{endpoint}" if endpoint else "endpoint:none")
            elif dimension == "time":
                createdAt = datetime.fromtimestamp(feedback.createdAt, tz=timezone.utc)
                key_parts.append(f"time:{createdAt.strftime('%Y-%m')}")
            else:
                key_parts.append(f"{dimension}:unknown")
        return "|".join(key_parts)
