"""
Tests for FeedbackManager: reputation aggregation, reconciliation and writes.
"""

import pytest
from unittest.mock import AsyncMock, Mock

from agent_discovery.core.backends import SubgraphBackend
from agent_discovery.core.exceptions import (
    AuthoritativeOperationError,
    ChainMismatchError,
    PreconditionError,
    SubgraphQueryError,
)
from agent_discovery.core.feedback_manager import FeedbackManager
from agent_discovery.core.models import Feedback
from agent_discovery.core.router import MultiSourceRouter, RouterConfig

CHAIN = 11155111
SIGNER = "0x1111111111111111111111111111111111111111"
CLIENT_A = "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa"
CLIENT_B = "0xbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbbb"


def record(score, tags=(), revoked=False, index=1):
    return Feedback(
        id=(f"{CHAIN}:5", CLIENT_A, index),
        agentId=f"{CHAIN}:5",
        reviewer=CLIENT_A,
        score=score,
        tags=list(tags),
        isRevoked=revoked,
    )


def feedback_row(client, index, score, tag1=None, tag2=None, revoked=False, **extra):
    row = {
        "id": f"{CHAIN}:5:{client}:{index}",
        "agent": {"id": f"{CHAIN}:5"},
        "clientAddress": client,
        "score": score,
        "tag1": tag1,
        "tag2": tag2,
        "isRevoked": revoked,
        "createdAt": 1700000000,
    }
    row.update(extra)
    return row


@pytest.fixture
def web3_client():
    client = Mock()
    client.chain_id = CHAIN
    client.address = SIGNER
    client.require_account.return_value = Mock(address=SIGNER)
    client.checksum.side_effect = lambda address: address
    client.keccak256.return_value = b"\x01" * 32
    client.call_contract = AsyncMock()
    handle = Mock(tx_hash="0xfeed")
    handle.wait = AsyncMock(return_value={"status": 1})
    client.transact_contract = AsyncMock(return_value=handle)
    client.get_block_number = AsyncMock(return_value=20000)
    client.get_events = AsyncMock(return_value=[])
    return client


def indexed_router(chain_id, query_feedbacks):
    subgraph = Mock()
    subgraph.query_feedbacks = query_feedbacks
    backend = SubgraphBackend(chain_id, subgraph)
    return MultiSourceRouter(RouterConfig(default_chain_id=CHAIN, backends={chain_id: backend}))


def registry_answers(**answers):
    async def call(contract, method, *args):
        value = answers[method]
        if isinstance(value, Exception):
            raise value
        return value
    return call


class TestComputeReputation:

    def test_mean_of_scores(self):
        assert FeedbackManager.compute_reputation([record(80), record(90), record(100)]) == {
            "count": 3, "averageScore": 90,
        }

    def test_zero_scores_count_but_do_not_average(self):
        assert FeedbackManager.compute_reputation([record(0), record(80)]) == {"count": 2, "averageScore": 80}

    def test_empty(self):
        assert FeedbackManager.compute_reputation([]) == {"count": 0, "averageScore": 0}

    def test_revoked_records_are_skipped(self):
        result = FeedbackManager.compute_reputation([record(10, revoked=True), record(70)])

        assert result == {"count": 1, "averageScore": 70}

    def test_tag_pair_matching_is_symmetric(self):
        records = [record(60, ["a", "b"]), record(80, ["b", "a"]), record(100, ["a"])]

        forward = FeedbackManager.compute_reputation(records, "a", "b")
        backward = FeedbackManager.compute_reputation(records, "b", "a")

        assert forward == backward == {"count": 2, "averageScore": 70}
        assert FeedbackManager.compute_reputation(records, "a")["count"] == 3

    def test_rounds_to_two_decimals(self):
        assert FeedbackManager.compute_reputation([record(1), record(2), record(2)])["averageScore"] == 1.67

    def test_accepts_indexed_rows(self):
        rows = [feedback_row(CLIENT_A, 1, 50, tag1="0x" + b"fast".hex().ljust(64, "0")), feedback_row(CLIENT_B, 1, 70)]

        assert FeedbackManager.compute_reputation(rows, "fast") == {"count": 1, "averageScore": 50}


class TestReputationSummary:

    @pytest.mark.asyncio
    async def test_remote_chain_without_index_fails_before_any_call(self, web3_client):
        manager = FeedbackManager(web3_client, reputation_registry=Mock())

        with pytest.raises(ChainMismatchError) as exc_info:
            await manager.getReputationSummary("84532:5")

        assert exc_info.value.target_chain_id == 84532
        assert exc_info.value.configured_chain_id == CHAIN
        web3_client.call_contract.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_indexed_summary(self, web3_client):
        rows = [
            feedback_row(CLIENT_A, 1, 80, tag1="fast"),
            feedback_row(CLIENT_B, 1, 100, tag2="fast"),
            feedback_row(CLIENT_B, 2, 10, tag1="slow"),
        ]
        router = indexed_router(CHAIN, AsyncMock(return_value=rows))
        manager = FeedbackManager(web3_client, reputation_registry=Mock(), router=router)

        summary = await manager.getReputationSummary("5", tag1="fast")

        assert summary.agentId == f"{CHAIN}:5"
        assert (summary.count, summary.averageScore) == (2, 90)
        web3_client.call_contract.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_registry_fallback_when_index_fails(self, web3_client):
        router = indexed_router(CHAIN, AsyncMock(side_effect=SubgraphQueryError("indexer down")))
        web3_client.call_contract.side_effect = registry_answers(
            getClients=[CLIENT_A, CLIENT_B],
            readAllFeedback=([CLIENT_A, CLIENT_B], [1, 1], [80, 100], ["", ""], ["", ""], [False, False]),
        )
        manager = FeedbackManager(web3_client, reputation_registry=Mock(), router=router)

        summary = await manager.getReputationSummary(f"{CHAIN}:5")

        assert (summary.count, summary.averageScore) == (2, 90)
        method_names = [c.args[1] for c in web3_client.call_contract.await_args_list]
        assert method_names == ["getClients", "readAllFeedback"]

    @pytest.mark.asyncio
    async def test_remote_index_failure_is_chain_mismatch(self, web3_client):
        router = indexed_router(84532, AsyncMock(side_effect=SubgraphQueryError("indexer down")))
        manager = FeedbackManager(web3_client, reputation_registry=Mock(), router=router)

        with pytest.raises(ChainMismatchError, match="only available on chain"):
            await manager.getReputationSummary("84532:5")

        web3_client.call_contract.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_registry_read_failure(self, web3_client):
        web3_client.call_contract.side_effect = RuntimeError("rpc down")
        manager = FeedbackManager(web3_client, reputation_registry=Mock())

        with pytest.raises(AuthoritativeOperationError, match="rpc down"):
            await manager.getReputationSummary("5")

    @pytest.mark.asyncio
    async def test_grouping(self, web3_client):
        rows = [
            feedback_row(CLIENT_A, 1, 80, endpoint="https://a.example.com/mcp"),
            feedback_row(CLIENT_B, 1, 60, endpoint="https://a.example.com/mcp"),
            feedback_row(CLIENT_B, 2, 90),
            feedback_row(CLIENT_B, 3, 5, revoked=True),
        ]
        router = indexed_router(CHAIN, AsyncMock(return_value=rows))
        manager = FeedbackManager(web3_client, reputation_registry=Mock(), router=router)

        summary = await manager.getReputationSummary("5", groupBy=["endpoint"])

        assert summary.groupedData == {
            "endpoint:https://a.example.com/mcp": {"count": 2, "averageScore": 70, "scores": [80, 60]},
            "endpoint:none": {"count": 1, "averageScore": 90, "scores": [90]},
        }
        assert summary.to_dict()["count"] == 3


class TestGetFeedback:

    @pytest.mark.asyncio
    async def test_indexed_row(self, web3_client):
        row = feedback_row(
            CLIENT_A, 3, 75, tag1="fast",
            endpoint="https://a.example.com/mcp",
            feedbackURI="ipfs://bafyfeedback",
            feedbackFile={"text": "solid", "skill": "python", "context": '{"session": 1}'},
            responses=[{"responder": CLIENT_B, "responseUri": "ipfs://bafyresponse", "createdAt": "1700000100"}],
        )
        query_feedbacks = AsyncMock(return_value=[row])
        manager = FeedbackManager(web3_client, reputation_registry=Mock(), router=indexed_router(CHAIN, query_feedbacks))

        feedback = await manager.getFeedback("5", CLIENT_A.upper().replace("0X", "0x"), 3)

        assert feedback.id == (f"{CHAIN}:5", CLIENT_A, 3)
        assert feedback.score == 75
        assert feedback.tags == ["fast"]
        assert feedback.text == "solid"
        assert feedback.context == {"session": 1}
        assert feedback.fileURI == "ipfs://bafyfeedback"
        assert feedback.answers[0]["createdAt"] == 1700000100
        assert query_feedbacks.await_args.args[0] == {"id": f"{CHAIN}:5:{CLIENT_A}:3"}

    @pytest.mark.asyncio
    async def test_registry_read_with_event_window(self, web3_client):
        web3_client.call_contract.side_effect = registry_answers(readFeedback=(85, "fast", "", False))
        web3_client.get_events.return_value = [
            {"args": {"feedbackIndex": 1, "endpoint": "https://other", "feedbackURI": "", "feedbackHash": b"\x00" * 32}},
            {"args": {"feedbackIndex": 2, "endpoint": "https://a.example.com/a2a", "feedbackURI": "",
                      "feedbackHash": b"\x00" * 32}},
        ]
        manager = FeedbackManager(web3_client, reputation_registry=Mock(), feedback_scan_blocks=10000)

        feedback = await manager.getFeedback("5", CLIENT_A, 2)

        assert feedback.score == 85
        assert feedback.tags == ["fast"]
        assert feedback.endpoint == "https://a.example.com/a2a"
        assert feedback.fileHash is None
        assert web3_client.get_events.await_args.args[2:] == (10000, 20000)

    @pytest.mark.asyncio
    async def test_registry_read_on_other_chain(self, web3_client):
        manager = FeedbackManager(web3_client, reputation_registry=Mock())

        with pytest.raises(ChainMismatchError):
            await manager.getFeedback("84532:5", CLIENT_A, 1)

    @pytest.mark.asyncio
    async def test_search_requires_router(self, web3_client):
        manager = FeedbackManager(web3_client, reputation_registry=Mock())

        with pytest.raises(PreconditionError):
            await manager.searchFeedback(agentId="5")


class TestGiveFeedback:

    @pytest.mark.asyncio
    async def test_submits_with_next_index(self, web3_client):
        web3_client.call_contract.return_value = 4
        manager = FeedbackManager(web3_client, reputation_registry=Mock())

        feedback_file = manager.prepareFeedback("5", score=90, tags=["fast", "cheap"], endpoint="https://a.example.com/mcp")
        feedback = await manager.giveFeedback("5", feedback_file)

        assert feedback.id == (f"{CHAIN}:5", SIGNER, 5)
        assert feedback.tags == ["fast", "cheap"]
        assert feedback.fileURI is None
        args = web3_client.transact_contract.await_args.args
        assert args[1:] == ("giveFeedback", 5, 90, "fast", "cheap", "https://a.example.com/mcp", "", b"\x00" * 32)

    @pytest.mark.asyncio
    async def test_rich_data_is_stored_off_chain(self, web3_client):
        web3_client.call_contract.return_value = 0
        ipfs = Mock(can_write=True)
        ipfs.addFeedbackFile = AsyncMock(return_value="bafyfeedback")
        manager = FeedbackManager(web3_client, reputation_registry=Mock(), ipfs_client=ipfs)

        feedback = await manager.giveFeedback("5", {"score": 70, "text": "quick and correct"})

        assert feedback.fileURI == "ipfs://bafyfeedback"
        assert feedback.fileHash == "0x" + "01" * 32
        args = web3_client.transact_contract.await_args.args
        assert args[-2:] == ("ipfs://bafyfeedback", b"\x01" * 32)

    @pytest.mark.asyncio
    async def test_rich_data_without_storage(self, web3_client):
        manager = FeedbackManager(web3_client, reputation_registry=Mock(), ipfs_client=Mock(can_write=False))

        with pytest.raises(PreconditionError):
            await manager.giveFeedback("5", {"score": 70, "text": "hello"})

        web3_client.transact_contract.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_other_chain_is_rejected(self, web3_client):
        manager = FeedbackManager(web3_client, reputation_registry=Mock())

        with pytest.raises(ChainMismatchError):
            await manager.giveFeedback("84532:5", {"score": 70})

    @pytest.mark.asyncio
    async def test_index_read_failure(self, web3_client):
        web3_client.call_contract.side_effect = RuntimeError("rpc down")
        manager = FeedbackManager(web3_client, reputation_registry=Mock())

        with pytest.raises(AuthoritativeOperationError, match="feedback index"):
            await manager.giveFeedback("5", {"score": 70})

    @pytest.mark.asyncio
    async def test_reverted_transaction(self, web3_client):
        web3_client.call_contract.return_value = 0
        web3_client.transact_contract.return_value.wait.side_effect = AuthoritativeOperationError("reverted")
        manager = FeedbackManager(web3_client, reputation_registry=Mock())

        with pytest.raises(AuthoritativeOperationError, match="Failed to submit feedback"):
            await manager.giveFeedback("5", {"score": 70})

    @pytest.mark.asyncio
    async def test_revoke_and_respond(self, web3_client):
        manager = FeedbackManager(web3_client, reputation_registry=Mock())

        revoked = await manager.revokeFeedback("5", 2)
        responded = await manager.appendResponse("5", CLIENT_A, 2, {"text": "thanks"})

        assert revoked["status"] == "revoked"
        assert revoked["txHash"] == "0xfeed"
        assert responded["responseUri"] is None
        assert responded["agentId"] == f"{CHAIN}:5"
