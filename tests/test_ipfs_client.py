"""
Tests for the IPFS client: uploads and gateway racing.
"""

import asyncio
import json

import pytest
from unittest.mock import AsyncMock, patch

from agent_discovery.core.exceptions import PreconditionError
from agent_discovery.core.ipfs_client import IPFSClient, strip_ipfs_prefix


class TestPrefixes:

    @pytest.mark.parametrize("uri,expected", [
        ("ipfs://bafy123", "bafy123"),
        ("https://ipfs.io/ipfs/bafy123/file.json", "bafy123/file.json"),
        ("bafy123", "bafy123"),
    ])
    def test_strip(self, uri, expected):
        assert strip_ipfs_prefix(uri) == expected


class TestUploads:

    def test_pinata_requires_jwt(self):
        with pytest.raises(PreconditionError):
            IPFSClient(pinata_enabled=True)

    def test_read_only_client(self):
        assert not IPFSClient().can_write
        assert IPFSClient(url="http://localhost:5001/").can_write

    @pytest.mark.asyncio
    async def test_no_provider(self):
        with pytest.raises(PreconditionError):
            await IPFSClient().add("{}")

    @pytest.mark.asyncio
    async def test_node_upload(self):
        client = IPFSClient(url="http://localhost:5001/")
        with patch.object(client, "_request", AsyncMock(return_value=json.dumps({"Hash": "bafynode"}))) as request:
            cid = await client.addFeedbackFile({"score": 90})

        assert cid == "bafynode"
        assert request.await_args.args[:2] == ("POST", "http://localhost:5001/api/v0/add")

    @pytest.mark.asyncio
    async def test_pinata_upload(self):
        client = IPFSClient(pinata_enabled=True, pinata_jwt="jwt")
        body = json.dumps({"data": {"cid": "bafypinata"}})
        with patch.object(client, "_request", AsyncMock(return_value=body)) as request:
            cid = await client.add_json({"score": 90})

        assert cid == "bafypinata"
        assert request.await_args.kwargs["headers"] == {"Authorization": "Bearer jwt"}

    @pytest.mark.asyncio
    async def test_pinata_without_cid(self):
        client = IPFSClient(pinata_enabled=True, pinata_jwt="jwt")
        with patch.object(client, "_request", AsyncMock(return_value="{}")):
            with pytest.raises(RuntimeError, match="No CID"):
                await client.add("{}")


class TestGatewayRace:

    @pytest.mark.asyncio
    async def test_first_success_wins(self):
        client = IPFSClient(gateways=["https://slow/ipfs/", "https://broken/ipfs/", "https://fast/ipfs/"])

        async def fetch(gateway, cid):
            if "broken" in gateway:
                raise RuntimeError("502")
            if "slow" in gateway:
                await asyncio.sleep(5)
            return json.dumps({"from": gateway, "cid": cid})

        with patch.object(client, "_get_from_gateway", side_effect=fetch):
            document = await client.getFeedbackFile("ipfs://bafydoc")

        assert document == {"from": "https://fast/ipfs/", "cid": "bafydoc"}

    @pytest.mark.asyncio
    async def test_all_gateways_fail(self):
        client = IPFSClient(gateways=["https://a/ipfs/", "https://b/ipfs/"])

        with patch.object(client, "_get_from_gateway", AsyncMock(side_effect=RuntimeError("down"))):
            with pytest.raises(RuntimeError, match="all IPFS gateways"):
                await client.get("bafydoc")
