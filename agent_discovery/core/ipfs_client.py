"""
IPFS client for off-chain feedback and registration documents.

Uploads go to either:
- Pinata IPFS pinning service (JWT)
- An IPFS node HTTP API (/api/v0/add)

Reads race the public gateways concurrently; the first successful response wins.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from .config import TIMEOUTS
from .exceptions import PreconditionError

logger = logging.getLogger(__name__)

IPFS_GATEWAYS = [
    "https://gateway.pinata.cloud/ipfs/",
    "https://ipfs.io/ipfs/",
    "https://dweb.link/ipfs/",
]

PINATA_UPLOAD_URL = "https://uploads.pinata.cloud/v3/files"


def strip_ipfs_prefix(uri: str) -> str:
    """Extract the CID (and path) from ipfs://... or a gateway URL."""
    if uri.startswith("ipfs://"):
        return uri[len("ipfs://"):]
    if "/ipfs/" in uri:
        return uri.split("/ipfs/", 1)[1]
    return uri


class IPFSClient:
    """Client for IPFS operations (Pinata or an IPFS node for writes, gateways for reads)."""

    def __init__(
        self,
        url: Optional[str] = None,
        pinata_enabled: bool = False,
        pinata_jwt: Optional[str] = None,
        gateways: Optional[List[str]] = None,
        timeout: float = TIMEOUTS["ipfsGateway"],
        session: Optional[aiohttp.ClientSession] = None,
    ):
        """Initialize IPFS client.

        Args:
            url: IPFS node API URL (e.g., "http://localhost:5001")
            pinata_enabled: Enable Pinata integration
            pinata_jwt: JWT token for Pinata authentication
            gateways: Gateway base URLs for reads (default: IPFS_GATEWAYS)
            timeout: Per-gateway timeout in seconds
        """
        self.url = url.rstrip("/") if url else None
        self.pinata_enabled = pinata_enabled
        self.pinata_jwt = pinata_jwt
        self.gateways = list(gateways or IPFS_GATEWAYS)
        self.timeout = timeout
        self._session = session

        if pinata_enabled and not pinata_jwt:
            raise PreconditionError("pinata_jwt is required when pinata_enabled=True")

    @property
    def can_write(self) -> bool:
        return self.pinata_enabled or self.url is not None

    async def _request(self, method: str, url: str, timeout: float, **kwargs) -> str:
        client_timeout = aiohttp.ClientTimeout(total=timeout)
        if self._session is not None:
            return await self._send(self._session, method, url, client_timeout, **kwargs)
        async with aiohttp.ClientSession() as session:
            return await self._send(session, method, url, client_timeout, **kwargs)

    @staticmethod
    async def _send(session, method, url, timeout, **kwargs) -> str:
        async with session.request(method, url, timeout=timeout, **kwargs) as response:
            response.raise_for_status()
            return await response.text()

    async def _pin_to_pinata(self, data: str, filename: str) -> str:
        """Pin data to Pinata using JWT authentication with the v3 API."""
        form = aiohttp.FormData()
        form.add_field("file", data.encode("utf-8"), filename=filename, content_type="application/json")
        form.add_field("network", "public")

        try:
            logger.debug("Pinning to Pinata v3 (public)")
            text = await self._request(
                "POST",
                PINATA_UPLOAD_URL,
                TIMEOUTS["pinataUpload"],
                data=form,
                headers={"Authorization": f"Bearer {self.pinata_jwt}"},
            )
            result = json.loads(text)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise RuntimeError(f"Failed to pin to Pinata: {e}") from e

        # v3 API nests the CID under data
        cid = (result.get("data") or {}).get("cid") or result.get("cid") or result.get("IpfsHash")
        if not cid:
            raise RuntimeError(f"No CID returned from Pinata. Response: {result}")
        logger.debug(f"Pinned to Pinata v3: {cid}")
        return cid

    async def _pin_to_node(self, data: str, filename: str) -> str:
        """Add data through the node's HTTP API (pins by default)."""
        form = aiohttp.FormData()
        form.add_field("file", data.encode("utf-8"), filename=filename, content_type="application/json")
        try:
            text = await self._request("POST", f"{self.url}/api/v0/add", self.timeout, data=form)
            return json.loads(text)["Hash"]
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, KeyError) as e:
            raise RuntimeError(f"Failed to add to IPFS node: {e}") from e

    async def add(self, data: str, filename: str = "data.json") -> str:
        """Add data to IPFS and return CID."""
        if self.pinata_enabled:
            return await self._pin_to_pinata(data, filename)
        if self.url:
            return await self._pin_to_node(data, filename)
        raise PreconditionError("No IPFS upload provider configured")

    async def add_json(self, data: Dict[str, Any], filename: str = "data.json") -> str:
        """Add JSON data to IPFS and return CID."""
        return await self.add(json.dumps(data, indent=2), filename)

    async def _get_from_gateway(self, gateway: str, cid: str) -> str:
        return await self._request("GET", f"{gateway}{cid}", self.timeout)

    async def get(self, cid: str) -> str:
        """Get data from IPFS by CID, racing all gateways. The first success wins."""
        cid = strip_ipfs_prefix(cid)
        tasks = [asyncio.ensure_future(self._get_from_gateway(gateway, cid)) for gateway in self.gateways]
        errors = []
        try:
            for finished in asyncio.as_completed(tasks):
                try:
                    return await finished
                except Exception as e:
                    errors.append(e)
                    logger.debug(f"IPFS gateway fetch failed for {cid}: {e}")
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
        raise RuntimeError(f"Failed to retrieve {cid} from all IPFS gateways: {errors}")

    async def get_json(self, cid: str) -> Dict[str, Any]:
        """Get JSON data from IPFS by CID."""
        return json.loads(await self.get(cid))

    async def addFeedbackFile(self, feedbackData: Dict[str, Any]) -> str:
        """Add feedback file to IPFS and return CID."""
        return await self.add_json(feedbackData, "feedback.json")

    async def getFeedbackFile(self, cid: str) -> Dict[str, Any]:
        """Get feedback file from IPFS by CID."""
        return await self.get_json(cid)
