"""
Endpoint Crawler for MCP and A2A Servers
Fetches capabilities (tools, prompts, resources, skills) from agent endpoints.
Uses soft failure: an unreachable or unexpected endpoint yields None, never an exception.
"""

import asyncio
import itertools
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

import aiohttp

from .config import TIMEOUTS
from .models import A2aCapabilities, McpCapabilities

logger = logging.getLogger(__name__)

MCP_CATEGORIES = ("tools", "prompts", "resources")
NAME_FIELDS = ("name", "id", "identifier", "title")
CONTAINER_KEYS = ("capabilities", "abilities", "features")
SSE_DATA_PREFIX = "data:"


def create_jsonrpc_request(method: str, params: Dict = None, request_id: int = 1):
    """Create a JSON-RPC request."""
    payload = {
        "jsonrpc": "2.0",
        "method": method,
        "id": request_id
    }
    if params:
        payload["params"] = params
    return payload


def a2a_candidate_urls(endpoint: str) -> List[str]:
    """Agent card locations to try, in priority order."""
    return [
        endpoint,  # ERC-8004 endpoints may already be the full agent card URL
        f"{endpoint}/.well-known/agent-card.json",  # A2A recommended discovery path
        f"{endpoint.rstrip('/')}/.well-known/agent-card.json",
        f"{endpoint}/.well-known/agent.json",
        f"{endpoint.rstrip('/')}/.well-known/agent.json",
        f"{endpoint}/agentcard.json",  # legacy
    ]


class EndpointCrawler:
    """Crawls MCP and A2A endpoints to fetch capabilities."""

    def __init__(self, timeout_ms: int = TIMEOUTS["endpointCrawlerMs"], session: Optional[aiohttp.ClientSession] = None):
        """
        Initialize the endpoint crawler.

        Args:
            timeout_ms: Per-request timeout in milliseconds (default: 5000)
            session: Optional shared aiohttp session. A short-lived session is
                opened per request when omitted.
        """
        self.timeout_ms = timeout_ms
        self._session = session
        self._request_ids = itertools.count(1)

    def _next_request_id(self) -> int:
        return next(self._request_ids)

    @staticmethod
    def _is_http_url(endpoint: str) -> bool:
        return isinstance(endpoint, str) and endpoint.startswith(("http://", "https://"))

    async def _request(self, method: str, url: str, **kwargs) -> Tuple[int, str, str]:
        """Send one request and return (status, content type, body text)."""
        timeout = aiohttp.ClientTimeout(total=self.timeout_ms / 1000)
        if self._session is not None:
            return await self._send(self._session, method, url, timeout, **kwargs)
        async with aiohttp.ClientSession() as session:
            return await self._send(session, method, url, timeout, **kwargs)

    @staticmethod
    async def _send(session, method, url, timeout, **kwargs) -> Tuple[int, str, str]:
        async with session.request(method, url, timeout=timeout, allow_redirects=True, **kwargs) as response:
            text = await response.text()
            return response.status, response.headers.get("content-type", ""), text

    async def _post(self, url: str, payload: Dict[str, Any]) -> Tuple[int, str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        return await self._request("POST", url, json=payload, headers=headers)

    async def _get(self, url: str) -> Tuple[int, str, str]:
        return await self._request("GET", url, headers={"Accept": "application/json"})

    async def fetch_mcp_capabilities(self, endpoint: str) -> Optional[McpCapabilities]:
        """
        Fetch MCP capabilities (tools, prompts, resources) from an MCP server.

        MCP uses JSON-RPC over HTTP POST. The three list calls run concurrently;
        if none of them yields a name, falls back to the static agentcard.json.

        Args:
            endpoint: MCP endpoint URL (must be http:// or https://)

        Returns:
            McpCapabilities with only the non-empty categories set, or None
        """
        if not self._is_http_url(endpoint):
            logger.warning(f"MCP endpoint must be HTTP/HTTPS, got: {endpoint}")
            return None

        capabilities = await self._fetch_via_jsonrpc(endpoint)
        if capabilities is not None:
            return capabilities

        return await self._fetch_agentcard(endpoint)

    async def _fetch_via_jsonrpc(self, http_url: str) -> Optional[McpCapabilities]:
        """Run tools/list, prompts/list and resources/list concurrently."""
        results = await asyncio.gather(
            *(self._jsonrpc_call(http_url, f"{category}/list") for category in MCP_CATEGORIES),
            return_exceptions=True,
        )

        names = {}
        for category, result in zip(MCP_CATEGORIES, results):
            if isinstance(result, BaseException):
                logger.debug(f"MCP {category}/list failed for {http_url}: {result}")
                continue
            names[category] = self._extract_names(result, category)

        capabilities = McpCapabilities(
            tools=names.get("tools"),
            prompts=names.get("prompts"),
            resources=names.get("resources"),
        )
        if capabilities.is_empty():
            return None

        logger.info(f"Successfully fetched MCP capabilities via JSON-RPC from {http_url}")
        return capabilities

    async def _jsonrpc_call(self, url: str, method: str, params: Dict = None) -> Optional[Dict[str, Any]]:
        """Make a JSON-RPC call and return the result. Handles SSE framing."""
        payload = create_jsonrpc_request(method, params, self._next_request_id())
        try:
            status, content_type, text = await self._post(url, payload)
        except Exception as e:
            logger.debug(f"JSON-RPC call {method} failed: {e}")
            return None

        if not 200 <= status < 300:
            logger.debug(f"JSON-RPC call {method} returned HTTP {status}")
            return None

        data = self._decode_body(content_type, text)
        if not isinstance(data, dict):
            return None
        if "result" in data:
            return data["result"]
        if "error" in data:
            logger.debug(f"JSON-RPC call {method} returned error: {data['error']}")
            return None
        return data

    def _decode_body(self, content_type: str, text: str) -> Optional[Any]:
        """Decode a plain JSON body or an event-stream framed one."""
        if "text/event-stream" in (content_type or "") or self._looks_like_event_stream(text):
            return self._parse_sse_response(text)
        try:
            return json.loads(text)
        except (TypeError, ValueError) as e:
            logger.debug(f"Response is not JSON: {e}")
            return None

    @staticmethod
    def _looks_like_event_stream(text: str) -> bool:
        if not text:
            return False
        head = text[:200]
        return "event: message" in head or head.lstrip().startswith("data:")

    def _parse_sse_response(self, sse_text: str) -> Optional[Dict[str, Any]]:
        """Parse Server-Sent Events (SSE) framing. The first JSON data line wins."""
        for line in sse_text.splitlines():
            if not line.startswith(SSE_DATA_PREFIX):
                continue
            try:
                return json.loads(line[len(SSE_DATA_PREFIX):].lstrip())
            except ValueError as e:
                logger.debug(f"Skipping malformed SSE data line: {e}")
        return None

    @staticmethod
    def _extract_names(result: Any, category: str) -> List[str]:
        """Collect the name of every entry in result[category]; malformed entries are skipped."""
        if not isinstance(result, dict) or not isinstance(result.get(category), list):
            return []
        return [
            item["name"] for item in result[category]
            if isinstance(item, dict) and isinstance(item.get("name"), str) and item["name"]
        ]

    async def _fetch_agentcard(self, endpoint: str) -> Optional[McpCapabilities]:
        """Fallback: read capabilities from {endpoint}/agentcard.json."""
        agentcard_url = f"{endpoint}/agentcard.json"
        logger.debug(f"Attempting to fetch MCP capabilities from {agentcard_url}")

        data = await self._get_json(agentcard_url)
        if not isinstance(data, dict):
            return None

        capabilities = McpCapabilities(
            tools=self._extract_list(data, "tools"),
            prompts=self._extract_list(data, "prompts"),
            resources=self._extract_list(data, "resources"),
        )
        if capabilities.is_empty():
            return None

        logger.info(f"Successfully fetched MCP capabilities from {agentcard_url}")
        return capabilities

    async def _get_json(self, url: str) -> Optional[Any]:
        try:
            status, _, text = await self._get(url)
        except Exception as e:
            logger.debug(f"Failed to fetch from {url}: {e}")
            return None
        if not 200 <= status < 300:
            logger.debug(f"Failed to fetch from {url}: HTTP {status}")
            return None
        try:
            return json.loads(text)
        except (TypeError, ValueError) as e:
            logger.debug(f"Malformed JSON from {url}: {e}")
            return None

    async def fetch_a2a_capabilities(self, endpoint: str) -> Optional[A2aCapabilities]:
        """
        Fetch A2A capabilities (skills) from an A2A server.

        Tries the literal URL and then the well-known agent card paths, in order.
        A failed fetch, a non-2xx status, malformed JSON or a card without skill
        tags moves on to the next candidate.

        Args:
            endpoint: A2A endpoint URL (must be http:// or https://)

        Returns:
            A2aCapabilities from the first card with skill tags, or None
        """
        if not self._is_http_url(endpoint):
            logger.warning(f"A2A endpoint must be HTTP/HTTPS, got: {endpoint}")
            return None

        for agentcard_url in a2a_candidate_urls(endpoint):
            logger.debug(f"Attempting to fetch A2A capabilities from {agentcard_url}")
            data = await self._get_json(agentcard_url)
            if not isinstance(data, dict):
                continue

            skills = self._extract_a2a_skills(data)
            if skills:
                logger.info(f"Successfully fetched A2A capabilities from {agentcard_url}: {len(skills)} skills")
                return A2aCapabilities(skills=skills, source=agentcard_url)

        return None

    async def fetch_all(self, mcp_endpoint: Optional[str] = None, a2a_endpoint: Optional[str] = None) -> Dict[str, List[str]]:
        """Probe both dialects concurrently and merge the AgentSummary-shaped fields."""
        async def _none():
            return None

        mcp, a2a = await asyncio.gather(
            self.fetch_mcp_capabilities(mcp_endpoint) if mcp_endpoint else _none(),
            self.fetch_a2a_capabilities(a2a_endpoint) if a2a_endpoint else _none(),
        )
        merged: Dict[str, List[str]] = {}
        if mcp is not None:
            merged.update(mcp.to_dict())
        if a2a is not None:
            merged.update(a2a.to_dict())
        return merged

    def _extract_a2a_skills(self, data: Dict[str, Any]) -> List[str]:
        """
        Extract skill tags from an A2A agent card.

        Per the A2A protocol (v0.3.0) agent cards carry
          skills: AgentSkill[] where each AgentSkill has a tags[] array

        Also accepted for older cards:
        - detailedSkills[].tags[] (custom extension)
        - skills: ["tag1", "tag2"] (flat array)

        Returns:
            Unique skill tags in first-seen order
        """
        result = self._collect_tags(data.get("skills"), allow_strings=True)

        if not result:
            result = self._collect_tags(data.get("detailedSkills"), allow_strings=False)

        # Remove duplicates while preserving order
        return list(dict.fromkeys(result))

    @staticmethod
    def _collect_tags(skills: Any, allow_strings: bool) -> List[str]:
        tags: List[str] = []
        if not isinstance(skills, list):
            return tags
        for skill in skills:
            if isinstance(skill, dict) and isinstance(skill.get("tags"), list):
                tags.extend(tag for tag in skill["tags"] if isinstance(tag, str) and tag)
            elif allow_strings and isinstance(skill, str) and skill:
                tags.append(skill)
        return tags

    def _extract_list(self, data: Dict[str, Any], key: str) -> List[str]:
        """
        Extract a list of names from manifest JSON.

        Looks at data[key] first, then inside the known container objects
        (capabilities, abilities, features).
        """
        result = self._names_from_items(data.get(key))

        if not result:
            for container_key in CONTAINER_KEYS:
                container = data.get(container_key)
                if isinstance(container, dict):
                    result = self._names_from_items(container.get(key))
                    if result:
                        break

        return result

    @staticmethod
    def _names_from_items(items: Any) -> List[str]:
        names: List[str] = []
        if not isinstance(items, list):
            return names
        for item in items:
            if isinstance(item, str):
                names.append(item)
            elif isinstance(item, dict):
                for name_field in NAME_FIELDS:
                    if isinstance(item.get(name_field), str):
                        names.append(item[name_field])
                        break
        return names
