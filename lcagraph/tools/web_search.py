"""
Web Search Tool - Tavily search exposed as the research steps' lookup.

The reasoning model calls `web_search(query)`; each call hits the Tavily
search API and returns up to `max_results` ReferenceSource items.
Rate limits (HTTP 429) are retried with exponential backoff. Any other
failure raises LookupFailure, which the tool call loop turns into an
error result for the model to see.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import httpx

from lcagraph.credentials import CredentialManager
from lcagraph.graph.errors import LookupFailure
from lcagraph.llm.provider import Tool
from lcagraph.schemas.lca import ReferenceSource

logger = logging.getLogger(__name__)

TAVILY_SEARCH_URL = "https://api.tavily.com/search"
MAX_QUERY_LENGTH = 400


class TavilySearchTool:
    """
    Async Tavily client satisfying the LookupTool protocol.

    Example:
        search = TavilySearchTool(max_results=5)
        sources = await search.lookup("Suntech PERC solar cell manufacturing")
    """

    def __init__(
        self,
        api_key: str | None = None,
        *,
        max_results: int = 5,
        credentials: CredentialManager | None = None,
        client: httpx.AsyncClient | None = None,
        max_retries: int = 3,
        timeout: float = 30.0,
        search_depth: str = "basic",
    ):
        self._api_key = api_key
        self._credentials = credentials
        self._client = client
        self.max_results = max_results
        self.max_retries = max_retries
        self.timeout = timeout
        self.search_depth = search_depth

    @property
    def tool(self) -> Tool:
        return Tool(
            name="web_search",
            description=(
                "Search the web for up-to-date information. Returns a list of results "
                "with title, url, content and relevance score."
            ),
            parameters={
                "type": "object",
                "properties": {
                    "query": {"type": "string", "description": "The search query"},
                },
                "required": ["query"],
            },
        )

    def _resolve_api_key(self) -> str:
        if self._api_key:
            return self._api_key
        credentials = self._credentials or CredentialManager()
        api_key = credentials.get("tavily")
        if not api_key:
            raise LookupFailure(
                "Tavily credentials not configured: set TAVILY_API_KEY", call="lookup"
            )
        return api_key

    async def lookup(self, query: str) -> list[ReferenceSource]:
        """
        Run one search.

        Raises:
            LookupFailure: On a bad query, missing key, HTTP error or malformed response
        """
        query = query.strip()
        if not query or len(query) > MAX_QUERY_LENGTH:
            raise LookupFailure(f"Query must be 1-{MAX_QUERY_LENGTH} characters", call="lookup")

        payload = {
            "query": query,
            "max_results": self.max_results,
            "search_depth": self.search_depth,
        }
        headers = {
            "Authorization": f"Bearer {self._resolve_api_key()}",
            "Content-Type": "application/json",
        }

        if self._client is not None:
            data = await self._post(self._client, payload, headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                data = await self._post(client, payload, headers)

        results = [
            self._to_source(item) for item in (data.get("results") or [])[: self.max_results]
        ]
        logger.info(f"🔎 web_search returned {len(results)} result(s)", extra={"query": query})
        return results

    async def _post(
        self,
        client: httpx.AsyncClient,
        payload: dict[str, Any],
        headers: dict[str, str],
    ) -> dict[str, Any]:
        for attempt in range(self.max_retries + 1):
            try:
                response = await client.post(TAVILY_SEARCH_URL, json=payload, headers=headers)
            except httpx.HTTPError as e:
                raise LookupFailure(f"Tavily request failed: {e}", call="lookup", cause=e) from e

            if response.status_code == 429 and attempt < self.max_retries:
                delay = 2**attempt
                logger.warning(f"Tavily rate limited, retrying in {delay}s")
                await asyncio.sleep(delay)
                continue

            if response.status_code == 401:
                raise LookupFailure("Invalid Tavily API key", call="lookup")
            if response.status_code == 429:
                raise LookupFailure("Tavily rate limit exceeded. Try again later.", call="lookup")
            if response.status_code != 200:
                raise LookupFailure(
                    f"Tavily request failed: HTTP {response.status_code}", call="lookup"
                )
            break

        try:
            data = response.json()
        except ValueError as e:
            raise LookupFailure("Tavily returned invalid JSON", call="lookup", cause=e) from e
        if not isinstance(data, dict):
            raise LookupFailure("Tavily returned an unexpected payload", call="lookup")
        return data

    @staticmethod
    def _to_source(item: dict[str, Any]) -> ReferenceSource:
        return ReferenceSource(
            title=item.get("title") or "",
            url=item.get("url") or "",
            content=item.get("content") or "",
            score=item.get("score"),
        )
