import logging
from abc import ABC, abstractmethod
from typing import List, Optional

import httpx

from clipthread.app.core.config import Settings, settings as default_settings
from clipthread.app.core.exceptions import SearchUnavailable
from clipthread.app.models.research import SearchResult

logger = logging.getLogger(__name__)

SERPAPI_URL = "https://serpapi.com/search.json"


class SearchProvider(ABC):
    @abstractmethod
    async def search(self, query: str, limit: int = 5) -> List[SearchResult]: ...

    async def close(self) -> None:
        pass


class SerpApiSearch(SearchProvider):
    """Google results through SerpAPI."""

    def __init__(self, config: Optional[Settings] = None, client: Optional[httpx.AsyncClient] = None):
        self.settings = config or default_settings
        self.api_key = self.settings.SERPAPI_API_KEY
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.settings.RESEARCH_TIMEOUT_SECONDS, connect=10.0))
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def search(self, query: str, limit: int = 5) -> List[SearchResult]:
        if not self.api_key:
            raise SearchUnavailable("No search API key configured")

        params = {"q": query, "engine": "google", "api_key": self.api_key, "num": 10}
        try:
            response = await self._get_client().get(SERPAPI_URL, params=params)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise SearchUnavailable("Search request rejected", {"status": e.response.status_code}) from e
        except httpx.RequestError as e:
            raise SearchUnavailable("Search request failed", {"error": str(e)}) from e
        except ValueError as e:
            raise SearchUnavailable("Search returned invalid JSON", {"error": str(e)}) from e

        return self.parse_results(data, limit)

    @staticmethod
    def parse_results(data: dict, limit: int = 5) -> List[SearchResult]:
        results = []
        answer = data.get("answer_box") or {}
        if answer.get("snippet") or answer.get("answer"):
            results.append(SearchResult(
                title=answer.get("title", "Answer"),
                snippet=answer.get("snippet") or answer.get("answer", ""),
                url=answer.get("link", ""),
                kind="answer_box",
            ))
        for item in data.get("organic_results", [])[:limit]:
            results.append(SearchResult(
                title=item.get("title", ""),
                snippet=item.get("snippet", ""),
                url=item.get("link", ""),
            ))
        logger.debug("Search returned %d results", len(results))
        return results
