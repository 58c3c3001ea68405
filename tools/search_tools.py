from __future__ import annotations

import logging
from typing import Dict, List

import httpx

from settings import SETTINGS

logger = logging.getLogger(__name__)

SERPAPI_URL = "https://serpapi.com/search"
SERPER_URL = "https://google.serper.dev/search"


def format_organic(items: List[Dict[str, str]], limit: int) -> str:
    lines = []
    for item in items[:limit]:
        title = item.get("title") or ""
        snippet = item.get("snippet") or ""
        lines.append(f"{title}: {snippet}" if snippet else title)
    return "\n\n".join(line for line in lines if line)


class SearchTools:
    """Web search context. SerpAPI is tried first, then Serper; an empty string means no results."""

    def __init__(
        self,
        serpapi_key: str | None = None,
        serper_key: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.serpapi_key = (serpapi_key if serpapi_key is not None else SETTINGS.serpapi_api_key).strip()
        self.serper_key = (serper_key if serper_key is not None else SETTINGS.serper_api_key).strip()
        self.timeout_seconds = timeout_seconds or SETTINGS.search_timeout_seconds

    def available(self) -> bool:
        return bool(self.serpapi_key or self.serper_key)

    async def search(self, query: str, limit: int = 5) -> str:
        if not self.available():
            logger.warning("search_skipped_no_provider")
            return ""
        async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
            if self.serpapi_key:
                try:
                    resp = await client.get(
                        SERPAPI_URL,
                        params={"engine": "google", "q": query, "api_key": self.serpapi_key, "num": str(limit)},
                    )
                    resp.raise_for_status()
                    organic = resp.json().get("organic_results") or []
                    if organic:
                        return format_organic(organic, limit)
                except (httpx.HTTPError, ValueError) as exc:
                    logger.warning("serpapi_search_failed", extra={"error": repr(exc)})
            if self.serper_key:
                try:
                    resp = await client.post(
                        SERPER_URL,
                        headers={"X-API-KEY": self.serper_key, "Authorization": f"Bearer {self.serper_key}"},
                        json={"q": query, "num": limit},
                    )
                    resp.raise_for_status()
                    organic = resp.json().get("organic") or []
                    if organic:
                        return format_organic(organic, limit)
                except (httpx.HTTPError, ValueError) as exc:
                    logger.warning("serper_search_failed", extra={"error": repr(exc)})
        return ""
