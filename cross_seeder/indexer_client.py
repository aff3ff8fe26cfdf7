"""
Prowlarr Indexer Client
Searches indexers for candidate releases and downloads their .torrent files.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional
from urllib.parse import quote, urlparse

import aiohttp

from .exceptions import IndexerDownloadError, IndexerSearchError
from .retry import RetryConfig, RetryHandler

logger = logging.getLogger(__name__)


@dataclass
class SearchResult:
    """A candidate release returned by an indexer search."""
    guid: str
    title: str
    size: Optional[int] = None
    indexer_id: Optional[int] = None
    indexer: str = ""
    download_url: Optional[str] = None
    magnet_url: Optional[str] = None
    info_hash: Optional[str] = None
    seeders: Optional[int] = None

    @classmethod
    def from_api(cls, item: dict) -> "SearchResult":
        size = item.get("size")
        return cls(
            guid=str(item.get("guid") or item.get("downloadUrl") or item.get("title", "")),
            title=str(item.get("title", "")),
            size=int(size) if size is not None else None,
            indexer_id=item.get("indexerId"),
            indexer=item.get("indexer") or "",
            download_url=item.get("downloadUrl"),
            magnet_url=item.get("magnetUrl"),
            info_hash=item.get("infoHash"),
            seeders=item.get("seeders"),
        )


class ProwlarrClient:
    """Client for the Prowlarr v1 search and download API."""

    def __init__(
        self,
        url: str,
        api_key: str,
        timeout: float = 60.0,
        verify_ssl: bool = True,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.url = url.rstrip("/")
        self.api_key = api_key
        self.verify_ssl = verify_ssl

        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None
        self._retry = RetryHandler(retry_config or RetryConfig())

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(ssl=None if self.verify_ssl else False)
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=self._timeout,
                headers={"X-Api-Key": self.api_key},
            )
        return self._session

    async def close(self):
        """Close the client connection."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _search_once(self, query: str) -> list:
        session = await self._get_session()
        async with session.get(
            f"{self.url}/api/v1/search",
            params={"query": query, "type": "search"},
        ) as response:
            if response.status != 200:
                raise IndexerSearchError(f"Prowlarr search failed: HTTP {response.status}")
            return await response.json(content_type=None)

    async def search(self, query: str) -> List[SearchResult]:
        """
        Search every indexer configured in Prowlarr.

        Raises:
            IndexerSearchError: on a non-200 response
        """
        data = await self._retry.with_retry(
            lambda: self._search_once(query),
            operation_id=f"prowlarr_search_{query}",
        )
        results = [SearchResult.from_api(item) for item in data or []]
        logger.debug(f"Prowlarr returned {len(results)} results for {query!r}")
        return results

    def _download_url_for(self, result: SearchResult) -> Optional[str]:
        if not result.download_url:
            return None
        # Links already proxied through Prowlarr are fetched as-is
        if urlparse(self.url).netloc in result.download_url:
            return result.download_url
        return (
            f"{self.url}/api/v1/indexer/{result.indexer_id}/download"
            f"?link={quote(result.download_url, safe='')}"
        )

    async def _download_once(self, url: str) -> bytes:
        session = await self._get_session()
        async with session.get(url) as response:
            if response.status != 200:
                raise IndexerDownloadError(
                    f"Torrent download failed: HTTP {response.status}", url
                )
            return await response.read()

    async def download(self, result: SearchResult) -> Optional[bytes]:
        """
        Fetch the .torrent file of a search result.

        Returns:
            The raw bytes, or None if the result has no download link or
            the download failed. Magnet-only results are not downloadable.
        """
        url = self._download_url_for(result)
        if url is None:
            return None

        try:
            return await self._retry.with_retry(
                lambda: self._download_once(url),
                operation_id=f"prowlarr_download_{result.guid}",
            )
        except (IndexerDownloadError, aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            logger.warning(f"Failed to download torrent {result.title}: {e}")
            return None
