"""
qBittorrent Web API Client
Lists completed torrents and their files, and injects matched cross-seeds.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

import aiohttp

from .exceptions import (
    ClientAuthenticationError,
    ClientConnectionError,
    TorrentAddError,
    TorrentClientError,
)
from .matcher import FileInfo
from .retry import RetryConfig, RetryHandler

logger = logging.getLogger(__name__)


@dataclass
class ClientTorrent:
    """A torrent as reported by the client."""
    hash: str
    name: str
    size: int
    category: str
    save_path: str
    progress: float

    @property
    def is_complete(self) -> bool:
        return self.progress >= 1.0


class QBittorrentClient:
    """
    Client for the qBittorrent Web API v2.

    The session cookie (SID) obtained by login() is kept in the aiohttp
    cookie jar and sent with every later request.
    """

    def __init__(
        self,
        url: str,
        username: str = "",
        password: str = "",
        timeout: float = 30.0,
        verify_ssl: bool = True,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.url = url.rstrip("/")
        self.username = username
        self.password = password
        self.verify_ssl = verify_ssl

        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None
        self._logged_in = False
        self._lock = asyncio.Lock()
        self._retry = RetryHandler(retry_config or RetryConfig())

        self._base_url = f"{self.url}/api/v2"

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(ssl=None if self.verify_ssl else False)
            self._session = aiohttp.ClientSession(
                connector=connector,
                timeout=self._timeout,
                # qBittorrent is usually addressed by IP; the default jar drops those cookies
                cookie_jar=aiohttp.CookieJar(unsafe=True),
                headers={"Referer": self.url},
            )
        return self._session

    async def _get_json(self, endpoint: str, params: Optional[dict] = None):
        """GET an API endpoint and decode its JSON body."""
        session = await self._get_session()
        url = f"{self._base_url}{endpoint}"

        try:
            async with session.get(url, params=params) as response:
                if response.status == 403:
                    self._logged_in = False
                    raise ClientAuthenticationError(f"HTTP 403 Forbidden for {endpoint}")
                if response.status != 200:
                    raise TorrentClientError(f"HTTP {response.status}: {response.reason}")
                return await response.json(content_type=None)
        except aiohttp.ClientError as e:
            raise ClientConnectionError("qBittorrent connection failed", str(e)) from e

    async def login(self) -> bool:
        """Authenticate with qBittorrent."""
        async with self._lock:
            if self._logged_in:
                return True

            session = await self._get_session()
            try:
                async with session.post(
                    f"{self._base_url}/auth/login",
                    data={"username": self.username, "password": self.password},
                ) as response:
                    text = (await response.text()).strip()
                    if response.status == 403:
                        raise ClientAuthenticationError(
                            "IP is banned for too many failed login attempts"
                        )
                    if response.status != 200:
                        raise ClientAuthenticationError(
                            f"HTTP {response.status}: {response.reason}"
                        )
                    if text != "Ok.":
                        raise ClientAuthenticationError("Invalid username or password")
            except aiohttp.ClientError as e:
                raise ClientConnectionError(
                    f"Could not connect to qBittorrent at {self.url}", str(e)
                ) from e

            self._logged_in = True
            logger.info(f"qBittorrent authenticated at {self.url}")
            return True

    async def close(self):
        """Close the client connection."""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
        self._logged_in = False

    async def list_torrents(self) -> List[ClientTorrent]:
        """Get every torrent in the client."""
        data = await self._retry.with_retry(
            lambda: self._get_json("/torrents/info"),
            operation_id="qbit_list_torrents",
        )

        torrents = []
        for item in data or []:
            torrents.append(ClientTorrent(
                hash=str(item.get("hash", "")),
                name=str(item.get("name", "")),
                size=int(item.get("size") or item.get("total_size") or 0),
                category=item.get("category") or "",
                save_path=item.get("save_path") or "",
                progress=float(item.get("progress") or 0.0),
            ))
        return torrents

    async def list_files(self, torrent_hash: str) -> List[FileInfo]:
        """Get the files of a torrent, with names relative to its root."""
        data = await self._retry.with_retry(
            lambda: self._get_json("/torrents/files", {"hash": torrent_hash}),
            operation_id=f"qbit_list_files_{torrent_hash}",
        )
        return [
            FileInfo(name=str(item.get("name", "")), size=int(item.get("size") or 0))
            for item in data or []
        ]

    async def add_torrent(
        self,
        torrent_data: bytes,
        save_path: str,
        category: str = "",
        tags: str = "",
        skip_recheck: bool = False,
    ) -> bool:
        """
        Add a .torrent blob.

        Skipping the recheck also starts the torrent immediately; otherwise
        it is added paused so the recheck can run first.

        Returns:
            True if qBittorrent accepted the torrent
        """
        form = aiohttp.FormData()
        form.add_field(
            "torrents",
            torrent_data,
            filename="release.torrent",
            content_type="application/x-bittorrent",
        )
        form.add_field("savepath", save_path)
        if category:
            form.add_field("category", category)
        if tags:
            form.add_field("tags", tags)
        form.add_field("skip_checking", "true" if skip_recheck else "false")
        form.add_field("paused", "false" if skip_recheck else "true")
        form.add_field("stopped", "false" if skip_recheck else "true")

        session = await self._get_session()
        try:
            async with session.post(f"{self._base_url}/torrents/add", data=form) as response:
                text = (await response.text()).strip()
                accepted = response.status == 200 and text in ("Ok.", "Ok")
                if not accepted:
                    logger.warning(f"qBittorrent rejected torrent: HTTP {response.status} {text!r}")
                return accepted
        except aiohttp.ClientError as e:
            raise TorrentAddError("Failed to add torrent to qBittorrent", str(e)) from e
