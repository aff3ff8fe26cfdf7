"""
Tests for the qBittorrent Web API client.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from cross_seeder.exceptions import (
    ClientAuthenticationError,
    ClientConnectionError,
    TorrentAddError,
    TorrentClientError,
)
from cross_seeder.matcher import FileInfo
from cross_seeder.qbit_client import ClientTorrent, QBittorrentClient
from cross_seeder.retry import RetryConfig


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def qbit():
    """Client with a single attempt per read."""
    return QBittorrentClient(
        "http://192.168.1.10:8080/", "admin", "adminadmin",
        retry_config=RetryConfig(max_attempts=1),
    )


@pytest.fixture
def mock_response():
    """Create a factory for mock aiohttp responses."""
    def _create_response(text="", status=200, reason="OK", json_data=None):
        response = AsyncMock()
        response.status = status
        response.reason = reason
        response.text = AsyncMock(return_value=text)
        response.json = AsyncMock(return_value=json_data)
        return response
    return _create_response


def session_returning(response, method="post"):
    """Mock session whose get/post context manager yields response."""
    session = AsyncMock()
    session.closed = False
    setattr(session, method, MagicMock(return_value=AsyncMock(__aenter__=AsyncMock(return_value=response))))
    return session


def form_fields(form: aiohttp.FormData) -> dict:
    return {options["name"]: value for options, _, value in form._fields}


# ============================================================================
# Tests
# ============================================================================

class TestInitialization:
    """Test client construction."""

    def test_trailing_slash_removed(self, qbit):
        assert qbit.url == "http://192.168.1.10:8080"
        assert qbit._base_url == "http://192.168.1.10:8080/api/v2"

    async def test_session_keeps_ip_cookies(self, qbit):
        session = await qbit._get_session()
        try:
            assert session.cookie_jar._unsafe is True
            assert session.headers["Referer"] == qbit.url
        finally:
            await qbit.close()


class TestLogin:
    """Test authentication."""

    async def test_login_success(self, qbit, mock_response):
        session = session_returning(mock_response("Ok."))
        with patch.object(qbit, "_get_session", return_value=session):
            assert await qbit.login() is True

        url = session.post.call_args.args[0]
        assert url == "http://192.168.1.10:8080/api/v2/auth/login"
        assert session.post.call_args.kwargs["data"] == {
            "username": "admin", "password": "adminadmin",
        }

    async def test_login_bad_credentials(self, qbit, mock_response):
        session = session_returning(mock_response("Fails."))
        with patch.object(qbit, "_get_session", return_value=session):
            with pytest.raises(ClientAuthenticationError) as exc_info:
                await qbit.login()
        assert "Invalid username or password" in str(exc_info.value)

    async def test_login_banned(self, qbit, mock_response):
        session = session_returning(mock_response("Forbidden", status=403))
        with patch.object(qbit, "_get_session", return_value=session):
            with pytest.raises(ClientAuthenticationError) as exc_info:
                await qbit.login()
        assert "banned" in str(exc_info.value)

    async def test_login_unreachable(self, qbit):
        session = AsyncMock()
        session.post = MagicMock(side_effect=aiohttp.ClientConnectionError("refused"))
        with patch.object(qbit, "_get_session", return_value=session):
            with pytest.raises(ClientConnectionError):
                await qbit.login()

    async def test_login_cached(self, qbit):
        qbit._logged_in = True
        with patch.object(qbit, "_get_session") as mock_get_session:
            assert await qbit.login() is True
        mock_get_session.assert_not_called()


class TestReads:
    """Test torrent and file listing."""

    async def test_list_torrents(self, qbit):
        payload = [
            {"hash": "abc", "name": "Done", "size": 1020, "category": "tv",
             "save_path": "/dl/tv", "progress": 1},
            {"hash": "def", "name": "Partial", "total_size": 50, "category": None,
             "save_path": "/dl", "progress": 0.4},
        ]
        with patch.object(qbit, "_get_json", AsyncMock(return_value=payload)) as mock_get:
            torrents = await qbit.list_torrents()

        mock_get.assert_awaited_once_with("/torrents/info")
        assert torrents[0] == ClientTorrent("abc", "Done", 1020, "tv", "/dl/tv", 1.0)
        assert torrents[0].is_complete is True
        assert torrents[1].size == 50
        assert torrents[1].category == ""
        assert torrents[1].is_complete is False

    async def test_list_files(self, qbit):
        payload = [{"name": "Show/a.mkv", "size": 1000}, {"name": "Show/b.srt", "size": 20}]
        with patch.object(qbit, "_get_json", AsyncMock(return_value=payload)) as mock_get:
            files = await qbit.list_files("abc")

        mock_get.assert_awaited_once_with("/torrents/files", {"hash": "abc"})
        assert files == [FileInfo("Show/a.mkv", 1000), FileInfo("Show/b.srt", 20)]

    async def test_forbidden_resets_login(self, qbit, mock_response):
        qbit._logged_in = True
        session = session_returning(mock_response(status=403, reason="Forbidden"), method="get")
        with patch.object(qbit, "_get_session", return_value=session):
            with pytest.raises(ClientAuthenticationError):
                await qbit.list_torrents()
        assert qbit._logged_in is False

    async def test_server_error(self, qbit, mock_response):
        session = session_returning(mock_response(status=500, reason="Internal"), method="get")
        with patch.object(qbit, "_get_session", return_value=session):
            with pytest.raises(TorrentClientError):
                await qbit.list_torrents()

    async def test_transient_failure_retried(self, mock_response):
        qbit = QBittorrentClient(
            "http://qbit", retry_config=RetryConfig(max_attempts=2, initial_delay=0.001, jitter=False)
        )
        get_json = AsyncMock(side_effect=[ClientConnectionError("qBittorrent connection failed"), []])
        with patch.object(qbit, "_get_json", get_json):
            assert await qbit.list_torrents() == []
        assert get_json.await_count == 2


class TestAddTorrent:
    """Test cross-seed injection."""

    async def test_add_paused_with_recheck(self, qbit, mock_response):
        session = session_returning(mock_response("Ok."))
        with patch.object(qbit, "_get_session", return_value=session):
            added = await qbit.add_torrent(
                b"d4:infode", save_path="/dl/tv", category="tv_cross-seed", tags="cross-seed",
            )

        assert added is True
        assert session.post.call_args.args[0] == "http://192.168.1.10:8080/api/v2/torrents/add"
        fields = form_fields(session.post.call_args.kwargs["data"])
        assert fields["torrents"] == b"d4:infode"
        assert fields["savepath"] == "/dl/tv"
        assert fields["category"] == "tv_cross-seed"
        assert fields["tags"] == "cross-seed"
        assert fields["skip_checking"] == "false"
        assert fields["paused"] == "true"
        assert fields["stopped"] == "true"

    async def test_skip_recheck_starts_immediately(self, qbit, mock_response):
        session = session_returning(mock_response("Ok"))
        with patch.object(qbit, "_get_session", return_value=session):
            assert await qbit.add_torrent(b"x", save_path="/dl", skip_recheck=True) is True

        fields = form_fields(session.post.call_args.kwargs["data"])
        assert fields["skip_checking"] == "true"
        assert fields["paused"] == "false"
        assert "category" not in fields

    async def test_rejected(self, qbit, mock_response):
        session = session_returning(mock_response("Fails."))
        with patch.object(qbit, "_get_session", return_value=session):
            assert await qbit.add_torrent(b"x", save_path="/dl") is False

    async def test_connection_error(self, qbit):
        session = AsyncMock()
        session.post = MagicMock(side_effect=aiohttp.ClientConnectionError("reset"))
        with patch.object(qbit, "_get_session", return_value=session):
            with pytest.raises(TorrentAddError):
                await qbit.add_torrent(b"x", save_path="/dl")
