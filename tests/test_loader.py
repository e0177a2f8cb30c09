"""
Unit tests for fetching and parallel loading.

httpx is mocked; local paths use pytest's tmp_path.
"""

from unittest.mock import Mock, patch

import httpx
import pytest

from templatemix.assets.decoder import StandardDecoder
from templatemix.assets.loader import AssetLoader, fetch_bytes
from templatemix.config import Config
from templatemix.errors import DecodeError, FetchError


class TestFetchBytes:
    """Test fetch_bytes()."""

    def test_plain_path(self, tmp_path):
        """Plain paths are read from disk."""
        path = tmp_path / "a.bin"
        path.write_bytes(b"abc")

        assert fetch_bytes(str(path)) == b"abc"

    def test_file_url(self, tmp_path):
        """file:// URLs are read from disk."""
        path = tmp_path / "with space.bin"
        path.write_bytes(b"xyz")

        assert fetch_bytes(path.as_uri()) == b"xyz"

    def test_missing_file(self, tmp_path):
        """Unreadable paths raise FetchError."""
        with pytest.raises(FetchError) as exc_info:
            fetch_bytes(str(tmp_path / "missing.wav"))

        assert isinstance(exc_info.value, DecodeError)

    @patch("templatemix.assets.loader.httpx.get")
    def test_http(self, mock_get):
        """http(s) URLs go through httpx with redirects followed."""
        mock_get.return_value = Mock(content=b"audio")

        assert fetch_bytes("https://cdn.example/a.mp3", timeout_seconds=5) == b"audio"
        mock_get.assert_called_once_with("https://cdn.example/a.mp3", timeout=5, follow_redirects=True)

    @patch("templatemix.assets.loader.httpx.get")
    def test_http_error(self, mock_get):
        """Transport errors become FetchError."""
        mock_get.side_effect = httpx.ConnectError("connection refused")

        with pytest.raises(FetchError, match="connection refused"):
            fetch_bytes("https://cdn.example/a.mp3")

    def test_malformed_url(self):
        """Unparseable locations raise FetchError, not ValueError."""
        with pytest.raises(FetchError) as exc_info:
            fetch_bytes("http://[::1/voice.wav")

        assert exc_info.value.source == "http://[::1/voice.wav"

    @patch("templatemix.assets.loader.httpx.get")
    def test_http_invalid_url(self, mock_get):
        """httpx.InvalidURL is not an HTTPError but still becomes FetchError."""
        mock_get.side_effect = httpx.InvalidURL("Invalid port: 'x'")

        with pytest.raises(FetchError, match="Invalid port"):
            fetch_bytes("https://cdn.example:x/a.mp3")

    def test_malformed_url_collected_when_lenient(self, make_loader, make_asset):
        """A bad location is reported as a failure for its key only."""
        loader, _ = make_loader({"ok.wav": make_asset(1.0)})
        loader.fetcher = lambda location: fetch_bytes(location) if "://" in location else location.encode()

        assets, failures = loader.load({"a": "ok.wav", "voice": "http://[::1/voice.wav"}, strict=False)

        assert list(assets) == ["a"]
        assert isinstance(failures["voice"], FetchError)


class TestAssetLoader:
    """Test AssetLoader.load()."""

    def test_loads_by_key(self, make_loader, make_asset):
        """Assets come back keyed by source key."""
        loader, _ = make_loader({"u1.wav": make_asset(1.0), "u2.wav": make_asset(2.0)})

        assets, failures = loader.load({"voice": "u1.wav", "bed": "u2.wav"})

        assert assets["voice"].duration == pytest.approx(1.0)
        assert assets["bed"].duration == pytest.approx(2.0)
        assert failures == {}

    def test_same_location_decoded_once(self, make_loader, make_asset):
        """Keys sharing a location share one decode."""
        loader, decoder = make_loader({"u.wav": make_asset(1.0)})

        assets, _ = loader.load({"a": "u.wav", "b": "u.wav"})

        assert decoder.calls == ["u.wav"]
        assert assets["a"] is assets["b"]

    def test_cache_reused(self, make_loader, make_asset):
        """A second load does not decode again."""
        loader, decoder = make_loader({"u.wav": make_asset(1.0)})

        loader.load({"a": "u.wav"})
        loader.load({"b": "u.wav"})

        assert decoder.calls == ["u.wav"]
        assert loader.cached("u.wav") is not None

    def test_strict_raises(self, make_loader, make_asset):
        """Strict mode raises the first failure."""
        loader, _ = make_loader({"ok.wav": make_asset(1.0)})

        with pytest.raises(DecodeError) as exc_info:
            loader.load({"a": "ok.wav", "b": "bad.wav"})

        assert exc_info.value.source == "bad.wav"

    def test_lenient_collects(self, make_loader, make_asset):
        """Lenient mode returns what it could load plus failures."""
        loader, _ = make_loader({"ok.wav": make_asset(1.0)})

        assets, failures = loader.load({"a": "ok.wav", "b": "bad.wav"}, strict=False)

        assert list(assets) == ["a"]
        assert list(failures) == ["b"]

    def test_from_config(self):
        """Defaults come from the loader section."""
        loader = AssetLoader.from_config(Config.defaults())

        assert loader.max_workers == 8
        assert isinstance(loader.decoder, StandardDecoder)
        assert loader.decoder.ffmpeg.sample_rate == 44100
