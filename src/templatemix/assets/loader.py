"""
Asset Loader: fetch and decode sources in parallel, cached by location.

Fetching and decoding is the only part of the pipeline that waits on
external I/O. All distinct locations are processed concurrently on a thread
pool; results are merged into the cache on the calling thread, so cached
assets are only ever written from one place and read-only afterwards.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Dict, Mapping, Optional, Tuple
from urllib.parse import unquote, urlparse

import httpx

from ..errors import DecodeError, FetchError
from .decoder import Decoder, FFmpegDecoder, PCMAsset, StandardDecoder

logger = logging.getLogger(__name__)


def fetch_bytes(location: str, timeout_seconds: float = 30) -> bytes:
    """
    Read raw bytes for a location.

    http(s) URLs go through httpx; `file://` URLs and plain paths are read
    from disk.

    Raises:
        FetchError: If the bytes cannot be retrieved
    """
    try:
        parsed = urlparse(location)
    except ValueError as e:
        raise FetchError(location, f"malformed location: {e}")

    if parsed.scheme in ("http", "https"):
        try:
            response = httpx.get(location, timeout=timeout_seconds, follow_redirects=True)
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as e:
            raise FetchError(location, str(e))
        return response.content

    path = Path(unquote(parsed.path)) if parsed.scheme == "file" else Path(location)
    try:
        return path.read_bytes()
    except (OSError, ValueError) as e:
        raise FetchError(location, str(e))


class AssetLoader:
    """Fetch + decode with a per-location cache shared across calls."""

    def __init__(
        self,
        decoder: Decoder,
        fetcher: Optional[Callable[[str], bytes]] = None,
        max_workers: int = 8,
        timeout_seconds: float = 30,
    ):
        """
        Args:
            decoder: Decoder capability
            fetcher: location -> bytes; defaults to fetch_bytes
            max_workers: Thread pool size for parallel fetch/decode
            timeout_seconds: Per-request timeout for the default fetcher
        """
        self.decoder = decoder
        self.fetcher = fetcher or (lambda location: fetch_bytes(location, timeout_seconds))
        self.max_workers = max_workers
        self._cache: Dict[str, PCMAsset] = {}

    @classmethod
    def from_config(cls, config, decoder: Optional[Decoder] = None) -> "AssetLoader":
        timeout = config.get("loader", "timeout_seconds", 30)
        if decoder is None:
            decoder = StandardDecoder(
                FFmpegDecoder(
                    sample_rate=config.get("render", "sample_rate", 44100),
                    binary=config.get("loader", "ffmpeg_binary", "ffmpeg"),
                    timeout_seconds=timeout,
                )
            )
        return cls(
            decoder,
            max_workers=config.get("loader", "max_workers", 8),
            timeout_seconds=timeout,
        )

    def cached(self, location: str) -> Optional[PCMAsset]:
        return self._cache.get(location)

    def _fetch_and_decode(self, location: str) -> PCMAsset:
        logger.debug(f"Loading: {location}")
        data = self.fetcher(location)
        return self.decoder.decode(data, source=location)

    def load(
        self,
        locations: Mapping[str, str],
        strict: bool = True,
    ) -> Tuple[Dict[str, PCMAsset], Dict[str, DecodeError]]:
        """
        Load every key's location.

        Args:
            locations: Source key -> location
            strict: Raise the first failure instead of collecting it

        Returns:
            (assets by key, failures by key)

        Raises:
            DecodeError: In strict mode, when any location fails
        """
        pending = sorted({loc for loc in locations.values() if loc not in self._cache})
        errors: Dict[str, DecodeError] = {}

        if pending:
            logger.info(f"Fetching and decoding {len(pending)} sources")
            workers = max(1, min(self.max_workers, len(pending)))
            with ThreadPoolExecutor(max_workers=workers) as pool:
                futures = {loc: pool.submit(self._fetch_and_decode, loc) for loc in pending}
                for loc, future in futures.items():
                    try:
                        self._cache[loc] = future.result()
                    except DecodeError as e:
                        logger.error(f"Error loading {loc}: {e.reason}")
                        errors[loc] = e

        if strict and errors:
            first_failed = next(loc for loc in pending if loc in errors)
            raise errors[first_failed]

        assets: Dict[str, PCMAsset] = {}
        failures: Dict[str, DecodeError] = {}
        for key, loc in locations.items():
            if loc in self._cache:
                assets[key] = self._cache[loc]
            elif loc in errors:
                failures[key] = errors[loc]
        return assets, failures
