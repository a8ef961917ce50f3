"""Generic fetch capabilities: text documents and streamed binary bodies."""
import asyncio
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Optional

import aiohttp
import aiofiles

from .constants import HOP_BY_HOP_HEADERS, REQUEST_HEADERS, REQUEST_TIMEOUTS, STREAM_CHUNK_SIZE
from .exceptions import FilesystemError, NetworkError

ByteCallback = Callable[[int], Awaitable[Any]]


def build_request_headers(headers: Optional[Dict[str, str]]) -> Dict[str, str]:
    """
    Merges captured request headers over the worker defaults.

    Headers the client computes for itself (Host, Content-Length, ...) are dropped,
    and the default User-Agent only applies when none was captured.
    """
    merged = dict(REQUEST_HEADERS)
    for name, value in (headers or {}).items():
        if name.lower() in HOP_BY_HOP_HEADERS:
            continue
        if name.lower() == 'user-agent':
            merged.pop('User-Agent', None)
        merged[name] = value
    return merged


class HttpFetcher:
    """Performs HTTP GETs over one shared aiohttp session."""

    def __init__(self, connect_timeout: float = REQUEST_TIMEOUTS[0], read_timeout: float = REQUEST_TIMEOUTS[1],
                 session: Optional[aiohttp.ClientSession] = None):
        self.logger = logging.getLogger(__name__)
        self.timeout = aiohttp.ClientTimeout(total=None, sock_connect=connect_timeout, sock_read=read_timeout)
        self._session = session

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    @asynccontextmanager
    async def _open(self, url: str, headers: Optional[Dict[str, str]]) -> AsyncIterator[aiohttp.ClientResponse]:
        session = await self._get_session()
        try:
            async with session.get(url, headers=build_request_headers(headers), allow_redirects=True) as response:
                if not 200 <= response.status < 300:
                    raise NetworkError(f"HTTP {response.status} for {url}", url=url, status=response.status)
                if response.status != 206 and any(name.lower() == 'range' for name in headers or {}):
                    raise NetworkError(f"Server ignored the byte range for {url}", url=url, status=response.status)
                yield response
        except aiohttp.ClientError as e:
            raise NetworkError(f"Request failed for {url}: {e}", url=url) from e
        except asyncio.TimeoutError as e:
            raise NetworkError(f"Request timed out for {url}", url=url) from e

    async def fetch_text(self, url: str, headers: Optional[Dict[str, str]] = None) -> str:
        """Fetches a document (playlist, MPD) as text."""
        self.logger.debug(f"Fetching text from {url}")
        async with self._open(url, headers) as response:
            return await response.text(errors='replace')

    async def fetch_to_file(self, url: str, dest: Path, headers: Optional[Dict[str, str]] = None,
                            on_bytes: Optional[ByteCallback] = None, append: bool = False,
                            on_length: Optional[Callable[[Optional[int]], Awaitable[None]]] = None,
                            checkpoint: Optional[Callable[[], Awaitable[None]]] = None) -> int:
        """
        Streams a response body into ``dest``.

        Args:
            url: The resource to fetch.
            dest: The file to write; truncated unless ``append`` is set.
            headers: Captured request headers.
            on_bytes: Awaited with the running byte count for this body after every chunk.
            append: Append to ``dest`` instead of truncating it.
            on_length: Awaited once with the response Content-Length (or None).
            checkpoint: Awaited between chunks; lets the caller suspend the transfer.

        Returns:
            The number of bytes written.
        """
        written = 0
        async with self._open(url, headers) as response:
            if on_length is not None:
                await on_length(response.content_length)
            try:
                async with aiofiles.open(dest, 'ab' if append else 'wb') as f_out:
                    async for chunk in response.content.iter_chunked(STREAM_CHUNK_SIZE):
                        await f_out.write(chunk)
                        written += len(chunk)
                        if on_bytes is not None:
                            await on_bytes(written)
                        if checkpoint is not None:
                            await checkpoint()
            except (aiohttp.ClientError, asyncio.TimeoutError):
                raise
            except OSError as e:
                raise FilesystemError(f"Could not write {dest}: {e}") from e
        return written
