"""
Streams a remote file to disk over HTTP with retries and adaptive chunk sizing.
"""

import asyncio
import logging
from pathlib import Path
from typing import Optional

import aiofiles
import aiohttp
from rich.progress import TaskID

from lumisync.cli.progress_manager import ProgressManager
from lumisync.exceptions import FilesystemError, NetworkError, ProtocolError
from lumisync.models.sync import RunSummary

log = logging.getLogger(__name__)

# Client errors that will not go away by asking again
_PERMANENT_STATUSES = frozenset(range(400, 500)) - {408, 429}


class Downloader:
    """A low-level file downloader with retry logic and adaptive chunk sizing."""

    MIN_CHUNK_SIZE = 131072  # 128 KB
    MAX_CHUNK_SIZE = 1048576  # 1 MB

    def __init__(
        self,
        session: aiohttp.ClientSession,
        max_attempts: int = 3,
        base_delay: float = 1.5,
    ):
        self._session = session
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self._chunk_size = self.MIN_CHUNK_SIZE

    def _adapt_chunk_size(self, current_speed_bps: float) -> int:
        """Adapts the chunk size shared by all transfers to the observed speed."""
        if current_speed_bps > 10 * 1024 * 1024:  # > 10 MB/s
            self._chunk_size = self.MAX_CHUNK_SIZE
        elif current_speed_bps > 5 * 1024 * 1024:  # > 5 MB/s
            self._chunk_size = 524288  # 512 KB
        elif current_speed_bps > 1 * 1024 * 1024:  # > 1 MB/s
            self._chunk_size = 262144  # 256 KB
        else:
            self._chunk_size = self.MIN_CHUNK_SIZE
        return self._chunk_size

    async def download_file(
        self,
        url: str,
        destination_path: Path,
        total_size_estimate: int = 0,
        stats: Optional[RunSummary] = None,
        progress_manager: Optional[ProgressManager] = None,
        task_id: Optional[TaskID] = None,
    ) -> int:
        """
        Downloads ``url`` into ``destination_path``, truncating it on every
        attempt.

        Returns:
            The number of bytes written.

        Raises:
            NetworkError: All attempts failed at the transport level.
            ProtocolError: The server refused the file outright (4xx).
            FilesystemError: The destination could not be written.
        """
        last_exception: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await self._attempt(
                    url,
                    destination_path,
                    total_size_estimate,
                    stats,
                    progress_manager,
                    task_id,
                )
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_exception = e
                log.debug(
                    f"Download attempt {attempt}/{self.max_attempts} for "
                    f"'{destination_path.name}' failed: {e}. Retrying..."
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.base_delay * (2 ** (attempt - 1)))

        raise NetworkError(
            f"Download failed after {self.max_attempts} attempts: {last_exception}"
        ) from last_exception

    async def _attempt(
        self,
        url: str,
        destination_path: Path,
        total_size_estimate: int,
        stats: Optional[RunSummary],
        progress_manager: Optional[ProgressManager],
        task_id: Optional[TaskID],
    ) -> int:
        async with self._session.get(url, allow_redirects=True) as response:
            if response.status in _PERMANENT_STATUSES:
                raise ProtocolError(f"Download refused with HTTP {response.status}")
            response.raise_for_status()

            effective_total_size = int(
                response.headers.get("Content-Length", total_size_estimate) or 0
            )
            if progress_manager and task_id is not None:
                progress_manager.update_task_total(task_id, total=effective_total_size)

            bytes_downloaded = 0
            loop = asyncio.get_running_loop()
            last_speed_check = loop.time()
            try:
                async with aiofiles.open(destination_path, "wb") as f:
                    async for chunk in response.content.iter_chunked(self._chunk_size):
                        await f.write(chunk)
                        bytes_downloaded += len(chunk)

                        if stats:
                            stats.bytes_transferred += len(chunk)
                            await stats.update_speed_stats(
                                stats.bytes_transferred, progress_manager
                            )
                            now = loop.time()
                            if now - last_speed_check > 2.0:
                                self._adapt_chunk_size(stats.current_speed_bps)
                                last_speed_check = now

                        if progress_manager and task_id is not None:
                            progress_manager.update_task_progress(
                                task_id, completed=bytes_downloaded
                            )
            except aiohttp.ClientError:
                # ClientOSError is also an OSError but belongs to the transfer
                raise
            except OSError as e:
                raise FilesystemError(
                    f"Cannot write '{destination_path.name}': {e.strerror or e}"
                ) from e
            return bytes_downloaded
