"""
Streaming file downloads with progress.

Downloads stream through ``httpx`` into a ``.part`` file that is renamed
once complete. Each attempt reports progress through an async callback.
Failed attempts are retried with a growing delay, and on POSIX hosts a
final ``curl`` attempt is made.
"""

import asyncio
from pathlib import Path
from typing import Awaitable, Callable

import httpx
import structlog

from braindrive_installer.infrastructure.agent.commands import find_executable, run_command
from braindrive_installer.infrastructure.agent.layout import is_windows

logger = structlog.get_logger()

ProgressCallback = Callable[[int, int | None], Awaitable[None]]

MAX_ATTEMPTS = 3
RETRY_DELAY_SECONDS = 2.0
CONNECT_TIMEOUT_SECONDS = 30.0
CHUNK_SIZE = 64 * 1024


class DownloadError(Exception):
    """All download attempts failed."""


async def download_file(
    url: str,
    destination: Path,
    on_progress: ProgressCallback | None = None,
    client: httpx.AsyncClient | None = None,
) -> Path:
    """
    Download ``url`` to ``destination``.

    Args:
        url: Source URL
        destination: Target file; parent directories are created
        on_progress: Called with (bytes_downloaded, bytes_total or None)
        client: Optional shared client (tests inject a mock transport)

    Returns:
        The destination path

    Raises:
        DownloadError: Every attempt, including the curl fallback, failed
    """
    destination.parent.mkdir(parents=True, exist_ok=True)
    last_error: Exception | None = None

    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            await _stream_to_file(url, destination, on_progress, client)
            logger.info("agent.download.completed", url=url, attempt=attempt)
            return destination
        except (httpx.HTTPError, OSError) as e:
            last_error = e
            logger.warning("agent.download.failed", url=url, attempt=attempt, error=str(e))
            if attempt < MAX_ATTEMPTS:
                await asyncio.sleep(RETRY_DELAY_SECONDS * attempt)

    if not is_windows() and (curl := find_executable("curl")) is not None:
        logger.info("agent.download.curl_fallback", url=url)
        result = await run_command(
            curl, "-fL", "--retry", "3", "--connect-timeout", "30", "-o", destination, url
        )
        if result.success and destination.is_file():
            return destination
        last_error = DownloadError(result.stderr.strip() or f"curl exited with {result.exit_code}")

    raise DownloadError(f"Download failed after {MAX_ATTEMPTS} attempts: {last_error}")


async def _stream_to_file(
    url: str,
    destination: Path,
    on_progress: ProgressCallback | None,
    client: httpx.AsyncClient | None,
) -> None:
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(
            follow_redirects=True,
            timeout=httpx.Timeout(None, connect=CONNECT_TIMEOUT_SECONDS),
        )
    partial = destination.with_name(destination.name + ".part")
    try:
        async with client.stream("GET", url) as response:
            response.raise_for_status()
            length = response.headers.get("content-length")
            total = int(length) if length and length.isdigit() else None
            downloaded = 0
            with open(partial, "wb") as handle:
                async for chunk in response.aiter_bytes(CHUNK_SIZE):
                    handle.write(chunk)
                    downloaded += len(chunk)
                    if on_progress is not None:
                        await on_progress(downloaded, total)
        partial.replace(destination)
    finally:
        if owns_client:
            await client.aclose()
        partial.unlink(missing_ok=True)
