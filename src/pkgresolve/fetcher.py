"""Repository metadata fetching and index file parsing."""

import gzip
import logging
import xml.etree.ElementTree as ET
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager
from enum import Enum
from os import utime
from pathlib import Path
from urllib.parse import unquote, urljoin, urlparse

import aiofiles
import httpx
from debian import deb822

from pkgresolve.constants import REPOMD_FILE
from pkgresolve.utils import sha256_file, try_parse_date

logger = logging.getLogger(__name__)

REPODATA_DIR = "repodata"


class SkipMode(str, Enum):
    """File download skip modes.
    FAST: Skip download if local file exists.
    CHECK: Skip if the local file matches the expected checksum, else check Last-Modified and Content-Length.
    NONE: Always download.
    """

    FAST = "fast"
    CHECK = "check"
    NONE = "none"


def is_local(url: str) -> bool:
    """True for ``file://`` URLs and plain filesystem paths."""
    scheme = urlparse(url).scheme
    return scheme in ("", "file")


def local_path(url: str) -> Path:
    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(unquote(parsed.path))
    return Path(url)


def repodata_url(base_url: str, name: str) -> str:
    """URL of a file under ``<base>/repodata/``.

    Examples:
        >>> repodata_url("https://example.com/repo", "primary")
        'https://example.com/repo/repodata/primary'
    """
    if is_local(base_url):
        return str(local_path(base_url) / REPODATA_DIR / name)
    prefix = base_url if base_url.endswith("/") else f"{base_url}/"
    return urljoin(prefix, f"{REPODATA_DIR}/{name}")


@asynccontextmanager
async def open_client(client: httpx.AsyncClient | None = None) -> AsyncIterator[httpx.AsyncClient]:
    """Yield ``client`` as-is, or a short-lived client when none is given."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(follow_redirects=True, timeout=30.0) as new_client:
        yield new_client


async def fetch_bytes(url: str, client: httpx.AsyncClient) -> bytes:
    """Read a remote or local file.

    Raises:
        httpx.HTTPError: On network or HTTP status failure
        OSError: If a local file cannot be read
    """
    if is_local(url):
        async with aiofiles.open(local_path(url), "rb") as f:
            return await f.read()
    response = await client.get(url)
    response.raise_for_status()
    return response.content


async def download_file(
    url: str,
    output_path: Path,
    client: httpx.AsyncClient,
    skip_mode: SkipMode = SkipMode.CHECK,
    expected_sha256: str | None = None,
    reuse_from: Path | None = None,
) -> bool:
    """Download a file from a URL to a local path.

    Args:
        url: The URL (or local path) to download from
        output_path: Where to save the downloaded file
        client: HTTP client for remote URLs
        skip_mode: The mode for skipping downloads if the file exists
        expected_sha256: Checksum the result must have, if known
        reuse_from: A previously cached copy that may be reused when its checksum matches

    Returns:
        True if successful, False if download failed
    """
    try:
        if reuse_from is not None and expected_sha256 and skip_mode != SkipMode.NONE and reuse_from.is_file():
            if sha256_file(reuse_from) == expected_sha256:
                output_path.parent.mkdir(parents=True, exist_ok=True)
                output_path.write_bytes(reuse_from.read_bytes())
                logger.debug(f"Reusing cached {reuse_from.name}, checksum matches")
                return True

        existing = output_path.is_file()
        if existing and skip_mode == SkipMode.FAST:
            logger.debug(f"Skipping download, file already exists: {output_path}")
            return True

        if is_local(url):
            content = await fetch_bytes(url, client)
            last_modified = None
        else:
            if existing and skip_mode == SkipMode.CHECK and expected_sha256 is None:
                try:
                    response = await client.head(url)
                    response.raise_for_status()
                    if remote_ts := try_parse_date(response.headers.get("last-modified")):
                        # allow a second for fs granularity
                        if remote_ts.timestamp() <= output_path.stat().st_mtime + 1:
                            logger.debug(f"Skipping download, local file mtime matches: {output_path}")
                            return True
                    elif remote_size := response.headers.get("content-length"):
                        if int(remote_size) == output_path.stat().st_size:
                            logger.debug(f"Skipping download, local file size matches remote: {output_path}")
                            return True
                except httpx.HTTPError as e:
                    logger.warning(f"Unable to check remote mtime or size for {url}: {e}")

            response = await client.get(url)
            response.raise_for_status()
            content = response.content
            last_modified = try_parse_date(response.headers.get("last-modified"))

        output_path.parent.mkdir(parents=True, exist_ok=True)
        async with aiofiles.open(output_path, "wb") as f:
            await f.write(content)
        if last_modified is not None:
            utime(output_path, (last_modified.timestamp(), last_modified.timestamp()))

        logger.debug(f"Downloaded {url} to {output_path}")
        return True

    except httpx.HTTPStatusError as e:
        msg = f"Failed to download {url}: {e}"
        if e.response.status_code == 404:
            logger.debug(msg)
        else:
            logger.warning(msg)
        return False
    except (httpx.HTTPError, OSError) as e:
        logger.warning(f"Failed to download {url}: {e}")
        return False


def parse_mirrorlist(text: str) -> list[str]:
    """Base URLs from a mirrorlist: one per line, ``#`` comments allowed."""
    urls = []
    for line in text.splitlines():
        line = line.strip()
        if line and not line.startswith("#") and line not in urls:
            urls.append(line)
    return urls


def parse_metalink(text: str) -> list[str]:
    """Base URLs from a metalink document, in document order.

    Metalink ``<url>`` entries point at the repomd file; the repodata suffix is stripped.

    Raises:
        ValueError: If the document is not valid XML
    """
    try:
        root = ET.fromstring(text)
    except ET.ParseError as e:
        raise ValueError(f"Invalid metalink document: {e}") from e

    suffix = f"{REPODATA_DIR}/{REPOMD_FILE}"
    urls = []
    for element in root.iter():
        if element.tag.rsplit("}", 1)[-1] != "url" or not element.text:
            continue
        url = element.text.strip()
        if urlparse(url).scheme not in ("http", "https", "file"):
            continue
        base = url[: -len(suffix)] if url.endswith(suffix) else url
        if base not in urls:
            urls.append(base)
    return urls


def parse_repomd(text: str) -> tuple[dict, dict[str, tuple[str, int]]]:
    """Parse a repomd index file.

    Returns:
        Tuple of (header fields, {file name: (sha256, size)})

    Raises:
        ValueError: If the file has no paragraph or malformed checksum entries
    """
    release = deb822.Release(text)
    if not release:
        raise ValueError("repomd file is empty")
    files: dict[str, tuple[str, int]] = {}
    for entry in release.get("SHA256", []):
        try:
            files[entry["name"]] = (entry["sha256"].lower(), int(entry["size"]))
        except (KeyError, ValueError) as e:
            raise ValueError(f"Malformed SHA256 entry in repomd: {entry}") from e
    header = {key: value for key, value in release.items() if key.lower() != "sha256"}
    return header, files


def iter_index_entries(path: Path) -> Iterator[dict]:
    """Stream paragraphs from an index file, plain or gzip-compressed."""

    def _open_text_stream():
        if path.suffix == ".gz":
            return gzip.open(path, "rt", encoding="utf-8")
        return path.open("rt", encoding="utf-8")

    with _open_text_stream() as handle:
        for paragraph in deb822.Deb822.iter_paragraphs(handle, use_apt_pkg=False):
            yield dict(paragraph)
