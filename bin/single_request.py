#!/usr/bin/env python3
"""
FLOW-Load Single Request Module

Request-level building blocks used by run_load.py:
- load_url_source(): lazy URL reader (text, csv, parquet)
- rewrite_url(): optional host/path substitution before dispatch
- create_session(): shared aiohttp session with a large connection pool
- execute_request(): one timed GET, returning a SampleOutcome or None
"""

import asyncio
import os
import time
from dataclasses import dataclass
from typing import Iterator, Optional
from urllib.parse import urlsplit, urlunsplit

import aiohttp
import polars as pl
from tqdm import tqdm

from load_stats import SampleOutcome


MAX_IDLE_CONNECTIONS = 1000
REQUEST_TIMEOUT_SEC = 5
USER_AGENT = "FLOW-Load/1.0"

# Chunk size used while draining response bodies
DRAIN_CHUNK_SIZE = 64 * 1024


class InvalidURLError(ValueError):
    """Raised when a URL cannot be parsed for rewriting."""


@dataclass(frozen=True)
class PathRule:
    """Replace the first occurrence of `match` in a URL path with `replacement`."""
    match: str
    replacement: str


@dataclass(frozen=True)
class RewriteRule:
    """Host override plus optional path rule applied to every URL."""
    host: str = ""
    path_rule: Optional[PathRule] = None

    def apply(self, url: str) -> str:
        return rewrite_url(url, self.host, self.path_rule)


def parse_path_rule(spec: str) -> PathRule:
    """
    Parse a `<match>:<replacement>` rule.

    Raises:
        ValueError: If the rule does not have exactly two segments
    """
    parts = spec.split(":")
    if len(parts) != 2:
        raise ValueError(f"path format: <raw>:<new>, got {spec!r}")
    return PathRule(match=parts[0], replacement=parts[1])


def rewrite_url(raw_url: str, host: str = "", path_rule: Optional[PathRule] = None) -> str:
    """
    Point a URL at another host, optionally patching its path.

    Without a host override the URL is returned untouched and never parsed,
    so malformed input is left for the HTTP layer to reject.

    Args:
        raw_url: URL as read from the input
        host: Replacement authority (host[:port]); empty disables rewriting
        path_rule: Optional first-occurrence substitution inside the path

    Returns:
        The rewritten URL

    Raises:
        InvalidURLError: If raw_url cannot be parsed
    """
    if not host:
        return raw_url

    try:
        parts = urlsplit(raw_url)
        parts.port  # validates the port component
    except ValueError as e:
        raise InvalidURLError(f"parse url[{raw_url}] fail: {e}") from e

    userinfo, sep, _ = parts.netloc.rpartition("@")
    netloc = f"{userinfo}{sep}{host}"

    path = parts.path
    if path_rule is not None:
        path = path.replace(path_rule.match, path_rule.replacement, 1)

    return urlunsplit((parts.scheme, netloc, path, parts.query, parts.fragment))


def infer_input_format(file_path: str) -> str:
    """Guess the input format from the file extension."""
    if file_path.endswith(".parquet"):
        return "parquet"
    if file_path.endswith(".csv"):
        return "csv"
    return "text"


def _iter_text_lines(file_path: str) -> Iterator[str]:
    with open(file_path, "r", encoding="utf-8", errors="replace") as f:
        for line in f:
            url = line.strip()
            if url:
                yield url


def load_url_source(file_path: str, file_format: Optional[str] = None, url_col: str = "url") -> Iterator[str]:
    """
    Open the URL input and return a lazy iterator over its URLs.

    Plain text is streamed line by line. Tabular formats are read with
    Polars and the URL column is cleaned the same way (nulls dropped,
    whitespace stripped, empty strings removed).

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the format is unsupported or the URL column is missing
    """
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"Input file {file_path} not found")

    if file_format is None:
        file_format = infer_input_format(file_path)

    if file_format == "text":
        # Open eagerly so permission errors surface at startup
        with open(file_path, "r", encoding="utf-8"):
            pass
        return _iter_text_lines(file_path)

    if file_format == "parquet":
        df = pl.read_parquet(file_path)
    elif file_format == "csv":
        df = pl.read_csv(file_path)
    else:
        raise ValueError(f"Unsupported file format: {file_format}")

    if url_col not in df.columns:
        raise ValueError(f"URL column '{url_col}' not found. Available: {df.columns[:10]}")

    urls = (
        df.select(pl.col(url_col).cast(pl.Utf8).str.strip_chars())
        .filter(pl.col(url_col).is_not_null() & (pl.col(url_col).str.len_chars() > 0))
        .get_column(url_col)
    )
    return iter(urls)


def create_session(
    max_connections: int = MAX_IDLE_CONNECTIONS,
    timeout_sec: float = REQUEST_TIMEOUT_SEC,
    enforce_timeout: bool = False,
) -> aiohttp.ClientSession:
    """
    Build the shared HTTP session.

    The connector keeps up to `max_connections` sockets for reuse across
    requests. Unless `enforce_timeout` is set, requests have no deadline.
    """
    connector = aiohttp.TCPConnector(
        limit=max_connections,
        limit_per_host=0,
        ttl_dns_cache=300,
        use_dns_cache=True,
    )
    total = timeout_sec if enforce_timeout else None
    return aiohttp.ClientSession(
        connector=connector,
        timeout=aiohttp.ClientTimeout(total=total),
        headers={"User-Agent": USER_AGENT},
    )


async def execute_request(
    session: aiohttp.ClientSession,
    url: str,
    rewrite: Optional[RewriteRule] = None,
) -> Optional[SampleOutcome]:
    """
    Send one GET and time it.

    The body is read to the end and thrown away so the connection goes back
    to the pool. Latency covers request start through the end of the body,
    in whole milliseconds.

    Returns:
        SampleOutcome, or None if the URL could not be rewritten or the
        request failed at the transport level
    """
    begin = time.monotonic()

    if rewrite is not None:
        try:
            url = rewrite.apply(url)
        except InvalidURLError as e:
            tqdm.write(f"[Rewrite] {e}")
            return None

    try:
        async with session.get(url) as response:
            async for _ in response.content.iter_chunked(DRAIN_CHUNK_SIZE):
                pass
            status = response.status
    except asyncio.TimeoutError:
        tqdm.write(f"[Request] send request fail: timeout after budget for {url}")
        return None
    except aiohttp.ClientError as e:
        tqdm.write(f"[Request] send request fail: {e}")
        return None

    elapsed_ms = float(int((time.monotonic() - begin) * 1000))
    return SampleOutcome(latency_ms=elapsed_ms, status_code=status)
