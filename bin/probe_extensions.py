#!/usr/bin/env python3
"""
Probe the Wayback Machine for archived copies of an Imgur upload.

The CDX index can only be queried by exact filename, so every candidate
extension is tried in order until one has a capture:

- Transient failures (timeouts, connection errors, 503/504) are retried
  with a cancellable cooldown, scoped to the current extension
- Any other non-200 status abandons the extension without retrying
- An empty listing is a plain miss
- The first hit short-circuits the search
"""
import argparse
import asyncio
import sys
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Optional, Sequence, Tuple

import aiohttp

from cancel_token import CancelToken, OperationCancelled, cancel_on_signals
from imgur_id import extract_imgur_id
from run_log import LogFn, RunLog, Severity

# Search orders
EXTENSIONS: Tuple[str, ...] = (".jpg", ".png", ".gif", ".gifv", ".mp4", ".webm", ".mpeg")
PRIORITY_EXTENSIONS: Tuple[str, ...] = (".mp4", ".webm", ".gif", ".png", ".jpg", ".mpeg", ".gifv")


def extensions_for(best_quality: bool) -> Tuple[str, ...]:
    """Best-quality order probes video first; quick scan probes images first."""
    return PRIORITY_EXTENSIONS if best_quality else EXTENSIONS


@dataclass(frozen=True)
class ResolverPolicy:
    """Network constants for CDX lookups."""
    request_timeout_sec: float = 20.0
    max_attempts: int = 3               # 1 initial + 2 retries
    retry_cooldown_sec: float = 5.0
    transient_statuses: Tuple[int, ...] = (503, 504)
    cdx_endpoint: str = "https://web.archive.org/cdx/search/cdx"
    media_host: str = "i.imgur.com"
    playback_base: str = "https://web.archive.org"


DEFAULT_POLICY = ResolverPolicy()


@dataclass(frozen=True)
class ArchiveRecord:
    """Playback URL of a capture and the extension whose probe found it."""
    archive_url: str
    fallback_ext: str


class ProbeOutcome(Enum):
    HIT = auto()
    MISS = auto()
    TERMINAL = auto()
    EXHAUSTED = auto()


@dataclass
class ProbeResult:
    outcome: ProbeOutcome
    record: Optional[ArchiveRecord] = None
    attempts: int = 0
    error: Optional[str] = None


def build_probe_url(imgur_id: str, ext: str, policy: ResolverPolicy = DEFAULT_POLICY) -> str:
    return f"https://{policy.media_host}/{imgur_id}{ext}"


def build_playback_url(timestamp: str, original_url: str,
                       policy: ResolverPolicy = DEFAULT_POLICY) -> str:
    # "if_" asks the playback endpoint for the raw capture without the toolbar frame
    return f"{policy.playback_base}/web/{timestamp}if_/{original_url}"


def parse_cdx_listing(data: Any, ext: str,
                      policy: ResolverPolicy = DEFAULT_POLICY) -> Optional[ArchiveRecord]:
    """
    Turn a CDX JSON listing into an ArchiveRecord.

    Row 0 is the header ([urlkey, timestamp, original, ...]); the first
    capture is row 1. Anything shorter or malformed counts as no capture.
    """
    if not isinstance(data, list) or len(data) < 2:
        return None
    row = data[1]
    if not isinstance(row, (list, tuple)) or len(row) < 3:
        return None
    timestamp, original_url = str(row[1]), str(row[2])
    if not timestamp or not original_url:
        return None
    return ArchiveRecord(
        archive_url=build_playback_url(timestamp, original_url, policy),
        fallback_ext=ext,
    )


def _describe_error(exc: BaseException) -> str:
    if isinstance(exc, asyncio.TimeoutError):
        return "Request Timeout"
    return f"Connection Error: {exc}" if str(exc) else f"Connection Error: {type(exc).__name__}"


async def _query_cdx(
    session: aiohttp.ClientSession,
    probe_url: str,
    policy: ResolverPolicy,
) -> Tuple[int, Any]:
    """Single CDX request. Returns (status, decoded listing or None)."""
    params = {"url": probe_url, "output": "json"}
    async with session.get(
        policy.cdx_endpoint,
        params=params,
        timeout=aiohttp.ClientTimeout(total=policy.request_timeout_sec),
    ) as response:
        if response.status != 200:
            return response.status, None
        try:
            data = await response.json(content_type=None)
        except ValueError:
            # Empty body or truncated JSON: nothing usable archived
            data = None
        return response.status, data


async def probe_extension(
    session: aiohttp.ClientSession,
    imgur_id: str,
    ext: str,
    *,
    token: CancelToken,
    log: LogFn,
    policy: ResolverPolicy = DEFAULT_POLICY,
) -> ProbeResult:
    """
    Query the CDX index for one extension, retrying transient failures.

    Args:
        session: aiohttp ClientSession
        imgur_id: Imgur ID being resolved
        ext: Extension to probe, including the dot
        token: Run cancellation token
        log: Log sink callable (message, severity)
        policy: Timeout/retry constants

    Returns:
        ProbeResult with HIT, MISS, TERMINAL or EXHAUSTED

    Raises:
        OperationCancelled: if cancellation is observed before a request or
            during a cooldown
    """
    probe_url = build_probe_url(imgur_id, ext, policy)
    error = None

    for attempt in range(1, policy.max_attempts + 1):
        token.raise_if_cancelled()
        try:
            status, data = await token.guard(_query_cdx(session, probe_url, policy))
        except (asyncio.TimeoutError, aiohttp.ClientError) as e:
            error = _describe_error(e)
        else:
            if status in policy.transient_statuses:
                error = f"Server error: {status}"
            elif status != 200:
                log(f"Failed for {ext}: Status {status}", Severity.ORANGE)
                return ProbeResult(ProbeOutcome.TERMINAL, attempts=attempt,
                                   error=f"Status {status}")
            else:
                record = parse_cdx_listing(data, ext, policy)
                if record is None:
                    return ProbeResult(ProbeOutcome.MISS, attempts=attempt)
                log(f"Found archived version with {ext}", Severity.GREEN)
                return ProbeResult(ProbeOutcome.HIT, record=record, attempts=attempt)

        if attempt == policy.max_attempts:
            log(f"Failed for {ext} after {attempt} attempts: {error}", Severity.RED)
            return ProbeResult(ProbeOutcome.EXHAUSTED, attempts=attempt, error=error)

        log(f"Error for {ext}: {error}. Retrying in {policy.retry_cooldown_sec:g}s...",
            Severity.ORANGE)
        await token.sleep(policy.retry_cooldown_sec)

    # max_attempts < 1: nothing was tried
    return ProbeResult(ProbeOutcome.EXHAUSTED, attempts=0, error=error)


async def find_archived_url(
    session: aiohttp.ClientSession,
    imgur_id: str,
    extensions: Sequence[str],
    *,
    token: CancelToken,
    log: LogFn,
    policy: ResolverPolicy = DEFAULT_POLICY,
) -> Optional[ArchiveRecord]:
    """
    Find the first archived capture of `imgur_id` across `extensions`.

    Returns:
        ArchiveRecord for the first hit, or None once every extension is
        exhausted

    Raises:
        OperationCancelled: if cancellation is requested mid-resolution
    """
    for ext in tuple(extensions):
        token.raise_if_cancelled()
        log(f"Checking for {ext}...")
        result = await probe_extension(session, imgur_id, ext,
                                       token=token, log=log, policy=policy)
        if result.outcome is ProbeOutcome.HIT:
            return result.record
    return None


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Look up archived copies of Imgur uploads without downloading them",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python probe_extensions.py EAU0pfU
  python probe_extensions.py https://imgur.com/gallery/EAU0pfU --best_quality
"""
    )
    p.add_argument("inputs", nargs="+", help="Imgur IDs or URLs")
    p.add_argument("--best_quality", action="store_true",
                   help="Probe video extensions first (slower)")
    return p.parse_args(argv)


async def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    run_log = RunLog()
    token = CancelToken()
    extensions = extensions_for(args.best_quality)
    missing = 0
    with cancel_on_signals(token, lambda: run_log.log("Cancellation requested...", Severity.ORANGE)):
        async with aiohttp.ClientSession(headers={"User-Agent": "imgur-archive/1.0"}) as session:
            for raw in args.inputs:
                imgur_id = extract_imgur_id(raw)
                if imgur_id is None:
                    run_log.log(f"Could not extract a valid ID from: {raw}", Severity.RED)
                    missing += 1
                    continue
                try:
                    record = await find_archived_url(session, imgur_id, extensions,
                                                     token=token, log=run_log.log)
                except OperationCancelled:
                    run_log.log("Probe cancelled.", Severity.ORANGE)
                    return 130
                if record is None:
                    run_log.log(f"{imgur_id}: no archived versions found.", Severity.RED)
                    missing += 1
                else:
                    print(f"{imgur_id}\t{record.fallback_ext}\t{record.archive_url}")

    return 1 if missing else 0


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()
