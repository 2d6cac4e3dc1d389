#!/usr/bin/env python3
"""
Imgur Archive Single Download Module

Download functions for one Imgur ID at a time.
Handles archive lookup, content-type reconciliation and collision-safe naming.

This module is used by download_batch.py and provides:
- run_pipeline(): Resolve + download one ID, returning a PipelineResult
- download_archived(): Stream an archived capture to disk
- next_free_path(): Deterministic "<id>_<n><ext>" collision avoidance
- load_batch_lines(): Batch input loader (txt, csv, parquet)
- open_file(): Hand a downloaded file to the platform viewer
"""

import argparse
import asyncio
import os
import shutil
import subprocess
import sys
import time
from dataclasses import dataclass
from enum import Enum
from http import HTTPStatus
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import aiohttp
import polars as pl

from cancel_token import CancelToken, OperationCancelled, cancel_on_signals
from imgur_id import extract_imgur_id
from probe_extensions import (
    DEFAULT_POLICY,
    ArchiveRecord,
    ResolverPolicy,
    extensions_for,
    find_archived_url,
)
from run_log import LogFn, RunLog, Severity

PathLike = Union[str, os.PathLike]

MIME_TYPE_MAP = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "video/mp4": ".mp4",
    "video/webm": ".webm",
    "video/mpeg": ".mpeg",
}

CHUNK_SIZE = 64 * 1024
# No total limit: large videos may take a while, a stalled socket may not
DOWNLOAD_TIMEOUT = aiohttp.ClientTimeout(total=None, sock_connect=20, sock_read=60)


class ResultStatus(Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PipelineResult:
    """Outcome of one pipeline run; returned, never raised."""
    status: ResultStatus
    path: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def success(cls, path: PathLike) -> "PipelineResult":
        return cls(ResultStatus.SUCCESS, path=str(path))

    @classmethod
    def failure(cls, message: str) -> "PipelineResult":
        return cls(ResultStatus.FAILURE, message=message)

    @classmethod
    def cancelled(cls) -> "PipelineResult":
        return cls(ResultStatus.CANCELLED, message="Download cancelled by user.")

    @property
    def ok(self) -> bool:
        return self.status is ResultStatus.SUCCESS

    @property
    def is_cancelled(self) -> bool:
        return self.status is ResultStatus.CANCELLED


def default_download_dir() -> Path:
    """Platform downloads folder (~/Downloads)."""
    return Path.home() / "Downloads"


def extension_for_content_type(content_type: Optional[str]) -> Optional[str]:
    """
    Map a Content-Type header to a file extension.

    Args:
        content_type: Raw header value, parameters allowed ("video/mp4; codecs=...")

    Returns:
        Extension including the dot, or None for unknown types
    """
    if not content_type:
        return None
    mime = content_type.split(";", 1)[0].strip().lower()
    return MIME_TYPE_MAP.get(mime)


def temp_path_for(dest_dir: PathLike, imgur_id: str) -> Path:
    """Per-run temporary path: <dir>/<id>-<epochMillis>.tmp"""
    return Path(dest_dir) / f"{imgur_id}-{int(time.time() * 1000)}.tmp"


def next_free_path(dest_dir: PathLike, imgur_id: str, ext: str) -> Path:
    """
    First unused final path for an ID.

    Tries "<id><ext>", then "<id>_2<ext>", "<id>_3<ext>", ... in order, so
    repeated runs produce the same sequence of names.
    """
    dest = Path(dest_dir)
    candidate = dest / f"{imgur_id}{ext}"
    counter = 1
    while candidate.exists():
        counter += 1
        candidate = dest / f"{imgur_id}_{counter}{ext}"
    return candidate


def _discard(path: Path) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        print(f"[I/O] Could not remove temporary file {path}: {e}")


async def _stream_to_file(
    session: aiohttp.ClientSession,
    record: ArchiveRecord,
    tmp_path: Path,
    token: CancelToken,
    log: LogFn,
    timeout: aiohttp.ClientTimeout,
    chunk_size: int,
) -> Tuple[int, str, int]:
    """
    Stream the capture body to `tmp_path`.

    Returns:
        Tuple of (status_code, extension, bytes_written)
    """
    ext = record.fallback_ext
    async with session.get(record.archive_url, timeout=timeout) as response:
        # Headers arrive before the body: the served bytes decide the type,
        # not the filename that was probed
        mapped = extension_for_content_type(response.headers.get("Content-Type"))
        if mapped:
            log(f"Server suggests file type is '{mapped}'.", Severity.BLUE)
            ext = mapped

        if response.status != 200:
            return response.status, ext, 0

        written = 0
        with open(tmp_path, "wb") as f:
            async for chunk in response.content.iter_chunked(chunk_size):
                token.raise_if_cancelled()
                f.write(chunk)
                written += len(chunk)
        return response.status, ext, written


async def download_archived(
    session: aiohttp.ClientSession,
    record: ArchiveRecord,
    imgur_id: str,
    dest_dir: PathLike,
    *,
    token: CancelToken,
    log: LogFn,
    timeout: aiohttp.ClientTimeout = DOWNLOAD_TIMEOUT,
    chunk_size: int = CHUNK_SIZE,
) -> PipelineResult:
    """
    Download an archived capture and commit it under a collision-free name.

    The body goes to a temporary file first because the final extension is
    only known once the response headers arrive.

    Args:
        session: aiohttp ClientSession
        record: Resolved archive record
        imgur_id: Imgur ID (used for file naming)
        dest_dir: Destination directory (created if missing)
        token: Run cancellation token
        log: Log sink callable (message, severity)
        timeout: Per-request aiohttp timeout
        chunk_size: Streaming chunk size in bytes

    Returns:
        PipelineResult: SUCCESS with the final path, FAILURE or CANCELLED
    """
    dest = Path(dest_dir)
    try:
        dest.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        return PipelineResult.failure(f"Cannot create download folder {dest}: {e}")

    tmp_path = temp_path_for(dest, imgur_id)

    try:
        status, final_ext, _ = await token.guard(
            _stream_to_file(session, record, tmp_path, token, log, timeout, chunk_size)
        )
    except OperationCancelled:
        _discard(tmp_path)
        return PipelineResult.cancelled()
    except asyncio.TimeoutError:
        _discard(tmp_path)
        return PipelineResult.failure("Download failed: Request Timeout")
    except aiohttp.ClientError as e:
        _discard(tmp_path)
        return PipelineResult.failure(f"Download failed: Connection Error: {e}")
    except OSError as e:
        _discard(tmp_path)
        return PipelineResult.failure(f"Could not write temporary file: {e}")
    except Exception as e:
        _discard(tmp_path)
        return PipelineResult.failure(f"Download failed: {e}")

    if status != 200:
        _discard(tmp_path)
        try:
            status_name = HTTPStatus(status).phrase
        except ValueError:
            status_name = "Unknown"
        return PipelineResult.failure(f"Download failed. Status: {status} {status_name}")

    try:
        output_path = next_free_path(dest, imgur_id, final_ext)
        shutil.move(str(tmp_path), str(output_path))
    except OSError as e:
        _discard(tmp_path)
        return PipelineResult.failure(f"Could not save file: {e}")

    log(f"Success! Saved to: {output_path}", Severity.GREEN)
    return PipelineResult.success(output_path)


async def run_pipeline(
    session: aiohttp.ClientSession,
    imgur_id: str,
    *,
    best_quality: bool,
    dest_dir: PathLike,
    token: CancelToken,
    log: LogFn,
    policy: ResolverPolicy = DEFAULT_POLICY,
) -> PipelineResult:
    """
    Resolve and download a single Imgur ID.

    Every fault inside the run is converted into a PipelineResult so that
    batch callers can aggregate outcomes without handling exceptions.
    """
    log(f"Processing ID: {imgur_id}", Severity.BLUE)
    log(f"Using {'Best Quality' if best_quality else 'Quick Scan'} mode.", Severity.PURPLE)

    try:
        record = await find_archived_url(
            session, imgur_id, extensions_for(best_quality),
            token=token, log=log, policy=policy,
        )
        if record is None:
            result = PipelineResult.failure("No archived versions found.")
        else:
            result = await download_archived(session, record, imgur_id, dest_dir,
                                              token=token, log=log)
    except OperationCancelled:
        result = PipelineResult.cancelled()
    except Exception as e:
        result = PipelineResult.failure(str(e) or type(e).__name__)

    if result.is_cancelled:
        log(f"Cancelled while processing ID {imgur_id}.", Severity.ORANGE)
    elif not result.ok:
        log(f"Failed for ID {imgur_id}: {result.message}", Severity.RED)
    return result


def load_batch_lines(file_path: PathLike, column: Optional[str] = None,
                     log: Optional[LogFn] = None) -> Optional[List[str]]:
    """
    Load batch entries from a text, CSV or parquet file.

    Text files hold one ID or URL per line. CSV and parquet files are read
    with Polars; `column` selects the column (default: the first one).

    Returns:
        Non-empty list of stripped entries, or None when there is nothing to
        run (missing file, unreadable file, no entries)
    """
    log = log or RunLog(echo=False).log
    path = Path(file_path)
    if not path.exists():
        log(f"Error reading batch file: {path} not found", Severity.RED)
        return None

    suffix = path.suffix.lower()
    try:
        if suffix in ("", ".txt", ".list"):
            with path.open("r", encoding="utf-8") as f:
                entries = [line.strip() for line in f.read().splitlines()]
        elif suffix in (".csv", ".parquet"):
            df = pl.read_csv(path) if suffix == ".csv" else pl.read_parquet(path)
            col = column or (df.columns[0] if df.columns else None)
            if col is None or col not in df.columns:
                log(f"Column '{column}' not found. Available: {df.columns[:10]}", Severity.RED)
                return None
            entries = (
                df[col].drop_nulls().cast(pl.Utf8).str.strip_chars().to_list()
            )
        else:
            log(f"Unsupported batch file format: {suffix}", Severity.RED)
            return None
    except (OSError, UnicodeDecodeError, pl.exceptions.PolarsError) as e:
        log(f"Error reading batch file: {e}", Severity.RED)
        return None

    entries = [e for e in entries if e]
    if not entries:
        log(f"Batch file {path.name} contains no entries.", Severity.ORANGE)
        return None

    log(f"Reading batch file: {path.name}")
    return entries


def open_file(path: Optional[PathLike], log: LogFn) -> bool:
    """Open a downloaded file with the platform's default handler."""
    if not path:
        log("No file path available to open.", Severity.RED)
        return False
    try:
        if sys.platform.startswith("win"):
            os.startfile(str(path))
        elif sys.platform == "darwin":
            subprocess.Popen(["open", str(path)])
        else:
            subprocess.Popen(["xdg-open", str(path)])
    except OSError as e:
        log(f"Error opening file: {e}", Severity.RED)
        return False
    log(f"Opening {path}...", Severity.BLUE)
    return True


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Download an archived copy of a single Imgur upload",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python single_download.py EAU0pfU
  python single_download.py https://imgur.com/gallery/EAU0pfU --best_quality --open
"""
    )
    p.add_argument("input", help="Imgur ID or URL, e.g. EAU0pfU or imgur.io/EAU0pfU.jpg")
    p.add_argument("--output", dest="output_folder", type=str, default=None,
                   help="Destination folder (default: ~/Downloads)")
    p.add_argument("--best_quality", action="store_true",
                   help="Search for best quality (slower)")
    p.add_argument("--open", dest="open_after", action="store_true",
                   help="Open the file after a successful download")
    return p.parse_args(argv)


async def main_single(argv: Optional[Sequence[str]] = None) -> int:
    """Standalone entry point for one Imgur ID."""
    args = parse_args(argv)
    run_log = RunLog()
    token = CancelToken()

    imgur_id = extract_imgur_id(args.input)
    if imgur_id is None:
        run_log.log(f"Could not extract a valid ID from: {args.input}", Severity.RED)
        return 2

    dest_dir = Path(args.output_folder) if args.output_folder else default_download_dir()
    with cancel_on_signals(token, lambda: run_log.log("Cancellation requested...", Severity.ORANGE)):
        async with aiohttp.ClientSession(headers={"User-Agent": "imgur-archive/1.0"}) as session:
            result = await run_pipeline(session, imgur_id, best_quality=args.best_quality,
                                        dest_dir=dest_dir, token=token, log=run_log.log)

    if result.ok:
        if args.open_after:
            open_file(result.path, run_log.log)
        return 0
    return 130 if result.is_cancelled else 1


def run() -> None:
    try:
        sys.exit(asyncio.run(main_single()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    run()
