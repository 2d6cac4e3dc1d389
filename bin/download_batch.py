#!/usr/bin/env python3
"""
Imgur Archive Batch Downloader

Runs the single-ID pipeline over a list of Imgur IDs/URLs, one at a time.

Key Design Principles:
- Strictly sequential: the Wayback Machine is shared and rate-sensitive, so
  one ID is resolved and downloaded at a time with a cooldown in between
- Failures are collected, never fatal: an item that fails is recorded and
  the batch moves on
- Retry is opt-in: a second pass over exactly the collected failures runs
  only when the caller asks for it, and is never repeated automatically
- Cancellation (Ctrl-C) stops the batch at the next checkpoint

State Machine (per batch):
    IDLE → RUNNING(i=0..n-1) → COMPLETED | CANCELLED
                                   ↓
                         RETRYING_FAILED(j=0..m-1) → COMPLETED
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence

import aiohttp
from tqdm import tqdm

from cancel_token import (
    CancelToken,
    OperationCancelled,
    cancel_on_signals,
    default_interrupts,
)
from imgur_id import extract_imgur_id
from run_log import LogFn, RunLog, Severity
from single_download import (
    PipelineResult,
    default_download_dir,
    load_batch_lines,
    run_pipeline,
)

# Polite pause between batch items
BATCH_COOLDOWN_SEC = 0.5

ProcessFn = Callable[[str], Awaitable[PipelineResult]]
SleepFn = Callable[[float], Awaitable[None]]


# =============================================================================
# CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class Config:
    """Main application configuration."""
    input_path: str
    output_folder: str

    column: Optional[str] = None
    best_quality: bool = False

    # Retry pass over failed IDs: ask | yes | no
    retry_failed: str = "ask"

    # Output options
    create_overview: bool = True
    progress: bool = True


RETRY_CHOICES = ("ask", "yes", "no")


def parse_args(argv: Optional[Sequence[str]] = None) -> Config:
    """Parse command line arguments or JSON config file."""
    p = argparse.ArgumentParser(
        description="Imgur Archive Batch Downloader (Wayback Machine)",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python download_batch.py --input ids.txt
  python download_batch.py --input links.csv --column url --best_quality --retry_failed yes
  python download_batch.py --config batch.json
"""
    )

    p.add_argument("--config", type=str, help="Path to JSON config file")

    # Input/Output
    p.add_argument("--input", dest="input_path", type=str,
                   help="Batch file (.txt one entry per line, .csv or .parquet)")
    p.add_argument("--column", type=str, default=None,
                   help="Column holding IDs/URLs for csv/parquet input (default: first)")
    p.add_argument("--output", dest="output_folder", type=str, default=None,
                   help="Destination folder (default: ~/Downloads)")

    # Search mode
    p.add_argument("--best_quality", action="store_true",
                   help="Search for best quality (slower)")

    # Retry
    p.add_argument("--retry_failed", type=str, default="ask", choices=RETRY_CHOICES,
                   help="Retry failed IDs once after the batch")

    # Output options
    p.add_argument("--no_overview", action="store_true")
    p.add_argument("--no_progress", action="store_true")

    args = p.parse_args(argv)

    # Load from JSON config if provided
    if args.config:
        cfg_path = Path(args.config)
        with cfg_path.open("r") as f:
            data = json.load(f)

        if not data.get("input"):
            p.error(f"'input' is required in config file {cfg_path}")

        retry_failed = str(data.get("retry_failed", "ask"))
        if retry_failed not in RETRY_CHOICES:
            p.error(f"retry_failed must be one of {', '.join(RETRY_CHOICES)}")

        return Config(
            input_path=str(data["input"]),
            output_folder=data.get("output") or str(default_download_dir()),
            column=data.get("column"),
            best_quality=bool(data.get("best_quality", False)),
            retry_failed=retry_failed,
            create_overview=bool(data.get("create_overview", True)),
            progress=bool(data.get("progress", True)),
        )

    # Validate required args
    if not args.input_path:
        p.error("--input is required unless --config is provided")

    return Config(
        input_path=args.input_path,
        output_folder=args.output_folder or str(default_download_dir()),
        column=args.column,
        best_quality=args.best_quality,
        retry_failed=args.retry_failed,
        create_overview=not args.no_overview,
        progress=not args.no_progress,
    )


# =============================================================================
# BATCH EXECUTION
# =============================================================================

@dataclass
class BatchReport:
    """Result of one batch pass."""
    total: int
    processed: int = 0
    skipped: int = 0
    succeeded: int = 0
    failures: list[str] = field(default_factory=list)
    cancelled: bool = False
    outcomes: dict[str, PipelineResult] = field(default_factory=dict)
    elapsed_sec: float = 0.0


async def run_batch(
    lines: Sequence[str],
    *,
    process: ProcessFn,
    token: CancelToken,
    log: LogFn,
    cooldown_sec: float = BATCH_COOLDOWN_SEC,
    sleep: Optional[SleepFn] = None,
    progress: bool = False,
    label: str = "Batch",
) -> BatchReport:
    """
    Sequential batch pass.

    Args:
        lines: Raw entries (IDs or URLs), processed in order
        process: Pipeline for one extracted ID
        token: Run cancellation token
        log: Log sink callable (message, severity)
        cooldown_sec: Pause between items (not after the last one)
        sleep: Cancellable sleep, defaults to token.sleep
        progress: Show a tqdm progress bar
        label: Name used in log lines and the progress bar

    Returns:
        BatchReport; `failures` lists IDs whose pipeline did not succeed, in
        order. Entries without an extractable ID are skipped, not failed.
    """
    items = list(lines)
    sleep = sleep or token.sleep
    report = BatchReport(total=len(items))
    start = time.monotonic()

    log(f"Starting {label.lower()} process for {len(items)} entries.", Severity.BLUE)
    pbar = tqdm(total=len(items), desc=label, unit="id", disable=not progress)

    try:
        for i, raw in enumerate(items):
            if token.cancelled:
                report.cancelled = True
                break

            log(f"--- Processing {i + 1}/{len(items)}: {raw} ---")
            imgur_id = extract_imgur_id(raw)
            if imgur_id is None:
                log(f"Skipping invalid URL: {raw}", Severity.ORANGE)
                report.skipped += 1
                pbar.update(1)
                continue

            result = await process(imgur_id)
            report.processed += 1
            report.outcomes[imgur_id] = result
            if result.ok:
                report.succeeded += 1
            else:
                report.failures.append(imgur_id)
            pbar.update(1)

            if i < len(items) - 1:
                await sleep(cooldown_sec)
    except OperationCancelled:
        report.cancelled = True
    finally:
        pbar.close()

    if token.cancelled:
        report.cancelled = True

    report.elapsed_sec = time.monotonic() - start
    if report.cancelled:
        log(f"{label} process cancelled.", Severity.ORANGE)
    else:
        log(f"{label} process completed: {report.succeeded} succeeded, "
            f"{len(report.failures)} failed, {report.skipped} skipped.", Severity.GREEN)
    return report


async def retry_failures(
    failures: Sequence[str],
    *,
    process: ProcessFn,
    token: CancelToken,
    log: LogFn,
    cooldown_sec: float = BATCH_COOLDOWN_SEC,
    sleep: Optional[SleepFn] = None,
    progress: bool = False,
) -> BatchReport:
    """
    Second pass over the IDs that failed in a previous pass.

    The list is snapshotted on entry; failures from this pass are reported
    but not retried again.
    """
    snapshot = list(failures)
    log(f"--- Retrying {len(snapshot)} failed downloads... ---", Severity.PURPLE)
    report = await run_batch(snapshot, process=process, token=token, log=log,
                             cooldown_sec=cooldown_sec, sleep=sleep,
                             progress=progress, label="Retry")
    log("--- Retry process finished. ---", Severity.PURPLE)
    return report


def should_retry(cfg: Config, failed_count: int, token: CancelToken) -> bool:
    """
    Decide on the retry pass: config first, then ask on a terminal.

    Ctrl-C at the prompt cancels the run. A cancelled token always means no
    retry.
    """
    if token.cancelled:
        return False
    if cfg.retry_failed == "yes":
        return True
    if cfg.retry_failed == "no" or not sys.stdin.isatty():
        return False
    try:
        # input() blocks the event loop, so the token's signal handler
        # cannot run until it returns
        with default_interrupts():
            answer = input(
                f"{failed_count} download(s) failed. This can happen due to temporary "
                f"network or server issues. Retry them? [y/N] "
            )
    except KeyboardInterrupt:
        token.cancel()
        return False
    except EOFError:
        return False
    if token.cancelled:
        return False
    return answer.strip().lower() in ("y", "yes")


# =============================================================================
# OVERVIEW
# =============================================================================

def _summary(report: BatchReport) -> dict:
    return {
        "total_entries": report.total,
        "processed": report.processed,
        "skipped_invalid": report.skipped,
        "successful_downloads": report.succeeded,
        "failed_downloads": len(report.failures),
        "cancelled": report.cancelled,
        "elapsed_sec": round(report.elapsed_sec, 3),
        "failed_ids": list(report.failures),
    }


def _outcome_row(result: PipelineResult) -> dict:
    return {"status": result.status.value, "path": result.path, "message": result.message}


def write_overview(
    *,
    cfg: Config,
    report: BatchReport,
    retry_report: Optional[BatchReport],
    elapsed_sec: float,
) -> str:
    """Write JSON overview report into the output folder."""
    outcomes = {k: _outcome_row(v) for k, v in report.outcomes.items()}
    if retry_report is not None:
        outcomes.update({k: _outcome_row(v) for k, v in retry_report.outcomes.items()})

    overview = {
        "script_inputs": {
            "input": cfg.input_path,
            "column": cfg.column,
            "output_folder": cfg.output_folder,
            "best_quality": cfg.best_quality,
            "retry_failed": cfg.retry_failed,
            "cooldown_sec": BATCH_COOLDOWN_SEC,
        },
        "summary": _summary(report),
        "retry_summary": _summary(retry_report) if retry_report is not None else None,
        "outcomes": outcomes,
        "elapsed_sec": round(elapsed_sec, 3),
        "timestamp_local": time.strftime("%Y-%m-%d %H:%M:%S", time.localtime()),
    }

    out = Path(cfg.output_folder)
    out.mkdir(parents=True, exist_ok=True)
    overview_path = out / "imgur_archive_overview.json"

    with overview_path.open("w") as f:
        json.dump(overview, f, indent=2)

    return str(overview_path.resolve())


# =============================================================================
# MAIN
# =============================================================================

def exit_code_for(report: BatchReport, retry_report: Optional[BatchReport]) -> int:
    if report.cancelled or (retry_report is not None and retry_report.cancelled):
        return 130
    remaining = retry_report.failures if retry_report is not None else report.failures
    return 1 if remaining else 0


async def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    cfg = parse_args(argv)
    run_log = RunLog()
    log = run_log.log
    token = CancelToken()

    print("=" * 72)
    print("Imgur Archive Batch Downloader")
    print("=" * 72)

    lines = load_batch_lines(cfg.input_path, cfg.column, log)
    if not lines:
        log("No batch to run.", Severity.ORANGE)
        return 0

    start = time.monotonic()
    retry_report: Optional[BatchReport] = None

    with cancel_on_signals(token, lambda: log("Cancellation requested...", Severity.ORANGE)):
        async with aiohttp.ClientSession(headers={"User-Agent": "imgur-archive/1.0"}) as session:

            async def process(imgur_id: str) -> PipelineResult:
                return await run_pipeline(session, imgur_id, best_quality=cfg.best_quality,
                                          dest_dir=cfg.output_folder, token=token, log=log)

            report = await run_batch(lines, process=process, token=token, log=log,
                                     progress=cfg.progress)

            # The retry decision belongs to the caller; a cancelled run never asks
            if report.failures and not report.cancelled:
                if should_retry(cfg, len(report.failures), token):
                    retry_report = await retry_failures(report.failures, process=process,
                                                        token=token, log=log,
                                                        progress=cfg.progress)
                elif token.cancelled:
                    report.cancelled = True
                    log("Retry prompt cancelled.", Severity.ORANGE)
                else:
                    log("Skipping retry for failed downloads.", Severity.ORANGE)

    elapsed = time.monotonic() - start

    print("\n" + "=" * 72)
    print("FINAL SUMMARY")
    print("=" * 72)
    print(f"Total entries:         {report.total}")
    print(f"Skipped (invalid):     {report.skipped}")
    print(f"Successful downloads:  {report.succeeded}")
    print(f"Failed downloads:      {len(report.failures)}")
    if retry_report is not None:
        print(f"Recovered on retry:    {retry_report.succeeded}")
        print(f"Still failing:         {', '.join(retry_report.failures) or '-'}")
    print(f"Elapsed time:          {elapsed:.2f}s")

    if cfg.create_overview:
        try:
            overview = write_overview(cfg=cfg, report=report, retry_report=retry_report,
                                      elapsed_sec=elapsed)
            print(f"[Report] Overview: {overview}")
        except OSError as e:
            print(f"[Report] Failed: {e}")

    print("=" * 72)
    return exit_code_for(report, retry_report)


def run() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        print("\n[Shutdown] Interrupted.")
        sys.exit(130)


if __name__ == "__main__":
    run()
