import asyncio

import aiohttp
import pytest

from cancel_token import CancelToken, OperationCancelled
from conftest import HANG, FakeResponse, FakeSession, cdx_empty, cdx_hit
from probe_extensions import (
    EXTENSIONS,
    PRIORITY_EXTENSIONS,
    ArchiveRecord,
    ProbeOutcome,
    ResolverPolicy,
    extensions_for,
    find_archived_url,
    parse_cdx_listing,
    probe_extension,
)
from run_log import Severity

FAST = ResolverPolicy(retry_cooldown_sec=0)


def _resolve(session, extensions, run_log, token=None, policy=FAST, imgur_id="EAU0pfU"):
    async def go():
        tok = token or CancelToken()
        return await find_archived_url(session, imgur_id, extensions,
                                       token=tok, log=run_log.log, policy=policy)
    return asyncio.run(go())


def test_extension_orders():
    assert extensions_for(False) == EXTENSIONS
    assert extensions_for(True) == PRIORITY_EXTENSIONS
    assert sorted(EXTENSIONS) == sorted(PRIORITY_EXTENSIONS)
    assert PRIORITY_EXTENSIONS[0] == ".mp4"
    assert EXTENSIONS[0] == ".jpg"


def test_parse_cdx_listing():
    record = parse_cdx_listing(
        [["urlkey", "timestamp", "original"], ["k", "20190304050607", "http://i.imgur.com/abcde.png"]],
        ".png",
    )
    assert record == ArchiveRecord(
        archive_url="https://web.archive.org/web/20190304050607if_/http://i.imgur.com/abcde.png",
        fallback_ext=".png",
    )


@pytest.mark.parametrize("data", [None, [], [["urlkey", "timestamp", "original"]], {"a": 1}, [["h"], ["k", "t"]]])
def test_parse_cdx_listing_misses(data):
    assert parse_cdx_listing(data, ".jpg") is None


def test_transient_failures_exhaust_then_next_extension_hits(run_log):
    session = FakeSession([
        aiohttp.ClientConnectionError("reset"),
        asyncio.TimeoutError(),
        FakeResponse(503),
        cdx_hit("EAU0pfU", ".jpg"),
    ])

    record = _resolve(session, (".mp4", ".jpg"), run_log)

    assert session.probed == [
        "https://i.imgur.com/EAU0pfU.mp4",
        "https://i.imgur.com/EAU0pfU.mp4",
        "https://i.imgur.com/EAU0pfU.mp4",
        "https://i.imgur.com/EAU0pfU.jpg",
    ]
    assert record.fallback_ext == ".jpg"
    assert record.archive_url == (
        "https://web.archive.org/web/20200101000000if_/https://i.imgur.com/EAU0pfU.jpg"
    )
    assert any("after 3 attempts" in m for m in run_log.messages(Severity.RED))
    assert "Found archived version with .jpg" in run_log.messages(Severity.GREEN)


def test_unavailable_status_retried_up_to_bound(run_log):
    session = FakeSession([FakeResponse(503), FakeResponse(504), FakeResponse(503)])

    async def go():
        return await probe_extension(session, "EAU0pfU", ".gif", token=CancelToken(),
                                     log=run_log.log, policy=FAST)

    result = asyncio.run(go())
    assert result.outcome is ProbeOutcome.EXHAUSTED
    assert result.attempts == 3
    assert len(session.requests) == 3


def test_not_found_is_never_retried(run_log):
    session = FakeSession([FakeResponse(404), cdx_hit("EAU0pfU", ".jpg")])

    record = _resolve(session, (".mp4", ".jpg"), run_log)

    assert len(session.requests) == 2
    assert session.probed[0].endswith(".mp4")
    assert record.fallback_ext == ".jpg"
    assert "Failed for .mp4: Status 404" in run_log.messages(Severity.ORANGE)


def test_empty_listing_is_a_miss_without_retry(run_log):
    session = FakeSession([cdx_empty(), FakeResponse(200, invalid_json=True), cdx_hit("EAU0pfU", ".gif")])

    record = _resolve(session, (".mp4", ".webm", ".gif", ".png"), run_log)

    assert len(session.requests) == 3
    assert record.fallback_ext == ".gif"


def test_hit_short_circuits(run_log):
    session = FakeSession([cdx_hit("EAU0pfU", ".jpg")])

    record = _resolve(session, EXTENSIONS, run_log)

    assert len(session.requests) == 1
    assert record.fallback_ext == ".jpg"


def test_exhausting_every_extension_returns_none(run_log):
    session = FakeSession([cdx_empty() for _ in EXTENSIONS])

    assert _resolve(session, EXTENSIONS, run_log) is None
    assert len(session.requests) == len(EXTENSIONS)


def test_request_uses_cdx_endpoint_and_timeout(run_log):
    session = FakeSession([cdx_hit("EAU0pfU", ".jpg")])
    _resolve(session, (".jpg",), run_log)

    request = session.requests[0]
    assert request.url == "https://web.archive.org/cdx/search/cdx"
    assert request.params == {"url": "https://i.imgur.com/EAU0pfU.jpg", "output": "json"}
    assert request.timeout.total == FAST.request_timeout_sec


def test_cancel_mid_resolution_stops_probing(run_log):
    async def go():
        token = CancelToken()

        def cancel_then_fail(request):
            token.cancel()
            return FakeResponse(503)

        session = FakeSession([cancel_then_fail, cdx_hit("EAU0pfU", ".jpg")])
        with pytest.raises(OperationCancelled):
            await find_archived_url(session, "EAU0pfU", (".mp4", ".jpg"),
                                    token=token, log=run_log.log, policy=FAST)
        return session

    session = asyncio.run(go())
    assert len(session.requests) == 1


def test_cancel_during_cooldown_aborts_immediately(run_log):
    slow = ResolverPolicy(retry_cooldown_sec=60)

    async def go():
        token = CancelToken()

        def fail_and_schedule_cancel(request):
            asyncio.get_running_loop().call_later(0.01, token.cancel)
            return FakeResponse(503)

        session = FakeSession([fail_and_schedule_cancel])
        with pytest.raises(OperationCancelled):
            await asyncio.wait_for(
                find_archived_url(session, "EAU0pfU", (".mp4", ".jpg"),
                                  token=token, log=run_log.log, policy=slow),
                timeout=5,
            )
        return session

    session = asyncio.run(go())
    assert len(session.requests) == 1


def test_cancel_aborts_in_flight_request(run_log):
    async def go():
        token = CancelToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        session = FakeSession([HANG])
        with pytest.raises(OperationCancelled):
            await asyncio.wait_for(
                find_archived_url(session, "EAU0pfU", (".mp4",),
                                  token=token, log=run_log.log, policy=FAST),
                timeout=5,
            )

    asyncio.run(go())


def test_already_cancelled_token_issues_no_requests(run_log):
    async def go():
        token = CancelToken()
        token.cancel()
        session = FakeSession([])
        with pytest.raises(OperationCancelled):
            await find_archived_url(session, "EAU0pfU", EXTENSIONS,
                                    token=token, log=run_log.log, policy=FAST)
        return session

    assert asyncio.run(go()).requests == []
