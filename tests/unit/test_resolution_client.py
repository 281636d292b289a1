"""Resolution client tests: batching, retries, partial failure, wire formats."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import patch

import httpx
import pytest

from bulk_editor.errors import ProcessingCancelled
from bulk_editor.resolution.client import BatchProgress, ResolutionClient, dedupe_ids


def _ids(n: int) -> list[str]:
    return [f"TSRC-T-{i:06d}" for i in range(n)]


def _client(handler, **kw) -> ResolutionClient:
    kw.setdefault("retry_base_seconds", 0.0)
    return ResolutionClient(url="https://lookup.test/api", transport=httpx.MockTransport(handler), **kw)


def _echo(ids: list[str]) -> dict[str, dict[str, str]]:
    return {i: {"Title": f"Title {i}", "Status": "Active", "Content_ID": i, "Document_ID": f"doc-{i}"} for i in ids}


class TestBatching:
    async def test_three_batches_with_middle_failure(self):
        calls: list[list[str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            ids = json.loads(request.content)["lookupIds"]
            calls.append(ids)
            if "TSRC-T-000050" in ids:
                return httpx.Response(503)
            return httpx.Response(200, json=_echo(ids))

        progress: list[BatchProgress] = []
        result = await _client(handler, max_retries=3).resolve(_ids(120), 50, progress=progress.append)

        assert result.total_batches == 3
        assert result.succeeded_batches == 2
        assert result.failed_batches == 1
        assert len(result.errors) == 1
        # batch 2 is tried once plus three retries
        assert sum(1 for c in calls if "TSRC-T-000050" in c) == 4
        assert result.api_calls == 6
        assert "TSRC-T-000000" in result.records
        assert "TSRC-T-000119" in result.records
        assert "TSRC-T-000075" not in result.records
        assert len(result.records) == 70
        assert len(progress) == 3
        assert progress[-1] == BatchProgress(3, 3, 120, 120)

    async def test_batch_sizes_and_dedup(self):
        sizes: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            ids = json.loads(request.content)["lookupIds"]
            sizes.append(len(ids))
            return httpx.Response(200, json=_echo(ids))

        ids = _ids(120) + _ids(10) + [""]
        result = await _client(handler).resolve(ids, 50)
        assert sorted(sizes) == [20, 50, 50]
        assert len(result.records) == 120
        assert result.all_succeeded

    async def test_request_body_shape(self):
        bodies: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={})

        await _client(handler, token="secret").resolve(["TSRC-A-000001"])
        assert bodies[0]["lookupIds"] == ["TSRC-A-000001"]
        assert "timestamp" in bodies[0]

    async def test_empty_input_makes_no_calls(self):
        def handler(request: httpx.Request) -> httpx.Response:  # pragma: no cover
            raise AssertionError("no request expected")

        result = await _client(handler).resolve([])
        assert result.total_batches == 0
        assert result.records == {}

    def test_dedupe_keeps_first_seen_order(self):
        assert dedupe_ids(["b", "a", "b", "", "c"]) == ["b", "a", "c"]


class TestRetries:
    async def test_transport_error_then_success(self):
        attempts = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            attempts["n"] += 1
            if attempts["n"] < 3:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json=_echo(["TSRC-A-000001"]))

        result = await _client(handler, max_retries=3).resolve(["TSRC-A-000001"])
        assert attempts["n"] == 3
        assert result.succeeded_batches == 1
        assert result.records["TSRC-A-000001"].title == "Title TSRC-A-000001"

    async def test_timeout_marks_batch_failed(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        result = await _client(handler, max_retries=1).resolve(["TSRC-A-000001"])
        assert result.failed_batches == 1
        assert "timed out" in result.errors[0]

    async def test_malformed_body_fails_without_retry(self):
        attempts = {"n": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            attempts["n"] += 1
            return httpx.Response(200, content=b"<html>oops</html>")

        result = await _client(handler, max_retries=3).resolve(["TSRC-A-000001"])
        assert attempts["n"] == 1
        assert result.failed_batches == 1

    async def test_backoff_doubles(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        slept: list[float] = []

        async def fake_sleep(delay: float, cancel_event) -> None:
            slept.append(delay)

        client = _client(handler, max_retries=3, retry_base_seconds=1.0)
        with patch("bulk_editor.resolution.client._sleep", new=fake_sleep):
            await client.resolve(["TSRC-A-000001"])
        assert slept == [2.0, 4.0, 8.0]

    async def test_cancel_during_backoff(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        cancel = asyncio.Event()
        client = _client(handler, max_retries=3, retry_base_seconds=30.0)
        task = asyncio.create_task(client.resolve(["TSRC-A-000001"], cancel_event=cancel))
        await asyncio.sleep(0.05)
        cancel.set()
        with pytest.raises(ProcessingCancelled):
            await asyncio.wait_for(task, timeout=5)

    async def test_cancel_stops_in_flight_batches(self):
        cancel = asyncio.Event()
        started: list[str] = []
        finished: list[str] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            (lookup_id,) = json.loads(request.content)["lookupIds"]
            started.append(lookup_id)
            if lookup_id == "TSRC-T-000000":
                await asyncio.sleep(0.05)
                cancel.set()
            else:
                await asyncio.sleep(1.0)
            finished.append(lookup_id)
            return httpx.Response(200, json=_echo([lookup_id]))

        client = _client(handler, concurrency=2)
        with pytest.raises(ProcessingCancelled):
            await asyncio.wait_for(client.resolve(_ids(3), 1, cancel_event=cancel), timeout=5)

        # the third batch was never admitted and the second was stopped mid-request
        assert sorted(started) == ["TSRC-T-000000", "TSRC-T-000001"]
        await asyncio.sleep(1.2)
        assert finished == ["TSRC-T-000000"]


class TestWireFormats:
    async def test_legacy_envelope_keyed_by_content_and_document_id(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "StatusCode": "200",
                    "Body": {
                        "Results": [
                            {
                                "Document_ID": "0f9e-44",
                                "Content_ID": "TSRC-ABC-012345",
                                "Title": "Policy Doc",
                                "Status": "Released",
                            }
                        ],
                        "Version": "1",
                        "Changes": "",
                    },
                },
            )

        result = await _client(handler).resolve(["TSRC-ABC-012345", "0f9e-44"])
        assert result.records["TSRC-ABC-012345"].title == "Policy Doc"
        assert result.records["0f9e-44"].document_id == "0f9e-44"


class TestHealthCheck:
    async def test_connection_ok(self):
        seen: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={})

        assert await _client(handler).check_connection() is True
        assert seen[0]["test"] is True

    async def test_connection_refused(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        assert await _client(handler).check_connection() is False

    async def test_server_error(self):
        assert await _client(lambda r: httpx.Response(500)).check_connection() is False
