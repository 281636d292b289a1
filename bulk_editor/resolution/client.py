"""Batched lookup-id resolution against the external data source.

Ids are deduplicated and split into batches; each batch is POSTed with
bounded retries and exponential backoff. A batch that still fails is
recorded and skipped, and its ids are simply absent from the result.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import httpx

from bulk_editor.config import (
    API_BATCH_SIZE,
    API_CONCURRENCY,
    API_MAX_RETRIES,
    API_RETRY_BASE_SECONDS,
    API_TIMEOUT_SECONDS,
    API_TOKEN,
    API_URL,
)
from bulk_editor.errors import NetworkError, ProcessingCancelled, ResolutionTimeoutError
from bulk_editor.models import ResolutionRequest, ResolvedRecord, parse_resolution_payload

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BatchProgress:
    completed_batches: int
    total_batches: int
    processed_items: int
    total_items: int


@dataclass
class ResolutionResult:
    records: dict[str, ResolvedRecord] = field(default_factory=dict)
    total_batches: int = 0
    succeeded_batches: int = 0
    failed_batches: int = 0
    api_calls: int = 0
    errors: list[str] = field(default_factory=list)

    @property
    def all_succeeded(self) -> bool:
        return self.failed_batches == 0


ProgressCallback = Callable[[BatchProgress], None]


def dedupe_ids(lookup_ids: Iterable[str]) -> list[str]:
    seen: dict[str, None] = {}
    for i in lookup_ids:
        if i:
            seen.setdefault(i, None)
    return list(seen)


class ResolutionClient:
    def __init__(
        self,
        *,
        url: str = API_URL,
        token: str | None = API_TOKEN,
        timeout: float = API_TIMEOUT_SECONDS,
        batch_size: int = API_BATCH_SIZE,
        max_retries: int = API_MAX_RETRIES,
        retry_base_seconds: float = API_RETRY_BASE_SECONDS,
        concurrency: int = API_CONCURRENCY,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._token = token
        self._timeout = timeout
        self._batch_size = max(1, batch_size)
        self._max_retries = max(0, max_retries)
        self._retry_base = retry_base_seconds
        self._concurrency = max(1, concurrency)
        self._transport = transport

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def resolve(
        self,
        lookup_ids: Iterable[str],
        batch_size: int | None = None,
        *,
        progress: ProgressCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ResolutionResult:
        ids = dedupe_ids(lookup_ids)
        if not ids:
            return ResolutionResult()

        size = max(1, batch_size or self._batch_size)
        batches = [ids[i : i + size] for i in range(0, len(ids), size)]
        result = ResolutionResult(total_batches=len(batches))
        semaphore = asyncio.Semaphore(self._concurrency)
        done = {"batches": 0, "items": 0}

        async with self._client() as client:

            async def _run(index: int, batch: list[str]) -> dict[str, ResolvedRecord] | None:
                async with semaphore:
                    if cancel_event is not None and cancel_event.is_set():
                        raise ProcessingCancelled("resolution cancelled")
                    try:
                        records = await self._post_with_retries(client, batch, result, cancel_event)
                    except NetworkError as e:
                        logger.error(
                            "Batch %d/%d failed after retries (%d ids): %s",
                            index + 1,
                            len(batches),
                            len(batch),
                            e,
                        )
                        result.errors.append(f"batch {index + 1}: {e}")
                        records = None
                    done["batches"] += 1
                    done["items"] += len(batch)
                    if progress is not None:
                        progress(BatchProgress(done["batches"], len(batches), done["items"], len(ids)))
                    return records

            tasks = [asyncio.create_task(_run(i, b)) for i, b in enumerate(batches)]
            try:
                outcomes = await asyncio.gather(*tasks)
            except BaseException:
                # no batch may outlive the client it posts through
                for t in tasks:
                    t.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise

        for records in outcomes:
            if records is None:
                result.failed_batches += 1
                continue
            result.succeeded_batches += 1
            result.records.update(records)

        logger.info(
            "Resolved %d/%d ids in %d/%d batches",
            sum(1 for i in ids if i in result.records),
            len(ids),
            result.succeeded_batches,
            result.total_batches,
        )
        return result

    async def _post_with_retries(
        self,
        client: httpx.AsyncClient,
        batch: list[str],
        result: ResolutionResult,
        cancel_event: asyncio.Event | None,
    ) -> dict[str, ResolvedRecord]:
        body = ResolutionRequest(lookupIds=batch).to_wire()
        last_err: NetworkError | None = None

        for attempt in range(self._max_retries + 1):
            result.api_calls += 1
            try:
                resp = await client.post(self._url, json=body, headers=self._headers())
            except httpx.TimeoutException as e:
                last_err = ResolutionTimeoutError(f"timed out after {self._timeout}s: {e}")
            except httpx.TransportError as e:
                last_err = NetworkError(f"{type(e).__name__}: {e}")
            else:
                if resp.is_success:
                    return self._parse(resp)
                last_err = NetworkError(f"HTTP {resp.status_code}", status_code=resp.status_code)

            if attempt >= self._max_retries:
                break
            delay = self._retry_base * (2 ** (attempt + 1))
            logger.warning(
                "Resolution attempt %d/%d failed (%s); retrying in %.2fs",
                attempt + 1,
                self._max_retries + 1,
                last_err,
                delay,
            )
            await _sleep(delay, cancel_event)

        assert last_err is not None
        raise last_err

    @staticmethod
    def _parse(resp: httpx.Response) -> dict[str, ResolvedRecord]:
        try:
            payload: Any = resp.json()
            return parse_resolution_payload(payload)
        except ValueError as e:
            raise NetworkError(f"malformed response body: {e}", status_code=resp.status_code) from e

    async def check_connection(self) -> bool:
        """POST a test body; True when the endpoint answers 2xx."""
        body = {"test": True, "timestamp": datetime.now(UTC).isoformat()}
        try:
            async with self._client() as client:
                resp = await client.post(self._url, json=body, headers=self._headers())
        except httpx.HTTPError:
            logger.warning("Resolution endpoint health check failed", exc_info=True)
            return False
        return resp.is_success


async def _sleep(delay: float, cancel_event: asyncio.Event | None) -> None:
    """Backoff sleep that wakes early (and raises) on cancellation."""
    if cancel_event is None:
        await asyncio.sleep(delay)
        return
    try:
        await asyncio.wait_for(cancel_event.wait(), timeout=delay)
    except TimeoutError:
        return
    raise ProcessingCancelled("resolution cancelled during backoff")
