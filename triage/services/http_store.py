"""
Remote store client for the triage HTTP API.

Talks to ``triage.main`` over httpx. The signed-in user travels in the
``X-User-Id`` header and is read from the shared Session on every call, so
signing in or out takes effect without rebuilding the client. The ``user_id``
argument of each call is not sent; the server scopes every request to the
header.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

import httpx

from triage.core.config import Settings, get_settings
from triage.core.errors import (
    NotAuthenticatedError,
    NotFoundError,
    RemoteReadError,
    RemoteWriteError,
    ValidationError,
)
from triage.core.logging import get_logger
from triage.core.session import Session
from triage.schemas.schemas import (
    NewsletterRecord,
    PositionUpdate,
    ReadingQueueEntry,
    SourceRecord,
)
from triage.services.remote_store import check_fields

logger = get_logger(__name__)


class HttpRemoteStore:
    def __init__(
        self,
        session: Session,
        *,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.session = session
        self._client = client or httpx.AsyncClient(
            base_url=self.settings.remote_base_url,
            timeout=self.settings.remote_timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    @property
    def _headers(self) -> dict[str, str]:
        headers = {"X-API-Key": self.settings.api_key}
        if self.session.user_id:
            headers["X-User-Id"] = self.session.user_id
        return headers

    # ------------------------------------------------------------------ #
    # Transport
    # ------------------------------------------------------------------ #

    async def _request(self, method: str, path: str, *, write: bool, json: Any = None) -> Any:
        try:
            resp = await self._client.request(method, path, headers=self._headers, json=json)
        except httpx.HTTPError as e:
            logger.error("remote_request_failed", method=method, path=path, error=str(e))
            if write:
                raise RemoteWriteError(f"{method} {path} failed: {e}", operation=path) from e
            raise RemoteReadError(f"{method} {path} failed: {e}") from e

        if resp.status_code >= 400:
            detail = _detail(resp)
            logger.warning("remote_request_rejected", method=method, path=path, status=resp.status_code)
            if resp.status_code == 401:
                raise NotAuthenticatedError(detail)
            if resp.status_code == 404:
                raise NotFoundError(*_not_found(detail, path))
            if resp.status_code == 422:
                raise ValidationError(detail)
            if write:
                raise RemoteWriteError(f"{method} {path}: {resp.status_code} {detail}", operation=path)
            raise RemoteReadError(f"{method} {path}: {resp.status_code} {detail}")

        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    # ------------------------------------------------------------------ #
    # Newsletters
    # ------------------------------------------------------------------ #

    async def read_newsletters(self, user_id: str) -> list[NewsletterRecord]:
        data = await self._request("GET", "/newsletters", write=False)
        return [NewsletterRecord.model_validate(item) for item in data]

    async def write_newsletter_fields(
        self, user_id: str, newsletter_id: str, fields: Mapping[str, bool]
    ) -> None:
        await self._request(
            "PATCH", f"/newsletters/{newsletter_id}", write=True, json=check_fields(fields)
        )

    async def write_newsletter_fields_bulk(
        self, user_id: str, newsletter_ids: Sequence[str], fields: Mapping[str, bool]
    ) -> None:
        payload = {"ids": list(newsletter_ids), "fields": check_fields(fields)}
        await self._request("PATCH", "/newsletters", write=True, json=payload)

    async def delete_newsletter(self, user_id: str, newsletter_id: str) -> None:
        await self._request("DELETE", f"/newsletters/{newsletter_id}", write=True)

    async def delete_newsletters(self, user_id: str, newsletter_ids: Sequence[str]) -> None:
        await self._request("POST", "/newsletters/delete", write=True, json={"ids": list(newsletter_ids)})

    async def set_newsletter_tags(self, user_id: str, newsletter_id: str, tag_ids: Sequence[str]) -> None:
        await self._request(
            "PUT", f"/newsletters/{newsletter_id}/tags", write=True, json={"tag_ids": list(tag_ids)}
        )

    # ------------------------------------------------------------------ #
    # Aggregates
    # ------------------------------------------------------------------ #

    async def read_source_counts(self, user_id: str) -> list[SourceRecord]:
        data = await self._request("GET", "/sources", write=False)
        return [SourceRecord.model_validate(item) for item in data]

    async def read_unread_count(self, user_id: str) -> int:
        data = await self._request("GET", "/unread-count", write=False)
        return int(data["count"])

    async def read_unread_count_by_source(self, user_id: str) -> dict[str, int]:
        data = await self._request("GET", "/unread-count/by-source", write=False)
        return {source_id: int(count) for source_id, count in data.items()}

    # ------------------------------------------------------------------ #
    # Reading queue
    # ------------------------------------------------------------------ #

    async def read_queue(self, user_id: str) -> list[ReadingQueueEntry]:
        data = await self._request("GET", "/queue", write=False)
        return [ReadingQueueEntry.model_validate(item) for item in data]

    async def insert_queue_entry(
        self, user_id: str, newsletter_id: str, position: int
    ) -> ReadingQueueEntry:
        data = await self._request(
            "POST", "/queue", write=True, json={"newsletter_id": newsletter_id, "position": position}
        )
        return ReadingQueueEntry.model_validate(data)

    async def insert_queue_entries(
        self, user_id: str, newsletter_ids: Sequence[str], position: int
    ) -> list[ReadingQueueEntry]:
        payload = {"newsletter_ids": list(newsletter_ids), "position": position}
        data = await self._request("POST", "/queue/bulk", write=True, json=payload)
        return [ReadingQueueEntry.model_validate(item) for item in data]

    async def delete_queue_entry(self, user_id: str, entry_id: str) -> None:
        await self._request("DELETE", f"/queue/{entry_id}", write=True)

    async def delete_queue_entries(self, user_id: str, entry_ids: Sequence[str]) -> None:
        await self._request("POST", "/queue/delete", write=True, json={"ids": list(entry_ids)})

    async def clear_queue(self, user_id: str) -> None:
        await self._request("DELETE", "/queue", write=True)

    async def reorder_queue(self, user_id: str, updates: Sequence[PositionUpdate]) -> None:
        payload = {"updates": [u.model_dump() for u in updates]}
        await self._request("POST", "/queue/reorder", write=True, json=payload)


def _detail(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return str(body)


def _not_found(detail: str, path: str) -> tuple[str, str]:
    """Recover ``(entity, id)`` from a "<entity> <id> not found" message."""
    if detail.endswith(" not found"):
        entity, _, entity_id = detail[: -len(" not found")].rpartition(" ")
        if entity and entity_id:
            return entity, entity_id
    return "resource", path
