"""
Reading queue endpoints.

GET    /api/v1/queue                - the caller's queue, ordered by position
POST   /api/v1/queue                - add a newsletter (returns the existing entry if queued)
POST   /api/v1/queue/bulk           - add several newsletters in one transaction
DELETE /api/v1/queue                - empty the queue
DELETE /api/v1/queue/{entry_id}     - remove an entry
POST   /api/v1/queue/delete         - remove several entries
POST   /api/v1/queue/reorder        - rewrite positions atomically
"""

from __future__ import annotations

from fastapi import APIRouter, Response, status

from triage.api.v1.deps import ApiKey, CurrentUser, Store
from triage.core.logging import get_logger
from triage.schemas.schemas import (
    BulkDeleteRequest,
    QueueBulkInsertRequest,
    QueueInsertRequest,
    ReadingQueueEntry,
    ReorderRequest,
)

router = APIRouter(prefix="/queue", tags=["queue"])
logger = get_logger(__name__)


@router.get("", response_model=list[ReadingQueueEntry])
async def read_queue(_api_key: ApiKey, user_id: CurrentUser, store: Store) -> list[ReadingQueueEntry]:
    return await store.read_queue(user_id)


@router.post("", response_model=ReadingQueueEntry, status_code=status.HTTP_201_CREATED)
async def add_to_queue(
    body: QueueInsertRequest, _api_key: ApiKey, user_id: CurrentUser, store: Store
) -> ReadingQueueEntry:
    entry = await store.insert_queue_entry(user_id, body.newsletter_id, body.position)
    logger.info("queue_entry_added", user_id=user_id, newsletter_id=body.newsletter_id, entry_id=entry.id)
    return entry


@router.post("/bulk", response_model=list[ReadingQueueEntry], status_code=status.HTTP_201_CREATED)
async def add_many_to_queue(
    body: QueueBulkInsertRequest, _api_key: ApiKey, user_id: CurrentUser, store: Store
) -> list[ReadingQueueEntry]:
    return await store.insert_queue_entries(user_id, body.newsletter_ids, body.position)


@router.delete("", status_code=status.HTTP_204_NO_CONTENT)
async def clear_queue(_api_key: ApiKey, user_id: CurrentUser, store: Store) -> Response:
    await store.clear_queue(user_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.delete("/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_from_queue(
    entry_id: str, _api_key: ApiKey, user_id: CurrentUser, store: Store
) -> Response:
    await store.delete_queue_entry(user_id, entry_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/delete", status_code=status.HTTP_204_NO_CONTENT)
async def remove_many_from_queue(
    body: BulkDeleteRequest, _api_key: ApiKey, user_id: CurrentUser, store: Store
) -> Response:
    await store.delete_queue_entries(user_id, body.ids)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/reorder", status_code=status.HTTP_204_NO_CONTENT)
async def reorder_queue(
    body: ReorderRequest, _api_key: ApiKey, user_id: CurrentUser, store: Store
) -> Response:
    await store.reorder_queue(user_id, body.updates)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
