"""
Newsletter endpoints backed by the SQL remote store.

GET    /api/v1/newsletters                  - the caller's newsletters
PATCH  /api/v1/newsletters/{id}             - set read/liked/archived flags
PATCH  /api/v1/newsletters                  - same flags on many ids, one transaction
DELETE /api/v1/newsletters/{id}             - delete one newsletter
POST   /api/v1/newsletters/delete           - delete many, one transaction
PUT    /api/v1/newsletters/{id}/tags        - replace the tag set
GET    /api/v1/sources                      - sources with non-archived counts
GET    /api/v1/unread-count                 - unread, non-archived total
GET    /api/v1/unread-count/by-source       - the same, per source
"""

from __future__ import annotations

from fastapi import APIRouter, Response, status

from triage.api.v1.deps import ApiKey, CurrentUser, Store
from triage.core.logging import get_logger
from triage.schemas.schemas import (
    BulkDeleteRequest,
    BulkFieldsUpdate,
    NewsletterFieldsUpdate,
    NewsletterRecord,
    SourceRecord,
    TagAssignment,
    UnreadCountResponse,
)

router = APIRouter(tags=["newsletters"])
logger = get_logger(__name__)

NO_CONTENT = status.HTTP_204_NO_CONTENT


@router.get("/newsletters", response_model=list[NewsletterRecord])
async def list_newsletters(_api_key: ApiKey, user_id: CurrentUser, store: Store) -> list[NewsletterRecord]:
    return await store.read_newsletters(user_id)


@router.patch("/newsletters/{newsletter_id}", status_code=NO_CONTENT)
async def update_newsletter(
    newsletter_id: str,
    body: NewsletterFieldsUpdate,
    _api_key: ApiKey,
    user_id: CurrentUser,
    store: Store,
) -> Response:
    await store.write_newsletter_fields(user_id, newsletter_id, body.as_fields())
    logger.info("newsletter_updated", user_id=user_id, newsletter_id=newsletter_id, **body.as_fields())
    return Response(status_code=NO_CONTENT)


@router.patch("/newsletters", status_code=NO_CONTENT)
async def update_newsletters(
    body: BulkFieldsUpdate, _api_key: ApiKey, user_id: CurrentUser, store: Store
) -> Response:
    await store.write_newsletter_fields_bulk(user_id, body.ids, body.fields.as_fields())
    return Response(status_code=NO_CONTENT)


@router.delete("/newsletters/{newsletter_id}", status_code=NO_CONTENT)
async def delete_newsletter(
    newsletter_id: str, _api_key: ApiKey, user_id: CurrentUser, store: Store
) -> Response:
    await store.delete_newsletter(user_id, newsletter_id)
    logger.info("newsletter_deleted", user_id=user_id, newsletter_id=newsletter_id)
    return Response(status_code=NO_CONTENT)


@router.post("/newsletters/delete", status_code=NO_CONTENT)
async def delete_newsletters(
    body: BulkDeleteRequest, _api_key: ApiKey, user_id: CurrentUser, store: Store
) -> Response:
    await store.delete_newsletters(user_id, body.ids)
    return Response(status_code=NO_CONTENT)


@router.put("/newsletters/{newsletter_id}/tags", status_code=NO_CONTENT)
async def set_newsletter_tags(
    newsletter_id: str,
    body: TagAssignment,
    _api_key: ApiKey,
    user_id: CurrentUser,
    store: Store,
) -> Response:
    await store.set_newsletter_tags(user_id, newsletter_id, body.tag_ids)
    return Response(status_code=NO_CONTENT)


@router.get("/sources", response_model=list[SourceRecord])
async def list_sources(_api_key: ApiKey, user_id: CurrentUser, store: Store) -> list[SourceRecord]:
    return await store.read_source_counts(user_id)


@router.get("/unread-count", response_model=UnreadCountResponse)
async def unread_count(_api_key: ApiKey, user_id: CurrentUser, store: Store) -> UnreadCountResponse:
    return UnreadCountResponse(count=await store.read_unread_count(user_id))


@router.get("/unread-count/by-source", response_model=dict[str, int])
async def unread_count_by_source(_api_key: ApiKey, user_id: CurrentUser, store: Store) -> dict[str, int]:
    return await store.read_unread_count_by_source(user_id)
