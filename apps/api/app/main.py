from __future__ import annotations

from datetime import datetime
from functools import lru_cache
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from socialcore.config import PublishSettings
from socialcore.content import PostRequest
from socialcore.db import SessionLocal
from socialcore.errors import PublishError
from socialcore.interfaces import OwnerScope
from socialcore.models import Post, PostStatus
from socialcore.services import PublishServices, build_services
from socialcore.timeutil import as_utc

app = FastAPI(title="social-publisher-api")


class CrossPostPayload(BaseModel):
    x: bool = False
    linkedin: bool = False
    routing: dict[str, Any] = Field(default_factory=dict)


class CreatePostPayload(BaseModel):
    caption: str = ""
    media_urls: list[str] = Field(default_factory=list)
    platforms: list[str] = Field(default_factory=list)
    instagram_content_type: str | None = None
    threads_content_type: str | None = None
    youtube_content_type: str | None = None
    thread_parts: list[str] | None = None
    post_now: bool = True
    scheduled_for: datetime | None = None
    cross_post: CrossPostPayload | None = None

    def to_request(self) -> PostRequest:
        targets: dict[str, bool] = {}
        routing: dict[str, Any] = {}
        if self.cross_post is not None:
            targets = {"x": self.cross_post.x, "linkedin": self.cross_post.linkedin}
            routing = dict(self.cross_post.routing)
        return PostRequest(
            caption=self.caption,
            media_urls=list(self.media_urls),
            platforms=list(self.platforms),
            instagram_content_type=self.instagram_content_type,
            threads_content_type=self.threads_content_type,
            youtube_content_type=self.youtube_content_type,
            thread_parts=self.thread_parts,
            schedule=not self.post_now,
            scheduled_for=as_utc(self.scheduled_for),
            crosspost_targets=targets,
            crosspost_routing=routing,
        )


class ReschedulePayload(BaseModel):
    scheduled_for: datetime


class RetryPayload(BaseModel):
    scheduled_for: datetime | None = None


@lru_cache(maxsize=1)
def get_services() -> PublishServices:
    return build_services(PublishSettings.from_env(), SessionLocal)


def get_scope(
    x_user_id: str | None = Header(default=None),
    x_team_id: str | None = Header(default=None),
) -> OwnerScope:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="user_id_required")
    return OwnerScope(user_id=x_user_id, team_id=x_team_id or None)


def get_user_token(authorization: str | None = Header(default=None)) -> str | None:
    if authorization and authorization.startswith("Bearer "):
        return authorization[len("Bearer "):].strip() or None
    return None


@app.exception_handler(PublishError)
def _publish_error_handler(request: Request, exc: PublishError) -> JSONResponse:
    del request
    return JSONResponse(status_code=exc.status, content=exc.to_dict())


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _post_to_dict(post: Post) -> dict[str, Any]:
    return {
        "id": post.id,
        "user_id": post.user_id,
        "team_id": post.team_id,
        "caption": post.caption,
        "media_urls": list(post.media_urls or []),
        "platforms": list(post.platforms or []),
        "cross_post": post.cross_post,
        "content_types": {
            "instagram": post.instagram_content_type,
            "threads": post.threads_content_type,
            "youtube": post.youtube_content_type,
        },
        "status": post.status.value,
        "scheduled_for": _iso(post.scheduled_for),
        "posted_at": _iso(post.posted_at),
        "instagram_post_id": post.instagram_post_id,
        "threads_post_id": post.threads_post_id,
        "youtube_video_id": post.youtube_video_id,
        "threads_parts": post.threads_parts,
        "threads_sequence": post.threads_sequence,
        "last_error": post.last_error,
        "metadata": post.post_metadata or {},
        "created_at": _iso(post.created_at),
    }


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/api/posts", status_code=201)
def create_post(
    payload: CreatePostPayload,
    scope: OwnerScope = Depends(get_scope),
    user_token: str | None = Depends(get_user_token),
    services: PublishServices = Depends(get_services),
) -> dict[str, Any]:
    post = services.posts.create_post(scope, payload.to_request(), user_token=user_token)
    return {"success": True, "post": _post_to_dict(post)}


@app.post("/api/posts/preflight")
def preflight_post(
    payload: CreatePostPayload,
    scope: OwnerScope = Depends(get_scope),
    user_token: str | None = Depends(get_user_token),
    services: PublishServices = Depends(get_services),
) -> dict[str, Any]:
    return services.posts.preflight(scope, payload.to_request(), user_token=user_token).to_dict()


@app.get("/api/posts/history")
def post_history(
    status: str | None = Query(default=None),
    platform: str | None = Query(default=None),
    days: int | None = Query(default=None, ge=1, le=365),
    limit: int = Query(default=50, ge=1, le=200),
    scope: OwnerScope = Depends(get_scope),
    services: PublishServices = Depends(get_services),
) -> dict[str, Any]:
    posts = services.posts.list_history(scope, status=status, platform=platform, days=days, limit=limit)
    return {"posts": [_post_to_dict(post) for post in posts]}


@app.delete("/api/posts/{post_id}")
def delete_post(
    post_id: str,
    scope: OwnerScope = Depends(get_scope),
    services: PublishServices = Depends(get_services),
) -> dict[str, Any]:
    result = services.posts.delete_post(scope, post_id)
    return {
        "success": True,
        "post_id": result.post_id,
        "already_deleted": result.already_deleted,
        "remote_deleted_ids": result.remote_deleted_ids,
    }


@app.get("/api/schedule")
def list_schedule(
    status: str = Query(default="scheduled"),
    limit: int = Query(default=100, ge=1, le=500),
    scope: OwnerScope = Depends(get_scope),
    services: PublishServices = Depends(get_services),
) -> dict[str, Any]:
    posts = services.posts.list_scheduled(scope, status=status, limit=limit)
    return {"posts": [_post_to_dict(post) for post in posts]}


@app.patch("/api/schedule/{post_id}")
def reschedule_post(
    post_id: str,
    payload: ReschedulePayload,
    scope: OwnerScope = Depends(get_scope),
    services: PublishServices = Depends(get_services),
) -> dict[str, Any]:
    post = services.posts.reschedule_post(scope, post_id, as_utc(payload.scheduled_for))
    return {"success": True, "post": _post_to_dict(post)}


@app.post("/api/schedule/{post_id}/retry")
def retry_post(
    post_id: str,
    payload: RetryPayload | None = None,
    scope: OwnerScope = Depends(get_scope),
    services: PublishServices = Depends(get_services),
) -> dict[str, Any]:
    scheduled_for = as_utc(payload.scheduled_for) if payload is not None else None
    post = services.posts.retry_post(scope, post_id, scheduled_for)
    return {"success": True, "post": _post_to_dict(post)}


@app.delete("/api/schedule/{post_id}")
def cancel_post(
    post_id: str,
    scope: OwnerScope = Depends(get_scope),
    services: PublishServices = Depends(get_services),
) -> dict[str, Any]:
    post = services.posts.cancel_post(scope, post_id)
    return {"success": True, "post": _post_to_dict(post), "status": PostStatus.deleted.value}


@app.get("/api/credits/balance")
def credit_balance(
    scope: OwnerScope = Depends(get_scope),
    user_token: str | None = Depends(get_user_token),
    services: PublishServices = Depends(get_services),
) -> dict[str, Any]:
    balance = services.ledger.get_balance(scope, user_token=user_token)
    return {"balance": float(balance), "scope": "team" if scope.is_team else "user"}


@app.get("/api/credits/history")
def credit_history(
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    scope: OwnerScope = Depends(get_scope),
    services: PublishServices = Depends(get_services),
) -> dict[str, Any]:
    entries = services.ledger.history(scope, limit=limit, offset=offset)
    return {
        "transactions": [
            {
                "id": entry.id,
                "type": entry.type.value,
                "credits_amount": float(entry.credits_amount),
                "operation": entry.operation,
                "description": entry.description,
                "created_at": _iso(entry.created_at),
            }
            for entry in entries
        ]
    }
