"""
HTTP routes for the brewlog API.
"""

from __future__ import annotations

import logging
import math
from typing import List, Type

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from backend import friends
from backend.auth import (
    create_access_token,
    get_current_user,
    hash_password,
    verify_password,
)
from backend.config import Settings, get_settings
from backend.db import DbClient, EntityRecord, UserRecord
from backend.dependencies import get_db_client, get_entity_locks, get_image_service
from backend.image_service import ImageService
from backend.locks import EntityLocks
from backend.schemas import (
    AvatarResponse,
    BrewCreate,
    BrewResponse,
    BrewStatsResponse,
    BrewUpdate,
    CoffeeCreate,
    CoffeeResponse,
    CoffeeStatsResponse,
    CoffeeUpdate,
    DeleteAccountRequest,
    FriendEntryResponse,
    FriendListResponse,
    FriendProfileResponse,
    FriendRequestCreate,
    FriendshipResponse,
    ImageListResponse,
    LikeResponse,
    ListBrewsResponse,
    ListCoffeesResponse,
    LoginRequest,
    MessageResponse,
    PasswordChangeRequest,
    ProfileUpdateRequest,
    PublicBrewsResponse,
    PublicUserResponse,
    RegisterRequest,
    TokenResponse,
    UploadResponse,
    UserResponse,
    UserSearchResponse,
)
from backend.stats import summarize_brews, summarize_coffees, summarize_public_brews
from media_pipeline.ledger import primary_image
from shared.errors import (
    CapacityExceededError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from shared.types import EntityKind, ImageAsset, UploadCandidate, policy_for

logger = logging.getLogger(__name__)

router = APIRouter()

_READ_CHUNK = 1024 * 1024
_STATS_LIMIT = 10000


def _primary(images: list[dict]) -> dict | None:
    primary = primary_image([ImageAsset.from_dict(image) for image in images])
    return primary.as_dict() if primary else None


def _user_response(user: UserRecord) -> UserResponse:
    return UserResponse(**user.as_dict())


def _public_user(user: UserRecord) -> PublicUserResponse:
    return PublicUserResponse(
        user_id=user.user_id,
        username=user.username,
        avatar=user.images[0] if user.images else None,
        created_at=user.created_at,
    )


def _coffee_response(record: EntityRecord) -> CoffeeResponse:
    return CoffeeResponse(**record.as_dict(), primary_image=_primary(record.images))


def _brew_response(record: EntityRecord) -> BrewResponse:
    ratio = record.data.get("brew_ratio") or {}
    ratio_string = None
    if ratio.get("coffee") and ratio.get("water"):
        ratio_string = f"1:{ratio['water'] / ratio['coffee']:.1f}"
    return BrewResponse(
        **record.as_dict(),
        likes_count=len(record.data.get("likes") or []),
        brew_ratio_string=ratio_string,
        primary_image=_primary(record.images),
    )


def _images_response(images: List[ImageAsset]) -> ImageListResponse:
    return ImageListResponse(images=[image.as_dict() for image in images])


def _paged_brews(
    db: DbClient, page: int, limit: int, **filters
) -> PublicBrewsResponse:
    total = db.count_entities(EntityKind.BREW, public_only=True, **filters)
    records = db.list_entities(
        EntityKind.BREW,
        public_only=True,
        limit=limit,
        offset=(page - 1) * limit,
        **filters,
    )
    return PublicBrewsResponse(
        brews=[_brew_response(r) for r in records],
        total=total,
        current_page=page,
        total_pages=math.ceil(total / limit),
    )


async def _read_candidate(upload: UploadFile, max_bytes: int) -> UploadCandidate:
    """Reads one part in chunks; a part past `max_bytes` keeps none of its bytes."""
    chunks = []
    total = 0
    while True:
        chunk = await upload.read(_READ_CHUNK)
        if not chunk:
            break
        total += len(chunk)
        if total > max_bytes:
            logger.warning("Upload %s passed %d bytes; dropped", upload.filename, max_bytes)
            return UploadCandidate(
                filename=upload.filename or "",
                content_type=upload.content_type,
                data=b"",
                oversize=True,
            )
        chunks.append(chunk)
    return UploadCandidate(
        filename=upload.filename or "",
        content_type=upload.content_type,
        data=b"".join(chunks),
    )


async def _read_candidates(
    files: List[UploadFile],
    kind: EntityKind,
    entity_id: str,
    user: UserRecord,
    service: ImageService,
) -> List[UploadCandidate]:
    """Refuses a batch with more parts than the entity can ever hold before reading any."""
    policy = policy_for(kind)
    if len(files) > policy.capacity:
        existing = await run_in_threadpool(
            service.image_count, kind, entity_id, user.user_id
        )
        raise CapacityExceededError(policy.capacity, len(files), existing)
    return [await _read_candidate(upload, policy.max_bytes) for upload in files]


def _owned_entity(
    db: DbClient, kind: EntityKind, entity_id: str, user: UserRecord
) -> EntityRecord:
    record = db.get_entity(kind, entity_id)
    if record is None or record.owner_id != user.user_id:
        label = "Coffee" if kind == EntityKind.COFFEE else "Brew"
        raise NotFoundError(f"{label} not found", details={"id": entity_id})
    return record


def _changes(payload: BaseModel, create_model: Type[BaseModel]) -> dict:
    """Fields the client sent; only fields that default to null may be cleared."""
    changes = payload.model_dump(exclude_unset=True, mode="json")
    fields = create_model.model_fields
    cleared = sorted(
        name
        for name, value in changes.items()
        if value is None and (fields[name].is_required() or fields[name].default is not None)
    )
    if cleared:
        raise ValidationError("Fields cannot be cleared", details={"fields": cleared})
    return changes


def _update_owned(
    db: DbClient,
    locks: EntityLocks,
    kind: EntityKind,
    entity_id: str,
    user: UserRecord,
    changes: dict,
) -> EntityRecord:
    with locks.hold(kind, entity_id):
        record = _owned_entity(db, kind, entity_id, user)
        if not changes:
            return record
        updated = db.update_entity(kind, entity_id, changes)
    if updated is None:
        raise NotFoundError("Entity not found", details={"id": entity_id})
    return updated


# --- Auth -------------------------------------------------------------------


@router.post("/auth/register", response_model=TokenResponse, status_code=201)
def register(
    payload: RegisterRequest,
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    email = payload.email.lower()
    if db.get_user_by_email(email) or db.get_user_by_username(payload.username):
        raise ValidationError("User already exists")
    user = db.create_user(payload.username, email, hash_password(payload.password))
    logger.info("Registered user %s", user.user_id)
    return TokenResponse(
        access_token=create_access_token(user.user_id, settings),
        user=_user_response(user),
    )


@router.post("/auth/login", response_model=TokenResponse)
def login(
    payload: LoginRequest,
    db: DbClient = Depends(get_db_client),
    settings: Settings = Depends(get_settings),
):
    user = db.get_user_by_email(payload.email.lower())
    if user is None or not verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return TokenResponse(
        access_token=create_access_token(user.user_id, settings),
        user=_user_response(user),
    )


@router.get("/auth/me", response_model=UserResponse)
def me(user: UserRecord = Depends(get_current_user)):
    return _user_response(user)


@router.put("/auth/profile", response_model=UserResponse)
def update_profile(
    payload: ProfileUpdateRequest,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    email = payload.email.lower() if payload.email else None
    if payload.username and payload.username != user.username:
        taken = db.get_user_by_username(payload.username)
        if taken and taken.user_id != user.user_id:
            raise ValidationError("Username already taken")
    if email and email != user.email:
        taken = db.get_user_by_email(email)
        if taken and taken.user_id != user.user_id:
            raise ValidationError("Email already in use")
    updated = db.update_user(user.user_id, username=payload.username, email=email)
    if updated is None:
        raise NotFoundError("User not found", details={"id": user.user_id})
    return _user_response(updated)


@router.put("/auth/password", response_model=MessageResponse)
def change_password(
    payload: PasswordChangeRequest,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    if not verify_password(payload.current_password, user.password_hash):
        raise ValidationError("Current password is incorrect")
    db.update_user(user.user_id, password_hash=hash_password(payload.new_password))
    logger.info("Changed password for %s", user.user_id)
    return MessageResponse(message="Password changed successfully")


@router.post("/auth/avatar", response_model=AvatarResponse)
async def upload_avatar(
    avatar: UploadFile = File(...),
    user: UserRecord = Depends(get_current_user),
    service: ImageService = Depends(get_image_service),
):
    candidate = await _read_candidate(avatar, policy_for(EntityKind.USER).max_bytes)
    image = await run_in_threadpool(service.upload_avatar, user.user_id, candidate)
    return AvatarResponse(message="Avatar updated", avatar=image.as_dict())


@router.delete("/auth/avatar", response_model=AvatarResponse)
def delete_avatar(
    user: UserRecord = Depends(get_current_user),
    service: ImageService = Depends(get_image_service),
):
    service.delete_avatar(user.user_id)
    return AvatarResponse(message="Avatar deleted", avatar=None)


@router.delete("/auth/account", response_model=MessageResponse)
def delete_account(
    payload: DeleteAccountRequest,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    service: ImageService = Depends(get_image_service),
):
    """
    Deletes the user's brews, coffees, friendships and account along with
    every stored image that belongs to them.
    """
    if not verify_password(payload.password, user.password_hash):
        raise ValidationError("Password is incorrect")

    for kind in (EntityKind.BREW, EntityKind.COFFEE):
        while True:
            records = db.list_entities(kind, owner_id=user.user_id, limit=100)
            if not records:
                break
            for record in records:
                db.delete_entity(kind, record.entity_id)
                service.remove_entity_assets(kind, record.entity_id)

    friends.remove_all_for_user(db, user.user_id)
    service.remove_entity_assets(EntityKind.USER, user.user_id)
    db.delete_user(user.user_id)
    logger.info("Deleted account %s", user.user_id)
    return MessageResponse(message="Account deleted successfully")


# --- Coffees ----------------------------------------------------------------


@router.post("/coffees", response_model=CoffeeResponse, status_code=201)
def create_coffee(
    payload: CoffeeCreate,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    record = db.create_entity(
        EntityKind.COFFEE, user.user_id, payload.model_dump(mode="json")
    )
    return _coffee_response(record)


@router.get("/coffees", response_model=ListCoffeesResponse)
def list_coffees(
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    records = db.list_entities(EntityKind.COFFEE, owner_id=user.user_id)
    return ListCoffeesResponse(coffees=[_coffee_response(r) for r in records])


@router.get("/coffees/stats/summary", response_model=CoffeeStatsResponse)
def coffee_stats(
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    records = db.list_entities(
        EntityKind.COFFEE, owner_id=user.user_id, limit=_STATS_LIMIT
    )
    return CoffeeStatsResponse(**summarize_coffees(records))


@router.get("/coffees/{coffee_id}", response_model=CoffeeResponse)
def get_coffee(
    coffee_id: str,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    record = db.get_entity(EntityKind.COFFEE, coffee_id)
    if record is None or not (
        record.data.get("is_public") or record.owner_id == user.user_id
    ):
        raise NotFoundError("Coffee not found", details={"id": coffee_id})
    return _coffee_response(record)


@router.put("/coffees/{coffee_id}", response_model=CoffeeResponse)
def update_coffee(
    coffee_id: str,
    payload: CoffeeUpdate,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    locks: EntityLocks = Depends(get_entity_locks),
):
    changes = _changes(payload, CoffeeCreate)
    record = _update_owned(db, locks, EntityKind.COFFEE, coffee_id, user, changes)
    return _coffee_response(record)


@router.delete("/coffees/{coffee_id}", response_model=MessageResponse)
def delete_coffee(
    coffee_id: str,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    service: ImageService = Depends(get_image_service),
):
    _owned_entity(db, EntityKind.COFFEE, coffee_id, user)
    brew_count = db.count_brews_for_coffee(coffee_id)
    if brew_count > 0:
        raise ValidationError(
            "Cannot delete coffee that has associated brews",
            details={"brew_count": brew_count},
        )
    db.delete_entity(EntityKind.COFFEE, coffee_id)
    service.remove_entity_assets(EntityKind.COFFEE, coffee_id)
    return MessageResponse(message="Coffee deleted successfully")


@router.post(
    "/coffees/{coffee_id}/images", response_model=UploadResponse, status_code=201
)
async def upload_coffee_images(
    coffee_id: str,
    images: List[UploadFile] = File(...),
    user: UserRecord = Depends(get_current_user),
    service: ImageService = Depends(get_image_service),
):
    candidates = await _read_candidates(
        images, EntityKind.COFFEE, coffee_id, user, service
    )
    outcome = await run_in_threadpool(
        service.upload_images, EntityKind.COFFEE, coffee_id, user.user_id, candidates
    )
    return UploadResponse(**outcome.as_dict())


@router.delete(
    "/coffees/{coffee_id}/images/{image_id}", response_model=ImageListResponse
)
def delete_coffee_image(
    coffee_id: str,
    image_id: str,
    user: UserRecord = Depends(get_current_user),
    service: ImageService = Depends(get_image_service),
):
    images = service.delete_image(EntityKind.COFFEE, coffee_id, user.user_id, image_id)
    return _images_response(images)


@router.put(
    "/coffees/{coffee_id}/images/{image_id}/primary", response_model=ImageListResponse
)
def set_coffee_primary_image(
    coffee_id: str,
    image_id: str,
    user: UserRecord = Depends(get_current_user),
    service: ImageService = Depends(get_image_service),
):
    images = service.set_primary(EntityKind.COFFEE, coffee_id, user.user_id, image_id)
    return _images_response(images)


# --- Brews ------------------------------------------------------------------


@router.post("/brews", response_model=BrewResponse, status_code=201)
def create_brew(
    payload: BrewCreate,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    coffee = db.get_entity(EntityKind.COFFEE, payload.coffee_id)
    if coffee is None:
        raise NotFoundError("Coffee not found", details={"id": payload.coffee_id})
    if not coffee.data.get("is_public") and coffee.owner_id != user.user_id:
        raise ForbiddenError("Access denied to this coffee")

    record = db.create_entity(
        EntityKind.BREW, user.user_id, payload.model_dump(mode="json")
    )
    return _brew_response(record)


@router.get("/brews", response_model=ListBrewsResponse)
def list_brews(
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    records = db.list_entities(EntityKind.BREW, owner_id=user.user_id)
    return ListBrewsResponse(brews=[_brew_response(r) for r in records])


@router.get("/brews/stats/summary", response_model=BrewStatsResponse)
def brew_stats(
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    records = db.list_entities(
        EntityKind.BREW, owner_id=user.user_id, limit=_STATS_LIMIT
    )
    return BrewStatsResponse(**summarize_brews(records))


@router.get("/brews/public", response_model=PublicBrewsResponse)
def public_brews(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: DbClient = Depends(get_db_client),
):
    return _paged_brews(db, page, limit)


@router.get("/brews/coffee/{coffee_id}/public", response_model=PublicBrewsResponse)
def public_brews_for_coffee(
    coffee_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    db: DbClient = Depends(get_db_client),
):
    return _paged_brews(db, page, limit, coffee_id=coffee_id)


@router.get("/brews/{brew_id}", response_model=BrewResponse)
def get_brew(
    brew_id: str,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    record = db.get_entity(EntityKind.BREW, brew_id)
    if record is None or not (
        record.data.get("is_public") or record.owner_id == user.user_id
    ):
        raise NotFoundError("Brew not found", details={"id": brew_id})
    return _brew_response(record)


@router.put("/brews/{brew_id}", response_model=BrewResponse)
def update_brew(
    brew_id: str,
    payload: BrewUpdate,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    locks: EntityLocks = Depends(get_entity_locks),
):
    changes = _changes(payload, BrewCreate)
    record = _update_owned(db, locks, EntityKind.BREW, brew_id, user, changes)
    return _brew_response(record)


@router.delete("/brews/{brew_id}", response_model=MessageResponse)
def delete_brew(
    brew_id: str,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    service: ImageService = Depends(get_image_service),
):
    _owned_entity(db, EntityKind.BREW, brew_id, user)
    db.delete_entity(EntityKind.BREW, brew_id)
    service.remove_entity_assets(EntityKind.BREW, brew_id)
    return MessageResponse(message="Brew deleted successfully")


@router.post("/brews/{brew_id}/like", response_model=LikeResponse)
def toggle_like(
    brew_id: str,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
    locks: EntityLocks = Depends(get_entity_locks),
):
    with locks.hold(EntityKind.BREW, brew_id):
        record = db.get_entity(EntityKind.BREW, brew_id)
        if record is None:
            raise NotFoundError("Brew not found", details={"id": brew_id})
        if not record.data.get("is_public") and record.owner_id != user.user_id:
            raise ForbiddenError("Cannot like a private brew")
        likes = list(record.data.get("likes") or [])
        liked = user.user_id not in likes
        if liked:
            likes.append(user.user_id)
        else:
            likes.remove(user.user_id)
        db.update_entity(EntityKind.BREW, brew_id, {"likes": likes})
    return LikeResponse(liked=liked, likes_count=len(likes))


@router.post("/brews/{brew_id}/images", response_model=UploadResponse, status_code=201)
async def upload_brew_images(
    brew_id: str,
    images: List[UploadFile] = File(...),
    user: UserRecord = Depends(get_current_user),
    service: ImageService = Depends(get_image_service),
):
    candidates = await _read_candidates(images, EntityKind.BREW, brew_id, user, service)
    outcome = await run_in_threadpool(
        service.upload_images, EntityKind.BREW, brew_id, user.user_id, candidates
    )
    return UploadResponse(**outcome.as_dict())


@router.delete("/brews/{brew_id}/images/{image_id}", response_model=ImageListResponse)
def delete_brew_image(
    brew_id: str,
    image_id: str,
    user: UserRecord = Depends(get_current_user),
    service: ImageService = Depends(get_image_service),
):
    images = service.delete_image(EntityKind.BREW, brew_id, user.user_id, image_id)
    return _images_response(images)


@router.put(
    "/brews/{brew_id}/images/{image_id}/primary", response_model=ImageListResponse
)
def set_brew_primary_image(
    brew_id: str,
    image_id: str,
    user: UserRecord = Depends(get_current_user),
    service: ImageService = Depends(get_image_service),
):
    images = service.set_primary(EntityKind.BREW, brew_id, user.user_id, image_id)
    return _images_response(images)


# --- Friends ----------------------------------------------------------------


def _friend_entries(entries: List[friends.FriendEntry]) -> List[FriendEntryResponse]:
    return [
        FriendEntryResponse(
            friendship_id=entry.friendship.friendship_id,
            user=_public_user(entry.user),
            since=entry.friendship.updated_at,
        )
        for entry in entries
    ]


def _friendship_response(record) -> FriendshipResponse:
    return FriendshipResponse(
        friendship_id=record.friendship_id,
        requester_id=record.requester_id,
        recipient_id=record.recipient_id,
        status=record.status.value,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


@router.get("/friends/search", response_model=UserSearchResponse)
def search_users(
    q: str = "",
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    query = q.strip()
    if len(query) < 2:
        raise ValidationError("Search query must be at least 2 characters")
    users = db.search_users(query, exclude_user_id=user.user_id)
    return UserSearchResponse(users=[_public_user(u) for u in users])


@router.get("/friends", response_model=FriendListResponse)
def list_friends(
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    result = friends.overview(db, user.user_id)
    return FriendListResponse(
        friends=_friend_entries(result.friends),
        pending_received=_friend_entries(result.pending_received),
        pending_sent=_friend_entries(result.pending_sent),
    )


@router.post("/friends/request", response_model=FriendshipResponse, status_code=201)
def send_friend_request(
    payload: FriendRequestCreate,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    record, _ = friends.send_request(db, user.user_id, payload.recipient_id)
    return _friendship_response(record)


@router.put("/friends/accept/{friendship_id}", response_model=FriendshipResponse)
def accept_friend_request(
    friendship_id: str,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    return _friendship_response(friends.accept_request(db, friendship_id, user.user_id))


@router.put("/friends/reject/{friendship_id}", response_model=FriendshipResponse)
def reject_friend_request(
    friendship_id: str,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    return _friendship_response(friends.reject_request(db, friendship_id, user.user_id))


@router.delete("/friends/{friendship_id}", response_model=MessageResponse)
def remove_friend(
    friendship_id: str,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    friends.remove_friendship(db, friendship_id, user.user_id)
    return MessageResponse(message="Friendship removed")


@router.get("/friends/{friend_id}/brews", response_model=PublicBrewsResponse)
def friend_brews(
    friend_id: str,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    friends.require_friend(db, user.user_id, friend_id)
    return _paged_brews(db, page, limit, owner_id=friend_id)


@router.get("/friends/{friend_id}/profile", response_model=FriendProfileResponse)
def friend_profile(
    friend_id: str,
    user: UserRecord = Depends(get_current_user),
    db: DbClient = Depends(get_db_client),
):
    friend = friends.require_friend(db, user.user_id, friend_id)
    records = db.list_entities(
        EntityKind.BREW, owner_id=friend_id, public_only=True, limit=_STATS_LIMIT
    )
    return FriendProfileResponse(
        user=_public_user(friend), stats=summarize_public_brews(records)
    )
