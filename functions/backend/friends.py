"""
Friend requests between users.

A friendship row moves pending -> accepted or pending -> rejected. Only the
recipient answers a request. A rejected request can be sent again, and a
request sent while the other user's request is pending accepts theirs.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List

from backend.db import DbClient, FriendshipRecord, UserRecord
from shared.errors import ForbiddenError, NotFoundError, ValidationError
from shared.types import FriendshipStatus

logger = logging.getLogger(__name__)


@dataclass
class FriendEntry:
    friendship: FriendshipRecord
    user: UserRecord


@dataclass
class FriendOverview:
    friends: List[FriendEntry] = field(default_factory=list)
    pending_received: List[FriendEntry] = field(default_factory=list)
    pending_sent: List[FriendEntry] = field(default_factory=list)


def send_request(
    db: DbClient, requester_id: str, recipient_id: str
) -> tuple[FriendshipRecord, bool]:
    """
    Returns the friendship and whether a new request was created. A reverse
    pending request is accepted instead of creating a second row.
    """
    if requester_id == recipient_id:
        raise ValidationError("Cannot send friend request to yourself")
    if db.get_user(recipient_id) is None:
        raise NotFoundError("User not found", details={"id": recipient_id})

    existing = db.find_friendship(requester_id, recipient_id)
    if existing is None:
        record = db.create_friendship(requester_id, recipient_id)
        logger.info("Friend request %s -> %s", requester_id, recipient_id)
        return record, True

    if existing.status == FriendshipStatus.ACCEPTED:
        raise ValidationError("Already friends with this user")
    if existing.status == FriendshipStatus.PENDING:
        if existing.recipient_id == requester_id:
            existing.status = FriendshipStatus.ACCEPTED
            db.save_friendship(existing)
            logger.info("Friend request %s accepted by reply", existing.friendship_id)
            return existing, False
        raise ValidationError("Friend request already sent")

    # Rejected: the requester may ask again.
    existing.requester_id = requester_id
    existing.recipient_id = recipient_id
    existing.status = FriendshipStatus.PENDING
    db.save_friendship(existing)
    return existing, True


def _pending_for_recipient(
    db: DbClient, friendship_id: str, user_id: str
) -> FriendshipRecord:
    record = db.get_friendship(friendship_id)
    if (
        record is None
        or record.recipient_id != user_id
        or record.status != FriendshipStatus.PENDING
    ):
        raise NotFoundError("Friend request not found", details={"id": friendship_id})
    return record


def accept_request(db: DbClient, friendship_id: str, user_id: str) -> FriendshipRecord:
    record = _pending_for_recipient(db, friendship_id, user_id)
    record.status = FriendshipStatus.ACCEPTED
    db.save_friendship(record)
    return record


def reject_request(db: DbClient, friendship_id: str, user_id: str) -> FriendshipRecord:
    record = _pending_for_recipient(db, friendship_id, user_id)
    record.status = FriendshipStatus.REJECTED
    db.save_friendship(record)
    return record


def remove_friendship(db: DbClient, friendship_id: str, user_id: str) -> None:
    """Either party may remove a friendship or withdraw a request."""
    record = db.get_friendship(friendship_id)
    if record is None or not record.involves(user_id):
        raise NotFoundError("Friendship not found", details={"id": friendship_id})
    db.delete_friendship(friendship_id)


def remove_all_for_user(db: DbClient, user_id: str) -> int:
    records = db.list_friendships(user_id)
    for record in records:
        db.delete_friendship(record.friendship_id)
    return len(records)


def overview(db: DbClient, user_id: str) -> FriendOverview:
    result = FriendOverview()
    for record in db.list_friendships(user_id):
        other = db.get_user(record.other(user_id))
        if other is None:
            continue
        entry = FriendEntry(friendship=record, user=other)
        if record.status == FriendshipStatus.ACCEPTED:
            result.friends.append(entry)
        elif record.status == FriendshipStatus.PENDING:
            if record.recipient_id == user_id:
                result.pending_received.append(entry)
            else:
                result.pending_sent.append(entry)
    return result


def require_friend(db: DbClient, user_id: str, friend_id: str) -> UserRecord:
    record = db.find_friendship(user_id, friend_id)
    if record is None or record.status != FriendshipStatus.ACCEPTED:
        raise ForbiddenError("Not friends with this user")
    friend = db.get_user(friend_id)
    if friend is None:
        raise NotFoundError("User not found", details={"id": friend_id})
    return friend
