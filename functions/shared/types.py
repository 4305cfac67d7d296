# Copyright 2025 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# ==============================================================================

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
from typing import Optional

MIB = 1024 * 1024


class EntityKind(StrEnum):
    COFFEE = "coffee"
    BREW = "brew"
    USER = "user"


class FriendshipStatus(StrEnum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"


@dataclass(frozen=True)
class CategoryPolicy:
    """Upload limits and storage category for one kind of parent entity."""

    kind: EntityKind
    category: str
    max_bytes: int
    capacity: int


CATEGORY_POLICIES: dict[EntityKind, CategoryPolicy] = {
    EntityKind.COFFEE: CategoryPolicy(
        kind=EntityKind.COFFEE, category="coffees", max_bytes=10 * MIB, capacity=10
    ),
    EntityKind.BREW: CategoryPolicy(
        kind=EntityKind.BREW, category="brews", max_bytes=10 * MIB, capacity=5
    ),
    EntityKind.USER: CategoryPolicy(
        kind=EntityKind.USER, category="avatars", max_bytes=5 * MIB, capacity=1
    ),
}


def policy_for(kind: EntityKind) -> CategoryPolicy:
    return CATEGORY_POLICIES[EntityKind(kind)]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ImageAsset:
    """One image record in a parent entity's image list."""

    url: str
    thumbnail_url: str
    filename: str
    original_name: Optional[str] = None
    is_primary: bool = False
    uploaded_at: str = field(default_factory=_utc_now_iso)
    image_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def as_dict(self) -> dict:
        return {
            "image_id": self.image_id,
            "url": self.url,
            "thumbnail_url": self.thumbnail_url,
            "filename": self.filename,
            "original_name": self.original_name,
            "is_primary": self.is_primary,
            "uploaded_at": self.uploaded_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ImageAsset":
        return cls(
            image_id=data["image_id"],
            url=data["url"],
            thumbnail_url=data["thumbnail_url"],
            filename=data["filename"],
            original_name=data.get("original_name"),
            is_primary=bool(data.get("is_primary", False)),
            uploaded_at=data.get("uploaded_at") or _utc_now_iso(),
        )


@dataclass
class UploadCandidate:
    """A file decoded from a multipart request, before validation."""

    filename: str
    content_type: Optional[str]
    data: bytes
    # Set when the stream ran past the size ceiling; `data` is then dropped.
    oversize: bool = False

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class SkippedFile:
    filename: str
    reason: str

    def as_dict(self) -> dict:
        return {"filename": self.filename, "reason": self.reason}
