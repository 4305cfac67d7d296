"""
Document store abstraction for Postgres and an in-memory test implementation.

Coffees, brews and users are stored as documents whose `images` field holds
the entity's image list. Every image list change is a single write of the
whole list. Friendships are plain rows linking a requester and a recipient.
"""

from __future__ import annotations

import copy
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Protocol

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    String,
    create_engine,
    func,
    or_,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from shared.errors import ValidationError
from shared.types import EntityKind, FriendshipStatus


class DbClient(Protocol):
    """Interface for database access."""

    def create_user(
        self, username: str, email: str, password_hash: str
    ) -> "UserRecord":
        ...

    def get_user(self, user_id: str) -> Optional["UserRecord"]:
        ...

    def get_user_by_email(self, email: str) -> Optional["UserRecord"]:
        ...

    def get_user_by_username(self, username: str) -> Optional["UserRecord"]:
        ...

    def update_user(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
    ) -> Optional["UserRecord"]:
        ...

    def search_users(
        self, query: str, *, exclude_user_id: Optional[str] = None, limit: int = 20
    ) -> list["UserRecord"]:
        ...

    def delete_user(self, user_id: str) -> bool:
        ...

    def create_entity(
        self, kind: EntityKind, owner_id: str, data: dict
    ) -> "EntityRecord":
        ...

    def get_entity(self, kind: EntityKind, entity_id: str) -> Optional["EntityRecord"]:
        ...

    def update_entity(
        self, kind: EntityKind, entity_id: str, changes: dict
    ) -> Optional["EntityRecord"]:
        ...

    def list_entities(
        self,
        kind: EntityKind,
        *,
        owner_id: Optional[str] = None,
        coffee_id: Optional[str] = None,
        public_only: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> list["EntityRecord"]:
        ...

    def count_entities(
        self,
        kind: EntityKind,
        *,
        owner_id: Optional[str] = None,
        coffee_id: Optional[str] = None,
        public_only: bool = False,
    ) -> int:
        ...

    def count_brews_for_coffee(self, coffee_id: str) -> int:
        ...

    def delete_entity(self, kind: EntityKind, entity_id: str) -> bool:
        ...

    def get_images(self, kind: EntityKind, entity_id: str) -> Optional[list[dict]]:
        ...

    def save_images(
        self, kind: EntityKind, entity_id: str, images: list[dict]
    ) -> bool:
        ...

    def create_friendship(
        self, requester_id: str, recipient_id: str
    ) -> "FriendshipRecord":
        ...

    def get_friendship(self, friendship_id: str) -> Optional["FriendshipRecord"]:
        ...

    def find_friendship(
        self, user_a: str, user_b: str
    ) -> Optional["FriendshipRecord"]:
        ...

    def list_friendships(
        self, user_id: str, *, status: Optional[FriendshipStatus] = None
    ) -> list["FriendshipRecord"]:
        ...

    def save_friendship(self, record: "FriendshipRecord") -> bool:
        ...

    def delete_friendship(self, friendship_id: str) -> bool:
        ...


@dataclass
class UserRecord:
    user_id: str
    username: str
    email: str
    password_hash: str
    images: List[dict] = field(default_factory=list)
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "username": self.username,
            "email": self.email,
            "avatar": self.images[0] if self.images else None,
            "created_at": self.created_at,
        }


@dataclass
class EntityRecord:
    entity_id: str
    kind: EntityKind
    owner_id: str
    data: dict
    images: List[dict] = field(default_factory=list)
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return {
            "id": self.entity_id,
            "owner_id": self.owner_id,
            **self.data,
            "images": self.images,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class FriendshipRecord:
    friendship_id: str
    requester_id: str
    recipient_id: str
    status: FriendshipStatus = FriendshipStatus.PENDING
    created_at: float = field(default_factory=lambda: time.time())
    updated_at: float = field(default_factory=lambda: time.time())

    def other(self, user_id: str) -> str:
        return self.recipient_id if self.requester_id == user_id else self.requester_id

    def involves(self, user_id: str) -> bool:
        return user_id in (self.requester_id, self.recipient_id)


class InMemoryDbClient:
    """Simple in-memory database for development and tests."""

    def __init__(self):
        self.users: Dict[str, UserRecord] = {}
        self.entities: Dict[str, EntityRecord] = {}
        self.friendships: Dict[str, FriendshipRecord] = {}

    def create_user(self, username: str, email: str, password_hash: str) -> UserRecord:
        if self.get_user_by_email(email) or self.get_user_by_username(username):
            raise ValidationError("User already exists")
        record = UserRecord(
            user_id=uuid.uuid4().hex,
            username=username,
            email=email,
            password_hash=password_hash,
        )
        self.users[record.user_id] = record
        return copy.deepcopy(record)

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        user = self.users.get(user_id)
        return copy.deepcopy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        for user in self.users.values():
            if user.email == email:
                return copy.deepcopy(user)
        return None

    def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        for user in self.users.values():
            if user.username == username:
                return copy.deepcopy(user)
        return None

    def update_user(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
    ) -> Optional[UserRecord]:
        user = self.users.get(user_id)
        if not user:
            return None
        for other in self.users.values():
            if other.user_id == user_id:
                continue
            if username is not None and other.username == username:
                raise ValidationError("Username already taken")
            if email is not None and other.email == email:
                raise ValidationError("Email already in use")
        if username is not None:
            user.username = username
        if email is not None:
            user.email = email
        if password_hash is not None:
            user.password_hash = password_hash
        user.updated_at = time.time()
        return copy.deepcopy(user)

    def search_users(
        self, query: str, *, exclude_user_id: Optional[str] = None, limit: int = 20
    ) -> list[UserRecord]:
        needle = query.lower()
        matches = [
            copy.deepcopy(user)
            for user in self.users.values()
            if user.user_id != exclude_user_id and needle in user.username.lower()
        ]
        return sorted(matches, key=lambda u: u.username)[:limit]

    def delete_user(self, user_id: str) -> bool:
        return self.users.pop(user_id, None) is not None

    def create_entity(self, kind: EntityKind, owner_id: str, data: dict) -> EntityRecord:
        record = EntityRecord(
            entity_id=uuid.uuid4().hex,
            kind=EntityKind(kind),
            owner_id=owner_id,
            data=copy.deepcopy(data),
        )
        self.entities[record.entity_id] = record
        return copy.deepcopy(record)

    def get_entity(self, kind: EntityKind, entity_id: str) -> Optional[EntityRecord]:
        record = self.entities.get(entity_id)
        if not record or record.kind != kind:
            return None
        return copy.deepcopy(record)

    def update_entity(
        self, kind: EntityKind, entity_id: str, changes: dict
    ) -> Optional[EntityRecord]:
        record = self.entities.get(entity_id)
        if not record or record.kind != kind:
            return None
        record.data.update(copy.deepcopy(changes))
        record.updated_at = time.time()
        return copy.deepcopy(record)

    def _matching(
        self,
        kind: EntityKind,
        owner_id: Optional[str],
        coffee_id: Optional[str],
        public_only: bool,
    ) -> Iterator[EntityRecord]:
        # Insertion order is creation order; walk it backwards for newest first.
        for record in reversed(list(self.entities.values())):
            if record.kind != kind:
                continue
            if owner_id is not None and record.owner_id != owner_id:
                continue
            if coffee_id is not None and record.data.get("coffee_id") != coffee_id:
                continue
            if public_only and not record.data.get("is_public"):
                continue
            yield record

    def list_entities(
        self,
        kind: EntityKind,
        *,
        owner_id: Optional[str] = None,
        coffee_id: Optional[str] = None,
        public_only: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> list[EntityRecord]:
        matches = list(self._matching(kind, owner_id, coffee_id, public_only))
        return [copy.deepcopy(r) for r in matches[offset : offset + limit]]

    def count_entities(
        self,
        kind: EntityKind,
        *,
        owner_id: Optional[str] = None,
        coffee_id: Optional[str] = None,
        public_only: bool = False,
    ) -> int:
        return sum(1 for _ in self._matching(kind, owner_id, coffee_id, public_only))

    def count_brews_for_coffee(self, coffee_id: str) -> int:
        return self.count_entities(EntityKind.BREW, coffee_id=coffee_id)

    def delete_entity(self, kind: EntityKind, entity_id: str) -> bool:
        record = self.entities.get(entity_id)
        if not record or record.kind != kind:
            return False
        del self.entities[entity_id]
        return True

    def get_images(self, kind: EntityKind, entity_id: str) -> Optional[list[dict]]:
        if kind == EntityKind.USER:
            user = self.users.get(entity_id)
            return copy.deepcopy(user.images) if user else None
        record = self.entities.get(entity_id)
        if not record or record.kind != kind:
            return None
        return copy.deepcopy(record.images)

    def save_images(self, kind: EntityKind, entity_id: str, images: list[dict]) -> bool:
        if kind == EntityKind.USER:
            target = self.users.get(entity_id)
        else:
            target = self.entities.get(entity_id)
            if target and target.kind != kind:
                target = None
        if not target:
            return False
        target.images = copy.deepcopy(images)
        target.updated_at = time.time()
        return True

    def create_friendship(self, requester_id: str, recipient_id: str) -> FriendshipRecord:
        record = FriendshipRecord(
            friendship_id=uuid.uuid4().hex,
            requester_id=requester_id,
            recipient_id=recipient_id,
        )
        self.friendships[record.friendship_id] = record
        return copy.deepcopy(record)

    def get_friendship(self, friendship_id: str) -> Optional[FriendshipRecord]:
        record = self.friendships.get(friendship_id)
        return copy.deepcopy(record) if record else None

    def find_friendship(self, user_a: str, user_b: str) -> Optional[FriendshipRecord]:
        for record in self.friendships.values():
            if record.involves(user_a) and record.other(user_a) == user_b:
                return copy.deepcopy(record)
        return None

    def list_friendships(
        self, user_id: str, *, status: Optional[FriendshipStatus] = None
    ) -> list[FriendshipRecord]:
        matches = [
            copy.deepcopy(record)
            for record in self.friendships.values()
            if record.involves(user_id) and (status is None or record.status == status)
        ]
        return sorted(matches, key=lambda r: r.updated_at, reverse=True)

    def save_friendship(self, record: FriendshipRecord) -> bool:
        if record.friendship_id not in self.friendships:
            return False
        record = copy.deepcopy(record)
        record.updated_at = time.time()
        self.friendships[record.friendship_id] = record
        return True

    def delete_friendship(self, friendship_id: str) -> bool:
        return self.friendships.pop(friendship_id, None) is not None


class PostgresDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresDbClient")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def _to_user_record(self, row: "UserRow") -> UserRecord:
        return UserRecord(
            user_id=row.user_id,
            username=row.username,
            email=row.email,
            password_hash=row.password_hash,
            images=list(row.images or []),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _to_entity_record(self, row: "EntityRow") -> EntityRecord:
        return EntityRecord(
            entity_id=row.entity_id,
            kind=EntityKind(row.kind),
            owner_id=row.owner_id,
            data=dict(row.data or {}),
            images=list(row.images or []),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _to_friendship_record(self, row: "FriendshipRow") -> FriendshipRecord:
        return FriendshipRecord(
            friendship_id=row.friendship_id,
            requester_id=row.requester_id,
            recipient_id=row.recipient_id,
            status=FriendshipStatus(row.status),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def create_user(self, username: str, email: str, password_hash: str) -> UserRecord:
        now = time.time()
        with self.Session() as session:
            row = UserRow(
                user_id=uuid.uuid4().hex,
                username=username,
                email=email,
                password_hash=password_hash,
                images=[],
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ValidationError("User already exists") from e
            session.refresh(row)
            return self._to_user_record(row)

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            return self._to_user_record(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.execute(
                select(UserRow).where(UserRow.email == email)
            ).scalar_one_or_none()
            return self._to_user_record(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.execute(
                select(UserRow).where(UserRow.username == username)
            ).scalar_one_or_none()
            return self._to_user_record(row) if row else None

    def update_user(
        self,
        user_id: str,
        *,
        username: Optional[str] = None,
        email: Optional[str] = None,
        password_hash: Optional[str] = None,
    ) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            if not row:
                return None
            if username is not None:
                row.username = username
            if email is not None:
                row.email = email
            if password_hash is not None:
                row.password_hash = password_hash
            row.updated_at = time.time()
            try:
                session.commit()
            except IntegrityError as e:
                session.rollback()
                raise ValidationError("Username or email already in use") from e
            return self._to_user_record(row)

    def search_users(
        self, query: str, *, exclude_user_id: Optional[str] = None, limit: int = 20
    ) -> list[UserRecord]:
        with self.Session() as session:
            stmt = select(UserRow).where(UserRow.username.ilike(f"%{query}%"))
            if exclude_user_id is not None:
                stmt = stmt.where(UserRow.user_id != exclude_user_id)
            stmt = stmt.order_by(UserRow.username).limit(limit)
            rows = session.execute(stmt).scalars().all()
            return [self._to_user_record(row) for row in rows]

    def delete_user(self, user_id: str) -> bool:
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            if not row:
                return False
            session.delete(row)
            session.commit()
            return True

    def create_entity(self, kind: EntityKind, owner_id: str, data: dict) -> EntityRecord:
        now = time.time()
        with self.Session() as session:
            row = EntityRow(
                entity_id=uuid.uuid4().hex,
                kind=EntityKind(kind).value,
                owner_id=owner_id,
                coffee_id=data.get("coffee_id"),
                is_public=bool(data.get("is_public")),
                data=data,
                images=[],
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_entity_record(row)

    def _get_entity_row(
        self, session: Session, kind: EntityKind, entity_id: str
    ) -> Optional["EntityRow"]:
        row = session.get(EntityRow, entity_id)
        if not row or row.kind != EntityKind(kind).value:
            return None
        return row

    def get_entity(self, kind: EntityKind, entity_id: str) -> Optional[EntityRecord]:
        with self.Session() as session:
            row = self._get_entity_row(session, kind, entity_id)
            return self._to_entity_record(row) if row else None

    def update_entity(
        self, kind: EntityKind, entity_id: str, changes: dict
    ) -> Optional[EntityRecord]:
        with self.Session() as session:
            row = self._get_entity_row(session, kind, entity_id)
            if not row:
                return None
            # Assign a fresh dict so the JSON column is flagged as changed.
            row.data = {**(row.data or {}), **changes}
            row.is_public = bool(row.data.get("is_public"))
            row.coffee_id = row.data.get("coffee_id")
            row.updated_at = time.time()
            session.commit()
            return self._to_entity_record(row)

    def _entity_filter(
        self,
        stmt,
        kind: EntityKind,
        owner_id: Optional[str],
        coffee_id: Optional[str],
        public_only: bool,
    ):
        stmt = stmt.where(EntityRow.kind == EntityKind(kind).value)
        if owner_id is not None:
            stmt = stmt.where(EntityRow.owner_id == owner_id)
        if coffee_id is not None:
            stmt = stmt.where(EntityRow.coffee_id == coffee_id)
        if public_only:
            stmt = stmt.where(EntityRow.is_public.is_(True))
        return stmt

    def list_entities(
        self,
        kind: EntityKind,
        *,
        owner_id: Optional[str] = None,
        coffee_id: Optional[str] = None,
        public_only: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> list[EntityRecord]:
        with self.Session() as session:
            stmt = self._entity_filter(
                select(EntityRow), kind, owner_id, coffee_id, public_only
            )
            stmt = stmt.order_by(EntityRow.created_at.desc()).offset(offset).limit(limit)
            rows = session.execute(stmt).scalars().all()
            return [self._to_entity_record(row) for row in rows]

    def count_entities(
        self,
        kind: EntityKind,
        *,
        owner_id: Optional[str] = None,
        coffee_id: Optional[str] = None,
        public_only: bool = False,
    ) -> int:
        with self.Session() as session:
            stmt = self._entity_filter(
                select(func.count()).select_from(EntityRow),
                kind,
                owner_id,
                coffee_id,
                public_only,
            )
            return session.execute(stmt).scalar_one()

    def count_brews_for_coffee(self, coffee_id: str) -> int:
        return self.count_entities(EntityKind.BREW, coffee_id=coffee_id)

    def delete_entity(self, kind: EntityKind, entity_id: str) -> bool:
        with self.Session() as session:
            row = self._get_entity_row(session, kind, entity_id)
            if not row:
                return False
            session.delete(row)
            session.commit()
            return True

    def get_images(self, kind: EntityKind, entity_id: str) -> Optional[list[dict]]:
        with self.Session() as session:
            if kind == EntityKind.USER:
                row = session.get(UserRow, entity_id)
            else:
                row = self._get_entity_row(session, kind, entity_id)
            if not row:
                return None
            return list(row.images or [])

    def save_images(self, kind: EntityKind, entity_id: str, images: list[dict]) -> bool:
        with self.Session() as session:
            if kind == EntityKind.USER:
                row = session.get(UserRow, entity_id)
            else:
                row = self._get_entity_row(session, kind, entity_id)
            if not row:
                return False
            # Assign a fresh list so the JSON column is flagged as changed.
            row.images = list(images)
            row.updated_at = time.time()
            session.commit()
            return True

    def create_friendship(self, requester_id: str, recipient_id: str) -> FriendshipRecord:
        now = time.time()
        with self.Session() as session:
            row = FriendshipRow(
                friendship_id=uuid.uuid4().hex,
                requester_id=requester_id,
                recipient_id=recipient_id,
                status=FriendshipStatus.PENDING.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return self._to_friendship_record(row)

    def get_friendship(self, friendship_id: str) -> Optional[FriendshipRecord]:
        with self.Session() as session:
            row = session.get(FriendshipRow, friendship_id)
            return self._to_friendship_record(row) if row else None

    def find_friendship(self, user_a: str, user_b: str) -> Optional[FriendshipRecord]:
        with self.Session() as session:
            stmt = select(FriendshipRow).where(
                or_(
                    (FriendshipRow.requester_id == user_a)
                    & (FriendshipRow.recipient_id == user_b),
                    (FriendshipRow.requester_id == user_b)
                    & (FriendshipRow.recipient_id == user_a),
                )
            )
            row = session.execute(stmt.limit(1)).scalars().first()
            return self._to_friendship_record(row) if row else None

    def list_friendships(
        self, user_id: str, *, status: Optional[FriendshipStatus] = None
    ) -> list[FriendshipRecord]:
        with self.Session() as session:
            stmt = select(FriendshipRow).where(
                or_(
                    FriendshipRow.requester_id == user_id,
                    FriendshipRow.recipient_id == user_id,
                )
            )
            if status is not None:
                stmt = stmt.where(FriendshipRow.status == FriendshipStatus(status).value)
            stmt = stmt.order_by(FriendshipRow.updated_at.desc())
            rows = session.execute(stmt).scalars().all()
            return [self._to_friendship_record(row) for row in rows]

    def save_friendship(self, record: FriendshipRecord) -> bool:
        with self.Session() as session:
            row = session.get(FriendshipRow, record.friendship_id)
            if not row:
                return False
            row.requester_id = record.requester_id
            row.recipient_id = record.recipient_id
            row.status = FriendshipStatus(record.status).value
            row.updated_at = time.time()
            session.commit()
            return True

    def delete_friendship(self, friendship_id: str) -> bool:
        with self.Session() as session:
            row = session.get(FriendshipRow, friendship_id)
            if not row:
                return False
            session.delete(row)
            session.commit()
            return True


Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    user_id = Column(String, primary_key=True)
    username = Column(String, nullable=False, unique=True)
    email = Column(String, nullable=False, unique=True)
    password_hash = Column(String, nullable=False)
    images = Column(JSON, nullable=False, default=list)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class EntityRow(Base):
    __tablename__ = "entities"

    entity_id = Column(String, primary_key=True)
    kind = Column(String, nullable=False, index=True)
    owner_id = Column(String, nullable=False, index=True)
    coffee_id = Column(String, nullable=True, index=True)
    is_public = Column(Boolean, nullable=False, default=False, index=True)
    data = Column(JSON, nullable=False)
    images = Column(JSON, nullable=False, default=list)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)


class FriendshipRow(Base):
    __tablename__ = "friendships"

    friendship_id = Column(String, primary_key=True)
    requester_id = Column(String, nullable=False, index=True)
    recipient_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, index=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
