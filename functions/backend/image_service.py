"""
Image upload, delete and primary-selection for coffees, brews and avatars.

Flow per upload: ownership check -> upload gate -> renditions processed and
written in a bounded thread pool -> ledger update under the entity lock.
The batch is not atomic: a file that fails to decode is skipped and reported
while the rest proceed.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import List, Optional

from backend.db import DbClient
from backend.locks import EntityLocks
from backend.storage import AssetStore, StoredAsset
from media_pipeline import ledger
from media_pipeline.upload_gate import validate_batch
from shared.errors import BrewlogError, NotFoundError, ProcessingError, StorageError
from shared.types import (
    EntityKind,
    ImageAsset,
    SkippedFile,
    UploadCandidate,
    policy_for,
)

logger = logging.getLogger(__name__)

_NOT_FOUND_MESSAGES = {
    EntityKind.COFFEE: "Coffee not found",
    EntityKind.BREW: "Brew not found",
    EntityKind.USER: "User not found",
}


@dataclass
class UploadOutcome:
    images: List[ImageAsset]
    added: List[ImageAsset]
    skipped: List[SkippedFile] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "message": f"{len(self.added)} image(s) uploaded",
            "images": [image.as_dict() for image in self.images],
            "added": [image.as_dict() for image in self.added],
            "skipped": [s.as_dict() for s in self.skipped],
        }


class ImageService:
    """Orchestrates the media pipeline against the document store."""

    def __init__(
        self,
        db: DbClient,
        store: AssetStore,
        locks: EntityLocks,
        *,
        max_workers: int = 4,
        io_timeout_seconds: float = 30.0,
    ):
        self.db = db
        self.store = store
        self.locks = locks
        self.max_workers = max(1, max_workers)
        self.io_timeout_seconds = io_timeout_seconds

    def _owned_images(
        self, kind: EntityKind, entity_id: str, principal_id: str
    ) -> List[ImageAsset]:
        """Current image list, or NotFoundError if the principal does not own the entity."""
        not_found = NotFoundError(
            _NOT_FOUND_MESSAGES[EntityKind(kind)], details={"id": entity_id}
        )
        if kind == EntityKind.USER:
            if entity_id != principal_id:
                raise not_found
            owner = self.db.get_user(entity_id)
            raw_images = owner.images if owner else None
        else:
            entity = self.db.get_entity(kind, entity_id)
            if entity is None or entity.owner_id != principal_id:
                raise not_found
            raw_images = entity.images
        if raw_images is None:
            raise not_found
        return [ImageAsset.from_dict(image) for image in raw_images]

    def _save_ledger(
        self, kind: EntityKind, entity_id: str, images: List[ImageAsset]
    ) -> None:
        saved = self.db.save_images(kind, entity_id, [image.as_dict() for image in images])
        if not saved:
            raise NotFoundError(_NOT_FOUND_MESSAGES[EntityKind(kind)], details={"id": entity_id})

    def _discard(self, category: str, entity_id: str, stored: List[StoredAsset]) -> None:
        """Removes a batch's renditions; removal failures are logged, not raised."""
        for asset in stored:
            try:
                self.store.remove(category, entity_id, asset.filename)
            except StorageError:
                logger.exception(
                    "Could not discard %s/%s/%s", category, entity_id, asset.filename
                )

    def image_count(self, kind: EntityKind, entity_id: str, principal_id: str) -> int:
        """Number of images the principal's entity holds now."""
        return len(self._owned_images(kind, entity_id, principal_id))

    def _store_batch(
        self, candidates: List[UploadCandidate], category: str, entity_id: str
    ) -> tuple[List[StoredAsset], List[SkippedFile]]:
        """
        Processes and writes each file in parallel. Decode failures skip the
        file; a storage failure or timeout removes whatever this batch wrote
        and propagates as StorageError.
        """
        stored: List[StoredAsset] = []
        skipped: List[SkippedFile] = []
        failure: Optional[StorageError] = None

        pool = ThreadPoolExecutor(max_workers=min(self.max_workers, len(candidates)))
        try:
            futures = [
                pool.submit(self.store.save, c.data, category, entity_id, c.filename)
                for c in candidates
            ]
            deadline = time.monotonic() + self.io_timeout_seconds
            for candidate, future in zip(candidates, futures):
                try:
                    stored.append(
                        future.result(timeout=max(deadline - time.monotonic(), 0))
                    )
                except ProcessingError as e:
                    logger.warning("Skipping %r: %s", candidate.filename, e.message)
                    skipped.append(SkippedFile(filename=candidate.filename, reason=e.message))
                except FuturesTimeoutError:
                    failure = failure or StorageError(
                        "Timed out storing images",
                        details={"timeout_seconds": self.io_timeout_seconds},
                    )
                except StorageError as e:
                    failure = failure or e
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        if failure is not None:
            logger.error("Storage failure for %s/%s: %s", category, entity_id, failure.message)
            self._discard(category, entity_id, stored)
            raise failure
        return stored, skipped

    def upload_images(
        self,
        kind: EntityKind,
        entity_id: str,
        principal_id: str,
        candidates: List[UploadCandidate],
    ) -> UploadOutcome:
        policy = policy_for(kind)
        existing = self._owned_images(kind, entity_id, principal_id)
        gate = validate_batch(candidates, kind, len(existing))

        stored, failed = self._store_batch(gate.accepted, policy.category, entity_id)
        skipped = gate.skipped + failed
        if not stored:
            raise ProcessingError(
                "None of the uploaded files could be processed",
                details={"skipped": [s.as_dict() for s in skipped]},
            )

        new_images = [asset.to_image_asset() for asset in stored]
        try:
            with self.locks.hold(kind, entity_id):
                # Re-read under the lock; a concurrent upload may have landed.
                current = self._owned_images(kind, entity_id, principal_id)
                updated = ledger.add_images(current, new_images, policy.capacity)
                self._save_ledger(kind, entity_id, updated)
        except BrewlogError:
            self._discard(policy.category, entity_id, stored)
            raise

        logger.info(
            "Uploaded %d image(s) to %s %s (%d skipped)",
            len(stored), kind, entity_id, len(skipped),
        )
        return UploadOutcome(
            images=updated, added=updated[len(current):], skipped=skipped
        )

    def delete_image(
        self, kind: EntityKind, entity_id: str, principal_id: str, image_id: str
    ) -> List[ImageAsset]:
        """
        Drops the ledger entry first, then the files. A file removal failure
        after the ledger write leaves an orphaned file, never a dangling entry.
        """
        policy = policy_for(kind)
        with self.locks.hold(kind, entity_id):
            current = self._owned_images(kind, entity_id, principal_id)
            remaining, removed = ledger.remove_image(current, image_id)
            self._save_ledger(kind, entity_id, remaining)
        self.store.remove(policy.category, entity_id, removed.filename)
        return remaining

    def set_primary(
        self, kind: EntityKind, entity_id: str, principal_id: str, image_id: str
    ) -> List[ImageAsset]:
        with self.locks.hold(kind, entity_id):
            current = self._owned_images(kind, entity_id, principal_id)
            updated = ledger.set_primary(current, image_id)
            self._save_ledger(kind, entity_id, updated)
        return updated

    def upload_avatar(self, user_id: str, candidate: UploadCandidate) -> ImageAsset:
        """Stores a new avatar and replaces the previous one, if any."""
        policy = policy_for(EntityKind.USER)
        self._owned_images(EntityKind.USER, user_id, user_id)
        # The new file replaces the slot, so the existing avatar does not count.
        gate = validate_batch([candidate], EntityKind.USER, 0)
        stored, failed = self._store_batch(gate.accepted, policy.category, user_id)
        if not stored:
            raise ProcessingError(failed[0].reason, details={"filename": failed[0].filename})

        new_image = stored[0].to_image_asset()
        try:
            with self.locks.hold(EntityKind.USER, user_id):
                previous = self._owned_images(EntityKind.USER, user_id, user_id)
                updated = ledger.replace_single(new_image)
                self._save_ledger(EntityKind.USER, user_id, updated)
        except BrewlogError:
            self._discard(policy.category, user_id, stored)
            raise

        for old in previous:
            try:
                self.store.remove(policy.category, user_id, old.filename)
            except StorageError:
                logger.exception("Could not remove replaced avatar %s", old.filename)
        return updated[0]

    def delete_avatar(self, user_id: str) -> None:
        policy = policy_for(EntityKind.USER)
        with self.locks.hold(EntityKind.USER, user_id):
            current = self._owned_images(EntityKind.USER, user_id, user_id)
            if not current:
                raise NotFoundError("No avatar to delete")
            self._save_ledger(EntityKind.USER, user_id, [])
        for image in current:
            self.store.remove(policy.category, user_id, image.filename)

    def remove_entity_assets(self, kind: EntityKind, entity_id: str) -> None:
        """Deletes every stored rendition for an entity being deleted."""
        self.store.remove_all(policy_for(kind).category, entity_id)
