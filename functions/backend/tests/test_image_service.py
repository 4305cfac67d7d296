import io
import threading
import time
import unittest
from unittest import mock

import redis
from PIL import Image
from redis.exceptions import LockError

from backend.db import InMemoryDbClient
from backend.image_service import ImageService
from backend.locks import InMemoryEntityLocks, RedisEntityLocks
from backend.storage import AssetStore, InMemoryBlobBackend
from shared.errors import CapacityExceededError, NotFoundError, StorageError
from shared.types import EntityKind, UploadCandidate


def _candidate(name="photo.jpg"):
    buffer = io.BytesIO()
    Image.new("RGB", (400, 300), (10, 120, 200)).save(buffer, format="JPEG")
    return UploadCandidate(filename=name, content_type="image/jpeg", data=buffer.getvalue())


class FailingThumbnailBackend(InMemoryBlobBackend):
    def put(self, key, data, content_type):
        if "/thumbnails/" in key:
            raise StorageError("disk full", {"key": key})
        super().put(key, data, content_type)


class SlowBackend(InMemoryBlobBackend):
    def put(self, key, data, content_type):
        time.sleep(0.5)
        super().put(key, data, content_type)


class ImageServiceTests(unittest.TestCase):
    def _service(self, backend=None, io_timeout_seconds=30):
        self.db = InMemoryDbClient()
        self.blobs = backend or InMemoryBlobBackend()
        self.user = self.db.create_user("alice", "alice@example.com", "hash")
        self.coffee = self.db.create_entity(
            EntityKind.COFFEE, self.user.user_id, {"name": "Kochere"}
        )
        return ImageService(
            self.db,
            AssetStore(backend=self.blobs),
            InMemoryEntityLocks(timeout_seconds=5),
            max_workers=4,
            io_timeout_seconds=io_timeout_seconds,
        )

    def _ledger(self):
        return self.db.get_images(EntityKind.COFFEE, self.coffee.entity_id)

    def test_thumbnail_failure_leaves_nothing_behind(self):
        service = self._service(backend=FailingThumbnailBackend())
        with self.assertRaises(StorageError):
            service.upload_images(
                EntityKind.COFFEE,
                self.coffee.entity_id,
                self.user.user_id,
                [_candidate("a.jpg"), _candidate("b.jpg")],
            )
        self.assertEqual(self.blobs.objects, {})
        self.assertEqual(self._ledger(), [])

    def test_storage_timeout_raises_storage_error(self):
        service = self._service(backend=SlowBackend(), io_timeout_seconds=0.05)
        with self.assertRaises(StorageError) as ctx:
            service.upload_images(
                EntityKind.COFFEE,
                self.coffee.entity_id,
                self.user.user_id,
                [_candidate()],
            )
        self.assertEqual(ctx.exception.details["timeout_seconds"], 0.05)
        self.assertEqual(self._ledger(), [])

    def test_concurrent_uploads_respect_capacity(self):
        service = self._service()
        errors = []
        outcomes = []

        def upload():
            try:
                outcomes.append(
                    service.upload_images(
                        EntityKind.COFFEE,
                        self.coffee.entity_id,
                        self.user.user_id,
                        [_candidate(f"{i}.jpg") for i in range(6)],
                    )
                )
            except CapacityExceededError as e:
                errors.append(e)

        threads = [threading.Thread(target=upload) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(len(outcomes), 1)
        self.assertEqual(len(errors), 1)
        images = self._ledger()
        self.assertEqual(len(images), 6)
        self.assertEqual(sum(1 for image in images if image["is_primary"]), 1)
        # The rejected batch's renditions were discarded.
        self.assertEqual(len(self.blobs.objects), 12)

    def test_concurrent_uploads_within_capacity_all_land(self):
        service = self._service()
        threads = [
            threading.Thread(
                target=service.upload_images,
                args=(
                    EntityKind.COFFEE,
                    self.coffee.entity_id,
                    self.user.user_id,
                    [_candidate(f"{n}-{i}.jpg") for i in range(5)],
                ),
            )
            for n in range(2)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        images = self._ledger()
        self.assertEqual(len(images), 10)
        self.assertEqual(len({image["image_id"] for image in images}), 10)
        self.assertEqual(sum(1 for image in images if image["is_primary"]), 1)

    def test_other_users_entity_is_not_found(self):
        service = self._service()
        other = self.db.create_user("bob", "bob@example.com", "hash")
        with self.assertRaises(NotFoundError):
            service.upload_images(
                EntityKind.COFFEE, self.coffee.entity_id, other.user_id, [_candidate()]
            )
        with self.assertRaises(NotFoundError):
            service.upload_avatar(self.user.user_id + "x", _candidate())

    def test_remove_entity_assets(self):
        service = self._service()
        service.upload_images(
            EntityKind.COFFEE,
            self.coffee.entity_id,
            self.user.user_id,
            [_candidate("a.jpg"), _candidate("b.jpg")],
        )
        self.assertEqual(len(self.blobs.objects), 4)
        service.remove_entity_assets(EntityKind.COFFEE, self.coffee.entity_id)
        self.assertEqual(self.blobs.objects, {})

    def test_cleanup_failure_does_not_mask_original_error(self):
        class UndeletableBackend(InMemoryBlobBackend):
            def __post_init__(self):
                super().__post_init__()
                self.attempted = []

            def delete(self, key):
                self.attempted.append(key)
                raise StorageError("delete failed", {"key": key})

        class VanishingDb(InMemoryDbClient):
            def save_images(self, kind, entity_id, images):
                return False

        service = self._service(backend=UndeletableBackend())
        service.db = VanishingDb()
        service.db.users = self.db.users
        service.db.entities = self.db.entities

        with self.assertLogs("backend.image_service", level="ERROR"):
            with self.assertRaises(NotFoundError):
                service.upload_images(
                    EntityKind.COFFEE,
                    self.coffee.entity_id,
                    self.user.user_id,
                    [_candidate("a.jpg"), _candidate("b.jpg")],
                )
        self.assertEqual(len(self.blobs.attempted), 2)



class EntityLocksTests(unittest.TestCase):
    def test_lock_timeout_raises_storage_error(self):
        locks = InMemoryEntityLocks(timeout_seconds=0.05)
        with locks.hold(EntityKind.COFFEE, "c1"):
            with self.assertRaises(StorageError):
                with locks.hold(EntityKind.COFFEE, "c1"):
                    pass

    def test_distinct_entities_do_not_block(self):
        locks = InMemoryEntityLocks(timeout_seconds=0.05)
        with locks.hold(EntityKind.COFFEE, "c1"):
            with locks.hold(EntityKind.COFFEE, "c2"):
                pass
            with locks.hold(EntityKind.BREW, "c1"):
                pass


    def test_slots_are_dropped_after_use(self):
        locks = InMemoryEntityLocks(timeout_seconds=0.05)
        with locks.hold(EntityKind.COFFEE, "c1"):
            self.assertEqual(len(locks._slots), 1)
            with self.assertRaises(StorageError):
                with locks.hold(EntityKind.COFFEE, "c1"):
                    pass
            self.assertEqual(len(locks._slots), 1)
        self.assertEqual(locks._slots, {})

        for i in range(50):
            with locks.hold(EntityKind.BREW, f"b{i}"):
                pass
        self.assertEqual(locks._slots, {})


class RedisEntityLocksTests(unittest.TestCase):
    def setUp(self):
        patcher = mock.patch("backend.locks.redis.Redis.from_url")
        self.from_url = patcher.start()
        self.addCleanup(patcher.stop)
        self.lock = self.from_url.return_value.lock.return_value
        self.locks = RedisEntityLocks(
            url="redis://localhost:6379/0", prefix="brewlog", timeout_seconds=2
        )

    def test_hold_acquires_and_releases(self):
        self.lock.acquire.return_value = True
        with self.locks.hold(EntityKind.COFFEE, "c1"):
            self.lock.release.assert_not_called()
        self.lock.release.assert_called_once_with()

        name = self.from_url.return_value.lock.call_args.args[0]
        self.assertTrue(name.startswith("brewlog:"))
        self.assertIn("c1", name)

    def test_acquire_timeout_raises_storage_error(self):
        self.lock.acquire.return_value = False
        with self.assertRaises(StorageError):
            with self.locks.hold(EntityKind.COFFEE, "c1"):
                self.fail("lock body ran without the lock")
        self.lock.release.assert_not_called()

    def test_redis_failure_raises_storage_error(self):
        self.lock.acquire.side_effect = redis.RedisError("connection refused")
        with self.assertRaises(StorageError):
            with self.locks.hold(EntityKind.BREW, "b1"):
                pass

    def test_expired_lock_on_release_is_ignored(self):
        self.lock.acquire.return_value = True
        self.lock.release.side_effect = LockError("already expired")
        with self.locks.hold(EntityKind.BREW, "b1"):
            pass


if __name__ == "__main__":
    unittest.main()
