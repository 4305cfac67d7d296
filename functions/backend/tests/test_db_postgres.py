import unittest

from backend.db import PostgresDbClient
from shared.errors import ValidationError
from shared.types import EntityKind, FriendshipStatus


class PostgresDbClientTests(unittest.TestCase):
    """
    Uses SQLite via SQLAlchemy URL for fast/local testing of the Postgres client logic.
    """

    @classmethod
    def setUpClass(cls):
        cls.db = PostgresDbClient("sqlite+pysqlite:///:memory:")

    def test_create_and_get_user(self):
        user = self.db.create_user("carol", "carol@example.com", "hash")
        fetched = self.db.get_user(user.user_id)
        self.assertIsNotNone(fetched)
        self.assertEqual(fetched.username, "carol")
        self.assertEqual(self.db.get_user_by_email("carol@example.com").user_id, user.user_id)
        self.assertEqual(self.db.get_user_by_username("carol").user_id, user.user_id)
        self.assertEqual(fetched.images, [])

    def test_duplicate_user_rejected(self):
        self.db.create_user("dave", "dave@example.com", "hash")
        with self.assertRaises(ValidationError):
            self.db.create_user("dave", "dave2@example.com", "hash")

    def test_entity_roundtrip_and_listing(self):
        owner = self.db.create_user("erin", "erin@example.com", "hash")
        coffee = self.db.create_entity(EntityKind.COFFEE, owner.user_id, {"name": "Kochere"})
        brew = self.db.create_entity(
            EntityKind.BREW, owner.user_id, {"coffee_id": coffee.entity_id, "rating": 7}
        )

        self.assertEqual(self.db.get_entity(EntityKind.COFFEE, coffee.entity_id).data["name"], "Kochere")
        # Kind mismatch behaves like a missing row.
        self.assertIsNone(self.db.get_entity(EntityKind.BREW, coffee.entity_id))

        brews = self.db.list_entities(EntityKind.BREW, owner_id=owner.user_id)
        self.assertEqual([b.entity_id for b in brews], [brew.entity_id])
        self.assertEqual(self.db.count_brews_for_coffee(coffee.entity_id), 1)

        self.assertTrue(self.db.delete_entity(EntityKind.BREW, brew.entity_id))
        self.assertFalse(self.db.delete_entity(EntityKind.BREW, brew.entity_id))
        self.assertEqual(self.db.count_brews_for_coffee(coffee.entity_id), 0)

    def test_save_and_get_images(self):
        owner = self.db.create_user("frank", "frank@example.com", "hash")
        coffee = self.db.create_entity(EntityKind.COFFEE, owner.user_id, {"name": "Gesha"})
        images = [{"image_id": "a", "filename": "a.webp", "is_primary": True}]

        self.assertTrue(self.db.save_images(EntityKind.COFFEE, coffee.entity_id, images))
        self.assertEqual(self.db.get_images(EntityKind.COFFEE, coffee.entity_id), images)

        self.assertTrue(self.db.save_images(EntityKind.USER, owner.user_id, images))
        self.assertEqual(self.db.get_user(owner.user_id).images, images)

        self.assertFalse(self.db.save_images(EntityKind.COFFEE, "missing", images))
        self.assertIsNone(self.db.get_images(EntityKind.BREW, coffee.entity_id))

    def test_delete_user(self):
        user = self.db.create_user("gina", "gina@example.com", "hash")
        self.assertTrue(self.db.delete_user(user.user_id))
        self.assertIsNone(self.db.get_user(user.user_id))


    def test_update_user_and_conflicts(self):
        user = self.db.create_user("hana", "hana@example.com", "hash")
        self.db.create_user("ivan", "ivan@example.com", "hash")

        updated = self.db.update_user(user.user_id, username="hana2", password_hash="new")
        self.assertEqual(updated.username, "hana2")
        self.assertEqual(updated.email, "hana@example.com")
        self.assertEqual(self.db.get_user(user.user_id).password_hash, "new")

        with self.assertRaises(ValidationError):
            self.db.update_user(user.user_id, email="ivan@example.com")
        self.assertEqual(self.db.get_user(user.user_id).email, "hana@example.com")
        self.assertIsNone(self.db.update_user("missing", username="x"))

    def test_search_users_is_case_insensitive(self):
        me = self.db.create_user("searcher", "searcher@example.com", "hash")
        self.db.create_user("JulesBrew", "jules@example.com", "hash")
        found = self.db.search_users("julesb", exclude_user_id=me.user_id)
        self.assertEqual([u.username for u in found], ["JulesBrew"])
        self.assertEqual(self.db.search_users("searcher", exclude_user_id=me.user_id), [])

    def test_update_entity_and_public_listing(self):
        owner = self.db.create_user("kim", "kim@example.com", "hash")
        coffee = self.db.create_entity(EntityKind.COFFEE, owner.user_id, {"name": "Sidra"})
        brews = [
            self.db.create_entity(
                EntityKind.BREW,
                owner.user_id,
                {"coffee_id": coffee.entity_id, "rating": i, "is_public": False},
            )
            for i in range(3)
        ]
        self.assertEqual(
            self.db.count_entities(
                EntityKind.BREW, coffee_id=coffee.entity_id, public_only=True
            ),
            0,
        )

        updated = self.db.update_entity(
            EntityKind.BREW, brews[0].entity_id, {"is_public": True, "rating": 9}
        )
        self.assertEqual(updated.data["rating"], 9)
        self.assertEqual(updated.data["coffee_id"], coffee.entity_id)
        self.db.update_entity(EntityKind.BREW, brews[1].entity_id, {"is_public": True})

        public = self.db.list_entities(
            EntityKind.BREW, coffee_id=coffee.entity_id, public_only=True
        )
        self.assertEqual(
            {b.entity_id for b in public}, {brews[0].entity_id, brews[1].entity_id}
        )
        page = self.db.list_entities(
            EntityKind.BREW, coffee_id=coffee.entity_id, public_only=True, limit=1, offset=1
        )
        self.assertEqual(len(page), 1)
        self.assertEqual(
            self.db.count_entities(EntityKind.BREW, owner_id=owner.user_id), 3
        )
        self.assertIsNone(
            self.db.update_entity(EntityKind.COFFEE, brews[0].entity_id, {"name": "x"})
        )

    def test_friendship_lifecycle(self):
        a = self.db.create_user("lena", "lena@example.com", "hash")
        b = self.db.create_user("milo", "milo@example.com", "hash")

        record = self.db.create_friendship(a.user_id, b.user_id)
        self.assertEqual(record.status, FriendshipStatus.PENDING)
        self.assertEqual(
            self.db.find_friendship(b.user_id, a.user_id).friendship_id,
            record.friendship_id,
        )

        record.status = FriendshipStatus.ACCEPTED
        self.assertTrue(self.db.save_friendship(record))
        self.assertEqual(
            self.db.get_friendship(record.friendship_id).status, FriendshipStatus.ACCEPTED
        )
        self.assertEqual(
            len(self.db.list_friendships(b.user_id, status=FriendshipStatus.ACCEPTED)), 1
        )
        self.assertEqual(
            self.db.list_friendships(b.user_id, status=FriendshipStatus.PENDING), []
        )

        self.assertTrue(self.db.delete_friendship(record.friendship_id))
        self.assertFalse(self.db.delete_friendship(record.friendship_id))
        self.assertIsNone(self.db.find_friendship(a.user_id, b.user_id))


if __name__ == "__main__":
    unittest.main()
