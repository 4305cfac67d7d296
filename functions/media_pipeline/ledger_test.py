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

import unittest

from media_pipeline import ledger
from shared.errors import CapacityExceededError, NotFoundError
from shared.types import ImageAsset


def _asset(name, is_primary=False):
    return ImageAsset(
        url=f"/uploads/coffees/c1/{name}",
        thumbnail_url=f"/uploads/coffees/c1/thumbnails/{name}",
        filename=name,
        original_name=name,
        is_primary=is_primary,
        image_id=name,
    )


def _primaries(images):
    return [image.image_id for image in images if image.is_primary]


class LedgerTest(unittest.TestCase):

    def test_first_upload_becomes_primary(self):
        images = ledger.add_images([], [_asset("a"), _asset("b")], capacity=10)
        self.assertEqual(_primaries(images), ["a"])

    def test_existing_primary_is_kept(self):
        existing = [_asset("a", is_primary=True)]
        images = ledger.add_images(existing, [_asset("b", is_primary=True)], capacity=10)
        self.assertEqual(_primaries(images), ["a"])
        self.assertEqual([i.image_id for i in images], ["a", "b"])

    def test_add_does_not_mutate_input(self):
        existing = [_asset("a", is_primary=True)]
        ledger.add_images(existing, [_asset("b")], capacity=10)
        self.assertEqual(len(existing), 1)

    def test_add_over_capacity(self):
        existing = [_asset(str(i)) for i in range(4)]
        with self.assertRaises(CapacityExceededError) as ctx:
            ledger.add_images(existing, [_asset("x"), _asset("y")], capacity=5)
        self.assertEqual(ctx.exception.requested, 2)
        self.assertEqual(ctx.exception.remaining, 1)

    def test_deleting_primary_promotes_new_first(self):
        images = [_asset("a"), _asset("b", is_primary=True), _asset("c")]
        remaining, removed = ledger.remove_image(images, "b")
        self.assertEqual(removed.image_id, "b")
        self.assertEqual([i.image_id for i in remaining], ["a", "c"])
        self.assertEqual(_primaries(remaining), ["a"])

    def test_deleting_non_primary_leaves_primary(self):
        images = [_asset("a", is_primary=True), _asset("b")]
        remaining, _ = ledger.remove_image(images, "b")
        self.assertEqual(_primaries(remaining), ["a"])

    def test_deleting_last_image_leaves_empty_list(self):
        remaining, _ = ledger.remove_image([_asset("a", is_primary=True)], "a")
        self.assertEqual(remaining, [])
        self.assertIsNone(ledger.primary_image(remaining))

    def test_delete_unknown_id(self):
        with self.assertRaises(NotFoundError):
            ledger.remove_image([_asset("a", is_primary=True)], "zzz")

    def test_set_primary(self):
        images = [_asset("a", is_primary=True), _asset("b"), _asset("c")]
        updated = ledger.set_primary(images, "c")
        self.assertEqual(_primaries(updated), ["c"])
        with self.assertRaises(NotFoundError):
            ledger.set_primary(images, "nope")

    def test_primary_invariant_across_transitions(self):
        images = ledger.add_images([], [_asset("a"), _asset("b")], capacity=5)
        images = ledger.add_images(images, [_asset("c")], capacity=5)
        images = ledger.set_primary(images, "b")
        images, _ = ledger.remove_image(images, "b")
        self.assertEqual(len(_primaries(images)), 1)
        images, _ = ledger.remove_image(images, "a")
        self.assertEqual(_primaries(images), ["c"])

    def test_replace_single(self):
        images = ledger.replace_single(_asset("avatar"))
        self.assertEqual(_primaries(images), ["avatar"])

    def test_primary_image_falls_back_to_first(self):
        self.assertEqual(ledger.primary_image([_asset("a"), _asset("b")]).image_id, "a")


if __name__ == "__main__":
    unittest.main()
