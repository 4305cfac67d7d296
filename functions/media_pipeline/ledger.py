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

"""
Ordered image list for a parent entity and its primary-image bookkeeping.

Functions here never mutate their input; they return the new list so the
caller can persist it in a single document write. Whenever the list is
non-empty exactly one record is primary.
"""

from __future__ import annotations

from dataclasses import replace
from typing import List, Optional, Sequence, Tuple

from shared.errors import CapacityExceededError, NotFoundError
from shared.types import ImageAsset


def primary_image(images: Sequence[ImageAsset]) -> Optional[ImageAsset]:
    if not images:
        return None
    for image in images:
        if image.is_primary:
            return image
    return images[0]


def add_images(
    images: Sequence[ImageAsset],
    new_images: Sequence[ImageAsset],
    capacity: int,
) -> List[ImageAsset]:
    if len(images) + len(new_images) > capacity:
        raise CapacityExceededError(
            capacity=capacity, requested=len(new_images), existing=len(images)
        )

    has_primary = any(image.is_primary for image in images)
    result = list(images)
    for i, image in enumerate(new_images):
        result.append(replace(image, is_primary=(not has_primary and i == 0)))
    return result


def _find(images: Sequence[ImageAsset], image_id: str) -> int:
    for i, image in enumerate(images):
        if image.image_id == image_id:
            return i
    raise NotFoundError("Image not found", details={"image_id": image_id})


def remove_image(
    images: Sequence[ImageAsset], image_id: str
) -> Tuple[List[ImageAsset], ImageAsset]:
    index = _find(images, image_id)
    removed = images[index]
    remaining = [image for i, image in enumerate(images) if i != index]
    if removed.is_primary and remaining:
        remaining[0] = replace(remaining[0], is_primary=True)
    return remaining, removed


def set_primary(images: Sequence[ImageAsset], image_id: str) -> List[ImageAsset]:
    _find(images, image_id)
    return [replace(image, is_primary=(image.image_id == image_id)) for image in images]


def replace_single(new_image: ImageAsset) -> List[ImageAsset]:
    """Singleton slot (the avatar): the new image replaces whatever was there."""
    return [replace(new_image, is_primary=True)]
