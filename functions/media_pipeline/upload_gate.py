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

import logging
import os
from dataclasses import dataclass, field
from typing import List, Optional

from shared.errors import CapacityExceededError, ValidationError
from shared.types import EntityKind, SkippedFile, UploadCandidate, policy_for

logger = logging.getLogger(__name__)

ALLOWED_CONTENT_TYPES = frozenset(
    {"image/jpeg", "image/png", "image/webp", "image/heic"}
)
ALLOWED_EXTENSIONS = frozenset({"jpg", "jpeg", "png", "webp", "heic"})


@dataclass
class GateResult:
    accepted: List[UploadCandidate] = field(default_factory=list)
    skipped: List[SkippedFile] = field(default_factory=list)


def _extension(filename: str) -> str:
    return os.path.splitext(filename or "")[1].lower().lstrip(".")


def check_candidate(candidate: UploadCandidate, max_bytes: int) -> Optional[str]:
    """
    Returns the reason a single file is rejected, or None if it passes.

    Both the declared MIME type and the filename extension must be on the
    allow-list.
    """
    content_type = (candidate.content_type or "").strip().lower()
    if content_type not in ALLOWED_CONTENT_TYPES:
        return "Only image files (jpg, png, webp, heic) are allowed"
    if _extension(candidate.filename) not in ALLOWED_EXTENSIONS:
        return "Only image files (jpg, png, webp, heic) are allowed"
    if candidate.oversize or candidate.size > max_bytes:
        return f"File exceeds the {max_bytes // (1024 * 1024)}MB limit"
    if candidate.size == 0:
        return "File is empty"
    return None


def validate_batch(
    candidates: List[UploadCandidate],
    kind: EntityKind,
    current_count: int,
) -> GateResult:
    """
    Validates a batch of files destined for one entity.

    Type and size violations reject only the offending file, which is
    reported in `skipped`. The count check applies to the accepted files and
    rejects the whole batch.

    Raises:
        ValidationError: if the batch is empty or nothing in it is acceptable.
        CapacityExceededError: if the accepted files do not fit.
    """
    if not candidates:
        raise ValidationError("No images provided")

    policy = policy_for(kind)
    result = GateResult()
    for candidate in candidates:
        reason = check_candidate(candidate, policy.max_bytes)
        if reason:
            logger.warning(
                "Rejected upload %r for %s: %s", candidate.filename, kind, reason
            )
            result.skipped.append(SkippedFile(filename=candidate.filename, reason=reason))
        else:
            result.accepted.append(candidate)

    if not result.accepted:
        raise ValidationError(
            "No valid images provided",
            details={"skipped": [s.as_dict() for s in result.skipped]},
        )

    if current_count + len(result.accepted) > policy.capacity:
        raise CapacityExceededError(
            capacity=policy.capacity,
            requested=len(result.accepted),
            existing=current_count,
        )
    return result
