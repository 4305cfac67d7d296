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
Error taxonomy shared by the media pipeline and the HTTP layer.

Every error carries an HTTP-equivalent status code so the API can render it
without knowing which layer raised it.
"""

from __future__ import annotations

from typing import Any


class BrewlogError(Exception):
    """Base class for errors surfaced to API callers."""

    code = "BREWLOG_ERROR"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"detail": self.message, "code": self.code}
        if self.details:
            result["details"] = self.details
        return result


class ValidationError(BrewlogError):
    """Bad file type, size or an empty batch."""

    code = "VALIDATION_ERROR"
    status_code = 400


class CapacityExceededError(BrewlogError):
    """The entity cannot hold the requested number of images."""

    code = "CAPACITY_EXCEEDED"
    status_code = 400

    def __init__(self, capacity: int, requested: int, existing: int):
        remaining = max(capacity - existing, 0)
        super().__init__(
            f"Cannot upload {requested} image(s): "
            f"{capacity} max, {requested} requested, {existing} existing.",
            details={
                "capacity": capacity,
                "requested": requested,
                "existing": existing,
                "remaining": remaining,
            },
        )
        self.capacity = capacity
        self.requested = requested
        self.existing = existing
        self.remaining = remaining


class ProcessingError(BrewlogError):
    """The buffer could not be decoded as an image."""

    code = "PROCESSING_ERROR"
    status_code = 422


class NotFoundError(BrewlogError):
    code = "NOT_FOUND"
    status_code = 404


class StorageError(BrewlogError):
    """Durable write, delete or lock failure."""

    code = "STORAGE_ERROR"
    status_code = 500


class ForbiddenError(BrewlogError):
    """The caller may see the resource but not act on it."""

    code = "FORBIDDEN"
    status_code = 403
