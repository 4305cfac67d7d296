"""
Remove stored image renditions that no ledger entry references.

An upload that times out, or a file removal that fails after its ledger
entry was dropped, leaves files behind with nothing pointing at them. This
walks every category in the asset store and deletes:

  * entity directories whose coffee, brew or user no longer exists
  * files inside a live entity's directory that its image list does not name
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.db import DbClient
from backend.dependencies import get_asset_store, get_db_client
from backend.storage import AssetStore
from shared.types import CATEGORY_POLICIES

logger = logging.getLogger(__name__)


@dataclass
class PruneReport:
    entities: int = 0
    files: int = 0


def _referenced_filenames(images: Optional[list[dict]]) -> set[str]:
    return {image["filename"] for image in images or [] if image.get("filename")}


def prune_orphans(store: AssetStore, db: DbClient, *, dry_run: bool) -> PruneReport:
    report = PruneReport()
    for policy in CATEGORY_POLICIES.values():
        for entity_id in store.list_entity_ids(policy.category):
            images = db.get_images(policy.kind, entity_id)
            if images is None:
                logger.info("Orphaned directory %s/%s", policy.category, entity_id)
                report.entities += 1
                if not dry_run:
                    store.remove_all(policy.category, entity_id)
                continue

            referenced = _referenced_filenames(images)
            for filename in store.list_filenames(policy.category, entity_id):
                if filename in referenced:
                    continue
                logger.info("Orphaned file %s/%s/%s", policy.category, entity_id, filename)
                report.files += 1
                if not dry_run:
                    store.remove(policy.category, entity_id, filename)
    return report


def main() -> int:
    parser = argparse.ArgumentParser(description="Prune orphaned image assets")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would be removed without deleting anything",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(levelname)s:%(message)s")
    report = prune_orphans(get_asset_store(), get_db_client(), dry_run=args.dry_run)

    verb = "Would remove" if args.dry_run else "Removed"
    logger.info(
        "%s %d orphaned entity directories and %d orphaned files",
        verb, report.entities, report.files,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
