"""Demo data loader used by ``flask seed-demo``."""

import logging

from sqlalchemy import select

from worktrack.models import db
from worktrack.models.auth import User
from worktrack.seed_data import DEMO_USERS, ITEM_CATALOG, SPEC_CATALOG
from worktrack.services import catalog_service
from worktrack.utils.helpers import commit_or_unavailable

logger = logging.getLogger(__name__)


def seed_users(rows: list[dict]) -> int:
    """Insert users whose username is not present yet. Returns count added."""
    existing = set(db.session.execute(select(User.username)).scalars())
    added = 0
    for row in rows:
        if row["username"] in existing:
            continue
        db.session.add(User(
            username=row["username"],
            name=row["name"],
            email=row.get("email") or f"{row['username']}@worktrack.local",
            role=row["role"],
            department=row.get("department"),
        ))
        added += 1
    commit_or_unavailable()
    return added


def seed_demo() -> dict:
    counts = {
        "users": seed_users(DEMO_USERS),
        "items": catalog_service.seed_catalog("item", ITEM_CATALOG),
        "specs": catalog_service.seed_catalog("spec", SPEC_CATALOG),
    }
    logger.info("Demo seed: %s", counts)
    return counts
