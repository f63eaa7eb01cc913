# seed.py - First administrator for a fresh deployment
#
# Usage (after migrating):
#   BOOTSTRAP_ADMIN_EMAIL=admin@example.org BOOTSTRAP_ADMIN_PASSWORD=... python seed.py
# The API also runs ensure_admin at startup when both variables are set.
# Nothing happens once any admin exists.

import os
import asyncio
import logging
from typing import Optional

from auth import AuthService, validate_password_policy
from database import init_db, get_db_context
from models import User, UserRole
from store import RecordStore

logger = logging.getLogger("letterdesk.seed")

BOOTSTRAP_ADMIN_EMAIL = os.getenv("BOOTSTRAP_ADMIN_EMAIL", "")
BOOTSTRAP_ADMIN_PASSWORD = os.getenv("BOOTSTRAP_ADMIN_PASSWORD", "")
BOOTSTRAP_ADMIN_NAME = os.getenv("BOOTSTRAP_ADMIN_NAME", "Administrator")


async def ensure_admin(
    store: RecordStore,
    email: str,
    password: str,
    full_name: str = "Administrator",
) -> Optional[User]:
    """Create the first admin account; returns it, or None if an admin already exists"""
    if await store.count(User, User.role == UserRole.ADMIN):
        return None
    validate_password_policy(password)
    if await store.select(User, User.email == email):
        raise ValueError(f"{email} already exists and is not an admin; promote it instead")

    admin = User(
        email=email,
        full_name=full_name,
        password_hash=AuthService.hash_password(password),
        role=UserRole.ADMIN,
        permissions=[],
        is_active=True,
    )
    await store.insert(admin)
    logger.info(f"Bootstrap admin created: {email}")
    return admin


async def seed_from_env() -> Optional[User]:
    async with get_db_context() as session:
        return await ensure_admin(
            RecordStore(session), BOOTSTRAP_ADMIN_EMAIL, BOOTSTRAP_ADMIN_PASSWORD, BOOTSTRAP_ADMIN_NAME,
        )


async def main():
    if not (BOOTSTRAP_ADMIN_EMAIL and BOOTSTRAP_ADMIN_PASSWORD):
        raise SystemExit("Set BOOTSTRAP_ADMIN_EMAIL and BOOTSTRAP_ADMIN_PASSWORD")
    await init_db()
    created = await seed_from_env()
    if created is None:
        logger.info("An admin already exists; nothing to do")


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s %(message)s")
    asyncio.run(main())
