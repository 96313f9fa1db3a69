"""Database initialization script.

Creates the tables and, on first run, a Business account with one API key.
The raw key is logged once and cannot be recovered afterwards.
"""
import json
import logging

from sqlmodel import Session, select

from app.core.security import generate_api_key
from app.db.session import create_db_and_tables, engine
from app.models.api_key import APIKey
from app.models.user import User

logger = logging.getLogger(__name__)

SEED_EMAIL = "api@qrwolf.dev"


def init_database():
    """Initialize database with tables and seed data."""
    logging.basicConfig(level=logging.INFO)

    logger.info("Creating database tables...")
    create_db_and_tables()

    with Session(engine) as session:
        existing_user = session.exec(select(User).where(User.email == SEED_EMAIL)).first()
        if existing_user:
            logger.info("Seed account already exists")
            return

        logger.info("Creating seed Business account...")
        account = User(email=SEED_EMAIL, subscription_tier="business", is_active=True)
        session.add(account)
        session.commit()
        session.refresh(account)

        logger.info("Creating initial API key...")
        issued = generate_api_key()
        api_key = APIKey(
            name="Initial Key",
            user_id=account.id,
            key_hash=issued.key_hash,
            key_prefix=issued.key_prefix,
            environment="development",
            permissions=json.dumps(["qr-codes:read", "qr-codes:write"]),
        )
        session.add(api_key)
        session.commit()

        logger.info("Database initialization complete!")
        logger.info(f"Seed account: {SEED_EMAIL} (id {account.id})")
        logger.info(f"Initial API key: {issued.key}")


if __name__ == "__main__":
    init_database()
