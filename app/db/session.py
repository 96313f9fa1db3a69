from sqlmodel import create_engine, SQLModel, Session
from app.core.config import get_settings

settings = get_settings()


def _connect_args(database_url: str, timeout: float) -> dict:
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False, "timeout": timeout}
    if database_url.startswith("postgresql"):
        return {"connect_timeout": max(1, int(timeout))}
    return {}


# Create database engine
engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args(settings.DATABASE_URL, settings.STORE_TIMEOUT_SECONDS),
    pool_pre_ping=True,
    echo=settings.ENV == "dev"
)


def create_db_and_tables():
    """Create database tables."""
    from app.models import api_key, qr_code, user, webhook  # noqa: F401  register tables

    SQLModel.metadata.create_all(engine)


def get_session():
    """Get database session dependency."""
    with Session(engine) as session:
        yield session
