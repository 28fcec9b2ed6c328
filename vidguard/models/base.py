from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from vidguard.core.config import settings


class Base(DeclarativeBase):
    pass


def _create_engine():
    """Create database engine with appropriate settings based on database type."""
    url = settings.database_url

    # Sessions are used from worker threads
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return create_engine(url, pool_pre_ping=True, pool_size=5)


engine = _create_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
