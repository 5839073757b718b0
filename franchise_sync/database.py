from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from franchise_sync.config import get_settings

settings = get_settings()

if settings.database_url.startswith("sqlite"):
    # Sessions are opened from reconcile and cascade worker threads
    engine = create_engine(
        settings.database_url,
        connect_args={"check_same_thread": False}
    )
else:
    engine = create_engine(
        settings.database_url,
        pool_pre_ping=True,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Request-scoped session for the API routes."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create the catalog, link and sync log tables."""
    import franchise_sync.models  # noqa: F401

    Base.metadata.create_all(bind=engine)
