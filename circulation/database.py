from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from urllib.parse import quote_plus
from circulation.config import settings

def build_database_url() -> str:
    """Resolve the database URL from settings.

    An explicit ``database_url`` wins; otherwise a PostgreSQL URL is built
    from the ``db_*`` parts, falling back to a local SQLite file."""
    if settings.database_url:
        return settings.database_url
    if settings.db_name and settings.db_user:
        db_user = quote_plus(settings.db_user)
        db_password = quote_plus(settings.db_password or "")
        return f"postgresql://{db_user}:{db_password}@{settings.db_host}:{settings.db_port}/{settings.db_name}"
    return "sqlite:///./circulation.db"

def make_engine(url: str):
    if url.startswith("sqlite"):
        # Sessions are handed across request threads
        return create_engine(url, connect_args={"check_same_thread": False}, echo=False)

    # SSL connection arguments
    connect_args = {}
    if settings.db_ssl_mode != "disable":
        connect_args["sslmode"] = settings.db_ssl_mode
        if settings.db_ssl_cert:
            connect_args["sslcert"] = settings.db_ssl_cert
        if settings.db_ssl_key:
            connect_args["sslkey"] = settings.db_ssl_key
        if settings.db_ssl_root_cert:
            connect_args["sslrootcert"] = settings.db_ssl_root_cert

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_recycle=300,
        pool_size=10,
        max_overflow=20,
        echo=False,
        connect_args=connect_args
    )

DATABASE_URL = build_database_url()

engine = make_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def get_session_factory() -> sessionmaker:
    """Session factory for jobs that open one transaction per unit of work."""
    return SessionLocal

def init_db(bind=None):
    # Import models so every table is registered on Base.metadata
    import circulation.models  # noqa: F401
    Base.metadata.create_all(bind=bind or engine)

@contextmanager
def transaction(db: Session):
    """Commit on success, roll back on any error and re-raise it.

    Every engine operation runs inside exactly one of these, so a failure
    never leaves a partial transition behind."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
