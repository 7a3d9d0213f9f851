import logging
from sqlalchemy import create_engine, BigInteger, CheckConstraint, Column, String, Integer, DateTime, func
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()


class UserProfile(Base):
    __tablename__ = "user_profiles"
    __table_args__ = (
        CheckConstraint("gemstones >= 0", name="ck_user_profiles_gemstones_non_negative"),
    )

    user_id = Column(String(255), primary_key=True)
    gemstones = Column(Integer, nullable=False, default=0)
    last_free_gemstones_grant = Column(DateTime(timezone=True), nullable=True)
    # Write order stamp; an upsert carrying an older revision is discarded
    revision = Column(BigInteger, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


def build_engine(database_url: str) -> Engine:
    """
    Creates the SQLAlchemy engine for the given URL.
    In-memory SQLite databases share one connection so every thread sees the same tables.
    """
    if not database_url:
        raise ValueError("database_url is empty. Set DATABASE_URL or pass it in Settings.")
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite+pysqlite://"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_db_tables(engine: Engine):
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables checked/created.")


if __name__ == "__main__":
    from .config import Settings

    logging.basicConfig(level=logging.INFO)
    settings = Settings.from_env()
    print("Attempting to create database tables (if they don't exist)...")

    try:
        create_db_tables(build_engine(settings.database_url))
        print("Successfully connected and checked/created tables.")
        print(f"Connected to: {settings.database_url.split('@')[-1]}")
    except Exception as e:
        print(f"Error connecting to database or creating tables: {e}")
        print(f"Please ensure your database server is running and accessible at: {settings.database_url}")
