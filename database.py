import os
import logging
from typing import Generator
from sqlalchemy import create_engine, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import sessionmaker, Session
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Configure logging
logger = logging.getLogger(__name__)

# Database configuration
DATABASE_URL = (
    os.environ.get("DATABASE_URL")
    or os.environ.get("DATABASE_CONNECTION_STRING")
    or "sqlite:///./quivercore.db"
)
ENVIRONMENT = os.environ.get("ENVIRONMENT", "development")

# Supabase Postgres is required outside development
if ENVIRONMENT == "production" and not DATABASE_URL.startswith("postgresql://"):
    raise ValueError(
        "DATABASE_URL must be a valid PostgreSQL connection string "
        "starting with 'postgresql://' in production"
    )

if DATABASE_URL.startswith("sqlite"):
    engine_kwargs = {
        "connect_args": {"check_same_thread": False},
    }
else:
    # Engine configuration optimized for Supabase
    engine_kwargs = {
        "pool_size": int(os.environ.get("DB_POOL_SIZE", "10")),
        "max_overflow": int(os.environ.get("DB_MAX_OVERFLOW", "20")),
        "pool_pre_ping": True,
        "pool_recycle": 3600,  # Recycle connections every hour
        "echo": os.environ.get("SQL_ECHO", "false").lower() == "true",
    }

# Create engine
try:
    engine = create_engine(DATABASE_URL, **engine_kwargs)
    logger.info(f"Configured database engine ({engine.url.drivername})")
except Exception as e:
    logger.error(f"Failed to create database engine: {str(e)}")
    raise

# Session configuration
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False
)


def upsert_insert(db: Session, table):
    """
    Dialect-aware INSERT that supports ``on_conflict_do_update`` / ``on_conflict_do_nothing``.

    Counters are only ever changed through these statements so concurrent
    writers never lose an increment.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"Atomic upserts are not supported on '{dialect}'")


class DatabaseManager:
    """Database manager for handling connections and schema bootstrap"""

    @staticmethod
    def create_tables():
        """Create all tables for local development (production uses Alembic)"""
        from models import Base

        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created from ORM metadata")

    @staticmethod
    def test_connection() -> bool:
        """Test database connectivity"""
        try:
            with engine.connect() as connection:
                result = connection.execute(text("SELECT 1"))
                result.fetchone()
            logger.info("Database connection test successful")
            return True
        except Exception as e:
            logger.error(f"Database connection test failed: {str(e)}")
            return False

    @staticmethod
    def get_connection_info() -> dict:
        """Get database connection information (without sensitive data)"""
        url = engine.url
        info = {
            "database": url.database,
            "host": url.host,
            "port": url.port,
            "driver": url.drivername,
        }
        if hasattr(engine.pool, "checkedout"):
            info["checked_out"] = engine.pool.checkedout()
        return info


# Database health check
async def health_check() -> dict:
    """Health check for database connectivity"""
    try:
        db_manager = DatabaseManager()
        is_healthy = db_manager.test_connection()

        return {
            "database": "healthy" if is_healthy else "unhealthy",
            "connection_info": db_manager.get_connection_info() if is_healthy else None,
        }
    except Exception as e:
        logger.error(f"Database health check failed: {str(e)}")
        return {
            "database": "unhealthy",
            "error": str(e)
        }


# Utility functions for the database dependency
def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency for database sessions"""
    db = SessionLocal()
    try:
        yield db
    except Exception as e:
        logger.error(f"Database session error: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()
