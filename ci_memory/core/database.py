"""PostgreSQL database connection management"""
import logging
import psycopg2
from psycopg2 import pool
from psycopg2.extras import RealDictCursor
from contextlib import contextmanager
from typing import Generator, Any, Optional
from ci_memory.core.config import get_settings, Settings


logger = logging.getLogger(__name__)

# Global connection pool
connection_pool: Optional[pool.ThreadedConnectionPool] = None


def init_db_pool(settings: Optional[Settings] = None) -> bool:
    """Initialize database connection pool"""
    global connection_pool
    settings = settings or get_settings()
    try:
        # ingestion, dispatch and maintenance threads share the pool
        connection_pool = psycopg2.pool.ThreadedConnectionPool(
            minconn=settings.db_pool_min,
            maxconn=settings.db_pool_max,
            host=settings.db_host,
            database=settings.db_name,
            user=settings.db_user,
            password=settings.db_password,
            port=settings.db_port,
            connect_timeout=settings.db_connect_timeout
        )
        logger.info("✅ PostgreSQL connection pool initialized")
        return True
    except psycopg2.Error as e:
        logger.error(f"PostgreSQL connection failed: {e}")
        return False


@contextmanager
def get_db_connection() -> Generator[Any, None, None]:
    """Context manager for database connections. Commits on success, rolls back on error."""
    global connection_pool

    if connection_pool is None:
        if not init_db_pool():
            raise psycopg2.OperationalError("Database connection pool not available")

    conn = None
    try:
        conn = connection_pool.getconn()
        yield conn
        conn.commit()
    except Exception:
        if conn:
            conn.rollback()
        raise
    finally:
        if conn:
            connection_pool.putconn(conn)


@contextmanager
def get_db_cursor(conn):
    """Context manager for database cursor with dict results"""
    cursor = conn.cursor(cursor_factory=RealDictCursor)
    try:
        yield cursor
    finally:
        cursor.close()


def create_tables() -> bool:
    """Create the conversation table and its indexes"""
    try:
        with get_db_connection() as conn:
            with get_db_cursor(conn) as cur:
                cur.execute("""
                    CREATE TABLE IF NOT EXISTS chat_messages (
                        id BIGSERIAL PRIMARY KEY,
                        conversation_id VARCHAR(255) NOT NULL,
                        build_number INT NOT NULL,
                        message_type VARCHAR(32) NOT NULL,
                        content JSONB NOT NULL,
                        metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
                        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
                        logged_at TIMESTAMPTZ NOT NULL DEFAULT clock_timestamp()
                    )
                """)

                # recent() and prune() walk this index on every dispatch
                cur.execute("""
                    CREATE INDEX IF NOT EXISTS idx_chat_messages_conv_logged
                    ON chat_messages (conversation_id, logged_at, id)
                """)

                cur.execute("""
                    CREATE INDEX IF NOT EXISTS idx_chat_messages_conv_build
                    ON chat_messages (conversation_id, build_number)
                """)

                logger.info("✅ Database tables created/verified")
                return True
    except psycopg2.Error as e:
        logger.error(f"⚠️  Error creating tables: {e}")
        return False


def close_db_pool():
    """Close all database connections"""
    global connection_pool
    if connection_pool:
        connection_pool.closeall()
        connection_pool = None
        logger.info("✅ Database pool closed")
