"""
Database Setup
==============
SQLAlchemy table definitions for the SQL-backed event store.
Timestamps are epoch milliseconds; free-form maps are JSON text.
"""

import sqlalchemy

metadata = sqlalchemy.MetaData()

# Devices table - one row per scanner, created on first signal
devices = sqlalchemy.Table(
    "devices",
    metadata,
    sqlalchemy.Column("device_id", sqlalchemy.String(64), primary_key=True),
    sqlalchemy.Column("status", sqlalchemy.String(16), nullable=True, index=True),
    sqlalchemy.Column("last_heartbeat_at", sqlalchemy.BigInteger, default=0),
    sqlalchemy.Column("last_seen_at", sqlalchemy.BigInteger, default=0),
    sqlalchemy.Column("ip_address", sqlalchemy.String(64), default=""),
    sqlalchemy.Column("metadata_json", sqlalchemy.Text, default="{}"),
)

# Scans table - append-only event log, seq is the subscription cursor
scans = sqlalchemy.Table(
    "scans",
    metadata,
    sqlalchemy.Column("seq", sqlalchemy.Integer, primary_key=True, autoincrement=True),
    sqlalchemy.Column("id", sqlalchemy.String(36), unique=True, index=True),
    sqlalchemy.Column("payload", sqlalchemy.String(256)),
    sqlalchemy.Column("device_id", sqlalchemy.String(64), index=True),
    sqlalchemy.Column("observed_at", sqlalchemy.BigInteger, index=True),
    sqlalchemy.Column("mode", sqlalchemy.String(16)),
    sqlalchemy.Column("location", sqlalchemy.String(128), default=""),
)

# Transactions table - committed attendance and inventory records
transactions = sqlalchemy.Table(
    "transactions",
    metadata,
    sqlalchemy.Column("id", sqlalchemy.String(36), primary_key=True),
    sqlalchemy.Column("mode", sqlalchemy.String(16), index=True),
    sqlalchemy.Column("payload", sqlalchemy.String(256), index=True),
    sqlalchemy.Column("device_id", sqlalchemy.String(64)),
    sqlalchemy.Column("event_key", sqlalchemy.String(64)),
    sqlalchemy.Column("timestamp_ms", sqlalchemy.BigInteger, index=True),
    sqlalchemy.Column("details_json", sqlalchemy.Text, default="{}"),
)


def sync_url(database_url: str) -> str:
    """URL usable by a synchronous engine for schema creation."""
    url = database_url.replace("+aiosqlite", "")
    # Force psycopg3 dialect for Python 3.13 compatibility
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def create_schema(database_url: str) -> None:
    url = sync_url(database_url)
    engine = sqlalchemy.create_engine(
        url,
        connect_args={"check_same_thread": False} if "sqlite" in url else {}
    )
    try:
        metadata.create_all(engine)
    finally:
        engine.dispose()
