"""Database connection and tick feed table definitions.

The terminal exports its "current trades" table into ``current_trades``,
updating one row per instrument in place. A BEFORE UPDATE trigger copies
every new version of a row into ``historical_trades``, which is the table
the tick source reads.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Time,
    inspect,
    text,
)
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from app.config import get_settings
from app.errors import SchemaMismatchError

Base = declarative_base()


class CurrentTradeTable(Base):
    """Latest trade per instrument, written by the terminal's export."""

    __tablename__ = "current_trades"

    sec_code = Column(String(12), primary_key=True)
    class_code = Column(String(12), primary_key=True)
    instrument_class = Column(String(200))
    class_ = Column("class", String(128))
    instr_short_name = Column(String(20))
    session_status = Column(String(32))
    instrument_status = Column(String(32))
    lot_multiplier = Column(Integer)
    lot_size = Column(Integer)
    last_price = Column(Numeric(15, 6))
    last_volume = Column(Numeric(15, 6))
    last_price_time = Column(Time)
    trade_date = Column(Date)


class HistoricalTradeTable(Base):
    """Every version of every current_trades row (filled by trigger)."""

    __tablename__ = "historical_trades"

    id = Column(Integer, primary_key=True, autoincrement=True)
    instrument_class = Column(String(200))
    class_ = Column("class", String(128))
    class_code = Column(String(12))
    instr_short_name = Column(String(20))
    sec_code = Column(String(12))
    session_status = Column(String(32))
    instrument_status = Column(String(32))
    lot_multiplier = Column(Integer)
    lot_size = Column(Integer)
    last_price = Column(Numeric(15, 6))
    last_volume = Column(Numeric(15, 6))
    last_price_time = Column(Time)
    trade_date = Column(Date)
    updated_at = Column(DateTime(timezone=True), server_default=text("NOW()"))

    __table_args__ = (
        Index("idx_historical_trades_code_date", "class_code", "sec_code", "trade_date"),
    )


# Columns the tick source depends on
REQUIRED_COLUMNS = (
    "id",
    "class_code",
    "sec_code",
    "instrument_status",
    "last_price",
    "last_volume",
    "last_price_time",
    "trade_date",
)

_FEED_COLUMNS = (
    "instrument_class, class, class_code, instr_short_name, sec_code, "
    "session_status, instrument_status, lot_multiplier, lot_size, "
    "last_price, last_volume, last_price_time, trade_date"
)

_TRIGGER_FUNCTION = f"""
CREATE OR REPLACE FUNCTION insert_into_historical()
RETURNS TRIGGER AS $$
BEGIN
    INSERT INTO historical_trades ({_FEED_COLUMNS})
    VALUES (
        NEW.instrument_class, NEW.class, NEW.class_code, NEW.instr_short_name,
        NEW.sec_code, NEW.session_status, NEW.instrument_status,
        NEW.lot_multiplier, NEW.lot_size, NEW.last_price, NEW.last_volume,
        NEW.last_price_time, NEW.trade_date
    );
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""

_TRIGGER = """
CREATE TRIGGER before_update_current_trades
BEFORE UPDATE ON current_trades
FOR EACH ROW EXECUTE FUNCTION insert_into_historical();
"""


class Database:
    """Database connection manager."""

    def __init__(self, database_url: str | None = None):
        settings = get_settings()
        url = database_url or settings.database_url

        # Convert postgresql:// to postgresql+asyncpg://
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

        # One poll query at a time plus warm-up and schema checks
        self.engine = create_async_engine(
            url,
            echo=settings.database_echo,
            pool_size=5,
            max_overflow=5,
            pool_pre_ping=True,    # Validate before use
            pool_recycle=3600,     # Recycle every hour
            pool_timeout=30,
            connect_args={
                "timeout": 10,                 # Connection timeout
                "command_timeout": 30,         # Query timeout
            },
        )
        self.session_factory = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self) -> None:
        """Create feed tables and the history trigger."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            await conn.execute(text(_TRIGGER_FUNCTION))
            await conn.execute(
                text("DROP TRIGGER IF EXISTS before_update_current_trades ON current_trades")
            )
            await conn.execute(text(_TRIGGER))

    async def verify_schema(self) -> None:
        """Check that historical_trades has every column the tick source reads.

        Raises:
            SchemaMismatchError: If the table or a column is missing
        """
        def _columns(sync_conn) -> set[str] | None:
            inspector = inspect(sync_conn)
            if not inspector.has_table(HistoricalTradeTable.__tablename__):
                return None
            return {c["name"] for c in inspector.get_columns(HistoricalTradeTable.__tablename__)}

        async with self.engine.connect() as conn:
            columns = await conn.run_sync(_columns)

        if columns is None:
            raise SchemaMismatchError("Table historical_trades does not exist")
        missing = [c for c in REQUIRED_COLUMNS if c not in columns]
        if missing:
            raise SchemaMismatchError(
                f"Table historical_trades is missing columns: {', '.join(missing)}"
            )

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get a database session."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def close(self) -> None:
        """Close database connections."""
        await self.engine.dispose()


# Global database instance
_db: Database | None = None


def get_database() -> Database:
    """Get the global database instance."""
    global _db
    if _db is None:
        _db = Database()
    return _db


async def init_database(database_url: str | None = None) -> Database:
    """Initialize the database connection."""
    global _db
    _db = Database(database_url)
    return _db
