"""
Database connection and session management.

Write paths depend on two guarantees from this module:

* every transaction takes the write lock when it begins (SQLite
  ``BEGIN IMMEDIATE``), so a check-then-insert sequence cannot interleave
  with another one;
* the schema carries exclusion guards (SQLite triggers, a PostgreSQL
  exclusion constraint) that reject overlapping holds even if an
  application-level check is skipped.
"""
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy import event, func, insert, select
import logging

from config import DATABASE_URL, DB_POOL_SIZE, DEFAULT_FEE_SETTINGS
from models import Base, FAILED_PAYMENT_KEYS, HOLDING_STATUS_KEYS, Setting, status_key_sql

logger = logging.getLogger(__name__)

# Matched by spelling key, like StatusType reads them, so legacy-cased rows still hold the vehicle
_HOLDING_SQL = ", ".join(f"'{key}'" for key in HOLDING_STATUS_KEYS)
_FAILED_SQL = ", ".join(f"'{key}'" for key in FAILED_PAYMENT_KEYS)

# Same half-open rule as availability.overlaps: a.start < b.end AND b.start < a.end
_RESERVATION_CONFLICT = f"""
    SELECT RAISE(ABORT, 'reservation_overlap') WHERE EXISTS (
        SELECT 1 FROM reservations r
        WHERE r.vehicle_id = NEW.vehicle_id
          AND r.id IS NOT NEW.id
          AND {status_key_sql("r.booking_status")} IN ({_HOLDING_SQL})
          AND {status_key_sql("r.payment_status")} NOT IN ({_FAILED_SQL})
          AND r.pickup_date < NEW.{{end}}
          AND NEW.{{start}} < r.return_date
    );
"""

_BLOCK_CONFLICT = """
    SELECT RAISE(ABORT, 'block_overlap') WHERE EXISTS (
        SELECT 1 FROM vehicle_blocks b
        WHERE b.vehicle_id = NEW.vehicle_id
          AND b.id IS NOT NEW.id
          AND b.blocked_from < NEW.{end}
          AND NEW.{start} < b.blocked_until
    );
"""

_RESERVATION_GUARD_WHEN = (
    f"{status_key_sql('NEW.booking_status')} IN ({_HOLDING_SQL}) "
    f"AND {status_key_sql('NEW.payment_status')} NOT IN ({_FAILED_SQL})"
)


def _sqlite_guards():
    reservation_body = (
        _RESERVATION_CONFLICT.format(start="pickup_date", end="return_date")
        + _BLOCK_CONFLICT.format(start="pickup_date", end="return_date")
    )
    block_body = (
        _RESERVATION_CONFLICT.format(start="blocked_from", end="blocked_until")
        + _BLOCK_CONFLICT.format(start="blocked_from", end="blocked_until")
    )
    return [
        f"""CREATE TRIGGER IF NOT EXISTS reservations_exclusion_insert
            BEFORE INSERT ON reservations
            WHEN {_RESERVATION_GUARD_WHEN}
            BEGIN {reservation_body} END""",
        f"""CREATE TRIGGER IF NOT EXISTS reservations_exclusion_update
            BEFORE UPDATE OF vehicle_id, pickup_date, return_date, booking_status, payment_status
            ON reservations
            WHEN {_RESERVATION_GUARD_WHEN}
            BEGIN {reservation_body} END""",
        f"""CREATE TRIGGER IF NOT EXISTS vehicle_blocks_exclusion_insert
            BEFORE INSERT ON vehicle_blocks
            BEGIN {block_body} END""",
        f"""CREATE TRIGGER IF NOT EXISTS vehicle_blocks_exclusion_update
            BEFORE UPDATE OF vehicle_id, blocked_from, blocked_until ON vehicle_blocks
            BEGIN {block_body} END""",
    ]


def _postgresql_guards():
    # Cross-table conflicts (reservation vs block) are serialized by the
    # vehicle row lock taken in db_operations.lock_vehicle.
    return [
        "CREATE EXTENSION IF NOT EXISTS btree_gist",
        f"""DO $$ BEGIN
            IF NOT EXISTS (SELECT 1 FROM pg_constraint WHERE conname = 'ex_reservations_vehicle_interval') THEN
                ALTER TABLE reservations ADD CONSTRAINT ex_reservations_vehicle_interval
                EXCLUDE USING gist (vehicle_id WITH =, tsrange(pickup_date, return_date, '[)') WITH &&)
                WHERE ({status_key_sql("booking_status")} IN ({_HOLDING_SQL})
                       AND {status_key_sql("payment_status")} NOT IN ({_FAILED_SQL}));
            END IF;
        END $$""",
        """DO $$ BEGIN
            IF NOT EXISTS (SELECT 1 FROM pg_constraint WHERE conname = 'ex_vehicle_blocks_vehicle_interval') THEN
                ALTER TABLE vehicle_blocks ADD CONSTRAINT ex_vehicle_blocks_vehicle_interval
                EXCLUDE USING gist (vehicle_id WITH =, tsrange(blocked_from, blocked_until, '[)') WITH &&);
            END IF;
        END $$""",
    ]


def exclusion_guard_statements(dialect_name: str):
    if dialect_name == "sqlite":
        return _sqlite_guards()
    if dialect_name == "postgresql":
        return _postgresql_guards()
    logger.warning(f"No exclusion guard available for dialect '{dialect_name}'; relying on transaction locking only")
    return []


def _install_sqlite_hooks(engine: AsyncEngine):
    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_conn, connection_record):
        """Enable WAL mode and take over transaction control from the driver."""
        # Disable the driver's implicit BEGIN; do_begin below emits our own
        dbapi_conn.isolation_level = None
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=30000")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def do_begin(conn):
        # Take the write lock up front so concurrent check-then-insert sequences serialize
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for_url(database_url: str, pool_size: int = DB_POOL_SIZE) -> AsyncEngine:
    """Create an async engine with the pragmas and locking this service relies on."""
    is_sqlite = database_url.startswith("sqlite")
    kwargs = {"echo": False, "pool_pre_ping": True}
    if is_sqlite:
        kwargs["connect_args"] = {
            "check_same_thread": False,  # SQLite-specific: allow multi-threaded access
            "timeout": 30.0,
        }
    if ":memory:" not in database_url:
        kwargs["pool_size"] = pool_size
        kwargs["max_overflow"] = 0

    engine = create_async_engine(database_url, **kwargs)
    if is_sqlite:
        _install_sqlite_hooks(engine)
    return engine


def create_session_maker(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = create_engine_for_url(DATABASE_URL)
async_session_maker = create_session_maker(engine)


async def init_db(bind: AsyncEngine = None, seed_settings: bool = True):
    """
    Initialize database tables and exclusion guards.
    Safe to run multiple times - existing tables, triggers and settings are left alone.
    """
    bind = bind or engine
    logger.info("Initializing database tables...")
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

        for statement in exclusion_guard_statements(conn.dialect.name):
            await conn.exec_driver_sql(statement)

        if seed_settings:
            existing = (await conn.execute(select(func.count()).select_from(Setting))).scalar_one()
            if existing == 0:
                await conn.execute(
                    insert(Setting),
                    [{"key": key, "value": value} for key, value in DEFAULT_FEE_SETTINGS.items()],
                )
                logger.info(f"Seeded {len(DEFAULT_FEE_SETTINGS)} default fee settings")

    logger.info("✅ Database tables and exclusion guards initialized")


async def close_db():
    """Close database connections."""
    await engine.dispose()
    logger.info("Database connection closed")


async def get_session():
    """FastAPI dependency yielding a session bound to the application engine."""
    async with async_session_maker() as session:
        yield session
