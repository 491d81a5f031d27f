from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from app.core.config import settings

engine = create_async_engine(settings.DATABASE_URL, echo=settings.SQL_ECHO)

# Talk to the DB through async sessions without refreshes after closed conn to avoid errors in async programming
AsyncSessionLocal = async_sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False
)


def enable_sqlite_foreign_keys(async_engine):
    """SQLite ignores ON DELETE rules unless the pragma is set per connection."""
    if async_engine.dialect.name != "sqlite":
        return

    @event.listens_for(async_engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_conn, connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


enable_sqlite_foreign_keys(engine)


# This is the "Bridge" that gives my routes access to the database
async def get_db():
    async with AsyncSessionLocal() as session:
        yield session


# All the models are "stored" in the Base class will be processed by the Engine
class Base(DeclarativeBase):
    pass
