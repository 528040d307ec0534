# database.py
import sqlite3

from asyncpg.exceptions import IntegrityConstraintViolationError
from databases import Database
from sqlalchemy import create_engine, MetaData
from sqlalchemy.exc import IntegrityError

from fulfillment_service.config import DATABASE_URL

# async database client
database = Database(DATABASE_URL)

metadata = MetaData()

# `databases` surfaces the driver's own exception types
INTEGRITY_ERRORS = (IntegrityError, sqlite3.IntegrityError, IntegrityConstraintViolationError)


def sync_url(url: str) -> str:
    """SQLAlchemy sync URL for metadata.create_all()."""
    return url.replace("+asyncpg", "").replace("+aiosqlite", "")


def init_db(url: str = DATABASE_URL):
    # models must be imported so their tables register on metadata
    from fulfillment_service import models  # noqa: F401

    engine = create_engine(sync_url(url))
    metadata.create_all(engine)
    engine.dispose()
