# dispatch_service/database.py
import sqlite3

from asyncpg.exceptions import IntegrityConstraintViolationError
from databases import Database
from sqlalchemy import create_engine

from dispatch_service.config import DATABASE_URL
from dispatch_service.models import metadata

# Async DB for actual queries
database = Database(DATABASE_URL)

# Sync engine for create_all()
SYNC_DATABASE_URL = DATABASE_URL.replace("+asyncpg", "").replace("+aiosqlite", "")
engine = create_engine(SYNC_DATABASE_URL)

# Unique-constraint violations surface as driver exceptions through `databases`
INTEGRITY_ERRORS = (sqlite3.IntegrityError, IntegrityConstraintViolationError)


def init_db():
    metadata.create_all(engine)
