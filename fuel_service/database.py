# database.py
from databases import Database
from sqlalchemy import create_engine, MetaData

from fuel_service.config import DATABASE_URL

# Async DB for actual queries
database = Database(DATABASE_URL)

# Sync engine for create_all
SYNC_DATABASE_URL = DATABASE_URL.replace("+asyncpg", "")
engine = create_engine(SYNC_DATABASE_URL)

# Single shared metadata
metadata = MetaData()


def init_db():
    import fuel_service.models  # registers tables on metadata
    metadata.create_all(engine)
