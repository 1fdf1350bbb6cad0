"""Database initialization and persistence layer."""

from carnival_sync.db.engine import (
    create_db_engine,
    get_database_url,
    get_engine,
    get_session_factory,
    init_db,
    reset_engine,
    run_migrations,
)
from carnival_sync.db.models import Base, CarnivalDB, IngestionRunDB
from carnival_sync.db.repositories import (
    MANAGED_FIELDS,
    CarnivalRepository,
    IngestionRunRepository,
    normalize_field_name,
)

__all__ = [
    # Engine
    "create_db_engine",
    "get_database_url",
    "get_engine",
    "get_session_factory",
    "init_db",
    "reset_engine",
    "run_migrations",
    # Models
    "Base",
    "CarnivalDB",
    "IngestionRunDB",
    # Repositories
    "MANAGED_FIELDS",
    "CarnivalRepository",
    "IngestionRunRepository",
    "normalize_field_name",
]
