"""SQLModel engine singleton."""
from sqlmodel import SQLModel, create_engine

from expenso.config import get_settings

_engine = None


def get_engine():
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        settings = get_settings()
        connect_args = {}
        if settings.database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False  # shared by the scheduler and the API
        _engine = create_engine(settings.database_url, connect_args=connect_args)
        init_db(_engine)
    return _engine


def init_db(engine) -> None:
    """Create all tables (idempotent)."""
    # Import all models so metadata is populated before create_all
    from expenso.models.document import StoredDocument  # noqa
    from expenso.models.sync import SyncLog  # noqa
    SQLModel.metadata.create_all(engine)
