"""Database engine, session factory, and declarative base for the SQL ledger store.

The core itself is synchronous (one store call at a time per invocation),
so the SQL adapter runs on a plain ``create_engine`` / ``sessionmaker``.

  - LedgerBase          → declarative base for ledger_state / ledger_history
  - make_engine()       → engine for settings.database_url (or an override)
  - make_session_factory()
  - init_ledger_schema() → create the ledger tables on an engine
"""

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from pharmaledger.config import settings


class LedgerBase(DeclarativeBase):
    """Tables backing the key-value ledger state store."""
    pass


def make_engine(url: str | None = None, **kwargs) -> Engine:
    return create_engine(url or settings.database_url, echo=settings.debug and url is None, **kwargs)


def make_session_factory(engine: Engine) -> sessionmaker[Session]:
    return sessionmaker(engine, class_=Session, expire_on_commit=False)


def init_ledger_schema(engine: Engine) -> None:
    """Create ledger_state and ledger_history if they don't exist."""
    import pharmaledger.models  # noqa: F401  (register tables on LedgerBase)

    LedgerBase.metadata.create_all(bind=engine)
