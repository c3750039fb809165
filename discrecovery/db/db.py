import logging
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, create_engine

from discrecovery.config import settings
from discrecovery.services.errors import RecoveryError, StorageFault

logger = logging.getLogger(__name__)


def build_engine(url: str, echo: bool = False):
    if url.startswith("sqlite"):
        return create_engine(url, echo=echo, connect_args={"check_same_thread": False})

    return create_engine(
        url,
        echo=echo,
        pool_pre_ping=True,
        isolation_level=settings.DB_ISOLATION_LEVEL,
    )


engine = build_engine(settings.DATABASE_URL, echo=settings.SQL_ECHO)


def init_db(bind=None):
    # table models must be imported before create_all sees them
    from discrecovery.models import (  # noqa: F401
        disc,
        drop_off,
        meetup_proposal,
        notification,
        profile,
        qr_code,
        recovery_event,
    )

    SQLModel.metadata.create_all(bind or engine)


def get_session():
    with Session(engine) as session:
        yield session


@contextmanager
def atomic(session: Session, operation: str):
    """Run a block as one all-or-nothing unit on ``session``.

    Domain errors raised inside the block roll the unit back and propagate
    unchanged. Any SQLAlchemy error rolls back and surfaces as StorageFault.
    """
    try:
        yield session
        session.commit()
    except RecoveryError:
        session.rollback()
        raise
    except SQLAlchemyError as e:
        session.rollback()
        logger.error("Atomic unit %s rolled back: %s", operation, e)
        raise StorageFault(operation, e) from e
    except Exception:
        session.rollback()
        raise
