from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from sqlalchemy import insert, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from expense_tracker.db import audit_log, users
from expense_tracker.errors import StorageFailure, Unauthenticated
from expense_tracker.logging_config import get_logger

logger = get_logger(__name__)

AUDIT_ACTIONS = {"create", "update", "delete"}


@dataclass(frozen=True)
class UnitOfWork:
    """An open database transaction with the acting user bound to it."""

    conn: Connection
    actor_id: int
    family_id: int

    def record(self, action: str, entity: str, entity_id: int) -> None:
        if action not in AUDIT_ACTIONS:
            raise ValueError(f"Unsupported audit action: {action}")
        self.conn.execute(
            insert(audit_log).values(
                family_id=self.family_id,
                actor_id=self.actor_id,
                action=action,
                entity=entity,
                entity_id=entity_id,
            )
        )


@contextmanager
def unit_of_work(engine: Engine, actor_id: int | None, family_id: int) -> Iterator[UnitOfWork]:
    """Open one atomic transaction attributed to ``actor_id``.

    The actor must be an active member of ``family_id``; otherwise nothing is
    opened. The transaction commits on normal exit and rolls back on any
    exception, database errors being re-raised as StorageFailure.
    """
    if actor_id is None:
        raise Unauthenticated("Acting user is required.")
    try:
        with engine.begin() as conn:
            _bind_actor(conn, actor_id, family_id)
            yield UnitOfWork(conn=conn, actor_id=actor_id, family_id=family_id)
    except SQLAlchemyError as exc:
        logger.error(
            "Unit of work rolled back",
            exc_info=exc,
            extra={"actor_id": actor_id, "family_id": family_id},
        )
        raise StorageFailure("Failed to persist changes.") from exc


def _bind_actor(conn: Connection, actor_id: int, family_id: int) -> None:
    row = conn.execute(
        select(users.c.id).where(
            users.c.id == actor_id,
            users.c.family_id == family_id,
            users.c.is_active.is_(True),
        )
    ).first()
    if not row:
        raise Unauthenticated("Acting user is not an active member of this family.")
