from __future__ import annotations

import logging
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Iterator

from sqlalchemy import Column, Integer, String, Text, func
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Field, Session, SQLModel, create_engine, delete, select

from .errors import RegistryUnavailable
from .subscription import SubscriptionKeys, SubscriptionRecord

logger = logging.getLogger(__name__)


class Subscription(SQLModel, table=True):
    endpoint: str = Field(sa_column=Column(Text, primary_key=True))
    p256dh: str = Field(sa_column=Column(String, nullable=False))
    auth: str = Field(sa_column=Column(String, nullable=False))
    created_at: int = Field(sa_column=Column(Integer, nullable=False))

    def to_record(self) -> SubscriptionRecord:
        return SubscriptionRecord(
            endpoint=self.endpoint,
            keys=SubscriptionKeys(p256dh=self.p256dh, auth=self.auth),
            created_at=self.created_at,
        )


class RegisterResult(str, Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"


class RemoveResult(str, Enum):
    REMOVED = "removed"
    NOT_FOUND = "not_found"


class SubscriptionRegistry:
    """SQLite-backed set of push subscriptions keyed by endpoint.

    Every mutation is a single statement whose atomicity comes from SQLite:
    inserts rely on the primary key to reject a second registration of the
    same endpoint, deletes report how many rows they touched.
    """

    def __init__(self, db_path: str | Path, busy_timeout: float = 30.0) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine: Engine = create_engine(
            f"sqlite:///{self.db_path}",
            echo=False,
            connect_args={"check_same_thread": False, "timeout": busy_timeout},
        )

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except IntegrityError:
            raise
        except SQLAlchemyError as exc:
            logger.error("subscriber store failure: %s", exc)
            raise RegistryUnavailable(f"subscriber store unavailable: {exc}") from exc

    def init(self) -> None:
        try:
            SQLModel.metadata.create_all(self.engine, tables=[Subscription.__table__])
        except SQLAlchemyError as exc:
            raise RegistryUnavailable(f"subscriber store unavailable: {exc}") from exc

    def dispose(self) -> None:
        self.engine.dispose()

    def register(self, record: SubscriptionRecord) -> RegisterResult:
        with self._session() as session:
            session.add(
                Subscription(
                    endpoint=record.endpoint,
                    p256dh=record.keys.p256dh,
                    auth=record.keys.auth,
                    created_at=record.created_at,
                )
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                logger.info("subscription already registered: %s", record.endpoint[:60])
                return RegisterResult.ALREADY_EXISTS
        logger.info("subscription registered: %s", record.endpoint[:60])
        return RegisterResult.CREATED

    def list(self) -> Iterator[SubscriptionRecord]:
        """Yield a snapshot of every stored subscription.

        Rows are read in full before the first record is yielded, so removals
        made while the caller is still iterating do not affect this snapshot.
        Call again for a fresh one.
        """
        with self._session() as session:
            rows = session.exec(select(Subscription)).all()
            snapshot = [row.to_record() for row in rows]
        yield from snapshot

    def exists(self, endpoint: str) -> bool:
        with self._session() as session:
            return session.get(Subscription, endpoint) is not None

    def count(self) -> int:
        with self._session() as session:
            total = session.exec(select(func.count()).select_from(Subscription)).one()
            return int(total[0] if isinstance(total, tuple) else total)

    def remove(self, endpoint: str) -> RemoveResult:
        with self._session() as session:
            result = session.exec(delete(Subscription).where(Subscription.endpoint == endpoint))
            session.commit()
            removed = result.rowcount or 0
        if removed:
            logger.info("subscription removed: %s", endpoint[:60])
            return RemoveResult.REMOVED
        return RemoveResult.NOT_FOUND
