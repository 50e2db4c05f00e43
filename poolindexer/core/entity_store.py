"""
Generic per-entity-kind persisted collections.
A single EntityStore serves every indexed kind of a chain:
keyed idempotent upserts, equality and range filters,
single-field sorting and offset/limit pagination.
"""

import asyncio
import functools
import logging
import os
from typing import Any, Dict, Iterable, List, Optional, Type

from sqlalchemy import func
from sqlalchemy.engine import Engine, make_url
from sqlmodel import Session, SQLModel, create_engine, select

from poolindexer.core.models import ENTITY_MODELS, ORDERING_FIELDS
from poolindexer.utils.error_utils import UnknownChainError, UnknownEntityError
from poolindexer.utils.log import get_default_logger


_LOG = get_default_logger(__name__)
_LOG.setLevel(logging.INFO)


# Default page size when no limit is given.
DEFAULT_QUERY_LIMIT = 1000
# Filter key suffix requesting a greater-or-equal range predicate.
RANGE_FILTER_SUFFIX = "_gte"

SORT_ASC = "asc"
SORT_DESC = "desc"


def create_db_engine(db_url: str, engine_kwargs: Optional[dict] = None) -> Engine:
    """
    Create the database engine and all entity tables.

    :param db_url: The SQLAlchemy database URL.
    :param engine_kwargs: Additional create_engine() arguments.
    :return: The engine.
    """
    if engine_kwargs is None:
        engine_kwargs = {}
    url = make_url(db_url)
    if url.get_backend_name() == "sqlite":
        # Store calls run on executor threads.
        connect_args = engine_kwargs.setdefault("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        if url.database and url.database != ":memory:":
            db_dir = os.path.dirname(url.database)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
    db_engine = create_engine(db_url, **engine_kwargs)
    SQLModel.metadata.create_all(
        db_engine, tables=[m.__table__ for m in ENTITY_MODELS.values()]
    )
    _LOG.info("Using database: %s", url.render_as_string(hide_password=True))
    return db_engine


class EntityStore:
    """
    Persisted entity collections of a single chain.
    Each write is a single transaction replacing the whole record,
    so concurrent readers never observe a partially written record.
    """

    def __init__(self, db_engine: Engine, chain: Optional[str]):
        """
        Initialize the store.

        :param db_engine: The database engine.
        :param chain: The chain all reads and writes are scoped to.
            An unbound store (None) rejects the chain-scoped methods
            with UnknownChainError.
        """
        self.db_engine = db_engine
        self.chain = chain

    def _scope(self) -> str:
        if self.chain is None:
            raise UnknownChainError(
                f"{type(self).__name__} is not bound to a chain"
            )
        return self.chain

    @staticmethod
    def get_model(kind: str) -> Type[SQLModel]:
        """
        Get the model class of an entity kind.

        :param kind: The entity kind.
        :return: The SQLModel class.
        """
        if kind not in ENTITY_MODELS:
            raise UnknownEntityError(f"Unknown entity kind: {kind}")
        return ENTITY_MODELS[kind]

    @staticmethod
    def _get_column(kind: str, model: Type[SQLModel], field: str):
        if field not in model.__table__.columns:
            raise UnknownEntityError(f"Unknown field {field} for entity kind {kind}")
        return getattr(model, field)

    def _apply_filter(self, statement, kind: str, model, chain: str, filters):
        statement = statement.where(model.chain == chain)
        for key, value in (filters or {}).items():
            if value is None:
                # Unspecified filter fields match all.
                continue
            if key.endswith(RANGE_FILTER_SUFFIX):
                column = self._get_column(
                    kind, model, key[: -len(RANGE_FILTER_SUFFIX)]
                )
                statement = statement.where(column >= value)
            else:
                statement = statement.where(self._get_column(kind, model, key) == value)
        return statement

    def _upsert(self, kind: str, chain: str, key: str, record: SQLModel):
        model = self.get_model(kind)
        if not isinstance(record, model):
            raise UnknownEntityError(
                f"Record type {type(record).__name__} does not match entity kind {kind}"
            )
        record.chain = chain
        record.id = key
        with Session(self.db_engine) as session:
            # merge() inserts or replaces by primary key in one transaction.
            session.merge(record)
            session.commit()

    def _get(self, kind: str, chain: str, key: str) -> Optional[SQLModel]:
        model = self.get_model(kind)
        with Session(self.db_engine) as session:
            return session.get(model, {"chain": chain, "id": key})

    def upsert(self, kind: str, key: str, record: SQLModel):
        """
        Insert a record, or replace the record stored under the same key.
        Safe to repeat with identical input.

        :param kind: The entity kind.
        :param key: The stable record id.
        :param record: The record.
        """
        self._upsert(kind, self._scope(), key, record)

    def get(self, kind: str, key: str) -> Optional[SQLModel]:
        """
        Get a record by key.

        :param kind: The entity kind.
        :param key: The record id.
        :return: The record, or None if it does not exist.
        """
        return self._get(kind, self._scope(), key)

    def get_many(self, kind: str, keys: Iterable[str]) -> Dict[str, SQLModel]:
        """
        Get the stored records among a set of keys with a single query.

        :param kind: The entity kind.
        :param keys: The record ids.
        :return: The found records keyed by id.
        """
        model = self.get_model(kind)
        chain = self._scope()
        keys = list(set(keys))
        if not keys:
            return {}
        statement = select(model).where(model.chain == chain, model.id.in_(keys))
        with Session(self.db_engine) as session:
            return {r.id: r for r in session.exec(statement).all()}

    # pylint: disable-msg=too-many-arguments
    def query(
        self,
        kind: str,
        filters: Optional[Dict[str, Any]] = None,
        sort_field: Optional[str] = None,
        sort_direction: str = SORT_ASC,
        limit: Optional[int] = DEFAULT_QUERY_LIMIT,
        offset: int = 0,
    ) -> List[SQLModel]:
        """
        Query records of an entity kind.

        :param kind: The entity kind.
        :param filters: Field equality filters.
            A key suffixed with "_gte" filters the field by greater-or-equal.
        :param sort_field: The field to sort on.
            Defaults to the kind's ordering field.
        :param sort_direction: "asc" or "desc".
        :param limit: The maximum number of records returned.
            None is treated as the default limit.
        :param offset: The number of matching records skipped.
        :return: The ordered list of records.
        """
        model = self.get_model(kind)
        if sort_field is None:
            sort_field = ORDERING_FIELDS[kind]
        sort_column = self._get_column(kind, model, sort_field)
        if sort_direction not in (SORT_ASC, SORT_DESC):
            raise ValueError(f"Invalid sort direction: {sort_direction}")
        if limit is None:
            limit = DEFAULT_QUERY_LIMIT

        statement = self._apply_filter(select(model), kind, model, self._scope(), filters)
        if sort_direction == SORT_ASC:
            statement = statement.order_by(sort_column.asc(), model.id.asc())
        else:
            statement = statement.order_by(sort_column.desc(), model.id.desc())
        statement = statement.offset(offset).limit(limit)

        with Session(self.db_engine) as session:
            return list(session.exec(statement).all())

    def max_index(self, kind: str, scope_filter: Optional[Dict[str, Any]] = None) -> int:
        """
        Get the highest value of the kind's ordering field
        among records matching the filter.

        :param kind: The entity kind.
        :param scope_filter: The filter, as for query().
        :return: The highest value, or zero if no record matches.
        """
        model = self.get_model(kind)
        column = self._get_column(kind, model, ORDERING_FIELDS[kind])
        statement = self._apply_filter(
            select(func.max(column)), kind, model, self._scope(), scope_filter
        )
        with Session(self.db_engine) as session:
            value = session.exec(statement).first()
        return int(value) if value is not None else 0

    def count(self, kind: str, filters: Optional[Dict[str, Any]] = None) -> int:
        """
        Count records of an entity kind matching a filter.

        :param kind: The entity kind.
        :param filters: The filter, as for query().
        :return: The number of matching records.
        """
        model = self.get_model(kind)
        statement = self._apply_filter(
            select(func.count()).select_from(model), kind, model, self._scope(), filters
        )
        with Session(self.db_engine) as session:
            return int(session.exec(statement).one())

    # The async variants offload the blocking SQL calls to the default executor
    # so the polling tasks of other chains keep running.

    async def _run_async(self, fn, *args, **kwargs):
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))

    async def upsert_async(self, kind: str, key: str, record: SQLModel):
        """
        Asynchronous upsert().
        """
        await self._run_async(self.upsert, kind, key, record)

    async def get_async(self, kind: str, key: str) -> Optional[SQLModel]:
        """
        Asynchronous get().
        """
        return await self._run_async(self.get, kind, key)

    async def get_many_async(self, kind: str, keys: Iterable[str]) -> Dict[str, SQLModel]:
        """
        Asynchronous get_many().
        """
        return await self._run_async(self.get_many, kind, keys)

    async def query_async(self, kind: str, *args, **kwargs) -> List[SQLModel]:
        """
        Asynchronous query().
        """
        return await self._run_async(self.query, kind, *args, **kwargs)

    async def max_index_async(
        self, kind: str, scope_filter: Optional[Dict[str, Any]] = None
    ) -> int:
        """
        Asynchronous max_index().
        """
        return await self._run_async(self.max_index, kind, scope_filter)
