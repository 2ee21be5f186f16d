from __future__ import annotations

from contextlib import contextmanager
from collections.abc import Generator, Iterable
from typing import Any

from flask import Flask, g
from sqlalchemy import create_engine, event, select, update
from sqlalchemy import exc as sa_exc
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.attributes import set_committed_value

from app.qrms.exceptions import ConflictError, IntegrityError


def init_db(app: Flask) -> None:
    db_url = app.config["DATABASE_URL"]
    is_postgres = db_url.startswith("postgres")
    engine_kwargs: dict[str, object] = {
        "future": True,
        "pool_pre_ping": True,
    }
    if is_postgres:
        engine_kwargs.update(
            {
                "pool_recycle": 1800,
                "pool_size": 5,
                "max_overflow": 10,
                "pool_timeout": 30,
            }
        )
    engine = create_engine(db_url, **engine_kwargs)
    if db_url.startswith("sqlite"):
        # SET NULL / CASCADE on history rows depend on FK enforcement.
        @event.listens_for(engine, "connect")
        def _sqlite_fk_pragma(dbapi_connection, connection_record):  # type: ignore[no-redef]
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA foreign_keys=ON")
            cur.close()

    if app.config.get("ENV") != "production":
        @event.listens_for(engine, "checkout")
        def _receive_checkout(dbapi_connection, connection_record, connection_proxy):  # type: ignore[no-redef]
            app.logger.debug("DB connection checkout from pool")
    app.extensions["sqlalchemy_engine"] = engine
    app.extensions["sqlalchemy_sessionmaker"] = sessionmaker(
        bind=engine,
        class_=Session,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
        future=True,
    )


def db_session(app: Flask | None = None) -> Session:
    """
    Request-scoped session. Use inside request handlers.
    """
    if hasattr(g, "db_session") and g.db_session is not None:
        return g.db_session
    if app is None:
        from flask import current_app

        app = current_app
    sm = app.extensions["sqlalchemy_sessionmaker"]
    g.db_session = sm()  # type: ignore[assignment]
    return g.db_session


def teardown_db_session(_exc: BaseException | None) -> None:
    # Closing without commit rolls back whatever a failed handler flushed.
    s: Session | None = getattr(g, "db_session", None)
    if s is not None:
        try:
            s.close()
        except Exception:
            pass
        g.db_session = None


@contextmanager
def session_scope(app: Flask) -> Generator[Session, None, None]:
    """
    Non-request helper for scripts and tests: yields a session and commits/rolls back.
    """
    sm = app.extensions["sqlalchemy_sessionmaker"]
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()


def compare_and_set(
    s: Session,
    obj: Any,
    *,
    expected: Any | Iterable[Any],
    values: dict[str, Any],
    column: str = "status",
) -> None:
    """
    Optimistic guarded update: `UPDATE ... SET values WHERE id = obj.id AND column IN expected`.

    Exactly one row must match; otherwise another actor got there first and
    ConflictError is raised. On success the in-memory object is synced
    without being marked dirty.
    """
    model = type(obj)
    if isinstance(expected, (str, int)):
        expected_values: tuple[Any, ...] = (expected,)
    else:
        expected_values = tuple(expected)

    stmt = (
        update(model)
        .where(model.id == obj.id, getattr(model, column).in_(expected_values))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = s.execute(stmt)
    if result.rowcount != 1:
        actual = s.execute(select(getattr(model, column)).where(model.id == obj.id)).scalar_one_or_none()
        raise ConflictError(
            model.__name__,
            obj.id,
            expected=expected_values[0] if len(expected_values) == 1 else expected_values,
            actual=None if actual is None else str(actual),
        )
    for key, value in values.items():
        set_committed_value(obj, key, value)


def unique_violation_on(e: sa_exc.IntegrityError, table: str, column: str) -> bool:
    """True when `e` is a unique violation on the single-column key `table.column`."""
    orig = e.orig
    if getattr(orig, "pgcode", None) == "23505":
        diag = getattr(orig, "diag", None)
        return getattr(diag, "constraint_name", None) == f"{table}_{column}_key"
    return f"UNIQUE constraint failed: {table}.{column}" in str(orig)


def flush_checked(
    s: Session,
    *,
    context: str,
    conflict_on: dict[tuple[str, str], ConflictError] | None = None,
) -> None:
    """
    Flush, surfacing unique/FK violations as the engine's IntegrityError.

    `conflict_on` names unique keys that a concurrent writer can legitimately
    take first (e.g. a generated item code). A violation on one of them raises
    the given ConflictError instead, which the caller may retry after re-reading.
    """
    try:
        s.flush()
    except sa_exc.IntegrityError as e:
        for (table, column), conflict in (conflict_on or {}).items():
            if unique_violation_on(e, table, column):
                raise conflict from e
        raise IntegrityError(f"{context}: {e.orig}", details={"context": context}) from e
