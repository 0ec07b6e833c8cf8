from __future__ import annotations

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from stocksync.config import RetryPolicy, load_config
from stocksync.storage.db import init_db, make_session


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture()
def session_factory(engine) -> sessionmaker:
    return make_session(engine)


@pytest.fixture()
def db_session(session_factory):
    with session_factory() as session:
        yield session


@pytest.fixture()
def app_config():
    return load_config(None, environ={})


@pytest.fixture()
def cc_config(app_config):
    portal = app_config.portal("customerconnect")
    return portal.model_copy(
        update={
            "username": "buyer",
            "retry": RetryPolicy(attempts=2, delay_ms=0, backoff=False),
            "detail_delay_ms": 0,
        }
    )


@pytest.fixture()
def rs_config(app_config):
    portal = app_config.portal("routestar")
    return portal.model_copy(
        update={
            "username": "seller",
            "retry": RetryPolicy(attempts=2, delay_ms=0, backoff=False),
            "detail_delay_ms": 0,
        }
    )
