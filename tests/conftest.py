"""
Pytest configuration and fixtures.

Unit tests build their own in-memory SQLite database (see
tests/fixtures/outbox_fixtures.py). The fixtures here serve the `db` tests,
which need PostgreSQL for row locking.
"""

import os
import pytest


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "db: marks tests as requiring database (deselect with '-m \"not db\"')"
    )


def _start_postgres_container():
    from testcontainers.postgres import PostgresContainer

    container = PostgresContainer(
        image="postgres:16-alpine",
        username="testuser",
        password="testpass",
        dbname="notifications_test",
    )
    container.start()
    return container


@pytest.fixture(scope="session")
def test_database():
    """
    PostgreSQL URL for the whole session.

    TEST_DATABASE_URL wins when it is set and reachable; otherwise a
    throwaway container is started with testcontainers and stopped at the
    end of the session. DB tests are skipped when neither is possible.
    """
    from tests import SKIP_DB_TESTS, is_database_available, setup_test_database

    if SKIP_DB_TESTS:
        pytest.skip("SKIP_DB_TESTS is set")

    external_url = os.environ.get("TEST_DATABASE_URL")
    if external_url:
        if not is_database_available():
            pytest.skip("External database not available")
        setup_test_database(external_url)
        yield external_url
        return

    try:
        container = _start_postgres_container()
    except Exception as e:
        pytest.skip(f"Could not start test database container: {e}")

    try:
        db_url = container.get_connection_url()
        setup_test_database(db_url)
        print(f"\n✓ Test database started: {db_url}")
        yield db_url
    finally:
        container.stop()
        print("\n✓ Test database stopped")


@pytest.fixture(scope="session")
def pg_engine(test_database):
    from sqlalchemy import create_engine

    engine = create_engine(test_database, pool_size=10, pool_pre_ping=True)
    yield engine
    engine.dispose()


@pytest.fixture
def pg_session_factory(pg_engine):
    """Sessionmaker over freshly truncated pipeline tables."""
    from sqlalchemy.orm import sessionmaker
    from tests import truncate_pipeline_tables

    truncate_pipeline_tables(pg_engine)
    return sessionmaker(bind=pg_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def pg_uow(pg_session_factory):
    from database.uow import uow_factory_for

    return uow_factory_for(pg_session_factory)
