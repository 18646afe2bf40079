"""Shared repository fixtures for the work item tests."""

from __future__ import annotations

import pytest

from duework.work_items import InMemoryWorkItemRepository, SqlAlchemyWorkItemRepository


@pytest.fixture(params=["inmemory", "sqlite"])
def repository(request, tmp_path):
    """Yield each store backend; the SQLite one runs the full SQLAlchemy path."""
    if request.param == "inmemory":
        yield InMemoryWorkItemRepository()
        return
    repo = SqlAlchemyWorkItemRepository(f"sqlite:///{tmp_path / 'duework.db'}")
    yield repo
    repo._engine.dispose()


@pytest.fixture
def sqlite_url(tmp_path):
    return f"sqlite:///{tmp_path / 'shared.db'}"
