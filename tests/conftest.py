"""Shared fixtures for the milestone test suite."""

from __future__ import annotations

import dataclasses

import pytest

from milestone.config import Settings
from milestone.infra import timings
from milestone.ingest import IngestService
from milestone.model.kv import new_store

TEST_SECRET = "whsec_test_secret"
ADMIN_TOKEN = "admin-test-token"


@pytest.fixture()
def settings(tmp_path) -> Settings:
    return Settings(
        webhook_secret=TEST_SECRET,
        target_currency="aud",
        target_total_minor=100_000_000,
        kv_backend="sql",
        database_url=f"sqlite:///{tmp_path}/kv.db",
        admin_token=ADMIN_TOKEN,
        cas_max_attempts=8,
    )


@pytest.fixture()
async def kv(settings):
    store = await new_store(settings)
    yield store
    await store.close()


@pytest.fixture()
def make_service(kv):
    def _make(settings: Settings, **overrides) -> IngestService:
        if overrides:
            settings = dataclasses.replace(settings, **overrides)
        return IngestService.from_store(settings, kv)
    return _make


@pytest.fixture()
def service(make_service, settings) -> IngestService:
    return make_service(settings)


@pytest.fixture(autouse=True)
def _reset_timings():
    yield
    timings.reset()
