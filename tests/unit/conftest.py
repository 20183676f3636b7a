"""Shared unit-test fixtures: in-memory store with one organization."""

from __future__ import annotations

import pytest
from crm_payloads import ORG_NAME

from roster_etl.shared import ImportCounters, ImportSettings
from roster_etl.status_rules import load_status_vocabulary
from roster_etl.store import MemoryStore


@pytest.fixture(scope="session")
def vocabulary():
    return load_status_vocabulary()


@pytest.fixture
def store():
    s = MemoryStore()
    s.insert("organizations", [{"name": ORG_NAME}])
    s.commit()
    return s


@pytest.fixture
def org_id(store):
    return store.rows("organizations")[0]["id"]


@pytest.fixture
def counters():
    return ImportCounters()


@pytest.fixture
def settings(org_id, vocabulary):
    return ImportSettings(organization_id=org_id, vocabulary=vocabulary)
