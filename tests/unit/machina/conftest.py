"""Shared fixtures for orchestrator tests."""

from __future__ import annotations

import pytest
import pytest_asyncio

from machina_harness import TENANT, build_harness


@pytest_asyncio.fixture
async def harness():
    h = build_harness()
    yield h
    await h.orchestrator.close()


@pytest.fixture
def tenant_id():
    return TENANT
