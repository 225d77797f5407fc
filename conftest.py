from __future__ import annotations

import os

import pytest

# Keep the module-level engine off the developer database during tests.
os.environ.setdefault("OIKION_DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("OIKION_ORCHESTRATOR_MODE", "mock")


@pytest.fixture(autouse=True)
def _reset_cached_singletons():
    from oikion.config import get_settings
    from oikion.jobs_engine import orchestrator
    from oikion.jobs_engine.job_types import get_job_type_registry

    get_settings.cache_clear()
    get_job_type_registry.cache_clear()
    orchestrator._shared_mock = None
    yield
    get_settings.cache_clear()
    get_job_type_registry.cache_clear()
    orchestrator._shared_mock = None
