from __future__ import annotations

import os
import tempfile

# Point the registry at a throwaway SQLite file before any qreports module builds its engine.
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{os.path.join(tempfile.gettempdir(), 'qreports-test-registry.db')}",
)
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("RENDER_EXECUTION_MODE", "inline")
os.environ.setdefault("JWT_SECRET", "test-secret-with-enough-length-for-hs256")

import pytest  # noqa: E402

from qreports.core.config import get_settings  # noqa: E402
from qreports.persistence.db import engine  # noqa: E402
from qreports.services.query.executor import reset_query_executor  # noqa: E402
from qreports.services.render.queue import reset_render_queue  # noqa: E402
from qreports.services.telemetry import reset_telemetry  # noqa: E402
from qreports.services.tenants.broker import reset_connection_broker  # noqa: E402
from qreports.services.tenants.directory import reset_tenant_directory  # noqa: E402


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Dispose the async engine to prevent cross-loop connection reuse between tests.
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Singletons and counters are process-wide; every test starts clean.
    reset_telemetry()
    yield
    get_settings.cache_clear()
    reset_tenant_directory()
    reset_connection_broker()
    reset_query_executor()
    reset_render_queue()
