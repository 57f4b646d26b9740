import os
import sys
from pathlib import Path

import pytest

# Ensure repo root on sys.path for imports from anywhere in tests tree.
ROOT = Path(__file__).resolve().parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("SESSION_BACKEND", "memory")
os.environ.setdefault("AUTH_JWT_SIGNING", "test-signing-secret")


@pytest.fixture(autouse=True)
def _reset_session_service():
    from live_console.session.service import set_session_service

    set_session_service(None)
    yield
    set_session_service(None)
