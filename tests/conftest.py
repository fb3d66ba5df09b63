import os
import sys
from pathlib import Path

# Settings are read at import time by the app module
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault(
    "TOKEN_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production"
)
os.environ.setdefault("OTP_ENCRYPTION_KEY", "test-otp-encryption-key-material")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from serverpanel.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()
