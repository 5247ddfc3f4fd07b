import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the runtime before any casedesk import reads settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ["REDIS_URL"] = ""
os.environ["SERVICE_API_KEY"] = ""
os.environ["SIGNUP_MODE"] = "approval"
os.environ.setdefault("CRON_SECRET", "test-cron-secret")
os.environ.setdefault("OTP_SWEEP_INTERVAL_SECONDS", "0")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from casedesk.service.runtime import reset_runtime_for_tests  # noqa: E402


class RecordingMailer:
    """Captures outgoing mail instead of talking to SMTP."""

    def __init__(self, *, fail: bool = False):
        self.sent = []
        self.fail = fail

    async def send(self, to_email, subject, html_body, text_body=None):
        self.sent.append(
            {"to": to_email, "subject": subject, "html": html_body, "text": text_body}
        )
        return not self.fail


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture(autouse=True)
def reset_runtime_state(mailer):
    reset_runtime_for_tests(mailer=mailer)
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
