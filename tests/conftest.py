import asyncio
import inspect
import os
import shutil
import sys
import tempfile
import uuid
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="chatgateway_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Rate limits use the per-process bucket so counters never leak between tests
os.environ["REDIS_URL"] = ""

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from chatgateway.service.llm import LLMService  # noqa: E402
from chatgateway.service.model_backend import (  # noqa: E402
    CLAUDE_MODELS,
    GEMINI_MODELS,
    OPENAI_MODELS,
    ContentEvent,
    DoneEvent,
    TokenUsage,
)
from chatgateway.service.runtime import get_runtime, reset_runtime_for_tests  # noqa: E402


def _clear_shared_state() -> None:
    shutil.rmtree(Path(os.environ["SHARED_FS_ROOT"]) / "state", ignore_errors=True)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    _clear_shared_state()
    reset_runtime_for_tests()
    yield
    _clear_shared_state()
    reset_runtime_for_tests()


class ScriptedBackend:
    """Provider stand-in that replays content chunks then a terminal event.

    Set ``failure`` to end the stream with that event instead of ``done``, or
    ``events`` to replay an exact sequence.
    """

    def __init__(self, provider: str):
        self.provider = provider
        self.chunks = ["Hello", " world"]
        self.usage = TokenUsage(12, 8, 20)
        self.failure = None
        self.events = None
        self.requests = []
        self.streams_closed = 0
        self.closed = False

    async def stream(self, request):
        self.requests.append(request)
        try:
            if self.events is not None:
                for event in self.events:
                    yield event
                return
            for chunk in self.chunks:
                yield ContentEvent(chunk)
            if self.failure is not None:
                yield self.failure
                return
            yield DoneEvent("".join(self.chunks), self.usage, request.model)
        finally:
            self.streams_closed += 1

    async def aclose(self):
        self.closed = True


def scripted_llm_service():
    backends = {
        "openai": ScriptedBackend("openai"),
        "anthropic": ScriptedBackend("anthropic"),
        "gemini": ScriptedBackend("gemini"),
    }
    llm = LLMService(
        [
            (OPENAI_MODELS, backends["openai"]),
            (CLAUDE_MODELS, backends["anthropic"]),
            (GEMINI_MODELS, backends["gemini"]),
        ]
    )
    return llm, backends


@pytest.fixture
def scripted_backends():
    """Swap the runtime's provider backends for scripted ones."""
    runtime = get_runtime()
    llm, backends = scripted_llm_service()
    runtime.llm = llm
    runtime.chat.llm = llm
    runtime.helpers.llm = llm
    return backends


@pytest.fixture
def make_account():
    """Provision an account at a tier and return ``(account_id, auth_headers)``."""

    def _make(tier: str = "free"):
        runtime = get_runtime()
        account_id = f"acct-{uuid.uuid4().hex[:8]}"
        runtime.store.ensure_account(account_id)
        if tier != "free":
            runtime.store.set_account_tier(account_id, tier)
        token = runtime.auth.issue_access_token(account_id)
        return account_id, {"Authorization": f"Bearer {token}"}

    return _make


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
