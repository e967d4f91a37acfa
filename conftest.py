import shutil
from pathlib import Path

import pytest

from scenecast.config import MAX_ENV_KEYS
from scenecast.llm import LLMError
from scenecast.storage import Storage

TEST_DATA_DIR = Path("data-tests")

_ENV_VARS = [
    "SCENECAST_PROVIDER_URL",
    "SCENECAST_PROVIDER_FORMAT",
    "SCENECAST_MODEL",
    "SCENECAST_API_KEY",
    *(f"SCENECAST_API_KEY_{i}" for i in range(1, MAX_ENV_KEYS + 1)),
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep a developer's .env / shell credentials out of the tests."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def data_dir():
    """Wipe data-tests/ and hand it to the test."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    TEST_DATA_DIR.mkdir()
    yield TEST_DATA_DIR
    # leave data-tests around after tests for inspection; CI can ignore it


@pytest.fixture
def storage(data_dir: Path) -> Storage:
    return Storage(data_dir)


class StubLLM:
    """LLM stand-in answering per stage from a dict.

    A value may be a string (returned), an LLMError instance (raised) or a
    callable taking the prompt. Unknown stages raise LLMError. Every call
    is recorded as (stage, prompt, temperature, max_tokens).
    """

    def __init__(self, responses: dict | None = None) -> None:
        self.responses = responses or {}
        self.calls: list[tuple[str, str, float, int]] = []

    async def __call__(self, stage, prompt, *, temperature=0.2, max_tokens=1200):
        self.calls.append((stage, prompt, temperature, max_tokens))
        answer = self.responses.get(stage)
        if answer is None:
            raise LLMError(f"no stub answer for {stage}")
        if isinstance(answer, LLMError):
            raise answer
        if callable(answer):
            return answer(prompt)
        return answer

    def stages(self) -> list[str]:
        return [c[0] for c in self.calls]


@pytest.fixture
def make_llm():
    return StubLLM
