"""Shared fixtures: deterministic clock, scripted generative client, no real sleeps."""

import os
import sys
from pathlib import Path
from typing import Any, List, Optional

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# no .env / config file leaking into tests
os.environ.pop("RESILIENCE_CONFIG_PATH", None)

from classes import retry_utils  # noqa: E402


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class ScriptedLlm:
    """
    Stand-in for LlmClient.generate: each call pops the next scripted item.
    Exceptions are raised, strings are returned.
    """

    def __init__(self, script: List[Any]):
        self.script = list(script)
        self.prompts: List[str] = []

    async def generate(self, prompt: str, *, system: Optional[str] = None) -> str:
        self.prompts.append(prompt)
        if not self.script:
            raise AssertionError("ScriptedLlm called more times than scripted")
        item = self.script.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def scripted_llm():
    return ScriptedLlm


@pytest.fixture
def recorded_sleeps(monkeypatch):
    """Replace the retry sleep with a recorder; returns the list of requested delays."""
    delays: List[float] = []

    async def fake_sleep(seconds: float) -> None:
        delays.append(seconds)

    monkeypatch.setattr(retry_utils, "_sleep", fake_sleep)
    return delays


def email_payload(count: int = 5) -> str:
    items = ",".join(
        f'{{"emailNumber":{i},"subject":"Subject {i}","body":"Body of email {i}"}}'
        for i in range(1, count + 1)
    )
    return f'{{"emails":[{items}]}}'


@pytest.fixture
def make_emails():
    return email_payload
