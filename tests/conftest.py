import fcntl
import os
from typing import List, Optional

import pytest

from supportbot.services.delivery import OutboundChannel


class FakeChannel(OutboundChannel):
    """Records every call; replies/pushes succeed unless told otherwise."""

    def __init__(self, reply_ok: bool = True, push_ok: bool = True, profiles: Optional[dict] = None):
        self.reply_ok = reply_ok
        self.push_ok = push_ok
        self.profiles = profiles or {}
        self.replies: List[tuple] = []
        self.pushes: List[tuple] = []

    async def reply_message(self, reply_token: str, messages: List[dict]) -> dict:
        self.replies.append((reply_token, messages))
        return {"ok": self.reply_ok, "error": None if self.reply_ok else "Invalid reply token"}

    async def push_message(self, to: str, messages: List[dict]) -> dict:
        self.pushes.append((to, messages))
        return {"ok": self.push_ok, "error": None if self.push_ok else "push failed"}

    async def get_profile(self, user_id: str) -> dict:
        if user_id in self.profiles:
            return {"ok": True, "result": {"displayName": self.profiles[user_id]}}
        return {"ok": False, "status": 404, "error": "Not found"}

    def reply_texts(self) -> List[str]:
        return [m.get("text") for _, messages in self.replies for m in messages if m.get("type") == "text"]

    def push_texts(self) -> List[str]:
        return [m.get("text") for _, messages in self.pushes for m in messages if m.get("type") == "text"]


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def channel():
    return FakeChannel()


@pytest.fixture
def staff_channel():
    return FakeChannel()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("LINE_CHANNEL_SECRET", "test-secret")
    monkeypatch.setenv("LINE_CHANNEL_ACCESS_TOKEN", "test-token")


@pytest.fixture
def make_channel():
    return FakeChannel


@pytest.fixture
def held_lock():
    """Hold an exclusive flock on a path through a separate descriptor."""
    fds = []

    def _hold(path):
        fd = os.open(str(path), os.O_CREAT | os.O_RDWR, 0o644)
        fcntl.flock(fd, fcntl.LOCK_EX)
        fds.append(fd)
        return fd

    yield _hold
    for fd in fds:
        os.close(fd)
