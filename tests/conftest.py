import asyncio
from pathlib import Path

import pytest

from relaybot.agent.engine import AgentEngine, AgentMeta, AgentRunResult, ReplyPayload, Usage
from relaybot.channels.base import BaseChannel
from relaybot.config.schema import Config
from relaybot.session.store import SessionStore


class ScriptedEngine(AgentEngine):
    """Echoes prompts unless replies are scripted; records every request."""

    def __init__(self):
        self.requests = []
        self.replies = []
        self.delay = 0.0
        self.error: Exception | None = None
        self.accept_queued = False
        self.queued = []

    async def run(self, request):
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        reply = self.replies.pop(0) if self.replies else f"echo: {request.prompt}"
        if isinstance(reply, AgentRunResult):
            return reply
        return AgentRunResult(
            payloads=[ReplyPayload(text=reply)],
            agent_meta=AgentMeta(model=request.model, usage=Usage(input=100, output=20)),
        )

    def queue_message(self, session_id, text):
        if self.accept_queued:
            self.queued.append((session_id, text))
            return True
        return False


class FakeChannel(BaseChannel):
    name = "fake"

    def __init__(self, name: str = "fake", text_chunk_limit: int | None = None, fail: bool = False):
        super().__init__(config=None, bus=None)
        self.name = name
        self.text_chunk_limit = text_chunk_limit
        self.fail = fail
        self.sent = []
        self.typing = []

    async def start(self):
        self._running = True

    async def stop(self):
        self._running = False

    async def send_text(self, target, text):
        if self.fail:
            raise RuntimeError("network down")
        self.sent.append((target, text, None))

    async def send_media(self, target, text, media_url):
        if self.fail:
            raise RuntimeError("network down")
        self.sent.append((target, text, media_url))

    async def send_typing(self, target):
        self.typing.append(target)


@pytest.fixture
def engine():
    return ScriptedEngine()


@pytest.fixture
def config(tmp_path):
    return Config.model_validate({
        "agent": {"workspace": str(tmp_path / "workspace")},
        "session": {"store": str(tmp_path / "sessions.json")},
        "routing": {"allowFrom": ["*"]},
    })


@pytest.fixture
def store(config):
    return SessionStore(Path(config.session.store))
