import os

# main.py reads its configuration at import time
os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["AGENT_PROVIDER"] = "openai"
os.environ["OPENAI_API_KEY"] = "test-key"
os.environ["AGENT_WALLET_ADDRESS"] = "0xAGENT"

from collections import Counter
from typing import List
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel, create_engine
from walletchat.agents import LLMAgent, AgentResponse
from walletchat.assistant import ChatService
import pytest


class FakeMetrics:
    def __init__(self):
        self.counters = Counter()
        self.timings = []

    def incr(self, stat, count=1, rate=1):
        self.counters[stat] += count

    def timing(self, stat, delta, rate=1):
        self.timings.append((stat, delta))


class ScriptedAgent(LLMAgent):
    """
    Replies with queued chunk lists; a queued None means the agent returned no
    body. A reply may end with an error raised after its chunks were read.
    """

    def __init__(self, metrics):
        super().__init__(metrics=metrics, wallet_address="0xAGENT")
        self.ready = True
        self.replies = []
        self.calls = []
        self.error = None
        # awaited inside generate_response, before any body is returned
        self.during_call = None

    def reply(self, *chunks):
        self.replies.append((self.encode(chunks), None))

    def reply_then_fail(self, error, *chunks):
        self.replies.append((self.encode(chunks), error))

    def reply_without_body(self):
        self.replies.append(None)

    def encode(self, chunks):
        return [chunk.encode("utf-8") if isinstance(chunk, str) else chunk for chunk in chunks]

    async def generate_response(self, messages: List[dict]) -> AgentResponse:
        self.calls.append([dict(message) for message in messages])
        if self.during_call is not None:
            await self.during_call()
        if self.error is not None:
            raise self.error

        reply = self.replies.pop(0) if self.replies else ([b"ok"], None)
        if reply is None:
            return AgentResponse(body=None)
        return AgentResponse(body=self.stream(*reply))

    async def stream(self, chunks, error=None):
        for chunk in chunks:
            yield chunk
        if error is not None:
            raise error


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def metrics():
    return FakeMetrics()


@pytest.fixture
def agent(metrics):
    return ScriptedAgent(metrics)


@pytest.fixture
def db_path(tmp_path):
    db_path = tmp_path / "walletchat.db"

    sync_engine = create_engine(f"sqlite:///{db_path}")
    SQLModel.metadata.create_all(sync_engine)
    sync_engine.dispose()

    return db_path


@pytest.fixture
def db_engine(db_path):
    return create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)


@pytest.fixture
def service(metrics, db_engine, agent):
    return ChatService(metrics=metrics, engine=db_engine, agent=agent)
