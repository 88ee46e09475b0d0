from types import SimpleNamespace
from walletchat.agents import AgentStreamError, ChatGPTAgent, OllamaAgent, LLMAgent, create_agent
import httpx
import json
import pytest


async def collect(body):
    return b"".join([chunk async for chunk in body])


def delta_chunk(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


class FakeCompletions:
    def __init__(self, chunks):
        self.chunks = chunks
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        return self.stream()

    async def stream(self):
        for chunk in self.chunks:
            yield chunk


@pytest.mark.anyio
async def test_chatgpt_agent_streams_content_as_bytes(metrics):
    agent = ChatGPTAgent(metrics=metrics, openai_api_key="test-key", wallet_address="0xAGENT")
    completions = FakeCompletions([
        delta_chunk("Position ID: "),
        delta_chunk(None),
        SimpleNamespace(choices=[]),
        delta_chunk("**42** ✓"),
    ])
    agent.openai_client = SimpleNamespace(chat=SimpleNamespace(completions=completions))

    response = await agent.generate_response([{"role": "user", "content": "open a position"}])

    assert await collect(response.body) == "Position ID: **42** ✓".encode("utf-8")
    request = completions.requests[0]
    assert request["stream"] is True
    assert request["messages"][0]["role"] == "system"
    assert request["messages"][1:] == [{"role": "user", "content": "open a position"}]
    assert metrics.counters["success.generate_response"] == 1


def test_chatgpt_agent_status(metrics):
    agent = ChatGPTAgent(metrics=metrics, openai_api_key="test-key", wallet_address="0xAGENT")
    assert agent.is_ready() is True
    assert agent.get_wallet_address() == "0xAGENT"


@pytest.mark.anyio
async def test_ollama_agent_reads_ndjson_stream(metrics):
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        lines = [
            {"message": {"role": "assistant", "content": "**Tool: "}, "done": False},
            {"message": {"role": "assistant", "content": "balance**"}, "done": False},
            {"message": {"role": "assistant", "content": ""}, "done": True, "eval_count": 3, "prompt_eval_count": 9},
        ]
        return httpx.Response(200, content="\n".join(json.dumps(line) for line in lines).encode("utf-8"))

    agent = OllamaAgent(metrics=metrics, transport=httpx.MockTransport(handler))
    response = await agent.generate_response([{"role": "user", "content": "balance?"}])

    assert await collect(response.body) == b"**Tool: balance**"
    assert seen[0]["model"] == "llama2"
    assert seen[0]["stream"] is True
    assert seen[0]["messages"][-1] == {"role": "user", "content": "balance?"}
    assert metrics.counters["success.generate_response"] == 1


@pytest.mark.anyio
async def test_ollama_agent_surfaces_http_errors(metrics):
    agent = OllamaAgent(metrics=metrics, transport=httpx.MockTransport(lambda request: httpx.Response(503)))
    response = await agent.generate_response([{"role": "user", "content": "hi"}])

    with pytest.raises(httpx.HTTPStatusError):
        await collect(response.body)
    assert metrics.counters["errors.generate_response"] == 1


@pytest.mark.anyio
async def test_base_agent_has_no_body(metrics):
    agent = LLMAgent(metrics=metrics)
    assert agent.is_ready() is False
    assert (await agent.generate_response([])).body is None


def test_create_agent(metrics):
    assert isinstance(create_agent(metrics, "openai", openai_api_key="test-key"), ChatGPTAgent)
    assert isinstance(create_agent(metrics, "ollama", model="llama3"), OllamaAgent)
    with pytest.raises(ValueError):
        create_agent(metrics, "unknown")


@pytest.mark.anyio
async def test_ollama_agent_raises_on_error_line(metrics):
    def handler(request):
        lines = [
            {"message": {"role": "assistant", "content": "partial"}, "done": False},
            {"error": "model 'llama2' not found"},
        ]
        return httpx.Response(200, content="\n".join(json.dumps(line) for line in lines).encode("utf-8"))

    agent = OllamaAgent(metrics=metrics, transport=httpx.MockTransport(handler))
    response = await agent.generate_response([{"role": "user", "content": "hi"}])

    with pytest.raises(AgentStreamError, match="not found"):
        await collect(response.body)
    assert metrics.counters["errors.generate_response"] == 1
    assert metrics.counters["success.generate_response"] == 0
