from openai import AsyncOpenAI, OpenAIError
from typing import AsyncIterator, List, Optional
from dataclasses import dataclass
import logging
import json
import httpx
import statsd

logger = logging.getLogger(__name__)

AGENT_PROMPT = (
    "You are Agent-W, an on-chain assistant operating a wallet on behalf of the user. "
    "When you call a tool, mention it as **Tool: <name>**. "
    "When a transaction is submitted, report it as Transaction hash: **<hash>**. "
    "When a position is opened, report it as Position ID: **<id>**. "
    "Answer concisely."
)


@dataclass
class AgentResponse:
    # None when the agent produced no body at all
    body: Optional[AsyncIterator[bytes]]


class AgentStreamError(Exception):
    """The agent reported a failure inside an otherwise successful stream."""


class LLMAgent:
    def __init__(self, metrics: statsd.StatsClient, wallet_address: Optional[str] = None):
        self.metrics = metrics
        self.wallet_address = wallet_address
        self.ready = False

    def is_ready(self) -> bool:
        return self.ready

    def get_wallet_address(self) -> Optional[str]:
        return self.wallet_address

    # this method should be overriden in the implementation
    async def generate_response(self, messages: List[dict]) -> AgentResponse:
        return AgentResponse(body=None)


class ChatGPTAgent(LLMAgent):
    def __init__(
        self,
        metrics: statsd.StatsClient,
        openai_api_key: str,
        model: str = "gpt-4-turbo-preview",
        wallet_address: Optional[str] = None,
        system_prompt: str = AGENT_PROMPT,
    ):
        super().__init__(metrics=metrics, wallet_address=wallet_address)
        self.openai_client = AsyncOpenAI(api_key=openai_api_key)
        self.model_version = model
        self.system_prompt = system_prompt
        self.ready = True

    async def generate_response(self, messages: List[dict]) -> AgentResponse:
        try:
            stream = await self.openai_client.chat.completions.create(
                model=self.model_version,
                messages=[{"role": "system", "content": self.system_prompt}] + messages,
                stream=True,
            )
        except OpenAIError:
            self.metrics.incr("errors.generate_response")
            raise

        self.metrics.incr("success.generate_response")
        return AgentResponse(body=self.encode_deltas(stream))

    async def encode_deltas(self, stream) -> AsyncIterator[bytes]:
        async for chunk in stream:
            # usage-only chunks carry no choices
            if not chunk.choices:
                continue
            content = chunk.choices[0].delta.content
            if content:
                yield content.encode("utf-8")


class OllamaAgent(LLMAgent):
    def __init__(
        self,
        metrics: statsd.StatsClient,
        model: str = "llama2",
        ctx_window: int = 4096,
        OLLAMA_SERVE_URL: str = "http://127.0.0.1:11434",
        wallet_address: Optional[str] = None,
        system_prompt: str = AGENT_PROMPT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(metrics=metrics, wallet_address=wallet_address)
        self.chat_endpoint = f"{OLLAMA_SERVE_URL}/api/chat"
        self.model_version = model
        self.ctx_window = ctx_window
        self.system_prompt = system_prompt
        self.transport = transport
        self.ready = True

    async def generate_response(self, messages: List[dict]) -> AgentResponse:
        body = {
            "model": self.model_version,
            "messages": [{"role": "system", "content": self.system_prompt}] + messages,
            "stream": True,
            "options": {
                "num_ctx": self.ctx_window,
            },
        }
        return AgentResponse(body=self.stream_chat(body))

    async def stream_chat(self, body: dict) -> AsyncIterator[bytes]:
        """
        Ollama streams one json object per line; the final line is a summary
        with `done: true` and token counts instead of content.
        """
        async with httpx.AsyncClient(transport=self.transport, timeout=None) as client:
            async with client.stream("POST", self.chat_endpoint, json=body) as response:
                try:
                    response.raise_for_status()
                except httpx.HTTPStatusError:
                    self.metrics.incr("errors.generate_response")
                    raise

                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    part = json.loads(line)
                    if part.get("error"):
                        self.metrics.incr("errors.generate_response")
                        raise AgentStreamError(part["error"])
                    content = (part.get("message") or {}).get("content")
                    if content:
                        yield content.encode("utf-8")
                    if part.get("done"):
                        logger.debug("ollama summary: eval_count=%s prompt_eval_count=%s", part.get("eval_count"), part.get("prompt_eval_count"))

        self.metrics.incr("success.generate_response")


def create_agent(metrics: statsd.StatsClient, provider: str, **options) -> LLMAgent:
    if provider == "openai":
        return ChatGPTAgent(
            metrics=metrics,
            openai_api_key=options["openai_api_key"],
            model=options.get("model", "gpt-4-turbo-preview"),
            wallet_address=options.get("wallet_address"),
        )
    if provider == "ollama":
        return OllamaAgent(
            metrics=metrics,
            model=options.get("model", "llama2"),
            OLLAMA_SERVE_URL=options.get("serve_url", "http://127.0.0.1:11434"),
            wallet_address=options.get("wallet_address"),
        )
    raise ValueError(f"unknown agent provider: {provider}")
