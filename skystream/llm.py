import time
from typing import Dict, List

from openai import AsyncOpenAI

from .config import settings
from .logging_setup import get_logger
from .metrics import model_inference_duration_seconds

logger = get_logger(__name__)

Message = Dict[str, str]


def system_message(content: str) -> Message:
    return {"role": "system", "content": content}


def user_message(content: str) -> Message:
    return {"role": "user", "content": content}


def create_openai_client() -> AsyncOpenAI:
    """OpenAI-compatible client; the API key is read from OPENAI_API_KEY."""
    return AsyncOpenAI(
        base_url=settings.LLM_BASE_URL or None,
        timeout=settings.LLM_TIMEOUT_SECONDS,
        max_retries=1,
    )


class ChatModel:
    """`messages -> text` contract over a chat completion endpoint."""

    def __init__(self, client: AsyncOpenAI, model: str = settings.LLM_MODEL):
        self.client = client
        self.model = model

    async def complete(self, messages: List[Message]) -> str:
        start_time = time.time()
        response = await self.client.chat.completions.create(model=self.model, messages=messages)
        model_inference_duration_seconds.labels(model="chat").observe(time.time() - start_time)

        content = response.choices[0].message.content if response.choices else None
        return content or ""

    async def close(self) -> None:
        await self.client.close()
