"""
Chat model and embedding construction, plus the generation adapter used by
the call pipeline.

Generation goes through any LangChain chat model. By default this is an
OpenAI-compatible endpoint (Fireworks) via ``init_chat_model``. Embeddings
use ``OpenAIEmbeddings`` pointed at an OpenAI-compatible embedding API.
"""

import logging
import os
from typing import Iterator, Optional

from dotenv import load_dotenv
from langchain.chat_models import init_chat_model

from .memory.config import MemoryConfig
from .memory.formatter import message_text

logger = logging.getLogger(__name__)


# override=True so a local .env wins over stale shell variables
load_dotenv(override=True)


DEFAULT_MODEL = "accounts/fireworks/models/qwen3-235b-a22b"
DEFAULT_BASE_URL = "https://api.fireworks.ai/inference/v1"
DEFAULT_EMBEDDING_BASE_URL = "https://api.voyageai.com/v1"


def get_credentials() -> tuple[Optional[str], Optional[str]]:
    """
    Resolve the chat API key and base URL.

    - API Key: API_KEY > FIREWORKS_API_KEY
    - Base URL: API_BASE_URL > Fireworks inference endpoint
    """
    api_key = os.getenv("API_KEY") or os.getenv("FIREWORKS_API_KEY")
    base_url = os.getenv("API_BASE_URL") or DEFAULT_BASE_URL
    return api_key, base_url


def get_model_name() -> str:
    return os.getenv("CHAT_MODEL", DEFAULT_MODEL)


def create_chat_model(model_name: Optional[str] = None):
    """
    Create the chat model shared by all pipeline stages.

    Temperature and max_tokens are passed per call, so one instance serves
    reasoning, response and distillation.
    """
    api_key, base_url = get_credentials()

    init_kwargs = {}
    if api_key:
        init_kwargs["api_key"] = api_key
    if base_url:
        init_kwargs["base_url"] = base_url

    model_provider = os.getenv("MODEL_PROVIDER") or "openai"

    return init_chat_model(
        model_name or get_model_name(),
        model_provider=model_provider,
        **init_kwargs,
    )


def create_embeddings(config: MemoryConfig):
    """Create the embedding model for decision-arc vectors."""
    from langchain_openai import OpenAIEmbeddings

    api_key, _ = get_credentials()
    embed_api_key = (
        config.embedding_api_key
        or os.getenv("EMBEDDING_API_KEY")
        or os.getenv("VOYAGE_API_KEY")
        or api_key
    )
    embed_base_url = (
        config.embedding_base_url
        or os.getenv("EMBEDDING_BASE_URL")
        or DEFAULT_EMBEDDING_BASE_URL
    )

    embed_kwargs = {}
    if embed_api_key:
        embed_kwargs["api_key"] = embed_api_key
    return OpenAIEmbeddings(
        model=config.embedding_model,
        base_url=embed_base_url,
        # send raw strings; non-OpenAI providers do not accept token arrays
        check_embedding_ctx_length=False,
        **embed_kwargs,
    )


class ChatGenerator:
    """
    Text-generation interface over a LangChain chat model.

    ``generate`` returns the full text. ``generate_streaming`` yields text
    chunks in arrival order; exhaustion of the iterator is the end marker.
    """

    def __init__(self, model):
        self.model = model

    def generate(self, messages: list, temperature: float, max_tokens: int) -> str:
        response = self.model.invoke(
            messages, temperature=temperature, max_tokens=max_tokens
        )
        return message_text(response)

    def generate_streaming(
        self, messages: list, temperature: float, max_tokens: int
    ) -> Iterator[str]:
        stream = self.model.stream(
            messages, temperature=temperature, max_tokens=max_tokens
        )
        try:
            for chunk in stream:
                text = message_text(chunk)
                if text:
                    yield text
        finally:
            # propagate abandonment to the underlying HTTP stream
            close = getattr(stream, "close", None)
            if close:
                close()
