"""Chat-completion provider capability built on langchain-openai.

All three upstreams speak the OpenAI chat-completions dialect, so one
``ChatOpenAI`` factory covers them; only endpoint, headers and request
extras differ, and those come from :mod:`services.providers`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import AsyncIterator, Protocol

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage

from config import settings
from services.providers import Provider, ProviderConfig, get_model
from services.token_usage import extract_usage_from_response

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are Clydra. Be concise and helpful. Always respond in English unless the user "
    "explicitly states they want a different language or their message is clearly in a "
    "non-English language."
)

LANGUAGE_CODES = frozenset(
    "es fr de it pt ru ja ko zh ar hi th vi tr pl nl sv da no fi he cs sk hu ro bg hr sl et "
    "lv lt el mt cy ga is fo uk be mk sq sr bs me xk ka hy az kk ky uz tk mn fa ps ur bn ne "
    "si my km lo ms id tl sw am ti so af zu xh st tn ss ve ts nr".split()
)


def is_valid_language_code(lang: str | None) -> bool:
    return bool(lang) and len(lang) == 2 and lang.lower() in LANGUAGE_CODES


def build_system_prompt(preferred_lang: str | None = None) -> str:
    prompt = SYSTEM_PROMPT
    if preferred_lang and preferred_lang.lower() != "en" and is_valid_language_code(preferred_lang):
        prompt += (
            f" The user's preferred language is {preferred_lang.lower()}, so respond in that "
            "language unless they explicitly ask for English."
        )
    return prompt


def prepare_messages(messages: list[dict], preferred_lang: str | None = None) -> list[dict]:
    """Prefix the product system prompt, merging into a leading system message."""
    system_prompt = build_system_prompt(preferred_lang)
    if messages and messages[0]["role"] == "system":
        merged = {"role": "system", "content": f"{system_prompt}\n\n{messages[0]['content']}"}
        return [merged, *messages[1:]]
    return [{"role": "system", "content": system_prompt}, *messages]


def to_langchain_messages(messages: list[dict]) -> list[BaseMessage]:
    converted: list[BaseMessage] = []
    for msg in messages:
        role, content = msg["role"], msg["content"]
        if role == "system":
            converted.append(SystemMessage(content=content))
        elif role == "assistant":
            converted.append(AIMessage(content=content))
        else:
            converted.append(HumanMessage(content=content))
    return converted


def _content_text(content) -> str:
    # content can be a string or a list of content blocks
    if isinstance(content, list):
        return "".join(
            block.get("text", "") if isinstance(block, dict) else str(block)
            for block in content
        )
    return content or ""


def create_chat_model(
    provider: ProviderConfig,
    model_id: str,
    *,
    web_search: bool = False,
    web_search_context_size: str = "medium",
    wiki_grounding: bool = False,
    temperature: float | None = None,
    max_tokens: int | None = None,
    streaming: bool = False,
) -> BaseChatModel:
    from langchain_openai import ChatOpenAI

    descriptor = get_model(model_id)
    model_name = f"{model_id}:online" if web_search else model_id

    kwargs: dict = {
        "model": model_name,
        "api_key": provider.api_key,
        "base_url": provider.base_url,
        "timeout": provider.timeout,
        "max_retries": 0,
        "temperature": settings.CHAT_TEMPERATURE if temperature is None else temperature,
        "max_tokens": settings.CHAT_MAX_TOKENS if max_tokens is None else max_tokens,
        "streaming": streaming,
    }
    if provider.headers:
        kwargs["default_headers"] = dict(provider.headers)

    extra_body: dict = {}
    if web_search:
        extra_body["web_search_options"] = {"search_context_size": web_search_context_size}
    if wiki_grounding and descriptor is not None and descriptor.provider == Provider.SARVAM:
        extra_body["wiki_grounding"] = True
    if extra_body:
        kwargs["extra_body"] = extra_body

    return ChatOpenAI(**kwargs)


@dataclass
class Completion:
    content: str
    usage: dict | None = None


class ChatProvider(Protocol):
    name: str

    async def complete(self, messages: list[dict]) -> Completion: ...

    def stream(self, messages: list[dict]) -> AsyncIterator[str]: ...


class LangChainChatProvider:
    """Adapts a LangChain chat model to the blocking/streaming provider capability."""

    def __init__(self, name: str, llm: BaseChatModel):
        self.name = name
        self.llm = llm

    async def complete(self, messages: list[dict]) -> Completion:
        response = await self.llm.ainvoke(to_langchain_messages(messages))
        usage = extract_usage_from_response(response)
        return Completion(
            content=_content_text(response.content),
            usage=usage if usage["total_tokens"] else None,
        )

    async def stream(self, messages: list[dict]) -> AsyncIterator[str]:
        async for chunk in self.llm.astream(to_langchain_messages(messages)):
            text = _content_text(chunk.content)
            if text:
                yield text


def create_provider(
    model_id: str,
    provider: ProviderConfig,
    *,
    web_search: bool = False,
    web_search_context_size: str = "medium",
    wiki_grounding: bool = False,
    streaming: bool = False,
) -> ChatProvider:
    """Default provider factory used by the dispatcher."""
    llm = create_chat_model(
        provider,
        model_id,
        web_search=web_search,
        web_search_context_size=web_search_context_size,
        wiki_grounding=wiki_grounding,
        streaming=streaming,
    )
    return LangChainChatProvider(provider.name, llm)
