"""Chat dispatcher: validate, resolve, gate on quota, call the provider, reconcile, persist.

One request moves through::

    prepare() ─► check_quota() ─► provider ─► _reconcile() ─► _persist()

``complete`` runs the whole pipeline for a blocking request and returns the
normalized response dict. ``stream`` is an async generator of event dicts
(``content`` fragments, then ``done`` or ``error``). Validation and quota
failures raise :class:`ChatError` before any upstream call. Everything after
a successful upstream call is bookkeeping: failures there are logged and
never undo the answer the caller already has.

Database work uses the synchronous request session and is handed to the
threadpool at each stage, so a slow round-trip never stalls the event loop.
The streaming cleanup runs in a shielded scope so a disconnecting client
cannot cancel the charge for content it already received.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field

import anyio
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from config import settings
from models.user import UserProfile
from services import conversations
from services.cache import ResponseCache, response_cache_key
from services.errors import ChatError, ErrorKind, QuotaExceededError, upstream_chat_error
from services.ledger import SqlTokenLedger, TokenLedger
from services.llm import ChatProvider, create_provider, prepare_messages
from services.providers import Capability, ProviderConfig, migrate_model_id, model_supports, resolve_provider
from services.token_usage import effective_cost, estimate_conversation_tokens, estimate_tokens
from services.usage import add_monthly_usage, record_usage_event
from services.users import get_or_create_user

logger = logging.getLogger(__name__)

VALID_ROLES = ("user", "assistant", "system")
WEB_SEARCH_CONTEXT_SIZES = ("low", "medium", "high")


@dataclass
class PreparedChat:
    """A validated request with identity, model and features resolved."""

    user: UserProfile
    model_id: str
    provider: ProviderConfig
    messages: list[dict]
    user_text: str
    input_tokens: int
    thread_id: str | None = None
    web_search: bool = False
    web_search_context_size: str = "medium"
    wiki_grounding: bool = False
    quota_checked: bool = False

    @property
    def flags(self) -> dict:
        return {
            "web_search": self.web_search,
            "web_search_context_size": self.web_search_context_size if self.web_search else None,
            "wiki_grounding": self.wiki_grounding,
        }


@dataclass
class ChatOutcome:
    content: str
    input_tokens: int
    output_tokens: int
    effective_tokens: int = 0
    message_id: str | None = None
    user_message_id: str | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def usage(self) -> dict:
        return {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "totalTokens": self.input_tokens + self.output_tokens,
        }


def _get(obj, name: str, default=None):
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _normalize_messages(raw_messages) -> list[dict]:
    messages = []
    for raw in raw_messages or []:
        role = _get(raw, "role")
        content = _get(raw, "content")
        if role not in VALID_ROLES:
            raise ChatError(ErrorKind.BAD_REQUEST, f"Invalid message role: {role!r}")
        if not isinstance(content, str):
            raise ChatError(ErrorKind.BAD_REQUEST, "Message content must be a string")
        if len(content) > settings.MAX_MESSAGE_CHARS:
            raise ChatError(
                ErrorKind.BAD_REQUEST,
                "Message too long",
                {"maxChars": settings.MAX_MESSAGE_CHARS, "actualChars": len(content)},
            )
        messages.append({"role": role, "content": content})
    return messages


class ChatDispatcher:
    """Runs chat requests for one database session.

    *provider_factory* builds the upstream client (defaults to
    :func:`services.llm.create_provider`); *cache* is optional; *ledger*
    defaults to a :class:`SqlTokenLedger` on the same session.
    """

    def __init__(
        self,
        db: Session,
        *,
        provider_factory: Callable[..., ChatProvider] | None = None,
        cache: ResponseCache | None = None,
        ledger: TokenLedger | None = None,
    ):
        self.db = db
        self.provider_factory = provider_factory or create_provider
        self.cache = cache
        self.ledger = ledger or SqlTokenLedger(db)

    # ── Validating → ModelResolved ─────────────────────────────────────────

    def prepare(self, request, external_id: str) -> PreparedChat:
        """Validate *request* and resolve identity, model, provider and features.

        *request* is a ``ChatRequest`` schema or a dict with the same keys.
        """
        messages = _normalize_messages(_get(request, "messages"))
        if not messages:
            raise ChatError(ErrorKind.BAD_REQUEST, "Messages are required")
        user_texts = [m["content"] for m in messages if m["role"] == "user"]
        if not user_texts:
            raise ChatError(ErrorKind.BAD_REQUEST, "At least one user message is required")

        requested_model = (_get(request, "model") or "").strip()
        if not requested_model:
            raise ChatError(ErrorKind.BAD_REQUEST, "Model is required")

        context_size = _get(request, "web_search_context_size") or "medium"
        if context_size not in WEB_SEARCH_CONTEXT_SIZES:
            raise ChatError(ErrorKind.BAD_REQUEST, f"Invalid web search context size: {context_size!r}")

        user = get_or_create_user(self.db, external_id)

        model_id = migrate_model_id(requested_model)
        if model_id != requested_model:
            logger.info("Model %s resolved to %s", requested_model, model_id)
        provider = resolve_provider(model_id)

        # Unsupported features are dropped, not rejected
        web_search = bool(_get(request, "enable_web_search")) and model_supports(model_id, Capability.WEB_SEARCH)
        wiki_grounding = bool(_get(request, "enable_wiki_grounding")) and model_supports(
            model_id, Capability.WIKI_GROUNDING
        )

        thread_id = _get(request, "thread_id")
        if thread_id:
            thread = conversations.find_thread(self.db, thread_id)
            if thread is not None and thread.user_profile_id != user.id:
                raise ChatError(ErrorKind.NOT_FOUND, "Thread not found.")

        preferred_lang = _get(request, "preferred_lang") or user.preferred_lang
        upstream_messages = prepare_messages(messages, preferred_lang)

        return PreparedChat(
            user=user,
            model_id=model_id,
            provider=provider,
            messages=upstream_messages,
            user_text=user_texts[-1],
            input_tokens=estimate_conversation_tokens(upstream_messages, model_id),
            thread_id=thread_id or None,
            web_search=web_search,
            web_search_context_size=context_size,
            wiki_grounding=wiki_grounding,
        )

    # ── QuotaChecked ───────────────────────────────────────────────────────

    def check_quota(self, prepared: PreparedChat) -> int:
        """Grant today's allowance if needed and require it to cover the input estimate."""
        user_id = prepared.user.id
        self.ledger.grant_if_absent_or_expired(user_id)
        remaining = self.ledger.remaining(user_id)
        if remaining < prepared.input_tokens:
            logger.info(
                "Quota gate rejected user %s: need %d, have %d",
                user_id, prepared.input_tokens, remaining,
            )
            raise QuotaExceededError(required=prepared.input_tokens, remaining=remaining)
        prepared.quota_checked = True
        return remaining

    # ── ProviderCalled ─────────────────────────────────────────────────────

    def _provider(self, prepared: PreparedChat, streaming: bool) -> ChatProvider:
        return self.provider_factory(
            prepared.model_id,
            prepared.provider,
            web_search=prepared.web_search,
            web_search_context_size=prepared.web_search_context_size,
            wiki_grounding=prepared.wiki_grounding,
            streaming=streaming,
        )

    def _cache_key(self, prepared: PreparedChat) -> str:
        return response_cache_key(prepared.user.id, prepared.model_id, prepared.messages, prepared.flags)

    async def generate(self, prepared: PreparedChat) -> ChatOutcome:
        """Blocking provider call plus reconciliation, without persisting."""
        if not prepared.quota_checked:
            await run_in_threadpool(self.check_quota, prepared)

        provider = self._provider(prepared, streaming=False)
        try:
            completion = await provider.complete(prepared.messages)
        except Exception as exc:
            raise upstream_chat_error(exc, provider.name) from exc

        usage = completion.usage or {}
        if usage.get("total_tokens"):
            input_tokens = usage.get("input_tokens", 0)
            output_tokens = usage.get("output_tokens", 0)
        else:
            input_tokens = prepared.input_tokens
            output_tokens = estimate_tokens(completion.content, prepared.model_id)

        outcome = ChatOutcome(completion.content, input_tokens, output_tokens)
        await run_in_threadpool(self._reconcile, prepared, outcome, False)
        return outcome

    async def complete(self, prepared: PreparedChat) -> dict:
        """Run a blocking request end to end and return the normalized response."""
        key = None
        if self.cache is not None:
            key = self._cache_key(prepared)
            hit = await run_in_threadpool(self.cache.get, key)
            if hit is not None:
                logger.info("Response cache hit for user %s on %s", prepared.user.id, prepared.model_id)
                return self._response(
                    ChatOutcome(hit["content"], 0, 0),
                    prepared,
                    web_search_used=hit.get("webSearchUsed", False),
                )

        outcome = await self.generate(prepared)
        await run_in_threadpool(self._persist, prepared, outcome)

        if key is not None:
            value = {"content": outcome.content, "webSearchUsed": prepared.web_search}
            await run_in_threadpool(self.cache.set, key, value)
        return self._response(outcome, prepared)

    async def stream(self, prepared: PreparedChat) -> AsyncIterator[dict]:
        """Yield ``content`` events, then one ``done`` or ``error`` event.

        If the consumer stops iterating after some content arrived, the
        partial text is still charged and saved before the generator closes.
        """
        if not prepared.quota_checked:
            try:
                await run_in_threadpool(self.check_quota, prepared)
            except ChatError as exc:
                yield {"type": "error", **exc.to_dict()}
                return

        try:
            provider = self._provider(prepared, streaming=True)
        except ChatError as exc:
            yield {"type": "error", **exc.to_dict()}
            return

        chunks: list[str] = []
        outcome: ChatOutcome | None = None
        error: ChatError | None = None
        upstream = provider.stream(prepared.messages)
        try:
            try:
                async for text in upstream:
                    chunks.append(text)
                    yield {"type": "content", "content": text}
            except Exception as exc:
                error = upstream_chat_error(exc, provider.name)
        finally:
            with anyio.CancelScope(shield=True):
                if chunks:
                    outcome = await run_in_threadpool(self._finish_stream, prepared, "".join(chunks))
                elif error is None:
                    logger.info("Stream for user %s ended with no content", prepared.user.id)
                aclose = getattr(upstream, "aclose", None)
                if aclose is not None:
                    await aclose()

        if error is not None:
            yield {"type": "error", **error.to_dict()}
            return

        outcome = outcome or ChatOutcome("", prepared.input_tokens, 0)
        yield {
            "type": "done",
            "messageId": outcome.message_id,
            "usage": outcome.usage,
            "webSearchUsed": prepared.web_search,
        }

    def _finish_stream(self, prepared: PreparedChat, content: str) -> ChatOutcome:
        outcome = ChatOutcome(
            content,
            prepared.input_tokens,
            estimate_tokens(content, prepared.model_id),
        )
        self._reconcile(prepared, outcome, streamed=True)
        self._persist(prepared, outcome)
        return outcome

    # ── Reconciled → Persisted ─────────────────────────────────────────────

    def _reconcile(self, prepared: PreparedChat, outcome: ChatOutcome, streamed: bool) -> None:
        """Charge the effective cost and record usage; each step is independent."""
        user_id = prepared.user.id
        raw_total = outcome.input_tokens + outcome.output_tokens
        outcome.effective_tokens = effective_cost(prepared.model_id, raw_total, prepared.web_search)

        try:
            if not self.ledger.consume(user_id, outcome.effective_tokens):
                logger.warning(
                    "Allowance overrun for user %s: %d effective tokens not charged",
                    user_id, outcome.effective_tokens,
                )
                outcome.warnings.append("allowance_overrun")
        except Exception:
            self.db.rollback()
            logger.exception("Failed to charge %d tokens to user %s", outcome.effective_tokens, user_id)
            outcome.warnings.append("ledger_failed")

        try:
            add_monthly_usage(self.db, user_id, raw_total)
        except Exception:
            self.db.rollback()
            logger.exception("Failed to update monthly usage for user %s", user_id)
            outcome.warnings.append("usage_failed")

        try:
            record_usage_event(
                self.db,
                user_id,
                prepared.model_id,
                outcome.input_tokens,
                outcome.output_tokens,
                outcome.effective_tokens,
                web_search=prepared.web_search,
                streamed=streamed,
            )
        except Exception:
            self.db.rollback()
            logger.exception("Failed to record usage event for user %s", user_id)
            outcome.warnings.append("tracking_failed")

    def _persist(self, prepared: PreparedChat, outcome: ChatOutcome) -> None:
        if not prepared.thread_id:
            return
        try:
            conversations.ensure_thread(self.db, prepared.thread_id, prepared.user.id)
        except Exception:
            self.db.rollback()
            logger.warning("Could not ensure thread %s; response not saved", prepared.thread_id, exc_info=True)
            outcome.warnings.append("persistence_failed")
            return

        saved = conversations.save_exchange(
            self.db,
            prepared.thread_id,
            prepared.user_text,
            outcome.content,
            prepared.model_id,
            outcome.effective_tokens,
        )
        if saved.assistant_message_id is None:
            outcome.warnings.append("persistence_failed")
        outcome.message_id = saved.assistant_message_id
        outcome.user_message_id = saved.user_message_id

    def _response(self, outcome: ChatOutcome, prepared: PreparedChat, web_search_used: bool | None = None) -> dict:
        message = {"role": "assistant", "content": outcome.content}
        if outcome.message_id:
            message["id"] = outcome.message_id
        return {
            "message": message,
            "usage": outcome.usage,
            "webSearchUsed": prepared.web_search if web_search_used is None else web_search_used,
            "model": prepared.model_id,
        }

    # ── Alternate responses ────────────────────────────────────────────────

    async def add_response(self, message_id: str, prepared: PreparedChat):
        """Generate another model's answer for an existing assistant message.

        The answer is stored as a non-primary response; the thread itself is
        not written.
        """
        message = await run_in_threadpool(conversations.get_owned_message, self.db, message_id, prepared.user.id)
        if message.role != "assistant":
            raise ChatError(ErrorKind.BAD_REQUEST, "Responses can only be added to assistant messages")
        outcome = await self.generate(prepared)
        return await run_in_threadpool(
            conversations.add_response,
            self.db, message.id, prepared.model_id, outcome.content, outcome.effective_tokens,
        )
