from __future__ import annotations

import asyncio
from asyncio import CancelledError, create_task
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager, nullcontext, suppress
from enum import StrEnum
from typing import NamedTuple

from openai import AsyncOpenAI, OpenAIError

from dictato_console import debug, warn
from dictato_injection import Clipboard, InjectionError, Keyboard, KeyStroke
from dictato_providers import BackendError

LANGUAGE_RULE = "IMPORTANT: Preserve the original language of the text - do not translate it."


class RewriteMode(StrEnum):
    GRAMMAR_CORRECTION = "grammar_correction"
    PROFESSIONAL = "professional"
    POLITE = "polite"
    CASUAL = "casual"
    STRUCTURED = "structured"

    @property
    def prompt(self) -> str:
        return PRESET_PROMPTS[self]


PRESET_PROMPTS = {
    RewriteMode.GRAMMAR_CORRECTION: (
        "Correct the grammar, spelling, and punctuation of the following text. "
        "Convert number words to digits (twenty-five → 25, ten percent → 10%, five dollars → $5). "
        f"{LANGUAGE_RULE} Return only the corrected text without any explanations or additional commentary."
    ),
    RewriteMode.PROFESSIONAL: (
        "Rewrite the following text in a professional and formal tone. "
        "Maintain the core message while making it suitable for business communication. "
        f"{LANGUAGE_RULE} Return only the rewritten text without any explanations."
    ),
    RewriteMode.POLITE: (
        "Rewrite the following text in a polite and courteous tone. "
        "Make it more respectful and considerate while keeping the original meaning. "
        f"{LANGUAGE_RULE} Return only the rewritten text without any explanations."
    ),
    RewriteMode.CASUAL: (
        "Rewrite the following text in a casual and friendly tone. "
        "Make it more conversational and relaxed while maintaining clarity. "
        f"{LANGUAGE_RULE} Return only the rewritten text without any explanations."
    ),
    RewriteMode.STRUCTURED: (
        "Reformulate the following text in a well-organized and structured manner. "
        "Improve clarity, flow, and coherence while maintaining all key ideas. "
        "Organize thoughts logically and ensure smooth transitions between concepts. "
        f"{LANGUAGE_RULE} Return only the reformulated text without any explanations."
    ),
}


class RewriteProvider(StrEnum):
    GROQ = "groq"
    SAMBANOVA = "sambanova"
    FIREWORKS = "fireworks"
    GEMINI_FLASH_LITE = "gemini-flash-lite"
    GEMINI_FLASH = "gemini-flash"
    MISTRAL = "mistral"
    INCEPTION = "inception"

    @property
    def endpoint(self) -> RewriteEndpoint:
        return REWRITE_ENDPOINTS[self]


class RewriteEndpoint(NamedTuple):
    base_url: str
    model: str
    api_key_name: str


GEMINI_OPENAI_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"

REWRITE_ENDPOINTS = {
    RewriteProvider.GROQ: RewriteEndpoint("https://api.groq.com/openai/v1", "openai/gpt-oss-120b", "groq"),
    RewriteProvider.SAMBANOVA: RewriteEndpoint("https://api.sambanova.ai/v1", "Meta-Llama-3.3-70B-Instruct", "sambanova"),
    RewriteProvider.FIREWORKS: RewriteEndpoint(
        "https://api.fireworks.ai/inference/v1", "accounts/fireworks/models/gpt-oss-20b", "fireworks"
    ),
    RewriteProvider.GEMINI_FLASH_LITE: RewriteEndpoint(GEMINI_OPENAI_URL, "gemini-flash-lite-latest", "gemini"),
    RewriteProvider.GEMINI_FLASH: RewriteEndpoint(GEMINI_OPENAI_URL, "gemini-3-flash-preview", "gemini"),
    RewriteProvider.MISTRAL: RewriteEndpoint("https://api.mistral.ai/v1", "mistral-small-latest", "mistral"),
    RewriteProvider.INCEPTION: RewriteEndpoint("https://api.inceptionlabs.ai/v1", "mercury-2", "inception"),
}


class RewriteBackend:
    """Chat-completion call that rewrites a piece of text with a prompt."""

    REQUEST_TIMEOUT_SECONDS = 30.0
    MAX_RETRIES = 2
    TEMPERATURE = 0.2

    def __init__(self, provider: RewriteProvider, api_key: str):
        self.provider = provider
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=provider.endpoint.base_url,
            timeout=self.REQUEST_TIMEOUT_SECONDS,
            max_retries=self.MAX_RETRIES,
        )

    async def rewrite(self, text: str, prompt: str) -> str:
        try:
            completion = await self.client.chat.completions.create(
                model=self.provider.endpoint.model,
                messages=[{"role": "user", "content": f"{prompt}\n\n{text}"}],
                temperature=self.TEMPERATURE,
            )
        except OpenAIError as exc:
            raise BackendError(f"{self.provider} rewrite failed: {exc}") from exc
        if not completion.choices:
            return ""
        return (completion.choices[0].message.content or "").strip()


class RewriteFlow:
    """Rewrite the current selection in place.

    The selection is read through the clipboard (copy keystroke), sent to the
    backend, and the result is pasted over it. The user's clipboard is put back
    whatever happens, and the whole sequence holds the ``exclusive`` context
    so no dictation paste runs in between. One request at a time per requester
    key: a new request or ``abort`` cancels the previous one and waits for its
    clipboard restore.
    ``on_done(key)`` is called exactly once per request or idle abort.
    """

    COPY_SETTLE_SECONDS = 0.15
    RESTORE_DELAY_SECONDS = 0.5

    def __init__(
        self,
        keyboard: Keyboard,
        clipboard: Clipboard,
        backend: RewriteBackend,
        prompt: str = PRESET_PROMPTS[RewriteMode.GRAMMAR_CORRECTION],
        settle_delay: float = COPY_SETTLE_SECONDS,
        restore_delay: float = RESTORE_DELAY_SECONDS,
        on_done: Callable[[str], None] | None = None,
        exclusive: Callable[[], AbstractAsyncContextManager] | None = None,
    ):
        self.keyboard = keyboard
        self.clipboard = clipboard
        self.backend = backend
        self.prompt = prompt
        self.settle_delay = settle_delay
        self.restore_delay = restore_delay
        self.on_done = on_done
        # shared with dictation injection, which uses the same clipboard
        self.exclusive = exclusive or nullcontext
        self._requests: dict[str, asyncio.Task] = {}

    def in_flight(self, key: str = "default") -> bool:
        task = self._requests.get(key)
        return task is not None and not task.done()

    async def request(self, key: str = "default", prompt: str | None = None, select_all: bool = False) -> asyncio.Task:
        await self._cancel(key)
        task = create_task(self._run(prompt or self.prompt, select_all))
        self._requests[key] = task
        # also fires for a task cancelled before it got to run
        task.add_done_callback(lambda done: self._finished(key, done))
        return task

    async def abort(self, key: str = "default") -> bool:
        """Cancel the in-flight request of ``key``. Returns whether one was running."""
        if await self._cancel(key):
            return True
        self._signal_done(key)
        return False

    async def close(self) -> None:
        for key in list(self._requests):
            await self._cancel(key)

    async def _cancel(self, key: str) -> bool:
        task = self._requests.pop(key, None)
        if task is None or task.done():
            return False
        task.cancel()
        with suppress(CancelledError):
            await task
        return True

    def _finished(self, key: str, task: asyncio.Task) -> None:
        if self._requests.get(key) is task:
            del self._requests[key]
        self._signal_done(key)

    def _signal_done(self, key: str) -> None:
        if self.on_done is None:
            return
        try:
            self.on_done(key)
        except Exception as exc:
            warn("rewrite", f"done callback failed: {exc}")

    async def _run(self, prompt: str, select_all: bool) -> None:
        async with self.exclusive():
            await self._rewrite_selection(prompt, select_all)

    async def _rewrite_selection(self, prompt: str, select_all: bool) -> None:
        snapshot: str | None = None
        try:
            snapshot = self.clipboard.read()
            # an empty clipboard after the copy keystroke means nothing was selected
            self.clipboard.write("")
            if select_all:
                self.keyboard.press(KeyStroke.SELECT_ALL)
            self.keyboard.press(KeyStroke.COPY)
            await asyncio.sleep(self.settle_delay)
            selected = self.clipboard.read()
            if not selected.strip():
                debug("[REWRITE] nothing selected")
                return

            try:
                rewritten = await self.backend.rewrite(selected, prompt)
            except BackendError as exc:
                warn("rewrite", str(exc))
                return
            if not rewritten:
                debug("[REWRITE] empty result")
                return

            self.clipboard.write(rewritten)
            self.keyboard.press(KeyStroke.PASTE)
            await asyncio.sleep(self.restore_delay)
        except InjectionError as exc:
            warn("rewrite", str(exc))
        finally:
            if snapshot is not None:
                self._restore(snapshot)

    def _restore(self, snapshot: str) -> None:
        try:
            self.clipboard.write(snapshot)
        except InjectionError as exc:
            warn("rewrite", f"clipboard restore failed: {exc}")
