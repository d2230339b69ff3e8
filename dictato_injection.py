from __future__ import annotations

import asyncio
import sys
from asyncio.subprocess import DEVNULL, PIPE
from contextlib import asynccontextmanager, suppress
from enum import Enum, StrEnum

import pyperclipfix as pyperclip
from evdev import ecodes
from pydotool import key_combination

from dictato_console import debug, errprint, warn


class InjectionError(RuntimeError):
    """Text or a keystroke could not be delivered to the focused application."""


class InsertionMode(StrEnum):
    TYPING = "typing"
    CLIPBOARD = "clipboard"


class KeyStroke(Enum):
    ENTER = (ecodes.KEY_ENTER,)
    BACKSPACE = (ecodes.KEY_BACKSPACE,)
    SPACE = (ecodes.KEY_SPACE,)
    TAB = (ecodes.KEY_TAB,)
    RIGHT = (ecodes.KEY_RIGHT,)
    SELECT_ALL = (ecodes.KEY_LEFTCTRL, ecodes.KEY_A)
    COPY = (ecodes.KEY_LEFTCTRL, ecodes.KEY_C)
    PASTE = (ecodes.KEY_LEFTCTRL, ecodes.KEY_V)
    CUT = (ecodes.KEY_LEFTCTRL, ecodes.KEY_X)
    SAVE = (ecodes.KEY_LEFTCTRL, ecodes.KEY_S)
    UNDO = (ecodes.KEY_LEFTCTRL, ecodes.KEY_Z)
    REDO = (ecodes.KEY_LEFTCTRL, ecodes.KEY_Y)


class Keyboard:
    """Synthesizes key combinations through the ydotool daemon."""

    def __init__(self, delay_ms: int = 20):
        self.delay_ms = delay_ms

    def press(self, stroke: KeyStroke) -> None:
        try:
            key_combination(list(stroke.value), each_delay_ms=self.delay_ms, press_ms=self.delay_ms)
        except OSError as exc:
            raise InjectionError(f"Unable to press {stroke.name}: {exc}") from exc


class Clipboard:
    def read(self) -> str:
        try:
            return pyperclip.paste() or ""
        except pyperclip.PyperclipException as exc:
            raise InjectionError(f"Unable to read clipboard: {exc}") from exc

    def write(self, text: str) -> None:
        try:
            pyperclip.copy(text)
        except pyperclip.PyperclipException as exc:
            raise InjectionError(f"Unable to write clipboard: {exc}") from exc


SENDKEYS_SPECIAL_CHARS = set("+^%~()[]")


def escape_for_typing(text: str) -> str:
    """Escape text into a one-line SendKeys-style script.

    Braces and the SendKeys operators are wrapped in braces; line breaks
    become ``{ENTER}`` and tabs ``{TAB}``.
    """
    escaped = []
    for char in text.replace("\r\n", "\n").replace("\r", "\n"):
        if char == "{":
            escaped.append("{{}")
        elif char == "}":
            escaped.append("{}}")
        elif char in SENDKEYS_SPECIAL_CHARS:
            escaped.append("{" + char + "}")
        elif char == "\n":
            escaped.append("{ENTER}")
        elif char == "\t":
            escaped.append("{TAB}")
        else:
            escaped.append(char)
    return "".join(escaped)


WINDOWS_SENDKEYS_SCRIPT = (
    "Add-Type -AssemblyName System.Windows.Forms; "
    "$in = [Console]::In; "
    "while ($true) { $line = $in.ReadLine(); if ($null -eq $line) { break }; "
    "[System.Windows.Forms.SendKeys]::SendWait($line) }"
)


def default_helper_command(delay_ms: int = 20) -> list[str]:
    if sys.platform == "win32":
        return [
            "powershell.exe",
            "-NoProfile",
            "-WindowStyle",
            "Hidden",
            "-ExecutionPolicy",
            "Bypass",
            "-Command",
            WINDOWS_SENDKEYS_SCRIPT,
        ]
    return [sys.executable, "-m", "dictato_typing_helper", "--delay-ms", str(delay_ms)]


class TypingHelper:
    """Long-lived keystroke-synthesis process fed one escaped line per injection.

    The process is spawned on first use and respawned lazily when it exited.
    """

    def __init__(self, command: list[str] | None = None, ascii_only: bool | None = None):
        self.command = command or default_helper_command()
        # the ydotool helper only knows the US ASCII keymap
        self.ascii_only = (sys.platform != "win32") if ascii_only is None else ascii_only
        self._process: asyncio.subprocess.Process | None = None
        self.spawn_count = 0

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def _ensure_process(self) -> asyncio.subprocess.Process:
        if self.running:
            return self._process
        if self._process is not None:
            debug(f"[TYPING] helper exited with code {self._process.returncode}, respawning")
        try:
            self._process = await asyncio.create_subprocess_exec(*self.command, stdin=PIPE, stdout=DEVNULL)
        except OSError as exc:
            self._process = None
            raise InjectionError(f"Unable to start typing helper: {exc}") from exc
        self.spawn_count += 1
        return self._process

    async def send(self, script: str) -> None:
        process = await self._ensure_process()
        try:
            process.stdin.write(script.encode("utf-8") + b"\n")
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as exc:
            raise InjectionError(f"Typing helper is not accepting input: {exc}") from exc

    async def type(self, text: str) -> None:
        if self.ascii_only and not text.isascii():
            raise InjectionError("Typing helper cannot synthesize non-ASCII text")
        await self.send(escape_for_typing(text))

    async def close(self) -> None:
        process, self._process = self._process, None
        if process is None or process.returncode is not None:
            return
        with suppress(BrokenPipeError, ConnectionResetError, RuntimeError):
            process.stdin.close()
        try:
            await asyncio.wait_for(process.wait(), timeout=1.0)
        except TimeoutError:
            process.kill()
            await process.wait()


class ClipboardPaster:
    """Paste through the clipboard, then put the user's clipboard back.

    The snapshot taken before the first write is kept while pastes follow each
    other, and a single restore runs ``restore_delay`` seconds after the last
    one. The restore is skipped when the clipboard no longer holds the text
    written by the last paste: someone else wrote to it meanwhile.
    """

    RESTORE_DELAY_SECONDS = 0.5

    def __init__(self, clipboard: Clipboard, keyboard: Keyboard, restore_delay: float = RESTORE_DELAY_SECONDS):
        self.clipboard = clipboard
        self.keyboard = keyboard
        self.restore_delay = restore_delay
        self._snapshot: str | None = None
        self._expected: str | None = None
        self._restore_handle: asyncio.TimerHandle | None = None

    @property
    def restore_pending(self) -> bool:
        return self._restore_handle is not None

    async def paste(self, text: str) -> None:
        if self._restore_handle is not None:
            self._restore_handle.cancel()
            self._restore_handle = None
        elif self._snapshot is None:
            self._snapshot = self.clipboard.read()
        loop = asyncio.get_running_loop()
        self._restore_handle = loop.call_later(self.restore_delay, self._restore_if_unchanged)
        try:
            self.clipboard.write(text)
            self._expected = text
            self.keyboard.press(KeyStroke.PASTE)
        except InjectionError:
            # nothing was pasted, no reason to keep the text around
            self.restore_now()
            raise

    def restore_now(self) -> None:
        if self._restore_handle is None:
            return
        self._restore_handle.cancel()
        self._restore_if_unchanged()

    def _restore_if_unchanged(self):
        self._restore_handle = None
        snapshot, expected = self._snapshot, self._expected
        self._snapshot = None
        self._expected = None
        if snapshot is None:
            return
        try:
            current = self.clipboard.read()
            if current != expected:
                debug("[CLIPBOARD] changed since paste, not restoring")
                return
            self.clipboard.write(snapshot)
        except InjectionError as exc:
            warn("clipboard", f"restore failed: {exc}")


class Injector:
    """Applies text and keystrokes to the focused application, one operation at a time."""

    def __init__(
        self,
        mode: InsertionMode,
        keyboard: Keyboard,
        paster: ClipboardPaster,
        typer: TypingHelper | None = None,
    ):
        self.mode = mode
        self.keyboard = keyboard
        self.paster = paster
        self.typer = typer
        self._lock = asyncio.Lock()

    async def inject(self, text: str) -> bool:
        if not text:
            return True
        async with self._lock:
            if self.mode is InsertionMode.TYPING and self.typer is not None:
                try:
                    await self.typer.type(text)
                    return True
                except InjectionError as exc:
                    warn("injection", f"direct typing failed, using clipboard: {exc}")
            try:
                await self.paster.paste(text)
                return True
            except InjectionError as exc:
                errprint(f"ERROR: [injection] text could not be inserted: {exc}")
                return False

    @asynccontextmanager
    async def clipboard_turn(self):
        """Exclusive use of the clipboard and keyboard for a multi-step operation.

        A pending paste restore is applied first, so the caller's own snapshot
        is the user's clipboard and not the last dictated text.
        """
        async with self._lock:
            self.paster.restore_now()
            yield

    async def press(self, stroke: KeyStroke) -> bool:
        async with self._lock:
            try:
                self.keyboard.press(stroke)
                return True
            except InjectionError as exc:
                errprint(f"ERROR: [injection] {exc}")
                return False

    async def close(self) -> None:
        self.paster.restore_now()
        if self.typer is not None:
            await self.typer.close()
