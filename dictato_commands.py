from __future__ import annotations

import asyncio
import re
import string
import unicodedata
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import NamedTuple

from dictato_console import debug
from dictato_injection import Injector, KeyStroke


class ControlKind(StrEnum):
    PAUSE_DICTATION = "pause_dictation"
    REWRITE = "rewrite"
    GRAMMAR_CORRECT = "grammar_correct"


class InsertText(NamedTuple):
    text: str


class PressKey(NamedTuple):
    key: KeyStroke


class DeleteLastWord(NamedTuple):
    pass


class Control(NamedTuple):
    kind: ControlKind


Action = InsertText | PressKey | DeleteLastWord | Control


class VoiceCommand(NamedTuple):
    phrase: str
    action: Action
    pattern: re.Pattern


def command(phrase: str, action: Action) -> VoiceCommand:
    return VoiceCommand(phrase, action, re.compile(r"\b" + re.escape(phrase) + r"\b", re.IGNORECASE))


def _table(*entries: tuple[str, Action]) -> tuple[VoiceCommand, ...]:
    return tuple(command(phrase, action) for phrase, action in entries)


ENTER = PressKey(KeyStroke.ENTER)
BACKSPACE = PressKey(KeyStroke.BACKSPACE)
SPACE = PressKey(KeyStroke.SPACE)
TAB = PressKey(KeyStroke.TAB)
DESELECT = PressKey(KeyStroke.RIGHT)
SELECT_ALL = PressKey(KeyStroke.SELECT_ALL)
DELETE_LAST_WORD = DeleteLastWord()
PAUSE = Control(ControlKind.PAUSE_DICTATION)
REWRITE = Control(ControlKind.REWRITE)
GRAMMAR = Control(ControlKind.GRAMMAR_CORRECT)

# Declaration order is matching order: the first phrase found wins overlaps.
ENGLISH_COMMANDS = _table(
    ("period", InsertText(".")),
    ("comma", InsertText(",")),
    ("exclamation mark", InsertText("!")),
    ("question mark", InsertText("?")),
    ("colon", InsertText(":")),
    ("semicolon", InsertText(";")),
    ("dash", InsertText("-")),
    ("hyphen", InsertText("-")),
    ("at sign", InsertText("@")),
    ("at mention", InsertText("@")),
    ("open parenthesis", InsertText("(")),
    ("close parenthesis", InsertText(")")),
    ("open quote", InsertText('"')),
    ("close quote", InsertText('"')),
    ("open single quote", InsertText("'")),
    ("close single quote", InsertText("'")),
    ("equal sign", InsertText("=")),
    ("backspace", BACKSPACE),
    ("press enter", ENTER),
    ("new line", ENTER),
    ("press paste", PressKey(KeyStroke.PASTE)),
    ("press copy", PressKey(KeyStroke.COPY)),
    ("press save", PressKey(KeyStroke.SAVE)),
    ("press undo", PressKey(KeyStroke.UNDO)),
    ("press redo", PressKey(KeyStroke.REDO)),
    ("press cut", PressKey(KeyStroke.CUT)),
    ("select all", SELECT_ALL),
    ("select none", DESELECT),
    ("deselect", DESELECT),
    ("press space", SPACE),
    ("press tab", TAB),
    ("delete that", DELETE_LAST_WORD),
    ("remove that", DELETE_LAST_WORD),
    ("correct grammar", GRAMMAR),
    ("correct the grammar", GRAMMAR),
    ("press rewrite", REWRITE),
    ("pause voice typing", PAUSE),
    ("pause dictation", PAUSE),
    ("stop voice typing", PAUSE),
    ("stop dictation", PAUSE),
    ("stop listening", PAUSE),
    ("stop dictating", PAUSE),
    ("stop voice mode", PAUSE),
    ("pause voice mode", PAUSE),
)

FRENCH_COMMANDS = _table(
    ("point d'exclamation", InsertText("!")),
    ("point d'interrogation", InsertText("?")),
    ("point-virgule", InsertText(";")),
    ("deux points", InsertText(":")),
    ("point", InsertText(".")),
    ("virgule", InsertText(",")),
    ("tiret", InsertText("-")),
    ("trait d'union", InsertText("-")),
    ("arobase", InsertText("@")),
    ("ouvrir parenthèse", InsertText("(")),
    ("fermer parenthèse", InsertText(")")),
    ("ouvrir guillemets", InsertText('"')),
    ("fermer guillemets", InsertText('"')),
    ("signe égal", InsertText("=")),
    ("effacer ça", DELETE_LAST_WORD),
    ("supprimer ça", DELETE_LAST_WORD),
    ("effacer", BACKSPACE),
    ("retour arrière", BACKSPACE),
    ("appuyer sur entrée", ENTER),
    ("appuyer sur nouvelle ligne", ENTER),
    ("appuyer sur à la ligne", ENTER),
    ("appuyer sur coller", PressKey(KeyStroke.PASTE)),
    ("appuyer sur copier", PressKey(KeyStroke.COPY)),
    ("appuyer sur enregistrer", PressKey(KeyStroke.SAVE)),
    ("appuyer sur sauvegarder", PressKey(KeyStroke.SAVE)),
    ("appuyer sur annuler", PressKey(KeyStroke.UNDO)),
    ("appuyer sur rétablir", PressKey(KeyStroke.REDO)),
    ("appuyer sur couper", PressKey(KeyStroke.CUT)),
    ("tout sélectionner", SELECT_ALL),
    ("appuyer sur espace", SPACE),
    ("appuyer sur tabulation", TAB),
    ("appuyer sur réécrire", REWRITE),
    ("appuyer sur corriger", REWRITE),
    ("pause dictée", PAUSE),
    ("arrêter dictée", PAUSE),
    ("stop dictée", PAUSE),
    ("arrêter d'écouter", PAUSE),
)

SPANISH_COMMANDS = _table(
    ("punto y coma", InsertText(";")),
    ("dos puntos", InsertText(":")),
    ("punto", InsertText(".")),
    ("coma", InsertText(",")),
    ("signo de exclamación", InsertText("!")),
    ("exclamación", InsertText("!")),
    ("signo de interrogación", InsertText("?")),
    ("interrogación", InsertText("?")),
    ("guión", InsertText("-")),
    ("arroba", InsertText("@")),
    ("abrir paréntesis", InsertText("(")),
    ("cerrar paréntesis", InsertText(")")),
    ("abrir comillas", InsertText('"')),
    ("cerrar comillas", InsertText('"')),
    ("signo igual", InsertText("=")),
    ("borrar", BACKSPACE),
    ("retroceso", BACKSPACE),
    ("presionar enter", ENTER),
    ("presionar intro", ENTER),
    ("presionar nueva línea", ENTER),
    ("presionar pegar", PressKey(KeyStroke.PASTE)),
    ("presionar copiar", PressKey(KeyStroke.COPY)),
    ("presionar guardar", PressKey(KeyStroke.SAVE)),
    ("presionar deshacer", PressKey(KeyStroke.UNDO)),
    ("presionar rehacer", PressKey(KeyStroke.REDO)),
    ("presionar cortar", PressKey(KeyStroke.CUT)),
    ("seleccionar todo", SELECT_ALL),
    ("presionar espacio", SPACE),
    ("presionar tabulador", TAB),
    ("eliminar eso", DELETE_LAST_WORD),
    ("quitar eso", DELETE_LAST_WORD),
    ("presionar reescribir", REWRITE),
    ("presionar corregir", REWRITE),
    ("pausar dictado", PAUSE),
    ("detener dictado", PAUSE),
    ("parar dictado", PAUSE),
    ("dejar de escuchar", PAUSE),
)

GERMAN_COMMANDS = _table(
    ("punkt", InsertText(".")),
    ("komma", InsertText(",")),
    ("ausrufezeichen", InsertText("!")),
    ("fragezeichen", InsertText("?")),
    ("doppelpunkt", InsertText(":")),
    ("semikolon", InsertText(";")),
    ("strichpunkt", InsertText(";")),
    ("bindestrich", InsertText("-")),
    ("gedankenstrich", InsertText("-")),
    ("at zeichen", InsertText("@")),
    ("klammeraffe", InsertText("@")),
    ("klammer auf", InsertText("(")),
    ("klammer zu", InsertText(")")),
    ("anführungszeichen auf", InsertText('"')),
    ("anführungszeichen zu", InsertText('"')),
    ("gleich zeichen", InsertText("=")),
    ("das löschen", DELETE_LAST_WORD),
    ("löschen", BACKSPACE),
    ("rücktaste", BACKSPACE),
    ("drücke eingabe", ENTER),
    ("drücke enter", ENTER),
    ("drücke neue zeile", ENTER),
    ("drücke einfügen", PressKey(KeyStroke.PASTE)),
    ("drücke kopieren", PressKey(KeyStroke.COPY)),
    ("drücke speichern", PressKey(KeyStroke.SAVE)),
    ("drücke rückgängig", PressKey(KeyStroke.UNDO)),
    ("drücke wiederholen", PressKey(KeyStroke.REDO)),
    ("drücke ausschneiden", PressKey(KeyStroke.CUT)),
    ("alles auswählen", SELECT_ALL),
    ("alles markieren", SELECT_ALL),
    ("auswahl aufheben", DESELECT),
    ("nichts auswählen", DESELECT),
    ("drücke leerzeichen", SPACE),
    ("drücke tabulator", TAB),
    ("entfernen", DELETE_LAST_WORD),
    ("drücke umschreiben", REWRITE),
    ("drücke korrigieren", REWRITE),
    ("diktat pausieren", PAUSE),
    ("diktat stoppen", PAUSE),
    ("aufhören zu hören", PAUSE),
)

COMMANDS_BY_LANGUAGE = {
    "en": ENGLISH_COMMANDS,
    "fr": FRENCH_COMMANDS,
    "es": SPANISH_COMMANDS,
    "de": GERMAN_COMMANDS,
}


def commands_for_language(language: str | None) -> tuple[VoiceCommand, ...]:
    """Command table for a language code ("fr", "fr-FR"...), English otherwise."""
    code = (language or "").strip().lower().replace("_", "-").split("-")[0]
    return COMMANDS_BY_LANGUAGE.get(code, ENGLISH_COMMANDS)


class ParsedTranscript(NamedTuple):
    remaining: str
    processed: str
    keys: list[KeyStroke]
    controls: list[ControlKind]
    had_key_action: bool


def _drop_last_word(text: str) -> str:
    words = text.split()
    if len(words) <= 1:
        return ""
    return " ".join(words[:-1]) + " "


def parse_transcript(text: str, commands: tuple[VoiceCommand, ...] = ENGLISH_COMMANDS) -> ParsedTranscript:
    """Strip voice commands from a transcript.

    Commands are scanned in table order, each one from left to right. Literal
    actions accumulate in ``processed`` (each followed by a space), keystrokes
    and controls are collected in the order they are met, and "delete last
    word" drops the last word of the text preceding it.
    """
    remaining = text.strip()
    processed = ""
    keys: list[KeyStroke] = []
    controls: list[ControlKind] = []
    had_key_action = False

    for voice_command in commands:
        while match := voice_command.pattern.search(remaining):
            before, after = remaining[: match.start()], remaining[match.end() :]
            match voice_command.action:
                case InsertText(text=literal):
                    processed += literal + " "
                case PressKey(key=key):
                    keys.append(key)
                    had_key_action = True
                case DeleteLastWord():
                    before = _drop_last_word(before)
                case Control(kind=kind):
                    controls.append(kind)
            remaining = before + after

    return ParsedTranscript(
        remaining=" ".join(remaining.split()),
        processed=processed,
        keys=keys,
        controls=controls,
        had_key_action=had_key_action,
    )


# apostrophes and hyphens are kept: they belong to words ("don't", "point-virgule")
STRIPPED_PUNCTUATION = "".join(sorted((set(string.punctuation) | set("¿¡…—–«»“”„")) - set("'-")))
_STRIP_TABLE = str.maketrans("", "", STRIPPED_PUNCTUATION)


def normalize_transcript(text: str) -> str:
    """Unformatted form of a transcript: lowercase, NFKC, no punctuation, single spaces."""
    # lowercasing and stripping can both leave text that NFKC changes again
    for step in (str.lower, lambda value: value.translate(_STRIP_TABLE)):
        text = step(unicodedata.normalize("NFKC", text))
    return " ".join(unicodedata.normalize("NFKC", text).split())


ControlHandler = Callable[[ControlKind], Awaitable[None]]


class TranscriptPipeline:
    """Turns final transcripts into keystrokes and text injections.

    Transcripts are handled one at a time: keystrokes first, then the
    remaining text, then the text produced by literal commands. Controls are
    reported to ``on_control`` once the transcript has been applied.
    """

    def __init__(
        self,
        injector: Injector,
        commands: tuple[VoiceCommand, ...] = ENGLISH_COMMANDS,
        voice_commands_enabled: bool = True,
        text_formatted: bool = True,
        on_control: ControlHandler | None = None,
    ):
        self.injector = injector
        self.commands = commands
        self.voice_commands_enabled = voice_commands_enabled
        self.text_formatted = text_formatted
        self.on_control = on_control
        self._lock = asyncio.Lock()

    async def handle(self, transcript: str) -> ParsedTranscript | None:
        async with self._lock:
            parsed = await self._apply(transcript)
        if parsed is not None and self.on_control is not None:
            for control in parsed.controls:
                await self.on_control(control)
        return parsed

    def parse(self, transcript: str) -> ParsedTranscript | None:
        text = transcript.strip()
        if not self.text_formatted:
            text = normalize_transcript(text)
        if not text:
            return None
        if not self.voice_commands_enabled:
            return ParsedTranscript(remaining=text, processed="", keys=[], controls=[], had_key_action=False)
        return parse_transcript(text, self.commands)

    async def _apply(self, transcript: str) -> ParsedTranscript | None:
        parsed = self.parse(transcript)
        if parsed is None:
            return None
        debug(f"[COMMANDS] {parsed=}")

        for key in parsed.keys:
            await self.injector.press(key)

        remaining, processed = parsed.remaining, parsed.processed
        if remaining and processed.strip():
            await self.injector.inject(remaining)
            await self.injector.inject(processed)
        elif remaining:
            await self.injector.inject(remaining if parsed.had_key_action else remaining + " ")
        elif processed.strip():
            await self.injector.inject(processed)
        return parsed
