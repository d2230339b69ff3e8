from __future__ import annotations

import asyncio

from dictato_commands import (
    ENGLISH_COMMANDS,
    FRENCH_COMMANDS,
    GERMAN_COMMANDS,
    SPANISH_COMMANDS,
    ControlKind,
    TranscriptPipeline,
    commands_for_language,
    normalize_transcript,
    parse_transcript,
)
from dictato_injection import KeyStroke


class FakeInjector:
    def __init__(self, ops: list[tuple]) -> None:
        self.ops = ops

    async def inject(self, text: str) -> bool:
        self.ops.append(("inject", text))
        return True

    async def press(self, stroke: KeyStroke) -> bool:
        self.ops.append(("press", stroke))
        return True


def run_pipeline(transcripts: list[str], **kwargs) -> list[tuple]:
    ops: list[tuple] = []

    async def on_control(kind: ControlKind) -> None:
        ops.append(("control", kind))

    async def scenario() -> None:
        pipeline = TranscriptPipeline(FakeInjector(ops), on_control=on_control, **kwargs)
        for transcript in transcripts:
            await pipeline.handle(transcript)

    asyncio.run(scenario())
    return ops


def test_punctuation_and_key_commands_are_extracted() -> None:
    parsed = parse_transcript("hello world period new line")

    assert parsed.remaining == "hello world"
    assert parsed.processed == ". "
    assert parsed.keys == [KeyStroke.ENTER]
    assert parsed.controls == []
    assert parsed.had_key_action is True


def test_delete_that_drops_the_previous_word() -> None:
    parsed = parse_transcript("this is wrong delete that right")

    assert parsed.remaining == "this is right"
    assert parsed.keys == []


def test_each_delete_that_drops_one_more_word() -> None:
    parsed = parse_transcript("foo bar hello delete that delete that hello")

    assert parsed.remaining == "foo hello"


def test_delete_that_alone_leaves_nothing() -> None:
    assert parse_transcript("oops delete that").remaining == ""
    assert parse_transcript("delete that").remaining == ""


def test_matching_is_case_insensitive_and_on_word_boundaries() -> None:
    assert parse_transcript("Hello Period").processed == ". "

    periodic = parse_transcript("the periodic table")
    assert periodic.remaining == "the periodic table"
    assert periodic.processed == ""


def test_repeated_command_is_applied_each_time() -> None:
    parsed = parse_transcript("one comma two comma three")

    assert parsed.remaining == "one two three"
    assert parsed.processed == ", , "


def test_controls_are_collected() -> None:
    parsed = parse_transcript("stop dictation")

    assert parsed.controls == [ControlKind.PAUSE_DICTATION]
    assert parsed.remaining == ""
    assert parse_transcript("please correct grammar").controls == [ControlKind.GRAMMAR_CORRECT]


def test_longer_phrase_wins_when_declared_first() -> None:
    assert parse_transcript("hola punto y coma", SPANISH_COMMANDS).processed == "; "
    assert parse_transcript("salut point-virgule", FRENCH_COMMANDS).processed == "; "
    assert parse_transcript("salut point", FRENCH_COMMANDS).processed == ". "


def test_command_table_by_language() -> None:
    assert commands_for_language("fr") is FRENCH_COMMANDS
    assert commands_for_language("fr-FR") is FRENCH_COMMANDS
    assert commands_for_language("de_DE") is GERMAN_COMMANDS
    assert commands_for_language("es") is SPANISH_COMMANDS
    assert commands_for_language("ja") is ENGLISH_COMMANDS
    assert commands_for_language(None) is ENGLISH_COMMANDS
    assert commands_for_language("multilingual") is ENGLISH_COMMANDS


def test_normalize_strips_punctuation_and_case() -> None:
    assert normalize_transcript("Hello, World!  ¿Qué tal?") == "hello world qué tal"
    assert normalize_transcript("Don't stop   the well-known «song».") == "don't stop the well-known song"


def test_normalize_is_idempotent() -> None:
    for text in ["Hello, World!", "ﬁne ＡＢＣ…", "  Spaces\tand\nlines  ", "déjà-vu!"]:
        once = normalize_transcript(text)
        assert normalize_transcript(once) == once


def test_pipeline_presses_keys_then_injects_text_then_literals() -> None:
    ops = run_pipeline(["hello world period new line"])

    assert ops == [
        ("press", KeyStroke.ENTER),
        ("inject", "hello world"),
        ("inject", ". "),
    ]


def test_pipeline_appends_space_to_plain_text() -> None:
    assert run_pipeline(["hello there"]) == [("inject", "hello there ")]


def test_pipeline_does_not_append_space_after_key_action() -> None:
    assert run_pipeline(["hello press tab"]) == [("press", KeyStroke.TAB), ("inject", "hello")]


def test_pipeline_injects_literal_only_transcript() -> None:
    assert run_pipeline(["question mark"]) == [("inject", "? ")]


def test_pipeline_reports_controls_after_applying_text() -> None:
    ops = run_pipeline(["that is all stop dictation"])

    assert ops == [("inject", "that is all "), ("control", ControlKind.PAUSE_DICTATION)]


def test_pipeline_with_commands_disabled_injects_raw_text() -> None:
    assert run_pipeline(["hello period"], voice_commands_enabled=False) == [("inject", "hello period ")]


def test_pipeline_normalizes_unformatted_text_before_commands() -> None:
    ops = run_pipeline(["Hello, World. New line."], text_formatted=False)

    assert ops == [("press", KeyStroke.ENTER), ("inject", "hello world")]


def test_pipeline_ignores_empty_transcripts() -> None:
    assert run_pipeline(["", "   ", "..."], text_formatted=False) == []


def test_pipeline_keeps_transcript_order() -> None:
    ops = run_pipeline(["first", "second comma", "third"])

    assert ops == [
        ("inject", "first "),
        ("inject", "second"),
        ("inject", ", "),
        ("inject", "third "),
    ]
