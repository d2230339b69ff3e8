from __future__ import annotations

from evdev import ecodes

import dictato_typing_helper
from dictato_injection import escape_for_typing
from dictato_typing_helper import Token, parse_keystroke_script, replay


def test_escaped_characters_become_literals() -> None:
    assert parse_keystroke_script("a{+}b{{}{}}c") == [Token(text="a+b{}c")]


def test_named_keys_split_literal_runs() -> None:
    assert parse_keystroke_script("hello{ENTER}world{tab}") == [
        Token(text="hello"),
        Token(key="ENTER"),
        Token(text="world"),
        Token(key="TAB"),
    ]


def test_unknown_or_unterminated_groups_stay_literal() -> None:
    assert parse_keystroke_script("{FOO} x") == [Token(text="{FOO} x")]
    assert parse_keystroke_script("ab{") == [Token(text="ab{")]


def test_escape_and_parse_agree() -> None:
    text = "if (a + b) {return 50%}\nnext"

    tokens = parse_keystroke_script(escape_for_typing(text))

    assert tokens == [Token(text="if (a + b) {return 50%}"), Token(key="ENTER"), Token(text="next")]


def test_replay_types_text_and_presses_keys(monkeypatch) -> None:  # noqa: ANN001
    calls: list[tuple] = []
    monkeypatch.setattr(dictato_typing_helper, "type_string", lambda text, **kwargs: calls.append(("type", text, kwargs)))
    monkeypatch.setattr(dictato_typing_helper, "key_seq", lambda seq, **kwargs: calls.append(("keys", seq, kwargs)))

    replay([Token(text="hi"), Token(key="ENTER")], delay_ms=7)

    assert calls[0] == ("type", "hi", {"hold_delay_ms": 7, "each_char_delay_ms": 7})
    assert calls[1][0] == "keys"
    assert [code for code, _ in calls[1][1]] == [ecodes.KEY_ENTER, ecodes.KEY_ENTER]
    assert calls[1][2] == {"next_delay_ms": 7}
