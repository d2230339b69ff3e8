"""Keystroke-synthesis helper process.

Reads one escaped keystroke script per line on stdin (the same escaping as
Windows SendKeys: ``{{}``/``{}}`` for braces, ``{+}`` and friends for operator
characters, ``{ENTER}`` style tokens for named keys) and replays it through
ydotool. Started and respawned by ``dictato_injection.TypingHelper``.
"""

from __future__ import annotations

import argparse
import os
import sys
from typing import NamedTuple

from evdev import ecodes
from pydotool import DOWN, UP, key_seq, type_string
from pydotool import init as pydotool_init

NAMED_KEYS = {
    "ENTER": ecodes.KEY_ENTER,
    "TAB": ecodes.KEY_TAB,
    "BACKSPACE": ecodes.KEY_BACKSPACE,
    "BS": ecodes.KEY_BACKSPACE,
    "DELETE": ecodes.KEY_DELETE,
    "DEL": ecodes.KEY_DELETE,
    "ESC": ecodes.KEY_ESC,
    "LEFT": ecodes.KEY_LEFT,
    "RIGHT": ecodes.KEY_RIGHT,
    "UP": ecodes.KEY_UP,
    "DOWN": ecodes.KEY_DOWN,
    "HOME": ecodes.KEY_HOME,
    "END": ecodes.KEY_END,
}


class Token(NamedTuple):
    text: str | None = None
    key: str | None = None


def parse_keystroke_script(line: str) -> list[Token]:
    """Split a script into literal text runs and named keys."""
    tokens: list[Token] = []
    literal: list[str] = []

    def flush():
        if literal:
            tokens.append(Token(text="".join(literal)))
            literal.clear()

    index = 0
    while index < len(line):
        char = line[index]
        if char != "{":
            literal.append(char)
            index += 1
            continue
        # "{}}" is an escaped closing brace, so look for the closer after the first inner char
        end = line.find("}", index + 2)
        if end == -1:
            literal.append(line[index:])
            break
        name = line[index + 1 : end]
        if len(name) == 1:
            literal.append(name)
        elif name.upper() in NAMED_KEYS:
            flush()
            tokens.append(Token(key=name.upper()))
        else:
            literal.append(line[index : end + 1])
        index = end + 1
    flush()
    return tokens


def replay(tokens: list[Token], delay_ms: int) -> None:
    for token in tokens:
        if token.key is not None:
            code = NAMED_KEYS[token.key]
            key_seq([(code, DOWN), (code, UP)], next_delay_ms=delay_ms)
        elif token.text:
            type_string(token.text, hold_delay_ms=delay_ms, each_char_delay_ms=delay_ms)


def main() -> None:
    parser = argparse.ArgumentParser(description="Replay escaped keystroke scripts read on stdin via ydotool")
    parser.add_argument("--delay-ms", type=int, default=20, help="Delay between synthesized key events")
    args = parser.parse_args()

    if socket := os.getenv("DICTATO_YDOTOOL_SOCKET"):
        os.environ["YDOTOOL_SOCKET"] = socket
    pydotool_init()

    for line in sys.stdin:
        script = line.rstrip("\n")
        if not script:
            continue
        try:
            replay(parse_keystroke_script(script), args.delay_ms)
        except OSError as exc:
            print(f"ERROR: Unable to synthesize keystrokes: {exc}", file=sys.stderr)
            sys.exit(1)


if __name__ == "__main__":
    main()
