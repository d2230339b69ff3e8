#!/usr/bin/env -S uv run --script
# /// script
# requires-python = ">=3.11"
# dependencies = [
#     "numpy",
#     "soundcard",
#     "sounddevice",
#     "websockets",
#     "pyperclipfix",
#     "evdev",
#     "python-dotenv",
#     "platformdirs",
#     "python-ydotool",
#     "openai",
#     "janus",
#     "rich",
# ]
# ///

from __future__ import annotations

import argparse
import asyncio
import os
import time
from asyncio import CancelledError, Event, Queue
from collections.abc import Mapping
from contextlib import suppress
from datetime import datetime
from pathlib import Path
from typing import NamedTuple

import evdev
from dotenv import load_dotenv
from evdev import InputDevice, categorize, ecodes
from platformdirs import user_config_dir
from pydotool import init as pydotool_init
from rich.console import Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from dictato_capture import AudioCaptureManager, CaptureError
from dictato_commands import ControlKind, TranscriptPipeline, commands_for_language
from dictato_console import DEBUG_TO_STDOUT, OUTPUT_TO_STDOUT, ConsoleWithLogging, debug, errprint
from dictato_injection import (
    Clipboard,
    ClipboardPaster,
    Injector,
    InsertionMode,
    Keyboard,
    TypingHelper,
    default_helper_command,
)
from dictato_providers import ProviderName, ProviderSettings, UnknownProviderError, is_streaming_provider
from dictato_rewrite import RewriteBackend, RewriteFlow, RewriteMode, RewriteProvider
from dictato_session import RecordingController
from dictato_visualizer import AudioVisualizer

APP_NAME = "dictato"
ENV_PREFIX = "DICTATO_"

F_KEY_CODES = {f"f{number}": getattr(ecodes, f"KEY_F{number}") for number in range(1, 13)}

API_KEY_VENDORS = ("groq", "gemini", "mistral", "sambanova", "fireworks", "deepgram", "cartesia", "inception")

CONFIG_EPILOG = f"""Configuration files:
  Values are taken from, by priority:
  - command-line arguments
  - the environment
  - a .env file in the current directory or next to this script
  - the user config file (~/.config/{APP_NAME}/config.env unless -c/--config is given)
  - the files chained by `{ENV_PREFIX}PARENT_CONFIG`, child before parent

  Every option has a {ENV_PREFIX}* variable. API keys and YDOTOOL_SOCKET are
  also read without the prefix.
"""


def key_name(scancode: int) -> str:
    return next(name for name, code in F_KEY_CODES.items() if code == scancode).upper()


def key_names(scancodes: list[int]) -> str:
    return ", ".join(key_name(code) for code in scancodes)


class Option(NamedTuple):
    """A command-line option backed by a ``DICTATO_*`` variable.

    ``default`` is the raw environment-style value; argparse converts it with
    the option type like any value given on the command line.
    """

    flags: tuple[str, ...]
    env: str
    default: str | None
    help: str
    kind: str = "text"  # text, float, int, flag or device
    choices: tuple[str, ...] = ()
    unprefixed: bool = False

    @property
    def dest(self) -> str:
        long_flag = next(flag for flag in self.flags if flag.startswith("--"))
        return long_flag.removeprefix("--").replace("-", "_")


OPTIONS = (
    Option(("-k", "--hotkey"), "HOTKEY", "F9", "Push-to-talk key(s), F1-F12, comma-separated. Hold to talk, double tap to toggle"),
    Option(("-rk", "--rewrite-hotkey"), "REWRITE_HOTKEY", "F10", "Key rewriting the current selection, F1-F12. Press again to abort"),
    Option(("-dtw", "--double-tap-window"), "DOUBLE_TAP_WINDOW", "0.5", "Seconds between two taps toggling recording", kind="float"),
    Option(("-p", "--provider"), "PROVIDER", ProviderName.GROQ.value, "Speech-to-text provider", choices=tuple(name.value for name in ProviderName)),
    Option(("-l", "--language"), "LANGUAGE", "multilingual", 'Transcription language code, "multilingual" or empty to auto-detect'),
    Option(("-f", "--formatted"), "TEXT_FORMATTED", "true", "Keep the provider formatting, --no-formatted lowercases and strips punctuation", kind="flag"),
    Option(
        ("-i", "--insertion-mode"),
        "INSERTION_MODE",
        InsertionMode.CLIPBOARD.value,
        "Type text through the keystroke helper or paste it through the clipboard",
        choices=tuple(mode.value for mode in InsertionMode),
    ),
    Option(("-vc", "--voice-commands"), "VOICE_COMMANDS", "true", 'Interpret spoken commands such as "period" or "new line"', kind="flag"),
    Option(
        ("-rm", "--rewrite-mode"),
        "REWRITE_MODE",
        RewriteMode.GRAMMAR_CORRECTION.value,
        "Preset prompt used to rewrite the selection",
        choices=tuple(mode.value for mode in RewriteMode),
    ),
    Option(
        ("-rp", "--rewrite-provider"),
        "REWRITE_PROVIDER",
        RewriteProvider.GROQ.value,
        "Provider used to rewrite the selection",
        choices=tuple(provider.value for provider in RewriteProvider),
    ),
    Option(("-rpr", "--rewrite-prompt"), "REWRITE_PROMPT", None, "Custom rewrite prompt, replaces the rewrite mode preset"),
    *(Option((f"--{vendor}-api-key",), f"{vendor.upper()}_API_KEY", None, f"{vendor.capitalize()} API key", unprefixed=True) for vendor in API_KEY_VENDORS),
    Option(("-g", "--gain"), "GAIN", "1.0", "Microphone amplification, 1.0 keeps the level, 2.0 doubles it", kind="float"),
    Option(("-mic", "--microphone"), "MICROPHONE", None, "Name or ID filter for the microphone, no value to choose from a list", kind="device"),
    Option(("-kb", "--keyboard"), "KEYBOARD", None, "Name or path filter for the keyboard, no value to choose from a list", kind="device"),
    Option(("-kd", "--keyboard-delay"), "KEYBOARD_DELAY", "20", "Milliseconds between synthesized key events", kind="int"),
    Option(("-ys", "--ydotool-socket"), "YDOTOOL_SOCKET", None, "Path to the ydotool socket", unprefixed=True),
    Option(("--log",), "LOG", None, f"Log file, ~/.config/{APP_NAME}/{APP_NAME}.log by default"),
)


class Config:
    class HotKey(NamedTuple):
        device: InputDevice
        codes: list[int]
        rewrite_codes: list[int]
        double_tap_window: float

    class Capture(NamedTuple):
        gain: float
        microphone_name: str | None
        microphone_id: str | None

    class Dictation(NamedTuple):
        provider: ProviderName
        api_key: str | None
        language: str | None
        text_formatted: bool
        insertion_mode: InsertionMode
        voice_commands: bool
        keyboard_delay_ms: int

    class Rewrite(NamedTuple):
        provider: RewriteProvider
        api_key: str | None
        mode: RewriteMode
        prompt: str

    class App(NamedTuple):
        console: ConsoleWithLogging
        hotkey: Config.HotKey
        capture: Config.Capture
        dictation: Config.Dictation
        rewrite: Config.Rewrite


class CommandLineParser:
    ENV_PREFIX = ENV_PREFIX
    VIRTUAL_DEVICE_MARKERS = ("virtual", "dummy", "uinput", "ydotool")
    _PROMPT = object()
    _UNDEFINED = object()
    _DEST_TO_ENV = {option.dest: f"{ENV_PREFIX}{option.env}" for option in OPTIONS}
    _BOOL_DESTS = {option.dest for option in OPTIONS if option.kind == "flag"}
    _ENV_ESCAPES = str.maketrans({"\\": "\\\\", "\n": "\\n", "\r": "\\r", '"': '\\"'})

    @classmethod
    def get_env(cls, name: str, default: str | None = None, prefix_optional: bool = False):
        value = os.getenv(f"{ENV_PREFIX}{name}")
        if value is None and prefix_optional:
            value = os.getenv(name)
        return default if value is None else value

    @classmethod
    def get_env_bool(cls, name: str, default: bool = False, prefix_optional: bool = False):
        return cls._env_truthy(cls.get_env(name, str(default), prefix_optional))

    @classmethod
    def _env_defaults(cls, config_path: Path) -> dict[str, object]:
        defaults: dict[str, object] = {"config": config_path.as_posix()}
        for option in OPTIONS:
            value = cls.get_env(option.env, option.default, prefix_optional=option.unprefixed)
            defaults[option.dest] = cls._env_truthy(value) if option.kind == "flag" else value
        return defaults

    @classmethod
    def _create_arguments(cls, parser: argparse.ArgumentParser, default: Mapping[str, object]):
        config_path = default.get("config")
        parser.add_argument(
            "-c",
            "--config",
            default=default.get("config", cls._UNDEFINED),
            help=f"Config file, or name of a file in the config directory, loaded instead of {config_path}",
        )
        for option in OPTIONS:
            kwargs: dict[str, object] = {"default": default.get(option.dest, cls._UNDEFINED)}
            match option.kind:
                case "flag":
                    kwargs["action"] = argparse.BooleanOptionalAction
                case "float":
                    kwargs["type"] = float
                case "int":
                    kwargs["type"] = int
                case "device":
                    kwargs.update(nargs="?", const=cls._PROMPT)
            if option.choices:
                kwargs["choices"] = option.choices
            env_hint = f"{ENV_PREFIX}{option.env}" + (f" or {option.env}" if option.unprefixed else "")
            parser.add_argument(*option.flags, help=f"{option.help} (env: {env_hint})", **kwargs)
        parser.add_argument(
            "-sc",
            "--save-config",
            nargs="?",
            const=True,
            help=f"Write the options given on the command line to a config file ({config_path} without a value)",
        )

    @classmethod
    def resolve_config_path(cls, config_path_str: str | None, config_dir: Path) -> Path:
        """Path of the config file to load.

        A bare name that is not a file of the current directory designates
        ``<config_dir>/<name>.env``. Anything that cannot be found falls back to
        the default ``config.env``.
        """
        config_path = config_dir / "config.env"
        if config_path_str:
            candidate = Path(config_path_str)
            named = config_dir / f"{config_path_str}.env"
            if candidate.is_absolute() or (Path.cwd() / candidate).exists():
                config_path = candidate
            elif named.exists():
                config_path = named
        config_path = config_path.expanduser()
        if not config_path.is_absolute():
            config_path = Path.cwd() / config_path
        return config_path.resolve(strict=False)

    @classmethod
    def parse(cls) -> Config.App | None:
        explicit_config = cls._extract_config_path_from_argv()
        config_dir = Path(user_config_dir(APP_NAME, ensure_exists=False))
        config_path = cls.resolve_config_path(explicit_config or (os.getenv(f"{ENV_PREFIX}CONFIG") or "").strip(), config_dir)
        if explicit_config and not config_path.is_file():
            errprint(f"ERROR: Config file {config_path} does not exist or is not a file")
            return None

        success, loaded_config_files = cls._load_env_files(config_path)
        if not success:
            return None

        parser = argparse.ArgumentParser(
            description="Push-to-talk dictation into the focused application",
            epilog=CONFIG_EPILOG,
            formatter_class=argparse.RawDescriptionHelpFormatter,
        )
        cls._create_arguments(parser, cls._env_defaults(config_path))
        args = parser.parse_args()
        provided_args = cls._get_args_defined_on_cli()

        try:
            provider = ProviderName(args.provider)
            insertion_mode = InsertionMode(args.insertion_mode)
            rewrite_mode = RewriteMode(args.rewrite_mode)
            rewrite_provider = RewriteProvider(args.rewrite_provider)
            hotkey_codes = cls._parse_hotkeys(args.hotkey)
            rewrite_codes = cls._parse_hotkeys(args.rewrite_hotkey) if args.rewrite_hotkey else []
        except ValueError as exc:
            errprint(f"ERROR: {exc}")
            return None
        if overlap := set(hotkey_codes) & set(rewrite_codes):
            errprint(f"ERROR: {key_names(sorted(overlap))} cannot be both a dictation and a rewrite hotkey")
            return None

        dictation_api_key = getattr(args, f"{provider.value}_api_key")
        if not dictation_api_key:
            env_name = f"{provider.value.upper()}_API_KEY"
            errprint(
                f"WARNING: no API key for {provider.value} transcription, recording will not start. "
                f"Set {ENV_PREFIX}{env_name} or {env_name}, or pass --{provider.value}-api-key"
            )

        try:
            keyboard = cls._find_keyboard(*cls._device_selection(args.keyboard))
        except Exception as exc:
            errprint(f"ERROR: Unable to find keyboard: {exc}")
            return None
        try:
            microphone = cls._find_microphone(*cls._device_selection(args.microphone))
        except Exception as exc:
            errprint(f"ERROR: Unable to find microphone: {exc}")
            return None

        if microphone.id:
            # the PortAudio "pulse" device records from this source
            os.environ["PULSE_SOURCE"] = microphone.id
        if args.ydotool_socket:
            os.environ["YDOTOOL_SOCKET"] = args.ydotool_socket
        pydotool_init()

        log_path = Path(args.log).expanduser() if args.log else Path(user_config_dir(APP_NAME)) / f"{APP_NAME}.log"
        console = ConsoleWithLogging.open(log_path)

        config = Config.App(
            console=console,
            hotkey=Config.HotKey(
                device=keyboard,
                codes=hotkey_codes,
                rewrite_codes=rewrite_codes,
                double_tap_window=args.double_tap_window,
            ),
            capture=Config.Capture(
                gain=args.gain,
                microphone_name=microphone.name,
                microphone_id=microphone.id,
            ),
            dictation=Config.Dictation(
                provider=provider,
                api_key=dictation_api_key,
                language=args.language,
                text_formatted=args.formatted,
                insertion_mode=insertion_mode,
                voice_commands=args.voice_commands,
                keyboard_delay_ms=args.keyboard_delay,
            ),
            rewrite=Config.Rewrite(
                provider=rewrite_provider,
                api_key=getattr(args, f"{rewrite_provider.endpoint.api_key_name}_api_key"),
                mode=rewrite_mode,
                prompt=args.rewrite_prompt or rewrite_mode.prompt,
            ),
        )

        console.print_and_log(cls._summary(config, loaded_config_files, log_path), log_max_width=150)
        console.print()
        console.print(
            f"[bold green]Ready![/bold green] Hold (or double tap) [bold yellow]{key_names(hotkey_codes)}[/bold yellow] to dictate, "
            f"[bold red]Ctrl+C[/bold red] to quit.\n"
        )

        if args.save_config is not None:
            target = args.save_config.strip() if isinstance(args.save_config, str) else ""
            cls.save_config(
                args=args,
                provided_args=provided_args,
                keyboard=keyboard,
                microphone=microphone,
                config_path=Path(target).expanduser() if target else config_path,
            )

        return config

    @staticmethod
    def _summary(config: Config.App, config_files: list[Path], log_path: Path) -> Panel:
        def home_relative(path: Path) -> str:
            try:
                return f"~/{path.relative_to(Path.home())}"
            except ValueError:
                return str(path)

        dictation, rewrite, hotkey = config.dictation, config.rewrite, config.hotkey
        kind = "streaming" if is_streaming_provider(dictation.provider.value) else "batch"
        rows = [("Transcription", f"[green]{dictation.provider.value}[/green] [dim]({kind})[/dim]")]
        if not dictation.api_key:
            rows.append(("", "[red]Missing API key[/red]"))
        if dictation.language and dictation.language != "multilingual":
            rows.append(("Language", f"[yellow]{dictation.language}[/yellow]"))
        else:
            rows.append(("Language", "[dim]Auto-detect[/dim]"))
        rows.append(("Formatting", "[yellow]Kept[/yellow]" if dictation.text_formatted else "[yellow]Lowercase, no punctuation[/yellow]"))
        rows.append(("Voice commands", "[green]Enabled[/green]" if dictation.voice_commands else "[red]Disabled[/red]"))
        if config.capture.gain != 1.0:
            rows.append(("Audio gain", f"[yellow]{config.capture.gain}x[/yellow]"))

        rows.append(("Hotkeys" if len(hotkey.codes) > 1 else "Hotkey", f"[bold yellow]{key_names(hotkey.codes)}[/bold yellow]"))
        rows.append(("", "[dim]Hold: push-to-talk | Double-tap: toggle mode[/dim]"))
        if hotkey.rewrite_codes:
            rows.append(("Rewrite hotkey", f"[bold yellow]{key_names(hotkey.rewrite_codes)}[/bold yellow] [dim](press again to abort)[/dim]"))
        rows.append(("Keyboard", f"[yellow]{hotkey.device.name}[/yellow]"))
        rows.append(("Microphone", f"[yellow]{config.capture.microphone_name or config.capture.microphone_id or 'default'}[/yellow]"))

        prompt_label = rewrite.mode.value if rewrite.prompt == rewrite.mode.prompt else "custom prompt"
        rows.append(("Rewrite", f"[yellow]{prompt_label}[/yellow] via [green]{rewrite.provider.value}[/green]"))
        if not rewrite.api_key:
            rows.append(("", "[red]Missing API key, rewrite disabled[/red]"))
        if dictation.insertion_mode is InsertionMode.TYPING:
            rows.append(("Output method", "[yellow]Typing (clipboard fallback)[/yellow]"))
        else:
            rows.append(("Output method", "[yellow]Clipboard paste[/yellow]"))

        rows.append(("", ""))
        for index, path in enumerate(config_files or [None]):
            value = f"[yellow]{home_relative(path)}[/yellow]" if path else "[dim]None loaded[/dim]"
            rows.append(("Config files" if index == 0 else "", value))
        rows.append(("Log file", f"[yellow]{home_relative(log_path)}[/yellow]"))

        table = Table(show_header=False, box=None, padding=(0, 1))
        table.add_column(style="bold cyan", width=20)
        table.add_column()
        for label, value in rows:
            table.add_row(label, value)
        return Panel(table, title="[bold]Dictato Configuration[/bold]", border_style="blue")

    @classmethod
    def _load_env_files(cls, config_path: Path) -> tuple[bool, list[Path]]:
        """Load the local ``.env`` files, then the config chain.

        Returns whether loading succeeded and the loaded files in load order.
        """
        candidates = dict.fromkeys((directory / ".env").resolve() for directory in (Path.cwd(), Path(__file__).parent))
        local_files = [path for path in candidates if path.is_file()]
        for path in local_files:
            load_dotenv(path, override=False)
        if not config_path.is_file():
            return True, local_files
        success, config_files = cls._load_config_with_parents(config_path)
        return (True, local_files + config_files) if success else (False, [])

    @classmethod
    def _load_config_with_parents(cls, config_path: Path) -> tuple[bool, list[Path]]:
        """Load a config file then the chain of files named by ``DICTATO_PARENT_CONFIG``.

        Values already in the environment are never overridden, so a child file
        wins over its parents. Files are returned children first.
        """
        parent_key = f"{ENV_PREFIX}PARENT_CONFIG"
        loaded: list[Path] = []
        current, referrer = config_path.resolve(strict=False), None
        while True:
            origin = f" (defined in {referrer})" if referrer else ""
            if current in loaded:
                errprint(f"ERROR: Circular {parent_key} reference detected: {current}{origin}")
                return False, []
            if not current.is_file():
                errprint(f"ERROR: Config file not found or is not a file: {current}{origin}")
                return False, []
            os.environ.pop(parent_key, None)
            load_dotenv(dotenv_path=current, override=False)
            loaded.append(current)
            if not (parent := (os.environ.pop(parent_key, None) or "").strip()):
                return True, loaded
            parent_path = Path(parent).expanduser()
            if not parent_path.is_absolute():
                parent_path = current.parent / parent_path
            current, referrer = parent_path.resolve(strict=False), current

    @classmethod
    def save_config(
        cls,
        args: argparse.Namespace,
        provided_args: set[str],
        keyboard: InputDevice,
        microphone,
        config_path: Path | None = None,
    ) -> None:
        if overrides := cls._prepare_config_overrides(args, provided_args, keyboard, microphone):
            print(f"Saved {', '.join(overrides)} to {cls._write_user_config(overrides, config_path=config_path)}")
        else:
            print("No command-line options to save, config file left untouched.")

    @classmethod
    def _get_args_defined_on_cli(cls) -> set[str]:
        probe = argparse.ArgumentParser(add_help=False)
        cls._create_arguments(probe, {})
        given = vars(probe.parse_known_args()[0])
        return {dest for dest, value in given.items() if value is not cls._UNDEFINED} - {"config", "save_config"}

    @classmethod
    def _prepare_config_overrides(
        cls,
        args: argparse.Namespace,
        provided_args: set[str],
        keyboard: InputDevice | None,
        microphone,
    ) -> dict[str, str]:
        """Env values of the options given on the command line. Devices are saved by name."""
        devices = {"keyboard": keyboard, "microphone": microphone}
        overrides: dict[str, str] = {}
        for dest, env_key in cls._DEST_TO_ENV.items():
            if dest not in provided_args:
                continue
            if dest in devices:
                value = getattr(devices[dest], "name", None) or None
            elif dest in cls._BOOL_DESTS:
                value = "true" if getattr(args, dest) else "false"
            else:
                value = getattr(args, dest, None)
            if value is not None:
                overrides[env_key] = str(value)
        return overrides

    @classmethod
    def _format_env_value(cls, value: str) -> str:
        if value and not set(value).isdisjoint(" #\"'\\\n\r\t="):
            return f'"{value.translate(cls._ENV_ESCAPES)}"'
        return value

    @classmethod
    def _write_user_config(cls, overrides: Mapping[str, str], config_path: Path | None = None) -> Path:
        """Set keys in a dotenv file: existing assignments are rewritten in place, new keys appended."""
        path = Path(config_path).expanduser() if config_path else Path(user_config_dir(APP_NAME)) / "config.env"
        pending = {key: cls._format_env_value(str(value)) for key, value in overrides.items()}
        lines = path.read_text(encoding="utf-8").splitlines() if path.exists() else []
        for index, line in enumerate(lines):
            key, sep, _ = line.partition("=")
            key = key.strip()
            if sep and not key.startswith("#") and key in pending:
                lines[index] = f"{key}={pending.pop(key)}"
        lines.extend(f"{key}={value}" for key, value in pending.items())
        content = "\n".join(lines).rstrip("\n")
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(f"{content}\n" if content else "", encoding="utf-8")
        return path

    @classmethod
    def _extract_config_path_from_argv(cls) -> str | None:
        probe = argparse.ArgumentParser(add_help=False)
        probe.add_argument("-c", "--config")
        config = probe.parse_known_args()[0].config
        return config.strip() if config is not None else None

    @staticmethod
    def _env_truthy(val: str | None) -> bool:
        return (val or "").strip().lower() in {"1", "true", "yes", "on"}

    @staticmethod
    def _parse_hotkeys(hotkeys_str: str) -> list[int]:
        names = [name.strip().lower() for name in hotkeys_str.split(",")]
        if unknown := [name for name in names if name not in F_KEY_CODES]:
            raise ValueError(f"Unsupported key: {', '.join(unknown)}. Use F1-F12")
        return [F_KEY_CODES[name] for name in names]

    @classmethod
    def _device_selection(cls, value) -> tuple[str | None, bool]:
        """``(filter_text, force_prompt)`` for a ``--keyboard`` or ``--microphone`` value."""
        if value is cls._PROMPT:
            return None, True
        return (value.strip() or None) if isinstance(value, str) else None, False

    @staticmethod
    def _choose(candidates: list, heading: str, describe):
        print(f"\n{heading}")
        for index, candidate in enumerate(candidates):
            print(f"  {index}: {describe(candidate)}")
        return candidates[int(input("Your choice: "))]

    @classmethod
    def _is_physical_keyboard(cls, device: InputDevice) -> bool:
        """Letters and F1-F12, no pointer, not a virtual device."""
        capabilities = device.capabilities(verbose=False)
        keys = set(capabilities.get(ecodes.EV_KEY, ()))
        if not keys or ecodes.EV_REL in capabilities:
            return False
        if any(marker in device.name.lower() for marker in cls.VIRTUAL_DEVICE_MARKERS):
            return False
        if keys & {ecodes.BTN_LEFT, ecodes.BTN_RIGHT, ecodes.BTN_MIDDLE}:
            return False
        return {ecodes.KEY_A, ecodes.KEY_Z, ecodes.KEY_F1, ecodes.KEY_F12} <= keys

    @classmethod
    def _find_keyboard(cls, filter_text: str | None = None, force_prompt: bool = False) -> InputDevice:
        devices = [InputDevice(path) for path in evdev.list_devices()]
        if needle := (filter_text or "").strip().lower():
            devices = [device for device in devices if needle in device.name.lower() or needle in device.path.lower()]
            if not devices:
                raise RuntimeError(f'No input devices matched filter "{filter_text}"')

        def describe(device: InputDevice) -> str:
            return f"{device.path} - {device.name}"

        keyboards = [device for device in devices if cls._is_physical_keyboard(device)]
        if len(keyboards) == 1 and not force_prompt:
            return keyboards[0]
        if keyboards:
            return cls._choose(keyboards, "Select your keyboard:", describe)
        return cls._choose(devices, "No physical keyboard detected, select an input device:", describe)

    @classmethod
    def _find_microphone(cls, filter_text: str | None = None, force_prompt: bool = False):
        # soundcard talks to PulseAudio as soon as it is imported
        import soundcard as sc

        microphones = sc.all_microphones(include_loopback=False)
        if not microphones:
            raise RuntimeError("No microphones detected")

        def describe(mic) -> str:
            return (mic.name or "Unknown microphone") + (f" ({mic.id})" if mic.id else "")

        if needle := (filter_text or "").strip().lower():
            microphones = [mic for mic in microphones if needle in (mic.name or "").lower() or needle in (mic.id or "").lower()]
            if not microphones:
                raise RuntimeError(f'No microphones matched filter "{filter_text}"')
        elif not force_prompt and (default := sc.default_microphone()) is not None:
            return next((mic for mic in microphones if mic.id and mic.id == default.id), default)

        if len(microphones) == 1 and not force_prompt:
            return microphones[0]
        return cls._choose(microphones, "Select your microphone:", describe)


class Comm:
    """State and queues shared by the long-lived tasks."""

    def __init__(self):
        self._dictation_commands: Queue[DictationTask.Commands.Command] = Queue()
        self._display_commands: Queue[TerminalDisplayTask.Commands.Command] = Queue()
        self._recording = Event()
        self._shutting_down = Event()
        self._active_hotkey_name: str | None = None
        self._is_hotkey_toggle_mode = False
        self._is_rewrite_active = False

    def queue_dictation_command(self, cmd: DictationTask.Commands.Command) -> None:
        if DEBUG_TO_STDOUT:
            debug("[DICTATION] PUT", cmd)
        if self.is_shutting_down and not isinstance(cmd, DictationTask.Commands.Shutdown):
            return
        self._dictation_commands.put_nowait(cmd)

    async def dequeue_dictation_command(self) -> DictationTask.Commands.Command:
        cmd = await self._dictation_commands.get()
        if DEBUG_TO_STDOUT:
            debug("[DICTATION] GET", cmd)
        return cmd

    def queue_display_command(self, cmd: TerminalDisplayTask.Commands.Command) -> None:
        if not OUTPUT_TO_STDOUT:
            return
        with suppress(RuntimeError):
            self._display_commands.put_nowait(cmd)

    async def dequeue_display_command(self) -> TerminalDisplayTask.Commands.Command:
        return await self._display_commands.get()

    def notify(self, text: str, style: str = "yellow") -> None:
        if not OUTPUT_TO_STDOUT:
            print(f"[{text}]")
        self.queue_display_command(TerminalDisplayTask.Commands.Notice(text=text, style=style, until=time.monotonic() + TerminalDisplayTask.NOTICE_SECONDS))

    @property
    def is_recording(self) -> bool:
        return self._recording.is_set()

    def toggle_recording(self, flag: bool, hotkey_name: str | None = None, is_toggle: bool = False):
        if flag == self._recording.is_set():
            return
        if flag:
            self._recording.set()
            self._active_hotkey_name = hotkey_name
            self._is_hotkey_toggle_mode = is_toggle
        else:
            self._recording.clear()
            self._active_hotkey_name = None
            self._is_hotkey_toggle_mode = False
        self.queue_display_command(
            TerminalDisplayTask.Commands.UpdateRecordingState(
                recording=flag,
                hotkey=self._active_hotkey_name,
                is_toggle=self._is_hotkey_toggle_mode,
            )
        )

    @property
    def is_rewrite_active(self) -> bool:
        return self._is_rewrite_active

    def toggle_rewrite_active(self, flag: bool):
        if self._is_rewrite_active == flag:
            return
        self._is_rewrite_active = flag
        self.queue_display_command(TerminalDisplayTask.Commands.UpdateRewriteState(active=flag))

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down.is_set()

    async def wait_for_shutdown(self):
        await self._shutting_down.wait()

    async def shutdown(self):
        self._shutting_down.set()
        self.queue_display_command(TerminalDisplayTask.Commands.Shutdown())
        self.queue_dictation_command(DictationTask.Commands.Shutdown())


class HotKeyTask:
    KEY_DOWN = evdev.KeyEvent.key_down
    KEY_UP = evdev.KeyEvent.key_up
    TOGGLE_COOLDOWN_SECONDS = 0.5

    def __init__(self, comm: Comm, config: Config.App):
        self.comm = comm
        self.config = config

    def _start(self, scancode: int, is_toggle: bool):
        self.comm.queue_dictation_command(DictationTask.Commands.StartRecording(hotkey=key_name(scancode), is_toggle=is_toggle))

    def _stop(self):
        self.comm.queue_dictation_command(DictationTask.Commands.StopRecording())

    def _handle_rewrite_key(self, keystate: int):
        if keystate != self.KEY_DOWN:
            return
        if self.comm.is_rewrite_active:
            self.comm.queue_dictation_command(DictationTask.Commands.AbortRewrite())
        else:
            self.comm.queue_dictation_command(DictationTask.Commands.Rewrite())

    async def run(self):
        hotkey_pressed = False
        last_release_time = dict.fromkeys(self.config.hotkey.codes, 0.0)
        is_toggle_mode = False
        active_hotkey: int | None = None
        toggle_stop_time = 0.0

        received_event = False
        try:
            async for event in self.config.hotkey.device.async_read_loop():
                received_event = True
                if self.comm.is_shutting_down:
                    break
                if event.type != ecodes.EV_KEY:
                    continue
                key_event = categorize(event)
                current_time = time.perf_counter()
                scancode = key_event.scancode

                if scancode in self.config.hotkey.rewrite_codes:
                    self._handle_rewrite_key(key_event.keystate)
                    continue

                if scancode not in self.config.hotkey.codes:
                    continue

                if is_toggle_mode and not hotkey_pressed and not self.comm.is_recording:
                    # recording ended elsewhere (voice command, failed start)
                    is_toggle_mode = False
                    active_hotkey = None

                if active_hotkey is not None and scancode != active_hotkey:
                    if key_event.keystate == self.KEY_UP:
                        last_release_time[scancode] = current_time
                    continue

                match key_event.keystate:
                    case self.KEY_DOWN if not hotkey_pressed and not is_toggle_mode:
                        if current_time - toggle_stop_time < self.TOGGLE_COOLDOWN_SECONDS:
                            continue
                        is_toggle_mode = current_time - last_release_time[scancode] < self.config.hotkey.double_tap_window
                        hotkey_pressed = True
                        active_hotkey = scancode
                        if is_toggle_mode and not OUTPUT_TO_STDOUT:
                            print(f"[Toggle mode activated with {key_name(scancode)}]")
                        self._start(scancode, is_toggle_mode)

                    case self.KEY_UP if hotkey_pressed and not is_toggle_mode:
                        last_release_time[scancode] = current_time
                        hotkey_pressed = False
                        active_hotkey = None
                        self._stop()

                    case self.KEY_UP if is_toggle_mode:
                        last_release_time[scancode] = current_time
                        hotkey_pressed = False

                    case self.KEY_DOWN if is_toggle_mode and not hotkey_pressed:
                        is_toggle_mode = False
                        active_hotkey = None
                        toggle_stop_time = current_time
                        if not OUTPUT_TO_STDOUT:
                            print(f"[Toggle mode deactivated with {key_name(scancode)}]")
                        self._stop()

        except CancelledError:
            pass
        except Exception as exc:
            if not received_event:
                errprint(f"Error while listening for hotkey events: {exc}")
            raise
        finally:
            with suppress(OSError):
                self.config.hotkey.device.close()


class DictationTask:
    """Owns the recording controller, the injection pipeline and the rewrite flow.

    Intents from the hotkeys and from voice-command controls are handled one at
    a time, in the order they were queued.
    """

    REWRITE_KEY = "hotkey"

    class Commands:
        class StartRecording(NamedTuple):
            hotkey: str | None = None
            is_toggle: bool = False

        class StopRecording(NamedTuple):
            pass

        class Rewrite(NamedTuple):
            select_all: bool = False
            mode: RewriteMode | None = None

        class AbortRewrite(NamedTuple):
            pass

        class Shutdown(NamedTuple):
            pass

        Command = StartRecording | StopRecording | Rewrite | AbortRewrite | Shutdown

    def __init__(
        self,
        comm: Comm,
        config: Config.App,
        visualizer: AudioVisualizer,
        capture: AudioCaptureManager | None = None,
        injector: Injector | None = None,
        rewrite_flow: RewriteFlow | None = None,
    ):
        self.comm = comm
        self.config = config
        dictation = config.dictation
        keyboard = Keyboard(delay_ms=dictation.keyboard_delay_ms)
        clipboard = Clipboard()
        self.capture = capture or AudioCaptureManager(gain=config.capture.gain)
        self.injector = injector or Injector(
            mode=dictation.insertion_mode,
            keyboard=keyboard,
            paster=ClipboardPaster(clipboard, keyboard),
            typer=TypingHelper(default_helper_command(dictation.keyboard_delay_ms))
            if dictation.insertion_mode is InsertionMode.TYPING
            else None,
        )
        self.pipeline = TranscriptPipeline(
            self.injector,
            commands=commands_for_language(dictation.language),
            voice_commands_enabled=dictation.voice_commands,
            text_formatted=dictation.text_formatted,
            on_control=self.handle_control,
        )
        self.controller = RecordingController(
            self.capture,
            visualizer,
            dictation.provider.value,
            ProviderSettings(
                api_key=dictation.api_key or "",
                language=dictation.language,
                text_formatted=dictation.text_formatted,
                insertion_mode=dictation.insertion_mode.value,
                voice_commands_enabled=dictation.voice_commands,
            ),
            on_transcript=self.handle_transcript,
            on_interim=self.handle_interim,
        )
        if rewrite_flow is None and config.rewrite.api_key:
            rewrite_flow = RewriteFlow(
                keyboard,
                clipboard,
                RewriteBackend(config.rewrite.provider, config.rewrite.api_key),
                prompt=config.rewrite.prompt,
                exclusive=self.injector.clipboard_turn,
            )
        self.rewrite_flow = rewrite_flow
        if self.rewrite_flow is not None:
            self.rewrite_flow.on_done = self._rewrite_done

    async def run(self):
        try:
            while True:
                cmd = await self.comm.dequeue_dictation_command()
                match cmd:
                    case self.Commands.Shutdown():
                        break
                    case self.Commands.StartRecording(hotkey=hotkey, is_toggle=is_toggle):
                        await self.start_recording(hotkey, is_toggle)
                    case self.Commands.StopRecording():
                        await self.stop_recording()
                    case self.Commands.Rewrite(select_all=select_all, mode=mode):
                        await self.rewrite(select_all=select_all, mode=mode)
                    case self.Commands.AbortRewrite():
                        if self.rewrite_flow is not None:
                            await self.rewrite_flow.abort(self.REWRITE_KEY)
        except CancelledError:
            pass
        finally:
            await self.close()

    async def start_recording(self, hotkey: str | None = None, is_toggle: bool = False) -> bool:
        if not self.config.dictation.api_key:
            self.comm.notify(f"Missing API key for {self.config.dictation.provider.value}")
            return False
        try:
            started = await self.controller.start()
        except CaptureError as exc:
            errprint(f"ERROR: [capture] {exc}")
            self.comm.notify("Couldn't access microphone", style="red")
            return False
        except UnknownProviderError as exc:
            errprint(f"ERROR: {exc}")
            self.comm.notify(str(exc), style="red")
            return False
        if started:
            self.comm.toggle_recording(True, hotkey, is_toggle)
        return started

    async def stop_recording(self) -> bool:
        self.comm.toggle_recording(False)
        return await self.controller.stop()

    async def rewrite(self, select_all: bool = False, mode: RewriteMode | None = None) -> None:
        if self.rewrite_flow is None:
            self.comm.notify(f"Missing API key for {self.config.rewrite.provider.value} rewrite")
            return
        await self.rewrite_flow.request(self.REWRITE_KEY, prompt=mode.prompt if mode else None, select_all=select_all)
        self.comm.toggle_rewrite_active(True)

    def _rewrite_done(self, key: str):
        self.comm.toggle_rewrite_active(self.rewrite_flow.in_flight(key))

    async def handle_transcript(self, text: str) -> None:
        self.comm.queue_display_command(TerminalDisplayTask.Commands.Transcript(text=text))
        await self.pipeline.handle(text)

    def handle_interim(self, text: str) -> None:
        self.comm.queue_display_command(TerminalDisplayTask.Commands.Interim(text=text))

    async def handle_control(self, control: ControlKind) -> None:
        # queued: this runs inside the provider delivering the transcript, which stopping would await
        match control:
            case ControlKind.PAUSE_DICTATION:
                self.comm.queue_dictation_command(self.Commands.StopRecording())
            case ControlKind.REWRITE:
                self.comm.queue_dictation_command(self.Commands.Rewrite())
            case ControlKind.GRAMMAR_CORRECT:
                self.comm.queue_dictation_command(self.Commands.Rewrite(select_all=True, mode=RewriteMode.GRAMMAR_CORRECTION))

    async def close(self):
        self.comm.toggle_recording(False)
        await self.controller.shutdown()
        if self.rewrite_flow is not None:
            await self.rewrite_flow.close()
        await self.injector.close()


class TerminalDisplayTask:
    NOTICE_SECONDS = 3.0
    REFRESH_SECONDS = 0.125

    class Commands:
        class UpdateRecordingState(NamedTuple):
            recording: bool
            hotkey: str | None
            is_toggle: bool

        class Interim(NamedTuple):
            text: str

        class Transcript(NamedTuple):
            text: str

        class UpdateRewriteState(NamedTuple):
            active: bool

        class Notice(NamedTuple):
            text: str
            style: str
            until: float

        class Shutdown(NamedTuple):
            pass

        Command = UpdateRecordingState | Interim | Transcript | UpdateRewriteState | Notice | Shutdown

    def __init__(self, comm: Comm, config: Config.App, visualizer: AudioVisualizer):
        self.comm = comm
        self.config = config
        self.console = config.console
        self.visualizer = visualizer
        self.live: Live | None = None
        self.is_recording = False
        self.active_hotkey: str | None = None
        self.is_toggle = False
        self.interim_text = ""
        self.last_transcript = ""
        self.is_rewrite_active = False
        self.notices: list[TerminalDisplayTask.Commands.Notice] = []

    async def run(self):
        try:
            with Live(
                self._renderable(),
                console=self.console.console,
                refresh_per_second=8,
                auto_refresh=False,
                transient=False,
            ) as live:
                self.live = live
                while True:
                    try:
                        cmd = await asyncio.wait_for(self.comm.dequeue_display_command(), timeout=self.REFRESH_SECONDS)
                    except TimeoutError:
                        cmd = None
                    if cmd is not None and not self._handle_cmd(cmd):
                        break
                    self._refresh()
        except CancelledError:
            pass
        finally:
            self.live = None

    def _handle_cmd(self, cmd: TerminalDisplayTask.Commands.Command) -> bool:
        match cmd:
            case self.Commands.UpdateRecordingState(recording=recording, hotkey=hotkey, is_toggle=is_toggle):
                self.is_recording = recording
                self.active_hotkey = hotkey
                self.is_toggle = is_toggle
                if not recording:
                    self.interim_text = ""

            case self.Commands.Interim(text=text):
                self.interim_text = text

            case self.Commands.Transcript(text=text):
                self.interim_text = ""
                self.last_transcript = text
                self.console.print_and_log(Text.assemble((f"[{datetime.now():%H:%M:%S}] ", "dim"), text))

            case self.Commands.UpdateRewriteState(active=active):
                self.is_rewrite_active = active

            case self.Commands.Notice():
                self.notices.append(cmd)
                self.console.log(f"NOTICE: {cmd.text}")

            case self.Commands.Shutdown():
                return False

        return True

    def _refresh(self):
        if self.live is None:
            return
        self.live.update(self._renderable(), refresh=True)

    def _renderable(self):
        now = time.monotonic()
        self.notices = [notice for notice in self.notices if notice.until > now]

        status = Text()
        if self.is_recording:
            status.append("● Recording ", style="bold red")
            status.append_text(self.visualizer.render())
            if self.active_hotkey:
                how = f"press {self.active_hotkey} to stop" if self.is_toggle else f"release {self.active_hotkey} to stop"
                status.append(f"  ({how})", style="dim")
        else:
            status.append("Waiting for dictation...", style="dim")
        if self.is_rewrite_active:
            status.append("  ✎ Rewriting selection", style="bold magenta")

        lines = [status]
        if self.interim_text:
            lines.append(Text(self.interim_text, style="italic dim"))
        elif self.last_transcript and not self.is_recording:
            lines.append(Text(f"Last: {self.last_transcript}", style="dim"))
        lines.extend(Text(notice.text, style=notice.style) for notice in self.notices)
        return Group(*lines)


async def main_async():
    app_config = CommandLineParser.parse()
    if app_config is None:
        return

    comm = Comm()
    visualizer = AudioVisualizer()
    try:
        async with asyncio.TaskGroup() as tg:
            hotkey_task = HotKeyTask(comm, app_config)
            dictation_task = DictationTask(comm, app_config, visualizer)
            if OUTPUT_TO_STDOUT:
                terminal_display_task = TerminalDisplayTask(comm, app_config, visualizer)
                tg.create_task(terminal_display_task.run())

            tg.create_task(hotkey_task.run())
            tg.create_task(dictation_task.run())

    except* (KeyboardInterrupt, CancelledError):
        print("\nExit.")
    except* Exception as eg:
        print(f"\nError in tasks: {eg.exceptions}")

    finally:
        await comm.shutdown()
        with suppress(OSError):
            app_config.hotkey.device.close()
        app_config.console.close()


def main():
    with suppress(KeyboardInterrupt):
        asyncio.run(main_async())


if __name__ == "__main__":
    main()
