"""
interfaces/console.py — Terminal projection of the assistant panel

A thin rendering shell over ConversationController. Every snapshot change
is printed as one status line; typed commands become controller intents.

Commands:
    open    — open the assistant (connect + start listening)
    close   — close the assistant and release everything
    mic     — start listening now (re-enables auto-listen)
    unmic   — stop listening (disables auto-listen)
    hush    — stop speaking (disables auto-listen)
    retry   — reconnect with a fresh client id
    status  — print the current snapshot
    help    — this list
    quit    — close and exit

Usage:
    python main.py
    python main.py --url ws://assistant.local:8000/ws --log-level DEBUG
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

from rich.console import Console
from rich.markdown import Markdown
from rich.table import Table
from rich.text import Text

from assistant.controller import ConversationController
from assistant.session import Phase, SessionSnapshot
from config.settings import Settings
from exceptions import CaptureUnsupportedError
from observability.logger import get_logger
from speech.capture import SpeechCaptureAdapter
from speech.playback import SpeechPlaybackAdapter
from speech.recognizer import WhisperRecognizer
from transport.channel import WebSocketChannel

log = get_logger(__name__)

_HELP_TEXT = """
## Assistant Panel Commands

| Command | Description |
|---------|-------------|
| `open`   | Open the assistant: connect and start listening |
| `close`  | Close the assistant |
| `mic`    | Start listening (turns auto-listen back on) |
| `unmic`  | Stop listening (turns auto-listen off) |
| `hush`   | Stop speaking (turns auto-listen off) |
| `retry`  | Reconnect to the assistant service |
| `status` | Show the current panel state |
| `help`   | Show this help message |
| `quit` / Ctrl+D | Close and exit |
"""

_PHASE_STYLES = {
    Phase.IDLE:              "dim",
    Phase.CONNECTING:        "yellow",
    Phase.LISTENING:         "green",
    Phase.AWAITING_RESPONSE: "cyan",
    Phase.SPEAKING:          "magenta",
    Phase.ERROR:             "red",
    Phase.CLOSED:            "dim",
}


def render_snapshot(snap: SessionSnapshot) -> Text:
    """One-line rendering: connection dot, phase, status text."""
    line = Text()
    if snap.is_connected:
        line.append("● ", style="green")
    else:
        line.append("● ", style="red")

    phase = snap.display_phase
    line.append(f"[{phase.value}] ", style=_PHASE_STYLES.get(phase, ""))

    if not snap.is_open:
        if snap.last_error:
            line.append(f"Error: {snap.last_error}", style="red")
        else:
            line.append("Assistant closed", style="dim")
        return line

    style = "red" if snap.last_error else ""
    line.append(snap.status_line, style=style)
    if not snap.auto_listen_enabled:
        line.append("  (auto-listen off)", style="dim")
    return line


class ConsolePanel:
    """Reads commands from stdin and prints every snapshot change."""

    def __init__(
        self,
        controller: ConversationController,
        console: Optional[Console] = None,
    ) -> None:
        self._controller = controller
        self.console = console or Console()
        self._commands: dict[str, Callable[[], None]] = {
            "open":   controller.open,
            "close":  controller.close,
            "mic":    controller.start_mic,
            "unmic":  controller.stop_mic,
            "hush":   controller.stop_speaking,
            "retry":  controller.reconnect,
            "status": self._cmd_status,
            "help":   self._print_help,
        }
        controller.add_listener(self.on_snapshot)

    def on_snapshot(self, snap: SessionSnapshot) -> None:
        self.console.print(render_snapshot(snap))

    def handle(self, raw: str) -> bool:
        """Run one command. Returns False when the user asked to quit."""
        cmd = raw.strip().lower()
        if not cmd:
            return True
        if cmd in ("quit", "exit"):
            self._controller.close()
            return False

        handler = self._commands.get(cmd)
        if handler is None:
            self.console.print(f"[yellow]Unknown command: {cmd}. Type help for commands.[/]")
            return True
        handler()
        return True

    def _cmd_status(self) -> None:
        snap = self._controller.snapshot
        table = Table(show_header=False, box=None)
        table.add_column("field", style="bold")
        table.add_column("value")
        table.add_row("open", "yes" if snap.is_open else "no")
        table.add_row("phase", snap.display_phase.value)
        table.add_row("connection", snap.connection_status.value)
        table.add_row("listening", "yes" if snap.is_listening else "no")
        table.add_row("speaking", "yes" if snap.is_speaking else "no")
        table.add_row("auto-listen", "on" if snap.auto_listen_enabled else "off")
        table.add_row("speech capture", "available" if snap.capture_supported else "unavailable")
        table.add_row("transcript", snap.transcript or "-")
        table.add_row("last error", snap.last_error or "-")
        self.console.print(table)

    def _print_help(self) -> None:
        self.console.print(Markdown(_HELP_TEXT))

    async def run(self) -> None:
        """Input loop until quit / EOF."""
        loop = asyncio.get_running_loop()
        self._print_help()
        while True:
            try:
                raw = await loop.run_in_executor(None, input, "assistant> ")
            except (EOFError, KeyboardInterrupt):
                self._controller.close()
                self.console.print("\n[dim]Goodbye.[/]")
                return
            if not self.handle(raw):
                self.console.print("[dim]Goodbye.[/]")
                return


# ── Wiring ────────────────────────────────────────────────────────────────────


async def load_recognizer(settings: Settings) -> Optional[WhisperRecognizer]:
    """Load Whisper once, off the event loop. None when capture is unavailable."""
    loop = asyncio.get_running_loop()
    recognizer = WhisperRecognizer(settings.capture)
    try:
        return await loop.run_in_executor(None, recognizer.load)
    except CaptureUnsupportedError as e:
        log.warning("console.capture_unavailable", error=str(e))
        return None


def build_controller(
    settings: Settings,
    recognizer: Optional[WhisperRecognizer],
) -> ConversationController:
    """A controller wired to the real microphone, speaker and WebSocket."""

    def recognizer_factory() -> WhisperRecognizer:
        if recognizer is None:
            raise CaptureUnsupportedError("speech capture is not available")
        return recognizer

    return ConversationController.from_settings(
        settings,
        capture_factory=SpeechCaptureAdapter.factory(recognizer_factory),
        playback_factory=SpeechPlaybackAdapter.factory(settings.playback),
        transport_factory=WebSocketChannel.factory(settings.transport.max_message_bytes),
    )


async def run_console(settings: Settings, log_) -> None:
    """
    Entry point called from main.py.

    Args:
        settings:  Loaded assistant settings.
        log_:      Application-level logger.
    """
    console = Console()
    with console.status("[dim]Loading speech recognition...[/]", spinner="dots"):
        recognizer = await load_recognizer(settings)

    controller = build_controller(settings, recognizer)
    panel = ConsolePanel(controller, console=console)

    log_.info("console.starting", base_url=settings.base_url,
              capture_available=recognizer is not None)
    runner = asyncio.create_task(controller.run())
    try:
        controller.open()
        await panel.run()
    finally:
        # Cancelling run() tears down whatever session is still open
        runner.cancel()
        try:
            await runner
        except asyncio.CancelledError:
            pass
        log_.info("console.stopped")
