from __future__ import annotations

import argparse
import logging
import os
import queue
import select
import subprocess
import sys
import termios
import threading
import tty
import webbrowser
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import partial
from pathlib import Path
from typing import Sequence

from dotenv import load_dotenv
from rich.color import ColorParseError
from rich.console import Console, Group
from rich.live import Live
from rich.style import Style
from rich.table import Table
from rich.text import Text

from .config import Config, ConfigError, format_duration, load_config
from .controller import ListController, Mode
from .events import (
    MOUSE_REPORTING_OFF,
    MOUSE_REPORTING_ON,
    Event,
    EventKind,
    decode_key,
    sequence_complete,
)
from .feeds import ZERO_TIME, AggregationError, Item, Source, now_utc, read_feeds
from .logs import setup_logging
from .scheduler import RefreshScheduler, SchedulerState, spawn_refresh

logger = logging.getLogger(__name__)

HELP_TEXT = "q - exit | j/k/up/down - select | enter - open | esc - clear | / - filter | r - refresh"
TICK_SECONDS = 1.0
DIM_STYLE = Style(dim=True, color="rgb(190,190,190)")
HELP_STYLE = Style(dim=True, color="rgb(150,150,150)")
FILTER_ACTIVE_STYLE = Style(color="green")
ERROR_STYLE = Style(color="red")


@dataclass
class RuntimeState:
    interacting: bool = False
    last_error: str = ""
    quit_requested: bool = False


def human_age(published_at: datetime) -> str:
    if published_at == ZERO_TIME:
        return "-"
    delta = now_utc() - published_at
    seconds = max(int(delta.total_seconds()), 0)
    if seconds < 60:
        return f"{seconds}s"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m"
    hours = minutes // 60
    if hours < 48:
        return f"{hours}h"
    return f"{hours // 24}d"


def open_link(url: str) -> str:
    clean_url = url.strip()
    if not clean_url:
        return "No URL available for selected item."
    try:
        if sys.platform == "darwin":
            subprocess.Popen(["open", clean_url], stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        else:
            webbrowser.open(clean_url, new=2)
        return ""
    except Exception as exc:
        logger.warning(f"Failed to open {clean_url}: {exc}")
        return f"Failed to open link: {exc}"


def set_mouse_reporting(console: Console, enabled: bool) -> None:
    if not console.is_terminal:
        return
    console.file.write(MOUSE_REPORTING_ON if enabled else MOUSE_REPORTING_OFF)
    console.file.flush()


def error_text(label: str, exc: object) -> Text:
    return Text.assemble((f"{label}: ", "red"), str(exc))


def badge_style(source: Source) -> Style:
    try:
        return Style(
            color=source.foreground or None,
            bgcolor=source.background or None,
            bold=True,
        )
    except ColorParseError:
        return Style(bold=True)


def badge_width(sources: Sequence[Source], max_badge_size: int) -> int:
    width = max((len(source.name) for source in sources), default=0)
    if max_badge_size > 0 and width > max_badge_size:
        width = max_badge_size
    return width


def rows_per_item(config: Config) -> int:
    return 3 if config.show_descriptions else 2


def viewport_size(terminal_height: int, config: Config) -> int:
    return max(1, (terminal_height - 1) // rows_per_item(config))


def render_item(
    item: Item,
    width: int,
    show_descriptions: bool,
    interacting: bool,
    selected: bool,
) -> list[Text]:
    badge = item.source.name[:width].rjust(width)
    indent = " " * (width + 3)
    if not interacting:
        title_line = Text.assemble(
            (f" {badge} ", badge_style(item.source)),
            " ",
            item.title,
        )
        description_style = Style()
    elif selected:
        title_line = Text.assemble(
            (f" {badge} ", Style(bold=True)),
            " ",
            (f" {item.title} ", badge_style(item.source)),
        )
        description_style = Style()
    else:
        title_line = Text(f" {badge}  {item.title}", style=DIM_STYLE)
        description_style = DIM_STYLE

    lines = [title_line]
    if show_descriptions:
        lines.append(Text(indent + item.description, style=description_style))
    lines.append(Text(""))
    for line in lines:
        line.no_wrap = True
        line.overflow = "ellipsis"
    return lines


def render_footer(
    controller: ListController,
    scheduler: RefreshScheduler,
    config: Config,
    runtime_state: RuntimeState,
) -> Text:
    if controller.mode == Mode.FILTER_EDITING:
        footer = Text(f"Filter: {controller.filter_text}█")
    elif controller.mode == Mode.FILTER_ACTIVE:
        footer = Text(f"Filter: {controller.filter_text} (esc to clear)", style=FILTER_ACTIVE_STYLE)
    elif config.show_help:
        remaining = scheduler.seconds_until_next()
        when = "now"
        if scheduler.state != SchedulerState.FETCHING and remaining >= 1:
            when = "in " + format_duration(timedelta(seconds=remaining))
        footer = Text(f"{HELP_TEXT} | updating {when}", style=HELP_STYLE)
    else:
        footer = Text("")
    if runtime_state.last_error:
        footer.append(f" | {runtime_state.last_error}", style=ERROR_STYLE)
    footer.no_wrap = True
    footer.overflow = "ellipsis"
    return footer


def render_screen(
    controller: ListController,
    scheduler: RefreshScheduler,
    config: Config,
    runtime_state: RuntimeState,
    terminal_height: int,
) -> Group:
    width = badge_width(config.feed_sources(), config.max_badge_size)
    lines: list[Text] = []
    for index, item in controller.visible_items():
        lines.extend(
            render_item(
                item,
                width,
                config.show_descriptions,
                runtime_state.interacting,
                index == controller.selection,
            )
        )
    if not controller.filtered:
        if scheduler.last_update is None:
            lines.append(Text("Loading feeds...", style=HELP_STYLE))
        elif controller.items:
            lines.append(Text("No items match the filter.", style=HELP_STYLE))
        else:
            lines.append(Text("No items.", style=HELP_STYLE))

    body_height = max(0, terminal_height - 1)
    lines = lines[:body_height]
    lines.extend(Text("") for _ in range(body_height - len(lines)))
    lines.append(render_footer(controller, scheduler, config, runtime_state))
    return Group(*lines)


def render_feed_table(items: Sequence[Item], max_badge: int) -> Table:
    table = Table(title="happen", expand=True)
    table.add_column("#", justify="right", style="dim", width=3)
    table.add_column("Source", no_wrap=True, max_width=max_badge or None)
    table.add_column("Age", justify="right", width=6)
    table.add_column("Title", overflow="ellipsis")

    for idx, item in enumerate(items, start=1):
        table.add_row(
            str(idx),
            Text(item.source.name, style=badge_style(item.source)),
            human_age(item.published),
            Text(item.title or item.url, style=Style(link=item.url)),
        )

    if not items:
        table.add_row("-", "-", "-", "No items")
    return table


def handle_key(
    key: str,
    controller: ListController,
    scheduler: RefreshScheduler,
    runtime_state: RuntimeState,
) -> None:
    if controller.mode == Mode.FILTER_EDITING:
        if key == "ESC":
            controller.cancel_filter()
        elif key == "ENTER":
            controller.commit_filter()
        elif key == "BACKSPACE":
            controller.delete_filter_char()
        elif key == "QUIT":
            runtime_state.quit_requested = True
        elif len(key) == 1 and key.isprintable():
            controller.append_filter(key)
        scheduler.note_activity()
        runtime_state.interacting = False
        return

    if key == "ESC":
        controller.cancel_filter()
        runtime_state.interacting = False
        return
    if key in {"QUIT", "q"}:
        runtime_state.quit_requested = True
        return
    if key == "MOUSE":
        return

    count = len(controller.filtered)
    if key == "/":
        controller.begin_filter()
        scheduler.note_activity()
        runtime_state.interacting = False
        return
    if key == "r":
        scheduler.request_refresh()
        controller.move(-count)
    elif key in {"j", "DOWN"}:
        controller.move(1)
    elif key in {"k", "UP"}:
        controller.move(-1)
    elif key in {"g", "0", "HOME"}:
        controller.move(-count)
    elif key in {"G", "$", "END"}:
        controller.move(count)
    elif key == "PGDN":
        controller.move(controller.visible)
    elif key == "PGUP":
        controller.move(-controller.visible)
    elif key == "WHEELDOWN":
        # The first scroll leaves the page already on screen.
        controller.move(1, force=not runtime_state.interacting)
    elif key == "WHEELUP":
        controller.move(-1, force=not runtime_state.interacting)
    elif key in {"o", "ENTER"}:
        if runtime_state.interacting:
            selected = controller.selected_item()
            if selected is not None:
                error = open_link(selected.url)
                runtime_state.last_error = error
    scheduler.note_activity()
    runtime_state.interacting = True


def handle_event(
    event: Event,
    controller: ListController,
    scheduler: RefreshScheduler,
    runtime_state: RuntimeState,
) -> None:
    if event.kind == EventKind.TICK:
        scheduler.tick()
    elif event.kind == EventKind.DATA_READY:
        controller.ingest(event.items)
        scheduler.complete(ok=True)
        runtime_state.interacting = False
        runtime_state.last_error = ""
    elif event.kind == EventKind.FETCH_FAILED:
        # Previous items stay on screen.
        scheduler.complete(ok=False)
        runtime_state.last_error = f"refresh failed: {event.error}"
    elif event.kind == EventKind.KEY:
        handle_key(event.key, controller, scheduler, runtime_state)


def ticker_worker(events: queue.Queue[Event], stop_event: threading.Event) -> None:
    while not stop_event.wait(TICK_SECONDS):
        events.put(Event.tick())


def input_worker(
    events: queue.Queue[Event],
    stop_event: threading.Event,
    fd: int,
    old_settings: list,
) -> None:
    try:
        tty.setcbreak(fd)
        while not stop_event.is_set():
            ready, _, _ = select.select([fd], [], [], 0.2)
            if not ready:
                continue
            data = os.read(fd, 1)
            if not data:
                continue
            key = data.decode("utf-8", errors="ignore")
            if not key:
                continue
            sequence = ""
            if key == "\x1b":
                while select.select([fd], [], [], 0.001)[0]:
                    sequence += os.read(fd, 1).decode("utf-8", errors="ignore")
                    if sequence_complete(sequence):
                        break
            events.put(Event.key_pressed(decode_key(key, sequence)))
    finally:
        termios.tcsetattr(fd, termios.TCSADRAIN, old_settings)


def run_once(config: Config, console: Console) -> int:
    try:
        with console.status("Fetching feeds..."):
            items = read_feeds(
                config.feed_sources(),
                timeout=config.fetch_timeout.total_seconds(),
            )
    except AggregationError as exc:
        console.print(error_text("Refresh failed", exc))
        return 1
    console.print(render_feed_table(items, config.max_badge_size))
    return 0


def run(config: Config, console: Console) -> int:
    fd = sys.stdin.fileno()
    old_settings = termios.tcgetattr(fd)
    events: queue.Queue[Event] = queue.Queue()
    stop_event = threading.Event()
    load = partial(
        read_feeds,
        config.feed_sources(),
        timeout=config.fetch_timeout.total_seconds(),
    )
    controller = ListController(visible=viewport_size(console.size.height, config))
    scheduler = RefreshScheduler(
        interval=config.poll_interval,
        start_fetch=lambda: spawn_refresh(load, events),
    )
    runtime_state = RuntimeState()

    # First refresh right away, the rest are paced by the scheduler.
    scheduler.tick()

    ticker = threading.Thread(target=ticker_worker, args=(events, stop_event), daemon=True)
    reader = threading.Thread(
        target=input_worker,
        args=(events, stop_event, fd, old_settings),
        daemon=True,
    )
    ticker.start()
    reader.start()

    def draw() -> Group:
        controller.set_viewport(viewport_size(console.size.height, config))
        return render_screen(controller, scheduler, config, runtime_state, console.size.height)

    with Live(
        draw(),
        console=console,
        screen=True,
        auto_refresh=False,
        vertical_overflow="crop",
    ) as live:
        set_mouse_reporting(console, True)
        try:
            while not runtime_state.quit_requested:
                event = events.get()
                handle_event(event, controller, scheduler, runtime_state)
                live.update(draw(), refresh=True)
        finally:
            set_mouse_reporting(console, False)
            stop_event.set()
            reader.join(timeout=2)
            ticker.join(timeout=2)
    return 0


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="happen",
        description="Terminal feed reader that merges RSS/Atom feeds into one live list.",
    )
    parser.add_argument(
        "-i",
        "--ignore-config",
        action="store_true",
        help="Ignore config file and use defaults",
    )
    parser.add_argument("--config", type=Path, default=None, help="Path to the YAML config file")
    parser.add_argument("--log-file", type=Path, default=None)
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--once", action="store_true", help="Fetch once, print a table and exit")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    console = Console()
    args = parse_args(argv if argv is not None else sys.argv[1:])
    try:
        setup_logging(args.log_file, verbose=args.verbose)
    except OSError as exc:
        console.print(error_text("Failed to open log file", exc))
        return 1
    try:
        config = load_config(args.config, from_file=not args.ignore_config)
    except ConfigError as exc:
        console.print(error_text("Failed to load config", exc))
        return 1

    if args.once:
        return run_once(config, console)
    if not sys.stdin.isatty():
        console.print("[red]Startup error:[/red] an interactive terminal is required (try --once)")
        return 1
    try:
        return run(config, console)
    except KeyboardInterrupt:
        return 0
    except termios.error as exc:
        console.print(error_text("Startup error", exc))
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
