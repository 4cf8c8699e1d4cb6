from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from .feeds import Source

logger = logging.getLogger(__name__)

CONFIG_ENV = "HAPPEN_CONFIG"
NUMBER_RE = re.compile(r"\d+(?:\.\d+)?")
DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
DURATION_RE = re.compile(r"(?:\d+(?:\.\d+)?(?:ns|us|µs|ms|s|m|h))+")
DURATION_UNITS = {
    "ns": timedelta(microseconds=0.001),
    "us": timedelta(microseconds=1),
    "µs": timedelta(microseconds=1),
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}

SUBREDDIT_BACKGROUND = "#ff581a"
SUBREDDIT_FOREGROUND = "#e4e6e9"
SUBREDDIT_MAX_AGE = timedelta(hours=24)

DEFAULT_SOURCES: tuple[Source, ...] = (
    Source(
        name="BBC",
        url="http://feeds.bbci.co.uk/news/world/rss.xml",
        foreground="#e4e6e9",
        background="#930000",
        max_age=timedelta(hours=4),
    ),
    Source(
        name="Hacker News",
        url="https://hnrss.org/newest?points=20",
        foreground="#e4e6e9",
        background="#cc5200",
    ),
    Source(
        name="lobste.rs",
        url="https://lobste.rs/rss",
        foreground="#ffffff",
        background="#5e0000",
    ),
    Source(
        name="Register",
        url="https://www.theregister.com/security/headlines.atom",
        foreground="#ffffff",
        background="#ff581a",
    ),
)
DEFAULT_SUBREDDITS: tuple[str, ...] = ("programming", "linux")


class ConfigError(Exception):
    pass


@dataclass
class Config:
    show_descriptions: bool = True
    max_badge_size: int = 16
    show_help: bool = True
    poll_interval: timedelta = timedelta(minutes=1)
    fetch_timeout: timedelta = timedelta(seconds=30)
    sources: list[Source] = field(default_factory=lambda: list(DEFAULT_SOURCES))
    subreddits: list[str] = field(default_factory=lambda: list(DEFAULT_SUBREDDITS))

    def feed_sources(self) -> list[Source]:
        return self.sources + [subreddit_source(name) for name in self.subreddits]


def subreddit_source(subreddit: str) -> Source:
    return Source(
        name=f"r/{subreddit}",
        url=f"https://www.reddit.com/r/{subreddit}/.rss",
        foreground=SUBREDDIT_FOREGROUND,
        background=SUBREDDIT_BACKGROUND,
        max_age=SUBREDDIT_MAX_AGE,
    )


def default_config_path() -> Path:
    override = os.getenv(CONFIG_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".config" / "happen.yaml"


def parse_duration(raw: Any, key: str) -> timedelta:
    if isinstance(raw, bool):
        raise ConfigError(f"{key}: expected a duration, got {raw!r}")
    if isinstance(raw, (int, float)):
        return timedelta(seconds=raw)
    if not isinstance(raw, str):
        raise ConfigError(f"{key}: expected a duration, got {raw!r}")
    text = raw.strip()
    if not text:
        return timedelta(0)
    if NUMBER_RE.fullmatch(text):
        return timedelta(seconds=float(text))
    if not DURATION_RE.fullmatch(text):
        raise ConfigError(f"{key}: invalid duration {raw!r} (use e.g. 90s, 5m, 1h30m)")
    total = timedelta(0)
    for amount, unit in DURATION_PART_RE.findall(text):
        total += DURATION_UNITS[unit] * float(amount)
    return total


def format_duration(value: timedelta) -> str:
    seconds = int(value.total_seconds())
    if seconds <= 0:
        return "0"
    hours, rest = divmod(seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    out = ""
    if hours:
        out += f"{hours}h"
    if minutes:
        out += f"{minutes}m"
    if seconds:
        out += f"{seconds}s"
    return out


def _expect(raw: Any, kind: type, key: str) -> Any:
    if not isinstance(raw, kind) or (kind is int and isinstance(raw, bool)):
        raise ConfigError(f"{key}: expected {kind.__name__}, got {raw!r}")
    return raw


def parse_source(raw: Any, index: int) -> Source:
    key = f"sources[{index}]"
    if not isinstance(raw, dict):
        raise ConfigError(f"{key}: expected a mapping, got {raw!r}")
    url = str(raw.get("url") or "").strip()
    if not url:
        raise ConfigError(f"{key}: missing url")
    max_age = parse_duration(raw.get("maxAge", 0), f"{key}.maxAge")
    return Source(
        name=str(raw.get("name") or "").strip(),
        url=url,
        foreground=str(raw.get("fg") or ""),
        background=str(raw.get("bg") or ""),
        max_age=max_age,
    )


def config_from_mapping(data: Any) -> Config:
    config = Config()
    if data is None:
        return config
    if not isinstance(data, dict):
        raise ConfigError(f"expected a mapping at the top level, got {type(data).__name__}")

    known = {
        "showDescriptions",
        "maxBadgeSize",
        "showHelp",
        "pollInterval",
        "fetchTimeout",
        "sources",
        "subreddits",
    }
    for key in sorted(set(data) - known):
        logger.warning(f"Ignoring unknown config key: {key}")

    if "showDescriptions" in data:
        config.show_descriptions = _expect(data["showDescriptions"], bool, "showDescriptions")
    if "showHelp" in data:
        config.show_help = _expect(data["showHelp"], bool, "showHelp")
    if "maxBadgeSize" in data:
        config.max_badge_size = _expect(data["maxBadgeSize"], int, "maxBadgeSize")
        if config.max_badge_size < 0:
            raise ConfigError("maxBadgeSize must be >= 0")
    if "pollInterval" in data:
        config.poll_interval = parse_duration(data["pollInterval"], "pollInterval")
        if config.poll_interval <= timedelta(0):
            raise ConfigError("pollInterval must be positive")
    if "fetchTimeout" in data:
        config.fetch_timeout = parse_duration(data["fetchTimeout"], "fetchTimeout")
        if config.fetch_timeout <= timedelta(0):
            raise ConfigError("fetchTimeout must be positive")
    if "sources" in data:
        raw_sources = data["sources"] or []
        _expect(raw_sources, list, "sources")
        config.sources = [parse_source(raw, index) for index, raw in enumerate(raw_sources)]
    if "subreddits" in data:
        raw_subreddits = data["subreddits"] or []
        _expect(raw_subreddits, list, "subreddits")
        config.subreddits = [str(name).strip() for name in raw_subreddits if str(name).strip()]
    return config


def config_to_mapping(config: Config) -> dict[str, Any]:
    sources = []
    for source in config.sources:
        entry: dict[str, Any] = {"name": source.name, "url": source.url}
        if source.background:
            entry["bg"] = source.background
        if source.foreground:
            entry["fg"] = source.foreground
        if source.max_age > timedelta(0):
            entry["maxAge"] = format_duration(source.max_age)
        sources.append(entry)
    return {
        "showDescriptions": config.show_descriptions,
        "maxBadgeSize": config.max_badge_size,
        "showHelp": config.show_help,
        "pollInterval": format_duration(config.poll_interval),
        "fetchTimeout": format_duration(config.fetch_timeout),
        "sources": sources,
        "subreddits": list(config.subreddits),
    }


def write_default_config(path: Path) -> None:
    try:
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        text = yaml.safe_dump(config_to_mapping(Config()), sort_keys=False, allow_unicode=True)
        path.write_text(text, encoding="utf-8")
        path.chmod(0o600)
    except OSError as exc:
        raise ConfigError(f"failed to write default config to {path}: {exc}") from exc
    logger.info(f"Wrote default config to {path}")


def load_config(path: Path | None = None, from_file: bool = True) -> Config:
    if not from_file:
        return Config()

    path = path or default_config_path()
    if not path.exists():
        write_default_config(path)
        return Config()

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except OSError as exc:
        raise ConfigError(f"failed to read {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to parse {path}: {exc}") from exc

    config = config_from_mapping(data)
    logger.info(f"Loaded config from {path}: {len(config.feed_sources())} sources")
    return config
