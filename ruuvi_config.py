"""Settings for history retrieval, persisted as JSON.

Example file:
    {
      "silence_timeout": 10,
      "absolute_timeout": 120,
      "lookback_days": 7,
      "trigger_commands": ["0x03", "0x05", "0x80"],
      "trigger_delay": 0.5
    }
"""

from __future__ import annotations
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional
import json
import logging

logger = logging.getLogger(__name__)

DEFAULT_TRIGGER_COMMANDS = [0x03, 0x05, 0x80]


@dataclass
class HistoryConfig:
    silence_timeout: float = 10.0     # seconds without frames -> done
    absolute_timeout: float = 120.0   # hard cap on one retrieval
    lookback_days: float = 7.0
    trigger_commands: List[int] = field(default_factory=lambda: list(DEFAULT_TRIGGER_COMMANDS))
    trigger_delay: float = 0.5        # pause between cascade commands
    connect_timeout: float = 10.0
    connect_retries: int = 3
    adapter: Optional[str] = None

    def __post_init__(self):
        if self.silence_timeout <= 0 or self.absolute_timeout <= 0:
            raise ValueError("timeouts must be positive")
        if self.lookback_days <= 0:
            raise ValueError("lookback_days must be positive")
        if self.trigger_delay <= 0:
            raise ValueError("trigger_delay must be positive")
        if self.trigger_delay >= self.silence_timeout:
            # silence would fire before the next trigger is ever sent
            raise ValueError("trigger_delay must be shorter than silence_timeout")
        self.trigger_commands = [_parse_byte(c) for c in self.trigger_commands]
        if not self.trigger_commands:
            raise ValueError("trigger_commands must not be empty")


def _parse_byte(v: Any) -> int:
    n = int(v, 0) if isinstance(v, str) else int(v)
    if not 0 <= n <= 0xFF:
        raise ValueError(f"trigger command out of byte range: {v!r}")
    return n


def load_config(path: Optional[str]) -> HistoryConfig:
    if not path:
        return HistoryConfig()
    p = Path(path)
    if not p.exists():
        logger.info("config file %s not found, using defaults", path)
        return HistoryConfig()
    with p.open("r", encoding="utf-8") as f:
        data: Dict[str, Any] = json.load(f)

    known = {f.name for f in fields(HistoryConfig)}
    for key in sorted(set(data) - known):
        logger.warning("ignoring unknown config key %r in %s", key, path)
    return HistoryConfig(**{k: v for k, v in data.items() if k in known})


def save_config(path: str, cfg: HistoryConfig):
    out = asdict(cfg)
    out["trigger_commands"] = [f"0x{c:02x}" for c in cfg.trigger_commands]
    Path(path).write_text(json.dumps(out, indent=2, sort_keys=True), encoding="utf-8")
