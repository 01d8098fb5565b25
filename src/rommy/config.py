"""Process-wide defaults, read once and passed around explicitly."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from rommy.capture import ColorChoice
from rommy.outpath import default_root_dir

__all__ = ["Settings"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:
    root: Path = field(default_factory=default_root_dir)
    shell: str = "bash"
    color: ColorChoice = ColorChoice.AUTO
    stream: bool = True

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        """Build settings from ``ROMMY_ROOT`` / ``XDG_STATE_HOME``,
        ``ROMMY_SHELL`` and ``ROMMY_COLOR``."""
        env = os.environ if environ is None else environ

        color = ColorChoice.AUTO
        raw_color = env.get("ROMMY_COLOR", "").strip().lower()
        if raw_color:
            try:
                color = ColorChoice(raw_color)
            except ValueError:
                logger.warning("ignoring invalid ROMMY_COLOR=%r", raw_color)

        return cls(
            root=default_root_dir(env),
            shell=env.get("ROMMY_SHELL", "").strip() or "bash",
            color=color,
        )
