"""
Global / experimental configuration flags.
"""

import os
from dataclasses import dataclass, field


def _env_flag(name: str) -> bool:
    return os.getenv(name, "").strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class AFConfig:
    debug: bool = field(default_factory=lambda: _env_flag("ARCHFLOW_DEBUG"))
    seed: int = field(default_factory=lambda: int(os.getenv("ARCHFLOW_SEED", "1234")))


config = AFConfig()
