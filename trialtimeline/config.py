"""
Engine configuration from environment variables.

Values are read when an EngineConfig is created. If TRIALTIMELINE_ENV_PATH
names an existing file it is loaded first with python-dotenv; variables
already set in the process environment are not overridden.

    TRIALTIMELINE_ANCHOR_DAY                0 or 1 (Day 0 / Day 1 protocols)
    TRIALTIMELINE_COMPLIANCE_THRESHOLD      is_compliant cut-off, percent
    TRIALTIMELINE_OVERUSE_THRESHOLD         above this a percentage is over-use
    TRIALTIMELINE_DEFAULT_DOSING_FREQUENCY  used when a study has no code
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from trialtimeline.dates import AnchorConvention

logger = logging.getLogger(__name__)

ENV_PATH_VARIABLE = "TRIALTIMELINE_ENV_PATH"


def load_environment(env_path: Optional[str] = None) -> bool:
    """Load a dotenv file if one is configured and exists. Returns True if loaded."""
    path = env_path or os.getenv(ENV_PATH_VARIABLE)
    if not path:
        return False
    path = Path(path)
    if not path.exists():
        logger.info("Environment file %s not found; falling back to environment variables", path)
        return False
    return load_dotenv(path, override=False)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Invalid %s=%r; using default %s", name, raw, default)
        return default


def _env_anchor_day(default: int) -> int:
    raw = os.getenv("TRIALTIMELINE_ANCHOR_DAY")
    if raw is None or raw.strip() == "":
        return default
    if raw.strip() in ("0", "1"):
        return int(raw)
    logger.warning("Invalid TRIALTIMELINE_ANCHOR_DAY=%r; using default %s", raw, default)
    return default


@dataclass
class EngineConfig:
    """Engine defaults; explicit constructor arguments win over the environment."""
    anchor_day: int = field(default_factory=lambda: _env_anchor_day(0))
    compliance_threshold: float = field(
        default_factory=lambda: _env_float("TRIALTIMELINE_COMPLIANCE_THRESHOLD", 80.0)
    )
    overuse_threshold: float = field(
        default_factory=lambda: _env_float("TRIALTIMELINE_OVERUSE_THRESHOLD", 100.0)
    )
    default_dosing_frequency: Optional[str] = field(
        default_factory=lambda: os.getenv("TRIALTIMELINE_DEFAULT_DOSING_FREQUENCY") or None
    )

    def __post_init__(self):
        if self.anchor_day not in (0, 1):
            raise ValueError(f"anchor_day must be 0 or 1, got {self.anchor_day}")

        if not 0 <= self.compliance_threshold <= self.overuse_threshold:
            raise ValueError(
                f"compliance_threshold must be between 0 and overuse_threshold "
                f"({self.overuse_threshold}), got {self.compliance_threshold}"
            )

    @property
    def anchor_convention(self) -> AnchorConvention:
        return AnchorConvention.from_anchor_day(self.anchor_day)


def get_config(env_path: Optional[str] = None) -> EngineConfig:
    """Fresh config, after loading the configured dotenv file if any."""
    load_environment(env_path)
    return EngineConfig()
