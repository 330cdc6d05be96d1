"""Centralized configuration for the keyframe-extractor pipeline.

Supports environment variables and explicit overrides for all tuning
options, plus the run-level settings used by the CLI.
"""

import math
import os
import logging
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Mapping, Optional

from .errors import InvalidInputError

logger = logging.getLogger(__name__)

ENV_PREFIX = "KEYFRAME_"


class ImageFormat(str, Enum):
    """Supported screenshot export formats."""
    PNG = "png"
    JPEG = "jpeg"

    @property
    def extension(self) -> str:
        return {
            ImageFormat.PNG: ".png",
            ImageFormat.JPEG: ".jpg",
        }[self]

    @property
    def mime_type(self) -> str:
        return {
            ImageFormat.PNG: "image/png",
            ImageFormat.JPEG: "image/jpeg",
        }[self]

    @property
    def pil_format(self) -> str:
        return self.value.upper()


@dataclass(frozen=True)
class ProcessingOptions:
    """Tuning knobs for change detection and key-frame selection."""
    change_threshold: float = 0.12       # 0-1, higher = bigger change required
    min_screenshot_interval: float = 1.0  # seconds between screenshots
    sample_interval: float = 0.2          # seconds between frame samples
    motion_smoothing: int = 3             # diffs averaged for change detection
    stability_window: float = 0.5         # seconds to collect after a change
    stability_threshold: float = 0.05     # max diff from baseline to be "stable"
    min_blur_threshold: float = 100.0     # minimum Laplacian variance to emit

    def with_overrides(self, **overrides) -> "ProcessingOptions":
        """Return a copy with every non-None override applied."""
        known = {f.name for f in fields(self)}
        unknown = set(overrides) - known
        if unknown:
            raise InvalidInputError(
                f"Unknown processing option(s): {', '.join(sorted(unknown))}"
            )
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes) if changes else self

    def validate(self) -> "ProcessingOptions":
        """Raise InvalidInputError if any option is out of range."""
        for name in ("change_threshold", "stability_threshold"):
            value = getattr(self, name)
            if not (math.isfinite(value) and 0.0 <= value <= 1.0):
                raise InvalidInputError(f"{name} must be within [0, 1], got {value}")
        for name in ("min_screenshot_interval", "stability_window", "min_blur_threshold"):
            value = getattr(self, name)
            if not (math.isfinite(value) and value >= 0.0):
                raise InvalidInputError(f"{name} must be >= 0, got {value}")
        if not (math.isfinite(self.sample_interval) and self.sample_interval > 0.0):
            raise InvalidInputError(
                f"sample_interval must be > 0, got {self.sample_interval}"
            )
        if int(self.motion_smoothing) != self.motion_smoothing or self.motion_smoothing < 1:
            raise InvalidInputError(
                f"motion_smoothing must be an integer >= 1, got {self.motion_smoothing}"
            )
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ProcessingOptions":
        """Build options from KEYFRAME_* environment variables.

        e.g. KEYFRAME_CHANGE_THRESHOLD=0.2. Unparsable values are ignored
        with a warning and the default is kept.
        """
        environ = os.environ if environ is None else environ
        overrides = {}
        for f in fields(cls):
            env_var = ENV_PREFIX + f.name.upper()
            raw = environ.get(env_var)
            if raw is None or raw.strip() == "":
                continue
            caster = int if f.name == "motion_smoothing" else float
            try:
                overrides[f.name] = caster(raw)
            except ValueError:
                logger.warning(
                    "Ignoring %s=%r: not a valid %s. Using default %s.",
                    env_var, raw, caster.__name__, f.default,
                )
        return cls(**overrides)


@dataclass
class RunConfig:
    """Full run configuration."""
    # Video I/O
    input_path: str = ""
    output_dir: Optional[str] = None

    # Frame source
    seek_timeout: float = 1.0   # seconds to wait for a seek to settle
    settle_delay: float = 0.0   # fixed wait between seek and read

    # Analysis
    options: ProcessingOptions = field(default_factory=ProcessingOptions)
    fast_diff: bool = False     # pixel-only difference instead of hybrid

    # Export
    image_format: ImageFormat = ImageFormat.PNG
    jpeg_quality: int = 92

    # Reporting
    report_path: Optional[str] = None
