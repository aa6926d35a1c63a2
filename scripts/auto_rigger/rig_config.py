"""Engine settings shared by the optimizer, classifier and CLI."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from classifier_adapter import DEFAULT_CLASSIFIER_MODEL

MIB = 1024 * 1024


@dataclass(frozen=True)
class RigConfig:
    # Tier-independent hard limit on projected rig size.
    absolute_ceiling_mb: float = 100.0
    bone_payload_bytes: int = 256
    overhead_floor_bytes: int = 5 * MIB
    bytes_per_bone_overhead: int = 1000
    bytes_per_morph_overhead: int = 2000
    min_morph_targets: int = 5
    min_bones: int = 9
    enhance_threshold: float = 0.8
    classifier_api_key: Optional[str] = None
    classifier_model: str = DEFAULT_CLASSIFIER_MODEL
    classifier_timeout_seconds: float = 5.0

    def __post_init__(self) -> None:
        if self.absolute_ceiling_mb <= 0:
            raise ValueError("absolute_ceiling_mb must be > 0")
        if self.overhead_floor_bytes < 0 or self.bone_payload_bytes < 0:
            raise ValueError("payload sizes must be >= 0")
        if self.bone_payload_bytes + max(self.overhead_floor_bytes, self.bytes_per_bone_overhead) > self.ceiling_bytes:
            raise ValueError("absolute_ceiling_mb must leave room for a single bone and the overhead floor")
        if self.min_morph_targets < 0:
            raise ValueError("min_morph_targets must be >= 0")
        if self.min_bones < 1:
            raise ValueError("min_bones must be >= 1")
        if not 0 < self.enhance_threshold <= 1:
            raise ValueError("enhance_threshold must be in (0, 1]")
        if self.classifier_timeout_seconds <= 0:
            raise ValueError("classifier_timeout_seconds must be > 0")

    @property
    def ceiling_bytes(self) -> int:
        return int(self.absolute_ceiling_mb * MIB)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RigConfig":
        env = os.environ if environ is None else environ
        kwargs = {}
        if env.get("AUTORIG_ABSOLUTE_CEILING_MB"):
            kwargs["absolute_ceiling_mb"] = float(env["AUTORIG_ABSOLUTE_CEILING_MB"])
        if env.get("AUTORIG_CLASSIFIER_TIMEOUT"):
            kwargs["classifier_timeout_seconds"] = float(env["AUTORIG_CLASSIFIER_TIMEOUT"])
        if env.get("AUTORIG_CLASSIFIER_MODEL"):
            kwargs["classifier_model"] = env["AUTORIG_CLASSIFIER_MODEL"]
        if env.get("HUGGINGFACE_API_KEY"):
            kwargs["classifier_api_key"] = env["HUGGINGFACE_API_KEY"]
        return cls(**kwargs)
