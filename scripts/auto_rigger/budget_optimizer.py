"""
budget_optimizer.py
===================

Turns a tier's nominal bone/morph limits into concrete counts that fit a
byte envelope for a given vertex count.

Projected size model:

  P(b, m) = m * V * 12 + b * bone_payload + max(overhead_floor, b * 1000 + m * 2000)

Morphs dominate for dense meshes, so they are reduced first, then bones. Both
steps search against min(tier target, absolute ceiling); the ceiling scale loop
only runs when the floors alone exceed the ceiling.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from rig_config import MIB, RigConfig
from structure_analyzer import ContainerAnalysis
from tier_budgets import TierBudget

BYTES_PER_MORPH_VERTEX = 12

REDUCED_MORPHS = "reduced_morphs"
REDUCED_BONES = "reduced_bones"
ENHANCED_MORPHS = "enhanced_morphs"
FLOOR_LIMITED = "floor_limited"
ABSOLUTE_CEILING = "absolute_ceiling"


@dataclass(frozen=True)
class OptimizedBudget:
    bone_count: int
    morph_count: int
    applied_adjustments: Tuple[str, ...]
    projected_bytes: int
    target_bytes: int
    ceiling_bytes: int

    def to_dict(self) -> dict:
        return {
            "bone_count": self.bone_count,
            "morph_count": self.morph_count,
            "applied_adjustments": list(self.applied_adjustments),
            "projected_bytes": self.projected_bytes,
            "target_bytes": self.target_bytes,
            "ceiling_bytes": self.ceiling_bytes,
        }


def projected_size_bytes(vertex_count: int, bones: int, morphs: int, config: RigConfig) -> int:
    morph_bytes = morphs * vertex_count * BYTES_PER_MORPH_VERTEX
    bone_bytes = bones * config.bone_payload_bytes
    overhead = max(
        config.overhead_floor_bytes,
        bones * config.bytes_per_bone_overhead + morphs * config.bytes_per_morph_overhead,
    )
    return morph_bytes + bone_bytes + overhead


def _largest_fitting(low: int, high: int, fits: Callable[[int], bool]) -> int:
    """Largest count in [low, high] for which *fits* holds, or *low* when none does.

    *fits* must be monotone: once a count stops fitting, every larger one does too.
    """
    if high < low:
        return high
    if not fits(low):
        return low
    while low < high:
        mid = (low + high + 1) // 2
        if fits(mid):
            low = mid
        else:
            high = mid - 1
    return low


def _largest_fitting_morphs(
    vertex_count: int,
    bones: int,
    low: int,
    high: int,
    limit_bytes: int,
    config: RigConfig,
) -> int:
    return _largest_fitting(
        low, high, lambda m: projected_size_bytes(vertex_count, bones, m, config) <= limit_bytes
    )


def _largest_fitting_bones(
    vertex_count: int,
    morphs: int,
    low: int,
    high: int,
    limit_bytes: int,
    config: RigConfig,
) -> int:
    return _largest_fitting(
        low, high, lambda b: projected_size_bytes(vertex_count, b, morphs, config) <= limit_bytes
    )


def _apply_ceiling(
    vertex_count: int,
    bones: int,
    morphs: int,
    config: RigConfig,
) -> Tuple[int, int, bool]:
    ceiling = config.ceiling_bytes
    clamped = False
    projected = projected_size_bytes(vertex_count, bones, morphs, config)

    while projected > ceiling:
        clamped = True
        scale = ceiling / projected
        new_bones = max(1, math.floor(bones * scale))
        new_morphs = math.floor(morphs * scale)
        if new_bones == bones and new_morphs == morphs:
            if morphs > 0:
                new_morphs = morphs - 1
            else:
                new_bones = bones - 1
        bones, morphs = new_bones, new_morphs
        projected = projected_size_bytes(vertex_count, bones, morphs, config)

    return bones, morphs, clamped


def optimize_budget(
    analysis: ContainerAnalysis,
    tier: TierBudget,
    config: Optional[RigConfig] = None,
) -> OptimizedBudget:
    config = config or RigConfig()
    vertex_count = max(0, analysis.vertex_count)
    target = int(tier.max_file_size_mb * MIB)
    # Tiers above the ceiling are sized against the ceiling, so the counts
    # never shrink as max_file_size_mb grows past it.
    limit = min(target, config.ceiling_bytes)
    adjustments = []

    bones = tier.max_bones
    morphs = tier.max_morph_targets
    morph_floor = min(config.min_morph_targets, tier.max_morph_targets)
    bone_floor = min(config.min_bones, tier.max_bones)

    projected = projected_size_bytes(vertex_count, bones, morphs, config)
    if projected > limit and limit < target:
        adjustments.append(ABSOLUTE_CEILING)

    if projected > limit and morphs > morph_floor:
        morphs = _largest_fitting_morphs(vertex_count, bones, morph_floor, morphs, limit, config)
        adjustments.append(REDUCED_MORPHS)
        projected = projected_size_bytes(vertex_count, bones, morphs, config)

    if projected > limit and bones > bone_floor:
        bones = _largest_fitting_bones(vertex_count, morphs, bone_floor, bones, limit, config)
        adjustments.append(REDUCED_BONES)
        projected = projected_size_bytes(vertex_count, bones, morphs, config)

    if projected < config.enhance_threshold * limit and morphs < tier.max_morph_targets:
        grown = _largest_fitting_morphs(vertex_count, bones, morphs, tier.max_morph_targets, limit, config)
        if grown > morphs:
            morphs = grown
            adjustments.append(ENHANCED_MORPHS)
            projected = projected_size_bytes(vertex_count, bones, morphs, config)

    # Still over here means both counts are at their floors.
    if projected > target:
        adjustments.append(FLOOR_LIMITED)
        logging.debug(
            "Budget floors exceed tier target: %d bones, %d morphs, %d > %d bytes",
            bones,
            morphs,
            projected,
            target,
        )

    bones, morphs, clamped = _apply_ceiling(vertex_count, bones, morphs, config)
    if clamped:
        if ABSOLUTE_CEILING not in adjustments:
            adjustments.append(ABSOLUTE_CEILING)
        projected = projected_size_bytes(vertex_count, bones, morphs, config)

    return OptimizedBudget(
        bone_count=bones,
        morph_count=morphs,
        applied_adjustments=tuple(adjustments),
        projected_bytes=projected,
        target_bytes=target,
        ceiling_bytes=config.ceiling_bytes,
    )


def rig_seed(analysis: ContainerAnalysis, budget: OptimizedBudget) -> int:
    """64-bit generator seed keyed on the analysis and the optimized budget."""
    bbox = analysis.bounding_box
    anatomy = analysis.anatomy
    canonical = {
        "vertex_count": analysis.vertex_count,
        "mesh_count": analysis.mesh_count,
        "material_count": analysis.material_count,
        "bbox_min": [round(v, 6) for v in bbox.min],
        "bbox_max": [round(v, 6) for v in bbox.max],
        "humanoid_confidence": round(analysis.humanoid_confidence, 6),
        "anatomy": [anatomy.head, anatomy.torso, anatomy.arms, anatomy.legs],
        "bone_count": budget.bone_count,
        "morph_count": budget.morph_count,
    }
    text = json.dumps(canonical, sort_keys=True, separators=(",", ":"))
    digest = hashlib.sha256(text.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "little")
