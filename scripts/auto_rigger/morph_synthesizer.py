"""
morph_synthesizer.py
====================

Procedural morph targets sized to an OptimizedBudget.

Allocation of n targets: facial floor(0.6n), body floor(0.25n), corrective
the remainder. Deltas come from a generator seeded on (analysis, budget) so
the same input always yields the same targets. Every delta array has
shape (vertex_count, 3) and float32 dtype.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Tuple

import numpy as np

from budget_optimizer import OptimizedBudget, rig_seed
from structure_analyzer import ContainerAnalysis

MORPH_STREAM = 1

FACIAL_PERCENT = 60
BODY_PERCENT = 25

# Facial targets only move the top 30% of vertex indices.
FACIAL_REGION_FRACTION = 0.3

MAX_DELTA_FRACTION = 0.25
MAX_NORMAL_DELTA = 0.1

FACIAL_SCALE = 0.02
BODY_SCALE = 0.01
CORRECTIVE_SCALE = 0.005
CORRECTIVE_DENSITY = 0.1
NORMAL_SCALE = 0.02

ARKIT_BLENDSHAPES = [
    "eyeBlinkLeft", "eyeLookDownLeft", "eyeLookInLeft", "eyeLookOutLeft", "eyeLookUpLeft",
    "eyeSquintLeft", "eyeWideLeft", "eyeBlinkRight", "eyeLookDownRight", "eyeLookInRight",
    "eyeLookOutRight", "eyeLookUpRight", "eyeSquintRight", "eyeWideRight", "jawForward",
    "jawLeft", "jawRight", "jawOpen", "mouthClose", "mouthFunnel", "mouthPucker",
    "mouthLeft", "mouthRight", "mouthSmileLeft", "mouthSmileRight", "mouthFrownLeft",
    "mouthFrownRight", "mouthDimpleLeft", "mouthDimpleRight", "mouthStretchLeft",
    "mouthStretchRight", "mouthRollLower", "mouthRollUpper", "mouthShrugLower",
    "mouthShrugUpper", "mouthPressLeft", "mouthPressRight", "mouthLowerDownLeft",
    "mouthLowerDownRight", "mouthUpperUpLeft", "mouthUpperUpRight", "browDownLeft",
    "browDownRight", "browInnerUp", "browOuterUpLeft", "browOuterUpRight", "cheekPuff",
    "cheekSquintLeft", "cheekSquintRight", "noseSneerLeft", "noseSneerRight", "tongueOut",
]

BODY_SHAPES = [
    "breathe", "chestExpand", "bellyIn", "shoulderShrugLeft", "shoulderShrugRight",
    "bicepFlexLeft", "bicepFlexRight", "thighFlexLeft", "thighFlexRight", "calfFlexLeft",
    "calfFlexRight", "spineTwist", "hipShift", "neckTense",
]


@dataclass(frozen=True, eq=False)
class MorphTarget:
    name: str
    category: str  # facial, body or corrective
    vertex_deltas: np.ndarray
    normal_deltas: np.ndarray
    weight: float = 0.0

    @property
    def vertex_count(self) -> int:
        return int(self.vertex_deltas.shape[0])

    def summary(self) -> dict:
        magnitude = float(np.abs(self.vertex_deltas).max()) if self.vertex_count else 0.0
        return {
            "name": self.name,
            "category": self.category,
            "weight": self.weight,
            "max_delta": magnitude,
        }


def allocate_morphs(morph_count: int) -> Tuple[int, int, int]:
    facial = morph_count * FACIAL_PERCENT // 100
    body = morph_count * BODY_PERCENT // 100
    return facial, body, morph_count - facial - body


def _names(base: List[str], fallback_prefix: str, count: int) -> List[str]:
    names = list(base[:count])
    for index in range(len(names), count):
        names.append(f"{fallback_prefix}_{index}")
    return names


def _frozen(array: np.ndarray) -> np.ndarray:
    array = np.ascontiguousarray(array, dtype=np.float32)
    array.setflags(write=False)
    return array


class _DeltaGenerator:
    def __init__(self, rng: np.random.Generator, vertex_count: int, extent: float):
        self.rng = rng
        self.vertex_count = vertex_count
        self.extent = extent
        self.limit = MAX_DELTA_FRACTION * extent

    def _normals(self, mask: np.ndarray) -> np.ndarray:
        normals = self.rng.normal(0.0, NORMAL_SCALE, size=(self.vertex_count, 3))
        normals = np.clip(normals, -MAX_NORMAL_DELTA, MAX_NORMAL_DELTA)
        normals[~mask] = 0.0
        return normals

    def _deltas(self, scale: float, mask: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        deltas = self.rng.normal(0.0, scale * self.extent, size=(self.vertex_count, 3))
        deltas = np.clip(deltas, -self.limit, self.limit)
        deltas[~mask] = 0.0
        return deltas, self._normals(mask)

    def facial(self) -> Tuple[np.ndarray, np.ndarray]:
        mask = np.zeros(self.vertex_count, dtype=bool)
        start = self.vertex_count - int(np.ceil(self.vertex_count * FACIAL_REGION_FRACTION))
        mask[start:] = True
        return self._deltas(FACIAL_SCALE, mask)

    def body(self) -> Tuple[np.ndarray, np.ndarray]:
        return self._deltas(BODY_SCALE, np.ones(self.vertex_count, dtype=bool))

    def corrective(self) -> Tuple[np.ndarray, np.ndarray]:
        mask = self.rng.random(self.vertex_count) < CORRECTIVE_DENSITY
        return self._deltas(CORRECTIVE_SCALE, mask)


def synthesize_morphs(analysis: ContainerAnalysis, budget: OptimizedBudget) -> List[MorphTarget]:
    vertex_count = max(0, analysis.vertex_count)
    extent = analysis.bounding_box.largest_extent
    if not extent > 0:
        extent = 1.0

    facial_count, body_count, corrective_count = allocate_morphs(budget.morph_count)
    generator = _DeltaGenerator(
        np.random.default_rng([rig_seed(analysis, budget), MORPH_STREAM]),
        vertex_count,
        extent,
    )

    plan = [
        ("facial", _names(ARKIT_BLENDSHAPES, "facial", facial_count), generator.facial),
        ("body", _names(BODY_SHAPES, "body", body_count), generator.body),
        ("corrective", [f"corrective_{i}" for i in range(corrective_count)], generator.corrective),
    ]

    targets: List[MorphTarget] = []
    for category, names, make in plan:
        for name in names:
            deltas, normals = make()
            targets.append(
                MorphTarget(
                    name=name,
                    category=category,
                    vertex_deltas=_frozen(deltas),
                    normal_deltas=_frozen(normals),
                )
            )
    return targets
