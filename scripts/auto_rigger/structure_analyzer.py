"""
structure_analyzer.py
=====================

Derives vertex counts, mesh summaries, bounds and a humanoid-likelihood
score from a parsed GLB document. Works on untrusted JSON: anything
malformed contributes nothing instead of raising.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Tuple

from glb_container import GlbDocument, list_of_dicts

# Geometric humanoid signals and their weights (sum to 1.0).
ASPECT_RATIO_WEIGHT = 0.3
VERTEX_RANGE_WEIGHT = 0.2
MULTI_MESH_WEIGHT = 0.2
DETAILED_SURFACE_WEIGHT = 0.3

HUMANOID_ASPECT_RANGE = (1.5, 8.0)
DETAILED_VERTEX_RANGE = (1000, 200000)

HEAD_THRESHOLD = 0.4
TORSO_THRESHOLD = 0.3
LIMBS_THRESHOLD = 0.5

Vec3 = Tuple[float, float, float]


@dataclass(frozen=True)
class MeshSummary:
    name: str
    vertex_count: int
    primitive_count: int
    has_normals: bool
    has_texcoords: bool
    has_colors: bool


@dataclass(frozen=True)
class BoundingBox:
    min: Vec3
    max: Vec3

    @property
    def size(self) -> Vec3:
        return (
            self.max[0] - self.min[0],
            self.max[1] - self.min[1],
            self.max[2] - self.min[2],
        )

    @property
    def center(self) -> Vec3:
        return (
            (self.max[0] + self.min[0]) * 0.5,
            (self.max[1] + self.min[1]) * 0.5,
            (self.max[2] + self.min[2]) * 0.5,
        )

    @property
    def largest_extent(self) -> float:
        return max(self.size)


UNIT_BOX = BoundingBox(min=(-0.5, -0.5, -0.5), max=(0.5, 0.5, 0.5))


@dataclass(frozen=True)
class AnatomyFlags:
    head: bool = False
    torso: bool = False
    arms: bool = False
    legs: bool = False


@dataclass(frozen=True)
class Classification:
    label: str
    confidence: float
    source: str  # "service" or "geometric"


@dataclass(frozen=True)
class ContainerAnalysis:
    vertex_count: int
    mesh_summaries: Tuple[MeshSummary, ...]
    material_count: int
    has_existing_skeleton: bool
    has_animations: bool
    bounding_box: BoundingBox
    humanoid_confidence: float
    anatomy: AnatomyFlags
    geometric_confidence: float
    classification: Optional[Classification] = None

    @property
    def mesh_count(self) -> int:
        return len(self.mesh_summaries)


def anatomy_from_confidence(confidence: float) -> AnatomyFlags:
    return AnatomyFlags(
        head=confidence > HEAD_THRESHOLD,
        torso=confidence > TORSO_THRESHOLD,
        arms=confidence > LIMBS_THRESHOLD,
        legs=confidence > LIMBS_THRESHOLD,
    )


def _accessor_count(accessors: List[Dict[str, Any]], index: Any) -> int:
    if not isinstance(index, int) or isinstance(index, bool):
        return 0
    if index < 0 or index >= len(accessors):
        return 0
    count = accessors[index].get("count")
    return count if isinstance(count, int) and not isinstance(count, bool) and count >= 0 else 0


def summarize_meshes(payload: Dict[str, Any]) -> List[MeshSummary]:
    accessors = list_of_dicts(payload, "accessors")
    summaries: List[MeshSummary] = []

    for index, mesh in enumerate(list_of_dicts(payload, "meshes")):
        primitives = mesh.get("primitives")
        if not isinstance(primitives, list):
            primitives = []

        vertex_count = 0
        has_normals = has_texcoords = has_colors = False
        for primitive in primitives:
            if not isinstance(primitive, dict):
                continue
            attrs = primitive.get("attributes")
            if not isinstance(attrs, dict):
                continue
            vertex_count += _accessor_count(accessors, attrs.get("POSITION"))
            has_normals = has_normals or "NORMAL" in attrs
            has_texcoords = has_texcoords or "TEXCOORD_0" in attrs
            has_colors = has_colors or "COLOR_0" in attrs

        name = mesh.get("name")
        summaries.append(
            MeshSummary(
                name=name if isinstance(name, str) and name else f"mesh_{index}",
                vertex_count=vertex_count,
                primitive_count=len(primitives),
                has_normals=has_normals,
                has_texcoords=has_texcoords,
                has_colors=has_colors,
            )
        )
    return summaries


def _as_vec3(value: Any) -> Optional[Vec3]:
    if not isinstance(value, list) or len(value) != 3:
        return None
    out = []
    for component in value:
        if isinstance(component, bool) or not isinstance(component, (int, float)):
            return None
        if not math.isfinite(component):
            return None
        out.append(float(component))
    return (out[0], out[1], out[2])


def compute_bounding_box(payload: Dict[str, Any]) -> BoundingBox:
    """Union of every VEC3 accessor's declared min/max; unit cube when none."""
    lo = [math.inf, math.inf, math.inf]
    hi = [-math.inf, -math.inf, -math.inf]
    found = False

    for accessor in list_of_dicts(payload, "accessors"):
        if accessor.get("type") != "VEC3":
            continue
        acc_min = _as_vec3(accessor.get("min"))
        acc_max = _as_vec3(accessor.get("max"))
        if acc_min is None or acc_max is None:
            continue
        found = True
        for axis in range(3):
            lo[axis] = min(lo[axis], acc_min[axis])
            hi[axis] = max(hi[axis], acc_max[axis])

    if not found:
        return UNIT_BOX
    return BoundingBox(min=(lo[0], lo[1], lo[2]), max=(hi[0], hi[1], hi[2]))


def geometric_humanoid_confidence(
    bounding_box: BoundingBox,
    meshes: List[MeshSummary],
    vertex_count: int,
) -> float:
    width, height, depth = bounding_box.size
    horizontal = max(width, depth)
    aspect_ratio = height / horizontal if horizontal > 0 else 0.0

    confidence = 0.0
    if HUMANOID_ASPECT_RANGE[0] < aspect_ratio < HUMANOID_ASPECT_RANGE[1]:
        confidence += ASPECT_RATIO_WEIGHT
    if DETAILED_VERTEX_RANGE[0] < vertex_count < DETAILED_VERTEX_RANGE[1]:
        confidence += VERTEX_RANGE_WEIGHT
    if len(meshes) > 1:
        confidence += MULTI_MESH_WEIGHT
    if any(mesh.has_normals and mesh.has_texcoords for mesh in meshes):
        confidence += DETAILED_SURFACE_WEIGHT
    return round(min(1.0, confidence), 6)


def analyze_document(document: GlbDocument) -> ContainerAnalysis:
    payload = document.payload
    meshes = summarize_meshes(payload)
    vertex_count = sum(mesh.vertex_count for mesh in meshes)
    bounding_box = compute_bounding_box(payload)
    confidence = geometric_humanoid_confidence(bounding_box, meshes, vertex_count)

    skins = payload.get("skins")
    animations = payload.get("animations")

    return ContainerAnalysis(
        vertex_count=vertex_count,
        mesh_summaries=tuple(meshes),
        material_count=len(list_of_dicts(payload, "materials")),
        has_existing_skeleton=isinstance(skins, list) and len(skins) > 0,
        has_animations=isinstance(animations, list) and len(animations) > 0,
        bounding_box=bounding_box,
        humanoid_confidence=confidence,
        anatomy=anatomy_from_confidence(confidence),
        geometric_confidence=confidence,
    )


def empty_analysis() -> ContainerAnalysis:
    """Analysis used when the container could not be parsed."""
    return ContainerAnalysis(
        vertex_count=0,
        mesh_summaries=(),
        material_count=0,
        has_existing_skeleton=False,
        has_animations=False,
        bounding_box=UNIT_BOX,
        humanoid_confidence=0.0,
        anatomy=AnatomyFlags(),
        geometric_confidence=0.0,
    )


def apply_classification(analysis: ContainerAnalysis, result: Classification) -> ContainerAnalysis:
    """Blend a classification into the analysis.

    A geometric (fallback) result leaves the confidence untouched, so the
    fallback is never more permissive than the geometric score.
    """
    geometric = analysis.geometric_confidence
    if result.source != "service":
        blended = geometric
    elif result.label == "humanoid":
        blended = max(geometric, result.confidence)
    else:
        blended = min(geometric, 1.0 - result.confidence)
    blended = round(min(1.0, max(0.0, blended)), 6)

    return replace(
        analysis,
        humanoid_confidence=blended,
        anatomy=anatomy_from_confidence(blended),
        classification=result,
    )
