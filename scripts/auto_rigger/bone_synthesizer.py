"""
bone_synthesizer.py
===================

Builds a rooted bone tree sized exactly to an OptimizedBudget.

Emission order is fixed: root, core anatomy (spine, neck, head, arm chains,
leg chains), then filler detail (face, hands and fingers, spine
subdivisions) and finally generic ``extra_N`` bones. A tight budget
therefore truncates detail before core skeleton.

Positions are model-space points placed relative to the analysis bounding
box: x/z as offsets from the box center scaled by width/depth, y as a
fraction of the height measured from the box floor.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from budget_optimizer import OptimizedBudget, rig_seed
from structure_analyzer import ContainerAnalysis

IDENTITY_ROTATION = (0.0, 0.0, 0.0, 1.0)
BONE_STREAM = 0

Vec3 = Tuple[float, float, float]


@dataclass(frozen=True)
class Bone:
    id: int
    name: str
    kind: str
    position: Vec3
    rotation: Tuple[float, float, float, float] = IDENTITY_ROTATION
    parent_id: Optional[int] = None
    weight: float = 1.0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind,
            "position": list(self.position),
            "rotation": list(self.rotation),
            "parent_id": self.parent_id,
            "weight": self.weight,
        }


class HierarchyError(ValueError):
    pass


class BoneHierarchy:
    """Ordered, validated bone sequence. Children are derived from parent ids."""

    def __init__(self, bones: Sequence[Bone]):
        self._bones = tuple(bones)
        self._validate()
        self._by_name = {bone.name: bone for bone in self._bones}

    def _validate(self) -> None:
        if not self._bones:
            raise HierarchyError("Bone hierarchy needs at least a root bone")

        names = set()
        roots = 0
        for index, bone in enumerate(self._bones):
            if bone.id != index:
                raise HierarchyError(f"Bone ids must be dense: expected {index}, got {bone.id}")
            if bone.name in names:
                raise HierarchyError(f"Duplicate bone name: {bone.name}")
            names.add(bone.name)
            if not 0.0 <= bone.weight <= 1.0:
                raise HierarchyError(f"Bone {bone.name} weight out of range: {bone.weight}")
            if bone.parent_id is None:
                roots += 1
            elif not 0 <= bone.parent_id < bone.id:
                raise HierarchyError(f"Bone {bone.name} references parent {bone.parent_id} not yet emitted")

        if roots != 1 or self._bones[0].parent_id is not None:
            raise HierarchyError(f"Bone hierarchy must have exactly one root first, found {roots}")

    @property
    def root(self) -> Bone:
        return self._bones[0]

    @property
    def bones(self) -> Tuple[Bone, ...]:
        return self._bones

    def __len__(self) -> int:
        return len(self._bones)

    def __iter__(self) -> Iterator[Bone]:
        return iter(self._bones)

    def __getitem__(self, index: int) -> Bone:
        return self._bones[index]

    def by_name(self, name: str) -> Optional[Bone]:
        return self._by_name.get(name)

    def children_of(self, bone_id: int) -> List[Bone]:
        return [bone for bone in self._bones if bone.parent_id == bone_id]

    def path_to_root(self, bone_id: int) -> List[int]:
        path = [bone_id]
        current = self._bones[bone_id]
        while current.parent_id is not None:
            path.append(current.parent_id)
            current = self._bones[current.parent_id]
        return path


@dataclass(frozen=True)
class _BoneTemplate:
    name: str
    kind: str
    parents: Tuple[str, ...]
    offset: Vec3  # (x, y, z) fractions: x/z from center, y from floor
    weight: float = 1.0


def _t(name: str, kind: str, parents: Tuple[str, ...], offset: Vec3, weight: float = 1.0) -> _BoneTemplate:
    return _BoneTemplate(name=name, kind=kind, parents=parents, offset=offset, weight=weight)


ROOT_TEMPLATE = _t("root", "root", (), (0.0, 0.0, 0.0))

TORSO_BONES = [_t("spine", "torso", ("root",), (0.0, 0.55, 0.0))]
HEAD_BONES = [
    _t("neck", "head", ("spine", "root"), (0.0, 0.82, 0.0)),
    _t("head", "head", ("neck", "spine", "root"), (0.0, 0.9, 0.0)),
]
ARM_BONES = [
    _t("shoulder_L", "arm", ("spine", "root"), (-0.12, 0.78, 0.0)),
    _t("arm_L", "arm", ("shoulder_L", "spine", "root"), (-0.3, 0.65, 0.0)),
    _t("shoulder_R", "arm", ("spine", "root"), (0.12, 0.78, 0.0)),
    _t("arm_R", "arm", ("shoulder_R", "spine", "root"), (0.3, 0.65, 0.0)),
]
LEG_BONES = [
    _t("hip_L", "leg", ("root",), (-0.1, 0.48, 0.0)),
    _t("leg_L", "leg", ("hip_L", "root"), (-0.1, 0.25, 0.0)),
    _t("foot_L", "leg", ("leg_L", "hip_L", "root"), (-0.1, 0.03, 0.1)),
    _t("hip_R", "leg", ("root",), (0.1, 0.48, 0.0)),
    _t("leg_R", "leg", ("hip_R", "root"), (0.1, 0.25, 0.0)),
    _t("foot_R", "leg", ("leg_R", "hip_R", "root"), (0.1, 0.03, 0.1)),
]

FACIAL_PARENTS = ("head", "neck", "spine", "root")
FACIAL_BONES = [
    _t("jaw", "facial", FACIAL_PARENTS, (0.0, 0.88, 0.05), 0.6),
    _t("eye_L", "facial", FACIAL_PARENTS, (-0.03, 0.93, 0.08), 0.4),
    _t("eye_R", "facial", FACIAL_PARENTS, (0.03, 0.93, 0.08), 0.4),
    _t("brow_L", "facial", FACIAL_PARENTS, (-0.03, 0.95, 0.08), 0.4),
    _t("brow_R", "facial", FACIAL_PARENTS, (0.03, 0.95, 0.08), 0.4),
    _t("lip_upper", "facial", ("jaw",) + FACIAL_PARENTS, (0.0, 0.89, 0.1), 0.4),
    _t("lip_lower", "facial", ("jaw",) + FACIAL_PARENTS, (0.0, 0.87, 0.1), 0.4),
    _t("cheek_L", "facial", FACIAL_PARENTS, (-0.04, 0.9, 0.07), 0.3),
    _t("cheek_R", "facial", FACIAL_PARENTS, (0.04, 0.9, 0.07), 0.3),
    _t("nose", "facial", FACIAL_PARENTS, (0.0, 0.91, 0.1), 0.3),
    _t("ear_L", "facial", FACIAL_PARENTS, (-0.06, 0.92, 0.0), 0.3),
    _t("ear_R", "facial", FACIAL_PARENTS, (0.06, 0.92, 0.0), 0.3),
    _t("forehead", "facial", FACIAL_PARENTS, (0.0, 0.97, 0.06), 0.3),
]

FINGERS = ("thumb", "index", "middle", "ring", "pinky")


def _hand_bones() -> List[_BoneTemplate]:
    templates = []
    for side, sign in (("L", -1.0), ("R", 1.0)):
        templates.append(
            _t(f"hand_{side}", "hand", (f"arm_{side}", f"shoulder_{side}", "spine", "root"), (sign * 0.42, 0.55, 0.0), 0.7)
        )
    for side, sign in (("L", -1.0), ("R", 1.0)):
        for finger_index, finger in enumerate(FINGERS):
            spread = (finger_index - 2) * 0.01
            base = f"{finger}_01_{side}"
            templates.append(
                _t(base, "finger", (f"hand_{side}", f"arm_{side}", "root"), (sign * 0.46, 0.53, spread), 0.3)
            )
            templates.append(
                _t(f"{finger}_02_{side}", "finger", (base, f"hand_{side}", "root"), (sign * 0.49, 0.52, spread), 0.2)
            )
    return templates


SPINE_DETAIL_BONES = [
    _t("pelvis", "torso", ("root",), (0.0, 0.47, 0.0), 0.8),
    _t("chest", "torso", ("spine", "root"), (0.0, 0.65, 0.0), 0.8),
    _t("upper_chest", "torso", ("chest", "spine", "root"), (0.0, 0.72, 0.0), 0.7),
    _t("spine_lower", "torso", ("pelvis", "spine", "root"), (0.0, 0.5, 0.0), 0.6),
    _t("spine_mid", "torso", ("spine_lower", "spine", "root"), (0.0, 0.6, 0.0), 0.6),
]


def core_templates(analysis: ContainerAnalysis) -> List[_BoneTemplate]:
    anatomy = analysis.anatomy
    templates: List[_BoneTemplate] = []
    if anatomy.torso:
        templates.extend(TORSO_BONES)
    if anatomy.head:
        templates.extend(HEAD_BONES)
    if anatomy.arms:
        templates.extend(ARM_BONES)
    if anatomy.legs:
        templates.extend(LEG_BONES)
    return templates


def filler_templates(analysis: ContainerAnalysis) -> List[_BoneTemplate]:
    anatomy = analysis.anatomy
    templates: List[_BoneTemplate] = []
    if anatomy.head:
        templates.extend(FACIAL_BONES)
    if anatomy.arms:
        templates.extend(_hand_bones())
    if anatomy.torso:
        templates.extend(SPINE_DETAIL_BONES)
    return templates


def _place(analysis: ContainerAnalysis, offset: Vec3) -> Vec3:
    bbox = analysis.bounding_box
    width, height, depth = bbox.size
    cx, _, cz = bbox.center
    return (
        cx + offset[0] * width,
        bbox.min[1] + offset[1] * height,
        cz + offset[2] * depth,
    )


def _resolve_parent(parents: Tuple[str, ...], emitted: Dict[str, int]) -> int:
    for name in parents:
        if name in emitted:
            return emitted[name]
    return emitted["root"]


def synthesize_bones(analysis: ContainerAnalysis, budget: OptimizedBudget) -> BoneHierarchy:
    """Emit exactly ``budget.bone_count`` bones in priority order."""
    if budget.bone_count < 1:
        raise ValueError("bone_count must be >= 1 to hold a root bone")

    bones: List[Bone] = []
    emitted: Dict[str, int] = {}

    def emit(name: str, kind: str, position: Vec3, parent_id: Optional[int], weight: float) -> None:
        bone = Bone(
            id=len(bones),
            name=name,
            kind=kind,
            position=tuple(float(v) for v in position),
            parent_id=parent_id,
            weight=weight,
        )
        bones.append(bone)
        emitted[name] = bone.id

    emit(ROOT_TEMPLATE.name, ROOT_TEMPLATE.kind, _place(analysis, ROOT_TEMPLATE.offset), None, 1.0)

    for template in core_templates(analysis) + filler_templates(analysis):
        if len(bones) >= budget.bone_count:
            break
        emit(
            template.name,
            template.kind,
            _place(analysis, template.offset),
            _resolve_parent(template.parents, emitted),
            template.weight,
        )

    remaining = budget.bone_count - len(bones)
    if remaining > 0:
        rng = np.random.default_rng([rig_seed(analysis, budget), BONE_STREAM])
        bbox = analysis.bounding_box
        lo = np.asarray(bbox.min, dtype=np.float64)
        size = np.asarray(bbox.size, dtype=np.float64)
        points = lo + rng.random((remaining, 3)) * size
        for index, point in enumerate(points):
            emit(f"extra_{index}", "extra", (point[0], point[1], point[2]), emitted["root"], 0.25)

    return BoneHierarchy(bones)
