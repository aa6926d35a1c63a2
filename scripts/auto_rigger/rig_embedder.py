"""
rig_embedder.py
===============

Writes a synthesized rig back into a GLB.

Two strategies:

structural
  Deep-copies the JSON payload, appends bone nodes, an inverse-bind-matrix
  accessor, a skin, skin weights and per-primitive morph targets, and
  extends the BIN chunk. Original BIN bytes stay a prefix of the new BIN
  chunk, so textures and geometry are untouched.

append
  Copies the original bytes unmodified, pads to 4 bytes and appends a
  self-contained rig block plus a fixed-size trailer:

    "RIGD" version(u32) header_len(u32) header JSON (space padded)
    bone records    <16f3f4fIif   bind matrix, position, rotation, id, parent (-1 root), weight
    per morph       vertex deltas (V*3 f32), normal deltas (V*3 f32), per bone <4f> influence + axis
    trailer         <4sIQQ        "RIGT", version, block offset, block length
"""

from __future__ import annotations

import copy
import json
import logging
import struct
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np

from bone_synthesizer import BoneHierarchy
from glb_container import (
    GlbDocument,
    GlbParseError,
    SerializationInvariantError,
    align4,
    append_buffer_view,
    build_glb,
    ensure_buffer_structures,
    list_of_dicts,
    parse_glb,
)
from morph_synthesizer import MorphTarget

STRUCTURAL = "structural"
APPEND = "append"

SKIN_NAME = "AutoRigSkin"

RIG_BLOCK_MAGIC = b"RIGD"
RIG_TRAILER_MAGIC = b"RIGT"
RIG_FORMAT_VERSION = 1

BONE_RECORD = struct.Struct("<16f3f4fIif")
INFLUENCE_RECORD = struct.Struct("<4f")
TRAILER = struct.Struct("<4sIQQ")
BLOCK_PREFIX = struct.Struct("<4sII")

SAFE_EXTENSION_PREFIXES = ("KHR_materials_", "KHR_texture_", "EXT_texture_")
SAFE_EXTENSIONS = {"KHR_lights_punctual"}

COMPONENT_FLOAT = 5126
COMPONENT_UNSIGNED_SHORT = 5123
TARGET_ARRAY_BUFFER = 34962

WEIGHT_CHUNK_VERTICES = 16384

# Influence of a bone kind on each morph category.
CATEGORY_INFLUENCE = {
    "facial": {"head": 1.0, "facial": 1.0},
    "body": {"torso": 1.0, "arm": 0.8, "leg": 0.8, "hand": 0.5, "finger": 0.3},
}
DEFAULT_INFLUENCE = 0.1
CORRECTIVE_INFLUENCE = 0.5


class RigBlockError(ValueError):
    pass


@dataclass(frozen=True)
class EmbedOutcome:
    rigged_bytes: bytes
    strategy: str
    reason: str
    notes: Tuple[str, ...] = ()


@dataclass(frozen=True)
class AppendedRig:
    header: Dict[str, Any]
    block_offset: int
    block_length: int
    bone_records: Tuple[Tuple[Any, ...], ...]

    @property
    def bone_count(self) -> int:
        return int(self.header.get("bone_count", 0))

    @property
    def morph_count(self) -> int:
        return int(self.header.get("morph_count", 0))


def _extension_is_safe(name: str) -> bool:
    return name in SAFE_EXTENSIONS or name.startswith(SAFE_EXTENSION_PREFIXES)


def choose_strategy(document: Optional[GlbDocument]) -> Tuple[str, str]:
    """Return (strategy, reason)."""
    if document is None:
        return APPEND, "container could not be parsed"
    if document.unknown_chunks:
        return APPEND, f"{len(document.unknown_chunks)} unknown chunk(s) present"
    if document.trailing_bytes:
        return APPEND, f"{document.trailing_bytes} trailing byte(s) after container"

    payload = document.payload
    for key in ("extensionsUsed", "extensionsRequired"):
        names = payload.get(key)
        if names is None:
            continue
        if not isinstance(names, list):
            return APPEND, f"{key} is malformed"
        for name in names:
            if not isinstance(name, str) or not _extension_is_safe(name):
                return APPEND, f"unrecognized extension {name!r}"

    for buffer in list_of_dicts(payload, "buffers"):
        if "uri" in buffer:
            return APPEND, "buffer references an external or data URI"

    if not _scene_graph_is_writable(payload):
        return APPEND, "scene graph is malformed"

    return STRUCTURAL, "container parsed cleanly"


def _scene_graph_is_writable(payload: Dict[str, Any]) -> bool:
    for key in ("nodes", "meshes", "accessors", "bufferViews", "skins"):
        if not isinstance(payload.get(key, []), list):
            return False

    scenes = payload.get("scenes", [])
    if not isinstance(scenes, list) or not all(isinstance(scene, dict) for scene in scenes):
        return False
    if "scene" in payload or scenes:
        index = payload.get("scene", 0)
        if not isinstance(index, int) or isinstance(index, bool):
            return False
        if scenes and not 0 <= index < len(scenes):
            return False
        if scenes and not isinstance(scenes[index].get("nodes", []), list):
            return False
    return True


def bind_matrix(position: Sequence[float]) -> List[float]:
    """Column-major world bind matrix for a bone with identity rotation."""
    x, y, z = position
    return [1.0, 0.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 0.0, 1.0, 0.0, x, y, z, 1.0]


def inverse_bind_matrix(position: Sequence[float]) -> List[float]:
    x, y, z = position
    return bind_matrix((-x, -y, -z))


def _bone_positions(bones: BoneHierarchy) -> np.ndarray:
    if len(bones) == 0:
        return np.zeros((0, 3), dtype=np.float64)
    return np.asarray([bone.position for bone in bones], dtype=np.float64)


def skin_weights(positions: np.ndarray, bone_positions: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """Two nearest bones per vertex, weighted by inverse distance."""
    vertex_count = positions.shape[0]
    joints = np.zeros((vertex_count, 4), dtype=np.uint16)
    weights = np.zeros((vertex_count, 4), dtype=np.float32)
    if vertex_count == 0:
        return joints, weights

    bone_count = bone_positions.shape[0]
    if bone_count == 1:
        weights[:, 0] = 1.0
        return joints, weights

    for start in range(0, vertex_count, WEIGHT_CHUNK_VERTICES):
        chunk = positions[start:start + WEIGHT_CHUNK_VERTICES]
        distances = np.linalg.norm(chunk[:, None, :] - bone_positions[None, :, :], axis=2)
        nearest = np.argsort(distances, axis=1, kind="stable")[:, :2]
        nearest_distances = np.take_along_axis(distances, nearest, axis=1)
        inverse = 1.0 / np.maximum(nearest_distances, 1e-6)
        normalized = inverse / inverse.sum(axis=1, keepdims=True)

        joints[start:start + len(chunk), :2] = nearest.astype(np.uint16)
        weights[start:start + len(chunk), :2] = normalized.astype(np.float32)

    # Rows must sum to 1 after the float32 cast.
    weights[:, 1] = 1.0 - weights[:, 0]
    return joints, weights


def _read_positions(
    payload: Dict[str, Any],
    binary_blob: bytes,
    accessor_index: Any,
) -> Optional[np.ndarray]:
    """Decode a float VEC3 accessor from the BIN chunk, or None when it is not plain data."""
    accessors = list_of_dicts(payload, "accessors")
    views = list_of_dicts(payload, "bufferViews")
    if not isinstance(accessor_index, int) or isinstance(accessor_index, bool):
        return None
    if not 0 <= accessor_index < len(accessors):
        return None

    accessor = accessors[accessor_index]
    if accessor.get("componentType") != COMPONENT_FLOAT or accessor.get("type") != "VEC3":
        return None
    if "sparse" in accessor:
        return None
    count = accessor.get("count")
    view_index = accessor.get("bufferView")
    if not isinstance(count, int) or count < 0:
        return None
    if not isinstance(view_index, int) or not 0 <= view_index < len(views):
        return None

    view = views[view_index]
    if view.get("buffer", 0) != 0:
        return None
    view_offset = view.get("byteOffset", 0)
    view_length = view.get("byteLength")
    accessor_offset = accessor.get("byteOffset", 0)
    stride = view.get("byteStride", 12)
    if not all(isinstance(v, int) and v >= 0 for v in (view_offset, view_length, accessor_offset, stride)):
        return None
    if stride < 12 or stride % 4:
        return None

    if count == 0:
        return np.zeros((0, 3), dtype=np.float64)

    start = view_offset + accessor_offset
    end = start + stride * (count - 1) + 12
    if end > view_offset + view_length or end > len(binary_blob):
        return None

    array = np.ndarray(
        shape=(count, 3),
        dtype="<f4",
        buffer=binary_blob,
        offset=start,
        strides=(stride, 4),
    )
    return array.astype(np.float64)


def _add_accessor(
    accessors: List[Dict[str, Any]],
    buffer_views: List[Dict[str, Any]],
    binary_blob: bytearray,
    array: np.ndarray,
    component_type: int,
    accessor_type: str,
    with_bounds: bool = False,
    target: Optional[int] = None,
) -> int:
    view_index = append_buffer_view(buffer_views, binary_blob, array.tobytes(), target=target)

    accessor: Dict[str, Any] = {
        "bufferView": view_index,
        "componentType": component_type,
        "count": int(array.shape[0]),
        "type": accessor_type,
    }
    if with_bounds and array.shape[0] > 0:
        accessor["min"] = [float(v) for v in array.min(axis=0)]
        accessor["max"] = [float(v) for v in array.max(axis=0)]
    elif with_bounds:
        accessor["min"] = [0.0, 0.0, 0.0]
        accessor["max"] = [0.0, 0.0, 0.0]
    accessors.append(accessor)
    return len(accessors) - 1


def _mutable_list(payload: Dict[str, Any], key: str) -> List[Any]:
    value = payload.get(key)
    if not isinstance(value, list):
        value = []
        payload[key] = value
    return value


def _add_bone_nodes(payload: Dict[str, Any], bones: BoneHierarchy) -> List[int]:
    nodes = _mutable_list(payload, "nodes")
    offset = len(nodes)

    for bone in bones:
        if bone.parent_id is None:
            translation = list(bone.position)
        else:
            parent = bones[bone.parent_id].position
            translation = [bone.position[axis] - parent[axis] for axis in range(3)]

        node: Dict[str, Any] = {
            "name": bone.name,
            "translation": translation,
            "rotation": list(bone.rotation),
        }
        children = [offset + child.id for child in bones.children_of(bone.id)]
        if children:
            node["children"] = children
        nodes.append(node)

    scenes = _mutable_list(payload, "scenes")
    if not scenes:
        scenes.append({"nodes": []})
        payload["scene"] = 0
    scene = scenes[payload.get("scene", 0)]
    scene.setdefault("nodes", []).append(offset + bones.root.id)

    return [offset + bone.id for bone in bones]


def _attach_morph_targets(
    mesh: Dict[str, Any],
    primitive_ranges: List[Tuple[Dict[str, Any], int, int]],
    morphs: List[MorphTarget],
    accessors: List[Dict[str, Any]],
    buffer_views: List[Dict[str, Any]],
    binary_blob: bytearray,
) -> bool:
    """Add one POSITION target per morph to each primitive in *primitive_ranges*.

    Meshes that already carry targets anywhere are left alone and False is returned.
    """
    for primitive in mesh.get("primitives", []):
        if isinstance(primitive, dict) and primitive.get("targets"):
            return False

    for primitive, start, end in primitive_ranges:
        targets = []
        for morph in morphs:
            deltas = np.ascontiguousarray(morph.vertex_deltas[start:end], dtype="<f4")
            accessor_index = _add_accessor(
                accessors,
                buffer_views,
                binary_blob,
                deltas,
                COMPONENT_FLOAT,
                "VEC3",
                with_bounds=True,
            )
            targets.append({"POSITION": accessor_index})
        primitive["targets"] = targets

    names = [morph.name for morph in morphs]
    weights = mesh.get("weights")
    if isinstance(weights, list):
        weights.extend(morph.weight for morph in morphs)
    else:
        mesh["weights"] = [morph.weight for morph in morphs]
    extras = mesh.setdefault("extras", {})
    if isinstance(extras, dict):
        extras["targetNames"] = names
    return True


def _embed_structural(
    document: GlbDocument,
    bones: BoneHierarchy,
    morphs: List[MorphTarget],
) -> Tuple[bytes, Dict[str, Any]]:
    payload = copy.deepcopy(document.payload)
    original_bin = document.bin_chunk
    binary_blob = bytearray(original_bin)
    buffer_views = ensure_buffer_structures(payload, len(binary_blob))
    accessors = _mutable_list(payload, "accessors")

    joint_nodes = _add_bone_nodes(payload, bones)

    inverse_bind = np.asarray([inverse_bind_matrix(bone.position) for bone in bones], dtype="<f4")
    ibm_accessor = _add_accessor(accessors, buffer_views, binary_blob, inverse_bind, COMPONENT_FLOAT, "MAT4")

    skins = _mutable_list(payload, "skins")
    skins.append(
        {
            "name": SKIN_NAME,
            "joints": joint_nodes,
            "inverseBindMatrices": ibm_accessor,
            "skeleton": joint_nodes[bones.root.id],
        }
    )
    skin_index = len(skins) - 1

    bone_positions = _bone_positions(bones)
    vertex_cursor = 0
    skinned_meshes: List[int] = []
    morphed_meshes: List[int] = []
    unmorphed_meshes: List[int] = []
    delta_length = _delta_length(morphs)
    meshes = payload.get("meshes", [])

    for mesh_index, mesh in enumerate(meshes):
        if not isinstance(mesh, dict):
            continue
        primitives = mesh.get("primitives")
        if not isinstance(primitives, list):
            continue

        decoded: List[Tuple[Dict[str, Any], Optional[np.ndarray], int]] = []
        for primitive in primitives:
            if not isinstance(primitive, dict) or not isinstance(primitive.get("attributes"), dict):
                continue
            attributes = primitive["attributes"]
            accessor_index = attributes.get("POSITION")
            positions = _read_positions(payload, original_bin, accessor_index)
            count = positions.shape[0] if positions is not None else _declared_count(accessors, accessor_index)
            decoded.append((primitive, positions, count))

        ranges = []
        for primitive, _, count in decoded:
            ranges.append((primitive, vertex_cursor, vertex_cursor + count))
            vertex_cursor += count

        populated = [item for item in decoded if item[2] > 0]
        weightable = bool(populated) and all(
            positions is not None and "JOINTS_0" not in primitive["attributes"]
            for primitive, positions, _ in populated
        )
        if weightable:
            for primitive, positions, _ in populated:
                joints, weights = skin_weights(positions, bone_positions)
                attributes = primitive["attributes"]
                attributes["JOINTS_0"] = _add_accessor(
                    accessors, buffer_views, binary_blob, joints, COMPONENT_UNSIGNED_SHORT, "VEC4",
                    target=TARGET_ARRAY_BUFFER,
                )
                attributes["WEIGHTS_0"] = _add_accessor(
                    accessors, buffer_views, binary_blob, weights, COMPONENT_FLOAT, "VEC4",
                    target=TARGET_ARRAY_BUFFER,
                )
            skinned_meshes.append(mesh_index)

        # Primitives without vertices cannot hold POSITION targets.
        morph_ranges = [item for item in ranges if item[1] < item[2] <= delta_length]
        if morph_ranges:
            if _attach_morph_targets(mesh, morph_ranges, morphs, accessors, buffer_views, binary_blob):
                morphed_meshes.append(mesh_index)
            else:
                logging.debug("Mesh %d already has morph targets; leaving them untouched", mesh_index)
                unmorphed_meshes.append(mesh_index)

    for node in _mutable_list(payload, "nodes"):
        if isinstance(node, dict) and node.get("mesh") in skinned_meshes and "skin" not in node:
            node["skin"] = skin_index

    pad = align4(len(binary_blob)) - len(binary_blob)
    if pad:
        binary_blob.extend(b"\x00" * pad)
    payload["buffers"][0]["byteLength"] = len(binary_blob)

    metadata = {
        "version": RIG_FORMAT_VERSION,
        "strategy": STRUCTURAL,
        "skin": skin_index,
        "boneCount": len(bones),
        "morphCount": len(morphs),
        "skinnedMeshes": skinned_meshes,
        "morphedMeshes": morphed_meshes,
        "unmorphedMeshes": unmorphed_meshes,
        "morphTargets": [{"name": m.name, "category": m.category} for m in morphs],
    }
    extras = payload.setdefault("extras", {})
    if isinstance(extras, dict):
        extras["autoRig"] = metadata

    return build_glb(payload, bytes(binary_blob)), metadata


def _declared_count(accessors: List[Any], index: Any) -> int:
    if not isinstance(index, int) or isinstance(index, bool) or not 0 <= index < len(accessors):
        return 0
    accessor = accessors[index]
    count = accessor.get("count") if isinstance(accessor, dict) else None
    return count if isinstance(count, int) and not isinstance(count, bool) and count >= 0 else 0


def _delta_length(morphs: List[MorphTarget]) -> int:
    return morphs[0].vertex_count if morphs else 0


def _morph_influences(morph: MorphTarget, bones: BoneHierarchy) -> bytes:
    mean = morph.vertex_deltas.mean(axis=0) if morph.vertex_count else np.zeros(3, dtype=np.float32)
    norm = float(np.linalg.norm(mean))
    axis = (mean / norm) if norm > 0 else np.asarray([0.0, 1.0, 0.0])

    out = bytearray()
    for bone in bones:
        if morph.category == "corrective":
            influence = CORRECTIVE_INFLUENCE
        else:
            influence = CATEGORY_INFLUENCE.get(morph.category, {}).get(bone.kind, DEFAULT_INFLUENCE)
        out += INFLUENCE_RECORD.pack(influence * bone.weight, float(axis[0]), float(axis[1]), float(axis[2]))
    return bytes(out)


def build_rig_block(
    bones: BoneHierarchy,
    morphs: List[MorphTarget],
    original_length: int,
    reason: str,
) -> bytes:
    vertex_count = _delta_length(morphs)
    header = {
        "format": "autorig",
        "version": RIG_FORMAT_VERSION,
        "original_length": original_length,
        "reason": reason,
        "bone_count": len(bones),
        "morph_count": len(morphs),
        "vertex_count": vertex_count,
        "bone_record_size": BONE_RECORD.size,
        "bones": [{"name": b.name, "kind": b.kind} for b in bones],
        "morphs": [{"name": m.name, "category": m.category, "weight": m.weight} for m in morphs],
    }
    header_bytes = json.dumps(header, separators=(",", ":")).encode("utf-8")
    header_bytes += b" " * (align4(len(header_bytes)) - len(header_bytes))

    block = bytearray(BLOCK_PREFIX.pack(RIG_BLOCK_MAGIC, RIG_FORMAT_VERSION, len(header_bytes)))
    block += header_bytes

    for bone in bones:
        parent = -1 if bone.parent_id is None else bone.parent_id
        block += BONE_RECORD.pack(
            *bind_matrix(bone.position),
            *bone.position,
            *bone.rotation,
            bone.id,
            parent,
            bone.weight,
        )

    for morph in morphs:
        block += np.ascontiguousarray(morph.vertex_deltas, dtype="<f4").tobytes()
        block += np.ascontiguousarray(morph.normal_deltas, dtype="<f4").tobytes()
        block += _morph_influences(morph, bones)

    return bytes(block)


def _embed_append(
    original_bytes: bytes,
    bones: BoneHierarchy,
    morphs: List[MorphTarget],
    reason: str,
) -> bytes:
    out = bytearray(original_bytes)
    out += b"\x00" * (align4(len(out)) - len(out))
    block_offset = len(out)
    block = build_rig_block(bones, morphs, len(original_bytes), reason)
    out += block
    out += TRAILER.pack(RIG_TRAILER_MAGIC, RIG_FORMAT_VERSION, block_offset, len(block))
    return bytes(out)


def read_appended_rig(data: bytes) -> AppendedRig:
    """Locate and decode the rig block written by the append strategy."""
    if len(data) < TRAILER.size:
        raise RigBlockError("Data too small to hold a rig trailer")

    magic, version, block_offset, block_length = TRAILER.unpack_from(data, len(data) - TRAILER.size)
    if magic != RIG_TRAILER_MAGIC:
        raise RigBlockError("Rig trailer not found")
    if version != RIG_FORMAT_VERSION:
        raise RigBlockError(f"Unsupported rig format version: {version}")
    if block_offset + block_length > len(data) - TRAILER.size:
        raise RigBlockError("Rig block exceeds data length")

    block_magic, _, header_length = BLOCK_PREFIX.unpack_from(data, block_offset)
    if block_magic != RIG_BLOCK_MAGIC:
        raise RigBlockError("Rig block magic mismatch")

    header_start = block_offset + BLOCK_PREFIX.size
    header_end = header_start + header_length
    if header_end > block_offset + block_length:
        raise RigBlockError("Rig header exceeds block length")
    try:
        header = json.loads(bytes(data[header_start:header_end]).decode("utf-8").rstrip(" "))
    except (UnicodeDecodeError, ValueError) as exc:
        raise RigBlockError(f"Rig header is not valid JSON: {exc}") from exc
    if not isinstance(header, dict):
        raise RigBlockError("Rig header is not an object")

    bone_count = int(header.get("bone_count", 0))
    records_end = header_end + bone_count * BONE_RECORD.size
    if records_end > block_offset + block_length:
        raise RigBlockError("Bone records exceed block length")

    records = tuple(
        BONE_RECORD.unpack_from(data, header_end + index * BONE_RECORD.size) for index in range(bone_count)
    )
    return AppendedRig(
        header=header,
        block_offset=block_offset,
        block_length=block_length,
        bone_records=records,
    )


def _verify(original_bytes: bytes, rigged: bytes, strategy: str, document: Optional[GlbDocument]) -> None:
    if len(rigged) < len(original_bytes):
        raise SerializationInvariantError(
            f"Rigged output ({len(rigged)} bytes) is smaller than the original ({len(original_bytes)} bytes)"
        )

    if strategy == APPEND:
        if rigged[: len(original_bytes)] != original_bytes:
            raise SerializationInvariantError("Appended output does not preserve the original bytes")
        try:
            read_appended_rig(rigged)
        except RigBlockError as exc:
            raise SerializationInvariantError(f"Appended rig block is unreadable: {exc}") from exc
        return

    try:
        reparsed = parse_glb(rigged)
    except GlbParseError as exc:
        raise SerializationInvariantError(f"Rigged container does not re-parse: {exc}") from exc

    original_bin = document.bin_chunk if document is not None else b""
    if reparsed.bin_chunk[: len(original_bin)] != original_bin:
        raise SerializationInvariantError("Structural rewrite altered original binary payload")


def embed_rig(
    original_bytes: bytes,
    document: Optional[GlbDocument],
    bones: BoneHierarchy,
    morphs: List[MorphTarget],
) -> EmbedOutcome:
    strategy, reason = choose_strategy(document)
    notes: List[str] = []

    if strategy == STRUCTURAL:
        rigged, metadata = _embed_structural(document, bones, morphs)
        if len(rigged) < len(original_bytes):
            # Compact JSON can shrink a padded or pretty-printed source container.
            strategy, reason = APPEND, "structural output smaller than original"
            logging.info("Structural rewrite shrank the container; using safe append")
        elif _delta_length(morphs) and not metadata["morphedMeshes"]:
            strategy, reason = APPEND, "no mesh could take the morph targets"
            logging.info("No mesh accepted the morph targets; using safe append")
        elif metadata["unmorphedMeshes"]:
            notes.append(
                "morph targets not attached to mesh(es) "
                + ", ".join(str(index) for index in metadata["unmorphedMeshes"])
            )

    if strategy == APPEND:
        rigged = _embed_append(original_bytes, bones, morphs, reason)

    _verify(original_bytes, rigged, strategy, document)
    logging.debug("Embedded rig via %s strategy (%s)", strategy, reason)
    return EmbedOutcome(rigged_bytes=rigged, strategy=strategy, reason=reason, notes=tuple(notes))
