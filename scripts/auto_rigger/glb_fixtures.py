"""Builders for small in-memory GLB containers used by the test modules."""

from __future__ import annotations

import struct
from typing import Any, Dict, List, Optional

import numpy as np

from glb_container import GLTF_MAGIC, GLTF_VERSION, append_buffer_view, build_glb

FAKE_PNG = b"\x89PNG\r\n\x1a\n" + bytes(range(256)) * 4


def _split(total: int, parts: int) -> List[int]:
    base, remainder = divmod(total, parts)
    return [base + (1 if index < remainder else 0) for index in range(parts)]


def character_payload(
    vertex_count: int = 2400,
    mesh_count: int = 2,
    size: tuple = (0.5, 1.8, 0.3),
    with_normals: bool = True,
    with_texcoords: bool = True,
    with_image: bool = True,
    seed: int = 7,
) -> tuple:
    """Return (payload, binary_blob) for a box-shaped point cloud split across meshes."""
    rng = np.random.default_rng(seed)
    width, height, depth = size

    payload: Dict[str, Any] = {
        "asset": {"version": "2.0", "generator": "glb_fixtures"},
        "scene": 0,
        "scenes": [{"nodes": []}],
        "nodes": [],
        "meshes": [],
        "accessors": [],
        "bufferViews": [],
        "buffers": [{"byteLength": 0}],
        "materials": [{"name": "Skin", "pbrMetallicRoughness": {"baseColorFactor": [1, 1, 1, 1]}}],
    }
    blob = bytearray()
    accessors = payload["accessors"]
    views = payload["bufferViews"]

    if with_image:
        image_view = append_buffer_view(views, blob, FAKE_PNG)
        payload["images"] = [{"bufferView": image_view, "mimeType": "image/png"}]
        payload["samplers"] = [{}]
        payload["textures"] = [{"source": 0, "sampler": 0}]
        payload["materials"][0]["pbrMetallicRoughness"]["baseColorTexture"] = {"index": 0}

    counts = _split(vertex_count, mesh_count) if mesh_count else []
    for mesh_index, count in enumerate(counts):
        if count == 0:
            continue
        low = np.asarray([-width / 2, 0.0, -depth / 2])
        positions = (low + rng.random((count, 3)) * np.asarray(size)).astype("<f4")
        attributes: Dict[str, int] = {}

        view = append_buffer_view(views, blob, positions.tobytes())
        accessors.append(
            {
                "bufferView": view,
                "componentType": 5126,
                "count": count,
                "type": "VEC3",
                "min": [float(v) for v in positions.min(axis=0)],
                "max": [float(v) for v in positions.max(axis=0)],
            }
        )
        attributes["POSITION"] = len(accessors) - 1

        if with_normals:
            normals = np.tile(np.asarray([0.0, 0.0, 1.0], dtype="<f4"), (count, 1))
            view = append_buffer_view(views, blob, normals.tobytes())
            accessors.append({"bufferView": view, "componentType": 5126, "count": count, "type": "VEC3"})
            attributes["NORMAL"] = len(accessors) - 1

        if with_texcoords:
            uvs = rng.random((count, 2)).astype("<f4")
            view = append_buffer_view(views, blob, uvs.tobytes())
            accessors.append({"bufferView": view, "componentType": 5126, "count": count, "type": "VEC2"})
            attributes["TEXCOORD_0"] = len(accessors) - 1

        payload["meshes"].append(
            {"name": f"body_part_{mesh_index}", "primitives": [{"attributes": attributes, "material": 0}]}
        )
        payload["nodes"].append({"name": f"body_part_{mesh_index}", "mesh": len(payload["meshes"]) - 1})
        payload["scenes"][0]["nodes"].append(len(payload["nodes"]) - 1)

    payload["buffers"][0]["byteLength"] = len(blob)
    return payload, bytes(blob)


def character_glb(**kwargs: Any) -> bytes:
    payload, blob = character_payload(**kwargs)
    return build_glb(payload, blob)


def glb_with_extra_chunk(chunk_type: int = 0x12345678, extra: bytes = b"XTRA") -> bytes:
    base = bytearray(character_glb(vertex_count=300, mesh_count=1))
    base += struct.pack("<II", len(extra), chunk_type) + extra
    struct.pack_into("<I", base, 8, len(base))
    return bytes(base)


def raw_glb(json_bytes: bytes, bin_bytes: Optional[bytes] = None, declared_length: Optional[int] = None) -> bytes:
    """Assemble a GLB without any validation, for malformed-input tests."""
    body = struct.pack("<II", len(json_bytes), 0x4E4F534A) + json_bytes
    if bin_bytes is not None:
        body += struct.pack("<II", len(bin_bytes), 0x004E4942) + bin_bytes
    total = 12 + len(body) if declared_length is None else declared_length
    return struct.pack("<III", GLTF_MAGIC, GLTF_VERSION, total) + body
