"""
glb_container.py
================

Bounds-checked reader/writer for binary glTF 2.0 containers (GLB).

Layout (little-endian):
  header      magic(4) version(4) total_length(4)
  chunk 0     length(4) type(4) JSON payload, space padded to 4 bytes
  chunk 1     length(4) type(4) BIN payload, zero padded to 4 bytes (optional)

Every chunk length is checked against the declared total before slicing.
"""

from __future__ import annotations

import json
import struct
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

GLTF_MAGIC = 0x46546C67
GLTF_VERSION = 2
JSON_CHUNK_TYPE = 0x4E4F534A
BIN_CHUNK_TYPE = 0x004E4942

HEADER_SIZE = 12
CHUNK_HEADER_SIZE = 8


class GlbParseError(ValueError):
    pass


class GlbTooSmallError(GlbParseError):
    pass


class SerializationInvariantError(RuntimeError):
    pass


@dataclass(frozen=True)
class GlbDocument:
    payload: Dict[str, Any]
    bin_chunk: bytes = b""
    version: int = GLTF_VERSION
    declared_length: int = 0
    unknown_chunks: Tuple[int, ...] = ()
    trailing_bytes: int = 0
    notes: Tuple[str, ...] = ()


def align4(value: int) -> int:
    return (value + 3) & ~3


def looks_like_glb(data: bytes) -> bool:
    if len(data) < HEADER_SIZE + CHUNK_HEADER_SIZE:
        return False
    magic, version, total_length = struct.unpack_from("<III", data, 0)
    if magic != GLTF_MAGIC or version != GLTF_VERSION:
        return False
    return 0 < total_length <= len(data)


def parse_glb(data: bytes) -> GlbDocument:
    """Parse *data* into a GlbDocument or raise GlbParseError."""
    if len(data) < HEADER_SIZE:
        raise GlbTooSmallError(f"GLB too small: {len(data)} bytes")

    magic, version, total_length = struct.unpack_from("<III", data, 0)
    if magic != GLTF_MAGIC:
        raise GlbParseError(f"Invalid GLB magic: 0x{magic:08X}")
    if version != GLTF_VERSION:
        raise GlbParseError(f"Unsupported GLB version: {version}")
    if total_length > len(data):
        raise GlbParseError(f"GLB truncated: header declares {total_length} bytes, got {len(data)}")
    if total_length < HEADER_SIZE + CHUNK_HEADER_SIZE:
        raise GlbParseError(f"GLB declared length too small: {total_length}")

    offset = HEADER_SIZE
    json_chunk: Optional[bytes] = None
    bin_chunk = b""
    unknown_chunks: List[int] = []
    notes: List[str] = []

    while offset + CHUNK_HEADER_SIZE <= total_length:
        chunk_len, chunk_type = struct.unpack_from("<II", data, offset)
        offset += CHUNK_HEADER_SIZE
        chunk_end = offset + chunk_len
        if chunk_end > total_length:
            raise GlbParseError(
                f"GLB chunk 0x{chunk_type:08X} exceeds declared length ({chunk_end} > {total_length})"
            )

        if json_chunk is None:
            if chunk_type != JSON_CHUNK_TYPE:
                raise GlbParseError(f"First GLB chunk must be JSON, got 0x{chunk_type:08X}")
            json_chunk = data[offset:chunk_end]
        elif chunk_type == BIN_CHUNK_TYPE and not bin_chunk and not unknown_chunks:
            bin_chunk = bytes(data[offset:chunk_end])
        else:
            unknown_chunks.append(chunk_type)
        offset = chunk_end

    if json_chunk is None:
        raise GlbParseError("GLB missing JSON chunk")
    if offset != total_length:
        notes.append(f"{total_length - offset} stray byte(s) before declared end")

    try:
        text = bytes(json_chunk).decode("utf-8").rstrip(" \t\r\n\x00")
        payload = json.loads(text)
    except (UnicodeDecodeError, ValueError) as exc:
        raise GlbParseError(f"GLB JSON chunk is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise GlbParseError("GLB JSON root is not an object")

    return GlbDocument(
        payload=payload,
        bin_chunk=bin_chunk,
        version=version,
        declared_length=total_length,
        unknown_chunks=tuple(unknown_chunks),
        trailing_bytes=len(data) - total_length,
        notes=tuple(notes),
    )


def build_glb(payload: Dict[str, Any], binary_blob: bytes) -> bytes:
    json_bytes = json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    json_pad = align4(len(json_bytes)) - len(json_bytes)
    if json_pad:
        json_bytes += b" " * json_pad

    bin_pad = align4(len(binary_blob)) - len(binary_blob)
    if bin_pad:
        binary_blob = bytes(binary_blob) + b"\x00" * bin_pad

    total_length = HEADER_SIZE + CHUNK_HEADER_SIZE + len(json_bytes)
    if binary_blob:
        total_length += CHUNK_HEADER_SIZE + len(binary_blob)

    out = bytearray()
    out += struct.pack("<III", GLTF_MAGIC, GLTF_VERSION, total_length)
    out += struct.pack("<II", len(json_bytes), JSON_CHUNK_TYPE)
    out += json_bytes
    if binary_blob:
        out += struct.pack("<II", len(binary_blob), BIN_CHUNK_TYPE)
        out += binary_blob

    _check_total_length(out)
    return bytes(out)


def serialize_glb(document: GlbDocument) -> bytes:
    """Re-emit *document* as GLB bytes.

    The BIN chunk is copied as-is when it is already 4-byte aligned, so
    untouched binary payloads round-trip byte-for-byte.
    """
    return build_glb(document.payload, document.bin_chunk)


def _check_total_length(out: bytearray) -> None:
    declared = struct.unpack_from("<I", out, 8)[0]
    if declared != len(out):
        raise SerializationInvariantError(
            f"GLB header declares {declared} bytes but buffer holds {len(out)}"
        )
    if len(out) % 4:
        raise SerializationInvariantError(f"GLB length {len(out)} is not 4-byte aligned")


def ensure_buffer_structures(payload: Dict[str, Any], bin_len: int) -> List[Dict[str, Any]]:
    """Point buffer 0 at the embedded BIN chunk and return the bufferViews list.

    Callers update buffers[0].byteLength again once they finish appending.
    """
    buffers = payload.get("buffers")
    if not isinstance(buffers, list):
        buffers = []
        payload["buffers"] = buffers
    if not buffers or not isinstance(buffers[0], dict):
        buffers[:1] = [{}]
    buffers[0]["byteLength"] = bin_len

    views = payload.get("bufferViews")
    if not isinstance(views, list):
        views = []
        payload["bufferViews"] = views
    return views


def append_buffer_view(
    buffer_views: List[Dict[str, Any]],
    binary_blob: bytearray,
    data: bytes,
    target: Optional[int] = None,
) -> int:
    # Accessor offsets must stay 4-byte aligned for float and uint32 data.
    binary_blob.extend(b"\x00" * (align4(len(binary_blob)) - len(binary_blob)))
    view: Dict[str, Any] = {"buffer": 0, "byteOffset": len(binary_blob), "byteLength": len(data)}
    if target is not None:
        view["target"] = target
    binary_blob.extend(data)
    buffer_views.append(view)
    return len(buffer_views) - 1


def list_of_dicts(payload: Dict[str, Any], key: str) -> List[Dict[str, Any]]:
    """Return payload[key] when it is a list, with non-object entries replaced by {}."""
    value = payload.get(key)
    if not isinstance(value, list):
        return []
    return [item if isinstance(item, dict) else {} for item in value]
