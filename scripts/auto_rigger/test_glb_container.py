#!/usr/bin/env python3
import json
import struct
import unittest
from pathlib import Path
import sys


SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

import glb_container as container
import glb_fixtures as fixtures
from structure_analyzer import analyze_document


class ParseGlbTests(unittest.TestCase):
    def test_parses_json_and_bin_chunks(self) -> None:
        payload, blob = fixtures.character_payload(vertex_count=120, mesh_count=1)
        data = container.build_glb(payload, blob)

        document = container.parse_glb(data)

        self.assertEqual(document.version, 2)
        self.assertEqual(document.declared_length, len(data))
        self.assertEqual(document.payload["asset"]["version"], "2.0")
        self.assertEqual(document.bin_chunk[: len(blob)], blob)
        self.assertEqual(document.unknown_chunks, ())
        self.assertEqual(document.trailing_bytes, 0)

    def test_too_small_input_raises_too_small(self) -> None:
        with self.assertRaises(container.GlbTooSmallError):
            container.parse_glb(b"glTF\x02\x00")

    def test_wrong_magic_raises_parse_error(self) -> None:
        data = bytearray(fixtures.character_glb(vertex_count=30, mesh_count=1))
        data[0:4] = b"NOPE"
        with self.assertRaises(container.GlbParseError) as ctx:
            container.parse_glb(bytes(data))
        self.assertNotIsInstance(ctx.exception, container.GlbTooSmallError)

    def test_unsupported_version_raises(self) -> None:
        data = bytearray(fixtures.character_glb(vertex_count=30, mesh_count=1))
        struct.pack_into("<I", data, 4, 1)
        with self.assertRaises(container.GlbParseError):
            container.parse_glb(bytes(data))

    def test_declared_length_beyond_buffer_raises(self) -> None:
        data = fixtures.raw_glb(b'{"asset":{"version":"2.0"}}  ', declared_length=4096)
        with self.assertRaises(container.GlbParseError):
            container.parse_glb(data)

    def test_chunk_overrunning_declared_length_raises(self) -> None:
        json_bytes = b'{"asset":{"version":"2.0"}}  '
        data = bytearray(fixtures.raw_glb(json_bytes))
        struct.pack_into("<I", data, 12, len(json_bytes) + 64)
        with self.assertRaises(container.GlbParseError):
            container.parse_glb(bytes(data))

    def test_first_chunk_must_be_json(self) -> None:
        data = bytearray(fixtures.raw_glb(b'{"asset":{"version":"2.0"}}  '))
        struct.pack_into("<I", data, 16, 0x004E4942)
        with self.assertRaises(container.GlbParseError):
            container.parse_glb(bytes(data))

    def test_invalid_json_raises(self) -> None:
        with self.assertRaises(container.GlbParseError):
            container.parse_glb(fixtures.raw_glb(b"{not json}  "))

    def test_json_root_must_be_object(self) -> None:
        with self.assertRaises(container.GlbParseError):
            container.parse_glb(fixtures.raw_glb(b"[1, 2, 3]   "))

    def test_unknown_chunks_are_recorded(self) -> None:
        document = container.parse_glb(fixtures.glb_with_extra_chunk(chunk_type=0x41424344))
        self.assertEqual(document.unknown_chunks, (0x41424344,))
        self.assertGreater(len(document.bin_chunk), 0)

    def test_trailing_bytes_are_kept_not_rejected(self) -> None:
        data = fixtures.character_glb(vertex_count=30, mesh_count=1) + b"tail-data"
        document = container.parse_glb(data)
        self.assertEqual(document.trailing_bytes, len(b"tail-data"))

    def test_stray_bytes_are_noted_immutably(self) -> None:
        json_bytes = b'{"asset":{"version":"2.0"}}'
        declared = 12 + 8 + len(json_bytes) + 4
        data = fixtures.raw_glb(json_bytes, declared_length=declared) + b"\x00" * 4

        document = container.parse_glb(data)

        self.assertEqual(document.notes, ("4 stray byte(s) before declared end",))
        self.assertIsInstance(document.notes, tuple)
        self.assertEqual(container.parse_glb(fixtures.character_glb(vertex_count=10, mesh_count=1)).notes, ())

    def test_json_padding_with_nulls_is_tolerated(self) -> None:
        data = fixtures.raw_glb(b'{"asset":{"version":"2.0"}}\x00')
        document = container.parse_glb(data)
        self.assertEqual(document.payload["asset"]["version"], "2.0")


class SerializeGlbTests(unittest.TestCase):
    def test_header_length_matches_output_and_is_aligned(self) -> None:
        out = container.build_glb({"asset": {"version": "2.0"}, "x": "abc"}, b"\x01\x02\x03")
        declared = struct.unpack_from("<I", out, 8)[0]
        self.assertEqual(declared, len(out))
        self.assertEqual(len(out) % 4, 0)

    def test_json_chunk_is_space_padded(self) -> None:
        out = container.build_glb({"a": 1}, b"")
        json_len = struct.unpack_from("<I", out, 12)[0]
        chunk = out[20 : 20 + json_len]
        self.assertEqual(chunk, b'{"a":1} ')
        self.assertEqual(json.loads(chunk.decode("utf-8")), {"a": 1})

    def test_empty_bin_chunk_is_omitted(self) -> None:
        out = container.build_glb({"asset": {"version": "2.0"}}, b"")
        json_len = struct.unpack_from("<I", out, 12)[0]
        self.assertEqual(len(out), 12 + 8 + json_len)

    def test_round_trip_preserves_bin_chunk_and_analysis(self) -> None:
        data = fixtures.character_glb(vertex_count=900, mesh_count=3)
        document = container.parse_glb(data)

        reparsed = container.parse_glb(container.serialize_glb(document))

        self.assertEqual(reparsed.bin_chunk, document.bin_chunk)
        before = analyze_document(document)
        after = analyze_document(reparsed)
        self.assertEqual(after.vertex_count, before.vertex_count)
        self.assertEqual(after.mesh_count, before.mesh_count)
        self.assertEqual(after.bounding_box, before.bounding_box)

    def test_looks_like_glb(self) -> None:
        self.assertTrue(container.looks_like_glb(fixtures.character_glb(vertex_count=10, mesh_count=1)))
        self.assertFalse(container.looks_like_glb(b"PK\x03\x04" + b"\x00" * 32))


class BufferHelperTests(unittest.TestCase):
    def test_append_buffer_view_aligns_offsets(self) -> None:
        views = []
        blob = bytearray(b"\x01\x02\x03")
        index = container.append_buffer_view(views, blob, b"\xaa\xbb")
        self.assertEqual(index, 0)
        self.assertEqual(views[0]["byteOffset"], 4)
        self.assertEqual(views[0]["byteLength"], 2)
        self.assertEqual(bytes(blob[4:6]), b"\xaa\xbb")
        self.assertNotIn("target", views[0])

        container.append_buffer_view(views, blob, b"\x00" * 12, target=34962)
        self.assertEqual(views[1]["byteOffset"], 8)
        self.assertEqual(views[1]["target"], 34962)

    def test_ensure_buffer_structures_creates_missing_lists(self) -> None:
        payload = {"asset": {"version": "2.0"}}
        views = container.ensure_buffer_structures(payload, 0)
        self.assertEqual(views, [])
        self.assertEqual(payload["buffers"], [{"byteLength": 0}])

    def test_list_of_dicts_replaces_non_objects(self) -> None:
        self.assertEqual(container.list_of_dicts({"meshes": [{"a": 1}, 3]}, "meshes"), [{"a": 1}, {}])
        self.assertEqual(container.list_of_dicts({"meshes": "bad"}, "meshes"), [])


if __name__ == "__main__":
    unittest.main()
