#!/usr/bin/env python3
import unittest
from dataclasses import replace
from pathlib import Path
import sys

import numpy as np


SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

import morph_synthesizer as synth
from budget_optimizer import OptimizedBudget
from structure_analyzer import BoundingBox, empty_analysis


def _analysis(vertex_count: int):
    return replace(
        empty_analysis(),
        vertex_count=vertex_count,
        bounding_box=BoundingBox(min=(-0.5, 0.0, -0.25), max=(0.5, 2.0, 0.25)),
    )


def _budget(morphs: int, bones: int = 9) -> OptimizedBudget:
    return OptimizedBudget(
        bone_count=bones,
        morph_count=morphs,
        applied_adjustments=(),
        projected_bytes=0,
        target_bytes=0,
        ceiling_bytes=0,
    )


class AllocationTests(unittest.TestCase):
    def test_split_follows_shares(self) -> None:
        self.assertEqual(synth.allocate_morphs(0), (0, 0, 0))
        self.assertEqual(synth.allocate_morphs(5), (3, 1, 1))
        self.assertEqual(synth.allocate_morphs(20), (12, 5, 3))
        self.assertEqual(synth.allocate_morphs(87), (52, 21, 14))

    def test_categories_are_emitted_in_priority_order(self) -> None:
        morphs = synth.synthesize_morphs(_analysis(50), _budget(20))
        categories = [morph.category for morph in morphs]
        self.assertEqual(categories, ["facial"] * 12 + ["body"] * 5 + ["corrective"] * 3)
        self.assertEqual(morphs[0].name, "eyeBlinkLeft")
        self.assertEqual(morphs[12].name, "breathe")
        self.assertEqual(morphs[-1].name, "corrective_2")

    def test_names_fall_back_after_lists_run_out(self) -> None:
        morphs = synth.synthesize_morphs(_analysis(4), _budget(100))
        facial = [m.name for m in morphs if m.category == "facial"]
        self.assertEqual(len(facial), 60)
        self.assertEqual(facial[-1], "facial_59")
        self.assertEqual(len(set(m.name for m in morphs)), len(morphs))


class DeltaTests(unittest.TestCase):
    def test_delta_shape_matches_vertex_count(self) -> None:
        for vertex_count in (0, 1, 50000):
            morphs = synth.synthesize_morphs(_analysis(vertex_count), _budget(6))
            self.assertEqual(len(morphs), 6)
            for morph in morphs:
                self.assertEqual(morph.vertex_deltas.shape, (vertex_count, 3))
                self.assertEqual(morph.normal_deltas.shape, (vertex_count, 3))
                self.assertEqual(morph.vertex_deltas.dtype, np.float32)

    def test_magnitudes_are_bounded(self) -> None:
        morphs = synth.synthesize_morphs(_analysis(5000), _budget(20))
        limit = 0.25 * 2.0
        for morph in morphs:
            self.assertLessEqual(float(np.abs(morph.vertex_deltas).max()), limit + 1e-6)
            self.assertLessEqual(float(np.abs(morph.normal_deltas).max()), 0.1 + 1e-6)
            self.assertEqual(morph.weight, 0.0)

    def test_facial_deltas_touch_only_top_region(self) -> None:
        morphs = synth.synthesize_morphs(_analysis(1000), _budget(5))
        facial = morphs[0]
        self.assertEqual(facial.category, "facial")
        self.assertFalse(np.any(facial.vertex_deltas[:700]))
        self.assertTrue(np.any(facial.vertex_deltas[700:]))

    def test_output_is_deterministic(self) -> None:
        first = synth.synthesize_morphs(_analysis(300), _budget(10))
        second = synth.synthesize_morphs(_analysis(300), _budget(10))
        for a, b in zip(first, second):
            self.assertEqual(a.name, b.name)
            np.testing.assert_array_equal(a.vertex_deltas, b.vertex_deltas)
            np.testing.assert_array_equal(a.normal_deltas, b.normal_deltas)

    def test_deltas_are_read_only(self) -> None:
        morph = synth.synthesize_morphs(_analysis(10), _budget(5))[0]
        with self.assertRaises(ValueError):
            morph.vertex_deltas[0, 0] = 1.0


if __name__ == "__main__":
    unittest.main()
