#!/usr/bin/env python3
import unittest
from dataclasses import replace
from pathlib import Path
import sys


SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

import budget_optimizer as optimizer
from rig_config import MIB, RigConfig
from structure_analyzer import empty_analysis
from tier_budgets import DEFAULT_TIER_BUDGETS, TierBudget


def _analysis(vertex_count: int):
    return replace(empty_analysis(), vertex_count=vertex_count)


class ProjectedSizeTests(unittest.TestCase):
    def test_overhead_floor_applies(self) -> None:
        config = RigConfig()
        self.assertEqual(optimizer.projected_size_bytes(0, 0, 0, config), 5 * MIB)
        self.assertEqual(
            optimizer.projected_size_bytes(1000, 10, 2, config),
            2 * 1000 * 12 + 10 * 256 + 5 * MIB,
        )

    def test_overhead_grows_past_floor(self) -> None:
        config = RigConfig(overhead_floor_bytes=0)
        self.assertEqual(optimizer.projected_size_bytes(0, 3, 4, config), 3 * 256 + 3 * 1000 + 4 * 2000)


class OptimizeBudgetTests(unittest.TestCase):
    def test_dense_mesh_reduces_morphs_and_keeps_bones(self) -> None:
        tier = TierBudget(max_bones=65, max_morph_targets=100, max_file_size_mb=25)

        budget = optimizer.optimize_budget(_analysis(20000), tier)

        self.assertEqual(budget.bone_count, 65)
        self.assertEqual(budget.morph_count, 87)
        self.assertIn(optimizer.REDUCED_MORPHS, budget.applied_adjustments)
        self.assertNotIn(optimizer.REDUCED_BONES, budget.applied_adjustments)
        self.assertLessEqual(budget.projected_bytes, budget.target_bytes)

    def test_small_mesh_keeps_tier_maxima(self) -> None:
        budget = optimizer.optimize_budget(_analysis(500), DEFAULT_TIER_BUDGETS["free"])
        self.assertEqual((budget.bone_count, budget.morph_count), (9, 5))
        self.assertEqual(budget.applied_adjustments, ())

    def test_tiny_target_is_floor_limited(self) -> None:
        tier = TierBudget(max_bones=65, max_morph_targets=50, max_file_size_mb=1)

        budget = optimizer.optimize_budget(_analysis(200000), tier)

        self.assertEqual(budget.morph_count, 5)
        self.assertEqual(budget.bone_count, 9)
        self.assertIn(optimizer.REDUCED_BONES, budget.applied_adjustments)
        self.assertIn(optimizer.FLOOR_LIMITED, budget.applied_adjustments)

    def test_floors_never_exceed_tier_maxima(self) -> None:
        tier = TierBudget(max_bones=3, max_morph_targets=2, max_file_size_mb=1)
        budget = optimizer.optimize_budget(_analysis(200000), tier)
        self.assertLessEqual(budget.bone_count, 3)
        self.assertLessEqual(budget.morph_count, 2)

    def test_headroom_after_bone_reduction_grows_morphs(self) -> None:
        config = RigConfig(
            bone_payload_bytes=600000,
            overhead_floor_bytes=0,
            bytes_per_bone_overhead=0,
            bytes_per_morph_overhead=0,
            min_bones=1,
        )
        tier = TierBudget(max_bones=2, max_morph_targets=1000, max_file_size_mb=1)

        budget = optimizer.optimize_budget(_analysis(1), tier, config)

        self.assertEqual(budget.bone_count, 1)
        self.assertEqual(budget.morph_count, 1000)
        self.assertEqual(
            budget.applied_adjustments,
            (optimizer.REDUCED_MORPHS, optimizer.REDUCED_BONES, optimizer.ENHANCED_MORPHS),
        )

    def test_bone_search_fits_target_above_floor(self) -> None:
        # Five morphs alone leave room for 46 bones under the goat tier.
        analysis = _analysis(1572667)
        tier = DEFAULT_TIER_BUDGETS["goat"]

        budget = optimizer.optimize_budget(analysis, tier)

        self.assertEqual(budget.morph_count, 5)
        self.assertEqual(budget.bone_count, 46)
        self.assertIn(optimizer.REDUCED_BONES, budget.applied_adjustments)
        self.assertNotIn(optimizer.FLOOR_LIMITED, budget.applied_adjustments)
        self.assertLessEqual(budget.projected_bytes, budget.target_bytes)
        self.assertGreater(
            optimizer.projected_size_bytes(1572667, 47, 5, RigConfig()),
            budget.target_bytes,
        )

    def test_floor_limited_only_when_floors_do_not_fit(self) -> None:
        for vertex_count in (0, 20000, 400000, 1572667):
            for size_mb in (1, 6, 25, 95):
                tier = TierBudget(max_bones=500, max_morph_targets=80, max_file_size_mb=size_mb)
                budget = optimizer.optimize_budget(_analysis(vertex_count), tier)
                if optimizer.FLOOR_LIMITED in budget.applied_adjustments:
                    self.assertEqual((budget.bone_count, budget.morph_count), (9, 5))
                else:
                    self.assertLessEqual(budget.projected_bytes, budget.target_bytes, (vertex_count, size_mb))

    def test_morphs_hold_as_target_reaches_ceiling(self) -> None:
        analysis = _analysis(1572667)
        below = optimizer.optimize_budget(analysis, TierBudget(200000, 5, 99.5))
        at_ceiling = optimizer.optimize_budget(analysis, TierBudget(200000, 5, 100))

        self.assertEqual(below.morph_count, 5)
        self.assertEqual(at_ceiling.morph_count, 5)
        self.assertGreaterEqual(at_ceiling.bone_count, below.bone_count)
        self.assertLessEqual(at_ceiling.projected_bytes, at_ceiling.ceiling_bytes)

    def test_tier_above_ceiling_is_sized_like_ceiling_tier(self) -> None:
        analysis = _analysis(200000)
        capped = optimizer.optimize_budget(analysis, TierBudget(65, 1000, 100))
        generous = optimizer.optimize_budget(analysis, TierBudget(65, 1000, 400))

        self.assertEqual(
            (generous.bone_count, generous.morph_count),
            (capped.bone_count, capped.morph_count),
        )
        self.assertIn(optimizer.ABSOLUTE_CEILING, generous.applied_adjustments)
        self.assertNotIn(optimizer.ABSOLUTE_CEILING, capped.applied_adjustments)

    def test_absolute_ceiling_overrides_generous_tier(self) -> None:
        tier = TierBudget(max_bones=65, max_morph_targets=1000, max_file_size_mb=500)

        budget = optimizer.optimize_budget(_analysis(200000), tier)

        self.assertIn(optimizer.ABSOLUTE_CEILING, budget.applied_adjustments)
        self.assertLessEqual(budget.projected_bytes, 100 * MIB)
        self.assertGreaterEqual(budget.bone_count, 1)

    def test_ceiling_is_configurable(self) -> None:
        tier = TierBudget(max_bones=65, max_morph_targets=1000, max_file_size_mb=150)
        config = RigConfig(absolute_ceiling_mb=200)

        budget = optimizer.optimize_budget(_analysis(200000), tier, config)

        self.assertNotIn(optimizer.ABSOLUTE_CEILING, budget.applied_adjustments)
        self.assertGreater(budget.projected_bytes, 100 * MIB)
        self.assertLessEqual(budget.projected_bytes, 150 * MIB)

    def test_hard_ceiling_holds_across_inputs(self) -> None:
        config = RigConfig(absolute_ceiling_mb=50)
        for vertex_count in (0, 1, 5000, 50000, 400000):
            for size_mb in (1, 25, 95, 400):
                tier = TierBudget(max_bones=200, max_morph_targets=500, max_file_size_mb=size_mb)
                budget = optimizer.optimize_budget(_analysis(vertex_count), tier, config)
                projected = optimizer.projected_size_bytes(
                    vertex_count, budget.bone_count, budget.morph_count, config
                )
                self.assertLessEqual(projected, config.ceiling_bytes, (vertex_count, size_mb))
                self.assertLessEqual(budget.bone_count, tier.max_bones)
                self.assertLessEqual(budget.morph_count, tier.max_morph_targets)

    def test_morph_count_is_monotonic_in_file_size(self) -> None:
        for max_bones in (65, 200000):
            for vertex_count in (0, 1, 1000, 20000, 50000, 200000, 1572667):
                previous = -1
                for size_mb in range(1, 161):
                    tier = TierBudget(max_bones=max_bones, max_morph_targets=100, max_file_size_mb=size_mb)
                    budget = optimizer.optimize_budget(_analysis(vertex_count), tier)
                    self.assertGreaterEqual(budget.morph_count, previous, (max_bones, vertex_count, size_mb))
                    previous = budget.morph_count

    def test_optimizer_is_deterministic(self) -> None:
        tier = DEFAULT_TIER_BUDGETS["zeus"]
        first = optimizer.optimize_budget(_analysis(70000), tier)
        second = optimizer.optimize_budget(_analysis(70000), tier)
        self.assertEqual(first, second)


class RigSeedTests(unittest.TestCase):
    def test_seed_is_stable_and_keyed_on_budget(self) -> None:
        analysis = _analysis(1234)
        tier = DEFAULT_TIER_BUDGETS["spartan"]
        budget = optimizer.optimize_budget(analysis, tier)

        seed = optimizer.rig_seed(analysis, budget)

        self.assertEqual(seed, optimizer.rig_seed(analysis, budget))
        self.assertLess(seed, 2**64)
        other = replace(budget, morph_count=budget.morph_count - 1)
        self.assertNotEqual(seed, optimizer.rig_seed(analysis, other))


if __name__ == "__main__":
    unittest.main()
