#!/usr/bin/env python3
"""
auto_rig.py
===========

Auto-rig a GLB for a subscription plan.

Pipeline: parse -> analyze (classifier in parallel) -> optimize budget ->
synthesize bones and morphs -> embed. A container that fails to parse is
still rigged through the safe-append strategy; only an unknown plan, an
input below the GLB header size and a serialization invariant violation
abort the run.

Usage:
  python scripts/auto_rigger/auto_rig.py model.glb --plan zeus
  python scripts/auto_rigger/auto_rig.py model.glb --plan free --output out.glb --report out.json
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from bone_synthesizer import BoneHierarchy, synthesize_bones
from budget_optimizer import OptimizedBudget, optimize_budget
from classifier_adapter import NullClassifier, build_classifier, describe_document, geometric_classification
from glb_container import (
    GlbDocument,
    GlbParseError,
    GlbTooSmallError,
    SerializationInvariantError,
    looks_like_glb,
    parse_glb,
)
from morph_synthesizer import MorphTarget, synthesize_morphs
from rig_config import RigConfig
from rig_embedder import embed_rig
from structure_analyzer import ContainerAnalysis, analyze_document, apply_classification, empty_analysis
from tier_budgets import BudgetNotFoundError, TierBudgetProvider, default_tier_provider, load_tier_budgets


@dataclass(frozen=True)
class RigStatistics:
    original_size: int
    rigged_size: int
    bone_count: int
    morph_count: int
    processing_time_ms: float


@dataclass(frozen=True)
class RigResult:
    rigged_bytes: bytes
    bones: BoneHierarchy
    morph_targets: List[MorphTarget]
    statistics: RigStatistics
    strategy: str
    analysis: ContainerAnalysis
    budget: OptimizedBudget
    notes: tuple = ()


def _join_classification(analysis: ContainerAnalysis, future: Any, timeout: float) -> ContainerAnalysis:
    result = None
    if future is not None:
        try:
            result = future.result(timeout=timeout)
        except FutureTimeoutError:
            logging.debug("Classifier timed out after %.1fs; using geometric fallback", timeout)
        except Exception as exc:  # noqa: BLE001
            logging.debug("Classifier failed (%s): %s", type(exc).__name__, exc)

    if result is None:
        result = geometric_classification(analysis.geometric_confidence)
    return apply_classification(analysis, result)


def auto_rig(
    data: bytes,
    plan_id: str,
    provider: TierBudgetProvider,
    classifier: Optional[Any] = None,
    config: Optional[RigConfig] = None,
) -> RigResult:
    """Rig *data* for *plan_id*.

    Raises BudgetNotFoundError, GlbTooSmallError or SerializationInvariantError.
    Every other failure degrades to a fallback and still returns a RigResult.
    """
    started = time.perf_counter()
    config = config or RigConfig()
    classifier = classifier or NullClassifier()

    tier = provider.lookup(plan_id)

    notes: List[str] = []
    document: Optional[GlbDocument] = None
    try:
        document = parse_glb(data)
        notes.extend(document.notes)
    except GlbTooSmallError:
        raise
    except GlbParseError as exc:
        logging.info("Container did not parse (%s); using safe append", exc)
        notes.append(f"parse failed: {exc}")

    descriptor = describe_document(document, byte_size=len(data))
    executor = ThreadPoolExecutor(max_workers=1)
    try:
        future = executor.submit(classifier.score, descriptor)
        analysis = analyze_document(document) if document is not None else empty_analysis()
        analysis = _join_classification(analysis, future, config.classifier_timeout_seconds)
    finally:
        executor.shutdown(wait=False)

    budget = optimize_budget(analysis, tier, config)
    if budget.applied_adjustments:
        logging.debug("Budget adjustments: %s", ", ".join(budget.applied_adjustments))

    bones = synthesize_bones(analysis, budget)
    morphs = synthesize_morphs(analysis, budget)
    outcome = embed_rig(data, document, bones, morphs)
    if outcome.strategy == "append":
        notes.append(f"append strategy: {outcome.reason}")
    notes.extend(outcome.notes)

    elapsed_ms = (time.perf_counter() - started) * 1000.0
    statistics = RigStatistics(
        original_size=len(data),
        rigged_size=len(outcome.rigged_bytes),
        bone_count=len(bones),
        morph_count=len(morphs),
        processing_time_ms=round(elapsed_ms, 3),
    )
    return RigResult(
        rigged_bytes=outcome.rigged_bytes,
        bones=bones,
        morph_targets=morphs,
        statistics=statistics,
        strategy=outcome.strategy,
        analysis=analysis,
        budget=budget,
        notes=tuple(notes),
    )


def build_report(result: RigResult, plan_id: str) -> Dict[str, Any]:
    analysis = result.analysis
    classification = analysis.classification
    return {
        "plan": plan_id,
        "strategy": result.strategy,
        "statistics": {
            "original_size": result.statistics.original_size,
            "rigged_size": result.statistics.rigged_size,
            "bone_count": result.statistics.bone_count,
            "morph_count": result.statistics.morph_count,
            "processing_time_ms": result.statistics.processing_time_ms,
        },
        "analysis": {
            "vertex_count": analysis.vertex_count,
            "mesh_count": analysis.mesh_count,
            "material_count": analysis.material_count,
            "has_existing_skeleton": analysis.has_existing_skeleton,
            "has_animations": analysis.has_animations,
            "bounding_box": {"min": list(analysis.bounding_box.min), "max": list(analysis.bounding_box.max)},
            "humanoid_confidence": analysis.humanoid_confidence,
            "geometric_confidence": analysis.geometric_confidence,
            "classification": None if classification is None else {
                "label": classification.label,
                "confidence": classification.confidence,
                "source": classification.source,
            },
        },
        "budget": result.budget.to_dict(),
        "bones": [bone.to_dict() for bone in result.bones],
        "morph_targets": [morph.summary() for morph in result.morph_targets],
        "notes": list(result.notes),
    }


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def write_json(path: Path, payload: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")


def parse_args(argv: Iterable[str], defaults: Optional[RigConfig] = None) -> argparse.Namespace:
    defaults = defaults or RigConfig.from_env()
    parser = argparse.ArgumentParser(
        description="Add a bone hierarchy and morph targets to a GLB, sized to a subscription plan.",
    )
    parser.add_argument(
        "input_path",
        type=Path,
        help="GLB file to rig.",
    )
    parser.add_argument(
        "--plan",
        default="free",
        help="Subscription plan id (default: free).",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Output GLB path (default: <input stem>_rigged.glb next to the input).",
    )
    parser.add_argument(
        "--tiers",
        type=Path,
        default=None,
        help="JSON file mapping plan ids to {maxBones, maxMorphTargets, maxFileSizeMB}.",
    )
    parser.add_argument(
        "--api-key",
        default=defaults.classifier_api_key,
        help="Hugging Face API key for the humanoid classifier. Defaults to HUGGINGFACE_API_KEY env var.",
    )
    parser.add_argument(
        "--classifier-model",
        default=defaults.classifier_model,
        help=f"Zero-shot classification model (default: {defaults.classifier_model}).",
    )
    parser.add_argument(
        "--timeout-seconds",
        type=float,
        default=defaults.classifier_timeout_seconds,
        help="Classifier request timeout in seconds.",
    )
    parser.add_argument(
        "--absolute-ceiling-mb",
        type=float,
        default=defaults.absolute_ceiling_mb,
        help="Hard ceiling on projected rig size in MiB, independent of plan.",
    )
    parser.add_argument(
        "--report",
        type=Path,
        default=None,
        help="Write a JSON report with statistics, budget and bones.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )

    args = parser.parse_args(list(argv))

    if args.timeout_seconds <= 0:
        parser.error("--timeout-seconds must be > 0")
    if args.absolute_ceiling_mb <= 0:
        parser.error("--absolute-ceiling-mb must be > 0")

    try:
        args.config = replace(
            defaults,
            absolute_ceiling_mb=args.absolute_ceiling_mb,
            classifier_timeout_seconds=args.timeout_seconds,
            classifier_model=args.classifier_model,
            classifier_api_key=args.api_key,
        )
    except ValueError as exc:
        parser.error(str(exc))

    return args


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    configure_logging(args.verbose)

    input_path = args.input_path.resolve()
    output_path = args.output or input_path.with_name(f"{input_path.stem}_rigged.glb")

    try:
        provider = load_tier_budgets(args.tiers) if args.tiers else default_tier_provider()
    except (OSError, ValueError) as exc:
        logging.error("Could not load tier budgets from %s: %s", args.tiers, exc)
        return 1

    try:
        data = input_path.read_bytes()
    except OSError as exc:
        logging.error("Could not read %s: %s", input_path, exc)
        return 1

    config = args.config
    classifier = build_classifier(
        config.classifier_api_key,
        model=config.classifier_model,
        timeout_seconds=config.classifier_timeout_seconds,
    )

    logging.info("Input: %s (%d bytes)", input_path, len(data))
    logging.info("Plan: %s", args.plan)
    if not looks_like_glb(data):
        logging.warning("%s has no valid GLB header; the rig will be appended", input_path.name)

    try:
        result = auto_rig(data, args.plan, provider, classifier=classifier, config=config)
    except BudgetNotFoundError as exc:
        logging.error("%s", exc)
        return 1
    except GlbTooSmallError as exc:
        logging.error("Input is not a GLB container: %s", exc)
        return 1
    except SerializationInvariantError as exc:
        logging.error("Refusing to write corrupt output: %s", exc)
        return 1

    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_bytes(result.rigged_bytes)

    stats = result.statistics
    logging.info(
        "Rigged via %s: %d bones, %d morphs, %d -> %d bytes in %.1f ms",
        result.strategy,
        stats.bone_count,
        stats.morph_count,
        stats.original_size,
        stats.rigged_size,
        stats.processing_time_ms,
    )
    if result.budget.applied_adjustments:
        logging.info("Budget adjustments: %s", ", ".join(result.budget.applied_adjustments))
    logging.info("Output: %s", output_path)

    if args.report:
        write_json(args.report, build_report(result, args.plan))
        logging.info("Report: %s", args.report)

    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
