"""
classifier_adapter.py
=====================

Best-effort humanoid classification through a hosted zero-shot model.

The service is optional. Every failure mode (no key, network error,
timeout, non-2xx, malformed body) comes back as ``None`` and the caller
uses ``geometric_classification`` instead. There are no retries: one
attempt per call site inside the configured timeout.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from glb_container import GlbDocument, list_of_dicts
from structure_analyzer import Classification

DEFAULT_HF_ENDPOINT = "https://api-inference.huggingface.co/models/{model}"
DEFAULT_CLASSIFIER_MODEL = "facebook/bart-large-mnli"

HUMANOID_LABEL = "humanoid character"
CANDIDATE_LABELS = [HUMANOID_LABEL, "animal", "prop or object"]

GEOMETRIC_HUMANOID_THRESHOLD = 0.5
MAX_DESCRIPTOR_NAMES = 24


class NullClassifier:
    """Classifier that is never available."""

    def score(self, descriptor: str) -> Optional[Classification]:
        return None


class HuggingFaceClassifier:
    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_CLASSIFIER_MODEL,
        endpoint_template: str = DEFAULT_HF_ENDPOINT,
        timeout_seconds: float = 5.0,
        client: Optional[httpx.Client] = None,
    ):
        self.api_key = api_key
        self.model = model
        self.endpoint = endpoint_template.format(model=model)
        self.timeout = httpx.Timeout(timeout_seconds)
        self._client = client

    def score(self, descriptor: str) -> Optional[Classification]:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        payload = {
            "inputs": descriptor,
            "parameters": {"candidate_labels": CANDIDATE_LABELS},
        }

        try:
            if self._client is not None:
                response = self._client.post(self.endpoint, headers=headers, json=payload, timeout=self.timeout)
            else:
                with httpx.Client() as client:
                    response = client.post(self.endpoint, headers=headers, json=payload, timeout=self.timeout)
        except httpx.HTTPError as exc:
            logging.debug("Classifier unavailable (%s): %s", type(exc).__name__, exc)
            return None

        if response.status_code < 200 or response.status_code >= 300:
            logging.debug("Classifier unavailable: HTTP %s | %s", response.status_code, response.text[:200])
            return None

        try:
            parsed = response.json()
        except ValueError:
            logging.debug("Classifier unavailable: non-JSON response")
            return None

        return parse_zero_shot_response(parsed)


def parse_zero_shot_response(parsed: Any) -> Optional[Classification]:
    # Inference API returns either an object or a single-element list.
    if isinstance(parsed, list) and len(parsed) == 1:
        parsed = parsed[0]
    if not isinstance(parsed, dict):
        return None

    labels = parsed.get("labels")
    scores = parsed.get("scores")
    if not isinstance(labels, list) or not isinstance(scores, list) or not labels:
        return None
    if len(labels) != len(scores):
        return None

    best_label = labels[0]
    best_score = scores[0]
    if not isinstance(best_label, str):
        return None
    if isinstance(best_score, bool) or not isinstance(best_score, (int, float)):
        return None

    confidence = min(1.0, max(0.0, float(best_score)))
    label = "humanoid" if best_label == HUMANOID_LABEL else "object"
    return Classification(label=label, confidence=confidence, source="service")


def geometric_classification(geometric_confidence: float) -> Classification:
    label = "humanoid" if geometric_confidence >= GEOMETRIC_HUMANOID_THRESHOLD else "object"
    return Classification(label=label, confidence=geometric_confidence, source="geometric")


def _names(items: List[Dict[str, Any]]) -> List[str]:
    names = []
    for item in items:
        name = item.get("name")
        if isinstance(name, str) and name.strip():
            names.append(name.strip())
    return names[:MAX_DESCRIPTOR_NAMES]


def describe_document(document: Optional[GlbDocument], byte_size: int = 0) -> str:
    """Text descriptor for the classifier, built from names and counts only."""
    if document is None:
        return f"Unparseable 3D model container of {byte_size} bytes."

    payload = document.payload
    meshes = list_of_dicts(payload, "meshes")
    nodes = list_of_dicts(payload, "nodes")
    materials = list_of_dicts(payload, "materials")

    parts = [
        f"3D model with {len(meshes)} meshes, {len(nodes)} nodes and {len(materials)} materials.",
    ]
    mesh_names = _names(meshes)
    if mesh_names:
        parts.append("Meshes: " + ", ".join(mesh_names) + ".")
    node_names = _names(nodes)
    if node_names:
        parts.append("Nodes: " + ", ".join(node_names) + ".")
    material_names = _names(materials)
    if material_names:
        parts.append("Materials: " + ", ".join(material_names) + ".")
    return " ".join(parts)


def build_classifier(
    api_key: Optional[str],
    model: str = DEFAULT_CLASSIFIER_MODEL,
    timeout_seconds: float = 5.0,
) -> Any:
    if not api_key:
        return NullClassifier()
    return HuggingFaceClassifier(api_key=api_key, model=model, timeout_seconds=timeout_seconds)
