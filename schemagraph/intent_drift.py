"""Intent drift detection: semantic change in free-text ``@intent`` annotations."""

from __future__ import annotations

import logging
import math
import re
from collections import Counter
from typing import Dict, List, Mapping, Optional

from .config import DEFAULT_DRIFT_THRESHOLD
from .models import IntentDrift

logger = logging.getLogger(__name__)

SEVERITY_HIGH = "high"
SEVERITY_MEDIUM = "medium"
SEVERITY_LOW = "low"

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")

# Weights: word-set overlap, term-frequency cosine, character edit distance.
_W_JACCARD = 0.4
_W_COSINE = 0.4
_W_LEVENSHTEIN = 0.2

_EXPLANATION_TOKENS = 3


def normalize(text: str) -> str:
    """Lowercase, replace punctuation with spaces and collapse whitespace."""
    text = _PUNCTUATION.sub(" ", text.lower())
    return _WHITESPACE.sub(" ", text).strip()


def tokens(text: str) -> List[str]:
    normalized = normalize(text)
    return normalized.split(" ") if normalized else []


def jaccard_similarity(words1: List[str], words2: List[str]) -> float:
    set1, set2 = set(words1), set(words2)
    union = set1 | set2
    if not union:
        return 1.0
    return len(set1 & set2) / len(union)


def cosine_similarity(words1: List[str], words2: List[str]) -> float:
    tf1, tf2 = Counter(words1), Counter(words2)
    if not tf1 and not tf2:
        return 1.0
    dot = sum(count * tf2.get(word, 0) for word, count in tf1.items())
    magnitude = math.sqrt(sum(c * c for c in tf1.values())) * math.sqrt(sum(c * c for c in tf2.values()))
    return 0.0 if magnitude == 0 else dot / magnitude


def levenshtein_distance(str1: str, str2: str) -> int:
    if len(str1) < len(str2):
        str1, str2 = str2, str1
    previous = list(range(len(str2) + 1))
    for i, ch1 in enumerate(str1, start=1):
        current = [i]
        for j, ch2 in enumerate(str2, start=1):
            if ch1 == ch2:
                current.append(previous[j - 1])
            else:
                current.append(1 + min(previous[j], current[j - 1], previous[j - 1]))
        previous = current
    return previous[-1]


def levenshtein_similarity(str1: str, str2: str) -> float:
    max_len = max(len(str1), len(str2))
    if max_len == 0:
        return 1.0
    return 1.0 - levenshtein_distance(str1, str2) / max_len


class IntentDriftDetector:
    """Flags intent annotations whose meaning shifted between two versions.

    The score blends three metrics so that reordered words and small
    wording edits stay similar while wholesale rewrites do not.
    """

    def __init__(self, threshold: float = DEFAULT_DRIFT_THRESHOLD):
        if not 0.0 <= threshold <= 1.0:
            raise ValueError("threshold must be within [0, 1]")
        self.threshold = threshold

    def detect_drift(
        self,
        node_id: str,
        old_intent: Optional[str],
        new_intent: Optional[str],
    ) -> Optional[IntentDrift]:
        """Compare two intent annotations of one artifact.

        Args:
            node_id: Artifact the annotations belong to
            old_intent: Annotation in the base version (None or "" if absent)
            new_intent: Annotation in the head version (None or "" if absent)

        Returns:
            IntentDrift when the texts differ, otherwise None. The returned
            record has ``is_drift`` False when the texts differ but stay
            above the similarity threshold.
        """
        old_intent = old_intent or None
        new_intent = new_intent or None

        if old_intent is None and new_intent is None:
            return None
        if old_intent == new_intent:
            return None

        if old_intent is None or new_intent is None:
            return IntentDrift(
                node_id=node_id,
                old_intent=old_intent,
                new_intent=new_intent,
                similarity=0.0,
                is_drift=True,
                severity=SEVERITY_MEDIUM,
                explanation="Intent removed" if old_intent else "Intent added",
            )

        similarity = self.calculate_similarity(old_intent, new_intent)
        return IntentDrift(
            node_id=node_id,
            old_intent=old_intent,
            new_intent=new_intent,
            similarity=similarity,
            is_drift=similarity < self.threshold,
            severity=self.determine_severity(similarity),
            explanation=self.explain_drift(old_intent, new_intent, similarity),
        )

    def calculate_similarity(self, intent1: str, intent2: str) -> float:
        """Weighted similarity in [0, 1]; identical strings score 1.0."""
        if intent1 == intent2:
            return 1.0
        words1, words2 = tokens(intent1), tokens(intent2)
        score = (
            _W_JACCARD * jaccard_similarity(words1, words2)
            + _W_COSINE * cosine_similarity(words1, words2)
            + _W_LEVENSHTEIN * levenshtein_similarity(intent1, intent2)
        )
        return min(1.0, max(0.0, score))

    @staticmethod
    def determine_severity(similarity: float) -> str:
        if similarity < 0.50:
            return SEVERITY_HIGH
        if similarity < 0.70:
            return SEVERITY_MEDIUM
        return SEVERITY_LOW

    def explain_drift(self, old_intent: str, new_intent: str, similarity: float) -> str:
        old_words = list(dict.fromkeys(tokens(old_intent)))
        new_words = list(dict.fromkeys(tokens(new_intent)))
        removed = [w for w in old_words if w not in set(new_words)]
        added = [w for w in new_words if w not in set(old_words)]

        parts: List[str] = []
        if removed:
            parts.append(f"Removed concepts: {', '.join(removed[:_EXPLANATION_TOKENS])}")
        if added:
            parts.append(f"Added concepts: {', '.join(added[:_EXPLANATION_TOKENS])}")

        severity = self.determine_severity(similarity)
        if severity == SEVERITY_HIGH:
            parts.append("Fundamental semantic change detected")
        elif severity == SEVERITY_MEDIUM:
            parts.append("Moderate semantic shift")
        else:
            parts.append("Minor wording change")
        return ". ".join(parts)

    def detect_batch_drift(
        self,
        old_intents: Mapping[str, Optional[str]],
        new_intents: Mapping[str, Optional[str]],
    ) -> List[IntentDrift]:
        """Drifts across every id in either mapping, keeping only real drift."""
        drifts: List[IntentDrift] = []
        for node_id in sorted(set(old_intents) | set(new_intents)):
            drift = self.detect_drift(node_id, old_intents.get(node_id), new_intents.get(node_id))
            if drift is not None and drift.is_drift:
                drifts.append(drift)
        logger.debug("Intent drift: %d of %d artifact(s)", len(drifts), len(set(old_intents) | set(new_intents)))
        return drifts


def format_drift_report(drifts: List[IntentDrift]) -> str:
    """Group drifts by severity, most severe first."""
    if not drifts:
        return "No intent drift detected."

    by_severity: Dict[str, List[IntentDrift]] = {}
    for drift in drifts:
        by_severity.setdefault(drift.severity, []).append(drift)

    lines: List[str] = [f"Intent drift: {len(drifts)} artifact(s)", "=" * 60]
    for severity in (SEVERITY_HIGH, SEVERITY_MEDIUM, SEVERITY_LOW):
        group = by_severity.get(severity)
        if not group:
            continue
        lines.append("")
        lines.append(f"[{severity.upper()}]")
        for drift in group:
            lines.append(f"  {drift.node_id} (similarity {drift.similarity:.0%})")
            lines.append(f"    old: {drift.old_intent or '(none)'}")
            lines.append(f"    new: {drift.new_intent or '(none)'}")
            lines.append(f"    {drift.explanation}")
    return "\n".join(lines)
