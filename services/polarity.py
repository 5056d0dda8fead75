from __future__ import annotations

from services.normalizer import is_short_text
from services.types import PolarityScore, clamp

NEUTRAL_THRESHOLD = 0.60
SCALE_THRESHOLD = 0.65
MIN_DAMPENING = 0.5
DEFAULT_SHORT_TEXT_DAMPING = 0.7

POSITIVE_LABELS = {"POSITIVE", "POS", "LABEL_2"}
NEGATIVE_LABELS = {"NEGATIVE", "NEG", "LABEL_0"}


def _scaled_strength(score: float) -> float:
    if score >= SCALE_THRESHOLD:
        return 0.3 + 0.7 * (score - SCALE_THRESHOLD) / (1.0 - SCALE_THRESHOLD)
    return 0.3 * (score - 0.5) / (SCALE_THRESHOLD - 0.5)


def calibrate_polarity(label: str, score: float) -> PolarityScore:
    normalized_label = str(label or "").strip().upper()
    score = clamp(score, 0.0, 1.0)

    if normalized_label in POSITIVE_LABELS:
        value = _scaled_strength(score)
        category = "positive" if score >= NEUTRAL_THRESHOLD else "neutral"
    elif normalized_label in NEGATIVE_LABELS:
        value = -_scaled_strength(score)
        category = "negative" if score >= NEUTRAL_THRESHOLD else "neutral"
    else:
        return PolarityScore(value=0.0, category="neutral")

    if score < NEUTRAL_THRESHOLD:
        value *= max(MIN_DAMPENING, (score - 0.5) / 0.10)

    return PolarityScore(value=clamp(value), category=category)


def attenuate_for_short_text(value: float, text: str, damping: float = DEFAULT_SHORT_TEXT_DAMPING) -> float:
    """Polarity fed into KPI modulation; terse texts get pulled toward zero."""
    if is_short_text(text):
        return clamp(value * damping)
    return clamp(value)
