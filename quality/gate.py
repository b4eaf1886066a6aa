"""Pre-generation quality gate for source articles."""

from __future__ import annotations

from dataclasses import dataclass, field
import re
from typing import Any, Mapping

TITLE_SIMILARITY_LIMIT = 0.8


@dataclass
class QualityAssessment:
    content_length: int
    score: float = 0.0
    tier: str = "poor"
    eligible: bool = False
    min_content_length_met: bool = False
    issues: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)
    components: dict[str, float] = field(default_factory=dict)
    requires_manual_review: bool = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "score": self.score,
            "tier": self.tier,
            "eligible": self.eligible,
            "issues": list(self.issues),
            "content_length": self.content_length,
            "min_content_length_met": self.min_content_length_met,
            "recommendations": list(self.recommendations),
            "components": dict(self.components),
            "requires_manual_review": self.requires_manual_review,
        }


def levenshtein(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def similarity(a: str, b: str) -> float:
    if not a or not b:
        return 0.0
    longer = a if len(a) > len(b) else b
    shorter = b if longer is a else a
    return (len(longer) - levenshtein(longer, shorter)) / len(longer)


def extract_content(article: Mapping[str, Any]) -> str:
    for key in ("body_final", "body_draft", "body", "content"):
        value = article.get(key)
        if value:
            return str(value).strip()
    return ""


def is_title_only(title: str, content: str, threshold: int) -> bool:
    if len(content) > threshold:
        return False
    return similarity(title, content) >= TITLE_SIMILARITY_LIMIT


def length_score(length: int, thresholds: Mapping[str, Any]) -> float:
    minimum = thresholds["min_content_length"]
    excellent = thresholds["excellent_content_length"]
    if length <= 0:
        return 0.0
    if length < minimum:
        return 0.1
    if length >= excellent:
        return 1.0
    return 0.3 + ((length - minimum) / (excellent - minimum)) * 0.7


def structure_score(content: str) -> float:
    if not content:
        return 0.0
    score = 0.3
    paragraphs = [p for p in re.split(r"\n\s*\n", content) if len(p.strip()) > 50]
    if len(paragraphs) >= 2:
        score += 0.2
    if len(paragraphs) >= 4:
        score += 0.2
    sentences = [s for s in re.split(r"[.!?]+", content) if len(s.strip()) > 10]
    if len(sentences) >= 3:
        score += 0.1
    if len(sentences) >= 6:
        score += 0.1
    if "-" in content or "•" in content or '"' in content:
        score += 0.1
    return min(score, 1.0)


def uniqueness_score(title: str, content: str) -> float:
    if not content:
        return 0.0
    score = 0.5
    title_words = title.lower().split()
    content_words = content.lower().split()
    if title_words and content_words:
        content_set = set(content_words)
        repeated = [w for w in title_words if w in content_set and len(w) > 3]
        ratio = len(repeated) / len(title_words)
        if ratio > 0.8:
            score -= 0.3
        elif ratio > 0.5:
            score -= 0.1
    if content_words:
        diversity = len({w for w in content_words if len(w) > 3}) / len(content_words)
        if diversity > 0.5:
            score += 0.2
        if diversity > 0.7:
            score += 0.3
    return max(min(score, 1.0), 0.0)


def _tier(score: float, length: int, thresholds: Mapping[str, Any]) -> str:
    if score >= 0.8 and length >= thresholds["excellent_content_length"]:
        return "excellent"
    if score >= 0.6 and length >= thresholds["good_content_length"]:
        return "good"
    if score >= 0.3 and length >= thresholds["min_content_length"]:
        return "fair"
    return "poor"


_TIER_NOTES = {
    "excellent": "Excellent content quality, suitable for every content type",
    "good": "Good content quality, suitable for most content generation",
    "fair": "Fair content quality, generation possible but the source could be improved",
    "poor": "Poor content quality, generation not recommended",
}


def assess(article: Mapping[str, Any], settings: Mapping[str, Any]) -> QualityAssessment:
    """Score a source article with tenant ``content_quality`` settings.

    ``settings`` is the merged ``content_quality`` block from
    :mod:`accounts.settings` (thresholds, scoring_weights, rules).
    """

    thresholds = settings["thresholds"]
    weights = settings["scoring_weights"]
    rules = settings["rules"]
    title = str(article.get("title") or "")
    content = extract_content(article)
    length = len(content)
    assessment = QualityAssessment(
        content_length=length,
        min_content_length_met=length >= thresholds["min_content_length"],
    )

    if length == 0:
        assessment.issues.append("no_content")
        assessment.recommendations.append("Article has no content; check the scraper or source URL")
        assessment.eligible = not rules.get("block_no_content", True) and _score_ok(assessment, thresholds)
        return assessment

    if is_title_only(title, content, thresholds["title_only_threshold"]):
        assessment.issues.append("title_only")
        assessment.recommendations.append("Article appears to contain only its title")
        assessment.eligible = not rules.get("block_title_only", True) and _score_ok(assessment, thresholds)
        return assessment

    if length < thresholds["min_content_length"]:
        assessment.issues.append("insufficient_length")
        assessment.recommendations.append(
            f"Content too short ({length} chars); at least {thresholds['min_content_length']} required"
        )

    components = {
        "length": length_score(length, thresholds),
        "structure": structure_score(content),
        "uniqueness": uniqueness_score(title, content),
    }
    total = (
        components["length"] * weights["length_weight"]
        + components["structure"] * weights["structure_weight"]
        + components["uniqueness"] * weights["uniqueness_weight"]
    )
    assessment.components = {key: round(value, 4) for key, value in components.items()}
    assessment.score = round(total, 2)
    assessment.tier = _tier(assessment.score, length, thresholds)
    assessment.eligible = assessment.min_content_length_met and _score_ok(assessment, thresholds)
    assessment.requires_manual_review = assessment.score < float(
        rules.get("require_manual_review_below_score", 0.0) or 0.0
    )
    assessment.recommendations.append(_TIER_NOTES[assessment.tier])
    if assessment.tier == "fair":
        assessment.recommendations.append(
            f"Sources with {thresholds['good_content_length']}+ characters give better results"
        )
    return assessment


def _score_ok(assessment: QualityAssessment, thresholds: Mapping[str, Any]) -> bool:
    return assessment.score >= thresholds["min_quality_score"] and assessment.min_content_length_met
