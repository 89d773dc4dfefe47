"""Quality scoring and the auto-approve gate.

Every field gets a score in [0, 1] from its own rules. The composite is a
weighted sum of the field scores. Whether metadata may be applied without
review is decided separately: no hard-rule violation on the ALT text and
the model's own confidence at or above the threshold.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .errors import ConfigError
from .models import GeneratedMetadata

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.80
WEIGHT_TOLERANCE = 0.01

_WORD = re.compile(r"[^\W\d_]+(?:['-][^\W\d_]+)*")


def word_count(text: str) -> int:
    return len(_WORD.findall(text))


@dataclass
class AltRules:
    min_length: int = 10
    max_length: int = 125
    forbidden_phrases: List[str] = field(
        default_factory=lambda: ["image of", "picture of", "photo of", "screenshot of"]
    )
    require_descriptive: bool = True
    min_words: int = 3


@dataclass
class CaptionRules:
    min_words: int = 5
    max_words: int = 30
    min_length: int = 20
    max_length: int = 300


@dataclass
class TitleRules:
    min_words: int = 3
    max_words: int = 6
    min_length: int = 10
    max_length: int = 60


@dataclass
class KeywordRules:
    min_count: int = 3
    max_count: int = 6


@dataclass
class QualityRules:
    alt: AltRules = field(default_factory=AltRules)
    caption: CaptionRules = field(default_factory=CaptionRules)
    title: TitleRules = field(default_factory=TitleRules)
    keywords: KeywordRules = field(default_factory=KeywordRules)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "QualityRules":
        data = data or {}
        return cls(
            alt=AltRules(**(data.get("alt") or {})),
            caption=CaptionRules(**(data.get("caption") or {})),
            title=TitleRules(**(data.get("title") or {})),
            keywords=KeywordRules(**(data.get("keywords") or {})),
        )


@dataclass
class QualityWeights:
    alt: float = 0.4
    title: float = 0.2
    caption: float = 0.2
    keywords: float = 0.2

    def __post_init__(self):
        total = self.alt + self.title + self.caption + self.keywords
        if abs(total - 1.0) > WEIGHT_TOLERANCE:
            raise ConfigError(f"Quality weights must sum to 1.0, got {total:.3f}")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, float]]) -> "QualityWeights":
        return cls(**(data or {}))

    def as_dict(self) -> Dict[str, float]:
        return {
            "alt": self.alt,
            "title": self.title,
            "caption": self.caption,
            "keywords": self.keywords,
        }


@dataclass
class FieldCheck:
    score: float = 1.0
    errors: List[str] = field(default_factory=list)

    def fail(self, message: str, penalty: float):
        self.errors.append(message)
        self.score = max(0.0, self.score - penalty)


@dataclass
class QualityReport:
    score: float
    passes_auto_approve: bool
    vendor_score: float
    field_scores: Dict[str, float] = field(default_factory=dict)
    errors: Dict[str, List[str]] = field(default_factory=dict)
    hard_violations: List[str] = field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.errors


def check_alt(alt: str, rules: AltRules) -> FieldCheck:
    check = FieldCheck()
    if not alt:
        check.fail("ALT text is required.", 1.0)
        return check

    if len(alt) < rules.min_length:
        check.fail(f"ALT text is too short (minimum {rules.min_length} characters).", 0.3)
    if len(alt) > rules.max_length:
        check.fail(f"ALT text is too long (maximum {rules.max_length} characters).", 0.5)

    lowered = alt.lower()
    for phrase in rules.forbidden_phrases:
        if phrase.lower() in lowered:
            check.fail(f'ALT text contains forbidden phrase: "{phrase}"', 0.2)

    if rules.require_descriptive and word_count(alt) < rules.min_words:
        check.fail(f"ALT text should be more descriptive (at least {rules.min_words} words).", 0.2)
    return check


def check_caption(caption: str, rules: CaptionRules) -> FieldCheck:
    check = FieldCheck()
    words = word_count(caption)
    if len(caption) < rules.min_length:
        check.fail(f"Caption is too short (minimum {rules.min_length} characters).", 0.2)
    if len(caption) > rules.max_length:
        check.fail(f"Caption is too long (maximum {rules.max_length} characters).", 0.3)
    if words < rules.min_words:
        check.fail(f"Caption needs more content (minimum {rules.min_words} words).", 0.2)
    if words > rules.max_words:
        check.fail(f"Caption is too wordy (maximum {rules.max_words} words).", 0.2)
    return check


def check_title(title: str, rules: TitleRules) -> FieldCheck:
    check = FieldCheck()
    words = word_count(title)
    if words < rules.min_words:
        check.fail(f"Title should have at least {rules.min_words} words.", 0.3)
    if words > rules.max_words:
        check.fail(f"Title should have at most {rules.max_words} words.", 0.2)
    if len(title) > rules.max_length:
        check.fail(f"Title is too long (maximum {rules.max_length} characters).", 0.3)
    return check


def check_keywords(keywords: List[str], rules: KeywordRules) -> FieldCheck:
    check = FieldCheck()
    if len(keywords) < rules.min_count:
        check.fail(f"Need at least {rules.min_count} keywords.", 0.3)
    if len(keywords) > rules.max_count:
        check.fail(f"Too many keywords (maximum {rules.max_count}).", 0.2)
    if len({k.lower() for k in keywords}) != len(keywords):
        check.fail("Keywords contain duplicates.", 0.1)
    return check


def hard_violations(alt: str, rules: AltRules) -> List[str]:
    """Rule breaches that block auto-approval whatever the score."""
    violations = []
    if len(alt) > rules.max_length:
        violations.append(f"ALT text exceeds {rules.max_length} characters")
    lowered = alt.lower()
    for phrase in rules.forbidden_phrases:
        if phrase.lower() in lowered:
            violations.append(f'ALT text contains "{phrase}"')
    return violations


class QualityScorer:
    def __init__(
        self,
        rules: Optional[QualityRules] = None,
        weights: Optional[QualityWeights] = None,
        threshold: float = DEFAULT_THRESHOLD,
    ):
        self.rules = rules or QualityRules()
        self.weights = weights or QualityWeights()
        self.threshold = threshold

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "QualityScorer":
        """Build from the ``quality`` config section. Raises ConfigError on bad weights."""
        try:
            rules = QualityRules.from_dict(config.get("rules"))
        except TypeError as e:
            raise ConfigError(f"Invalid quality rules: {e}") from e
        return cls(
            rules=rules,
            weights=QualityWeights.from_dict(config.get("weights")),
            threshold=float(config.get("auto_approve_threshold", DEFAULT_THRESHOLD)),
        )

    def evaluate(
        self,
        metadata: GeneratedMetadata,
        rules: Optional[QualityRules] = None,
        weights: Optional[QualityWeights] = None,
    ) -> QualityReport:
        rules = rules or self.rules
        weights = weights or self.weights

        checks = {
            "alt": check_alt(metadata.alt, rules.alt),
            "title": check_title(metadata.title, rules.title),
            "caption": check_caption(metadata.caption, rules.caption),
            "keywords": check_keywords(metadata.keywords, rules.keywords),
        }
        weight_map = weights.as_dict()
        composite = sum(weight_map[name] * check.score for name, check in checks.items())

        violations = hard_violations(metadata.alt, rules.alt)
        passes = not violations and metadata.score >= self.threshold

        report = QualityReport(
            score=round(composite, 4),
            passes_auto_approve=passes,
            vendor_score=metadata.score,
            field_scores={name: check.score for name, check in checks.items()},
            errors={name: check.errors for name, check in checks.items() if check.errors},
            hard_violations=violations,
        )
        logger.debug(
            f"Quality score {report.score} (vendor {metadata.score}), "
            f"auto-approve={passes}, violations={violations}"
        )
        return report
