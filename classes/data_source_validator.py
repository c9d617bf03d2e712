# classes/data_source_validator.py
"""
Provenance tagging and contamination checks between the two trust domains:
the owner's own business answers and third-party interview transcripts.

All detectors are keyword/regex heuristics. They reduce cross-contamination,
they do not prove its absence. Growing language coverage means growing the
pattern tables below (or CONTAMINATION_PATTERNS in the resilience config).
"""
import logging
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from classes import settings
from classes.errors import ContaminationWarning

logger = logging.getLogger("draftguard_backend")


class SourceType(str, Enum):
    OWNER_BUSINESS = "owner_business"
    THIRD_PARTY_INTERVIEW = "third_party_interview"

    @property
    def opposite(self) -> "SourceType":
        if self is SourceType.OWNER_BUSINESS:
            return SourceType.THIRD_PARTY_INTERVIEW
        return SourceType.OWNER_BUSINESS


class FlagKind(str, Enum):
    CROSS_DOMAIN_VOCABULARY = "cross_domain_vocabulary"
    CROSS_DOMAIN_VOICE = "cross_domain_voice"
    MIXED_PRONOUNS = "mixed_pronouns"
    LIKELY_GENERATED_ARTIFACT = "likely_generated_artifact"


FLAG_PENALTIES: Dict[FlagKind, float] = {
    FlagKind.CROSS_DOMAIN_VOCABULARY: 0.3,
    FlagKind.CROSS_DOMAIN_VOICE: 0.4,
    FlagKind.MIXED_PRONOUNS: 0.2,
    FlagKind.LIKELY_GENERATED_ARTIFACT: 0.1,
}
SHORT_CONTENT_PENALTY = 0.1
LONG_CONTENT_BONUS = 0.1
REPORT_LOW_CONFIDENCE = 0.8
LEAK_MIN_LENGTH = 50

#! PATTERN TABLES
# plain phrases are matched as lowercase substrings, regexes case-insensitively
DEFAULT_PATTERNS: Dict[str, List[str]] = {
    # interview vocabulary inside owner answers
    "interview_vocabulary": [
        "customer said",
        "client mentioned",
        "interviewee stated",
        "according to the customer",
        "client feedback",
        "customer response",
    ],
    # first-person pain statements inside owner answers
    "client_voice": [
        r"\bi struggle with\b",
        r"\bi worry about\b",
        r"\bi need help\b",
        r"\bmy biggest challenge\b",
        r"\bmy main problem\b",
        r"\bi have tried\b",
    ],
    # business vocabulary inside interview answers
    "business_vocabulary": [
        "our company",
        "our business",
        "we offer",
        "our services",
        "company mission",
        "business model",
        "our approach",
    ],
    # third-person business phrasing inside interview answers
    "business_voice": [
        r"\bthe company offers\b",
        r"\btheir business provides\b",
        r"\bthey specialize in\b",
        r"\bthe business helps\b",
        r"\btheir approach is\b",
    ],
    "generated_artifact": [
        "as an ai",
        "generated by ai",
        "ai-generated",
        "based on the provided information",
        "according to the data provided",
        "from the analysis above",
    ],
}
_REGEX_TABLES = {"client_voice", "business_voice"}

_FIRST_PERSON_RE = re.compile(r"\b(i|my|me|myself|mine)\b", re.IGNORECASE)
_SECOND_PERSON_RE = re.compile(r"\b(you|your|yours|yourself)\b", re.IGNORECASE)
_THIRD_PERSON_RE = re.compile(r"\b(they|their|them|he|she|his|her|hers)\b", re.IGNORECASE)
_DEMOGRAPHIC_RE = re.compile(r"\b\d{2,3}k?\s*(income|salary|earning)", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class ValidatedDataPoint:
    key: str
    content: str
    source_type: SourceType
    owner_id: Any
    confidence: float
    validation_flags: FrozenSet[FlagKind] = frozenset()
    lineage: Tuple[SourceType, ...] = ()
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    original_source: str = "unknown"

    @property
    def is_clean(self) -> bool:
        return not self.validation_flags


@dataclass
class ProvenanceContext:
    """
    Points admitted into prompts for one domain. Excluded keys are kept only for
    diagnostics and must never be rendered into a prompt.
    """
    source_type: SourceType
    points: Dict[str, ValidatedDataPoint] = field(default_factory=dict)
    excluded: List[str] = field(default_factory=list)
    business_name: Optional[str] = None
    industry: Optional[str] = None

    def as_records(self) -> Dict[str, str]:
        return {k: p.content for k, p in self.points.items()}

    def raw_content(self) -> str:
        return " ".join(p.content for p in self.points.values())


@dataclass
class ScanResult:
    is_clean: bool
    issues: List[str] = field(default_factory=list)

    def as_warning(self) -> Optional[ContaminationWarning]:
        if self.is_clean:
            return None
        return ContaminationWarning(self.issues)


def has_mixed_pronouns(text: str) -> bool:
    families = [
        bool(_FIRST_PERSON_RE.search(text)),
        bool(_SECOND_PERSON_RE.search(text)),
        bool(_THIRD_PERSON_RE.search(text)),
    ]
    return sum(families) >= 2


def _normalize(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text or "").strip().lower()


def _shingles(text: str, size: int) -> FrozenSet[str]:
    return frozenset(text[i:i + size] for i in range(len(text) - size + 1))


def longest_shared_run(
    a: str,
    b: str,
    min_length: int = LEAK_MIN_LENGTH,
    *,
    b_shingles: Optional[FrozenSet[str]] = None,
) -> int:
    """
    Length of the longest stretch of normalized `a` whose every `min_length`-char
    window also occurs in normalized `b`; 0 when no window is shared. Nonzero means
    a verbatim run of at least `min_length` chars is shared.

    The windows of `b` go into a set and `a` is walked once, so cost stays linear
    in both lengths. Pass `b_shingles` (from the normalized `b`) to reuse the set.
    """
    a = _normalize(a)
    if len(a) < min_length:
        return 0
    if b_shingles is None:
        b_shingles = _shingles(_normalize(b), min_length)
    if not b_shingles:
        return 0

    best = streak = 0
    for i in range(len(a) - min_length + 1):
        if a[i:i + min_length] in b_shingles:
            streak += 1
            best = max(best, streak)
        else:
            streak = 0
    return best + min_length - 1 if best else 0


class DataSourceValidator:
    def __init__(
        self,
        patterns: Optional[Mapping[str, List[str]]] = None,
        *,
        confidence_threshold: float = settings.CONTEXT_CONFIDENCE_THRESHOLD,
    ):
        tables: Dict[str, List[str]] = {k: list(v) for k, v in DEFAULT_PATTERNS.items()}
        extra = settings.EXTRA_CONTAMINATION_PATTERNS if patterns is None else patterns
        for name, entries in extra.items():
            tables.setdefault(name, []).extend(entries)
        self.patterns = tables
        self.confidence_threshold = confidence_threshold
        self._compiled = {
            name: [re.compile(p, re.IGNORECASE) for p in entries]
            for name, entries in tables.items()
            if name in _REGEX_TABLES
        }

    # -----------------------
    # Detection
    # -----------------------

    def _matches(self, table: str, content: str) -> bool:
        if table in self._compiled:
            return any(rx.search(content) for rx in self._compiled[table])
        lower = content.lower()
        return any(phrase.lower() in lower for phrase in self.patterns.get(table, []))

    def detect_flags(self, content: str, source_type: SourceType) -> FrozenSet[FlagKind]:
        flags = set()
        if source_type is SourceType.OWNER_BUSINESS:
            if self._matches("interview_vocabulary", content):
                flags.add(FlagKind.CROSS_DOMAIN_VOCABULARY)
            if self._matches("client_voice", content):
                flags.add(FlagKind.CROSS_DOMAIN_VOICE)
        else:
            if self._matches("business_vocabulary", content):
                flags.add(FlagKind.CROSS_DOMAIN_VOCABULARY)
            if self._matches("business_voice", content):
                flags.add(FlagKind.CROSS_DOMAIN_VOICE)

        if has_mixed_pronouns(content):
            flags.add(FlagKind.MIXED_PRONOUNS)
        if self._matches("generated_artifact", content):
            flags.add(FlagKind.LIKELY_GENERATED_ARTIFACT)
        return frozenset(flags)

    def score(self, content: str, flags: FrozenSet[FlagKind]) -> float:
        confidence = 1.0
        for flag in flags:
            confidence -= FLAG_PENALTIES[flag]
        if len(content) < 10:
            confidence -= SHORT_CONTENT_PENALTY
        if len(content) > 1000:
            confidence += LONG_CONTENT_BONUS
        return max(0.0, min(1.0, confidence))

    # -----------------------
    # Tagging & context building
    # -----------------------

    def tag_source(
        self,
        records: Mapping[str, str],
        source_type: SourceType,
        owner_id: Any,
        *,
        source: str = "unknown",
    ) -> Dict[str, ValidatedDataPoint]:
        """
        Tag every raw input field with its declared domain and a confidence score
        that drops with each contamination flag.
        """
        source_type = SourceType(source_type)
        now = datetime.now(timezone.utc)
        tagged: Dict[str, ValidatedDataPoint] = {}
        for key, content in (records or {}).items():
            content = "" if content is None else str(content)
            flags = self.detect_flags(content, source_type)
            tagged[key] = ValidatedDataPoint(
                key=key,
                content=content,
                source_type=source_type,
                owner_id=owner_id,
                confidence=self.score(content, flags),
                validation_flags=flags,
                lineage=(source_type,),
                timestamp=now,
                original_source=source,
            )
            if flags:
                logger.debug(f"[DATA SOURCE VALIDATION] {source_type.value}:{key} flagged {sorted(f.value for f in flags)}")
        return tagged

    def is_admissible(self, point: ValidatedDataPoint) -> bool:
        return point.confidence > self.confidence_threshold and not point.validation_flags

    def build_context(
        self,
        points: Mapping[str, ValidatedDataPoint],
        source_type: Optional[SourceType] = None,
    ) -> ProvenanceContext:
        """
        Keep only points of the given domain (default: the domain of the first
        point) with confidence above the threshold and no flags.
        """
        if source_type is None:
            first = next(iter(points.values()), None)
            source_type = first.source_type if first else SourceType.OWNER_BUSINESS
        source_type = SourceType(source_type)

        ctx = ProvenanceContext(source_type=source_type)
        for key, point in points.items():
            if point.source_type is not source_type or not self.is_admissible(point):
                ctx.excluded.append(key)
                continue
            ctx.points[key] = point
            if source_type is SourceType.OWNER_BUSINESS:
                lowered = key.lower()
                if ("business" in lowered or "company" in lowered) and len(point.content) > 10:
                    ctx.business_name = point.content[:100]
                if "industry" in lowered or "niche" in lowered:
                    ctx.industry = point.content

        if ctx.excluded:
            logger.info(f"[DATA SOURCE VALIDATION] {source_type.value} context excluded {len(ctx.excluded)} point(s): {ctx.excluded}")
        return ctx

    # -----------------------
    # Output scan
    # -----------------------

    def scan_output(
        self,
        generated_text: str,
        target_context: ProvenanceContext,
        opposite_context: ProvenanceContext,
    ) -> ScanResult:
        """
        Best-effort post-generation check of output meant for `target_context`'s
        domain: verbatim leaks of the opposite domain's content, mixed pronoun
        families, and demographic figures that do not belong to the domain.
        """
        issues: List[str] = []
        text = generated_text or ""

        output_shingles = _shingles(_normalize(text), LEAK_MIN_LENGTH)
        for key, point in opposite_context.points.items():
            run = longest_shared_run(point.content, text, b_shingles=output_shingles)
            if run >= LEAK_MIN_LENGTH:
                issues.append(
                    f"{opposite_context.source_type.value} content '{key}' found verbatim in output ({run} chars)"
                )

        if has_mixed_pronouns(text):
            issues.append("Mixed pronouns detected in AI output")

        if target_context.source_type is SourceType.OWNER_BUSINESS and _DEMOGRAPHIC_RE.search(text):
            business = (target_context.business_name or "").lower()
            if "financial" not in business:
                issues.append("Possible client demographic data in business output")

        result = ScanResult(is_clean=not issues, issues=issues)
        if issues:
            logger.warning(f"[CONTAMINATION DETECTED] Issues found in AI output: {issues}")
        return result

    # -----------------------
    # Diagnostics
    # -----------------------

    def contamination_report(self, points: Mapping[str, ValidatedDataPoint]) -> Dict[str, Any]:
        flag_counts: Counter = Counter()
        report = {
            "total_data_points": len(points),
            "owner_business_data": 0,
            "third_party_interview_data": 0,
            "contaminated_data_points": 0,
            "low_confidence_points": 0,
            "validation_flags": {},
        }
        for point in points.values():
            if point.source_type is SourceType.OWNER_BUSINESS:
                report["owner_business_data"] += 1
            else:
                report["third_party_interview_data"] += 1
            if point.validation_flags:
                report["contaminated_data_points"] += 1
            if point.confidence < REPORT_LOW_CONFIDENCE:
                report["low_confidence_points"] += 1
            flag_counts.update(f.value for f in point.validation_flags)
        report["validation_flags"] = dict(flag_counts)
        return report
