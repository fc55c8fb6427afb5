"""
Metadata Anomaly Classifier for DeepGuard
=========================================
Turns recovered container metadata into typed, hashed findings.

Rules (evaluated in fixed order, each independently):
- exif_missing: camera-style extension without any EXIF identity
- software_ai / software_deepfake / software_unknown: Software tag lookup
- software_ai (embedded): PNG text chunk carried a prompt or seed
- filename_ai: generator-style filename
- timestamp_future / timestamp_impossible: primary timestamp sanity
- dimension_unusual: canonical generator output size

Each finding carries a signature: the SHA-256 of the canonical JSON of
its kind plus the rule's projection, so identical patterns deduplicate
in the rarity catalog regardless of key order.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from deepguard.utils import hash_pattern, truncate_text
from deepguard.services.container_parser import RawMetadata, file_extension
from deepguard.services.reference_data import DEFAULT_REFERENCE_DATA, ReferenceData

logger = logging.getLogger(__name__)


# ============================================================
# Configuration Constants
# ============================================================

RARITY_EXIF_MISSING = 30
RARITY_SOFTWARE_AI = 5
RARITY_SOFTWARE_DEEPFAKE = 2
RARITY_SOFTWARE_UNKNOWN = 80
RARITY_EMBEDDED_GENERATION = 3
RARITY_FILENAME_AI = 15
RARITY_TIMESTAMP_FUTURE = 95
RARITY_TIMESTAMP_IMPOSSIBLE = 98
RARITY_DIMENSION_UNUSUAL = 20

MIN_UNKNOWN_SOFTWARE_LENGTH = 3
EARLIEST_PLAUSIBLE_YEAR = 1990  # before consumer digital cameras
NEVER_SEEN_RARITY = 90
PROMPT_PREVIEW_LENGTH = 100

EXIF_TIMESTAMP_FORMATS = ("%Y:%m:%d %H:%M:%S", "%Y:%m:%d")


# ============================================================
# Data Models
# ============================================================

class AnomalyKind(str, Enum):
    """Every anomaly category the catalog understands."""
    EXIF_MISSING = "exif_missing"
    EXIF_STRIPPED = "exif_stripped"
    EXIF_INCONSISTENT = "exif_inconsistent"
    SOFTWARE_AI = "software_ai"
    SOFTWARE_EDITOR = "software_editor"
    SOFTWARE_DEEPFAKE = "software_deepfake"
    SOFTWARE_UNKNOWN = "software_unknown"
    TIMESTAMP_FUTURE = "timestamp_future"
    TIMESTAMP_IMPOSSIBLE = "timestamp_impossible"
    GPS_MISMATCH = "gps_mismatch"
    COMPRESSION_UNUSUAL = "compression_unusual"
    FILENAME_AI = "filename_ai"
    DIMENSION_UNUSUAL = "dimension_unusual"
    COLORSPACE_UNUSUAL = "colorspace_unusual"
    CAMERA_FAKE = "camera_fake"
    METADATA_CONFLICT = "metadata_conflict"


@dataclass
class Finding:
    """One classified anomaly."""
    kind: AnomalyKind
    signature: str
    payload: Dict[str, Any]
    rarity: int  # 0 (ubiquitous) to 100 (never seen)
    suspicious: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "signature": self.signature,
            "payload": self.payload,
            "rarity": self.rarity,
            "suspicious": self.suspicious
        }


@dataclass
class AnomalyReport:
    """Aggregate view over the findings of one file."""
    findings: List[Finding] = field(default_factory=list)
    overall_risk_score: int = 0
    recommendations: List[str] = field(default_factory=list)
    never_seen_before: List[Finding] = field(default_factory=list)
    known_suspicious: List[Finding] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "findings": [f.to_dict() for f in self.findings],
            "overall_risk_score": self.overall_risk_score,
            "recommendations": self.recommendations,
            "never_seen_before": [f.to_dict() for f in self.never_seen_before],
            "known_suspicious": [f.to_dict() for f in self.known_suspicious]
        }


# ============================================================
# Helpers
# ============================================================

def finding_signature(kind: AnomalyKind, projection: Dict[str, Any]) -> str:
    """
    Computes the deduplication signature of a finding.

    Args:
        kind: Anomaly category (always part of the hashed input)
        projection: Rule-specific fields that identify the pattern

    Returns:
        SHA-256 hex digest, independent of projection key order
    """
    return hash_pattern({"kind": kind.value, **projection})


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parses an EXIF or ISO-8601 timestamp into an aware UTC datetime.

    Accepts "YYYY:MM:DD HH:MM:SS", "YYYY:MM:DD" and ISO-8601. Naive
    values are taken as UTC. Returns None for anything unparseable,
    including the all-zero placeholder some cameras write.
    """
    if not value or not isinstance(value, str):
        return None

    text = value.strip().rstrip("\x00")
    parsed = None

    for fmt in EXIF_TIMESTAMP_FORMATS:
        try:
            parsed = datetime.strptime(text, fmt)
            break
        except ValueError:
            continue

    if parsed is None:
        iso = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
        try:
            parsed = datetime.fromisoformat(iso)
        except ValueError:
            return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _make(kind: AnomalyKind, projection: Dict[str, Any], payload: Dict[str, Any],
          rarity: int, suspicious: bool) -> Finding:
    return Finding(
        kind=kind,
        signature=finding_signature(kind, projection),
        payload=payload,
        rarity=rarity,
        suspicious=suspicious
    )


# ============================================================
# Classifier
# ============================================================

class AnomalyClassifier:
    """
    Rule-based metadata anomaly classifier.

    Pure and deterministic: the same metadata, filename, reference data
    and clock always produce the same ordered findings.
    """

    def __init__(self, reference: Optional[ReferenceData] = None):
        self.reference = reference or DEFAULT_REFERENCE_DATA

    def classify(
        self,
        metadata: RawMetadata,
        filename: str,
        now: Optional[datetime] = None
    ) -> List[Finding]:
        """
        Applies every rule to one file's metadata.

        Args:
            metadata: Parser output
            filename: Declared filename
            now: Reference time for the future-timestamp rule (default: now, UTC)

        Returns:
            Findings in rule order
        """
        filename = filename or ""
        if now is None:
            now = datetime.now(timezone.utc)
        elif now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)

        findings: List[Finding] = []
        findings.extend(self._check_exif_missing(metadata, filename))
        findings.extend(self._check_software(metadata.software))
        findings.extend(self._check_embedded_generation(metadata))
        findings.extend(self._check_filename(filename))
        findings.extend(self._check_timestamps(metadata, now))
        findings.extend(self._check_dimensions(metadata))

        logger.debug(
            f"Classified {filename!r}: {[f.kind.value for f in findings]}"
        )
        return findings

    def _check_exif_missing(self, metadata: RawMetadata, filename: str) -> List[Finding]:
        extension = file_extension(filename)
        if extension not in self.reference.camera_extensions:
            return []
        if metadata.make or metadata.model or metadata.date_time_original:
            return []

        return [_make(
            AnomalyKind.EXIF_MISSING,
            {"missing": True, "extension": extension},
            {"filename": filename, "extension": extension},
            RARITY_EXIF_MISSING,
            True
        )]

    def _check_software(self, software: Optional[str]) -> List[Finding]:
        if not software:
            return []

        findings = []
        ref = self.reference

        ai_match = ref.first_match("ai_generator_patterns", software)
        if ai_match:
            findings.append(_make(
                AnomalyKind.SOFTWARE_AI,
                {"software": software},
                {"software": software, "matched": ai_match},
                RARITY_SOFTWARE_AI,
                True
            ))

        deepfake_match = ref.first_match("deepfake_tool_patterns", software)
        if deepfake_match:
            findings.append(_make(
                AnomalyKind.SOFTWARE_DEEPFAKE,
                {"software": software, "type": "deepfake"},
                {"software": software, "matched": deepfake_match},
                RARITY_SOFTWARE_DEEPFAKE,
                True
            ))

        # Unrecognized software may be a novel generator
        if (
            not ai_match
            and not deepfake_match
            and not ref.is_editor(software)
            and len(software) > MIN_UNKNOWN_SOFTWARE_LENGTH
        ):
            findings.append(_make(
                AnomalyKind.SOFTWARE_UNKNOWN,
                {"software": software},
                {"software": software},
                RARITY_SOFTWARE_UNKNOWN,
                False
            ))

        return findings

    def _check_embedded_generation(self, metadata: RawMetadata) -> List[Finding]:
        prompt = metadata.ai_generation_prompt
        seed = metadata.ai_generation_seed
        if not prompt and not seed:
            return []

        return [_make(
            AnomalyKind.SOFTWARE_AI,
            {"prompt": bool(prompt), "seed": seed},
            {
                "has_prompt": bool(prompt),
                "seed": seed,
                "prompt_preview": truncate_text(prompt, PROMPT_PREVIEW_LENGTH)
            },
            RARITY_EMBEDDED_GENERATION,
            True
        )]

    def _check_filename(self, filename: str) -> List[Finding]:
        matched = self.reference.first_match("suspicious_filename_patterns", filename)
        if not matched:
            return []

        return [_make(
            AnomalyKind.FILENAME_AI,
            {"filename": filename, "pattern": matched},
            {"filename": filename, "matched_pattern": matched},
            RARITY_FILENAME_AI,
            True
        )]

    def _check_timestamps(self, metadata: RawMetadata, now: datetime) -> List[Finding]:
        if metadata.date_time:
            raw, source = metadata.date_time, "date_time"
        elif metadata.date_time_original:
            raw, source = metadata.date_time_original, "date_time_original"
        else:
            return []

        timestamp = parse_timestamp(raw)
        if timestamp is None:
            logger.debug(f"Unparseable {source} value {raw!r}; timestamp rules skipped")
            return []

        findings = []
        if timestamp > now:
            findings.append(_make(
                AnomalyKind.TIMESTAMP_FUTURE,
                {"future": True, "date": raw},
                {"date_time": raw, "source": source},
                RARITY_TIMESTAMP_FUTURE,
                True
            ))

        if timestamp.year < EARLIEST_PLAUSIBLE_YEAR:
            findings.append(_make(
                AnomalyKind.TIMESTAMP_IMPOSSIBLE,
                {"impossible": True, "year": timestamp.year},
                {"date_time": raw, "source": source, "year": timestamp.year},
                RARITY_TIMESTAMP_IMPOSSIBLE,
                True
            ))

        return findings

    def _check_dimensions(self, metadata: RawMetadata) -> List[Finding]:
        width, height = metadata.width, metadata.height
        if not width or not height:
            return []
        if not self.reference.is_generator_dimension(width, height):
            return []

        return [_make(
            AnomalyKind.DIMENSION_UNUSUAL,
            {"width": width, "height": height},
            {"width": width, "height": height},
            RARITY_DIMENSION_UNUSUAL,
            False  # common sizes are not conclusive
        )]


def classify(
    metadata: RawMetadata,
    filename: str,
    reference: Optional[ReferenceData] = None,
    now: Optional[datetime] = None
) -> List[Finding]:
    """Classifies one file's metadata with the given (or default) reference data."""
    return AnomalyClassifier(reference).classify(metadata, filename, now=now)


# ============================================================
# Report
# ============================================================

RECOMMENDATIONS = [
    (
        lambda kinds: AnomalyKind.SOFTWARE_AI in kinds,
        "AI generation software detected - high likelihood of synthetic content"
    ),
    (
        lambda kinds: AnomalyKind.SOFTWARE_DEEPFAKE in kinds,
        "Deepfake tool signature found - treat with extreme caution"
    ),
    (
        lambda kinds: AnomalyKind.EXIF_MISSING in kinds,
        "Missing EXIF data suggests stripped metadata or screenshot"
    ),
    (
        lambda kinds: AnomalyKind.FILENAME_AI in kinds,
        "Filename patterns suggest AI-generated origin"
    ),
    (
        lambda kinds: bool(kinds & {AnomalyKind.TIMESTAMP_FUTURE, AnomalyKind.TIMESTAMP_IMPOSSIBLE}),
        "Timestamp anomalies indicate potential manipulation"
    ),
]


def build_anomaly_report(findings: List[Finding]) -> AnomalyReport:
    """
    Summarizes findings into a risk score and recommendations.

    The risk score weighs suspicious findings by how common they are:
    0 when nothing is suspicious, otherwise
    min(100, mean(100 - rarity) + 10 * suspicious_count), rounded.
    """
    suspicious = [f for f in findings if f.suspicious]

    risk_score = 0.0
    if suspicious:
        mean_commonness = sum(100 - f.rarity for f in suspicious) / len(suspicious)
        risk_score = min(100.0, mean_commonness + 10 * len(suspicious))

    kinds = {f.kind for f in findings}
    recommendations = [text for applies, text in RECOMMENDATIONS if applies(kinds)]

    return AnomalyReport(
        findings=list(findings),
        overall_risk_score=int(math.floor(risk_score + 0.5)),  # half-up
        recommendations=recommendations,
        never_seen_before=[f for f in findings if f.rarity > NEVER_SEEN_RARITY],
        known_suspicious=suspicious
    )
