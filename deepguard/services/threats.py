"""
Criminal Signature Matcher for DeepGuard
========================================
Cross-references files against known criminal-tool signatures.

Match sources, in order:
- Filename (confidence 0.70)
- EXIF Software tag (0.90)
- Embedded generation prompt (0.95)
- Deepfake-software findings vs. metadata markers (0.85)

The resulting threat report escalates with the highest matched level
and routes mandatory reporting to the agencies responsible for the
matched network.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from deepguard.utils import canonical_json, truncate_text
from deepguard.services.anomaly import AnomalyKind, Finding
from deepguard.services.container_parser import RawMetadata
from deepguard.services.reference_data import (
    DEFAULT_REFERENCE_DATA,
    GENERAL_AGENCY_CATEGORY,
    ReferenceData,
    SignatureKind,
    ThreatLevel,
    ThreatSignature,
)

logger = logging.getLogger(__name__)


# ============================================================
# Configuration Constants
# ============================================================

class MatchLocation(str, Enum):
    """Where in the file a signature was found."""
    FILENAME = "filename"
    SOFTWARE_TAG = "software_tag"
    GENERATION_PROMPT = "generation_prompt"
    METADATA_PATTERN = "metadata_pattern"


MATCH_CONFIDENCE = {
    MatchLocation.FILENAME: 0.70,
    MatchLocation.SOFTWARE_TAG: 0.90,
    MatchLocation.GENERATION_PROMPT: 0.95,
    MatchLocation.METADATA_PATTERN: 0.85,
}

PROMPT_EVIDENCE_LENGTH = 100

CRITICAL_RECOMMENDATIONS = [
    "CRITICAL: This content may be associated with serious criminal activity.",
    "Do NOT share or distribute this content.",
    "Report immediately to appropriate authorities.",
]

HIGH_RECOMMENDATIONS = [
    "This content shows patterns associated with known fraud/scam operations.",
    "Exercise extreme caution with any associated communications.",
    "Consider reporting to relevant authorities.",
]

ADVISORY_RECOMMENDATIONS = [
    "This content may be AI-generated and could be part of a deceptive campaign.",
    "Verify the source before trusting or sharing.",
]

# Checked in order against the groups of the high-level matches
HIGH_GROUP_ROUTES = [
    ("Fraud", "fraud"),
    ("Disinfo", "disinformation"),
]


# ============================================================
# Data Models
# ============================================================

@dataclass
class Match:
    """A threat signature found in one location of a file."""
    signature: ThreatSignature
    confidence: float
    location: MatchLocation
    evidence: str
    fragment: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "signature_id": self.signature.id,
            "signature_name": self.signature.name,
            "signature_kind": self.signature.kind.value,
            "level": self.signature.level.label,
            "group": self.signature.group,
            "confidence": self.confidence,
            "location": self.location.value,
            "evidence": self.evidence,
            "fragment": self.fragment
        }


@dataclass
class ThreatReport:
    """Aggregated threat assessment for one file."""
    matches: List[Match] = field(default_factory=list)
    overall_level: ThreatLevel = ThreatLevel.NONE
    recommendations: List[str] = field(default_factory=list)
    should_report: bool = False
    agencies: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "matches": [m.to_dict() for m in self.matches],
            "overall_level": self.overall_level.label,
            "recommendations": self.recommendations,
            "should_report": self.should_report,
            "agencies": self.agencies
        }


def _dedupe(items: List[str]) -> List[str]:
    seen = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


# ============================================================
# Matcher
# ============================================================

class SignatureMatcher:
    """
    Matches file metadata against the criminal signature catalog.

    Stateless apart from the reference data it was built with; safe to
    share between requests.
    """

    def __init__(self, reference: Optional[ReferenceData] = None):
        self.reference = reference or DEFAULT_REFERENCE_DATA

    @property
    def signatures(self) -> List[ThreatSignature]:
        return self.reference.threat_signatures

    def _scan(
        self,
        text: Optional[str],
        location: MatchLocation,
        evidence: Optional[str] = None
    ) -> List[Match]:
        if not text:
            return []
        matches = []
        for signature in self.signatures:
            fragment = signature.first_hit(text)
            if fragment:
                matches.append(Match(
                    signature=signature,
                    confidence=MATCH_CONFIDENCE[location],
                    location=location,
                    evidence=text if evidence is None else evidence,
                    fragment=fragment
                ))
        return matches

    def _cross_reference(self, findings: List[Finding]) -> List[Match]:
        markers = [s for s in self.signatures if s.kind is SignatureKind.METADATA_MARKER]
        matches = []
        for finding in findings:
            if finding.kind is not AnomalyKind.SOFTWARE_DEEPFAKE or not finding.suspicious:
                continue
            software = finding.payload.get("software")
            if not software:
                continue
            for signature in markers:
                fragment = signature.first_hit(str(software))
                if fragment:
                    matches.append(Match(
                        signature=signature,
                        confidence=MATCH_CONFIDENCE[MatchLocation.METADATA_PATTERN],
                        location=MatchLocation.METADATA_PATTERN,
                        evidence=canonical_json(finding.payload),
                        fragment=fragment
                    ))
                    break
        return matches

    def match(
        self,
        metadata: Optional[RawMetadata],
        filename: Optional[str],
        findings: Optional[List[Finding]] = None
    ) -> List[Match]:
        """
        Finds every signature present in the file.

        Args:
            metadata: Parser output (may be None)
            filename: Declared filename (may be empty)
            findings: Classifier output for the same file

        Returns:
            Matches in location order, then catalog order
        """
        matches = self._scan(filename, MatchLocation.FILENAME)

        if metadata is not None:
            matches.extend(self._scan(metadata.software, MatchLocation.SOFTWARE_TAG))
            prompt = metadata.ai_generation_prompt
            matches.extend(self._scan(
                prompt,
                MatchLocation.GENERATION_PROMPT,
                evidence=truncate_text(prompt, PROMPT_EVIDENCE_LENGTH)
            ))

        matches.extend(self._cross_reference(findings or []))
        return matches

    def build_report(self, matches: List[Match]) -> ThreatReport:
        """
        Applies the recommendation and reporting policy to a match set.

        Args:
            matches: Output of match()

        Returns:
            ThreatReport keyed by the highest matched threat level
        """
        if not matches:
            return ThreatReport()

        overall = max(m.signature.level for m in matches)
        at_level = [m for m in matches if m.signature.level == overall]

        if overall is ThreatLevel.CRITICAL:
            recommendations = list(CRITICAL_RECOMMENDATIONS)
            agencies = self.reference.agencies_for(self._critical_route(at_level))
        elif overall is ThreatLevel.HIGH:
            recommendations = list(HIGH_RECOMMENDATIONS)
            agencies = self.reference.agencies_for(self._high_route(at_level))
        else:
            recommendations = list(ADVISORY_RECOMMENDATIONS)
            agencies = []

        return ThreatReport(
            matches=list(matches),
            overall_level=overall,
            recommendations=recommendations,
            should_report=overall >= ThreatLevel.HIGH,
            agencies=_dedupe(agencies)
        )

    def _critical_route(self, matches: List[Match]) -> str:
        groups = {m.signature.group for m in matches}
        for group, category in self.reference.critical_group_routes.items():
            if group in groups:
                return category
        return GENERAL_AGENCY_CATEGORY

    def _high_route(self, matches: List[Match]) -> str:
        for needle, category in HIGH_GROUP_ROUTES:
            if any(needle in m.signature.group for m in matches):
                return category
        return GENERAL_AGENCY_CATEGORY

    def analyze(
        self,
        metadata: Optional[RawMetadata],
        filename: Optional[str],
        findings: Optional[List[Finding]] = None
    ) -> ThreatReport:
        """Matches and builds the report in one step."""
        return self.build_report(self.match(metadata, filename, findings))

    def known_signatures(self) -> List[ThreatSignature]:
        return list(self.signatures)

    def reporting_resources(self, category: str) -> List[str]:
        """Agency list for a category; unknown categories get the general list."""
        return self.reference.agencies_for(category)

    def log_detection(self, report: ThreatReport, filename: str) -> None:
        """Emits a WARNING for high and critical reports."""
        if report.overall_level < ThreatLevel.HIGH:
            return
        names = ", ".join(_dedupe([m.signature.name for m in report.matches]))
        logger.warning(
            f"Threat detected in {filename!r}: level={report.overall_level.label} "
            f"signatures=[{names}] should_report={report.should_report}"
        )
