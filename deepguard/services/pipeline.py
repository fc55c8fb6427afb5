"""
Metadata Forensics Pipeline for DeepGuard
=========================================
Runs one uploaded file through parse -> classify -> (track + match).

The catalog and the matcher both consume classifier output and do not
depend on each other; a catalog failure never changes the findings or
the threat report.

The combined report also carries the verdict of the external media
classifier when the caller supplies it. That classifier runs elsewhere;
when its result is missing or failed the report is marked degraded but
still contains everything this service produced.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from deepguard.utils import hash_bytes
from deepguard.services.anomaly import AnomalyClassifier, AnomalyReport, Finding, build_anomaly_report
from deepguard.services.catalog import (
    CatalogEntry,
    DetectionContext,
    PatternAlert,
    PatternAlertLevel,
    RarityTracker,
    create_catalog_store,
    pattern_alert,
)
from deepguard.services.container_parser import RawMetadata, parse_metadata
from deepguard.services.reference_data import ReferenceData, load_reference_data
from deepguard.services.threats import SignatureMatcher, ThreatReport

logger = logging.getLogger(__name__)


FAILED_REMOTE_STATUSES = {"error", "failed", "unavailable", "timeout"}


# ============================================================
# Data Models
# ============================================================

@dataclass
class MetadataAnalysis:
    """Everything the metadata core produced for one file."""
    filename: str
    file_hash: str
    metadata: RawMetadata
    findings: List[Finding] = field(default_factory=list)
    anomaly_report: AnomalyReport = field(default_factory=AnomalyReport)
    threat_report: ThreatReport = field(default_factory=ThreatReport)
    catalog_entries: List[CatalogEntry] = field(default_factory=list)
    alerts: List[PatternAlert] = field(default_factory=list)
    reference_version: str = ""
    processing_time_ms: float = 0.0
    analyzed_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filename": self.filename,
            "file_hash": self.file_hash,
            "metadata": self.metadata.to_dict(),
            "findings": [f.to_dict() for f in self.findings],
            "anomaly_report": self.anomaly_report.to_dict(),
            "threat_report": self.threat_report.to_dict(),
            "catalog_entries": [e.to_dict() for e in self.catalog_entries],
            "alerts": [a.to_dict() for a in self.alerts],
            "reference_version": self.reference_version,
            "processing_time_ms": round(self.processing_time_ms, 2),
            "analyzed_at": self.analyzed_at
        }


@dataclass
class RemoteClassification:
    """Verdict of the external media classifier, passed through unchanged."""
    status: str
    confidence: Optional[float] = None
    findings_text: str = ""

    @property
    def failed(self) -> bool:
        return (self.status or "").strip().lower() in FAILED_REMOTE_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "confidence": self.confidence,
            "findings_text": self.findings_text
        }


def assemble_report(
    analysis: MetadataAnalysis,
    remote: Optional[RemoteClassification] = None
) -> Dict[str, Any]:
    """
    Combines the metadata analysis with the external classifier result.

    Args:
        analysis: Output of MetadataForensicsService.analyze_bytes()
        remote: External classifier verdict, if one was obtained

    Returns:
        Report dictionary; `degraded` is True when the remote verdict is
        missing or failed
    """
    degraded = remote is None or remote.failed
    if degraded:
        logger.info(f"Remote classification unavailable for {analysis.filename!r}; report degraded")

    report = analysis.to_dict()
    report["remote_classification"] = remote.to_dict() if remote else None
    report["degraded"] = degraded
    report["summary"] = {
        "threat_level": analysis.threat_report.overall_level.label,
        "should_report": analysis.threat_report.should_report,
        "risk_score": analysis.anomaly_report.overall_risk_score,
        "finding_count": len(analysis.findings),
        "remote_status": remote.status if remote else None
    }
    return report


# ============================================================
# Service
# ============================================================

class MetadataForensicsService:
    """
    Main metadata forensics service.

    Orchestrates:
    - Container parsing
    - Anomaly classification and risk report
    - Rarity catalog tracking and alerts
    - Criminal signature matching
    """

    def __init__(
        self,
        reference: Optional[ReferenceData] = None,
        tracker: Optional[RarityTracker] = None
    ):
        self.reference = reference or load_reference_data()
        self.classifier = AnomalyClassifier(self.reference)
        self.matcher = SignatureMatcher(self.reference)
        self.tracker = tracker or RarityTracker(create_catalog_store())
        logger.info(f"Metadata forensics ready (reference data {self.reference.version})")

    def analyze_bytes(
        self,
        data: bytes,
        filename: str,
        detection_context: DetectionContext = DetectionContext.UNKNOWN,
        track: bool = True,
        now: Optional[datetime] = None
    ) -> MetadataAnalysis:
        """
        Runs the full metadata pipeline on one file.

        Args:
            data: File contents
            filename: Declared filename
            detection_context: Verdict recorded with catalog entries
            track: Record findings in the rarity catalog
            now: Reference time for timestamp rules (default: now, UTC)

        Returns:
            MetadataAnalysis
        """
        start_time = time.time()
        filename = filename or ""

        metadata = parse_metadata(data, filename)
        findings = self.classifier.classify(metadata, filename, now=now)
        anomaly_report = build_anomaly_report(findings)

        threat_report = self.matcher.analyze(metadata, filename, findings)
        self.matcher.log_detection(threat_report, filename)

        analysis = MetadataAnalysis(
            filename=filename,
            file_hash=hash_bytes(data or b""),
            metadata=metadata,
            findings=findings,
            anomaly_report=anomaly_report,
            threat_report=threat_report,
            catalog_entries=[],
            alerts=[],
            reference_version=self.reference.version,
            processing_time_ms=(time.time() - start_time) * 1000
        )
        if track:
            self.track_analysis(analysis, detection_context)
        return analysis

    def track_analysis(
        self,
        analysis: MetadataAnalysis,
        detection_context: DetectionContext = DetectionContext.UNKNOWN
    ) -> MetadataAnalysis:
        """
        Records an analysis' findings in the rarity catalog.

        Runs after findings and threat report are final and only fills
        `catalog_entries` and `alerts`, so it can be deferred past the
        response. Catalog failures are logged by the tracker.
        """
        entries = self.tracker.track_all(analysis.findings, analysis.filename, detection_context)
        alerts: List[PatternAlert] = []
        for entry in entries:
            alert = pattern_alert(entry, analysis.filename)
            if alert.level is not PatternAlertLevel.NONE:
                logger.info(f"[PATTERN ALERT] {alert.level.value}: {alert.message}")
                alerts.append(alert)

        analysis.catalog_entries = entries
        analysis.alerts = alerts
        return analysis
