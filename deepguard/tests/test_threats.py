"""
Test Suite for Criminal Signature Matcher
=========================================
Tests for match sources, threat level aggregation and the reporting
policy.
"""

import itertools
import logging

import pytest

from deepguard.services.anomaly import AnomalyKind, classify
from deepguard.services.container_parser import RawMetadata
from deepguard.services.reference_data import (
    DEFAULT_REFERENCE_DATA,
    ReferenceData,
    ThreatLevel,
)
from deepguard.services.threats import (
    Match,
    MatchLocation,
    SignatureMatcher,
)


@pytest.fixture
def matcher():
    return SignatureMatcher()


def signature(sig_id):
    return next(s for s in DEFAULT_REFERENCE_DATA.threat_signatures if s.id == sig_id)


def match_for(sig_id, location=MatchLocation.FILENAME):
    return Match(signature=signature(sig_id), confidence=0.7, location=location, evidence="x")


class TestMatchSources:
    """Tests for where and how signatures are found."""

    def test_filename_match(self, matcher, fixed_now):
        """Test a DeepNude filename hit and its critical report."""
        filename = "deepnude_output_2381928391283.png"
        metadata = RawMetadata()
        findings = classify(metadata, filename, now=fixed_now)

        assert [f.kind for f in findings] == [AnomalyKind.FILENAME_AI]

        report = matcher.analyze(metadata, filename, findings)

        assert len(report.matches) == 1
        match = report.matches[0]
        assert match.signature.name == "DeepNude Watermark"
        assert match.confidence == 0.70
        assert match.location == MatchLocation.FILENAME
        assert match.fragment == "deepnude"
        assert report.overall_level == ThreatLevel.CRITICAL
        assert report.should_report is True
        assert report.agencies == DEFAULT_REFERENCE_DATA.reporting_agencies["sextortion"]

    def test_generic_ai_software_no_match(self, matcher, fixed_now):
        """Test that mainstream generator software matches no criminal signature."""
        metadata = RawMetadata(software="Midjourney v6")
        report = matcher.analyze(metadata, "photo.jpg", classify(metadata, "photo.jpg", now=fixed_now))

        assert report.matches == []
        assert report.overall_level == ThreatLevel.NONE
        assert report.recommendations == []
        assert report.should_report is False
        assert report.agencies == []

    def test_software_tag_match(self, matcher):
        """Test software tag matches at 0.90."""
        matches = matcher.match(RawMetadata(software="FakeApp 2.2"), "clip.mp4")

        assert [(m.signature.id, m.location, m.confidence) for m in matches] == [
            ("sig-002", MatchLocation.SOFTWARE_TAG, 0.90)
        ]
        assert matches[0].evidence == "FakeApp 2.2"

    def test_prompt_match_truncates_evidence(self, matcher):
        """Test generation prompt matches at 0.95 with a short evidence snippet."""
        prompt = "parameters: " + "x" * 200 + " crypto_shill influencer"
        matches = matcher.match(RawMetadata(ai_generation_prompt=prompt), "a.png")

        assert len(matches) == 1
        assert matches[0].location == MatchLocation.GENERATION_PROMPT
        assert matches[0].confidence == 0.95
        assert matches[0].signature.id == "sig-007"
        assert len(matches[0].evidence) == 100

    def test_deepfake_cross_reference(self, matcher, fixed_now):
        """Test that deepfake software findings are cross-referenced with markers."""
        reference = ReferenceData(deepfake_tool_patterns=[r"deepface"])
        metadata = RawMetadata(software="DeepFace_Swap Studio")
        findings = classify(metadata, "a.png", reference=reference, now=fixed_now)

        assert [f.kind for f in findings] == [AnomalyKind.SOFTWARE_DEEPFAKE]

        matches = matcher.match(metadata, "a.png", findings)
        locations = [(m.signature.id, m.location) for m in matches]

        assert locations == [
            ("sig-002", MatchLocation.SOFTWARE_TAG),
            ("sig-002", MatchLocation.METADATA_PATTERN),
        ]
        assert matches[1].confidence == 0.85
        assert '"software":"DeepFace_Swap Studio"' in matches[1].evidence

    def test_one_match_per_signature_and_location(self, matcher):
        """Test that several fragments of one signature produce one match."""
        matches = matcher.match(RawMetadata(), "deepnude_undress_dn_.png")

        assert len(matches) == 1
        assert matches[0].fragment == "deepnude"

    def test_match_order(self, matcher):
        """Test filename, software and prompt matches come in that order."""
        metadata = RawMetadata(software="lovescam kit", ai_generation_prompt="prompt: troll_farm")
        matches = matcher.match(metadata, "insurance_fake.jpg")

        assert [m.location for m in matches] == [
            MatchLocation.FILENAME,
            MatchLocation.SOFTWARE_TAG,
            MatchLocation.GENERATION_PROMPT,
        ]

    def test_absent_inputs(self, matcher):
        """Test that missing inputs produce no matches and no errors."""
        assert matcher.match(None, None) == []
        assert matcher.match(RawMetadata(), "", []) == []


class TestReportPolicy:
    """Tests for recommendations and agency routing."""

    def test_child_safety_routing_takes_precedence(self, matcher):
        """Test that child-safety matches route to child-safety agencies."""
        report = matcher.build_report([match_for("sig-001"), match_for("sig-006")])

        assert report.overall_level == ThreatLevel.CRITICAL
        assert report.agencies == DEFAULT_REFERENCE_DATA.reporting_agencies["csam"]
        assert report.recommendations[0].startswith("CRITICAL")

    def test_other_critical_routes_general(self, matcher):
        """Test that other critical groups route to the general list."""
        report = matcher.build_report([match_for("sig-005")])

        assert report.agencies == DEFAULT_REFERENCE_DATA.reporting_agencies["general"]
        assert report.should_report is True

    def test_high_fraud_routing(self, matcher):
        """Test that high-level fraud groups route to fraud agencies."""
        report = matcher.build_report([match_for("sig-003")])

        assert report.overall_level == ThreatLevel.HIGH
        assert report.agencies == DEFAULT_REFERENCE_DATA.reporting_agencies["fraud"]
        assert "fraud/scam" in report.recommendations[0]

    def test_high_disinformation_routing(self, matcher):
        """Test that disinformation groups route to disinformation agencies."""
        report = matcher.build_report([match_for("sig-004")])

        assert report.agencies == DEFAULT_REFERENCE_DATA.reporting_agencies["disinformation"]

    def test_medium_is_advisory(self, matcher):
        """Test that medium matches give soft advice and no reporting."""
        report = matcher.build_report([match_for("sig-007"), match_for("sig-008")])

        assert report.overall_level == ThreatLevel.MEDIUM
        assert report.should_report is False
        assert report.agencies == []
        assert report.recommendations[-1] == "Verify the source before trusting or sharing."

    def test_agencies_deduplicated(self, matcher):
        """Test that agency lists never repeat entries."""
        reference = ReferenceData(reporting_agencies={
            "general": ["FBI IC3 (ic3.gov)", "FBI IC3 (ic3.gov)", "Platform abuse teams"],
            "sextortion": ["A"],
            "csam": ["B"],
        })
        report = SignatureMatcher(reference).build_report([match_for("sig-005")])

        assert report.agencies == ["FBI IC3 (ic3.gov)", "Platform abuse teams"]

    def test_overall_level_monotone(self, matcher):
        """Test that adding matches never lowers the overall level."""
        pool = [match_for(s.id) for s in DEFAULT_REFERENCE_DATA.threat_signatures]

        for size in range(len(pool)):
            for subset in itertools.combinations(pool, size):
                base = matcher.build_report(list(subset)).overall_level
                for extra in pool:
                    assert matcher.build_report(list(subset) + [extra]).overall_level >= base

    def test_should_report_iff_high_or_above(self, matcher):
        """Test the reporting threshold for every signature."""
        for sig in DEFAULT_REFERENCE_DATA.threat_signatures:
            report = matcher.build_report([match_for(sig.id)])
            assert report.should_report == (sig.level >= ThreatLevel.HIGH)

    def test_report_to_dict(self, matcher):
        """Test serialized report shape."""
        data = matcher.build_report([match_for("sig-001")]).to_dict()

        assert data["overall_level"] == "critical"
        assert data["matches"][0]["signature_id"] == "sig-001"
        assert data["matches"][0]["level"] == "critical"


class TestOperatorHelpers:
    """Tests for catalog and agency lookups."""

    def test_known_signatures(self, matcher):
        """Test that the full catalog is listed."""
        assert [s.id for s in matcher.known_signatures()] == [f"sig-00{i}" for i in range(1, 9)]

    def test_reporting_resources_fallback(self, matcher):
        """Test unknown categories fall back to the general list."""
        assert matcher.reporting_resources("fraud") == DEFAULT_REFERENCE_DATA.reporting_agencies["fraud"]
        assert matcher.reporting_resources("nonexistent") == DEFAULT_REFERENCE_DATA.reporting_agencies["general"]

    def test_log_detection_levels(self, matcher, caplog):
        """Test that only high and critical reports are logged as warnings."""
        with caplog.at_level(logging.WARNING, logger="deepguard.services.threats"):
            matcher.log_detection(matcher.build_report([match_for("sig-007")]), "a.png")
            assert caplog.records == []

            matcher.log_detection(matcher.build_report([match_for("sig-001")]), "b.png")

        assert len(caplog.records) == 1
        assert "DeepNude Watermark" in caplog.records[0].getMessage()
