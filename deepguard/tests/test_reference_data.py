"""
Test Suite for Reference Data
=============================
Tests for the injectable detection tables and their JSON loading.
"""

import json

import pytest

from deepguard.services.reference_data import (
    DEFAULT_REFERENCE_DATA,
    ReferenceData,
    ReferenceDataError,
    SignatureKind,
    ThreatLevel,
    ThreatSignature,
    load_reference_data,
)


class TestThreatLevel:
    """Tests for the ordinal threat level."""

    def test_total_order(self):
        """Test that levels compare in severity order."""
        assert ThreatLevel.NONE < ThreatLevel.LOW < ThreatLevel.MEDIUM < ThreatLevel.HIGH < ThreatLevel.CRITICAL
        assert max(ThreatLevel.MEDIUM, ThreatLevel.CRITICAL, ThreatLevel.LOW) is ThreatLevel.CRITICAL

    @pytest.mark.parametrize("value,expected", [
        ("critical", ThreatLevel.CRITICAL),
        (" High ", ThreatLevel.HIGH),
        (2, ThreatLevel.MEDIUM),
        (ThreatLevel.LOW, ThreatLevel.LOW),
    ])
    def test_parse(self, value, expected):
        """Test parsing from labels, ordinals and members."""
        assert ThreatLevel.parse(value) is expected

    def test_parse_unknown(self):
        """Test that unknown labels are rejected."""
        with pytest.raises(ValueError):
            ThreatLevel.parse("severe")

    def test_label(self):
        """Test lowercase labels."""
        assert ThreatLevel.CRITICAL.label == "critical"


class TestThreatSignature:
    """Tests for signature parsing and fragment matching."""

    def test_fragments_and_first_hit(self):
        """Test case-insensitive fragment search in catalog order."""
        sig = ThreatSignature(
            id="t-1", name="Test", kind=SignatureKind.WATERMARK,
            pattern="alpha|beta", level=ThreatLevel.LOW
        )

        assert sig.fragments == ["alpha", "beta"]
        assert sig.first_hit("xx BETA alpha") == "alpha"
        assert sig.first_hit("gamma") is None
        assert sig.first_hit(None) is None

    def test_from_dict_validation(self):
        """Test that malformed signatures raise ReferenceDataError."""
        base = {"id": "t", "name": "T", "kind": "watermark", "pattern": "a", "level": "low"}

        assert ThreatSignature.from_dict(base).level is ThreatLevel.LOW
        with pytest.raises(ReferenceDataError):
            ThreatSignature.from_dict({**base, "kind": "telepathy"})
        with pytest.raises(ReferenceDataError):
            ThreatSignature.from_dict({**base, "level": "none"})
        with pytest.raises(ReferenceDataError):
            ThreatSignature.from_dict({**base, "pattern": "|"})
        with pytest.raises(ReferenceDataError):
            ThreatSignature.from_dict({"id": "t"})


class TestDefaults:
    """Tests for the built-in tables."""

    def test_default_catalog(self):
        """Test the built-in signature catalog."""
        ids = [s.id for s in DEFAULT_REFERENCE_DATA.threat_signatures]

        assert ids == [f"sig-00{i}" for i in range(1, 9)]
        assert DEFAULT_REFERENCE_DATA.threat_signatures[0].name == "DeepNude Watermark"

    def test_lookup_helpers(self):
        """Test regex lookups against the default tables."""
        ref = DEFAULT_REFERENCE_DATA

        assert ref.is_ai_generator("Stable Diffusion XL")
        assert ref.is_deepfake_tool("Wav2Lip")
        assert ref.is_editor("Capture One 23")
        assert not ref.is_editor("Midjourney")
        assert ref.first_match("suspicious_filename_patterns", "d41d8cd98f00b204e9800998ecf8427e.png") == "[a-f0-9]{32,}"
        assert ref.is_generator_dimension(1920, 1080)
        assert not ref.is_generator_dimension(1080, 1080)

    def test_agency_fallback(self):
        """Test that unknown categories get the general list."""
        assert DEFAULT_REFERENCE_DATA.agencies_for("unknown") == \
            DEFAULT_REFERENCE_DATA.reporting_agencies["general"]

    def test_checksum_stable(self):
        """Test that equal tables have equal checksums."""
        assert ReferenceData().checksum == DEFAULT_REFERENCE_DATA.checksum
        assert ReferenceData(version="other").checksum != DEFAULT_REFERENCE_DATA.checksum


class TestLoading:
    """Tests for dict and JSON loading."""

    def test_round_trip_through_dict(self):
        """Test that to_dict output loads back to equal tables."""
        restored = ReferenceData.from_dict(DEFAULT_REFERENCE_DATA.to_dict())

        assert restored.to_dict() == DEFAULT_REFERENCE_DATA.to_dict()

    def test_partial_override(self):
        """Test that omitted tables keep their defaults."""
        ref = ReferenceData.from_dict({"version": "2026.02", "editor_patterns": ["krita"]})

        assert ref.version == "2026.02"
        assert ref.is_editor("Krita 5")
        assert not ref.is_editor("GIMP")
        assert ref.threat_signatures == DEFAULT_REFERENCE_DATA.threat_signatures

    def test_invalid_regex(self):
        """Test that bad patterns are rejected at load time."""
        with pytest.raises(ReferenceDataError):
            ReferenceData.from_dict({"ai_generator_patterns": ["(unclosed"]})

    def test_route_to_unknown_category(self):
        """Test that routes must point at defined agency lists."""
        with pytest.raises(ReferenceDataError):
            ReferenceData.from_dict({"critical_group_routes": {"Some Group": "missing"}})

    def test_duplicate_signature_ids(self):
        """Test that signature ids must be unique."""
        sig = DEFAULT_REFERENCE_DATA.threat_signatures[0].to_dict()
        with pytest.raises(ReferenceDataError):
            ReferenceData.from_dict({"threat_signatures": [sig, sig]})

    def test_not_an_object(self):
        """Test that non-object documents are rejected."""
        with pytest.raises(ReferenceDataError):
            ReferenceData.from_dict(["not", "a", "dict"])

    def test_from_json_file(self, tmp_path):
        """Test loading from a JSON document."""
        path = tmp_path / "reference.json"
        path.write_text(json.dumps({"version": "test-1", "camera_extensions": [".DNG"]}))

        ref = ReferenceData.from_json_file(path)

        assert ref.version == "test-1"
        assert ref.camera_extensions == ["dng"]

    def test_from_json_file_errors(self, tmp_path):
        """Test missing and malformed files."""
        bad = tmp_path / "bad.json"
        bad.write_text("{not json")

        with pytest.raises(ReferenceDataError):
            ReferenceData.from_json_file(tmp_path / "missing.json")
        with pytest.raises(ReferenceDataError):
            ReferenceData.from_json_file(bad)

    def test_load_from_environment(self, tmp_path, monkeypatch):
        """Test that DEEPGUARD_REFERENCE_DATA selects the document."""
        path = tmp_path / "reference.json"
        path.write_text(json.dumps({"version": "from-env"}))
        monkeypatch.setenv("DEEPGUARD_REFERENCE_DATA", str(path))

        assert load_reference_data().version == "from-env"

    def test_load_defaults(self, monkeypatch):
        """Test that no configuration yields the built-in tables."""
        monkeypatch.delenv("DEEPGUARD_REFERENCE_DATA", raising=False)

        assert load_reference_data() is DEFAULT_REFERENCE_DATA
