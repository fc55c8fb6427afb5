"""
Reference Data for DeepGuard
============================
Versioned lookup tables consumed by the anomaly classifier and the
criminal signature matcher.

Contents:
- Software fragments for AI generators, deepfake tools and photo editors
- Suspicious filename patterns and canonical generator output sizes
- Threat signature catalog with ordinal threat levels
- Reporting agency lists and critical-threat routing

The built-in tables are the default; a JSON document with the same
shape can replace them (DEEPGUARD_REFERENCE_DATA) so the tables can be
updated and tested without touching the classifier or matcher.
"""

import json
import os
import re
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from pathlib import Path
from typing import Any, Dict, List, Optional, Pattern, Tuple, Union

from deepguard.utils import hash_pattern


class ReferenceDataError(Exception):
    """Raised when a reference data document is malformed."""
    pass


# ============================================================
# Threat Taxonomy
# ============================================================

class ThreatLevel(IntEnum):
    """Ordinal threat severity. NONE is reserved for empty reports."""
    NONE = 0
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: Union[str, int, "ThreatLevel"]) -> "ThreatLevel":
        """Accepts a level, its lowercase label, or its ordinal."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown threat level: {value!r}")
        return cls(value)


class SignatureKind(str, Enum):
    """Where a criminal signature is expected to surface."""
    WATERMARK = "watermark"
    STEGANOGRAPHY = "steganography"
    METADATA_MARKER = "metadata_marker"
    GENERATION_PATTERN = "generation_pattern"
    NETWORK_SIGNATURE = "network_signature"


@dataclass(frozen=True)
class ThreatSignature:
    """One entry of the static criminal signature catalog."""
    id: str
    name: str
    kind: SignatureKind
    pattern: str  # '|'-delimited lowercase fragments
    level: ThreatLevel
    group: str = ""
    description: str = ""
    reported_cases: int = 0
    first_seen: Optional[str] = None
    last_seen: Optional[str] = None

    @property
    def fragments(self) -> List[str]:
        return [p.strip().lower() for p in self.pattern.split("|") if p.strip()]

    def first_hit(self, text: Optional[str]) -> Optional[str]:
        """Returns the first fragment contained in text (case-insensitive)."""
        if not text:
            return None
        lowered = text.lower()
        for fragment in self.fragments:
            if fragment in lowered:
                return fragment
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "pattern": self.pattern,
            "level": self.level.label,
            "group": self.group,
            "description": self.description,
            "reported_cases": self.reported_cases,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ThreatSignature":
        try:
            signature = cls(
                id=str(data["id"]),
                name=str(data["name"]),
                kind=SignatureKind(data["kind"]),
                pattern=str(data["pattern"]),
                level=ThreatLevel.parse(data["level"]),
                group=str(data.get("group") or ""),
                description=str(data.get("description") or ""),
                reported_cases=int(data.get("reported_cases") or 0),
                first_seen=data.get("first_seen"),
                last_seen=data.get("last_seen"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ReferenceDataError(f"Invalid threat signature {data!r}: {e}")

        if signature.level is ThreatLevel.NONE:
            raise ReferenceDataError(f"Threat signature {signature.id} cannot have level 'none'")
        if not signature.fragments:
            raise ReferenceDataError(f"Threat signature {signature.id} has an empty pattern")
        return signature


# ============================================================
# Built-in Tables
# ============================================================

DEFAULT_VERSION = "2026.01"

DEFAULT_AI_GENERATOR_PATTERNS = [
    r"dall-?e", r"midjourney", r"stable.?diffusion", r"sd[_-]?xl",
    r"automatic1111", r"comfyui", r"invoke.?ai", r"leonardo\.ai",
    r"runway", r"pika", r"gen-?2", r"sora", r"firefly", r"imagen",
    r"bing.?image", r"copilot", r"gemini", r"claude",
]

DEFAULT_DEEPFAKE_TOOL_PATTERNS = [
    r"faceswap", r"deepfacelab", r"dfl", r"reface", r"faceapp",
    r"deepfake", r"first.?order.?motion", r"wav2lip", r"syncnet",
]

DEFAULT_EDITOR_PATTERNS = [
    r"photoshop", r"lightroom", r"gimp", r"affinity", r"capture.?one",
    r"darktable", r"rawtherapee", r"pixelmator", r"snapseed",
    r"vsco", r"canva", r"figma", r"sketch",
]

DEFAULT_SUSPICIOUS_FILENAME_PATTERNS = [
    r"generated", r"ai[_-]?gen", r"_output", r"fake", r"synthetic",
    r"\d{13,}",  # long numeric IDs, common in generator outputs
    r"[a-f0-9]{32,}",  # hash-like names
    r"comfyui", r"automatic1111", r"a1111",
]

DEFAULT_CAMERA_EXTENSIONS = ["jpg", "jpeg", "heic", "raw", "cr2", "nef", "arw"]

DEFAULT_GENERATOR_DIMENSIONS = [
    (512, 512), (768, 768), (1024, 1024), (2048, 2048),
    (512, 768), (768, 512), (1024, 768), (768, 1024),
    (1920, 1080), (1080, 1920), (1920, 1920),
]

DEFAULT_THREAT_SIGNATURES = [
    {
        "id": "sig-001",
        "name": "DeepNude Watermark",
        "kind": "watermark",
        "pattern": "deepnude|dn_|undress",
        "level": "critical",
        "group": "Sextortion Networks",
        "description": "Watermark from DeepNude-derived NCII generation tools",
        "reported_cases": 15000,
        "first_seen": "2019-06-27",
        "last_seen": "2026-01-15",
    },
    {
        "id": "sig-002",
        "name": "FakeApp Generator Marker",
        "kind": "metadata_marker",
        "pattern": "fakeapp|fa_gen|deepface_swap",
        "level": "high",
        "group": "Celebrity Fraud Networks",
        "description": "Hidden marker in deepfake videos created with FakeApp derivatives",
        "reported_cases": 8500,
        "first_seen": "2018-01-01",
        "last_seen": "2026-01-20",
    },
    {
        "id": "sig-003",
        "name": "Romance Scam Template",
        "kind": "generation_pattern",
        "pattern": "romance_gen|lovescam|catfish_ai",
        "level": "high",
        "group": "West African Fraud Networks",
        "description": "AI-generated profile photos used in romance scams",
        "reported_cases": 25000,
        "first_seen": "2020-03-15",
        "last_seen": "2026-01-25",
    },
    {
        "id": "sig-004",
        "name": "Political Disinfo Marker",
        "kind": "network_signature",
        "pattern": "troll_farm|disinfo_gen|political_fake",
        "level": "high",
        "group": "State-Sponsored Disinformation Actors",
        "description": "Patterns associated with coordinated disinformation campaigns",
        "reported_cases": 50000,
        "first_seen": "2016-06-01",
        "last_seen": "2026-01-28",
    },
    {
        "id": "sig-005",
        "name": "Ransomware Voice Clone",
        "kind": "generation_pattern",
        "pattern": "voice_clone_ransom|ceo_fraud|vishing_ai",
        "level": "critical",
        "group": "Business Email Compromise Groups",
        "description": "Voice cloning artifacts used in CEO fraud and vishing attacks",
        "reported_cases": 3500,
        "first_seen": "2021-09-01",
        "last_seen": "2026-01-30",
    },
    {
        "id": "sig-006",
        "name": "Child Safety Threat Marker",
        "kind": "steganography",
        "pattern": "csam_gen|minor_synth",
        "level": "critical",
        "group": "Child Exploitation Networks",
        "description": "CRITICAL: Markers associated with AI-CSAM generation",
        "reported_cases": 0,  # not tracked
        "first_seen": "2022-01-01",
        "last_seen": "2026-01-30",
    },
    {
        "id": "sig-007",
        "name": "Crypto Pump Influencer",
        "kind": "generation_pattern",
        "pattern": "crypto_shill|pump_dump_face|influencer_fake",
        "level": "medium",
        "group": "Crypto Fraud Networks",
        "description": "AI-generated influencer faces used in cryptocurrency scams",
        "reported_cases": 12000,
        "first_seen": "2021-01-01",
        "last_seen": "2026-01-25",
    },
    {
        "id": "sig-008",
        "name": "Insurance Fraud Imagery",
        "kind": "metadata_marker",
        "pattern": "insurance_fake|damage_gen|claim_synth",
        "level": "medium",
        "group": "Insurance Fraud Rings",
        "description": "AI-generated damage photos used in fraudulent insurance claims",
        "reported_cases": 5000,
        "first_seen": "2022-06-01",
        "last_seen": "2026-01-20",
    },
]

DEFAULT_REPORTING_AGENCIES = {
    "sextortion": [
        "NCMEC CyberTipline (report.cybertip.org)",
        "FBI IC3 (ic3.gov)",
        "Local law enforcement",
    ],
    "fraud": [
        "FBI IC3 (ic3.gov)",
        "FTC (reportfraud.ftc.gov)",
        "State Attorney General",
    ],
    "disinformation": [
        "Platform abuse teams",
        "Election officials (if political)",
        "FBI (if foreign actor suspected)",
    ],
    "csam": [
        "NCMEC CyberTipline (report.cybertip.org) - MANDATORY",
        "FBI (tips.fbi.gov)",
        "Local law enforcement - IMMEDIATE",
    ],
    "general": [
        "FBI IC3 (ic3.gov)",
        "Platform abuse teams",
    ],
}

# Checked in order; the first group present among critical matches wins.
DEFAULT_CRITICAL_GROUP_ROUTES = {
    "Child Exploitation Networks": "csam",
    "Sextortion Networks": "sextortion",
}

GENERAL_AGENCY_CATEGORY = "general"


# ============================================================
# Reference Data Container
# ============================================================

def _compile(patterns: List[str], table: str) -> List[Pattern]:
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern, re.IGNORECASE))
        except (re.error, TypeError) as e:
            raise ReferenceDataError(f"Invalid pattern {pattern!r} in {table}: {e}")
    return compiled


@dataclass
class ReferenceData:
    """
    Versioned detection tables.

    Regex tables are compiled once at construction; lookups return the
    source of the first matching pattern so findings can record which
    rule fired.
    """
    version: str = DEFAULT_VERSION
    ai_generator_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_AI_GENERATOR_PATTERNS))
    deepfake_tool_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_DEEPFAKE_TOOL_PATTERNS))
    editor_patterns: List[str] = field(default_factory=lambda: list(DEFAULT_EDITOR_PATTERNS))
    suspicious_filename_patterns: List[str] = field(
        default_factory=lambda: list(DEFAULT_SUSPICIOUS_FILENAME_PATTERNS)
    )
    camera_extensions: List[str] = field(default_factory=lambda: list(DEFAULT_CAMERA_EXTENSIONS))
    generator_dimensions: List[Tuple[int, int]] = field(
        default_factory=lambda: list(DEFAULT_GENERATOR_DIMENSIONS)
    )
    threat_signatures: List[ThreatSignature] = field(
        default_factory=lambda: [ThreatSignature.from_dict(s) for s in DEFAULT_THREAT_SIGNATURES]
    )
    reporting_agencies: Dict[str, List[str]] = field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_REPORTING_AGENCIES.items()}
    )
    critical_group_routes: Dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_CRITICAL_GROUP_ROUTES)
    )

    def __post_init__(self):
        self.camera_extensions = [e.lower().lstrip(".") for e in self.camera_extensions]
        self.generator_dimensions = [(int(w), int(h)) for w, h in self.generator_dimensions]

        self._regexes = {
            "ai_generator_patterns": _compile(self.ai_generator_patterns, "ai_generator_patterns"),
            "deepfake_tool_patterns": _compile(self.deepfake_tool_patterns, "deepfake_tool_patterns"),
            "editor_patterns": _compile(self.editor_patterns, "editor_patterns"),
            "suspicious_filename_patterns": _compile(
                self.suspicious_filename_patterns, "suspicious_filename_patterns"
            ),
        }

        if GENERAL_AGENCY_CATEGORY not in self.reporting_agencies:
            raise ReferenceDataError("reporting_agencies must define a 'general' category")
        for group, category in self.critical_group_routes.items():
            if category not in self.reporting_agencies:
                raise ReferenceDataError(
                    f"Route for group {group!r} points to unknown agency category {category!r}"
                )

        seen_ids = set()
        for signature in self.threat_signatures:
            if signature.id in seen_ids:
                raise ReferenceDataError(f"Duplicate threat signature id {signature.id!r}")
            seen_ids.add(signature.id)

    # ------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------

    def first_match(self, table: str, text: Optional[str]) -> Optional[str]:
        """
        Returns the source of the first pattern in `table` found in text.

        Args:
            table: Name of a regex table (e.g. "ai_generator_patterns")
            text: Text to search

        Returns:
            Pattern source string, or None if nothing matched
        """
        if not text:
            return None
        for regex in self._regexes[table]:
            if regex.search(text):
                return regex.pattern
        return None

    def is_ai_generator(self, software: Optional[str]) -> bool:
        return self.first_match("ai_generator_patterns", software) is not None

    def is_deepfake_tool(self, software: Optional[str]) -> bool:
        return self.first_match("deepfake_tool_patterns", software) is not None

    def is_editor(self, software: Optional[str]) -> bool:
        return self.first_match("editor_patterns", software) is not None

    def is_generator_dimension(self, width: int, height: int) -> bool:
        return (width, height) in self.generator_dimensions

    def agencies_for(self, category: str) -> List[str]:
        """Agency list for a category, falling back to the general list."""
        agencies = self.reporting_agencies.get(category)
        if agencies is None:
            agencies = self.reporting_agencies[GENERAL_AGENCY_CATEGORY]
        return list(agencies)

    @property
    def checksum(self) -> str:
        """Content hash, reported alongside the version in analysis output."""
        return hash_pattern(self.to_dict())[:16]

    # ------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "ai_generator_patterns": list(self.ai_generator_patterns),
            "deepfake_tool_patterns": list(self.deepfake_tool_patterns),
            "editor_patterns": list(self.editor_patterns),
            "suspicious_filename_patterns": list(self.suspicious_filename_patterns),
            "camera_extensions": list(self.camera_extensions),
            "generator_dimensions": [list(d) for d in self.generator_dimensions],
            "threat_signatures": [s.to_dict() for s in self.threat_signatures],
            "reporting_agencies": {k: list(v) for k, v in self.reporting_agencies.items()},
            "critical_group_routes": dict(self.critical_group_routes),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReferenceData":
        """
        Builds reference data from a JSON-compatible dict.

        Missing tables fall back to the built-in defaults, so an override
        document only needs to carry the tables it changes.
        """
        if not isinstance(data, dict):
            raise ReferenceDataError("Reference data must be a JSON object")

        defaults = cls()
        try:
            dimensions = data.get("generator_dimensions")
            signatures = data.get("threat_signatures")
            return cls(
                version=str(data.get("version", DEFAULT_VERSION)),
                ai_generator_patterns=list(data.get("ai_generator_patterns", defaults.ai_generator_patterns)),
                deepfake_tool_patterns=list(data.get("deepfake_tool_patterns", defaults.deepfake_tool_patterns)),
                editor_patterns=list(data.get("editor_patterns", defaults.editor_patterns)),
                suspicious_filename_patterns=list(
                    data.get("suspicious_filename_patterns", defaults.suspicious_filename_patterns)
                ),
                camera_extensions=list(data.get("camera_extensions", defaults.camera_extensions)),
                generator_dimensions=(
                    [tuple(d) for d in dimensions] if dimensions is not None
                    else defaults.generator_dimensions
                ),
                threat_signatures=(
                    [ThreatSignature.from_dict(s) for s in signatures] if signatures is not None
                    else defaults.threat_signatures
                ),
                reporting_agencies=dict(data.get("reporting_agencies", defaults.reporting_agencies)),
                critical_group_routes=dict(data.get("critical_group_routes", defaults.critical_group_routes)),
            )
        except ReferenceDataError:
            raise
        except (TypeError, ValueError, AttributeError) as e:
            raise ReferenceDataError(f"Malformed reference data: {e}")

    @classmethod
    def from_json_file(cls, path: Union[str, Path]) -> "ReferenceData":
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ReferenceDataError(f"Could not read reference data from {path}: {e}")
        return cls.from_dict(data)


DEFAULT_REFERENCE_DATA = ReferenceData()


def load_reference_data(path: Optional[Union[str, Path]] = None) -> ReferenceData:
    """
    Loads reference data from a JSON file or returns the built-in tables.

    Args:
        path: Explicit JSON path; defaults to DEEPGUARD_REFERENCE_DATA

    Returns:
        ReferenceData instance
    """
    path = path or os.getenv("DEEPGUARD_REFERENCE_DATA")
    if not path:
        return DEFAULT_REFERENCE_DATA
    return ReferenceData.from_json_file(path)
