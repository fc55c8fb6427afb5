"""
Rarity & Novelty Catalog for DeepGuard
======================================
Durable deduplicating catalog of every anomaly pattern ever observed.

Features:
- Upsert by pattern signature (occurrence count, first/last seen)
- Bounded list of example filenames per pattern
- Top-N rarest patterns for operator review
- Read-only view of the known software signature table
- Rare pattern alerts for never-seen-before findings

Storage is pluggable: an in-process store for tests and single-node use,
and a Supabase (PostgREST) store for the shared deployment catalog.

Consistency: read-then-write without a transaction. Concurrent updates
of the same signature are last-writer-wins, so occurrence counts are
advisory and may under-count. A unique-key conflict on insert is retried
once as an update.
"""

import logging
import os
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

import httpx

from deepguard.services.anomaly import AnomalyKind, Finding
from deepguard.utils import validate_hash_format

logger = logging.getLogger(__name__)


# ============================================================
# Configuration Constants
# ============================================================

CATALOG_TABLE = "metadata_anomalies"
KNOWN_SOFTWARE_TABLE = "known_software_signatures"
MAX_EXAMPLE_FILENAMES = 10
DEFAULT_RARE_PATTERN_LIMIT = 20
DEFAULT_TIMEOUT_SECONDS = 10.0

ALERT_NEVER_SEEN_RARITY = 95
ALERT_SUSPICIOUS_RARITY = 80
ALERT_UNUSUAL_RARITY = 90


# ============================================================
# Exceptions
# ============================================================

class CatalogError(Exception):
    """Base exception for catalog operations."""
    pass


class CatalogUnavailableError(CatalogError):
    """Raised when the backing store cannot be reached or rejects a request."""
    pass


class DuplicateSignatureError(CatalogError):
    """Raised when inserting a signature that already exists."""
    pass


# ============================================================
# Data Models
# ============================================================

class DetectionContext(str, Enum):
    """Verdict of the analysis the finding was observed in."""
    DEEPFAKE = "deepfake"
    AUTHENTIC = "authentic"
    UNKNOWN = "unknown"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CatalogEntry:
    """One deduplicated anomaly pattern."""
    kind: AnomalyKind
    signature: str
    payload: Dict[str, Any]
    rarity: int
    suspicious: bool
    detection_context: DetectionContext = DetectionContext.UNKNOWN
    occurrence_count: int = 1
    first_seen: str = ""
    last_seen: str = ""
    example_filenames: List[str] = field(default_factory=list)

    @classmethod
    def from_finding(
        cls,
        finding: Finding,
        filename: str,
        detection_context: DetectionContext,
        seen_at: str
    ) -> "CatalogEntry":
        return cls(
            kind=finding.kind,
            signature=finding.signature,
            payload=dict(finding.payload),
            rarity=finding.rarity,
            suspicious=finding.suspicious,
            detection_context=detection_context,
            occurrence_count=1,
            first_seen=seen_at,
            last_seen=seen_at,
            example_filenames=[filename] if filename else []
        )

    def copy(self) -> "CatalogEntry":
        return replace(
            self,
            payload=dict(self.payload),
            example_filenames=list(self.example_filenames)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "signature": self.signature,
            "payload": self.payload,
            "rarity": self.rarity,
            "suspicious": self.suspicious,
            "detection_context": self.detection_context.value,
            "occurrence_count": self.occurrence_count,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "example_filenames": self.example_filenames
        }

    def to_row(self) -> Dict[str, Any]:
        """Converts entry to a metadata_anomalies row."""
        return {
            "anomaly_type": self.kind.value,
            "pattern_signature": self.signature,
            "pattern_data": self.payload,
            "rarity_score": self.rarity,
            "is_suspicious": self.suspicious,
            "detection_context": self.detection_context.value,
            "occurrence_count": self.occurrence_count,
            "first_seen": self.first_seen,
            "last_seen": self.last_seen,
            "example_file_names": self.example_filenames
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CatalogEntry":
        """Builds an entry from a metadata_anomalies row."""
        if not validate_hash_format(row.get("pattern_signature")):
            raise CatalogError(f"Malformed catalog row: bad pattern_signature {row.get('pattern_signature')!r}")

        try:
            return cls(
                kind=AnomalyKind(row["anomaly_type"]),
                signature=row["pattern_signature"],
                payload=row.get("pattern_data") or {},
                rarity=int(row.get("rarity_score") or 0),
                suspicious=bool(row.get("is_suspicious")),
                detection_context=DetectionContext(row.get("detection_context") or "unknown"),
                occurrence_count=int(row.get("occurrence_count") or 1),
                first_seen=row.get("first_seen") or "",
                last_seen=row.get("last_seen") or "",
                example_filenames=list(row.get("example_file_names") or [])
            )
        except (KeyError, TypeError, ValueError) as e:
            raise CatalogError(f"Malformed catalog row: {e}")


@dataclass
class KnownSoftwareSignature:
    """Row of the out-of-band known_software_signatures table (`software_name` column)."""
    name: str
    category: str
    risk_level: str
    occurrence_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "category": self.category,
            "risk_level": self.risk_level,
            "occurrence_count": self.occurrence_count
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "KnownSoftwareSignature":
        return cls(
            name=row.get("software_name") or "",
            category=row.get("category") or "",
            risk_level=row.get("risk_level") or "",
            occurrence_count=int(row.get("occurrence_count") or 0)
        )


class PatternAlertLevel(str, Enum):
    NONE = "none"
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass
class PatternAlert:
    """Operator alert raised for a rare catalog entry."""
    level: PatternAlertLevel
    message: str
    signature: str
    never_seen_before: bool
    first_occurrence: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "level": self.level.value,
            "message": self.message,
            "signature": self.signature,
            "never_seen_before": self.never_seen_before,
            "first_occurrence": self.first_occurrence
        }


def pattern_alert(entry: CatalogEntry, filename: Optional[str] = None) -> PatternAlert:
    """
    Grades a freshly tracked entry for operator attention.

    Levels:
    - critical: rarity >= 95 and this was the first occurrence
    - warning: suspicious and rarity > 80
    - info: rarity > 90
    - none: otherwise

    Args:
        entry: Entry as returned by RarityTracker.track()
        filename: File the entry was observed in (message only)

    Returns:
        PatternAlert
    """
    never_seen = entry.rarity >= ALERT_NEVER_SEEN_RARITY
    first_occurrence = entry.occurrence_count <= 1
    kind = entry.kind.value

    if never_seen and first_occurrence:
        level = PatternAlertLevel.CRITICAL
        message = (
            f"Never seen before pattern detected: {kind} "
            f"(rarity {entry.rarity}%, file {filename or 'unknown'}, "
            f"context {entry.detection_context.value})"
        )
    elif entry.suspicious and entry.rarity > ALERT_SUSPICIOUS_RARITY:
        level = PatternAlertLevel.WARNING
        message = (
            f"Rare suspicious pattern detected: {kind} "
            f"(rarity {entry.rarity}%, file {filename or 'unknown'})"
        )
    elif entry.rarity > ALERT_UNUSUAL_RARITY:
        level = PatternAlertLevel.INFO
        message = f"Unusual pattern logged: {kind} (rarity {entry.rarity}%)"
    else:
        level = PatternAlertLevel.NONE
        message = ""

    return PatternAlert(
        level=level,
        message=message,
        signature=entry.signature,
        never_seen_before=never_seen,
        first_occurrence=first_occurrence
    )


# ============================================================
# Stores
# ============================================================

class CatalogStore(ABC):
    """Primitive storage operations used by the rarity tracker."""

    @abstractmethod
    def get(self, signature: str) -> Optional[CatalogEntry]:
        ...

    @abstractmethod
    def insert(self, entry: CatalogEntry) -> CatalogEntry:
        """Inserts a new entry. Raises DuplicateSignatureError if it exists."""
        ...

    @abstractmethod
    def update(self, entry: CatalogEntry) -> CatalogEntry:
        """Overwrites count, last_seen and example filenames of an entry."""
        ...

    @abstractmethod
    def top_by_rarity(self, limit: int) -> List[CatalogEntry]:
        ...

    @abstractmethod
    def known_software_signatures(self) -> List[KnownSoftwareSignature]:
        ...


class InMemoryCatalogStore(CatalogStore):
    """
    Process-local catalog.

    Each primitive holds the lock, so individual reads and writes are
    atomic; the tracker's read-modify-write sequence is not.
    """

    def __init__(self, known_software: Optional[List[KnownSoftwareSignature]] = None):
        self._entries: Dict[str, CatalogEntry] = {}
        self._known_software = list(known_software or [])
        self._lock = threading.Lock()

    def get(self, signature: str) -> Optional[CatalogEntry]:
        with self._lock:
            entry = self._entries.get(signature)
            return entry.copy() if entry else None

    def insert(self, entry: CatalogEntry) -> CatalogEntry:
        with self._lock:
            if entry.signature in self._entries:
                raise DuplicateSignatureError(f"Signature already catalogued: {entry.signature}")
            self._entries[entry.signature] = entry.copy()
            return entry.copy()

    def update(self, entry: CatalogEntry) -> CatalogEntry:
        with self._lock:
            current = self._entries.get(entry.signature)
            if current is None:
                raise CatalogError(f"Signature not catalogued: {entry.signature}")
            current.occurrence_count = entry.occurrence_count
            current.last_seen = entry.last_seen
            current.example_filenames = list(entry.example_filenames)
            return current.copy()

    def top_by_rarity(self, limit: int) -> List[CatalogEntry]:
        with self._lock:
            entries = sorted(self._entries.values(), key=lambda e: e.rarity, reverse=True)
            return [e.copy() for e in entries[:limit]]

    def known_software_signatures(self) -> List[KnownSoftwareSignature]:
        with self._lock:
            rows = sorted(self._known_software, key=lambda s: s.occurrence_count, reverse=True)
            return [replace(s) for s in rows]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class SupabaseCatalogStore(CatalogStore):
    """
    Catalog persisted in the Supabase `metadata_anomalies` table.

    Talks to the PostgREST API directly over httpx; the table has a
    unique constraint on pattern_signature, which surfaces as HTTP 409.
    """

    def __init__(
        self,
        supabase_url: Optional[str] = None,
        supabase_key: Optional[str] = None,
        timeout: Optional[float] = None
    ):
        """
        Initialize catalog store with Supabase connection.

        Args:
            supabase_url: Supabase project URL
            supabase_key: Supabase service role key
            timeout: Per-request timeout in seconds (CATALOG_TIMEOUT_SECONDS)
        """
        self._supabase_url = (supabase_url or os.getenv("SUPABASE_URL") or "").rstrip("/")
        self._supabase_key = supabase_key or os.getenv("SUPABASE_SERVICE_ROLE_KEY")
        self._timeout = timeout or float(
            os.getenv("CATALOG_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS))
        )

        if not self.is_configured:
            logger.warning("Supabase credentials not configured. Catalog requests will fail.")

    @property
    def is_configured(self) -> bool:
        return bool(self._supabase_url and self._supabase_key)

    def _get_headers(self) -> Dict[str, str]:
        """Returns Supabase API headers."""
        return {
            "apikey": self._supabase_key or "",
            "Authorization": f"Bearer {self._supabase_key}",
            "Content-Type": "application/json"
        }

    def _url(self, table: str) -> str:
        if not self.is_configured:
            raise CatalogUnavailableError("Supabase catalog is not configured")
        return f"{self._supabase_url}/rest/v1/{table}"

    def _check(self, response: httpx.Response, action: str) -> None:
        if response.status_code >= 400:
            raise CatalogUnavailableError(
                f"Failed to {action}: HTTP {response.status_code} {response.text}"
            )

    def get(self, signature: str) -> Optional[CatalogEntry]:
        url = self._url(CATALOG_TABLE)
        params = {
            "pattern_signature": f"eq.{signature}",
            "select": "*",
            "limit": "1"
        }
        try:
            response = httpx.get(url, headers=self._get_headers(), params=params, timeout=self._timeout)
        except httpx.HTTPError as e:
            raise CatalogUnavailableError(f"Catalog lookup failed: {e}")

        self._check(response, "fetch catalog entry")
        rows = response.json()
        return CatalogEntry.from_row(rows[0]) if rows else None

    def insert(self, entry: CatalogEntry) -> CatalogEntry:
        url = self._url(CATALOG_TABLE)
        headers = self._get_headers()
        headers["Prefer"] = "return=minimal"
        try:
            response = httpx.post(url, headers=headers, json=entry.to_row(), timeout=self._timeout)
        except httpx.HTTPError as e:
            raise CatalogUnavailableError(f"Catalog insert failed: {e}")

        if response.status_code == 409:
            raise DuplicateSignatureError(f"Signature already catalogued: {entry.signature}")
        self._check(response, "insert catalog entry")
        return entry

    def update(self, entry: CatalogEntry) -> CatalogEntry:
        url = self._url(CATALOG_TABLE)
        headers = self._get_headers()
        headers["Prefer"] = "return=minimal"
        params = {"pattern_signature": f"eq.{entry.signature}"}
        body = {
            "occurrence_count": entry.occurrence_count,
            "last_seen": entry.last_seen,
            "example_file_names": entry.example_filenames
        }
        try:
            response = httpx.patch(url, headers=headers, params=params, json=body, timeout=self._timeout)
        except httpx.HTTPError as e:
            raise CatalogUnavailableError(f"Catalog update failed: {e}")

        self._check(response, "update catalog entry")
        return entry

    def top_by_rarity(self, limit: int) -> List[CatalogEntry]:
        url = self._url(CATALOG_TABLE)
        params = {
            "select": "*",
            "order": "rarity_score.desc",
            "limit": str(limit)
        }
        try:
            response = httpx.get(url, headers=self._get_headers(), params=params, timeout=self._timeout)
        except httpx.HTTPError as e:
            raise CatalogUnavailableError(f"Rare pattern query failed: {e}")

        self._check(response, "fetch rare patterns")
        entries = []
        for row in response.json():
            try:
                entries.append(CatalogEntry.from_row(row))
            except CatalogError as e:
                logger.warning(f"Skipping catalog row: {e}")
        return entries

    def known_software_signatures(self) -> List[KnownSoftwareSignature]:
        url = self._url(KNOWN_SOFTWARE_TABLE)
        params = {
            "select": "software_name,category,risk_level,occurrence_count",
            "order": "occurrence_count.desc"
        }
        try:
            response = httpx.get(url, headers=self._get_headers(), params=params, timeout=self._timeout)
        except httpx.HTTPError as e:
            raise CatalogUnavailableError(f"Known software query failed: {e}")

        self._check(response, "fetch known software signatures")
        return [KnownSoftwareSignature.from_row(row) for row in response.json()]


def create_catalog_store() -> CatalogStore:
    """Supabase store when credentials are configured, else in-memory."""
    if os.getenv("SUPABASE_URL") and os.getenv("SUPABASE_SERVICE_ROLE_KEY"):
        logger.info("Using Supabase anomaly catalog")
        return SupabaseCatalogStore()
    logger.info("Supabase not configured; using in-memory anomaly catalog")
    return InMemoryCatalogStore()


# ============================================================
# Rarity Tracker
# ============================================================

class RarityTracker:
    """
    Records findings in the anomaly catalog.

    The tracker never raises: a catalog failure is logged and reported
    as a missing entry so analysis results are unaffected.
    """

    def __init__(
        self,
        store: Optional[CatalogStore] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.store = store if store is not None else InMemoryCatalogStore()
        self._clock = clock or _utcnow

    def _now(self) -> str:
        return self._clock().isoformat()

    def track(
        self,
        finding: Finding,
        filename: str,
        detection_context: DetectionContext = DetectionContext.UNKNOWN
    ) -> Optional[CatalogEntry]:
        """
        Upserts one finding into the catalog.

        Args:
            finding: Classified finding
            filename: File the finding was observed in
            detection_context: Verdict of the surrounding analysis

        Returns:
            The entry as stored, or None if the catalog failed
        """
        try:
            existing = self.store.get(finding.signature)

            if existing is None:
                entry = CatalogEntry.from_finding(
                    finding, filename, detection_context, self._now()
                )
                try:
                    return self.store.insert(entry)
                except DuplicateSignatureError:
                    # Another writer inserted first; count this as a repeat
                    logger.debug(f"Insert race on {finding.signature[:12]}; retrying as update")
                    existing = self.store.get(finding.signature)
                    if existing is None:
                        raise CatalogError(f"Signature vanished after conflict: {finding.signature}")

            return self.store.update(self._record_occurrence(existing, filename))

        except Exception as e:
            logger.warning(f"Failed to track anomaly {finding.kind.value}: {e}")
            return None

    def _record_occurrence(self, entry: CatalogEntry, filename: str) -> CatalogEntry:
        entry.occurrence_count += 1
        entry.last_seen = self._now()
        if (
            filename
            and filename not in entry.example_filenames
            and len(entry.example_filenames) < MAX_EXAMPLE_FILENAMES
        ):
            entry.example_filenames.append(filename)
        return entry

    def track_all(
        self,
        findings: List[Finding],
        filename: str,
        detection_context: DetectionContext = DetectionContext.UNKNOWN
    ) -> List[CatalogEntry]:
        """Tracks each finding; returns the entries that were stored."""
        entries = []
        for finding in findings:
            entry = self.track(finding, filename, detection_context)
            if entry is not None:
                entries.append(entry)
        return entries

    def rare_patterns(self, limit: int = DEFAULT_RARE_PATTERN_LIMIT) -> List[CatalogEntry]:
        """Top-N catalog entries by descending rarity; empty on failure."""
        if limit <= 0:
            return []
        try:
            return self.store.top_by_rarity(limit)
        except Exception as e:
            logger.warning(f"Failed to fetch rare patterns: {e}")
            return []

    def known_software_signatures(self) -> List[KnownSoftwareSignature]:
        """Known software table ordered by occurrence count; empty on failure."""
        try:
            return self.store.known_software_signatures()
        except Exception as e:
            logger.warning(f"Failed to fetch known software signatures: {e}")
            return []
