"""
DeepGuard Metadata Forensics API
================================
FastAPI service exposing the metadata forensics core.

Features:
- Container metadata extraction (JPEG/EXIF, PNG text chunks, WebP)
- Anomaly classification with risk scoring
- Rarity/novelty catalog of every observed pattern
- Criminal signature matching with reporting guidance

Version: 1.0.0
"""

# Load environment variables FIRST before any other imports
# This ensures os.getenv() picks up .env values in all modules
import os
from pathlib import Path
from dotenv import load_dotenv

_env_file = Path(__file__).parent / ".env"
if _env_file.exists():
    load_dotenv(_env_file)
else:
    _root_env = Path(__file__).parent.parent / ".env"
    if _root_env.exists():
        load_dotenv(_root_env)

import logging
import threading
from typing import Any, Dict, List, Optional

from fastapi import BackgroundTasks, Depends, FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from deepguard.services.catalog import DetectionContext
from deepguard.services.pipeline import (
    MetadataForensicsService,
    RemoteClassification,
    assemble_report,
)

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

API_VERSION = "1.0.0"


# ============================================================
# Application Setup
# ============================================================

app = FastAPI(
    title="DeepGuard Metadata Forensics",
    description="Metadata anomaly, rarity and criminal signature analysis for media files",
    version=API_VERSION
)

CORS_ORIGINS = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://127.0.0.1:3000,http://localhost:5173,http://127.0.0.1:5173"
).split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

MAX_UPLOAD_MB = float(os.getenv("MAX_UPLOAD_MB", "25"))

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY")


def max_upload_bytes() -> int:
    return int(MAX_UPLOAD_MB * 1024 * 1024)


_service: Optional[MetadataForensicsService] = None
_service_lock = threading.Lock()


def get_forensics_service() -> MetadataForensicsService:
    """Returns the process-wide forensics service, creating it on first use."""
    global _service
    if _service is None:
        with _service_lock:
            if _service is None:
                _service = MetadataForensicsService()
    return _service


# ============================================================
# Pydantic Models
# ============================================================

class ThreatSignatureResponse(BaseModel):
    """Public view of a criminal signature."""
    id: str
    name: str
    kind: str
    level: str
    group: str
    description: str
    reported_cases: int
    first_seen: Optional[str] = None
    last_seen: Optional[str] = None


class AgencyListResponse(BaseModel):
    """Reporting agencies for one threat category."""
    category: str
    agencies: List[str] = Field(default_factory=list)


# ============================================================
# Forensics Endpoints
# ============================================================

@app.post("/forensics/metadata")
def analyze_metadata(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    detection_context: str = Form("unknown"),
    track: bool = Form(True),
    remote_status: Optional[str] = Form(None),
    remote_confidence: Optional[float] = Form(None),
    remote_findings_text: Optional[str] = Form(None),
    service: MetadataForensicsService = Depends(get_forensics_service)
) -> Dict[str, Any]:
    """
    Analyzes the metadata of an uploaded media file.

    Pipeline:
    1. Parse container metadata (never fails on malformed input)
    2. Classify anomalies and score risk
    3. Match criminal signatures and build reporting guidance
    4. Record findings in the rarity catalog after the response is sent

    The optional remote_* fields carry the verdict of the external media
    classifier; without them the report is marked degraded.
    """
    try:
        context = DetectionContext(detection_context.strip().lower())
    except ValueError:
        allowed = ", ".join(c.value for c in DetectionContext)
        raise HTTPException(
            status_code=422,
            detail=f"Invalid detection_context {detection_context!r}; expected one of: {allowed}"
        )

    limit = max_upload_bytes()
    data = file.file.read(limit + 1)
    if len(data) > limit:
        raise HTTPException(status_code=413, detail=f"File exceeds {MAX_UPLOAD_MB:g} MB limit")
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")

    filename = file.filename or "upload"
    try:
        analysis = service.analyze_bytes(data, filename, detection_context=context, track=False)
    except Exception as e:
        logger.error(f"Metadata analysis failed for {filename!r}: {e}")
        raise HTTPException(status_code=500, detail=f"Metadata analysis failed: {e}")

    remote = None
    if remote_status:
        remote = RemoteClassification(
            status=remote_status,
            confidence=remote_confidence,
            findings_text=remote_findings_text or ""
        )

    report = assemble_report(analysis, remote)
    report["catalog_tracking"] = "scheduled" if track else "disabled"
    if track:
        background_tasks.add_task(service.track_analysis, analysis, context)
    return report


# ============================================================
# Catalog Endpoints
# ============================================================

@app.get("/catalog/rare")
def get_rare_patterns(
    limit: int = Query(20, ge=1, le=100),
    service: MetadataForensicsService = Depends(get_forensics_service)
):
    """Rarest catalogued anomaly patterns, highest rarity first."""
    entries = service.tracker.rare_patterns(limit)
    return {
        "patterns": [e.to_dict() for e in entries],
        "count": len(entries)
    }


@app.get("/catalog/software-signatures")
def get_software_signatures(
    service: MetadataForensicsService = Depends(get_forensics_service)
):
    """Known software signatures ordered by occurrence count."""
    signatures = service.tracker.known_software_signatures()
    return {
        "signatures": [s.to_dict() for s in signatures],
        "count": len(signatures)
    }


# ============================================================
# Threat Signature Endpoints
# ============================================================

@app.get("/signatures", response_model=List[ThreatSignatureResponse])
async def list_signatures(
    service: MetadataForensicsService = Depends(get_forensics_service)
):
    """Lists the criminal signature catalog."""
    return [
        ThreatSignatureResponse(
            id=s.id,
            name=s.name,
            kind=s.kind.value,
            level=s.level.label,
            group=s.group,
            description=s.description,
            reported_cases=s.reported_cases,
            first_seen=s.first_seen,
            last_seen=s.last_seen
        )
        for s in service.matcher.known_signatures()
    ]


@app.get("/signatures/agencies/{category}", response_model=AgencyListResponse)
async def get_reporting_agencies(
    category: str,
    service: MetadataForensicsService = Depends(get_forensics_service)
):
    """Reporting agencies for a threat category (unknown categories get the general list)."""
    return AgencyListResponse(
        category=category,
        agencies=service.matcher.reporting_resources(category)
    )


# ============================================================
# Health Check
# ============================================================

@app.get("/health")
async def health_check(
    service: MetadataForensicsService = Depends(get_forensics_service)
):
    """Health check endpoint."""
    return {
        "status": "healthy",
        "version": API_VERSION,
        "reference_data_version": service.reference.version,
        "reference_data_checksum": service.reference.checksum,
        "supabase_configured": bool(SUPABASE_URL and SUPABASE_KEY),
        "catalog_store": type(service.tracker.store).__name__,
        "max_upload_mb": MAX_UPLOAD_MB
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000"))
    )
