"""
Container Metadata Parser for DeepGuard
=======================================
Library-free extraction of forensic metadata from image containers.

Supported containers:
- JPEG: marker segments, APP1/EXIF (IFD0 + ExifIFD), SOF0/SOF2 frame header
- PNG: IHDR, tEXt/zTXt/iTXt (AI-generation prompt and seed recovery)
- WebP: RIFF chunks VP8X/VP8/VP8L and embedded EXIF

Input files are adversarial by construction: EXIF is routinely stripped
or forged to evade detection. Every segment is decoded in isolation and
every failure degrades to partial metadata; parse_metadata() never raises.
"""

import logging
import re
import zlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, NamedTuple, Optional

from deepguard.services.binary_reader import ByteCursor

logger = logging.getLogger(__name__)


# ============================================================
# Constants
# ============================================================

JPEG_MAGIC = b"\xff\xd8"
PNG_MAGIC = b"\x89PNG"
RIFF_MAGIC = b"RIFF"
WEBP_MAGIC = b"WEBP"
EXIF_HEADER = b"Exif"

MAX_EXIF_STRING_LENGTH = 255
MAX_IFD_ENTRIES = 1024
MAX_TEXT_CHUNK_BYTES = 64 * 1024
MAX_PROMPT_LENGTH = 500

# JPEG markers
MARKER_SOF0 = 0xFFC0
MARKER_SOF2 = 0xFFC2
MARKER_SOI = 0xFFD8
MARKER_EOI = 0xFFD9
MARKER_SOS = 0xFFDA
MARKER_APP0 = 0xFFE0
MARKER_APP1 = 0xFFE1
MARKER_TEM = 0xFF01
MARKER_FILL = 0xFFFF

# TIFF/EXIF tags
TAG_MAKE = 0x010F
TAG_MODEL = 0x0110
TAG_SOFTWARE = 0x0131
TAG_DATETIME = 0x0132
TAG_EXIF_IFD_POINTER = 0x8769
TAG_DATETIME_ORIGINAL = 0x9003
TAG_DATETIME_DIGITIZED = 0x9004

IFD0_STRING_TAGS = {
    TAG_MAKE: "make",
    TAG_MODEL: "model",
    TAG_SOFTWARE: "software",
    TAG_DATETIME: "date_time",
}

EXIF_IFD_STRING_TAGS = {
    TAG_DATETIME_ORIGINAL: "date_time_original",
    TAG_DATETIME_DIGITIZED: "date_time_digitized",
}

JPEG_COMPONENT_SPACES = {1: "Grayscale", 3: "YCbCr", 4: "CMYK"}

PNG_COLOR_TYPES = {
    0: "Grayscale",
    2: "RGB",
    3: "Indexed",
    4: "GrayscaleAlpha",
    6: "RGBA",
}

PNG_TEXT_CHUNKS = ("tEXt", "zTXt", "iTXt")

AI_TEXT_MARKERS = ("parameters", "prompt")
SEED_PATTERN = re.compile(r"seed[:\s]+(\d+)", re.IGNORECASE)


class ContainerFormat(str, Enum):
    """Image container detected from magic bytes."""
    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"


# ============================================================
# Data Models
# ============================================================

@dataclass
class RawMetadata:
    """Best-effort metadata recovered from one file. Never persisted."""
    make: Optional[str] = None
    model: Optional[str] = None
    software: Optional[str] = None
    date_time: Optional[str] = None
    date_time_original: Optional[str] = None
    date_time_digitized: Optional[str] = None
    width: int = 0
    height: int = 0
    bits_per_sample: Optional[int] = None
    color_space: Optional[str] = None
    container: Optional[ContainerFormat] = None
    extension: Optional[str] = None
    ai_generation_prompt: Optional[str] = None
    ai_generation_seed: Optional[str] = None
    segments: List[str] = field(default_factory=list)
    parse_errors: List[str] = field(default_factory=list)

    @property
    def timestamps(self) -> List[str]:
        """All recovered timestamp strings, most authoritative first."""
        return [
            ts for ts in (self.date_time, self.date_time_original, self.date_time_digitized)
            if ts
        ]

    @property
    def has_exif_identity(self) -> bool:
        return bool(self.make or self.model or self.date_time_original)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "make": self.make,
            "model": self.model,
            "software": self.software,
            "date_time": self.date_time,
            "date_time_original": self.date_time_original,
            "date_time_digitized": self.date_time_digitized,
            "width": self.width,
            "height": self.height,
            "bits_per_sample": self.bits_per_sample,
            "color_space": self.color_space,
            "container": self.container.value if self.container else None,
            "extension": self.extension,
            "ai_generation_prompt": self.ai_generation_prompt,
            "ai_generation_seed": self.ai_generation_seed,
            "segments": list(self.segments),
            "parse_errors": list(self.parse_errors),
        }


class IfdEntry(NamedTuple):
    """One 12-byte TIFF directory entry."""
    offset: int
    tag: int
    type: int
    count: int


# ============================================================
# Public API
# ============================================================

def file_extension(filename: Optional[str]) -> Optional[str]:
    """Lower-cased extension of a filename without the dot, or None."""
    if not isinstance(filename, str) or "." not in filename:
        return None
    extension = filename.rsplit(".", 1)[1].strip().lower()
    return extension or None


def detect_container(data: bytes) -> Optional[ContainerFormat]:
    """Identifies the container format from its magic bytes."""
    if data[:2] == JPEG_MAGIC:
        return ContainerFormat.JPEG
    if data[:4] == PNG_MAGIC:
        return ContainerFormat.PNG
    if data[:4] == RIFF_MAGIC and data[8:12] == WEBP_MAGIC:
        return ContainerFormat.WEBP
    return None


def parse_metadata(data: bytes, filename: str = "") -> RawMetadata:
    """
    Extracts structured metadata from a raw image buffer.

    Args:
        data: Complete file contents
        filename: Declared filename (extension hint only)

    Returns:
        RawMetadata populated with whatever could be decoded. Malformed,
        truncated or unknown input yields a partially or fully empty
        result, never an exception.
    """
    metadata = RawMetadata(extension=file_extension(filename))

    try:
        data = bytes(data or b"")
        metadata.container = detect_container(data)
        cursor = ByteCursor(data)

        if metadata.container is ContainerFormat.JPEG:
            _parse_jpeg(cursor, metadata)
        elif metadata.container is ContainerFormat.PNG:
            _parse_png(cursor, metadata)
        elif metadata.container is ContainerFormat.WEBP:
            _parse_webp(cursor, metadata)
        else:
            logger.debug(f"Unrecognized container for {filename!r}; no metadata extracted")
    except Exception as e:
        # The walkers guard each segment; this only catches defects in the walk itself.
        metadata.parse_errors.append(f"container: {e}")
        logger.warning(f"Metadata walk aborted for {filename!r}: {e}")

    return metadata


# ============================================================
# Helpers
# ============================================================

def _guarded(
    metadata: RawMetadata,
    label: str,
    decoder: Callable[..., None],
    *args: Any
) -> None:
    """Runs one segment decoder, converting any failure into a parse error."""
    try:
        decoder(*args)
    except Exception as e:
        metadata.parse_errors.append(f"{label}: {e}")
        logger.debug(f"Failed to decode {label} segment: {e}")


def _decode_text(raw: bytes) -> str:
    """EXIF and PNG text is nominally ASCII/Latin-1; UTF-8 is common in practice."""
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


def _inflate(raw: bytes) -> bytes:
    """Decompresses a zlib stream, capping the output size."""
    return zlib.decompressobj().decompress(raw, MAX_TEXT_CHUNK_BYTES)


# ============================================================
# JPEG
# ============================================================

def _jpeg_marker_name(marker: int) -> str:
    if marker == MARKER_SOS:
        return "SOS"
    if MARKER_APP0 <= marker <= 0xFFEF:
        return f"APP{marker - MARKER_APP0}"
    if 0xFFC0 <= marker <= 0xFFCF and marker not in (0xFFC4, 0xFFC8, 0xFFCC):
        return f"SOF{marker - MARKER_SOF0}"
    names = {0xFFC4: "DHT", 0xFFCC: "DAC", 0xFFDB: "DQT", 0xFFDD: "DRI", 0xFFFE: "COM"}
    return names.get(marker, f"0x{marker:04X}")


def _is_standalone_marker(marker: int) -> bool:
    """Markers that carry no length field."""
    return marker == MARKER_TEM or marker == MARKER_SOI or 0xFFD0 <= marker <= 0xFFD7


def _parse_jpeg(cursor: ByteCursor, metadata: RawMetadata) -> None:
    offset = 2

    while True:
        marker = cursor.u16_at(offset)
        if marker is None or (marker >> 8) != 0xFF:
            break

        if marker == MARKER_FILL:
            offset += 1
            continue
        if _is_standalone_marker(marker):
            offset += 2
            continue
        if marker == MARKER_EOI:
            metadata.segments.append("EOI")
            break

        length = cursor.u16_at(offset + 2)
        if length is None or length < 2:
            break

        name = _jpeg_marker_name(marker)
        metadata.segments.append(name)

        if marker == MARKER_SOS:
            # Entropy-coded data follows; all metadata segments precede it.
            break

        payload = cursor.sub_cursor(offset + 4, length - 2)
        if payload is not None:
            if marker == MARKER_APP1:
                _guarded(metadata, name, _parse_app1, payload, metadata)
            elif marker in (MARKER_SOF0, MARKER_SOF2):
                _guarded(metadata, name, _parse_sof, payload, metadata)

        offset += 2 + length


def _parse_sof(payload: ByteCursor, metadata: RawMetadata) -> None:
    precision = payload.u8_at(0)
    height = payload.u16_at(1)
    width = payload.u16_at(3)
    components = payload.u8_at(5)

    if precision is not None:
        metadata.bits_per_sample = precision
    if height is not None:
        metadata.height = height
    if width is not None:
        metadata.width = width
    if components is not None:
        metadata.color_space = JPEG_COMPONENT_SPACES.get(components, f"{components}-component")


def _parse_app1(payload: ByteCursor, metadata: RawMetadata) -> None:
    header = payload.bytes_at(0, 4)
    if header != EXIF_HEADER:
        # XMP and other APP1 payloads are not decoded.
        return

    tiff = payload.sub_cursor(6)
    if tiff is None:
        raise ValueError("EXIF header without TIFF block")
    _parse_tiff(tiff, metadata)


# ============================================================
# TIFF / EXIF
# ============================================================

def _parse_tiff(tiff: ByteCursor, metadata: RawMetadata) -> None:
    """Walks IFD0 and, if present, the ExifIFD of a TIFF block."""
    byte_order = tiff.bytes_at(0, 2)
    if byte_order == b"II":
        tiff.little_endian = True
    elif byte_order == b"MM":
        tiff.little_endian = False
    else:
        raise ValueError(f"unknown TIFF byte order {byte_order!r}")

    ifd0_offset = tiff.u32_at(4)
    if ifd0_offset is None:
        return

    exif_ifd_offset = None
    for entry in _read_ifd(tiff, ifd0_offset):
        if entry.tag in IFD0_STRING_TAGS:
            value = _read_exif_string(tiff, entry)
            if value is not None:
                setattr(metadata, IFD0_STRING_TAGS[entry.tag], value)
        elif entry.tag == TAG_EXIF_IFD_POINTER:
            exif_ifd_offset = tiff.u32_at(entry.offset + 8)

    if exif_ifd_offset is None or exif_ifd_offset == ifd0_offset:
        return

    for entry in _read_ifd(tiff, exif_ifd_offset):
        if entry.tag in EXIF_IFD_STRING_TAGS:
            value = _read_exif_string(tiff, entry)
            if value is not None:
                setattr(metadata, EXIF_IFD_STRING_TAGS[entry.tag], value)


def _read_ifd(tiff: ByteCursor, ifd_offset: int) -> List[IfdEntry]:
    """Reads the entries of one IFD, stopping at the first truncated entry."""
    entry_count = tiff.u16_at(ifd_offset)
    if entry_count is None:
        return []

    entries = []
    for index in range(min(entry_count, MAX_IFD_ENTRIES)):
        entry_offset = ifd_offset + 2 + index * 12
        if not tiff.has(12, entry_offset):
            break
        entries.append(IfdEntry(
            offset=entry_offset,
            tag=tiff.u16_at(entry_offset),
            type=tiff.u16_at(entry_offset + 2),
            count=tiff.u32_at(entry_offset + 4),
        ))
    return entries


def _read_exif_string(tiff: ByteCursor, entry: IfdEntry) -> Optional[str]:
    """
    Reads an ASCII-valued tag.

    Values longer than four bytes live at an offset relative to the TIFF
    base; shorter values are stored inline in the entry. The read stops
    at count - 1 bytes or the first NUL, whichever comes first.
    """
    if entry.count <= 1:
        return None

    if entry.count > 4:
        value_offset = tiff.u32_at(entry.offset + 8)
        if value_offset is None:
            return None
    else:
        value_offset = entry.offset + 8

    raw = tiff.available_at(value_offset, min(entry.count - 1, MAX_EXIF_STRING_LENGTH))
    raw = raw.split(b"\x00", 1)[0]
    text = _decode_text(raw).strip()
    return text or None


# ============================================================
# PNG
# ============================================================

def _parse_png(cursor: ByteCursor, metadata: RawMetadata) -> None:
    offset = 8

    while cursor.has(8, offset):
        length = cursor.u32_at(offset)
        chunk_type = cursor.bytes_at(offset + 4, 4).decode("latin-1")
        metadata.segments.append(chunk_type)

        body = cursor.sub_cursor(offset + 8, length)
        if chunk_type == "IHDR":
            _guarded(metadata, chunk_type, _parse_ihdr, body, metadata)
        elif chunk_type in PNG_TEXT_CHUNKS:
            _guarded(metadata, chunk_type, _parse_text_chunk, chunk_type, body, metadata)
        elif chunk_type == "IEND":
            break

        # 4-byte length + 4-byte type + data + 4-byte CRC
        offset += 12 + length


def _parse_ihdr(body: ByteCursor, metadata: RawMetadata) -> None:
    width = body.u32_at(0)
    height = body.u32_at(4)
    bit_depth = body.u8_at(8)
    color_type = body.u8_at(9)

    if width is not None:
        metadata.width = width
    if height is not None:
        metadata.height = height
    if bit_depth is not None:
        metadata.bits_per_sample = bit_depth
    if color_type is not None:
        metadata.color_space = PNG_COLOR_TYPES.get(color_type, f"type-{color_type}")


def _decode_png_text(chunk_type: str, raw: bytes) -> str:
    """Returns 'keyword: text' for a tEXt, zTXt or iTXt chunk body."""
    keyword, _, rest = raw.partition(b"\x00")

    if chunk_type == "tEXt":
        value = rest.decode("latin-1")
    elif chunk_type == "zTXt":
        # compression method byte, then a zlib stream
        value = _inflate(rest[1:]).decode("latin-1")
    else:
        compressed = rest[:1] == b"\x01"
        _language, _, rest = rest[2:].partition(b"\x00")
        _translated, _, text = rest.partition(b"\x00")
        if compressed:
            text = _inflate(text)
        value = text.decode("utf-8", errors="replace")

    return f"{keyword.decode('latin-1')}: {value}"


def _parse_text_chunk(chunk_type: str, body: ByteCursor, metadata: RawMetadata) -> None:
    text = _decode_png_text(chunk_type, body.available_at(0, MAX_TEXT_CHUNK_BYTES))
    lowered = text.lower()

    if metadata.ai_generation_prompt is None and any(m in lowered for m in AI_TEXT_MARKERS):
        metadata.ai_generation_prompt = text[:MAX_PROMPT_LENGTH]

    if metadata.ai_generation_seed is None and "seed" in lowered:
        match = SEED_PATTERN.search(text)
        if match:
            metadata.ai_generation_seed = match.group(1)


# ============================================================
# WebP
# ============================================================

def _parse_webp(cursor: ByteCursor, metadata: RawMetadata) -> None:
    cursor.little_endian = True
    riff_size = cursor.u32_at(4)
    end = cursor.length if riff_size is None else min(cursor.length, 8 + riff_size)
    metadata.bits_per_sample = 8

    offset = 12
    while offset + 8 <= end:
        fourcc = cursor.bytes_at(offset, 4).decode("latin-1")
        size = cursor.u32_at(offset + 4)
        metadata.segments.append(fourcc.strip())

        body = cursor.sub_cursor(offset + 8, size)
        if fourcc == "VP8X":
            _guarded(metadata, fourcc, _parse_vp8x, body, metadata)
        elif fourcc == "VP8 ":
            _guarded(metadata, "VP8", _parse_vp8, body, metadata)
        elif fourcc == "VP8L":
            _guarded(metadata, fourcc, _parse_vp8l, body, metadata)
        elif fourcc == "EXIF":
            _guarded(metadata, fourcc, _parse_webp_exif, body, metadata)

        # Chunks are padded to an even size
        offset += 8 + size + (size & 1)


def _parse_vp8x(body: ByteCursor, metadata: RawMetadata) -> None:
    width = body.u24le_at(4)
    height = body.u24le_at(7)
    if width is not None:
        metadata.width = width + 1
    if height is not None:
        metadata.height = height + 1


def _parse_vp8(body: ByteCursor, metadata: RawMetadata) -> None:
    if body.bytes_at(3, 3) != b"\x9d\x01\x2a":
        raise ValueError("missing VP8 key frame start code")
    width = body.u16_at(6)
    height = body.u16_at(8)
    if width is not None:
        metadata.width = width & 0x3FFF
    if height is not None:
        metadata.height = height & 0x3FFF
    metadata.color_space = "YCbCr"


def _parse_vp8l(body: ByteCursor, metadata: RawMetadata) -> None:
    if body.u8_at(0) != 0x2F:
        raise ValueError("missing VP8L signature byte")
    bits = body.u32_at(1)
    if bits is None:
        return
    metadata.width = (bits & 0x3FFF) + 1
    metadata.height = ((bits >> 14) & 0x3FFF) + 1
    metadata.color_space = "RGBA" if (bits >> 28) & 1 else "RGB"


def _parse_webp_exif(body: ByteCursor, metadata: RawMetadata) -> None:
    if body.bytes_at(0, 4) == EXIF_HEADER:
        body = body.sub_cursor(6)
        if body is None:
            return
    _parse_tiff(body, metadata)
