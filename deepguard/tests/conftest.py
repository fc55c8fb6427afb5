"""
Pytest Configuration and Fixtures for DeepGuard Tests
=====================================================
"""

import io
import os
import struct
import sys
import zlib
from datetime import datetime, timezone

import pytest

# Add project root to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

# Set up test environment variables
os.environ.setdefault('MAX_UPLOAD_MB', '1')
os.environ.setdefault('LOG_LEVEL', 'DEBUG')


# ============================================================
# Container builders
# ============================================================

def build_tiff(ifd0, exif_ifd=None, little_endian=False):
    """
    Builds a TIFF block with ASCII tags in IFD0 and an optional ExifIFD.

    Args:
        ifd0: {tag: str} for IFD0
        exif_ifd: {tag: str} for the ExifIFD (adds a 0x8769 pointer)
        little_endian: 'II' when True, 'MM' otherwise
    """
    e = "<" if little_endian else ">"
    exif_ifd = exif_ifd or {}

    ifd0_count = len(ifd0) + (1 if exif_ifd else 0)
    ifd0_size = 2 + 12 * ifd0_count + 4
    exif_offset = 8 + ifd0_size
    exif_size = (2 + 12 * len(exif_ifd) + 4) if exif_ifd else 0
    data_offset = exif_offset + exif_size
    data_area = bytearray()

    def entries(tags, extra=None):
        out = bytearray()
        items = [(tag, value) for tag, value in tags.items()]
        if extra:
            items.append(extra)
        for tag, value in sorted(items, key=lambda item: item[0]):
            if isinstance(value, int):
                out += struct.pack(e + "HHII", tag, 4, 1, value)
                continue
            raw = value.encode("utf-8") + b"\x00"
            if len(raw) <= 4:
                out += struct.pack(e + "HHI", tag, 2, len(raw)) + raw.ljust(4, b"\x00")
            else:
                out += struct.pack(e + "HHII", tag, 2, len(raw), data_offset + len(data_area))
                data_area.extend(raw)
        return out

    pointer = (0x8769, exif_offset) if exif_ifd else None
    block = bytearray()
    block += (b"II" if little_endian else b"MM") + struct.pack(e + "HI", 42, 8)
    block += struct.pack(e + "H", ifd0_count) + entries(ifd0, pointer) + struct.pack(e + "I", 0)
    if exif_ifd:
        block += struct.pack(e + "H", len(exif_ifd)) + entries(exif_ifd) + struct.pack(e + "I", 0)
    block += data_area
    return bytes(block)


def jpeg_segment(marker, payload):
    return struct.pack(">HH", marker, len(payload) + 2) + payload


def build_jpeg(tiff=None, width=640, height=480, components=3, precision=8, sof_marker=0xFFC0):
    """Builds a minimal baseline JPEG: SOI, [APP1 Exif], SOF, SOS, scan bytes, EOI."""
    out = bytearray(b"\xff\xd8")
    out += jpeg_segment(0xFFE0, b"JFIF\x00\x01\x01\x00\x00\x01\x00\x01\x00\x00")
    if tiff is not None:
        out += jpeg_segment(0xFFE1, b"Exif\x00\x00" + tiff)
    sof = struct.pack(">BHHB", precision, height, width, components)
    sof += b"".join(bytes([i + 1, 0x11, 0]) for i in range(components))
    out += jpeg_segment(sof_marker, sof)
    out += jpeg_segment(0xFFDA, b"\x01\x01\x00\x00\x3f\x00")
    out += b"\x12\x34\x56\x78" * 4
    out += b"\xff\xd9"
    return bytes(out)


def png_chunk(chunk_type, data):
    body = chunk_type + data
    return struct.pack(">I", len(data)) + body + struct.pack(">I", zlib.crc32(body) & 0xFFFFFFFF)


def build_png(width=64, height=64, color_type=2, text_chunks=()):
    """Builds a PNG with IHDR, the given (type, body) text chunks, IDAT and IEND."""
    out = bytearray(b"\x89PNG\r\n\x1a\n")
    out += png_chunk(b"IHDR", struct.pack(">IIBBBBB", width, height, 8, color_type, 0, 0, 0))
    for chunk_type, body in text_chunks:
        out += png_chunk(chunk_type, body)
    out += png_chunk(b"IDAT", zlib.compress(b"\x00" * 16))
    out += png_chunk(b"IEND", b"")
    return bytes(out)


def build_webp(chunks):
    """Builds a RIFF/WebP container from (fourcc, body) pairs."""
    body = bytearray(b"WEBP")
    for fourcc, data in chunks:
        body += fourcc + struct.pack("<I", len(data)) + data
        if len(data) & 1:
            body += b"\x00"
    return b"RIFF" + struct.pack("<I", len(body)) + bytes(body)


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture
def tiff_builder():
    return build_tiff


@pytest.fixture
def jpeg_builder():
    return build_jpeg


@pytest.fixture
def png_builder():
    return build_png


@pytest.fixture
def webp_builder():
    return build_webp


@pytest.fixture
def camera_jpeg():
    """JPEG with full camera EXIF (IFD0 + ExifIFD)."""
    tiff = build_tiff(
        {
            0x010F: "Canon",
            0x0110: "Canon EOS R5",
            0x0131: "Adobe Photoshop Lightroom 6.0",
            0x0132: "2023:06:15 14:30:00",
        },
        exif_ifd={
            0x9003: "2023:06:15 14:29:58",
            0x9004: "2023:06:15 14:29:58",
        }
    )
    return build_jpeg(tiff, width=4000, height=3000)


@pytest.fixture
def stable_diffusion_png():
    """PNG carrying an A1111-style parameters chunk."""
    text = (
        b"parameters\x00a portrait of an astronaut, highly detailed\n"
        b"Steps: 20, Sampler: Euler a, CFG scale: 7, Seed: 1234567890, Size: 512x512"
    )
    return build_png(512, 512, text_chunks=[(b"tEXt", text)])


@pytest.fixture
def pillow_jpeg():
    """JPEG written by Pillow with Software and Make in IFD0."""
    from PIL import Image

    exif = Image.Exif()
    exif[0x010F] = "Canon"
    exif[0x0131] = "Midjourney v6"

    buf = io.BytesIO()
    Image.new("RGB", (1024, 1024), color=(120, 40, 200)).save(buf, "JPEG", exif=exif)
    return buf.getvalue()


@pytest.fixture
def pillow_png():
    """PNG written by Pillow with prompt text in a compressed chunk."""
    from PIL import Image
    from PIL.PngImagePlugin import PngInfo

    info = PngInfo()
    info.add_text("prompt", "a cat riding a bicycle, seed: 42", zip=True)
    info.add_text("Comment", "rendered locally")

    buf = io.BytesIO()
    Image.new("RGBA", (768, 768)).save(buf, "PNG", pnginfo=info)
    return buf.getvalue()


@pytest.fixture
def fixed_now():
    """Deterministic reference time for timestamp rules."""
    return datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc)


# Test markers
def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests requiring external services"
    )
