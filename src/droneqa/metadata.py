"""
Camera metadata from EXIF and the metadata-derived technical score.

Missing or unreadable EXIF is normal for exported PNGs and screenshots; it
degrades to an empty `CameraMetadata` rather than failing the task.
"""
from __future__ import annotations

import io
import logging
from typing import Any, Optional

from PIL import ExifTags, Image, UnidentifiedImageError

from .models import CameraMetadata

log = logging.getLogger(__name__)

# IFD0
TAG_MAKE, TAG_MODEL, TAG_DATETIME = 271, 272, 306
# Exif IFD
TAG_EXPOSURE_TIME, TAG_FNUMBER, TAG_ISO = 33434, 33437, 34855
TAG_DATETIME_ORIGINAL, TAG_FOCAL_LENGTH = 36867, 37386
TAG_COLOR_SPACE, TAG_LENS_MODEL = 40961, 42036
# GPS IFD
GPS_LAT_REF, GPS_LAT, GPS_LON_REF, GPS_LON, GPS_ALT_REF, GPS_ALT = 1, 2, 3, 4, 5, 6

COLOR_SPACES = {1: "sRGB", 2: "Adobe RGB", 65535: "Uncalibrated"}
FORMATS = {"JPEG": "JPEG", "MPO": "JPEG", "PNG": "PNG", "TIFF": "TIFF",
           "WEBP": "WebP", "BMP": "BMP", "GIF": "GIF"}


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8", errors="ignore")
    value = str(value).strip("\x00 ").strip()
    return value or None


def _number(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, (tuple, list)):
        if not value:
            return None
        value = value[0]
    try:
        number = float(value)
    except (TypeError, ValueError, ZeroDivisionError):
        return None
    return number if number == number else None  # NaN from 0/0 rationals


def _dms_to_degrees(dms: Any, ref: Any) -> Optional[float]:
    if not dms or len(dms) != 3:
        return None
    parts = [_number(p) for p in dms]
    if any(p is None for p in parts):
        return None
    degrees = parts[0] + parts[1] / 60 + parts[2] / 3600
    if _text(ref) in ("S", "W"):
        degrees = -degrees
    return round(degrees, 7)


def format_shutter_speed(exposure_time: Optional[float]) -> Optional[str]:
    if not exposure_time or exposure_time <= 0:
        return None
    if exposure_time >= 1:
        return f"{exposure_time:g}s"
    return f"1/{round(1 / exposure_time)}s"


def extract_metadata(data: bytes) -> CameraMetadata:
    try:
        with Image.open(io.BytesIO(data)) as img:
            file_format = FORMATS.get(img.format or "", "Unknown")
            exif = img.getexif()
            exif_ifd = exif.get_ifd(ExifTags.IFD.Exif)
            gps_ifd = exif.get_ifd(ExifTags.IFD.GPSInfo)
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError, EOFError) as exc:
        log.warning("metadata unavailable: %s", exc)
        return CameraMetadata()

    iso = _number(exif_ifd.get(TAG_ISO))
    alt = _number(gps_ifd.get(GPS_ALT))
    if alt is not None and gps_ifd.get(GPS_ALT_REF) in (1, b"\x01"):
        alt = -alt

    return CameraMetadata(
        make=_text(exif.get(TAG_MAKE)),
        model=_text(exif.get(TAG_MODEL)),
        lens=_text(exif_ifd.get(TAG_LENS_MODEL)),
        iso=int(iso) if iso else None,
        aperture=_number(exif_ifd.get(TAG_FNUMBER)),
        shutter_speed=format_shutter_speed(_number(exif_ifd.get(TAG_EXPOSURE_TIME))),
        focal_length=_number(exif_ifd.get(TAG_FOCAL_LENGTH)),
        latitude=_dms_to_degrees(gps_ifd.get(GPS_LAT), gps_ifd.get(GPS_LAT_REF)),
        longitude=_dms_to_degrees(gps_ifd.get(GPS_LON), gps_ifd.get(GPS_LON_REF)),
        altitude=alt,
        timestamp=_text(exif_ifd.get(TAG_DATETIME_ORIGINAL) or exif.get(TAG_DATETIME)),
        color_space=COLOR_SPACES.get(exif_ifd.get(TAG_COLOR_SPACE)),
        file_format=file_format,
    )


def technical_score(meta: CameraMetadata) -> float:
    score = 50.0
    if meta.make and meta.model:
        score += 10
    if meta.iso and meta.aperture:
        score += 10
    if meta.latitude is not None and meta.longitude is not None:
        score += 5
    if meta.timestamp:
        score += 5

    if meta.iso:
        if meta.iso <= 400:
            score += 10
        elif meta.iso <= 800:
            score += 5
        elif meta.iso > 1600:
            score -= 5

    score += {"TIFF": 10, "PNG": 5, "JPEG": 0}.get(meta.file_format, -5)
    return max(0.0, min(100.0, score))
