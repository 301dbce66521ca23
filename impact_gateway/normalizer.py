"""Evidence normalization.

Decodes raw image bytes with Pillow, produces the canonical JPEG encoding that
every later stage hashes and pins, and extracts capture metadata.

Payload ceiling: evidence travels base64-encoded to downstream services with a
5 MiB limit, so the binary target is floor(5 MiB / 1.37). Oversized images go
down a fixed re-encoding ladder:

    1200px @ q60 -> q45 -> q30 -> 800px @ q15 -> 600px @ q10 -> PayloadTooLarge

Metadata priority is deterministic: embedded EXIF first, then caller hints,
and within coordinates the GPS fields before generic latitude/longitude
aliases. Hints fill gaps only.
"""

from __future__ import annotations

import io
import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

from PIL import ExifTags, Image, ImageOps, UnidentifiedImageError

from .crypto import _now_utc, _parse_iso_utc, _sha256_hex, content_hash
from .errors import (
    IMP_E_MALFORMED_COORDINATES,
    IMP_E_MISSING_FIELD,
    IMP_E_UNSUPPORTED_FORMAT,
    PayloadTooLarge,
    ValidationError,
)
from .models import CaptureMetadata, DeviceDescriptor, Evidence, EvidenceSubmission, GeoPoint

logger = logging.getLogger("impact_gateway.normalizer")

MAX_PAYLOAD_BYTES = 5 * 1024 * 1024
BASE64_OVERHEAD = 1.37

CANONICAL_FORMAT = "JPEG"
CONVERT_QUALITY = 90

LADDER_START_DIM = 1200
LADDER_START_QUALITY = 60
LADDER_QUALITY_STEP = 15
LADDER_MIN_QUALITY = 15
LADDER_LOW_QUALITY_DIM = 800
FLOOR_DIM = 600
FLOOR_QUALITY = 10

_EXIF_DATETIME_FORMAT = "%Y:%m:%d %H:%M:%S"

# Coordinate keys accepted in caller hints, highest priority first.
_HINT_LAT_KEYS = ("GPSLatitude", "gps_latitude", "latitude", "lat")
_HINT_LNG_KEYS = ("GPSLongitude", "gps_longitude", "longitude", "lng", "lon")
_HINT_TS_KEYS = ("DateTimeOriginal", "captured_at", "timestamp", "DateTime", "CreateDate")

_CAMERA_TAGS = ("FNumber", "FocalLength", "ISOSpeedRatings", "ExposureTime", "Flash")


def payload_target_bytes(max_payload_bytes: int = MAX_PAYLOAD_BYTES) -> int:
    return int(math.floor(max_payload_bytes / BASE64_OVERHEAD))


def _normalize_format_hint(hint: Optional[str]) -> Optional[str]:
    if not hint:
        return None
    h = hint.strip().lower().lstrip(".")
    if "/" in h:  # MIME type
        h = h.split("/", 1)[1]
    exts = Image.registered_extensions()
    fmt = exts.get("." + h)
    if fmt:
        return fmt
    if h.upper() in set(exts.values()):
        return h.upper()
    raise ValidationError(IMP_E_UNSUPPORTED_FORMAT, f"unsupported image format: {hint}", format_hint=hint)


def _to_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, tuple) and len(value) == 2 and all(isinstance(v, (int, float)) for v in value):
        num, den = value
        return float(num) / float(den) if den else None
    try:
        return float(value)
    except (TypeError, ValueError, ZeroDivisionError):
        return None


def _dms_to_degrees(dms: Any, ref: Any) -> Optional[float]:
    if dms is None:
        return None
    if isinstance(dms, (tuple, list)):
        parts = [_to_float(v) for v in dms]
        if len(parts) != 3 or any(p is None for p in parts):
            return None
        deg = parts[0] + parts[1] / 60.0 + parts[2] / 3600.0
    else:
        deg = _to_float(dms)
        if deg is None:
            return None
    if isinstance(ref, bytes):
        ref = ref.decode("ascii", "ignore")
    if str(ref or "").strip().upper() in ("S", "W"):
        deg = -deg
    return deg


def _parse_exif_datetime(value: Any, offset: Any = None) -> Optional[datetime]:
    if not value:
        return None
    s = str(value).strip().rstrip("\x00")
    try:
        dt = datetime.strptime(s, _EXIF_DATETIME_FORMAT)
    except ValueError:
        return _parse_iso_utc(s)
    tz = timezone.utc
    if offset:
        off = str(offset).strip()
        try:
            sign = -1 if off.startswith("-") else 1
            hh, mm = off.lstrip("+-").split(":")
            tz = timezone(sign * timedelta(hours=int(hh), minutes=int(mm)))
        except ValueError:
            tz = timezone.utc
    return dt.replace(tzinfo=tz).astimezone(timezone.utc)


def _first(mapping: Mapping[str, Any], keys: Tuple[str, ...]) -> Any:
    for k in keys:
        v = mapping.get(k)
        if v is not None and v != "":
            return v
    return None


def _validated_point(lat: Any, lng: Any, *, source: str) -> Optional[GeoPoint]:
    if lat is None and lng is None:
        return None
    flat = _to_float(lat)
    flng = _to_float(lng)
    if flat is None or flng is None:
        raise ValidationError(
            IMP_E_MALFORMED_COORDINATES, "coordinates must include numeric latitude and longitude", source=source
        )
    if not (math.isfinite(flat) and math.isfinite(flng)):
        raise ValidationError(IMP_E_MALFORMED_COORDINATES, "coordinates must be finite", source=source)
    if not (-90.0 <= flat <= 90.0) or not (-180.0 <= flng <= 180.0):
        raise ValidationError(
            IMP_E_MALFORMED_COORDINATES, "coordinates out of range", source=source, lat=flat, lng=flng
        )
    return GeoPoint(lat=flat, lng=flng)


class EvidenceNormalizer:
    """Pure transform from a submission to canonical Evidence."""

    def __init__(self, *, max_payload_bytes: int = MAX_PAYLOAD_BYTES):
        self.max_payload_bytes = int(max_payload_bytes)
        self.target_bytes = payload_target_bytes(self.max_payload_bytes)

    def normalize(self, submission: EvidenceSubmission) -> Evidence:
        data = submission.data
        if not data:
            raise ValidationError(IMP_E_MISSING_FIELD, "evidence bytes are required", field="data")

        fmt_hint = _normalize_format_hint(submission.format_hint)
        try:
            img = Image.open(io.BytesIO(data), formats=[fmt_hint] if fmt_hint else None)
            img.load()
        except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError) as e:
            raise ValidationError(
                IMP_E_UNSUPPORTED_FORMAT, f"cannot decode image: {e}", filename=submission.filename
            ) from e

        source_format = img.format or "UNKNOWN"
        metadata = self.extract_metadata(img, submission.hints, received_at=submission.received_at)
        content, quality = self._canonical_bytes(img, data)

        logger.debug(
            "normalized %s: %s %d -> %d bytes (quality=%s)",
            submission.filename or "<bytes>", source_format, len(data), len(content), quality,
        )
        return Evidence(
            raw_hash=_sha256_hex(data),
            content=content,
            content_hash=content_hash(content),
            metadata=metadata,
            source_format=source_format,
            reencoded=content is not data,
            quality=quality,
        )

    # ------------------------------------------------------------------
    # Encoding
    # ------------------------------------------------------------------

    @staticmethod
    def _encode(img: Image.Image, *, quality: int, max_dim: Optional[int]) -> bytes:
        work = img
        if max_dim is not None and max(work.size) > max_dim:
            work = work.copy()
            work.thumbnail((max_dim, max_dim), Image.LANCZOS)
        buf = io.BytesIO()
        work.save(buf, format=CANONICAL_FORMAT, quality=quality)
        return buf.getvalue()

    def _canonical_bytes(self, img: Image.Image, data: bytes) -> Tuple[bytes, Optional[int]]:
        if img.format == CANONICAL_FORMAT and img.mode == "RGB" and len(data) <= self.target_bytes:
            return data, None

        rgb = ImageOps.exif_transpose(img)
        if rgb.mode != "RGB":
            rgb = rgb.convert("RGB")

        encoded = self._encode(rgb, quality=CONVERT_QUALITY, max_dim=None)
        if len(encoded) <= self.target_bytes:
            return encoded, CONVERT_QUALITY

        quality = LADDER_START_QUALITY
        dim = LADDER_START_DIM
        encoded = self._encode(rgb, quality=quality, max_dim=dim)
        while len(encoded) > self.target_bytes and quality > LADDER_MIN_QUALITY:
            quality -= LADDER_QUALITY_STEP
            if quality < 30:
                dim = LADDER_LOW_QUALITY_DIM
            encoded = self._encode(rgb, quality=quality, max_dim=dim)
            logger.debug("re-encoded at %dpx q%d: %d bytes", dim, quality, len(encoded))
        if len(encoded) <= self.target_bytes:
            return encoded, quality

        encoded = self._encode(rgb, quality=FLOOR_QUALITY, max_dim=FLOOR_DIM)
        if len(encoded) <= self.target_bytes:
            return encoded, FLOOR_QUALITY

        raise PayloadTooLarge(
            "image exceeds payload ceiling at floor settings",
            size=len(encoded),
            target=self.target_bytes,
        )

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def extract_metadata(
        self,
        img: Image.Image,
        hints: Optional[Mapping[str, Any]] = None,
        *,
        received_at: Optional[datetime] = None,
    ) -> CaptureMetadata:
        hints = dict(hints or {})
        exif = img.getexif()
        base: Dict[str, Any] = {ExifTags.TAGS.get(k, str(k)): v for k, v in exif.items()}
        sub: Dict[str, Any] = {
            ExifTags.TAGS.get(k, str(k)): v for k, v in exif.get_ifd(ExifTags.IFD.Exif).items()
        }
        gps: Dict[str, Any] = {
            ExifTags.GPSTAGS.get(k, str(k)): v for k, v in exif.get_ifd(ExifTags.IFD.GPSInfo).items()
        }

        # Timestamp
        timestamp = _parse_exif_datetime(sub.get("DateTimeOriginal"), sub.get("OffsetTimeOriginal"))
        if timestamp is None:
            timestamp = _parse_exif_datetime(base.get("DateTime"), sub.get("OffsetTime"))
        ts_source = "exif"
        if timestamp is None:
            hint_ts = _first(hints, _HINT_TS_KEYS)
            if hint_ts is not None:
                timestamp = (
                    hint_ts.astimezone(timezone.utc)
                    if isinstance(hint_ts, datetime) and hint_ts.tzinfo
                    else _parse_exif_datetime(hint_ts)
                )
            ts_source = "hint"
        if timestamp is None:
            timestamp = received_at or _now_utc()
            ts_source = "received"

        # Device
        make = str(base.get("Make") or "").strip().rstrip("\x00") or str(hints.get("Make") or hints.get("make") or "").strip()
        model = str(base.get("Model") or "").strip().rstrip("\x00") or str(hints.get("Model") or hints.get("model") or "").strip()
        device = DeviceDescriptor(make=make, model=model) if (make or model) else None

        # Location: GPS IFD, then hint GPS fields, then generic aliases
        location = None
        if gps.get("GPSLatitude") is not None or gps.get("GPSLongitude") is not None:
            location = _validated_point(
                _dms_to_degrees(gps.get("GPSLatitude"), gps.get("GPSLatitudeRef")),
                _dms_to_degrees(gps.get("GPSLongitude"), gps.get("GPSLongitudeRef")),
                source="exif",
            )
        if location is None:
            location = _validated_point(_first(hints, _HINT_LAT_KEYS), _first(hints, _HINT_LNG_KEYS), source="hint")

        camera: Dict[str, Any] = {}
        for tag in _CAMERA_TAGS:
            value = sub.get(tag, base.get(tag))
            if value is None:
                value = hints.get(tag)
            num = _to_float(value)
            if num is None and isinstance(value, (tuple, list)) and value:
                num = _to_float(value[0])
            if num is not None and math.isfinite(num):
                camera[tag] = num

        width, height = img.size
        return CaptureMetadata(
            timestamp=timestamp,
            timestamp_source=ts_source,
            device=device,
            location=location,
            camera=camera,
            width=int(width),
            height=int(height),
        )
