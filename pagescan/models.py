"""Data model shared by the capture, session and export stages."""

import time
from dataclasses import dataclass, field
from datetime import date, datetime
from datetime import time as dtime
from enum import Enum
from pathlib import Path
from typing import FrozenSet, List, Optional, Tuple

import numpy as np

from .errors import DegenerateGeometry, InvalidProfile, ScannerError

# Minimum |area| (px^2) below which a quadrilateral is treated as collapsed.
MIN_QUAD_AREA = 1.0


def _readonly(image: np.ndarray) -> np.ndarray:
    """Return a read-only view, copying first if the caller still owns it."""
    if image.flags.writeable:
        image = image.copy()
        image.setflags(write=False)
    return image


@dataclass(frozen=True, eq=False)
class Frame:
    """A single captured raster from the camera collaborator."""
    image: np.ndarray
    timestamp: float = field(default_factory=time.time)
    device_id: str = "default"

    def __post_init__(self):
        if self.image is None or self.image.ndim not in (2, 3) or self.image.size == 0:
            raise ValueError("Frame needs a non-empty 2-D or 3-D pixel buffer")
        object.__setattr__(self, "image", _readonly(self.image))

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])

    @property
    def size(self) -> Tuple[int, int]:
        return self.width, self.height

    @property
    def area(self) -> int:
        return self.width * self.height


def _cross(o: np.ndarray, a: np.ndarray, b: np.ndarray) -> float:
    return float((a[0] - o[0]) * (b[1] - o[1]) - (a[1] - o[1]) * (b[0] - o[0]))


def _segments_cross(p1, p2, q1, q2) -> bool:
    """Proper intersection of segments p1p2 and q1q2."""
    d1 = _cross(q1, q2, p1)
    d2 = _cross(q1, q2, p2)
    d3 = _cross(p1, p2, q1)
    d4 = _cross(p1, p2, q2)
    return d1 * d2 < 0 and d3 * d4 < 0


@dataclass(frozen=True)
class Quadrilateral:
    """Four corners ordered top-left, top-right, bottom-right, bottom-left."""
    points: Tuple[Tuple[float, float], ...]
    low_confidence: bool = False

    def __post_init__(self):
        if len(self.points) != 4:
            raise DegenerateGeometry(f"expected 4 corners, got {len(self.points)}")
        pts = tuple((float(x), float(y)) for x, y in self.points)
        object.__setattr__(self, "points", pts)

    @classmethod
    def from_array(cls, pts, low_confidence: bool = False) -> "Quadrilateral":
        arr = np.asarray(pts, dtype=np.float64).reshape(-1, 2)
        return cls(tuple(map(tuple, arr.tolist())), low_confidence=low_confidence)

    def as_array(self) -> np.ndarray:
        return np.array(self.points, dtype=np.float32)

    @property
    def signed_area(self) -> float:
        """Shoelace area; positive for TL, TR, BR, BL in image coordinates."""
        pts = np.array(self.points, dtype=np.float64)
        x, y = pts[:, 0], pts[:, 1]
        return float(0.5 * (np.dot(x, np.roll(y, -1)) - np.dot(np.roll(x, -1), y)))

    @property
    def area(self) -> float:
        return abs(self.signed_area)

    def is_simple(self) -> bool:
        """True when opposite edges do not cross."""
        p = np.array(self.points, dtype=np.float64)
        return not (
            _segments_cross(p[0], p[1], p[2], p[3])
            or _segments_cross(p[1], p[2], p[3], p[0])
        )

    def internal_angles(self) -> List[float]:
        """Interior angle at each corner, in degrees."""
        p = np.array(self.points, dtype=np.float64)
        angles = []
        for i in range(4):
            a = p[i - 1] - p[i]
            b = p[(i + 1) % 4] - p[i]
            denom = np.linalg.norm(a) * np.linalg.norm(b)
            if denom == 0:
                angles.append(0.0)
                continue
            cos = np.clip(np.dot(a, b) / denom, -1.0, 1.0)
            angles.append(float(np.degrees(np.arccos(cos))))
        return angles

    def validate(
        self,
        frame_size: Optional[Tuple[int, int]] = None,
        min_area_ratio: float = 0.0,
    ) -> "Quadrilateral":
        """Raise DegenerateGeometry unless the quad can drive a warp.

        Args:
            frame_size: (width, height) of the source frame, for the area check.
            min_area_ratio: Minimum fraction of the frame the quad must cover.

        Returns:
            self, to allow chaining.
        """
        p = np.array(self.points, dtype=np.float64)
        if not np.all(np.isfinite(p)):
            raise DegenerateGeometry("corner coordinates must be finite")
        if not self.is_simple():
            raise DegenerateGeometry("edges cross each other")
        area = self.signed_area
        if area < MIN_QUAD_AREA:
            raise DegenerateGeometry("corners are collinear or in the wrong order")
        for i in range(4):
            # three consecutive corners on one line collapse a side
            if abs(_cross(p[i - 1], p[i], p[(i + 1) % 4])) < 1e-6:
                raise DegenerateGeometry("three corners are collinear")
        if frame_size is not None and min_area_ratio > 0:
            frame_area = float(frame_size[0] * frame_size[1])
            if area < frame_area * min_area_ratio:
                raise DegenerateGeometry(
                    f"covers {area / frame_area:.0%} of the frame, "
                    f"minimum is {min_area_ratio:.0%}"
                )
        return self


@dataclass(frozen=True, eq=False)
class RectifiedPage:
    """Upright page raster produced by the rectifier."""
    image: np.ndarray
    dpi: float = 150.0
    source_quad: Optional[Quadrilateral] = None
    timestamp: Optional[float] = None

    def __post_init__(self):
        if self.dpi <= 0:
            raise ValueError("dpi must be positive")
        object.__setattr__(self, "image", _readonly(self.image))

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])

    @property
    def is_color(self) -> bool:
        return self.image.ndim == 3 and self.image.shape[2] == 3

    @property
    def physical_size(self) -> Tuple[float, float]:
        """(width, height) in inches."""
        return self.width / self.dpi, self.height / self.dpi


@dataclass(frozen=True)
class EnhancementProfile:
    """Named bundle of enhancement options."""
    name: str
    grayscale: bool = False
    adaptive_threshold: bool = False
    contrast_gain: float = 1.0
    denoise_strength: float = 0.0
    sharpen: float = 0.0

    @property
    def keeps_color(self) -> bool:
        return not self.grayscale

    def validate(self) -> "EnhancementProfile":
        if not self.contrast_gain > 0:
            raise InvalidProfile(self.name, "contrast gain must be greater than 0")
        if self.denoise_strength < 0:
            raise InvalidProfile(self.name, "denoise strength cannot be negative")
        if self.sharpen < 0:
            raise InvalidProfile(self.name, "sharpen amount cannot be negative")
        if self.adaptive_threshold and self.keeps_color:
            raise InvalidProfile(self.name, "binarization requires grayscale")
        return self


class ExportFormat(str, Enum):
    """Closed set of output formats."""
    PDF = "pdf"
    PNG = "png"
    JPG = "jpg"

    @property
    def extension(self) -> str:
        return self.value

    @property
    def is_multi_page(self) -> bool:
        return self is ExportFormat.PDF

    @classmethod
    def parse(cls, value) -> "ExportFormat":
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower().lstrip(".")
        if text == "jpeg":
            text = "jpg"
        try:
            return cls(text)
        except ValueError:
            raise ScannerError(
                message=f"Unsupported export format: {value}",
                error_code="UNSUPPORTED_FORMAT",
                details={"suggestion": "Choose PDF, PNG or JPG"},
            )


@dataclass(frozen=True, eq=False)
class Page:
    """A page owned by the session."""
    id: int
    ordinal: int
    page: RectifiedPage
    profile_name: str
    thumbnail: bytes = b""


class SessionState(str, Enum):
    EMPTY = "empty"
    ACTIVE = "active"
    EXPORTED = "exported"


@dataclass(frozen=True)
class NamingContext:
    """Read-only inputs for file name templates."""
    date: date
    time: dtime
    counter: int = 1
    profile: str = ""
    format: ExportFormat = ExportFormat.PDF
    page_count: int = 0
    dpi: int = 300

    @classmethod
    def now(cls, **kwargs) -> "NamingContext":
        stamp = kwargs.pop("at", None) or datetime.now()
        return cls(date=stamp.date(), time=stamp.time(), **kwargs)


@dataclass(frozen=True)
class ExportJob:
    """Immutable export request over a session snapshot."""
    pages: Tuple[Page, ...]
    destination: Path
    format: ExportFormat = ExportFormat.PDF
    dpi: int = 300
    jpg_quality: int = 92
    template: str = "{date}-{time}-{profile}-{counter}"
    profile_name: str = ""
    counter_base: int = 1
    page_ids: Optional[FrozenSet[int]] = None
    append_page_count: bool = False
    append_dpi: bool = False
    include_time: bool = True
    created_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        object.__setattr__(self, "pages", tuple(self.pages))
        object.__setattr__(self, "destination", Path(self.destination).expanduser())
        object.__setattr__(self, "format", ExportFormat.parse(self.format))
        if self.dpi <= 0:
            raise ValueError("dpi must be positive")
        if self.page_ids is not None:
            object.__setattr__(self, "page_ids", frozenset(self.page_ids))

    def selected_pages(self) -> Tuple[Page, ...]:
        """Pages to write, in session order; honors a retry subset."""
        if self.page_ids is None:
            return self.pages
        return tuple(p for p in self.pages if p.id in self.page_ids)

    def naming_context(self) -> NamingContext:
        return NamingContext(
            date=self.created_at.date(),
            time=self.created_at.time(),
            counter=self.counter_base,
            profile=self.profile_name,
            format=self.format,
            page_count=len(self.pages),
            dpi=self.dpi,
        )


@dataclass
class PageOutcome:
    """Per-page export status."""
    page_id: int
    file_name: str
    ok: bool
    error: Optional[ScannerError] = None


@dataclass
class ExportResult:
    """What an export produced."""
    format: ExportFormat
    paths: List[Path] = field(default_factory=list)
    byte_sizes: List[int] = field(default_factory=list)
    duration: float = 0.0
    outcomes: List[PageOutcome] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.cancelled and all(o.ok for o in self.outcomes)

    @property
    def total_bytes(self) -> int:
        return sum(self.byte_sizes)

    def to_dict(self) -> dict:
        return {
            "format": self.format.value,
            "paths": [str(p) for p in self.paths],
            "byte_sizes": list(self.byte_sizes),
            "duration": round(self.duration, 3),
            "cancelled": self.cancelled,
            "pages": [
                {
                    "page_id": o.page_id,
                    "file_name": o.file_name,
                    "ok": o.ok,
                    "error": o.error.to_dict() if o.error else None,
                }
                for o in self.outcomes
            ],
        }
