"""Document capture pipeline: detection, rectification, enhancement and export."""

from .config import ScannerConfig, UserConfig, configure_logging, load_user_config
from .detector import DocumentDetector
from .enhancer import BUILTIN_PROFILES, ImageEnhancer
from .errors import (
    DegenerateGeometry,
    DetectionMiss,
    EncodeError,
    ExportError,
    InsufficientSpace,
    InvalidOrdinal,
    InvalidProfile,
    InvalidUserConfig,
    IoError,
    PartialExportError,
    ScannerError,
    SessionError,
    UnknownPageId,
)
from .exporter import CancelToken, ExportEncoder
from .models import (
    EnhancementProfile,
    ExportFormat,
    ExportJob,
    ExportResult,
    Frame,
    NamingContext,
    Page,
    Quadrilateral,
    RectifiedPage,
)
from .naming import resolve_name, resolve_names
from .pipeline import CaptureOutcome, CaptureStatus, ExportHandle, ScanPipeline
from .session import PageSession
from .stability import StabilityGate, StabilityReading
from .transformer import PerspectiveTransformer

__all__ = [
    "BUILTIN_PROFILES",
    "CancelToken",
    "CaptureOutcome",
    "CaptureStatus",
    "DegenerateGeometry",
    "DetectionMiss",
    "DocumentDetector",
    "EncodeError",
    "EnhancementProfile",
    "ExportEncoder",
    "ExportError",
    "ExportFormat",
    "ExportHandle",
    "ExportJob",
    "ExportResult",
    "Frame",
    "ImageEnhancer",
    "InsufficientSpace",
    "InvalidOrdinal",
    "InvalidProfile",
    "InvalidUserConfig",
    "IoError",
    "NamingContext",
    "Page",
    "PageSession",
    "PartialExportError",
    "PerspectiveTransformer",
    "Quadrilateral",
    "RectifiedPage",
    "ScanPipeline",
    "ScannerConfig",
    "ScannerError",
    "SessionError",
    "StabilityGate",
    "StabilityReading",
    "UnknownPageId",
    "UserConfig",
    "configure_logging",
    "load_user_config",
    "resolve_name",
    "resolve_names",
]
