"""
Error taxonomy for the capture and export pipeline.

Every error carries a stable ``error_code`` and a ``suggestion`` the front end
can show as-is, so no failure reaches the user as a generic string.
"""

from typing import Any, Dict, Optional


class ScannerError(Exception):
    """Base exception for pipeline errors."""

    def __init__(self, message: str, error_code: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    @property
    def suggestion(self) -> str:
        return self.details.get("suggestion", "")

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to a JSON-serializable dict."""
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }


# Capture errors

class DetectionMiss(ScannerError):
    """No document boundary found in the frame."""

    def __init__(self, reason: str = "no quadrilateral passed the thresholds"):
        super().__init__(
            message="Could not find the document edges in this frame",
            error_code="DETECTION_MISS",
            details={
                "reason": reason,
                "suggestion": "Retry the capture on a contrasting background or adjust the crop manually",
            },
        )


class DegenerateGeometry(ScannerError):
    """Quadrilateral cannot define a perspective transform."""

    def __init__(self, reason: str):
        super().__init__(
            message=f"Invalid crop corners: {reason}",
            error_code="DEGENERATE_GEOMETRY",
            details={
                "reason": reason,
                "suggestion": "Drag the corners so they outline the page without crossing",
            },
        )


class InvalidProfile(ScannerError):
    """Enhancement profile with out-of-range or conflicting options."""

    def __init__(self, name: str, reason: str):
        super().__init__(
            message=f"Enhancement profile '{name}' is invalid: {reason}",
            error_code="INVALID_PROFILE",
            details={
                "profile": name,
                "reason": reason,
                "suggestion": "Pick the 'text' or 'photo' profile or fix the profile settings",
            },
        )


class InvalidUserConfig(ScannerError):
    """Favorite or imported settings that cannot be used."""

    def __init__(self, reason: str):
        super().__init__(
            message=f"Invalid settings: {reason}",
            error_code="INVALID_USER_CONFIG",
            details={
                "reason": reason,
                "suggestion": "Fill in name, folder and profile, or import a JSON file exported by this app",
            },
        )


# Session errors

class SessionError(ScannerError):
    """Misuse of the page session."""
    pass


class UnknownPageId(SessionError):
    def __init__(self, page_id: int):
        super().__init__(
            message=f"Page {page_id} is not part of the current document",
            error_code="UNKNOWN_PAGE_ID",
            details={
                "page_id": page_id,
                "suggestion": "Refresh the page list and select the page again",
            },
        )


class InvalidOrdinal(SessionError):
    def __init__(self, ordinal: int, page_count: int):
        super().__init__(
            message=f"Position {ordinal} is outside 0..{page_count - 1}",
            error_code="INVALID_ORDINAL",
            details={
                "ordinal": ordinal,
                "page_count": page_count,
                "suggestion": "Choose a position between the first and the last page",
            },
        )


# Export errors

class ExportError(ScannerError):
    """Base class for export failures."""
    pass


class IoError(ExportError):
    """File system failure while exporting."""

    def __init__(self, path: str, reason: str, page_id: Optional[int] = None):
        super().__init__(
            message=f"Could not write to {path}: {reason}",
            error_code="IO_ERROR",
            details={
                "path": path,
                "reason": reason,
                "page_id": page_id,
                "suggestion": "Choose another folder or check its permissions",
            },
        )


class EncodeError(ExportError):
    """Image or PDF construction failed for valid-looking input."""

    def __init__(self, file_name: str, reason: str, page_id: Optional[int] = None):
        super().__init__(
            message=f"Could not encode {file_name}: {reason}",
            error_code="ENCODE_ERROR",
            details={
                "file_name": file_name,
                "reason": reason,
                "page_id": page_id,
                "suggestion": "Retake the affected page and export again",
            },
        )


class InsufficientSpace(ExportError):
    """Pre-flight disk space check failed."""

    def __init__(self, path: str, free_bytes: int, required_bytes: int):
        super().__init__(
            message=(
                f"Not enough free space in {path}: "
                f"{free_bytes // (1024 * 1024)} MB free, "
                f"{required_bytes // (1024 * 1024)} MB needed"
            ),
            error_code="INSUFFICIENT_SPACE",
            details={
                "path": path,
                "free_bytes": free_bytes,
                "required_bytes": required_bytes,
                "suggestion": "Free disk space or choose a folder on another drive",
            },
        )


class PartialExportError(ExportError):
    """Some pages of a multi-file export failed; the rest were written."""

    def __init__(self, result):
        failed = [o for o in result.outcomes if not o.ok]
        succeeded = [o for o in result.outcomes if o.ok]
        self.result = result
        super().__init__(
            message=f"{len(failed)} of {len(result.outcomes)} pages could not be exported",
            error_code="PARTIAL_EXPORT",
            details={
                "succeeded": [
                    {"page_id": o.page_id, "file_name": o.file_name} for o in succeeded
                ],
                "failed": [
                    {
                        "page_id": o.page_id,
                        "file_name": o.file_name,
                        "error_code": o.error.error_code if o.error else None,
                        "error": o.error.message if o.error else None,
                    }
                    for o in failed
                ],
                "suggestion": "Retry the export for the failed pages only",
            },
        )

    @property
    def failed_page_ids(self):
        return [o.page_id for o in self.result.outcomes if not o.ok]
