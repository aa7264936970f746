"""
Capture-to-export orchestration.

Detection, rectification and enhancement are pure functions of their
inputs and run on a shared thread pool. The session is the only mutable
state; exports work on a snapshot taken when the job is submitted.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple, Union

from .config import Favorite, Preferences, ScannerConfig
from .detector import Detection, DocumentDetector
from .enhancer import ImageEnhancer
from .errors import DegenerateGeometry, DetectionMiss, InvalidProfile, ScannerError
from .exporter import CancelToken, ExportEncoder
from .models import (
    EnhancementProfile,
    ExportFormat,
    ExportJob,
    ExportResult,
    Frame,
    Page,
    Quadrilateral,
    RectifiedPage,
)
from .session import PageSession
from .stability import StabilityGate, StabilityReading
from .transformer import PerspectiveTransformer

logger = logging.getLogger(__name__)


def _profile_name(profile: Union[str, EnhancementProfile]) -> str:
    return profile.name if isinstance(profile, EnhancementProfile) else profile


class CaptureStatus(str, Enum):
    CAPTURED = "captured"
    NEEDS_MANUAL_CROP = "needs_manual_crop"
    INVALID_CROP = "invalid_crop"


@dataclass
class CaptureOutcome:
    """Structured result of turning a frame into a page."""
    status: CaptureStatus
    page: Optional[RectifiedPage] = None
    quad: Optional[Quadrilateral] = None
    error: Optional[ScannerError] = None
    record: Optional[Page] = None

    @property
    def ok(self) -> bool:
        return self.status is CaptureStatus.CAPTURED

    @property
    def low_confidence(self) -> bool:
        return bool(self.quad and self.quad.low_confidence)

    @property
    def message(self) -> str:
        if self.error is None:
            return ""
        return f"{self.error.message}. {self.error.suggestion}"


class ExportHandle:
    """An in-flight export: wait on it or cancel it."""

    def __init__(self, job: ExportJob, future: Future, token: CancelToken):
        self.job = job
        self._future = future
        self._token = token

    def cancel(self) -> None:
        """Stop before the next page/file; written files are kept."""
        self._token.cancel()

    @property
    def cancelled(self) -> bool:
        return self._token.cancelled

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: Optional[float] = None) -> ExportResult:
        return self._future.result(timeout)


class ScanPipeline:
    """Gate -> detector -> rectifier -> enhancer -> session -> encoder."""

    def __init__(
        self,
        config: Optional[ScannerConfig] = None,
        session: Optional[PageSession] = None,
        encoder: Optional[ExportEncoder] = None,
        enhancer: Optional[ImageEnhancer] = None,
    ):
        self.config = config or ScannerConfig()
        cfg = self.config
        self.detector = DocumentDetector.from_config(cfg)
        self.gate = StabilityGate.from_config(cfg, detector=self.detector)
        self.transformer = PerspectiveTransformer(
            output_size=cfg.page_size, dpi=cfg.page_dpi, match_orientation=True,
        )
        self.enhancer = enhancer or ImageEnhancer()
        self.session = session or PageSession(
            profile=cfg.default_profile,
            export_format=ExportFormat.parse(cfg.export_format),
        )
        self.encoder = encoder or ExportEncoder(safety_margin_mb=cfg.free_space_margin_mb)
        self._executor = ThreadPoolExecutor(max_workers=cfg.workers, thread_name_prefix="pagescan")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    # Live preview

    def evaluate(self, frame: Frame) -> StabilityReading:
        """Feed the stability gate; single camera thread only."""
        return self.gate.evaluate(frame)

    def preview(self, frame: Frame) -> Tuple[Detection, StabilityReading]:
        """Locate the page once and feed that outline to the stability gate."""
        detection = self.detector.locate(frame)
        reading = self.gate.evaluate(frame, detection.quad, detect=False)
        return detection, reading

    # Capture

    def process(
        self,
        frame: Frame,
        quad: Optional[Quadrilateral] = None,
        profile: Union[str, EnhancementProfile, None] = None,
    ) -> CaptureOutcome:
        """Detect (unless a manual outline is given), rectify and enhance.

        Detection misses and bad manual outlines come back as outcomes that
        ask for a manual crop instead of raising.
        """
        if quad is None:
            quad = self.detector.detect(frame)
            if quad is None:
                return CaptureOutcome(status=CaptureStatus.NEEDS_MANUAL_CROP, error=DetectionMiss())

        try:
            rectified = self.transformer.rectify(frame, quad)
        except DegenerateGeometry as e:
            logger.info(f"Rejected outline: {e.details.get('reason')}")
            return CaptureOutcome(status=CaptureStatus.INVALID_CROP, quad=None, error=e)

        enhanced = self.enhancer.enhance(rectified, profile or self.session.active_profile)
        return CaptureOutcome(status=CaptureStatus.CAPTURED, page=enhanced, quad=rectified.source_quad)

    def submit(
        self,
        frame: Frame,
        quad: Optional[Quadrilateral] = None,
        profile: Union[str, EnhancementProfile, None] = None,
    ) -> Future:
        """Run process() on the worker pool."""
        return self._executor.submit(self.process, frame, quad, profile)

    def capture(
        self,
        frame: Frame,
        quad: Optional[Quadrilateral] = None,
        profile: Union[str, EnhancementProfile, None] = None,
    ) -> CaptureOutcome:
        """Process a frame and append the page to the session."""
        profile = profile or self.session.active_profile
        outcome = self.process(frame, quad, profile)
        if outcome.ok:
            outcome.record = self.session.add_page(outcome.page, _profile_name(profile))
        return outcome

    def retake(
        self,
        page_id: int,
        frame: Frame,
        quad: Optional[Quadrilateral] = None,
        profile: Union[str, EnhancementProfile, None] = None,
    ) -> CaptureOutcome:
        """Replace an existing page with a new capture.

        Raises:
            UnknownPageId: if the page is no longer in the session.
        """
        profile = profile or self.session.get(page_id).profile_name
        outcome = self.process(frame, quad, profile)
        if outcome.ok:
            outcome.record = self.session.retake(page_id, outcome.page, _profile_name(profile))
        return outcome

    def set_profile(self, name: str) -> None:
        self.enhancer.get(name)
        self.session.active_profile = name

    def apply_preferences(self, preferences: Preferences) -> None:
        """Seed the session's profile and format from saved preferences.

        Unknown values are logged and the current setting is kept.
        """
        try:
            self.set_profile(preferences.default_profile)
        except InvalidProfile:
            logger.warning(f"Ignoring unknown default profile '{preferences.default_profile}'")
        try:
            self.session.export_format = ExportFormat.parse(preferences.default_format)
        except ScannerError:
            logger.warning(f"Ignoring unknown default format '{preferences.default_format}'")

    # Export

    def build_job(
        self,
        destination: Union[str, Path],
        format: Union[str, ExportFormat, None] = None,
        dpi: Optional[int] = None,
        jpg_quality: Optional[int] = None,
        template: Optional[str] = None,
        **kwargs,
    ) -> ExportJob:
        """Snapshot the session into an immutable export job."""
        cfg = self.config
        return ExportJob(
            pages=self.session.snapshot(),
            destination=Path(destination),
            format=ExportFormat.parse(format or self.session.export_format),
            dpi=dpi or cfg.export_dpi,
            jpg_quality=cfg.jpg_quality if jpg_quality is None else jpg_quality,
            template=template or cfg.naming_template,
            profile_name=kwargs.pop("profile_name", self.session.active_profile),
            **kwargs,
        )

    def build_favorite_job(
        self,
        favorite: Favorite,
        dpi: Optional[int] = None,
        jpg_quality: Optional[int] = None,
        template: Optional[str] = None,
        **kwargs,
    ) -> ExportJob:
        """Snapshot the session into a job using a favorite's folder, format and profile."""
        cfg = self.config
        return favorite.to_job(
            self.session.snapshot(),
            template or cfg.naming_template,
            dpi=dpi or cfg.export_dpi,
            jpg_quality=cfg.jpg_quality if jpg_quality is None else jpg_quality,
            **kwargs,
        )

    def export(self, job: ExportJob, clear_on_success: bool = True) -> ExportHandle:
        """Start an export on the worker pool.

        Later session changes do not affect the job. On full success the
        session is cleared, unless it changed after the snapshot.
        """
        token = CancelToken()

        def run() -> ExportResult:
            result = self.encoder.export(job, token)
            if clear_on_success and result.ok and job.page_ids is None:
                self.session.mark_exported(job.pages)
            return result

        future = self._executor.submit(run)
        logger.info(f"Submitted {job.format.value.upper()} export of {len(job.pages)} page(s)")
        return ExportHandle(job, future, token)


__all__ = [
    "CaptureOutcome",
    "CaptureStatus",
    "ExportHandle",
    "ScanPipeline",
]
