"""
Export encoder: writes a session snapshot as one multi-page PDF or as one
PNG/JPG file per page.

Files are written to ``<name>.part`` and renamed once complete, so a failed
or cancelled export never leaves a truncated file behind. Files already
finished are kept when a later page fails; the raised
``PartialExportError`` lists which pages made it.
"""

import logging
import os
import shutil
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional

import cv2
from PIL import Image

from .errors import EncodeError, ExportError, InsufficientSpace, IoError, PartialExportError
from .imaging import cv2_to_pil, is_two_level, resize_to_dpi
from .models import ExportFormat, ExportJob, ExportResult, Page, PageOutcome
from .naming import resolve_name, resolve_names

logger = logging.getLogger(__name__)

# Expected ratio of raw pixel bytes to encoded bytes, for the space estimate.
COMPRESSION_ESTIMATE = 4

FreeSpaceProbe = Callable[[Path], int]


def disk_free_bytes(path: Path) -> int:
    """Default housekeeping probe: free bytes on the volume holding ``path``."""
    return shutil.disk_usage(path).free


def clamp_quality(quality) -> int:
    return max(1, min(100, int(quality)))


class CancelToken:
    """Cooperative cancellation flag shared with a running export."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class ExportEncoder:
    """Serializes page snapshots to disk."""

    def __init__(
        self,
        free_space: FreeSpaceProbe = disk_free_bytes,
        safety_margin_mb: int = 50,
    ):
        """
        Args:
            free_space: Housekeeping probe returning free bytes for a folder.
            safety_margin_mb: Space that must remain free after the export.
        """
        self.free_space = free_space
        self.safety_margin = safety_margin_mb * 1024 * 1024

    def export(self, job: ExportJob, cancel: Optional[CancelToken] = None) -> ExportResult:
        """Write the job's pages.

        Args:
            job: Export request holding the session snapshot.
            cancel: Optional token checked before each page or file.

        Returns:
            ExportResult with written paths and per-page outcomes.

        Raises:
            IoError: destination missing, not a folder, or not writable.
            InsufficientSpace: pre-flight space check failed.
            EncodeError: the PDF could not be assembled.
            PartialExportError: some PNG/JPG files failed; others were written.
        """
        pages = job.selected_pages()
        if not pages:
            raise ExportError(
                message="There are no pages to export",
                error_code="EMPTY_EXPORT",
                details={"suggestion": "Capture at least one page before exporting"},
            )

        self.preflight(job)
        cancel = cancel or CancelToken()
        result = ExportResult(format=job.format)
        started = time.monotonic()

        if job.format is ExportFormat.PDF:
            self._export_pdf(job, pages, result, cancel)
        elif job.format in (ExportFormat.PNG, ExportFormat.JPG):
            self._export_images(job, pages, result, cancel)
        else:
            raise EncodeError(str(job.destination), f"unsupported format {job.format!r}")

        result.duration = time.monotonic() - started
        if result.cancelled:
            logger.info(f"Export cancelled after {len(result.paths)} file(s)")
        else:
            logger.info(
                f"Exported {len(pages)} page(s) as {job.format.value.upper()} "
                f"to {job.destination} in {result.duration:.2f}s"
            )

        if any(not o.ok for o in result.outcomes):
            raise PartialExportError(result)
        return result

    def preflight(self, job: ExportJob) -> None:
        """Check destination and free space before writing anything."""
        dest = job.destination
        if not dest.exists():
            raise IoError(str(dest), "folder does not exist")
        if not dest.is_dir():
            raise IoError(str(dest), "not a folder")
        if not os.access(dest, os.W_OK):
            raise IoError(str(dest), "folder is not writable")

        try:
            free = int(self.free_space(dest))
        except OSError as e:
            raise IoError(str(dest), f"cannot read free space ({e})")

        required = self.estimate_bytes(job) + self.safety_margin
        if free < required:
            raise InsufficientSpace(str(dest), free, required)
        if free < 2 * required:
            logger.warning(f"Low disk space in {dest}: {free // (1024 * 1024)} MB free")

    def estimate_bytes(self, job: ExportJob) -> int:
        total = 0
        for page in job.selected_pages():
            raster = page.page
            scale = job.dpi / raster.dpi
            channels = 3 if raster.is_color else 1
            total += int(raster.width * scale * raster.height * scale * channels)
        return total // COMPRESSION_ESTIMATE

    def _prepare(self, page: Page, dpi: int) -> Image.Image:
        """Resample a page to the export resolution as a PIL image."""
        image = resize_to_dpi(page.page.image, page.page.dpi, dpi)
        pil = cv2_to_pil(image)
        if is_two_level(image):
            pil = pil.convert("1", dither=Image.Dither.NONE)
        return pil

    def _export_pdf(self, job: ExportJob, pages, result: ExportResult, cancel: CancelToken) -> None:
        existing = set(os.listdir(job.destination))
        name = resolve_name(
            job.template, job.naming_context(), existing,
            include_time=job.include_time,
            append_page_count=job.append_page_count,
            append_dpi=job.append_dpi,
        )
        path = job.destination / name

        images: List[Image.Image] = []
        for page in pages:
            if cancel.cancelled:
                result.cancelled = True
                return
            try:
                images.append(self._prepare(page, job.dpi))
            except (cv2.error, ValueError) as e:
                raise EncodeError(name, str(e), page_id=page.id)

        if cancel.cancelled:
            result.cancelled = True
            return

        size = self._write(
            path, page_id=None,
            save=lambda target: images[0].save(
                target, "PDF",
                resolution=float(job.dpi),
                save_all=True,
                append_images=images[1:],
            ),
        )
        result.paths.append(path)
        result.byte_sizes.append(size)
        result.outcomes.extend(PageOutcome(page_id=p.id, file_name=name, ok=True) for p in pages)

    def _export_images(self, job: ExportJob, pages, result: ExportResult, cancel: CancelToken) -> None:
        existing = set(os.listdir(job.destination))
        names = resolve_names(
            job.template, job.naming_context(), len(pages), existing,
            include_time=job.include_time,
            append_page_count=job.append_page_count,
            append_dpi=job.append_dpi,
        )
        quality = clamp_quality(job.jpg_quality)

        for page, name in zip(pages, names):
            if cancel.cancelled:
                result.cancelled = True
                return
            path = job.destination / name
            try:
                image = self._prepare(page, job.dpi)
                if job.format is ExportFormat.JPG:
                    if image.mode == "1":
                        image = image.convert("L")

                    def save(target, image=image):
                        image.save(target, "JPEG", quality=quality, dpi=(job.dpi, job.dpi))
                else:
                    def save(target, image=image):
                        image.save(target, "PNG", dpi=(job.dpi, job.dpi))

                size = self._write(path, page.id, save)
            except (cv2.error, ValueError) as e:
                error = EncodeError(name, str(e), page_id=page.id)
                logger.error(f"Page {page.id}: {error.message}")
                result.outcomes.append(PageOutcome(page_id=page.id, file_name=name, ok=False, error=error))
                continue
            except (IoError, EncodeError) as error:
                logger.error(f"Page {page.id}: {error.message}")
                result.outcomes.append(PageOutcome(page_id=page.id, file_name=name, ok=False, error=error))
                continue

            result.paths.append(path)
            result.byte_sizes.append(size)
            result.outcomes.append(PageOutcome(page_id=page.id, file_name=name, ok=True))

    def _write(self, path: Path, page_id: Optional[int], save: Callable) -> int:
        """Write through a temporary file and rename; returns the byte size."""
        part = path.with_name(path.name + ".part")
        try:
            with open(part, "wb") as fh:
                save(fh)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(part, path)
        except OSError as e:
            self._discard(part)
            raise IoError(str(path), e.strerror or str(e), page_id=page_id)
        except (ValueError, KeyError) as e:
            self._discard(part)
            raise EncodeError(path.name, str(e), page_id=page_id)
        return path.stat().st_size

    @staticmethod
    def _discard(part: Path) -> None:
        try:
            part.unlink()
        except FileNotFoundError:
            pass
