"""Export encoder tests."""

import re
from datetime import datetime

import pytest
from PIL import Image

from pagescan.errors import EncodeError, ExportError, InsufficientSpace, IoError, PartialExportError
from pagescan.exporter import CancelToken, ExportEncoder, clamp_quality
from pagescan.models import ExportFormat, ExportJob

CREATED = datetime(2024, 5, 4, 9, 30)

PAGE_RE = re.compile(rb"/Type\s*/Page\b(?!s)")
MEDIABOX_RE = re.compile(rb"/MediaBox\s*\[\s*([-\d.]+)\s+([-\d.]+)\s+([-\d.]+)\s+([-\d.]+)\s*\]")


def _job(session, destination, fmt=ExportFormat.PDF, **kwargs) -> ExportJob:
    kwargs.setdefault("template", "{date}-{counter}")
    kwargs.setdefault("created_at", CREATED)
    return ExportJob(pages=session.snapshot(), destination=destination, format=fmt, **kwargs)


def _pdf_pages(path):
    data = path.read_bytes()
    boxes = [tuple(float(v) for v in m) for m in MEDIABOX_RE.findall(data)]
    return len(PAGE_RE.findall(data)), boxes


class TestPdfExport:
    """Single multi-page PDF"""

    def test_five_pages_at_300_dpi(self, encoder, filled_session, export_dir):
        """5-page session -> exactly one PDF with 5 pages in session order"""
        session = filled_session(5)
        result = encoder.export(_job(session, export_dir, dpi=300))

        assert result.ok
        assert len(result.paths) == 1
        assert list(export_dir.iterdir()) == result.paths
        assert result.paths[0].name == "2024-05-04-001.pdf"

        count, boxes = _pdf_pages(result.paths[0])
        assert count == 5
        # pages were 100, 110, ... px wide at 150 dpi: 2x pixels at 300 dpi, 72 pt per inch
        widths = [round(box[2] - box[0], 1) for box in boxes]
        assert widths == [round((100 + 10 * i) / 150 * 72, 1) for i in range(5)]

    def test_reordered_session_order(self, encoder, filled_session, export_dir):
        session = filled_session(3)
        ids = [p.id for p in session.snapshot()]
        session.reorder(ids[2], 0)

        result = encoder.export(_job(session, export_dir))

        _, boxes = _pdf_pages(result.paths[0])
        widths = [round(box[2] - box[0], 1) for box in boxes]
        assert widths == [round(w / 150 * 72, 1) for w in (120, 100, 110)]

    def test_binarized_pages(self, encoder, filled_session, export_dir, make_rectified):
        session = filled_session(0)
        session.add_page(make_rectified(value=255, color=False))
        session.add_page(make_rectified(value=0, color=False))

        result = encoder.export(_job(session, export_dir, dpi=200))
        assert _pdf_pages(result.paths[0])[0] == 2

    def test_name_skips_existing_files(self, encoder, filled_session, export_dir):
        (export_dir / "2024-05-04-001.pdf").write_bytes(b"old")
        result = encoder.export(_job(filled_session(1), export_dir))
        assert result.paths[0].name == "2024-05-04-002.pdf"
        assert (export_dir / "2024-05-04-001.pdf").read_bytes() == b"old"

    def test_encode_failure(self, encoder, filled_session, export_dir, monkeypatch):
        def broken(page, dpi):
            raise ValueError("bad raster")

        monkeypatch.setattr(encoder, "_prepare", broken)
        with pytest.raises(EncodeError) as exc_info:
            encoder.export(_job(filled_session(2), export_dir))
        assert exc_info.value.details["page_id"] is not None
        assert list(export_dir.iterdir()) == []


class TestImageExport:
    """One file per page"""

    def test_png_per_page(self, encoder, filled_session, export_dir):
        session = filled_session(3)
        result = encoder.export(_job(session, export_dir, ExportFormat.PNG, dpi=300))

        names = [p.name for p in result.paths]
        assert names == ["2024-05-04-001.png", "2024-05-04-002.png", "2024-05-04-003.png"]
        with Image.open(result.paths[1]) as img:
            assert img.size == (220, 400)
            assert img.info["dpi"] == pytest.approx((300, 300), abs=1)
        assert result.byte_sizes == [p.stat().st_size for p in result.paths]

    def test_jpg_quality(self, encoder, filled_session, export_dir):
        session = filled_session(1)
        low = encoder.export(_job(session, export_dir, ExportFormat.JPG, jpg_quality=5, template="low"))
        high = encoder.export(_job(session, export_dir, ExportFormat.JPG, jpg_quality=100, template="high"))

        assert low.paths[0].name == "low.jpg"
        with Image.open(high.paths[0]) as img:
            assert img.format == "JPEG"

    def test_jpg_from_binarized_page(self, encoder, filled_session, export_dir, make_rectified):
        session = filled_session(0)
        session.add_page(make_rectified(value=255, color=False))
        result = encoder.export(_job(session, export_dir, ExportFormat.JPG))
        with Image.open(result.paths[0]) as img:
            assert img.mode == "L"

    def test_partial_failure_and_retry(self, encoder, filled_session, export_dir, monkeypatch):
        session = filled_session(3)
        pages = session.snapshot()
        failing_id = pages[1].id
        original = encoder._prepare

        def flaky(page, dpi):
            if page.id == failing_id:
                raise ValueError("sensor garbage")
            return original(page, dpi)

        monkeypatch.setattr(encoder, "_prepare", flaky)
        job = _job(session, export_dir, ExportFormat.PNG)

        with pytest.raises(PartialExportError) as exc_info:
            encoder.export(job)

        error = exc_info.value
        assert error.failed_page_ids == [failing_id]
        assert len(error.result.paths) == 2
        assert [s["page_id"] for s in error.details["succeeded"]] == [pages[0].id, pages[2].id]
        assert sorted(p.name for p in export_dir.iterdir()) == ["2024-05-04-001.png", "2024-05-04-003.png"]

        # retry only the failed page
        monkeypatch.setattr(encoder, "_prepare", original)
        retry = ExportJob(
            pages=job.pages, destination=export_dir, format=ExportFormat.PNG,
            template=job.template, created_at=CREATED, page_ids=error.failed_page_ids,
        )
        result = encoder.export(retry)
        assert result.ok
        assert [p.name for p in result.paths] == ["2024-05-04-002.png"]


class TestPreflight:
    """Checks before anything is written"""

    def test_insufficient_space(self, filled_session, export_dir):
        encoder = ExportEncoder(free_space=lambda path: 1024, safety_margin_mb=1)
        with pytest.raises(InsufficientSpace) as exc_info:
            encoder.export(_job(filled_session(2), export_dir))
        assert exc_info.value.details["free_bytes"] == 1024
        assert list(export_dir.iterdir()) == []

    def test_missing_destination(self, encoder, filled_session, tmp_path):
        with pytest.raises(IoError) as exc_info:
            encoder.export(_job(filled_session(1), tmp_path / "nope"))
        assert exc_info.value.error_code == "IO_ERROR"

    def test_destination_is_a_file(self, encoder, filled_session, tmp_path):
        target = tmp_path / "file.txt"
        target.write_text("x")
        with pytest.raises(IoError):
            encoder.export(_job(filled_session(1), target))

    def test_probe_failure(self, filled_session, export_dir):
        def probe(path):
            raise OSError("device gone")

        with pytest.raises(IoError):
            ExportEncoder(free_space=probe).export(_job(filled_session(1), export_dir))

    def test_empty_export(self, encoder, session, export_dir):
        with pytest.raises(ExportError) as exc_info:
            encoder.export(_job(session, export_dir))
        assert exc_info.value.error_code == "EMPTY_EXPORT"

    def test_estimate_scales_with_dpi(self, encoder, filled_session, export_dir):
        session = filled_session(2)
        low = encoder.estimate_bytes(_job(session, export_dir, dpi=150))
        high = encoder.estimate_bytes(_job(session, export_dir, dpi=300))
        assert high == pytest.approx(4 * low, rel=0.01)


class TestCancellation:

    def test_cancel_before_start(self, encoder, filled_session, export_dir):
        token = CancelToken()
        token.cancel()
        result = encoder.export(_job(filled_session(3), export_dir, ExportFormat.PNG), token)

        assert result.cancelled
        assert not result.ok
        assert list(export_dir.iterdir()) == []

    def test_cancel_midway_keeps_written_files(self, encoder, filled_session, export_dir, monkeypatch):
        token = CancelToken()
        original = encoder._write

        def write_then_cancel(path, page_id, save):
            size = original(path, page_id, save)
            token.cancel()
            return size

        monkeypatch.setattr(encoder, "_write", write_then_cancel)
        result = encoder.export(_job(filled_session(3), export_dir, ExportFormat.PNG), token)

        assert result.cancelled
        assert len(result.paths) == 1
        assert [p.name for p in export_dir.iterdir()] == ["2024-05-04-001.png"]


def test_clamp_quality():
    assert clamp_quality(0) == 1
    assert clamp_quality(150) == 100
    assert clamp_quality(85) == 85
