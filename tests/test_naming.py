"""File name template tests."""

import logging
from datetime import date, time

import pytest

from pagescan.models import ExportFormat, NamingContext
from pagescan.naming import render, resolve_name, resolve_names, unknown_tokens


@pytest.fixture
def context() -> NamingContext:
    return NamingContext(
        date=date(2024, 5, 4),
        time=time(9, 7, 30),
        counter=1,
        profile="text",
        format=ExportFormat.PDF,
        page_count=5,
        dpi=300,
    )


class TestResolveName:
    """Collision-free names"""

    def test_skips_taken_counters(self, context):
        existing = {"2024-05-04-001.pdf", "2024-05-04-002.pdf"}
        assert resolve_name("{date}-{counter}", context, existing, base=1) == "2024-05-04-003.pdf"

    @pytest.mark.parametrize("taken", range(0, 6))
    def test_contiguous_run_gives_next(self, context, taken):
        """Names 001..K taken -> K+1"""
        existing = {f"2024-05-04-{i:03d}.pdf" for i in range(1, taken + 1)}
        expected = f"2024-05-04-{taken + 1:03d}.pdf"
        assert resolve_name("{date}-{counter}", context, existing, base=1) == expected

    def test_result_never_collides(self, context):
        existing = {"2024-05-04-001.pdf", "2024-05-04-003.pdf", "2024-05-04-004.pdf"}
        name = resolve_name("{date}-{counter}", context, existing)
        assert name not in existing
        assert name == "2024-05-04-002.pdf"

    def test_base_counter(self, context):
        assert resolve_name("{date}-{counter}", context, base=42) == "2024-05-04-042.pdf"

    def test_all_tokens(self, context):
        name = resolve_name("{date}_{time}_{profile}_{format}_{dpi}_{counter}", context)
        assert name == "2024-05-04_0907_text_PDF_300dpi_001.pdf"

    def test_extension_follows_format(self, context):
        jpg = NamingContext(date=context.date, time=context.time, format=ExportFormat.JPG)
        assert resolve_name("{date}", jpg) == "2024-05-04.jpg"

    def test_unknown_token_kept_and_logged(self, context, caplog):
        with caplog.at_level(logging.WARNING, logger="pagescan.naming"):
            name = resolve_name("{date}-{client}-{counter}", context)
        assert name == "2024-05-04-{client}-001.pdf"
        assert "client" in caplog.text

    def test_template_without_counter(self, context):
        assert resolve_name("scan-{date}", context) == "scan-2024-05-04.pdf"
        taken = {"scan-2024-05-04.pdf"}
        assert resolve_name("scan-{date}", context, taken) == "scan-2024-05-04-001.pdf"
        taken.add("scan-2024-05-04-001.pdf")
        assert resolve_name("scan-{date}", context, taken) == "scan-2024-05-04-002.pdf"

    def test_optional_tags(self, context):
        name = resolve_name("{date}-{counter}", context, append_page_count=True, append_dpi=True)
        assert name == "2024-05-04-001-5p-300dpi.pdf"

    def test_time_can_be_left_out(self, context):
        assert resolve_name("{date}{time}-{counter}", context, include_time=False) == "2024-05-04-001.pdf"

    @pytest.mark.parametrize("template, expected", [
        ("{date}-{time}-{profile}-{counter}", "2024-05-04-text-001.pdf"),
        ("{time}-{date}-{counter}", "2024-05-04-001.pdf"),
        ("{date}-{counter}-{time}", "2024-05-04-001.pdf"),
        ("{date}_{time}_{counter}", "2024-05-04_001.pdf"),
    ])
    def test_left_out_time_takes_its_separator(self, context, template, expected):
        assert resolve_name(template, context, include_time=False) == expected

    def test_time_kept_by_default(self, context):
        assert resolve_name("{date}-{time}-{counter}", context) == "2024-05-04-0907-001.pdf"

    def test_path_separators_replaced(self, context):
        ctx = NamingContext(date=context.date, time=context.time, profile="bw/hi")
        assert resolve_name("{profile}-{counter}", ctx) == "bw-hi-001.pdf"


class TestResolveNames:
    """Runs of names for per-page export"""

    def test_increasing_and_free(self, context):
        png = NamingContext(date=context.date, time=context.time, format=ExportFormat.PNG)
        existing = {"2024-05-04-002.png"}

        names = resolve_names("{date}-{counter}", png, 3, existing)

        assert names == ["2024-05-04-001.png", "2024-05-04-003.png", "2024-05-04-004.png"]

    def test_names_are_unique_without_counter(self, context):
        names = resolve_names("page", context, 3)
        assert names == ["page.pdf", "page-001.pdf", "page-002.pdf"]


class TestTemplateHelpers:

    def test_unknown_tokens(self):
        assert unknown_tokens("{date}-{foo}-{counter}-{bar}") == ["foo", "bar"]

    def test_render_pads_counter(self, context):
        assert render("{counter}", context, 7) == "007"
        assert render("{counter}", context, 1234) == "1234"
