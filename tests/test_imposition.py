"""
Tests for imposition planning.
"""

import pytest

from bookbrew_backend.imposition import (
    blank_page_tex,
    creep_compensation,
    parse_impose_name,
    parse_page_count,
    parse_page_size_mm,
    plan_imposition,
    set_compensation,
    spread_page_order,
)

DUMP = """InfoBegin
InfoKey: Producer
InfoValue: xdvipdfmx
NumberOfPages: 10
PageMediaBegin
PageMediaNumber: 1
PageMediaRotation: 0
PageMediaRect: 0 0 419.53 595.28
PageMediaDimensions: 419.53 595.28
"""


class TestNames:
    def test_signature_name(self):
        assert parse_impose_name("a5-16signature") == ("signature", 16)

    def test_spread_name(self):
        assert parse_impose_name("booklet-8spread") == ("spread", 8)

    def test_defaults(self):
        assert parse_impose_name("booklet-spread") == ("spread", 4)
        assert parse_impose_name("plain") == ("signature", 4)


class TestPlans:
    """Padding, ordering and packages."""

    def test_spread_order(self):
        assert spread_page_order(8) == [1, 8, 2, 7, 3, 6, 4, 5]

    def test_signature_plan(self):
        plan = plan_imposition("a5-16signature", 20)

        assert plan.target_pages == 32
        assert plan.blank_pages == 12
        assert not plan.needs_reorder
        assert [(p.first_page, p.last_page) for p in plan.packages] == [(1, 16), (17, 32)]
        assert all(p.compensation_mm is None for p in plan.packages)

    def test_spread_plan_with_thickness(self):
        plan = plan_imposition("a5-8spread", 10, paper_thickness=0.1)

        assert plan.target_pages == 16
        assert plan.needs_reorder
        assert plan.page_order[:4] == (1, 16, 2, 15)
        assert [p.compensation_mm for p in plan.packages] == [-0.9, -1.1]
        assert [p.filename for p in plan.packages] == ["package_001.pdf", "package_002.pdf"]

    def test_spread_without_thickness_has_no_compensation(self):
        plan = plan_imposition("a5-4spread", 4)

        assert plan.blank_pages == 0
        assert plan.packages[0].compensation_mm is None

    def test_empty_document(self):
        with pytest.raises(ValueError):
            plan_imposition("a5-4spread", 0)

    def test_creep_compensation_grows_outwards(self):
        values = [creep_compensation(i, 4, 0.05) for i in range(4)]

        assert values == sorted(values, reverse=True)
        assert values[-1] == -1.1


class TestTexHelpers:
    def test_set_compensation(self):
        tex = "\\newcommand{\\compensation}{0mm}\n\\includepdf{export.pdf}"

        result = set_compensation(tex, -0.9)

        assert "\\newcommand{\\compensation}{-0.9mm}" in result
        assert set_compensation(result, -1.1).count("\\compensation}") == 1

    def test_page_count(self):
        assert parse_page_count(DUMP) == 10
        assert parse_page_count("") == 0

    def test_page_size(self):
        width, height = parse_page_size_mm(DUMP)

        assert width == pytest.approx(148.01, abs=0.01)
        assert height == pytest.approx(210.01, abs=0.01)
        assert parse_page_size_mm("") == (210.0, 297.0)

    def test_blank_page(self):
        tex = blank_page_tex(148.0, 210.0)

        assert "paperwidth=148mm" in tex
        assert "paperheight=210mm" in tex
