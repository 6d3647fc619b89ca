"""
Page arithmetic for imposition (arranging book pages onto printer sheets).

Imposition templates are named after their unit, e.g. ``a5-16signature`` or
``booklet-8spread``: the number is how many book pages one folded unit holds,
the word selects the binding style.

- signature: pages stay in reading order and are cut into consecutive units
- spread (saddle stitch): the whole document is reordered ``1, n, 2, n-1, ...``
  before being cut, and every unit but the innermost gets a creep
  compensation that grows with its distance from the centre of the book

The document is first padded with blank pages up to a multiple of the unit.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

DEFAULT_PAGES_PER_UNIT = 4
BASE_COMPENSATION_MM = -1.10
POINTS_TO_MM = 0.3528
A4_MM = (210.0, 297.0)

IMPOSE_NAME_PATTERN = re.compile(r"(\d+)(signature|spread)")
COMPENSATION_PATTERN = re.compile(r"\\newcommand\{\\compensation\}\{[^}]*\}")
PAGE_COUNT_PATTERN = re.compile(r"NumberOfPages:\s*(\d+)")
PAGE_SIZE_PATTERN = re.compile(r"PageMediaDimensions:\s+([\d.]+)\s+([\d.]+)")


@dataclass(frozen=True)
class Package:
    """One imposition unit: a slice of the (reordered) page sequence."""

    index: int
    first_page: int
    last_page: int
    compensation_mm: Optional[float] = None

    @property
    def filename(self) -> str:
        return f"package_{self.index + 1:03d}.pdf"


@dataclass(frozen=True)
class ImpositionPlan:
    impose_type: str
    pages_per_unit: int
    total_pages: int
    target_pages: int
    page_order: Tuple[int, ...]
    packages: Tuple[Package, ...]

    @property
    def blank_pages(self) -> int:
        return self.target_pages - self.total_pages

    @property
    def needs_reorder(self) -> bool:
        return self.page_order != tuple(range(1, self.target_pages + 1))


def parse_impose_name(name: str) -> Tuple[str, int]:
    """
    Derive binding style and pages per unit from a template name.

    Example:
        >>> parse_impose_name("a5-16signature")
        ('signature', 16)
        >>> parse_impose_name("booklet-spread")
        ('spread', 4)
    """
    impose_type = "spread" if "spread" in name else "signature"
    match = IMPOSE_NAME_PATTERN.search(name)
    pages_per_unit = int(match.group(1)) if match else DEFAULT_PAGES_PER_UNIT
    return impose_type, pages_per_unit or DEFAULT_PAGES_PER_UNIT


def spread_page_order(target_pages: int) -> List[int]:
    """
    Saddle-stitch order: outermost pair first.

    Example:
        >>> spread_page_order(8)
        [1, 8, 2, 7, 3, 6, 4, 5]
    """
    order: List[int] = []
    for left in range(1, target_pages // 2 + 1):
        order.extend((left, target_pages - left + 1))
    return order


def creep_compensation(package_index: int, package_count: int, paper_thickness: float) -> float:
    """Compensation in mm; the first (outermost) package gets the largest shift."""
    unit_index = package_count - 1 - package_index
    return round(BASE_COMPENSATION_MM + unit_index * 2 * paper_thickness, 4)


def plan_imposition(impose_name: str, total_pages: int, paper_thickness: float = 0.0) -> ImpositionPlan:
    if total_pages <= 0:
        raise ValueError("Cannot impose a document without pages")

    impose_type, pages_per_unit = parse_impose_name(impose_name)
    target_pages = math.ceil(total_pages / pages_per_unit) * pages_per_unit
    if impose_type == "spread":
        page_order = tuple(spread_page_order(target_pages))
    else:
        page_order = tuple(range(1, target_pages + 1))

    package_count = target_pages // pages_per_unit
    compensate = impose_type == "spread" and paper_thickness > 0
    packages = tuple(
        Package(
            index=index,
            first_page=index * pages_per_unit + 1,
            last_page=(index + 1) * pages_per_unit,
            compensation_mm=creep_compensation(index, package_count, paper_thickness) if compensate else None,
        )
        for index in range(package_count)
    )
    return ImpositionPlan(
        impose_type=impose_type,
        pages_per_unit=pages_per_unit,
        total_pages=total_pages,
        target_pages=target_pages,
        page_order=page_order,
        packages=packages,
    )


def set_compensation(tex: str, compensation_mm: float) -> str:
    replacement = "\\newcommand{\\compensation}{" + f"{compensation_mm:g}mm" + "}"
    return COMPENSATION_PATTERN.sub(lambda _match: replacement, tex)


def parse_page_count(dump_data: str) -> int:
    """Page count from ``pdftk dump_data`` output, 0 when absent."""
    match = PAGE_COUNT_PATTERN.search(dump_data)
    return int(match.group(1)) if match else 0


def parse_page_size_mm(dump_data: str) -> Tuple[float, float]:
    """First page size from ``pdftk dump_data`` output, A4 when absent."""
    match = PAGE_SIZE_PATTERN.search(dump_data)
    if not match:
        return A4_MM
    width, height = (round(float(value) * POINTS_TO_MM, 2) for value in match.groups())
    return width, height


def blank_page_tex(width_mm: float, height_mm: float) -> str:
    return (
        "\\documentclass{article}\n"
        "\\usepackage[utf8]{inputenc}\n"
        "\\usepackage[T1]{fontenc}\n"
        "\\usepackage{geometry}\n"
        f"\\geometry{{paperwidth={width_mm:g}mm,paperheight={height_mm:g}mm,margin=0mm}}\n"
        "\\pagestyle{empty}\n"
        "\\begin{document}\n"
        "~\n"
        "\\end{document}\n"
    )
