from __future__ import annotations

import io
from dataclasses import dataclass

from reportlab.lib.pagesizes import A4
from reportlab.lib.units import mm
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.cidfonts import UnicodeCIDFont
from reportlab.pdfgen import canvas

from .scripture import AnnotationUnit

CJK_FONT = "STSong-Light"


@dataclass(slots=True)
class PdfLayout:
    page_width: float = A4[0]
    page_height: float = A4[1]
    margin: float = 18 * mm
    title_size: float = 16.0
    character_size: float = 15.0
    phonetic_size: float = 7.5
    unit_gap: float = 1.5
    line_gap: float = 5.0
    paragraph_gap: float = 8.0

    @property
    def unit_height(self) -> float:
        return self.phonetic_size + 1.5 + self.character_size

    @property
    def content_width(self) -> float:
        return self.page_width - 2 * self.margin


def _ensure_font() -> None:
    if CJK_FONT not in pdfmetrics.getRegisteredFontNames():
        pdfmetrics.registerFont(UnicodeCIDFont(CJK_FONT))


def _unit_width(unit: AnnotationUnit, layout: PdfLayout) -> float:
    char_width = pdfmetrics.stringWidth(unit.text, CJK_FONT, layout.character_size)
    phonetic_width = (
        pdfmetrics.stringWidth(unit.phonetic, CJK_FONT, layout.phonetic_size)
        if unit.phonetic
        else 0.0
    )
    return max(char_width, phonetic_width)


def _wrap_units(
    units: list[AnnotationUnit], layout: PdfLayout
) -> list[list[tuple[AnnotationUnit, float]]]:
    lines: list[list[tuple[AnnotationUnit, float]]] = [[]]
    used = 0.0
    for unit in units:
        width = _unit_width(unit, layout)
        needed = width if not lines[-1] else width + layout.unit_gap
        if lines[-1] and used + needed > layout.content_width:
            lines.append([])
            used = 0.0
            needed = width
        lines[-1].append((unit, width))
        used += needed
    return [line for line in lines if line]


def render_scripture_pdf(
    paragraphs: list[list[AnnotationUnit]],
    title: str,
    layout: PdfLayout | None = None,
) -> bytes:
    """Lay out stacked annotation units, phonetic above each character."""
    layout = layout or PdfLayout()
    _ensure_font()
    buffer = io.BytesIO()
    pdf = canvas.Canvas(buffer, pagesize=(layout.page_width, layout.page_height))
    pdf.setTitle(title)

    top = layout.page_height - layout.margin
    pdf.setFont(CJK_FONT, layout.title_size)
    pdf.drawCentredString(layout.page_width / 2, top - layout.title_size, title)
    y = top - layout.title_size - layout.paragraph_gap * 2

    for paragraph in paragraphs:
        for line in _wrap_units(paragraph, layout):
            if y - layout.unit_height < layout.margin:
                pdf.showPage()
                y = top
            x = layout.margin
            phonetic_base = y - layout.phonetic_size
            character_base = y - layout.unit_height
            for unit, width in line:
                center = x + width / 2
                if unit.phonetic:
                    pdf.setFont(CJK_FONT, layout.phonetic_size)
                    pdf.drawCentredString(center, phonetic_base, unit.phonetic)
                pdf.setFont(CJK_FONT, layout.character_size)
                pdf.drawCentredString(center, character_base, unit.text)
                x += width + layout.unit_gap
            y -= layout.unit_height + layout.line_gap
        y -= layout.paragraph_gap

    pdf.showPage()
    pdf.save()
    return buffer.getvalue()
