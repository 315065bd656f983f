"""Markdown report to PDF, rendered with reportlab platypus.

The layout is a dark A4 page with accent bars, a header panel, a request box
and the report body. Page footers ("Page N of M") are stamped after the whole
document is laid out, so every page is buffered by :class:`NumberedCanvas`
until the total is known.
"""
from __future__ import annotations

import io
import re
from functools import partial
from typing import Any
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.pdfgen import canvas
from reportlab.platypus import (
    HRFlowable,
    Paragraph,
    Preformatted,
    SimpleDocTemplate,
    Spacer,
    Table,
    TableStyle,
)

REPORT_LABEL = "Subintel AI Report"
DEFAULT_REQUEST_LABEL = "Forespørsel"

ACCENT_HEX = "#4DB89E"
GOLD_HEX = "#C9A84C"

THEME = {
    "page": colors.HexColor("#0B1A16"),
    "panel": colors.HexColor("#0E2620"),
    "request": colors.HexColor("#0D231D"),
    "accent": colors.HexColor(ACCENT_HEX),
    "gold": colors.HexColor(GOLD_HEX),
    "text": colors.HexColor("#D5E8E2"),
    "title": colors.HexColor("#F0F7F4"),
    "muted": colors.HexColor("#7FA89E"),
    "rule": colors.HexColor("#1E3F36"),
    "table_header": colors.HexColor("#1A3D34"),
    "row_even": colors.HexColor("#0F2822"),
    "row_odd": colors.HexColor("#112E26"),
}

MARGIN_X = 17 * mm
MARGIN_TOP = 16 * mm
MARGIN_BOTTOM = 20 * mm

_FOLLOW_UP_HEADING_RE = re.compile(
    r"^#{1,6}\s*(follow[\s-]?up|oppfølging|neste spørsmål|suggested questions)", re.IGNORECASE
)
_FOLLOW_UP_LINE_RE = re.compile(
    r"^(?:[-*•]\s+|\d+[.)]\s+)?(vil du|would you|ønsker du|do you want|skal jeg|want me|trenger du)\b",
    re.IGNORECASE,
)
_TABLE_SEPARATOR_RE = re.compile(r"^[\s|:-]+$")
_BULLET_RE = re.compile(r"^\s*[-*•]\s+")
_NUMBERED_RE = re.compile(r"^\s*(\d{1,3})[.)]\s+")
_HEADING_RE = re.compile(r"^(#{1,6})(?:\s+|(?=[^\s#\d]))(.*\S)$")
_RULE_RE = re.compile(r"^(-{3,}|\*{3,}|_{3,})$")


# ---------------------------------------------------------------------------
# Canvas
# ---------------------------------------------------------------------------


class NumberedCanvas(canvas.Canvas):
    """Canvas that holds every page until save() so footers can show the total."""

    def __init__(self, *args: Any, footer_sink: list[str] | None = None, **kwargs: Any):
        super().__init__(*args, **kwargs)
        self._saved_page_states: list[dict[str, Any]] = []
        self._footer_sink = footer_sink

    def showPage(self) -> None:
        self._saved_page_states.append(dict(self.__dict__))
        self._startPage()

    def save(self) -> None:
        total = len(self._saved_page_states)
        for state in self._saved_page_states:
            self.__dict__.update(state)
            self._draw_footer(total)
            super().showPage()
        super().save()

    def _draw_footer(self, total: int) -> None:
        label = f"Page {self._pageNumber} of {total}"
        width, _ = self._pagesize
        self.saveState()
        self.setFont("Helvetica", 8)
        self.setFillColor(THEME["muted"])
        self.drawString(MARGIN_X, 10 * mm, "Subintel Sales Intelligence · AI-Generated Report")
        self.drawRightString(width - MARGIN_X, 10 * mm, label)
        self.restoreState()
        if self._footer_sink is not None:
            self._footer_sink.append(label)


def _draw_page(canv: canvas.Canvas, doc: SimpleDocTemplate) -> None:
    """Background and accent bars, redrawn on every page."""
    width, height = doc.pagesize
    canv.saveState()
    canv.setFillColor(THEME["page"])
    canv.rect(0, 0, width, height, stroke=0, fill=1)
    canv.setFillColor(THEME["accent"])
    canv.rect(0, height - 4, width, 4, stroke=0, fill=1)
    canv.setFillColor(THEME["gold"])
    canv.rect(0, 0, width * 0.35, 2, stroke=0, fill=1)
    canv.setStrokeColor(THEME["rule"])
    canv.setLineWidth(0.5)
    canv.line(MARGIN_X, 14 * mm, width - MARGIN_X, 14 * mm)
    canv.restoreState()


# ---------------------------------------------------------------------------
# Styles and inline markup
# ---------------------------------------------------------------------------


def _create_styles() -> dict[str, ParagraphStyle]:
    sample = getSampleStyleSheet()
    base = ParagraphStyle(
        "SubintelBase", parent=sample["Normal"], fontName="Helvetica",
        fontSize=10, leading=15, textColor=THEME["text"],
    )
    return {
        "base": base,
        "body": ParagraphStyle("SubintelBody", parent=base, spaceAfter=6),
        "label": ParagraphStyle("SubintelLabel", parent=base, fontName="Helvetica-Bold",
                                fontSize=8, leading=11, textColor=THEME["accent"], spaceAfter=4),
        "title": ParagraphStyle("SubintelTitle", parent=base, fontName="Helvetica-Bold",
                                fontSize=20, leading=25, textColor=THEME["title"], spaceAfter=4),
        "meta": ParagraphStyle("SubintelMeta", parent=base, fontSize=8.5, leading=11,
                               textColor=THEME["muted"]),
        "request_label": ParagraphStyle("SubintelRequestLabel", parent=base, fontName="Helvetica-Bold",
                                        fontSize=7.5, leading=10, textColor=THEME["gold"], spaceAfter=3),
        "request_text": ParagraphStyle("SubintelRequestText", parent=base, fontSize=9.5, leading=13),
        "h1": ParagraphStyle("SubintelH1", parent=base, fontName="Helvetica-Bold", fontSize=16,
                             leading=20, textColor=THEME["gold"], spaceBefore=16, spaceAfter=4),
        "h2": ParagraphStyle("SubintelH2", parent=base, fontName="Helvetica-Bold", fontSize=13,
                             leading=17, textColor=THEME["accent"], spaceBefore=12, spaceAfter=6),
        "h3": ParagraphStyle("SubintelH3", parent=base, fontName="Helvetica-Bold", fontSize=11,
                             leading=15, textColor=THEME["title"], spaceBefore=8, spaceAfter=4),
        "h4": ParagraphStyle("SubintelH4", parent=base, fontName="Helvetica-Bold", fontSize=10,
                             leading=14, textColor=THEME["muted"], spaceBefore=6, spaceAfter=3),
        "quote": ParagraphStyle("SubintelQuote", parent=base, leftIndent=12, borderPadding=(2, 0, 2, 8),
                                textColor=THEME["muted"], fontName="Helvetica-Oblique", spaceAfter=6),
        "bullet": ParagraphStyle("SubintelBullet", parent=base, leftIndent=14, firstLineIndent=-10,
                                 spaceAfter=3),
        "code": ParagraphStyle("SubintelCode", parent=base, fontName="Courier", fontSize=8.5,
                               leading=11, textColor=THEME["accent"], backColor=THEME["table_header"],
                               borderPadding=6, spaceBefore=4, spaceAfter=10),
        "cell": ParagraphStyle("SubintelCell", parent=base, fontSize=8.5, leading=11),
        "header_cell": ParagraphStyle("SubintelHeaderCell", parent=base, fontName="Helvetica-Bold",
                                      fontSize=8, leading=10, textColor=THEME["gold"]),
    }


def format_inline(text: str) -> str:
    """Escape text for a Paragraph and turn markdown emphasis into reportlab tags."""
    out = escape(text.strip())
    out = re.sub(r"\[([^\]]+)\]\([^)]+\)", r"\1", out)
    out = re.sub(r"`([^`]+)`", f'<font name="Courier" color="{ACCENT_HEX}">\\1</font>', out)
    out = re.sub(r"\*\*(.+?)\*\*", r"<b>\1</b>", out)
    out = re.sub(r"(?<!\w)__(.+?)__(?!\w)", r"<b>\1</b>", out)
    out = re.sub(r"(?<![\w*])\*(?!\s)(.+?)(?<!\s)\*(?![\w*])", r"<i>\1</i>", out)
    out = re.sub(r"(?<!\w)_(?!\s)(.+?)(?<!\s)_(?!\w)", r"<i>\1</i>", out)
    return out


def _paragraph(text: str, style: ParagraphStyle, prefix: str = "") -> Paragraph:
    """Paragraph for one markdown line; markup reportlab rejects falls back to escaped text."""
    try:
        return Paragraph(prefix + format_inline(text), style)
    except ValueError:
        return Paragraph(prefix + escape(text.strip()), style)


# ---------------------------------------------------------------------------
# Markdown blocks
# ---------------------------------------------------------------------------


def _heading_level(line: str) -> int:
    match = _HEADING_RE.match(line)
    return len(match.group(1)) if match else 0


def strip_follow_up_section(markdown: str) -> str:
    """Drop a trailing follow-up questions section; those belong in the chat.

    A follow-up heading only ends the report when no later heading of the same
    or a higher level starts another section.
    """
    lines = markdown.replace("\r\n", "\n").split("\n")
    levels = [_heading_level(line.strip()) for line in lines]
    for index, line in enumerate(lines):
        level = levels[index]
        if not level or not _FOLLOW_UP_HEADING_RE.match(line.strip()):
            continue
        if not any(0 < later <= level for later in levels[index + 1:]):
            lines = lines[:index]
            break
    while lines and (not lines[-1].strip() or _FOLLOW_UP_LINE_RE.match(lines[-1].strip())):
        lines.pop()
    return "\n".join(lines)


def split_table_row(line: str) -> list[str]:
    cells = line.strip().strip("|").split("|")
    return [cell.strip() for cell in cells]


def is_table_block(lines: list[str]) -> bool:
    return len(lines) >= 2 and bool(_TABLE_SEPARATOR_RE.match(lines[1])) and "-" in lines[1]


def _table_flowable(lines: list[str], styles: dict[str, ParagraphStyle], width: float) -> Table:
    header = split_table_row(lines[0])
    body = [split_table_row(line) for line in lines[2:]]
    columns = max([len(header), *(len(row) for row in body)])
    grid = [row + [""] * (columns - len(row)) for row in [header, *body]]

    weights = [max(3, *(len(row[i]) for row in grid)) for i in range(columns)]
    total = sum(weights)
    col_widths = [width * w / total for w in weights]

    data = [[_paragraph(cell.upper(), styles["header_cell"]) for cell in grid[0]]]
    data += [[_paragraph(cell, styles["cell"]) for cell in row] for row in grid[1:]]

    table = Table(data, colWidths=col_widths, repeatRows=1, hAlign="LEFT")
    table.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, 0), THEME["table_header"]),
        ("ROWBACKGROUNDS", (0, 1), (-1, -1), [THEME["row_odd"], THEME["row_even"]]),
        ("LINEBELOW", (0, 0), (-1, 0), 1.2, THEME["accent"]),
        ("LINEBELOW", (0, 1), (-1, -1), 0.4, THEME["rule"]),
        ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ("LEFTPADDING", (0, 0), (-1, -1), 6),
        ("RIGHTPADDING", (0, 0), (-1, -1), 6),
        ("TOPPADDING", (0, 0), (-1, -1), 4),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 4),
    ]))
    return table


def markdown_to_story(markdown: str, styles: dict[str, ParagraphStyle], width: float) -> list:
    story: list = []
    lines = strip_follow_up_section(markdown).split("\n")
    in_code = False
    code_buf: list[str] = []
    i = 0
    while i < len(lines):
        line = lines[i].rstrip()
        stripped = line.strip()
        i += 1

        if stripped.startswith("```"):
            if in_code:
                story.append(Preformatted("\n".join(code_buf), styles["code"]))
                code_buf = []
            in_code = not in_code
            continue
        if in_code:
            code_buf.append(line)
            continue

        if not stripped:
            story.append(Spacer(1, 4))
            continue

        if stripped.startswith("|"):
            block = [stripped]
            while i < len(lines) and lines[i].strip().startswith("|"):
                block.append(lines[i].strip())
                i += 1
            if is_table_block(block):
                story.append(Spacer(1, 4))
                story.append(_table_flowable(block, styles, width))
                story.append(Spacer(1, 8))
            else:
                story.extend(_paragraph(row, styles["body"]) for row in block)
            continue

        if _RULE_RE.match(stripped):
            story.append(HRFlowable(width="100%", thickness=0.8, color=THEME["rule"],
                                    spaceBefore=8, spaceAfter=8))
            continue

        heading = _HEADING_RE.match(stripped)
        if heading:
            level = len(heading.group(1))
            story.append(_paragraph(heading.group(2), styles[f"h{min(level, 4)}"]))
            if level == 1:
                story.append(HRFlowable(width="100%", thickness=1, color=THEME["gold"],
                                        spaceBefore=0, spaceAfter=6))
            continue

        if stripped.startswith(">"):
            story.append(_paragraph(stripped.lstrip(">"), styles["quote"]))
            continue

        if _BULLET_RE.match(line):
            marker = f'<font color="{ACCENT_HEX}"><b>›</b></font>'
            story.append(_paragraph(_BULLET_RE.sub("", line), styles["bullet"], f"{marker}&nbsp;&nbsp;"))
            continue

        numbered = _NUMBERED_RE.match(line)
        if numbered:
            marker = f'<font color="{GOLD_HEX}"><b>{numbered.group(1)}.</b></font>'
            story.append(_paragraph(_NUMBERED_RE.sub("", line), styles["bullet"], f"{marker}&nbsp;"))
            continue

        story.append(_paragraph(stripped, styles["body"]))

    if in_code and code_buf:
        story.append(Preformatted("\n".join(code_buf), styles["code"]))
    return story


def _header_flowables(
    title: str, subtitle: str, request_text: str, generated_at: str,
    styles: dict[str, ParagraphStyle], width: float, request_label: str,
) -> list:
    header = Table(
        [
            [Paragraph(escape(REPORT_LABEL.upper()), styles["label"])],
            [Paragraph(escape(title), styles["title"])],
            [Paragraph(escape(f"{subtitle} · {generated_at}"), styles["meta"])],
        ],
        colWidths=[width],
    )
    header.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, -1), THEME["panel"]),
        ("LINEABOVE", (0, 0), (-1, 0), 3, THEME["accent"]),
        ("LEFTPADDING", (0, 0), (-1, -1), 16),
        ("RIGHTPADDING", (0, 0), (-1, -1), 16),
        ("TOPPADDING", (0, 0), (-1, 0), 14),
        ("BOTTOMPADDING", (0, -1), (-1, -1), 14),
    ]))
    request = Table(
        [
            [Paragraph(escape(request_label.upper()), styles["request_label"])],
            [Paragraph(escape(request_text or "-"), styles["request_text"])],
        ],
        colWidths=[width],
    )
    request.setStyle(TableStyle([
        ("BACKGROUND", (0, 0), (-1, -1), THEME["request"]),
        ("LINEBEFORE", (0, 0), (0, -1), 3, THEME["gold"]),
        ("LEFTPADDING", (0, 0), (-1, -1), 12),
        ("TOPPADDING", (0, 0), (-1, 0), 8),
        ("BOTTOMPADDING", (0, -1), (-1, -1), 8),
    ]))
    return [header, Spacer(1, 10), request, Spacer(1, 16)]


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def render_report(
    title: str,
    subtitle: str,
    request_text: str,
    markdown: str,
    generated_at: str,
    *,
    request_label: str = DEFAULT_REQUEST_LABEL,
    page_compression: int = 1,
) -> tuple[bytes, list[str]]:
    """Render the report and return the PDF bytes with the footer label of each page.

    Output is deterministic for a given input: document metadata timestamps
    and ids are fixed through reportlab's ``invariant`` mode.
    """
    buffer = io.BytesIO()
    doc = SimpleDocTemplate(
        buffer,
        pagesize=A4,
        leftMargin=MARGIN_X,
        rightMargin=MARGIN_X,
        topMargin=MARGIN_TOP,
        bottomMargin=MARGIN_BOTTOM,
        title=title,
        author="Subintel AI Agent",
        invariant=1,
        pageCompression=page_compression,
    )
    styles = _create_styles()
    story = _header_flowables(title, subtitle, request_text, generated_at, styles, doc.width, request_label)
    story += markdown_to_story(markdown, styles, doc.width)

    footers: list[str] = []
    doc.build(
        story,
        onFirstPage=_draw_page,
        onLaterPages=_draw_page,
        canvasmaker=partial(NumberedCanvas, footer_sink=footers),
    )
    return buffer.getvalue(), footers


def build_report_pdf_buffer(
    title: str, subtitle: str, request_text: str, markdown: str, generated_at: str,
) -> bytes:
    pdf, _ = render_report(title, subtitle, request_text, markdown, generated_at)
    return pdf
