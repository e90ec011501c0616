"""
Document Renderer - final PDF artifact for a paid document.
Uses reportlab, built from the record's {document_type, content, token}.

Content is authored as light HTML (paragraphs, headings, list items, line
breaks) or plain text. Block tags, or blank lines in plain text, become
separate paragraphs; inline markup is dropped.
"""
import io
import re
import html
import logging
from datetime import datetime, timezone
from typing import Dict, Any, List, Tuple

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import mm
from reportlab.lib.enums import TA_CENTER, TA_JUSTIFY
from reportlab.platypus import SimpleDocTemplate, Paragraph, Spacer, HRFlowable

logger = logging.getLogger(__name__)

BRAND_BLUE = (3, 114, 232)   # #0372E8
TEXT_DARK = (40, 40, 40)

_BLOCK_SPLIT = re.compile(r"</(?:p|div|h[1-6]|li)>|<br\s*/?>", re.IGNORECASE)
_HEADING_OPEN = re.compile(r"<h[1-3][^>]*>", re.IGNORECASE)
_LIST_ITEM_OPEN = re.compile(r"<li[^>]*>", re.IGNORECASE)
_TAG = re.compile(r"<[^>]+>")
_BLANK_LINES = re.compile(r"\n\s*\n")


class ArtifactGenerationError(Exception):
    """The PDF could not be produced."""


def generate_document_filename(document: Dict[str, Any]) -> str:
    """{Document_Type}_{TOKEN}.pdf with punctuation removed."""
    doc_type = re.sub(r"[^a-zA-Z0-9\s]", "", document.get("document_type") or "")
    doc_type = re.sub(r"\s+", "_", doc_type.strip()) or "Documento"
    return f"{doc_type}_{document['token']}.pdf"


def split_content_blocks(content: str) -> List[Tuple[str, str]]:
    """Split authored content into (kind, text) blocks: kind is heading, item or text."""
    content = content or ""
    if not _TAG.search(content):
        # Plain text: blank lines separate paragraphs, single line breaks are kept
        paragraphs = (p.strip() for p in _BLANK_LINES.split(content.replace("\r\n", "\n")))
        return [("text", html.unescape(p)) for p in paragraphs if p]

    blocks = []
    for chunk in _BLOCK_SPLIT.split(content):
        if _HEADING_OPEN.search(chunk):
            kind = "heading"
        elif _LIST_ITEM_OPEN.search(chunk):
            kind = "item"
        else:
            kind = "text"
        text = " ".join(html.unescape(_TAG.sub("", chunk)).split())
        if text:
            blocks.append((kind, text))
    return blocks


class DocumentRenderer:
    """Renders the final document PDF (synchronous; call via asyncio.to_thread)."""

    def render(self, document: Dict[str, Any]) -> bytes:
        try:
            return self._generate_pdf(document).getvalue()
        except Exception as e:
            logger.error(f"PDF generation failed for document {document.get('id')}: {e}")
            raise ArtifactGenerationError(str(e)) from e

    def _generate_pdf(self, document: Dict[str, Any]) -> io.BytesIO:
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            rightMargin=20*mm,
            leftMargin=20*mm,
            topMargin=15*mm,
            bottomMargin=25*mm,
            title=document.get("document_type") or "Documento",
        )

        story = []
        styles = getSampleStyleSheet()

        title_style = ParagraphStyle(
            'DocTitle',
            parent=styles['Heading1'],
            fontSize=18,
            textColor=colors.Color(*[c/255 for c in BRAND_BLUE]),
            alignment=TA_CENTER,
            spaceAfter=12,
        )
        heading_style = ParagraphStyle(
            'DocHeading',
            parent=styles['Heading2'],
            fontSize=13,
            textColor=colors.Color(*[c/255 for c in BRAND_BLUE]),
            spaceBefore=10,
            spaceAfter=6,
        )
        body_style = ParagraphStyle(
            'DocBody',
            parent=styles['Normal'],
            fontName='Times-Roman',
            fontSize=12,
            leading=16,
            textColor=colors.Color(*[c/255 for c in TEXT_DARK]),
            alignment=TA_JUSTIFY,
            spaceAfter=6,
        )
        footer_style = ParagraphStyle(
            'Footer',
            parent=styles['Normal'],
            fontSize=8,
            textColor=colors.gray,
            alignment=TA_CENTER,
        )

        story.append(Paragraph(html.escape(document.get("document_type") or "Documento"), title_style))
        story.append(HRFlowable(width="100%", thickness=0.3, color=colors.lightgrey))
        story.append(Spacer(1, 12))

        blocks = split_content_blocks(document.get("content") or "")
        if not blocks:
            blocks = [("text", "Contenido del documento no disponible.")]
        for kind, text in blocks:
            if kind == "heading":
                story.append(Paragraph(html.escape(text), heading_style))
            elif kind == "item":
                story.append(Paragraph(f"• {html.escape(text)}", body_style))
            else:
                story.append(Paragraph(html.escape(text).replace("\n", "<br/>"), body_style))

        story.append(Spacer(1, 24))
        story.append(HRFlowable(width="100%", thickness=0.3, color=colors.lightgrey))
        story.append(Paragraph(
            f"Token: {html.escape(document['token'])} | "
            f"{datetime.now(timezone.utc).strftime('%d %B %Y %H:%M UTC')}",
            footer_style,
        ))

        doc.build(story)
        buffer.seek(0)
        return buffer


document_renderer = DocumentRenderer()
