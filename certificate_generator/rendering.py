"""Certificate PDF rendering logic."""

from __future__ import annotations

import io
from typing import Optional, Sequence

from fpdf import FPDF  # type: ignore
from pypdf import PdfReader, PdfWriter, Transformation

from .config import FALLBACK_CANVAS_HEIGHT, FALLBACK_CANVAS_WIDTH
from .errors import RenderError
from .fonts import FontAsset, FontManager
from .formatting import sanitize_text
from .models import FieldPlacement, Row, TemplateAsset, TemplateKind


class CertificateRenderer:
    def __init__(
        self,
        row: Row,
        fields: Sequence[FieldPlacement],
        template: Optional[TemplateAsset],
        font: FontAsset,
    ) -> None:
        self.row = row
        self.fields = fields
        self.template = template
        if template is not None:
            self.width, self.height = template.width, template.height
        else:
            self.width, self.height = float(FALLBACK_CANVAS_WIDTH), float(FALLBACK_CANVAS_HEIGHT)

        self.pdf = FPDF(orientation="P", unit="pt", format=(self.width, self.height))
        self.pdf.set_auto_page_break(False)
        self.pdf.set_margins(0, 0, 0)
        self.pdf.add_page()

        self.fonts = FontManager(self.pdf, font)

    def _draw_background(self) -> None:
        if self.template is None or self.template.kind is not TemplateKind.IMAGE:
            return
        try:
            self.pdf.image(io.BytesIO(self.template.data), x=0, y=0, w=self.width, h=self.height)
        except Exception as exc:
            raise RenderError(f"Template image could not be embedded: {exc}") from exc

    def _draw_fields(self) -> None:
        for placement in self.fields:
            value = sanitize_text(self.row.get(placement.field_name, "")).strip()
            if not value:
                continue
            # Placements give the top of the text box; fpdf positions the baseline.
            try:
                self.fonts.draw_text(
                    placement.x,
                    placement.y + placement.font_size_px,
                    value,
                    placement.font_size_px,
                    placement.rgb,
                    bold=placement.bold,
                )
            except Exception as exc:
                raise RenderError(f"Could not draw field {placement.field_name!r}: {exc}") from exc

    def _serialize(self) -> bytes:
        pdf_blob = self.pdf.output()
        if isinstance(pdf_blob, (bytes, bytearray)):
            return bytes(pdf_blob)
        if isinstance(pdf_blob, str):
            try:
                return pdf_blob.encode("latin-1")
            except UnicodeEncodeError as exc:
                raise RenderError(
                    "PDF serialization failed due to non-Latin-1 content. "
                    "Check the font configuration (CERTGEN_FONT_PATH/CERTGEN_FONT_BOLD_PATH)."
                ) from exc
        raise RenderError(f"Unexpected PDF output type: {type(pdf_blob).__name__}")

    def _merge_onto_template(self, overlay: bytes) -> bytes:
        try:
            page = PdfReader(io.BytesIO(self.template.data)).pages[0]
            overlay_page = PdfReader(io.BytesIO(overlay)).pages[0]
            box = page.mediabox
            page.merge_transformed_page(
                overlay_page,
                Transformation().translate(float(box.left), float(box.bottom)),
            )
            writer = PdfWriter()
            writer.add_page(page)
            buffer = io.BytesIO()
            writer.write(buffer)
        except Exception as exc:
            raise RenderError(f"Could not merge text onto the template PDF: {exc}") from exc
        return buffer.getvalue()

    def render(self) -> bytes:
        self._draw_background()
        self._draw_fields()
        pdf_bytes = self._serialize()
        if self.template is not None and self.template.kind is TemplateKind.DOCUMENT:
            return self._merge_onto_template(pdf_bytes)
        return pdf_bytes


def render_certificate(
    row: Row,
    fields: Sequence[FieldPlacement],
    template: Optional[TemplateAsset] = None,
    font: Optional[FontAsset] = None,
) -> bytes:
    return CertificateRenderer(row, fields, template, font or FontAsset()).render()
