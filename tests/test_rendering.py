import io
import unittest
from importlib import util as importlib_util
from unittest import mock

FPDF_AVAILABLE = all(importlib_util.find_spec(name) is not None for name in ("fpdf", "pypdf", "PIL"))
if FPDF_AVAILABLE:
    from PIL import Image
    from pypdf import PdfReader, PdfWriter

    import certificate_generator
    from certificate_generator.errors import RenderError
    from certificate_generator.fonts import FontAsset
    from certificate_generator.models import FieldPlacement
    from certificate_generator.rendering import render_certificate
    from certificate_generator.resources import inspect_template


def _page(pdf: bytes):
    reader = PdfReader(io.BytesIO(pdf))
    return reader, reader.pages[0]


@unittest.skipUnless(FPDF_AVAILABLE, "fpdf2/pypdf/Pillow are not installed")
class RenderingTests(unittest.TestCase):
    def setUp(self) -> None:
        self.fields = [FieldPlacement("name", 50, 50, 16)]

    def test_render_certificate_returns_pdf_bytes(self) -> None:
        pdf = render_certificate({"name": "Alice"}, self.fields, None, FontAsset())

        self.assertIsInstance(pdf, bytes)
        self.assertTrue(pdf.startswith(b"%PDF"))

        reader, page = _page(pdf)
        self.assertEqual(len(reader.pages), 1)
        self.assertAlmostEqual(float(page.mediabox.width), 600.0)
        self.assertAlmostEqual(float(page.mediabox.height), 400.0)
        self.assertIn("Alice", page.extract_text())

    def test_text_is_placed_below_top_left_offset(self) -> None:
        pdf = render_certificate({"name": "Alice"}, self.fields, None, FontAsset())
        _, page = _page(pdf)
        positions = []

        def visitor(text, cm, tm, font_dict, font_size) -> None:
            if "Alice" in text:
                positions.append((tm[4] + cm[4], tm[5] + cm[5]))

        page.extract_text(visitor_text=visitor)

        self.assertEqual(len(positions), 1)
        x, y = positions[0]
        self.assertAlmostEqual(x, 50.0, delta=1.0)
        # Baseline sits one font size below the field's top edge: 400 - 50 - 16.
        self.assertAlmostEqual(y, 334.0, delta=1.0)

    def test_empty_values_are_not_drawn(self) -> None:
        fields = self.fields + [FieldPlacement("course", 50, 120, 12)]

        pdf = render_certificate({"name": "Alice", "course": "   "}, fields, None, FontAsset())

        self.assertEqual(_page(pdf)[1].extract_text().strip(), "Alice")

    def test_missing_fields_are_skipped(self) -> None:
        fields = self.fields + [FieldPlacement("course", 50, 120, 12)]

        pdf = render_certificate({"name": "Bob"}, fields, None, FontAsset())

        self.assertEqual(_page(pdf)[1].extract_text().strip(), "Bob")

    def test_rendering_is_repeatable(self) -> None:
        row = {"name": "Alice", "course": "Python"}
        fields = self.fields + [FieldPlacement("course", 50, 120, 12, "336699", bold=True)]

        first = render_certificate(row, fields, None, FontAsset())
        second = render_certificate(row, fields, None, FontAsset())

        self.assertEqual(_page(first)[1].extract_text(), _page(second)[1].extract_text())

    def test_image_template_sets_page_size(self) -> None:
        buffer = io.BytesIO()
        Image.new("RGB", (800, 500), (240, 230, 200)).save(buffer, format="PNG")
        template = inspect_template(buffer.getvalue())

        pdf = render_certificate({"name": "Alice"}, self.fields, template, FontAsset())

        _, page = _page(pdf)
        self.assertAlmostEqual(float(page.mediabox.width), 800.0)
        self.assertAlmostEqual(float(page.mediabox.height), 500.0)
        self.assertIn("Alice", page.extract_text())

    def test_pdf_template_receives_text_overlay(self) -> None:
        writer = PdfWriter()
        writer.add_blank_page(width=700, height=450)
        buffer = io.BytesIO()
        writer.write(buffer)
        template = inspect_template(buffer.getvalue())

        pdf = render_certificate({"name": "Alice"}, self.fields, template, FontAsset())

        reader, page = _page(pdf)
        self.assertEqual(len(reader.pages), 1)
        self.assertAlmostEqual(float(page.mediabox.width), 700.0)
        self.assertAlmostEqual(float(page.mediabox.height), 450.0)
        self.assertIn("Alice", page.extract_text())

    def test_sanitizes_terminal_escapes(self) -> None:
        pdf = render_certificate({"name": "\x1b[1mAlice\x1b[0m"}, self.fields, None, FontAsset())

        self.assertEqual(_page(pdf)[1].extract_text().strip(), "Alice")

    def test_core_font_rejects_text_outside_latin1(self) -> None:
        with self.assertRaises(RenderError):
            render_certificate({"name": "\u03a9mega"}, self.fields, None, FontAsset())

    def test_package_entry_point_uses_given_font(self) -> None:
        font = FontAsset(regular_path="/fonts/Regular.ttf")
        with mock.patch("certificate_generator.rendering.render_certificate", return_value=b"%PDF") as render:
            with mock.patch("certificate_generator.fonts.load_font") as load_font:
                certificate_generator.render_certificate({"name": "Alice"}, self.fields, None, font)

        render.assert_called_once_with({"name": "Alice"}, self.fields, None, font)
        load_font.assert_not_called()

    def test_package_entry_point_resolves_configured_font(self) -> None:
        configured = FontAsset(regular_path="/fonts/Configured.ttf")
        with mock.patch("certificate_generator.rendering.render_certificate", return_value=b"%PDF") as render:
            with mock.patch("certificate_generator.fonts.load_font", return_value=configured):
                certificate_generator.render_certificate({"name": "Alice"}, self.fields)

        render.assert_called_once_with({"name": "Alice"}, self.fields, None, configured)


if __name__ == "__main__":
    unittest.main()
