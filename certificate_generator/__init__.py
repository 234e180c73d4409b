"""Public package API for certificate generation."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Sequence

from .models import FieldPlacement, Row, TemplateAsset

if TYPE_CHECKING:
    from .fonts import FontAsset


def render_certificate(
    row: Row,
    fields: Sequence[FieldPlacement],
    template: Optional[TemplateAsset] = None,
    font: Optional["FontAsset"] = None,
) -> bytes:
    """Render one certificate; without ``font`` the configured job font is resolved like the server does."""
    from .fonts import load_font
    from .rendering import render_certificate as _render_certificate

    if font is None:
        font = load_font()
    return _render_certificate(row, fields, template, font)


def run(host: str = "0.0.0.0", port: int = 5000) -> None:
    from .server import run as _run

    _run(host, port)


__all__ = ["FieldPlacement", "TemplateAsset", "render_certificate", "run"]
