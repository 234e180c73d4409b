"""Template reference parsing and loading."""

from __future__ import annotations

import base64
import binascii
import io
import logging
import re
from typing import Optional

from PIL import Image
from pypdf import PdfReader

from .config import MAX_TEMPLATE_BYTES, RESOURCE_FETCH_TIMEOUT_MS
from .errors import InputError, ResourceLoadError
from .models import TemplateAsset, TemplateKind
from .net import fetch_bytes

LOGGER = logging.getLogger(__name__)

_DATA_URL_RE = re.compile(r"^data:(?P<mime>[^;,]*)(?P<params>(?:;[^;,]*)*),(?P<payload>.*)$", re.DOTALL)
PDF_MAGIC = b"%PDF"


def check_template_ref(raw: object) -> Optional[str]:
    """Validate the shape of a template reference at submission time."""
    if raw is None:
        return None
    if not isinstance(raw, str):
        raise InputError("'templateRef' must be a string.")
    ref = raw.strip()
    if not ref:
        return None
    if ref.startswith("data:"):
        match = _DATA_URL_RE.match(ref)
        if match is None or ";base64" not in match.group("params"):
            raise InputError("'templateRef' data URLs must be base64 encoded.")
        return ref
    if ref.startswith(("http://", "https://")):
        return ref
    raise InputError("'templateRef' must be a data: URL or an http(s) URL.")


def decode_data_url(ref: str) -> bytes:
    match = _DATA_URL_RE.match(ref)
    if match is None or ";base64" not in match.group("params"):
        raise ResourceLoadError("Template data URL is malformed.")
    try:
        return base64.b64decode(match.group("payload"), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ResourceLoadError(f"Template data URL is not valid base64: {exc}") from exc


def inspect_template(data: bytes) -> TemplateAsset:
    """Classify template bytes and read their intrinsic canvas size."""
    if not data:
        raise ResourceLoadError("Template is empty.")

    if data.startswith(PDF_MAGIC):
        try:
            reader = PdfReader(io.BytesIO(data))
            if not reader.pages:
                raise ResourceLoadError("Template PDF has no pages.")
            page = reader.pages[0]
            width = float(page.mediabox.width)
            height = float(page.mediabox.height)
        except ResourceLoadError:
            raise
        except Exception as exc:
            raise ResourceLoadError(f"Template PDF could not be read: {exc}") from exc
        return TemplateAsset(kind=TemplateKind.DOCUMENT, data=data, width=width, height=height)

    try:
        with Image.open(io.BytesIO(data)) as image:
            image.load()
            width, height = image.size
    except Exception as exc:
        raise ResourceLoadError(f"Template image could not be decoded: {exc}") from exc
    if width <= 0 or height <= 0:
        raise ResourceLoadError("Template image has no area.")
    return TemplateAsset(kind=TemplateKind.IMAGE, data=data, width=float(width), height=float(height))


def load_template(
    ref: Optional[str],
    timeout_s: float = RESOURCE_FETCH_TIMEOUT_MS / 1000.0,
    max_bytes: int = MAX_TEMPLATE_BYTES,
) -> Optional[TemplateAsset]:
    if not ref:
        return None
    if ref.startswith("data:"):
        data = decode_data_url(ref)
        if len(data) > max_bytes:
            raise ResourceLoadError(f"Template is larger than {max_bytes} bytes.")
    else:
        data = fetch_bytes(ref, timeout_s, max_bytes)

    template = inspect_template(data)
    LOGGER.debug(
        "Loaded %s template %.0fx%.0f (%d bytes)",
        template.kind.value,
        template.width,
        template.height,
        len(data),
    )
    return template
