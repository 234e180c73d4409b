"""Font discovery, loading and text drawing helpers."""

from __future__ import annotations

import hashlib
import logging
import os
import threading
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .config import ARTIFACT_DIR, MAX_TEMPLATE_BYTES, RESOURCE_FETCH_TIMEOUT_MS
from .errors import RenderError, ResourceLoadError
from .net import fetch_bytes

LOGGER = logging.getLogger(__name__)

# sfnt version tags: TrueType outlines, Apple TrueType, CFF outlines, collections.
FONT_MAGIC = (b"\x00\x01\x00\x00", b"true", b"OTTO", b"ttcf")

SYSTEM_REGULAR_CANDIDATES = [
    "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "/usr/share/fonts/dejavu/DejaVuSans.ttf",
    "/Library/Fonts/DejaVuSans.ttf",
]
SYSTEM_BOLD_CANDIDATES = [
    "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
    "/usr/share/fonts/dejavu/DejaVuSans-Bold.ttf",
    "/Library/Fonts/DejaVuSans-Bold.ttf",
]


@dataclass(frozen=True)
class FontAsset:
    """TrueType files shared by every render of a job; no path means the core Helvetica font."""

    regular_path: Optional[str] = None
    bold_path: Optional[str] = None

    @property
    def is_core(self) -> bool:
        return self.regular_path is None


def find_font_path(env_var: str, candidates: List[str]) -> Optional[str]:
    override = os.getenv(env_var)
    if override and os.path.exists(override):
        return override

    for path in candidates:
        if os.path.exists(path):
            return path
    return None


def check_font_file(path: str) -> str:
    try:
        with open(path, "rb") as handle:
            header = handle.read(4)
    except OSError as exc:
        raise ResourceLoadError(f"Font file {path} is not readable: {exc}") from exc
    if header not in FONT_MAGIC:
        raise ResourceLoadError(f"Font file {path} is not a TrueType/OpenType font.")
    return path


def _download_font(url: str, timeout_s: float, cache_dir: str) -> str:
    data = fetch_bytes(url, timeout_s, MAX_TEMPLATE_BYTES)
    if data[:4] not in FONT_MAGIC:
        raise ResourceLoadError(f"{url} did not return a TrueType/OpenType font.")

    digest = hashlib.sha1(data).hexdigest()
    path = os.path.join(cache_dir, f"font-{digest}.ttf")
    if not os.path.exists(path):
        try:
            os.makedirs(cache_dir, exist_ok=True)
            tmp_path = f"{path}.{os.getpid()}.tmp"
            with open(tmp_path, "wb") as handle:
                handle.write(data)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise ResourceLoadError(f"Could not cache font from {url}: {exc}") from exc
    return path


def load_font(
    timeout_s: float = RESOURCE_FETCH_TIMEOUT_MS / 1000.0,
    cache_dir: str = ARTIFACT_DIR,
) -> FontAsset:
    """Resolve the font for a job.

    ``CERTGEN_FONT_URL`` wins over ``CERTGEN_FONT_PATH``; an explicitly
    configured font that cannot be loaded is an error. Without any
    configuration the system DejaVu fonts are used when present, otherwise
    the Latin-1 core font.
    """
    url = os.getenv("CERTGEN_FONT_URL")
    if url:
        return FontAsset(regular_path=_download_font(url, timeout_s, cache_dir))

    override = os.getenv("CERTGEN_FONT_PATH")
    if override and not os.path.exists(override):
        raise ResourceLoadError(f"CERTGEN_FONT_PATH points to a missing file: {override}")

    regular_path = find_font_path("CERTGEN_FONT_PATH", SYSTEM_REGULAR_CANDIDATES)
    if not regular_path:
        LOGGER.info("No TrueType font found; falling back to the core Helvetica font")
        return FontAsset()

    bold_path = find_font_path("CERTGEN_FONT_BOLD_PATH", SYSTEM_BOLD_CANDIDATES)
    if bold_path:
        try:
            check_font_file(bold_path)
        except ResourceLoadError:
            LOGGER.warning("Ignoring unusable bold font %s", bold_path)
            bold_path = None
    return FontAsset(regular_path=check_font_file(regular_path), bold_path=bold_path)


FONT_INIT_LOCK = threading.Lock()


class FontManager:
    FAMILY = "CertificateFont"
    CORE_FAMILY = "helvetica"

    def __init__(self, pdf, font: FontAsset) -> None:
        self.pdf = pdf
        if font.is_core:
            self.family = self.CORE_FAMILY
            self.has_bold = True
            return

        self.family = self.FAMILY
        self.has_bold = False
        try:
            with FONT_INIT_LOCK:
                self.pdf.add_font(self.FAMILY, "", font.regular_path)
                if font.bold_path:
                    self.pdf.add_font(self.FAMILY, "B", font.bold_path)
                    self.has_bold = True
        except Exception as exc:
            raise RenderError(f"Font embedding failed: {exc}") from exc

    def draw_text(
        self,
        x: float,
        y: float,
        text: str,
        size: float,
        color: Tuple[int, int, int],
        bold: bool = False,
    ) -> None:
        self.pdf.set_text_color(*color)
        style = "B" if bold and self.has_bold else ""
        self.pdf.set_font(self.family, style, size)
        if bold and not self.has_bold:
            self.pdf.text(x, y, text)
            self.pdf.text(x + 0.4, y, text)
        else:
            self.pdf.text(x, y, text)
