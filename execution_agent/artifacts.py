"""Screenshot artifacts written under a job's report folder."""

from __future__ import annotations

import logging
import os
import re
from typing import Optional

from PIL import Image

logger = logging.getLogger(__name__)

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]+")


def resize_image(img, max_long=2048, max_short=768):
    """Resize the image maintaining aspect ratio"""
    original_width, original_height = img.size
    aspect_ratio = original_width / original_height

    if aspect_ratio > 1:
        new_width = min(original_width, max_long)
        new_height = min(int(new_width / aspect_ratio), max_short)
        new_width = int(new_height * aspect_ratio)
    else:
        new_height = min(original_height, max_long)
        new_width = min(int(new_height * aspect_ratio), max_short)
        new_height = int(new_width / aspect_ratio)

    return img.resize((max(1, new_width), max(1, new_height)))


def format_image(image_path: str, output_path: str) -> str:
    """Flatten ``image_path`` onto white and save a downscaled copy."""

    with Image.open(image_path) as img:
        rgba = img.convert("RGBA")
        flattened = Image.new("RGB", rgba.size, "white")
        flattened.paste(rgba, mask=rgba.getchannel("A"))
        resize_image(flattened).save(output_path)
    return output_path


def safe_name(name: str) -> str:
    cleaned = _UNSAFE_NAME.sub("_", name).strip("._")
    return cleaned or "artifact"


class ArtifactWriter:
    """Writes screenshots for one job into ``<reports>/<job_id>/``."""

    def __init__(self, reports_folder: str, job_id: str) -> None:
        self.folder = os.path.join(reports_folder, safe_name(job_id))

    def path_for(self, name: str, extension: str) -> str:
        os.makedirs(self.folder, exist_ok=True)
        return os.path.join(self.folder, f"{safe_name(name)}.{extension}")

    def capture(self, driver, name: str, full_page: bool = False) -> str:
        """Save a PNG from ``driver`` plus a JPEG preview; returns the PNG path."""

        png_path = self.path_for(name, "png")
        driver.screenshot(png_path, full_page=full_page)
        self.write_preview(png_path)
        return png_path

    def write_preview(self, png_path: str) -> Optional[str]:
        jpg_path = os.path.splitext(png_path)[0] + ".jpg"
        try:
            return format_image(png_path, jpg_path)
        except OSError as exc:
            logger.warning("Could not create preview for %s: %s", png_path, exc)
            return None
