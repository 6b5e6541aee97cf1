"""
Image handling for screenshot-style tool results.

A screenshot is kept three ways: a file on disk (capped size), a small JSON
meta record that becomes the tool's textual result, and, when it fits after
downscaling and recompression, an inline data URL that is attached to the
next request only.
"""

import asyncio
import base64
import binascii
import re
import uuid
from dataclasses import dataclass, field
from io import BytesIO
from pathlib import Path
from typing import Any

import structlog
from PIL import Image, UnidentifiedImageError

logger = structlog.get_logger()

_DATA_URL_RE = re.compile(r"^data:([^;]+);base64,(.*)$", re.IGNORECASE | re.DOTALL)


@dataclass
class ImageConfig:
    """Limits applied to tool images."""

    max_dim: int = 768
    max_bytes: int = 350_000
    downscale: bool = True
    text_max_chars: int = 4_000
    link_max: int = 20
    image_dir: Path = field(default_factory=lambda: Path("tool-images"))
    request_max_chars: int = 560_000


@dataclass
class ModelImage:
    """An image small enough to inline into the next model request."""

    data_url: str
    mime: str
    bytes: int
    label: str
    width: int | None = None
    height: int | None = None
    filename: str | None = None

    @property
    def base64_data(self) -> str:
        return self.data_url.split("base64,", 1)[-1]


def is_base64_data_url(value: str) -> bool:
    return bool(_DATA_URL_RE.match(value or ""))


def normalize_base64_input(raw: str, fallback_mime: str = "image/png") -> tuple[str, str]:
    """Split a data URL into (base64, mime); bare base64 keeps the fallback mime."""
    match = _DATA_URL_RE.match(raw or "")
    if match:
        return match.group(2), match.group(1) or fallback_mime
    return raw or "", fallback_mime


def clamp_string(value: str, limit: int) -> str:
    if len(value) <= limit:
        return value
    return f"{value[:limit]}… (truncated)"


def clamp_tool_text(value: Any, limit: int) -> tuple[str | None, bool]:
    """Trim page text to ``limit`` characters. Returns (text, truncated)."""
    raw = value.strip() if isinstance(value, str) else ""
    if not raw:
        return None, False
    if len(raw) <= limit:
        return raw, False
    return f"{raw[:limit]}...", True


def clamp_tool_links(value: Any, limit: int) -> tuple[list[dict[str, Any]] | None, int, bool]:
    """Keep the first ``limit`` links. Returns (links, total, truncated)."""
    if not isinstance(value, list):
        return None, 0, False
    links = []
    for entry in value[:limit]:
        entry = entry if isinstance(entry, dict) else {}
        text = entry.get("text") if isinstance(entry.get("text"), str) else ""
        href = entry.get("href") if isinstance(entry.get("href"), str) else None
        links.append({"text": clamp_string(text, 200), "href": href})
    return links, len(value), len(value) > limit


def _ext_for_mime(mime: str) -> str:
    m = mime.lower()
    if "jpeg" in m or "jpg" in m:
        return "jpg"
    if "webp" in m:
        return "webp"
    if "gif" in m:
        return "gif"
    return "png"


def _resize_to_max_dim(img: Image.Image, max_dim: int) -> Image.Image:
    if not max_dim or (img.width <= max_dim and img.height <= max_dim):
        return img
    scale = max_dim / max(img.width, img.height)
    size = (max(1, int(img.width * scale)), max(1, int(img.height * scale)))
    return img.resize(size, Image.Resampling.LANCZOS)


def _encode(img: Image.Image, fmt: str, quality: int | None = None) -> bytes:
    buf = BytesIO()
    if fmt == "JPEG":
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        img.save(buf, format="JPEG", quality=quality or 80)
    else:
        img.save(buf, format=fmt)
    return buf.getvalue()


class ToolImageProcessor:
    """Downscales, stores and inlines screenshot images from tools."""

    def __init__(self, config: ImageConfig | None = None):
        self.config = config or ImageConfig()

    def _decode(self, raw: bytes) -> Image.Image | None:
        if not raw:
            return None
        try:
            img = Image.open(BytesIO(raw))
            img.load()
        except (UnidentifiedImageError, OSError) as e:
            logger.warning("Could not decode tool image", error=str(e))
            return None
        if img.width == 0 or img.height == 0:
            return None
        return img

    def _encode_for_disk(self, img: Image.Image | None, raw: bytes, mime: str) -> tuple[bytes, str]:
        """PNG by default; JPEG when the PNG is over the byte cap and JPEG is smaller."""
        if img is None:
            return raw, mime
        png = _encode(img, "PNG")
        if self.config.max_bytes > 0 and len(png) > self.config.max_bytes:
            jpg = _encode(img, "JPEG", 80)
            if len(jpg) < len(png):
                return jpg, "image/jpeg"
        return png, "image/png"

    def build_model_image(
        self,
        img: Image.Image | None,
        encoded: bytes,
        mime: str,
        label: str,
        filename: str | None = None,
    ) -> ModelImage | None:
        """Produce an inline image within the byte and request-size limits, or None."""
        max_bytes = self.config.max_bytes
        if max_bytes <= 0:
            return None

        width = height = None
        buffer, out_mime = encoded, mime

        if img is not None:
            width, height = img.width, img.height
            working = img
            model_buffer = _encode(working, "JPEG", 70)
            if len(model_buffer) > max_bytes and self.config.max_dim > 0 and self.config.downscale:
                scale = max(0.25, (max_bytes / len(model_buffer)) ** 0.5)
                target = max(64, int(max(width, height) * scale))
                working = _resize_to_max_dim(working, target)
                width, height = working.width, working.height
                model_buffer = _encode(working, "JPEG", 60)
            if len(model_buffer) <= max_bytes:
                buffer, out_mime = model_buffer, "image/jpeg"

        if not buffer or len(buffer) > max_bytes:
            return None

        data_url = f"data:{out_mime};base64,{base64.b64encode(buffer).decode('ascii')}"
        if len(data_url) > self.config.request_max_chars:
            return None

        return ModelImage(
            data_url=data_url,
            mime=out_mime,
            bytes=len(buffer),
            label=label,
            width=width,
            height=height,
            filename=filename,
        )

    def _write_file(self, buffer: bytes, mime: str, label: str) -> str | None:
        try:
            self.config.image_dir.mkdir(parents=True, exist_ok=True)
            path = self.config.image_dir / f"{label}-{uuid.uuid4()}.{_ext_for_mime(mime)}"
            path.write_bytes(buffer)
            return str(path)
        except OSError as e:
            logger.warning("Failed to write tool image", error=str(e))
            return None

    def _process_sync(self, tool_name: str, data: dict[str, Any]) -> tuple[dict[str, Any], ModelImage | None]:
        fallback_mime = data.get("mime") if isinstance(data.get("mime"), str) and data["mime"].strip() else "image/png"
        raw_b64 = data.get("data") if isinstance(data.get("data"), str) else ""
        b64, mime = normalize_base64_input(raw_b64, fallback_mime)
        try:
            raw = base64.b64decode(b64 or "", validate=False)
        except (binascii.Error, ValueError):
            raw = b""

        img = self._decode(raw)
        width = height = None
        if img is not None:
            if self.config.downscale and self.config.max_dim > 0:
                img = _resize_to_max_dim(img, self.config.max_dim)
            width, height = img.width, img.height

        encoded, encoded_mime = self._encode_for_disk(img, raw, mime)
        path = self._write_file(encoded, encoded_mime, tool_name)

        is_visit = tool_name == "visit_url"
        meta: dict[str, Any] = {
            "ok": True,
            "kind": "visit_url" if is_visit else "screenshot",
            "path": path,
            "mime": encoded_mime,
            "bytes": len(encoded),
            "width": width,
            "height": height,
        }
        if is_visit:
            url = data.get("url")
            if isinstance(url, str) and url.strip():
                meta["url"] = url.strip()
            text, text_truncated = clamp_tool_text(data.get("text"), self.config.text_max_chars)
            if text:
                meta["text"] = text
            if text_truncated:
                meta["text_truncated"] = True
            links, total, links_truncated = clamp_tool_links(data.get("links"), self.config.link_max)
            if links:
                meta["links"] = links
            if total:
                meta["link_count"] = total
            if links_truncated:
                meta["links_truncated"] = True

        label = f"Screenshot of {meta.get('url') or 'visited page'}" if is_visit else "Screenshot from preview"
        filename = data.get("filename") if isinstance(data.get("filename"), str) else None
        image = self.build_model_image(img, encoded, encoded_mime, label, filename)
        return meta, image

    async def process(self, tool_name: str, data: dict[str, Any]) -> tuple[dict[str, Any], ModelImage | None]:
        """Store a screenshot and return (meta, inline image or None)."""
        return await asyncio.to_thread(self._process_sync, tool_name, data)
