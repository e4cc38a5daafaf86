"""Image handling for step prompts and generated outputs."""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import List, Optional, Tuple, Union

from pydantic import BaseModel

from .constants import IMAGE_MARKER, REASONING_END, REASONING_START, UPLOADS_URL_PREFIX
from .contracts import ImagePart, MultipartContent, TextContent, TextPart

logger = logging.getLogger(__name__)

_IMAGE_PATTERN = re.compile(r"!\[([^\]]*)\]\(([^)]+)\)")
_REASONING_PATTERN = re.compile(
    re.escape(REASONING_START) + r"(.*?)" + re.escape(REASONING_END), re.DOTALL
)


class GeneratedImage(BaseModel):
    """File written by a backend that produced an image instead of text."""

    filename: str
    mimetype: str
    size: int
    path: str


def sniff_media_type(data: bytes) -> str:
    """Detect an image media type from its leading magic bytes."""
    if data[:2] == b"\xff\xd8":
        return "image/jpeg"
    if data[:2] == b"\x89\x50":
        return "image/png"
    if data[:2] == b"\x47\x49":
        return "image/gif"
    return "image/png"


def extension_for(media_type: str) -> str:
    return {"image/jpeg": "jpg", "image/gif": "gif"}.get(media_type, "png")


def _resolve_upload(reference: str, uploads_dir: Path) -> Optional[Path]:
    if not reference.startswith(UPLOADS_URL_PREFIX):
        return None
    relative = reference[len(UPLOADS_URL_PREFIX):]
    root = uploads_dir.resolve()
    candidate = (root / relative).resolve()
    if root not in candidate.parents:
        logger.warning(f"Ignoring image reference outside uploads: {reference}")
        return None
    return candidate


def extract_images(text: str, uploads_dir: Path) -> Tuple[str, List[ImagePart]]:
    """Pull locally stored markdown images out of ``text``.

    Only references under ``/uploads/`` that resolve to readable files are
    extracted; everything else stays in the text untouched.
    """
    images: List[ImagePart] = []
    remaining = text
    for match in _IMAGE_PATTERN.finditer(text):
        path = _resolve_upload(match.group(2), Path(uploads_dir))
        if path is None or not path.is_file():
            continue
        try:
            data = path.read_bytes()
        except OSError as exc:
            logger.error(f"Failed to read image {path}: {exc}")
            continue
        images.append(ImagePart(data=data, media_type=sniff_media_type(data)))
        remaining = remaining.replace(match.group(0), "", 1)
    return remaining.strip() if images else text, images


def build_message_content(
    prompt: str, uploads_dir: Path
) -> Union[TextContent, MultipartContent]:
    """Plain text content, or multipart content when the prompt embeds images."""
    text, images = extract_images(prompt, uploads_dir)
    if not images:
        return TextContent(text=prompt)

    parts: List[Union[TextPart, ImagePart]] = []
    if text.strip():
        parts.append(TextPart(text=text))
    parts.extend(images)
    return MultipartContent(parts=parts)


def save_generated_image(data: bytes, uploads_dir: Path, filename: str) -> str:
    """Write image bytes below ``uploads_dir`` and return the marker string."""
    directory = Path(uploads_dir)
    directory.mkdir(parents=True, exist_ok=True)
    media_type = sniff_media_type(data)
    target = directory / f"{filename}.{extension_for(media_type)}"
    target.write_bytes(data)
    info = GeneratedImage(
        filename=target.name, mimetype=media_type, size=len(data), path=str(target)
    )
    return IMAGE_MARKER + info.model_dump_json()


def split_reasoning(text: str) -> Tuple[str, str]:
    """Separate ``[REASONING]`` sections from the visible text."""
    reasoning = "".join(_REASONING_PATTERN.findall(text))
    return reasoning, _REASONING_PATTERN.sub("", text)


def parse_image_marker(text: str) -> Optional[GeneratedImage]:
    """Return the generated image described by ``text``, if it is a marker."""
    _, visible = split_reasoning(text)
    visible = visible.strip()
    if not visible.startswith(IMAGE_MARKER):
        return None
    try:
        return GeneratedImage.model_validate(json.loads(visible[len(IMAGE_MARKER):]))
    except ValueError:
        logger.warning("Malformed generated image marker")
        return None
