"""Utility functions for the book workflow."""

import io
import json
import re
from datetime import datetime, timezone
from typing import Any

from PIL import Image


ASPECT_RATIO_MAP = {
    "8:10": "4:5",
    "8.5:8.5": "1:1",
    "8.5:11": "3:4",
}

CHARACTER_ASPECT_RATIO = "9:16"

_LEADING_ARTICLE = re.compile(r"^(the|a|an)\s+", re.IGNORECASE)


def map_aspect_ratio(book_ratio: str | None) -> str:
    """Translate a book trim ratio into an image-model aspect ratio."""
    return ASPECT_RATIO_MAP.get((book_ratio or "").strip(), "1:1")


def normalize_name(value: str | None) -> str:
    """Lowercase, collapse whitespace and strip a leading article."""
    if not value:
        return ""
    text = " ".join(value.lower().split())
    return _LEADING_ARTICLE.sub("", text).strip()


def sanitize_filename(value: str) -> str:
    """Make a value safe for use in a storage key."""
    safe = re.sub(r"[^a-z0-9]+", "_", value.lower()).strip("_")
    return safe or "item"


def timestamped_key(prefix: str, name: str, extension: str = "png") -> str:
    """Build a storage key that is unique per generation."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
    return f"{prefix}/{sanitize_filename(name)}-{stamp}.{extension}"


def page_illustration_prefix(project_id: str, page_number: int) -> str:
    """Key prefix shared by every illustration generated for one page."""
    return f"{project_id}/illustrations/{sanitize_filename(f'page-{page_number}')}-"


def resize_reference_image(image_bytes: bytes, max_dimension: int = 1024, quality: int = 80) -> bytes:
    """Downscale an image and re-encode it as JPEG for use as a model reference."""
    image = Image.open(io.BytesIO(image_bytes))
    if image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    image.thumbnail((max_dimension, max_dimension))

    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


# -----------------------
# LLM JSON parsing helpers
# -----------------------

def extract_json_from_text(text: str) -> str | None:
    """Extract the first JSON object or array from arbitrary LLM text.

    Handles code fences and leading/trailing prose.
    """
    if not text:
        return None

    s = text.strip()

    if s.startswith("```"):
        s = re.sub(r"^```(json|JSON)?\s*", "", s)
        s = re.sub(r"\s*```\s*$", "", s)

    if s.startswith("{") or s.startswith("["):
        return s

    obj_match = re.search(r"\{[\s\S]*\}", s)
    arr_match = re.search(r"\[[\s\S]*\]", s)

    candidates = []
    if obj_match:
        candidates.append((obj_match.start(), obj_match.group(0)))
    if arr_match:
        candidates.append((arr_match.start(), arr_match.group(0)))

    if not candidates:
        return None

    candidates.sort(key=lambda x: x[0])
    return candidates[0][1]


def parse_llm_json(text: str) -> Any:
    """Parse JSON from LLM output.

    Returns a Python object or raises ValueError on failure.
    """
    candidate = extract_json_from_text(text)
    if candidate is None:
        raise ValueError("No JSON found in LLM output")

    try:
        return json.loads(candidate)
    except json.JSONDecodeError as e:
        # Trailing ellipses or stray punctuation
        try:
            cleaned = candidate.strip().rstrip('.').rstrip()
            return json.loads(cleaned)
        except json.JSONDecodeError:
            pass

        # Truncated output: close any open structures at the error point
        try:
            truncated = candidate[:e.pos].rstrip().rstrip(',')
            open_braces = truncated.count('{') - truncated.count('}')
            open_brackets = truncated.count('[') - truncated.count(']')
            truncated += ']' * max(open_brackets, 0) + '}' * max(open_braces, 0)
            return json.loads(truncated)
        except json.JSONDecodeError:
            pass

        raise ValueError(f"Failed to parse JSON after cleanup attempts: {e}")
