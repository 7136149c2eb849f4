"""Utility functions for the storybook pipeline."""

import io
import re
from pathlib import Path
from typing import List, Optional

from PIL import Image, UnidentifiedImageError


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    s = text.strip()
    if s.startswith("```"):
        s = re.sub(r"^```[a-zA-Z]*\s*", "", s)
        s = re.sub(r"\s*```\s*$", "", s)
    return s


def extract_braced_object(text: str) -> Optional[str]:
    """Return the substring from the first ``{`` to the last ``}``."""
    if not text:
        return None
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    return text[start:end + 1]


def _drop_trailing_comma(chars: List[str]) -> None:
    i = len(chars) - 1
    while i >= 0 and chars[i].isspace():
        i -= 1
    if i >= 0 and chars[i] == ",":
        del chars[i]


def repair_truncated_json(text: str) -> Optional[str]:
    """Close whatever a token budget cut off in a JSON document.

    Trailing commas are removed, an unterminated string is closed, and every
    still-open array or object is closed innermost-first. Returns ``None`` when
    the text does not start like JSON.
    """
    trimmed = text.strip() if text else ""
    if not trimmed or trimmed[0] not in "{[":
        return None

    out: List[str] = []
    closers: List[str] = []
    in_string = False
    escaped = False

    for ch in trimmed:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            out.append(ch)
            continue

        if ch == '"':
            in_string = True
        elif ch == "{":
            closers.append("}")
        elif ch == "[":
            closers.append("]")
        elif ch in "}]":
            _drop_trailing_comma(out)
            if closers and closers[-1] == ch:
                closers.pop()
        out.append(ch)

    if in_string:
        if escaped:
            out.pop()
        out.append('"')

    _drop_trailing_comma(out)
    out.extend(reversed(closers))
    return "".join(out)


_MARKDOWN_PATTERNS = [
    (re.compile(r"\*{3}(.+?)\*{3}", re.DOTALL), r"\1"),
    (re.compile(r"\*{2}(.+?)\*{2}", re.DOTALL), r"\1"),
    (re.compile(r"(?:(?<=\s)|^)\*(?=\S)(.+?)(?<=\S)\*(?=\s|$|[.,!?;:])", re.MULTILINE), r"\1"),
    (re.compile(r"_{2}(.+?)_{2}", re.DOTALL), r"\1"),
    (re.compile(r"(?:(?<=\s)|^)_(?=\S)(.+?)(?<=\S)_(?=\s|$|[.,!?;:])", re.MULTILINE), r"\1"),
    (re.compile(r"^#{1,6}\s+", re.MULTILINE), ""),
]

_CURLY_QUOTES = str.maketrans({
    "“": '"',
    "”": '"',
    "‘": "'",
    "’": "'",
})


def clean_story_text(text: Optional[str], keep_line_breaks: bool = False) -> str:
    """Strip markdown artifacts and stray quoting from a model-written field.

    Longer markers are removed before shorter ones so no orphan ``*`` is left
    behind. With ``keep_line_breaks`` newline runs collapse to a single newline
    instead of a space.
    """
    if not text:
        return ""

    cleaned = text
    for pattern, replacement in _MARKDOWN_PATTERNS:
        cleaned = pattern.sub(replacement, cleaned)

    cleaned = cleaned.translate(_CURLY_QUOTES).strip()

    if len(cleaned) > 2 and cleaned.startswith('"') and cleaned.endswith('"'):
        cleaned = cleaned[1:-1]

    if keep_line_breaks:
        cleaned = re.sub(r"[ \t\f\v]*\n\s*", "\n", cleaned)
        cleaned = re.sub(r"[ \t\f\v]{2,}", " ", cleaned)
    else:
        cleaned = re.sub(r"\s+", " ", cleaned)

    return cleaned.strip()


def normalize_whitespace(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def truncate_words(text: str, max_words: int) -> str:
    """Keep at most ``max_words`` whitespace-separated words."""
    words = text.split()
    return " ".join(words[:max_words])


def load_image(image_bytes: bytes) -> Image.Image:
    """Decode image bytes, raising ``ValueError`` when they are not an image."""
    try:
        image = Image.open(io.BytesIO(image_bytes))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ValueError(f"Not a decodable image: {e}") from e
    return image


def save_image_bytes(image_bytes: bytes, output_path: Path, format: str = "PNG") -> Path:
    """Save raw image bytes to ``output_path`` in the given format."""
    image = load_image(image_bytes)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    if format.upper() == "JPEG" and image.mode not in ("RGB", "L"):
        image = image.convert("RGB")
    image.save(output_path, format=format)
    return output_path


def get_output_directory(book_title: str, base_dir: Path = Path("illustrated_books")) -> Path:
    """Get the output directory for a book."""
    safe_title = "".join(c for c in book_title if c.isalnum() or c in (' ', '-', '_')).strip()
    safe_title = safe_title.replace(' ', '_') or "storybook"
    output_dir = base_dir / safe_title
    output_dir.mkdir(parents=True, exist_ok=True)
    return output_dir
