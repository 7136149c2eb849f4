"""Test configuration for path setup.

Ensures the `src` directory is on sys.path so the `storyfox` package
can be imported without installing the project in editable mode.
"""

import io
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


@pytest.fixture
def png_bytes() -> bytes:
    """A tiny valid PNG image."""
    from PIL import Image

    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), (255, 160, 60)).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def sample_book():
    """A three-page book with a one-line character sheet."""
    from storyfox.models import StoryBook, StoryPage

    return StoryBook(
        title="Luna's Lantern",
        author_line="Written by Storyfox",
        moral="Kindness lights the way.",
        character_descriptions="Luna - small orange fox, green scarf, curious eyes",
        pages=[
            StoryPage(page_number=1, text="Luna found a lantern.", image_prompt="Luna walking through a forest"),
            StoryPage(page_number=2, text="She lit the path.", image_prompt="Luna holding a glowing lantern by a river"),
            StoryPage(page_number=3, text="Everyone was home.", image_prompt="A cozy village at night, warm lights"),
        ],
    )
