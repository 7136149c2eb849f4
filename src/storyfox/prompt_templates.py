"""Prompt templates shared by every text backend."""

from typing import Sequence

from storyfox.models import StoryPage, TextOnlyRecord


STORY_SYSTEM_PROMPT = (
    "You are an award-winning children's storybook writer and art director. "
    "You write engaging, age-appropriate stories for children ages 3-8 with a clear "
    "beginning, middle and end, simple prose that is fun to read aloud, and a gentle moral. "
    "Never include violence, weapons, gore, horror, sexual content, nudity, substance use, "
    "hate, abuse or self-harm. If the concept hints at unsafe content, reinterpret it into "
    "a gentle, child-safe adventure.\n"
    "Respond with valid JSON only, with no text before or after it."
)


def text_only_prompt(concept: str, page_count: int) -> str:
    """First pass: the story text and the character sheet, no illustration prompts."""
    return f"""Create a {page_count}-page children's storybook from this concept: "{concept}".
Return JSON with this exact shape:
{{
  "title": "string",
  "authorLine": "string",
  "moral": "string",
  "characterDescriptions": "One line per character: Name - species, colors, clothing, unique feature.\\nExample: Luna - small white rabbit, pink dress, floppy left ear",
  "pages": [
    {{"pageNumber": 1, "text": "2-4 child-friendly sentences"}}
  ]
}}
Requirements:
- Exactly {page_count} pages, numbered 1 to {page_count}.
- characterDescriptions lists every recurring character on its own line.
- Keep language warm, gentle and easy to read aloud."""


def prompt_sheet_prompt(record: TextOnlyRecord) -> str:
    """Second pass: one illustration prompt per page of an existing story."""
    page_lines = "\n".join(f"Page {page.page_number}: {page.text}" for page in record.pages)
    return f"""Write one illustration prompt for each page of this children's story.
Title: "{record.title}"
Characters:
{record.character_descriptions or "(not listed)"}

Pages:
{page_lines}

Return JSON with this exact shape:
{{"prompts": [{{"pageNumber": 1, "imagePrompt": "string"}}]}}
Requirements:
- One entry per page, using the same pageNumber values.
- Name the main character first, then describe their species, colors and clothing. Image models cannot know that "Luna" is a fox.
  BAD: "Luna walking through a moonlit forest."
  GOOD: "Luna, a small orange fox with a green scarf, walks through a moonlit forest, warm golden light."
- Then describe the action, the setting, the mood and the colors. No text in the image."""


CHARACTER_REPAIR_INSTRUCTIONS = (
    "You are analyzing a children's storybook to identify its characters. "
    "Read the image prompts below and produce a character description sheet. "
    'Format: one line per character, "Name - species/breed, visual details". '
    "Use lowercase for species. Include colors, clothing, and one distinguishing feature. "
    "Only list characters that appear in at least two prompts. "
    "Do not invent details that are not present in the prompts. "
    "Respond with the sheet only."
)


def character_repair_request(title: str, pages: Sequence[StoryPage], limit: int) -> str:
    summary = "\n".join(f"Page {page.page_number}: {page.image_prompt}" for page in pages[:limit])
    return f'Story title: "{title}"\n\nImage prompts:\n{summary}\n\nGenerate the character description sheet:'


PROMPT_ANALYSIS_INSTRUCTIONS = (
    "You extract visual facts from children's book illustration prompts. "
    "Return JSON only, shaped as "
    '{"characters": [{"species": "fox", "appearance": "small orange fox"}], '
    '"sceneSetting": "short phrase", "mainAction": "one verb", "mood": "one or two words"}. '
    "Species are lowercase single nouns. Use empty strings when something is not stated."
)


def analysis_request(prompt: str) -> str:
    return f"Illustration prompt:\n{prompt}\n\nJSON:"


CONCEPT_DECOMPOSITION_INSTRUCTIONS = (
    "Break a children's book illustration prompt into ranked visual concepts for an image model. "
    'Return JSON only, shaped as {"concepts": [{"label": "CHARACTER", "value": "small orange fox"}]}. '
    "Put CHARACTER first, then any of SETTING, ACTION, DETAIL, PROPS, ATMOSPHERE. "
    "Each value is 2 to 6 words and uses only words present in the prompt."
)


def decomposition_request(prompt: str) -> str:
    return f"Illustration prompt:\n{prompt}\n\nJSON:"


PROMPT_REWRITE_INSTRUCTIONS = (
    "An image generator declined the illustration prompt below. Rewrite it as a single "
    "child-safe prompt that keeps the same characters, species, colors and setting, "
    "removes anything that could be read as frightening or unsafe, and stays under 40 words. "
    "Respond with the rewritten prompt only."
)


def rewrite_request(prompt: str) -> str:
    return f"Prompt:\n{prompt}\n\nRewritten prompt:"
