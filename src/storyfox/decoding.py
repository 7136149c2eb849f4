"""Tolerant decoding of model output into typed story records.

Model responses arrive wrapped in provider envelopes, decorated with prose or
code fences, or cut short by a token budget. Decoding tries progressively more
forgiving strategies and fails with ``UnparsableResponseError`` only when all
of them do. The merge step combines the text pass and the prompt pass into a
``StoryBook`` with contiguous page numbers.
"""

import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterator, List, Optional, Type, TypeVar

from pydantic import BaseModel

from storyfox.error_handling import ContentRejectedError, UnparsableResponseError
from storyfox.models import (
    PromptSheetRecord,
    StoryBook,
    StoryPage,
    StoryRecord,
    TextOnlyRecord,
)
from storyfox.safety import ContentSafetyPolicy, DefaultContentSafetyPolicy
from storyfox.utils import (
    clean_story_text,
    extract_braced_object,
    repair_truncated_json,
    strip_code_fences,
)

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)

FALLBACK_PAGE_TEXT = "A gentle moment unfolds."
FALLBACK_TITLE = "My Storybook"
FALLBACK_AUTHOR_LINE = "Written by Storyfox"

# Fields that keep their line structure through cleanup.
_MULTILINE_FIELDS = {"character_descriptions"}


# --- Response envelopes -----------------------------------------------------

@dataclass(frozen=True)
class ExtractionStrategy:
    """Pulls the model's text out of one kind of response envelope."""
    name: str
    extract: Callable[[Any], Optional[str]]


def _content_parts_to_text(content: Any) -> Optional[str]:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict):
                text = item.get("text") or item.get("content")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts) if parts else None
    return None


def _direct_record(payload: Any) -> Optional[str]:
    if isinstance(payload, dict) and any(key in payload for key in ("pages", "prompts", "title")):
        return json.dumps(payload)
    return None


def _story_envelope(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict) or "story" not in payload:
        return None
    story = payload["story"]
    if isinstance(story, dict):
        return json.dumps(story)
    if isinstance(story, str):
        return story
    return None


def _chat_choices(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    if not isinstance(first, dict):
        return None
    message = first.get("message") or {}
    text = _content_parts_to_text(message.get("content")) if isinstance(message, dict) else None
    if text is None and isinstance(first.get("text"), str):
        text = first["text"]
    return text


def _plain_content(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    for key in ("content", "output_text", "generated_text", "response"):
        text = _content_parts_to_text(payload.get(key))
        if text:
            return text
    return None


RESPONSE_EXTRACTION_STRATEGIES: List[ExtractionStrategy] = [
    ExtractionStrategy("direct_record", _direct_record),
    ExtractionStrategy("story_envelope", _story_envelope),
    ExtractionStrategy("chat_choices", _chat_choices),
    ExtractionStrategy("plain_content", _plain_content),
]


def extract_response_text(
    body: Any,
    strategies: Optional[List[ExtractionStrategy]] = None,
) -> str:
    """Return the model text carried by a provider response body.

    ``body`` may be a JSON string or an already-parsed payload. Strategies run
    in priority order and the first match wins; unrecognized bodies are
    returned as-is when they are strings.
    """
    payload = body
    if isinstance(body, (str, bytes)):
        text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
        try:
            payload = json.loads(text)
        except ValueError:
            return text
    else:
        text = ""

    for strategy in strategies or RESPONSE_EXTRACTION_STRATEGIES:
        result = strategy.extract(payload)
        if result is not None:
            logger.debug(f"Response text extracted via {strategy.name}")
            return result

    return text if text else json.dumps(payload)


# --- Record decoding ----------------------------------------------------------

def _candidate_texts(raw: str) -> Iterator[tuple]:
    """Yield (attempt name, candidate JSON text) in the fixed attempt order."""
    direct = strip_code_fences(raw)
    yield "direct", direct

    braced = extract_braced_object(direct)
    if braced is not None:
        yield "extracted", braced

    repaired = repair_truncated_json(direct)
    if repaired is not None:
        yield "repaired", repaired

    first_brace = direct.find("{")
    if first_brace != -1:
        for source in (braced, direct[first_brace:]):
            if source is None:
                continue
            repaired_extract = repair_truncated_json(source)
            if repaired_extract is not None:
                yield "extracted_repaired", repaired_extract


def _validate_payload(payload: Any, record_type: Type[RecordT]) -> RecordT:
    try:
        return record_type.model_validate(payload)
    except ValueError:
        if isinstance(payload, dict) and isinstance(payload.get("story"), dict):
            return record_type.model_validate(payload["story"])
        raise


def clean_record(record: RecordT) -> RecordT:
    """Apply text cleanup to every string field, recursing into nested records."""
    updates = {}
    for name, value in record:
        if isinstance(value, str) and not isinstance(value, Enum):
            updates[name] = clean_story_text(value, keep_line_breaks=name in _MULTILINE_FIELDS)
        elif isinstance(value, list):
            updates[name] = [clean_record(item) if isinstance(item, BaseModel) else item for item in value]
        elif isinstance(value, BaseModel):
            updates[name] = clean_record(value)
    return record.model_copy(update=updates)


def decode_record(raw: str, record_type: Type[RecordT]) -> RecordT:
    """Decode ``raw`` model text into ``record_type``.

    Attempts, stopping at the first success: parse directly, parse the
    outermost braced object, parse after structural repair, parse the
    extracted object after repair.
    """
    if not raw or not raw.strip():
        raise UnparsableResponseError("The model returned an empty response", raw=raw or "")

    tried = set()
    last_error: Optional[Exception] = None
    for attempt, candidate in _candidate_texts(raw):
        if candidate in tried:
            continue
        tried.add(candidate)
        try:
            payload = json.loads(candidate)
            record = _validate_payload(payload, record_type)
        except ValueError as e:
            last_error = e
            logger.debug(f"Decode attempt '{attempt}' for {record_type.__name__} failed: {e}")
            continue
        if attempt != "direct":
            logger.info(f"Decoded {record_type.__name__} after '{attempt}' attempt")
        return clean_record(record)

    logger.warning(f"Could not decode {record_type.__name__}: {last_error}")
    raise UnparsableResponseError(
        f"The model response could not be parsed as {record_type.__name__}", raw=raw
    )


def decode_text_only(raw: str) -> TextOnlyRecord:
    return decode_record(raw, TextOnlyRecord)


def decode_prompt_sheet(raw: str) -> PromptSheetRecord:
    return decode_record(raw, PromptSheetRecord)


def decode_story_record(raw: str) -> StoryRecord:
    return decode_record(raw, StoryRecord)


# --- Merge ----------------------------------------------------------------------

def fallback_prompt(concept: str, policy: Optional[ContentSafetyPolicy] = None) -> str:
    """Generic child-safe prompt used when a page has no illustration prompt."""
    policy = policy or DefaultContentSafetyPolicy()
    subject = concept.strip() or "a friendly adventure"
    return policy.sanitize(f"A gentle storybook scene inspired by {subject}")


def merge_story(
    text_record: TextOnlyRecord,
    prompt_sheet: PromptSheetRecord,
    page_count: int,
    concept: str,
    policy: Optional[ContentSafetyPolicy] = None,
) -> StoryBook:
    """Combine the text pass and the prompt pass into a book of ``page_count`` pages.

    Source pages are ordered by their page number (ties keep their original
    order) and renumbered from 1. Prompts are looked up by the source page
    number; pages without one get a generic fallback prompt. A short source is
    padded with gentle filler pages so the book always has ``page_count`` pages.
    """
    if page_count < 1:
        raise ValueError("page_count must be at least 1")

    source_pages = sorted(text_record.pages, key=lambda page: page.page_number)
    if not source_pages:
        raise ContentRejectedError("The story came back without any pages")

    prompts_by_number = {}
    for entry in prompt_sheet.prompts:
        prompt = entry.image_prompt.strip()
        if prompt:
            prompts_by_number[entry.page_number] = prompt

    default_prompt = fallback_prompt(concept, policy)
    pages: List[StoryPage] = []
    for new_number, source in enumerate(source_pages[:page_count], start=1):
        prompt = prompts_by_number.get(source.page_number)
        if prompt is None:
            logger.warning(f"No illustration prompt for source page {source.page_number}; using fallback")
            prompt = default_prompt
        pages.append(StoryPage(
            page_number=new_number,
            text=source.text.strip() or FALLBACK_PAGE_TEXT,
            image_prompt=prompt,
        ))

    if len(pages) < page_count:
        logger.warning(f"Story had {len(pages)} pages, padding to {page_count}")
        for new_number in range(len(pages) + 1, page_count + 1):
            pages.append(StoryPage(
                page_number=new_number,
                text=FALLBACK_PAGE_TEXT,
                image_prompt=default_prompt,
            ))

    return StoryBook(
        title=text_record.title or FALLBACK_TITLE,
        author_line=text_record.author_line or FALLBACK_AUTHOR_LINE,
        moral=text_record.moral,
        character_descriptions=text_record.character_descriptions,
        pages=pages,
    )
