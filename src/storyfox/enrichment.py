"""Cross-page visual consistency for illustration prompts.

Prompts written by small models tend to reference characters by name only
("Luna walking through a forest"). Image models cannot know who Luna is, so
the enricher parses the character sheet and injects an appositive with the
character's species and look right after the first bare mention:
"Luna, a small orange fox with a green scarf, walking through a forest".
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

from storyfox.lexicon import BEHAVIORAL_STARTERS, first_species
from storyfox.models import CharacterEntry, PromptAnalysis, StoryBook

logger = logging.getLogger(__name__)

NAME_SEPARATORS = (" - ", " – ", ": ")
DEFAULT_WINDOW_CHARS = 30


# --- Character sheet parsing ---------------------------------------------------

def split_on_period_boundaries(segment: str) -> List[str]:
    """Split on ". " only where the next sentence starts a new ``Name - details`` entry."""
    results: List[str] = []
    start = 0
    pos = 0
    while True:
        idx = segment.find(". ", pos)
        if idx == -1:
            break
        after = segment[idx + 2:].lstrip()
        next_sentence = after.split(". ", 1)[0]
        if after[:1].isupper() and any(sep in next_sentence for sep in NAME_SEPARATORS):
            piece = segment[start:idx].strip()
            if piece:
                results.append(piece)
            start = idx + 2
        pos = idx + 2

    remainder = segment[start:].strip()
    if remainder:
        results.append(remainder)
    return results or [segment]


def _with_article(phrase: str, allow_plural: bool = False) -> str:
    lowered = phrase.lower()
    if lowered.startswith(("a ", "an ", "the ")):
        return phrase
    words = lowered.split()
    if allow_plural and words and words[-1].endswith("s") and not words[-1].endswith("ss"):
        return phrase
    article = "an" if lowered[:1] in "aeiou" else "a"
    return f"{article} {phrase}"


def build_injection_phrase(details: str) -> str:
    """``"small orange fox, green scarf, curious eyes"`` -> ``"a small orange fox with a green scarf"``."""
    parts = [part.strip() for part in details.split(",") if part.strip()]
    if not parts:
        return details.strip()

    phrase = _with_article(parts[0])
    if len(parts) > 1:
        detail = parts[1]
        lowered = detail.lower()
        if not lowered.startswith(BEHAVIORAL_STARTERS):
            if lowered.startswith(("with ", "wearing ")):
                phrase += f" {detail}"
            else:
                phrase += f" with {_with_article(detail, allow_plural=True)}"
    return phrase


def _split_name_details(line: str) -> Optional[tuple]:
    positions = [(line.find(sep), sep) for sep in NAME_SEPARATORS if sep in line]
    if not positions:
        return None
    index, sep = min(positions)
    return line[:index].strip(), line[index + len(sep):].strip()


def parse_character_descriptions(descriptions: str) -> List[CharacterEntry]:
    """One ``CharacterEntry`` per ``Name - details`` line of the character sheet."""
    segments: List[str] = []
    for line in descriptions.splitlines():
        for part in line.split("; "):
            segments.extend(split_on_period_boundaries(part))

    entries: List[CharacterEntry] = []
    for segment in segments:
        segment = segment.strip()
        if not segment:
            continue
        split = _split_name_details(segment)
        if split is None:
            continue
        name, details = split
        details = details.rstrip(".!?;").strip()
        if not name or not details:
            continue
        entries.append(CharacterEntry(
            name=name,
            species=first_species(details) or "",
            visual_summary=details,
            injection_phrase=build_injection_phrase(details),
        ))
    return entries


# --- Prompt enrichment -------------------------------------------------------------

def _find_name(prompt: str, name: str) -> Optional[re.Match]:
    return re.search(rf"(?<!\w){re.escape(name)}(?!\w)", prompt, re.IGNORECASE)


def _species_near(prompt: str, match: re.Match, species: str, window: int) -> bool:
    lowered = prompt.lower()
    context = lowered[max(0, match.start() - window):match.end() + window]
    return re.search(rf"\b{re.escape(species)}\b", context) is not None


def _inject_after(prompt: str, match: re.Match, detail: str) -> str:
    before, after = prompt[:match.end()], prompt[match.end():]
    if after.lstrip().startswith(","):
        return f"{before}, {detail}{after}"
    return f"{before}, {detail},{after}"


def _strip_appositives(prompt: str, injected: Sequence[tuple]) -> str:
    """Remove ``Name, detail,`` appositives and commas so windows measure the bare prompt."""
    for name, detail in injected:
        if not detail:
            continue
        prompt = re.sub(
            rf"((?<!\w){re.escape(name)}(?!\w)), {re.escape(detail)},",
            r"\1",
            prompt,
            flags=re.IGNORECASE,
        )
    return prompt.replace(",", "")


def _plan_character(
    character: CharacterEntry, analysis: Optional[PromptAnalysis]
) -> tuple:
    analyzed = None
    if analysis is not None and character.species:
        analyzed = next((c for c in analysis.characters if c.species == character.species), None)

    species = (analyzed.species if analyzed else character.species).lower()
    if analyzed is not None and analyzed.appearance:
        detail = _with_article(analyzed.appearance)
    else:
        detail = character.injection_phrase
    return species, detail


def enrich_prompt(
    prompt: str,
    characters: Sequence[CharacterEntry],
    analysis: Optional[PromptAnalysis] = None,
    window_chars: int = DEFAULT_WINDOW_CHARS,
) -> str:
    """Inject each named character's look after its first bare mention.

    Species windows are measured on the prompt with earlier injections
    removed, so every character is judged against the same text and a
    second pass finds nothing left to add.
    """
    plans = [(character, *_plan_character(character, analysis)) for character in characters]
    bare = _strip_appositives(prompt, [(c.name, detail) for c, _, detail in plans])

    pending = []
    for character, species, detail in plans:
        match = _find_name(bare, character.name)
        if match is None:
            continue
        if species and _species_near(bare, match, species, window_chars):
            continue
        pending.append((character, detail))

    result = prompt
    for character, detail in pending:
        if not detail or detail.lower() in result.lower():
            continue
        match = _find_name(result, character.name)
        if match is None:
            continue
        result = _inject_after(result, match, detail)
    return result


def enrich(
    book: StoryBook,
    analyses: Optional[Mapping[int, PromptAnalysis]] = None,
    window_chars: int = DEFAULT_WINDOW_CHARS,
) -> StoryBook:
    """Return a copy of ``book`` with character details injected into its prompts.

    Applying it twice gives the same result as applying it once.
    """
    characters = parse_character_descriptions(book.character_descriptions)
    if not characters:
        return book

    analyses = analyses or {}
    pages = []
    for page in book.pages:
        analysis = analyses.get(page.page_number)
        if analysis is not None and not analysis.characters:
            analysis = None
        enriched = enrich_prompt(page.image_prompt, characters, analysis, window_chars)
        if enriched != page.image_prompt:
            logger.debug(f"Enriched prompt for page {page.page_number}")
        pages.append(page.model_copy(update={"image_prompt": enriched}))
    return book.with_pages(pages)


def build_character_prefix(characters: Sequence[CharacterEntry], limit: int = 3) -> str:
    """``"Featuring Luna (a small orange fox) and Ollie (a round gray owl)"``."""
    described = [f"{c.name} ({c.injection_phrase})" for c in characters[:limit]]
    if not described:
        return ""
    if len(described) == 1:
        return f"Featuring {described[0]}"
    return f"Featuring {', '.join(described[:-1])} and {described[-1]}"


def with_character_prefix(prompt: str, characters: Sequence[CharacterEntry]) -> str:
    prefix = build_character_prefix(characters)
    return f"{prefix}. {prompt}" if prefix else prompt


# --- Consistency evaluation --------------------------------------------------------

_APPEARANCE_STOPWORDS = {"with", "from", "that", "this", "have", "their", "about", "some", "when", "were"}


@dataclass
class PageConsistency:
    page_number: int
    raw_prompt: str
    enriched_prompt: str
    has_species: bool
    has_appearance: bool
    has_character_name: bool


@dataclass
class ConsistencyReport:
    """How well a book's prompts carry its characters' species and look."""
    character_description_score: float
    species_score: float
    appearance_score: float
    name_score: float
    overall_score: float
    pages: List[PageConsistency] = field(default_factory=list)


def evaluate_consistency(raw_book: StoryBook, expected_species: str) -> ConsistencyReport:
    """Score character consistency of ``raw_book`` after enrichment."""
    enriched_book = enrich(raw_book)
    characters = parse_character_descriptions(raw_book.character_descriptions)
    expected = expected_species.lower()

    description_score = 0.0
    if expected and expected in raw_book.character_descriptions.lower():
        description_score += 0.5
    if characters:
        summary = characters[0].visual_summary
        meaningful = [w for w in summary.split() if len(w) > 3]
        if summary.count(",") >= 1 or len(meaningful) >= 3:
            description_score += 0.5

    keywords: List[str] = []
    for character in characters:
        summary = character.visual_summary.lower()
        keywords.extend(part.strip() for part in summary.split(",") if part.strip())
        keywords.extend(
            word.strip(".,;:!?") for word in summary.split()
            if len(word.strip(".,;:!?")) > 3 and word.strip(".,;:!?") not in _APPEARANCE_STOPWORDS
        )

    raw_prompts: Dict[int, str] = {page.page_number: page.image_prompt for page in raw_book.pages}
    results: List[PageConsistency] = []
    for page in enriched_book.pages:
        lowered = page.image_prompt.lower()
        results.append(PageConsistency(
            page_number=page.page_number,
            raw_prompt=raw_prompts.get(page.page_number, page.image_prompt),
            enriched_prompt=page.image_prompt,
            has_species=bool(expected) and expected in lowered,
            has_appearance=any(keyword in lowered for keyword in keywords),
            has_character_name=any(c.name.lower() in lowered for c in characters),
        ))

    count = max(len(results), 1)
    species_score = sum(r.has_species for r in results) / count
    appearance_score = sum(r.has_appearance for r in results) / count
    name_score = sum(r.has_character_name for r in results) / count
    overall = (
        description_score * 0.2
        + species_score * 0.35
        + appearance_score * 0.25
        + name_score * 0.2
    )
    return ConsistencyReport(
        character_description_score=description_score,
        species_score=species_score,
        appearance_score=appearance_score,
        name_score=name_score,
        overall_score=overall,
        pages=results,
    )
