"""Structured visual semantics for illustration prompts."""

import logging
import re
from typing import Dict, List, Optional, Sequence, Tuple

from storyfox.context import GenerationConfig
from storyfox.decoding import decode_record
from storyfox.error_handling import UnparsableResponseError
from storyfox.lexicon import (
    ACTION_VERBS,
    COLOR_WORDS,
    MOOD_WORDS,
    SIZE_WORDS,
    SPECIES_SET,
    letter_words,
)
from storyfox.llm_factory import TextGenerationBackend
from storyfox.models import AnalyzedCharacter, PromptAnalysis, StoryPage
from storyfox.prompt_templates import PROMPT_ANALYSIS_INSTRUCTIONS, analysis_request

logger = logging.getLogger(__name__)

_SCENE_PATTERN = re.compile(
    r"\b(?:in|at|by|near|under|beside|through|inside|outside|around)\s+"
    r"(?:(?:a|an|the)\s+)?[a-z]+(?:\s+[a-z]+)*"
)


def find_species(words: Sequence[str]) -> List[Tuple[str, int]]:
    """Species words in first-occurrence order with the index where each first appears."""
    found: List[Tuple[str, int]] = []
    seen = set()
    for i, word in enumerate(words):
        species = None
        if i + 1 < len(words) and f"{word} {words[i + 1]}" in SPECIES_SET:
            species = f"{word} {words[i + 1]}"
        elif word in SPECIES_SET:
            species = word
        if species and species not in seen and not any(species in s.split() for s in seen if " " in s):
            seen.add(species)
            found.append((species, i))
    return found


def extract_appearance(words: Sequence[str], species: str, index: Optional[int], window: int = 4) -> str:
    """One size word and up to two color words near the species, then the species."""
    if index is not None:
        scope = words[max(0, index - window):index + window + 1]
    else:
        scope = words
    parts = [w for w in scope if w in SIZE_WORDS][:1]
    parts += [w for w in scope if w in COLOR_WORDS][:2]
    if species:
        parts.append(species)
    return " ".join(parts)


def extract_scene(prompt: str, max_words: int = 6) -> str:
    match = _SCENE_PATTERN.search(prompt.lower())
    if not match:
        return ""
    return " ".join(match.group(0).split()[:max_words])


def extract_action(words: Sequence[str]) -> str:
    return next((w for w in words if w in ACTION_VERBS), "")


def extract_mood(words: Sequence[str]) -> str:
    moods: List[str] = []
    for word in words:
        if word in MOOD_WORDS and word not in moods:
            moods.append(word)
    return " ".join(moods[:2])


def heuristic_analysis(prompt: str, config: Optional[GenerationConfig] = None) -> PromptAnalysis:
    """Keyword-based analysis used when no model is available or the model fails."""
    config = config or GenerationConfig()
    words = letter_words(prompt)
    characters = [
        AnalyzedCharacter(
            species=species,
            appearance=extract_appearance(words, species, index, config.analysis_window_words),
        )
        for species, index in find_species(words)
    ]
    return PromptAnalysis(
        characters=characters,
        scene_setting=extract_scene(prompt, config.scene_max_words),
        main_action=extract_action(words),
        mood=extract_mood(words),
    )


class PromptAnalysisEngine:
    """Analyzes prompts with a local model when one is configured, else heuristically."""

    def __init__(
        self,
        model: Optional[TextGenerationBackend] = None,
        config: Optional[GenerationConfig] = None,
    ):
        self.model = model
        self.config = config or GenerationConfig()

    async def analyze(self, prompt: str) -> PromptAnalysis:
        if self.model is None:
            return heuristic_analysis(prompt, self.config)
        try:
            return await self._analyze_with_model(prompt)
        except Exception as e:
            logger.warning(f"Model analysis failed, using heuristics: {e}")
            return heuristic_analysis(prompt, self.config)

    async def analyze_pages(self, pages: Sequence[StoryPage]) -> Dict[int, PromptAnalysis]:
        """Analyze every page prompt one after another, keyed by page number."""
        analyses: Dict[int, PromptAnalysis] = {}
        for page in pages:
            analyses[page.page_number] = await self.analyze(page.image_prompt)
        return analyses

    async def _analyze_with_model(self, prompt: str) -> PromptAnalysis:
        raw = await self.model.generate(
            PROMPT_ANALYSIS_INSTRUCTIONS,
            analysis_request(prompt),
            max_tokens=self.config.analysis_max_tokens,
            temperature=self.config.analysis_temperature,
        )
        analysis = decode_record(raw, PromptAnalysis)
        characters = [
            AnalyzedCharacter(
                species=character.species.strip().lower(),
                appearance=character.appearance.strip(),
            )
            for character in analysis.characters
            if character.species.strip() or character.appearance.strip()
        ]
        if not (characters or analysis.scene_setting or analysis.main_action or analysis.mood):
            raise UnparsableResponseError("The analysis response has none of the expected fields", raw=raw)
        return analysis.model_copy(update={"characters": characters})
