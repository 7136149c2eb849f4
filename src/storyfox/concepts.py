"""Ranked concept breakdowns for backends that accept several labeled concepts."""

import logging
from typing import List, Optional

from storyfox.context import GenerationConfig
from storyfox.decoding import decode_record
from storyfox.lexicon import letter_words
from storyfox.llm_factory import TextGenerationBackend
from storyfox.models import ConceptDecomposition, ConceptLabel, PromptAnalysis, RankedConcept
from storyfox.prompt_analysis import heuristic_analysis
from storyfox.prompt_templates import CONCEPT_DECOMPOSITION_INSTRUCTIONS, decomposition_request

logger = logging.getLogger(__name__)

MAX_CONCEPT_WORDS = 6
_LABEL_ORDER = list(ConceptLabel)


def _cap_words(text: str, limit: int = MAX_CONCEPT_WORDS) -> str:
    return " ".join(text.split()[:limit])


def heuristic_concepts(analysis: PromptAnalysis) -> ConceptDecomposition:
    """Characters (appearance and species), then scene, action and mood."""
    concepts: List[RankedConcept] = []
    for character in analysis.characters:
        value = character.appearance or character.species
        if character.species and character.species not in value:
            value = f"{value} {character.species}"
        if value.strip():
            concepts.append(RankedConcept(label=ConceptLabel.CHARACTER, value=_cap_words(value)))
    if analysis.scene_setting:
        concepts.append(RankedConcept(label=ConceptLabel.SETTING, value=_cap_words(analysis.scene_setting)))
    if analysis.main_action:
        concepts.append(RankedConcept(label=ConceptLabel.ACTION, value=analysis.main_action))
    if analysis.mood:
        concepts.append(RankedConcept(label=ConceptLabel.ATMOSPHERE, value=_cap_words(analysis.mood)))
    return ConceptDecomposition(concepts=concepts)


def _grounded(decomposition: ConceptDecomposition, prompt: str) -> ConceptDecomposition:
    """Keep concepts of 1-6 words that share a word with the prompt, in label order."""
    prompt_words = set(letter_words(prompt))
    kept = []
    for concept in decomposition.concepts:
        words = concept.value.split()
        if not words or len(words) > MAX_CONCEPT_WORDS:
            continue
        if not prompt_words.intersection(letter_words(concept.value)):
            continue
        kept.append(concept)
    kept.sort(key=lambda c: _LABEL_ORDER.index(c.label))
    return ConceptDecomposition(concepts=kept)


class ConceptDecomposer:
    """Asks the local model for a ranked breakdown, falling back to analysis-derived concepts."""

    def __init__(
        self,
        model: Optional[TextGenerationBackend] = None,
        config: Optional[GenerationConfig] = None,
    ):
        self.model = model
        self.config = config or GenerationConfig()

    async def decompose(self, prompt: str, analysis: Optional[PromptAnalysis] = None) -> ConceptDecomposition:
        if self.model is not None:
            try:
                raw = await self.model.generate(
                    CONCEPT_DECOMPOSITION_INSTRUCTIONS,
                    decomposition_request(prompt),
                    max_tokens=self.config.analysis_max_tokens,
                    temperature=self.config.analysis_temperature,
                )
                decomposition = _grounded(decode_record(raw, ConceptDecomposition), prompt)
                if decomposition.concepts and decomposition.concepts[0].label is ConceptLabel.CHARACTER:
                    return decomposition
                logger.info("Model concept breakdown had no character; using analysis instead")
            except Exception as e:
                logger.warning(f"Concept decomposition failed, using analysis: {e}")

        # The page analysis may predate enrichment and miss the species.
        if analysis is None or not analysis.characters:
            analysis = heuristic_analysis(prompt, self.config)
        decomposition = heuristic_concepts(analysis)
        if not decomposition.concepts:
            decomposition = ConceptDecomposition(
                concepts=[RankedConcept(label=ConceptLabel.DETAIL, value=_cap_words(prompt))]
            )
        return decomposition
