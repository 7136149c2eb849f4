"""Unit tests for prompt analysis."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from storyfox.context import GenerationConfig
from storyfox.lexicon import letter_words
from storyfox.models import StoryPage
from storyfox.prompt_analysis import (
    PromptAnalysisEngine,
    extract_appearance,
    extract_mood,
    extract_scene,
    find_species,
    heuristic_analysis,
)


class TestHeuristicAnalysis:
    """Test keyword-based analysis."""

    def test_full_prompt(self):
        """Test characters, scene, action and mood together."""
        analysis = heuristic_analysis(
            "A small orange fox with a green scarf walking through a moonlit forest, cozy and magical"
        )
        assert [c.species for c in analysis.characters] == ["fox"]
        assert analysis.characters[0].appearance == "small orange green fox"
        assert analysis.scene_setting == "through a moonlit forest"
        assert analysis.main_action == "walking"
        assert analysis.mood == "moonlit cozy"

    def test_species_first_occurrence_order_and_dedup(self):
        """Test species are listed once, in the order they first appear."""
        words = letter_words("An owl and a fox meet another owl and a rabbit")
        assert [species for species, _ in find_species(words)] == ["owl", "fox", "rabbit"]

    def test_multiword_species(self):
        """Test two-word species win over their tail word."""
        words = letter_words("A fluffy guinea pig eats a carrot")
        assert [species for species, _ in find_species(words)] == ["guinea pig"]

    def test_substring_is_not_a_species(self):
        """Test that a species inside a longer word does not count."""
        words = letter_words("An elephant and an ant")
        assert [species for species, _ in find_species(words)] == ["elephant", "ant"]

    def test_appearance_window(self):
        """Test only words within the window are used."""
        words = letter_words("red one two three four five fox blue")
        assert extract_appearance(words, "fox", 6, window=4) == "blue fox"
        assert extract_appearance(words, "fox", 6, window=6) == "red blue fox"

    def test_appearance_priority(self):
        """Test one size word, then at most two colors."""
        words = letter_words("tiny big red blue green bear")
        assert extract_appearance(words, "bear", 5) == "big red blue bear"

    def test_scene_is_capped(self):
        """Test the scene phrase is at most six words."""
        scene = extract_scene("Two friends under the old tall oak tree near the quiet blue lake")
        assert scene == "under the old tall oak tree"

    def test_no_scene(self):
        """Test prompts without a prepositional phrase."""
        assert extract_scene("A fox smiling") == ""

    def test_mood_limit_and_dedup(self):
        """Test at most two distinct moods."""
        assert extract_mood(["cozy", "cozy", "magical", "bright"]) == "cozy magical"

    def test_window_from_config(self):
        """Test the adjective window is configurable."""
        config = GenerationConfig(analysis_window_words=0)
        analysis = heuristic_analysis("a red fox", config)
        assert analysis.characters[0].appearance == "fox"

    def test_prompt_without_characters(self):
        """Test prompts that mention no species."""
        analysis = heuristic_analysis("A sunny meadow full of flowers")
        assert analysis.characters == []
        assert analysis.mood == "sunny"


class TestPromptAnalysisEngine:
    """Test the model-backed engine and its fallbacks."""

    @pytest.mark.asyncio
    async def test_heuristics_without_model(self):
        """Test the engine works without a model."""
        engine = PromptAnalysisEngine()
        analysis = await engine.analyze("A tiny mouse reading in a library")
        assert analysis.characters[0].species == "mouse"

    @pytest.mark.asyncio
    async def test_model_result_used(self):
        """Test a decodable model answer is used and normalized."""
        model = AsyncMock()
        model.generate.return_value = (
            '{"characters": [{"species": " Fox ", "appearance": "small orange fox"}, {"species": "", "appearance": ""}],'
            ' "sceneSetting": "snowy hill", "mainAction": "sledding", "mood": "joyful"}'
        )
        analysis = await PromptAnalysisEngine(model).analyze("Luna sledding down a snowy hill")
        assert [c.species for c in analysis.characters] == ["fox"]
        assert analysis.scene_setting == "snowy hill"
        assert analysis.main_action == "sledding"

    @pytest.mark.asyncio
    async def test_model_failure_falls_back_per_item(self):
        """Test one failing item does not fail the batch."""
        model = AsyncMock()
        model.generate.side_effect = [
            '{"characters": [{"species": "owl", "appearance": "gray owl"}]}',
            RuntimeError("model crashed"),
            "not json at all",
        ]
        pages = [
            StoryPage(page_number=1, text="a", image_prompt="Ollie flying"),
            StoryPage(page_number=2, text="b", image_prompt="A brown bear sleeping"),
            StoryPage(page_number=3, text="c", image_prompt="A frog jumping"),
        ]
        analyses = await PromptAnalysisEngine(model).analyze_pages(pages)

        assert sorted(analyses) == [1, 2, 3]
        assert analyses[1].characters[0].appearance == "gray owl"
        assert analyses[2].characters[0].species == "bear"
        assert analyses[3].main_action == "jumping"

    @pytest.mark.asyncio
    async def test_wrong_shaped_answer_falls_back(self):
        """Test an answer with none of the analysis fields counts as a failure."""
        model = AsyncMock()
        model.generate.return_value = '{"analysis": "a small orange fox in a forest"}'
        analysis = await PromptAnalysisEngine(model).analyze("A small orange fox running in the forest")
        assert analysis.characters[0].species == "fox"
        assert analysis.main_action == "running"

    @pytest.mark.asyncio
    async def test_pages_analyzed_sequentially(self):
        """Test the model is never called concurrently."""
        in_flight = 0
        peak = 0

        async def generate(*args, **kwargs):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0)
            in_flight -= 1
            return '{"characters": []}'

        model = AsyncMock()
        model.generate.side_effect = generate
        pages = [StoryPage(page_number=i, text="t", image_prompt="p") for i in range(1, 5)]
        await PromptAnalysisEngine(model).analyze_pages(pages)
        assert peak == 1
        assert model.generate.await_count == 4
