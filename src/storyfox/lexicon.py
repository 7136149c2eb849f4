"""Curated word lists shared by prompt analysis, enrichment and character validation."""

import re
from typing import Iterable, List, Optional

# Ordered so that multi-word entries are tried before their single-word tails.
SPECIES_WORDS: tuple = (
    "guinea pig",
    "fox", "rabbit", "bunny", "bear", "cat", "kitten", "dog", "puppy",
    "mouse", "owl", "deer", "bird", "dragon", "unicorn", "frog", "turtle",
    "squirrel", "hedgehog", "penguin", "lion", "wolf", "elephant",
    "butterfly", "otter", "raccoon", "badger", "monkey", "panda",
    "pig", "piglet", "horse", "pony", "duck", "duckling", "goose",
    "chicken", "rooster", "cow", "sheep", "lamb", "goat", "bee",
    "ladybug", "ant", "snail", "fish", "whale", "dolphin", "octopus",
    "crab", "starfish", "seahorse", "parrot", "flamingo", "peacock",
    "tiger", "leopard", "cheetah", "giraffe", "zebra", "hippo",
    "hippopotamus", "rhino", "rhinoceros", "koala", "kangaroo",
    "sloth", "armadillo", "chameleon", "gecko", "lizard", "snake",
    "robin", "sparrow", "eagle", "hawk", "fairy", "gnome", "elf",
    "wizard", "witch", "mermaid", "robot", "dinosaur", "caterpillar",
    "firefly", "dragonfly", "chipmunk", "hamster",
    "dachshund", "corgi", "poodle", "beagle", "bulldog", "dalmatian",
    "retriever", "labrador", "terrier", "spaniel", "collie", "husky",
    "pug", "chihuahua", "schnauzer", "greyhound", "mastiff",
    "tabby", "siamese", "persian", "calico",
    "moose", "beaver", "wombat", "platypus", "alpaca", "llama",
    "ferret", "chinchilla", "toucan", "hummingbird", "stork", "pelican",
    "boy", "girl", "child", "kid", "person", "man", "woman",
)

SPECIES_SET = frozenset(SPECIES_WORDS)

COLOR_WORDS = frozenset({
    "red", "orange", "yellow", "green", "blue", "purple", "pink",
    "white", "black", "brown", "gray", "grey", "golden", "silver",
    "teal", "coral", "turquoise", "amber", "cream", "ivory",
})

SIZE_WORDS = frozenset({
    "small", "tiny", "little", "big", "large", "tall", "short",
    "plump", "round", "fluffy", "slender",
})

MOOD_WORDS = frozenset({
    "warm", "cozy", "bright", "cheerful", "peaceful", "magical",
    "mysterious", "dreamy", "gentle", "joyful", "playful", "serene",
    "whimsical", "enchanting", "sunny", "starlit", "moonlit",
    "happy", "calm", "exciting", "adventurous", "sparkly",
})

ACTION_VERBS = frozenset({
    "running", "walking", "sitting", "standing", "flying", "jumping",
    "playing", "reading", "dancing", "singing", "swimming", "climbing",
    "sleeping", "eating", "looking", "holding", "carrying", "building",
    "painting", "exploring", "discovering", "gathering", "collecting",
    "hiding", "peeking", "waving", "hugging", "laughing", "smiling",
    "digging", "planting", "cooking", "baking", "writing", "drawing",
})

# Character validation uses its own, narrower lists.
VALIDATOR_SPECIES_WORDS = frozenset({
    "fox", "rabbit", "bunny", "bear", "cat", "dog", "mouse", "owl",
    "deer", "bird", "dragon", "unicorn", "frog", "turtle", "squirrel",
    "hedgehog", "penguin", "lion", "wolf", "elephant", "puppy", "kitten",
})

VALIDATOR_APPEARANCE_WORDS = frozenset({
    "red", "blue", "green", "yellow", "orange", "purple", "pink", "white",
    "black", "brown", "golden", "silver", "bright", "dark", "light",
    "spotted", "striped", "fluffy", "tiny", "small", "big", "tall",
})

CLOTHING_WORDS = frozenset({
    "dress", "hat", "scarf", "cape", "boots", "shirt", "coat", "crown",
    "ribbon", "bow", "glasses", "vest", "apron", "jacket",
})

SCENE_STARTERS = frozenset({
    "a", "an", "the", "in", "on", "at", "with", "under", "inside", "outside",
})

BEHAVIORAL_STARTERS: tuple = (
    "loves", "likes", "enjoys", "helps", "always",
    "often", "can", "is known", "tends to", "known for",
)

_NON_LETTERS = re.compile(r"[^\w\s]|[\d_]")


def letter_words(text: str) -> List[str]:
    """Lowercase ``text`` and split it into letter-only words."""
    return _NON_LETTERS.sub(" ", text.lower()).split()


def first_species(text: str, vocabulary: Iterable[str] = SPECIES_WORDS) -> Optional[str]:
    """Return the vocabulary species that occurs earliest in ``text`` as a whole word."""
    lowered = text.lower()
    best: Optional[str] = None
    best_pos = len(lowered) + 1
    for species in vocabulary:
        match = re.search(rf"\b{re.escape(species)}\b", lowered)
        if match and match.start() < best_pos:
            best, best_pos = species, match.start()
    return best
