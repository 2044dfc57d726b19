import re
import secrets
from random import Random
from typing import Mapping, Optional

from attrs import define, field

from common.errors import ValidationError

ADJECTIVES = (
    "able", "active", "adept", "agile", "alert", "amber", "ample", "amused",
    "apt", "ardent", "avid", "azure", "balmy", "bold", "brave", "breezy",
    "bright", "brisk", "bubbly", "busy", "calm", "candid", "caring", "casual",
    "cheery", "chief", "civic", "civil", "clean", "clear", "clever", "close",
    "coastal", "cosmic", "cozy", "crisp", "cuddly", "curious", "daring", "dapper",
    "dashing", "deft", "direct", "divine", "dreamy", "driven", "dynamic", "eager",
    "early", "earnest", "easy", "elated", "elegant", "epic", "equal", "exact",
    "fair", "famous", "fancy", "fast", "fearless", "festive", "fine", "firm",
    "fluent", "fond", "frank", "free", "fresh", "frosty", "funny", "fuzzy",
    "gallant", "generous", "gentle", "giant", "gifted", "glad", "gleaming", "glowing",
    "golden", "good", "graceful", "grand", "great", "happy", "hardy", "hearty",
    "helpful", "heroic", "honest", "hopeful", "humble", "ideal", "immense", "jolly",
    "joyful", "jovial", "keen", "kind", "large", "lasting", "legal", "light",
    "likely", "lively", "logical", "loved", "loyal", "lucid", "lucky", "lunar",
    "magical", "major", "mellow", "merry", "mighty", "mint", "modest", "moral",
    "native", "neat", "nice", "nimble", "noble", "novel", "open", "optimal",
    "patient", "peaceful", "perfect", "plucky", "polite", "precise", "pretty", "prime",
    "proud", "pure", "quick", "quiet", "radiant", "rapid", "rare", "ready",
    "regal", "relaxed", "robust", "rosy", "royal", "rustic", "safe", "sage",
    "savvy", "secure", "serene", "sharp", "shiny", "silent", "simple", "sleek",
    "smart", "smooth", "snowy", "social", "solar", "solid", "sound", "sparkling",
    "spry", "stable", "steady", "stellar", "sturdy", "sunny", "super", "sweet",
    "swift", "tender", "thankful", "tidy", "topical", "tough", "tranquil", "true",
    "trusty", "upbeat", "upright", "valid", "valued", "vast", "verdant", "vital",
    "vivid", "warm", "welcome", "whole", "wise", "witty", "wondrous", "worthy",
    "young", "youthful", "zany", "zealous", "zesty", "zippy",
)  # fmt: skip

ANIMALS = (
    "aardvark", "albatross", "alpaca", "anteater", "antelope", "armadillo", "baboon", "badger",
    "barracuda", "bat", "beagle", "bear", "beaver", "beetle", "bison", "bobcat",
    "buffalo", "bull", "bunny", "buzzard", "camel", "canary", "caribou", "catfish",
    "chamois", "cheetah", "chicken", "chipmunk", "cicada", "clam", "cobra", "cod",
    "condor", "corgi", "cougar", "cow", "coyote", "crab", "crane", "cricket",
    "crow", "cuckoo", "deer", "dingo", "dodo", "dolphin", "donkey", "dove",
    "dragon", "duck", "eagle", "eel", "egret", "eland", "elephant", "elk",
    "emu", "falcon", "ferret", "finch", "firefly", "flamingo", "fox", "frog",
    "gazelle", "gecko", "gerbil", "gibbon", "giraffe", "gnu", "goat", "goose",
    "gopher", "gorilla", "grouse", "gull", "hamster", "hare", "hawk", "hedgehog",
    "heron", "hippo", "hornet", "horse", "hound", "husky", "hyena", "ibex",
    "ibis", "iguana", "impala", "jackal", "jaguar", "jay", "jellyfish", "kangaroo",
    "kingfisher", "kite", "kiwi", "koala", "krill", "ladybug", "lamb", "lark",
    "lemming", "lemur", "leopard", "lion", "lizard", "llama", "lobster", "locust",
    "loon", "lynx", "macaw", "magpie", "mallard", "mammoth", "manatee", "mantis",
    "marlin", "marmot", "marten", "meerkat", "mink", "mole", "mongoose", "monkey",
    "moose", "moth", "mouse", "mule", "narwhal", "newt", "nightingale", "ocelot",
    "octopus", "opossum", "orca", "oriole", "osprey", "ostrich", "otter", "owl",
    "ox", "oyster", "panda", "panther", "parrot", "partridge", "peacock", "pelican",
    "penguin", "pheasant", "pigeon", "piranha", "platypus", "pony", "poodle", "porpoise",
    "possum", "prawn", "puffin", "puma", "python", "quail", "rabbit", "raccoon",
    "ram", "raven", "reindeer", "rhino", "robin", "rooster", "salmon", "sardine",
    "scorpion", "seahorse", "seal", "shark", "sheep", "shrew", "shrimp", "skunk",
    "sloth", "snail", "snake", "sparrow", "spider", "squid", "squirrel", "stag",
    "starfish", "stingray", "stork", "swallow", "swan", "swift", "tapir", "termite",
    "tiger", "toad", "toucan", "trout", "tuna", "turkey", "turtle", "viper",
    "vulture", "wallaby", "walrus", "warthog", "wasp", "weasel", "whale", "wildcat",
    "wolf", "wombat", "woodpecker", "wren", "yak", "zebra",
)  # fmt: skip

TOKEN_PATTERN = re.compile(r"^[a-z]+-[a-z]+$")


def _validate_token(instance, attribute, value: str) -> None:
    if not isinstance(value, str) or not TOKEN_PATTERN.match(value):
        raise ValidationError(
            f"Identity token must look like 'adjective-animal', got {value!r}",
            field=attribute.name,
        )


@define(slots=True, frozen=True)
class IdentityToken:
    """Pronounceable suffix that keeps globally scoped names unique.

    A token is generated once per stack and must then be persisted by the
    provisioning engine; regenerating it renames (and therefore replaces) every
    resource whose name carries it.
    """

    value: str = field(validator=_validate_token)

    @classmethod
    def generate(cls, rng: Optional[Random] = None) -> "IdentityToken":
        rng = rng or secrets.SystemRandom()
        return cls(f"{rng.choice(ADJECTIVES)}-{rng.choice(ANIMALS)}")

    def __str__(self) -> str:
        return self.value


class IdentityRegistry:
    """Issues identity tokens to the stacks synthesized during one run.

    Tokens are memoized per stack name. A persisted token wins unless another
    stack already holds it; a fresh token is redrawn until it differs from
    every token already issued.
    """

    def __init__(self, rng: Optional[Random] = None) -> None:
        self._rng = rng or secrets.SystemRandom()
        self._issued: dict[str, IdentityToken] = {}

    def token_for(
        self, stack_name: str, persisted: Optional[IdentityToken] = None
    ) -> IdentityToken:
        if stack_name in self._issued:
            issued = self._issued[stack_name]
            if persisted is not None and persisted != issued:
                raise ValidationError(
                    f"Stack already holds identity token {issued}, refusing {persisted}",
                    resource_id=stack_name,
                    field="identity_token",
                )
            return issued

        holders = {token: holder for holder, token in self._issued.items()}
        token = persisted
        if token is None:
            token = IdentityToken.generate(self._rng)
            while token in holders:
                token = IdentityToken.generate(self._rng)
        elif token in holders:
            raise ValidationError(
                f"Identity token {token} is already held by stack {holders[token]}",
                resource_id=stack_name,
                field="identity_token",
            )
        self._issued[stack_name] = token
        return token

    def reserve(self, persisted: Mapping[str, Optional[IdentityToken]]) -> None:
        """Claim every persisted token before any fresh one is drawn."""
        for stack_name, token in sorted(persisted.items()):
            if token is not None:
                self.token_for(stack_name, token)

    @property
    def issued(self) -> dict[str, IdentityToken]:
        return dict(self._issued)
