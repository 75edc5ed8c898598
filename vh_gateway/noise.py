"""Cosmetic noise for generated Lua: random identifiers and inert filler.

Both generators are plain objects built per transform call from a random
source, so tests can swap in deterministic ones and compare the structural
template of an artifact.
"""

from __future__ import annotations

import random
import string
from typing import List, Optional, Set

IDENTIFIER_ALPHABET = string.ascii_letters
IDENTIFIER_LENGTH = 10


class IdentifierGenerator:
    """Fresh ``_`` + fixed-length names, unique within one generator.

    The underscore prefix keeps every name clear of Lua keywords.
    """

    def __init__(
        self,
        rng: Optional[random.Random] = None,
        alphabet: str = IDENTIFIER_ALPHABET,
        length: int = IDENTIFIER_LENGTH,
    ):
        if length < 4:
            raise ValueError("identifier length too short to stay unique")
        self.rng = rng or random.SystemRandom()
        self.alphabet = alphabet
        self.length = int(length)
        self._issued: Set[str] = set()

    def __call__(self) -> str:
        while True:
            name = "_" + "".join(self.rng.choice(self.alphabet) for _ in range(self.length))
            if name not in self._issued:
                self._issued.add(name)
                return name

    @property
    def issued(self) -> Set[str]:
        return set(self._issued)


class SequentialIdentifiers(IdentifierGenerator):
    """Deterministic ``_v1``, ``_v2``, ... (golden-template tests)."""

    def __init__(self, prefix: str = "_v"):
        self.prefix = prefix
        self._n = 0
        self._issued = set()

    def __call__(self) -> str:
        self._n += 1
        name = f"{self.prefix}{self._n}"
        self._issued.add(name)
        return name


class FillerGenerator:
    """Inert statements/comments interleaved between generated statements."""

    def __init__(self, rng: Optional[random.Random] = None, count: int = 6):
        self.rng = rng or random.SystemRandom()
        self.count = max(0, int(count))

    def statement(self, names: IdentifierGenerator) -> str:
        kind = self.rng.randrange(4)
        if kind == 0:
            return "-- " + "%x" % self.rng.getrandbits(self.rng.randint(32, 96))
        if kind == 1:
            return f"do local {names()}={self.rng.randint(0, 2 ** 24)} end"
        if kind == 2:
            n = self.rng.randint(1, 9999)
            return f"if {n}=={n + 1} then local {names()}=nil end"
        return f'do local {names()}="{"%x" % self.rng.getrandbits(48)}" end'

    def interleave(self, statements: List[str], names: IdentifierGenerator) -> List[str]:
        """Insert `count` filler lines at random boundaries (never before line 0)."""
        out = list(statements)
        for _ in range(self.count):
            pos = self.rng.randint(1, len(out)) if out else 0
            out.insert(pos, self.statement(names))
        return out


class NoFiller(FillerGenerator):
    def __init__(self) -> None:
        super().__init__(count=0)
