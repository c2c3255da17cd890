"""
Dependency-tree books and their unrolls
---------------------------------------
A book is a JSON file holding a list of parsed sentences. Every sentence is
a list of tokens written as

    [position, word, head, label]

with 1-based positions and head 0 for the root(s). Each sentence is unrolled
into root-to-leaf paths (children visited left to right); the RNN state is
reset at the start of every path.
"""

from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
import json
from typing import Dict, Iterator, List, NamedTuple, Optional, Union

from label_vocab import LabelMode


class CorpusFormatError(ValueError):
    """Raised for JSON books that do not describe dependency trees."""


class Token(NamedTuple):
    position: int
    word: str
    head: int
    label: str


@dataclass(frozen=True)
class UnrollStep:
    word: str
    label: Optional[str]
    position: int
    depth: int
    is_new: bool  # first time this node shows up in the sentence's unrolls


@dataclass
class Sentence:
    tokens: List[Token]
    unrolls: List[List[UnrollStep]]

    @property
    def num_tokens(self) -> int:
        return len(self.tokens)


# --------------------
# Parsing
# --------------------
def parse_sentence(raw) -> List[Token]:
    if not isinstance(raw, list) or not raw:
        raise CorpusFormatError(f"a sentence must be a non-empty list of tokens, got {raw!r}")
    tokens = []
    for i, item in enumerate(raw, start=1):
        if not isinstance(item, (list, tuple)) or len(item) != 4:
            raise CorpusFormatError(f"token {i}: expected [position, word, head, label], got {item!r}")
        position, word, head, label = item
        if position != i:
            raise CorpusFormatError(f"token {i}: position {position} out of order")
        if not isinstance(head, int) or not 0 <= head <= len(raw) or head == i:
            raise CorpusFormatError(f"token {i}: invalid head {head!r}")
        word, label = str(word), str(label)
        if not word or word.split() != [word] or (label and label.split() != [label]):
            # vocabulary and class files are whitespace-delimited
            raise CorpusFormatError(f"token {i}: word and label must not contain whitespace, got {word!r}/{label!r}")
        tokens.append(Token(i, word, head, label))
    return tokens


def unroll_tree(tokens: List[Token]) -> List[List[UnrollStep]]:
    """Root-to-leaf paths of the tree, leftmost leaf first."""
    children: Dict[int, List[int]] = {t.position: [] for t in tokens}
    children[0] = []
    for t in tokens:
        children[t.head].append(t.position)
    if not children[0]:
        raise CorpusFormatError("sentence has no root (no token with head 0)")

    paths: List[List[int]] = []
    stack = [[root] for root in reversed(children[0])]
    while stack:
        path = stack.pop()
        kids = children[path[-1]]
        if not kids:
            paths.append(path)
        for kid in reversed(kids):
            stack.append(path + [kid])

    reached = {p for path in paths for p in path}
    if len(reached) != len(tokens):
        raise CorpusFormatError("dependency heads contain a cycle")

    seen = set()
    unrolls = []
    for path in paths:
        steps = []
        for depth, p in enumerate(path):
            t = tokens[p - 1]
            steps.append(UnrollStep(t.word, t.label, p, depth, p not in seen))
            seen.add(p)
        unrolls.append(steps)
    return unrolls


def read_book(path: Union[str, Path]) -> List[Sentence]:
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise CorpusFormatError(f"{path}: a book must be a JSON list of sentences")
    sentences = []
    for n, raw_sentence in enumerate(raw):
        try:
            tokens = parse_sentence(raw_sentence)
            sentences.append(Sentence(tokens, unroll_tree(tokens)))
        except CorpusFormatError as e:
            raise CorpusFormatError(f"{path}, sentence {n}: {e}") from e
    return sentences


# --------------------
# Corpus
# --------------------
class CorpusUnrolls:
    """A list of books read lazily, and the token form of each step."""

    def __init__(self, label_mode: LabelMode = LabelMode.IGNORE):
        self.label_mode = LabelMode(label_mode)
        self.books: List[Path] = []
        self._cache: Dict[Path, List[Sentence]] = {}

    def __len__(self) -> int:
        return len(self.books)

    def add_book(self, path: Union[str, Path]) -> None:
        self.books.append(Path(path))

    def book_sentences(self, path: Path) -> List[Sentence]:
        if path not in self._cache:
            self._cache[path] = read_book(path)
        return self._cache[path]

    def sentences(self) -> Iterator[Sentence]:
        for book in self.books:
            yield from self.book_sentences(book)

    def num_sentences(self) -> int:
        return sum(len(self.book_sentences(b)) for b in self.books)

    def token(self, word: str, label: Optional[str]) -> str:
        if self.label_mode == LabelMode.CONCATENATE and label:
            return f"{word}:{label}"
        return word
