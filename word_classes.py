"""
Word classes for the hierarchical softmax
-----------------------------------------
- read_classes(): `word classId` class files
- ExternalClasses: compact class ids that came from a class file
- FrequencyBalanced: sqrt-frequency mass balancing ("Povey-style")
- ClassPartition: members of every class, as used by the output layer
"""

from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Union

import numpy as np

from vocabulary import BOS_TOKEN, EOS_TOKEN, Vocabulary


class ClassFileError(ValueError):
    """Raised when a class file is unreadable or malformed."""


class ClassAssignmentError(RuntimeError):
    """Raised when words cannot be mapped onto the requested classes."""


class EmptyClassError(ClassAssignmentError):
    """Raised when a class ends up with no member words."""


# --------------------
# Class file
# --------------------
def read_classes(path: Union[str, Path]) -> Dict[str, int]:
    """
    Read `word classId` pairs (any whitespace between fields).

    </s> must end up with the highest class id, since the vocabulary puts
    </s> first and the class compaction walks it in index order. Its class
    is therefore swapped with whichever class held the maximum id.
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ClassFileError(f"unable to open {path}") from e

    fields = text.split()
    if not fields:
        raise ClassFileError(f"empty class file: {path}")
    if len(fields) % 2:
        raise ClassFileError(f"odd number of fields in class file: {path}")

    word2class: Dict[str, int] = {}
    for word, raw_class in zip(fields[0::2], fields[1::2]):
        if word == BOS_TOKEN:
            raise ClassFileError(f"{BOS_TOKEN} should not be in the class file")
        try:
            word2class[word] = int(raw_class)
        except ValueError as e:
            raise ClassFileError(f"bad class id {raw_class!r} for word {word!r}") from e

    if EOS_TOKEN not in word2class:
        raise ClassFileError(f"{EOS_TOKEN} must be present in the class file")

    eos_class = word2class[EOS_TOKEN]
    max_class = max(word2class.values())
    for word, c in word2class.items():
        if c == eos_class:
            word2class[word] = max_class
        elif c == max_class:
            word2class[word] = eos_class
    return word2class


# --------------------
# Partition
# --------------------
@dataclass
class ClassPartition:
    class_words: List[List[int]]
    word_class: List[int] = field(default_factory=list)
    word_slot: List[int] = field(default_factory=list)

    @property
    def num_classes(self) -> int:
        return len(self.class_words)

    def members(self, class_index: int) -> List[int]:
        return self.class_words[class_index]

    @classmethod
    def from_vocabulary(cls, vocab: Vocabulary, num_classes: int) -> "ClassPartition":
        class_words: List[List[int]] = [[] for _ in range(num_classes)]
        word_class, word_slot = [], []
        for i, e in enumerate(vocab):
            if not 0 <= e.class_index < num_classes:
                raise ClassAssignmentError(
                    f"word {e.word!r} has class {e.class_index}, outside [0, {num_classes - 1}]"
                )
            word_class.append(e.class_index)
            word_slot.append(len(class_words[e.class_index]))
            class_words[e.class_index].append(i)

        empty = [c for c, members in enumerate(class_words) if not members]
        if empty:
            raise EmptyClassError(
                f"{len(empty)} of {num_classes} classes are empty (first: {empty[0]}); "
                f"use fewer classes for a vocabulary of {len(vocab)} words"
            )
        return cls(class_words, word_class, word_slot)


# --------------------
# Assigners
# --------------------
class ExternalClasses:
    """
    Classes already attached to the vocabulary (class file or saved model).
    Renumbers them densely in index order: the counter moves on whenever a
    word's class differs from the previous word's, so members of one class
    must be contiguous.
    """

    name = "external"

    def assign(self, vocab: Vocabulary, num_classes: Optional[int] = None) -> ClassPartition:
        counter, last = -1, None
        for e in vocab:
            if e.class_index != last:
                last = e.class_index
                counter += 1
            e.class_index = counter
            e.prob = 0.0
        found = counter + 1
        if num_classes is not None and num_classes != found:
            raise ClassAssignmentError(
                f"vocabulary holds {found} contiguous classes, {num_classes} requested"
            )
        return ClassPartition.from_vocabulary(vocab, found)


class FrequencyBalanced:
    """
    Classes of roughly equal sqrt-frequency mass, walked in index order.

    The word whose cumulative mass crosses (a+1)/num_classes still joins
    class a; only the following word opens class a+1. The pointer never
    moves past num_classes-1, so any remaining words pile into the last
    class (saturation is intended).
    """

    name = "frequency"

    def assign(self, vocab: Vocabulary, num_classes: Optional[int] = None) -> ClassPartition:
        if num_classes is None or num_classes < 1:
            raise ValueError(f"num_classes must be >= 1, got {num_classes}")
        counts = np.array([e.count for e in vocab], dtype=np.float64)
        total = counts.sum()
        if total <= 0:
            raise ClassAssignmentError("vocabulary has no occurrences to balance")

        mass = np.sqrt(counts / total)
        mass /= mass.sum()
        cumulative = np.minimum(np.cumsum(mass), 1.0)

        a = 0
        for e, df in zip(vocab, cumulative):
            e.class_index = a
            e.prob = 0.0
            if df > (a + 1) / num_classes and a < num_classes - 1:
                a += 1
        return ClassPartition.from_vocabulary(vocab, num_classes)


def make_class_assigner(use_class_file: bool):
    return ExternalClasses() if use_class_file else FrequencyBalanced()
