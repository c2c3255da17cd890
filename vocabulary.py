"""
Word Vocabulary (dependency-tree RNN LM)
----------------------------------------
- Word <-> index mapping with raw counts and the class of every word
- Insert-or-increment while scanning the training books
- Frequency sort with </s> pinned to index 0
- Text format shared with the checkpoint directory:
    Vocabulary:
         0	      1234	</s>	0
         1	       987	the	0
"""

from __future__ import annotations
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Optional, TextIO, Union

EOS_TOKEN = "</s>"
BOS_TOKEN = "<s>"
UNK_TOKEN = "<unk>"
NOT_FOUND = -1
HEADER = "Vocabulary:"


class VocabularyFormatError(ValueError):
    """Raised when a serialized vocabulary cannot be read back."""


@dataclass
class VocabEntry:
    word: str
    count: int = 0
    class_index: int = -1
    prob: float = 0.0  # unused, reset to 0 by the class assigners


class Vocabulary:
    """
    Ordered list of VocabEntry plus a single word -> index map.
    The list position *is* the index, so index -> word never drifts.
    """

    def __init__(self):
        self.entries: List[VocabEntry] = []
        self._word2idx: Dict[str, int] = {}

    # --------------------
    # Lookup
    # --------------------
    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, word: str) -> bool:
        return word in self._word2idx

    def __iter__(self) -> Iterator[VocabEntry]:
        return iter(self.entries)

    def index_of(self, word: str) -> int:
        return self._word2idx.get(word, NOT_FOUND)

    def word_of(self, index: int) -> str:
        return self.entries[index].word

    def count_of(self, word: str) -> int:
        idx = self.index_of(word)
        return self.entries[idx].count if idx != NOT_FOUND else 0

    def class_of(self, index: int) -> int:
        return self.entries[index].class_index

    def words(self) -> List[str]:
        return [e.word for e in self.entries]

    @property
    def total_count(self) -> int:
        return sum(e.count for e in self.entries)

    # --------------------
    # Building
    # --------------------
    def add_or_increment(self, word: str) -> int:
        idx = self.index_of(word)
        if idx == NOT_FOUND:
            idx = len(self.entries)
            self.entries.append(VocabEntry(word=word, count=1))
            self._word2idx[word] = idx
        else:
            self.entries[idx].count += 1
        return idx

    def set_count(self, word: str, value: int) -> bool:
        idx = self.index_of(word)
        if idx == NOT_FOUND:
            return False
        self.entries[idx].count = value
        return True

    def prune(self, min_count: int) -> int:
        """
        Drop words seen fewer than `min_count` times and merge their counts
        into <unk>. </s> and <unk> are never dropped.
        Returns the number of words removed.
        """
        kept: List[VocabEntry] = []
        removed, removed_count = 0, 0
        for e in self.entries:
            if e.count < min_count and e.word not in (EOS_TOKEN, UNK_TOKEN):
                removed += 1
                removed_count += e.count
            else:
                kept.append(e)
        self.entries = kept
        self._rebuild_index()
        if removed:
            if UNK_TOKEN in self:
                self.entries[self.index_of(UNK_TOKEN)].count += removed_count
            else:
                self.add_or_increment(UNK_TOKEN)
                self.set_count(UNK_TOKEN, removed_count)
        return removed

    def sort_by_frequency(self) -> None:
        """
        Stable sort by decreasing count with </s> always at index 0.

        Words with equal counts keep their previous relative order, so this
        is not a strict total order: two vocabularies with the same counts
        but different insertion order may sort differently. Re-sorting an
        already sorted vocabulary leaves it unchanged.
        """
        self._require_eos()
        self.entries.sort(key=lambda e: (e.word != EOS_TOKEN, -e.count))
        self._rebuild_index()

    def apply_classes(self, word2class: Dict[str, int]) -> int:
        """
        Copy class ids from a class file mapping onto the entries.
        Words missing from the mapping join the class of </s>.
        Returns how many words were missing.
        """
        self._require_eos()
        eos_class = word2class.get(EOS_TOKEN, max(word2class.values(), default=0))
        missing = 0
        for e in self.entries:
            if e.word in word2class:
                e.class_index = word2class[e.word]
            else:
                e.class_index = eos_class
                missing += 1
        return missing

    def sort_by_class(self) -> None:
        """
        Make class membership contiguous: </s> first, then decreasing class
        id, then decreasing count. Since </s> owns the highest class id after
        read_classes(), its class leads the ordering.
        """
        self._require_eos()
        self.entries.sort(key=lambda e: (e.word != EOS_TOKEN, -e.class_index, -e.count))
        self._rebuild_index()

    def _require_eos(self) -> None:
        if EOS_TOKEN not in self:
            raise ValueError(f"{EOS_TOKEN} must be present in the vocabulary")

    def _rebuild_index(self) -> None:
        self._word2idx = {e.word: i for i, e in enumerate(self.entries)}

    # --------------------
    # Serialization
    # --------------------
    def write(self, fh: TextIO) -> None:
        fh.write(HEADER + "\n")
        for i, e in enumerate(self.entries):
            if e.word.split() != [e.word]:
                raise VocabularyFormatError(f"vocabulary word {e.word!r} is empty or contains whitespace")
            fh.write("%6d\t%10d\t%s\t%d\n" % (i, e.count, e.word, e.class_index))

    def save(self, path: Path) -> None:
        with open(path, "w", encoding="utf-8") as fh:
            self.write(fh)

    @classmethod
    def from_lines(cls, lines: Iterable[str], size: Optional[int] = None) -> "Vocabulary":
        """
        Rebuild a vocabulary from `index count word class` rows.
        Indices must run 0, 1, 2, ... in order. When `size` is given exactly
        that many rows are read and any shortfall is an error.
        """
        vocab = cls()
        rows = (ln for ln in lines if ln.strip())
        for ln in rows:
            if ln.strip() == HEADER:
                continue
            vocab._read_row(ln)
            if size is not None and len(vocab) == size:
                break
        if size is not None and len(vocab) != size:
            raise VocabularyFormatError(f"expected {size} vocabulary rows, found {len(vocab)}")
        return vocab

    @classmethod
    def load(cls, source: Union[str, Path, TextIO], size: Optional[int] = None) -> "Vocabulary":
        if isinstance(source, (str, Path)):
            with open(source, "r", encoding="utf-8") as fh:
                return cls.from_lines(fh, size)
        return cls.from_lines(source, size)

    def _read_row(self, line: str) -> None:
        fields = line.split()
        if len(fields) != 4:
            raise VocabularyFormatError(f"malformed vocabulary row: {line.rstrip()!r}")
        try:
            index, count, class_index = int(fields[0]), int(fields[1]), int(fields[3])
        except ValueError as e:
            raise VocabularyFormatError(f"malformed vocabulary row: {line.rstrip()!r}") from e
        if index != len(self.entries):
            raise VocabularyFormatError(
                f"vocabulary index {index} found at position {len(self.entries)}"
            )
        word = fields[2]
        if word in self._word2idx:
            raise VocabularyFormatError(f"duplicate vocabulary word {word!r}")
        self.entries.append(VocabEntry(word=word, count=count, class_index=class_index))
        self._word2idx[word] = index
