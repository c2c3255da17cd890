"""
Dependency-label vocabulary
---------------------------
Maps relation labels (nsubj, dobj, ...) to indices for the label features.
Labels are only added during the vocabulary-learning pass; lookups during
training and testing never insert.
"""

from __future__ import annotations
from enum import IntEnum
from pathlib import Path
import json
from typing import Dict, List

from vocabulary import NOT_FOUND


class LabelMode(IntEnum):
    IGNORE = 0        # words only
    CONCATENATE = 1   # "word:label" tokens, expands the word vocabulary
    FEATURES = 2      # one-hot label vector fed into the hidden layer


class LabelVocabulary:
    def __init__(self):
        self.labels: List[str] = []
        self._label2idx: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self.labels)

    def __contains__(self, label: str) -> bool:
        return label in self._label2idx

    def add(self, label: str) -> int:
        idx = self._label2idx.get(label)
        if idx is None:
            idx = len(self.labels)
            self.labels.append(label)
            self._label2idx[label] = idx
        return idx

    def index_of(self, label: str) -> int:
        return self._label2idx.get(label, NOT_FOUND)

    def save(self, path: Path) -> None:
        Path(path).write_text(json.dumps(self.labels, indent=2, ensure_ascii=False), encoding="utf-8")

    @classmethod
    def load(cls, path: Path) -> "LabelVocabulary":
        labels = cls()
        for label in json.loads(Path(path).read_text(encoding="utf-8")):
            labels.add(label)
        return labels
