import json
from pathlib import Path
import pytest


# "the cat sat" / "a dog barked loudly" / "the dog sat"
SENTENCES = [
    [[1, "the", 2, "det"], [2, "cat", 3, "nsubj"], [3, "sat", 0, "root"]],
    [[1, "a", 2, "det"], [2, "dog", 3, "nsubj"], [3, "barked", 0, "root"], [4, "loudly", 3, "advmod"]],
    [[1, "the", 2, "det"], [2, "dog", 3, "nsubj"], [3, "sat", 0, "root"]],
]


def write_book(path: Path, sentences) -> Path:
    path.write_text(json.dumps(sentences), encoding="utf-8")
    return path


@pytest.fixture
def book(tmp_path: Path) -> Path:
    return write_book(tmp_path / "book.json", SENTENCES)
