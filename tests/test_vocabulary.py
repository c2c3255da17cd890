import io
import random
import pytest

from vocabulary import EOS_TOKEN, NOT_FOUND, UNK_TOKEN, Vocabulary, VocabularyFormatError


def _vocab(counts):
    vocab = Vocabulary()
    for word, count in counts.items():
        vocab.add_or_increment(word)
        vocab.set_count(word, count)
    return vocab


def test_add_or_increment_returns_stable_index():
    vocab = Vocabulary()
    assert vocab.add_or_increment("cat") == 0
    assert vocab.add_or_increment("dog") == 1
    assert vocab.add_or_increment("cat") == 0
    assert vocab.count_of("cat") == 2
    assert vocab.count_of("dog") == 1
    assert len(vocab) == 2


def test_set_count_unknown_word_is_noop():
    vocab = _vocab({"cat": 3})
    assert vocab.set_count("cat", 7) is True
    assert vocab.set_count("dog", 7) is False
    assert vocab.count_of("cat") == 7
    assert "dog" not in vocab


def test_index_of_unknown():
    vocab = _vocab({"cat": 3})
    assert vocab.index_of("cat") == 0
    assert vocab.index_of("bird") == NOT_FOUND


def test_sort_pins_eos_first_then_descending_counts():
    vocab = _vocab({"cat": 3, "the": 100, EOS_TOKEN: 5, "dog": 2, "a": 50})
    vocab.sort_by_frequency()
    assert vocab.word_of(0) == EOS_TOKEN
    assert vocab.words() == [EOS_TOKEN, "the", "a", "cat", "dog"]
    for w in vocab.words():
        assert vocab.word_of(vocab.index_of(w)) == w


def test_sort_eos_first_even_when_rarest():
    rng = random.Random(3)
    counts = {f"w{i}": rng.randint(2, 500) for i in range(40)}
    counts[EOS_TOKEN] = 1
    vocab = _vocab(counts)
    vocab.sort_by_frequency()
    assert vocab.index_of(EOS_TOKEN) == 0
    rest = [e.count for e in vocab.entries[1:]]
    assert all(a >= b for a, b in zip(rest, rest[1:]))
    assert vocab.count_of(EOS_TOKEN) == 1


def test_sort_is_idempotent():
    vocab = _vocab({"b": 2, "a": 2, EOS_TOKEN: 1, "c": 9, "d": 2})
    vocab.sort_by_frequency()
    first = vocab.words()
    vocab.sort_by_frequency()
    assert vocab.words() == first
    assert [vocab.index_of(w) for w in first] == list(range(len(first)))


def test_sort_requires_eos():
    with pytest.raises(ValueError):
        _vocab({"cat": 1}).sort_by_frequency()


def test_prune_merges_rare_words_into_unk():
    vocab = _vocab({EOS_TOKEN: 1, "the": 5, "cat": 1, "dog": 2})
    removed = vocab.prune(2)
    assert removed == 1
    assert vocab.index_of("cat") == NOT_FOUND
    assert vocab.count_of(UNK_TOKEN) == 1
    # </s> survives the floor
    assert vocab.index_of(EOS_TOKEN) != NOT_FOUND
    assert vocab.total_count == 9


def test_sort_by_class_makes_classes_contiguous():
    vocab = _vocab({EOS_TOKEN: 1, "the": 5, "cat": 4, "dog": 2, "a": 3})
    vocab.apply_classes({EOS_TOKEN: 2, "the": 0, "cat": 1, "dog": 0, "a": 1})
    vocab.sort_by_class()
    assert vocab.words() == [EOS_TOKEN, "cat", "a", "the", "dog"]


def test_apply_classes_missing_words_join_eos_class():
    vocab = _vocab({EOS_TOKEN: 1, "the": 5, "zebra": 1})
    missing = vocab.apply_classes({EOS_TOKEN: 3, "the": 0})
    assert missing == 1
    assert vocab.class_of(vocab.index_of("zebra")) == 3


def test_save_load_round_trip(tmp_path):
    vocab = _vocab({EOS_TOKEN: 4, "the": 9, "cat": 3, "dog": 1})
    vocab.sort_by_frequency()
    for i, e in enumerate(vocab):
        e.class_index = i // 2
    path = tmp_path / "vocab.txt"
    vocab.save(path)

    text = path.read_text(encoding="utf-8")
    assert text.splitlines()[0] == "Vocabulary:"

    loaded = Vocabulary.load(path, len(vocab))
    assert len(loaded) == len(vocab)
    for w in vocab.words():
        i = vocab.index_of(w)
        assert loaded.index_of(w) == i
        assert loaded.count_of(w) == vocab.count_of(w)
        assert loaded.class_of(i) == vocab.class_of(i)


def test_load_rejects_index_mismatch():
    rows = io.StringIO("Vocabulary:\n0\t5\t</s>\t0\n2\t3\tcat\t1\n")
    with pytest.raises(VocabularyFormatError):
        Vocabulary.load(rows)


def test_load_rejects_short_file():
    rows = io.StringIO("Vocabulary:\n0\t5\t</s>\t0\n")
    with pytest.raises(VocabularyFormatError):
        Vocabulary.load(rows, 3)


def test_load_rejects_malformed_row():
    with pytest.raises(VocabularyFormatError):
        Vocabulary.from_lines(["0\t5\t</s>\n"])
    with pytest.raises(VocabularyFormatError):
        Vocabulary.from_lines(["0\tfive\t</s>\t0\n"])


def test_write_refuses_words_with_whitespace():
    vocab = _vocab({EOS_TOKEN: 1, "New York": 2})
    with pytest.raises(VocabularyFormatError, match="New York"):
        vocab.write(io.StringIO())


def test_load_stops_after_size_rows():
    rows = ["Vocabulary:", "0 5 </s> 0", "1 3 cat 0", "something else entirely"]
    vocab = Vocabulary.from_lines(rows, 2)
    assert vocab.words() == [EOS_TOKEN, "cat"]
