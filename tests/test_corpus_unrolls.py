import pytest

from conftest import SENTENCES, write_book
from corpus_unrolls import CorpusFormatError, CorpusUnrolls, parse_sentence, read_book, unroll_tree
from label_vocab import LabelMode


def _words(unroll):
    return [s.word for s in unroll]


def test_unroll_root_to_leaf_paths_left_to_right():
    unrolls = unroll_tree(parse_sentence(SENTENCES[1]))
    assert [_words(u) for u in unrolls] == [["barked", "dog", "a"], ["barked", "loudly"]]
    assert [s.depth for s in unrolls[0]] == [0, 1, 2]
    assert [s.label for s in unrolls[1]] == ["root", "advmod"]


def test_shared_nodes_are_new_only_once():
    unrolls = unroll_tree(parse_sentence(SENTENCES[1]))
    assert [s.is_new for s in unrolls[0]] == [True, True, True]
    assert [s.is_new for s in unrolls[1]] == [False, True]
    new_positions = sorted(s.position for u in unrolls for s in u if s.is_new)
    assert new_positions == [1, 2, 3, 4]


def test_chain_is_a_single_unroll():
    unrolls = unroll_tree(parse_sentence(SENTENCES[0]))
    assert [_words(u) for u in unrolls] == [["sat", "cat", "the"]]


def test_multiple_roots():
    tokens = parse_sentence([[1, "yes", 0, "root"], [2, "no", 0, "root"]])
    assert [_words(u) for u in unroll_tree(tokens)] == [["yes"], ["no"]]


@pytest.mark.parametrize("raw", [
    [],
    [[1, "a", 0]],
    [[2, "a", 0, "root"]],
    [[1, "a", 5, "det"]],
    [[1, "a", 1, "det"]],
])
def test_parse_rejects_malformed_tokens(raw):
    with pytest.raises(CorpusFormatError):
        parse_sentence(raw)


@pytest.mark.parametrize("raw", [
    [[1, "New York", 2, "nsubj"], [2, "sleeps", 0, "root"]],
    [[1, "", 0, "root"]],
    [[1, "sleeps", 0, "root clause"]],
    [[1, "tab\tword", 0, "root"]],
])
def test_parse_rejects_whitespace_in_words_and_labels(raw):
    with pytest.raises(CorpusFormatError, match="whitespace"):
        parse_sentence(raw)


def test_unroll_rejects_cycles():
    tokens = parse_sentence([[1, "a", 0, "root"], [2, "b", 3, "x"], [3, "c", 2, "y"]])
    with pytest.raises(CorpusFormatError):
        unroll_tree(tokens)


def test_unroll_rejects_rootless_sentence():
    tokens = parse_sentence([[1, "a", 2, "x"], [2, "b", 1, "y"]])
    with pytest.raises(CorpusFormatError):
        unroll_tree(tokens)


def test_read_book(book):
    sentences = read_book(book)
    assert len(sentences) == 3
    assert [s.num_tokens for s in sentences] == [3, 4, 3]


def test_read_book_names_bad_sentence(tmp_path):
    path = write_book(tmp_path / "bad.json", [SENTENCES[0], [[1, "x", 9, "root"]]])
    with pytest.raises(CorpusFormatError, match="sentence 1"):
        read_book(path)


def test_corpus_iterates_books_in_order(tmp_path):
    corpus = CorpusUnrolls()
    corpus.add_book(write_book(tmp_path / "a.json", SENTENCES[:1]))
    corpus.add_book(write_book(tmp_path / "b.json", SENTENCES[1:]))
    assert len(corpus) == 2
    assert corpus.num_sentences() == 3
    assert [s.tokens[0].word for s in corpus.sentences()] == ["the", "a", "the"]


def test_token_forms_per_label_mode():
    assert CorpusUnrolls(LabelMode.IGNORE).token("dog", "nsubj") == "dog"
    assert CorpusUnrolls(LabelMode.FEATURES).token("dog", "nsubj") == "dog"
    assert CorpusUnrolls(LabelMode.CONCATENATE).token("dog", "nsubj") == "dog:nsubj"
