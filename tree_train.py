#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Train / test the dependency-tree RNN LM on JSON dependency books.

Phases: learn vocabulary -> assign word classes -> train (epochs) -> test

Saves (out_dir):
  - tree_lm.pt      model state_dict
  - vocab.txt       vocabulary with final class ids
  - labels.json     dependency-label vocabulary
  - config.json
  - tree_lm_ppl.png per-epoch perplexities
Prints:
  - train/val perplexities per epoch, test perplexity
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, TextIO, Tuple
import argparse
import copy
import json
import math
import random
import time
import numpy as np
import torch
import torch.nn as nn
from tqdm import tqdm

from corpus_unrolls import CorpusUnrolls, UnrollStep
from label_vocab import LabelMode, LabelVocabulary
from tree_rnn import TreeRnnLM
from vocabulary import EOS_TOKEN, NOT_FOUND, UNK_TOKEN, Vocabulary
from word_classes import ClassPartition, ExternalClasses, make_class_assigner, read_classes


DEFAULT_CONFIG = dict(
    hidden_size=100,
    num_classes=100,
    class_file=None,
    label_mode=int(LabelMode.IGNORE),
    min_count=1,
    lr=0.1,
    min_improvement=1.003,
    epochs=10,
    l2=1e-6,
    grad_clip=5.0,
    direct_size=0,
    direct_order=3,
    count_eos=True,
    seed=42,
    device="cpu",
    name="tree_lm",
)


def make_config(**overrides) -> dict:
    unknown = set(overrides) - set(DEFAULT_CONFIG)
    if unknown:
        raise ValueError(f"Unknown config keys: {sorted(unknown)}")
    cfg = dict(DEFAULT_CONFIG)
    cfg.update(overrides)
    return cfg


def set_seed(seed=42):
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    torch.cuda.manual_seed_all(seed)


class Phase(Enum):
    IDLE = "idle"
    VOCABULARY_LEARNING = "vocabulary_learning"
    CLASS_ASSIGNMENT = "class_assignment"
    TRAINING = "training"
    EVALUATING = "evaluating"


@dataclass
class EvaluationResult:
    perplexity: float
    log_prob: float
    word_count: int
    sentence_scores: List[float] = field(default_factory=list)
    oov_count: int = 0


# ---------------------------
# Learning-rate schedule
# ---------------------------
class LearningRateSchedule:
    """
    RNNLM-style schedule on the validation log-probability: keep the rate
    while each epoch improves by at least `min_improvement` (a ratio on the
    total log-probability), then halve it every epoch, and stop at the next
    insufficient improvement or after `max_epochs`.
    """

    def __init__(self, lr: float, min_improvement: float = 1.003, max_epochs: int = 10):
        self.lr = lr
        self.min_improvement = min_improvement
        self.max_epochs = max_epochs
        self.best = -math.inf
        self.halving = False
        self.improved = False
        self.epoch = 0

    def update(self, val_log_prob: float) -> bool:
        """Record one epoch's validation score; False means stop training."""
        self.epoch += 1
        self.improved = val_log_prob > self.best
        insufficient = val_log_prob * self.min_improvement < self.best
        if self.improved:
            self.best = val_log_prob
        if insufficient:
            if self.halving:
                return False
            self.halving = True
        if self.halving:
            self.lr /= 2
        return self.epoch < self.max_epochs


# ---------------------------
# Trainer
# ---------------------------
class TreeLMTrainer:
    def __init__(self, config: Optional[dict] = None):
        self.config = make_config(**(config or {}))
        self.label_mode = LabelMode(self.config["label_mode"])
        self.device = torch.device(self.config["device"])
        self.train_corpus = CorpusUnrolls(self.label_mode)
        self.valid_corpus = CorpusUnrolls(self.label_mode)
        self.vocab = Vocabulary()
        self.labels = LabelVocabulary()
        self.partition: Optional[ClassPartition] = None
        self.model: Optional[TreeRnnLM] = None
        self.phase = Phase.IDLE
        self.history: Dict[str, List[float]] = {"train_ppl": [], "val_ppl": [], "lr": []}

    def add_book_train(self, path) -> None:
        self.train_corpus.add_book(path)

    def add_book_valid(self, path) -> None:
        self.valid_corpus.add_book(path)

    @property
    def uses_class_file(self) -> bool:
        return bool(self.config["class_file"])

    # ---------------------------
    # Setup phases
    # ---------------------------
    def learn_vocabulary(self) -> Vocabulary:
        if self.model is not None:
            raise RuntimeError("Vocabulary is fixed once word classes are assigned")
        if not len(self.train_corpus):
            raise RuntimeError("No training books were added")
        self.phase = Phase.VOCABULARY_LEARNING

        vocab, labels = Vocabulary(), LabelVocabulary()
        for sentence in self.train_corpus.sentences():
            for tok in sentence.tokens:
                vocab.add_or_increment(self.train_corpus.token(tok.word, tok.label))
                labels.add(tok.label)
            vocab.add_or_increment(EOS_TOKEN)

        pruned = vocab.prune(self.config["min_count"])
        if self.uses_class_file:
            missing = vocab.apply_classes(read_classes(self.config["class_file"]))
            vocab.sort_by_class()
            if missing:
                print(f"  {missing} words missing from the class file joined the {EOS_TOKEN} class")
        else:
            vocab.sort_by_frequency()

        self.vocab, self.labels = vocab, labels
        print(f"Vocab learned. Size={len(vocab)} words ({pruned} pruned below "
              f"min_count={self.config['min_count']}), {vocab.total_count} tokens, {len(labels)} labels.")
        return vocab

    def assign_classes(self) -> ClassPartition:
        if not len(self.vocab):
            raise RuntimeError("Learn the vocabulary before assigning classes")
        if self.model is not None:
            raise RuntimeError("Word classes were already assigned")
        self.phase = Phase.CLASS_ASSIGNMENT

        assigner = make_class_assigner(self.uses_class_file)
        num_classes = None if self.uses_class_file else self.config["num_classes"]
        self.partition = assigner.assign(self.vocab, num_classes)
        self.model = self._build_model()
        print(f"Assigned {self.partition.num_classes} word classes ({assigner.name}).")
        return self.partition

    def _build_model(self) -> TreeRnnLM:
        label_size = len(self.labels) if self.label_mode == LabelMode.FEATURES else 0
        return TreeRnnLM(
            vocab_size=len(self.vocab),
            partition=self.partition,
            hidden_size=self.config["hidden_size"],
            label_size=label_size,
            direct_size=self.config["direct_size"],
            direct_order=self.config["direct_order"],
        ).to(self.device)

    def _require_model(self) -> TreeRnnLM:
        if self.model is None:
            raise RuntimeError("Model is not built: learn the vocabulary and assign classes first")
        return self.model

    # ---------------------------
    # Unrolls
    # ---------------------------
    def _word_index(self, corpus: CorpusUnrolls, step: UnrollStep) -> int:
        idx = self.vocab.index_of(corpus.token(step.word, step.label))
        if idx == NOT_FOUND:
            idx = self.vocab.index_of(UNK_TOKEN)
        return idx

    def _label_index(self, step: UnrollStep) -> int:
        if self.label_mode != LabelMode.FEATURES or step.label is None:
            return NOT_FOUND
        return self.labels.index_of(step.label)

    def _unroll_log_probs(
        self, corpus: CorpusUnrolls, unroll: List[UnrollStep]
    ) -> List[Tuple[Optional[UnrollStep], Optional[torch.Tensor]]]:
        """
        Run one traversal from a fresh state: </s> is the first input, every
        node is predicted in turn, then </s> closes the path (step None).
        Nodes unknown to the vocabulary come back with log-prob None.
        """
        model = self.model
        eos = self.vocab.index_of(EOS_TOKEN)
        state = model.init_state()
        state.reset_labels()
        prev = eos
        out = []
        for step in unroll:
            target = self._word_index(corpus, step)
            state = model.step(state, prev, self._label_index(step))
            out.append((step, model.log_prob(state, target) if target != NOT_FOUND else None))
            prev = target
        state = model.step(state, prev)
        out.append((None, model.log_prob(state, eos)))
        return out

    # ---------------------------
    # Training / Eval
    # ---------------------------
    def train_one_epoch(self, optimizer: torch.optim.Optimizer, epoch: int) -> float:
        model = self.model
        model.train()
        total_loss, total_steps = 0.0, 0
        sentences = list(self.train_corpus.sentences())
        pbar = tqdm(sentences, desc=f"Epoch {epoch}/{self.config['epochs']}", leave=False)
        for sentence in pbar:
            for unroll in sentence.unrolls:
                optimizer.zero_grad()
                log_probs = [lp for _, lp in self._unroll_log_probs(self.train_corpus, unroll) if lp is not None]
                loss = -torch.stack(log_probs).sum()
                loss.backward()
                nn.utils.clip_grad_norm_(model.parameters(), self.config["grad_clip"])
                optimizer.step()
                total_loss += loss.item()
                total_steps += len(log_probs)
            pbar.set_postfix(train_loss=f"{(total_loss/max(1,total_steps)):.4f}")
        return math.exp(total_loss / max(1, total_steps))

    @torch.no_grad()
    def evaluate(self, corpus: CorpusUnrolls, feature_fh: Optional[TextIO] = None) -> EvaluationResult:
        """
        Score every tree node once (its first prediction in the sentence)
        and, with count_eos, one </s> per sentence.
        """
        model = self._require_model()
        model.eval()
        count_eos = self.config["count_eos"]
        sentence_scores: List[float] = []
        words, oov = 0, 0
        for s_idx, sentence in enumerate(corpus.sentences()):
            score = 0.0
            last = len(sentence.unrolls) - 1
            for u_idx, unroll in enumerate(sentence.unrolls):
                for step, lp in self._unroll_log_probs(corpus, unroll):
                    if step is None:
                        if not (count_eos and u_idx == last):
                            continue
                        word, label = EOS_TOKEN, "-"
                    elif not step.is_new:
                        continue
                    elif lp is None:
                        oov += 1
                        continue
                    else:
                        word, label = step.word, step.label or "-"
                    score += lp.item()
                    words += 1
                    if feature_fh is not None:
                        feature_fh.write(f"{s_idx}\t{word}\t{label}\t{lp.item():.6f}\n")
            sentence_scores.append(score)

        log_prob = sum(sentence_scores)
        ppl = math.exp(-log_prob / words) if words else float("inf")
        return EvaluationResult(ppl, log_prob, words, sentence_scores, oov)

    def train(self) -> Dict[str, List[float]]:
        model = self._require_model()
        self.phase = Phase.TRAINING
        cfg = self.config
        valid = self.valid_corpus
        if not len(valid):
            print("(No validation books; validating on the training books)")
            valid = self.train_corpus

        optimizer = torch.optim.SGD(model.parameters(), lr=cfg["lr"], weight_decay=cfg["l2"])
        schedule = LearningRateSchedule(cfg["lr"], cfg["min_improvement"], cfg["epochs"])
        best_state = copy.deepcopy(model.state_dict())
        start_time = time.time()

        for epoch in range(1, cfg["epochs"] + 1):
            lr = schedule.lr
            train_ppl = self.train_one_epoch(optimizer, epoch)
            val = self.evaluate(valid)
            keep_going = schedule.update(val.log_prob)

            # keep the best weights, roll back an epoch that made things worse
            if schedule.improved:
                best_state = copy.deepcopy(model.state_dict())
            else:
                model.load_state_dict(best_state)

            self.history["train_ppl"].append(train_ppl)
            self.history["val_ppl"].append(val.perplexity)
            self.history["lr"].append(lr)
            print(f"[epoch {epoch:02d}] train_ppl={train_ppl:.2f}  val_ppl={val.perplexity:.2f}  lr={lr:.5f}")

            for group in optimizer.param_groups:
                group["lr"] = schedule.lr
            if not keep_going:
                break

        print(f"Training time: {time.time() - start_time:.1f}s")
        self.phase = Phase.IDLE
        return self.history

    def test(self, book, feature_fh: Optional[TextIO] = None) -> EvaluationResult:
        self._require_model()
        self.phase = Phase.EVALUATING
        try:
            corpus = CorpusUnrolls(self.label_mode)
            corpus.add_book(book)
            result = self.evaluate(corpus, feature_fh)
        finally:
            self.phase = Phase.IDLE
        print(f"[test] {Path(book).name}: perplexity={result.perplexity:.2f}  "
              f"words={result.word_count}  oov={result.oov_count}")
        return result

    def test_books(self, books: List[Path], feature_file: Optional[Path] = None) -> List[EvaluationResult]:
        """Test each book in turn; all of them share one feature dump."""
        if feature_file is None:
            return [self.test(book) for book in books]
        with open(feature_file, "w", encoding="utf-8") as fh:
            return [self.test(book, fh) for book in books]

    # ---------------------------
    # Checkpoints
    # ---------------------------
    def save(self, out_dir: Path) -> None:
        model = self._require_model()
        out_dir = Path(out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        torch.save(model.state_dict(), out_dir / "tree_lm.pt")
        self.vocab.save(out_dir / "vocab.txt")
        self.labels.save(out_dir / "labels.json")
        cfg = dict(self.config, vocab_size=len(self.vocab), num_word_classes=self.partition.num_classes)
        (out_dir / "config.json").write_text(json.dumps(cfg, indent=2), encoding="utf-8")

    @classmethod
    def load(cls, out_dir: Path, device: Optional[str] = None) -> "TreeLMTrainer":
        out_dir = Path(out_dir)
        cfg = json.loads((out_dir / "config.json").read_text(encoding="utf-8"))
        vocab_size = cfg.pop("vocab_size")
        cfg.pop("num_word_classes")
        if device is not None:
            cfg["device"] = device
        trainer = cls(cfg)
        trainer.vocab = Vocabulary.load(out_dir / "vocab.txt", vocab_size)
        trainer.labels = LabelVocabulary.load(out_dir / "labels.json")
        trainer.partition = ExternalClasses().assign(trainer.vocab)
        trainer.model = trainer._build_model()
        trainer.model.load_state_dict(torch.load(out_dir / "tree_lm.pt", map_location=trainer.device))
        return trainer

    def plot_history(self, plot_path: Path) -> None:
        try:
            import matplotlib; matplotlib.use("Agg"); import matplotlib.pyplot as plt
            epochs = range(1, len(self.history["train_ppl"]) + 1)
            plt.figure()
            plt.plot(epochs, self.history["train_ppl"], label="train")
            plt.plot(epochs, self.history["val_ppl"], label="val")
            plt.xlabel("epoch"); plt.ylabel("perplexity"); plt.title(self.config["name"])
            plt.legend(); plt.tight_layout(); plt.savefig(plot_path); plt.close()
            print(f"Saved plot: {plot_path}")
        except Exception as e:
            print(f"(Plotting skipped: {e})")


# ---------------------------
# Orchestrator
# ---------------------------
def run_training(
    config: dict,
    train_books: List[Path],
    valid_books: List[Path],
    test_books: List[Path],
    out_dir: Path,
    feature_file: Optional[Path] = None,
) -> TreeLMTrainer:
    set_seed(config.get("seed", DEFAULT_CONFIG["seed"]))
    trainer = TreeLMTrainer(config)
    for book in train_books:
        trainer.add_book_train(book)
    for book in valid_books:
        trainer.add_book_valid(book)

    trainer.learn_vocabulary()
    trainer.assign_classes()
    trainer.train()
    trainer.save(out_dir)
    trainer.plot_history(Path(out_dir) / f"{trainer.config['name']}_ppl.png")

    trainer.test_books(test_books, feature_file)
    return trainer


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--train", type=Path, action="append", default=[], help="JSON book; repeatable")
    ap.add_argument("--valid", type=Path, action="append", default=[])
    ap.add_argument("--test", type=Path, action="append", default=[])
    ap.add_argument("--out_dir", type=Path, default=Path("checkpoints"))
    ap.add_argument("--load_dir", type=Path, default=None, help="test a saved model instead of training")
    ap.add_argument("--feature_file", type=Path, default=None)
    ap.add_argument("--class_file", type=str, default=None)
    ap.add_argument("--num_classes", type=int, default=100)
    ap.add_argument("--hidden_size", type=int, default=100)
    ap.add_argument("--label_mode", type=int, choices=[0, 1, 2], default=0)
    ap.add_argument("--min_count", type=int, default=1)
    ap.add_argument("--lr", type=float, default=0.1)
    ap.add_argument("--min_improvement", type=float, default=1.003)
    ap.add_argument("--epochs", type=int, default=10)
    ap.add_argument("--l2", type=float, default=1e-6)
    ap.add_argument("--grad_clip", type=float, default=5.0)
    ap.add_argument("--direct_size", type=int, default=0)
    ap.add_argument("--direct_order", type=int, default=3)
    ap.add_argument("--count_eos", type=int, choices=[0, 1], default=1)
    ap.add_argument("--seed", type=int, default=42)
    ap.add_argument("--name", type=str, default="tree_lm")
    args = ap.parse_args()

    device = "cuda" if torch.cuda.is_available() else "cpu"
    if args.load_dir is not None:
        trainer = TreeLMTrainer.load(args.load_dir, device)
        trainer.test_books(args.test, args.feature_file)
        return
    if not args.train:
        ap.error("at least one --train book is required (or --load_dir)")

    config = make_config(
        hidden_size=args.hidden_size, num_classes=args.num_classes, class_file=args.class_file,
        label_mode=args.label_mode, min_count=args.min_count, lr=args.lr,
        min_improvement=args.min_improvement, epochs=args.epochs, l2=args.l2,
        grad_clip=args.grad_clip, direct_size=args.direct_size, direct_order=args.direct_order,
        count_eos=bool(args.count_eos), seed=args.seed, device=device, name=args.name,
    )
    run_training(config, args.train, args.valid, args.test, args.out_dir, args.feature_file)


if __name__ == "__main__":
    main()
