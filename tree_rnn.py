#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Dependency-tree RNN LM
- Elman recurrent layer over tree unrolls, optional dependency-label features
- Class-factorised (hierarchical) softmax: P(w|h) = P(class(w)|h) * P(w|class(w),h)
- Optional hashed direct n-gram connections into the class and word scores
- Pure module (no I/O with corpus files).
"""

from __future__ import annotations
from typing import List, Optional
import torch
import torch.nn as nn
import torch.nn.functional as F

from vocabulary import NOT_FOUND
from word_classes import ClassPartition


class RnnState:
    """
    Per-step state of one traversal: hidden activations, the previous
    hidden activations, the label feature vector and the recent input
    words (most recent first) used by the direct connections.
    """

    def __init__(
        self,
        hidden: torch.Tensor,
        prev_hidden: Optional[torch.Tensor] = None,
        feature_labels: Optional[torch.Tensor] = None,
        history: Optional[List[int]] = None,
    ):
        self.hidden = hidden
        self.prev_hidden = prev_hidden if prev_hidden is not None else hidden
        self.feature_labels = feature_labels
        self.history = history or []

    def reset_labels(self) -> None:
        if self.feature_labels is not None:
            self.feature_labels = torch.zeros_like(self.feature_labels)

    def update_labels(self, label_index: int) -> None:
        # Fresh tensor each step: the previous one is saved by autograd.
        if self.feature_labels is None:
            return
        labels = torch.zeros_like(self.feature_labels)
        if label_index != NOT_FOUND:
            labels[label_index] = 1.0
        self.feature_labels = labels


class TreeRnnLM(nn.Module):
    """
    input word -> Embedding ─┐
    previous hidden -> Linear├─> sigmoid -> hidden -> class scores
    label one-hot -> Linear ─┘                     -> word scores (class members only)
    """

    def __init__(
        self,
        vocab_size: int,
        partition: ClassPartition,
        hidden_size: int = 100,
        label_size: int = 0,
        direct_size: int = 0,
        direct_order: int = 3,
    ):
        super().__init__()
        if len(partition.word_class) != vocab_size:
            raise ValueError(f"partition covers {len(partition.word_class)} words, vocabulary has {vocab_size}")
        if direct_size == 1 or direct_size < 0:
            raise ValueError("direct_size must be 0 (disabled) or at least 2")

        self.vocab_size = vocab_size
        self.hidden_size = hidden_size
        self.label_size = label_size
        self.num_classes = partition.num_classes
        self.direct_order = direct_order

        self.embed = nn.Embedding(vocab_size, hidden_size)
        self.recurrent = nn.Linear(hidden_size, hidden_size, bias=False)
        self.label_proj = nn.Linear(label_size, hidden_size, bias=False) if label_size > 0 else None
        self.class_out = nn.Linear(hidden_size, self.num_classes)
        self.word_out = nn.Linear(hidden_size, vocab_size)
        self.direct = nn.Embedding(direct_size, 1) if direct_size > 0 else None

        # Class layout: members of class c are class_members[start[c]:start[c]+size[c]]
        self._word_class = list(partition.word_class)
        self._word_slot = list(partition.word_slot)
        self._class_start, self._class_size, flat = [], [], []
        for members in partition.class_words:
            self._class_start.append(len(flat))
            self._class_size.append(len(members))
            flat.extend(members)
        self.register_buffer("class_members", torch.tensor(flat, dtype=torch.long), persistent=False)
        self.register_buffer("class_ids", torch.arange(self.num_classes, dtype=torch.long), persistent=False)

        self._init_weights()

    def _init_weights(self):
        for name, p in self.named_parameters():
            if p.dim() > 1 and "weight" in name:
                nn.init.xavier_uniform_(p)
        if self.direct is not None:
            nn.init.zeros_(self.direct.weight)

    @property
    def device(self) -> torch.device:
        return self.class_out.weight.device

    def members(self, class_index: int) -> torch.Tensor:
        start = self._class_start[class_index]
        return self.class_members[start : start + self._class_size[class_index]]

    def init_state(self) -> RnnState:
        hidden = torch.zeros(self.hidden_size, device=self.device)
        labels = torch.zeros(self.label_size, device=self.device) if self.label_proj is not None else None
        return RnnState(hidden, feature_labels=labels)

    # --------------------
    # Forward
    # --------------------
    def step(self, state: RnnState, input_index: int, label_index: int = NOT_FOUND) -> RnnState:
        """
        Consume one input word (NOT_FOUND for no word input) and the label
        of the node about to be predicted; return the next state.
        """
        x = self.recurrent(state.hidden)
        if input_index != NOT_FOUND:
            x = x + self.embed.weight[input_index]
        new = RnnState(x, state.hidden, state.feature_labels, state.history)
        if self.label_proj is not None:
            new.update_labels(label_index)
            x = x + self.label_proj(new.feature_labels)
        new.hidden = torch.sigmoid(x)
        new.history = ([input_index] + state.history)[: max(self.direct_order - 1, 0)]
        return new

    def log_prob(self, state: RnnState, target_index: int) -> torch.Tensor:
        """log P(target | state), through the target's class only."""
        c = self._word_class[target_index]
        members = self.members(c)
        class_logits = self.class_out(state.hidden)
        word_logits = F.linear(state.hidden, self.word_out.weight[members], self.word_out.bias[members])
        if self.direct is not None:
            hashes = self._history_hashes(state.history)
            class_logits = class_logits + self._direct_scores(hashes, self.class_ids, 0)
            word_logits = word_logits + self._direct_scores(hashes, members, self._direct_half)
        return F.log_softmax(class_logits, dim=-1)[c] + F.log_softmax(word_logits, dim=-1)[self._word_slot[target_index]]

    def log_probs(self, state: RnnState) -> torch.Tensor:
        """Full distribution over the vocabulary, class by class: [vocab_size]."""
        class_logits = self.class_out(state.hidden)
        hashes = self._history_hashes(state.history) if self.direct is not None else None
        if hashes is not None:
            class_logits = class_logits + self._direct_scores(hashes, self.class_ids, 0)
        class_lp = F.log_softmax(class_logits, dim=-1)

        out = torch.empty(self.vocab_size, device=self.device)
        for c in range(self.num_classes):
            members = self.members(c)
            word_logits = F.linear(state.hidden, self.word_out.weight[members], self.word_out.bias[members])
            if hashes is not None:
                word_logits = word_logits + self._direct_scores(hashes, members, self._direct_half)
            out[members] = class_lp[c] + F.log_softmax(word_logits, dim=-1)
        return out

    # --------------------
    # Direct connections
    # --------------------
    @property
    def _direct_half(self) -> int:
        # first half of the table scores classes, second half scores words
        return self.direct.num_embeddings // 2

    def _history_hashes(self, history: List[int]) -> torch.Tensor:
        order = min(self.direct_order - 1, len(history))
        # int tuples hash deterministically across runs
        hashes = [hash((k,) + tuple(history[:k])) % self._direct_half for k in range(order + 1)]
        return torch.tensor(hashes, dtype=torch.long, device=self.device)

    def _direct_scores(self, hashes: torch.Tensor, outputs: torch.Tensor, offset: int) -> torch.Tensor:
        idx = (hashes.unsqueeze(1) + outputs.unsqueeze(0)) % self._direct_half + offset
        return self.direct(idx).squeeze(-1).sum(dim=0)
