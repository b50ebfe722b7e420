#!/usr/bin/env python3
"""
Dataset classes that build fixed-size groups for the coupled cluster loss.
"""

import numpy as np
import torch
from torch.utils.data import Dataset
from collections import defaultdict
from typing import List, Tuple

class GroupedEmbeddingDataset(Dataset):
    """Dataset that returns one group per item: anchor identity rows first, then negatives."""

    def __init__(self, x: np.ndarray, y: np.ndarray, group_size: int, num_positives: int = 2):
        """
        Args:
            x: Feature array [num, in_dim]
            y: Label array [num]
            group_size: Samples per group (N)
            num_positives: Rows of the anchor identity in each group
        """
        if num_positives < 2 or num_positives >= group_size:
            raise ValueError(f"num_positives must be in [2, {group_size - 1}], got {num_positives}")
        self.x = x
        self.y = y
        self.group_size = group_size
        self.num_positives = num_positives

        # Build label to index mapping
        self.lbl2idx = defaultdict(list)
        for i, lbl in enumerate(y):
            self.lbl2idx[lbl].append(i)

        if len(self.lbl2idx) < 2:
            raise ValueError("Need at least 2 classes to build groups")

        # Anchors must supply num_positives distinct rows
        self.anchor_labels = [l for l, idxs in self.lbl2idx.items() if len(idxs) >= num_positives]
        if not self.anchor_labels:
            raise ValueError(f"Need a label with {num_positives}+ samples to act as anchor")
        self.anchor_rows = [i for l in self.anchor_labels for i in self.lbl2idx[l]]

    def __len__(self) -> int:
        return len(self.anchor_rows)

    def __getitem__(self, idx: int) -> Tuple[torch.Tensor, torch.Tensor]:
        anchor_idx = self.anchor_rows[idx]
        anchor_label = self.y[anchor_idx]

        # Positives: the anchor row plus distinct rows of the same class
        others = np.array([i for i in self.lbl2idx[anchor_label] if i != anchor_idx], dtype=int)
        pos_idx = [anchor_idx] + list(np.random.choice(others, self.num_positives - 1, replace=False))

        # Negatives: any class but the anchor's
        neg_pool = np.array([i for i in range(len(self.y)) if self.y[i] != anchor_label], dtype=int)
        num_neg = self.group_size - self.num_positives
        neg_idx = list(np.random.choice(neg_pool, num_neg, replace=len(neg_pool) < num_neg))

        rows = pos_idx + neg_idx
        x = torch.from_numpy(np.asarray(self.x[rows], dtype=np.float32))
        y = torch.as_tensor(np.asarray(self.y[rows]))
        return x, y

def collate_groups(batch: List[Tuple[torch.Tensor, torch.Tensor]]) -> Tuple[torch.Tensor, torch.Tensor]:
    """Flatten a list of groups into the group-major [G*N, D] / [G*N] layout."""
    xs, ys = zip(*batch)
    return torch.cat(xs, dim=0), torch.cat(ys, dim=0)

def make_clustered_data(num_classes: int = 8, per_class: int = 32, dim: int = 16,
                        spread: float = 0.5, seed: int = 0) -> Tuple[np.ndarray, np.ndarray]:
    """
    Synthetic Gaussian clusters for smoke runs.

    Returns:
        Features [num_classes * per_class, dim], integer labels
    """
    rng = np.random.default_rng(seed)
    centers = rng.normal(0, 3.0, size=(num_classes, dim))
    x = np.concatenate([c + spread * rng.normal(size=(per_class, dim)) for c in centers])
    y = np.repeat(np.arange(num_classes), per_class)
    return x.astype(np.float32), y
