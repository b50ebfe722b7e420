#!/usr/bin/env python3
"""
Coupled cluster loss for group-structured metric learning.

Each batch is split into contiguous groups of ``group_size`` samples. Inside a
group the repeated label is the anchor identity: its members are pulled toward
their mean embedding, and the negative closest to that mean is pushed away
with a margin. The backward pass is hand-written and only touches the margin
violating positives and the single hardest negative of every group.
"""

import logging
import warnings
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import torch
import torch.nn as nn

logger = logging.getLogger(__name__)


def partition_group(labels: Sequence) -> Tuple[List[int], List[int], Optional[object]]:
    """
    Split one group into positive and negative member indices.

    The anchor label is the first label seen twice while scanning in order.
    When no label repeats the anchor stays ``None`` and every member is
    classified as negative.

    Args:
        labels: The ``N`` labels of one group, in batch order

    Returns:
        pos_ids, neg_ids, anchor label
    """
    seen = set()
    anchor = None
    for lbl in labels:
        if lbl in seen:
            anchor = lbl
            break
        seen.add(lbl)

    pos_ids, neg_ids = [], []
    for j, lbl in enumerate(labels):
        if anchor is not None and lbl == anchor:
            pos_ids.append(j)
        else:
            neg_ids.append(j)
    return pos_ids, neg_ids, anchor


def group_centroid(embeddings: torch.Tensor, pos_ids: Sequence[int]) -> torch.Tensor:
    """Mean of the positive embeddings of one group ``[N, D] -> [D]``.

    An empty positive set gives a zero vector; such groups are skipped anyway.
    """
    if len(pos_ids) == 0:
        return embeddings.new_zeros(embeddings.size(1))
    return embeddings[list(pos_ids)].mean(0)


def select_hard_negative(dist_sq: torch.Tensor,
                         neg_ids: Sequence[int]) -> Tuple[Optional[int], Optional[float]]:
    """
    Find the negative closest to the centroid.

    Ties keep the first negative encountered in scan order.

    Args:
        dist_sq: Squared distances of the group members [N]
        neg_ids: In-group indices of the negatives

    Returns:
        In-group index and distance of the hardest negative, or (None, None)
    """
    best_idx, best_val = None, None
    for j in neg_ids:
        d = dist_sq[j].item()
        if best_val is None or d < best_val:
            best_idx, best_val = j, d
    return best_idx, best_val


@dataclass
class PassContext:
    """State produced by one forward pass and consumed by one backward pass."""
    group_size: int
    num_groups: int
    scale: float
    pos_ids: List[List[int]]
    neg_ids: List[List[int]]
    anchors: List[Optional[object]]
    neg_mask: torch.Tensor       # [G, N] dense negative membership
    centers: torch.Tensor        # [G, D]
    diff: torch.Tensor           # [G*N, D] scale * (f - center)
    dist_sq: torch.Tensor        # [G*N]
    pos_backward: torch.Tensor   # [G*N] margin violating positives
    neg_backward: torch.Tensor   # [G*N] hardest negatives
    hard_negatives: List[Optional[int]] = field(default_factory=list)
    hardest_positive_dist: List[Optional[float]] = field(default_factory=list)
    group_losses: List[Optional[float]] = field(default_factory=list)
    valid_groups: int = 0
    consumed: bool = False

    @property
    def valid_mask(self) -> torch.Tensor:
        """Boolean mask over groups that contributed to the loss [G]."""
        return torch.tensor([l is not None for l in self.group_losses], dtype=torch.bool)


def _check_inputs(embeddings: torch.Tensor, labels: torch.Tensor, group_size: int) -> torch.Tensor:
    if not isinstance(group_size, int) or group_size <= 0:
        raise ValueError(f"group_size must be a positive integer, got {group_size!r}")
    if embeddings.dim() != 2:
        raise ValueError(f"Expected embeddings of shape [B, D], got {tuple(embeddings.shape)}")
    num = embeddings.size(0)
    if labels.numel() != num or (labels.dim() > 1 and labels.size(0) != num):
        raise ValueError(f"Expected one label per sample ({num}), got shape {tuple(labels.shape)}")
    if num % group_size != 0:
        raise ValueError(f"Batch size {num} is not a multiple of group_size {group_size}")
    return labels.reshape(num)


def coupled_cluster_forward(embeddings: torch.Tensor, labels: torch.Tensor,
                            group_size: int, margin: float, scale: float = 1.0,
                            log_flag: bool = False) -> Tuple[torch.Tensor, PassContext]:
    """
    Compute the coupled cluster loss and the state its backward pass needs.

    Args:
        embeddings: Feature embeddings [G*N, D], group-major
        labels: Labels [G*N]
        group_size: Samples per group (N)
        margin: Hinge margin between positive and hardest negative distances
        scale: Factor applied to every difference vector
        log_flag: Log per-sample distances and per-group punishment

    Returns:
        Scalar loss, pass context
    """
    labels = _check_inputs(embeddings, labels, group_size)
    feats = embeddings.detach()
    n = group_size
    num_groups = feats.size(0) // n
    label_list = labels.tolist()

    neg_mask = torch.zeros(num_groups, n, dtype=torch.bool, device=feats.device)
    pass_ctx = PassContext(
        group_size=n,
        num_groups=num_groups,
        scale=scale,
        pos_ids=[],
        neg_ids=[],
        anchors=[],
        neg_mask=neg_mask,
        centers=feats.new_zeros(num_groups, feats.size(1)),
        diff=torch.zeros_like(feats),
        dist_sq=feats.new_zeros(feats.size(0)),
        pos_backward=torch.zeros(feats.size(0), dtype=torch.bool, device=feats.device),
        neg_backward=torch.zeros(feats.size(0), dtype=torch.bool, device=feats.device),
    )

    total = 0.0
    for i in range(num_groups):
        start = i * n
        group = feats[start:start + n]
        pos_ids, neg_ids, anchor = partition_group(label_list[start:start + n])
        pass_ctx.pos_ids.append(pos_ids)
        pass_ctx.neg_ids.append(neg_ids)
        pass_ctx.anchors.append(anchor)
        if neg_ids:
            neg_mask[i, neg_ids] = True
        pass_ctx.centers[i] = group_centroid(group, pos_ids)

        if len(neg_ids) == 0 or len(pos_ids) <= 1:
            pass_ctx.hard_negatives.append(None)
            pass_ctx.hardest_positive_dist.append(None)
            pass_ctx.group_losses.append(None)
            continue

        # f[j] - center, optionally rescaled
        diff = group - pass_ctx.centers[i]
        if scale != 1:
            diff = diff * scale
        dist = (diff * diff).sum(1)
        pass_ctx.diff[start:start + n] = diff
        pass_ctx.dist_sq[start:start + n] = dist
        if log_flag:
            for j in range(n):
                logger.info("i %d, j %d, d %.6f", i, j, dist[j].item())

        neg_j, neg_min_val = select_hard_negative(dist, neg_ids)
        pass_ctx.neg_backward[start + neg_j] = True
        pass_ctx.hard_negatives.append(start + neg_j)
        pass_ctx.hardest_positive_dist.append(dist[~neg_mask[i]].max().item())

        pos_mdist = 0.0
        for j in range(n):
            if neg_mask[i, j]:
                continue
            d = dist[j].item()
            mdist = max(d + margin - neg_min_val, 0.0)
            if log_flag:
                logger.info("j=%d, d=%.6f, neg_min_val=%.6f, mdist=%.6f", j, d, neg_min_val, mdist)
            if mdist > 0:
                pass_ctx.pos_backward[start + j] = True
            pos_mdist += mdist

        # average punishment
        pos_mdist /= len(pos_ids)
        if log_flag:
            logger.info("pos_mdist %.6f, neg_min_val %.6f", pos_mdist, neg_min_val)

        pass_ctx.group_losses.append(pos_mdist)
        total += pos_mdist
        pass_ctx.valid_groups += 1

    if pass_ctx.valid_groups == 0:
        warnings.warn("No valid group in batch (need >=2 positives and >=1 negative); "
                      "coupled cluster loss set to 0")
        loss = feats.new_zeros(())
    else:
        loss = feats.new_tensor(total / pass_ctx.valid_groups)
    return loss, pass_ctx


def coupled_cluster_backward(pass_ctx: PassContext, grad_output: torch.Tensor,
                             propagate_down: bool = True) -> Optional[torch.Tensor]:
    """
    Scatter the upstream gradient onto the flagged samples.

    Margin violating positives receive ``+scale * alpha * diff`` and the
    hardest negative of each group ``-scale * alpha * diff`` with
    ``alpha = grad_output / num_groups``. Every other sample gets zero.

    Args:
        pass_ctx: Context returned by the matching forward call
        grad_output: Gradient of the downstream objective w.r.t. the loss
        propagate_down: Whether the embeddings need a gradient

    Returns:
        Gradient w.r.t. the embeddings [G*N, D], or None
    """
    if pass_ctx.consumed:
        raise RuntimeError("PassContext already consumed by a backward pass; run forward again")
    pass_ctx.consumed = True
    if not propagate_down:
        return None

    alpha = grad_output.reshape(()) / pass_ctx.num_groups
    step = pass_ctx.scale * alpha
    grad = torch.zeros_like(pass_ctx.diff)
    pos = pass_ctx.pos_backward
    neg = pass_ctx.neg_backward & ~pos
    grad[pos] = step * pass_ctx.diff[pos]
    grad[neg] = -step * pass_ctx.diff[neg]
    return grad


class CoupledClusterFunction(torch.autograd.Function):
    """Autograd binding that keeps the pass context on the graph node."""

    @staticmethod
    def forward(ctx, embeddings, labels, group_size, margin, scale, log_flag):
        loss, pass_ctx = coupled_cluster_forward(embeddings, labels, group_size,
                                                 margin, scale, log_flag)
        ctx.pass_ctx = pass_ctx
        return loss

    @staticmethod
    def backward(ctx, grad_output):
        grad = coupled_cluster_backward(ctx.pass_ctx, grad_output, ctx.needs_input_grad[0])
        return grad, None, None, None, None, None


class CoupledClusterLoss(nn.Module):
    """Coupled cluster loss over fixed-size groups."""

    def __init__(self, group_size: int, margin: float = 1.0, scale: float = 1.0,
                 log_flag: bool = False):
        """
        Args:
            group_size: Samples per group (N)
            margin: Hinge margin
            scale: Factor applied to difference vectors
            log_flag: Verbose per-sample diagnostics
        """
        super().__init__()
        if group_size <= 0:
            raise ValueError(f"group_size must be positive, got {group_size}")
        if margin < 0:
            raise ValueError(f"margin must be >= 0, got {margin}")
        self.group_size = group_size
        self.margin = margin
        self.scale = scale
        self.log_flag = log_flag
        self.last_context: Optional[PassContext] = None
        logger.info("Set loss scale is %s", scale)

    def forward(self, embeddings: torch.Tensor, labels: torch.Tensor) -> torch.Tensor:
        """
        Args:
            embeddings: Feature embeddings [G*N, D]
            labels: Labels [G*N]

        Returns:
            Coupled cluster loss
        """
        if not torch.is_grad_enabled() or not embeddings.requires_grad:
            loss, self.last_context = coupled_cluster_forward(
                embeddings, labels, self.group_size, self.margin, self.scale, self.log_flag)
            return loss
        loss = CoupledClusterFunction.apply(embeddings, labels, self.group_size,
                                            self.margin, self.scale, self.log_flag)
        self.last_context = loss.grad_fn.pass_ctx
        return loss

    def extra_repr(self) -> str:
        return f"group_size={self.group_size}, margin={self.margin}, scale={self.scale}"
