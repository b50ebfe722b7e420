"""
Test Coupled Cluster Loss

Covers partitioning, centroid and hard-negative selection, the margin loss
and the selective gradient scatter, both through the functional API and
through autograd.
"""

import logging

import pytest
import torch

from coupled_cluster.losses import (
    CoupledClusterLoss,
    coupled_cluster_backward,
    coupled_cluster_forward,
    group_centroid,
    partition_group,
    select_hard_negative,
)


def scenario_a():
    emb = torch.tensor([[0., 0.], [2., 0.], [10., 10.], [10., -10.]], dtype=torch.float64)
    labels = torch.tensor([1, 1, 2, 3])
    return emb, labels


def scenario_b():
    emb, labels = scenario_a()
    emb[2] = torch.tensor([2., 0.], dtype=torch.float64)
    return emb, labels


def random_batch(num_groups=6, group_size=5, dim=7, seed=0):
    g = torch.Generator().manual_seed(seed)
    emb = torch.randn(num_groups * group_size, dim, generator=g, dtype=torch.float64)
    labels = []
    for i in range(num_groups):
        # two members of identity 100+i, the rest unique
        labels += [100 + i, 100 + i] + [1000 * (i + 1) + k for k in range(group_size - 2)]
    return emb, torch.tensor(labels)


# ---------------------------------------------------------------- partitioning

def test_partition_first_repeat_is_anchor():
    pos, neg, anchor = partition_group([1, 2, 2, 1])
    assert anchor == 2
    assert pos == [1, 2]
    assert neg == [0, 3]


def test_partition_multiple_duplicates_uses_scan_order():
    pos, neg, anchor = partition_group([3, 3, 4, 4])
    assert anchor == 3
    assert pos == [0, 1]
    assert neg == [2, 3]


def test_partition_no_repeat_is_all_negative():
    pos, neg, anchor = partition_group([-1, 5, 6, 7])
    assert anchor is None
    assert pos == []
    assert neg == [0, 1, 2, 3]


def test_group_centroid_empty_positive_set_is_zero():
    emb = torch.randn(4, 3)
    c = group_centroid(emb, [])
    assert torch.equal(c, torch.zeros(3))


def test_select_hard_negative_ties_keep_first():
    dist = torch.tensor([0.5, 3.0, 2.0, 2.0, 7.0])
    assert select_hard_negative(dist, [1, 3, 2, 4]) == (3, 2.0)
    assert select_hard_negative(dist, []) == (None, None)


# ---------------------------------------------------------------- scenarios

def test_scenario_a_no_violation():
    emb, labels = scenario_a()
    loss, ctx = coupled_cluster_forward(emb, labels, group_size=4, margin=1.0)

    assert loss.item() == 0.0
    assert ctx.pos_ids == [[0, 1]]
    assert ctx.neg_ids == [[2, 3]]
    assert torch.allclose(ctx.centers[0], torch.tensor([1., 0.], dtype=torch.float64))
    assert torch.allclose(ctx.dist_sq, torch.tensor([1., 1., 181., 181.], dtype=torch.float64))
    # equal distances: first negative wins
    assert ctx.hard_negatives == [2]
    assert ctx.neg_backward.tolist() == [False, False, True, False]
    assert not ctx.pos_backward.any()


def test_scenario_a_gradient_only_on_hard_negative():
    emb, labels = scenario_a()
    _, ctx = coupled_cluster_forward(emb, labels, group_size=4, margin=1.0)
    grad = coupled_cluster_backward(ctx, torch.tensor(1.0, dtype=torch.float64))

    expected = torch.zeros(4, 2, dtype=torch.float64)
    expected[2] = torch.tensor([-9., -10.])
    assert torch.allclose(grad, expected)


def test_scenario_b_violation():
    emb, labels = scenario_b()
    loss, ctx = coupled_cluster_forward(emb, labels, group_size=4, margin=1.0)

    assert loss.item() == pytest.approx(1.0)
    assert ctx.hard_negatives == [2]
    assert ctx.group_losses == [pytest.approx(1.0)]
    assert ctx.pos_backward.tolist() == [True, True, False, False]

    grad = coupled_cluster_backward(ctx, torch.tensor(1.0, dtype=torch.float64))
    expected = torch.tensor([[-1., 0.], [1., 0.], [-1., 0.], [0., 0.]], dtype=torch.float64)
    assert torch.allclose(grad, expected)


def test_scenario_b_through_autograd():
    emb, labels = scenario_b()
    emb.requires_grad_(True)
    criterion = CoupledClusterLoss(group_size=4, margin=1.0)

    loss = criterion(emb, labels)
    loss.backward()

    assert loss.item() == pytest.approx(1.0)
    expected = torch.tensor([[-1., 0.], [1., 0.], [-1., 0.], [0., 0.]], dtype=torch.float64)
    assert torch.allclose(emb.grad, expected)
    assert criterion.last_context.consumed


def test_scenario_c_group_without_anchor_is_skipped():
    emb_b, labels_b = scenario_b()
    emb_c = torch.tensor([[5., 5.], [6., 1.], [0., 3.], [1., 1.]], dtype=torch.float64)
    emb = torch.cat([emb_c, emb_b])
    labels = torch.cat([torch.tensor([7, 8, 9, 10]), labels_b])

    loss, ctx = coupled_cluster_forward(emb, labels, group_size=4, margin=1.0)

    # only the second group counts, in both sum and count
    assert ctx.valid_groups == 1
    assert ctx.valid_mask.tolist() == [False, True]
    assert loss.item() == pytest.approx(1.0)
    assert ctx.pos_ids[0] == []
    assert ctx.hard_negatives == [None, 6]

    grad = coupled_cluster_backward(ctx, torch.tensor(1.0, dtype=torch.float64))
    assert torch.equal(grad[:4], torch.zeros(4, 2, dtype=torch.float64))
    # alpha divides by all groups, not only valid ones
    assert torch.allclose(grad[4], torch.tensor([-0.5, 0.], dtype=torch.float64))


def test_group_without_negatives_is_skipped():
    emb = torch.randn(8, 3, dtype=torch.float64)
    labels = torch.tensor([1, 1, 1, 1, 2, 2, 3, 4])
    _, ctx = coupled_cluster_forward(emb, labels, group_size=4, margin=0.5)
    assert ctx.valid_groups == 1
    assert ctx.group_losses[0] is None


def test_no_valid_group_falls_back_to_zero_loss():
    emb = torch.randn(4, 3, requires_grad=True)
    labels = torch.tensor([1, 2, 3, 4])
    criterion = CoupledClusterLoss(group_size=4, margin=1.0)

    with pytest.warns(UserWarning, match="No valid group"):
        loss = criterion(emb, labels)
    loss.backward()

    assert loss.item() == 0.0
    assert torch.equal(emb.grad, torch.zeros(4, 3))


# ---------------------------------------------------------------- properties

def test_centroid_is_mean_of_positives():
    emb, labels = random_batch()
    _, ctx = coupled_cluster_forward(emb, labels, group_size=5, margin=1.0)
    for i, pos in enumerate(ctx.pos_ids):
        rows = emb[[5 * i + j for j in pos]]
        assert torch.allclose((rows - ctx.centers[i]).sum(0), torch.zeros(7, dtype=torch.float64),
                              atol=1e-10)


def test_hard_negative_has_minimum_distance():
    emb, labels = random_batch(seed=3)
    _, ctx = coupled_cluster_forward(emb, labels, group_size=5, margin=1.0)
    for i, neg in enumerate(ctx.neg_ids):
        hard = ctx.hard_negatives[i]
        for j in neg:
            assert ctx.dist_sq[5 * i + j] >= ctx.dist_sq[hard]


def test_loss_is_non_negative_and_averaged():
    for seed in range(5):
        emb, labels = random_batch(seed=seed)
        loss, ctx = coupled_cluster_forward(emb, labels, group_size=5, margin=2.0)
        assert loss.item() >= 0
        assert loss.item() == pytest.approx(sum(ctx.group_losses) / ctx.valid_groups)


def test_gradient_zero_for_unflagged_samples():
    emb, labels = random_batch(seed=1)
    _, ctx = coupled_cluster_forward(emb, labels, group_size=5, margin=2.0)
    grad = coupled_cluster_backward(ctx, torch.tensor(1.0, dtype=torch.float64))
    unflagged = ~(ctx.pos_backward | ctx.neg_backward)
    assert unflagged.any()
    assert torch.equal(grad[unflagged], torch.zeros_like(grad[unflagged]))
    assert ctx.neg_backward.sum().item() == 6


def test_upstream_gradient_divided_by_group_count():
    emb, labels = random_batch(num_groups=2, seed=4)
    _, ctx = coupled_cluster_forward(emb, labels, group_size=5, margin=50.0)
    grad = coupled_cluster_backward(ctx, torch.tensor(2.0, dtype=torch.float64))
    # alpha = 2 / 2 = 1
    pos = ctx.pos_backward
    assert pos.any()
    assert torch.allclose(grad[pos], ctx.diff[pos])
    assert torch.allclose(grad[ctx.neg_backward], -ctx.diff[ctx.neg_backward])


def test_scale_squares_distances():
    emb, labels = random_batch(seed=2)
    _, ctx1 = coupled_cluster_forward(emb, labels, group_size=5, margin=1.0, scale=1.0)
    _, ctx3 = coupled_cluster_forward(emb, labels, group_size=5, margin=1.0, scale=3.0)
    assert torch.allclose(ctx3.dist_sq, 9 * ctx1.dist_sq)
    assert torch.allclose(ctx3.diff, 3 * ctx1.diff)


def test_scale_in_gradient():
    emb, labels = scenario_b()
    loss, ctx = coupled_cluster_forward(emb, labels, group_size=4, margin=1.0, scale=3.0)
    # distances 9, 9, 9, 1629; both positives violate by 1
    assert loss.item() == pytest.approx(1.0)
    grad = coupled_cluster_backward(ctx, torch.tensor(1.0, dtype=torch.float64))
    expected = torch.tensor([[-9., 0.], [9., 0.], [-9., 0.], [0., 0.]], dtype=torch.float64)
    assert torch.allclose(grad, expected)


def test_forward_is_idempotent():
    emb, labels = random_batch(seed=5)
    loss1, ctx1 = coupled_cluster_forward(emb, labels, group_size=5, margin=1.5)
    loss2, ctx2 = coupled_cluster_forward(emb, labels, group_size=5, margin=1.5)
    assert loss1.item() == loss2.item()
    assert torch.equal(ctx1.pos_backward, ctx2.pos_backward)
    assert torch.equal(ctx1.neg_backward, ctx2.neg_backward)
    assert torch.equal(ctx1.dist_sq, ctx2.dist_sq)


# ---------------------------------------------------------------- pass context

def test_pass_context_single_use():
    emb, labels = scenario_b()
    _, ctx = coupled_cluster_forward(emb, labels, group_size=4, margin=1.0)
    coupled_cluster_backward(ctx, torch.tensor(1.0))
    with pytest.raises(RuntimeError):
        coupled_cluster_backward(ctx, torch.tensor(1.0))


def test_no_propagation_returns_none():
    emb, labels = scenario_b()
    _, ctx = coupled_cluster_forward(emb, labels, group_size=4, margin=1.0)
    assert coupled_cluster_backward(ctx, torch.tensor(1.0), propagate_down=False) is None


def test_negative_mask_matches_partition():
    emb, labels = random_batch(num_groups=3, seed=6)
    _, ctx = coupled_cluster_forward(emb, labels, group_size=5, margin=1.0)
    for i, neg in enumerate(ctx.neg_ids):
        assert torch.nonzero(ctx.neg_mask[i]).flatten().tolist() == neg


def test_independent_graphs_keep_separate_state():
    criterion = CoupledClusterLoss(group_size=4, margin=1.0)
    emb_a, labels = scenario_a()
    emb_b, _ = scenario_b()
    emb_a.requires_grad_(True)
    emb_b.requires_grad_(True)

    loss_a = criterion(emb_a, labels)
    loss_b = criterion(emb_b, labels)
    loss_a.backward()
    loss_b.backward()

    assert emb_a.grad[:2].abs().sum().item() == 0.0
    assert emb_b.grad[:2].abs().sum().item() > 0.0


def test_no_grad_forward_records_context():
    emb, labels = scenario_b()
    criterion = CoupledClusterLoss(group_size=4, margin=1.0)
    with torch.no_grad():
        loss = criterion(emb, labels)
    assert loss.item() == pytest.approx(1.0)
    assert criterion.last_context.valid_groups == 1


# ---------------------------------------------------------------- errors / logging

@pytest.mark.parametrize("emb, labels, group_size", [
    (torch.zeros(4, 2), torch.zeros(4), 0),
    (torch.zeros(6, 2), torch.zeros(6), 4),
    (torch.zeros(4, 2, 1), torch.zeros(4), 4),
    (torch.zeros(4, 2), torch.zeros(5), 4),
])
def test_invalid_inputs_raise(emb, labels, group_size):
    with pytest.raises(ValueError):
        coupled_cluster_forward(emb, labels, group_size=group_size, margin=1.0)


def test_invalid_loss_construction():
    with pytest.raises(ValueError):
        CoupledClusterLoss(group_size=0)
    with pytest.raises(ValueError):
        CoupledClusterLoss(group_size=4, margin=-1.0)


def test_column_labels_accepted():
    emb, labels = scenario_b()
    loss, _ = coupled_cluster_forward(emb, labels.view(4, 1).float(), group_size=4, margin=1.0)
    assert loss.item() == pytest.approx(1.0)


def test_verbose_logging(caplog):
    emb, labels = scenario_b()
    with caplog.at_level(logging.INFO, logger="coupled_cluster.losses.coupled_cluster"):
        coupled_cluster_forward(emb, labels, group_size=4, margin=1.0, log_flag=True)
    messages = [r.getMessage() for r in caplog.records]
    assert any(m.startswith("i 0, j 3, d ") for m in messages)
    assert any(m.startswith("pos_mdist 1.000000") for m in messages)


def test_quiet_by_default(caplog):
    emb, labels = scenario_b()
    with caplog.at_level(logging.INFO, logger="coupled_cluster.losses.coupled_cluster"):
        coupled_cluster_forward(emb, labels, group_size=4, margin=1.0)
    assert not caplog.records
