# Loss functions module

from .coupled_cluster import (
    CoupledClusterLoss,
    CoupledClusterFunction,
    PassContext,
    coupled_cluster_forward,
    coupled_cluster_backward,
    partition_group,
    group_centroid,
    select_hard_negative,
)
from .factory import get_loss, get_loss_from_config, AVAILABLE_LOSSES

__all__ = [
    'CoupledClusterLoss',
    'CoupledClusterFunction',
    'PassContext',
    'coupled_cluster_forward',
    'coupled_cluster_backward',
    'partition_group',
    'group_centroid',
    'select_hard_negative',
    'get_loss',
    'get_loss_from_config',
    'AVAILABLE_LOSSES'
]
