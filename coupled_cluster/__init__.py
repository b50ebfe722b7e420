# Coupled cluster loss for group-structured metric learning

from .losses import CoupledClusterLoss, coupled_cluster_forward, coupled_cluster_backward, get_loss
from .config import LossConfig, ExperimentConfig, get_coupled_cluster_config

__version__ = "0.1.0"

__all__ = [
    'CoupledClusterLoss',
    'coupled_cluster_forward',
    'coupled_cluster_backward',
    'get_loss',
    'LossConfig',
    'ExperimentConfig',
    'get_coupled_cluster_config'
]
