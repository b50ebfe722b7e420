#!/usr/bin/env python3
"""
Loss factory for creating group metric-learning losses.
"""

import torch.nn as nn
from .coupled_cluster import CoupledClusterLoss

def get_loss(loss_type: str, **kwargs) -> nn.Module:
    """
    Factory function to create loss functions.
    
    Args:
        loss_type: Type of loss ('coupled_cluster')
        **kwargs: Loss-specific parameters
        
    Returns:
        Loss function instance
    """
    if loss_type in AVAILABLE_LOSSES:
        return AVAILABLE_LOSSES[loss_type](**kwargs)
    raise ValueError(f"Unknown loss type: {loss_type}")

def get_loss_from_config(loss_config) -> nn.Module:
    """Build the loss described by a ``LossConfig``."""
    return get_loss(
        loss_config.LOSS_TYPE,
        group_size=loss_config.GROUP_SIZE,
        margin=loss_config.MARGIN,
        scale=loss_config.SCALE,
        log_flag=loss_config.LOG_FLAG
    )

# Available losses
AVAILABLE_LOSSES = {
    'coupled_cluster': CoupledClusterLoss,
}
