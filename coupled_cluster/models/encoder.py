#!/usr/bin/env python3
"""
Residual MLP encoder producing embeddings for group metric learning.
"""

import torch
import torch.nn as nn
import torch.nn.functional as F

class ResidualBlock(nn.Module):
    """Residual block with dropout for regularization."""
    
    def __init__(self, dim: int, dropout: float = 0.1):
        super().__init__()
        self.fc1 = nn.Linear(dim, dim)
        self.fc2 = nn.Linear(dim, dim)
        self.dropout = nn.Dropout(dropout)
    
    def forward(self, x: torch.Tensor) -> torch.Tensor:
        out = self.dropout(F.relu(self.fc1(x)))
        return F.relu(self.fc2(out) + x)

class EmbeddingEncoder(nn.Module):
    """Residual MLP mapping raw features to embeddings."""
    
    def __init__(self, in_dim: int, emb_dim: int, hidden_dim: int = 64, 
                 num_blocks: int = 2, dropout: float = 0.1, normalize: bool = False):
        """
        Args:
            in_dim: Input feature dimension
            emb_dim: Output embedding dimension
            hidden_dim: Hidden layer dimension
            num_blocks: Number of residual blocks
            dropout: Dropout rate
            normalize: L2-normalize the output embeddings
        """
        super().__init__()
        self.normalize = normalize
        blocks = [ResidualBlock(hidden_dim, dropout) for _ in range(num_blocks)]
        self.net = nn.Sequential(nn.Linear(in_dim, hidden_dim), *blocks,
                                 nn.Linear(hidden_dim, emb_dim))
    
    def forward(self, x: torch.Tensor) -> torch.Tensor:
        z = self.net(x)
        if self.normalize:
            z = F.normalize(z, p=2, dim=1)
        return z
