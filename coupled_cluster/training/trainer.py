#!/usr/bin/env python3
"""
Single-device trainer for group metric learning.
"""

import torch
import torch.nn as nn
import torch.optim as optim
from torch.utils.data import DataLoader
from typing import Optional

from ..config import ExperimentConfig
from ..data.datasets import collate_groups
from ..losses.factory import get_loss_from_config
from ..models.encoder import EmbeddingEncoder

class GroupTrainer:
    """Trains an encoder on batches of fixed-size groups."""

    def __init__(self, config: ExperimentConfig):
        self.config = config
        self.current_epoch = 0
        if config.training.DEVICE:
            self.device = torch.device(config.training.DEVICE)
        elif torch.cuda.is_available():
            self.device = torch.device('cuda:0')
        else:
            self.device = torch.device('cpu')

    def create_model(self) -> nn.Module:
        """Create the encoder described by the model config."""
        m = self.config.model
        model = EmbeddingEncoder(m.IN_DIM, m.EMBED_DIM, hidden_dim=m.HIDDEN_DIM,
                                 num_blocks=m.NUM_BLOCKS, dropout=m.DROPOUT,
                                 normalize=m.NORMALIZE)
        return model.to(self.device)

    def create_criterion(self) -> nn.Module:
        return get_loss_from_config(self.config.loss)

    def create_optimizer(self, model: nn.Module, lr: Optional[float] = None) -> optim.Optimizer:
        """Create optimizer."""
        return optim.Adam(model.parameters(), lr=lr or self.config.training.BASE_LR)

    def create_dataloader(self, dataset, shuffle: bool = True) -> DataLoader:
        """Each dataset item is one group, so the batch holds GROUPS_PER_BATCH groups."""
        return DataLoader(
            dataset,
            batch_size=self.config.training.GROUPS_PER_BATCH,
            shuffle=shuffle,
            num_workers=self.config.training.NUM_WORKERS,
            collate_fn=collate_groups,
            pin_memory=self.device.type == 'cuda',
            drop_last=False
        )

    def train_epoch(self, model: nn.Module, dataloader: DataLoader,
                    optimizer: optim.Optimizer, criterion: nn.Module) -> float:
        """Train for one epoch and return the mean batch loss."""
        model.train()

        running_loss = 0.0
        num_batches = 0

        for batch in dataloader:
            optimizer.zero_grad(set_to_none=True)
            loss = self.forward_step(model, batch, criterion)

            if torch.isnan(loss):
                raise RuntimeError("Loss became NaN – check data and model.")

            loss.backward()
            optimizer.step()

            running_loss += loss.item()
            num_batches += 1

        return running_loss / max(num_batches, 1)

    def forward_step(self, model: nn.Module, batch, criterion: nn.Module) -> torch.Tensor:
        x, y = batch
        x = x.to(self.device, non_blocking=True)
        z = model(x)
        return criterion(z, y)
