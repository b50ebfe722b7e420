#!/usr/bin/env python3
"""
Centralized configuration for coupled cluster loss experiments.
Contains loss hyperparameters, model settings and training configurations.
"""

import os
from dataclasses import dataclass
from typing import Optional

@dataclass
class LossConfig:
    """Coupled cluster loss configuration."""
    LOSS_TYPE: str = 'coupled_cluster'

    # Samples per group; the batch must be a multiple of it
    GROUP_SIZE: int = 4
    MARGIN: float = 1.0
    SCALE: float = 1.0

    # Per-sample distance diagnostics
    LOG_FLAG: bool = False

    def __post_init__(self):
        if isinstance(self.GROUP_SIZE, bool) or not isinstance(self.GROUP_SIZE, int) \
                or self.GROUP_SIZE <= 0:
            raise ValueError(f"GROUP_SIZE must be a positive integer, got {self.GROUP_SIZE!r}")
        if self.MARGIN < 0:
            raise ValueError(f"MARGIN must be >= 0, got {self.MARGIN}")

@dataclass
class ModelConfig:
    """Embedding encoder configuration."""
    IN_DIM: int = 16
    EMBED_DIM: int = 8
    HIDDEN_DIM: int = 64
    NUM_BLOCKS: int = 2
    DROPOUT: float = 0.1
    NORMALIZE: bool = False

@dataclass
class TrainingConfig:
    """Training hyperparameters and settings."""
    EPOCHS: int = 20
    BASE_LR: float = 1e-3
    GROUPS_PER_BATCH: int = 16
    NUM_WORKERS: int = 0
    NUM_POSITIVES: int = 2
    SEED: int = 42
    DEVICE: Optional[str] = None  # None picks cuda when available

    # Evaluation
    CLUSTER_EVERY: int = 5
    RESULT_DIR: Optional[str] = None

    def __post_init__(self):
        if self.RESULT_DIR:
            os.makedirs(self.RESULT_DIR, exist_ok=True)

@dataclass
class ExperimentConfig:
    """Complete experiment configuration."""
    loss: LossConfig = None
    model: ModelConfig = None
    training: TrainingConfig = None

    def __post_init__(self):
        if self.loss is None:
            self.loss = LossConfig()
        if self.model is None:
            self.model = ModelConfig()
        if self.training is None:
            self.training = TrainingConfig()

def get_coupled_cluster_config():
    """Configuration for coupled cluster loss training."""
    config = ExperimentConfig()
    config.loss.GROUP_SIZE = 4
    config.loss.MARGIN = 1.0
    config.training.EPOCHS = 20
    return config
