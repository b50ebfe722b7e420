# Training module

from .trainer import GroupTrainer

__all__ = ['GroupTrainer']
