# Model architectures module

from .encoder import EmbeddingEncoder, ResidualBlock

__all__ = [
    'EmbeddingEncoder',
    'ResidualBlock'
]
