# Group construction module

from .datasets import GroupedEmbeddingDataset, collate_groups, make_clustered_data

__all__ = [
    'GroupedEmbeddingDataset',
    'collate_groups',
    'make_clustered_data'
]
