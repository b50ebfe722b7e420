# Utilities module

from .common import set_seed, count_parameters
from .evaluation import clustering_accuracy, compute_embeddings, evaluate_model, save_results

__all__ = [
    'set_seed',
    'count_parameters',
    'clustering_accuracy',
    'compute_embeddings',
    'evaluate_model',
    'save_results'
]
