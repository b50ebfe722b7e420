#!/usr/bin/env python3
"""
Evaluation utilities for embeddings trained with the coupled cluster loss.
"""

import json
import warnings
import numpy as np
import pandas as pd
import torch
from sklearn.cluster import KMeans
from scipy.optimize import linear_sum_assignment
from typing import Dict, Any

warnings.filterwarnings("ignore", category=UserWarning, module="sklearn")

def clustering_accuracy(y_true: np.ndarray, y_pred: np.ndarray) -> float:
    """
    Compute clustering accuracy using Hungarian algorithm.

    Args:
        y_true: True labels
        y_pred: Predicted cluster assignments

    Returns:
        Clustering accuracy
    """
    cm = pd.crosstab(y_pred, y_true)
    r, c = linear_sum_assignment(-cm.values)
    return cm.values[r, c].sum() / len(y_true)

@torch.no_grad()
def compute_embeddings(model: torch.nn.Module, x: np.ndarray,
                       device: str = 'cpu') -> np.ndarray:
    """Embed a feature array with the model in eval mode."""
    model.eval()
    x_tensor = torch.as_tensor(x, dtype=torch.float32, device=device)
    return model(x_tensor).cpu().numpy()

def evaluate_model(model: torch.nn.Module, x_test: np.ndarray,
                   y_test: np.ndarray, device: str = 'cpu', seed: int = 42) -> float:
    """
    Evaluate model using clustering accuracy of its embeddings.

    Args:
        model: Trained model
        x_test: Test features
        y_test: Test labels
        device: Device to run evaluation on
        seed: KMeans random state

    Returns:
        Clustering accuracy
    """
    embeddings = compute_embeddings(model, x_test, device)
    k = len(np.unique(y_test))
    cluster_ids = KMeans(n_clusters=k, n_init=10, random_state=seed).fit_predict(embeddings)
    return clustering_accuracy(y_test, cluster_ids)

def save_results(results: Dict[str, Any], filepath: str):
    """
    Save experiment results to JSON file.

    Args:
        results: Results dictionary
        filepath: Path to save results
    """
    with open(filepath, "w") as f:
        json.dump(results, f, indent=2)
