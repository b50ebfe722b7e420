#!/usr/bin/env python3
"""
Training script for the coupled cluster loss on synthetic clustered data.
"""

import argparse
import logging
import os

from coupled_cluster.config import get_coupled_cluster_config
from coupled_cluster.data.datasets import GroupedEmbeddingDataset, make_clustered_data
from coupled_cluster.training.trainer import GroupTrainer
from coupled_cluster.utils.common import set_seed, count_parameters
from coupled_cluster.utils.evaluation import evaluate_model, save_results


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Train an encoder with the coupled cluster loss')
    parser.add_argument('--epochs', type=int, default=None, help='Number of epochs')
    parser.add_argument('--group-size', type=int, default=None, help='Samples per group (N)')
    parser.add_argument('--margin', type=float, default=None, help='Hinge margin')
    parser.add_argument('--scale', type=float, default=None, help='Difference vector scale')
    parser.add_argument('--classes', type=int, default=8, help='Synthetic classes')
    parser.add_argument('--samples', type=int, default=32, help='Synthetic samples per class')
    parser.add_argument('--lr', type=float, default=None, help='Learning rate')
    parser.add_argument('--device', type=str, default=None, help="Device, e.g. 'cpu' or 'cuda:0'")
    parser.add_argument('--result-dir', type=str, default=None, help='Write results JSON here')
    parser.add_argument('--verbose', action='store_true', help='Log per-sample distances')
    return parser.parse_args(argv)


def main(argv=None):
    """Main training function."""
    args = parse_args(argv)
    config = get_coupled_cluster_config()
    if args.epochs is not None:
        config.training.EPOCHS = args.epochs
    if args.group_size is not None:
        config.loss.GROUP_SIZE = args.group_size
    if args.margin is not None:
        config.loss.MARGIN = args.margin
    if args.scale is not None:
        config.loss.SCALE = args.scale
    if args.lr is not None:
        config.training.BASE_LR = args.lr
    config.training.DEVICE = args.device
    config.loss.LOG_FLAG = args.verbose
    # re-run validation after overrides
    config.loss.__post_init__()

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING,
                        format='%(asctime)s - %(name)s - %(message)s')
    set_seed(config.training.SEED)

    x, y = make_clustered_data(num_classes=args.classes, per_class=args.samples,
                               dim=config.model.IN_DIM, seed=config.training.SEED)
    dataset = GroupedEmbeddingDataset(x, y, config.loss.GROUP_SIZE,
                                      num_positives=config.training.NUM_POSITIVES)

    trainer = GroupTrainer(config)
    dataloader = trainer.create_dataloader(dataset)
    model = trainer.create_model()
    criterion = trainer.create_criterion()
    optimizer = trainer.create_optimizer(model)
    print(f"Device {trainer.device}, trainable params: {count_parameters(model):,}")

    avg_loss = float('nan')
    for epoch in range(config.training.EPOCHS):
        trainer.current_epoch = epoch
        avg_loss = trainer.train_epoch(model, dataloader, optimizer, criterion)

        if (epoch + 1) % config.training.CLUSTER_EVERY == 0:
            acc = evaluate_model(model, x, y, trainer.device)
            print(f"Epoch {epoch+1:3d}  loss {avg_loss:.4f}  clust-acc {acc*100:5.2f}%")

    acc = evaluate_model(model, x, y, trainer.device)
    results = {
        "final_loss": avg_loss,
        "cluster_acc": acc,
        "group_size": config.loss.GROUP_SIZE,
        "margin": config.loss.MARGIN,
        "scale": config.loss.SCALE,
        "epochs": config.training.EPOCHS,
        "loss_type": config.loss.LOSS_TYPE
    }
    if args.result_dir:
        os.makedirs(args.result_dir, exist_ok=True)
        save_results(results, os.path.join(args.result_dir, "coupled_cluster.json"))
    print(f"[Done] loss={avg_loss:.4f}  acc={acc*100:.2f}%")
    return results


if __name__ == "__main__":
    main()
