#!/usr/bin/env python3
"""
ParamForge — Training Script
=============================
Trains a network with distributed parameter averaging on a CSV file (one
example per line, class label in one column) or, without a data file, on
a synthetic Gaussian-blob classification problem.

Usage:
    python scripts/train.py --config configs/default.yaml --data data/iris.csv --label-index 4
    python scripts/train.py --smoke-test
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

import numpy as np
import torch
from tqdm import tqdm

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from paramforge.config import ParamForgeConfig, TrainingConfig
from paramforge.distributed import LocalContext
from paramforge.training import DistributedMultiLayer

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def make_blobs(n_examples: int, n_features: int, n_classes: int, seed: int):
    """Gaussian blobs, one per class, with unit-variance noise."""
    rng = np.random.default_rng(seed)
    centers = rng.normal(scale=4.0, size=(n_classes, n_features))
    labels = rng.integers(0, n_classes, size=n_examples)
    features = centers[labels] + rng.normal(size=(n_examples, n_features))
    return features.astype(np.float32), labels


def main():
    parser = argparse.ArgumentParser(
        description="ParamForge Training",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Train on a CSV file:
    python scripts/train.py --config configs/default.yaml --data data/train.csv --label-index 4

    # Quick smoke test on synthetic data:
    python scripts/train.py --smoke-test

    # Average after every iteration, overriding the config:
    PARAMFORGE_AVERAGE_EACH_ITERATION=1 python scripts/train.py --smoke-test
        """,
    )
    parser.add_argument("--config", type=str, default="configs/default.yaml")
    parser.add_argument("--smoke-test", action="store_true")
    parser.add_argument(
        "--data", type=str, default=None,
        help="CSV file with one example per line (default: synthetic blobs)",
    )
    parser.add_argument("--label-index", type=int, default=-1)
    parser.add_argument("--examples", type=int, default=2000,
                        help="Synthetic examples when --data is not given")
    parser.add_argument("--batch-size", type=int, default=32)
    parser.add_argument("--output-dir", type=str, default="outputs")
    args = parser.parse_args()

    if args.smoke_test:
        config = ParamForgeConfig.for_smoke_test()
    else:
        config = ParamForgeConfig.from_yaml(args.config)
    config.training = TrainingConfig.from_env(config.training)
    logger.info(f"\n{config}")

    output_dir = Path(args.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    n_in = config.model.layers[0].n_in
    n_out = config.model.output_layer.n_out
    features = labels = None
    if args.data is None:
        features, labels = make_blobs(args.examples, n_in, n_out, config.training.split_seed)
        logger.info(f"Generated {len(labels):,} synthetic examples")

    start = time.time()
    with LocalContext(config.training.num_workers) as context:
        master = DistributedMultiLayer(context, config.model, config.training)

        for epoch in tqdm(range(config.training.epochs), desc="epochs"):
            if args.data is not None:
                master.fit_text_file(
                    args.data, args.label_index, lambda line: line.split(",")
                )
            else:
                master.fit_labeled_points(features, labels, args.batch_size)
            logger.info(
                f"Epoch {epoch + 1}/{config.training.epochs} — "
                f"best partition score={master.best_score:.4f}"
            )

        results = {
            "total_time_seconds": time.time() - start,
            "best_partition_score": master.best_score,
            "num_params": master.network.num_params(),
        }
        if features is not None:
            predictions = master.predict(features).argmax(axis=1)
            results["train_accuracy"] = float((predictions == labels).mean())
            logger.info(f"Training accuracy: {results['train_accuracy']:.2%}")

    params_path = output_dir / "params.pt"
    torch.save(
        {"conf": config.model.to_dict(), "params": master.network.params()},
        params_path,
    )
    with open(output_dir / "training_results.json", "w", encoding="utf-8") as f:
        json.dump(results, f, indent=2)

    logger.info(f"Saved parameters to {params_path}")


if __name__ == "__main__":
    main()
