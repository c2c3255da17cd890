# main.py
from pathlib import Path
import torch

from tree_train import make_config, run_training


DATA_DIR = Path("data")
TRAIN_BOOKS = sorted((DATA_DIR / "train").glob("*.json"))
VALID_BOOKS = sorted((DATA_DIR / "valid").glob("*.json"))
TEST_BOOKS = sorted((DATA_DIR / "test").glob("*.json"))


def main():
    device = "cuda" if torch.cuda.is_available() else "cpu"

    # --------------------
    # 1. Word-only baseline (labels ignored)
    # --------------------
    baseline = make_config(
        hidden_size=100, num_classes=100, label_mode=0,
        min_count=2, lr=0.1, epochs=10, device=device, name="baseline_tree",
    )

    # --------------------
    # 2. Dependency labels as features, with direct connections
    # --------------------
    label_features = make_config(
        hidden_size=100, num_classes=100, label_mode=2,
        min_count=2, lr=0.1, epochs=10, direct_size=1_000_000, direct_order=3,
        device=device, name="label_features_tree",
    )

    # --------------------
    # 3. Labels concatenated to the words
    # --------------------
    label_tokens = make_config(
        hidden_size=100, num_classes=100, label_mode=1,
        min_count=2, lr=0.1, epochs=10, device=device, name="label_tokens_tree",
    )

    for config in (baseline, label_features, label_tokens):
        print(f"=== Training {config['name']} ===")
        run_training(config, TRAIN_BOOKS, VALID_BOOKS, TEST_BOOKS, Path("artifacts") / config["name"])


if __name__ == "__main__":
    main()
