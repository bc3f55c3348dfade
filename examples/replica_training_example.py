#!/usr/bin/env python3
"""
Replica training loop with normalization statistics.

This example demonstrates:
1. Keeping a per-replica gradient accumulator ("delta" copy) of each component
2. Collecting forward stats with store_stats and backward stats via backprop
3. Merging replicas with scale/add, decaying old MemoryNormalizer stats
4. Freezing the stats (test mode) and saving everything to a safetensors file

Usage:
    python replica_training_example.py [output.safetensors]
"""

import sys
import tempfile
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

import torch

from statnorm import ComponentRegistry, load_components, save_components

NUM_REPLICAS = 4
NUM_STEPS = 20
ROWS_PER_REPLICA = 32
DIM = 16
DECAY = 0.9


def make_minibatch(step: int, generator: torch.Generator) -> torch.Tensor:
    """Data whose mean drifts slowly over training."""
    drift = 0.05 * step
    return drift + 2.0 * torch.randn(ROWS_PER_REPLICA, DIM, generator=generator)


def train_step(master, replicas, step, generator):
    """One synchronous step: every replica runs forward/backward on its own data."""
    deltas = []
    for replica in replicas:
        delta = replica.copy()
        delta.zero_stats()
        x = make_minibatch(step, generator)
        y, memo = replica.propagate(x)
        out_deriv = torch.randn(y.shape, generator=generator)
        replica.backprop(x, y, out_deriv, memo, to_update=delta)
        delta.store_stats(x, y, memo)
        replica.delete_memo(memo)
        deltas.append(delta)

    # Reduction step: decay the old stats and blend in every replica's delta.
    master.scale(DECAY)
    for delta in deltas:
        master.add(1.0, delta)
    # Broadcast the merged stats back to the replicas.
    return [master.copy() for _ in replicas]


def main():
    output = Path(sys.argv[1]) if len(sys.argv) > 1 else (
        Path(tempfile.mkdtemp()) / "norms.safetensors")
    generator = torch.Generator().manual_seed(0)

    components = {
        "memory": ComponentRegistry.create(
            f"type=MemoryNormalizer dim={DIM} block-dim=4 target-rms=1.0"),
        "batch": ComponentRegistry.create(f"type=BatchNormalizer dim={DIM}"),
    }

    for name, master in components.items():
        print("\n" + "=" * 60)
        print(f"Training {name}: {master.info()}")
        print("=" * 60)
        replicas = [master.copy() for _ in range(NUM_REPLICAS)]
        for step in range(NUM_STEPS):
            replicas = train_step(master, replicas, step, generator)
            if step % 5 == 0:
                print(f"  step {step:3d}: {master.info()}")
        master.set_test_mode(True)

    save_components(components, output)
    print(f"\nSaved to {output}")
    for name, component in load_components(output).items():
        print(f"  {name}: {component.info()}")


if __name__ == "__main__":
    main()
