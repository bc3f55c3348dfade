#!/usr/bin/env python3
"""
statnorm - command line tools

Commands:
  init   - build a component from a config line and save it
  info   - print a summary of every component in a file
  check  - run derivative and statistics self-checks on random data

Examples:
  python -m statnorm init "type=BatchNormalizer dim=64 block-dim=16" bn.safetensors
  python -m statnorm info bn.safetensors
  python -m statnorm check "type=MemoryNormalizer dim=8 include-indirect-derivative=true"
"""

import argparse
import logging
import sys
from typing import List, Optional

import torch

from statnorm.components import (
    BatchNormalizer,
    Component,
    ComponentError,
    ComponentRegistry,
    ConfigError,
    MemoryNormalizer,
    SerializationError,
)
from statnorm.config import BatchNormConfig
from statnorm.io import load_components, save_components
from statnorm.utils.checks import (
    check_data_derivative,
    check_store_stats,
    check_test_mode_consistency,
    prime_memory_normalizer,
)


# ============================================================================
# Commands
# ============================================================================

def cmd_init(args: argparse.Namespace) -> int:
    component = ComponentRegistry.create(args.config)
    save_components({args.name: component}, args.output)
    print(f"{args.name}: {component.info()}")
    return 0


def cmd_info(args: argparse.Namespace) -> int:
    for name, component in load_components(args.path).items():
        print(f"{name}: {component.info()}")
    return 0


def _derivative_reference(component: Component, in_value, out_deriv) -> Optional[Component]:
    """Prepare stateful components so their forward function is well defined."""
    if isinstance(component, MemoryNormalizer):
        prime_memory_normalizer(component, in_value, out_deriv)
        if component.config.include_indirect_derivative:
            config = component.config
            return BatchNormalizer(BatchNormConfig(
                dim=config.dim, block_dim=config.block_dim,
                target_rms=config.target_rms, epsilon=config.epsilon,
            ))
    return None


def cmd_check(args: argparse.Namespace) -> int:
    component = ComponentRegistry.create(args.config)
    generator = torch.Generator().manual_seed(args.seed)
    in_value = torch.randn(args.rows, component.input_dim, dtype=torch.float64,
                           generator=generator)
    out_deriv = torch.randn(args.rows, component.output_dim, dtype=torch.float64,
                            generator=generator)

    results = {
        "store-stats": check_store_stats(component, in_value),
        "test-mode": check_test_mode_consistency(component, in_value),
    }
    reference = _derivative_reference(component, in_value, out_deriv)
    derivative = check_data_derivative(
        component, in_value, out_deriv, reference=reference, generator=generator)
    results["derivative"] = derivative.passed

    print(component.info())
    for name, passed in results.items():
        print(f"  {name:12s} {'ok' if passed else 'FAILED'}")
    print(f"  relative derivative error: {derivative.relative_error:.3g}")
    return 0 if all(results.values()) else 1


# ============================================================================
# Main
# ============================================================================

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="statnorm",
        description="Normalization components: create, inspect and self-check",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--log-level", type=str, default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level (default: INFO)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    init_parser = subparsers.add_parser("init", help="Create a component and save it")
    init_parser.add_argument("config", help="Config line, e.g. 'type=BatchNormalizer dim=64'")
    init_parser.add_argument("output", help="Output .safetensors path")
    init_parser.add_argument("--name", type=str, default="component",
                             help="Name to store the component under")
    init_parser.set_defaults(func=cmd_init)

    info_parser = subparsers.add_parser("info", help="Print component summaries")
    info_parser.add_argument("path", help="Path to a .safetensors component file")
    info_parser.set_defaults(func=cmd_info)

    check_parser = subparsers.add_parser("check", help="Run self-checks on random data")
    check_parser.add_argument("config", help="Config line of the component to check")
    check_parser.add_argument("--rows", type=int, default=16, help="Minibatch rows")
    check_parser.add_argument("--seed", type=int, default=0, help="Random seed")
    check_parser.set_defaults(func=cmd_check)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        return args.func(args)
    except (ConfigError, ComponentError, SerializationError, FileNotFoundError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
