"""
CLI entry point for pipesplit.

Provides three commands:
  pipesplit train    — Train one configuration (split or single process)
  pipesplit compare  — Train split and single-process modes and compare
  pipesplit plan     — Show how layers are partitioned across ranks
"""

import argparse
import logging
import sys

import torch
import torch.multiprocessing as mp
from rich.markup import escape

from pipesplit import __version__
from pipesplit.config import BACKENDS, TrainConfig
from pipesplit.display import (
    console,
    print_comparison_progress,
    print_comparison_table,
    print_failure,
    print_header,
    print_mode_header,
    print_partition,
    print_run_stats,
)
from pipesplit.errors import ConfigError, PipelineError
from pipesplit.logging_utils import setup_logging
from pipesplit.partition import partition_sizes
from pipesplit.runner import run_training


def _detect_device(use_cuda: bool) -> str:
    """Detect the best available device for display purposes."""
    if use_cuda and torch.cuda.is_available():
        name = torch.cuda.get_device_name(0)
        count = torch.cuda.device_count()
        return f"CUDA ({name} x{count})" if count > 1 else f"CUDA ({name})"
    return "CPU"


def config_from_args(args, **overrides) -> TrainConfig:
    """Build a validated TrainConfig from parsed CLI arguments."""
    config = TrainConfig(
        lr=args.lr,
        accumulation_steps=args.accumulation_steps,
        minibatch_size=args.batch_size,
        epochs=args.epochs,
        use_cuda=not args.no_cuda,
        split=not getattr(args, "no_split", False),
        num_stages=args.stages,
        num_layers=args.layers,
        input_dim=args.input_dim,
        hidden_dim=args.dim,
        num_classes=args.classes,
        train_samples=args.train_samples,
        test_samples=args.test_samples,
        seed=args.seed,
        backend=args.backend,
        skip_nonfinite=args.skip_nonfinite,
        recv_timeout=args.recv_timeout,
    )
    return config.with_options(**overrides)


def _log_level(args) -> int:
    return logging.DEBUG if args.verbose > 1 else logging.INFO if args.verbose else logging.WARNING


def cmd_train(args):
    """Handle the 'train' subcommand."""
    config = config_from_args(args)
    print_header(config, _detect_device(config.use_cuda))
    if config.split:
        print_partition(partition_sizes(config.num_layers, config.num_stages))
    print_mode_header("split" if config.split else "single")

    console.print(
        f"  [dim]Training for {config.epochs} epochs, {config.accumulation_steps} "
        f"micro-batches per update...[/]"
    )
    console.print()

    result = run_training(config, report=True, log_level=_log_level(args))
    print_run_stats(result)


def cmd_compare(args):
    """Handle the 'compare' subcommand."""
    config = config_from_args(args, split=True)
    print_header(config, _detect_device(config.use_cuda))
    print_partition(partition_sizes(config.num_layers, config.num_stages))

    console.print(f"  [dim]Running split and single-process modes ({config.epochs} epochs each)...[/]")
    console.print()

    results = []
    for mode in ("split", "single"):
        print_comparison_progress(mode, status="running")
        result = run_training(config.with_options(split=(mode == "split")), log_level=_log_level(args))
        results.append(result)
        print_comparison_progress(mode, status="done")

    print_comparison_table(results)


def cmd_plan(args):
    """Handle the 'plan' subcommand."""
    print_partition(partition_sizes(args.layers, args.stages))


def _add_training_args(parser: argparse.ArgumentParser, split_flag: bool = True):
    parser.add_argument("--stages", "-s", type=int, default=2, help="Pipeline depth / number of ranks (default: 2)")
    parser.add_argument("--layers", type=int, default=4, help="Total dense layers (default: 4)")
    parser.add_argument("--accumulation-steps", "-M", type=int, default=16,
                        help="Micro-batches per optimizer update (default: 16)")
    parser.add_argument("--batch-size", type=int, default=256, help="Micro-batch size (default: 256)")
    parser.add_argument("--epochs", type=int, default=10, help="Training epochs (default: 10)")
    parser.add_argument("--lr", type=float, default=3e-4, help="Learning rate (default: 3e-4)")
    parser.add_argument("--dim", type=int, default=32, help="Hidden dimension (default: 32)")
    parser.add_argument("--input-dim", type=int, default=784, help="Input features (default: 784)")
    parser.add_argument("--classes", type=int, default=10, help="Output classes (default: 10)")
    parser.add_argument("--train-samples", type=int, default=4096, help="Training samples (default: 4096)")
    parser.add_argument("--test-samples", type=int, default=1024, help="Test samples (default: 1024)")
    parser.add_argument("--seed", type=int, default=42, help="Model and data seed (default: 42)")
    parser.add_argument("--backend", choices=BACKENDS, default="processes",
                        help="Run ranks as processes or threads (default: processes)")
    parser.add_argument("--no-cuda", action="store_true", help="Train on CPU even if CUDA is available")
    parser.add_argument("--skip-nonfinite", action="store_true",
                        help="Skip micro-batches with NaN/Inf loss or gradients instead of aborting")
    parser.add_argument("--recv-timeout", type=float, default=None,
                        help="Seconds a thread-rank waits on a peer before failing (default: wait forever)")
    parser.add_argument("--verbose", "-v", action="count", default=0, help="Log progress (-vv for debug)")
    if split_flag:
        parser.add_argument("--no-split", action="store_true",
                            help="Train the whole model in one process (reference mode)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pipesplit",
        description="🔧 pipesplit — Lock-step pipeline-parallel training.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  pipesplit train --stages 4 --layers 10 -M 8
  pipesplit train --no-split
  pipesplit compare --stages 2 --epochs 3 --backend threads
  pipesplit plan --layers 10 --stages 4
        """,
    )
    parser.add_argument("--version", action="version", version=f"pipesplit {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # ─── train ────────────────────────────────────────────────────────────

    train_parser = subparsers.add_parser("train", help="Train one configuration")
    _add_training_args(train_parser)

    # ─── compare ──────────────────────────────────────────────────────────

    compare_parser = subparsers.add_parser("compare", help="Compare split and single-process training")
    _add_training_args(compare_parser, split_flag=False)

    # ─── plan ─────────────────────────────────────────────────────────────

    plan_parser = subparsers.add_parser("plan", help="Show the layer partition")
    plan_parser.add_argument("--layers", type=int, default=4, help="Total dense layers (default: 4)")
    plan_parser.add_argument("--stages", "-s", type=int, default=2, help="Number of ranks (default: 2)")

    return parser


def main(argv=None):
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    setup_logging(_log_level(args) if hasattr(args, "verbose") else logging.WARNING)

    commands = {
        "train": cmd_train,
        "compare": cmd_compare,
        "plan": cmd_plan,
    }
    try:
        commands[args.command](args)
    except ConfigError as err:
        console.print(f"[bold red]Error:[/] {escape(str(err))}")
        sys.exit(2)
    except PipelineError as err:
        print_failure(err)
        sys.exit(1)
    except (mp.ProcessRaisedException, mp.ProcessExitedException) as err:
        # The failing rank already printed its own report
        console.print(f"[bold red]Error:[/] a worker process failed: {escape(str(err).splitlines()[0])}")
        sys.exit(1)


if __name__ == "__main__":
    main()
