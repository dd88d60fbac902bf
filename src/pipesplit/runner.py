"""
Process runner for pipeline-parallel training.

Launches one rank per pipeline stage and runs the same per-rank program
on each. Two substrates are supported:

  - processes: torch.multiprocessing spawns one process per rank and ranks
    talk over torch.distributed (gloo on CPU, nccl on CUDA)
  - threads: ranks run as threads of this process and talk through a
    LocalHub; a failing rank aborts the hub so no peer blocks forever

Non-split mode skips all of this and trains the whole model in-process.
"""

import logging
import os
import socket
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import torch
import torch.multiprocessing as mp
import torch.nn as nn
import torch.optim as optim

from pipesplit.comms import LocalHub, Messenger, TorchMessenger
from pipesplit.config import TrainConfig
from pipesplit.coordinator import GradientCoordinator
from pipesplit.data import distribute_dataset, make_dataset, make_loader
from pipesplit.display import print_epoch, print_failure
from pipesplit.errors import PipelineError
from pipesplit.logging_utils import get_rank_logger, setup_logging
from pipesplit.model import build_mlp, logit_cross_entropy
from pipesplit.partition import PartitionBuilder, partition_sizes
from pipesplit.process_group import (
    ProcessGroup,
    destroy_process_group,
    init_process_group,
    select_device,
)
from pipesplit.profiler import PipelineProfiler
from pipesplit.stage import PipelineStage
from pipesplit.trainer import EpochStats, LocalTrainer, PipelineTrainer

RankFn = Callable[[ProcessGroup, Messenger], Any]


def _model_fn(config: TrainConfig) -> Callable[[], List[nn.Module]]:
    def build():
        # Same seed in split and non-split mode -> identical initial weights
        torch.manual_seed(config.seed)
        return build_mlp(config.input_dim, config.hidden_dim, config.num_classes, config.num_layers)
    return build


def _datasets(config: TrainConfig):
    train = make_dataset(config.train_samples, config.input_dim, config.num_classes, seed=config.seed)
    test = make_dataset(config.test_samples, config.input_dim, config.num_classes, seed=config.seed + 1)
    return train, test


def _summarize(history: List[EpochStats]) -> Dict[str, Any]:
    losses = [s.train_loss for s in history if s.train_loss is not None]
    last = history[-1] if history else None
    return {
        "losses": losses,
        "final_loss": losses[-1] if losses else float("nan"),
        "test_loss": last.test_loss if last else None,
        "test_accuracy": last.test_accuracy if last else None,
        "updates": sum(s.updates for s in history),
        "skipped": sum(s.skipped for s in history),
    }


# ─── Per-rank program ────────────────────────────────────────────────────────

def run_rank(pg: ProcessGroup, messenger: Messenger, config: TrainConfig,
             report: bool = False) -> Dict[str, Any]:
    """
    The program every rank runs in split mode.

    Partitions the model, distributes the dataset, trains for
    `config.epochs` epochs and evaluates after each one.

    Returns:
        dict with this rank's wall time, layer count and profiler stats;
        the last rank adds losses, test metrics and update counts.
    """
    log = get_rank_logger(__name__, pg.rank)

    group = PartitionBuilder(pg, messenger).build(_model_fn(config))

    train, test = _datasets(config) if pg.is_root else (None, None)
    train = distribute_dataset(pg, messenger, train)
    test = distribute_dataset(pg, messenger, test)
    train_loader = make_loader(*train, batch_size=config.minibatch_size)
    test_loader = make_loader(*test, batch_size=config.minibatch_size)

    profiler = PipelineProfiler()
    stage = PipelineStage(pg, messenger, group, capacity=config.accumulation_steps, profiler=profiler)
    coordinator = GradientCoordinator(pg, messenger, stage, logit_cross_entropy)
    optimizer = optim.Adam(stage.parameters(), lr=config.lr)
    trainer = PipelineTrainer(
        pg, stage, coordinator, optimizer,
        accumulation_steps=config.accumulation_steps,
        skip_nonfinite=config.skip_nonfinite,
    )

    log.info("training layers [%d:%d] on %s", group.offset, group.offset + len(group), pg.device)
    wall_start = time.perf_counter()
    on_epoch = print_epoch if report and pg.is_last else None
    history = trainer.fit(train_loader, config.epochs, test_loader, on_epoch=on_epoch)
    wall_time = time.perf_counter() - wall_start

    result = {
        "rank": pg.rank,
        "layers": len(group),
        "wall_time": wall_time,
        "stats": profiler.get_stats(),
    }
    if pg.is_last:
        result.update(_summarize(history))
    return result


def _collect(config: TrainConfig, rank_results: List[Dict[str, Any]], wall_time: float) -> Dict[str, Any]:
    results = dict(rank_results[-1])
    results["mode"] = "split"
    results["wall_time"] = wall_time
    results["partition"] = [r["layers"] for r in rank_results]
    results["rank_stats"] = [r["stats"] for r in rank_results]
    results["idle_pct"] = rank_results[-1]["stats"]["idle_pct"]
    results["config"] = config.to_dict()
    return results


# ─── Threads ─────────────────────────────────────────────────────────────────

def spawn_threads(world_size: int, fn: RankFn, timeout: Optional[float] = None,
                  use_cuda: bool = False) -> List[Any]:
    """
    Run `fn(pg, messenger)` once per rank, each rank on its own thread.

    If any rank raises, the hub is aborted so every blocked peer fails
    fast, and the first failure is re-raised here.

    Returns:
        The per-rank return values, in rank order.
    """
    hub = LocalHub(world_size)
    results: List[Any] = [None] * world_size
    failures = []
    lock = threading.Lock()

    def target(rank: int):
        messenger = hub.messenger(rank, device=select_device(rank, use_cuda), timeout=timeout)
        try:
            results[rank] = fn(messenger.pg, messenger)
        except Exception as err:
            with lock:
                failures.append(err)
            hub.abort(f"rank {rank} failed: {err}")

    threads = [
        threading.Thread(target=target, args=(rank,), name=f"pipesplit-rank-{rank}", daemon=True)
        for rank in range(world_size)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    if failures:
        raise failures[0]
    return results


# ─── Processes ───────────────────────────────────────────────────────────────

def _worker(rank: int, world_size: int, config: TrainConfig, report: bool, result_dict: dict):
    """
    Worker function that runs on each spawned process.

    Sets up the distributed environment, runs the per-rank program and
    stores its results for the main process.
    """
    os.environ["RANK"] = str(rank)
    os.environ["WORLD_SIZE"] = str(world_size)
    os.environ["LOCAL_RANK"] = str(rank)
    os.environ["MASTER_ADDR"] = "127.0.0.1"
    os.environ["MASTER_PORT"] = str(result_dict.get("_port", 29500))

    setup_logging(result_dict.get("_log_level", logging.WARNING), rank=rank)
    pg = init_process_group(config.use_cuda)
    try:
        result_dict[f"rank_{rank}"] = run_rank(pg, TorchMessenger(pg), config, report=report)
    except PipelineError as err:
        get_rank_logger(__name__, rank).error("run failed: %s", err)
        print_failure(err)
        raise
    finally:
        destroy_process_group()


def _find_free_port():
    """Find a free port on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("", 0))
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        return s.getsockname()[1]


def run_processes(config: TrainConfig, report: bool = False, log_level: int = logging.WARNING) -> Dict[str, Any]:
    """Spawn one process per stage over torch.distributed and train."""
    world_size = config.world_size
    # Surface a bad partition before spawning anything
    partition_sizes(config.num_layers, world_size)

    manager = mp.Manager()
    result_dict = manager.dict()
    result_dict["_port"] = _find_free_port()
    result_dict["_log_level"] = log_level

    wall_start = time.perf_counter()
    mp.spawn(
        _worker,
        args=(world_size, config, report, result_dict),
        nprocs=world_size,
        join=True,
    )
    wall_time = time.perf_counter() - wall_start

    rank_results = [result_dict[f"rank_{rank}"] for rank in range(world_size)]
    return _collect(config, rank_results, wall_time)


def run_threads(config: TrainConfig, report: bool = False) -> Dict[str, Any]:
    """Run every stage as a thread of this process and train."""
    wall_start = time.perf_counter()
    rank_results = spawn_threads(
        config.world_size,
        lambda pg, messenger: run_rank(pg, messenger, config, report=report),
        timeout=config.recv_timeout,
        use_cuda=config.use_cuda,
    )
    wall_time = time.perf_counter() - wall_start
    return _collect(config, rank_results, wall_time)


# ─── Non-split reference ─────────────────────────────────────────────────────

def run_single(config: TrainConfig, report: bool = False) -> Dict[str, Any]:
    """Train the whole model in this process with one update per mini-batch."""
    device = select_device(0, config.use_cuda)
    model = nn.Sequential(*_model_fn(config)())
    trainer = LocalTrainer(model, optim.Adam(model.parameters(), lr=config.lr), device)

    train, test = _datasets(config)
    wall_start = time.perf_counter()
    history = trainer.fit(
        make_loader(*train, batch_size=config.minibatch_size),
        config.epochs,
        make_loader(*test, batch_size=config.minibatch_size),
        on_epoch=print_epoch if report else None,
    )
    wall_time = time.perf_counter() - wall_start

    results = _summarize(history)
    results.update({
        "mode": "single",
        "wall_time": wall_time,
        "partition": [config.num_layers],
        "idle_pct": 0.0,
        "config": config.to_dict(),
    })
    return results


def run_training(config: TrainConfig, report: bool = False, log_level: int = logging.WARNING) -> Dict[str, Any]:
    """
    Train according to `config` and return results.

    Returns:
        dict with keys: mode, wall_time, losses, final_loss, test_loss,
                        test_accuracy, updates, partition, idle_pct, config
                        (split mode adds rank_stats)
    """
    config.validate()
    if not config.split or config.num_stages == 1:
        return run_single(config, report=report)
    if config.backend == "threads":
        return run_threads(config, report=report)
    return run_processes(config, report=report, log_level=log_level)
