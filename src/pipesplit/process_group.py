"""
Process-group context.

A `ProcessGroup` is the explicit identity of one participant: its rank, the
total rank count and the compute device it owns. Every pipeline component
receives one in its constructor instead of reading global state.
"""

import os
from dataclasses import dataclass
from typing import Optional

import torch
import torch.distributed as dist


@dataclass(frozen=True)
class ProcessGroup:
    """Identity of one rank in a fixed group of `world_size` ranks."""

    rank: int
    world_size: int
    device: torch.device = torch.device("cpu")

    def __post_init__(self):
        if self.world_size < 1:
            raise ValueError(f"world_size must be >= 1, got {self.world_size}")
        if not 0 <= self.rank < self.world_size:
            raise ValueError(f"rank {self.rank} outside [0, {self.world_size})")

    @property
    def is_first(self) -> bool:
        return self.rank == 0

    @property
    def is_last(self) -> bool:
        return self.rank == self.world_size - 1

    @property
    def is_root(self) -> bool:
        """Rank 0 builds the model and owns the dataset."""
        return self.rank == 0

    @property
    def prev_rank(self) -> Optional[int]:
        return self.rank - 1 if self.rank > 0 else None

    @property
    def next_rank(self) -> Optional[int]:
        return self.rank + 1 if self.rank < self.world_size - 1 else None


def select_device(rank: int, use_cuda: bool = True) -> torch.device:
    """Pick the accelerator for `rank`, or the host when none is usable."""
    if use_cuda and torch.cuda.is_available():
        return torch.device(f"cuda:{rank % torch.cuda.device_count()}")
    return torch.device("cpu")


def to_device(tensor: torch.Tensor, device: torch.device) -> torch.Tensor:
    """Move a tensor to the compute device (no-op when already there)."""
    return tensor.to(device, non_blocking=False)


def init_process_group(use_cuda: bool = True) -> ProcessGroup:
    """
    Initialize the torch.distributed process group.

    Reads RANK, WORLD_SIZE, LOCAL_RANK from environment variables
    (set automatically by torch.multiprocessing.spawn or torchrun).

    Returns:
        ProcessGroup: this process's rank, the world size and its device.
    """
    rank = int(os.environ["RANK"])
    world_size = int(os.environ["WORLD_SIZE"])
    local_rank = int(os.environ.get("LOCAL_RANK", rank))

    device = select_device(local_rank, use_cuda)

    # NCCL needs one device per rank; fall back to gloo otherwise
    if device.type == "cuda" and torch.cuda.device_count() >= world_size:
        dist.init_process_group(backend="nccl", rank=rank, world_size=world_size)
        torch.cuda.set_device(device)
    else:
        device = torch.device("cpu")
        dist.init_process_group(backend="gloo", rank=rank, world_size=world_size)

    return ProcessGroup(rank=rank, world_size=world_size, device=device)


def destroy_process_group() -> None:
    """Tear down torch.distributed if it was initialized."""
    if dist.is_available() and dist.is_initialized():
        dist.destroy_process_group()
