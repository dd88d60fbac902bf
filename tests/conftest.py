"""
Pytest Configuration and Fixtures for Pipeline Testing.

===============================================================================
CONCEPTUAL OVERVIEW:
===============================================================================

Split-mode behaviour only shows up when several ranks talk to each other.
Rather than launching processes for every test, most tests run each rank
as a thread on a shared LocalHub, which speaks the same Messenger protocol
as the torch.distributed transport:

-   **`run_ranks` fixture**: Runs a per-rank function on N thread-ranks and
    returns their results in rank order. A receive timeout turns a protocol
    deadlock into a test failure instead of a hung test run.
-   **`reference_layers` fixture**: A small seeded layer stack, the single
    source of truth for split-vs-unsplit equivalence checks.
-   **`batch` fixture**: A deterministic (inputs, one-hot labels) pair that
    matches the reference stack's dimensions.

===============================================================================
"""

from typing import Any, Callable, List

import pytest
import torch

from pipesplit.data import make_dataset
from pipesplit.model import build_mlp
from pipesplit.runner import spawn_threads

INPUT_DIM = 8
HIDDEN_DIM = 6
NUM_CLASSES = 3


@pytest.fixture
def run_ranks() -> Callable[..., List[Any]]:
    """
    Runs `fn(pg, messenger)` on `world_size` thread-ranks.

    Usage:
        def test_something(run_ranks):
            results = run_ranks(2, lambda pg, messenger: pg.rank)
            assert results == [0, 1]

    Returns:
        Callable: `run(world_size, fn, timeout=10.0)` returning the per-rank
        results in rank order. The first rank failure is re-raised.
    """
    def run(world_size: int, fn: Callable, timeout: float = 10.0) -> List[Any]:
        return spawn_threads(world_size, fn, timeout=timeout, use_cuda=False)
    return run


@pytest.fixture
def reference_layers():
    """
    A seeded 4-layer stack: 8 -> 6 -> 6 -> 6 -> 3.

    Tests that hand these layers to a pipeline must deep-copy them first so
    the reference weights stay untouched.
    """
    torch.manual_seed(0)
    return build_mlp(INPUT_DIM, HIDDEN_DIM, NUM_CLASSES, num_layers=4)


@pytest.fixture
def batch():
    """
    Eight samples of synthetic classification data.

    Returns:
        tuple: (inputs of shape (8, INPUT_DIM), one-hot labels of shape (8, NUM_CLASSES))
    """
    return make_dataset(8, INPUT_DIM, NUM_CLASSES, seed=123)
