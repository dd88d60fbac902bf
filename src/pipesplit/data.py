"""
Dataset generation and distribution.

Only the root rank holds real inputs. At startup it sends every other rank
placeholders shaped like the dataset (one zero column per sample) so all
ranks iterate the same number of equally sized batches. The last rank is
the only one that needs ground truth, so it receives the real labels;
middle ranks get placeholders for those too.
"""

from typing import Optional, Tuple

import torch
import torch.nn.functional as F
from torch.utils.data import DataLoader, TensorDataset

from pipesplit.comms import Channel, Messenger
from pipesplit.process_group import ProcessGroup

Dataset = Tuple[torch.Tensor, torch.Tensor]


def make_dataset(samples: int, input_dim: int = 784, num_classes: int = 10, seed: int = 0) -> Dataset:
    """
    Synthetic classification data.

    Inputs are standard normal; labels are the argmax of a fixed random
    linear map of the inputs, one-hot encoded, so the task is learnable.
    """
    generator = torch.Generator().manual_seed(seed)
    x = torch.randn(samples, input_dim, generator=generator)
    projection = torch.randn(input_dim, num_classes, generator=generator)
    labels = (x @ projection).argmax(dim=1)
    return x, F.one_hot(labels, num_classes).float()


def placeholder(like: torch.Tensor) -> torch.Tensor:
    """Zero column with one row per sample of `like`."""
    return torch.zeros(like.shape[0], 1)


def distribute_dataset(pg: ProcessGroup, messenger: Messenger, dataset: Optional[Dataset] = None) -> Dataset:
    """
    Give every rank its view of the dataset.

    Args:
        pg: This rank's process group.
        messenger: Messenger used on the partition channel.
        dataset: (inputs, one-hot labels); required on the root, ignored elsewhere.

    Returns:
        (inputs, labels) for this rank: real data on the root, real labels
        on the last rank, zero placeholders for everything else.
    """
    if pg.is_root:
        if dataset is None:
            raise ValueError("the root rank must supply the dataset")
        x, y = dataset
        for rank in range(1, pg.world_size):
            y_send = y if rank == pg.world_size - 1 else placeholder(y)
            messenger.send((placeholder(x), y_send), rank, Channel.PARTITION)
        return x, y
    x, y = messenger.recv(0, Channel.PARTITION)
    return x, y


def make_loader(x: torch.Tensor, y: torch.Tensor, batch_size: int) -> DataLoader:
    """Ordered, restartable mini-batch iterator."""
    return DataLoader(TensorDataset(x, y), batch_size=batch_size, shuffle=False)
