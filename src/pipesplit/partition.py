"""
Layer partitioning.

Splits the full layer stack into one contiguous LayerGroup per rank and
hands each group to its owner once, at startup. Only the root rank ever
builds the full model; every other rank receives exactly one group.

Consider a 10-layer stack on 4 ranks:
  - sizes are [3, 3, 2, 2] (the first N % P groups take one extra layer)
  - rank 0 keeps layers 0-2 and sends 3-5, 6-7, 8-9 to ranks 1, 2, 3
"""

from typing import Callable, List, Sequence

import torch.nn as nn

from pipesplit.comms import Channel, Messenger
from pipesplit.errors import PartitionError, ProtocolError
from pipesplit.logging_utils import get_rank_logger
from pipesplit.model import LayerGroup
from pipesplit.process_group import ProcessGroup


def partition_sizes(num_layers: int, num_stages: int) -> List[int]:
    """
    Number of layers assigned to each stage.

    Sizes differ by at most one; remainder layers go one by one to the first
    stages, so every rank computes the same split.

    Raises:
        PartitionError: if there are fewer layers than stages.
    """
    if num_stages < 1:
        raise PartitionError(f"need at least one stage, got {num_stages}")
    if num_layers < num_stages:
        raise PartitionError(
            f"cannot split {num_layers} layers across {num_stages} ranks; "
            f"every rank needs at least one layer"
        )
    return [
        num_layers // num_stages + (1 if i < num_layers % num_stages else 0)
        for i in range(num_stages)
    ]


def split_layers(layers: Sequence[nn.Module], num_stages: int) -> List[LayerGroup]:
    """Split `layers` into `num_stages` contiguous, order-preserving groups."""
    layers = list(layers)
    groups = []
    start = 0
    for index, size in enumerate(partition_sizes(len(layers), num_stages)):
        groups.append(LayerGroup(layers[start:start + size], index=index, offset=start))
        start += size
    return groups


class PartitionBuilder:
    """Builds this rank's LayerGroup, distributing slices from the root."""

    def __init__(self, pg: ProcessGroup, messenger: Messenger):
        self.pg = pg
        self.messenger = messenger
        self.log = get_rank_logger(__name__, pg.rank)

    def build(self, model_fn: Callable[[], Sequence[nn.Module]]) -> LayerGroup:
        """
        Return the LayerGroup owned by this rank.

        On the root, `model_fn` builds the full stack, which is validated
        and split before anything is sent. Non-root ranks ignore `model_fn`
        and block until their group arrives on the partition channel.
        """
        if self.pg.is_root:
            layers = list(model_fn())
            try:
                groups = split_layers(layers, self.pg.world_size)
            except PartitionError as err:
                err.rank = self.pg.rank
                raise
            self.log.info(
                "partitioned %d layers into groups of %s",
                len(layers), [len(g) for g in groups],
            )
            for group in groups[1:]:
                self.messenger.send(group, group.index, Channel.PARTITION)
            group = groups[0]
        else:
            group = self.messenger.recv(0, Channel.PARTITION)
            if not isinstance(group, LayerGroup) or group.index != self.pg.rank:
                raise ProtocolError(
                    f"expected the layer group for rank {self.pg.rank}, got {type(group).__name__}"
                    + (f" for rank {group.index}" if isinstance(group, LayerGroup) else ""),
                    rank=self.pg.rank,
                    phase="partition",
                )
            self.log.debug("received layers [%d:%d]", group.offset, group.offset + len(group))
        return group.to(self.pg.device)
