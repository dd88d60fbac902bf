"""
Forward execution of one pipeline stage.

Each rank owns one PipelineStage wrapping its LayerGroup. A forward call
walks two states, AwaitingInput -> Computed:

  1. receive_input: rank 0 takes the raw batch, rank r > 0 blocks on the
     activation sent by rank r - 1
  2. forward: cache the input under a fresh token, run the local layers
  3. emit: rank r < P - 1 sends the activation to rank r + 1 and returns
     None; the last rank returns it as the model's prediction

The cached input lives in an ActivationStash until the backward call that
presents the matching token consumes it. The stash enforces the pairing:
a backward call with no matching forward, a token used twice or out of
order, or more in-flight inputs than the stash holds all raise
ProtocolError.
"""

from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional, Tuple

import torch

from pipesplit.comms import Channel, Messenger
from pipesplit.errors import ProtocolError
from pipesplit.logging_utils import get_rank_logger
from pipesplit.model import LayerGroup
from pipesplit.process_group import ProcessGroup, to_device
from pipesplit.profiler import PipelineProfiler


@dataclass(frozen=True)
class ActivationToken:
    """Handle for one cached forward input, issued by the forward call."""

    rank: int
    seq: int


class ActivationStash:
    """
    FIFO of forward inputs awaiting their backward call.

    With capacity 1 the stash is a single slot: a second forward call before
    the first input is consumed is a protocol violation.
    """

    def __init__(self, rank: int, capacity: int = 1):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self.rank = rank
        self.capacity = capacity
        self._inputs: "OrderedDict[ActivationToken, torch.Tensor]" = OrderedDict()
        self._next_seq = 0

    def __len__(self) -> int:
        return len(self._inputs)

    def __contains__(self, token: ActivationToken) -> bool:
        return token in self._inputs

    def put(self, tensor: torch.Tensor) -> ActivationToken:
        if len(self._inputs) >= self.capacity:
            oldest = next(iter(self._inputs))
            raise ProtocolError(
                f"forward called with {len(self._inputs)} un-consumed cached input(s) "
                f"(capacity {self.capacity}); oldest is seq {oldest.seq}",
                rank=self.rank,
                phase="forward",
            )
        token = ActivationToken(self.rank, self._next_seq)
        self._next_seq += 1
        self._inputs[token] = tensor
        return token

    def take(self, token: ActivationToken) -> torch.Tensor:
        self._check(token)
        oldest = next(iter(self._inputs))
        if token != oldest:
            raise ProtocolError(
                f"backward for seq {token.seq} issued before seq {oldest.seq}; "
                f"backward calls must follow forward order",
                rank=self.rank,
                phase="backward",
            )
        return self._inputs.pop(token)

    def discard(self, token: ActivationToken) -> None:
        """Drop a cached input without a backward call."""
        self._check(token)
        del self._inputs[token]

    def _check(self, token: ActivationToken) -> None:
        if not isinstance(token, ActivationToken) or token.rank != self.rank:
            raise ProtocolError(
                f"token {token!r} was not issued by this rank",
                rank=self.rank,
                phase="backward",
            )
        if token not in self._inputs:
            raise ProtocolError(
                f"no cached input for seq {token.seq}: backward without a matching "
                f"forward, or the input was already consumed",
                rank=self.rank,
                phase="backward",
            )


class PipelineStage:
    """
    Runtime for the LayerGroup owned by one rank.

    Args:
        pg: This rank's process group.
        messenger: Point-to-point messenger to the neighbouring ranks.
        group: The LayerGroup owned by this rank.
        capacity: How many forward inputs may await backward at once.
        profiler: Optional profiler for compute/communication timings.
    """

    def __init__(self, pg: ProcessGroup, messenger: Messenger, group: LayerGroup,
                 capacity: int = 1, profiler: Optional[PipelineProfiler] = None):
        if group.index != pg.rank:
            raise ProtocolError(
                f"stage given the layer group of rank {group.index}",
                rank=pg.rank,
                phase="partition",
            )
        self.pg = pg
        self.messenger = messenger
        self.group = group
        self.stash = ActivationStash(pg.rank, capacity)
        self.profiler = profiler or PipelineProfiler()
        self.log = get_rank_logger(__name__, pg.rank)
        self._event_prefix = ""

    @property
    def is_first(self) -> bool:
        return self.pg.is_first

    @property
    def is_last(self) -> bool:
        return self.pg.is_last

    @property
    def pending(self) -> int:
        """Number of cached inputs still waiting for backward."""
        return len(self.stash)

    @contextmanager
    def evaluation(self):
        """Record forward events as eval_* so they stay out of the training time split."""
        self._event_prefix = "eval_"
        try:
            with self.profiler.excluded():
                yield
        finally:
            self._event_prefix = ""

    def _track(self, name: str):
        return self.profiler.track(self._event_prefix + name)

    def parameters(self):
        return self.group.parameters()

    def named_parameters(self):
        return self.group.named_parameters()

    # ─── Forward protocol ────────────────────────────────────────────────

    def receive_input(self, batch: Optional[torch.Tensor] = None) -> torch.Tensor:
        """AwaitingInput: take the raw batch (rank 0) or the upstream activation."""
        if self.is_first:
            if batch is None:
                raise ProtocolError("rank 0 needs an input batch", rank=self.pg.rank, phase="forward")
            return to_device(batch, self.pg.device)
        with self._track("recv_fwd"):
            return self.messenger.recv(self.pg.prev_rank, Channel.FORWARD)

    def forward(self, x: torch.Tensor, keep: bool = True) -> Tuple[Optional[ActivationToken], torch.Tensor]:
        """
        Computed: run the local layers on `x`.

        When `keep` is set the input is cached for the paired backward call
        and its token is returned; evaluation passes use keep=False.
        """
        token = self.stash.put(x) if keep else None
        with self._track("compute_fwd"), torch.no_grad():
            activation = self.group(x)
        return token, activation

    def emit(self, activation: torch.Tensor) -> Optional[torch.Tensor]:
        """
        Hand the activation on.

        Non-terminal ranks send it to the next rank and return None; the
        last rank returns it, as it is the only rank that sees predictions.
        """
        if self.is_last:
            return activation
        with self._track("send_fwd"):
            self.messenger.send(activation, self.pg.next_rank, Channel.FORWARD)
        return None

    def run_forward(self, batch: Optional[torch.Tensor] = None,
                    keep: bool = True) -> Tuple[Optional[ActivationToken], Optional[torch.Tensor]]:
        """Receive, compute and emit one micro-batch."""
        x = self.receive_input(batch)
        token, activation = self.forward(x, keep=keep)
        prediction = self.emit(activation)
        if token is not None:
            self.log.debug("forward seq %d done", token.seq)
        return token, prediction

    # ─── Stash access for backward ───────────────────────────────────────

    def take_input(self, token: ActivationToken) -> torch.Tensor:
        """Consume the cached input for `token`."""
        return self.stash.take(token)

    def release(self, token: ActivationToken) -> None:
        """Drop the cached input for `token` without running backward."""
        self.stash.discard(token)
