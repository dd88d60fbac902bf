"""
Backward pass for one micro-batch across the pipeline.

The GradientCoordinator runs the backward half of the protocol for a
single MicroBatchRecord. Ranks execute in order P-1 down to 0, gated by
the backward channel:

  Rank P-1:  recompute output -> loss -> d_out = dLoss/dOut
  Rank r:    d_out <- recv(r + 1)
  All ranks: d_in = dOut/dIn . d_out   -> send(r - 1)   (r > 0)
             param grads = dOut/dParams . d_out

The forward pass ran without autograd, so each rank recomputes its group's
output from the cached input before differentiating. The input gradient is
computed and sent first so the upstream rank can start as early as
possible; the parameter gradients come from a second backward pass over the
same graph driven by the same d_out.
"""

import math
from dataclasses import dataclass
from typing import Callable, Dict, Optional

import torch

from pipesplit.comms import Channel, Messenger
from pipesplit.errors import NumericError, ProtocolError
from pipesplit.logging_utils import get_rank_logger
from pipesplit.process_group import ProcessGroup, to_device
from pipesplit.profiler import PipelineProfiler
from pipesplit.stage import ActivationToken, PipelineStage

LossFn = Callable[[torch.Tensor, torch.Tensor], torch.Tensor]


@dataclass
class MicroBatchRecord:
    """
    A forward call awaiting its backward call.

    Only the last rank holds a label; on every other rank `label` is None.
    """

    token: ActivationToken
    label: Optional[torch.Tensor] = None


@dataclass
class BackwardResult:
    """Local parameter gradients, keyed by parameter name, plus the loss on the last rank."""

    grads: Dict[str, torch.Tensor]
    loss: Optional[float] = None


class GradientCoordinator:
    """Drives the backward protocol for this rank's stage."""

    def __init__(self, pg: ProcessGroup, messenger: Messenger, stage: PipelineStage,
                 loss_fn: LossFn, profiler: Optional[PipelineProfiler] = None):
        self.pg = pg
        self.messenger = messenger
        self.stage = stage
        self.loss_fn = loss_fn
        self.profiler = profiler or stage.profiler
        self.log = get_rank_logger(__name__, pg.rank)

    def backward(self, record: MicroBatchRecord) -> BackwardResult:
        """
        Run the backward pass for one micro-batch.

        Raises:
            ProtocolError: no cached input matches `record.token`, or the
                last rank was given no label.
            NumericError: the loss or a gradient is not finite. Raised only
                after this rank has sent its input gradient upstream.
        """
        if self.pg.is_last and record.label is None:
            raise ProtocolError("last rank needs the label for backward", rank=self.pg.rank, phase="backward")
        x = self.stage.take_input(record.token)

        names, params = zip(*self.stage.named_parameters())

        # === RECOMPUTE ===

        with self.profiler.track("compute_bwd"), torch.enable_grad():
            x = x.detach().requires_grad_(not self.pg.is_first)
            out = self.stage.group(x)

            loss_value = None
            if self.pg.is_last:
                label = to_device(record.label, self.pg.device)
                loss = self.loss_fn(out, label)
                (d_out,) = torch.autograd.grad(loss, out, retain_graph=True)
                loss_value = loss.item()

        # === DOWNSTREAM GRADIENT ===

        if not self.pg.is_last:
            with self.profiler.track("recv_bwd"):
                d_out = self.messenger.recv(self.pg.next_rank, Channel.BACKWARD)
            if d_out.shape != out.shape:
                raise ProtocolError(
                    f"gradient of shape {tuple(d_out.shape)} does not match output "
                    f"of shape {tuple(out.shape)}",
                    rank=self.pg.rank,
                    phase="backward",
                )

        # === INPUT GRADIENT -> UPSTREAM ===

        if not self.pg.is_first:
            with self.profiler.track("compute_bwd"):
                (d_in,) = torch.autograd.grad(out, x, grad_outputs=d_out, retain_graph=True)
            with self.profiler.track("send_bwd"):
                self.messenger.send(d_in, self.pg.prev_rank, Channel.BACKWARD)

        # === PARAMETER GRADIENTS ===

        with self.profiler.track("compute_bwd"):
            param_grads = torch.autograd.grad(out, params, grad_outputs=d_out, allow_unused=True)
        grads = {
            name: g if g is not None else torch.zeros_like(p)
            for name, p, g in zip(names, params, param_grads)
        }
        self.log.debug("backward seq %d done", record.token.seq)

        self._check_finite(record, loss_value, grads)
        return BackwardResult(grads=grads, loss=loss_value)

    def _check_finite(self, record: MicroBatchRecord, loss: Optional[float],
                      grads: Dict[str, torch.Tensor]) -> None:
        if loss is not None and not math.isfinite(loss):
            raise NumericError(f"non-finite loss {loss} for micro-batch seq {record.token.seq}",
                               rank=self.pg.rank)
        bad = [name for name, g in grads.items() if not torch.isfinite(g).all()]
        if bad:
            raise NumericError(
                f"non-finite gradient for {', '.join(bad)} (micro-batch seq {record.token.seq})",
                rank=self.pg.rank,
            )
