"""
Training loops.

PipelineTrainer drives split mode on one rank: it forwards micro-batches
through the pipeline, buffers one record per micro-batch, and once M
records exist it runs their backward passes in order, sums the local
parameter gradients, averages them and applies one optimizer update.
Parameters are disjoint across ranks, so every rank updates on its own
with no synchronization beyond the forward/backward messages.

LocalTrainer is the non-split reference: the whole model in one process,
one gradient and one optimizer update per mini-batch.
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import torch
import torch.nn as nn

from pipesplit.coordinator import GradientCoordinator, MicroBatchRecord
from pipesplit.errors import NumericError, ProtocolError
from pipesplit.logging_utils import get_rank_logger
from pipesplit.model import count_correct, logit_cross_entropy
from pipesplit.process_group import ProcessGroup, to_device
from pipesplit.stage import PipelineStage

Batch = Tuple[torch.Tensor, torch.Tensor]


class GradientAccumulator:
    """
    Running per-parameter gradient sum over one update cycle.

    Holds at most `steps` contributions; `mean()` divides the sum by the
    number of contributions actually added.
    """

    def __init__(self, steps: int, rank: Optional[int] = None):
        if steps < 1:
            raise ValueError(f"steps must be >= 1, got {steps}")
        self.steps = steps
        self.rank = rank
        self._sums: Dict[str, torch.Tensor] = {}
        self.count = 0

    def add(self, grads: Mapping[str, torch.Tensor]) -> None:
        if self.count >= self.steps:
            raise ProtocolError(
                f"accumulator already holds {self.count} of {self.steps} contributions",
                rank=self.rank,
                phase="update",
            )
        for name, grad in grads.items():
            if name in self._sums:
                self._sums[name] += grad
            else:
                self._sums[name] = grad.detach().clone()
        self.count += 1

    @property
    def full(self) -> bool:
        return self.count == self.steps

    def mean(self) -> Dict[str, torch.Tensor]:
        if self.count == 0:
            raise ProtocolError("no gradients accumulated", rank=self.rank, phase="update")
        return {name: total / self.count for name, total in self._sums.items()}

    def reset(self) -> None:
        self._sums.clear()
        self.count = 0


@dataclass
class EpochStats:
    """Metrics for one epoch. Loss fields are None on ranks without labels."""

    epoch: int
    updates: int = 0
    train_loss: Optional[float] = None
    test_loss: Optional[float] = None
    test_accuracy: Optional[float] = None
    skipped: int = 0
    losses: List[float] = field(default_factory=list)


class PipelineTrainer:
    """
    Split-mode training loop for one rank.

    Args:
        pg: This rank's process group.
        stage: The rank's PipelineStage. Its stash must hold at least
            `accumulation_steps` inputs.
        coordinator: Backward driver for the same stage.
        optimizer: Optimizer over the stage's parameters.
        accumulation_steps: Micro-batches per optimizer update (M).
        skip_nonfinite: Drop micro-batches whose loss or gradients are not
            finite instead of aborting the run.
    """

    def __init__(self, pg: ProcessGroup, stage: PipelineStage, coordinator: GradientCoordinator,
                 optimizer: torch.optim.Optimizer, accumulation_steps: int,
                 skip_nonfinite: bool = False):
        if stage.stash.capacity < accumulation_steps:
            raise ValueError(
                f"stage stash holds {stage.stash.capacity} inputs, "
                f"need {accumulation_steps} for gradient accumulation"
            )
        self.pg = pg
        self.stage = stage
        self.coordinator = coordinator
        self.optimizer = optimizer
        self.accumulation_steps = accumulation_steps
        self.skip_nonfinite = skip_nonfinite
        self.accumulator = GradientAccumulator(accumulation_steps, rank=pg.rank)
        self.records: List[MicroBatchRecord] = []
        self.updates = 0
        self.skipped = 0
        self.log = get_rank_logger(__name__, pg.rank)

    def train_step(self, x: torch.Tensor, y: torch.Tensor) -> Optional[float]:
        """
        Forward one micro-batch; update once M micro-batches are buffered.

        Returns:
            The mean micro-batch loss of the update cycle on the last rank
            when this call triggered an update, otherwise None.
        """
        if not self.records:
            self.stage.profiler.start_step()
        token, _ = self.stage.run_forward(x if self.pg.is_first else None)
        label = y if self.pg.is_last else None
        self.records.append(MicroBatchRecord(token, label))
        if len(self.records) == self.accumulation_steps:
            return self.update()
        return None

    def update(self) -> Optional[float]:
        """Backward every buffered record in order, then apply the averaged gradient."""
        profiler = self.stage.profiler
        losses = []
        for record in self.records:
            try:
                result = self.coordinator.backward(record)
            except NumericError as err:
                if not self.skip_nonfinite:
                    raise
                self.skipped += 1
                self.log.warning("skipping micro-batch: %s", err.message)
                continue
            self.accumulator.add(result.grads)
            if result.loss is not None:
                losses.append(result.loss)
        self.records.clear()

        if self.accumulator.count > 0:
            with profiler.track("update"):
                self._apply(self.accumulator.mean())
            self.updates += 1
        self.accumulator.reset()
        profiler.stop_step()

        if not losses:
            return None
        mean_loss = sum(losses) / len(losses)
        self.log.debug("update %d: loss %.6f", self.updates, mean_loss)
        return mean_loss

    def _apply(self, grads: Mapping[str, torch.Tensor]) -> None:
        for name, param in self.stage.named_parameters():
            param.grad = grads[name].to(param.dtype)
        self.optimizer.step()
        self.optimizer.zero_grad(set_to_none=True)

    def discard_pending(self) -> int:
        """Release buffered records that will never reach a full update cycle."""
        dropped = len(self.records)
        for record in self.records:
            self.stage.release(record.token)
        self.records.clear()
        if dropped:
            self.stage.profiler.stop_step()
        return dropped

    def train_epoch(self, loader: Iterable[Batch], epoch: int = 0) -> EpochStats:
        """
        One pass over `loader`.

        The record buffer is not flushed at the end of the epoch: a partial
        update cycle continues into the next epoch.
        """
        stats = EpochStats(epoch=epoch)
        skipped_before = self.skipped
        updates_before = self.updates
        for x, y in loader:
            loss = self.train_step(x, y)
            if loss is not None:
                stats.losses.append(loss)
        stats.updates = self.updates - updates_before
        stats.skipped = self.skipped - skipped_before
        if stats.losses:
            stats.train_loss = sum(stats.losses) / len(stats.losses)
        return stats

    def evaluate(self, loader: Iterable[Batch]) -> Optional[Tuple[float, float]]:
        """
        Forward-only pass over `loader`.

        Returns:
            (mean loss per sample, accuracy) on the last rank, None elsewhere.
        """
        total_loss = 0.0
        correct = 0
        num = 0
        with self.stage.evaluation():
            for x, y in loader:
                _, prediction = self.stage.run_forward(x if self.pg.is_first else None, keep=False)
                if self.pg.is_last:
                    label = to_device(y, self.pg.device)
                    total_loss += self.coordinator.loss_fn(prediction, label).item() * label.shape[0]
                    correct += count_correct(prediction, label)
                num += x.shape[0]
        if not self.pg.is_last or num == 0:
            return None
        return total_loss / num, correct / num

    def fit(self, train_loader: Iterable[Batch], epochs: int,
            test_loader: Optional[Iterable[Batch]] = None,
            on_epoch: Optional[Callable[[EpochStats], None]] = None) -> List[EpochStats]:
        """Train for `epochs` epochs, evaluating after each one if `test_loader` is given."""
        history = []
        for epoch in range(1, epochs + 1):
            stats = self.train_epoch(train_loader, epoch)
            if test_loader is not None:
                metrics = self.evaluate(test_loader)
                if metrics is not None:
                    stats.test_loss, stats.test_accuracy = metrics
            if self.pg.is_last:
                self.log.info("epoch %d: %d updates, train loss %s", epoch, stats.updates, stats.train_loss)
            history.append(stats)
            if on_epoch is not None:
                on_epoch(stats)
        dropped = self.discard_pending()
        if dropped:
            self.log.info("dropped %d micro-batches short of a full update cycle", dropped)
        return history


class LocalTrainer:
    """Non-split reference loop: the whole model on one rank, one update per mini-batch."""

    def __init__(self, model: nn.Module, optimizer: torch.optim.Optimizer,
                 device: torch.device = torch.device("cpu"),
                 loss_fn: Callable = logit_cross_entropy):
        self.model = model.to(device)
        self.optimizer = optimizer
        self.device = device
        self.loss_fn = loss_fn
        self.updates = 0

    def train_step(self, x: torch.Tensor, y: torch.Tensor) -> float:
        x, y = to_device(x, self.device), to_device(y, self.device)
        self.optimizer.zero_grad(set_to_none=True)
        loss = self.loss_fn(self.model(x), y)
        loss.backward()
        self.optimizer.step()
        self.updates += 1
        return loss.item()

    def train_epoch(self, loader: Iterable[Batch], epoch: int = 0) -> EpochStats:
        stats = EpochStats(epoch=epoch)
        for x, y in loader:
            stats.losses.append(self.train_step(x, y))
            stats.updates += 1
        if stats.losses:
            stats.train_loss = sum(stats.losses) / len(stats.losses)
        return stats

    def evaluate(self, loader: Iterable[Batch]) -> Optional[Tuple[float, float]]:
        total_loss = 0.0
        correct = 0
        num = 0
        with torch.no_grad():
            for x, y in loader:
                x, y = to_device(x, self.device), to_device(y, self.device)
                out = self.model(x)
                total_loss += self.loss_fn(out, y).item() * x.shape[0]
                correct += count_correct(out, y)
                num += x.shape[0]
        if num == 0:
            return None
        return total_loss / num, correct / num

    def fit(self, train_loader: Iterable[Batch], epochs: int,
            test_loader: Optional[Iterable[Batch]] = None,
            on_epoch: Optional[Callable[[EpochStats], None]] = None) -> List[EpochStats]:
        history = []
        for epoch in range(1, epochs + 1):
            stats = self.train_epoch(train_loader, epoch)
            if test_loader is not None:
                metrics = self.evaluate(test_loader)
                if metrics is not None:
                    stats.test_loss, stats.test_accuracy = metrics
            history.append(stats)
            if on_epoch is not None:
                on_epoch(stats)
        return history
