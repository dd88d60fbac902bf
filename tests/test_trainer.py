"""
Tests for gradient accumulation and the training loops.

One split-mode update over M equal micro-batches must move every parameter
exactly as one unsplit update over the concatenated batch does.
"""

import copy

import pytest
import torch
import torch.nn as nn
import torch.optim as optim

from pipesplit.comms import LocalHub
from pipesplit.config import TrainConfig
from pipesplit.coordinator import GradientCoordinator
from pipesplit.data import make_dataset, make_loader
from pipesplit.errors import NumericError, PartitionError, ProtocolError
from pipesplit.model import LayerGroup, logit_cross_entropy
from pipesplit.partition import PartitionBuilder
from pipesplit.runner import run_training
from pipesplit.stage import PipelineStage
from pipesplit.trainer import GradientAccumulator, LocalTrainer, PipelineTrainer


def _pipeline_trainer(pg, messenger, group, steps, capacity=None, skip_nonfinite=False, lr=0.1):
    stage = PipelineStage(pg, messenger, group, capacity=capacity or steps)
    coordinator = GradientCoordinator(pg, messenger, stage, logit_cross_entropy)
    optimizer = optim.SGD(stage.parameters(), lr=lr)
    return PipelineTrainer(pg, stage, coordinator, optimizer, steps, skip_nonfinite=skip_nonfinite)


def _single_rank_trainer(layers, steps, **kwargs):
    messenger = LocalHub(1).messenger(0)
    group = LayerGroup(copy.deepcopy(layers), index=0, offset=0)
    return _pipeline_trainer(messenger.pg, messenger, group, steps, **kwargs)


# ─── GradientAccumulator ─────────────────────────────────────────────────────

def test_accumulator_mean():
    acc = GradientAccumulator(4)
    for value in [1.0, 2.0, 3.0, 4.0]:
        acc.add({"w": torch.tensor([value])})
    assert acc.full
    assert acc.mean()["w"].item() == pytest.approx(2.5)


def test_accumulator_does_not_alias_first_contribution():
    acc = GradientAccumulator(2)
    first = torch.tensor([1.0])
    acc.add({"w": first})
    acc.add({"w": torch.tensor([3.0])})
    assert first.item() == 1.0
    assert acc.mean()["w"].item() == pytest.approx(2.0)


def test_accumulator_overflow():
    acc = GradientAccumulator(1, rank=3)
    acc.add({"w": torch.zeros(1)})
    with pytest.raises(ProtocolError) as excinfo:
        acc.add({"w": torch.zeros(1)})
    assert excinfo.value.rank == 3
    assert excinfo.value.phase == "update"


def test_accumulator_empty_mean_and_reset():
    acc = GradientAccumulator(2)
    with pytest.raises(ProtocolError):
        acc.mean()
    acc.add({"w": torch.ones(1)})
    acc.reset()
    assert acc.count == 0
    with pytest.raises(ProtocolError):
        acc.mean()


def test_accumulator_needs_positive_steps():
    with pytest.raises(ValueError):
        GradientAccumulator(0)


# ─── PipelineTrainer ─────────────────────────────────────────────────────────

@pytest.mark.parametrize("world_size", [1, 2, 3])
def test_accumulated_update_matches_one_unsplit_step(run_ranks, reference_layers, batch, world_size):
    x, y = batch
    steps = 4
    micro = list(zip(x.chunk(steps), y.chunk(steps)))

    reference = nn.Sequential(*copy.deepcopy(reference_layers))
    LocalTrainer(reference, optim.SGD(reference.parameters(), lr=0.1)).train_step(x, y)
    expected = [layer.state_dict() for layer in reference]

    def rank_fn(pg, messenger):
        group = PartitionBuilder(pg, messenger).build(lambda: copy.deepcopy(reference_layers))
        trainer = _pipeline_trainer(pg, messenger, group, steps)
        returned = [trainer.train_step(mx, my) for mx, my in micro]
        return group, returned, trainer.updates

    results = run_ranks(world_size, rank_fn)

    for group, returned, updates in results:
        assert updates == 1
        assert returned[:-1] == [None] * (steps - 1)
        for j, layer in enumerate(group.layers):
            for key, value in layer.state_dict().items():
                torch.testing.assert_close(value, expected[group.offset + j][key], rtol=1e-5, atol=1e-6)

    assert all(returned[-1] is None for _, returned, _ in results[:-1])
    assert results[-1][1][-1] == pytest.approx(
        sum(logit_cross_entropy(nn.Sequential(*reference_layers)(mx), my).item() for mx, my in micro) / steps,
        rel=1e-5,
    )


def test_partial_cycle_carries_across_epochs(reference_layers):
    trainer = _single_rank_trainer(reference_layers, steps=2)
    loader = make_loader(*make_dataset(6, 8, 3, seed=1), batch_size=2)

    history = trainer.fit(loader, epochs=2)

    assert [stats.updates for stats in history] == [1, 2]
    assert trainer.updates == 3
    assert trainer.stage.pending == 0


def test_trailing_partial_cycle_is_released(reference_layers):
    trainer = _single_rank_trainer(reference_layers, steps=2)
    loader = make_loader(*make_dataset(10, 8, 3, seed=1), batch_size=2)

    history = trainer.fit(loader, epochs=1)

    assert history[0].updates == 2
    assert len(history[0].losses) == 2
    assert trainer.stage.pending == 0
    assert trainer.records == []


def test_non_finite_micro_batch_aborts_by_default(reference_layers, batch):
    x, y = batch
    trainer = _single_rank_trainer(reference_layers, steps=2)
    trainer.train_step(x[:4], torch.full_like(y[:4], float("nan")))
    with pytest.raises(NumericError):
        trainer.train_step(x[4:], y[4:])


def test_non_finite_micro_batch_can_be_skipped(reference_layers, batch):
    x, y = batch
    trainer = _single_rank_trainer(reference_layers, steps=2, skip_nonfinite=True)
    trainer.train_step(x[:4], torch.full_like(y[:4], float("nan")))
    loss = trainer.train_step(x[4:], y[4:])

    assert trainer.skipped == 1
    assert trainer.updates == 1
    assert loss == pytest.approx(
        logit_cross_entropy(nn.Sequential(*reference_layers)(x[4:]), y[4:]).item(), rel=1e-5
    )
    assert all(torch.isfinite(p).all() for p in trainer.stage.parameters())


def test_stash_must_hold_a_full_cycle(reference_layers):
    with pytest.raises(ValueError, match="gradient accumulation"):
        _single_rank_trainer(reference_layers, steps=4, capacity=2)


def test_evaluate_on_single_rank(reference_layers):
    trainer = _single_rank_trainer(reference_layers, steps=1)
    loader = make_loader(*make_dataset(12, 8, 3, seed=5), batch_size=5)

    loss, accuracy = trainer.evaluate(loader)

    assert loss > 0
    assert 0.0 <= accuracy <= 1.0
    assert trainer.stage.pending == 0


def _assert_time_split_consistent(stats):
    busy = stats["compute_time"] + stats["comm_time"] + stats["update_time"]
    assert busy <= stats["total_time"] + 1e-9
    shares = stats["compute_pct"] + stats["comm_pct"] + stats["update_pct"] + stats["idle_pct"]
    assert shares == pytest.approx(100.0, abs=1e-6)


def test_cycle_timing_covers_forwards_and_skips_evaluation(reference_layers):
    trainer = _single_rank_trainer(reference_layers, steps=2)
    train_loader = make_loader(*make_dataset(6, 8, 3, seed=1), batch_size=2)
    test_loader = make_loader(*make_dataset(4, 8, 3, seed=2), batch_size=2)

    trainer.fit(train_loader, epochs=2, test_loader=test_loader)
    stats = trainer.stage.profiler.get_stats()

    assert stats["num_steps"] == trainer.updates == 3
    assert stats["events"]["compute_fwd"]["count"] == 6
    assert stats["events"]["eval_compute_fwd"]["count"] == 4
    _assert_time_split_consistent(stats)


# ─── End to end ──────────────────────────────────────────────────────────────

def _small_config(**changes):
    config = TrainConfig(
        num_stages=2, num_layers=4, input_dim=8, hidden_dim=8, num_classes=3,
        train_samples=64, test_samples=32, minibatch_size=8, accumulation_steps=4,
        epochs=2, lr=1e-2, use_cuda=False, backend="threads", recv_timeout=30.0,
    )
    return config.with_options(**changes)


def test_run_training_split_threads():
    result = run_training(_small_config())

    assert result["mode"] == "split"
    assert result["partition"] == [2, 2]
    assert result["updates"] == 4
    assert len(result["losses"]) == 2
    assert 0.0 <= result["test_accuracy"] <= 1.0
    assert len(result["rank_stats"]) == 2
    for stats in result["rank_stats"]:
        assert stats["num_steps"] == 4
        _assert_time_split_consistent(stats)


def test_run_training_single_process():
    result = run_training(_small_config(split=False))

    assert result["mode"] == "single"
    assert result["partition"] == [4]
    assert result["updates"] == 16
    assert result["test_loss"] is not None


def test_run_training_rejects_impossible_partition():
    with pytest.raises(PartitionError):
        run_training(_small_config(num_layers=2, num_stages=3))


@pytest.mark.slow
def test_run_training_split_processes():
    result = run_training(_small_config(backend="processes", epochs=1))

    assert result["mode"] == "split"
    assert result["updates"] == 2
    assert result["partition"] == [2, 2]
