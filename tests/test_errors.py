"""Tests for the error taxonomy and rank-aware logging."""

import logging

import pytest

from pipesplit.errors import (
    PHASES,
    CommunicationError,
    NumericError,
    PartitionError,
    PipelineError,
    ProtocolError,
)
from pipesplit.logging_utils import RankAdapter, get_rank_logger, setup_logging
from pipesplit.process_group import ProcessGroup


def test_error_reports_rank_and_phase():
    err = ProtocolError("backward without forward", rank=2, phase="backward")
    assert str(err) == "[rank 2, backward] backward without forward"
    assert err.message == "backward without forward"


def test_default_phases():
    assert PartitionError("x").phase == "partition"
    assert NumericError("x").phase == "backward"
    assert CommunicationError("x").phase is None
    assert str(PipelineError("plain")) == "plain"
    assert {"partition", "forward", "backward", "update"} == set(PHASES)


@pytest.mark.parametrize("cls", [PartitionError, ProtocolError, CommunicationError, NumericError])
def test_all_errors_are_pipeline_errors(cls):
    assert issubclass(cls, PipelineError)


def test_rank_adapter_prefixes_messages():
    adapter = get_rank_logger("pipesplit.test", rank=3)
    assert isinstance(adapter, RankAdapter)
    assert adapter.process("hello", {}) == ("[rank 3] hello", {})
    assert get_rank_logger("pipesplit.test").process("hello", {}) == ("hello", {})


def test_setup_logging_installs_one_handler():
    logger = setup_logging(logging.INFO)
    setup_logging(logging.DEBUG)
    assert logger.level == logging.DEBUG
    assert len(logger.handlers) == 1


def test_process_group_neighbours():
    first, middle, last = (ProcessGroup(r, 3) for r in range(3))
    assert first.is_first and first.is_root and first.prev_rank is None
    assert (middle.prev_rank, middle.next_rank) == (0, 2)
    assert last.is_last and last.next_rank is None
    with pytest.raises(ValueError):
        ProcessGroup(3, 3)
