"""Tests for the pipeline profiler."""

import time

import pytest

from pipesplit.profiler import PipelineProfiler, category_of


def test_track_records_events():
    profiler = PipelineProfiler()
    with profiler.track("compute_fwd"):
        time.sleep(0.01)
    with profiler.track("compute_fwd"):
        pass

    assert profiler.count("compute_fwd") == 2
    assert profiler.total("compute_fwd") >= 0.01
    assert profiler.count("send_fwd") == 0


def test_track_records_on_error():
    profiler = PipelineProfiler()
    with pytest.raises(RuntimeError):
        with profiler.track("recv_bwd"):
            raise RuntimeError("peer gone")
    assert profiler.count("recv_bwd") == 1


def test_stats_split_compute_comm_and_idle():
    profiler = PipelineProfiler()
    profiler.start_step()
    with profiler.track("compute_bwd"):
        time.sleep(0.01)
    with profiler.track("send_bwd"):
        time.sleep(0.01)
    time.sleep(0.02)
    profiler.stop_step()

    stats = profiler.get_stats()

    assert stats["num_steps"] == 1
    assert stats["compute_time"] >= 0.01
    assert stats["comm_time"] >= 0.01
    assert stats["idle_time"] >= 0.015
    assert stats["compute_pct"] + stats["comm_pct"] + stats["idle_pct"] == pytest.approx(100.0, abs=1e-6)


def test_empty_and_reset():
    profiler = PipelineProfiler()
    assert profiler.get_stats()["total_time"] == 0
    assert profiler.get_stats()["idle_pct"] == 0

    profiler.start_step()
    with profiler.track("update"):
        pass
    profiler.stop_step()
    profiler.reset()

    assert profiler.get_stats()["num_steps"] == 0
    assert profiler.count("update") == 0


def test_event_categories():
    assert category_of("compute_bwd") == "compute"
    assert category_of("recv_fwd") == category_of("send_bwd") == "comm"
    assert category_of("update") == "update"
    assert category_of("checkpoint") is None


def test_summary_per_event():
    profiler = PipelineProfiler()
    for _ in range(3):
        with profiler.track("send_fwd"):
            pass
    profiler.stop("never_started")

    summary = profiler.get_stats()["events"]

    assert list(summary) == ["send_fwd"]
    assert summary["send_fwd"]["count"] == 3
    assert summary["send_fwd"]["mean"] == pytest.approx(summary["send_fwd"]["total"] / 3)


def test_excluded_block_leaves_the_cycle_window():
    profiler = PipelineProfiler()
    profiler.start_step()
    with profiler.excluded():
        time.sleep(0.05)
    profiler.stop_step()

    assert profiler.step_times[0] < 0.04


def test_update_share_in_stats():
    profiler = PipelineProfiler()
    profiler.start_step()
    with profiler.track("update"):
        time.sleep(0.01)
    profiler.stop_step()

    stats = profiler.get_stats()

    assert stats["update_time"] >= 0.01
    assert stats["compute_pct"] + stats["comm_pct"] + stats["update_pct"] + stats["idle_pct"] == pytest.approx(100.0)
