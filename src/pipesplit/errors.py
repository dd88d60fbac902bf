"""
Error taxonomy for pipeline-parallel training.

Every error carries the rank and the phase (partition / forward / backward /
update) it came from, so an aborted run can say exactly where it stopped.
All of them are fatal for the run except NumericError, which the training
loop may choose to skip.
"""

from typing import Optional

PHASES = ("partition", "forward", "backward", "update")


class PipelineError(Exception):
    """Base class for all pipesplit runtime errors."""

    default_phase: Optional[str] = None

    def __init__(self, message: str, rank: Optional[int] = None, phase: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.rank = rank
        self.phase = phase if phase is not None else self.default_phase

    def __str__(self) -> str:
        where = []
        if self.rank is not None:
            where.append(f"rank {self.rank}")
        if self.phase is not None:
            where.append(self.phase)
        if not where:
            return self.message
        return f"[{', '.join(where)}] {self.message}"


class PartitionError(PipelineError):
    """The layer stack cannot be split across the requested number of ranks."""

    default_phase = "partition"


class ProtocolError(PipelineError):
    """Forward/backward pairing or message ordering was violated."""


class CommunicationError(PipelineError):
    """The messaging substrate failed (peer unreachable, aborted, malformed payload)."""


class NumericError(PipelineError):
    """A loss or gradient contained NaN or Inf."""

    default_phase = "backward"


class ConfigError(ValueError):
    """Invalid training configuration."""
