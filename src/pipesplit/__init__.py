"""pipesplit — lock-step pipeline-parallel training for dense networks."""

__version__ = "0.1.0"

from pipesplit.config import TrainConfig
from pipesplit.errors import (
    CommunicationError,
    ConfigError,
    NumericError,
    PartitionError,
    PipelineError,
    ProtocolError,
)
from pipesplit.process_group import ProcessGroup

__all__ = [
    "__version__",
    "TrainConfig",
    "ProcessGroup",
    "PipelineError",
    "PartitionError",
    "ProtocolError",
    "CommunicationError",
    "NumericError",
    "ConfigError",
]
