"""
Training configuration.

One dataclass holds every option the training run recognizes. The CLI
builds it from flags; library callers build it directly.
"""

from dataclasses import asdict, dataclass, replace
from typing import Optional

from pipesplit.errors import ConfigError

BACKENDS = ("processes", "threads")


@dataclass
class TrainConfig:
    """Options for a single training run."""

    lr: float = 3e-4
    accumulation_steps: int = 16  # micro-batches per optimizer update (M)
    minibatch_size: int = 256
    epochs: int = 10
    use_cuda: bool = True
    split: bool = True
    num_stages: int = 2  # pipeline depth (P)
    num_layers: int = 4
    input_dim: int = 784
    hidden_dim: int = 32
    num_classes: int = 10
    train_samples: int = 4096
    test_samples: int = 1024
    seed: int = 42
    backend: str = "processes"
    skip_nonfinite: bool = False
    recv_timeout: Optional[float] = None

    @property
    def world_size(self) -> int:
        """Number of ranks the run needs."""
        return self.num_stages if self.split else 1

    def validate(self) -> "TrainConfig":
        """
        Check option ranges. Returns self so calls can be chained.

        A layer count smaller than the stage count is left to the partition
        step, which reports it as a PartitionError.
        """
        positive = {
            "accumulation_steps": self.accumulation_steps,
            "minibatch_size": self.minibatch_size,
            "epochs": self.epochs,
            "num_stages": self.num_stages,
            "input_dim": self.input_dim,
            "hidden_dim": self.hidden_dim,
            "num_classes": self.num_classes,
            "train_samples": self.train_samples,
            "test_samples": self.test_samples,
        }
        for name, value in positive.items():
            if value < 1:
                raise ConfigError(f"{name} must be >= 1, got {value}")
        if self.lr <= 0:
            raise ConfigError(f"lr must be > 0, got {self.lr}")
        if self.num_layers < 2:
            raise ConfigError(f"num_layers must be >= 2 (input and output layer), got {self.num_layers}")
        if self.backend not in BACKENDS:
            raise ConfigError(f"Unknown backend '{self.backend}'. Choose from: {list(BACKENDS)}")
        if self.recv_timeout is not None and self.recv_timeout <= 0:
            raise ConfigError(f"recv_timeout must be > 0, got {self.recv_timeout}")
        return self

    def with_options(self, **changes) -> "TrainConfig":
        """Return a validated copy with some fields replaced."""
        return replace(self, **changes).validate()

    def to_dict(self) -> dict:
        return asdict(self)
