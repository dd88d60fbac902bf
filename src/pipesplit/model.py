"""
Dense layer stack and the layer groups it is split into.

The full model is an ordered list of Dense layers. A LayerGroup is a
contiguous slice of that list owned by exactly one rank; its structure is
fixed after partitioning while its parameters keep training.
"""

from typing import Iterable, List

import torch
import torch.nn as nn
import torch.nn.functional as F


class Dense(nn.Module):
    """Fully connected layer with an optional ReLU."""

    def __init__(self, in_features: int, out_features: int, relu: bool = True):
        super().__init__()
        self.linear = nn.Linear(in_features, out_features)
        self.relu = relu

    def forward(self, x):
        x = self.linear(x)
        return F.relu(x) if self.relu else x

    def extra_repr(self) -> str:
        return f"relu={self.relu}"


def build_mlp(input_dim: int = 784, hidden_dim: int = 32, num_classes: int = 10,
              num_layers: int = 4) -> List[Dense]:
    """
    Build the full layer stack.

    Layout: one input layer (input_dim -> hidden_dim, ReLU), `num_layers - 2`
    hidden layers (hidden_dim -> hidden_dim, ReLU) and an output layer
    (hidden_dim -> num_classes) producing unnormalized scores.
    """
    if num_layers < 2:
        raise ValueError(f"num_layers must be >= 2, got {num_layers}")
    layers = [Dense(input_dim, hidden_dim)]
    layers.extend(Dense(hidden_dim, hidden_dim) for _ in range(num_layers - 2))
    layers.append(Dense(hidden_dim, num_classes, relu=False))
    return layers


class LayerGroup(nn.Module):
    """
    A contiguous run of layers owned by one rank.

    Attributes:
        index: The rank that owns this group.
        offset: Position of the group's first layer in the full stack.
        layers: The group's layers, applied in order.
    """

    def __init__(self, layers: Iterable[nn.Module], index: int, offset: int):
        super().__init__()
        self.index = index
        self.offset = offset
        self.layers = nn.Sequential(*layers)

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.layers(x)

    def __len__(self) -> int:
        return len(self.layers)

    def extra_repr(self) -> str:
        return f"index={self.index}, layers=[{self.offset}:{self.offset + len(self)}]"


def logit_cross_entropy(logits: torch.Tensor, onehot: torch.Tensor) -> torch.Tensor:
    """Mean cross-entropy of unnormalized scores against one-hot labels."""
    return F.cross_entropy(logits, onehot.to(logits.dtype))


def count_correct(logits: torch.Tensor, onehot: torch.Tensor) -> int:
    """Number of rows where the predicted class matches the labelled class."""
    return int((logits.argmax(dim=1) == onehot.argmax(dim=1)).sum().item())
