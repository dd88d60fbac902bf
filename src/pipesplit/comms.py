"""
Point-to-point messaging between pipeline ranks.

A Messenger sends a payload to a named rank on a channel tag and receives
one from a named rank on a channel tag. Both calls block, and delivery is
FIFO per (source, destination, tag). Two implementations share the
interface:

  - TorchMessenger: torch.distributed send/recv between OS processes
  - LocalMessenger: in-process queues between threads, one thread per rank

Payloads are tensors or small picklable objects (layer groups, dataset
placeholders). Receivers never share memory with senders.
"""

import copy
import enum
import queue
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional, Tuple

import torch
import torch.distributed as dist

from pipesplit.errors import CommunicationError, ProtocolError
from pipesplit.process_group import ProcessGroup

POLL_INTERVAL = 0.05


class Channel(enum.IntEnum):
    """Channel tags used by the pipeline protocol."""

    PARTITION = 0  # startup control: layer groups and dataset placeholders
    FORWARD = 1  # activations, rank r -> r + 1
    BACKWARD = 2  # gradients, rank r -> r - 1

    @property
    def phase(self) -> str:
        return {0: "partition", 1: "forward", 2: "backward"}[int(self)]


class Messenger(ABC):
    """Blocking point-to-point send/receive between ranks."""

    def __init__(self, pg: ProcessGroup):
        self.pg = pg

    @abstractmethod
    def send(self, payload: Any, dst: int, tag: Channel) -> None:
        """Send `payload` to rank `dst` on channel `tag` (blocking)."""

    @abstractmethod
    def recv(self, src: int, tag: Channel) -> Any:
        """Receive the next payload from rank `src` on channel `tag` (blocking)."""

    def _check_peer(self, peer: Optional[int], tag: Channel) -> None:
        if peer is None or not 0 <= peer < self.pg.world_size or peer == self.pg.rank:
            raise CommunicationError(
                f"invalid peer rank {peer} on {Channel(tag).name} channel "
                f"(world_size={self.pg.world_size})",
                rank=self.pg.rank,
                phase=Channel(tag).phase,
            )


# ─── torch.distributed ───────────────────────────────────────────────────────

class TorchMessenger(Messenger):
    """
    Messenger over an initialized torch.distributed process group.

    Every message starts with a header object `(tag, kind, body)` sent with
    `send_object_list`. For tensors the body is `(shape, dtype)` and the data
    follows as a blocking `dist.send` on the channel tag, so the receiver can
    allocate its buffer without knowing shapes in advance.
    """

    def __init__(self, pg: ProcessGroup):
        super().__init__(pg)
        # object collectives on NCCL need an explicit CUDA device
        self._object_device = pg.device if pg.device.type == "cuda" else None

    def send(self, payload: Any, dst: int, tag: Channel) -> None:
        self._check_peer(dst, tag)
        try:
            if isinstance(payload, torch.Tensor):
                tensor = payload.detach().contiguous()
                header = (int(tag), "tensor", (tuple(tensor.shape), tensor.dtype))
                dist.send_object_list([header], dst=dst, device=self._object_device)
                dist.send(tensor.to(self.pg.device), dst=dst, tag=int(tag))
            else:
                header = (int(tag), "object", payload)
                dist.send_object_list([header], dst=dst, device=self._object_device)
        except RuntimeError as err:
            raise CommunicationError(
                f"send to rank {dst} on {Channel(tag).name} failed: {err}",
                rank=self.pg.rank,
                phase=Channel(tag).phase,
            ) from err

    def recv(self, src: int, tag: Channel) -> Any:
        self._check_peer(src, tag)
        try:
            header = [None]
            dist.recv_object_list(header, src=src, device=self._object_device)
            msg_tag, kind, body = header[0]
            if msg_tag != int(tag):
                raise ProtocolError(
                    f"expected a message on {Channel(tag).name} from rank {src}, "
                    f"got one on {Channel(msg_tag).name}",
                    rank=self.pg.rank,
                    phase=Channel(tag).phase,
                )
            if kind != "tensor":
                return body
            shape, dtype = body
            tensor = torch.empty(shape, dtype=dtype, device=self.pg.device)
            dist.recv(tensor, src=src, tag=int(tag))
            return tensor
        except (RuntimeError, TypeError, ValueError) as err:
            raise CommunicationError(
                f"recv from rank {src} on {Channel(tag).name} failed: {err}",
                rank=self.pg.rank,
                phase=Channel(tag).phase,
            ) from err


# ─── In-process (threads) ────────────────────────────────────────────────────

def _copy_payload(payload: Any) -> Any:
    """Copy-on-send: the receiver gets its own storage."""
    if isinstance(payload, torch.Tensor):
        return payload.detach().clone()
    return copy.deepcopy(payload)


class LocalHub:
    """
    Shared mailbox for ranks running as threads in one process.

    Holds one FIFO queue per (src, dst, tag). `abort()` acts as a
    cancellation token: every pending and future receive fails with a
    CommunicationError instead of blocking forever on a dead peer.
    """

    def __init__(self, world_size: int):
        self.world_size = world_size
        self._queues: Dict[Tuple[int, int, int], queue.Queue] = {}
        self._lock = threading.Lock()
        self._aborted = threading.Event()
        self.abort_reason: Optional[str] = None

    def queue_for(self, src: int, dst: int, tag: Channel) -> queue.Queue:
        key = (src, dst, int(tag))
        with self._lock:
            if key not in self._queues:
                self._queues[key] = queue.Queue()
            return self._queues[key]

    def abort(self, reason: str = "pipeline aborted") -> None:
        if not self._aborted.is_set():
            self.abort_reason = reason
            self._aborted.set()

    @property
    def aborted(self) -> bool:
        return self._aborted.is_set()

    def messenger(self, rank: int, device: torch.device = torch.device("cpu"),
                  timeout: Optional[float] = None) -> "LocalMessenger":
        """Create the messenger for `rank`."""
        pg = ProcessGroup(rank=rank, world_size=self.world_size, device=device)
        return LocalMessenger(self, pg, timeout=timeout)


class LocalMessenger(Messenger):
    """Messenger for one thread-rank on a LocalHub."""

    def __init__(self, hub: LocalHub, pg: ProcessGroup, timeout: Optional[float] = None):
        super().__init__(pg)
        if pg.world_size != hub.world_size:
            raise ValueError(f"hub has {hub.world_size} ranks, process group has {pg.world_size}")
        self.hub = hub
        self.timeout = timeout

    def _check_aborted(self, tag: Channel) -> None:
        if self.hub.aborted:
            raise CommunicationError(
                f"peer aborted: {self.hub.abort_reason}",
                rank=self.pg.rank,
                phase=Channel(tag).phase,
            )

    def send(self, payload: Any, dst: int, tag: Channel) -> None:
        self._check_peer(dst, tag)
        self._check_aborted(tag)
        self.hub.queue_for(self.pg.rank, dst, tag).put(_copy_payload(payload))

    def recv(self, src: int, tag: Channel) -> Any:
        self._check_peer(src, tag)
        mailbox = self.hub.queue_for(src, self.pg.rank, tag)
        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        while True:
            self._check_aborted(tag)
            try:
                payload = mailbox.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                if deadline is not None and time.monotonic() >= deadline:
                    raise CommunicationError(
                        f"timed out after {self.timeout}s waiting for rank {src} "
                        f"on {Channel(tag).name}",
                        rank=self.pg.rank,
                        phase=Channel(tag).phase,
                    )
                continue
            if isinstance(payload, torch.Tensor):
                return payload.to(self.pg.device)
            return payload
