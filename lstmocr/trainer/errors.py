"""Rolling training-error statistics.

Every trained line contributes one value per error kind. The values live in
fixed-size circular buffers, one per kind, and the trainer's decisions (best
and worst checkpoints, stalls, sub-trainer races, curriculum stages) are all
made on the buffer means.
"""

from enum import Enum
from collections import Counter

import numpy as np
import torch


class ErrorTypes(str, Enum):
    """The kinds of error that are tracked."""

    RMS = "rms"  # RMS activation error
    DELTA = "delta"  # fraction of timesteps with a big error in the deltas
    WORD_RECERR = "word_recerr"  # bag-of-words recall error of the output text
    CHAR_ERROR = "char_error"  # bag-of-chars error of the output text
    SKIP_RATIO = "skip_ratio"  # fraction of samples skipped as untrainable


class ErrorBuffer:
    """Fixed-capacity circular buffer of error values for one error kind.

    The ``n``-th recorded value goes into slot ``n % size``, overwriting the
    value recorded ``size`` calls earlier. The buffer never grows.
    """

    def __init__(self, size: int):
        if size <= 0:
            raise ValueError("ErrorBuffer size must be positive.")
        self.size = size
        self.count = 0
        self._values = np.zeros(size, dtype=np.float64)
        self._filled = False

    def record(self, value: float) -> None:
        self._values[self.count % self.size] = value
        self.count += 1

    def fill(self, value: float) -> None:
        """Sets every slot to ``value`` so the mean is immediately meaningful."""
        self._values[:] = value
        self._filled = True

    def window(self) -> int:
        """Number of slots that currently contribute to the mean."""
        return self.size if self._filled else min(self.count, self.size)

    def mean(self) -> float:
        n = self.window()
        if n == 0:
            return 0.0
        return float(self._values[:n].sum() / n)

    def last(self) -> float:
        """The most recently recorded value (0 if nothing was recorded)."""
        if self.count == 0:
            return 0.0
        return float(self._values[(self.count - 1) % self.size])

    def is_warm(self) -> bool:
        """True once a full buffer of values backs the mean."""
        return self._filled or self.count >= self.size

    def values(self) -> np.ndarray:
        return self._values.copy()

    def state_dict(self) -> dict:
        return {
            "values": torch.from_numpy(self._values.copy()),
            "count": self.count,
            "filled": self._filled,
        }

    def load_state_dict(self, state: dict) -> None:
        values = state["values"].numpy().astype(np.float64)
        if values.shape != (self.size,):
            raise ValueError(
                f"Buffer of size {values.shape[0]} does not fit an ErrorBuffer of size {self.size}"
            )
        self._values = values.copy()
        self.count = int(state["count"])
        self._filled = bool(state["filled"])

    def __eq__(self, other) -> bool:
        if not isinstance(other, ErrorBuffer):
            return NotImplemented
        return (
            self.size == other.size
            and self.count == other.count
            and self._filled == other._filled
            and self._values.tobytes() == other._values.tobytes()
        )

    def __repr__(self) -> str:
        return f"ErrorBuffer(size={self.size}, count={self.count}, mean={self.mean():.6f})"


class ErrorTracker:
    """One :class:`ErrorBuffer` per :class:`ErrorTypes`, plus the last reported means.

    Call :meth:`record_sample` for each kind a step produces, then
    :meth:`roll_and_report` once to refresh the means. A kind's mean must not
    drive best/worst decisions until :meth:`is_warm` says a full buffer cycle
    has elapsed.
    """

    def __init__(self, size: int = 1000):
        self.size = size
        self.buffers: dict[ErrorTypes, ErrorBuffer] = {kind: ErrorBuffer(size) for kind in ErrorTypes}
        self.error_rates: dict[ErrorTypes, float] = {kind: 0.0 for kind in ErrorTypes}

    def record_sample(self, kind: ErrorTypes, value: float) -> None:
        self.buffers[kind].record(float(value))

    def roll_and_report(self) -> dict[ErrorTypes, float]:
        """Recomputes the mean of every kind and returns a snapshot."""
        for kind, buffer in self.buffers.items():
            self.error_rates[kind] = buffer.mean()
        return dict(self.error_rates)

    def fill_buffer(self, kind: ErrorTypes, value: float) -> None:
        self.buffers[kind].fill(float(value))
        self.error_rates[kind] = float(value)

    def mean(self, kind: ErrorTypes) -> float:
        return self.buffers[kind].mean()

    def last_value(self, kind: ErrorTypes) -> float:
        return self.buffers[kind].last()

    def is_warm(self, kind: ErrorTypes) -> bool:
        return self.buffers[kind].is_warm()

    def snapshot(self) -> dict[str, float]:
        """The last reported means keyed by kind name, for serialized records."""
        return {kind.value: rate for kind, rate in self.error_rates.items()}

    def state_dict(self) -> dict:
        return {
            "size": self.size,
            "buffers": {kind.value: buf.state_dict() for kind, buf in self.buffers.items()},
            "rates": self.snapshot(),
        }

    def load_state_dict(self, state: dict) -> None:
        self.size = int(state["size"])
        self.buffers = {kind: ErrorBuffer(self.size) for kind in ErrorTypes}
        for kind in ErrorTypes:
            self.buffers[kind].load_state_dict(state["buffers"][kind.value])
            self.error_rates[kind] = float(state["rates"][kind.value])

    def __eq__(self, other) -> bool:
        if not isinstance(other, ErrorTracker):
            return NotImplemented
        return (
            self.size == other.size
            and self.buffers == other.buffers
            and self.snapshot() == other.snapshot()
        )


def compute_rms_error(deltas: torch.Tensor) -> float:
    """Root mean square of the ``(T, C)`` deltas."""
    if deltas.numel() == 0:
        return 0.0
    return float(torch.sqrt(torch.mean(deltas.double() ** 2)))


def compute_winner_error(deltas: torch.Tensor) -> float:
    """Number of activations in error by at least 0.5, per timestep.

    Because targets are (close to) one-hot, a zero winner error guarantees
    the top choice is right at every timestep, even with RMS residue left.
    """
    if deltas.shape[0] == 0:
        return 0.0
    return float((deltas.abs() >= 0.5).sum()) / deltas.shape[0]


def compute_char_error(truth: list[int], ocr: list[int], null_label: int = 0) -> float:
    """Bag-of-characters error: mismatched label counts over the truth length."""
    counts: Counter = Counter()
    truth_size = 0
    for label in truth:
        if label != null_label:
            counts[label] += 1
            truth_size += 1
    for label in ocr:
        if label != null_label:
            counts[label] -= 1
    char_errors = sum(abs(n) for n in counts.values())
    if truth_size == 0:
        return 0.0 if char_errors == 0 else 1.0
    return char_errors / truth_size


def compute_word_error(truth_text: str, ocr_text: str) -> float:
    """Bag-of-words recall error: truth words missing from the output."""
    truth_words = truth_text.split()
    if not truth_words:
        return 0.0
    counts = Counter(truth_words)
    counts.subtract(ocr_text.split())
    return sum(n for n in counts.values() if n > 0) / len(truth_words)
