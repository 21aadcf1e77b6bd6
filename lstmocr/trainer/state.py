import copy
from dataclasses import field, fields, dataclass

from .errors import ErrorTracker


@dataclass
class TrainerState:
    """Serializable record of training progress.

    Everything needed for a restarted run to continue exactly where the saved
    one stopped lives here, apart from the network and optimizer, which the
    checkpoint stores next to it. A state is replaced wholesale on rollback,
    never merged.

    Error rates are fractions of the headline (character) error.
    """

    # --- Iteration counters ---
    training_iteration: int = 0
    learning_iteration: int = 0  # steps with a non-zero delta error; <= training_iteration
    sample_iteration: int = 0  # serial index of the next sample, wraps in the cache
    prev_sample_iteration: int = 0
    last_perfect_training_iteration: int = -1  # last PERFECT sample used in backprop

    # --- Best / worst bookkeeping ---
    best_error_rate: float = 1.0
    best_error_rates: dict[str, float] = field(default_factory=dict)
    best_iteration: int = 0
    worst_error_rate: float = 0.0
    worst_error_rates: dict[str, float] = field(default_factory=dict)
    worst_iteration: int = 0
    stall_iteration: int = 0
    error_rate_of_last_saved_best: float = 0.75
    best_error_history: list[float] = field(default_factory=list)
    best_error_iterations: list[int] = field(default_factory=list)
    improvement_steps: int = 0

    # --- Saved models ---
    best_model_data: bytes = b""  # recognizer at the best point, for the tester
    worst_model_data: bytes = b""  # recognizer at the local worst point
    best_trainer: bytes = b""  # complete trainer dump to revert to

    # --- Curriculum ---
    training_stage: int = 0
    stage_entry_error_rate: float = 1.0  # best error rate when the stage was entered

    # --- Rolling errors ---
    errors: ErrorTracker = field(default_factory=ErrorTracker)

    def to_dict(self) -> dict:
        """Plain-container form for checkpoints; ``errors`` becomes its state dict."""
        record = {
            f.name: copy.deepcopy(getattr(self, f.name)) for f in fields(self) if f.name != "errors"
        }
        record["errors"] = self.errors.state_dict()
        return record

    @classmethod
    def from_dict(cls, record: dict) -> "TrainerState":
        record = dict(record)
        tracker_state = record.pop("errors")
        errors = ErrorTracker(int(tracker_state["size"]))
        errors.load_state_dict(tracker_state)
        known = set(cls.__dataclass_fields__)
        unknown = set(record) - known
        if unknown:
            raise KeyError(f"Unknown TrainerState fields: {sorted(unknown)}")
        return cls(errors=errors, **record)
