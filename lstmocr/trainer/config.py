import math
from dataclasses import dataclass

ALIGNMENTS = ("ctc", "exact")


@dataclass
class TrainerConfig:
    """Configuration for hardware, targets, error tracking, checkpointing and recovery.

    Every error rate in this config is a fraction in ``[0, 1]`` of the
    headline (character) error.
    """

    # --- Hardware / Fabric ---
    accelerator: str = "auto"
    devices: int = 1  # one sample at a time on a single device
    precision: str = "32-true"

    # --- Optimiser ---
    learning_rate: float = 1e-3
    momentum: float = 0.5
    layer_specific_lr: bool = False  # test and reduce layer rates independently

    # --- Targets ---
    alignment: str = "ctc"  # "ctc" or "exact"
    require_boxes_until_stage: int = 0  # stages below this skip unboxed samples
    high_confidence: float = 0.9375  # delta threshold for HI_PRECISION_ERR

    # --- Error tracking ---
    rolling_buffer_size: int = 1000

    # --- Checkpointing ---
    model_base: str = ""  # prefix of best model files; empty disables them
    checkpoint_name: str = ""  # periodic FULL checkpoint path; empty disables it
    best_checkpoint_fraction: float = 31.0 / 32.0  # best model rewritten on this ratio

    # --- Training loop ---
    perfect_delay: int = 0  # backprop at most 1 in (perfect_delay + 1) PERFECT samples
    debug_interval: int = 0  # 0 disables debug output
    num_pages_per_batch: int = 100  # lines trained between maintain_checkpoints calls
    max_iterations: int = 0  # 0 means no limit
    target_error_rate: float = 0.01
    log_every_n_steps: int = 10

    # --- Stall / divergence recovery ---
    min_stall_iterations: int = 10000
    sub_trainer_margin_fraction: float = 3.0 / 128.0
    learning_rate_decay: float = math.sqrt(0.5)
    num_adjustment_iterations: int = 100  # samples tried per layer-rate search
    improvement_fraction: float = 15.0 / 16.0
    min_started_error_rate: float = 0.75  # no recovery before training gets under this
    min_divergence_rate: float = 0.5  # worst - best gap that counts as divergence
    max_subtrainer_attempts: int = 10  # consecutive fruitless updates before discarding

    # --- Curriculum ---
    num_training_stages: int = 2
    stage_transition_threshold: float = 0.10

    # --- Error graph ---
    error_graph_interval: int = 1000  # min iterations between recorded maxima

    # --- Reproducibility ---
    seed: int | None = None

    def __post_init__(self) -> None:
        if self.devices != 1:
            raise ValueError(f"devices must be 1, got {self.devices}.")
        if self.alignment not in ALIGNMENTS:
            raise ValueError(
                f"Unknown alignment '{self.alignment}'. Valid options: {list(ALIGNMENTS)}"
            )
        if self.rolling_buffer_size <= 0:
            raise ValueError("rolling_buffer_size must be positive.")
        if self.num_pages_per_batch <= 0:
            raise ValueError("num_pages_per_batch must be positive.")
        if not 0.0 < self.sub_trainer_margin_fraction < 1.0:
            raise ValueError("sub_trainer_margin_fraction must be in (0, 1).")
        if not 0.0 < self.learning_rate_decay < 1.0:
            raise ValueError("learning_rate_decay must be in (0, 1).")
