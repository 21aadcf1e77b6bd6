"""Tests for lstmocr.trainer.config.TrainerConfig.

These tests lock the default values of the config dataclass so that
accidental field changes produce an immediate, descriptive failure rather than
a silent regression, and check the validation done at construction.

Test classes:
    TestHardwareDefaults      -- Fabric-facing fields
    TestTrainingDefaults      -- optimiser, targets, buffers, checkpointing
    TestRecoveryDefaults      -- stall, divergence, sub-trainer and curriculum constants
    TestConfigValidation      -- __post_init__ rejects invalid values
"""

import math

import pytest

from lstmocr.trainer.config import TrainerConfig


class TestHardwareDefaults:
    """Pin default values for the Fabric-facing fields."""

    def test_accelerator_default(self):
        assert TrainerConfig().accelerator == "auto"

    def test_devices_default(self):
        assert TrainerConfig().devices == 1

    def test_precision_default(self):
        assert TrainerConfig().precision == "32-true"

    def test_seed_default(self):
        assert TrainerConfig().seed is None


class TestTrainingDefaults:
    def test_learning_rate_default(self):
        assert TrainerConfig().learning_rate == 1e-3

    def test_momentum_default(self):
        assert TrainerConfig().momentum == 0.5

    def test_layer_specific_lr_default(self):
        assert TrainerConfig().layer_specific_lr is False

    def test_alignment_default(self):
        assert TrainerConfig().alignment == "ctc"

    def test_high_confidence_default(self):
        assert TrainerConfig().high_confidence == 0.9375

    def test_rolling_buffer_size_default(self):
        assert TrainerConfig().rolling_buffer_size == 1000

    def test_checkpointing_defaults(self):
        cfg = TrainerConfig()
        assert cfg.model_base == ""
        assert cfg.checkpoint_name == ""
        assert cfg.best_checkpoint_fraction == 31.0 / 32.0

    def test_loop_defaults(self):
        cfg = TrainerConfig()
        assert cfg.perfect_delay == 0
        assert cfg.debug_interval == 0
        assert cfg.num_pages_per_batch == 100
        assert cfg.max_iterations == 0
        assert cfg.log_every_n_steps == 10


class TestRecoveryDefaults:
    def test_min_stall_iterations_default(self):
        assert TrainerConfig().min_stall_iterations == 10000

    def test_sub_trainer_margin_fraction_default(self):
        assert TrainerConfig().sub_trainer_margin_fraction == 3.0 / 128.0

    def test_learning_rate_decay_default(self):
        assert TrainerConfig().learning_rate_decay == pytest.approx(math.sqrt(0.5))

    def test_num_adjustment_iterations_default(self):
        assert TrainerConfig().num_adjustment_iterations == 100

    def test_improvement_fraction_default(self):
        assert TrainerConfig().improvement_fraction == 15.0 / 16.0

    def test_min_started_error_rate_default(self):
        assert TrainerConfig().min_started_error_rate == 0.75

    def test_min_divergence_rate_default(self):
        assert TrainerConfig().min_divergence_rate == 0.5

    def test_curriculum_defaults(self):
        cfg = TrainerConfig()
        assert cfg.num_training_stages == 2
        assert cfg.stage_transition_threshold == 0.10

    def test_error_graph_interval_default(self):
        assert TrainerConfig().error_graph_interval == 1000


class TestConfigValidation:
    def test_unknown_alignment_raises(self):
        with pytest.raises(ValueError, match="alignment"):
            TrainerConfig(alignment="viterbi")

    @pytest.mark.parametrize("devices", [0, 2])
    def test_multiple_devices_raise(self, devices):
        with pytest.raises(ValueError, match="devices"):
            TrainerConfig(devices=devices)

    def test_exact_alignment_accepted(self):
        assert TrainerConfig(alignment="exact").alignment == "exact"

    @pytest.mark.parametrize("size", [0, -1])
    def test_non_positive_buffer_size_raises(self, size):
        with pytest.raises(ValueError, match="rolling_buffer_size"):
            TrainerConfig(rolling_buffer_size=size)

    def test_non_positive_batch_raises(self):
        with pytest.raises(ValueError, match="num_pages_per_batch"):
            TrainerConfig(num_pages_per_batch=0)

    @pytest.mark.parametrize("margin", [0.0, 1.0, 1.5])
    def test_margin_outside_unit_interval_raises(self, margin):
        with pytest.raises(ValueError, match="sub_trainer_margin_fraction"):
            TrainerConfig(sub_trainer_margin_fraction=margin)

    def test_decay_outside_unit_interval_raises(self):
        with pytest.raises(ValueError, match="learning_rate_decay"):
            TrainerConfig(learning_rate_decay=1.0)

    def test_overrides_do_not_leak_between_instances(self):
        TrainerConfig(learning_rate=0.5)
        assert TrainerConfig().learning_rate == 1e-3
