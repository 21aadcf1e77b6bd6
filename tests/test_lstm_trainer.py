"""Tests for lstmocr.trainer.lstm_trainer.LSTMTrainer.

Uses a one-layer LineRecognizer on 8-pixel-high random line images. Each
image is exactly as wide as its transcription, so CTC has a single alignment
and every training step is TRAINABLE. Headline error rates are pinned with
ErrorTracker.fill_buffer where a test needs a specific value.

Test classes:
    TestTrainOnLine           -- counters, skipped samples, skip-then-resume
    TestMonotonicity          -- counters never decrease, learning <= training
    TestPerfectDelay          -- backprop gating of PERFECT samples
    TestLearningRates         -- per-layer and global scaling
    TestMaintainCheckpoints   -- warm-up, new best, best model files, tester calls
    TestDivergence            -- reverting to best_trainer on a runaway error
    TestStallRecovery         -- sub-trainer start after a stall
    TestErrorGraph            -- best/worst recording and improvement steps
    TestStageTransition       -- curriculum stage moves once per threshold
    TestInitIterations        -- resetting counters for fine-tuning
    TestFit                   -- stopping conditions, callbacks
    TestDebugOutput           -- DebugSink calls every debug_interval iterations
    TestExactAlignment        -- training with exact (non-CTC) targets
    TestFabricSetup           -- network, optimizer and backward go through Fabric
"""

import logging
from unittest.mock import MagicMock, patch

import torch
import pytest
from lightning.fabric.wrappers import is_wrapped

from lstmocr.data import DocumentCache, TrainingSample, UnicharEncoder
from lstmocr.models import LineRecognizer
from lstmocr.trainer import (
    DebugSink,
    ErrorTypes,
    LoggingDebugSink,
    LSTMTrainer,
    Trainability,
    TargetBuilder,
    TrainerConfig,
    MemoryFileStore,
    SerializeAmount,
)
from lstmocr.trainer.subtrainer import reduce_layer_learning_rates

ALPHABET = "abc "

# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------


def _line(text: str, seed: int = 0, boxes=None) -> TrainingSample:
    generator = torch.Generator().manual_seed(seed)
    return TrainingSample(
        image=torch.rand(8, len(text), generator=generator), transcription=text, boxes=boxes
    )


def _base_config(**overrides) -> TrainerConfig:
    """Return a CPU TrainerConfig with small buffers for fast unit tests."""
    defaults: dict = {
        "accelerator": "cpu",
        "devices": 1,
        "rolling_buffer_size": 4,
        "num_pages_per_batch": 2,
        "min_stall_iterations": 10,
        "error_graph_interval": 5,
        "log_every_n_steps": 1,
    }
    defaults.update(overrides)
    return TrainerConfig(**defaults)


def _make_trainer(samples=(), **overrides) -> tuple[LSTMTrainer, MemoryFileStore]:
    torch.manual_seed(0)
    recognizer = LineRecognizer(UnicharEncoder(ALPHABET), input_height=8, hidden_size=4, num_layers=1)
    store = MemoryFileStore()
    trainer = LSTMTrainer(
        _base_config(**overrides),
        recognizer,
        training_data=DocumentCache(list(samples)),
        file_reader=store.read,
        file_writer=store.write,
    )
    return trainer, store


def _pin_error(trainer: LSTMTrainer, char_error: float) -> None:
    trainer.state.errors.fill_buffer(ErrorTypes.CHAR_ERROR, char_error)


# ---------------------------------------------------------------------------
# Test classes
# ---------------------------------------------------------------------------


class TestTrainOnLine:
    def test_trainable_step_advances_counters(self):
        trainer, _ = _make_trainer([_line("abc")])
        assert trainer.train_on_line() == Trainability.TRAINABLE
        assert trainer.training_iteration == 1
        assert trainer.learning_iteration == 1
        assert trainer.sample_iteration == 1
        assert trainer.state.prev_sample_iteration == 1

    def test_step_changes_weights(self):
        trainer, _ = _make_trainer([_line("abc")])
        before = trainer.recognizer.output.weight.detach().clone()
        trainer.train_on_line()
        assert not torch.equal(before, trainer.recognizer.output.weight)

    def test_skip_then_resume(self):
        trainer, _ = _make_trainer([_line("xyz"), _line("abc")])
        assert trainer.train_on_line() == Trainability.UNENCODABLE
        assert trainer.training_iteration == 0
        assert trainer.sample_iteration == 1
        errors = trainer.state.errors
        assert errors.buffers[ErrorTypes.SKIP_RATIO].count == 1
        for kind in ErrorTypes:
            if kind != ErrorTypes.SKIP_RATIO:
                assert errors.buffers[kind].count == 0

        assert trainer.train_on_line() == Trainability.TRAINABLE
        assert trainer.training_iteration == 1
        assert errors.buffers[ErrorTypes.SKIP_RATIO].count == 2
        assert errors.error_rates[ErrorTypes.SKIP_RATIO] == pytest.approx(0.5)

    def test_skipped_sample_leaves_weights_alone(self):
        trainer, _ = _make_trainer([_line("xyz")])
        before = {k: v.clone() for k, v in trainer.recognizer.state_dict().items()}
        trainer.train_on_line()
        for name, value in trainer.recognizer.state_dict().items():
            assert torch.equal(value, before[name])

    def test_line_too_short_for_ctc_is_unencodable(self):
        sample = TrainingSample(image=torch.rand(8, 2), transcription="abc")
        trainer, _ = _make_trainer([sample])
        assert trainer.train_on_line() == Trainability.UNENCODABLE

    def test_empty_cache_only_advances_cursor(self):
        trainer, _ = _make_trainer()
        assert trainer.train_on_line() is None
        assert trainer.sample_iteration == 1
        assert trainer.training_iteration == 0

    def test_unboxed_sample_skipped_while_stage_requires_boxes(self):
        boxed = _line("ab", boxes=((0, 0), (1, 1)))
        trainer, _ = _make_trainer([_line("abc"), boxed], require_boxes_until_stage=1)
        assert trainer.train_on_line() == Trainability.NOT_BOXED
        assert trainer.train_on_line() == Trainability.TRAINABLE
        trainer.state.training_stage = 1
        assert trainer.train_on_line() == Trainability.TRAINABLE

    def test_samples_from_another_trainer(self):
        owner, _ = _make_trainer([_line("abc")])
        borrower, _ = _make_trainer()
        assert borrower.train_on_line(owner) == Trainability.TRAINABLE
        assert owner.training_iteration == 0

    def test_train_batch_gives_up_on_unusable_data(self):
        trainer, _ = _make_trainer([_line("xyz"), _line("zz")])
        assert trainer.train_batch(5) == 0
        assert trainer.sample_iteration == 2


class TestMonotonicity:
    def test_counters_never_decrease(self):
        samples = [_line("abc", 0), _line("xyz", 1), _line("cab", 2), _line("ba", 3)]
        trainer, _ = _make_trainer(samples)
        previous = (0, 0, 0)
        for _ in range(12):
            trainer.train_on_line()
            current = (trainer.training_iteration, trainer.learning_iteration, trainer.sample_iteration)
            assert all(c >= p for c, p in zip(current, previous))
            assert trainer.learning_iteration <= trainer.training_iteration
            previous = current
        assert trainer.sample_iteration == 12
        assert trainer.training_iteration == 9


class TestPerfectDelay:
    def _run(self, perfect_delay: int, steps: int) -> int:
        trainer, _ = _make_trainer([_line("abc")], perfect_delay=perfect_delay)
        with patch.object(TargetBuilder, "classify", return_value=Trainability.PERFECT), patch.object(
            trainer, "_backward"
        ) as backward:
            for _ in range(steps):
                assert trainer.train_on_line() == Trainability.PERFECT
        assert trainer.training_iteration == steps
        return backward.call_count

    def test_no_delay_backprops_every_perfect_sample(self):
        assert self._run(perfect_delay=0, steps=6) == 6

    def test_delay_limits_perfect_backprop(self):
        # At most one in every perfect_delay + 1 iterations
        assert self._run(perfect_delay=2, steps=6) == 2


class TestLearningRates:
    def test_layer_names(self):
        trainer, _ = _make_trainer()
        assert list(trainer.layer_learning_rates()) == ["lstm0", "output"]

    def test_scale_one_layer(self):
        trainer, _ = _make_trainer()
        trainer.scale_layer_learning_rate("output", 0.5)
        assert trainer.layer_learning_rate("output") == pytest.approx(5e-4)
        assert trainer.layer_learning_rate("lstm0") == pytest.approx(1e-3)
        assert trainer.learning_rate == pytest.approx(1e-3)

    def test_scale_all_layers(self):
        trainer, _ = _make_trainer()
        trainer.scale_learning_rate(0.1)
        assert all(rate == pytest.approx(1e-4) for rate in trainer.layer_learning_rates().values())

    def test_unknown_layer_raises(self):
        trainer, _ = _make_trainer()
        with pytest.raises(ValueError, match="Unknown layer"):
            trainer.layer_learning_rate("lstm7")


class TestMaintainCheckpoints:
    def test_nothing_recorded_until_buffer_is_warm(self):
        trainer, _ = _make_trainer([_line("abc")])
        trainer.train_on_line()
        interesting, log_msg = trainer.maintain_checkpoints()
        assert not interesting
        assert trainer.best_error_rate == 1.0
        assert trainer.state.best_trainer == b""
        assert log_msg.startswith("At iteration 1/1/1")

    def test_new_best_saves_best_trainer(self):
        trainer, _ = _make_trainer()
        _pin_error(trainer, 0.5)
        interesting, log_msg = trainer.maintain_checkpoints()
        assert interesting
        assert trainer.best_error_rate == 0.5
        assert trainer.state.best_trainer
        assert trainer.state.stall_iteration == trainer.learning_iteration + 10
        assert "New best char error = 50.000%" in log_msg

    def test_best_iteration_only_moves_on_strict_improvement(self):
        trainer, _ = _make_trainer()
        _pin_error(trainer, 0.5)
        trainer.maintain_checkpoints()
        trainer.state.learning_iteration = 3
        interesting, _ = trainer.maintain_checkpoints()
        assert not interesting
        assert trainer.best_iteration == 0

    def test_best_model_file_written(self):
        trainer, store = _make_trainer(model_base="models/eng")
        _pin_error(trainer, 0.5)
        _, log_msg = trainer.maintain_checkpoints()
        assert "models/eng_050.000_0.checkpoint" in store.files
        assert "wrote best model:models/eng_050.000_0.checkpoint" in log_msg
        assert trainer.state.error_rate_of_last_saved_best == 0.5

    def test_best_model_needs_enough_improvement(self):
        trainer, store = _make_trainer(model_base="eng")
        _pin_error(trainer, 0.5)
        trainer.maintain_checkpoints()
        # 0.49 is not below 0.5 * 31/32
        _pin_error(trainer, 0.49)
        trainer.maintain_checkpoints()
        assert trainer.best_error_rate == 0.49
        assert sorted(store.files) == ["eng_050.000_0.checkpoint"]

    def test_periodic_checkpoint_is_full(self):
        trainer, store = _make_trainer(checkpoint_name="run.checkpoint")
        _pin_error(trainer, 0.5)
        _, log_msg = trainer.maintain_checkpoints()
        assert "wrote checkpoint." in log_msg
        restored, _ = _make_trainer()
        assert restored.read_training_dump(store.files["run.checkpoint"])
        assert restored.state.best_trainer == trainer.state.best_trainer

    def test_failed_checkpoint_write_is_reported(self):
        trainer, _ = _make_trainer(checkpoint_name="run.checkpoint")
        trainer.file_writer = lambda data, path: False
        _pin_error(trainer, 0.5)
        _, log_msg = trainer.maintain_checkpoints()
        assert "failed to write checkpoint." in log_msg

    def test_tester_sees_worst_then_best(self):
        trainer, _ = _make_trainer()
        tester = MagicMock(return_value="eval ok")
        _pin_error(trainer, 0.5)
        trainer.maintain_checkpoints(tester)
        tester.assert_not_called()
        # A local maximum after the error graph interval
        trainer.state.learning_iteration = 6
        _pin_error(trainer, 0.6)
        trainer.maintain_checkpoints(tester)
        assert trainer.state.worst_model_data
        # The next best reports the worst point before it
        trainer.state.learning_iteration = 8
        _pin_error(trainer, 0.4)
        _, log_msg = trainer.maintain_checkpoints(tester)
        iteration, error_rates, model_data, stage = tester.call_args.args
        assert iteration == 6
        assert error_rates["char_error"] == pytest.approx(0.6)
        assert model_data
        assert stage == 0
        assert "eval ok" in log_msg


class TestDivergence:
    def test_revert_to_best_trainer(self):
        trainer, _ = _make_trainer([_line("abc")])
        _pin_error(trainer, 0.2)
        trainer.maintain_checkpoints()
        best_iteration = trainer.training_iteration
        for _ in range(3):
            trainer.train_on_line()
        # Past the error graph interval, still short of the stall iteration
        trainer.state.learning_iteration = 6
        _pin_error(trainer, 0.8)
        _, log_msg = trainer.maintain_checkpoints()
        assert "Divergence!" in log_msg
        assert "Reverted to" in log_msg
        assert trainer.training_iteration == best_iteration
        assert trainer.char_error == pytest.approx(0.2)
        decay = trainer.config.learning_rate_decay
        for rate in trainer.layer_learning_rates().values():
            assert rate == pytest.approx(1e-3 * decay)
        # The re-saved best trainer carries the reduced rates
        reloaded, _ = _make_trainer()
        reloaded.read_training_dump(trainer.state.best_trainer)
        assert reloaded.layer_learning_rates() == trainer.layer_learning_rates()

    def test_no_revert_within_divergence_rate(self):
        trainer, _ = _make_trainer()
        _pin_error(trainer, 0.2)
        trainer.maintain_checkpoints()
        trainer.state.learning_iteration = 6
        _pin_error(trainer, 0.6)
        _, log_msg = trainer.maintain_checkpoints()
        assert "Divergence!" not in log_msg
        assert trainer.state.worst_error_rate == 0.6


class TestStallRecovery:
    def test_stall_starts_sub_trainer(self):
        trainer, _ = _make_trainer()
        _pin_error(trainer, 0.2)
        trainer.maintain_checkpoints()
        trainer.state.learning_iteration = trainer.state.stall_iteration
        _pin_error(trainer, 0.3)
        _, log_msg = trainer.maintain_checkpoints()
        assert "Trial sub trainer" in log_msg
        assert trainer.sub_trainer is not None
        assert trainer.state.stall_iteration > trainer.learning_iteration

    def test_no_sub_trainer_within_margin(self):
        trainer, _ = _make_trainer()
        _pin_error(trainer, 0.2)
        trainer.maintain_checkpoints()
        trainer.state.learning_iteration = trainer.state.stall_iteration
        _pin_error(trainer, 0.2 * (1.0 + 3.0 / 128.0) * 0.999)
        trainer.maintain_checkpoints()
        assert trainer.sub_trainer is None

    def test_no_sub_trainer_before_training_gets_going(self):
        trainer, _ = _make_trainer()
        _pin_error(trainer, 0.8)
        trainer.maintain_checkpoints()
        trainer.state.learning_iteration = trainer.state.stall_iteration
        _pin_error(trainer, 0.9)
        trainer.maintain_checkpoints()
        assert trainer.sub_trainer is None

    def test_new_best_clears_sub_trainer(self):
        trainer, _ = _make_trainer()
        _pin_error(trainer, 0.2)
        trainer.maintain_checkpoints()
        trainer.state.learning_iteration = trainer.state.stall_iteration
        _pin_error(trainer, 0.3)
        trainer.maintain_checkpoints()
        _pin_error(trainer, 0.1)
        trainer.maintain_checkpoints()
        assert trainer.sub_trainer is None


class TestErrorGraph:
    def test_close_maximum_not_recorded(self):
        trainer, _ = _make_trainer()
        trainer.update_error_graph(0, 0.5, b"", None)
        trainer.update_error_graph(3, 0.6, b"", None)
        assert trainer.state.worst_iteration == 0
        assert trainer.state.worst_error_rate == 0.5

    def test_maximum_after_interval_recorded(self):
        trainer, _ = _make_trainer()
        trainer.update_error_graph(0, 0.5, b"", None)
        trainer.update_error_graph(5, 0.6, b"model", MagicMock(return_value=""))
        assert trainer.state.worst_iteration == 5
        assert trainer.state.worst_error_rate == 0.6
        assert trainer.state.worst_model_data == b"model"

    def test_improvement_steps(self):
        trainer, _ = _make_trainer()
        for iteration, rate in [(10, 0.5), (20, 0.45), (30, 0.3), (40, 0.29)]:
            trainer.update_error_graph(iteration, rate, b"", None)
        # 0.29 + 0.02 first exceeded by the best at iteration 20
        assert trainer.state.improvement_steps == 20
        assert trainer.state.best_error_history == [0.5, 0.45, 0.3, 0.29]


class TestStageTransition:
    def test_stage_moves_once_below_threshold(self):
        trainer, _ = _make_trainer(num_training_stages=5)
        stages = []
        for iteration, rate in enumerate([0.5, 0.4, 0.3, 0.19]):
            trainer.update_error_graph(iteration, rate, b"", None)
            trainer.transition_training_stage(0.2)
            stages.append(trainer.current_training_stage)
        assert stages == [0, 0, 0, 1]
        # A later rise above the threshold does not move the stage again
        trainer.update_error_graph(100, 0.35, b"", None)
        assert not trainer.transition_training_stage(0.2)
        trainer.update_error_graph(200, 0.15, b"", None)
        assert not trainer.transition_training_stage(0.2)
        assert trainer.current_training_stage == 1

    def test_stage_capped(self):
        trainer, _ = _make_trainer(num_training_stages=1)
        trainer.update_error_graph(0, 0.05, b"", None)
        assert not trainer.transition_training_stage(0.1)
        assert trainer.current_training_stage == 0

    def test_transition_restarts_progress_counters(self):
        trainer, _ = _make_trainer()
        trainer.state.learning_iteration = 50
        trainer.update_error_graph(50, 0.05, b"", None)
        assert trainer.transition_training_stage(0.1)
        assert trainer.state.stall_iteration == 60
        assert trainer.state.best_error_history == []

    def test_maintain_checkpoints_reports_transition(self):
        trainer, _ = _make_trainer(stage_transition_threshold=0.3)
        _pin_error(trainer, 0.25)
        _, log_msg = trainer.maintain_checkpoints()
        assert "Transitioned to stage 1" in log_msg
        assert trainer.current_training_stage == 1


class TestInitIterations:
    def test_resets_counters_keeps_stage(self):
        trainer, _ = _make_trainer([_line("abc")])
        for _ in range(3):
            trainer.train_on_line()
        _pin_error(trainer, 0.2)
        trainer.maintain_checkpoints()
        trainer.state.training_stage = 1
        best_trainer = trainer.state.best_trainer
        trainer.init_iterations()
        assert trainer.training_iteration == 0
        assert trainer.sample_iteration == 0
        assert trainer.best_error_rate == 1.0
        assert trainer.current_training_stage == 1
        assert trainer.state.best_trainer == best_trainer
        assert trainer.state.errors.buffers[ErrorTypes.CHAR_ERROR].count == 0


class TestFit:
    def test_stops_at_max_iterations(self):
        samples = [_line("abc", 0), _line("cab", 1)]
        trainer, _ = _make_trainer(samples, max_iterations=4, target_error_rate=0.0)
        trainer.fit()
        assert trainer.training_iteration == 4

    def test_stops_without_trainable_data(self):
        trainer, _ = _make_trainer([_line("xyz")], max_iterations=100)
        trainer.fit()
        assert trainer.training_iteration == 0

    def test_callbacks_are_called(self):
        class Recorder:
            def __init__(self):
                self.calls = []

            def on_train_start(self):
                self.calls.append("start")

            def on_train_batch_end(self, trainer, log_msg):
                self.calls.append("batch")

            def on_train_end(self):
                self.calls.append("end")

        recorder = Recorder()
        torch.manual_seed(0)
        trainer = LSTMTrainer(
            _base_config(max_iterations=4, target_error_rate=0.0),
            LineRecognizer(UnicharEncoder(ALPHABET), input_height=8, hidden_size=4, num_layers=1),
            training_data=DocumentCache([_line("abc")]),
            file_writer=MemoryFileStore().write,
            callbacks=[recorder],
        )
        trainer.fit()
        assert recorder.calls == ["start", "batch", "batch", "end"]

    def test_fit_writes_checkpoints(self):
        trainer, store = _make_trainer(
            [_line("abc")], max_iterations=8, target_error_rate=0.0, checkpoint_name="run.ckpt"
        )
        trainer.fit()
        restored, _ = _make_trainer()
        assert restored.read_training_dump(store.files["run.ckpt"])
        assert restored.training_iteration == trainer.training_iteration

    def test_light_dump_resume_skips_nothing(self):
        trainer, _ = _make_trainer([_line("abc")])
        trainer.train_on_line()
        restored, _ = _make_trainer([_line("abc")])
        restored.read_training_dump(trainer.save_training_dump(SerializeAmount.LIGHT))
        assert restored.sample_iteration == trainer.sample_iteration


class TestDebugOutput:
    def test_logging_sink_receives_alignment(self, caplog):
        caplog.set_level(logging.DEBUG, logger="lstmocr.trainer.debug")
        trainer, _ = _make_trainer([_line("abc")], debug_interval=1)
        trainer.debug_sink = LoggingDebugSink()
        trainer.train_on_line()
        assert "ALIGNED TRUTH : abc" in caplog.text
        assert "targets argmax per timestep: [1, 2, 3]" in caplog.text

    def test_no_debug_output_by_default(self):
        trainer, _ = _make_trainer([_line("abc")])
        trainer.debug_sink = MagicMock(spec=DebugSink)
        trainer.train_on_line()
        trainer.debug_sink.display_alignment.assert_not_called()


class TestExactAlignment:
    def test_exact_alignment_trains(self):
        sample = TrainingSample(image=torch.rand(8, 5), transcription="abc")
        trainer, _ = _make_trainer([sample], alignment="exact")
        assert trainer.train_on_line() == Trainability.TRAINABLE
        assert trainer.training_iteration == 1

    def test_exact_alignment_too_narrow(self):
        sample = TrainingSample(image=torch.rand(8, 2), transcription="abc")
        trainer, _ = _make_trainer([sample], alignment="exact")
        assert trainer.train_on_line() == Trainability.UNENCODABLE


class TestFabricSetup:
    def test_model_and_optimizer_are_wrapped(self):
        trainer, _ = _make_trainer([_line("abc")])
        assert is_wrapped(trainer.model)
        assert is_wrapped(trainer.optimizer)
        assert trainer.model.module is trainer.recognizer

    def test_backward_goes_through_fabric(self):
        trainer, _ = _make_trainer([_line("abc")])
        with patch.object(trainer.fabric, "backward", wraps=trainer.fabric.backward) as backward:
            trainer.train_on_line()
        assert backward.call_count == 1

    def test_reloaded_network_is_wrapped(self):
        trainer, _ = _make_trainer([_line("abc")])
        trainer.train_on_line()
        assert trainer.read_training_dump(trainer.save_training_dump(SerializeAmount.LIGHT))
        assert is_wrapped(trainer.model)
        assert trainer.model.module is trainer.recognizer
        before = trainer.recognizer.output.weight.detach().clone()
        trainer.train_on_line()
        assert not torch.equal(before, trainer.recognizer.output.weight)

    def test_layer_rate_search_goes_through_fabric(self):
        samples = [_line("abc", 0), _line("cab", 1)]
        trainer, _ = _make_trainer(samples, layer_specific_lr=True)
        with patch.object(trainer.fabric, "backward", wraps=trainer.fabric.backward) as backward:
            reduce_layer_learning_rates(trainer, 0.5, 2, trainer)
        # Two samples, two rates, two steps each
        assert backward.call_count == 8
