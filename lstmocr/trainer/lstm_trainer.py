"""Incremental line trainer for :class:`~lstmocr.models.LineRecognizer`.

The trainer consumes one text line at a time. For each line it builds the
ideal target outputs from the transcription, runs the network forward,
records how wrong it was, and backpropagates the difference. Every
``num_pages_per_batch`` lines, :meth:`LSTMTrainer.maintain_checkpoints`
looks at the rolling error means and decides whether anything needs doing:

- a new best error saves a ``best_trainer`` dump to fall back on, may move
  training to the next curriculum stage, and may write a best-model file;
- a new local worst that is far above the best is divergence, and the
  trainer reverts to ``best_trainer`` with reduced learning rates;
- a long stall launches a sub-trainer from ``best_trainer`` with reduced
  learning rates that races the main trainer, and replaces it if it wins.

Typical use::

    from lstmocr.data import DocumentCache, UnicharEncoder
    from lstmocr.models import LineRecognizer
    from lstmocr.trainer import LSTMTrainer, TrainerConfig

    cache = DocumentCache()
    cache.load_documents("data/train.bcf", "data/train.txt")
    recognizer = LineRecognizer(UnicharEncoder("abcdefghijklmnopqrstuvwxyz "))
    config = TrainerConfig(model_base="checkpoints/eng", checkpoint_name="checkpoints/eng.ckpt")
    trainer = LSTMTrainer(config, recognizer, training_data=cache)
    trainer.try_loading_checkpoint(config.checkpoint_name)
    trainer.fit()
"""

import logging
from typing import Any, Callable

import torch
import torch.nn.functional as F  # noqa: N812
import lightning as L  # noqa: N812
from tqdm import tqdm
from lightning.fabric.loggers import Logger

from lstmocr.data.charset import NULL_LABEL
from lstmocr.data.samples import DocumentCache, TrainingSample
from lstmocr.models.recognizer import LineRecognizer

from .debug import DebugSink
from .state import TrainerState
from .config import TrainerConfig
from .errors import (
    ErrorTypes,
    ErrorTracker,
    compute_rms_error,
    compute_char_error,
    compute_word_error,
    compute_winner_error,
)
from .fileio import FileReader, FileWriter, read_file, write_file
from .targets import Trainability, TargetBuilder
from .checkpoint import CheckpointCodec, SerializeAmount
from .subtrainer import (
    SubTrainerResult,
    SubtrainerStatus,
    SubtrainerController,
    reduce_learning_rates,
)

# A logger for this file
logger = logging.getLogger(__name__)

# Args: iteration, error rates (or None), recognizer dump, training stage
TestCallback = Callable[[int, "dict[str, float] | None", bytes, int], str]

_SKIPPED = (Trainability.UNENCODABLE, Trainability.NOT_BOXED)


def _pct(rate: float) -> str:
    return f"{100.0 * rate:.3f}%"


class LSTMTrainer:
    """Trains a :class:`~lstmocr.models.LineRecognizer` one line at a time.

    All mutable progress lives in :attr:`state` (a
    :class:`~lstmocr.trainer.state.TrainerState`), next to the network and
    its optimizer. The trainer is single-threaded: only the caller's thread
    mutates it, and a sub-trainer is a separate object trained by explicit
    calls from the same thread.

    Args:
        config: Training configuration.
        recognizer: The network to train. It is moved to the Fabric device.
        training_data: Source of training lines. Sub-trainers leave it empty
            and read their samples from the trainer that owns them.
        file_reader: ``path -> bytes | None``; defaults to reading from disk.
        file_writer: ``(data, path) -> bool``; defaults to writing to disk.
        codec: Checkpoint codec; a default :class:`CheckpointCodec` if omitted.
        debug_sink: Receives alignment displays every ``debug_interval`` lines.
        fabric: Share an existing Fabric (sub-trainers share their owner's).
        loggers: Fabric loggers for training metrics.
        callbacks: Fabric callbacks; hooks ``on_train_start``,
            ``on_train_batch_end`` and ``on_train_end`` are called by :meth:`fit`.
    """

    def __init__(
        self,
        config: TrainerConfig,
        recognizer: LineRecognizer,
        training_data: DocumentCache | None = None,
        file_reader: FileReader | None = None,
        file_writer: FileWriter | None = None,
        codec: CheckpointCodec | None = None,
        debug_sink: DebugSink | None = None,
        fabric: L.Fabric | None = None,
        loggers: Logger | list[Logger] | None = None,
        callbacks: list[Any] | None = None,
    ) -> None:
        self.config = config
        self.fabric = fabric or L.Fabric(
            accelerator=config.accelerator,
            devices=config.devices,
            precision=config.precision,
            loggers=loggers or [],
            callbacks=callbacks or [],
        )
        self.training_data = training_data if training_data is not None else DocumentCache()
        self.file_reader = file_reader or read_file
        self.file_writer = file_writer or write_file
        self.codec = codec or CheckpointCodec()
        self.debug_sink = debug_sink or DebugSink()
        self.targets = TargetBuilder(recognizer.encoder, config.alignment)
        self._setup(recognizer, self._create_optimizer(recognizer, {}))
        self.state = self._fresh_state()
        self.subtrainer = SubtrainerController(self)
        self.log_metrics = True
        self.should_stop = False
        self._is_launched = False

    # -------------------------------------------------------------------------
    # Accessors
    # -------------------------------------------------------------------------

    @property
    def training_iteration(self) -> int:
        return self.state.training_iteration

    @property
    def learning_iteration(self) -> int:
        return self.state.learning_iteration

    @property
    def sample_iteration(self) -> int:
        return self.state.sample_iteration

    @property
    def best_error_rate(self) -> float:
        return self.state.best_error_rate

    @property
    def best_iteration(self) -> int:
        return self.state.best_iteration

    @property
    def current_training_stage(self) -> int:
        return self.state.training_stage

    @property
    def error_rates(self) -> dict[ErrorTypes, float]:
        return dict(self.state.errors.error_rates)

    @property
    def char_error(self) -> float:
        return self.state.errors.error_rates[ErrorTypes.CHAR_ERROR]

    @property
    def activation_error(self) -> float:
        return self.state.errors.error_rates[ErrorTypes.DELTA]

    @property
    def sub_trainer(self) -> "LSTMTrainer | None":
        return self.subtrainer.sub_trainer

    @property
    def learning_rate(self) -> float:
        """The largest learning rate of any layer."""
        return max(self.layer_learning_rates().values())

    def set_iteration(self, sample_iteration: int) -> None:
        """Moves the sample cursor, so the next line read is ``sample_iteration``."""
        self.state.sample_iteration = sample_iteration

    # -------------------------------------------------------------------------
    # Learning rates
    # -------------------------------------------------------------------------

    def layer_learning_rates(self) -> dict[str, float]:
        return {group["layer"]: group["lr"] for group in self.optimizer.param_groups}

    def layer_learning_rate(self, name: str) -> float:
        return self._param_group(name)["lr"]

    def scale_layer_learning_rate(self, name: str, factor: float) -> None:
        self._param_group(name)["lr"] *= factor

    def scale_learning_rate(self, factor: float) -> None:
        for group in self.optimizer.param_groups:
            group["lr"] *= factor

    # -------------------------------------------------------------------------
    # Training steps
    # -------------------------------------------------------------------------

    def train_on_line(self, samples_trainer: "LSTMTrainer | None" = None) -> Trainability | None:
        """Trains on the line at ``sample_iteration``.

        Args:
            samples_trainer: Trainer whose ``training_data`` holds the lines;
                defaults to this trainer.

        Returns:
            The sample's :class:`Trainability`, or ``None`` if there was no
            sample at that index (the cursor still advances).
        """
        source = samples_trainer if samples_trainer is not None else self
        sample = source.training_data.get_page_by_serial(self.state.sample_iteration)
        if sample is None:
            self.state.sample_iteration += 1
            return None
        return self.train_on_sample(sample)

    def train_on_sample(self, sample: TrainingSample) -> Trainability:
        """Runs forward, error accounting and (usually) backward on one sample.

        Unusable samples (``UNENCODABLE``, ``NOT_BOXED``) only advance the
        sample cursor and count towards the skip ratio. ``PERFECT`` samples
        are backpropagated at most once every ``perfect_delay + 1``
        iterations.
        """
        trainable, logits, deltas = self.prepare_for_backward(sample)
        self.state.sample_iteration += 1
        if trainable in _SKIPPED:
            self.state.errors.record_sample(ErrorTypes.SKIP_RATIO, 1.0)
            return trainable
        if (
            trainable != Trainability.PERFECT
            or self.state.training_iteration
            > self.state.last_perfect_training_iteration + self.config.perfect_delay
        ):
            if trainable == Trainability.PERFECT:
                self.state.last_perfect_training_iteration = self.state.training_iteration
            self._backward(logits, deltas)
        self.roll_error_buffers()
        if self.log_metrics and self.training_iteration % self.config.log_every_n_steps == 0:
            self.fabric.log_dict(
                {f"train_{kind.value}": rate for kind, rate in self.error_rates.items()},
                step=self.training_iteration,
            )
        return trainable

    def prepare_for_backward(
        self,
        sample: TrainingSample,
    ) -> tuple[Trainability, torch.Tensor | None, torch.Tensor | None]:
        """Encodes the truth, runs forward, builds targets and records errors.

        Returns:
            ``(trainability, logits, deltas)`` where ``logits`` still carry
            the autograd graph and ``deltas`` are ``targets - outputs``. Both
            are ``None`` for skipped samples, which leave every error buffer
            untouched.
        """
        stage_needs_boxes = self.state.training_stage < self.config.require_boxes_until_stage
        if stage_needs_boxes and not sample.is_boxed:
            logger.debug(f"Sample {sample.document}:{sample.page} has no boxes; skipping")
            return Trainability.NOT_BOXED, None, None
        labels = self.targets.encode_transcription(sample.transcription)
        if labels is None:
            return Trainability.UNENCODABLE, None, None

        logits = self.model(self.fabric.to_device(sample.image))
        outputs = F.softmax(logits.detach().float(), dim=-1).cpu()
        targets, trainable = self.targets.build_targets(
            labels, outputs, boxes=sample.boxes, image_width=sample.width
        )
        if targets is None:
            return trainable, None, None

        alignment = self.config.alignment
        ocr_labels = self.recognizer.labels_from_outputs(outputs, alignment)
        if alignment == "ctc":
            truth_labels = [label for label in labels if label != NULL_LABEL]
        else:
            truth_labels = self.recognizer.labels_from_outputs(targets, alignment)
        truth_text = self.recognizer.encoder.decode(truth_labels)
        ocr_text = self.recognizer.encoder.decode(ocr_labels)
        deltas = targets - outputs

        if self._debug_due():
            self.debug_sink.display_alignment(sample, truth_text, ocr_text, self.training_iteration)
            self.debug_sink.display_targets("targets", targets, self.training_iteration)
            self.debug_sink.display_targets("outputs", outputs, self.training_iteration)

        char_error = compute_char_error(truth_labels, ocr_labels, NULL_LABEL)
        word_error = compute_word_error(truth_text, ocr_text)
        self._compute_error_rates(deltas, char_error, word_error)
        trainable = TargetBuilder.classify(deltas, self.config.high_confidence)
        if trainable == Trainability.HI_PRECISION_ERR:
            logger.info(
                f"Iteration {self.training_iteration}: high confidence disagreement on "
                f"'{sample.transcription}' (read '{ocr_text}'); check the truth"
            )
        return trainable, logits, deltas

    def roll_error_buffers(self) -> None:
        """Finishes a trained step: advances the counters and refreshes the means."""
        state = self.state
        state.prev_sample_iteration = state.sample_iteration
        if state.errors.last_value(ErrorTypes.DELTA) > 0.0:
            state.learning_iteration += 1
        state.training_iteration += 1
        rates = state.errors.roll_and_report()
        if self._debug_due():
            logger.info(
                f"Mean rms={_pct(rates[ErrorTypes.RMS])}, "
                f"delta={_pct(rates[ErrorTypes.DELTA])}, "
                f"train={_pct(rates[ErrorTypes.CHAR_ERROR])}"
                f"({_pct(rates[ErrorTypes.WORD_RECERR])}), "
                f"skip ratio={_pct(rates[ErrorTypes.SKIP_RATIO])}"
            )

    def train_batch(
        self,
        num_lines: int,
        samples_trainer: "LSTMTrainer | None" = None,
        progbar: Any = None,
    ) -> int:
        """Trains until ``num_lines`` more lines have been used for training.

        Stops early if a whole pass over the training data yields nothing
        trainable, so an unusable data set cannot loop forever.

        Returns:
            The number of lines actually trained.
        """
        source = samples_trainer if samples_trainer is not None else self
        target_iteration = self.training_iteration + num_lines
        max_idle = max(len(source.training_data), 1)
        idle = 0
        while self.training_iteration < target_iteration and idle < max_idle:
            before = self.training_iteration
            self.train_on_line(source)
            if self.training_iteration == before:
                idle += 1
                continue
            idle = 0
            if progbar is not None:
                progbar.update(1)
                progbar.set_postfix({"char_error": _pct(self.char_error)})
        if idle >= max_idle:
            logger.warning(f"No trainable lines in {max_idle} consecutive samples")
        return num_lines - (target_iteration - self.training_iteration)

    # -------------------------------------------------------------------------
    # Checkpoint maintenance
    # -------------------------------------------------------------------------

    def maintain_checkpoints(self, tester: TestCallback | None = None) -> tuple[bool, str]:
        """Tracks best and locally worst error rates and acts on them.

        Starts or advances the sub-trainer, records new best/worst points
        (running ``tester`` on them), saves ``best_trainer``, reverts on
        divergence, and writes the periodic checkpoint.

        Returns:
            ``(interesting, log_msg)``: whether anything noteworthy happened,
            and a progress message for the caller to log.
        """
        cfg = self.config
        state = self.state
        log: list[str] = [self.prepare_log_msg()]
        if not state.errors.is_warm(ErrorTypes.CHAR_ERROR):
            log.append(f" Error rates warming up ({cfg.rolling_buffer_size} lines needed).")
            self._write_checkpoint(log)
            return False, "".join(log)

        error_rate = self.char_error
        iteration = self.learning_iteration
        if (
            iteration >= state.stall_iteration
            and error_rate > state.best_error_rate * (1.0 + cfg.sub_trainer_margin_fraction)
            and state.best_error_rate < cfg.min_started_error_rate
            and state.best_trainer
        ):
            # No progress in a long while and a margin worse than the best,
            # so try again from the best with a lower learning rate.
            self.subtrainer.start(log)
        sub_trainer_result = SubTrainerResult.STR_NONE
        if self.subtrainer.active:
            sub_trainer_result = self.subtrainer.update(log)
            if sub_trainer_result == SubTrainerResult.STR_REPLACED:
                error_rate = self.char_error
                iteration = self.learning_iteration
                log.append(self.prepare_log_msg())
        state = self.state

        interesting = True
        if error_rate < state.best_error_rate:
            rec_model_data = self.save_recognition_dump()
            log.append(f" New best char error = {_pct(error_rate)}")
            log.append(self.update_error_graph(iteration, error_rate, rec_model_data, tester))
            # Whether this trainer beat the sub-trainer or was just replaced
            # by it, the race is over.
            self.subtrainer.clear()
            state.stall_iteration = self.learning_iteration + cfg.min_stall_iterations
            if self.transition_training_stage(cfg.stage_transition_threshold):
                log.append(f" Transitioned to stage {self.current_training_stage}")
            state.best_trainer = self.save_training_dump(SerializeAmount.NO_BEST_TRAINER)
            if (
                cfg.model_base
                and error_rate < state.error_rate_of_last_saved_best * cfg.best_checkpoint_fraction
            ):
                best_model_name = self.dump_filename()
                if self.save_best_model():
                    log.append(" wrote best model:")
                    state.error_rate_of_last_saved_best = state.best_error_rate
                else:
                    log.append(" failed to write best model:")
                log.append(best_model_name)
        elif error_rate > state.worst_error_rate:
            rec_model_data = self.save_recognition_dump()
            log.append(f" New worst char error = {_pct(error_rate)}")
            log.append(self.update_error_graph(iteration, error_rate, rec_model_data, tester))
            if (
                state.worst_error_rate > state.best_error_rate + cfg.min_divergence_rate
                and state.best_error_rate < cfg.min_started_error_rate
                and state.best_trainer
            ):
                log.append("\nDivergence! ")
                if self.read_training_dump(state.best_trainer):
                    log.append(self.log_iterations("Reverted to"))
                    reduce_learning_rates(self, self, log)
                else:
                    log.append(self.log_iterations("Failed to Revert at"))
                # If it diverges again, wait twice as long before reverting
                self.state.stall_iteration = iteration + 2 * (iteration - self.learning_iteration)
                # Re-save with the new learning rates and stall iteration
                self.state.best_trainer = self.save_training_dump(SerializeAmount.NO_BEST_TRAINER)
        else:
            interesting = sub_trainer_result != SubTrainerResult.STR_NONE

        self._write_checkpoint(log)
        return interesting, "".join(log)

    def update_error_graph(
        self,
        iteration: int,
        error_rate: float,
        model_data: bytes,
        tester: TestCallback | None,
    ) -> str:
        """Records ``error_rate`` as a new global best or local worst.

        ``best_*`` fields change only on a strict new minimum; ``worst_*``
        always take the new point, so they hold the worst error since the
        last best. Maxima closer than ``error_graph_interval`` to the last
        best are not recorded.

        Returns:
            Whatever the tester reported, or an empty string.
        """
        state = self.state
        if error_rate > state.best_error_rate and iteration < (
            state.best_iteration + self.config.error_graph_interval
        ):
            return ""
        result = ""
        if error_rate < state.best_error_rate:
            # New global minimum: report the local maximum that preceded it
            if tester is not None and state.worst_model_data:
                result = tester(
                    state.worst_iteration,
                    dict(state.worst_error_rates),
                    state.worst_model_data,
                    self.current_training_stage,
                )
                state.worst_model_data = b""
                state.best_model_data = model_data
            state.best_error_rate = error_rate
            state.best_error_rates = state.errors.snapshot()
            state.best_iteration = iteration
            state.best_error_history.append(error_rate)
            state.best_error_iterations.append(iteration)
            # Time taken for the last 2% of improvement
            two_percent_more = error_rate + 0.02
            i = len(state.best_error_history) - 1
            while i >= 0 and state.best_error_history[i] < two_percent_more:
                i -= 1
            old_iteration = state.best_error_iterations[i] if i >= 0 else 0
            state.improvement_steps = iteration - old_iteration
            logger.info(
                f"2 Percent improvement time={state.improvement_steps}, best error was "
                f"{_pct(state.best_error_history[i] if i >= 0 else 1.0)} @ {old_iteration}"
            )
        elif error_rate > state.best_error_rate:
            # New local maximum: report the best that preceded it
            if tester is not None:
                if state.best_model_data:
                    result = tester(
                        state.best_iteration,
                        dict(state.best_error_rates),
                        state.best_model_data,
                        self.current_training_stage,
                    )
                elif state.worst_model_data:
                    result = tester(
                        state.worst_iteration,
                        dict(state.worst_error_rates),
                        state.worst_model_data,
                        self.current_training_stage,
                    )
                if result:
                    state.best_model_data = b""
                state.worst_model_data = model_data
        state.worst_error_rate = error_rate
        state.worst_error_rates = state.errors.snapshot()
        state.worst_iteration = iteration
        return result

    def transition_training_stage(self, error_threshold: float) -> bool:
        """Moves to the next curriculum stage when the best error first drops below the threshold.

        A threshold only counts once per stage: after a transition, the same
        threshold cannot trigger again because the stage was entered below it.
        The stage never decreases. Entering a stage restarts the measures of
        progress since the last improvement.

        Returns:
            ``True`` if the stage was advanced.
        """
        state = self.state
        if (
            state.best_error_rate < error_threshold <= state.stage_entry_error_rate
            and state.training_stage + 1 < self.config.num_training_stages
        ):
            state.training_stage += 1
            state.stage_entry_error_rate = state.best_error_rate
            state.stall_iteration = state.learning_iteration + self.config.min_stall_iterations
            state.improvement_steps = self.config.min_stall_iterations
            state.best_error_history = []
            state.best_error_iterations = []
            return True
        return False

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    def save_training_dump(self, amount: SerializeAmount) -> bytes:
        return self.codec.serialize(amount, self)

    def read_training_dump(self, data: bytes) -> bool:
        """Replaces this trainer's state, network and optimizer with a dump.

        Everything is rebuilt on the side and only committed once the whole
        dump has loaded, so a failed load leaves the trainer untouched.

        Returns:
            ``True`` on success.
        """
        payload = self.codec.deserialize(data)
        if payload is None:
            return False
        try:
            recognizer = LineRecognizer.from_hparams(payload["recognizer"]["hparams"])
            recognizer.load_state_dict(payload["recognizer"]["state_dict"])
            optimizer = self._create_optimizer(recognizer, payload["layer_learning_rates"])
            optimizer.load_state_dict(payload["optimizer"])
            state = TrainerState.from_dict(payload["state"])
            controller = payload["subtrainer"]
            status = SubtrainerStatus(controller["status"])
            fruitless_updates = int(controller["fruitless_updates"])
            sub_trainer = None
            if payload.get("sub_trainer"):
                sub_trainer = self.spawn()
                if not sub_trainer.read_training_dump(payload["sub_trainer"]):
                    raise ValueError("nested sub-trainer failed to load")
        except (AttributeError, IndexError, KeyError, TypeError, ValueError, RuntimeError) as e:
            logger.warning(f"Checkpoint does not describe a usable trainer: {e}")
            return False
        self._setup(recognizer, optimizer)
        self.targets = TargetBuilder(recognizer.encoder, self.config.alignment)
        self.state = state
        self.subtrainer.adopt(sub_trainer, status, fruitless_updates)
        return True

    def try_loading_checkpoint(self, filename: str) -> bool:
        """Loads a checkpoint file through the injected file reader, if it exists and is valid."""
        data = self.file_reader(filename)
        if data is None:
            return False
        if not self.read_training_dump(data):
            return False
        self.fabric.print(f"Resumed from {filename} ({self.log_iterations('at').strip()})")
        return True

    def save_recognition_dump(self) -> bytes:
        """The recognizer alone, as handed to the tester."""
        return self.codec.serialize_recognizer(self.recognizer)

    def dump_filename(self) -> str:
        return self.codec.canonical_filename(
            self.config.model_base,
            self.state.best_iteration,
            {ErrorTypes.CHAR_ERROR.value: self.state.best_error_rate},
        )

    def save_best_model(self) -> bool:
        """Writes ``best_trainer`` to :meth:`dump_filename`. Returns success."""
        if not self.state.best_trainer:
            return False
        return self.file_writer(self.state.best_trainer, self.dump_filename())

    def spawn(self) -> "LSTMTrainer":
        """A blank trainer sharing this one's config, Fabric and collaborators.

        Only the trainer that was built directly logs metrics; spawned ones
        (sub-trainers, learning-rate trials) stay quiet.
        """
        child = LSTMTrainer(
            self.config,
            LineRecognizer.from_hparams(self.recognizer.hparams()),
            file_reader=self.file_reader,
            file_writer=self.file_writer,
            codec=self.codec,
            debug_sink=self.debug_sink,
            fabric=self.fabric,
        )
        child.log_metrics = False
        return child

    def init_iterations(self) -> None:
        """Resets every counter and error record, e.g. before fine-tuning.

        The network, learning rates, ``best_trainer`` and training stage
        are kept.
        """
        fresh = self._fresh_state()
        fresh.best_trainer = self.state.best_trainer
        fresh.training_stage = self.state.training_stage
        fresh.stage_entry_error_rate = self.state.stage_entry_error_rate
        self.state = fresh

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------

    def prepare_log_msg(self) -> str:
        rates = self.state.errors.error_rates
        return (
            self.log_iterations("At")
            + f", Mean rms={_pct(rates[ErrorTypes.RMS])}"
            + f", delta={_pct(rates[ErrorTypes.DELTA])}"
            + f", char train={_pct(rates[ErrorTypes.CHAR_ERROR])}"
            + f", word train={_pct(rates[ErrorTypes.WORD_RECERR])}"
            + f", skip ratio={_pct(rates[ErrorTypes.SKIP_RATIO])}, "
        )

    def log_iterations(self, intro: str) -> str:
        """``"<intro> iteration learning/training/sample"``."""
        state = self.state
        return (
            f"{intro} iteration {state.learning_iteration}"
            f"/{state.training_iteration}/{state.sample_iteration}"
        )

    # -------------------------------------------------------------------------
    # Main entry point
    # -------------------------------------------------------------------------

    def fit(self, tester: TestCallback | None = None) -> None:
        """Trains until the target error rate or the iteration limit is reached.

        Each round trains ``num_pages_per_batch`` lines and then calls
        :meth:`maintain_checkpoints`, printing its progress message.
        """
        self._ensure_launched()
        if self.config.seed is not None:
            self.fabric.seed_everything(self.config.seed)
        self.recognizer.train()
        self.fabric.call("on_train_start")

        while not self.should_stop:
            progbar = self._progbar(
                total=self.config.num_pages_per_batch,
                desc=f"Iteration {self.training_iteration} [train]",
            )
            trained = self.train_batch(self.config.num_pages_per_batch, progbar=progbar)
            if progbar is not None:
                progbar.close()
            _, log_msg = self.maintain_checkpoints(tester)
            self.fabric.print(log_msg)
            self.fabric.call("on_train_batch_end", self, log_msg)

            if trained == 0:
                self.fabric.print("No trainable lines left; stopping.")
                self.should_stop = True
            if self.best_error_rate <= self.config.target_error_rate:
                self.should_stop = True
            if (
                self.config.max_iterations > 0
                and self.training_iteration >= self.config.max_iterations
            ):
                self.should_stop = True

        self.fabric.call("on_train_end")
        self.should_stop = False  # reset for subsequent fit() calls

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _fresh_state(self) -> TrainerState:
        cfg = self.config
        return TrainerState(
            stall_iteration=cfg.min_stall_iterations,
            improvement_steps=cfg.min_stall_iterations,
            error_rate_of_last_saved_best=cfg.min_started_error_rate,
            errors=ErrorTracker(cfg.rolling_buffer_size),
        )

    def _create_optimizer(
        self,
        recognizer: LineRecognizer,
        learning_rates: dict[str, float],
    ) -> torch.optim.SGD:
        """One SGD param group per layer, tagged with the layer name."""
        groups = [
            {
                "params": recognizer.layer_parameters(name),
                "lr": learning_rates.get(name, self.config.learning_rate),
                "layer": name,
            }
            for name in recognizer.layer_names()
        ]
        return torch.optim.SGD(groups, lr=self.config.learning_rate, momentum=self.config.momentum)

    def _param_group(self, name: str) -> dict:
        for group in self.optimizer.param_groups:
            if group["layer"] == name:
                return group
        raise ValueError(f"Unknown layer '{name}'. Valid options: {self.recognizer.layer_names()}")

    def _setup(self, recognizer: LineRecognizer, optimizer: torch.optim.Optimizer) -> None:
        """Wraps the network and its optimizer with Fabric.

        ``recognizer`` stays the plain module, for its layer names, state
        dict and decoding helpers; ``model`` is the Fabric wrapper used for
        forward passes, which applies the configured precision.
        """
        self.model, self.optimizer = self.fabric.setup(recognizer, optimizer)
        self.recognizer = recognizer

    def plain_sgd(self) -> torch.optim.Optimizer:
        """A momentum-free SGD at the current per-layer rates, set up with Fabric."""
        groups = [
            {"params": self.recognizer.layer_parameters(name), "lr": lr, "layer": name}
            for name, lr in self.layer_learning_rates().items()
        ]
        return self.fabric.setup_optimizers(torch.optim.SGD(groups, lr=self.config.learning_rate))

    def backward(self, logits: torch.Tensor, deltas: torch.Tensor) -> None:
        """Backpropagates ``deltas``; ``outputs - targets`` is the softmax cross-entropy gradient."""
        gradient = (-deltas).to(device=logits.device, dtype=logits.dtype)
        self.fabric.backward(logits, gradient=gradient)

    def _backward(self, logits: torch.Tensor, deltas: torch.Tensor) -> None:
        """Applies one update."""
        self.optimizer.zero_grad()
        self.backward(logits, deltas)
        self.optimizer.step()

    def _compute_error_rates(self, deltas: torch.Tensor, char_error: float, word_error: float) -> float:
        """Records every error kind of the current sample; returns its delta error."""
        errors = self.state.errors
        errors.record_sample(ErrorTypes.RMS, compute_rms_error(deltas))
        delta_error = compute_winner_error(deltas)
        errors.record_sample(ErrorTypes.DELTA, delta_error)
        errors.record_sample(ErrorTypes.WORD_RECERR, word_error)
        errors.record_sample(ErrorTypes.CHAR_ERROR, char_error)
        errors.record_sample(ErrorTypes.SKIP_RATIO, 0.0)
        return delta_error

    def _write_checkpoint(self, log: list[str]) -> None:
        if not self.config.checkpoint_name:
            return
        checkpoint = self.save_training_dump(SerializeAmount.FULL)
        if self.file_writer(checkpoint, self.config.checkpoint_name):
            log.append(" wrote checkpoint.")
        else:
            log.append(" failed to write checkpoint.")

    def _debug_due(self) -> bool:
        interval = self.config.debug_interval
        return interval > 0 and self.training_iteration % interval == 0

    def _ensure_launched(self) -> None:
        """Call ``fabric.launch()`` at most once, even across fit calls."""
        if not self._is_launched:
            self.fabric.launch()
            self._is_launched = True

    def _progbar(self, total: int, desc: str) -> tqdm | None:
        """A tqdm bar on rank 0, ``None`` elsewhere."""
        if self.fabric.is_global_zero:
            return tqdm(total=total, desc=desc, leave=False)
        return None
