"""Sub-trainer races and learning-rate reduction.

When the main trainer stalls, a sub-trainer is forked from the last
``best_trainer`` dump with reduced learning rates. Each maintenance round it
is trained on the main trainer's samples until it catches up in training
iterations; if it then beats the main trainer by a margin it replaces it.
"""

import logging
from enum import Enum
from typing import TYPE_CHECKING

import torch

from .checkpoint import SerializeAmount

if TYPE_CHECKING:
    from .lstm_trainer import LSTMTrainer

# A logger for this file
logger = logging.getLogger(__name__)

# Trial settings for per-layer learning-rate reduction
_LR_DOWN = 0
_LR_SAME = 1


class SubTrainerResult(Enum):
    """Outcome of one :meth:`SubtrainerController.update` call."""

    STR_NONE = "none"  # did nothing useful
    STR_UPDATED = "updated"  # caught up but not better
    STR_REPLACED = "replaced"  # won and replaced the main trainer


class SubtrainerStatus(Enum):
    NONE = "none"
    RUNNING = "running"
    MERGED = "merged"
    DISCARDED = "discarded"


class SubtrainerController:
    """Owns the (optional) sub-trainer of one :class:`~lstmocr.trainer.LSTMTrainer`.

    Args:
        owner: The trainer whose samples the sub-trainer reads and which it
            replaces when it wins.
    """

    def __init__(self, owner: "LSTMTrainer"):
        self.owner = owner
        self.sub_trainer: "LSTMTrainer | None" = None
        self.status = SubtrainerStatus.NONE
        self.fruitless_updates = 0

    @property
    def active(self) -> bool:
        return self.sub_trainer is not None

    def start(self, log: list[str]) -> bool:
        """Forks a sub-trainer from the owner's ``best_trainer`` with reduced learning rates.

        Any running sub-trainer is dropped first.
        """
        owner = self.owner
        self.sub_trainer = None
        self.fruitless_updates = 0
        sub_trainer = owner.spawn()
        if not sub_trainer.read_training_dump(owner.state.best_trainer):
            log.append(" Failed to revert to previous best for trial!")
            self.status = SubtrainerStatus.DISCARDED
            return False
        log.append(f" Trial sub trainer from iteration {sub_trainer.training_iteration}")
        # Reduce learning rate so it doesn't diverge this time
        reduce_learning_rates(sub_trainer, owner, log)
        # It needs to catch up by twice what it took the owner to get here,
        # and the owner must not start another one before then.
        stall_offset = owner.learning_iteration - sub_trainer.learning_iteration
        owner.state.stall_iteration = owner.learning_iteration + 2 * stall_offset
        sub_trainer.state.stall_iteration = owner.state.stall_iteration
        # Re-save the best trainer with the new learning rates and stall iteration
        owner.state.best_trainer = sub_trainer.save_training_dump(SerializeAmount.NO_BEST_TRAINER)
        self.sub_trainer = sub_trainer
        self.status = SubtrainerStatus.RUNNING
        return True

    def update(self, log: list[str]) -> SubTrainerResult:
        """Trains the sub-trainer until it catches up, then compares it with the owner.

        Training goes in batches of ``num_pages_per_batch`` lines, and stops
        early when the sub-trainer falls a margin behind. The sub-trainer
        replaces the owner only if it caught up and its error beats both the
        owner's error and best error by the margin. A call that trains nothing
        and does not replace the owner counts as fruitless.
        """
        owner = self.owner
        sub_trainer = self.sub_trainer
        cfg = owner.config
        margin = cfg.sub_trainer_margin_fraction
        training_error = owner.char_error
        sub_error = sub_trainer.char_error
        sub_margin = _relative_margin(training_error, sub_error)
        if sub_margin >= margin:
            log.append(f" sub trainer={100.0 * sub_error:.3f}%, margin={100.0 * sub_margin:.3f}%")
            # Catch up to the owner in whole batches, stopping early if it falls behind
            end_iteration = owner.training_iteration
            total_trained = 0
            while sub_trainer.training_iteration < end_iteration and sub_margin >= margin:
                trained = sub_trainer.train_batch(cfg.num_pages_per_batch, samples_trainer=owner)
                total_trained += trained
                sub_error = sub_trainer.char_error
                sub_margin = _relative_margin(training_error, sub_error)
                if trained == 0:
                    break
            caught_up = sub_trainer.training_iteration >= end_iteration
            if (
                caught_up
                and sub_error < owner.best_error_rate
                and sub_margin >= margin
            ):
                # The sub-trainer has won, so replace the owner with it
                if self._replace_owner(log):
                    return SubTrainerResult.STR_REPLACED
                return SubTrainerResult.STR_NONE
            if total_trained > 0:
                self.fruitless_updates = 0
                return SubTrainerResult.STR_UPDATED
        self.fruitless_updates += 1
        if self.fruitless_updates >= cfg.max_subtrainer_attempts:
            log.append(f" Sub trainer discarded after {self.fruitless_updates} fruitless rounds")
            self.discard()
        return SubTrainerResult.STR_NONE

    def discard(self) -> None:
        self.sub_trainer = None
        self.fruitless_updates = 0
        self.status = SubtrainerStatus.DISCARDED

    def clear(self) -> None:
        """Ends the race after the owner reached a new best."""
        if self.sub_trainer is not None:
            self.sub_trainer = None
            self.fruitless_updates = 0
            if self.status == SubtrainerStatus.RUNNING:
                self.status = SubtrainerStatus.NONE

    def adopt(
        self,
        sub_trainer: "LSTMTrainer | None",
        status: SubtrainerStatus = SubtrainerStatus.NONE,
        fruitless_updates: int = 0,
    ) -> None:
        """Installs a sub-trainer restored from a checkpoint (or none).

        ``status`` and ``fruitless_updates`` come from :meth:`state_dict` of
        the controller that was saved; a missing sub-trainer is never running.
        """
        self.sub_trainer = sub_trainer
        if sub_trainer is None:
            self.fruitless_updates = 0
            self.status = SubtrainerStatus.NONE if status == SubtrainerStatus.RUNNING else status
        else:
            self.fruitless_updates = fruitless_updates
            self.status = SubtrainerStatus.RUNNING

    def state_dict(self) -> dict:
        return {"status": self.status.value, "fruitless_updates": self.fruitless_updates}

    def _replace_owner(self, log: list[str]) -> bool:
        owner = self.owner
        sub_trainer = self.sub_trainer
        kept = {
            "best_trainer": owner.state.best_trainer,
            "best_model_data": owner.state.best_model_data,
            "worst_model_data": owner.state.worst_model_data,
        }
        updated = sub_trainer.save_training_dump(SerializeAmount.LIGHT)
        if not owner.read_training_dump(updated):
            log.append(" Failed to take over from the sub trainer!")
            self.discard()
            return False
        # A LIGHT dump carries no saved models; keep the owner's own
        for name, value in kept.items():
            setattr(owner.state, name, value)
        log.append(" Sub trainer wins at" + owner.log_iterations(""))
        self.sub_trainer = None
        self.status = SubtrainerStatus.MERGED
        return True


def _relative_margin(training_error: float, sub_error: float) -> float:
    """How much better ``sub_error`` is than ``training_error``, relative to ``sub_error``."""
    if sub_error <= 0.0:
        return float("inf") if training_error > 0.0 else 0.0
    return (training_error - sub_error) / sub_error


def reduce_learning_rates(
    trainer: "LSTMTrainer",
    samples_trainer: "LSTMTrainer",
    log: list[str],
) -> None:
    """Reduces ``trainer``'s learning rates by ``learning_rate_decay``.

    With ``layer_specific_lr`` only the layers whose updates oscillate less
    with the lower rate are reduced (see :func:`reduce_layer_learning_rates`);
    otherwise every layer is.
    """
    cfg = trainer.config
    if cfg.layer_specific_lr:
        num_reduced = reduce_layer_learning_rates(
            trainer, cfg.learning_rate_decay, cfg.num_adjustment_iterations, samples_trainer
        )
        log.append(f"\nReduced learning rate on layers: {num_reduced}")
    else:
        trainer.scale_learning_rate(cfg.learning_rate_decay)
        log.append(f"\nReduced learning rate to :{trainer.learning_rate:g}")
    log.append("\n")


def reduce_layer_learning_rates(
    trainer: "LSTMTrainer",
    factor: float,
    num_samples: int,
    samples_trainer: "LSTMTrainer",
) -> int:
    """Reduces the learning rate of the layers that oscillate at the current rate.

    For each of ``num_samples`` samples, two copies of ``trainer`` are tried:
    one with every layer's rate scaled by ``factor`` ("down") and one at the
    current rate ("same"), both as plain SGD with the momentum folded into
    the rate. Each copy takes one update on the sample and one on the next,
    and the per-weight product of the two updates is accumulated per layer:
    negative products (the second update undoing the first) count as
    "changed", positive ones as "same".

    A layer is reduced when its changed fraction with the lower rate is
    strictly below ``improvement_fraction`` times the changed fraction at the
    current rate. If no layer qualifies, every layer is reduced.

    Returns:
        The number of layers whose learning rate was reduced.
    """
    cfg = trainer.config
    layers = [
        name for name in trainer.recognizer.layer_names() if trainer.recognizer.num_weights(name) > 0
    ]
    bad_sums = {ww: dict.fromkeys(layers, 0.0) for ww in (_LR_DOWN, _LR_SAME)}
    ok_sums = {ww: dict.fromkeys(layers, 0.0) for ww in (_LR_DOWN, _LR_SAME)}
    momentum_factor = 1.0 / (1.0 - cfg.momentum)
    orig_trainer = trainer.save_training_dump(SerializeAmount.LIGHT)
    iteration = trainer.sample_iteration
    for _ in range(num_samples):
        for ww in (_LR_DOWN, _LR_SAME):
            ww_factor = momentum_factor * (factor if ww == _LR_DOWN else 1.0)
            copy_trainer = trainer.spawn()
            copy_trainer.read_training_dump(orig_trainer)
            for layer in layers:
                copy_trainer.scale_layer_learning_rate(layer, ww_factor)
            copy_trainer.set_iteration(iteration)
            optimizer = copy_trainer.plain_sgd()
            first = trial_updates(copy_trainer, samples_trainer, optimizer)
            if first is None:
                continue
            second = trial_updates(copy_trainer, samples_trainer, optimizer)
            if second is None:
                continue
            for layer in layers:
                same, changed = _count_alternators(first[layer], second[layer])
                ok_sums[ww][layer] += same
                bad_sums[ww][layer] += changed
        iteration += 1

    num_lowered = 0
    for layer in layers:
        fractions = {}
        for ww in (_LR_DOWN, _LR_SAME):
            total = bad_sums[ww][layer] + ok_sums[ww][layer]
            fractions[ww] = bad_sums[ww][layer] / total if total > 0.0 else 0.0
        if fractions[_LR_DOWN] < fractions[_LR_SAME] * cfg.improvement_fraction:
            trainer.scale_layer_learning_rate(layer, factor)
            num_lowered += 1
            logger.info(
                f"Reduced learning rate of {layer} to {trainer.layer_learning_rate(layer):g} "
                f"(changed fraction {fractions[_LR_SAME]:.4f} -> {fractions[_LR_DOWN]:.4f})"
            )
    if num_lowered == 0:
        # Nothing stood out, so lower them all
        for layer in layers:
            trainer.scale_layer_learning_rate(layer, factor)
            num_lowered += 1
    return num_lowered


def trial_updates(
    trainer: "LSTMTrainer",
    samples_trainer: "LSTMTrainer",
    optimizer: torch.optim.Optimizer,
) -> dict[str, list[torch.Tensor]] | None:
    """Takes one step of ``optimizer`` on the next sample and returns the applied updates per layer.

    ``optimizer`` is expected to be plain SGD (see
    :meth:`~lstmocr.trainer.LSTMTrainer.plain_sgd`), so each update is the
    learning rate times the gradient.

    Returns:
        ``{layer: [update tensor per parameter]}``, or ``None`` if the sample
        could not be trained on. The sample cursor advances either way.
    """
    sample = samples_trainer.training_data.get_page_by_serial(trainer.sample_iteration)
    trainer.state.sample_iteration += 1
    if sample is None:
        return None
    trainable, logits, deltas = trainer.prepare_for_backward(sample)
    if logits is None:
        return None
    layers = trainer.recognizer.layer_names()
    before = {
        layer: [param.detach().clone() for param in trainer.recognizer.layer_parameters(layer)]
        for layer in layers
    }
    optimizer.zero_grad()
    trainer.backward(logits, deltas)
    optimizer.step()
    updates: dict[str, list[torch.Tensor]] = {}
    with torch.no_grad():
        for layer in layers:
            params = trainer.recognizer.layer_parameters(layer)
            updates[layer] = [
                (param.detach() - old).cpu() for param, old in zip(params, before[layer])
            ]
    return updates


def _count_alternators(
    first: list[torch.Tensor],
    second: list[torch.Tensor],
) -> tuple[float, float]:
    """Returns ``(same, changed)``: summed positive and negated negative update products."""
    same = 0.0
    changed = 0.0
    for a, b in zip(first, second):
        product = (a.double() * b.double()).flatten()
        negative = product < 0
        changed -= float(product[negative].sum())
        same += float(product[~negative].sum())
    return same, changed
