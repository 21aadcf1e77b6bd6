"""Conversion of ground truth into per-timestep target distributions.

Two alignments are supported:

``"exact"``
    The truth labels occupy the first timesteps of the target and the rest
    is padded with the null class. With boxed truth, each label is placed at
    the timestep under the centre of its character box instead.

``"ctc"``
    Standard CTC: the target at each timestep is the posterior probability of
    every class given the network outputs and all alignments that collapse to
    the truth. The outputs are first floor-clipped to a minimum probability so
    the log-space computation never sees a zero.

Target building is pure: it reads the current outputs but never touches the
network.
"""

import logging
from enum import Enum

import numpy as np
import torch

from lstmocr.data.charset import NULL_LABEL, UnicharEncoder

from .errors import compute_winner_error

# A logger for this file
logger = logging.getLogger(__name__)

# Smallest probability an output may have after clipping
MIN_PROB = 1e-12
# Smallest total probability a timestep may have before normalization
MIN_TOTAL_TIME_PROB = 1e-8


class Trainability(Enum):
    """Suitability of a sample for training."""

    TRAINABLE = "trainable"  # non-zero delta error
    PERFECT = "perfect"  # zero delta error
    UNENCODABLE = "unencodable"  # truth cannot be expressed in the label space
    HI_PRECISION_ERR = "hi_precision_err"  # confident disagreement with the truth
    NOT_BOXED = "not_boxed"  # stage requires boxed truth and the sample has none


def normalize_probs(probs: torch.Tensor) -> torch.Tensor:
    """Floor-clips each timestep of ``(T, C)`` probabilities to ``MIN_PROB``.

    The total of each timestep is itself clipped to ``MIN_TOTAL_TIME_PROB``
    so tiny totals do not amplify noise; the mass added by clipping is folded
    into the normalization. Returns a new float64 tensor.
    """
    probs = probs.detach().double()
    total = probs.sum(dim=-1, keepdim=True).clamp(min=MIN_TOTAL_TIME_PROB)
    increment = (MIN_PROB - probs / total).clamp(min=0.0).sum(dim=-1, keepdim=True)
    return (probs / (total + increment)).clamp(min=MIN_PROB)


def compute_ctc_targets(
    labels: list[int],
    probs: torch.Tensor,
    null_label: int = NULL_LABEL,
) -> torch.Tensor | None:
    """Computes CTC posterior targets by forward-backward.

    Args:
        labels: Truth labels. Null labels anywhere in the list are ignored.
        probs: ``(T, C)`` network output probabilities.
        null_label: The blank class.

    Returns:
        ``(T, C)`` float32 targets whose rows sum to one, or ``None`` if no
        alignment of the labels fits in ``T`` timesteps.
    """
    labels = [label for label in labels if label != null_label]
    num_timesteps, num_classes = probs.shape
    # Extended sequence: null, l1, null, l2, ..., lN, null
    ext = [null_label]
    for label in labels:
        ext.extend([label, null_label])
    num_states = len(ext)
    repeats = sum(1 for a, b in zip(labels, labels[1:]) if a == b)
    if num_timesteps == 0 or num_timesteps < len(labels) + repeats:
        return None

    log_probs = np.log(normalize_probs(probs).cpu().numpy())[:, ext]
    ext_arr = np.array(ext)
    # A state may be entered from two states back if it is a label that
    # differs from the label two states back.
    skip = np.zeros(num_states, dtype=bool)
    skip[2:] = (ext_arr[2:] != null_label) & (ext_arr[2:] != ext_arr[:-2])
    neg_inf = np.full(2, -np.inf)

    alpha = np.full((num_timesteps, num_states), -np.inf)
    alpha[0, : min(2, num_states)] = log_probs[0, : min(2, num_states)]
    for t in range(1, num_timesteps):
        prev = alpha[t - 1]
        from_one = np.concatenate([neg_inf[:1], prev])[:num_states]
        from_two = np.where(skip, np.concatenate([neg_inf, prev])[:num_states], -np.inf)
        alpha[t] = np.logaddexp(np.logaddexp(prev, from_one), from_two) + log_probs[t]

    skip_ahead = np.zeros(num_states, dtype=bool)
    skip_ahead[:-2] = skip[2:]
    beta = np.full((num_timesteps, num_states), -np.inf)
    beta[-1, max(0, num_states - 2) :] = log_probs[-1, max(0, num_states - 2) :]
    for t in range(num_timesteps - 2, -1, -1):
        nxt = beta[t + 1]
        to_one = np.concatenate([nxt[1:], neg_inf[:1]])
        to_two = np.where(skip_ahead, np.concatenate([nxt[2:], neg_inf])[:num_states], -np.inf)
        beta[t] = np.logaddexp(np.logaddexp(nxt, to_one), to_two) + log_probs[t]

    log_total = np.logaddexp.reduce(alpha[-1, max(0, num_states - 2) :])
    if not np.isfinite(log_total):
        return None
    # alpha and beta both include the emission at t, so remove one copy
    posteriors = np.exp(alpha + beta - log_probs - log_total)
    targets = np.zeros((num_timesteps, num_classes), dtype=np.float64)
    for s, label in enumerate(ext):
        targets[:, label] += posteriors[:, s]
    return torch.from_numpy(targets).float()


def compute_text_targets(
    labels: list[int],
    num_timesteps: int,
    num_classes: int,
    null_label: int = NULL_LABEL,
    positions: list[int] | None = None,
) -> torch.Tensor | None:
    """Builds one-hot targets with the labels at fixed timesteps.

    Args:
        labels: Truth labels, without nulls.
        num_timesteps: Width of the network output.
        num_classes: Number of output classes.
        null_label: Class used for every timestep not holding a label.
        positions: Timestep of each label; defaults to ``0..len(labels)-1``.

    Returns:
        ``(T, C)`` float32 targets, or ``None`` if the labels do not fit.
    """
    if positions is None:
        positions = list(range(len(labels)))
    if len(labels) > num_timesteps or len(positions) != len(labels):
        return None
    if len(set(positions)) != len(positions):
        return None
    targets = torch.zeros(num_timesteps, num_classes)
    targets[:, null_label] = 1.0
    for label, t in zip(labels, positions):
        targets[t, null_label] = 0.0
        targets[t, label] = 1.0
    return targets


def any_suspicious_truth(deltas: torch.Tensor, confidence: float) -> bool:
    """True if the network is confidently wrong at an isolated timestep.

    A delta below ``-confidence`` means a class is strongly on where the truth
    says it is off. Isolated spikes (neighbours under ``confidence / 2``) of
    this kind usually point at a labelling error in the data.
    """
    bad = deltas < -confidence
    if not bool(bad.any()):
        return False
    quiet = deltas < confidence / 2
    prev_quiet = torch.ones_like(bad)
    prev_quiet[1:] = quiet[:-1]
    next_quiet = torch.ones_like(bad)
    next_quiet[:-1] = quiet[1:]
    return bool((bad & prev_quiet & next_quiet).any())


class TargetBuilder:
    """Turns transcriptions into network targets for one alignment mode.

    Args:
        encoder: Label space of the recognizer.
        alignment: ``"ctc"`` or ``"exact"``.
    """

    def __init__(self, encoder: UnicharEncoder, alignment: str = "ctc"):
        if alignment not in ("ctc", "exact"):
            raise ValueError(f"Unknown alignment '{alignment}'. Valid options: ['ctc', 'exact']")
        self.encoder = encoder
        self.alignment = alignment

    def encode_transcription(self, text: str) -> list[int] | None:
        """Encodes ``text`` for this alignment; ``None`` if it is unencodable or blank."""
        labels = self.encoder.encode(text, interleave_nulls=self.alignment == "ctc")
        if labels is None:
            logger.debug(f"Can't encode transcription: '{text}'")
            return None
        space = self.encoder.encode(" ")
        ignorable = {NULL_LABEL, *(space or [])}
        if all(label in ignorable for label in labels):
            logger.debug(f"Blank transcription: '{text}'")
            return None
        return labels

    def build_targets(
        self,
        labels: list[int],
        outputs: torch.Tensor,
        boxes: tuple[tuple[int, int], ...] | None = None,
        image_width: int | None = None,
    ) -> tuple[torch.Tensor | None, Trainability]:
        """Builds targets shaped like ``outputs``.

        Args:
            labels: Encoded truth from :meth:`encode_transcription`.
            outputs: ``(T, C)`` output probabilities of the forward pass.
            boxes: Optional per-character pixel spans (exact mode only).
            image_width: Width in pixels of the image the boxes refer to.

        Returns:
            ``(targets, TRAINABLE)`` or ``(None, UNENCODABLE)``.
        """
        num_timesteps, num_classes = outputs.shape
        if self.alignment == "ctc":
            targets = compute_ctc_targets(labels, outputs)
        else:
            truth = [label for label in labels if label != NULL_LABEL]
            positions = None
            if boxes and image_width and len(boxes) == len(truth):
                positions = [
                    min(num_timesteps - 1, int((x0 + x1) / 2 * num_timesteps / image_width))
                    for x0, x1 in boxes
                ]
            targets = compute_text_targets(truth, num_timesteps, num_classes, positions=positions)
        if targets is None:
            logger.debug(
                f"Compute {self.alignment} targets failed for {len(labels)} labels "
                f"in {num_timesteps} timesteps"
            )
            return None, Trainability.UNENCODABLE
        return targets, Trainability.TRAINABLE

    @staticmethod
    def classify(deltas: torch.Tensor, high_confidence: float) -> Trainability:
        """Grades ``deltas`` (targets - outputs) of a sample that encoded successfully."""
        if compute_winner_error(deltas) == 0.0:
            return Trainability.PERFECT
        if any_suspicious_truth(deltas, high_confidence):
            return Trainability.HI_PRECISION_ERR
        return Trainability.TRAINABLE
