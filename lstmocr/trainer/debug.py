import logging

import torch

from lstmocr.data.samples import TrainingSample

# A logger for this file
logger = logging.getLogger(__name__)


class DebugSink:
    """Receiver for training visualizations.

    The trainer calls the sink every ``debug_interval`` iterations. The base
    class ignores everything; subclass it to draw alignments or plot targets.
    """

    def display_alignment(
        self,
        sample: TrainingSample,
        truth_text: str,
        ocr_text: str,
        iteration: int,
    ) -> None:
        """Shows the truth and the current best reading of ``sample``."""

    def display_targets(self, name: str, targets: torch.Tensor, iteration: int) -> None:
        """Shows a ``(T, C)`` tensor of targets or outputs."""


class LoggingDebugSink(DebugSink):
    """Writes alignments and target summaries to the module logger at DEBUG level."""

    def display_alignment(self, sample, truth_text, ocr_text, iteration):
        logger.debug(f"Iteration {iteration}: ALIGNED TRUTH : {truth_text}")
        logger.debug(f"Iteration {iteration}: BEST OCR TEXT : {ocr_text}")
        if sample.document:
            logger.debug(f"File {sample.document} page {sample.page}")

    def display_targets(self, name, targets, iteration):
        best = targets.argmax(dim=-1).tolist()
        logger.debug(f"Iteration {iteration}: {name} argmax per timestep: {best}")
