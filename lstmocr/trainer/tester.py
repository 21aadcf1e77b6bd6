import logging

import torch

from lstmocr.data.charset import NULL_LABEL
from lstmocr.data.samples import DocumentCache

from .errors import compute_char_error, compute_word_error
from .checkpoint import CheckpointCodec

# A logger for this file
logger = logging.getLogger(__name__)


class LSTMTester:
    """Scores recognizer dumps on held-out lines.

    An instance can be passed straight to
    :meth:`~lstmocr.trainer.LSTMTrainer.maintain_checkpoints` or
    :meth:`~lstmocr.trainer.LSTMTrainer.fit` as the test callback. Its
    result is only reported, it never changes training.

    Args:
        eval_data: The evaluation lines.
        alignment: How to read labels from the outputs (``"ctc"`` or ``"exact"``).
        codec: Codec for the recognizer dumps; a default one if omitted.
        device: Where to run evaluation.
    """

    def __init__(
        self,
        eval_data: DocumentCache,
        alignment: str = "ctc",
        codec: CheckpointCodec | None = None,
        device: str | torch.device = "cpu",
    ):
        self.eval_data = eval_data
        self.alignment = alignment
        self.codec = codec or CheckpointCodec()
        self.device = torch.device(device)

    def __call__(
        self,
        iteration: int,
        error_rates: dict[str, float] | None,
        model_data: bytes,
        training_stage: int,
    ) -> str:
        return self.run_eval_sync(iteration, error_rates, model_data, training_stage)

    @torch.no_grad()
    def run_eval_sync(
        self,
        iteration: int,
        error_rates: dict[str, float] | None,
        model_data: bytes,
        training_stage: int,
    ) -> str:
        """Evaluates ``model_data`` on every page of the evaluation set.

        Args:
            iteration: Training iteration the dump was taken at.
            error_rates: Training error rates at that point (unused by the
                evaluation itself).
            model_data: A recognizer dump from
                :meth:`~lstmocr.trainer.CheckpointCodec.serialize_recognizer`.
            training_stage: Curriculum stage the dump was taken in.

        Returns:
            A one-line report of the mean evaluation errors.
        """
        recognizer = self.codec.deserialize_recognizer(model_data)
        if recognizer is None:
            return "Deserialize failed"
        recognizer = recognizer.to(self.device).eval()
        encoder = recognizer.encoder

        char_errors = []
        word_errors = []
        for index in range(self.eval_data.total_pages()):
            sample = self.eval_data.get_page_by_serial(index)
            if sample is None:
                continue
            truth_labels = encoder.encode(sample.transcription)
            if truth_labels is None:
                logger.debug(f"Skipping unencodable eval line '{sample.transcription}'")
                continue
            outputs = recognizer.predict(sample.image)
            ocr_labels = recognizer.labels_from_outputs(outputs, self.alignment)
            char_errors.append(compute_char_error(truth_labels, ocr_labels, NULL_LABEL))
            word_errors.append(compute_word_error(sample.transcription, encoder.decode(ocr_labels)))

        if not char_errors:
            return f"No test data at iteration {iteration}"
        char_error = sum(char_errors) / len(char_errors)
        word_error = sum(word_errors) / len(word_errors)
        return (
            f"At iteration {iteration}, stage {training_stage}, "
            f"Eval Char error rate={100.0 * char_error:g}, Word error rate={100.0 * word_error:g}"
        )
