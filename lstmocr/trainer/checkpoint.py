"""Checkpoint serialization for trainers and recognizers.

A trainer checkpoint is a short header (magic + format version) followed by
a ``torch.save`` payload of plain containers and tensors, so it can always be
read back with ``weights_only=True``. Three fidelity levels are supported:

``LIGHT``
    State, network and optimizer only: no ``best_trainer``, no sub-trainer,
    no saved best/worst recognizers. Cheap enough to take often, and what a
    winning sub-trainer hands over to the trainer it replaces.
``NO_BEST_TRAINER``
    Everything except ``best_trainer``. Used when the dump *is* the new
    best trainer, so best trainers never nest inside each other.
``FULL``
    Everything, including the serialized ``best_trainer``. Used for durable
    checkpoints that must resume exactly, best point included.
"""

import io
import struct
import logging
from enum import Enum
from typing import Any, Mapping

import torch

from lstmocr.models.recognizer import LineRecognizer

from .errors import ErrorTypes

# A logger for this file
logger = logging.getLogger(__name__)

MAGIC = b"LSTMTRN\0"
RECOGNIZER_MAGIC = b"LSTMREC\0"
FORMAT_VERSION = 1
_HEADER = struct.Struct("<8sI")


class SerializeAmount(Enum):
    """Amount of trainer data to serialize."""

    LIGHT = "light"
    NO_BEST_TRAINER = "no_best_trainer"
    FULL = "full"


class CheckpointCodec:
    """Writes and reads trainer checkpoints and recognizer dumps.

    The codec never touches the filesystem; it only converts between trainers
    and bytes. Reading never raises on bad input: it logs why and returns
    ``None`` so the caller can treat it as a recoverable load failure.
    """

    def __init__(self, version: int = FORMAT_VERSION):
        self.version = version

    # -------------------------------------------------------------------------
    # Trainer dumps
    # -------------------------------------------------------------------------

    def serialize(self, amount: SerializeAmount, trainer: Any) -> bytes:
        """Serializes ``trainer`` (an :class:`~lstmocr.trainer.LSTMTrainer`) at ``amount``."""
        state = trainer.state.to_dict()
        if amount != SerializeAmount.FULL:
            state["best_trainer"] = b""
        if amount == SerializeAmount.LIGHT:
            state["best_model_data"] = b""
            state["worst_model_data"] = b""
        sub_trainer_data = None
        if amount != SerializeAmount.LIGHT and trainer.sub_trainer is not None:
            sub_trainer_data = self.serialize(SerializeAmount.NO_BEST_TRAINER, trainer.sub_trainer)
        payload = {
            "amount": amount.value,
            "state": state,
            "recognizer": {
                "hparams": trainer.recognizer.hparams(),
                "state_dict": trainer.recognizer.state_dict(),
            },
            "optimizer": trainer.optimizer.state_dict(),
            "layer_learning_rates": trainer.layer_learning_rates(),
            "sub_trainer": sub_trainer_data,
            "subtrainer": trainer.subtrainer.state_dict(),
        }
        return self._pack(MAGIC, payload)

    def deserialize(self, data: bytes) -> dict | None:
        """Reads a trainer dump back into its payload dict, or ``None`` on failure."""
        payload = self._unpack(MAGIC, data)
        if payload is None:
            return None
        required = ("amount", "state", "recognizer", "optimizer", "layer_learning_rates", "subtrainer")
        for key in required:
            if key not in payload:
                logger.warning(f"Checkpoint is missing '{key}'")
                return None
        return payload

    # -------------------------------------------------------------------------
    # Recognizer dumps (model data handed to the tester)
    # -------------------------------------------------------------------------

    def serialize_recognizer(self, recognizer: LineRecognizer) -> bytes:
        payload = {"hparams": recognizer.hparams(), "state_dict": recognizer.state_dict()}
        return self._pack(RECOGNIZER_MAGIC, payload)

    def deserialize_recognizer(self, data: bytes) -> LineRecognizer | None:
        payload = self._unpack(RECOGNIZER_MAGIC, data)
        if payload is None:
            return None
        try:
            recognizer = LineRecognizer.from_hparams(payload["hparams"])
            recognizer.load_state_dict(payload["state_dict"])
        except (AttributeError, IndexError, KeyError, TypeError, ValueError, RuntimeError) as e:
            logger.warning(f"Recognizer dump does not match its network: {e}")
            return None
        return recognizer

    # -------------------------------------------------------------------------
    # Naming
    # -------------------------------------------------------------------------

    @staticmethod
    def canonical_filename(
        model_base: str,
        iteration: int,
        error_rates: Mapping[str, float],
    ) -> str:
        """Name for a best-model dump, e.g. ``"eng_001.250_4500.checkpoint"``.

        The headline error is zero-padded in percent so that dumps of the same
        model sort by quality, and the iteration keeps equal error rates from
        overwriting each other.
        """
        char_error = error_rates.get(ErrorTypes.CHAR_ERROR.value, 1.0)
        return f"{model_base}_{100.0 * char_error:07.3f}_{iteration}.checkpoint"

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _pack(self, magic: bytes, payload: dict) -> bytes:
        buffer = io.BytesIO()
        buffer.write(_HEADER.pack(magic, self.version))
        torch.save(payload, buffer)
        return buffer.getvalue()

    def _unpack(self, magic: bytes, data: bytes) -> dict | None:
        if len(data) < _HEADER.size:
            logger.warning(f"Checkpoint of {len(data)} bytes is too short")
            return None
        found_magic, version = _HEADER.unpack_from(data)
        if found_magic != magic:
            logger.warning(f"Not a checkpoint of the expected kind (magic {found_magic!r})")
            return None
        if version != self.version:
            logger.warning(f"Checkpoint format version {version} != supported {self.version}")
            return None
        try:
            # Empty blobs pickle as a call to ``bytes``
            with torch.serialization.safe_globals([bytes]):
                payload = torch.load(
                    io.BytesIO(data[_HEADER.size :]), map_location="cpu", weights_only=True
                )
        except Exception as e:
            # Damaged pickles fail with almost any exception type
            logger.warning(f"Truncated or corrupt checkpoint: {type(e).__name__}: {e}")
            return None
        if not isinstance(payload, dict):
            logger.warning("Checkpoint payload is not a dict")
            return None
        return payload
