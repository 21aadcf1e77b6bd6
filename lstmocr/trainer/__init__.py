"""LSTM line-recognizer trainer package.

Provides an incremental, checkpointed trainer built on Lightning Fabric:

- :class:`LSTMTrainer`: trains a :class:`~lstmocr.models.LineRecognizer`
  one text line at a time, tracking rolling error rates, best and worst
  checkpoints, divergence rollback and a sub-trainer that races the main
  trainer after a stall.
- :class:`CheckpointCodec`: converts trainers to and from bytes at three
  fidelity levels (:class:`SerializeAmount`).
- :class:`LSTMTester`: scores recognizer dumps on held-out lines; pass it
  to :meth:`LSTMTrainer.fit` as the test callback.

Typical workflow::

    from lstmocr.data import DocumentCache, UnicharEncoder
    from lstmocr.models import LineRecognizer
    from lstmocr.trainer import LSTMTester, LSTMTrainer, TrainerConfig

    train_data = DocumentCache()
    train_data.load_documents("data/train.bcf", "data/train.txt")
    eval_data = DocumentCache()
    eval_data.load_documents("data/eval.bcf", "data/eval.txt")

    config = TrainerConfig(
        model_base="checkpoints/eng",
        checkpoint_name="checkpoints/eng_checkpoint",
        max_iterations=100000,
    )
    recognizer = LineRecognizer(UnicharEncoder("abcdefghijklmnopqrstuvwxyz "))
    trainer = LSTMTrainer(config, recognizer, training_data=train_data)

    # Resume if a checkpoint exists, then train
    trainer.try_loading_checkpoint(config.checkpoint_name)
    trainer.fit(tester=LSTMTester(eval_data))
"""

from .debug import DebugSink, LoggingDebugSink
from .state import TrainerState
from .config import TrainerConfig
from .errors import ErrorTypes, ErrorBuffer, ErrorTracker
from .fileio import MemoryFileStore, read_file, write_file
from .tester import LSTMTester
from .targets import Trainability, TargetBuilder
from .checkpoint import CheckpointCodec, SerializeAmount
from .subtrainer import SubtrainerStatus, SubTrainerResult, SubtrainerController
from .lstm_trainer import LSTMTrainer, TestCallback

__all__ = [
    "LSTMTrainer",
    "TrainerConfig",
    "TrainerState",
    "TestCallback",
    "LSTMTester",
    "CheckpointCodec",
    "SerializeAmount",
    "ErrorTypes",
    "ErrorBuffer",
    "ErrorTracker",
    "Trainability",
    "TargetBuilder",
    "SubtrainerController",
    "SubTrainerResult",
    "SubtrainerStatus",
    "DebugSink",
    "LoggingDebugSink",
    "MemoryFileStore",
    "read_file",
    "write_file",
]
