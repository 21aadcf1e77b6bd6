import logging

import torch
import torch.nn as nn
import torch.nn.functional as F  # noqa: N812

from lstmocr.data.charset import NULL_LABEL, UnicharEncoder

# A logger for this file
logger = logging.getLogger(__name__)


class LineRecognizer(nn.Module):
    """Recurrent text-line recognizer.

    Reads a greyscale line image column by column: each pixel column is one
    timestep whose features are the column's pixels. The columns pass through
    a stack of LSTM layers and a linear output layer that scores every class
    of the :class:`~lstmocr.data.charset.UnicharEncoder`, class 0 being the
    null class.

    The trainer drives the network through two operations: :meth:`predict`
    (forward inference to per-timestep class probabilities) and a backward
    pass that pushes ``outputs - targets`` into the logits, which is the
    softmax cross-entropy gradient for a target distribution.

    Each LSTM layer and the output layer is a named "layer" so that learning
    rates can be set per layer.

    Attributes:
        encoder: The label space of the output layer.
        input_height: Height every line image is resized to before reading.
        hidden_size: Width of each LSTM layer (per direction).
        num_layers: Number of stacked LSTM layers.
        bidirectional: Whether each LSTM layer reads in both directions.
    """

    def __init__(
        self,
        encoder: UnicharEncoder,
        input_height: int = 32,
        hidden_size: int = 96,
        num_layers: int = 2,
        bidirectional: bool = True,
    ):
        """Builds the layer stack.

        Args:
            encoder: Label space; ``encoder.size`` is the number of outputs.
            input_height: Image height the network reads. Taller or shorter
                images are rescaled, keeping their width.
            hidden_size: Number of LSTM cells per direction in each layer.
            num_layers: Number of LSTM layers, at least 1.
            bidirectional: Use bidirectional LSTM layers.

        Raises:
            ValueError: If any size is not positive.
        """
        super().__init__()
        if input_height <= 0 or hidden_size <= 0 or num_layers <= 0:
            raise ValueError("input_height, hidden_size and num_layers must all be positive.")
        self.encoder = encoder
        self.input_height = input_height
        self.hidden_size = hidden_size
        self.num_layers = num_layers
        self.bidirectional = bidirectional
        self._layer_names: list[str] = []
        in_features = input_height
        for i in range(num_layers):
            name = f"lstm{i}"
            self.add_module(
                name,
                nn.LSTM(in_features, hidden_size, batch_first=True, bidirectional=bidirectional),
            )
            self._layer_names.append(name)
            in_features = hidden_size * (2 if bidirectional else 1)
        self.output = nn.Linear(in_features, encoder.size)
        self._layer_names.append("output")

    @property
    def num_classes(self) -> int:
        return self.encoder.size

    @property
    def null_label(self) -> int:
        return NULL_LABEL

    def forward(self, image: torch.Tensor) -> torch.Tensor:
        """Runs the network over one line image.

        Args:
            image: Tensor of shape ``(H, W)``.

        Returns:
            Logits of shape ``(W, num_classes)``, one row per column.
        """
        x = self._columns(image)
        for name in self._layer_names[:-1]:
            x, _ = getattr(self, name)(x)
        return self.output(x)[0]

    def predict(self, image: torch.Tensor) -> torch.Tensor:
        """Returns per-timestep class probabilities of shape ``(W, num_classes)``."""
        return F.softmax(self(image), dim=-1)

    def layer_names(self) -> list[str]:
        """Names of the trainable layers, in the order they are applied."""
        return list(self._layer_names)

    def layer_parameters(self, name: str) -> list[nn.Parameter]:
        if name not in self._layer_names:
            raise ValueError(f"Unknown layer '{name}'. Valid options: {self._layer_names}")
        return list(getattr(self, name).parameters())

    def num_weights(self, name: str) -> int:
        return sum(p.numel() for p in self.layer_parameters(name) if p.requires_grad)

    def labels_from_outputs(self, outputs: torch.Tensor, alignment: str) -> list[int]:
        """Reads the best label sequence from network outputs or targets.

        Args:
            outputs: ``(T, num_classes)`` activations.
            alignment: ``"ctc"`` collapses runs of the same label before
                dropping nulls; ``"exact"`` keeps every non-null timestep.

        Returns:
            The decoded labels, without nulls.
        """
        best = outputs.argmax(dim=-1).tolist()
        labels = []
        prev = None
        for label in best:
            if alignment == "ctc" and label == prev:
                continue
            prev = label
            if label != NULL_LABEL:
                labels.append(label)
        return labels

    def hparams(self) -> dict:
        """Constructor arguments, in a form that survives serialization."""
        return {
            "alphabet": self.encoder.to_list(),
            "input_height": self.input_height,
            "hidden_size": self.hidden_size,
            "num_layers": self.num_layers,
            "bidirectional": self.bidirectional,
        }

    @classmethod
    def from_hparams(cls, hparams: dict) -> "LineRecognizer":
        kwargs = dict(hparams)
        encoder = UnicharEncoder.from_list(kwargs.pop("alphabet"))
        return cls(encoder, **kwargs)

    def _columns(self, image: torch.Tensor) -> torch.Tensor:
        """Turns an ``(H, W)`` image into a ``(1, W, input_height)`` sequence."""
        if image.dim() != 2:
            raise ValueError(f"Expected an (H, W) image, got shape {tuple(image.shape)}")
        image = image.to(self.output.weight.device, self.output.weight.dtype)
        if image.shape[0] != self.input_height:
            image = F.interpolate(
                image[None, None],
                size=(self.input_height, image.shape[1]),
                mode="bilinear",
                align_corners=False,
            )[0, 0]
        return image.t().unsqueeze(0)
