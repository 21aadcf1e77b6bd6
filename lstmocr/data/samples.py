import logging
from io import BytesIO
from dataclasses import dataclass

import numpy as np
import torch

# Increase the maximum text chunk size for PNG images
from PIL import Image, ImageFile, PngImagePlugin

from .bcf import BCFStoreFile, read_transcriptions

PngImagePlugin.MAX_TEXT_CHUNK = 1048576 * 10

# Load truncated images
ImageFile.LOAD_TRUNCATED_IMAGES = True

# A logger for this file
logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TrainingSample:
    """One text-line image with its ground truth.

    Samples are owned by a :class:`DocumentCache`; trainers borrow them by
    serial index and never modify them.

    Attributes:
        image: Float tensor of shape ``(H, W)`` holding the normalized line image.
        transcription: Ground-truth text of the line.
        boxes: Optional precise per-character truth: one ``(x_start, x_end)``
            pixel span per character of ``transcription``. Samples with boxes
            are "boxed".
        document: Name of the document the line came from, for logging.
        page: Index of the line within its document.
    """

    image: torch.Tensor
    transcription: str
    boxes: tuple[tuple[int, int], ...] | None = None
    document: str = ""
    page: int = 0

    @property
    def is_boxed(self) -> bool:
        return self.boxes is not None and len(self.boxes) > 0

    @property
    def width(self) -> int:
        return int(self.image.shape[-1])


class DocumentCache:
    """Serial-indexed store of training samples.

    This is the only source of training data the trainer uses. Serial indices
    wrap around the number of pages, so a trainer can keep incrementing its
    ``sample_iteration`` forever and cycle through the data.

    Pages may be stored as ``None`` (for example an image that failed to
    decode); fetching one returns ``None`` just like an empty cache does.
    """

    def __init__(self, samples: list[TrainingSample | None] | None = None):
        self._pages: list[TrainingSample | None] = list(samples) if samples else []

    def __len__(self) -> int:
        return len(self._pages)

    def total_pages(self) -> int:
        return len(self._pages)

    def clear(self) -> None:
        self._pages = []

    def add_sample(self, sample: TrainingSample | None) -> None:
        self._pages.append(sample)

    def get_page_by_serial(self, serial: int) -> TrainingSample | None:
        """Returns the page at ``serial`` modulo the number of pages, if any."""
        if not self._pages:
            return None
        return self._pages[serial % len(self._pages)]

    def load_documents(
        self,
        bcf_store_file: str,
        transcription_file: str,
        image_normalization: str = "0to1",
    ) -> bool:
        """Appends every line of a BCF image store to the cache.

        Args:
            bcf_store_file: BCF store of PNG line images.
            transcription_file: UTF-8 file with one transcription per image.
            image_normalization: Either ``"0to1"`` or ``"-1to1"``.

        Returns:
            ``True`` if at least one page was loaded.

        Raises:
            ValueError: If ``image_normalization`` is not a known scheme.
        """
        if image_normalization not in ["0to1", "-1to1"]:
            raise ValueError("The image normalization type must be either '0to1' or '-1to1'.")
        bcf_store = BCFStoreFile(bcf_store_file)
        transcriptions = read_transcriptions(transcription_file)
        if len(transcriptions) != bcf_store.size():
            logger.warning(
                f"{transcription_file} has {len(transcriptions)} lines for "
                f"{bcf_store.size()} images; extra entries are ignored"
            )
        num_loaded = 0
        for index in range(min(bcf_store.size(), len(transcriptions))):
            image = _decode_image(bcf_store.get(index), image_normalization)
            if image is None:
                logger.warning(f"Unreadable image {index} in {bcf_store_file}")
                self._pages.append(None)
                continue
            self._pages.append(
                TrainingSample(
                    image=image,
                    transcription=transcriptions[index],
                    document=bcf_store_file,
                    page=index,
                )
            )
            num_loaded += 1
        bcf_store.close()
        logger.info(f"Loaded {num_loaded} pages from {bcf_store_file}")
        return num_loaded > 0


def _decode_image(data: bytes, image_normalization: str) -> torch.Tensor | None:
    """Decodes PNG bytes into a normalized ``(H, W)`` float tensor."""
    try:
        image = Image.open(BytesIO(data)).convert("L")
    except (OSError, ValueError):
        return None
    # Lines with a zero or one pixel dimension cannot be recognized
    if 0 in image.size or 1 in image.size:
        return None
    image = torch.from_numpy(np.array(image, dtype=np.uint8)).float()
    if image_normalization == "0to1":
        image = image / 255.0
    else:
        image = (image / 127.5) - 1.0

    return image
