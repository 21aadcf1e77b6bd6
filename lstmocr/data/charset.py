"""Mapping between text and the recognizer's output classes."""

from typing import Iterable

NULL_LABEL = 0


class UnicharEncoder:
    """Encodes transcriptions into class labels and decodes them back.

    Class ``0`` is reserved for the null class (the CTC blank, and the padding
    class of exact alignment). Every character of ``alphabet`` gets its own
    class, numbered from 1 in the order given. Duplicate characters in the
    alphabet are ignored after their first occurrence.

    Attributes:
        characters: The alphabet, in class order (class ``i + 1`` is
            ``characters[i]``).
    """

    def __init__(self, alphabet: Iterable[str]):
        self.characters: list[str] = []
        self._ids: dict[str, int] = {}
        for ch in alphabet:
            if len(ch) != 1:
                raise ValueError(f"Alphabet entries must be single characters, got {ch!r}")
            if ch not in self._ids:
                self._ids[ch] = len(self.characters) + 1
                self.characters.append(ch)
        if not self.characters:
            raise ValueError("The alphabet must contain at least one character.")

    @property
    def size(self) -> int:
        """Number of output classes, including the null class."""
        return len(self.characters) + 1

    @property
    def null_label(self) -> int:
        return NULL_LABEL

    def encode(self, text: str, interleave_nulls: bool = False) -> list[int] | None:
        """Converts ``text`` to class labels.

        Args:
            text: The transcription to encode.
            interleave_nulls: Append a null label after every character, which
                is how CTC truth is laid out before alignment.

        Returns:
            The labels, or ``None`` if any character is outside the alphabet.
        """
        labels = []
        for ch in text:
            label = self._ids.get(ch)
            if label is None:
                return None
            labels.append(label)
            if interleave_nulls:
                labels.append(NULL_LABEL)
        return labels

    def decode(self, labels: Iterable[int]) -> str:
        """Converts labels back to text, dropping null and unknown labels."""
        return "".join(
            self.characters[label - 1] for label in labels if 0 < label <= len(self.characters)
        )

    def to_list(self) -> list[str]:
        return list(self.characters)

    @classmethod
    def from_list(cls, characters: list[str]) -> "UnicharEncoder":
        return cls(characters)

    def __eq__(self, other) -> bool:
        if not isinstance(other, UnicharEncoder):
            return NotImplemented
        return self.characters == other.characters

    def __repr__(self) -> str:
        return f"UnicharEncoder({''.join(self.characters)!r})"
