import numpy as np


class BCFStoreFile:
    """A reader for Binary Concatenated File (BCF) store files.

    Training line images are kept in BCF stores: a single binary file holding
    many concatenated PNG files, with an index of sizes at the front so any
    entry can be fetched without scanning the ones before it.

    The BCF format stores:
        - A header containing the number of concatenated files (8 bytes, uint64)
        - An array of file sizes for each concatenated file (8 bytes each, uint64)
        - The actual file contents concatenated sequentially

    Copies (``copy.copy`` / ``copy.deepcopy``) reopen the underlying file so
    each copy owns an independent file handle.

    Attributes:
        _filename: The path to the BCF store file.
        _file: The open file handle for reading binary data.
        _offsets: NumPy array containing cumulative byte offsets for each file.
    """

    def __init__(self, filename: str) -> None:
        """Opens the store and loads its index.

        Args:
            filename: The path to the BCF store file to open.

        Raises:
            FileNotFoundError: If the specified file does not exist.
            ValueError: If the header promises more entries than the file holds.
        """
        self._filename = filename
        self._file = open(filename, "rb")
        header = self._file.read(8)
        if len(header) < 8:
            self._file.close()
            raise ValueError(f"{filename} is too short to be a BCF store.")
        size = int(np.frombuffer(header, dtype=np.uint64)[0])
        raw_sizes = self._file.read(8 * size)
        if len(raw_sizes) < 8 * size:
            self._file.close()
            raise ValueError(f"{filename} has a truncated BCF index.")
        file_sizes = np.frombuffer(raw_sizes, dtype=np.uint64)
        self._offsets = np.append(np.uint64(0), np.add.accumulate(file_sizes))

    def __del__(self):
        file = getattr(self, "_file", None)
        if file is not None:
            file.close()

    def __copy__(self):
        """Returns a new reader on the same store with its own file handle."""
        cls = self.__class__
        result = cls.__new__(cls)
        result._filename = self._filename
        result._file = open(self._filename, "rb")
        result._offsets = self._offsets

        return result

    def __deepcopy__(self, memo):
        cls = self.__class__
        result = cls.__new__(cls)
        memo[id(self)] = result
        result._filename = self._filename
        result._file = open(self._filename, "rb")
        result._offsets = self._offsets

        return result

    def get(self, i: int) -> bytes:
        """Retrieves the contents of one entry of the store.

        Args:
            i: The zero-based index of the entry. Must be in ``[0, size())``.

        Returns:
            The raw bytes of the entry.

        Raises:
            IndexError: If the index is out of bounds.
        """
        if i < 0 or i >= self.size():
            raise IndexError(f"BCF index {i} out of range for {self.size()} entries.")
        self._file.seek(int(len(self._offsets) * 8 + self._offsets[i]))
        return self._file.read(int(self._offsets[i + 1] - self._offsets[i]))

    def size(self) -> int:
        """Returns the number of entries in the store."""
        return len(self._offsets) - 1

    def close(self) -> None:
        if not self._file.closed:
            self._file.close()


def write_bcf_store(filename: str, blobs: list[bytes]) -> None:
    """Writes ``blobs`` to ``filename`` in the layout read by :class:`BCFStoreFile`.

    Args:
        filename: Destination path. Overwritten if it exists.
        blobs: Entry payloads, stored in order.
    """
    sizes = np.array([len(blob) for blob in blobs], dtype=np.uint64)
    with open(filename, "wb") as f:
        f.write(np.array([len(blobs)], dtype=np.uint64).tobytes())
        f.write(sizes.tobytes())
        for blob in blobs:
            f.write(blob)
