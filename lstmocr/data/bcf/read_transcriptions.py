def read_transcriptions(transcription_file: str) -> list[str]:
    """Reads the ground-truth transcriptions that accompany a BCF image store.

    The file is UTF-8 text with one transcription per line, in the same order
    as the images in the store. Trailing newlines (``\\n`` or ``\\r\\n``) are
    stripped; all other whitespace is part of the transcription.

    Args:
        transcription_file: Path to the transcription file.

    Returns:
        One string per line of the file.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    with open(transcription_file, "r", encoding="utf-8") as f:
        return [line.rstrip("\r\n") for line in f]
