from .bcf_store_file import BCFStoreFile, write_bcf_store
from .read_transcriptions import read_transcriptions

__all__ = ["BCFStoreFile", "write_bcf_store", "read_transcriptions"]
