"""Tests for the lstmocr.data package.

Test classes:
    TestBCFStoreFile       -- reading and writing BCF stores, index validation
    TestReadTranscriptions -- one transcription per line, newline stripping
    TestUnicharEncoder     -- label space, unencodable text, null interleaving
    TestDocumentCache      -- serial-index wrap-around and empty caches
    TestLoadDocuments      -- PNG line images + transcriptions into samples
"""

import copy
from io import BytesIO

import numpy as np
import torch
import pytest
from PIL import Image

from lstmocr.data import NULL_LABEL, DocumentCache, TrainingSample, UnicharEncoder
from lstmocr.data.bcf import BCFStoreFile, write_bcf_store, read_transcriptions


def _png_bytes(width: int, height: int, value: int = 128) -> bytes:
    image = Image.fromarray(np.full((height, width), value, dtype=np.uint8))
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def _sample(text: str, width: int = 6) -> TrainingSample:
    return TrainingSample(image=torch.zeros(8, width), transcription=text)


class TestBCFStoreFile:
    def test_roundtrip(self, tmp_path):
        path = str(tmp_path / "store.bcf")
        blobs = [b"first", b"", b"third entry"]
        write_bcf_store(path, blobs)
        store = BCFStoreFile(path)
        assert store.size() == 3
        assert [store.get(i) for i in range(3)] == blobs
        store.close()

    def test_out_of_range_index_raises(self, tmp_path):
        path = str(tmp_path / "store.bcf")
        write_bcf_store(path, [b"a"])
        store = BCFStoreFile(path)
        with pytest.raises(IndexError):
            store.get(1)
        with pytest.raises(IndexError):
            store.get(-1)

    def test_truncated_index_raises(self, tmp_path):
        path = tmp_path / "bad.bcf"
        path.write_bytes(np.array([5], dtype=np.uint64).tobytes() + b"\x00" * 8)
        with pytest.raises(ValueError, match="truncated"):
            BCFStoreFile(str(path))

    def test_deepcopy_has_own_handle(self, tmp_path):
        path = str(tmp_path / "store.bcf")
        write_bcf_store(path, [b"x", b"yy"])
        store = BCFStoreFile(path)
        clone = copy.deepcopy(store)
        store.close()
        assert clone.get(1) == b"yy"


class TestReadTranscriptions:
    def test_strips_newlines_only(self, tmp_path):
        path = tmp_path / "truth.txt"
        path.write_bytes("ab c\r\n cab \n".encode("utf-8"))
        assert read_transcriptions(str(path)) == ["ab c", " cab "]


class TestUnicharEncoder:
    def test_null_is_class_zero(self):
        encoder = UnicharEncoder("abc")
        assert encoder.size == 4
        assert encoder.encode("cab") == [3, 1, 2]
        assert NULL_LABEL not in encoder.encode("abc")

    def test_unencodable_returns_none(self):
        assert UnicharEncoder("abc").encode("abd") is None

    def test_interleave_nulls(self):
        assert UnicharEncoder("ab").encode("ba", interleave_nulls=True) == [2, 0, 1, 0]

    def test_decode_drops_nulls(self):
        assert UnicharEncoder("ab").decode([0, 1, 0, 2, 0]) == "ab"

    def test_duplicates_ignored(self):
        assert UnicharEncoder("abca").to_list() == ["a", "b", "c"]

    def test_list_roundtrip(self):
        encoder = UnicharEncoder("xy z")
        assert UnicharEncoder.from_list(encoder.to_list()) == encoder

    def test_empty_alphabet_raises(self):
        with pytest.raises(ValueError):
            UnicharEncoder("")


class TestDocumentCache:
    def test_serial_index_wraps(self):
        samples = [_sample("a"), _sample("b")]
        cache = DocumentCache(samples)
        assert cache.get_page_by_serial(0) is samples[0]
        assert cache.get_page_by_serial(3) is samples[1]
        assert cache.get_page_by_serial(1000) is samples[0]

    def test_empty_cache_returns_none(self):
        assert DocumentCache().get_page_by_serial(0) is None

    def test_missing_page_returns_none(self):
        cache = DocumentCache()
        cache.add_sample(None)
        cache.add_sample(_sample("a"))
        assert cache.get_page_by_serial(0) is None
        assert cache.total_pages() == 2

    def test_boxed_sample(self):
        assert not _sample("ab").is_boxed
        boxed = TrainingSample(torch.zeros(8, 6), "ab", boxes=((0, 2), (3, 5)))
        assert boxed.is_boxed
        assert boxed.width == 6


class TestLoadDocuments:
    def _write(self, tmp_path, blobs, lines):
        bcf_path = str(tmp_path / "lines.bcf")
        write_bcf_store(bcf_path, blobs)
        truth_path = tmp_path / "lines.txt"
        truth_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return bcf_path, str(truth_path)

    def test_loads_normalized_images(self, tmp_path):
        bcf_path, truth_path = self._write(
            tmp_path, [_png_bytes(10, 8, 255), _png_bytes(12, 8, 0)], ["ab", "ba"]
        )
        cache = DocumentCache()
        assert cache.load_documents(bcf_path, truth_path)
        assert len(cache) == 2
        first = cache.get_page_by_serial(0)
        assert first.transcription == "ab"
        assert first.image.shape == (8, 10)
        assert torch.allclose(first.image, torch.ones(8, 10))
        assert cache.get_page_by_serial(1).page == 1

    def test_minus_one_to_one_normalization(self, tmp_path):
        bcf_path, truth_path = self._write(tmp_path, [_png_bytes(10, 8, 0)], ["a"])
        cache = DocumentCache()
        cache.load_documents(bcf_path, truth_path, image_normalization="-1to1")
        assert torch.allclose(cache.get_page_by_serial(0).image, -torch.ones(8, 10))

    def test_unknown_normalization_raises(self, tmp_path):
        bcf_path, truth_path = self._write(tmp_path, [_png_bytes(10, 8)], ["a"])
        with pytest.raises(ValueError, match="normalization"):
            DocumentCache().load_documents(bcf_path, truth_path, image_normalization="zscore")

    def test_unreadable_image_stored_as_none(self, tmp_path):
        bcf_path, truth_path = self._write(
            tmp_path, [b"not a png", _png_bytes(10, 8)], ["a", "b"]
        )
        cache = DocumentCache()
        assert cache.load_documents(bcf_path, truth_path)
        assert cache.get_page_by_serial(0) is None
        assert cache.get_page_by_serial(1).transcription == "b"

    def test_nothing_loaded_returns_false(self, tmp_path):
        bcf_path, truth_path = self._write(tmp_path, [b"junk"], ["a"])
        assert not DocumentCache().load_documents(bcf_path, truth_path)
