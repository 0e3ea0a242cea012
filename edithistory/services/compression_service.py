"""
Zstandard compression for stored payloads.

Empty text compresses to empty bytes and back, so a blank snapshot costs
nothing on disk. Output is deterministic for a given input and level.
"""

from __future__ import annotations

import threading

import zstandard as zstd

from edithistory.core.errors import CompressionError


class CompressionService:
    DEFAULT_LEVEL = 9

    def __init__(self, level: int = DEFAULT_LEVEL) -> None:
        self.level = level
        # zstd contexts must not be used from two threads at once.
        self._lock = threading.Lock()
        self._cctx = zstd.ZstdCompressor(level=level)
        self._dctx = zstd.ZstdDecompressor()

    def compress(self, data: bytes) -> bytes:
        if not data:
            return b""
        try:
            with self._lock:
                return self._cctx.compress(data)
        except zstd.ZstdError as exc:
            raise CompressionError(f"Compression failed: {exc}") from exc

    def decompress(self, data: bytes) -> bytes:
        if not data:
            return b""
        try:
            with self._lock:
                return self._dctx.decompress(data)
        except zstd.ZstdError as exc:
            raise CompressionError(
                f"Decompression failed: {exc}", {"compressed_size": len(data)}
            ) from exc

    def compress_content(self, content: str) -> bytes:
        return self.compress(content.encode("utf-8"))

    def decompress_content(self, data: bytes) -> str:
        raw = self.decompress(data)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise CompressionError(
                f"Decompressed payload is not valid UTF-8: {exc.reason}",
                {"compressed_size": len(data)},
            ) from exc

    @staticmethod
    def get_uncompressed_size(content: str) -> int:
        return len(content.encode("utf-8"))
