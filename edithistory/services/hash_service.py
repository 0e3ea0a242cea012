"""SHA-256 content digests used for integrity checks and cache validity."""

from __future__ import annotations

import hashlib
import re

_HASH_FORMAT = re.compile(r"^[a-f0-9]{64}$", re.IGNORECASE)


class HashService:
    ALGORITHM = "sha256"

    @staticmethod
    def compute_hash(content: str) -> str:
        return hashlib.sha256(content.encode("utf-8")).hexdigest()

    @classmethod
    def verify_integrity(cls, content: str, expected_hash: str) -> bool:
        """An empty *expected_hash* means "nothing recorded" and passes."""
        if not expected_hash:
            return True
        if len(expected_hash) != 64:
            return False
        return cls.compute_hash(content) == expected_hash

    @classmethod
    def compute_hash_with_salt(cls, content: str, salt: str) -> str:
        return cls.compute_hash(content + salt)

    @classmethod
    def verify_integrity_with_salt(cls, content: str, expected_hash: str, salt: str) -> bool:
        return cls.compute_hash_with_salt(content, salt) == expected_hash

    @staticmethod
    def validate_hash_format(value: str) -> bool:
        return bool(_HASH_FORMAT.match(value))

    @classmethod
    def compute_batch_hashes(cls, contents: list[str]) -> list[str]:
        return [cls.compute_hash(c) for c in contents]
