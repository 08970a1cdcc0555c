"""
DriftGuard - Content hashing.

SHA256 over file bytes, streamed in chunks so large files never sit in memory.
"""

import hashlib
import hmac
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class HashEngine:
    """Computes and verifies SHA256 content hashes."""

    ALGORITHM = "sha256"
    CHUNK_SIZE = 65536

    def __init__(self, chunk_size: int = CHUNK_SIZE) -> None:
        self.chunk_size = chunk_size

    def hash_bytes(self, data: bytes) -> str:
        return hashlib.new(self.ALGORITHM, data).hexdigest()

    def compute_file_hash(self, file_path: Path) -> Optional[str]:
        """
        Hash a file's content.

        Returns:
            Hex digest, or None if the file vanished or could not be read.
            Read failures are logged, never raised.
        """
        try:
            hasher = hashlib.new(self.ALGORITHM)
            with open(file_path, "rb") as f:
                while chunk := f.read(self.chunk_size):
                    hasher.update(chunk)
            return hasher.hexdigest()
        except OSError as e:
            logger.warning("Failed to hash %s: %s", file_path, e)
            return None

    def verify(self, file_path: Path, expected: str) -> bool:
        current = self.compute_file_hash(file_path)
        if current is None:
            return False
        return hmac.compare_digest(current, expected)
