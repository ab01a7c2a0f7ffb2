"""
Secret vault.

Holds swap secrets inside the depositor's trust boundary: a private
directory with one owner-only file per swap, kept apart from the swap
state store (which may be exported or shared). A secret leaves the vault
only to be revealed on-chain and is discarded afterwards.
"""

import logging
import os
import re
from pathlib import Path
from typing import Tuple, Union

from .core import generate_secret
from .errors import DuplicateSwap, InvalidParameters, SwapNotFound

log = logging.getLogger(__name__)

_SAFE_ID = re.compile(r"^[A-Za-z0-9_\-]+$")


class SecretVault:
    """File-backed secret storage, one 0600 file per swap id."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path).expanduser()
        self.path.mkdir(parents=True, exist_ok=True)
        os.chmod(self.path, 0o700)

    def _file(self, swap_id: str) -> Path:
        if not _SAFE_ID.match(swap_id):
            raise InvalidParameters(f"Unsafe swap id for vault: {swap_id!r}")
        return self.path / f"{swap_id}.secret"

    def create(self, swap_id: str) -> Tuple[bytes, bytes]:
        """
        Generate and store a fresh secret for a swap.

        Returns:
            (secret, secret_hash)
        """
        secret, secret_hash = generate_secret()
        target = self._file(swap_id)
        try:
            fd = os.open(target, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        except FileExistsError:
            raise DuplicateSwap(f"Secret already exists for swap {swap_id}", swap_id=swap_id)
        with os.fdopen(fd, "w") as f:
            f.write(secret.hex())
            f.flush()
            os.fsync(f.fileno())
        log.info(f"Stored secret for swap {swap_id[:18]} (hash {secret_hash.hex()[:16]}...)")
        return secret, secret_hash

    def load(self, swap_id: str) -> bytes:
        try:
            return bytes.fromhex(self._file(swap_id).read_text().strip())
        except FileNotFoundError:
            raise SwapNotFound(f"No secret held for swap {swap_id}", swap_id=swap_id)

    def has(self, swap_id: str) -> bool:
        return self._file(swap_id).exists()

    def discard(self, swap_id: str):
        """Forget a secret once it is public on-chain."""
        try:
            self._file(swap_id).unlink()
            log.info(f"Discarded secret for swap {swap_id[:18]}")
        except FileNotFoundError:
            pass
