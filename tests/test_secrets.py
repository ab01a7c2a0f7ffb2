"""
Secret generation and vault tests.
"""

import os
import stat
import tempfile
import unittest

from swapper.core import generate_secret, generate_swap_id, sha256, verify_preimage
from swapper.errors import DuplicateSwap, InvalidParameters, SwapNotFound
from swapper.vault import SecretVault


class TestSecrets(unittest.TestCase):

    def test_secret_shape(self):
        secret, secret_hash = generate_secret()
        self.assertEqual(len(secret), 32)
        self.assertEqual(secret_hash, sha256(secret))

    def test_secrets_are_unique(self):
        """Fresh randomness on every call."""
        seen = {generate_secret()[0] for _ in range(200)}
        self.assertEqual(len(seen), 200)

    def test_verify_preimage(self):
        secret, secret_hash = generate_secret()
        self.assertTrue(verify_preimage(secret, secret_hash))
        self.assertTrue(verify_preimage(secret.hex(), "0x" + secret_hash.hex()))
        self.assertFalse(verify_preimage(b"\x00" * 32, secret_hash))
        self.assertFalse(verify_preimage("not hex", secret_hash))

    def test_swap_id_format(self):
        swap_id = generate_swap_id("alice", now_ms=1_700_000_000_000)
        self.assertTrue(swap_id.startswith("0x"))
        self.assertEqual(len(swap_id), 66)
        self.assertNotEqual(swap_id, generate_swap_id("alice", now_ms=1_700_000_000_000))


class TestSecretVault(unittest.TestCase):

    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.vault = SecretVault(os.path.join(self.tmp.name, "secrets"))

    def tearDown(self):
        self.tmp.cleanup()

    def test_create_and_load(self):
        secret, secret_hash = self.vault.create("swap-1")
        self.assertTrue(self.vault.has("swap-1"))
        self.assertEqual(self.vault.load("swap-1"), secret)
        self.assertEqual(sha256(self.vault.load("swap-1")), secret_hash)

    def test_owner_only_permissions(self):
        self.vault.create("swap-1")
        mode = stat.S_IMODE(os.stat(self.vault.path / "swap-1.secret").st_mode)
        self.assertEqual(mode, 0o600)
        self.assertEqual(stat.S_IMODE(os.stat(self.vault.path).st_mode), 0o700)

    def test_create_twice(self):
        secret, _ = self.vault.create("swap-1")
        with self.assertRaises(DuplicateSwap):
            self.vault.create("swap-1")
        self.assertEqual(self.vault.load("swap-1"), secret)

    def test_discard(self):
        self.vault.create("swap-1")
        self.vault.discard("swap-1")
        self.assertFalse(self.vault.has("swap-1"))
        with self.assertRaises(SwapNotFound):
            self.vault.load("swap-1")
        self.vault.discard("swap-1")

    def test_unsafe_ids(self):
        for bad in ("../escape", "a/b", ""):
            with self.assertRaises(InvalidParameters):
                self.vault.create(bad)

    def test_survives_reopen(self):
        secret, _ = self.vault.create("0xabc")
        reopened = SecretVault(self.vault.path)
        self.assertEqual(reopened.load("0xabc"), secret)


if __name__ == "__main__":
    unittest.main()
