"""
Master seed custody: AES-256-GCM encryption of the BIP-39 seed.

Layout of the stored value (compatible with seeds produced by the previous
backend): base64(IV[16] || authTag[16] || ciphertext), key = scrypt(password,
salt, N=2^14, r=8, p=1, dklen=32).

The vault only ever holds the ciphertext. Plaintext seed bytes exist inside
``unlock()`` blocks and are zeroed when the block exits.
"""

from __future__ import annotations

import argparse
import base64
import binascii
import logging
import secrets
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from bip_utils import (
    Bip39MnemonicGenerator,
    Bip39MnemonicValidator,
    Bip39SeedGenerator,
    Bip39WordsNum,
)
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt
from dotenv import dotenv_values, set_key

from custody_errors import AuthenticationFailure, ConfigurationError, SeedAlreadyExists

logger = logging.getLogger(__name__)

IV_SIZE = 16
TAG_SIZE = 16
KEY_SIZE = 32
SCRYPT_N = 2**14
SCRYPT_R = 8
SCRYPT_P = 1
DEFAULT_SALT = "salt"


def _derive_key(password: str, salt: bytes) -> bytes:
    kdf = Scrypt(salt=salt, length=KEY_SIZE, n=SCRYPT_N, r=SCRYPT_R, p=SCRYPT_P)
    return kdf.derive(password.encode("utf-8"))


def _wipe(buf: bytearray) -> None:
    for i in range(len(buf)):
        buf[i] = 0


def validate_mnemonic(mnemonic: str) -> bool:
    """True if ``mnemonic`` is a valid BIP-39 phrase (wordlist + checksum)."""
    try:
        return bool(Bip39MnemonicValidator().IsValid(" ".join(mnemonic.split())))
    except Exception:  # noqa: BLE001
        return False


class SeedVault:
    """
    Holder of the encrypted master seed.

    Passed explicitly into KeyDeriver; there is no module-level seed state.
    """

    def __init__(
        self,
        encrypted_seed: str | None = None,
        password: str | None = None,
        salt: str = DEFAULT_SALT,
    ) -> None:
        self._encrypted_seed = encrypted_seed or None
        self._password = password or None
        self._salt = salt.encode("utf-8")

    @classmethod
    def from_config(cls, cfg) -> SeedVault:
        vault = cls(
            encrypted_seed=cfg.encrypted_master_seed,
            password=cfg.master_seed_password,
            salt=cfg.master_seed_salt,
        )
        if vault.has_seed:
            logger.info("Loaded existing encrypted master seed")
        else:
            logger.warning("No master seed configured; run generate_master_seed first")
        return vault

    @property
    def has_seed(self) -> bool:
        return self._encrypted_seed is not None

    @property
    def encrypted_seed(self) -> str | None:
        return self._encrypted_seed

    # ---- Cipher ----

    def encrypt(self, seed: bytes, password: str) -> str:
        if not password:
            raise ConfigurationError("MASTER_SEED_PASSWORD not configured")
        key = _derive_key(password, self._salt)
        iv = secrets.token_bytes(IV_SIZE)
        # AESGCM appends the tag; the stored layout puts it before the ciphertext.
        sealed = AESGCM(key).encrypt(iv, bytes(seed), None)
        ciphertext, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
        return base64.b64encode(iv + tag + ciphertext).decode("ascii")

    def decrypt(self, ciphertext_b64: str, password: str) -> bytes:
        """
        Reverse ``encrypt``. Any malformed input, wrong password or tampered
        byte raises AuthenticationFailure; garbage is never returned.
        """
        if not password:
            raise ConfigurationError("MASTER_SEED_PASSWORD not configured")
        try:
            combined = base64.b64decode(ciphertext_b64, validate=True)
        except (binascii.Error, ValueError, TypeError) as exc:
            raise AuthenticationFailure("Master seed ciphertext is malformed.") from exc
        if len(combined) <= IV_SIZE + TAG_SIZE:
            raise AuthenticationFailure("Master seed ciphertext is truncated.")

        iv = combined[:IV_SIZE]
        tag = combined[IV_SIZE : IV_SIZE + TAG_SIZE]
        ciphertext = combined[IV_SIZE + TAG_SIZE :]
        key = _derive_key(password, self._salt)
        try:
            return AESGCM(key).decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise AuthenticationFailure(
                "Master seed authentication failed (wrong password or tampered data)."
            ) from exc

    # ---- Seed lifecycle ----

    def generate(self) -> tuple[bytes, list[str]]:
        """
        Create the deployment's master seed from a fresh 24-word mnemonic.

        The encrypted form becomes available as ``encrypted_seed``; persisting
        it (and the mnemonic, offline) is the caller's job.
        """
        if self.has_seed:
            raise SeedAlreadyExists("Master seed already exists")
        if not self._password:
            raise ConfigurationError("MASTER_SEED_PASSWORD not configured")

        mnemonic = Bip39MnemonicGenerator().FromWordsNumber(Bip39WordsNum.WORDS_NUM_24)
        seed = bytes(Bip39SeedGenerator(mnemonic).Generate())
        self._encrypted_seed = self.encrypt(seed, self._password)
        logger.info("Generated new master seed")
        return seed, mnemonic.ToStr().split()

    @contextmanager
    def unlock(self) -> Iterator[bytearray]:
        """Decrypt the configured seed for the duration of the block."""
        if not self._encrypted_seed:
            raise ConfigurationError("Master seed not initialized")
        if not self._password:
            raise ConfigurationError("MASTER_SEED_PASSWORD not configured")
        seed = bytearray(self.decrypt(self._encrypted_seed, self._password))
        try:
            yield seed
        finally:
            _wipe(seed)

    def health_check(self) -> bool:
        try:
            with self.unlock():
                return True
        except Exception as exc:  # noqa: BLE001
            logger.error("Seed vault health check failed: %s", exc)
            return False


# ---------------------------------------------------------------------------
# One-time setup command
# ---------------------------------------------------------------------------


def generate_master_seed(env_path: Path, salt: str = DEFAULT_SALT) -> tuple[list[str], str]:
    """
    Generate the master seed and a random encryption password, and write
    ENCRYPTED_MASTER_SEED / MASTER_SEED_PASSWORD into ``env_path``.

    Returns (mnemonic_words, password). Refuses to overwrite an existing seed.
    """
    existing = dotenv_values(env_path) if env_path.exists() else {}
    current = (existing.get("ENCRYPTED_MASTER_SEED") or "").strip()
    if current and current != "will-be-generated-on-first-wallet-creation":
        raise SeedAlreadyExists(f"ENCRYPTED_MASTER_SEED already set in {env_path}")

    password = base64.b64encode(secrets.token_bytes(32)).decode("ascii")
    vault = SeedVault(password=password, salt=salt)
    _, words = vault.generate()

    env_path.touch(exist_ok=True)
    set_key(str(env_path), "ENCRYPTED_MASTER_SEED", vault.encrypted_seed or "")
    set_key(str(env_path), "MASTER_SEED_PASSWORD", password)
    if salt != DEFAULT_SALT:
        set_key(str(env_path), "MASTER_SEED_SALT", salt)
    return words, password


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Generate the custodial master seed (run once per deployment)."
    )
    parser.add_argument(
        "--env-file",
        type=Path,
        default=Path(__file__).resolve().parent / ".env",
        help="dotenv file that receives ENCRYPTED_MASTER_SEED and MASTER_SEED_PASSWORD",
    )
    parser.add_argument(
        "--salt",
        default=DEFAULT_SALT,
        help="scrypt salt; a random per-deployment value is recommended",
    )
    args = parser.parse_args(argv)

    try:
        words, _ = generate_master_seed(args.env_file, args.salt)
    except SeedAlreadyExists as exc:
        print(f"Refusing to continue: {exc}")
        return 1

    print("WARNING: this seed controls ALL user wallets. Store it offline.")
    print("Master seed mnemonic (write it down, never commit it):")
    print("-" * 80)
    print(" ".join(words))
    print("-" * 80)
    print(f"Encrypted seed and password written to {args.env_file}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
