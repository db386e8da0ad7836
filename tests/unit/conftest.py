import sys
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

from bip_utils import Bip39SeedGenerator  # noqa: E402

from hd_keys import KeyDeriver  # noqa: E402
from seed_vault import SeedVault  # noqa: E402

TEST_MNEMONIC = (
    "abandon abandon abandon abandon abandon abandon "
    "abandon abandon abandon abandon abandon about"
)
TEST_PASSWORD = "correct horse battery staple"


@pytest.fixture(scope="session")
def test_seed() -> bytes:
    return bytes(Bip39SeedGenerator(TEST_MNEMONIC).Generate())


@pytest.fixture(scope="session")
def encrypted_test_seed(test_seed) -> str:
    return SeedVault().encrypt(test_seed, TEST_PASSWORD)


@pytest.fixture
def vault(encrypted_test_seed) -> SeedVault:
    return SeedVault(encrypted_seed=encrypted_test_seed, password=TEST_PASSWORD)


@pytest.fixture
def testnet_keys(vault) -> KeyDeriver:
    return KeyDeriver(vault, "testnet")


@pytest.fixture
def mainnet_keys(vault) -> KeyDeriver:
    return KeyDeriver(vault, "mainnet")
