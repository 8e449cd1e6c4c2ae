"""Tests for custodial wallet derivation and identifier encryption."""

from unittest.mock import patch

import pytest
from bip_utils import Bip39SeedGenerator
from cryptography.fernet import Fernet

from offramp.crypto import (
    FERNET_PREFIX,
    IdentifierCipher,
    generate_master_key,
    open_identifier,
    seal_identifier,
)
from offramp.errors import DerivationError
from offramp.hdwallet.provisioner import (
    MAX_DERIVATION_INDEX,
    WalletProvisioner,
    derivation_index,
    user_identifier,
)

# First BIP44 Ethereum address of the "abandon ... about" test mnemonic
TEST_MNEMONIC_INDEX_0 = "0x9858EfFD232B4033E47d90003D41EC34EcaEda94"


class TestDerivation:
    """Tests for deterministic wallet derivation."""

    def test_known_vector(self, provisioner):
        """Test index 0 matches the published BIP44 test vector."""
        wallet = provisioner.derive_index(0)

        assert wallet.address == TEST_MNEMONIC_INDEX_0
        assert wallet.derivation_path == "m/44'/60'/0'/0/0"

    def test_same_identifier_same_wallet(self, provisioner):
        """Test an identifier always maps to the same address and key."""
        first = provisioner.derive("user:42")
        second = provisioner.derive("user:42")

        assert first.address == second.address
        assert first.index == second.index
        assert first.account.key == second.account.key

    def test_different_identifiers_differ(self, provisioner):
        """Test distinct identifiers produce distinct wallets."""
        a = provisioner.derive(user_identifier("1"))
        b = provisioner.derive(user_identifier("2"))
        guest = provisioner.derive("offramp_abc123")

        assert len({a.address, b.address, guest.address}) == 3

    def test_index_in_range(self):
        """Test hashed indexes stay below the hardened boundary."""
        for identifier in ("user:1", "offramp_deadbeef", "x" * 500):
            index = derivation_index(identifier)
            assert 0 <= index < MAX_DERIVATION_INDEX

    def test_empty_identifier_rejected(self, provisioner):
        """Test derivation refuses empty identifiers."""
        with pytest.raises(DerivationError):
            provisioner.derive("")
        with pytest.raises(DerivationError):
            provisioner.derive("   ")

    def test_missing_mnemonic(self):
        """Test derivation fails clearly without a master mnemonic."""
        with pytest.raises(DerivationError, match="not configured"):
            WalletProvisioner(None).derive("user:1")

    def test_invalid_mnemonic(self):
        """Test a malformed mnemonic is reported as a derivation error."""
        with pytest.raises(DerivationError, match="Invalid master mnemonic"):
            WalletProvisioner("not a real mnemonic").derive("user:1")

    def test_derive_for_address(self, provisioner):
        """Test re-derivation checks the stored address."""
        wallet = provisioner.derive("user:7")

        again = provisioner.derive_for_address("user:7", wallet.address.lower())
        assert again.address == wallet.address

        with pytest.raises(DerivationError, match="does not match"):
            provisioner.derive_for_address("user:8", wallet.address)

    def test_verify(self, provisioner):
        """Test verify reports ownership without raising."""
        wallet = provisioner.derive("user:9")

        assert provisioner.verify(wallet.address, "user:9") is True
        assert provisioner.verify(wallet.address, "user:10") is False
        assert provisioner.verify(wallet.address, "") is False

    def test_wallet_repr_hides_key(self, provisioner):
        """Test the signing account is kept out of the wallet repr."""
        wallet = provisioner.derive("user:11")
        assert wallet.account.key.hex() not in repr(wallet)

    def test_seed_rebuilt_per_derivation(self, provisioner):
        """Test no seed material is cached between derivations."""
        with patch(
            "offramp.hdwallet.provisioner.Bip39SeedGenerator", wraps=Bip39SeedGenerator
        ) as generator:
            first = provisioner.derive("user:12")
            second = provisioner.derive("user:12")

        assert first.address == second.address
        assert generator.call_count == 2
        assert not any(isinstance(v, bytes) for v in vars(provisioner).values())


class TestIdentifierCipher:
    """Tests for stored identifier encryption."""

    def test_seal_and_open(self):
        """Test sealed identifiers are encrypted and recoverable."""
        cipher = IdentifierCipher(generate_master_key())

        stored = seal_identifier("user:42", cipher)

        assert stored != "user:42"
        assert stored.startswith(FERNET_PREFIX)
        assert open_identifier(stored, cipher) == "user:42"

    def test_plain_identifier_passes_through(self):
        """Test rows written without a key stay readable."""
        cipher = IdentifierCipher(generate_master_key())
        assert open_identifier("offramp_abc", cipher) == "offramp_abc"

    def test_wrong_key(self):
        """Test decrypting with a different key is a derivation error."""
        stored = IdentifierCipher(Fernet.generate_key().decode()).encrypt("user:1")
        other = IdentifierCipher(Fernet.generate_key().decode())

        with pytest.raises(DerivationError, match="could not be decrypted"):
            open_identifier(stored, other)
