"""Unit tests for wallet and webhook signature verification."""

import hashlib
import hmac

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct

from src.subscriptions.notifier import create_webhook_signature
from src.subscriptions.signatures import is_valid_address, recover_signer, verify_message_signature
from src.subscriptions.webhooks import verify_webhook_signature


@pytest.mark.unit
class TestAddressValidation:
    """Test wallet address format checks."""

    @pytest.mark.parametrize(
        "address",
        [
            "0xaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa1111",
            "0x1234567890123456789012345678901234567890",
            "0xABCDEFABCDEFABCDEFABCDEFABCDEFABCDEFABCD",
        ],
    )
    def test_valid_addresses(self, address):
        assert is_valid_address(address) is True

    def test_checksummed_address_from_account(self):
        account = Account.create()
        assert is_valid_address(account.address) is True

    @pytest.mark.parametrize(
        "address",
        [
            "",
            "0x1234",
            "1234567890123456789012345678901234567890",
            "0xzzzzzzzzzzzzzzzzzzzzzzzzzzzzzzzzzzzzzzzz",
            "0x12345678901234567890123456789012345678901",
            None,
            42,
        ],
    )
    def test_invalid_addresses(self, address):
        assert is_valid_address(address) is False


@pytest.mark.unit
class TestMessageSignatures:
    """Test personal-message signature recovery."""

    def test_recovers_signer(self):
        account = Account.create()
        signed = account.sign_message(encode_defunct(text="Subscribe to pro"))

        assert recover_signer("Subscribe to pro", signed.signature.hex()) == account.address

    def test_signature_matches_any_address_case(self):
        account = Account.create()
        signed = account.sign_message(encode_defunct(text="hello"))
        signature = signed.signature.hex()

        assert verify_message_signature("hello", signature, account.address.lower()) is True
        assert verify_message_signature("hello", signature, account.address) is True

    def test_different_message_fails(self):
        account = Account.create()
        signed = account.sign_message(encode_defunct(text="hello"))

        assert verify_message_signature("goodbye", signed.signature.hex(), account.address) is False

    def test_garbage_signature_is_not_recoverable(self):
        assert recover_signer("hello", "not-a-signature") is None
        assert verify_message_signature("hello", "0x00", "0x" + "a" * 40) is False


@pytest.mark.unit
class TestWebhookSignatureVerification:
    """Test HMAC-SHA256 signature verification."""

    def test_valid_signature(self):
        """Test that valid signatures pass verification."""
        payload = b'{"event":"subscription.created","subscriptionId":"sub_123"}'
        secret = "my_secret_key"

        # Generate signature (simulating the sender)
        expected_sig = hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()

        assert verify_webhook_signature(payload, expected_sig, secret) is True

    def test_notifier_signature_verifies(self):
        payload = '{"event":"payment.succeeded"}'
        signature = create_webhook_signature(payload, "shared")

        assert verify_webhook_signature(payload.encode(), signature, "shared") is True

    def test_invalid_signature(self):
        payload = b'{"event":"subscription.created"}'

        assert verify_webhook_signature(payload, "0" * 64, "my_secret_key") is False

    def test_wrong_secret(self):
        """Test that signatures with wrong secret fail."""
        payload = b'{"event":"subscription.created"}'
        wrong_sig = hmac.new(b"wrong_secret", payload, hashlib.sha256).hexdigest()

        assert verify_webhook_signature(payload, wrong_sig, "my_secret_key") is False

    def test_modified_payload(self):
        original_payload = b'{"event":"subscription.created","amount":100}'
        modified_payload = b'{"event":"subscription.created","amount":1}'
        secret = "my_secret_key"

        signature = hmac.new(secret.encode(), original_payload, hashlib.sha256).hexdigest()

        assert verify_webhook_signature(modified_payload, signature, secret) is False

    def test_empty_signature(self):
        payload = b'{"event":"subscription.created"}'

        assert verify_webhook_signature(payload, "", "my_secret_key") is False

    def test_signing_requires_secret(self):
        with pytest.raises(ValueError):
            create_webhook_signature("{}", "")
