"""
Signature verification tests - Meta X-Hub-Signature-256 and Razorpay HMAC.
"""
import hashlib
import hmac

from webhook_intake.utils.webhook_signatures import (
    sign_hmac_sha256,
    validate_hmac_sha256,
    verify_signature,
)

SECRET = "test_meta_secret"
BODY = b'{"object":"page","entry":[{"id":"1","messaging":[{"message":{"mid":"m_1","text":"hi"}}]}]}'


def _meta_header(body: bytes, secret: str = SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


class TestMetaSignatures:
    def test_valid_signature_accepted(self):
        for provider in ("facebook", "instagram", "whatsapp"):
            assert verify_signature(provider, BODY, _meta_header(BODY), SECRET) is True

    def test_uppercase_hex_accepted(self):
        header = "sha256=" + hmac.new(SECRET.encode(), BODY, hashlib.sha256).hexdigest().upper()
        assert verify_signature("facebook", BODY, header, SECRET) is True

    def test_tampered_body_rejected(self):
        """Flipping a single byte invalidates the signature."""
        header = _meta_header(BODY)
        tampered = bytearray(BODY)
        tampered[10] ^= 0x01
        assert verify_signature("instagram", bytes(tampered), header, SECRET) is False

    def test_missing_prefix_rejected(self):
        bare = hmac.new(SECRET.encode(), BODY, hashlib.sha256).hexdigest()
        assert verify_signature("facebook", BODY, bare, SECRET) is False

    def test_wrong_secret_rejected(self):
        assert verify_signature("facebook", BODY, _meta_header(BODY, "other"), SECRET) is False

    def test_missing_header_rejected(self):
        assert verify_signature("facebook", BODY, None, SECRET) is False
        assert verify_signature("facebook", BODY, "", SECRET) is False

    def test_missing_secret_rejected(self):
        assert verify_signature("facebook", BODY, _meta_header(BODY), "") is False
        assert verify_signature("facebook", BODY, _meta_header(BODY), None) is False

    def test_empty_digest_rejected(self):
        assert verify_signature("facebook", BODY, "sha256=", SECRET) is False

    def test_non_ascii_header_rejected(self):
        assert verify_signature("facebook", BODY, "sha256=ü" + "0" * 63, SECRET) is False

    def test_reserialized_body_rejected(self):
        """The signature covers raw bytes, not the parsed JSON."""
        spaced = BODY.replace(b",", b", ")
        assert verify_signature("facebook", spaced, _meta_header(BODY), SECRET) is False


class TestRazorpaySignatures:
    def test_valid_signature_accepted(self):
        body = b'{"event":"payment.captured"}'
        assert verify_signature("razorpay", body, sign_hmac_sha256("rzp", body), "rzp") is True

    def test_meta_style_prefix_rejected(self):
        body = b'{"event":"payment.captured"}'
        header = "sha256=" + sign_hmac_sha256("rzp", body)
        assert verify_signature("razorpay", body, header, "rzp") is False

    def test_tampered_body_rejected(self):
        body = b'{"event":"payment.captured","amount":50000}'
        header = sign_hmac_sha256("rzp", body)
        assert verify_signature("razorpay", body.replace(b"50000", b"50001"), header, "rzp") is False


class TestVerifySignatureDispatch:
    def test_unknown_provider_rejected(self):
        assert verify_signature("stripe", BODY, _meta_header(BODY), SECRET) is False

    def test_paypal_not_hmac_verified(self):
        """PayPal is verified remotely by its adapter, never by HMAC."""
        assert verify_signature("paypal", BODY, sign_hmac_sha256(SECRET, BODY), SECRET) is False


class TestValidateHmacSha256:
    def test_whitespace_around_header_tolerated(self):
        header = "  " + _meta_header(BODY) + "  "
        assert validate_hmac_sha256(SECRET, header, BODY) is True

    def test_no_prefix_mode(self):
        assert validate_hmac_sha256(SECRET, sign_hmac_sha256(SECRET, BODY), BODY, header_prefix=None) is True
