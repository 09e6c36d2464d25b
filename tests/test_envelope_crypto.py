import pytest

from envelope_crypto import EncryptionError, decrypt, encrypt, is_encrypted

KEY = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
OTHER_KEY = "ff" * 32


class TestEnvelopeCrypto:

    def test_round_trip(self):
        token = encrypt("sk_live_渠道密钥", KEY)
        assert decrypt(token, KEY) == "sk_live_渠道密钥"

    def test_token_format(self):
        iv, tag, cipher = encrypt("secret", KEY).split(":")
        assert len(iv) == 32
        assert len(tag) == 32
        assert len(cipher) == len("secret") * 2

    def test_random_iv_per_call(self):
        assert encrypt("secret", KEY) != encrypt("secret", KEY)

    def test_wrong_key_fails_authentication(self):
        token = encrypt("secret", KEY)
        with pytest.raises(EncryptionError):
            decrypt(token, OTHER_KEY)

    def test_tampered_ciphertext_fails(self):
        iv, tag, cipher = encrypt("secret", KEY).split(":")
        flipped = format(int(cipher[:2], 16) ^ 0x01, "02x") + cipher[2:]
        with pytest.raises(EncryptionError):
            decrypt(f"{iv}:{tag}:{flipped}", KEY)

    @pytest.mark.parametrize("token", ["plain-text", "a:b", "zz:yy:xx", ":abcd:abcd"])
    def test_malformed_token(self, token):
        with pytest.raises(EncryptionError):
            decrypt(token, KEY)

    def test_missing_or_bad_key(self, monkeypatch):
        monkeypatch.setattr("envelope_crypto.ENCRYPTION_MASTER_KEY", None)
        with pytest.raises(EncryptionError):
            encrypt("secret")
        with pytest.raises(EncryptionError):
            encrypt("secret", "abcd")

    def test_is_encrypted(self):
        assert is_encrypted(encrypt("secret", KEY))
        assert not is_encrypted("secret")
        assert not is_encrypted("")
        assert not is_encrypted(None)
        assert not is_encrypted("ab:cd")
