"""
PIN-protected key material and the ephemeral signing keypair.

The envelope is two layers of AES-256-CBC with PBKDF2-derived keys:
the inner layer is keyed by the user's PIN, the outer layer by a
deployment-wide master key. Its JSON shape is::

    {"data": <base64>, "salt1": <hex>, "salt2": <hex>, "iv1": <hex>, "iv2": <hex>}

The plaintext is a WIF-encoded private key. Neither the PIN nor any
plaintext byte is ever logged or placed in an exception message.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import secrets
from types import TracebackType

import base58
from coincurve import PrivateKey
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from loguru import logger

from utxowallet.config import NetworkType, WalletConfig
from utxowallet.constants import (
    AES_BLOCK_SIZE,
    KDF_KEY_LENGTH,
    WIF_VERSION_MAINNET,
    WIF_VERSION_TESTNET,
)
from utxowallet.errors import InvalidPinError
from utxowallet.wallet.address import hash160, pubkey_to_p2wpkh_address

ENVELOPE_FIELDS = ("data", "salt1", "salt2", "iv1", "iv2")


def _wipe(buf: bytearray | None) -> None:
    if buf is not None:
        for i in range(len(buf)):
            buf[i] = 0


def derive_key(secret: str, salt: bytes, iterations: int, hash_name: str = "sha256") -> bytes:
    algorithm = hashes.SHA256() if hash_name == "sha256" else hashes.SHA1()
    kdf = PBKDF2HMAC(algorithm=algorithm, length=KDF_KEY_LENGTH, salt=salt, iterations=iterations)
    return kdf.derive(secret.encode("utf-8"))


def _aes_encrypt(plaintext: bytes, key: bytes, iv: bytes) -> bytes:
    padder = padding.PKCS7(AES_BLOCK_SIZE * 8).padder()
    padded = padder.update(plaintext) + padder.finalize()
    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    return encryptor.update(padded) + encryptor.finalize()


def _aes_decrypt(ciphertext: bytes, key: bytes, iv: bytes) -> bytearray:
    """
    Decrypt and strip PKCS7 padding into a fresh bytearray.

    Raises:
        ValueError: bad length or bad padding
    """
    if not ciphertext or len(ciphertext) % AES_BLOCK_SIZE:
        raise ValueError("ciphertext length is not a multiple of the block size")

    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    buf = bytearray(len(ciphertext) + AES_BLOCK_SIZE - 1)
    try:
        length = decryptor.update_into(ciphertext, buf)
        decryptor.finalize()
        if length == 0:
            raise ValueError("empty plaintext")

        pad = buf[length - 1]
        if pad < 1 or pad > AES_BLOCK_SIZE or buf[length - pad : length] != bytes([pad]) * pad:
            raise ValueError("bad padding")
        return bytearray(buf[: length - pad])
    finally:
        _wipe(buf)


def encrypt_with_pin(
    plaintext: str,
    pin: str,
    master_key: str,
    iterations: int,
    hash_name: str = "sha256",
) -> str:
    """Encrypt ``plaintext`` into a PIN envelope (JSON string)."""
    salt1, salt2 = secrets.token_bytes(16), secrets.token_bytes(16)
    iv1, iv2 = secrets.token_bytes(16), secrets.token_bytes(16)

    key1 = derive_key(pin, salt1, iterations, hash_name)
    key2 = derive_key(master_key, salt2, iterations, hash_name)

    inner = base64.b64encode(_aes_encrypt(plaintext.encode("utf-8"), key1, iv1))
    outer = base64.b64encode(_aes_encrypt(inner, key2, iv2))

    return json.dumps(
        {
            "data": outer.decode("ascii"),
            "salt1": salt1.hex(),
            "salt2": salt2.hex(),
            "iv1": iv1.hex(),
            "iv2": iv2.hex(),
        }
    )


def decode_wif(wif: bytes, network: NetworkType) -> bytearray:
    """
    Decode a compressed-key WIF into the 32-byte secret.

    Raises:
        ValueError: bad checksum, wrong network or uncompressed key
    """
    payload = bytearray(base58.b58decode_check(wif))
    try:
        expected = WIF_VERSION_MAINNET if network.is_mainnet else WIF_VERSION_TESTNET
        if len(payload) != 34 or payload[33] != 0x01:
            raise ValueError("WIF is not a compressed private key")
        if payload[0] != expected:
            raise ValueError("WIF version does not match network")
        return bytearray(payload[1:33])
    finally:
        _wipe(payload)


def encode_wif(secret: bytes, network: NetworkType) -> str:
    version = WIF_VERSION_MAINNET if network.is_mainnet else WIF_VERSION_TESTNET
    return base58.b58encode_check(bytes([version]) + secret + b"\x01").decode("ascii")


class KeyWipedError(RuntimeError):
    pass


class SigningKeypair:
    """
    Ephemeral secp256k1 keypair for a single send.

    The secret lives in a bytearray that ``wipe()`` zeroes. Use as a
    context manager so the secret is wiped on every exit path.
    """

    def __init__(self, secret: bytearray, network: NetworkType):
        self._secret: bytearray | None = secret
        self.network = network
        self.public_key = PrivateKey(bytes(secret)).public_key.format(compressed=True)

    @property
    def wiped(self) -> bool:
        return self._secret is None

    @property
    def pubkey_hash(self) -> bytes:
        return hash160(self.public_key)

    @property
    def address(self) -> str:
        return pubkey_to_p2wpkh_address(self.public_key, self.network)

    def sign_digest(self, digest: bytes) -> bytes:
        """DER signature over a precomputed 32-byte digest"""
        if self._secret is None:
            raise KeyWipedError("Keypair has already been wiped")
        return PrivateKey(bytes(self._secret)).sign(digest, hasher=None)

    def wipe(self) -> None:
        if self._secret is not None:
            _wipe(self._secret)
            self._secret = None

    def __enter__(self) -> SigningKeypair:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.wipe()

    def __del__(self) -> None:
        self.wipe()

    def __repr__(self) -> str:
        state = "wiped" if self.wiped else "live"
        return f"SigningKeypair(pubkey={self.public_key.hex()}, {state})"


class KeyUnlocker:
    """Turns a PIN envelope + PIN into a SigningKeypair, or fails with InvalidPin."""

    def __init__(self, config: WalletConfig):
        self.config = config

    async def unlock(self, encrypted_key: str, pin: str) -> SigningKeypair:
        # PBKDF2 is CPU-bound; keep it off the event loop
        return await asyncio.to_thread(self.unlock_sync, encrypted_key, pin)

    def unlock_sync(self, encrypted_key: str, pin: str) -> SigningKeypair:
        if not pin or len(pin) < self.config.min_pin_length:
            raise InvalidPinError(f"PIN must be at least {self.config.min_pin_length} characters")

        try:
            envelope = json.loads(encrypted_key)
            data = base64.b64decode(envelope["data"], validate=True)
            salt1, salt2, iv1, iv2 = (
                bytes.fromhex(envelope[name]) for name in ("salt1", "salt2", "iv1", "iv2")
            )
        except (ValueError, KeyError, TypeError, binascii.Error):
            raise InvalidPinError("Encrypted key material is malformed") from None

        cfg = self.config
        outer: bytearray | None = None
        inner: bytearray | None = None
        try:
            key2 = derive_key(cfg.master_key, salt2, cfg.kdf_iterations, cfg.kdf_hash)
            try:
                outer = _aes_decrypt(data, key2, iv2)
                inner_ct = base64.b64decode(bytes(outer), validate=True)
            except (ValueError, binascii.Error):
                raise InvalidPinError("Encrypted key material is corrupted") from None

            key1 = derive_key(pin, salt1, cfg.kdf_iterations, cfg.kdf_hash)
            try:
                inner = _aes_decrypt(inner_ct, key1, iv1)
                secret = decode_wif(bytes(inner), cfg.network)
            except ValueError:
                raise InvalidPinError("Incorrect PIN") from None

            try:
                keypair = SigningKeypair(secret, cfg.network)
            except ValueError:
                _wipe(secret)
                raise InvalidPinError("Incorrect PIN") from None
        finally:
            _wipe(outer)
            _wipe(inner)

        logger.debug(f"Unlocked signing key for {keypair.address}")
        return keypair
