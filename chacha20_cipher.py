"""
ChaCha20 Stream Cipher (RFC 8439 layout: 256-bit key, 96-bit nonce, 32-bit counter)

The pure-Python block function below is the ground truth the homomorphic
evaluator is checked against. Bulk encryption goes through the cryptography
library's ChaCha20 primitive, which produces the same keystream.

ChaCha20 provides confidentiality only: there is no MAC, and reusing a
(key, nonce) pair destroys security. Nonce uniqueness is the caller's job.
"""

import logging
import os
import secrets
from typing import List, Sequence, Tuple

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms

log = logging.getLogger(__name__)

KEY_SIZE = 32
NONCE_SIZE = 12
BLOCK_SIZE = 64
WORD_MASK = 0xFFFFFFFF
DOUBLE_ROUNDS = 10

# "expand 32-byte k"
CHACHA20_CONSTANTS = (0x61707865, 0x3320646E, 0x79622D32, 0x6B206574)

COLUMN_ROUND = ((0, 4, 8, 12), (1, 5, 9, 13), (2, 6, 10, 14), (3, 7, 11, 15))
DIAGONAL_ROUND = ((0, 5, 10, 15), (1, 6, 11, 12), (2, 7, 8, 13), (3, 4, 9, 14))
QUARTER_ROUND_INDICES = COLUMN_ROUND + DIAGONAL_ROUND


class SymmetricError(Exception):
    """Base class for symmetric cipher failures."""


class InvalidKeyIv(SymmetricError):
    """Key, nonce or counter has the wrong size."""


class SymmetricEncryptError(SymmetricError):
    """Encryption failed."""


class SymmetricDecryptError(SymmetricError):
    """Decryption failed."""


def rotl32(v: int, bits: int) -> int:
    """Rotate the 32-bit value v left by bits bits."""
    bits %= 32
    return ((v << bits) & WORD_MASK) | (v >> (32 - bits))


def quarter_round(a: int, b: int, c: int, d: int) -> Tuple[int, int, int, int]:
    a = (a + b) & WORD_MASK
    d = rotl32(d ^ a, 16)
    c = (c + d) & WORD_MASK
    b = rotl32(b ^ c, 12)
    a = (a + b) & WORD_MASK
    d = rotl32(d ^ a, 8)
    c = (c + d) & WORD_MASK
    b = rotl32(b ^ c, 7)
    return a, b, c, d


def double_round(state: List[int]) -> None:
    """Apply one column round and one diagonal round to state in place."""
    for a, b, c, d in QUARTER_ROUND_INDICES:
        state[a], state[b], state[c], state[d] = quarter_round(state[a], state[b], state[c], state[d])


def bytes_to_words(data: bytes) -> List[int]:
    """Split data (length a multiple of 4) into little-endian 32-bit words."""
    return [int.from_bytes(data[i:i + 4], "little") for i in range(0, len(data), 4)]


def words_to_bytes(words: Sequence[int]) -> bytes:
    return b"".join((w & WORD_MASK).to_bytes(4, "little") for w in words)


def check_key_nonce(key: bytes, nonce: bytes) -> None:
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        raise InvalidKeyIv(f"ChaCha20 key must be {KEY_SIZE} bytes")
    if not isinstance(nonce, (bytes, bytearray)) or len(nonce) != NONCE_SIZE:
        raise InvalidKeyIv(f"ChaCha20 nonce must be {NONCE_SIZE} bytes")


def blocks_for(length: int) -> int:
    """Number of 64-byte keystream blocks needed to cover length bytes."""
    return (length + BLOCK_SIZE - 1) // BLOCK_SIZE


def check_counter(counter: int, blocks: int = 1) -> None:
    """Ensure counter .. counter + blocks - 1 stays within 32 bits."""
    if isinstance(counter, bool) or not isinstance(counter, int) or not 0 <= counter <= WORD_MASK:
        raise InvalidKeyIv("ChaCha20 counter must be a 32-bit unsigned integer")
    if blocks > 0 and counter + blocks - 1 > WORD_MASK:
        raise SymmetricEncryptError("message would overflow the 32-bit block counter")


def initial_state(key: bytes, counter: int, nonce: bytes) -> List[int]:
    """Build the 16-word state [constants, key, counter, nonce]."""
    check_key_nonce(key, nonce)
    check_counter(counter)
    return list(CHACHA20_CONSTANTS) + bytes_to_words(bytes(key)) + [counter] + bytes_to_words(bytes(nonce))


def chacha20_block_words(key: bytes, counter: int, nonce: bytes) -> List[int]:
    """
    Compute one ChaCha20 keystream block as 16 words.

    Args:
        key: 32-byte key
        counter: 32-bit block counter
        nonce: 12-byte nonce

    Returns:
        The 16 keystream words (state after 20 rounds plus the initial state)
    """
    init = initial_state(key, counter, nonce)
    state = list(init)
    for _ in range(DOUBLE_ROUNDS):
        double_round(state)
    return [(s + i) & WORD_MASK for s, i in zip(state, init)]


def chacha20_block(key: bytes, counter: int, nonce: bytes) -> bytes:
    """Compute the 64-byte output of the ChaCha20 block function."""
    return words_to_bytes(chacha20_block_words(key, counter, nonce))


def keystream(key: bytes, nonce: bytes, length: int, counter: int = 0) -> bytes:
    """Reference keystream of the given length, computed block by block in Python."""
    blocks = blocks_for(length)
    check_counter(counter, blocks)
    out = b"".join(chacha20_block(key, counter + i, nonce) for i in range(blocks))
    return out[:length]


class ChaCha20Cipher:
    """
    ChaCha20 symmetric stream cipher.

    encrypt and decrypt are the same operation: XOR with the keystream that
    starts at the given block counter (0 by default).
    """

    KEY_SIZE = KEY_SIZE
    NONCE_SIZE = NONCE_SIZE

    @staticmethod
    def keygen() -> bytes:
        return secrets.token_bytes(KEY_SIZE)

    @staticmethod
    def generate_nonce() -> bytes:
        return os.urandom(NONCE_SIZE)

    @staticmethod
    def _apply_keystream(key: bytes, nonce: bytes, data: bytes, counter: int) -> bytes:
        # cryptography takes a 16-byte IV: 4-byte little-endian counter || 12-byte nonce
        iv = counter.to_bytes(4, "little") + bytes(nonce)
        cipher = Cipher(algorithms.ChaCha20(bytes(key), iv), mode=None)
        encryptor = cipher.encryptor()
        out = encryptor.update(bytes(data)) + encryptor.finalize()
        log.debug(f"ChaCha20 keystream applied to {len(out)} bytes from block {counter}")
        return out

    @classmethod
    def encrypt(cls, key: bytes, nonce: bytes, plaintext: bytes, counter: int = 0) -> bytes:
        """
        Encrypt plaintext with ChaCha20.

        Args:
            key: 32-byte key
            nonce: 12-byte nonce, unique per message under this key
            plaintext: Data to encrypt
            counter: Initial block counter

        Returns:
            Ciphertext of the same length as plaintext

        Raises:
            InvalidKeyIv: If key, nonce or counter are malformed
            SymmetricEncryptError: If the message overflows the block counter
        """
        check_key_nonce(key, nonce)
        check_counter(counter, blocks_for(len(plaintext)))
        try:
            return cls._apply_keystream(key, nonce, plaintext, counter)
        except (TypeError, ValueError) as e:
            raise SymmetricEncryptError(f"ChaCha20 encryption failed: {type(e).__name__}") from e

    @classmethod
    def decrypt(cls, key: bytes, nonce: bytes, ciphertext: bytes, counter: int = 0) -> bytes:
        """Decrypt ciphertext; identical to encrypt for a stream cipher."""
        check_key_nonce(key, nonce)
        try:
            check_counter(counter, blocks_for(len(ciphertext)))
        except SymmetricEncryptError as e:
            raise SymmetricDecryptError(str(e)) from e
        try:
            return cls._apply_keystream(key, nonce, ciphertext, counter)
        except (TypeError, ValueError) as e:
            raise SymmetricDecryptError(f"ChaCha20 decryption failed: {type(e).__name__}") from e
