"""
ChaCha20 Transciphering Protocol

Transciphering converts data encrypted under a fast symmetric cipher
(ChaCha20) into data encrypted under a homomorphic scheme without exposing the
plaintext:

1. The client encrypts its data with ChaCha20 and re-encrypts the ChaCha20 key
   word by word under the homomorphic scheme.
2. The server evaluates the ChaCha20 keystream homomorphically and XORs it
   with the ciphertext, obtaining the plaintext still under homomorphic
   encryption.

Two modes are exposed:
- Key recombination: transcipher_encrypt / transcipher_decrypt. The holder of
  the secret key decrypts the key words and decrypts conventionally.
- Blind evaluation: ClientSession prepares a TranscipherRequest carrying only
  the evaluation key; BlindEvaluator answers with encrypted plaintext words
  that only the ClientSession can open. Public words (constants, counter,
  nonce, ciphertext) are lifted by the server with encrypt_public, so the
  secret key object never leaves the client.

With the bundled "sim" backend the evaluation key is itself the sealing key
(see encrypted_word), so whoever holds it can recover the key words and with
them the ChaCha20 key. Blind evaluation is only confidential against the
server once a lattice backend is plugged in behind the same interface.
"""

import base64
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from chacha20_cipher import KEY_SIZE, ChaCha20Cipher, SymmetricError, bytes_to_words
from encrypted_word import (UINT32, EncryptedWord, EvalError, EvaluationContext,
                            HEEvaluationKey, HeError, HESecretKey, keygen)
from homomorphic_chacha import KEY_WORDS, WORD_BYTES, HomomorphicChaCha20

log = logging.getLogger(__name__)


class TranscipherError(Exception):
    """Base class for transciphering protocol failures."""


class TranscipherHeError(TranscipherError):
    """A homomorphic (Encrypted-Word Algebra) step failed."""


class TranscipherSymmetricError(TranscipherError):
    """A symmetric cipher step failed."""


def _he_failure(step: str, error: HeError) -> TranscipherHeError:
    return TranscipherHeError(f"{step} failed: {type(error).__name__}: {error}")


def _symmetric_failure(step: str, error: SymmetricError) -> TranscipherSymmetricError:
    return TranscipherSymmetricError(f"{step} failed: {type(error).__name__}: {error}")


def format_binary(data: Optional[bytes], max_len: int = 8) -> str:
    """
    Format binary data for logging in a safe, readable way.

    Args:
        data: Binary data to format
        max_len: Maximum number of bytes to include

    Returns:
        Formatted string representation
    """
    if data is None:
        return "None"
    if len(data) > max_len:
        b64 = base64.b64encode(data[:max_len]).decode('utf-8')
        return f"{b64}... ({len(data)} bytes)"
    return base64.b64encode(data).decode('utf-8')


def encrypt_key_words(secret_key: HESecretKey, key: bytes) -> List[EncryptedWord]:
    """Encrypt a 32-byte ChaCha20 key as 8 little-endian 32-bit words."""
    if not isinstance(key, (bytes, bytearray)) or len(key) != KEY_SIZE:
        raise TranscipherSymmetricError(f"key word encryption failed: key must be {KEY_SIZE} bytes")
    try:
        return [UINT32.encrypt(secret_key, word) for word in bytes_to_words(bytes(key))]
    except HeError as e:
        raise _he_failure("key word encryption", e) from e


def recover_key(secret_key: HESecretKey, key_words: Sequence[EncryptedWord]) -> bytes:
    """Decrypt 8 encrypted key words and reassemble the 32-byte ChaCha20 key."""
    try:
        if key_words is None or len(key_words) != KEY_WORDS:
            raise EvalError("Invalid encrypted key length")
        words = [UINT32.decrypt(secret_key, word) for word in key_words]
    except HeError as e:
        raise _he_failure("key recovery", e) from e
    return b"".join(word.to_bytes(WORD_BYTES, "little") for word in words)


def transcipher_encrypt(key: bytes, nonce: bytes, secret_key: HESecretKey, plaintext: bytes,
                        counter: int = 0) -> Tuple[bytes, List[EncryptedWord]]:
    """
    Encrypt plaintext with ChaCha20 and re-encrypt the key homomorphically.

    Args:
        key: 32-byte ChaCha20 key
        nonce: 12-byte nonce, unique per message under this key
        secret_key: Homomorphic secret key
        plaintext: Data to encrypt
        counter: Initial ChaCha20 block counter

    Returns:
        Tuple of (ciphertext, encrypted_key_words)

    Raises:
        TranscipherSymmetricError: If ChaCha20 encryption fails
        TranscipherHeError: If key word encryption fails
    """
    try:
        ciphertext = ChaCha20Cipher.encrypt(key, nonce, plaintext, counter)
    except SymmetricError as e:
        raise _symmetric_failure("symmetric encryption", e) from e
    key_words = encrypt_key_words(secret_key, key)
    log.debug(f"Transcipher-encrypted {len(plaintext)} bytes: {format_binary(ciphertext)}")
    return ciphertext, key_words


def transcipher_decrypt(nonce: bytes, secret_key: HESecretKey, encrypted_key_words: Sequence[EncryptedWord],
                        ciphertext: bytes, counter: int = 0) -> bytes:
    """
    Recover the ChaCha20 key from its encrypted words and decrypt conventionally.

    Never invokes the homomorphic evaluator.

    Raises:
        TranscipherHeError: If the key words are malformed or undecryptable
        TranscipherSymmetricError: If ChaCha20 decryption fails
    """
    key = recover_key(secret_key, encrypted_key_words)
    try:
        return ChaCha20Cipher.decrypt(key, nonce, ciphertext, counter)
    except SymmetricError as e:
        raise _symmetric_failure("symmetric decryption", e) from e


def message_from_words(values: Sequence[int], length: int) -> bytes:
    """Reassemble length bytes from little-endian 32-bit plaintext words."""
    expected = (length + WORD_BYTES - 1) // WORD_BYTES
    if length < 0 or len(values) != expected:
        raise TranscipherHeError(f"expected {expected} plaintext words, got {len(values)}")
    data = b"".join(value.to_bytes(WORD_BYTES, "little") for value in values)
    return data[:length]


@dataclass
class TranscipherRequest:
    """What the client sends to a blind evaluator."""
    nonce: bytes
    counter: int
    ciphertext: bytes
    key_words: List[EncryptedWord]
    evaluation_key: HEEvaluationKey


@dataclass
class TranscipherResponse:
    """Encrypted plaintext words for a message of length bytes."""
    words: List[EncryptedWord]
    length: int


class ClientSession:
    """
    Client side of blind transciphering: owns the secret key.

    Args:
        secret_key: Homomorphic secret key; generated when omitted
        evaluation_key: Matching evaluation key; generated with the secret key
    """

    def __init__(self, secret_key: Optional[HESecretKey] = None,
                 evaluation_key: Optional[HEEvaluationKey] = None):
        if (secret_key is None) != (evaluation_key is None):
            raise TranscipherHeError("secret and evaluation keys must be supplied together")
        if secret_key is None:
            try:
                secret_key, evaluation_key = keygen()
            except HeError as e:
                raise _he_failure("key generation", e) from e
        elif secret_key.key_id != evaluation_key.key_id:
            raise TranscipherHeError("secret and evaluation keys do not belong together")

        self.secret_key = secret_key
        self.evaluation_key = evaluation_key

    def prepare(self, plaintext: bytes, key: Optional[bytes] = None, nonce: Optional[bytes] = None,
                counter: int = 0) -> TranscipherRequest:
        """
        Encrypt plaintext with a (fresh by default) ChaCha20 key and nonce.

        Returns:
            A request carrying the ciphertext, encrypted key words and the
            evaluation key; no secret material.
        """
        key = key if key is not None else ChaCha20Cipher.keygen()
        nonce = nonce if nonce is not None else ChaCha20Cipher.generate_nonce()
        ciphertext, key_words = transcipher_encrypt(key, nonce, self.secret_key, plaintext, counter)
        return TranscipherRequest(
            nonce=bytes(nonce),
            counter=counter,
            ciphertext=ciphertext,
            key_words=key_words,
            evaluation_key=self.evaluation_key,
        )

    def open(self, response: TranscipherResponse) -> bytes:
        """Decrypt the encrypted plaintext words returned by a blind evaluator."""
        try:
            values = [UINT32.decrypt(self.secret_key, word) for word in response.words]
        except HeError as e:
            raise _he_failure("result decryption", e) from e
        return message_from_words(values, response.length)

    def encrypt_words(self, values: Sequence[int]) -> List[EncryptedWord]:
        try:
            return [UINT32.encrypt(self.secret_key, value) for value in values]
        except HeError as e:
            raise _he_failure("word encryption", e) from e

    def decrypt_word(self, word: EncryptedWord) -> int:
        try:
            return UINT32.decrypt(self.secret_key, word)
        except HeError as e:
            raise _he_failure("word decryption", e) from e


class BlindEvaluator:
    """
    Server side of blind transciphering: holds only the evaluation key.

    Args:
        evaluation_key: Client's evaluation key
        max_workers: Threads for evaluating independent keystream blocks
    """

    def __init__(self, evaluation_key: HEEvaluationKey, max_workers: int = 1):
        try:
            self.context = EvaluationContext(evaluation_key)
        except HeError as e:
            raise _he_failure("evaluation context setup", e) from e
        self.engine = HomomorphicChaCha20(self.context, max_workers=max_workers)

    def evaluate(self, request: TranscipherRequest) -> TranscipherResponse:
        """
        Transcipher a request into encrypted plaintext words.

        Raises:
            TranscipherHeError: If the request is malformed or any algebra
                step fails
        """
        if request.evaluation_key.key_id != self.context.key_id:
            raise TranscipherHeError("request was prepared for a different evaluation key")
        try:
            words = self.engine.blind_transcipher(request.ciphertext, request.key_words,
                                                  request.nonce, request.counter)
        except HeError as e:
            raise _he_failure("blind evaluation", e) from e

        log.info(f"Blind evaluation finished: {len(words)} words, "
                 f"{self.context.operation_count} homomorphic operations so far")
        return TranscipherResponse(words=words, length=len(request.ciphertext))

    def aggregate(self, words: Sequence[EncryptedWord]) -> EncryptedWord:
        """Homomorphic sum (mod 2^32) of encrypted words, never decrypted."""
        if not words:
            raise TranscipherHeError("aggregation failed: no words to sum")
        try:
            total = UINT32.encrypt_public(self.context, 0)
            for word in words:
                total = UINT32.add(self.context, total, word)
        except HeError as e:
            raise _he_failure("aggregation", e) from e
        log.info(f"Aggregated {len(words)} encrypted words")
        return total
