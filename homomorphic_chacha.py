"""
Homomorphic ChaCha20 keystream evaluation.

Replays the ChaCha20 block function word for word with Encrypted-Word Algebra
operations: every "+", "^" and "<<<" on a state word becomes the algebra's
add, xor and rotate_left, so the keystream is produced without the evaluator
ever seeing the key.

High-level idea:
- The keystream block is a deterministic function of
  constants || key || counter || nonce (16 words).
- The key arrives as 8 encrypted words; constants, counter and nonce are
  public and are lifted into the algebra by an encoder.
- After 10 double-rounds the initial state is added back homomorphically.
- XOR-ing a ciphertext word with the encrypted keystream word yields the
  plaintext word, still encrypted; only the secret-key holder can open it.

Encoders:
- public (default): encrypt_public on the evaluation context; the evaluator
  needs nothing but the evaluation key
- secret: encrypt with the client's secret key, for the case where the party
  holding the secret key runs the evaluation itself
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, List, Optional, Sequence

from chacha20_cipher import (CHACHA20_CONSTANTS, COLUMN_ROUND, DIAGONAL_ROUND,
                             DOUBLE_ROUNDS, NONCE_SIZE, WORD_MASK, blocks_for,
                             bytes_to_words)
from encrypted_word import (UINT32, ArxAlgebra, DecryptError, EncryptedWord,
                            EvalError, EvaluationContext, HESecretKey)

log = logging.getLogger(__name__)

KEY_WORDS = 8
STATE_WORDS = 16
WORD_BYTES = 4

Encoder = Callable[[int], EncryptedWord]


def _check_key_words(key_words: Optional[Sequence[EncryptedWord]]) -> None:
    if key_words is None or len(key_words) != KEY_WORDS:
        raise EvalError("Invalid encrypted key length")


def _check_nonce(nonce: bytes) -> None:
    if not isinstance(nonce, (bytes, bytearray)) or len(nonce) != NONCE_SIZE:
        raise EvalError(f"nonce must be {NONCE_SIZE} bytes")


def _check_counter(counter: int, blocks: int = 1) -> None:
    if isinstance(counter, bool) or not isinstance(counter, int) or not 0 <= counter <= WORD_MASK:
        raise EvalError("counter must be a 32-bit unsigned integer")
    if counter + blocks - 1 > WORD_MASK:
        raise EvalError("message would overflow the 32-bit block counter")


class HomomorphicChaCha20:
    """
    ChaCha20 block function evaluated over encrypted words.

    Args:
        context: Evaluation context built from the evaluation key
        algebra: Word scheme providing add/xor/rotate (defaults to u32)
        max_workers: Thread pool size for evaluating independent blocks
    """

    def __init__(self, context: EvaluationContext, algebra: ArxAlgebra = UINT32, max_workers: int = 1):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.context = context
        self.algebra = algebra
        self.max_workers = max_workers

    def public_encoder(self) -> Encoder:
        return lambda value: self.algebra.encrypt_public(self.context, value)

    def secret_encoder(self, secret_key: HESecretKey) -> Encoder:
        return lambda value: self.algebra.encrypt(secret_key, value)

    def quarter_round(self, state: List[EncryptedWord], a: int, b: int, c: int, d: int) -> None:
        """
        Homomorphic quarter-round on state[a], state[b], state[c], state[d]:

            a += b; d ^= a; d <<<= 16
            c += d; b ^= c; b <<<= 12
            a += b; d ^= a; d <<<= 8
            c += d; b ^= c; b <<<= 7
        """
        ctx = self.context
        add, xor, rotl = self.algebra.add, self.algebra.xor, self.algebra.rotate_left

        state[a] = add(ctx, state[a], state[b])
        state[d] = rotl(ctx, xor(ctx, state[d], state[a]), 16)
        state[c] = add(ctx, state[c], state[d])
        state[b] = rotl(ctx, xor(ctx, state[b], state[c]), 12)
        state[a] = add(ctx, state[a], state[b])
        state[d] = rotl(ctx, xor(ctx, state[d], state[a]), 8)
        state[c] = add(ctx, state[c], state[d])
        state[b] = rotl(ctx, xor(ctx, state[b], state[c]), 7)

    def double_round(self, state: List[EncryptedWord]) -> None:
        for a, b, c, d in COLUMN_ROUND:
            self.quarter_round(state, a, b, c, d)
        for a, b, c, d in DIAGONAL_ROUND:
            self.quarter_round(state, a, b, c, d)

    def build_state(self, key_words: Sequence[EncryptedWord], counter: int, nonce: bytes,
                    encoder: Encoder) -> List[EncryptedWord]:
        """Lay out [constant0..3, key0..7, counter, nonce0..2] in the algebra."""
        state = [encoder(c) for c in CHACHA20_CONSTANTS]
        state.extend(key_words)
        state.append(encoder(counter))
        state.extend(encoder(w) for w in bytes_to_words(bytes(nonce)))
        return state

    def keystream_block(self, key_words: Sequence[EncryptedWord], counter: int, nonce: bytes,
                        encoder: Optional[Encoder] = None) -> List[EncryptedWord]:
        """
        Evaluate one keystream block homomorphically.

        Args:
            key_words: Exactly 8 encrypted key words (little-endian word order)
            counter: 32-bit block counter
            nonce: 12-byte nonce
            encoder: Lifts public words into the algebra; defaults to the
                public encoder

        Returns:
            16 encrypted keystream words

        Raises:
            EvalError: On a wrong key-word count, nonce size or counter range,
                before any algebra call
        """
        _check_key_words(key_words)
        _check_nonce(nonce)
        _check_counter(counter)
        encoder = encoder or self.public_encoder()

        initial = self.build_state(key_words, counter, nonce, encoder)
        state = list(initial)
        for _ in range(DOUBLE_ROUNDS):
            self.double_round(state)

        keystream = [self.algebra.add(self.context, s, i) for s, i in zip(state, initial)]
        log.debug(f"Evaluated homomorphic keystream block (counter={counter})")
        return keystream

    def keystream_blocks(self, key_words: Sequence[EncryptedWord], nonce: bytes, counters: Sequence[int],
                         encoder: Optional[Encoder] = None) -> List[List[EncryptedWord]]:
        """
        Evaluate several independent blocks, in parallel when max_workers > 1.

        Results are returned in the order of counters.
        """
        _check_key_words(key_words)
        _check_nonce(nonce)
        counters = list(counters)
        for counter in counters:
            _check_counter(counter)
        encoder = encoder or self.public_encoder()

        if self.max_workers == 1 or len(counters) <= 1:
            return [self.keystream_block(key_words, c, nonce, encoder) for c in counters]

        workers = min(self.max_workers, len(counters))
        log.debug(f"Evaluating {len(counters)} keystream blocks on {workers} workers")
        with ThreadPoolExecutor(max_workers=workers) as pool:
            return list(pool.map(lambda c: self.keystream_block(key_words, c, nonce, encoder), counters))

    def _first_word(self, ciphertext: bytes) -> int:
        if ciphertext is None or len(ciphertext) < WORD_BYTES:
            raise DecryptError("ciphertext shorter than one 32-bit word")
        return int.from_bytes(bytes(ciphertext[:WORD_BYTES]), "little")

    def homomorphic_decrypt(self, ciphertext: bytes, key_words: Sequence[EncryptedWord],
                            secret_key: HESecretKey, nonce: bytes = bytes(NONCE_SIZE),
                            counter: int = 0) -> EncryptedWord:
        """
        Turn the first ciphertext word into an encrypted plaintext word,
        lifting public values with the secret key.

        Args:
            ciphertext: ChaCha20 ciphertext; only the first 4 bytes are used
            key_words: Exactly 8 encrypted key words
            secret_key: Client secret key used to encrypt the public words
            nonce: 12-byte nonce the ciphertext was produced with
            counter: Block counter of the first ciphertext block

        Returns:
            Encrypted plaintext word

        Raises:
            EvalError: If key_words does not hold 8 words
            DecryptError: If ciphertext is shorter than 4 bytes
        """
        _check_key_words(key_words)
        ct_value = self._first_word(ciphertext)
        encoder = self.secret_encoder(secret_key)

        keystream = self.keystream_block(key_words, counter, nonce, encoder)
        return self.algebra.xor(self.context, encoder(ct_value), keystream[0])

    def blind_decrypt_word(self, ciphertext: bytes, key_words: Sequence[EncryptedWord],
                           nonce: bytes = bytes(NONCE_SIZE), counter: int = 0) -> EncryptedWord:
        """Same as homomorphic_decrypt, using only the evaluation context."""
        _check_key_words(key_words)
        ct_value = self._first_word(ciphertext)
        encoder = self.public_encoder()

        keystream = self.keystream_block(key_words, counter, nonce, encoder)
        return self.algebra.xor(self.context, encoder(ct_value), keystream[0])

    def blind_transcipher(self, ciphertext: bytes, key_words: Sequence[EncryptedWord],
                          nonce: bytes, counter: int = 0) -> List[EncryptedWord]:
        """
        Transcipher a whole ChaCha20 ciphertext into encrypted plaintext words.

        A trailing partial word is zero-padded before the XOR and masked
        afterwards, so it carries only the remaining plaintext bytes.

        Args:
            ciphertext: ChaCha20 ciphertext of any length
            key_words: Exactly 8 encrypted key words
            nonce: 12-byte nonce
            counter: Block counter of the first ciphertext block

        Returns:
            ceil(len(ciphertext) / 4) encrypted little-endian plaintext words
        """
        _check_key_words(key_words)
        _check_nonce(nonce)
        ciphertext = bytes(ciphertext)
        block_count = blocks_for(len(ciphertext))
        _check_counter(counter, max(block_count, 1))
        if not ciphertext:
            return []

        blocks = self.keystream_blocks(key_words, nonce, range(counter, counter + block_count))
        keystream = [word for block in blocks for word in block]

        ctx = self.context
        encode = self.public_encoder()
        words = []
        for index in range(0, len(ciphertext), WORD_BYTES):
            chunk = ciphertext[index:index + WORD_BYTES]
            ct_word = encode(int.from_bytes(chunk.ljust(WORD_BYTES, b"\x00"), "little"))
            word = self.algebra.xor(ctx, ct_word, keystream[index // WORD_BYTES])
            if len(chunk) < WORD_BYTES:
                mask = (1 << (8 * len(chunk))) - 1
                word = self.algebra.and_(ctx, word, encode(mask))
            words.append(word)

        log.info(f"Blind transciphering produced {len(words)} encrypted words "
                 f"from {len(ciphertext)} bytes ({block_count} keystream blocks)")
        return words
