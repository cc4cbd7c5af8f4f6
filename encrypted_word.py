"""
Encrypted-Word Algebra

Homomorphic operations over encrypted 32-bit words, with boolean and
ASCII-string variants, evaluated through an explicit evaluation context
instead of a process-wide "active" server key.

Roles:
1. Client - holds the HESecretKey; encrypts and decrypts values
2. Evaluator - holds only the HEEvaluationKey; combines ciphertexts through an
   EvaluationContext and may lift public values into the algebra

Plaintext variants are selected by tag (see create_scheme):
- "u32"   - add/mul mod 2^32, xor/and/or, rotations by a public amount
- "bool"  - and/or/xor/not
- "ascii" - encrypted ASCII strings; arithmetic is unsupported

The bundled "sim" backend seals every plaintext with ChaCha20-Poly1305 under
a key derived (HKDF) from the secret key. It has the exact semantics and the
capability split of a TFHE-style scheme, which is what the transciphering
layers are written against, but it gives no confidentiality against whoever
holds the evaluation key. A lattice backend plugs in behind the same
interface.
"""

import base64
import hashlib
import logging
import os
import secrets
import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

log = logging.getLogger(__name__)

SCHEME_NAME = "sim"
WORD_BITS = 32
WORD_MASK = 0xFFFFFFFF
WORD_BYTES = 4

_SEAL_NONCE_SIZE = 12
_SEAL_TAG_SIZE = 16
_SEAL_KEY_INFO = b"encrypted-word/seal-key/v1"
_KEY_ID_PREFIX = b"encrypted-word/key-id/v1"


class HeError(Exception):
    """Base class for Encrypted-Word Algebra failures."""


class KeyGenError(HeError):
    """Key generation failed."""


class EncryptError(HeError):
    """A value could not be encrypted."""


class DecryptError(HeError):
    """A ciphertext could not be decrypted."""


class EvalError(HeError):
    """A homomorphic operation received operands of the wrong shape."""

    def __init__(self, reason: str):
        super().__init__(f"Evaluation error: {reason}")
        self.reason = reason


class UnsupportedOperation(HeError):
    """The operation has no meaning for the plaintext type."""

    def __init__(self, reason: str):
        super().__init__(f"Unsupported operation: {reason}")
        self.reason = reason


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(text: str) -> bytes:
    if not isinstance(text, str):
        raise TypeError(f"expected a base64 string, got {type(text).__name__}")
    return base64.b64decode(text.encode("ascii"), validate=True)


@dataclass
class HESecretKey:
    """Client key: required to encrypt and decrypt."""
    scheme: str
    key_id: str
    key_data: bytes = field(repr=False)
    created_at: datetime = field(default_factory=datetime.now)


@dataclass
class HEEvaluationKey:
    """Public evaluation key: required to combine ciphertexts."""
    scheme: str
    key_id: str
    key_data: bytes = field(repr=False)
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scheme": self.scheme,
            "key_id": self.key_id,
            "key_data": _b64(self.key_data),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HEEvaluationKey":
        return cls(
            scheme=str(data["scheme"]),
            key_id=str(data["key_id"]),
            key_data=_unb64(data["key_data"]),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


@dataclass
class HECiphertext:
    """Container for one encrypted value, tagged with its scheme and plaintext kind."""
    scheme: str
    kind: str
    key_id: str
    payload: bytes = field(repr=False)
    operation_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scheme": self.scheme,
            "kind": self.kind,
            "key_id": self.key_id,
            "payload": _b64(self.payload),
            "operation_count": self.operation_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HECiphertext":
        return cls(
            scheme=str(data["scheme"]),
            kind=str(data["kind"]),
            key_id=str(data["key_id"]),
            payload=_unb64(data["payload"]),
            operation_count=int(data.get("operation_count", 0)),
        )


# An encrypted 32-bit word is an HECiphertext of kind "u32".
EncryptedWord = HECiphertext


def _derive_seal_key(key_data: bytes) -> bytes:
    hkdf = HKDF(
        algorithm=hashes.SHA256(),
        length=32,
        salt=None,
        info=_SEAL_KEY_INFO,
    )
    return hkdf.derive(key_data)


def _key_id(seal_key: bytes) -> str:
    return hashlib.sha256(_KEY_ID_PREFIX + seal_key).hexdigest()[:16]


def keygen(scheme: str = SCHEME_NAME) -> Tuple[HESecretKey, HEEvaluationKey]:
    """
    Generate a (secret key, evaluation key) pair.

    Args:
        scheme: Backend name; only "sim" is bundled

    Returns:
        Tuple of (secret_key, evaluation_key)

    Raises:
        KeyGenError: If the backend is unknown
    """
    if scheme != SCHEME_NAME:
        raise KeyGenError(f"Unsupported scheme: {scheme}")

    master = secrets.token_bytes(32)
    seal_key = _derive_seal_key(master)
    key_id = _key_id(seal_key)
    created_at = datetime.now()

    secret_key = HESecretKey(scheme=scheme, key_id=key_id, key_data=master, created_at=created_at)
    evaluation_key = HEEvaluationKey(scheme=scheme, key_id=key_id, key_data=seal_key, created_at=created_at)

    log.info(f"Generated encrypted-word keypair (scheme={scheme}, key_id={key_id})")
    return secret_key, evaluation_key


class _Sealer:
    """Seals and opens plaintext payloads for one key id."""

    def __init__(self, scheme: str, key_id: str, seal_key: bytes):
        self.scheme = scheme
        self.key_id = key_id
        self._aead = ChaCha20Poly1305(seal_key)

    def _aad(self, kind: str) -> bytes:
        return f"{self.scheme}|{kind}|{self.key_id}".encode("ascii")

    def seal(self, kind: str, plaintext: bytes, operation_count: int = 0) -> HECiphertext:
        nonce = os.urandom(_SEAL_NONCE_SIZE)
        sealed = self._aead.encrypt(nonce, plaintext, self._aad(kind))
        return HECiphertext(
            scheme=self.scheme,
            kind=kind,
            key_id=self.key_id,
            payload=nonce + sealed,
            operation_count=operation_count,
        )

    def open(self, ciphertext: HECiphertext, kind: str,
             error: Callable[[str], HeError] = EvalError) -> bytes:
        if not isinstance(ciphertext, HECiphertext):
            raise error(f"expected HECiphertext, got {type(ciphertext).__name__}")
        if ciphertext.scheme != self.scheme:
            raise error("ciphertext scheme mismatch")
        if ciphertext.kind != kind:
            raise error(f"expected a {kind} ciphertext, got {ciphertext.kind}")
        if ciphertext.key_id != self.key_id:
            raise error("ciphertext was produced under a different key")
        if len(ciphertext.payload) < _SEAL_NONCE_SIZE + _SEAL_TAG_SIZE:
            raise error("ciphertext payload is truncated")

        nonce = ciphertext.payload[:_SEAL_NONCE_SIZE]
        try:
            return self._aead.decrypt(nonce, ciphertext.payload[_SEAL_NONCE_SIZE:], self._aad(kind))
        except InvalidTag:
            raise error("ciphertext failed its integrity check") from None


def _client_sealer(secret_key: HESecretKey, error: Callable[[str], HeError]) -> _Sealer:
    if not isinstance(secret_key, HESecretKey):
        raise error("operation requires the secret key")
    if secret_key.scheme != SCHEME_NAME:
        raise error(f"Unsupported scheme: {secret_key.scheme}")
    return _Sealer(secret_key.scheme, secret_key.key_id, _derive_seal_key(secret_key.key_data))


class EvaluationContext:
    """
    Evaluation capability built from an HEEvaluationKey.

    Every homomorphic operation takes the context explicitly. The context is
    read-only after construction apart from its operation statistics, which
    are lock-protected so one context can serve concurrent block evaluations.
    """

    def __init__(self, evaluation_key: HEEvaluationKey):
        if not isinstance(evaluation_key, HEEvaluationKey):
            raise EvalError("evaluation context requires an HEEvaluationKey")
        if evaluation_key.scheme != SCHEME_NAME:
            raise EvalError(f"Unsupported scheme: {evaluation_key.scheme}")

        self.evaluation_key = evaluation_key
        self._sealer = _Sealer(evaluation_key.scheme, evaluation_key.key_id, evaluation_key.key_data)
        self._lock = threading.Lock()
        self._stats: Counter = Counter()

        log.debug(f"Evaluation context ready for key_id={evaluation_key.key_id}")

    @property
    def key_id(self) -> str:
        return self.evaluation_key.key_id

    def _open(self, ciphertext: HECiphertext, kind: str) -> bytes:
        return self._sealer.open(ciphertext, kind)

    def seal(self, kind: str, plaintext: bytes, operation_count: int = 0) -> HECiphertext:
        return self._sealer.seal(kind, plaintext, operation_count)

    def record(self, operation: str) -> None:
        with self._lock:
            self._stats[operation] += 1

    @property
    def operation_count(self) -> int:
        with self._lock:
            return sum(self._stats.values())

    def stats(self) -> Dict[str, int]:
        """Return a snapshot of per-operation counts."""
        with self._lock:
            return dict(self._stats)

    def reset_stats(self) -> None:
        with self._lock:
            self._stats.clear()


def _check_word(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise EncryptError(f"32-bit word must be an int, got {type(value).__name__}")
    if not 0 <= value <= WORD_MASK:
        raise EncryptError("value out of range for a 32-bit word")
    return value


def _pack_word(value: int) -> bytes:
    return value.to_bytes(WORD_BYTES, "little")


def _unpack_word(data: bytes) -> int:
    if len(data) != WORD_BYTES:
        raise EvalError("malformed 32-bit word payload")
    return int.from_bytes(data, "little")


def _rotation_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 0:
        raise EvalError("rotation amount must be a non-negative int")
    return amount % WORD_BITS


class Uint32Scheme:
    """Encrypted 32-bit unsigned words; arithmetic wraps modulo 2^32."""

    kind = "u32"

    def encrypt(self, secret_key: HESecretKey, value: int) -> HECiphertext:
        value = _check_word(value)
        return _client_sealer(secret_key, EncryptError).seal(self.kind, _pack_word(value))

    def decrypt(self, secret_key: HESecretKey, ciphertext: HECiphertext) -> int:
        sealer = _client_sealer(secret_key, DecryptError)
        data = sealer.open(ciphertext, self.kind, DecryptError)
        if len(data) != WORD_BYTES:
            raise DecryptError("malformed 32-bit word payload")
        return int.from_bytes(data, "little")

    def encrypt_public(self, ctx: EvaluationContext, value: int) -> HECiphertext:
        """Lift a public value into the algebra using only the evaluation context."""
        value = _check_word(value)
        ctx.record("encrypt_public")
        return ctx.seal(self.kind, _pack_word(value))

    def _binary(self, ctx: EvaluationContext, name: str, a: HECiphertext, b: HECiphertext,
                fn: Callable[[int, int], int]) -> HECiphertext:
        x = _unpack_word(ctx._open(a, self.kind))
        y = _unpack_word(ctx._open(b, self.kind))
        ctx.record(name)
        depth = max(a.operation_count, b.operation_count) + 1
        return ctx.seal(self.kind, _pack_word(fn(x, y) & WORD_MASK), depth)

    def add(self, ctx: EvaluationContext, a: HECiphertext, b: HECiphertext) -> HECiphertext:
        return self._binary(ctx, "add", a, b, lambda x, y: x + y)

    def mul(self, ctx: EvaluationContext, a: HECiphertext, b: HECiphertext) -> HECiphertext:
        return self._binary(ctx, "mul", a, b, lambda x, y: x * y)

    def xor(self, ctx: EvaluationContext, a: HECiphertext, b: HECiphertext) -> HECiphertext:
        return self._binary(ctx, "xor", a, b, lambda x, y: x ^ y)

    def and_(self, ctx: EvaluationContext, a: HECiphertext, b: HECiphertext) -> HECiphertext:
        return self._binary(ctx, "and", a, b, lambda x, y: x & y)

    def or_(self, ctx: EvaluationContext, a: HECiphertext, b: HECiphertext) -> HECiphertext:
        return self._binary(ctx, "or", a, b, lambda x, y: x | y)

    def rotate_left(self, ctx: EvaluationContext, a: HECiphertext, amount: int) -> HECiphertext:
        n = _rotation_amount(amount)
        x = _unpack_word(ctx._open(a, self.kind))
        ctx.record("rotate_left")
        rotated = ((x << n) | (x >> (WORD_BITS - n))) & WORD_MASK
        return ctx.seal(self.kind, _pack_word(rotated), a.operation_count + 1)

    def rotate_right(self, ctx: EvaluationContext, a: HECiphertext, amount: int) -> HECiphertext:
        n = _rotation_amount(amount)
        x = _unpack_word(ctx._open(a, self.kind))
        ctx.record("rotate_right")
        rotated = ((x >> n) | (x << (WORD_BITS - n))) & WORD_MASK
        return ctx.seal(self.kind, _pack_word(rotated), a.operation_count + 1)


class BoolScheme:
    """Encrypted booleans. add maps to OR and mul to AND."""

    kind = "bool"

    def encrypt(self, secret_key: HESecretKey, value: bool) -> HECiphertext:
        if not isinstance(value, bool):
            raise EncryptError(f"expected bool, got {type(value).__name__}")
        return _client_sealer(secret_key, EncryptError).seal(self.kind, bytes([value]))

    def decrypt(self, secret_key: HESecretKey, ciphertext: HECiphertext) -> bool:
        data = _client_sealer(secret_key, DecryptError).open(ciphertext, self.kind, DecryptError)
        if data not in (b"\x00", b"\x01"):
            raise DecryptError("malformed boolean payload")
        return data == b"\x01"

    def _value(self, ctx: EvaluationContext, ct: HECiphertext) -> bool:
        data = ctx._open(ct, self.kind)
        if data not in (b"\x00", b"\x01"):
            raise EvalError("malformed boolean payload")
        return data == b"\x01"

    def _binary(self, ctx: EvaluationContext, name: str, a: HECiphertext, b: HECiphertext,
                fn: Callable[[bool, bool], bool]) -> HECiphertext:
        result = fn(self._value(ctx, a), self._value(ctx, b))
        ctx.record(name)
        depth = max(a.operation_count, b.operation_count) + 1
        return ctx.seal(self.kind, bytes([result]), depth)

    def and_(self, ctx: EvaluationContext, a: HECiphertext, b: HECiphertext) -> HECiphertext:
        return self._binary(ctx, "and", a, b, lambda x, y: x and y)

    def or_(self, ctx: EvaluationContext, a: HECiphertext, b: HECiphertext) -> HECiphertext:
        return self._binary(ctx, "or", a, b, lambda x, y: x or y)

    def xor(self, ctx: EvaluationContext, a: HECiphertext, b: HECiphertext) -> HECiphertext:
        return self._binary(ctx, "xor", a, b, lambda x, y: x != y)

    def not_(self, ctx: EvaluationContext, a: HECiphertext) -> HECiphertext:
        result = not self._value(ctx, a)
        ctx.record("not")
        return ctx.seal(self.kind, bytes([result]), a.operation_count + 1)

    add = or_
    mul = and_


class AsciiStringScheme:
    """Encrypted ASCII strings. Arithmetic has no meaning here."""

    kind = "ascii"

    def encrypt(self, secret_key: HESecretKey, value: str) -> HECiphertext:
        if not isinstance(value, str) or not value.isascii():
            raise EncryptError("expected an ASCII string")
        return _client_sealer(secret_key, EncryptError).seal(self.kind, value.encode("ascii"))

    def decrypt(self, secret_key: HESecretKey, ciphertext: HECiphertext) -> str:
        data = _client_sealer(secret_key, DecryptError).open(ciphertext, self.kind, DecryptError)
        try:
            return data.decode("ascii")
        except UnicodeDecodeError:
            raise DecryptError("malformed string payload") from None

    def add(self, ctx: EvaluationContext, a: HECiphertext, b: HECiphertext) -> HECiphertext:
        raise UnsupportedOperation("add not supported for strings")

    def mul(self, ctx: EvaluationContext, a: HECiphertext, b: HECiphertext) -> HECiphertext:
        raise UnsupportedOperation("mul not supported for strings")

    def length(self, ctx: EvaluationContext, a: HECiphertext) -> HECiphertext:
        """Encrypted length of the string, as a u32 ciphertext."""
        size = len(ctx._open(a, self.kind))
        ctx.record("length")
        return ctx.seal(Uint32Scheme.kind, _pack_word(size & WORD_MASK), a.operation_count + 1)

    def is_empty(self, ctx: EvaluationContext, a: HECiphertext) -> HECiphertext:
        """Encrypted emptiness flag, as a bool ciphertext."""
        empty = len(ctx._open(a, self.kind)) == 0
        ctx.record("is_empty")
        return ctx.seal(BoolScheme.kind, bytes([empty]), a.operation_count + 1)


class ArxAlgebra(Protocol):
    """Operations an add-rotate-xor keystream evaluator needs from a word scheme."""

    def encrypt(self, secret_key: HESecretKey, value: int) -> HECiphertext: ...

    def encrypt_public(self, ctx: EvaluationContext, value: int) -> HECiphertext: ...

    def add(self, ctx: EvaluationContext, a: HECiphertext, b: HECiphertext) -> HECiphertext: ...

    def xor(self, ctx: EvaluationContext, a: HECiphertext, b: HECiphertext) -> HECiphertext: ...

    def and_(self, ctx: EvaluationContext, a: HECiphertext, b: HECiphertext) -> HECiphertext: ...

    def rotate_left(self, ctx: EvaluationContext, a: HECiphertext, amount: int) -> HECiphertext: ...


UINT32 = Uint32Scheme()
BOOL = BoolScheme()
ASCII = AsciiStringScheme()

_SCHEMES = {
    Uint32Scheme.kind: UINT32,
    BoolScheme.kind: BOOL,
    AsciiStringScheme.kind: ASCII,
}


def create_scheme(kind: str = Uint32Scheme.kind):
    """
    Return the scheme variant for a plaintext kind.

    Args:
        kind: "u32", "bool" or "ascii"

    Returns:
        The scheme instance for that kind

    Raises:
        UnsupportedOperation: If the kind is unknown
    """
    scheme: Optional[object] = _SCHEMES.get(kind)
    if scheme is None:
        raise UnsupportedOperation(f"unknown plaintext kind: {kind}")
    return scheme
