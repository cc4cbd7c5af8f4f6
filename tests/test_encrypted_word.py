"""
Tests for the Encrypted-Word Algebra: key generation, the three plaintext
variants and the explicit evaluation context.
"""

import os
import sys
import unittest

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from encrypted_word import (ASCII, BOOL, UINT32, DecryptError, EncryptError, EvalError,
                            EvaluationContext, HECiphertext, HEEvaluationKey, KeyGenError,
                            UnsupportedOperation, create_scheme, keygen)


class TestKeyGeneration(unittest.TestCase):

    def test_keypair_shares_key_id(self):
        sk, ek = keygen()
        self.assertEqual(sk.key_id, ek.key_id)
        self.assertEqual(sk.scheme, "sim")
        self.assertNotEqual(sk.key_data, ek.key_data)

    def test_unknown_scheme(self):
        with self.assertRaises(KeyGenError):
            keygen("lattice-x")

    def test_key_material_not_in_repr(self):
        sk, ek = keygen()
        self.assertNotIn(repr(sk.key_data), repr(sk))
        self.assertNotIn(repr(ek.key_data), repr(ek))

    def test_evaluation_key_dict_roundtrip(self):
        _, ek = keygen()
        restored = HEEvaluationKey.from_dict(ek.to_dict())
        self.assertEqual(restored.key_id, ek.key_id)
        self.assertEqual(restored.key_data, ek.key_data)

    def test_from_dict_rejects_non_string_fields(self):
        sk, ek = keygen()
        with self.assertRaises(TypeError):
            HEEvaluationKey.from_dict(dict(ek.to_dict(), key_data=7))
        ct = UINT32.encrypt(sk, 1)
        with self.assertRaises(TypeError):
            HECiphertext.from_dict(dict(ct.to_dict(), payload=5))


class TestUint32Scheme(unittest.TestCase):

    def setUp(self):
        self.sk, self.ek = keygen()
        self.ctx = EvaluationContext(self.ek)

    def enc(self, value):
        return UINT32.encrypt(self.sk, value)

    def dec(self, ct):
        return UINT32.decrypt(self.sk, ct)

    def test_encrypt_decrypt(self):
        for value in (0, 1, 0xDEADBEEF, 0xFFFFFFFF):
            self.assertEqual(self.dec(self.enc(value)), value)

    def test_encryption_is_randomized(self):
        self.assertNotEqual(self.enc(7).payload, self.enc(7).payload)

    def test_out_of_range_values(self):
        for value in (-1, 1 << 32, True, "1"):
            with self.assertRaises(EncryptError):
                self.enc(value)

    def test_add_wraps(self):
        ct = UINT32.add(self.ctx, self.enc(0xFFFFFFFF), self.enc(2))
        self.assertEqual(self.dec(ct), 1)

    def test_mul_wraps(self):
        ct = UINT32.mul(self.ctx, self.enc(0x10000), self.enc(0x10001))
        self.assertEqual(self.dec(ct), 0x10000)

    def test_bitwise(self):
        a, b = self.enc(0b1100), self.enc(0b1010)
        self.assertEqual(self.dec(UINT32.xor(self.ctx, a, b)), 0b0110)
        self.assertEqual(self.dec(UINT32.and_(self.ctx, a, b)), 0b1000)
        self.assertEqual(self.dec(UINT32.or_(self.ctx, a, b)), 0b1110)

    def test_rotations(self):
        ct = self.enc(0x80000001)
        self.assertEqual(self.dec(UINT32.rotate_left(self.ctx, ct, 1)), 0x00000003)
        self.assertEqual(self.dec(UINT32.rotate_right(self.ctx, ct, 1)), 0xC0000000)
        self.assertEqual(self.dec(UINT32.rotate_left(self.ctx, ct, 32)), 0x80000001)
        self.assertEqual(self.dec(UINT32.rotate_left(self.ctx, ct, 0)), 0x80000001)

    def test_negative_rotation(self):
        with self.assertRaises(EvalError):
            UINT32.rotate_left(self.ctx, self.enc(1), -1)

    def test_encrypt_public_needs_only_context(self):
        ct = UINT32.encrypt_public(self.ctx, 0x61707865)
        self.assertEqual(self.dec(ct), 0x61707865)

    def test_operation_depth_and_stats(self):
        a = self.enc(1)
        b = UINT32.add(self.ctx, a, a)
        c = UINT32.xor(self.ctx, b, a)
        self.assertEqual(c.operation_count, 2)
        self.assertEqual(self.ctx.stats(), {"add": 1, "xor": 1})
        self.assertEqual(self.ctx.operation_count, 2)
        self.ctx.reset_stats()
        self.assertEqual(self.ctx.operation_count, 0)

    def test_foreign_key_rejected(self):
        other_sk, _ = keygen()
        foreign = UINT32.encrypt(other_sk, 5)
        with self.assertRaises(EvalError):
            UINT32.add(self.ctx, foreign, self.enc(1))
        with self.assertRaises(DecryptError):
            self.dec(foreign)

    def test_tampered_payload_rejected(self):
        ct = self.enc(5)
        tampered = HECiphertext(ct.scheme, ct.kind, ct.key_id, ct.payload[:-1] + bytes([ct.payload[-1] ^ 1]))
        with self.assertRaises(DecryptError):
            self.dec(tampered)
        with self.assertRaises(EvalError):
            UINT32.add(self.ctx, tampered, ct)

    def test_kind_mismatch(self):
        with self.assertRaises(EvalError):
            UINT32.add(self.ctx, self.enc(1), BOOL.encrypt(self.sk, True))

    def test_ciphertext_dict_roundtrip(self):
        ct = UINT32.add(self.ctx, self.enc(40), self.enc(2))
        restored = HECiphertext.from_dict(ct.to_dict())
        self.assertEqual(self.dec(restored), 42)
        self.assertEqual(restored.operation_count, 1)

    def test_context_requires_evaluation_key(self):
        with self.assertRaises(EvalError):
            EvaluationContext(self.sk)

    def test_context_exposes_no_open(self):
        self.assertFalse(hasattr(self.ctx, "open"))


class TestBoolScheme(unittest.TestCase):

    def setUp(self):
        self.sk, ek = keygen()
        self.ctx = EvaluationContext(ek)
        self.t = BOOL.encrypt(self.sk, True)
        self.f = BOOL.encrypt(self.sk, False)

    def test_truth_table(self):
        dec = lambda ct: BOOL.decrypt(self.sk, ct)
        self.assertTrue(dec(BOOL.or_(self.ctx, self.t, self.f)))
        self.assertFalse(dec(BOOL.and_(self.ctx, self.t, self.f)))
        self.assertTrue(dec(BOOL.xor(self.ctx, self.t, self.f)))
        self.assertFalse(dec(BOOL.xor(self.ctx, self.t, self.t)))
        self.assertFalse(dec(BOOL.not_(self.ctx, self.t)))

    def test_add_and_mul_aliases(self):
        self.assertTrue(BOOL.decrypt(self.sk, BOOL.add(self.ctx, self.t, self.f)))
        self.assertFalse(BOOL.decrypt(self.sk, BOOL.mul(self.ctx, self.t, self.f)))

    def test_rejects_non_bool(self):
        with self.assertRaises(EncryptError):
            BOOL.encrypt(self.sk, 1)


class TestAsciiStringScheme(unittest.TestCase):

    def setUp(self):
        self.sk, ek = keygen()
        self.ctx = EvaluationContext(ek)

    def test_roundtrip(self):
        ct = ASCII.encrypt(self.sk, "hello")
        self.assertEqual(ASCII.decrypt(self.sk, ct), "hello")

    def test_non_ascii_rejected(self):
        with self.assertRaises(EncryptError):
            ASCII.encrypt(self.sk, "héllo")

    def test_arithmetic_unsupported(self):
        a = ASCII.encrypt(self.sk, "a")
        with self.assertRaises(UnsupportedOperation):
            ASCII.add(self.ctx, a, a)
        with self.assertRaises(UnsupportedOperation):
            ASCII.mul(self.ctx, a, a)

    def test_length_and_is_empty(self):
        ct = ASCII.encrypt(self.sk, "abcd")
        self.assertEqual(UINT32.decrypt(self.sk, ASCII.length(self.ctx, ct)), 4)
        self.assertFalse(BOOL.decrypt(self.sk, ASCII.is_empty(self.ctx, ct)))
        empty = ASCII.encrypt(self.sk, "")
        self.assertTrue(BOOL.decrypt(self.sk, ASCII.is_empty(self.ctx, empty)))


class TestCreateScheme(unittest.TestCase):

    def test_known_kinds(self):
        self.assertIs(create_scheme("u32"), UINT32)
        self.assertIs(create_scheme("bool"), BOOL)
        self.assertIs(create_scheme("ascii"), ASCII)
        self.assertIs(create_scheme(), UINT32)

    def test_unknown_kind(self):
        with self.assertRaises(UnsupportedOperation):
            create_scheme("u64")


if __name__ == "__main__":
    unittest.main()
