"""
ChaCha20 Transciphering Test Suite

One module per component: encrypted-word algebra, ChaCha20 reference cipher,
homomorphic block evaluator, transciphering protocol, wire protocol and the
asyncio node. Run with `python -m unittest discover tests` or pytest.
"""

# Version of the test suite
__version__ = '1.0.0'

# Test categories available
TEST_CATEGORIES = [
    'encrypted_word',
    'chacha20_cipher',
    'homomorphic_chacha',
    'transciphering',
    'wire_protocol',
    'transcipher_node',
]
