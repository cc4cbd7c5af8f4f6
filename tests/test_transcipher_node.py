"""
End-to-end tests for the transciphering server and client over loopback,
plus configuration and command-line handling.
"""

import asyncio
import io
import json
import os
import sys
import unittest
from contextlib import redirect_stdout

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from transcipher_config import TranscipherConfig
from transcipher_node import RemoteError, TranscipherClient, TranscipherServer, build_parser, main, run_demo
from wire_protocol import (LENGTH_HEADER, MessageType, decode_message, encode_frame,
                           encode_request, receive_frame)


class TestServerClient(unittest.IsolatedAsyncioTestCase):

    async def asyncSetUp(self):
        self.server = TranscipherServer(TranscipherConfig(port=0, max_workers=2, timeout=10.0))
        await self.server.start()
        self.client = TranscipherClient("127.0.0.1", self.server.port, timeout=10.0)

    async def asyncTearDown(self):
        await self.server.close()

    async def test_transcipher_roundtrip(self):
        message = b"The quick brown fox jumps over the lazy dog"
        self.assertEqual(await self.client.transcipher(message), message)

    async def test_multi_block_message(self):
        message = os.urandom(100)
        self.assertEqual(await self.client.transcipher(message, counter=1), message)

    async def test_aggregate(self):
        self.assertEqual(await self.client.aggregate([10, 20, 12]), 42)

    async def test_error_frame_names_exception(self):
        with self.assertRaises(RemoteError) as cm:
            await self.client.aggregate([])
        self.assertEqual(cm.exception.error_name, "TranscipherHeError")

    async def test_foreign_key_words_rejected(self):
        other = TranscipherClient("127.0.0.1", self.server.port)
        request = self.client.session.prepare(b"data")
        request.key_words = other.session.prepare(b"data").key_words
        reader, writer = await asyncio.open_connection("127.0.0.1", self.server.port)
        writer.write(encode_frame(encode_request(request)))
        await writer.drain()
        msg_type, body = decode_message(await receive_frame(reader))
        writer.close()
        await writer.wait_closed()
        self.assertIs(msg_type, MessageType.ERROR)
        self.assertEqual(body["error"], "TranscipherHeError")

    async def test_several_requests_on_one_connection(self):
        reader, writer = await asyncio.open_connection("127.0.0.1", self.server.port)
        for text in (b"one", b"two"):
            request = self.client.session.prepare(text)
            writer.write(encode_frame(encode_request(request)))
            await writer.drain()
            msg_type, _ = decode_message(await receive_frame(reader))
            self.assertIs(msg_type, MessageType.TRANSCIPHER_RESPONSE)
        writer.close()
        await writer.wait_closed()

    async def test_malformed_payload_gets_protocol_error(self):
        reader, writer = await asyncio.open_connection("127.0.0.1", self.server.port)
        writer.write(encode_frame(b"not json"))
        await writer.drain()
        msg_type, body = decode_message(await receive_frame(reader))
        self.assertIs(msg_type, MessageType.ERROR)
        self.assertEqual(body["error"], "ProtocolError")
        writer.close()
        await writer.wait_closed()

    async def test_non_string_key_data_gets_protocol_error(self):
        body = json.loads(encode_request(self.client.session.prepare(b"data")))
        body["evaluation_key"]["key_data"] = 7
        reader, writer = await asyncio.open_connection("127.0.0.1", self.server.port)
        writer.write(encode_frame(json.dumps(body).encode("utf-8")))
        await writer.drain()
        msg_type, reply = decode_message(await receive_frame(reader))
        self.assertIs(msg_type, MessageType.ERROR)
        self.assertEqual(reply["error"], "ProtocolError")

        # the connection stays usable after a rejected payload
        writer.write(encode_frame(encode_request(self.client.session.prepare(b"next"))))
        await writer.drain()
        msg_type, _ = decode_message(await receive_frame(reader))
        self.assertIs(msg_type, MessageType.TRANSCIPHER_RESPONSE)
        writer.close()
        await writer.wait_closed()

    async def test_oversized_frame_closes_connection(self):
        reader, writer = await asyncio.open_connection("127.0.0.1", self.server.port)
        writer.write(LENGTH_HEADER.pack(TranscipherConfig.max_frame_size + 1))
        await writer.drain()
        msg_type, body = decode_message(await receive_frame(reader))
        self.assertEqual(body["error"], "ProtocolError")
        self.assertIsNone(await receive_frame(reader))
        writer.close()
        await writer.wait_closed()


class TestConfig(unittest.TestCase):

    def test_defaults(self):
        config = TranscipherConfig.from_env({})
        self.assertEqual(config.host, "127.0.0.1")
        self.assertEqual(config.port, 4000)
        self.assertEqual(config.max_workers, 4)
        self.assertEqual(config.max_frame_size, 64 * 1024 * 1024)
        self.assertEqual(config.log_level, "INFO")

    def test_environment_overrides(self):
        config = TranscipherConfig.from_env({
            "TRANSCIPHER_HOST": "0.0.0.0",
            "TRANSCIPHER_PORT": "5001",
            "TRANSCIPHER_MAX_WORKERS": "8",
            "TRANSCIPHER_TIMEOUT": "2.5",
            "TRANSCIPHER_LOG_LEVEL": "debug",
        })
        self.assertEqual((config.host, config.port, config.max_workers), ("0.0.0.0", 5001, 8))
        self.assertEqual(config.timeout, 2.5)
        self.assertEqual(config.log_level, "DEBUG")

    def test_invalid_values(self):
        for env in ({"TRANSCIPHER_PORT": "http"}, {"TRANSCIPHER_PORT": "70000"},
                    {"TRANSCIPHER_MAX_WORKERS": "0"}, {"TRANSCIPHER_LOG_LEVEL": "LOUD"}):
            with self.assertRaises(ValueError):
                TranscipherConfig.from_env(env)


class TestCommandLine(unittest.TestCase):

    def test_parser_subcommands(self):
        parser = build_parser()
        args = parser.parse_args(["client", "--message", "hi", "--aggregate", "1", "2"])
        self.assertEqual((args.command, args.message, args.aggregate), ("client", "hi", [1, 2]))
        args = parser.parse_args(["server", "--port", "0"])
        self.assertEqual(args.port, 0)

    def test_demo_recovers_message(self):
        with redirect_stdout(io.StringIO()):
            self.assertTrue(run_demo(b"demo message"))
            self.assertEqual(main(["demo", "--message", "hello"]), 0)


if __name__ == "__main__":
    unittest.main()
