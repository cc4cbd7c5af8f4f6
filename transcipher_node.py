"""
Transciphering node: asyncio TCP server, client and command-line entry point.

The server plays the blind evaluator. It accepts framed requests carrying a
ChaCha20 ciphertext, the encrypted key words and the client's evaluation key,
runs the homomorphic evaluation off the event loop and returns encrypted
plaintext words. It never sees a secret key.

Usage:
    transcipher server [--host H] [--port P] [--max-workers N]
    transcipher client --message TEXT [--aggregate N ...]
    transcipher demo [--message TEXT]
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional, Sequence, Tuple

from encrypted_word import HeError
from transcipher_config import LOG_LEVELS, TranscipherConfig
from transciphering import (BlindEvaluator, ClientSession, TranscipherError,
                            format_binary, transcipher_decrypt)
from wire_protocol import (MessageType, ProtocolError, decode_aggregate_request,
                           decode_aggregate_response, decode_message, decode_request,
                           decode_response, encode_aggregate_request, encode_aggregate_response,
                           encode_error, encode_request, encode_response, receive_frame,
                           send_frame)

log = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s [%(levelname)s] [%(filename)s:%(lineno)d] %(message)s'

# ANSI colors for CLI output
GREEN = '\033[92m'
YELLOW = '\033[93m'
RED = '\033[91m'
CYAN = '\033[96m'
RESET = '\033[0m'


class RemoteError(ProtocolError):
    """The server answered with an error frame."""

    def __init__(self, error_name: str):
        super().__init__(f"server reported {error_name}")
        self.error_name = error_name


class TranscipherServer:
    """
    Blind-evaluation server.

    Each connection may carry any number of request frames; every request is
    answered with exactly one frame, either the result or an error frame
    naming the exception class.
    """

    def __init__(self, config: Optional[TranscipherConfig] = None):
        self.config = config or TranscipherConfig()
        self._server: Optional[asyncio.AbstractServer] = None

    @property
    def port(self) -> int:
        if self._server is None or not self._server.sockets:
            raise RuntimeError("server is not running")
        return self._server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle_connection, self.config.host, self.config.port)
        log.info(f"Transciphering server listening on {self.config.host}:{self.port}")

    async def serve_forever(self) -> None:
        if self._server is None:
            await self.start()
        async with self._server:
            await self._server.serve_forever()

    async def close(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
            log.info("Transciphering server stopped")

    async def _handle_connection(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peer = writer.get_extra_info("peername")
        log.info(f"Connection from {peer}")
        try:
            while True:
                try:
                    payload = await receive_frame(reader, self.config.max_frame_size, self.config.timeout)
                except ProtocolError as e:
                    # The stream can no longer be trusted to be aligned on a frame
                    log.warning(f"Framing error from {peer}: {e}")
                    await self._send_error(writer, e)
                    break
                if payload is None:
                    break

                try:
                    reply = await self._dispatch(payload)
                except (ProtocolError, TranscipherError) as e:
                    log.warning(f"Request from {peer} failed: {type(e).__name__}: {e}")
                    await self._send_error(writer, e)
                    continue
                await send_frame(writer, reply, self.config.timeout)
        except ProtocolError as e:
            log.warning(f"Could not reply to {peer}: {e}")
        except OSError as e:
            log.warning(f"Connection with {peer} lost: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass
            log.info(f"Connection from {peer} closed")

    async def _send_error(self, writer: asyncio.StreamWriter, error: Exception) -> None:
        await send_frame(writer, encode_error(type(error).__name__), self.config.timeout)

    async def _dispatch(self, payload: bytes) -> bytes:
        msg_type, body = decode_message(payload)
        loop = asyncio.get_running_loop()

        if msg_type is MessageType.TRANSCIPHER_REQUEST:
            request = decode_request(body)
            evaluator = BlindEvaluator(request.evaluation_key, self.config.max_workers)
            log.info(f"Transciphering {len(request.ciphertext)} bytes "
                     f"(nonce={format_binary(request.nonce)}, counter={request.counter})")
            response = await loop.run_in_executor(None, evaluator.evaluate, request)
            return encode_response(response)

        if msg_type is MessageType.AGGREGATE_REQUEST:
            evaluation_key, words = decode_aggregate_request(body)
            evaluator = BlindEvaluator(evaluation_key)
            total = await loop.run_in_executor(None, evaluator.aggregate, words)
            return encode_aggregate_response(total)

        raise ProtocolError(f"unexpected message type: {msg_type.value}")


class TranscipherClient:
    """
    Client for a TranscipherServer. Owns the ClientSession and therefore the
    secret key; only ciphertexts and the evaluation key leave this object.
    """

    def __init__(self, host: str = "127.0.0.1", port: int = 4000, session: Optional[ClientSession] = None,
                 timeout: float = 60.0, max_frame_size: Optional[int] = None):
        self.host = host
        self.port = port
        self.session = session or ClientSession()
        self.timeout = timeout
        self.max_frame_size = max_frame_size or TranscipherConfig.max_frame_size

    async def _exchange(self, payload: bytes) -> Tuple[MessageType, dict]:
        reader, writer = await asyncio.wait_for(asyncio.open_connection(self.host, self.port),
                                                timeout=self.timeout)
        try:
            await send_frame(writer, payload, self.timeout)
            reply = await receive_frame(reader, self.max_frame_size, self.timeout)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError:
                pass

        if reply is None:
            raise ProtocolError("server closed the connection without replying")
        msg_type, body = decode_message(reply)
        if msg_type is MessageType.ERROR:
            raise RemoteError(str(body.get("error", "unknown")))
        return msg_type, body

    def _expect(self, msg_type: MessageType, expected: MessageType) -> None:
        if msg_type is not expected:
            raise ProtocolError(f"expected {expected.value}, got {msg_type.value}")

    async def transcipher(self, plaintext: bytes, key: Optional[bytes] = None, nonce: Optional[bytes] = None,
                          counter: int = 0) -> bytes:
        """
        Send plaintext through the server and open the result.

        The plaintext leaves this process only as a ChaCha20 ciphertext; the
        server answers with homomorphically encrypted words that are
        decrypted here.
        """
        request = self.session.prepare(plaintext, key=key, nonce=nonce, counter=counter)
        msg_type, body = await self._exchange(encode_request(request))
        self._expect(msg_type, MessageType.TRANSCIPHER_RESPONSE)
        return self.session.open(decode_response(body))

    async def aggregate(self, values: Sequence[int]) -> int:
        """Have the server sum encrypted words; returns the decrypted sum mod 2^32."""
        words = self.session.encrypt_words(values)
        payload = encode_aggregate_request(self.session.evaluation_key, words)
        msg_type, body = await self._exchange(payload)
        self._expect(msg_type, MessageType.AGGREGATE_RESPONSE)
        return self.session.decrypt_word(decode_aggregate_response(body))


def run_demo(message: bytes, max_workers: int = 1) -> bool:
    """Run both transciphering modes in-process and report whether they agree."""
    session = ClientSession()

    request = session.prepare(message)
    recombined = transcipher_decrypt(request.nonce, session.secret_key, request.key_words,
                                     request.ciphertext, request.counter)
    print(f"{CYAN}Ciphertext:{RESET} {format_binary(request.ciphertext, 16)}")
    print(f"{CYAN}Key recombination:{RESET} {recombined!r}")

    evaluator = BlindEvaluator(session.evaluation_key, max_workers)
    blind = session.open(evaluator.evaluate(request))
    print(f"{CYAN}Blind evaluation:{RESET} {blind!r}")
    print(f"{CYAN}Homomorphic operations:{RESET} {evaluator.context.stats()}")

    ok = recombined == message and blind == message
    if ok:
        print(f"{GREEN}Both modes recovered the plaintext.{RESET}")
    else:
        print(f"{RED}Plaintext mismatch.{RESET}")
    return ok


async def run_client(config: TranscipherConfig, message: bytes, values: List[int]) -> None:
    client = TranscipherClient(config.host, config.port, timeout=config.timeout,
                               max_frame_size=config.max_frame_size)
    recovered = await client.transcipher(message)
    print(f"{GREEN}Server transciphered {len(message)} bytes:{RESET} {recovered!r}")
    if values:
        total = await client.aggregate(values)
        print(f"{GREEN}Encrypted sum of {values}:{RESET} {total}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="transcipher", description="ChaCha20 transciphering node")
    parser.add_argument("--log-level", choices=LOG_LEVELS, default=None,
                        help="Logging level (default: TRANSCIPHER_LOG_LEVEL or INFO)")
    sub = parser.add_subparsers(dest="command", required=True)

    server = sub.add_parser("server", help="Run the blind-evaluation server")
    server.add_argument("--host", default=None, help="Address to bind")
    server.add_argument("--port", type=int, default=None, help="Port to listen on")
    server.add_argument("--max-workers", type=int, default=None,
                        help="Threads per request for independent keystream blocks")

    client = sub.add_parser("client", help="Send a message to a running server")
    client.add_argument("--host", default=None, help="Server address")
    client.add_argument("--port", type=int, default=None, help="Server port")
    client.add_argument("--message", required=True, help="Plaintext to transcipher")
    client.add_argument("--aggregate", type=int, nargs="*", default=[],
                        help="32-bit values to sum under encryption")

    demo = sub.add_parser("demo", help="Run both modes locally, without a server")
    demo.add_argument("--message", default="Hello, transciphering!", help="Plaintext to use")
    demo.add_argument("--max-workers", type=int, default=None, help="Threads for keystream blocks")
    return parser


def _apply_overrides(config: TranscipherConfig, args: argparse.Namespace) -> TranscipherConfig:
    for name in ("host", "port", "max_workers", "log_level"):
        value = getattr(args, name, None)
        if value is not None:
            setattr(config, name, value)
    return config.validate()


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        config = _apply_overrides(TranscipherConfig.from_env(), args)
    except ValueError as e:
        print(f"{RED}{e}{RESET}", file=sys.stderr)
        return 2

    logging.basicConfig(level=config.log_level, format=LOG_FORMAT)

    try:
        if args.command == "server":
            asyncio.run(TranscipherServer(config).serve_forever())
        elif args.command == "client":
            asyncio.run(run_client(config, args.message.encode("utf-8"), args.aggregate))
        else:
            return 0 if run_demo(args.message.encode("utf-8"), config.max_workers) else 1
    except KeyboardInterrupt:
        print(f"\n{YELLOW}Exiting...{RESET}")
    except (ProtocolError, TranscipherError, HeError, OSError) as e:
        log.error(f"{args.command} failed: {e}")
        print(f"{RED}Error: {e}{RESET}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
