"""
Wire protocol for the transciphering service.

Each frame is an 8-byte little-endian length header followed by that many
payload bytes. Payloads are UTF-8 JSON objects with a "type" field; binary
values (nonces, ciphertexts, sealed words, key material) are base64.
"""

import asyncio
import base64
import binascii
import enum
import json
import logging
import struct
from typing import Any, Dict, List, Optional, Tuple

from encrypted_word import EncryptedWord, HECiphertext, HEEvaluationKey
from transciphering import TranscipherRequest, TranscipherResponse

log = logging.getLogger(__name__)

LENGTH_HEADER = struct.Struct("<Q")
DEFAULT_MAX_FRAME_SIZE = 64 * 1024 * 1024


class ProtocolError(Exception):
    """Malformed, oversized or truncated frame or payload."""


class MessageType(enum.Enum):
    TRANSCIPHER_REQUEST = "transcipher_request"
    TRANSCIPHER_RESPONSE = "transcipher_response"
    AGGREGATE_REQUEST = "aggregate_request"
    AGGREGATE_RESPONSE = "aggregate_response"
    ERROR = "error"


def encode_frame(payload: bytes) -> bytes:
    """Prefix payload with its 8-byte little-endian length."""
    return LENGTH_HEADER.pack(len(payload)) + payload


async def send_frame(writer: asyncio.StreamWriter, payload: bytes, timeout: float = 30.0) -> None:
    """
    Send one length-prefixed frame.

    Raises:
        ProtocolError: If the peer does not drain the frame within timeout
    """
    writer.write(encode_frame(payload))
    try:
        await asyncio.wait_for(writer.drain(), timeout=timeout)
    except asyncio.TimeoutError as e:
        raise ProtocolError(f"timeout sending {len(payload)} bytes") from e
    if len(payload) > 100:
        log.debug(f"Sent framed message of length: {len(payload)}")


async def receive_frame(reader: asyncio.StreamReader, max_frame_size: int = DEFAULT_MAX_FRAME_SIZE,
                        timeout: float = 60.0) -> Optional[bytes]:
    """
    Receive one length-prefixed frame.

    Args:
        reader: Stream to read from
        max_frame_size: Largest accepted payload, in bytes
        timeout: Seconds allowed for the header and for the payload

    Returns:
        The payload, or None if the peer closed the connection cleanly
        between frames

    Raises:
        ProtocolError: On an oversized, truncated or timed-out frame
    """
    try:
        header = await asyncio.wait_for(reader.readexactly(LENGTH_HEADER.size), timeout=timeout)
    except asyncio.IncompleteReadError as e:
        if not e.partial:
            return None
        raise ProtocolError("connection closed while receiving frame length") from e
    except asyncio.TimeoutError as e:
        raise ProtocolError("timeout while receiving frame length") from e

    (length,) = LENGTH_HEADER.unpack(header)
    if length > max_frame_size:
        raise ProtocolError(f"frame length too large: {length} > {max_frame_size}")
    if length > 100:
        log.debug(f"Receiving framed message of length: {length}")

    try:
        return await asyncio.wait_for(reader.readexactly(length), timeout=timeout)
    except asyncio.IncompleteReadError as e:
        raise ProtocolError(f"connection closed while receiving frame data "
                            f"({len(e.partial)}/{length} bytes)") from e
    except asyncio.TimeoutError as e:
        raise ProtocolError("timeout while receiving frame data") from e


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(text: Any) -> bytes:
    if not isinstance(text, str):
        raise ProtocolError("expected a base64 string")
    try:
        return base64.b64decode(text.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ProtocolError("invalid base64 field") from e


def encode_message(msg_type: MessageType, body: Dict[str, Any]) -> bytes:
    return json.dumps({"type": msg_type.value, **body}).encode("utf-8")


def decode_message(data: bytes) -> Tuple[MessageType, Dict[str, Any]]:
    """
    Parse a payload into its message type and body.

    Raises:
        ProtocolError: If the payload is not a JSON object of a known type
    """
    try:
        body = json.loads(data.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError("payload is not valid UTF-8 JSON") from e
    if not isinstance(body, dict):
        raise ProtocolError("payload must be a JSON object")
    try:
        msg_type = MessageType(body.pop("type", None))
    except ValueError as e:
        raise ProtocolError("unknown message type") from e
    return msg_type, body


def _words_from(body: Dict[str, Any], field_name: str) -> List[EncryptedWord]:
    items = body.get(field_name)
    if not isinstance(items, list):
        raise ProtocolError(f"field {field_name} must be a list")
    try:
        return [HECiphertext.from_dict(item) for item in items]
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError(f"malformed ciphertext in {field_name}") from e


def _evaluation_key_from(body: Dict[str, Any]) -> HEEvaluationKey:
    try:
        return HEEvaluationKey.from_dict(body["evaluation_key"])
    except (KeyError, TypeError, ValueError) as e:
        raise ProtocolError("malformed evaluation key") from e


def _int_from(body: Dict[str, Any], field_name: str) -> int:
    value = body.get(field_name)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ProtocolError(f"field {field_name} must be an integer")
    return value


def encode_request(request: TranscipherRequest) -> bytes:
    return encode_message(MessageType.TRANSCIPHER_REQUEST, {
        "nonce": _b64(request.nonce),
        "counter": request.counter,
        "ciphertext": _b64(request.ciphertext),
        "key_words": [word.to_dict() for word in request.key_words],
        "evaluation_key": request.evaluation_key.to_dict(),
    })


def decode_request(body: Dict[str, Any]) -> TranscipherRequest:
    return TranscipherRequest(
        nonce=_unb64(body.get("nonce")),
        counter=_int_from(body, "counter"),
        ciphertext=_unb64(body.get("ciphertext")),
        key_words=_words_from(body, "key_words"),
        evaluation_key=_evaluation_key_from(body),
    )


def encode_response(response: TranscipherResponse) -> bytes:
    return encode_message(MessageType.TRANSCIPHER_RESPONSE, {
        "words": [word.to_dict() for word in response.words],
        "length": response.length,
    })


def decode_response(body: Dict[str, Any]) -> TranscipherResponse:
    return TranscipherResponse(words=_words_from(body, "words"), length=_int_from(body, "length"))


def encode_aggregate_request(evaluation_key: HEEvaluationKey, words: List[EncryptedWord]) -> bytes:
    return encode_message(MessageType.AGGREGATE_REQUEST, {
        "evaluation_key": evaluation_key.to_dict(),
        "words": [word.to_dict() for word in words],
    })


def decode_aggregate_request(body: Dict[str, Any]) -> Tuple[HEEvaluationKey, List[EncryptedWord]]:
    return _evaluation_key_from(body), _words_from(body, "words")


def encode_aggregate_response(word: EncryptedWord) -> bytes:
    return encode_message(MessageType.AGGREGATE_RESPONSE, {"words": [word.to_dict()]})


def decode_aggregate_response(body: Dict[str, Any]) -> EncryptedWord:
    words = _words_from(body, "words")
    if len(words) != 1:
        raise ProtocolError("aggregate response must carry exactly one word")
    return words[0]


def encode_error(error_name: str) -> bytes:
    return encode_message(MessageType.ERROR, {"error": error_name})
