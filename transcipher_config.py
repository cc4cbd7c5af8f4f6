"""
Configuration for the transciphering service, read from TRANSCIPHER_* environment variables.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from wire_protocol import DEFAULT_MAX_FRAME_SIZE

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class TranscipherConfig:
    host: str = "127.0.0.1"
    port: int = 4000
    max_workers: int = 4
    max_frame_size: int = DEFAULT_MAX_FRAME_SIZE
    timeout: float = 60.0
    log_level: str = "INFO"

    def validate(self) -> "TranscipherConfig":
        if not 0 <= self.port <= 65535:
            raise ValueError(f"Invalid port: {self.port}")
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if self.max_frame_size < 1:
            raise ValueError("max_frame_size must be positive")
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.log_level not in LOG_LEVELS:
            raise ValueError(f"Invalid log level: {self.log_level}")
        return self

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "TranscipherConfig":
        """
        Build a configuration from environment variables.

        Recognized: TRANSCIPHER_HOST, TRANSCIPHER_PORT, TRANSCIPHER_MAX_WORKERS,
        TRANSCIPHER_MAX_FRAME, TRANSCIPHER_TIMEOUT, TRANSCIPHER_LOG_LEVEL.

        Raises:
            ValueError: If a variable cannot be parsed or is out of range
        """
        env = os.environ if environ is None else environ
        try:
            config = cls(
                host=env.get("TRANSCIPHER_HOST", cls.host),
                port=int(env.get("TRANSCIPHER_PORT", cls.port)),
                max_workers=int(env.get("TRANSCIPHER_MAX_WORKERS", cls.max_workers)),
                max_frame_size=int(env.get("TRANSCIPHER_MAX_FRAME", cls.max_frame_size)),
                timeout=float(env.get("TRANSCIPHER_TIMEOUT", cls.timeout)),
                log_level=env.get("TRANSCIPHER_LOG_LEVEL", cls.log_level).upper(),
            )
        except ValueError as e:
            raise ValueError(f"Invalid transciphering configuration: {e}") from e
        return config.validate()
