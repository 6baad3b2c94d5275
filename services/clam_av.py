import asyncio
import struct
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from config.settings import settings
from utils.logger import get_logger

logger = get_logger(__name__)


class VerdictKind(str, Enum):
    CLEAN = "clean"
    FOUND = "found"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True)
class ScanVerdict:
    """Tri-state malware scan result. Only CLEAN may be trusted."""

    kind: VerdictKind
    signature: Optional[str] = None

    @property
    def is_clean(self) -> bool:
        return self.kind is VerdictKind.CLEAN

    @property
    def code(self) -> str:
        if self.kind is VerdictKind.CLEAN:
            return "OK"
        if self.kind is VerdictKind.FOUND:
            return f"FOUND:{self.signature}"
        return "UNAVAILABLE"

    def __str__(self) -> str:
        return self.code


CLEAN = ScanVerdict(VerdictKind.CLEAN)
UNAVAILABLE = ScanVerdict(VerdictKind.UNAVAILABLE)


class ClamAVService:
    """
    ClamAV daemon client speaking the clamd INSTREAM protocol over TCP.

    Exchange: connect, send ``zINSTREAM\\0``, stream the buffer as chunks each
    prefixed by a 4-byte big-endian length, terminate with a zero-length
    chunk, then read the NUL-terminated reply line.

    A single deadline covers the whole exchange (connecting, streaming and
    awaiting the verdict). Any socket error, timeout or unparseable reply
    yields UNAVAILABLE; callers must treat that as "do not trust". No retries.
    """

    MAX_CHUNK_SIZE = 64 * 1024
    MAX_REPLY_BYTES = 4096

    INSTREAM_COMMAND = b"zINSTREAM\0"
    PING_COMMAND = b"zPING\0"
    END_OF_STREAM = struct.pack(">I", 0)

    def __init__(
        self,
        daemon_host: Optional[str] = None,
        daemon_port: Optional[int] = None,
        timeout: Optional[float] = None,
        chunk_size: Optional[int] = None
    ):
        """
        Initialize ClamAV client

        Args:
            daemon_host: clamd host (default from settings)
            daemon_port: clamd TCP port (default from settings, conventionally 3310)
            timeout: Wall-clock seconds allowed for one whole scan exchange
            chunk_size: Bytes per INSTREAM chunk, capped at 64 KiB
        """
        self.daemon_host = daemon_host or settings.CLAMAV_HOST
        self.daemon_port = daemon_port or settings.CLAMAV_PORT
        self.timeout = timeout if timeout is not None else settings.CLAMAV_TIMEOUT_SECONDS
        self.chunk_size = max(1, min(chunk_size or settings.CLAMAV_CHUNK_SIZE, self.MAX_CHUNK_SIZE))

        logger.info(
            f"ClamAVService initialized | "
            f"Daemon: {self.daemon_host}:{self.daemon_port} | "
            f"Timeout: {self.timeout}s | "
            f"Chunk: {self.chunk_size} bytes"
        )

    async def scan(self, file_data: bytes, filename: Optional[str] = None) -> ScanVerdict:
        """
        Stream ``file_data`` to clamd and return its verdict.

        Args:
            file_data: Binary data to scan
            filename: Original filename (optional, for logging)
        """
        try:
            reply = await asyncio.wait_for(self._instream(file_data), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.error(f"clamd scan timed out after {self.timeout}s | File: {filename or 'unknown'}")
            return UNAVAILABLE
        except (OSError, asyncio.IncompleteReadError, asyncio.LimitOverrunError) as e:
            logger.error(f"clamd unreachable for {filename or 'unknown'}: {e}")
            return UNAVAILABLE

        verdict = self.parse_reply(reply)

        if verdict.kind is VerdictKind.FOUND:
            logger.warning(
                f"THREAT DETECTED | "
                f"File: {filename or 'unknown'} | "
                f"Threat: {verdict.signature}"
            )
        elif verdict.kind is VerdictKind.UNAVAILABLE:
            logger.error(f"Unrecognised clamd reply for {filename or 'unknown'}: {reply!r}")
        else:
            logger.info(f"Scan completed | File: {filename or 'unknown'} | Size: {len(file_data)} bytes | Status: OK")

        return verdict

    async def _instream(self, file_data: bytes) -> str:
        # Connecting
        reader, writer = await asyncio.open_connection(self.daemon_host, self.daemon_port)
        try:
            # Streaming
            writer.write(self.INSTREAM_COMMAND)
            for offset in range(0, len(file_data), self.chunk_size):
                chunk = file_data[offset:offset + self.chunk_size]
                writer.write(struct.pack(">I", len(chunk)))
                writer.write(chunk)
                await writer.drain()
            writer.write(self.END_OF_STREAM)
            await writer.drain()

            # AwaitingVerdict
            return await self._read_reply(reader)
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except OSError as e:
                logger.debug(f"clamd socket close error: {e}")

    async def _read_reply(self, reader: asyncio.StreamReader) -> str:
        try:
            raw = await reader.readuntil(b"\0")
        except asyncio.IncompleteReadError as e:
            # Daemon closed the stream without the NUL terminator
            raw = e.partial
        return raw[:self.MAX_REPLY_BYTES].decode("utf-8", errors="ignore")

    @staticmethod
    def parse_reply(reply: str) -> ScanVerdict:
        """
        Parse a clamd reply line.

        clamd reply formats:
        stream: OK
        stream: Eicar-Signature FOUND
        INSTREAM size limit exceeded. ERROR
        """
        line = reply.replace("\0", "").strip()
        if not line:
            return UNAVAILABLE
        if line.endswith("OK"):
            return CLEAN
        if line.endswith(" FOUND"):
            threat_part = line[: -len(" FOUND")]
            # Split off the "stream: " source prefix
            threat_part = threat_part.split(": ", 1)[-1].strip()
            if threat_part:
                return ScanVerdict(VerdictKind.FOUND, threat_part)
        return UNAVAILABLE

    async def ping(self) -> bool:
        """Check that clamd answers PING with PONG within the scan timeout."""
        async def _exchange() -> str:
            reader, writer = await asyncio.open_connection(self.daemon_host, self.daemon_port)
            try:
                writer.write(self.PING_COMMAND)
                await writer.drain()
                return await self._read_reply(reader)
            finally:
                writer.close()

        try:
            reply = await asyncio.wait_for(_exchange(), timeout=self.timeout)
        except (asyncio.TimeoutError, OSError, asyncio.IncompleteReadError, asyncio.LimitOverrunError) as e:
            logger.warning(f"clamd not reachable at {self.daemon_host}:{self.daemon_port}: {e}")
            return False
        return reply.replace("\0", "").strip() == "PONG"

    async def health_check(self) -> Dict[str, Any]:
        """
        Perform health check on the ClamAV daemon

        Returns:
            Dictionary with health status and details
        """
        available = await self.ping()
        health = {
            "service": "clamav",
            "healthy": available,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "checks": {
                "daemon": {
                    "available": available,
                    "host": self.daemon_host,
                    "port": self.daemon_port
                }
            }
        }
        logger.info(f"ClamAV health check: {'HEALTHY' if available else 'UNHEALTHY'}")
        return health
