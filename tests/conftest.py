"""
Shared fixtures for the intake pipeline tests.

Archives are built in memory. ``zipfile`` can read ZipCrypto entries but not
write them, so ``build_encrypted_zip`` assembles a traditional-PKWARE
encrypted archive by hand (stored entries only).
"""

import asyncio
import contextlib
import io
import socket
import struct
import zipfile
import zlib
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

import pytest

from models.assets import ExtractionPolicy
from services.content_store import ContentStoreService

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00\x00\x00\rIHDR" + b"\x00" * 32
HTML_BYTES = b"<!DOCTYPE html><html><body><img src=\"img/logo.png\"></body></html>"
PDF_BYTES = b"%PDF-1.4\n%\xe2\xe3\xcf\xd3\n1 0 obj\n<<>>\nendobj\n"

IMAGE_MIMES = frozenset({"image/png", "image/jpeg", "image/gif"})
CREATIVE_MIMES = IMAGE_MIMES | {"text/html", "application/pdf", "image/svg+xml"}


# -------------------------- archive builders --------------------------

def build_zip(entries: Sequence[Tuple[str, bytes]], compression: int = zipfile.ZIP_DEFLATED) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", compression=compression) as zf:
        for name, data in entries:
            zf.writestr(name, data)
    return buf.getvalue()


def _crc_table() -> List[int]:
    table = []
    for i in range(256):
        crc = i
        for _ in range(8):
            crc = (crc >> 1) ^ 0xEDB88320 if crc & 1 else crc >> 1
        table.append(crc)
    return table


_CRC_TABLE = _crc_table()


class _ZipCryptoKeys:
    def __init__(self, password: bytes) -> None:
        self.k0, self.k1, self.k2 = 0x12345678, 0x23456789, 0x34567890
        for b in password:
            self.update(b)

    @staticmethod
    def _crc(crc: int, b: int) -> int:
        return (crc >> 8) ^ _CRC_TABLE[(crc ^ b) & 0xFF]

    def update(self, b: int) -> None:
        self.k0 = self._crc(self.k0, b)
        self.k1 = (self.k1 + (self.k0 & 0xFF)) & 0xFFFFFFFF
        self.k1 = (self.k1 * 134775813 + 1) & 0xFFFFFFFF
        self.k2 = self._crc(self.k2, (self.k1 >> 24) & 0xFF)

    def encrypt(self, data: bytes) -> bytes:
        out = bytearray()
        for p in data:
            temp = (self.k2 | 2) & 0xFFFF
            out.append(p ^ (((temp * (temp ^ 1)) >> 8) & 0xFF))
            self.update(p)
        return bytes(out)


def build_encrypted_zip(entries: Sequence[Tuple[str, bytes]], password: bytes) -> bytes:
    """ZipCrypto-encrypted archive with stored (uncompressed) entries."""
    body = bytearray()
    central = bytearray()
    for name, data in entries:
        name_bytes = name.encode("utf-8")
        crc = zlib.crc32(data) & 0xFFFFFFFF
        header = bytes(range(11)) + bytes([(crc >> 24) & 0xFF])
        keys = _ZipCryptoKeys(password)
        payload = keys.encrypt(header) + keys.encrypt(data)

        offset = len(body)
        body += struct.pack(
            "<IHHHHHIIIHH", 0x04034B50, 20, 0x1, 0, 0, 33, crc, len(payload), len(data), len(name_bytes), 0
        )
        body += name_bytes + payload
        central += struct.pack(
            "<IHHHHHHIIIHHHHHII",
            0x02014B50, 20, 20, 0x1, 0, 0, 33, crc, len(payload), len(data),
            len(name_bytes), 0, 0, 0, 0, 0, offset,
        )
        central += name_bytes

    eocd = struct.pack("<IHHHHIIH", 0x06054B50, 0, 0, len(entries), len(entries), len(central), len(body), 0)
    return bytes(body + central + eocd)


# -------------------------- fake clamd --------------------------

Responder = Callable[[bytes], Optional[bytes]]


class FakeClamd:
    """Records what a client streamed; replies via ``responder`` (None = hang)."""

    def __init__(self, responder: Responder) -> None:
        self.responder = responder
        self.port = 0
        self.payloads: List[bytes] = []
        self.chunk_sizes: List[int] = []
        self.commands: List[bytes] = []

    async def handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            command = await reader.readuntil(b"\0")
            self.commands.append(command)
            if command == b"zPING\0":
                writer.write(b"PONG\0")
                await writer.drain()
                return

            data = bytearray()
            while True:
                (length,) = struct.unpack(">I", await reader.readexactly(4))
                if length == 0:
                    break
                self.chunk_sizes.append(length)
                data += await reader.readexactly(length)
            self.payloads.append(bytes(data))

            reply = self.responder(bytes(data))
            if reply is None:
                # Hold the connection open until the client gives up
                await reader.read()
                return
            writer.write(reply)
            await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()


@pytest.fixture
def clamd_server():
    """Factory: ``async with clamd_server(responder) as fake: ... fake.port``."""

    @contextlib.asynccontextmanager
    async def _start(responder: Responder) -> AsyncIterator[FakeClamd]:
        fake = FakeClamd(responder)
        server = await asyncio.start_server(fake.handle, "127.0.0.1", 0)
        fake.port = server.sockets[0].getsockname()[1]
        try:
            yield fake
        finally:
            server.close()
            await server.wait_closed()

    return _start


def clean_reply(_data: bytes) -> bytes:
    return b"stream: OK\0"


def eicar_reply(data: bytes) -> bytes:
    if b"EICAR" in data:
        return b"stream: Eicar-Signature FOUND\0"
    return b"stream: OK\0"


@pytest.fixture
def unused_port() -> int:
    """A localhost port with nothing listening on it."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


# -------------------------- store / policy --------------------------

@pytest.fixture
def store_root(tmp_path):
    root = tmp_path / "store"
    root.mkdir()
    return root


@pytest.fixture
def store(store_root) -> ContentStoreService:
    return ContentStoreService(root=str(store_root), public_prefix="/api/files", io_timeout=5.0)


@pytest.fixture
def policy() -> ExtractionPolicy:
    return ExtractionPolicy(allowed_mime_set=CREATIVE_MIMES, enable_virus_scan=False)


@pytest.fixture
def bundle_entries() -> Dict[str, bytes]:
    return {
        "index.html": HTML_BYTES,
        "img/logo.png": PNG_BYTES,
    }
