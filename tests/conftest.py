import asyncio
import os
import sys

# Ensure src/ is on sys.path so tests run without an installed package
SRC = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "src"))
if SRC not in sys.path:
    sys.path.insert(0, SRC)


class ChunkReader:
    """Stands in for a StreamReader; each read() returns the next queued chunk."""

    def __init__(self, *chunks, eof=True):
        self.chunks = list(chunks)
        self.eof = eof

    async def read(self, n=-1):
        if self.chunks:
            return self.chunks.pop(0)
        if self.eof:
            return b""
        await asyncio.sleep(3600)
        return b""


class FakeWriter:
    """Records everything written to the client side of a session."""

    def __init__(self, peer=("127.0.0.1", 50000)):
        self.peer = peer
        self.buffer = bytearray()
        self.closed = False
        self.eof_written = False

    def write(self, data):
        self.buffer += data

    async def drain(self):
        pass

    def get_extra_info(self, name, default=None):
        if name == "peername":
            return self.peer
        return default

    def is_closing(self):
        return self.closed

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass

    def can_write_eof(self):
        return True

    def write_eof(self):
        self.eof_written = True
