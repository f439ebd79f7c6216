"""Player capability: the external audio player that clips are loaded into."""
import asyncio
import logging
import shutil
from typing import Protocol

logger = logging.getLogger(__name__)

MPLAYER_BINARY = "mplayer"


class PlayerAdapter(Protocol):
    async def load(self, path: str) -> None: ...

    async def close(self) -> None: ...


class LoggingPlayer:
    """Player that only records what it was asked to load."""

    def __init__(self):
        self.loaded: list[str] = []

    async def load(self, path: str) -> None:
        self.loaded.append(path)
        logger.info("Would play %s (no audio player configured)", path)

    async def close(self) -> None:
        pass


def _quote(path: str) -> str:
    return '"' + path.replace("\\", "\\\\").replace('"', '\\"') + '"'


class MPlayerAdapter:
    """Drives one idle ``mplayer -slave`` process through its stdin.

    A load replaces whatever is playing; the lock keeps commands from
    interleaving on the pipe.
    """

    def __init__(self, binary: str = MPLAYER_BINARY):
        self.binary = binary
        self._proc: asyncio.subprocess.Process | None = None
        self._lock = asyncio.Lock()

    async def _ensure_running(self) -> asyncio.subprocess.Process:
        if self._proc is not None and self._proc.returncode is None:
            return self._proc
        if self._proc is not None:
            logger.warning("mplayer exited with %s, restarting", self._proc.returncode)
        self._proc = await asyncio.create_subprocess_exec(
            self.binary, "-slave", "-idle", "-quiet",
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        logger.info("Started %s (pid %s)", self.binary, self._proc.pid)
        return self._proc

    async def load(self, path: str) -> None:
        async with self._lock:
            proc = await self._ensure_running()
            proc.stdin.write(f"loadfile {_quote(path)}\n".encode("utf-8"))
            await proc.stdin.drain()

    async def close(self) -> None:
        async with self._lock:
            proc, self._proc = self._proc, None
            if proc is None or proc.returncode is not None:
                return
            try:
                proc.stdin.write(b"quit\n")
                await proc.stdin.drain()
                await asyncio.wait_for(proc.wait(), timeout=2.0)
            except (OSError, asyncio.TimeoutError):
                proc.kill()
                await proc.wait()


def create_player(kind: str) -> PlayerAdapter:
    """Pick the player for a ``YELLBOARD_PLAYER`` value."""
    if kind == "mplayer":
        if shutil.which(MPLAYER_BINARY) is not None:
            return MPlayerAdapter()
        logger.warning("%s not found on PATH, playback will only be logged", MPLAYER_BINARY)
    return LoggingPlayer()
