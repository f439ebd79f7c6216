"""Process settings: environment (and .env) first, CLI flags on top."""
import os
import re
from dataclasses import dataclass, replace
from pathlib import Path

from dotenv import load_dotenv

from .errors import ConfigError

# Group ids double as directory names and NATS subject prefixes.
_GROUP_RE = re.compile(r"^[A-Za-z0-9_\-]+$")

PLAYERS = ("mplayer", "none")


@dataclass(frozen=True)
class Settings:
    group_id: str = "default"
    storage_root: Path = Path("library")
    nats_url: str = "nats://localhost:4222"
    host: str = "0.0.0.0"
    port: int = 8090
    broadcast_interval: float = 60.0
    fetch_timeout: float = 90.0
    max_fetches: int = 8
    player: str = "mplayer"
    log_level: str = "INFO"

    def __post_init__(self):
        object.__setattr__(self, "storage_root", Path(self.storage_root))
        if not self.group_id or not _GROUP_RE.match(self.group_id):
            raise ConfigError(f"invalid group id: {self.group_id!r}")
        if self.broadcast_interval <= 0:
            raise ConfigError("broadcast interval must be positive")
        if self.fetch_timeout <= 0:
            raise ConfigError("fetch timeout must be positive")
        if self.max_fetches < 1:
            raise ConfigError("max fetches must be at least 1")
        if self.player not in PLAYERS:
            raise ConfigError(f"unknown player {self.player!r}, expected one of {PLAYERS}")
        if not 0 < self.port < 65536:
            raise ConfigError(f"invalid port: {self.port}")

    @property
    def group_dir(self) -> Path:
        return self.storage_root / self.group_id

    @classmethod
    def from_env(cls, env=None) -> "Settings":
        """Build settings from YELLBOARD_* / NATS_URL environment variables."""
        if env is None:
            load_dotenv(Path.cwd() / ".env")
            env = os.environ
        try:
            return cls(
                group_id=env.get("YELLBOARD_GROUP", cls.group_id),
                storage_root=Path(env.get("YELLBOARD_STORAGE_ROOT", str(cls.storage_root))),
                nats_url=env.get("NATS_URL", cls.nats_url),
                host=env.get("YELLBOARD_HOST", cls.host),
                port=int(env.get("YELLBOARD_PORT", cls.port)),
                broadcast_interval=float(env.get("YELLBOARD_BROADCAST_INTERVAL", cls.broadcast_interval)),
                fetch_timeout=float(env.get("YELLBOARD_FETCH_TIMEOUT", cls.fetch_timeout)),
                max_fetches=int(env.get("YELLBOARD_MAX_FETCHES", cls.max_fetches)),
                player=env.get("YELLBOARD_PLAYER", cls.player),
                log_level=env.get("YELLBOARD_LOG_LEVEL", cls.log_level).upper(),
            )
        except ValueError as e:
            if isinstance(e, ConfigError):
                raise
            raise ConfigError(str(e)) from e

    def with_overrides(self, **changes) -> "Settings":
        """Return a copy with every non-None override applied."""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})


def parse_listen(value: str) -> tuple[str, int]:
    """Split a ``host:port`` (or ``:port``) listen address."""
    host, sep, port = value.rpartition(":")
    if not sep:
        raise ConfigError(f"listen address needs a port: {value!r}")
    try:
        return host or "0.0.0.0", int(port)
    except ValueError:
        raise ConfigError(f"invalid listen port in {value!r}") from None
