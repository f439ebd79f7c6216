"""FastAPI app entry point: starts the group session and wires the routers."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .config import Settings
from .routers import subscribe, ui
from .services.broker import MessageBroker, NatsBroker
from .services.player import PlayerAdapter, create_player
from .services.session import GroupSession

logger = logging.getLogger(__name__)

NOISY_LOGGERS = ("nats", "uvicorn.access")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format="%(asctime)s  %(message)s", datefmt="%H:%M:%S")
    for _noisy in NOISY_LOGGERS:
        logging.getLogger(_noisy).setLevel(logging.WARNING)


def create_app(
    settings: Settings | None = None,
    broker: MessageBroker | None = None,
    player: PlayerAdapter | None = None,
) -> FastAPI:
    """Build the app. ``broker`` and ``player`` default to NATS and the configured player."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or Settings.from_env()
        # A broker connection failure is fatal: BrokerError aborts startup.
        active_broker = broker or await NatsBroker.connect(cfg.nats_url)
        session = GroupSession(cfg, active_broker, player or create_player(cfg.player))
        try:
            await session.start()
            app.state.session = session
            logger.info("yellboard ready for group %s", cfg.group_id)
            yield
        finally:
            await session.close()
            if broker is None:
                await active_broker.close()

    app = FastAPI(title="yellboard", lifespan=lifespan)
    app.include_router(ui.router)
    app.include_router(subscribe.router)
    return app


app = create_app()
