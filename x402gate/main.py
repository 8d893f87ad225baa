# x402gate/main.py
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI

from x402gate.core.config import settings
from x402gate.api.endpoints import payments
from x402gate.protocol import __version__
from x402gate.protocol.forwarder import SettlementForwarder
from x402gate.protocol.middleware import X402Middleware
from x402gate.protocol.replay import create_replay_guard
from x402gate.protocol.verifier import OnChainVerifier
from x402gate.services.solana_rpc import SolanaRPC

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Own the replay store, ledger client and facilitator client for the app's lifetime."""
    app.state.replay_guard = create_replay_guard(settings.X402_REPLAY_DSN)
    app.state.rpc = SolanaRPC()
    app.state.verifier = OnChainVerifier(app.state.rpc)
    app.state.forwarder = SettlementForwarder()
    logger.info(
        f"x402 gateway started: network={settings.X402_NETWORK}, "
        f"facilitator={settings.X402_FACILITATOR_URL}, enabled={settings.X402_ENABLED}"
    )
    try:
        yield
    finally:
        await app.state.forwarder.close()
        await app.state.rpc.close()
        await app.state.replay_guard.close()


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=__version__,
    openapi_url=f"{settings.API_V1_STR}/openapi.json",
    lifespan=lifespan,
)

app.add_middleware(X402Middleware)

app.include_router(payments.router, prefix=f"{settings.API_V1_STR}/payments", tags=["payments"])


@app.get("/", summary="Health Check", tags=["default"])
def read_root():
    """ Basic health check endpoint. """
    logger.info("Root endpoint '/' accessed.")
    return {
        "status": "ok",
        "message": f"Welcome to {settings.PROJECT_NAME}",
        "x402_enabled": settings.X402_ENABLED,
        "network": settings.X402_NETWORK,
    }
