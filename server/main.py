"""Entry point: serves the REST API and the live WebSocket hub with uvicorn."""

import asyncio
import logging
import logging.handlers
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from api import router, ws_router
from database import init_db
from geocoding import ReverseGeocoder
from hub import QUEUE_SIZE, LiveHub

# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------
LOG_DIR = os.environ.get("LOG_DIR", "/data" if os.path.isdir("/data") else ".")
LOG_FILE = os.path.join(LOG_DIR, "fleet-location.log")

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s  %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    handlers=[
        logging.StreamHandler(),
        logging.handlers.RotatingFileHandler(
            LOG_FILE, maxBytes=5 * 1024 * 1024, backupCount=3,
        ),
    ],
)
logger = logging.getLogger("fleetlocation")

# Quiet noisy libraries
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("urllib3").setLevel(logging.WARNING)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    app.state.hub.attach(asyncio.get_running_loop())
    logger.info("Fleet location server started")
    yield
    logger.info("Fleet location server stopping with %d live clients", app.state.hub.stats()["connected_clients"])


app = FastAPI(title="Fleet Location Server", lifespan=lifespan)

# One hub and one geocoder per process, reached through app.state
app.state.hub = LiveHub(queue_size=int(os.environ.get("HUB_QUEUE_SIZE", QUEUE_SIZE)))
app.state.geocoder = ReverseGeocoder() if os.environ.get("GEOCODING_ENABLED", "1") == "1" else None

app.include_router(router)
app.include_router(ws_router)


if __name__ == "__main__":
    uvicorn.run(
        app,
        host=os.environ.get("HOST", "0.0.0.0"),
        port=int(os.environ.get("PORT", "8080")),
    )
