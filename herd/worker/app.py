import os
import time
import logging

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from herd.config import effective_settings as config

log = logging.getLogger("worker")

SLOT_ID = int(os.getenv("HERD_SLOT_ID", "0"))
STARTED_AT = time.time()


async def status(request: Request) -> JSONResponse:
    """Reports which worker answered, for health probes."""
    return JSONResponse({
        "serverInformation": {"serverName": config.SERVER_NAME},
        "serverName": config.SERVER_NAME,
        "pid": os.getpid(),
        "slot": SLOT_ID,
        "uptime": round(time.time() - STARTED_AT, 3),
    })


app = Starlette(routes=[
    Route("/", status),
    Route("/api/status", status),
])
