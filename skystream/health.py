from typing import Sequence

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .metrics import firehose_connected, nats_connected, redis_connected

_GAUGES = {
    "nats": nats_connected,
    "redis": redis_connected,
    "firehose": firehose_connected,
}


def create_health_api(dependencies: Sequence[str] = ("nats", "redis")) -> FastAPI:
    """Build the health app; readiness requires every named dependency to be connected."""
    app = FastAPI()
    gauges = {name: _GAUGES[name] for name in dependencies}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    @app.get("/ready")
    async def ready():
        connections = {name: gauge._value.get() == 1 for name, gauge in gauges.items()}
        return {"ready": all(connections.values()), "connections": connections}

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return Response(content=data, media_type=CONTENT_TYPE_LATEST)

    return app
