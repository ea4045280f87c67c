from __future__ import annotations
# poflow/services/cache.py
import httpx
from poflow.config import settings

# Module-level singleton; avoids creating a new TLS connection on every Redis call.
_http = httpx.AsyncClient(
    timeout=httpx.Timeout(2.0, connect=1.0),
    limits=httpx.Limits(max_connections=20, max_keepalive_connections=10, keepalive_expiry=30),
)


class UpstashClient:
    def __init__(self):
        self.url = settings.UPSTASH_REDIS_REST_URL
        self.headers = {"Authorization": f"Bearer {settings.UPSTASH_REDIS_REST_TOKEN}"}

    @property
    def configured(self) -> bool:
        return settings.upstash_configured

    async def pipeline(self, commands: list[list]) -> list:
        r = await _http.post(
            f"{self.url}/pipeline", headers=self.headers, json=commands
        )
        r.raise_for_status()
        return r.json()

    async def ping(self) -> bool:
        r = await _http.get(f"{self.url}/ping", headers=self.headers)
        return r.json().get("result") == "PONG"


cache = UpstashClient()
