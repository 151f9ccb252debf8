# -*- coding: utf-8 -*-
"""
Simple HTTP endpoint for monitoring and manual poll triggers.
Returns engine status, uptime, and the last cycle summary.
"""
import asyncio
import hmac
from datetime import datetime, timezone
from typing import Optional
from aiohttp import web
from loguru import logger


class HealthcheckServer:
    """Simple HTTP server for healthcheck and manual poll endpoints."""

    def __init__(self, engine=None, host: str = "0.0.0.0", port: int = 8080, secret: str = ""):
        self.engine = engine
        self.host = host
        self.port = port
        self.secret = secret
        self.app = web.Application()
        self.runner: Optional[web.AppRunner] = None
        self.site: Optional[web.TCPSite] = None

        self.start_time = datetime.now(timezone.utc)

        # Setup routes
        self.app.router.add_get('/health', self.health_handler)
        self.app.router.add_get('/status', self.status_handler)
        self.app.router.add_get('/poller/run', self.poll_handler)
        self.app.router.add_post('/poller/run', self.poll_handler)

    async def health_handler(self, request: web.Request) -> web.Response:
        """
        Simple health check endpoint.
        Returns 200 OK if the process is running.
        """
        return web.json_response({
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat()
        })

    async def status_handler(self, request: web.Request) -> web.Response:
        """
        Detailed status endpoint with engine metrics.
        """
        now = datetime.now(timezone.utc)
        uptime_seconds = (now - self.start_time).total_seconds()

        # Format uptime
        days = int(uptime_seconds // 86400)
        hours = int((uptime_seconds % 86400) // 3600)
        minutes = int((uptime_seconds % 3600) // 60)
        uptime_str = f"{days}d {hours}h {minutes}m"

        engine = self.engine
        last_summary = engine.last_summary.to_dict() if engine and engine.last_summary else None
        last_run = engine.last_run_at.isoformat() if engine and engine.last_run_at else None

        return web.json_response({
            "status": "running" if engine and engine.running else "idle",
            "uptime": uptime_str,
            "uptime_seconds": int(uptime_seconds),
            "start_time": self.start_time.isoformat(),
            "cycles_run": engine.cycles_run if engine else 0,
            "last_run": last_run,
            "last_summary": last_summary,
            "timestamp": now.isoformat()
        })

    def _authorized(self, request: web.Request) -> bool:
        if not self.secret:
            return True
        token = request.query.get('token', '')
        return hmac.compare_digest(token, self.secret)

    async def poll_handler(self, request: web.Request) -> web.Response:
        """
        Run one poll cycle on demand.
        GET is the cron scheduler's route and is only served when a secret is set.
        """
        if request.method == "GET" and not self.secret:
            return web.json_response(
                {"ok": False, "error": "GET requires POLLER_SECRET, use POST"}, status=405
            )
        if not self._authorized(request):
            return web.json_response({"ok": False, "error": "Unauthorized"}, status=401)
        if self.engine is None:
            return web.json_response({"ok": False, "error": "Poller not configured"}, status=503)

        summary = await self.engine.run_poll_cycle()
        return web.json_response({"ok": True, **summary.to_dict()})

    async def start(self):
        """Start the healthcheck server."""
        try:
            self.runner = web.AppRunner(self.app)
            await self.runner.setup()
            self.site = web.TCPSite(self.runner, self.host, self.port)
            await self.site.start()
            logger.info(f"Healthcheck server started on http://{self.host}:{self.port}")
        except OSError as e:
            logger.error(f"Failed to start healthcheck server: {e}")

    async def stop(self):
        """Stop the healthcheck server."""
        if self.site:
            await self.site.stop()
        if self.runner:
            await self.runner.cleanup()
        logger.info("Healthcheck server stopped")

    async def run(self):
        """Run healthcheck server (keeps running until cancelled)."""
        await self.start()
        try:
            # Keep running until cancelled
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            await self.stop()
            raise


# Global instance
_healthcheck_instance: Optional[HealthcheckServer] = None


def get_healthcheck() -> HealthcheckServer:
    """Get global healthcheck server instance (singleton)."""
    global _healthcheck_instance
    if _healthcheck_instance is None:
        from src.config import POLLER_SECRET, get_healthcheck_config
        from src.rules.engine import get_poller_engine

        cfg = get_healthcheck_config()
        _healthcheck_instance = HealthcheckServer(
            engine=get_poller_engine(),
            host=cfg['host'],
            port=cfg['port'],
            secret=POLLER_SECRET,
        )
    return _healthcheck_instance
