import asyncio
import logging
import signal
import sys
import uvicorn

from .config import settings
from . import server

# Setup logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
# Silence noisy libraries
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("aioice").setLevel(logging.WARNING)
logging.getLogger("aiortc").setLevel(logging.WARNING)

logger = logging.getLogger("main")

class RendezvousService:
    def __init__(self):
        self.running = True
        self.registry = server.registry

    async def sweep_loop(self):
        """Drops abandoned rooms on a fixed interval"""
        logger.info("Room sweep started")
        while self.running:
            await asyncio.sleep(settings.ROOM_SWEEP_INTERVAL_SECONDS)
            try:
                expired = await self.registry.sweep()
                if expired:
                    logger.info(f"Swept {len(expired)} expired rooms")
            except Exception as e:
                logger.error(f"Error in room sweep: {e}", exc_info=True)

    async def start(self):
        config = uvicorn.Config(
            server.app,
            host=settings.HTTP_SERVER_HOST,
            port=settings.HTTP_SERVER_PORT,
            log_level="warning",
        )
        logger.info(f"Signaling server running on port {settings.HTTP_SERVER_PORT}")
        logger.info(f"WebSocket URL: ws://localhost:{settings.HTTP_SERVER_PORT}")

        tasks = [
            asyncio.create_task(uvicorn.Server(config).serve()),
            asyncio.create_task(self.sweep_loop()),
        ]
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            pass
        finally:
            self.running = False
            for task in tasks:
                task.cancel()

def handle_sigterm(sig, frame):
    logger.info("Received SIGTERM, shutting down...")
    sys.exit(0)

def run():
    signal.signal(signal.SIGTERM, handle_sigterm)
    service = RendezvousService()
    try:
        asyncio.run(service.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")

if __name__ == "__main__":
    run()
