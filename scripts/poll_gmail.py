import argparse
import asyncio
import logging
import sys
import time
from pathlib import Path

sys.path.append(str(Path(__file__).parent.parent))

from api.routes import build_services
from lib.config import get_settings

logger = logging.getLogger(__name__)

async def poll(duration: float) -> int:
    """Run the Gmail poller for `duration` seconds"""
    services = build_services(get_settings())
    email_service = services['email']
    if email_service is None:
        logger.error("Gmail credentials are not configured")
        return 1

    result = await email_service.run(deadline=time.time() + duration)
    logger.info(f"Poller finished: {result.to_dict()}")
    return 0

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Answer unread Gmail messages through the query API")
    parser.add_argument('--duration', type=float, default=900, help="seconds to keep polling")
    args = parser.parse_args()
    sys.exit(asyncio.run(poll(args.duration)))
