import asyncio
from linkearn import logger
from linkearn.config import Server
from linkearn.server import server, instance
from linkearn.server.services import EXTENSION_KEY

async def drain_visit_events():
    """Background task that processes visit events whose commission step did not run inline"""
    referrals = instance.extensions[EXTENSION_KEY].referrals
    while True:
        try:
            await asyncio.sleep(Server.OUTBOX_DRAIN_INTERVAL)

            processed = await referrals.drain_pending_events()
            if processed > 0:
                logger.info(f'Processed {processed} pending visit events')
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f'Error in visit event drain task: {e}')

async def main():
    drain_task = asyncio.create_task(drain_visit_events())
    try:
        await server.serve()
    finally:
        drain_task.cancel()

if __name__ == '__main__':
    logger.info('initializing...')
    asyncio.run(main())
