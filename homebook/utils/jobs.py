"""
Background job queueing
Request handlers hand slow or retryable work to the arq worker.
"""

import asyncio
import logging
from typing import Optional

from arq import create_pool

logger = logging.getLogger(__name__)


class JobQueue:
    """Best-effort enqueue; a queue outage never fails the request that triggered it"""

    async def enqueue(self, function_name: str, *args) -> Optional[str]:
        from ..worker import get_redis_settings

        try:
            pool = await asyncio.wait_for(create_pool(get_redis_settings()), timeout=20.0)
        except Exception as e:
            logger.warning(f"⚠️ Could not reach job queue for {function_name}: {e}")
            return None

        try:
            job = await pool.enqueue_job(function_name, *args)
            job_id = job.job_id if job else None
            logger.info(f"📋 {function_name} queued: {job_id}")
            return job_id
        except Exception as e:
            logger.error(f"❌ Failed to queue {function_name}: {e}")
            return None
        finally:
            await pool.close()


def get_job_queue() -> JobQueue:
    """Dependency injection for JobQueue"""
    return JobQueue()
