from arq import create_pool
from arq.connections import ArqRedis
from pydantic import BaseModel

from feedrelay.jobs.task_models import Task
from feedrelay.main.config import Settings, get_settings
from feedrelay.main.exceptions import NotReadyException
from feedrelay.main.logging import get_logger
from feedrelay.redis.connection import build_arq_redis_settings

logger = get_logger(__name__)


class JobManager:
    """Outbound request broker client (arq over Redis)."""

    def __init__(self):
        self._redis: ArqRedis | None = None

    async def init(self, settings: Settings | None = None):
        settings = settings or get_settings()
        self._redis = await create_pool(build_arq_redis_settings(settings))

        logger.debug(
            f"Job manager connected to redis on host {settings.redis_host}"
            f" and port {settings.redis_port}"
        )

    async def close(self):
        if self._redis is None:
            return
        await self._redis.aclose()
        self._redis = None

    async def enqueue(self, task: Task, params: BaseModel):
        if self._redis is None:
            raise NotReadyException("Job manager is not initialized!")

        # Jobs carry plain dicts so the broker workers need no pickled models
        await self._redis.enqueue_job(task.value, params.model_dump(mode="json"))


job_manager = JobManager()
