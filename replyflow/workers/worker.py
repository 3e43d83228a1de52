# Run this with: rq worker -u redis://localhost:6379 default
# or: python -m replyflow.workers.worker (which will spin a small worker loop for dev)
import logging

from redis import Redis
from rq import Queue, Worker

from replyflow.core.config import settings
from replyflow.core.logging import configure_logging

logger = logging.getLogger("replyflow")

listen = ['default']


def main() -> None:
    configure_logging(settings.ENV)
    conn = Redis.from_url(settings.REDIS_URL)
    worker = Worker([Queue(name, connection=conn) for name in listen], connection=conn)
    logger.info("Starting RQ worker (interactive).")
    worker.work()


if __name__ == '__main__':
    main()
