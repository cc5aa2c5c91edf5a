"""Batch worker: receives batches from the analytics queue and applies them to aggregates."""

import logging
from typing import Optional

from sqlalchemy import create_engine

import config
from analytics.adapters import orm as analytics_orm
from analytics.service_layer.batch_processor import BatchProcessor, BatchResult
from analytics.service_layer.unit_of_work import SqlAlchemyUnitOfWork
from queueing.adapters import orm as queueing_orm
from queueing.service_layer.queue import DurableQueue

logger = logging.getLogger(__name__)


class BatchWorker:

    def __init__(self, queue: DurableQueue, processor: BatchProcessor, wait_time: float = 10):
        self.queue = queue
        self.processor = processor
        self.wait_time = wait_time

    def run_once(self) -> Optional[BatchResult]:
        """Long-poll for one batch and process it; None when the queue stayed empty."""
        messages = self.queue.receive_batch(wait_time=self.wait_time)
        if not messages:
            return None
        return self.processor.process_batch(messages)

    def run_forever(self):
        logger.info(f"Batch worker consuming {self.queue.name}")
        while True:
            result = self.run_once()
            if result and result.dead_lettered:
                logger.warning(f"Dead-lettered {result.dead_lettered} from {self.queue.name}")


def main():
    """Main entry point for the batch worker."""
    logging.basicConfig(level=logging.INFO)

    logger.info("Initializing database schema and ORM mappers...")
    engine = create_engine(config.get_postgres_uri())
    queueing_orm.metadata.create_all(engine)
    analytics_orm.metadata.create_all(engine)
    queueing_orm.start_mappers()
    analytics_orm.start_mappers()

    processor_config = config.get_processor_config()
    queue = DurableQueue(processor_config["queue_name"])
    processor = BatchProcessor(
        queue=queue,
        uow_factory=SqlAlchemyUnitOfWork,
        max_attempts=processor_config["max_attempts"],
        budget_seconds=processor_config["budget_seconds"],
    )
    BatchWorker(queue, processor, wait_time=processor_config["wait_time_seconds"]).run_forever()


if __name__ == "__main__":
    main()
