"""Router worker: consumes every change stream partition from its checkpoint and routes it to queues."""

import logging
import time
from datetime import timedelta
from typing import Callable, Optional

import redis
from sqlalchemy import create_engine

import config
from changefeed.adapters.resync_client import AbstractResyncClient, HTTPResyncClient, ResyncError
from changefeed.adapters.stream import (
    BEGINNING,
    AbstractChangeStream,
    AbstractCheckpointStore,
    RedisChangeStream,
    RedisCheckpointStore,
)
from changefeed.domain.model import ChangeNotification, parse_position
from changefeed.service_layer.router import EventRouter
from queueing.adapters import orm
from queueing.service_layer.queue import DurableQueue
from shared.domain.errors import PositionExpired

logger = logging.getLogger(__name__)


class RouterWorker:
    """
    Routes each partition's notifications in stream order.

    The checkpoint is saved only after a notification has been routed, so a
    crash redelivers at most the notification in hand (at-least-once). When
    the checkpoint falls out of the stream's retention window the worker asks
    the ingestion service to re-emit every event emitted since that position.
    """

    def __init__(
        self,
        stream: AbstractChangeStream,
        checkpoints: AbstractCheckpointStore,
        router: EventRouter,
        resync_client: Optional[AbstractResyncClient] = None,
        consumer: str = "event-router",
        batch_size: int = 100,
    ):
        self.stream = stream
        self.checkpoints = checkpoints
        self.router = router
        self.resync_client = resync_client
        self.consumer = consumer
        self.batch_size = batch_size

    def drain(self, partition: str) -> int:
        """Route everything after the partition's checkpoint; returns how many were routed."""
        after = self.checkpoints.get(self.consumer, partition)
        routed = 0
        try:
            for notification in self.stream.changes(partition, after, self.batch_size):
                self.router.route(notification)
                self._advance(partition, notification)
                routed += 1
        except PositionExpired as e:
            self._recover(partition, after, e)
        return routed

    def run_once(self) -> int:
        return sum(self.drain(partition) for partition in self.stream.partitions())

    def run_forever(self, poll_interval: float = 1.0, sleep: Callable[[float], None] = time.sleep):
        logger.info(f"Router worker {self.consumer} starting")
        while True:
            if self.run_once() == 0:
                sleep(poll_interval)

    def _advance(self, partition: str, notification: ChangeNotification):
        self.checkpoints.save(self.consumer, partition, notification.stream_position)

    def _recover(self, partition: str, after: str, error: PositionExpired):
        latest = self.stream.latest_position(partition)
        logger.warning(f"{error}; resyncing {partition} from position {after}")

        if self.resync_client is not None:
            try:
                self.resync_client.resync(partition, after)
            except ResyncError as e:
                # Checkpoint stays put so the next pass tries again
                logger.error(f"Could not resync {partition}: {e}")
                return

        # Re-emitted notifications land after this position
        ms, _ = parse_position(latest)
        if ms < self.stream.cutoff_ms():
            latest = BEGINNING
        self.checkpoints.save(self.consumer, partition, latest)


def main():
    """Main entry point for the router worker."""
    logging.basicConfig(level=logging.INFO)

    logger.info("Initializing queue schema and ORM mappers...")
    engine = create_engine(config.get_postgres_uri())
    orm.metadata.create_all(engine)
    orm.start_mappers()

    client = redis.Redis(**config.get_redis_host_and_port())
    stream_config = config.get_change_stream_config()

    worker = RouterWorker(
        stream=RedisChangeStream(
            client=client,
            prefix=stream_config["prefix"],
            retention=timedelta(hours=stream_config["retention_hours"]),
        ),
        checkpoints=RedisCheckpointStore(client, prefix=stream_config["checkpoint_prefix"]),
        router=EventRouter.from_config(DurableQueue),
        resync_client=HTTPResyncClient(),
    )
    worker.run_forever()


if __name__ == "__main__":
    main()
