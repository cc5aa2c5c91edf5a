"""Change sweeper: emits change notifications for stored events whose capture failed."""

import logging
import time
from typing import Callable

from sqlalchemy import create_engine

import config
from ingestion.adapters import orm
from ingestion.domain.commands import EmitPendingChanges
from ingestion.service_layer import messagebus
from ingestion.service_layer.unit_of_work import AbstractIngestionUnitOfWork, SqlAlchemyUnitOfWork

logger = logging.getLogger(__name__)


class ChangeSweeper:

    def __init__(self, uow: AbstractIngestionUnitOfWork, interval: float = 5.0):
        self.uow = uow
        self.interval = interval

    def run_once(self) -> int:
        return messagebus.handle(EmitPendingChanges(), self.uow)[0]

    def run_forever(self, sleep: Callable[[float], None] = time.sleep):
        logger.info("Change sweeper starting")
        while True:
            try:
                self.run_once()
            except Exception:  # pylint: disable=broad-except
                # Events stay pending; the next pass tries again
                logger.exception("Change sweep failed")
            sleep(self.interval)


def main():
    """Main entry point for the change sweeper."""
    logging.basicConfig(level=logging.INFO)

    logger.info("Initializing event store schema and ORM mappers...")
    orm.metadata.create_all(create_engine(config.get_postgres_uri()))
    orm.start_mappers()

    interval = config.get_change_stream_config()["sweep_interval_seconds"]
    ChangeSweeper(SqlAlchemyUnitOfWork(), interval=interval).run_forever()


if __name__ == "__main__":
    main()
