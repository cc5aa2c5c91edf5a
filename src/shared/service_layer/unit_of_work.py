"""Abstract Unit of Work pattern for coordinating operations across repositories."""

from __future__ import annotations

import abc
from typing import Iterator, Iterable


class AbstractUnitOfWork(abc.ABC):
    """Abstract Unit of Work for coordinating operations across repositories."""

    def __enter__(self) -> AbstractUnitOfWork:
        return self

    def __exit__(self, *args):
        self.rollback()

    def commit(self):
        self._commit()

    def collect_new_events(self) -> Iterator:
        """Collect domain events from every aggregate seen by the repositories."""
        for repository in self._repositories():
            for entity in repository.seen:
                while entity.events:
                    yield entity.events.pop(0)

    def _repositories(self) -> Iterable:
        return []

    @abc.abstractmethod
    def _commit(self):
        raise NotImplementedError

    @abc.abstractmethod
    def rollback(self):
        raise NotImplementedError
