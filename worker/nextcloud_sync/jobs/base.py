from abc import ABC, abstractmethod
from typing import Iterable, Iterator, Optional


class ProgressiveJob(ABC):
    """Unit of sync work that can be estimated and consumed step by step."""

    @abstractmethod
    def estimate(self) -> Optional[int]:
        """Pending workload size, or None if the job should be skipped."""

    @abstractmethod
    def run(self) -> Iterator[int]:
        """Performs the work, yielding the progress made by each step."""


class CombinedJob(ProgressiveJob):
    def __init__(self, jobs: Iterable[ProgressiveJob]):
        self._jobs = list(jobs)

    @property
    def jobs(self) -> list[ProgressiveJob]:
        return list(self._jobs)

    def estimate(self) -> Optional[int]:
        total = 0
        skippable = True
        for job in self._jobs:
            size = job.estimate()
            if size is not None:
                total += size
                skippable = False
        return None if skippable else total

    def run(self) -> Iterator[int]:
        for job in self._jobs:
            # Earlier jobs change the pending state of later ones.
            if job.estimate() is None:
                continue
            yield from job.run()
