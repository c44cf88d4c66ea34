import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")

@dataclass
class TaskOutcome(Generic[T]):
    """Per-task result of a settled group: either a value or the error it raised."""
    value: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def value_or(self, default: Any) -> Any:
        return self.value if self.ok else default

async def gather_settled(*aws: Awaitable[T]) -> List[TaskOutcome[T]]:
    """Run awaitables concurrently; one failure never fails the whole group."""
    results = await asyncio.gather(*aws, return_exceptions=True)
    outcomes: List[TaskOutcome[T]] = []
    for result in results:
        if isinstance(result, asyncio.CancelledError):
            raise result
        if isinstance(result, BaseException):
            outcomes.append(TaskOutcome(error=result))
        else:
            outcomes.append(TaskOutcome(value=result))
    return outcomes

async def run_in_groups(
    items: Sequence[T],
    group_size: int,
    worker: Callable[[T], Awaitable[R]]
) -> List[TaskOutcome[R]]:
    """Process items in fixed-size groups.

    Items within a group run concurrently, groups run one after another, so
    at most `group_size` workers are alive at any time. Outcomes keep the
    input order.
    """
    if group_size < 1:
        raise ValueError("group_size must be at least 1")
    outcomes: List[TaskOutcome[R]] = []
    for i in range(0, len(items), group_size):
        group = items[i:i + group_size]
        outcomes.extend(await gather_settled(*(worker(item) for item in group)))
    return outcomes
