from app.core.balancer.logic import (
    PoolContentionError,
    PoolEmptyError,
    PoolError,
    RoundRobinPick,
    round_robin_pick,
)

__all__ = [
    "PoolContentionError",
    "PoolEmptyError",
    "PoolError",
    "RoundRobinPick",
    "round_robin_pick",
]
