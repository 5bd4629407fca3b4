from types import MappingProxyType
from typing import Mapping, Optional, Sequence

from errors import ConfigurationError

MAX_DEPTH = 8

# fixed amounts per level, in cents
DEFAULT_COMMISSION_AMOUNTS = (800, 400, 200, 100, 100, 100, 100, 100)


def build_schedule(amounts: Sequence[int]) -> Mapping[int, int]:
    """
    amounts: cents for levels 1..8, in order.
    returns a read-only mapping depth -> cents.
    """
    if len(amounts) != MAX_DEPTH:
        raise ConfigurationError(
            f"commission schedule needs exactly {MAX_DEPTH} levels, got {len(amounts)}"
        )

    table = {}
    for depth, amount in enumerate(amounts, start=1):
        if not isinstance(amount, int) or isinstance(amount, bool):
            raise ConfigurationError(f"level {depth} amount must be integer cents")
        if amount < 0:
            raise ConfigurationError(f"level {depth} amount cannot be negative")
        table[depth] = amount

    return MappingProxyType(table)


DEFAULT_SCHEDULE = build_schedule(DEFAULT_COMMISSION_AMOUNTS)


def amount_for(depth, schedule: Mapping[int, int] = DEFAULT_SCHEDULE) -> Optional[int]:
    """
    fixed commission for a hierarchy depth, or None when the depth
    is outside 1..8 (caller skips that ancestor).
    """
    if not isinstance(depth, int) or isinstance(depth, bool):
        return None
    return schedule.get(depth)
