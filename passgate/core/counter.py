from dataclasses import dataclass
from enum import Enum

from passgate.core.config import settings
from passgate.core.exceptions import CounterRegression


class CounterVerdict(str, Enum):
    ACCEPT = "accept"
    REJECT = "reject"


def check(stored_counter: int, reported_counter: int) -> CounterVerdict:
    """
    Validates the authenticator's sign counter against the stored value.

    Both zero means the authenticator does not implement counters and is
    accepted. Otherwise the reported counter must be strictly greater; any
    non-increase hints at a cloned authenticator.
    """
    if stored_counter == 0 and reported_counter == 0:
        return CounterVerdict.ACCEPT
    if reported_counter > stored_counter:
        return CounterVerdict.ACCEPT
    return CounterVerdict.REJECT


def enforce(stored_counter: int, reported_counter: int):
    if check(stored_counter, reported_counter) is CounterVerdict.REJECT:
        raise CounterRegression(
            f"Sign count {reported_counter} is not greater than the stored value {stored_counter}. "
            f"Possible clone detected."
        )


@dataclass(frozen=True)
class CounterPolicy:
    """What happens to a credential after a counter regression. The ceremony always fails."""
    disable_on_regression: bool = False

    @classmethod
    def from_settings(cls) -> "CounterPolicy":
        return cls(disable_on_regression=settings.PASSKEY_DISABLE_ON_COUNTER_REGRESSION)
