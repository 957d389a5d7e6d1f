import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from classes.quota_ledger import QuotaLedger
from classes.relay_errors import InvalidArgument, QuotaExceeded


class _Day:
    def __init__(self, day: str = "2026-10-19") -> None:
        self.day = day

    def __call__(self) -> str:
        return self.day


def test_cap_admits_ten_and_rejects_the_eleventh_without_mutation() -> None:
    ledger = QuotaLedger(10, today=_Day())
    for i in range(10):
        assert ledger.check_and_consume("uid-1").used == i + 1

    with pytest.raises(QuotaExceeded) as exc:
        ledger.check_and_consume("uid-1")

    assert exc.value.used == 10
    assert exc.value.limit == 10
    assert ledger.usage("uid-1").used == 10
    assert ledger.usage("uid-1").left == 0


def test_amount_larger_than_remaining_is_rejected_whole() -> None:
    ledger = QuotaLedger(10, today=_Day())
    ledger.check_and_consume("uid-1", 8)

    with pytest.raises(QuotaExceeded):
        ledger.check_and_consume("uid-1", 3)
    assert ledger.check_and_consume("uid-1", 2).used == 10


def test_keys_are_independent() -> None:
    ledger = QuotaLedger(1, today=_Day())
    ledger.check_and_consume("a")

    assert ledger.check_and_consume("b").used == 1


def test_day_rollover_resets_usage_lazily() -> None:
    day = _Day("2026-10-19")
    ledger = QuotaLedger(10, today=day)
    ledger.check_and_consume("uid-1", 10)
    with pytest.raises(QuotaExceeded):
        ledger.check_and_consume("uid-1")

    day.day = "2026-10-20"
    for _ in range(10):
        ledger.check_and_consume("uid-1")
    status = ledger.usage("uid-1")
    assert status.used == 10
    assert status.day == "2026-10-20"


def test_usage_of_unknown_key_is_zero() -> None:
    status = QuotaLedger(10, today=_Day()).usage("new")
    assert status.as_dict() == {"used": 0, "left": 10, "max": 10, "day": "2026-10-19"}


def test_redeem_adds_allowance_for_the_day() -> None:
    day = _Day()
    ledger = QuotaLedger(2, today=day)
    ledger.check_and_consume("uid-1", 2)

    assert ledger.redeem("uid-1", 100) is True
    assert ledger.check_and_consume("uid-1").used == 3
    assert ledger.usage("uid-1").max == 102

    day.day = "2026-10-20"
    assert ledger.usage("uid-1").max == 2


def test_redeem_code_only_once_per_day() -> None:
    day = _Day()
    ledger = QuotaLedger(10, today=day)

    assert ledger.redeem("uid-1", 5, code="admin") is True
    assert ledger.redeem("uid-1", 5, code="admin") is False
    assert ledger.usage("uid-1").max == 15

    day.day = "2026-10-20"
    assert ledger.redeem("uid-1", 5, code="admin") is True


def test_negative_bonus_is_rejected() -> None:
    with pytest.raises(InvalidArgument):
        QuotaLedger(10, today=_Day()).redeem("uid-1", -5)


def test_refund_never_goes_below_zero() -> None:
    ledger = QuotaLedger(10, today=_Day())
    ledger.check_and_consume("uid-1")

    assert ledger.refund("uid-1", 3).used == 0


def test_refund_from_previous_day_is_ignored() -> None:
    day = _Day()
    ledger = QuotaLedger(10, today=day)
    reservation = ledger.check_and_consume("uid-1")
    day.day = "2026-10-20"
    ledger.check_and_consume("uid-1")

    assert ledger.refund("uid-1", 1, day=reservation.day).used == 1


@pytest.mark.parametrize("amount", [0, -1])
def test_non_positive_amount_is_invalid(amount) -> None:
    with pytest.raises(InvalidArgument):
        QuotaLedger(10, today=_Day()).check_and_consume("uid-1", amount)


def test_parallel_consumers_at_the_cap_are_never_over_admitted() -> None:
    ledger = QuotaLedger(10, today=_Day())
    ledger.check_and_consume("uid-1", 7)
    barrier = threading.Barrier(40)

    def attempt() -> bool:
        barrier.wait()
        try:
            ledger.check_and_consume("uid-1")
            return True
        except QuotaExceeded:
            return False

    with ThreadPoolExecutor(max_workers=40) as pool:
        results = list(pool.map(lambda _: attempt(), range(40)))

    assert results.count(True) == 3
    assert ledger.usage("uid-1").used == 10
