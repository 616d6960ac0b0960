"""Test helpers for the favfund test suite"""

from tests.helpers.exchange_stubs import (
    FakeExchange,
    make_book,
    make_quote,
    resting_order,
)

__all__ = [
    "FakeExchange",
    "make_book",
    "make_quote",
    "resting_order",
]
