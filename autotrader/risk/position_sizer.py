"""Order sizing — pure math, no I/O.

Converts the cash allotted per instrument into a whole-share quantity.
"""

import math


def calculate_quantity(amount: float, price: float) -> int:
    """Calculate how many whole shares *amount* buys at *price*.

    Formula::

        quantity = floor(amount / price)

    Args:
        amount: Cash allotted to one instrument (e.g. 1_000_000 KRW).
        price: Current price per share.

    Returns:
        Share count, ``0`` when the amount does not cover a single share or
        either input is non-positive.
    """
    if amount <= 0 or price <= 0:
        return 0
    return int(math.floor(amount / price))
