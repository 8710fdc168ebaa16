"""Frame codec for the Kiwoom real-time WebSocket.

Frames are JSON objects discriminated by ``trnm``:

- ``LOGIN`` — client login request / server acknowledgement
- ``PING``  — server liveness probe, echoed back verbatim
- ``REG``   — instrument registration request / acknowledgement
- ``REAL``  — real-time data, a list of ``{type, name, item, values}``
"""

import json
import logging
from typing import Optional

from autotrader.broker.kiwoom_client import normalize_code, parse_number, parse_price
from autotrader.stream.models import TickUpdate

logger = logging.getLogger("autotrader.stream")

TRNM_LOGIN = "LOGIN"
TRNM_PING = "PING"
TRNM_REG = "REG"
TRNM_REAL = "REAL"

# Real-time type "00": 주식체결 (trade prints)
TYPE_TRADE = "00"

# Field ids inside "values" for trade prints
_FID_PRICE = "10"
_FID_CHANGE = "11"
_FID_CHANGE_RATE = "12"
_FID_ACC_VOLUME = "13"
_FID_TRADE_VOLUME = "15"
_FID_OPEN = "16"
_FID_HIGH = "17"
_FID_LOW = "18"
_FID_TIME = "20"


def encode(frame: dict) -> str:
    return json.dumps(frame, ensure_ascii=False)


def login_frame(token: str) -> dict:
    return {"trnm": TRNM_LOGIN, "token": token}


def registration_frame(
    codes: list[str],
    types: tuple[str, ...] = (TYPE_TRADE,),
    group: str = "1",
    refresh: str = "1",
) -> dict:
    """Build a REG frame.  ``refresh="1"`` keeps earlier registrations."""
    return {
        "trnm": TRNM_REG,
        "grp_no": group,
        "refresh": refresh,
        "data": [{"item": list(codes), "type": list(types)}],
    }


def decode_frame(raw) -> Optional[dict]:
    """Parse an inbound message; ``None`` for anything that is not a JSON object."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
    try:
        frame = json.loads(raw)
    except (TypeError, ValueError):
        return None
    if not isinstance(frame, dict):
        return None
    return frame


def return_code(frame: dict) -> int:
    """The frame's ``return_code``; a missing or garbled code counts as failure."""
    try:
        return int(frame.get("return_code", -1))
    except (TypeError, ValueError):
        return -1


def _optional(values: dict, fid: str, parser) -> Optional[float]:
    if fid not in values or values[fid] in (None, ""):
        return None
    return parser(values[fid])


def decode_ticks(frame: dict) -> list[TickUpdate]:
    """Decode the trade prints of a REAL frame; malformed entries are skipped."""
    ticks: list[TickUpdate] = []
    entries = frame.get("data")
    if not isinstance(entries, list):
        return ticks

    for entry in entries:
        if not isinstance(entry, dict):
            continue
        values = entry.get("values")
        item = entry.get("item")
        if not isinstance(values, dict) or not item:
            continue
        price = parse_price(values.get(_FID_PRICE))
        if price <= 0:
            logger.debug("Dropping REAL entry without a price for %s", item)
            continue

        volume = _optional(values, _FID_ACC_VOLUME, parse_price)
        trade_volume = _optional(values, _FID_TRADE_VOLUME, parse_price)
        ticks.append(
            TickUpdate(
                code=normalize_code(item),
                price=price,
                change=_optional(values, _FID_CHANGE, parse_number),
                change_percent=_optional(values, _FID_CHANGE_RATE, parse_number),
                volume=int(volume) if volume is not None else None,
                trade_volume=int(trade_volume) if trade_volume is not None else None,
                open=_optional(values, _FID_OPEN, parse_price),
                high=_optional(values, _FID_HIGH, parse_price),
                low=_optional(values, _FID_LOW, parse_price),
                time=str(values.get(_FID_TIME, "")),
                kind=str(entry.get("type", TYPE_TRADE)),
            )
        )
    return ticks
