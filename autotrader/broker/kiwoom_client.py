"""Kiwoom REST API async client.

Handles all request/response communication with Kiwoom: token issuance,
ranking scans for candidate instruments, quotes, minute candles, and order
placement.  Real-time ticks travel over the WebSocket session instead
(see ``autotrader.stream.session``).
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional
from zoneinfo import ZoneInfo

import httpx

from autotrader.broker.models import (
    AccessToken,
    Candle,
    InstrumentSnapshot,
    OrderRequest,
    OrderResult,
)
from autotrader.config import Config

logger = logging.getLogger("autotrader")

# Retry settings
_MAX_RETRIES = 3
_RETRY_BASE_DELAY = 2.0  # seconds; doubles each attempt
_RETRYABLE_STATUS_CODES = {502, 503, 504, 429}

# Ranking / quote / chart / order API ids
_API_TOKEN = "au10001"
_API_CHANGE_RATE_RANKING = "ka10027"
_API_STOCK_INFO = "ka10001"
_API_MINUTE_CHART = "ka10080"
_API_BUY_ORDER = "kt10000"
_API_SELL_ORDER = "kt10001"

_ORDER_KIND_CODES = {"limit": "0", "market": "3"}

# Re-issue this long before expires_dt
_TOKEN_REFRESH_MARGIN = timedelta(minutes=5)
# "Token이 유효하지 않습니다"
_TOKEN_INVALID_CODES = {8005}


class BrokerError(Exception):
    """Raised when Kiwoom answers a request with a non-zero return code."""

    def __init__(self, message: str, return_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.return_code = return_code


def normalize_code(raw: str) -> str:
    """Return the 6-digit instrument code Kiwoom responses refer to.

    Strips the ``A`` prefix used by some endpoints and exchange suffixes
    such as ``_AL`` / ``_NX``.
    """
    code = str(raw).strip()
    if "_" in code:
        code = code.split("_", 1)[0]
    if code[:1] in ("A", "a") and code[1:].isdigit():
        code = code[1:]
    return code.zfill(6)


def parse_number(raw, default: float = 0.0) -> float:
    """Parse a Kiwoom numeric string such as ``"+70000"`` or ``"-1.25"``."""
    if raw is None:
        return default
    text = str(raw).strip().replace(",", "")
    if not text:
        return default
    try:
        return float(text)
    except ValueError:
        return default


def parse_price(raw, default: float = 0.0) -> float:
    """Parse a price field.  Kiwoom signs prices by direction of change."""
    return abs(parse_number(raw, default))


def parse_expiry(raw, tz) -> Optional[datetime]:
    """Parse ``expires_dt`` (``YYYYMMDDHHMMSS``, exchange-local time)."""
    try:
        return datetime.strptime(str(raw).strip(), "%Y%m%d%H%M%S").replace(tzinfo=tz)
    except ValueError:
        return None


class KiwoomClient:
    """Async client wrapping the Kiwoom REST API.

    Args:
        config: Application configuration.
        clock: Returns the current time, used to expire the cached token.
            Defaults to ``datetime.now`` in ``config.market_timezone``.
    """

    def __init__(
        self,
        config: Config,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._config = config
        self._base_url = config.base_url
        self._tz = ZoneInfo(config.market_timezone)
        self._clock = clock or (lambda: datetime.now(self._tz))
        self._token: Optional[AccessToken] = None
        self._token_expiry: Optional[datetime] = None

    # ── Retry helper ─────────────────────────────────────────────────────

    async def _request_with_retry(
        self,
        method: str,
        url: str,
        max_attempts: int = _MAX_RETRIES,
        **kwargs,
    ) -> httpx.Response:
        """Execute an HTTP request with exponential-backoff retry.

        Retries on transient server errors (502, 503, 504) and rate-limits
        (429).  Non-retryable errors are raised immediately.  Pass
        ``max_attempts=1`` for requests that must not be repeated.
        """
        last_exc: Optional[Exception] = None

        for attempt in range(max_attempts):
            final = attempt + 1 >= max_attempts
            try:
                async with httpx.AsyncClient() as client:
                    resp = await getattr(client, method)(
                        url,
                        timeout=30.0,
                        **kwargs,
                    )

                if resp.status_code in _RETRYABLE_STATUS_CODES:
                    last_exc = httpx.HTTPStatusError(
                        f"Server error '{resp.status_code}'",
                        request=resp.request,
                        response=resp,
                    )
                    if final:
                        break
                    delay = _RETRY_BASE_DELAY * (2 ** attempt)
                    logger.warning(
                        "Kiwoom %s %s returned %d — retry %d/%d in %.1fs",
                        method.upper(), url, resp.status_code,
                        attempt + 1, max_attempts, delay,
                    )
                    await asyncio.sleep(delay)
                    continue

                resp.raise_for_status()
                return resp

            except httpx.TransportError as exc:
                last_exc = exc
                if final:
                    break
                delay = _RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning(
                    "Kiwoom %s %s transport error (%s) — retry %d/%d in %.1fs",
                    method.upper(), url, exc,
                    attempt + 1, max_attempts, delay,
                )
                await asyncio.sleep(delay)

        raise last_exc  # type: ignore[misc]

    async def _call(
        self,
        path: str,
        api_id: str,
        body: dict,
        max_attempts: int = _MAX_RETRIES,
    ) -> dict:
        """POST a TR request and return the decoded body.

        A rejected access token is re-issued and the request sent once
        more.  Raises ``BrokerError`` for any other non-zero ``return_code``.
        """
        for auth_attempt in range(2):
            token = await self.get_access_token()
            headers = {
                "Content-Type": "application/json;charset=UTF-8",
                "authorization": f"Bearer {token.token}",
                "api-id": api_id,
            }
            resp = await self._request_with_retry(
                "post", f"{self._base_url}{path}",
                max_attempts=max_attempts, headers=headers, json=body,
            )
            data = resp.json()
            return_code = int(data.get("return_code", 0) or 0)
            if return_code in _TOKEN_INVALID_CODES and auth_attempt == 0:
                logger.warning(
                    "Kiwoom rejected the access token for %s (%d) — re-issuing",
                    api_id, return_code,
                )
                self.invalidate_token()
                continue
            if return_code != 0:
                raise BrokerError(
                    data.get("return_msg") or f"{api_id} failed ({return_code})",
                    return_code=return_code,
                )
            return data

        raise BrokerError(f"{api_id} failed: access token rejected")

    # ── Auth ─────────────────────────────────────────────────────────────

    def _token_expired(self) -> bool:
        if self._token_expiry is None:
            return False
        return self._clock() >= self._token_expiry - _TOKEN_REFRESH_MARGIN

    async def get_access_token(self) -> AccessToken:
        """Return the cached access token.

        A new one is issued when none is cached or the cached one is
        within a few minutes of its ``expires_dt``.
        """
        if self._token is not None and not self._token_expired():
            return self._token

        resp = await self._request_with_retry(
            "post",
            f"{self._base_url}/oauth2/token",
            headers={
                "Content-Type": "application/json;charset=UTF-8",
                "api-id": _API_TOKEN,
            },
            json={
                "grant_type": "client_credentials",
                "appkey": self._config.kiwoom_app_key,
                "secretkey": self._config.kiwoom_secret_key,
            },
        )
        data = resp.json()
        if int(data.get("return_code", 0) or 0) != 0 or not data.get("token"):
            raise BrokerError(
                data.get("return_msg") or "Token issuance failed",
                return_code=data.get("return_code"),
            )
        self._token = AccessToken(
            token=data["token"], expires_at=data.get("expires_dt", ""),
        )
        self._token_expiry = parse_expiry(self._token.expires_at, self._tz)
        logger.info("Kiwoom access token issued (expires %s)", self._token.expires_at)
        return self._token

    def invalidate_token(self) -> None:
        """Forget the cached token so the next call re-authenticates."""
        self._token = None
        self._token_expiry = None

    # ── Market data ──────────────────────────────────────────────────────

    async def fetch_candidate_instruments(
        self,
        market_segment: str = "000",
        limit: int = 30,
    ) -> list[InstrumentSnapshot]:
        """Fetch the day's top gainers as buy candidates.

        Args:
            market_segment: ``"000"`` all, ``"001"`` KOSPI, ``"101"`` KOSDAQ.
            limit: maximum number of snapshots to return.

        Returns:
            Snapshots in ranking order (may be empty).
        """
        body = {
            "mrkt_tp": market_segment,
            "sort_tp": "1",  # change-rate descending
            "trde_qty_cnd": "0000",
            "stk_cnd": "0",
            "crd_cnd": "0",
            "updown_incls": "1",
            "pric_cnd": "0",
            "trde_prica_cnd": "0",
            "stex_tp": "3",
        }
        data = await self._call("/api/dostk/rkinfo", _API_CHANGE_RATE_RANKING, body)

        rows = data.get("pred_pre_flu_rt_upper") or []
        snapshots: list[InstrumentSnapshot] = []
        seen: set[str] = set()
        for row in rows:
            raw_code = row.get("stk_cd")
            if not raw_code:
                continue
            code = normalize_code(raw_code)
            if code in seen:
                continue
            seen.add(code)
            snapshots.append(
                InstrumentSnapshot(
                    code=code,
                    name=row.get("stk_nm") or f"종목{code}",
                    price=parse_price(row.get("cur_prc")),
                    change_percent=parse_number(row.get("flu_rt")),
                    volume=int(parse_price(row.get("now_trde_qty"))),
                )
            )
            if len(snapshots) >= limit:
                break
        return snapshots

    async def fetch_current_price(self, code: str) -> InstrumentSnapshot:
        """Query the basic quote for one instrument."""
        data = await self._call(
            "/api/dostk/stkinfo", _API_STOCK_INFO, {"stk_cd": code},
        )
        return InstrumentSnapshot(
            code=normalize_code(data.get("stk_cd") or code),
            name=data.get("stk_nm") or f"종목{code}",
            price=parse_price(data.get("cur_prc")),
            change_percent=parse_number(data.get("flu_rt")),
            volume=int(parse_price(data.get("trde_qty"))),
            open=parse_price(data.get("open_pric")),
            high=parse_price(data.get("high_pric")),
            low=parse_price(data.get("low_pric")),
        )

    async def fetch_candles(
        self,
        code: str,
        count: int = 30,
        tick_scope: str = "1",
    ) -> list[Candle]:
        """Fetch minute candles for *code*.

        Args:
            code: 6-digit instrument code.
            count: number of most recent bars to keep.
            tick_scope: bar size in minutes (``"1"``, ``"3"``, ``"5"`` ...).

        Returns:
            List of ``Candle`` objects ordered oldest-first.
        """
        body = {"stk_cd": code, "tic_scope": tick_scope, "upd_stkpc_tp": "1"}
        data = await self._call("/api/dostk/chart", _API_MINUTE_CHART, body)

        rows = data.get("stk_min_pto_chart_qry") or []
        candles: list[Candle] = []
        # Kiwoom returns newest first
        for row in reversed(rows[:count]):
            candles.append(
                Candle(
                    time=row.get("cntr_tm", ""),
                    open=parse_price(row.get("open_pric")),
                    high=parse_price(row.get("high_pric")),
                    low=parse_price(row.get("low_pric")),
                    close=parse_price(row.get("cur_prc")),
                    volume=int(parse_price(row.get("trde_qty"))),
                )
            )
        return candles

    # ── Orders ───────────────────────────────────────────────────────────

    async def place_order(self, order: OrderRequest) -> OrderResult:
        """Place a cash-equity order on KRX.

        A rejection reported through ``return_code`` comes back as an
        unfilled ``OrderResult``; HTTP and transport failures propagate.
        Orders are sent once: a timed-out order may still have reached the
        exchange.
        """
        if order.side not in ("buy", "sell"):
            raise ValueError(f"side must be 'buy' or 'sell', got '{order.side}'")
        if order.order_kind not in _ORDER_KIND_CODES:
            raise ValueError(f"Unknown order kind '{order.order_kind}'")

        api_id = _API_BUY_ORDER if order.side == "buy" else _API_SELL_ORDER
        body = {
            "dmst_stex_tp": "KRX",
            "stk_cd": order.code,
            "ord_qty": str(int(order.quantity)),
            "ord_uv": "" if order.order_kind == "market" else str(int(order.price)),
            "trde_tp": _ORDER_KIND_CODES[order.order_kind],
            "cond_uv": "",
        }
        try:
            data = await self._call("/api/dostk/ordr", api_id, body, max_attempts=1)
        except BrokerError as exc:
            logger.warning(
                "Order rejected: %s %s x%d — %s",
                order.side, order.code, order.quantity, exc,
            )
            return OrderResult(filled=False, error=str(exc))

        return OrderResult(filled=True, order_no=str(data.get("ord_no", "")))

    async def submit_order(
        self,
        code: str,
        quantity: int,
        price: float,
        side: str,
        order_kind: str = "market",
    ) -> OrderResult:
        """Convenience wrapper around :meth:`place_order`."""
        return await self.place_order(
            OrderRequest(
                code=code,
                quantity=quantity,
                price=price,
                side=side,
                order_kind=order_kind,
            )
        )
