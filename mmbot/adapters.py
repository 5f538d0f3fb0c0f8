"""
Venue adapters: the order book, balance and score collaborators.

The engine never talks to the venue directly. The deployer reads balances,
exposure and book snapshots through a VenueAdapter, and places or cancels
orders through it after the plan is computed.
"""
import asyncio
import json
import os
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence

import requests

from .errors import InvalidInput
from .planner import PlannedOrder, existing_orders_refund
from .types import BalanceInputs, RestingOrder
from .utils import order_cost


@dataclass
class PlaceResult:
    """Outcome of placing one market's orders."""
    market_id: str
    order_ids: List[str] = field(default_factory=list)
    total_cost: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


@dataclass
class CancelResult:
    market_id: Optional[str]
    cancelled_count: int = 0
    refund: int = 0


class VenueAdapter:
    """Abstract base class for venue interfaces."""

    async def get_effective_balance(self) -> BalanceInputs:
        raise NotImplementedError

    async def get_exposure(self) -> int:
        raise NotImplementedError

    async def list_open_orders(self, market_id: Optional[str] = None) -> List[RestingOrder]:
        """The bot's own open orders."""
        raise NotImplementedError

    async def get_resting_orders(self, market_id: str) -> List[RestingOrder]:
        """Other participants' resting orders in a market."""
        raise NotImplementedError

    async def place_orders(self, market_id: str, orders: Sequence[PlannedOrder]) -> PlaceResult:
        raise NotImplementedError

    async def cancel_all_orders(self, market_id: str) -> CancelResult:
        raise NotImplementedError

    async def resize_order(self, market_id: str, order: RestingOrder, new_amount: int) -> None:
        raise NotImplementedError


class ScoreSource:
    """Likelihood score provider used by tier initialization."""

    def get_score(self, market_id: str) -> float:
        raise NotImplementedError


class StaticScoreSource(ScoreSource):
    """Scores from a mapping or a JSON file of ``{market_id: score}``."""

    def __init__(self, scores: Optional[Dict[str, float]] = None, path: Optional[str] = None):
        self.scores: Dict[str, float] = dict(scores or {})
        if path:
            with open(path, "r") as fp:
                self.scores.update({k: float(v) for k, v in json.load(fp).items()})

    def get_score(self, market_id: str) -> float:
        if market_id not in self.scores:
            raise InvalidInput(f"no likelihood score for market {market_id!r}")
        return self.scores[market_id]


class HttpVenueAdapter(VenueAdapter):
    """REST adapter for the venue API.

    Blocking ``requests`` calls run in a worker thread via
    ``asyncio.to_thread`` so the event loop stays responsive.

    Environment Variables:
        VENUE_API_URL: Base URL (default: http://localhost:3001/api)
        VENUE_API_TOKEN: Bearer token of the bot account (required)

    Wire format (prices in YES-implied cents, amounts in sats):
        GET    /user/balance    -> {"balance_sats": int}
        GET    /user/orders     -> [{"id", "market_id", "side", "price_cents", "amount_sats", "filled_sats"}]
        GET    /user/positions  -> [{"market_id", "side", "amount_sats"}]
        GET    /markets/{id}    -> {"orderBook": {"yes": [{"price_cents", "total_sats"}], "no": [...]}}
        POST   /orders          -> {"order_id"}   body {"market_id", "side", "price_cents", "amount_sats"}
        DELETE /orders/{id}     -> {"refund"}
    """

    def __init__(self, base_url: Optional[str] = None, token: Optional[str] = None, timeout_s: float = 10.0):
        self.base_url = (base_url or os.getenv("VENUE_API_URL", "http://localhost:3001/api")).rstrip("/")
        token = token or os.getenv("VENUE_API_TOKEN")
        if not token:
            raise ValueError("VENUE_API_TOKEN environment variable not found. Required for venue authentication.")
        self.timeout_s = timeout_s
        self.session = requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        })

    def _request(self, method: str, path: str, **kwargs) -> Any:
        response = self.session.request(method, f"{self.base_url}{path}", timeout=self.timeout_s, **kwargs)
        response.raise_for_status()
        return response.json() if response.content else {}

    @staticmethod
    def _to_resting(o: Dict[str, Any]) -> RestingOrder:
        return RestingOrder(
            side=o["side"],
            price=int(o["price_cents"]),
            remaining_amount=int(o["amount_sats"]) - int(o.get("filled_sats", 0)),
            order_id=o.get("id"),
            market_id=o.get("market_id"),
        )

    async def list_open_orders(self, market_id: Optional[str] = None) -> List[RestingOrder]:
        def _fetch():
            rows = self._request("GET", "/user/orders")
            return [
                self._to_resting(o) for o in rows
                if market_id is None or o.get("market_id") == market_id
            ]

        return await asyncio.to_thread(_fetch)

    async def get_effective_balance(self) -> BalanceInputs:
        def _fetch():
            return int(self._request("GET", "/user/balance").get("balance_sats", 0))

        balance = await asyncio.to_thread(_fetch)
        own = await self.list_open_orders()
        return BalanceInputs(balance=balance, existing_orders_refund=existing_orders_refund(own))

    async def get_exposure(self) -> int:
        """Sum of NO-side positions: what the bot pays out if every event resolves YES."""
        def _fetch():
            rows = self._request("GET", "/user/positions")
            return sum(int(p.get("amount_sats", 0)) for p in rows if p.get("side") == "no")

        return await asyncio.to_thread(_fetch)

    async def get_resting_orders(self, market_id: str) -> List[RestingOrder]:
        """Aggregated book levels minus the bot's own orders at each level."""
        own = await self.list_open_orders(market_id)

        def _fetch():
            return self._request("GET", f"/markets/{market_id}").get("orderBook", {})

        book = await asyncio.to_thread(_fetch)
        own_by_level: Dict[tuple, int] = {}
        for o in own:
            key = (o.side, o.price)
            own_by_level[key] = own_by_level.get(key, 0) + o.remaining_amount

        resting = []
        for side in ("yes", "no"):
            for level in book.get(side, []):
                price = int(level["price_cents"])
                amount = int(level["total_sats"]) - own_by_level.get((side, price), 0)
                if amount > 0:
                    resting.append(RestingOrder(side=side, price=price, remaining_amount=amount))
        return resting

    async def place_orders(self, market_id: str, orders: Sequence[PlannedOrder]) -> PlaceResult:
        def _exec():
            result = PlaceResult(market_id=market_id)
            for o in orders:
                try:
                    body = {"market_id": market_id, "side": o.side, "price_cents": o.price, "amount_sats": o.amount}
                    response = self._request("POST", "/orders", json=body)
                except requests.RequestException as e:
                    # Stop at the first rejection; later orders would be placed out of plan order
                    result.errors.append(f"{o.side}@{o.price}: {e}")
                    break
                result.order_ids.append(str(response.get("order_id") or response.get("id", "")))
                result.total_cost += o.cost
            return result

        return await asyncio.to_thread(_exec)

    async def cancel_all_orders(self, market_id: str) -> CancelResult:
        own = await self.list_open_orders(market_id)

        def _exec():
            result = CancelResult(market_id=market_id)
            for o in own:
                response = self._request("DELETE", f"/orders/{o.order_id}")
                result.cancelled_count += 1
                result.refund += int(response.get("refund", order_cost(o.side, o.price, o.remaining_amount)))
            return result

        return await asyncio.to_thread(_exec)

    async def resize_order(self, market_id: str, order: RestingOrder, new_amount: int) -> None:
        """The venue has no amend call: cancel and re-place at the new size."""
        def _exec():
            self._request("DELETE", f"/orders/{order.order_id}")
            if new_amount > 0:
                body = {"market_id": market_id, "side": order.side, "price_cents": order.price, "amount_sats": new_amount}
                self._request("POST", "/orders", json=body)

        await asyncio.to_thread(_exec)


class PaperVenueAdapter(VenueAdapter):
    """In-memory venue for paper trading and tests.

    Keeps a local balance, the bot's own orders per market and a fixed set of
    third-party resting orders. Placement locks cost, cancellation refunds it.
    Nothing is ever matched.
    """

    def __init__(
        self,
        balance: int = 0,
        exposure: int = 0,
        resting: Optional[Dict[str, List[RestingOrder]]] = None,
    ):
        self.balance = balance
        self.exposure = exposure
        self.resting: Dict[str, List[RestingOrder]] = {k: list(v) for k, v in (resting or {}).items()}
        self.own: Dict[str, List[RestingOrder]] = {}

    async def get_effective_balance(self) -> BalanceInputs:
        return BalanceInputs(balance=self.balance, existing_orders_refund=existing_orders_refund(await self.list_open_orders()))

    async def get_exposure(self) -> int:
        return self.exposure

    async def list_open_orders(self, market_id: Optional[str] = None) -> List[RestingOrder]:
        if market_id is not None:
            return list(self.own.get(market_id, []))
        return [o for orders in self.own.values() for o in orders]

    async def get_resting_orders(self, market_id: str) -> List[RestingOrder]:
        return list(self.resting.get(market_id, []))

    async def place_orders(self, market_id: str, orders: Sequence[PlannedOrder]) -> PlaceResult:
        result = PlaceResult(market_id=market_id)
        for o in orders:
            if o.cost > self.balance:
                result.errors.append(f"{o.side}@{o.price}: insufficient balance ({self.balance} < {o.cost})")
                break
            self.balance -= o.cost
            oid = str(uuid.uuid4())
            self.own.setdefault(market_id, []).append(RestingOrder(o.side, o.price, o.amount, oid, market_id))
            result.order_ids.append(oid)
            result.total_cost += o.cost
        return result

    async def cancel_all_orders(self, market_id: str) -> CancelResult:
        orders = self.own.pop(market_id, [])
        refund = existing_orders_refund(orders)
        self.balance += refund
        return CancelResult(market_id=market_id, cancelled_count=len(orders), refund=refund)

    async def resize_order(self, market_id: str, order: RestingOrder, new_amount: int) -> None:
        orders = self.own.get(market_id, [])
        for i, o in enumerate(orders):
            if o.order_id != order.order_id:
                continue
            self.balance += order_cost(o.side, o.price, o.remaining_amount)
            if new_amount > 0:
                self.balance -= order_cost(o.side, o.price, new_amount)
                orders[i] = replace(o, remaining_amount=new_amount)
            else:
                del orders[i]
            return
        raise InvalidInput(f"order {order.order_id} not found in market {market_id}")
