"""
Shape curves: how a market's budget is spread across price points.

A curve is a list of Points whose weights sum to 1 (or an empty list).
Points at weight 0 are frozen: rebalancing never moves them until the
operator edits that point directly.

The module also holds the preset generators and the ShapeLibrary, a small
JSON-file store of named shapes.
"""
import json
import math
import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from .errors import InvalidInput, InvalidOperation, InvariantViolation
from .utils import is_finite_number, now_ms, require_price

# Default price grid for generated shapes (YES-implied percent)
PRICE_POINTS = [5, 10, 15, 20, 25, 30, 35, 40, 45, 50]

CURVE_TOLERANCE = 1e-3

SHAPE_TYPES = ("bell", "flat", "exponential", "logarithmic", "sigmoid", "parabolic", "custom")


@dataclass(frozen=True)
class Point:
    """One price point of a curve."""
    price: int
    weight: float

    def to_dict(self) -> Dict[str, Any]:
        return {"price": self.price, "weight": self.weight}

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Point":
        return cls(price=int(d["price"]), weight=float(d["weight"]))


def curve_total(points: Sequence[Point]) -> float:
    return sum(p.weight for p in points)


def check_curve(points: Sequence[Point]) -> None:
    """Validate a curve.

    Raises:
        InvalidInput: bad price, duplicate price, or weight outside [0, 1]
        InvariantViolation: non-empty curve whose weights don't sum to 1
    """
    seen = set()
    for p in points:
        require_price(p.price)
        if p.price in seen:
            raise InvalidInput(f"duplicate curve price {p.price}")
        seen.add(p.price)
        if not is_finite_number(p.weight) or not 0.0 <= p.weight <= 1.0:
            raise InvalidInput(f"weight at price {p.price} must be in [0, 1], got {p.weight!r}")
    if points:
        total = curve_total(points)
        if abs(total - 1.0) > CURVE_TOLERANCE:
            raise InvariantViolation(f"curve weights sum to {total:.6f}, expected 1")


def _renormalize(points: List[Point]) -> List[Point]:
    """Divide every point by the total. Zero points stay zero."""
    total = curve_total(points)
    if total <= 0:
        return points
    return [Point(p.price, p.weight / total) for p in points]


def rebalance_curve(points: Sequence[Point], edited_price: int, new_weight: float) -> List[Point]:
    """Set one point's weight and rescale the others so the curve sums to 1.

    Single pass, no iteration:
      1. the edited point takes new_weight
      2. other non-zero points are scaled by max(0, 1 - w) / other_total
      3. if the total is still off by more than 1e-3, every point is
         divided by the total

    Zero-weight points other than the edited one stay at exactly 0. When
    every other point is zero the edited point ends up at 1.0.

    Args:
        points: Current curve (not mutated)
        edited_price: Price of the point being edited
        new_weight: Requested weight in [0, 1]

    Returns:
        New list of points sorted by price

    Raises:
        InvalidInput: unknown price or weight outside [0, 1]
    """
    if not is_finite_number(new_weight) or not 0.0 <= new_weight <= 1.0:
        raise InvalidInput(f"new_weight must be in [0, 1], got {new_weight!r}")
    prices = [p.price for p in points]
    if edited_price not in prices:
        raise InvalidInput(f"no curve point at price {edited_price}")

    other_total = sum(p.weight for p in points if p.price != edited_price and p.weight > 0)

    result = []
    if other_total > 0:
        scale = max(0.0, 1.0 - new_weight) / other_total
    else:
        scale = 1.0
    for p in points:
        if p.price == edited_price:
            result.append(Point(p.price, float(new_weight)))
        elif p.weight == 0:
            result.append(p)
        else:
            result.append(Point(p.price, p.weight * scale))

    total = curve_total(result)
    if total > 0 and abs(total - 1.0) > CURVE_TOLERANCE:
        result = _renormalize(result)

    return sorted(result, key=lambda p: p.price)


def add_point(points: Sequence[Point], price: int) -> List[Point]:
    """Insert a new point at weight 0. Other points are untouched."""
    require_price(price)
    if any(p.price == price for p in points):
        raise InvalidInput(f"curve already has a point at price {price}")
    return sorted([*points, Point(price, 0.0)], key=lambda p: p.price)


def remove_point(points: Sequence[Point], price: int, require_non_empty: bool = True) -> List[Point]:
    """Delete a point and renormalize the rest to sum to 1.

    Raises:
        InvalidInput: no point at that price
        InvalidOperation: the curve would become empty and require_non_empty is set
    """
    if not any(p.price == price for p in points):
        raise InvalidInput(f"no curve point at price {price}")
    remaining = [p for p in points if p.price != price]
    if not remaining and require_non_empty:
        raise InvalidOperation("cannot remove the last curve point")
    return _renormalize(remaining)


# ==================== PRESET GENERATORS ====================

def normalize_shape(raw: Sequence[float], prices: Sequence[int] = PRICE_POINTS) -> List[Point]:
    """Turn raw per-price values into a normalized curve.

    An all-zero input yields all-zero points (an uninitialized shape).
    """
    if len(raw) != len(prices):
        raise InvalidInput("raw values and prices differ in length")
    total = sum(raw)
    if total == 0:
        return [Point(p, 0.0) for p in prices]
    return [Point(p, r / total) for p, r in zip(prices, raw)]


def bell_shape(mu: float = 20, sigma: float = 15) -> List[Point]:
    """Gaussian bump centred on mu."""
    return normalize_shape([math.exp(-((p - mu) ** 2) / (2 * sigma ** 2)) for p in PRICE_POINTS])


def flat_shape() -> List[Point]:
    return normalize_shape([1.0] * len(PRICE_POINTS))


def exponential_shape(decay: float = 0.08) -> List[Point]:
    """Heavy at low prices, fading as price rises."""
    return normalize_shape([math.exp(-decay * p) for p in PRICE_POINTS])


def logarithmic_shape() -> List[Point]:
    return normalize_shape([math.log(101 - p) for p in PRICE_POINTS])


def sigmoid_shape(midpoint: float = 25, steepness: float = 0.3) -> List[Point]:
    """Inverted S-curve: high below midpoint, low above."""
    return normalize_shape([1.0 / (1.0 + math.exp(steepness * (p - midpoint))) for p in PRICE_POINTS])


def parabolic_shape(max_price: float = 55) -> List[Point]:
    """Quadratic falloff reaching zero at max_price."""
    return normalize_shape([max(0.0, max_price - p) ** 2 for p in PRICE_POINTS])


def generate_shape(shape_type: str, params: Optional[Dict[str, Any]] = None) -> List[Point]:
    """Build a curve from a preset type and its parameters.

    Missing (or zero) parameters take the preset defaults. Unknown types
    fall back to the default bell.
    """
    params = params or {}
    if shape_type == "bell":
        return bell_shape(params.get("mu") or 20, params.get("sigma") or 15)
    if shape_type == "flat":
        return flat_shape()
    if shape_type == "exponential":
        return exponential_shape(params.get("decay") or 0.08)
    if shape_type == "logarithmic":
        return logarithmic_shape()
    if shape_type == "sigmoid":
        return sigmoid_shape(params.get("midpoint") or 25, params.get("steepness") or 0.3)
    if shape_type == "parabolic":
        return parabolic_shape(params.get("max_price") or 55)
    if shape_type == "custom":
        raw = params.get("points")
        if not raw:
            return bell_shape()
        points = sorted((p if isinstance(p, Point) else Point.from_dict(p) for p in raw), key=lambda p: p.price)
        check_curve(points)
        return points
    return bell_shape()


# ==================== SHAPE LIBRARY ====================

@dataclass
class Shape:
    """Named snapshot of a normalized curve."""
    id: str
    name: str
    shape_type: str
    params: Dict[str, Any] = field(default_factory=dict)
    points: List[Point] = field(default_factory=list)
    is_default: bool = False
    created_at_ms: int = 0
    updated_at_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "shape_type": self.shape_type,
            "params": self.params,
            "points": [p.to_dict() for p in self.points],
            "is_default": self.is_default,
            "created_at_ms": self.created_at_ms,
            "updated_at_ms": self.updated_at_ms,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "Shape":
        return cls(
            id=d["id"],
            name=d["name"],
            shape_type=d.get("shape_type", "custom"),
            params=d.get("params", {}),
            points=[Point.from_dict(p) for p in d.get("points", [])],
            is_default=bool(d.get("is_default", False)),
            created_at_ms=int(d.get("created_at_ms", 0)),
            updated_at_ms=int(d.get("updated_at_ms", 0)),
        )


class ShapeLibrary:
    """Named shapes persisted to a JSON file.

    The file holds ``{"shapes": [...]}``. Every mutation rewrites the file;
    pass ``path=None`` for an in-memory library.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._shapes: Dict[str, Shape] = {}
        if path and os.path.exists(path):
            with open(path, "r") as fp:
                data = json.load(fp)
            for d in data.get("shapes", []):
                shape = Shape.from_dict(d)
                self._shapes[shape.id] = shape

    def _flush(self) -> None:
        if not self.path:
            return
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        tmp = self.path + ".tmp"
        with open(tmp, "w") as fp:
            json.dump({"shapes": [s.to_dict() for s in self._shapes.values()]}, fp, indent=2)
        os.replace(tmp, self.path)

    def save_shape(
        self,
        name: str,
        shape_type: str,
        params: Optional[Dict[str, Any]] = None,
        points: Optional[Sequence[Point]] = None,
    ) -> Shape:
        params = dict(params or {})
        if points is not None:
            pts = sorted(points, key=lambda p: p.price)
            check_curve(pts)
        else:
            pts = generate_shape(shape_type, params)
        # Points live on the shape itself, not in its params
        params.pop("points", None)
        ts = now_ms()
        shape = Shape(
            id=str(uuid.uuid4()),
            name=name,
            shape_type=shape_type,
            params=params,
            points=list(pts),
            created_at_ms=ts,
            updated_at_ms=ts,
        )
        self._shapes[shape.id] = shape
        self._flush()
        return shape

    def list_shapes(self) -> List[Shape]:
        """Default shape first, then by name."""
        return sorted(self._shapes.values(), key=lambda s: (not s.is_default, s.name))

    def get_shape(self, shape_id: str) -> Optional[Shape]:
        return self._shapes.get(shape_id)

    def get_default_shape(self) -> Shape:
        """Return the default shape, creating "Default Bell" if there is none."""
        for shape in self._shapes.values():
            if shape.is_default:
                return shape
        params = {"mu": 20, "sigma": 15}
        shape = self.save_shape("Default Bell", "bell", params)
        shape.is_default = True
        self._flush()
        return shape

    def set_default_shape(self, shape_id: str) -> Shape:
        if shape_id not in self._shapes:
            raise InvalidInput(f"shape {shape_id} not found")
        for shape in self._shapes.values():
            shape.is_default = shape.id == shape_id
        self._flush()
        return self._shapes[shape_id]

    def delete_shape(self, shape_id: str) -> None:
        shape = self._shapes.get(shape_id)
        if shape is None:
            return
        if shape.is_default:
            raise InvalidOperation("cannot delete the default shape")
        del self._shapes[shape_id]
        self._flush()

    def update_shape(self, shape_id: str, params: Dict[str, Any]) -> Shape:
        """Merge params and regenerate points (custom shapes take the given points)."""
        shape = self._shapes.get(shape_id)
        if shape is None:
            raise InvalidInput(f"shape {shape_id} not found")
        new_params = {**shape.params, **params}
        if shape.shape_type == "custom":
            if params.get("points"):
                shape.points = generate_shape("custom", params)
        else:
            shape.points = generate_shape(shape.shape_type, new_params)
        new_params.pop("points", None)
        shape.params = new_params
        shape.updated_at_ms = now_ms()
        self._flush()
        return shape
