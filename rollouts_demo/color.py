"""
Decide which color answers a request and how it answers.

The body of POST /color is empty, the literal "[]" or a JSON array of
overrides, one per color:

    [{"color": "blue", "delayPercent": 50, "delayLength": 2, "return500": 10}]

delayPercent  chance (percent) that delayLength seconds are slept
delayLength   seconds to delay when the delayPercent draw hits, at most MAX_DELAY
return500     chance (percent) that the request fails with a 500

Several entries for the same color are allowed; the last one wins.
"""

import json
import random
from typing import NamedTuple, Optional

EMPTY = b'"[]"'

# seconds
MAX_DELAY = 300


class MalformedRequest(ValueError):
    """Request body is not a JSON array of overrides."""


class Override(NamedTuple):
    color: str
    delay_percent: Optional[int] = None
    delay_length: float = 0.0
    return500: Optional[int] = None


class Decision(NamedTuple):
    color: str
    status: int
    delay: float

    @property
    def ok(self):
        return self.status == 200


def _pct(o, k):
    v = o.get(k)
    if v is None:
        return None
    if isinstance(v, bool) or not isinstance(v, int):
        raise MalformedRequest(f"{k} must be an integer percent, got {v!r}")
    return v


def _override(o):
    if not isinstance(o, dict):
        raise MalformedRequest(f"override must be an object, got {o!r}")
    c = o.get("color", "")
    if not isinstance(c, str):
        raise MalformedRequest(f"color must be a string, got {c!r}")
    dl = o.get("delayLength", 0)
    if dl is None:
        dl = 0
    if isinstance(dl, bool) or not isinstance(dl, (int, float)):
        raise MalformedRequest(f"delayLength must be a number, got {dl!r}")
    try:
        dl = float(dl)
    except OverflowError:
        raise MalformedRequest("delayLength is too large")
    if not 0 <= dl <= MAX_DELAY:
        raise MalformedRequest(f"delayLength must be within 0-{MAX_DELAY} seconds, got {dl!r}")
    return Override(
        color=c,
        delay_percent=_pct(o, "delayPercent"),
        delay_length=dl,
        return500=_pct(o, "return500"),
    )


def parse_overrides(body):
    """Parse a request body into a list of Override, in request order."""
    body = (body or b"").strip()
    if not body or body == EMPTY:
        return []
    try:
        arr = json.loads(body)
    except ValueError as e:
        raise MalformedRequest(str(e))
    if arr is None:
        return []
    if not isinstance(arr, list):
        raise MalformedRequest(f"expected a JSON array, got {type(arr).__name__}")
    return [_override(o) for o in arr]


def fold(overrides):
    """color -> override, later entries shadow earlier ones."""
    d = {}
    for o in overrides:
        d[o.color] = o
    return d


def hit(pct, draw):
    """A percent triggers when it is > 0 and >= the draw in [0, 100)."""
    return pct is not None and pct > 0 and pct >= draw


class Picker:
    """Turns a request body into a Decision using a Config and a random source."""

    def __init__(self, cfg, rng=None):
        self.cfg = cfg
        self.rng = rng or random.Random()

    def pick_color(self):
        if self.cfg.color:
            return self.cfg.color
        return self.rng.choice(self.cfg.colors)

    def delay_for(self, o):
        if o is not None and o.delay_length > 0 and o.delay_percent is not None and o.delay_percent > 0:
            if hit(o.delay_percent, self.rng.randrange(100)):
                return o.delay_length
        if self.cfg.latency:
            return self.cfg.latency
        return 0.0

    def fails(self, o):
        if o is not None and o.return500 is not None and o.return500 > 0:
            return hit(o.return500, self.rng.randrange(100))
        if self.cfg.error_rate is not None:
            # ERROR_RATE reads as a success rate: draws at or above it fail
            return self.rng.randrange(100) >= self.cfg.error_rate
        return False

    def decide(self, body=b""):
        overrides = fold(parse_overrides(body))
        c = self.pick_color()
        o = overrides.get(c)
        delay = self.delay_for(o)
        status = self.cfg.error_status if self.fails(o) else 200
        return Decision(color=c, status=status, delay=delay)


def render(color):
    """Response body: the color as a JSON string literal."""
    return json.dumps(color).encode()
