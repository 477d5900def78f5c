"""
Menu index and loaders.

The core only needs a point-in-time snapshot mapping canonical item names to
their sizes and prices. Loading (CSV export of the store's menu sheet, or the
built-in sample menu) happens at the edges and is refreshed on a TTL.

CSV rows are `item,size,price[,category[,available]]`; a header row is optional.
"""

from __future__ import annotations

import csv
import re
import time
import unicodedata
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import structlog

logger = structlog.get_logger(__name__)

DEFAULT_SIZE = "regular"

_PRICE_RE = re.compile(r"^\$?\s*([0-9]+(?:\.[0-9]{1,2})?)$")
_FALSE_VALUES = ("false", "no", "0", "n")


class MenuError(Exception):
    """Raised when a menu source cannot be loaded."""
    pass


@dataclass(frozen=True)
class MenuItem:
    name: str
    sizes: Tuple[str, ...] = ()
    prices: Mapping[str, float] = field(default_factory=dict)
    category: str = "Other"
    price: Optional[float] = None

    @property
    def default_size(self) -> str:
        return self.sizes[0] if self.sizes else DEFAULT_SIZE


class MenuIndex:
    """
    Immutable snapshot: canonical item name -> MenuItem.

    Lookups are case/accent/whitespace insensitive and always return the
    canonical item so stored order lines use menu spelling.
    """

    def __init__(self, items: Iterable[MenuItem], *, loaded_at: Optional[float] = None):
        by_name: Dict[str, MenuItem] = {}
        for item in items:
            by_name[item.name] = item
        self._items: Mapping[str, MenuItem] = MappingProxyType(by_name)
        self._by_key: Mapping[str, MenuItem] = MappingProxyType(
            {_normalize(name): item for name, item in by_name.items()}
        )
        self.loaded_at = loaded_at if loaded_at is not None else time.time()

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.lookup(name) is not None

    @property
    def items(self) -> Mapping[str, MenuItem]:
        return self._items

    def lookup(self, name: str) -> Optional[MenuItem]:
        if not name:
            return None
        return self._by_key.get(_normalize(name))

    def resolve_size(self, item: MenuItem, size: Optional[str]) -> str:
        """Requested size if the item declares it, else the item's default size."""
        wanted = _normalize(size or "")
        if wanted:
            for declared in item.sizes:
                if _normalize(declared) == wanted:
                    return declared
        return item.default_size

    def resolve_price(self, item: MenuItem, size: Optional[str]) -> float:
        """
        Size-specific price when the size is declared, else the flat price,
        else the first declared size's price. Returns 0.0 when nothing resolves.
        """
        wanted = _normalize(size or "")
        if wanted:
            for declared in item.sizes:
                if _normalize(declared) == wanted and declared in item.prices:
                    return float(item.prices[declared])
        if item.price is not None:
            return float(item.price)
        if item.sizes and item.sizes[0] in item.prices:
            return float(item.prices[item.sizes[0]])
        return 0.0

    def to_prompt_lines(self) -> List[str]:
        """
        Render a compact, deterministic representation for prompting.
        """
        categories: Dict[str, List[str]] = {}
        for name, item in self._items.items():
            sizes = item.sizes or (DEFAULT_SIZE,)
            prices = ", ".join(
                f"{size} ${self.resolve_price(item, size):.2f}" for size in sizes
            )
            categories.setdefault(item.category or "Other", []).append(
                f"- {name} (sizes: {', '.join(sizes)}) - {prices}"
            )

        lines: List[str] = []
        for category in sorted(categories):
            if lines:
                lines.append("")
            lines.append(f"{category.upper()}:")
            lines.extend(categories[category])
        return lines

    def to_prompt_text(self) -> str:
        return "\n".join(self.to_prompt_lines())


def _normalize(text: str) -> str:
    """
    Normalize text for matching: casefold + strip accents + collapse whitespace.
    """
    text = unicodedata.normalize("NFKD", text)
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = " ".join(text.split())
    return text.casefold()


def parse_price(price_text: str) -> Optional[float]:
    match = _PRICE_RE.match((price_text or "").strip())
    if not match:
        return None

    try:
        amount = Decimal(match.group(1)).quantize(Decimal("0.01"))
    except (InvalidOperation, ValueError):
        return None
    return float(amount)


def _project_root() -> Path:
    # src/phone_orders/menu.py -> src/phone_orders -> src -> project root
    return Path(__file__).resolve().parent.parent.parent


def resolve_menu_path(menu_path: str) -> Path:
    """
    Resolve a menu path. Relative paths are interpreted relative to the project root.
    """
    path = Path(menu_path)
    if path.is_absolute():
        return path
    return _project_root() / path


def parse_menu_rows(rows: Iterable[List[str]]) -> MenuIndex:
    """
    Build a MenuIndex from sheet-style rows.

    Rows with a missing name, an unparseable price or `available=false` are skipped.
    """
    sizes: Dict[str, List[str]] = {}
    prices: Dict[str, Dict[str, float]] = {}
    categories: Dict[str, str] = {}

    for index, row in enumerate(rows):
        if not row or len(row) < 3:
            continue

        name = (row[0] or "").strip().lower()
        size = (row[1] or DEFAULT_SIZE).strip().lower() or DEFAULT_SIZE
        price_text = (row[2] or "").strip()

        if index == 0 and name in ("item", "name", "item name"):
            continue

        if not name:
            logger.warning("Skipping menu row without item name", row=index + 1)
            continue

        if len(row) > 4 and (row[4] or "").strip().lower() in _FALSE_VALUES:
            logger.debug("Skipping unavailable menu item", item=name, size=size)
            continue

        price = parse_price(price_text)
        if price is None:
            logger.warning("Skipping menu row with invalid price", row=index + 1, item=name, price=price_text)
            continue

        sizes.setdefault(name, [])
        if size not in sizes[name]:
            sizes[name].append(size)
        prices.setdefault(name, {})[size] = price
        if len(row) > 3 and (row[3] or "").strip():
            categories.setdefault(name, row[3].strip())

    items = [
        MenuItem(
            name=name,
            sizes=tuple(item_sizes),
            prices=MappingProxyType(dict(prices[name])),
            category=categories.get(name, "Other"),
        )
        for name, item_sizes in sizes.items()
    ]
    return MenuIndex(items)


def load_menu_from_csv(path: Path) -> MenuIndex:
    try:
        with path.open(newline="", encoding="utf-8-sig") as fh:
            index = parse_menu_rows(csv.reader(fh))
    except OSError as e:
        raise MenuError(f"Cannot read menu file {path}: {e}") from e

    if len(index) == 0:
        raise MenuError(f"Menu file {path} contains no usable items")
    return index


def _sized(name: str, category: str, **size_prices: float) -> MenuItem:
    return MenuItem(
        name=name,
        sizes=tuple(size_prices),
        prices=MappingProxyType(dict(size_prices)),
        category=category,
    )


def _flat(name: str, category: str, price: float) -> MenuItem:
    return MenuItem(
        name=name,
        sizes=(DEFAULT_SIZE,),
        prices=MappingProxyType({DEFAULT_SIZE: price}),
        category=category,
        price=price,
    )


def default_menu() -> MenuIndex:
    """Built-in sample menu used when no menu source is configured or loading fails."""
    return MenuIndex(
        [
            _sized("cheese pizza", "Pizza", small=12.99, medium=15.99, large=18.99),
            _sized("pepperoni pizza", "Pizza", small=14.99, medium=17.99, large=20.99),
            _sized("margherita pizza", "Pizza", small=15.99, medium=18.99, large=21.99),
            _sized("white pizza", "Pizza", small=14.99, medium=17.99, large=20.99),
            _sized("supreme pizza", "Pizza", small=17.99, medium=20.99, large=23.99),
            _sized("veggie pizza", "Pizza", small=16.99, medium=19.99, large=22.99),
            _flat("calzone", "Calzones", 12.99),
            _flat("pepperoni calzone", "Calzones", 14.99),
            _flat("garlic bread", "Sides", 5.99),
            _flat("garlic knots", "Sides", 6.99),
            _flat("mozzarella sticks", "Sides", 7.99),
            _sized("french fries", "Sides", regular=4.99, large=6.99),
            _sized("salad", "Sides", small=6.99, large=9.99),
            _flat("soda", "Drinks", 2.99),
            _flat("water", "Drinks", 1.99),
        ]
    )


class MenuProvider:
    """
    Caches the current menu snapshot and reloads it after `ttl_seconds`.

    A failed reload keeps serving the last good snapshot (or the built-in menu).
    """

    def __init__(self, menu_path: str = "", *, ttl_seconds: float = 1800.0, clock=time.monotonic):
        self._menu_path = menu_path
        self._ttl = ttl_seconds
        self._clock = clock
        self._snapshot: Optional[MenuIndex] = None
        self._loaded_at: float = 0.0

    def snapshot(self) -> MenuIndex:
        now = self._clock()
        if self._snapshot is not None and now - self._loaded_at < self._ttl:
            return self._snapshot

        self._snapshot = self._load(fallback=self._snapshot)
        self._loaded_at = now
        return self._snapshot

    def _load(self, *, fallback: Optional[MenuIndex]) -> MenuIndex:
        if not self._menu_path:
            return fallback or default_menu()

        path = resolve_menu_path(self._menu_path)
        try:
            index = load_menu_from_csv(path)
        except MenuError as e:
            logger.error("Failed to load menu", menu_path=str(path), error=str(e))
            return fallback or default_menu()

        logger.info("Menu loaded", menu_path=str(path), num_items=len(index))
        return index
