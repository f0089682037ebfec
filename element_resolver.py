"""
Element Resolver.

Finds the live element a recorded step refers to, using four independent
strategies tried in a fixed order until one matches:

    1. text/role      - visible text, aria-label, placeholder or title
    2. structural     - form index + element index, confirmed by nearby text
    3. visual         - AI-vision lookup of the recorded description
    4. coordinates    - whatever sits under the recorded element centre

Strategies work on a PageSnapshot, a plain description of the page's
interactive elements taken by the browser session. They do not touch the
browser themselves, which keeps them testable without one.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from enum import Enum
from typing import Optional, Protocol, Sequence

import automation_config
from automation_errors import VisionCapabilityUnavailable
from recipe_models import Step

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ElementInfo:
    """One interactive element as seen in a page snapshot."""
    element_id: int
    tag: str
    role: Optional[str] = None
    text: Optional[str] = None
    aria_label: Optional[str] = None
    placeholder: Optional[str] = None
    title: Optional[str] = None
    input_type: Optional[str] = None
    form_index: Optional[int] = None
    element_index: Optional[int] = None
    parent_text: Optional[str] = None
    nearby_text: tuple[str, ...] = ()
    x: float = 0
    y: float = 0
    width: float = 0
    height: float = 0
    visible: bool = True

    def contains(self, px: float, py: float) -> bool:
        return self.x <= px <= self.x + self.width and self.y <= py <= self.y + self.height

    @property
    def area(self) -> float:
        return self.width * self.height

    @classmethod
    def from_dict(cls, data: dict) -> "ElementInfo":
        return cls(
            element_id=int(data["id"]),
            tag=(data.get("tag") or "").lower(),
            role=data.get("role"),
            text=data.get("text"),
            aria_label=data.get("ariaLabel"),
            placeholder=data.get("placeholder"),
            title=data.get("title"),
            input_type=data.get("inputType"),
            form_index=data.get("formIndex"),
            element_index=data.get("elementIndex"),
            parent_text=data.get("parentText"),
            nearby_text=tuple(data.get("nearbyText") or ()),
            x=float(data.get("x", 0)),
            y=float(data.get("y", 0)),
            width=float(data.get("width", 0)),
            height=float(data.get("height", 0)),
            visible=bool(data.get("visible", True)),
        )


@dataclass
class PageSnapshot:
    url: str
    viewport_width: int
    viewport_height: int
    elements: list[ElementInfo] = field(default_factory=list)
    screenshot: Optional[bytes] = None  # full viewport PNG, only taken when needed


@dataclass(frozen=True)
class Point:
    x: float
    y: float


class VisionLocator(Protocol):
    """AI-vision capability: where on this screenshot is the described element?

    Raises VisionCapabilityUnavailable when no backend is configured and
    VisionLookupError on transient failures.
    """

    async def locate(self, screenshot: bytes, description: str) -> Optional[Point]:
        ...


class Strategy(str, Enum):
    TEXT = "text"
    STRUCTURAL = "structural"
    VISUAL = "visual"
    COORDINATES = "coordinates"


ALL_STRATEGIES = (Strategy.TEXT, Strategy.STRUCTURAL, Strategy.VISUAL, Strategy.COORDINATES)


@dataclass
class Resolution:
    element: Optional[ElementInfo]
    strategy: Optional[Strategy]
    tried: list[Strategy] = field(default_factory=list)

    @property
    def matched(self) -> bool:
        return self.element is not None


# Recorded roles that correspond to native tags
_ROLE_TAGS = {
    "button": {"button"},
    "link": {"a"},
    "a": {"a"},
    "input": {"input", "textarea"},
    "textbox": {"input", "textarea"},
    "select": {"select"},
    "combobox": {"select"},
}


def _normalize(value: Optional[str]) -> str:
    return " ".join((value or "").split())


def element_at_point(page: PageSnapshot, x: float, y: float) -> Optional[ElementInfo]:
    """Return the innermost visible element whose box contains (x, y)."""
    hits = [el for el in page.elements if el.visible and el.area > 0 and el.contains(x, y)]
    if not hits:
        return None
    return min(hits, key=lambda el: el.area)


def role_matches(element: ElementInfo, role: Optional[str]) -> bool:
    if not role:
        return True
    role = role.lower()
    if element.role and element.role.lower() == role:
        return True
    return element.tag in _ROLE_TAGS.get(role, {role})


# --- Strategies ---


def match_text(step: Step, page: PageSnapshot) -> Optional[ElementInfo]:
    """Exact, then case-insensitive match on text, aria-label, placeholder, title."""
    ident = step.identification
    candidates = [el for el in page.elements if el.visible and role_matches(el, ident.role)]

    for attr in ("text", "aria_label", "placeholder", "title"):
        wanted = _normalize(getattr(ident, attr))
        if not wanted:
            continue
        for el in candidates:
            if _normalize(getattr(el, attr)) == wanted:
                return el
        lowered = wanted.lower()
        for el in candidates:
            if _normalize(getattr(el, attr)).lower() == lowered:
                return el
    return None


def context_similarity(step: Step, element: ElementInfo) -> float:
    """Score 0-1 of how well the element's surroundings match the recording."""
    ctx = step.context
    scores = []

    recorded = [_normalize(t).lower() for t in ctx.nearby_text if _normalize(t)]
    if recorded:
        live = " | ".join(_normalize(t).lower() for t in element.nearby_text)
        found = sum(1 for t in recorded if t in live)
        scores.append(found / len(recorded))

    if _normalize(ctx.parent_text):
        a = _normalize(ctx.parent_text).lower()
        b = _normalize(element.parent_text).lower()
        scores.append(SequenceMatcher(None, a, b).ratio() if b else 0.0)

    # Nothing recorded to confirm against
    if not scores:
        return 0.0
    return sum(scores) / len(scores)


def match_structure(step: Step, page: PageSnapshot,
                    threshold: float = automation_config.STRUCTURAL_MATCH_THRESHOLD) -> Optional[ElementInfo]:
    ctx = step.context
    if ctx.element_index is None:
        return None
    for el in page.elements:
        if el.form_index == ctx.form_index and el.element_index == ctx.element_index:
            if not el.visible:
                return None
            score = context_similarity(step, el)
            if score < threshold:
                logger.debug(f"Structural candidate rejected (score {score:.2f} < {threshold})")
                return None
            return el
    return None


def clamp_to_viewport(point: Point, page: PageSnapshot) -> Point:
    x = min(max(point.x, 0), max(page.viewport_width - 1, 0))
    y = min(max(point.y, 0), max(page.viewport_height - 1, 0))
    return Point(x, y)


async def match_visual(step: Step, page: PageSnapshot,
                       vision: Optional[VisionLocator]) -> Optional[ElementInfo]:
    if step.visual is None or vision is None or page.screenshot is None:
        return None
    try:
        point = await vision.locate(page.screenshot, step.visual.ai_description)
    except VisionCapabilityUnavailable as e:
        logger.info(f"Vision strategy skipped: {e}")
        return None
    if point is None:
        return None
    point = clamp_to_viewport(point, page)
    return element_at_point(page, point.x, point.y)


def match_coordinates(step: Step, page: PageSnapshot) -> Optional[ElementInfo]:
    return element_at_point(page, step.coordinates.element_x, step.coordinates.element_y)


class ElementResolver:
    """Runs the strategies in priority order and reports which one matched."""

    def __init__(
        self,
        vision: Optional[VisionLocator] = None,
        threshold: float = automation_config.STRUCTURAL_MATCH_THRESHOLD,
        strategies: Sequence[Strategy] = ALL_STRATEGIES,
    ):
        self.vision = vision
        self.threshold = threshold
        # Keep the fixed priority order even if given a subset
        self.strategies = tuple(s for s in ALL_STRATEGIES if s in strategies)
        self.last_strategy: Optional[Strategy] = None

    def needs_screenshot(self, step: Step) -> bool:
        return Strategy.VISUAL in self.strategies and step.has_visual and self.vision is not None

    async def resolve(self, step: Step, page: PageSnapshot) -> Resolution:
        tried: list[Strategy] = []
        for strategy in self.strategies:
            tried.append(strategy)
            element = await self._run(strategy, step, page)
            if element is not None:
                self.last_strategy = strategy
                logger.info(f"Resolved '{step.describe()}' via {strategy.value} strategy")
                return Resolution(element=element, strategy=strategy, tried=tried)
        self.last_strategy = None
        logger.info(f"No strategy resolved '{step.describe()}' on {page.url}")
        return Resolution(element=None, strategy=None, tried=tried)

    async def _run(self, strategy: Strategy, step: Step, page: PageSnapshot) -> Optional[ElementInfo]:
        if strategy is Strategy.TEXT:
            return match_text(step, page)
        if strategy is Strategy.STRUCTURAL:
            return match_structure(step, page, self.threshold)
        if strategy is Strategy.VISUAL:
            return await match_visual(step, page, self.vision)
        return match_coordinates(step, page)
