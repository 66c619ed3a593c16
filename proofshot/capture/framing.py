"""Context-aware framing of a located element.

The calculator snapshots the element, up to five ancestors and the viewport
in one evaluation, picks the ancestor that best frames the element as a
single card or section, then pads and clamps the result into a screenshot
clip. All boxes are in visible-viewport coordinates: the orchestrator scrolls
the element into view before framing, and page.screenshot(clip=...) without
full_page uses the same coordinate space.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from playwright.async_api import ElementHandle, Page

from ..models.capture import BoundingBox
from .errors import raise_if_session_crash

logger = logging.getLogger(__name__)


MAX_ANCESTOR_DEPTH = 5
MAX_ANCESTOR_HEIGHT = 800
MAX_ANCESTOR_WIDTH = 1400

GRID_CHILD_MIN_SIZE = 200
GRID_TOLERANCE = 0.3

SCORE_CARD = 10
SCORE_HERO = 8
SCORE_SECTION = 5
SCORE_CONTAINER = 3
SECTION_MAX_HEIGHT = 600
CONTAINER_MAX_HEIGHT = 500
TIGHT_RATIO = 3
TIGHT_BONUS = 2
MAX_AREA_RATIO = 10

PADDING = 40
MIN_WIDTH = 300
MAX_WIDTH = 1200
MIN_HEIGHT = 200
MAX_HEIGHT = 800


@dataclass
class Rect:
    x: float
    y: float
    width: float
    height: float

    @property
    def area(self) -> float:
        return self.width * self.height

    def shifted(self, dx: float, dy: float) -> "Rect":
        return Rect(self.x + dx, self.y + dy, self.width, self.height)


@dataclass
class AncestorSnapshot:
    """One ancestor of the located element."""
    tag: str
    class_name: str
    box: Rect
    child_sizes: List[Tuple[float, float]] = field(default_factory=list)


def is_repeated_grid(ancestor: AncestorSnapshot) -> bool:
    """Check if the ancestor is a list/grid of similarly sized items.

    More than one child larger than 200x200 whose height is within 30% (of
    the container height) of container_height / child_count.
    """
    count = len(ancestor.child_sizes)
    if count == 0:
        return False

    expected = ancestor.box.height / count
    tolerance = ancestor.box.height * GRID_TOLERANCE
    similar = [
        (w, h) for w, h in ancestor.child_sizes
        if h > GRID_CHILD_MIN_SIZE and w > GRID_CHILD_MIN_SIZE and abs(h - expected) < tolerance
    ]
    return len(similar) > 1


def score_ancestor(ancestor: AncestorSnapshot, element_area: float) -> Optional[int]:
    """Score an ancestor as a context frame.

    Returns:
        Score, or None if the ancestor is disqualified
    """
    box = ancestor.box
    if box.height > MAX_ANCESTOR_HEIGHT or box.width > MAX_ANCESTOR_WIDTH:
        return None
    if is_repeated_grid(ancestor):
        return None
    if element_area <= 0:
        return None

    ratio = box.area / element_area
    if ratio > MAX_AREA_RATIO:
        return None

    classes = ancestor.class_name.lower()
    tag = ancestor.tag.lower()

    score = 0
    if 'card' in classes or tag == 'article':
        score = SCORE_CARD
    elif 'hero' in classes or 'banner' in classes:
        score = SCORE_HERO
    elif tag == 'section' and box.height < SECTION_MAX_HEIGHT:
        score = SCORE_SECTION
    elif 'container' in classes and box.height < CONTAINER_MAX_HEIGHT:
        score = SCORE_CONTAINER

    if ratio < TIGHT_RATIO:
        score += TIGHT_BONUS

    return score


def choose_frame_box(element_box: Rect, ancestors: Sequence[AncestorSnapshot]) -> Rect:
    """Pick the best-scoring ancestor box, nearest first on ties.

    Falls back to the element's own box when no ancestor scores above zero.
    """
    best_box = element_box
    best_score = 0

    for ancestor in ancestors[:MAX_ANCESTOR_DEPTH]:
        score = score_ancestor(ancestor, element_box.area)
        if score is not None and score > best_score:
            best_score = score
            best_box = ancestor.box

    return best_box


def expand_and_clamp(box: Rect, viewport_width: float, viewport_height: float) -> BoundingBox:
    """Pad the box and clamp it to the size envelope and the viewport.

    Width lands in [300, 1200] and height in [200, 800], then both are capped
    at the viewport. The origin is kept non-negative and moved back so the
    box does not extend past the viewport.
    """
    x = max(0.0, box.x - PADDING)
    y = max(0.0, box.y - PADDING)
    width = box.width + PADDING * 2
    height = box.height + PADDING * 2

    width = min(max(width, MIN_WIDTH), MAX_WIDTH)
    height = min(max(height, MIN_HEIGHT), MAX_HEIGHT)

    width = min(width, viewport_width)
    height = min(height, viewport_height)

    if x + width > viewport_width:
        x = max(0.0, viewport_width - width)
    if y + height > viewport_height:
        y = max(0.0, viewport_height - height)

    return BoundingBox(x=x, y=y, width=width, height=height)


_SNAPSHOT_SCRIPT = '''
(el, maxDepth) => {
    const toRect = (r) => ({x: r.x, y: r.y, width: r.width, height: r.height});
    const ancestors = [];
    let current = el.parentElement;
    let depth = 0;
    while (current && depth < maxDepth) {
        const children = Array.from(current.children || []).map((child) => {
            const r = child.getBoundingClientRect();
            return [r.width, r.height];
        });
        ancestors.push({
            tag: current.tagName.toLowerCase(),
            className: current.getAttribute('class') || '',
            box: toRect(current.getBoundingClientRect()),
            children
        });
        current = current.parentElement;
        depth++;
    }
    return {
        element: toRect(el.getBoundingClientRect()),
        ancestors,
        viewport: {width: window.innerWidth, height: window.innerHeight}
    };
}
'''


class BoundingBoxCalculator:
    """Computes the screenshot clip for a located element."""

    def __init__(self, max_depth: int = MAX_ANCESTOR_DEPTH):
        self.max_depth = max_depth

    async def frame(self, element: ElementHandle, page: Page) -> Optional[BoundingBox]:
        """Compute the framed, clamped box for an element.

        Args:
            element: Element already scrolled into view
            page: Page containing the element (used for the viewport size)

        Returns:
            BoundingBox, or None if the element has no rendered box
        """
        element_box = await element.bounding_box()
        if not element_box or element_box['width'] <= 0 or element_box['height'] <= 0:
            logger.debug("Located element has no rendered box")
            return None

        own = Rect(element_box['x'], element_box['y'], element_box['width'], element_box['height'])
        viewport = page.viewport_size or {}
        viewport_width = viewport.get('width')
        viewport_height = viewport.get('height')

        try:
            snapshot = await element.evaluate(_SNAPSHOT_SCRIPT, self.max_depth)
            ancestors, frame_viewport = self._parse_snapshot(snapshot, own)
            context_box = choose_frame_box(own, ancestors)
            viewport_width = viewport_width or frame_viewport.get('width')
            viewport_height = viewport_height or frame_viewport.get('height')
        except Exception as e:
            raise_if_session_crash(e)
            logger.warning(f"Ancestor framing failed, using element box: {e}")
            context_box = own

        if not viewport_width or not viewport_height:
            viewport_width, viewport_height = MAX_WIDTH, MAX_HEIGHT

        box = expand_and_clamp(context_box, viewport_width, viewport_height)
        logger.debug(
            f"Framed element at ({own.x:.0f},{own.y:.0f} {own.width:.0f}x{own.height:.0f})"
            f" as ({box.x:.0f},{box.y:.0f} {box.width:.0f}x{box.height:.0f})"
        )
        return box

    def _parse_snapshot(
        self,
        snapshot: Dict[str, Any],
        own: Rect,
    ) -> Tuple[List[AncestorSnapshot], Dict[str, Any]]:
        raw_element = snapshot['element']
        # Non-zero inside child frames, where rects are frame-relative
        dx = own.x - raw_element['x']
        dy = own.y - raw_element['y']

        ancestors = []
        for item in snapshot.get('ancestors', []):
            raw = item['box']
            ancestors.append(AncestorSnapshot(
                tag=item.get('tag', ''),
                class_name=item.get('className', ''),
                box=Rect(raw['x'], raw['y'], raw['width'], raw['height']).shifted(dx, dy),
                child_sizes=[(w, h) for w, h in item.get('children', [])],
            ))
        return ancestors, snapshot.get('viewport') or {}
