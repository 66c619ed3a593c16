"""Text-to-element locator.

ElementLocator.locate() runs an ordered list of strategies and returns the
first element found:

1. scored match over text-bearing tags in the main document
2. text split across adjacent text nodes
3. Playwright's own text query
4. scored match inside child frames
5. degraded queries (text prefixes, then a significant word, then a key phrase)
6. a generic content container, unless the page is an error page

The page only supplies candidate snapshots; normalisation, scoring and
tie-breaking happen in the pure functions below.
"""

import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple

from playwright.async_api import ElementHandle, Frame, Page

from ..models.capture import LocatedElement, StrategyTag
from .detection import is_error_page
from .errors import CaptureError, ErrorPage, raise_if_session_crash

logger = logging.getLogger(__name__)


TEXT_TAGS = (
    'h1, h2, h3, h4, h5, h6, p, span, div, a, li, button, label, '
    'strong, em, b, i, article, section, blockquote, cite'
)
FRAME_TEXT_TAGS = 'h1, h2, h3, h4, h5, h6, p, span, div, a, li'

# Nearest ancestor tags preferred when a single text node matches
SEMANTIC_TAGS = ['h1', 'h2', 'h3', 'h4', 'h5', 'h6', 'p', 'span', 'div', 'a', 'li', 'article', 'section']

FALLBACK_SELECTORS = [
    'main, article, [role="main"]',
    '.main-content, .content, #main-content, #content',
    'body',
]

SCORE_EXACT = 100
SCORE_AFFIX = 80
SCORE_NO_PUNCT = 70
SCORE_CONTAINS = 60

PREFIX_LENGTHS = (50, 40, 30, 20)
MIN_SIGNIFICANT_WORD = 4
MAX_CANDIDATE_TEXT = 20000

_PUNCTUATION = re.compile(r"[.,;:!?'\"()\-]")
_WHITESPACE = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lowercase and collapse whitespace."""
    return _WHITESPACE.sub(' ', text.strip().lower())


def strip_punctuation(text: str) -> str:
    """Replace common punctuation with spaces and collapse whitespace."""
    return _WHITESPACE.sub(' ', _PUNCTUATION.sub(' ', text)).strip()


def text_matches(candidate: str, query: str) -> bool:
    """Case- and punctuation-insensitive containment test."""
    norm_candidate = normalize_text(candidate)
    norm_query = normalize_text(query)
    if not norm_query:
        return False
    if norm_query in norm_candidate:
        return True
    stripped_query = strip_punctuation(norm_query)
    return bool(stripped_query) and stripped_query in strip_punctuation(norm_candidate)


def score_match(candidate: str, query: str) -> Optional[int]:
    """Score how well a candidate element's text matches the query.

    Args:
        candidate: Element text as rendered
        query: Target text

    Returns:
        100 exact, 80 prefix/suffix, 70 punctuation-insensitive contains,
        60 plain contains, or None when the text is not contained at all
    """
    norm_candidate = normalize_text(candidate)
    norm_query = normalize_text(query)
    if not norm_query or not norm_candidate:
        return None

    stripped_candidate = strip_punctuation(norm_candidate)
    stripped_query = strip_punctuation(norm_query)

    contains = norm_query in norm_candidate
    contains_stripped = bool(stripped_query) and stripped_query in stripped_candidate
    if not contains and not contains_stripped:
        return None

    if norm_candidate == norm_query or (stripped_query and stripped_candidate == stripped_query):
        return SCORE_EXACT
    if norm_candidate.startswith(norm_query) or norm_candidate.endswith(norm_query):
        return SCORE_AFFIX
    if contains_stripped:
        return SCORE_NO_PUNCT
    return SCORE_CONTAINS


@dataclass
class Candidate:
    """Snapshot of one element that may contain the target text."""
    index: int
    text: str
    width: float
    height: float
    truncated: bool = False

    @property
    def area(self) -> float:
        return self.width * self.height


def pick_best_candidate(
    candidates: Sequence[Candidate],
    query: str,
) -> Optional[Tuple[Candidate, int]]:
    """Choose the highest-scoring candidate, smallest area on ties.

    Candidates with zero rendered area are never chosen. Among equal score and
    area the earliest in document order wins.

    Returns:
        (candidate, score) or None
    """
    best: Optional[Tuple[Candidate, int]] = None

    for candidate in candidates:
        if candidate.width <= 0 or candidate.height <= 0:
            continue

        score = score_match(candidate.text, query)
        if score is None and candidate.truncated:
            # Text was cut short; the page-side filter already saw a match
            score = SCORE_CONTAINS
        if score is None:
            continue

        if (
            best is None
            or score > best[1]
            or (score == best[1] and candidate.area < best[0].area)
        ):
            best = (candidate, score)

    return best


def find_text_node_match(texts: Sequence[str], query: str) -> Optional[Tuple[int, int]]:
    """Find the text node(s) holding the query.

    First looks for a single node containing the query, then for the first
    pair of consecutive nodes whose joined text contains it.

    Returns:
        (first_index, last_index) with last_index equal to first_index for a
        single node, or None
    """
    for i, text in enumerate(texts):
        if text_matches(text, query):
            return i, i

    for i in range(len(texts) - 1):
        if text_matches(f"{texts[i]} {texts[i + 1]}", query):
            return i, i + 1

    return None


def degraded_queries(text: str) -> List[Tuple[StrategyTag, str]]:
    """Fallback queries tried after all exact strategies fail.

    Prefixes of 50/40/30/20 characters (only when the text is longer), then
    the first significant word, then a key phrase of two or three
    significant words. Duplicates are dropped.
    """
    clean = _WHITESPACE.sub(' ', text.strip())
    queries: List[Tuple[StrategyTag, str]] = []
    seen = {normalize_text(clean)}

    def add(tag: StrategyTag, query: str) -> None:
        query = query.strip()
        key = normalize_text(query)
        if key and key not in seen:
            seen.add(key)
            queries.append((tag, query))

    for length in PREFIX_LENGTHS:
        if len(clean) > length:
            add(StrategyTag.PARTIAL_PREFIX, clean[:length])

    words = [w for w in strip_punctuation(clean).split(' ') if len(w) >= MIN_SIGNIFICANT_WORD]
    if words:
        add(StrategyTag.KEY_PHRASE, words[0])
    if len(words) >= 2:
        add(StrategyTag.KEY_PHRASE, ' '.join(words[:3]))

    return queries


_CANDIDATES_SCRIPT = '''
([selector, query, maxText]) => {
    const norm = (s) => s.toLowerCase().replace(/\\s+/g, ' ').trim();
    const strip = (s) => s.replace(/[.,;:!?'"()\\-]/g, ' ').replace(/\\s+/g, ' ').trim();
    const target = norm(query);
    const targetStripped = strip(target);
    const out = [];
    document.querySelectorAll(selector).forEach((el, index) => {
        const raw = (el.innerText || el.textContent || '').trim();
        if (!raw) { return; }
        const text = norm(raw);
        if (!text.includes(target) && !(targetStripped && strip(text).includes(targetStripped))) {
            return;
        }
        const rect = el.getBoundingClientRect();
        out.push({
            index,
            text: raw.length > maxText ? raw.slice(0, maxText) : raw,
            truncated: raw.length > maxText,
            width: rect.width,
            height: rect.height
        });
    });
    return out;
}
'''

_NTH_ELEMENT_SCRIPT = '([selector, index]) => document.querySelectorAll(selector)[index] || null'

_TEXT_NODES_SCRIPT = '''
() => {
    const texts = [];
    if (!document.body) { return texts; }
    const walker = document.createTreeWalker(document.body, NodeFilter.SHOW_TEXT, null);
    let node;
    while ((node = walker.nextNode())) {
        const text = node.textContent.trim();
        if (text) { texts.push(text); }
    }
    return texts;
}
'''

_TEXT_NODE_ELEMENT_SCRIPT = '''
([first, last, semanticTags]) => {
    const nodes = [];
    const walker = document.createTreeWalker(document.body, NodeFilter.SHOW_TEXT, null);
    let node;
    while ((node = walker.nextNode())) {
        if (node.textContent.trim()) { nodes.push(node); }
        if (nodes.length > last) { break; }
    }
    const a = nodes[first];
    const b = nodes[last];
    if (!a || !b) { return null; }

    if (first === last) {
        let parent = a.parentElement;
        while (parent && parent !== document.body) {
            if (semanticTags.includes(parent.tagName.toLowerCase())) { return parent; }
            parent = parent.parentElement;
        }
        return a.parentElement;
    }

    let ancestor = a.parentElement;
    const other = b.parentElement;
    while (ancestor && ancestor !== document.body) {
        if (ancestor === other || ancestor.contains(other)) { return ancestor; }
        ancestor = ancestor.parentElement;
    }
    return a.parentElement;
}
'''


Strategy = Callable[[Page, str], Awaitable[Optional[LocatedElement]]]


class ElementLocator:
    """Finds the element that renders a piece of text."""

    def __init__(self, text_query_timeout_ms: int = 5000, allow_content_fallback: bool = True):
        """Initialize locator.

        Args:
            text_query_timeout_ms: Timeout for resolving Playwright text queries
            allow_content_fallback: Return a generic content container when
                no strategy matches the text
        """
        self.text_query_timeout_ms = text_query_timeout_ms
        self.allow_content_fallback = allow_content_fallback

    @property
    def strategies(self) -> List[Tuple[str, Strategy]]:
        return self._strategies(self.allow_content_fallback)

    def _strategies(self, with_fallback: bool) -> List[Tuple[str, Strategy]]:
        strategies: List[Tuple[str, Strategy]] = [
            ("exact-match", self.find_scored_match),
            ("split-across-nodes", self.find_split_text),
            ("library-text-query", self.find_by_text_query),
            ("cross-frame", self.find_in_frames),
            ("degraded", self.find_degraded),
        ]
        if with_fallback:
            strategies.append(("content-fallback", self.find_content_fallback))
        return strategies

    async def locate(
        self,
        page: Page,
        target_text: str,
        allow_content_fallback: Optional[bool] = None,
    ) -> Optional[LocatedElement]:
        """Locate the element rendering target_text.

        Args:
            page: Loaded page
            target_text: Text to find
            allow_content_fallback: Overrides the instance setting for this call

        Returns:
            The first strategy's match, or None

        Raises:
            ErrorPage: If only the content fallback remains and the page is an error page
        """
        query = _WHITESPACE.sub(' ', target_text.strip())
        if allow_content_fallback is None:
            allow_content_fallback = self.allow_content_fallback
        located = await first_success(self._strategies(allow_content_fallback), page, query)
        if located is None:
            logger.info(f"Text not found on {page.url}: {query[:60]!r}")
        else:
            logger.info(
                f"Located text on {page.url} via {located.strategy.value}"
                f" (score={located.score})"
            )
        return located

    async def find_scored_match(self, page: Page, query: str) -> Optional[LocatedElement]:
        """Strategy 1: best-scoring text-bearing element in the main document."""
        return await self._scored_match_in(page.main_frame, query, TEXT_TAGS, StrategyTag.EXACT_MATCH)

    async def find_split_text(self, page: Page, query: str) -> Optional[LocatedElement]:
        """Strategy 2: text spread over one or two adjacent text nodes."""
        texts = await page.evaluate(_TEXT_NODES_SCRIPT)
        match = find_text_node_match(texts or [], query)
        if match is None:
            return None

        first, last = match
        handle = await page.evaluate_handle(_TEXT_NODE_ELEMENT_SCRIPT, [first, last, SEMANTIC_TAGS])
        element = handle.as_element() if handle else None
        if element is None:
            return None
        return LocatedElement(handle=element, strategy=StrategyTag.SPLIT_ACROSS_NODES, matched_text=query)

    async def find_by_text_query(self, page: Page, query: str) -> Optional[LocatedElement]:
        """Strategy 3: Playwright's text engine."""
        locator = page.get_by_text(query, exact=False)
        if await locator.count() == 0:
            return None
        element = await locator.first.element_handle(timeout=self.text_query_timeout_ms)
        if element is None:
            return None
        return LocatedElement(handle=element, strategy=StrategyTag.LIBRARY_TEXT_QUERY, matched_text=query)

    async def find_in_frames(self, page: Page, query: str) -> Optional[LocatedElement]:
        """Strategy 4: scored match inside each child frame."""
        main = page.main_frame
        for frame in page.frames:
            if frame == main:
                continue
            try:
                located = await self._scored_match_in(frame, query, FRAME_TEXT_TAGS, StrategyTag.CROSS_FRAME)
            except CaptureError:
                raise
            except Exception as e:
                raise_if_session_crash(e)
                logger.debug(f"Frame search failed in {frame.url}: {e}")
                continue
            if located is not None:
                located.frame_url = frame.url
                return located
        return None

    async def find_degraded(self, page: Page, query: str) -> Optional[LocatedElement]:
        """Strategy 5: shorter queries derived from the target text."""
        for tag, degraded in degraded_queries(query):
            located = await self._scored_match_in(page.main_frame, degraded, TEXT_TAGS, tag)
            if located is not None:
                logger.debug(f"Degraded match with {tag.value} query {degraded!r}")
                return located
        return None

    async def find_content_fallback(self, page: Page, query: str) -> Optional[LocatedElement]:
        """Strategy 6: a generic content container, never on an error page."""
        if await is_error_page(page):
            raise ErrorPage(f"Refusing content fallback on error page: {page.url}", url=page.url)

        for selector in FALLBACK_SELECTORS:
            element = await page.query_selector(selector)
            if element is not None:
                logger.warning(f"Text not matched on {page.url}, falling back to {selector!r}")
                return LocatedElement(
                    handle=element,
                    strategy=StrategyTag.CONTENT_FALLBACK,
                    matched_text=selector,
                )
        return None

    async def _scored_match_in(
        self,
        frame: Frame,
        query: str,
        selector: str,
        tag: StrategyTag,
    ) -> Optional[LocatedElement]:
        raw = await frame.evaluate(_CANDIDATES_SCRIPT, [selector, query, MAX_CANDIDATE_TEXT])
        candidates = [
            Candidate(
                index=item['index'],
                text=item['text'],
                width=item['width'],
                height=item['height'],
                truncated=bool(item.get('truncated')),
            )
            for item in (raw or [])
        ]

        best = pick_best_candidate(candidates, query)
        if best is None:
            return None

        candidate, score = best
        handle = await frame.evaluate_handle(_NTH_ELEMENT_SCRIPT, [selector, candidate.index])
        element: Optional[ElementHandle] = handle.as_element() if handle else None
        if element is None:
            return None
        return LocatedElement(handle=element, strategy=tag, score=score, matched_text=query)


async def first_success(
    strategies: Sequence[Tuple[str, Strategy]],
    page: Page,
    query: str,
) -> Optional[LocatedElement]:
    """Run strategies in order and return the first non-None result.

    Ordinary strategy errors count as "no match". Expected capture failures
    and dead-session errors propagate.
    """
    for name, strategy in strategies:
        try:
            located = await strategy(page, query)
        except CaptureError:
            raise
        except Exception as e:
            raise_if_session_crash(e)
            logger.debug(f"Locator strategy {name} failed: {e}")
            continue

        if located is not None:
            return located
        logger.debug(f"Locator strategy {name} found nothing")

    return None
