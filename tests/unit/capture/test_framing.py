"""Unit tests for bounding-box framing."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from proofshot.capture.framing import (
    MAX_HEIGHT,
    MAX_WIDTH,
    MIN_HEIGHT,
    MIN_WIDTH,
    PADDING,
    AncestorSnapshot,
    BoundingBoxCalculator,
    Rect,
    choose_frame_box,
    expand_and_clamp,
    is_repeated_grid,
    score_ancestor,
)


def ancestor(tag="div", class_name="", box=None, children=None):
    return AncestorSnapshot(
        tag=tag,
        class_name=class_name,
        box=box or Rect(0, 0, 400, 300),
        child_sizes=children or [],
    )


class TestRepeatedGrid:
    """Tests for is_repeated_grid."""

    def test_list_of_cards(self):
        grid = ancestor(box=Rect(0, 0, 600, 750), children=[(600, 250), (600, 250), (600, 250)])
        assert is_repeated_grid(grid)

    def test_single_large_child(self):
        single = ancestor(box=Rect(0, 0, 600, 500), children=[(600, 500)])
        assert not is_repeated_grid(single)

    def test_small_children(self):
        small = ancestor(box=Rect(0, 0, 600, 300), children=[(600, 100), (600, 100), (600, 100)])
        assert not is_repeated_grid(small)

    def test_no_children(self):
        assert not is_repeated_grid(ancestor())


class TestScoreAncestor:
    """Tests for score_ancestor."""

    def test_card(self):
        card = ancestor(class_name="post-card shadow", box=Rect(0, 0, 500, 300))
        assert score_ancestor(card, element_area=400 * 100) == 10

    def test_article_tight(self):
        article = ancestor(tag="ARTICLE", box=Rect(0, 0, 400, 200))
        assert score_ancestor(article, element_area=400 * 100) == 12

    def test_hero(self):
        hero = ancestor(class_name="page-banner", box=Rect(0, 0, 800, 400))
        assert score_ancestor(hero, element_area=800 * 100) == 8

    def test_section_height_limit(self):
        short = ancestor(tag="section", box=Rect(0, 0, 400, 500))
        tall = ancestor(tag="section", box=Rect(0, 0, 400, 700))

        assert score_ancestor(short, element_area=400 * 100) == 5
        assert score_ancestor(tall, element_area=400 * 100) == 0

    def test_container(self):
        container = ancestor(class_name="container", box=Rect(0, 0, 400, 400))
        assert score_ancestor(container, element_area=400 * 100) == 3

    def test_plain_div_tight_bonus(self):
        plain = ancestor(box=Rect(0, 0, 400, 120))
        assert score_ancestor(plain, element_area=400 * 100) == 2

    @pytest.mark.parametrize("box", [Rect(0, 0, 400, 801), Rect(0, 0, 1401, 300)])
    def test_oversized_disqualified(self, box):
        assert score_ancestor(ancestor(class_name="card", box=box), element_area=100 * 100) is None

    def test_area_ratio_disqualified(self):
        card = ancestor(class_name="card", box=Rect(0, 0, 600, 600))
        assert score_ancestor(card, element_area=100 * 100) is None

    def test_grid_disqualified(self):
        grid = ancestor(
            class_name="card-list",
            box=Rect(0, 0, 600, 750),
            children=[(600, 250), (600, 250), (600, 250)],
        )
        assert score_ancestor(grid, element_area=600 * 200) is None

    def test_zero_element_area(self):
        assert score_ancestor(ancestor(class_name="card"), element_area=0) is None


class TestChooseFrameBox:
    """Tests for choose_frame_box."""

    def test_element_box_when_nothing_scores(self):
        element = Rect(10, 10, 200, 40)
        ancestors = [ancestor(box=Rect(0, 0, 1000, 700))]

        assert choose_frame_box(element, ancestors) is element

    def test_best_ancestor(self):
        element = Rect(20, 20, 300, 100)
        section = ancestor(tag="section", box=Rect(0, 0, 400, 500))
        card = ancestor(class_name="card", box=Rect(10, 10, 400, 300))

        assert choose_frame_box(element, [section, card]) == card.box

    def test_nearest_wins_ties(self):
        element = Rect(20, 20, 300, 100)
        near = ancestor(class_name="card", box=Rect(10, 10, 400, 300))
        far = ancestor(class_name="card", box=Rect(0, 0, 500, 400))

        assert choose_frame_box(element, [near, far]) == near.box

    def test_depth_limit(self):
        element = Rect(20, 20, 300, 100)
        plain = [ancestor(box=Rect(0, 0, 1000, 700)) for _ in range(5)]
        card = ancestor(class_name="card", box=Rect(10, 10, 400, 300))

        assert choose_frame_box(element, plain + [card]) is element


class TestExpandAndClamp:
    """Tests for expand_and_clamp."""

    def test_padding(self):
        box = expand_and_clamp(Rect(100, 100, 400, 300), 1440, 900)

        assert box.x == 100 - PADDING
        assert box.y == 100 - PADDING
        assert box.width == 400 + 2 * PADDING
        assert box.height == 300 + 2 * PADDING

    def test_minimum_size(self):
        box = expand_and_clamp(Rect(100, 100, 50, 20), 1440, 900)

        assert box.width == MIN_WIDTH
        assert box.height == MIN_HEIGHT

    def test_maximum_size(self):
        box = expand_and_clamp(Rect(0, 0, 1400, 1000), 1440, 900)

        assert box.width == MAX_WIDTH
        assert box.height == MAX_HEIGHT

    def test_viewport_cap(self):
        box = expand_and_clamp(Rect(0, 0, 1100, 700), 800, 600)

        assert box.width == 800
        assert box.height == 600
        assert box.x == 0
        assert box.y == 0

    def test_origin_not_negative(self):
        box = expand_and_clamp(Rect(5, 10, 300, 200), 1440, 900)

        assert box.x == 0
        assert box.y == 0

    def test_shift_back_inside_viewport(self):
        box = expand_and_clamp(Rect(1300, 800, 100, 50), 1440, 900)

        assert box.x + box.width <= 1440
        assert box.y + box.height <= 900
        assert box.x == 1440 - MIN_WIDTH
        assert box.y == 900 - MIN_HEIGHT

    @pytest.mark.parametrize("rect,viewport", [
        (Rect(-50, -50, 2000, 2000), (1440, 900)),
        (Rect(900, 600, 10, 10), (1024, 640)),
        (Rect(0, 0, 0, 0), (320, 240)),
        (Rect(200, 4000, 500, 300), (1440, 900)),
    ])
    def test_always_inside_envelope_and_viewport(self, rect, viewport):
        width, height = viewport
        box = expand_and_clamp(rect, width, height)

        assert box.x >= 0 and box.y >= 0
        assert box.width <= MAX_WIDTH and box.height <= MAX_HEIGHT
        assert box.x + box.width <= width
        assert box.y + box.height <= height


class TestBoundingBoxCalculator:
    """Tests for BoundingBoxCalculator with mocked handles."""

    @pytest.mark.asyncio
    async def test_frames_with_card_ancestor(self, mock_page):
        element = MagicMock()
        element.bounding_box = AsyncMock(return_value={'x': 120, 'y': 220, 'width': 300, 'height': 60})
        element.evaluate = AsyncMock(return_value={
            'element': {'x': 120, 'y': 220, 'width': 300, 'height': 60},
            'ancestors': [
                {'tag': 'div', 'className': 'card', 'box': {'x': 100, 'y': 200, 'width': 400, 'height': 150},
                 'children': [[300, 60]]},
            ],
            'viewport': {'width': 1440, 'height': 900},
        })

        box = await BoundingBoxCalculator().frame(element, mock_page)

        assert box.x == 100 - PADDING
        assert box.y == 200 - PADDING
        assert box.width == 400 + 2 * PADDING
        assert box.height == 150 + 2 * PADDING

    @pytest.mark.asyncio
    async def test_frame_offset_applied(self, mock_page):
        element = MagicMock()
        # Element inside an iframe placed at (500, 300) in the main page
        element.bounding_box = AsyncMock(return_value={'x': 520, 'y': 320, 'width': 300, 'height': 60})
        element.evaluate = AsyncMock(return_value={
            'element': {'x': 20, 'y': 20, 'width': 300, 'height': 60},
            'ancestors': [
                {'tag': 'article', 'className': '', 'box': {'x': 0, 'y': 0, 'width': 400, 'height': 150},
                 'children': []},
            ],
            'viewport': {'width': 600, 'height': 400},
        })

        box = await BoundingBoxCalculator().frame(element, mock_page)

        assert box.x == 500 - PADDING
        assert box.y == 300 - PADDING

    @pytest.mark.asyncio
    async def test_snapshot_failure_uses_element_box(self, mock_page):
        element = MagicMock()
        element.bounding_box = AsyncMock(return_value={'x': 200, 'y': 200, 'width': 400, 'height': 200})
        element.evaluate = AsyncMock(side_effect=Exception("Execution context was destroyed"))

        box = await BoundingBoxCalculator().frame(element, mock_page)

        assert box.width == 400 + 2 * PADDING
        assert box.height == 200 + 2 * PADDING

    @pytest.mark.asyncio
    async def test_snapshot_crash_propagates(self, mock_page):
        element = MagicMock()
        element.bounding_box = AsyncMock(return_value={'x': 0, 'y': 0, 'width': 10, 'height': 10})
        element.evaluate = AsyncMock(side_effect=Exception("Target closed"))

        with pytest.raises(Exception, match="Target closed"):
            await BoundingBoxCalculator().frame(element, mock_page)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw_box", [None, {'x': 0, 'y': 0, 'width': 0, 'height': 20}])
    async def test_no_rendered_box(self, mock_page, raw_box):
        element = MagicMock()
        element.bounding_box = AsyncMock(return_value=raw_box)

        assert await BoundingBoxCalculator().frame(element, mock_page) is None
