"""Tests for visual_tavern.variants — NPC image variant resolution."""

from visual_tavern.variants import resolve_variant_image, strip_markup


class TestResolveVariantImage:
    def test_exact_substring(self) -> None:
        images = {"base": "b.png", "expression_happy": "h.png"}
        assert resolve_variant_image("I am happy today", images) == "h.png"

    def test_case_insensitive(self) -> None:
        images = {"base": "b.png", "expression_happy": "h.png"}
        assert resolve_variant_image("HAPPY!", images) == "h.png"

    def test_expression_beats_pose(self) -> None:
        images = {"base": "b.png", "pose_sitting": "p.png", "expression_angry": "a.png"}
        assert resolve_variant_image("Angry, still sitting there", images) == "a.png"

    def test_clothing_beats_pose(self) -> None:
        images = {"pose_standing": "p.png", "clothing_armor": "c.png"}
        assert resolve_variant_image("standing in armor", images) == "c.png"

    def test_map_order_within_type(self) -> None:
        images = {"expression_sad": "s.png", "expression_happy": "h.png"}
        assert resolve_variant_image("happy and sad", images) == "s.png"

    def test_token_match(self) -> None:
        images = {"base": "b.png", "clothing_rain_coat": "c.png"}
        assert resolve_variant_image("Put on your coat.", images) == "c.png"

    def test_single_char_tokens_ignored(self) -> None:
        images = {"base": "b.png", "pose_a_frame": "p.png"}
        assert resolve_variant_image("a dog", images) == "b.png"

    def test_fuzzy_match(self) -> None:
        # 4 of the 5 letters of "angry" appear in "hungry"
        images = {"base": "b.png", "expression_angry": "a.png"}
        assert resolve_variant_image("I'm hungry", images) == "a.png"

    def test_fuzzy_below_threshold_falls_back(self) -> None:
        images = {"base": "b.png", "expression_happy": "h.png"}
        assert resolve_variant_image("Go away.", images) == "b.png"

    def test_markup_stripped_before_matching(self) -> None:
        images = {"base": "b.png", "expression_red": "r.png"}
        assert resolve_variant_image("<red>Stop</red>", images) == "b.png"

    def test_text_inside_markup_still_matches(self) -> None:
        images = {"base": "b.png", "expression_scared": "s.png"}
        assert resolve_variant_image("<vibration>I'm scared</vibration>", images) == "s.png"

    def test_no_match_without_base(self) -> None:
        assert resolve_variant_image("Go away.", {"expression_happy": "h.png"}) is None

    def test_empty_images(self) -> None:
        assert resolve_variant_image("anything", {}) is None
        assert resolve_variant_image("anything", None) is None

    def test_unknown_prefix_ignored(self) -> None:
        images = {"base": "b.png", "mood_happy": "m.png"}
        assert resolve_variant_image("happy", images) == "b.png"


class TestStripMarkup:
    def test_removes_known_tags_only(self) -> None:
        text = "<red>hot</red> <injury>ouch</injury> <b>bold</b>"
        assert strip_markup(text) == "hot ouch <b>bold</b>"
