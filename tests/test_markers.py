"""Tests for marker generation."""

from __future__ import annotations

from tmux_exec.services.markers import END_PREFIX, START_PREFIX, new_invocation_id, new_markers, split_literal


class TestNewMarkers:
    def test_shape(self):
        markers = new_markers("0a1b2c3d-4e5f-6789-abcd-ef0123456789", now=1700000000.5)
        assert markers.start == f"{START_PREFIX}_1700000000500_0a1b2c3d"
        assert markers.end == f"{END_PREFIX}_1700000000500_0a1b2c3d"

    def test_same_millisecond_different_ids(self):
        first = new_markers(new_invocation_id(), now=1700000000.0)
        second = new_markers(new_invocation_id(), now=1700000000.0)
        assert first.start != second.start
        assert first.end != second.end

    def test_start_and_end_differ(self):
        markers = new_markers(new_invocation_id())
        assert markers.start != markers.end
        assert markers.start not in markers.end


class TestSplitLiteral:
    def test_halves(self):
        assert split_literal("abcd") == '"ab""cd"'

    def test_never_contains_text(self):
        text = "TMXE_1700000000123_0a1b2c3d"
        rendered = split_literal(text)
        assert text not in rendered
        assert rendered.replace('""', "").strip('"') == text

    def test_single_character(self):
        assert split_literal("x") == '"x"'
