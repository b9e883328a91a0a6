"""Tests for pane content analysis."""

import pytest

from tmuxloop.analyzer import (
    AnalysisHints,
    CONTEXT_PATTERNS,
    ContentAnalyzer,
    build_hints,
    detect_busy,
    detect_compact_phrase,
    detect_context_percent,
    detect_interactive_prompt,
    strip_ansi,
)

INPUT_BOX = """╭──────────────────────────────────────────╮
│ >                                        │
╰──────────────────────────────────────────╯"""


def filler(count: int) -> str:
    return "\n".join(f"output line {i}" for i in range(count))


class TestStripAnsi:

    def test_removes_color_codes(self):
        assert strip_ansi("\x1b[1;32mgreen\x1b[0m text") == "green text"

    def test_none_is_empty(self):
        assert strip_ansi(None) == ""


class TestBusyDetection:

    def test_interrupt_indicator_in_tail(self):
        snapshot = filler(50) + "\n✻ Thinking… (12s · esc to interrupt)\n" + INPUT_BOX
        assert detect_busy(snapshot) is True

    def test_case_insensitive(self):
        assert detect_busy("Working (ESC TO INTERRUPT)") is True

    def test_indicator_scrolled_out_of_tail(self):
        """Same text, but more than 20 lines above the bottom."""
        snapshot = "✻ Thinking… (esc to interrupt)\n" + filler(25)
        assert detect_busy(snapshot) is False

    def test_indicator_with_ansi_styling(self):
        snapshot = "\x1b[2m(\x1b[1mesc\x1b[0m\x1b[2m to interrupt)\x1b[0m"
        assert detect_busy(snapshot) is True

    def test_idle_pane(self):
        assert detect_busy(filler(10) + "\n" + INPUT_BOX) is False
        assert detect_busy("") is False


class TestContextPercent:

    def test_auto_compact_phrase(self):
        assert detect_context_percent("Context left until auto-compact: 7%") == 7

    def test_no_pattern_returns_none(self):
        assert detect_context_percent("All tests passed (100%)") is None
        assert detect_context_percent("") is None

    def test_reads_status_area_below_input_box(self):
        snapshot = (
            "I reduced context usage by 40% in the loader.\n"
            + INPUT_BOX
            + "\n  ⏵⏵ accept edits on        Context left until auto-compact: 12%"
        )
        assert detect_context_percent(snapshot) == 12

    def test_conversation_body_is_ignored(self):
        snapshot = "context is at 55% according to the log\n" + INPUT_BOX + "\n  ? for shortcuts"
        assert detect_context_percent(snapshot) is None

    def test_context_low_format(self):
        assert detect_context_percent("Context low (8% remaining) · Run /compact") == 8

    def test_most_specific_pattern_wins(self):
        text = "context 50% used · Context left until auto-compact: 3%"
        assert detect_context_percent(text) == 3

    def test_percentage_clamped(self):
        assert detect_context_percent("context 150%") == 100

    def test_ansi_in_status_line(self):
        assert detect_context_percent("\x1b[33mauto-compact: 9%\x1b[0m") == 9

    def test_patterns_are_ordered_by_priority(self):
        priorities = [priority for _, priority in CONTEXT_PATTERNS]
        assert priorities == sorted(priorities)


class TestInteractivePrompt:

    def test_fast_path_selection_marker_and_box(self):
        snapshot = """╭────────────────────────────────────╮
│ Do you want to proceed?            │
│ ❯ 1. Yes                           │
│   2. No, and tell Claude otherwise │
╰────────────────────────────────────╯"""
        prompt = detect_interactive_prompt(snapshot)
        assert prompt is not None
        assert prompt.type == "selection"
        assert prompt.fast_path is True
        assert prompt.has_default_yes is True

    def test_selection_marker_without_box_is_not_a_prompt(self):
        assert detect_interactive_prompt("❯ ls -la\nfoo bar") is None

    def test_edit_confirmation(self):
        snapshot = """╭──────────────────────────────────╮
│ Edit file src/app.py             │
│ Do you want to make this edit?   │
│ 1. Yes                           │
│ 2. No                            │
╰──────────────────────────────────╯"""
        prompt = detect_interactive_prompt(snapshot)
        assert prompt.type == "edit-confirmation"
        assert prompt.fast_path is False
        assert prompt.indicators["is_edit_confirmation"] is True
        assert "Edit file src/app.py" in prompt.content

    def test_confirmation_from_phrase_and_yes_no(self):
        snapshot = """╭──────────────────────────╮
│ Proceed with install     │
│ 1. Yes                   │
│ 2. No                    │
╰──────────────────────────╯"""
        prompt = detect_interactive_prompt(snapshot)
        assert prompt.type == "confirmation"
        assert prompt.has_default_yes is False

    def test_plain_question(self):
        snapshot = """╭──────────────────────────────────╮
│ What should the file be called?  │
╰──────────────────────────────────╯"""
        assert detect_interactive_prompt(snapshot).type == "question"

    def test_box_without_indicators(self):
        snapshot = """╭──────────────────╮
│ > hello there    │
╰──────────────────╯"""
        assert detect_interactive_prompt(snapshot) is None

    def test_no_box(self):
        assert detect_interactive_prompt("Do you want to proceed?") is None
        assert detect_interactive_prompt("") is None


class TestCompactPhrase:

    def test_agent_phrase_above_input_box(self):
        snapshot = "● All done. Let's compact!\n" + INPUT_BOX
        assert detect_compact_phrase(snapshot) == "● All done. Let's compact!"

    def test_finished_sentinel(self):
        snapshot = "● Finished everything for now!\n" + INPUT_BOX
        assert detect_compact_phrase(snapshot) == "● Finished everything for now!"

    def test_echoed_user_input_ignored(self):
        snapshot = "> Let's compact!\n" + INPUT_BOX
        assert detect_compact_phrase(snapshot) is None

    def test_injected_instruction_ignored(self):
        snapshot = (
            '> Context is low.\n  IMPORTANT: If you think it would be helpful, please say "Let\'s compact!"\n'
            + INPUT_BOX
        )
        assert detect_compact_phrase(snapshot) is None

    def test_no_phrase(self):
        assert detect_compact_phrase("● Still working on it\n" + INPUT_BOX) is None


class TestBuildHints:

    def test_prompt_hint(self):
        hints = build_hints("Do you want to proceed?")
        assert hints.check_prompt is True
        assert hints.check_busy is False

    def test_busy_hint_only_in_tail(self):
        assert build_hints("(esc to interrupt)" + " " * 600).check_busy is False
        assert build_hints(" " * 600 + "(esc to interrupt)").check_busy is True

    def test_context_hint_needs_both_words(self):
        assert build_hints("Context left until auto-compact: 7%").check_context is True
        assert build_hints("Context left").check_context is False

    def test_nothing_to_check(self):
        assert build_hints("plain output").any() is False


class TestContentAnalyzer:

    @pytest.fixture
    def analyzer(self, clock):
        return ContentAnalyzer(clock)

    def test_only_requested_signals_computed(self, analyzer):
        result = analyzer.analyze("(esc to interrupt)", "claude", AnalysisHints(check_busy=True))
        assert result.is_busy is True
        assert result.context_percent is None
        assert result.interactive_prompt is None

    def test_busy_cached_for_ttl(self, analyzer, clock):
        hints = AnalysisHints(check_busy=True)
        assert analyzer.analyze("(esc to interrupt)", "claude", hints).is_busy is True

        clock.advance(1.5)
        assert analyzer.analyze("idle", "claude", hints).is_busy is True

        clock.advance(1.0)
        assert analyzer.analyze("idle", "claude", hints).is_busy is False

    def test_context_cached_longer_than_busy(self, analyzer, clock):
        hints = AnalysisHints(check_context=True)
        assert analyzer.analyze("auto-compact: 40%", "claude", hints).context_percent == 40
        clock.advance(15)
        assert analyzer.analyze("auto-compact: 10%", "claude", hints).context_percent == 40
        clock.advance(6)
        assert analyzer.analyze("auto-compact: 10%", "claude", hints).context_percent == 10

    def test_caches_are_per_session(self, analyzer):
        hints = AnalysisHints(check_busy=True)
        analyzer.analyze("(esc to interrupt)", "a", hints)
        assert analyzer.analyze("idle", "b", hints).is_busy is False

    def test_invalidate(self, analyzer):
        hints = AnalysisHints(check_busy=True)
        analyzer.analyze("(esc to interrupt)", "claude", hints)
        analyzer.invalidate("claude", "busy")
        assert analyzer.analyze("idle", "claude", hints).is_busy is False

    def test_malformed_input_never_raises(self, analyzer):
        result = analyzer.analyze("╭╮╰╯│││\x1b[", "claude", AnalysisHints.all())
        assert result.is_busy is False
        assert result.context_percent is None

    def test_to_dict(self, analyzer):
        data = analyzer.analyze("auto-compact: 7%", "claude", AnalysisHints.all()).to_dict()
        assert data["context_percent"] == 7
        assert data["session"] == "claude"
