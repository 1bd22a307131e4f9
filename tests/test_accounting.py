"""Tests for TokenEstimator and TokenAccountant."""

import pytest

from kiln.api.accounting import TokenAccountant, TokenEstimator
from kiln.api.models import (
    Failure,
    FailureKind,
    ModelMessage,
    Session,
    Success,
    SystemSummary,
    TokenBudget,
    ToolCall,
    ToolResult,
    UserMessage,
)
from kiln.config import Settings
from kiln.errors import BudgetExceeded


def _make_settings(**overrides) -> Settings:
    defaults = {"ANTHROPIC_API_KEY": "test-key"}
    defaults.update(overrides)
    return Settings(**defaults)


def _session(limit: int = 1000, instructions: str | None = None) -> Session:
    return Session(budget=TokenBudget(limit=limit), instructions=instructions)


class TestTokenEstimator:
    def test_chars_div_4_rounded_up(self):
        est = TokenEstimator()
        assert est.estimate("a" * 100) == 25
        assert est.estimate("a" * 101) == 26

    def test_minimum_1(self):
        est = TokenEstimator()
        assert est.estimate("") == 1
        assert est.estimate("a") == 1

    def test_monotonic(self):
        est = TokenEstimator()
        counts = [est.estimate("x" * n) for n in range(0, 200, 7)]
        assert counts == sorted(counts)

    def test_custom_ratio(self):
        assert TokenEstimator(chars_per_token=2).estimate("abcdef") == 3

    def test_invalid_ratio(self):
        with pytest.raises(ValueError):
            TokenEstimator(chars_per_token=0)

    def test_non_string(self):
        assert TokenEstimator().estimate(["some", "list"]) >= 1


class TestTokenAccountant:
    def test_estimate_turn_adds_overhead(self):
        acc = TokenAccountant(_make_settings())
        # ceil(264 / 4) = 66, + 4 overhead
        assert acc.estimate_turn(UserMessage("x" * 264)) == 70
        assert acc.estimate_turn(SystemSummary("x" * 264)) == 70

    def test_tool_calls_counted(self):
        acc = TokenAccountant(_make_settings())
        bare = ModelMessage(text="ok")
        with_call = ModelMessage(
            text="ok",
            tool_calls=(ToolCall("read_file", "c1", {"path": "src/main.py"}),),
        )
        assert acc.estimate_turn(with_call) > acc.estimate_turn(bare)

    def test_tool_result_counts_outcome_text(self):
        acc = TokenAccountant(_make_settings())
        ok = ToolResult("c1", "bash", Success("y" * 400))
        failed = ToolResult("c2", "bash", Failure(FailureKind.TIMEOUT, "late"))
        assert acc.estimate_turn(ok) == 104
        assert acc.estimate_turn(failed) >= 5

    def test_record_accumulates(self):
        acc = TokenAccountant(_make_settings())
        session = _session()
        cost = acc.record(session, UserMessage("x" * 264))
        acc.record(session, ModelMessage(text="y" * 264))
        assert cost == 70
        assert session.budget.used == 140
        assert session.budget.remaining == 860

    def test_recompute_includes_instructions(self):
        acc = TokenAccountant(_make_settings())
        session = _session(instructions="i" * 40)
        session.turns = [UserMessage("x" * 264)]
        assert acc.recompute(session) == (10 + 4) + 70
        assert session.budget.used == 84

    def test_should_compress_strictly_above_threshold(self):
        acc = TokenAccountant(_make_settings(compress_fraction=0.8))
        session = _session(limit=1000)
        session.budget.used = 800
        assert not acc.should_compress(session)
        session.budget.used = 801
        assert acc.should_compress(session)

    def test_should_compress_disabled(self):
        acc = TokenAccountant(_make_settings(compaction_enabled=False))
        session = _session(limit=1000)
        session.budget.used = 5000
        assert not acc.should_compress(session)

    def test_check_limit_is_soft_signal(self):
        acc = TokenAccountant(_make_settings())
        session = _session(limit=100)
        session.budget.used = 100
        acc.check_limit(session)
        session.budget.used = 150
        with pytest.raises(BudgetExceeded) as exc_info:
            acc.check_limit(session)
        assert exc_info.value.used == 150
        assert session.budget.remaining == 0

    def test_estimate_output(self):
        acc = TokenAccountant(_make_settings(chars_per_token=4))
        assert acc.estimate_output("z" * 40) == 10
